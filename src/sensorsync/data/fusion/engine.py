"""Fusion engine aligning the in-water and surface streams."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Literal, Optional, Sequence, Union

import numpy as np
import pandas as pd

from ...config import Settings
from ...schemas.readings import Reading
from ...utils.time import from_epoch_ms, series_to_epoch_ms, to_epoch_ms
from ..ingestion.session_reader import SessionData, SessionReader
from .alignment import (
    STATUS_FRESH,
    STATUS_MISSING,
    build_consolidated_axis,
    classify_age,
    evaluate_row_creation,
    find_nearest_reading,
    find_surface_for_inwater,
)
from .drift import DriftModel

Strategy = Literal["symmetric", "inwater_driven"]
StreamLike = Union[Sequence[Reading], pd.DataFrame, SessionData]

WIDE_COLUMNS = [
    "timestamp",
    "inwater_sensor_id",
    "inwater_mode",
    "inwater_value",
    "inwater_TempC",
    "inwater_Vin",
    "surface_sensor_id",
    "surface_mode",
    "surface_value",
    "surface_TempC",
    "surface_Vin",
    "surface_timestamp_used",
    "surface_age_ms",
    "surface_status",
]


@dataclass(frozen=True)
class UnifiedRow:
    """One aligned row; times are epoch milliseconds on the surface clock."""

    timestamp_ms: float
    inwater_value: Optional[float]
    surface_value: Optional[float]
    surface_timestamp_used: Optional[float]
    surface_age_ms: Optional[float]
    surface_status: str
    inwater: Optional[Reading] = None
    surface: Optional[Reading] = None

    @property
    def timestamp(self) -> datetime:
        return from_epoch_ms(self.timestamp_ms)

    @property
    def has_inwater(self) -> bool:
        return self.inwater_value is not None

    @property
    def has_surface(self) -> bool:
        return self.surface_value is not None


@dataclass
class _Stream:
    times_ms: np.ndarray
    readings: list[Reading]


def as_stream(obj: StreamLike) -> _Stream:
    """Coerce readings, a session DataFrame or parsed session data into sorted arrays."""

    if isinstance(obj, pd.DataFrame):
        obj = SessionReader.from_dataframe(obj)
    if isinstance(obj, SessionData):
        readings = obj.readings()
        times = series_to_epoch_ms(obj.frame["timestamp"]) if len(obj.frame) else np.array([])
    else:
        readings = [r for r in obj if not r.is_marker]
        times = np.array([to_epoch_ms(r.timestamp_utc) for r in readings], dtype="float64")
    order = np.argsort(times, kind="stable")
    return _Stream(
        times_ms=np.asarray(times, dtype="float64")[order],
        readings=[readings[i] for i in order],
    )


def _corrected(stream: _Stream, drift_model: DriftModel | None) -> _Stream:
    if drift_model is None or len(stream.readings) == 0:
        return stream
    times = drift_model.correct_array(stream.times_ms)
    order = np.argsort(times, kind="stable")
    return _Stream(times_ms=times[order], readings=[stream.readings[i] for i in order])


def _fuse_symmetric(
    inwater: _Stream, surface: _Stream, tolerance_ms: float, consolidation_ms: float
) -> list[UnifiedRow]:
    axis = build_consolidated_axis(inwater.times_ms, surface.times_ms, consolidation_ms)
    iw_used = np.zeros(len(inwater.times_ms), dtype=bool)
    sf_used = np.zeros(len(surface.times_ms), dtype=bool)

    rows: list[UnifiedRow] = []
    last_inwater: Optional[float] = None
    last_surface: Optional[float] = None
    last_row_had_both = False

    for t in axis:
        iw = find_nearest_reading(t, inwater.times_ms, iw_used, tolerance_ms)
        sf = find_nearest_reading(t, surface.times_ms, sf_used, tolerance_ms)
        # Matched readings are consumed even if the row is suppressed below.
        if iw is not None:
            iw_used[iw] = True
        if sf is not None:
            sf_used[sf] = True

        keep = evaluate_row_creation(
            has_inwater=iw is not None,
            has_surface=sf is not None,
            axis_ms=t,
            last_inwater_ms=last_inwater,
            last_surface_ms=last_surface,
            last_row_had_both=last_row_had_both,
            tolerance_ms=tolerance_ms,
        )
        if not keep:
            continue

        iw_reading = inwater.readings[iw] if iw is not None else None
        sf_reading = surface.readings[sf] if sf is not None else None
        sf_time = float(surface.times_ms[sf]) if sf is not None else None
        rows.append(
            UnifiedRow(
                timestamp_ms=t,
                inwater_value=iw_reading.value if iw_reading else None,
                surface_value=sf_reading.value if sf_reading else None,
                surface_timestamp_used=sf_time,
                surface_age_ms=abs(t - sf_time) if sf_time is not None else None,
                surface_status=STATUS_FRESH if sf_reading else STATUS_MISSING,
                inwater=iw_reading,
                surface=sf_reading,
            )
        )
        if iw is not None:
            last_inwater = t
        if sf is not None:
            last_surface = t
        last_row_had_both = iw is not None and sf is not None
    return rows


def _fuse_inwater_driven(
    inwater: _Stream, surface: _Stream, staleness_threshold_ms: float
) -> list[UnifiedRow]:
    held = find_surface_for_inwater(inwater.times_ms, surface.times_ms)
    rows: list[UnifiedRow] = []
    for t, reading, j in zip(inwater.times_ms, inwater.readings, held):
        t = float(t)
        if j < 0:
            rows.append(
                UnifiedRow(
                    timestamp_ms=t,
                    inwater_value=reading.value,
                    surface_value=None,
                    surface_timestamp_used=None,
                    surface_age_ms=None,
                    surface_status=STATUS_MISSING,
                    inwater=reading,
                )
            )
            continue
        surface_time = float(surface.times_ms[j])
        age = t - surface_time
        status, attach = classify_age(age, staleness_threshold_ms)
        surface_reading = surface.readings[j] if attach else None
        rows.append(
            UnifiedRow(
                timestamp_ms=t,
                inwater_value=reading.value,
                surface_value=surface_reading.value if surface_reading else None,
                surface_timestamp_used=surface_time,
                surface_age_ms=age,
                surface_status=status,
                inwater=reading,
                surface=surface_reading,
            )
        )
    return rows


def fuse(
    inwater_rows: StreamLike,
    surface_rows: StreamLike,
    drift_model: DriftModel | None = None,
    tolerance_ms: float = 25.0,
    *,
    strategy: Strategy = "symmetric",
    staleness_threshold_ms: float = 30_000.0,
    consolidation_ms: float | None = None,
) -> list[UnifiedRow]:
    """Align the two streams onto one timeline.

    ``symmetric`` consolidates both timelines into a shared axis and matches
    each stream against it. ``inwater_driven`` emits exactly one row per
    in-water reading with the latest surface reading held against it.
    Neither strategy keeps state between calls.
    """

    if tolerance_ms < 0:
        raise ValueError("tolerance_ms must be non-negative")
    inwater = _corrected(as_stream(inwater_rows), drift_model)
    surface = as_stream(surface_rows)
    if strategy == "symmetric":
        threshold = tolerance_ms if consolidation_ms is None else consolidation_ms
        return _fuse_symmetric(inwater, surface, tolerance_ms, threshold)
    if strategy == "inwater_driven":
        return _fuse_inwater_driven(inwater, surface, staleness_threshold_ms)
    raise ValueError(f"Unknown fusion strategy: {strategy}")


def _row_record(row: UnifiedRow) -> dict[str, object]:
    iw, sf = row.inwater, row.surface
    return {
        "timestamp": row.timestamp_ms,
        "inwater_sensor_id": iw.sensor_id if iw else None,
        "inwater_mode": iw.mode if iw else None,
        "inwater_value": row.inwater_value,
        "inwater_TempC": iw.temperature if iw else None,
        "inwater_Vin": iw.supply_voltage if iw else None,
        "surface_sensor_id": sf.sensor_id if sf else None,
        "surface_mode": sf.mode if sf else None,
        "surface_value": row.surface_value,
        "surface_TempC": sf.temperature if sf else None,
        "surface_Vin": sf.supply_voltage if sf else None,
        "surface_timestamp_used": row.surface_timestamp_used,
        "surface_age_ms": row.surface_age_ms,
        "surface_status": row.surface_status,
    }


@dataclass
class FusionEngine:
    """Bundle of fusion parameters with a DataFrame view of the result."""

    tolerance_ms: float = 25.0
    strategy: Strategy = "symmetric"
    staleness_threshold_ms: float = 30_000.0
    consolidation_ms: Optional[float] = None
    drift_model: Optional[DriftModel] = None

    @classmethod
    def from_settings(cls, settings: Settings, drift_model: DriftModel | None = None) -> "FusionEngine":
        return cls(
            tolerance_ms=settings.alignment_tolerance_ms,
            strategy=settings.fusion_strategy,
            staleness_threshold_ms=settings.staleness_threshold_ms,
            drift_model=drift_model,
        )

    def fuse(self, inwater_rows: StreamLike, surface_rows: StreamLike) -> list[UnifiedRow]:
        return fuse(
            inwater_rows,
            surface_rows,
            self.drift_model,
            self.tolerance_ms,
            strategy=self.strategy,
            staleness_threshold_ms=self.staleness_threshold_ms,
            consolidation_ms=self.consolidation_ms,
        )

    @staticmethod
    def to_frame(rows: Sequence[UnifiedRow]) -> pd.DataFrame:
        """Wide-format frame with UTC ``timestamp`` and ``surface_timestamp_used`` columns."""

        df = pd.DataFrame([_row_record(r) for r in rows], columns=WIDE_COLUMNS)
        for column in ("timestamp", "surface_timestamp_used"):
            df[column] = pd.to_datetime(df[column].astype("float64"), unit="ms", utc=True)
        return df


__all__ = ["FusionEngine", "UnifiedRow", "WIDE_COLUMNS", "as_stream", "fuse"]
