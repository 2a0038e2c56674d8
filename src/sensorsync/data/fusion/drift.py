"""Clock drift models mapping in-water timestamps onto the surface clock."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal, Optional

import numpy as np

from ...schemas.sync_metadata import DriftModelRecord, SyncMarker
from ...utils.time import from_epoch_ms

logger = logging.getLogger(__name__)

DRIFT_THRESHOLD_MS = 2.0


@dataclass(frozen=True)
class DriftModel:
    """``offset(t) = start_offset_ms + drift_rate_per_ms * (t - reference_time_ms)``.

    Times are epoch milliseconds on the in-water clock. ``constant`` models
    ignore the rate term.
    """

    type: Literal["constant", "linear"]
    start_offset_ms: float
    drift_rate_per_ms: Optional[float] = None
    reference_time_ms: Optional[float] = None
    end_offset_ms: Optional[float] = None

    @classmethod
    def constant(cls, offset_ms: float) -> "DriftModel":
        return cls(type="constant", start_offset_ms=float(offset_ms))

    @property
    def _is_linear(self) -> bool:
        return (
            self.type == "linear"
            and self.drift_rate_per_ms is not None
            and self.reference_time_ms is not None
        )

    def offset_at(self, t_ms: float) -> float:
        if not self._is_linear:
            return self.start_offset_ms
        assert self.drift_rate_per_ms is not None and self.reference_time_ms is not None
        return self.start_offset_ms + self.drift_rate_per_ms * (t_ms - self.reference_time_ms)

    def correct(self, t_ms: float) -> float:
        return t_ms - self.offset_at(t_ms)

    def correct_array(self, t_ms: np.ndarray) -> np.ndarray:
        t_ms = np.asarray(t_ms, dtype="float64")
        if not self._is_linear:
            return t_ms - self.start_offset_ms
        assert self.drift_rate_per_ms is not None and self.reference_time_ms is not None
        return t_ms - (self.start_offset_ms + self.drift_rate_per_ms * (t_ms - self.reference_time_ms))

    def to_record(self) -> DriftModelRecord:
        return DriftModelRecord(
            type=self.type,
            start_offset_ms=self.start_offset_ms,
            drift_rate_per_ms=self.drift_rate_per_ms,
            end_offset_ms=self.end_offset_ms,
            reference_time_ms=self.reference_time_ms,
        )

    @classmethod
    def from_record(cls, record: DriftModelRecord) -> "DriftModel":
        return cls(
            type=record.type,
            start_offset_ms=record.start_offset_ms,
            drift_rate_per_ms=record.drift_rate_per_ms,
            reference_time_ms=record.reference_time_ms,
            end_offset_ms=record.end_offset_ms,
        )


def correct_timestamp(t_ms: float, model: DriftModel | None) -> float:
    return t_ms if model is None else model.correct(t_ms)


def compute_drift_model(
    *,
    surface_start_ms: float | None,
    surface_stop_ms: float | None,
    inwater_start_ms: float | None,
    inwater_stop_ms: float | None,
    measured_offset_ms: float | None,
) -> DriftModel | None:
    """Derive a model from SYNC markers, falling back to the measured offset.

    Missing in-water markers are synthesised as the surface marker plus the
    measured offset.
    """

    if surface_start_ms is not None and surface_stop_ms is not None:
        if inwater_start_ms is not None and inwater_stop_ms is not None:
            iw_start, iw_stop = inwater_start_ms, inwater_stop_ms
        elif measured_offset_ms is not None:
            iw_start = surface_start_ms + measured_offset_ms
            iw_stop = surface_stop_ms + measured_offset_ms
        else:
            logger.info("No clock offset available; timestamps will not be corrected")
            return None

        start_offset = iw_start - surface_start_ms
        stop_offset = iw_stop - surface_stop_ms
        duration = surface_stop_ms - surface_start_ms
        if abs(stop_offset - start_offset) < DRIFT_THRESHOLD_MS or duration == 0:
            return DriftModel.constant((start_offset + stop_offset) / 2.0)
        return DriftModel(
            type="linear",
            start_offset_ms=start_offset,
            drift_rate_per_ms=(stop_offset - start_offset) / duration,
            reference_time_ms=iw_start,
            end_offset_ms=stop_offset,
        )

    if surface_start_ms is not None:
        if inwater_start_ms is not None:
            return DriftModel.constant(inwater_start_ms - surface_start_ms)
        if measured_offset_ms is None:
            return None
        return DriftModel.constant(measured_offset_ms)

    if measured_offset_ms is not None:
        return DriftModel.constant(measured_offset_ms)
    return None


def _marker(
    kind: Literal["START", "STOP"],
    sync_id: str,
    inwater_ms: float | None,
    surface_ms: float | None,
    measured_offset_ms: float | None,
) -> SyncMarker:
    quality = "measured"
    if inwater_ms is None and surface_ms is not None and measured_offset_ms is not None:
        inwater_ms = surface_ms + measured_offset_ms
        quality = "synthetic"
    elif inwater_ms is None:
        quality = "synthetic"
    offset = inwater_ms - surface_ms if inwater_ms is not None and surface_ms is not None else None
    return SyncMarker(
        sync_id=sync_id or "unknown",
        type=kind,
        inwater_timestamp=from_epoch_ms(inwater_ms) if inwater_ms is not None else None,
        surface_timestamp=from_epoch_ms(surface_ms) if surface_ms is not None else None,
        offset_ms=offset,
        quality=quality,
    )


def build_sync_markers(
    *,
    sync_id: str,
    surface_start_ms: float | None,
    surface_stop_ms: float | None,
    inwater_start_ms: float | None,
    inwater_stop_ms: float | None,
    measured_offset_ms: float | None = None,
) -> list[SyncMarker]:
    """START/STOP marker pairs; missing in-water sides are synthesised from ``measured_offset_ms``."""

    markers: list[SyncMarker] = []
    if surface_start_ms is not None or inwater_start_ms is not None:
        markers.append(_marker("START", sync_id, inwater_start_ms, surface_start_ms, measured_offset_ms))
    if surface_stop_ms is not None or inwater_stop_ms is not None:
        markers.append(_marker("STOP", sync_id, inwater_stop_ms, surface_stop_ms, measured_offset_ms))
    return markers


def describe(model: DriftModel | None) -> str:
    if model is None:
        return "none"
    if model.type == "constant":
        return f"constant offset {model.start_offset_ms:.1f}ms"
    rate = (model.drift_rate_per_ms or 0.0) * 60_000
    return (
        f"linear drift start={model.start_offset_ms:.1f}ms "
        f"end={model.end_offset_ms or 0.0:.1f}ms rate={rate:.3f}ms/min"
    )


__all__ = [
    "DriftModel",
    "DRIFT_THRESHOLD_MS",
    "correct_timestamp",
    "compute_drift_model",
    "build_sync_markers",
    "describe",
]
