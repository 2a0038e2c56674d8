"""Load a consolidated ``session.csv`` into a normalized DataFrame."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import numpy as np
import pandas as pd

from ...schemas.readings import CSV_COLUMNS, SYNC_START, SYNC_STOP, Reading
from ...utils.time import to_utc_series

logger = logging.getLogger(__name__)

ORDERED = list(CSV_COLUMNS)
NUMERIC = ("value", "TempC", "Vin")


@dataclass(frozen=True)
class SessionMarker:
    timestamp: pd.Timestamp
    sync_id: str


@dataclass
class SessionData:
    """Data rows of one sensor session plus its boundary markers."""

    frame: pd.DataFrame
    start: Optional[SessionMarker] = None
    stop: Optional[SessionMarker] = None
    skipped: int = 0
    source: str = "session"
    extra: dict[str, object] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.frame)

    def readings(self) -> list[Reading]:
        out: list[Reading] = []
        for row in self.frame.itertuples(index=False):
            out.append(
                Reading(
                    timestamp_utc=row.timestamp.to_pydatetime(),
                    sensor_id=str(row.sensor_id),
                    mode=str(row.mode),
                    value=float(row.value),
                    temperature=None if pd.isna(row.TempC) else float(row.TempC),
                    supply_voltage=None if pd.isna(row.Vin) else float(row.Vin),
                )
            )
        return out


def _normalize(raw: pd.DataFrame, source: str) -> SessionData:
    df = raw.copy()
    for column in ORDERED:
        if column not in df.columns:
            df[column] = ""
    df = df[ORDERED].copy()
    for column in ORDERED[1:]:
        df[column] = df[column].fillna("").astype(str).str.strip()

    incomplete = (df["sensor_id"] == "") | (df["mode"] == "") | (df["value"] == "")
    ts = df["timestamp"]
    if ts.dtype == object:
        ts = ts.replace("", np.nan)
    df["timestamp"] = to_utc_series(ts)
    bad = incomplete | df["timestamp"].isna()
    skipped = int(bad.sum())
    if skipped:
        logger.warning("%s: %d rows skipped due to parse errors", source, skipped)
    df = df.loc[~bad].copy()

    for column in NUMERIC:
        df[column] = pd.to_numeric(df[column].replace("", np.nan), errors="coerce")

    markers: dict[str, SessionMarker] = {}
    for mode, key in ((SYNC_START, "start"), (SYNC_STOP, "stop")):
        found = df.loc[df["mode"] == mode]
        if not found.empty:
            first = found.iloc[0]
            value = first["value"]
            sync_id = "" if pd.isna(value) else str(int(value))
            markers[key] = SessionMarker(timestamp=first["timestamp"], sync_id=sync_id)

    data = df.loc[~df["mode"].isin([SYNC_START, SYNC_STOP])]
    data = data.loc[data["value"].notna()]
    data = data.sort_values("timestamp", kind="stable").reset_index(drop=True)
    return SessionData(
        frame=data,
        start=markers.get("start"),
        stop=markers.get("stop"),
        skipped=skipped,
        source=source,
    )


class SessionReader:
    """Session CSV ingestion (``timestamp,sensor_id,mode,value,TempC,Vin``)."""

    @staticmethod
    def from_csv(path: str | Path, *, source: str | None = None) -> SessionData:
        path = Path(path)
        raw = pd.read_csv(
            path,
            dtype=str,
            keep_default_na=False,
            on_bad_lines="skip",
            skipinitialspace=True,
        )
        return _normalize(raw, source or path.parent.name)

    @staticmethod
    def from_dataframe(df: pd.DataFrame, *, source: str = "frame") -> SessionData:
        raw = df.copy()
        for column in raw.columns:
            if column == "timestamp" and pd.api.types.is_datetime64_any_dtype(raw[column]):
                continue
            raw[column] = raw[column].where(raw[column].notna(), "").astype(str)
        return _normalize(raw, source)


__all__ = ["SessionReader", "SessionData", "SessionMarker", "ORDERED"]
