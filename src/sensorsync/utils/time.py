from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta, timezone

import numpy as np
import pandas as pd


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime (naive values are assumed UTC)."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """ISO-8601 UTC with microseconds and a trailing ``Z``."""

    return ensure_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_timestamp(text: str) -> datetime:
    """Parse an ISO-8601 timestamp written by :func:`format_timestamp` or similar.

    Raises ``ValueError`` when ``text`` is not a timestamp.
    """

    raw = text.strip()
    if raw.endswith("Z") or raw.endswith("z"):
        raw = raw[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(raw))


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MICROSECOND = timedelta(microseconds=1)


def to_epoch_ms(value: datetime) -> float:
    """Milliseconds since the epoch, exact to the microsecond."""

    return ((ensure_utc(value) - EPOCH) // _MICROSECOND) / 1000.0


def from_epoch_ms(value: float) -> datetime:
    return EPOCH + timedelta(microseconds=round(value * 1000.0))


def to_utc_series(ts: pd.Series | Iterable[object]) -> pd.Series:
    """
    Robustly convert a pandas Series of timestamps to tz-aware UTC datetimes.
    Accepts:
      - strings with or without trailing 'Z'
      - strings with 'T' or space separator
      - tz-aware datetimes (converted to UTC)
      - naive datetimes (assumed UTC)
    Any unparsable element becomes NaT.
    """

    if not isinstance(ts, pd.Series):
        ts = pd.Series(ts)

    # Fast path: already datetime dtype
    if pd.api.types.is_datetime64_any_dtype(ts):
        if getattr(ts.dt, "tz", None) is None:
            return ts.dt.tz_localize("UTC")
        return ts.dt.tz_convert("UTC")

    def _one(x: object) -> pd.Timestamp:
        if x is None:
            return pd.NaT
        if isinstance(x, (float, np.floating)) and pd.isna(x):
            return pd.NaT
        try:
            v = pd.Timestamp(x)
        except (TypeError, ValueError):
            return pd.NaT
        if v is pd.NaT:
            return pd.NaT
        if v.tzinfo is None:
            return v.tz_localize("UTC")
        return v.tz_convert("UTC")

    s = ts.map(_one)
    return pd.to_datetime(s, utc=True, errors="coerce")


def series_to_epoch_ms(ts: pd.Series) -> np.ndarray:
    """Milliseconds since the epoch as ``float64``; ``NaT`` becomes ``NaN``."""

    utc = to_utc_series(ts)
    micros = (utc - pd.Timestamp(EPOCH)) // pd.Timedelta(microseconds=1)
    return micros.astype("float64").to_numpy() / 1000.0


__all__ = [
    "EPOCH",
    "utc_now",
    "ensure_utc",
    "format_timestamp",
    "parse_timestamp",
    "to_epoch_ms",
    "from_epoch_ms",
    "to_utc_series",
    "series_to_epoch_ms",
]
