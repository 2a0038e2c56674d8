"""The sensor sample and its CSV row form."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from ..utils.time import ensure_utc, format_timestamp, parse_timestamp

CSV_COLUMNS = ("timestamp", "sensor_id", "mode", "value", "TempC", "Vin")
CSV_HEADER = ",".join(CSV_COLUMNS)

SYNC_START = "SYNC_START"
SYNC_STOP = "SYNC_STOP"
MARKER_MODES = frozenset({SYNC_START, SYNC_STOP})

# Rows are written unquoted, so text fields may not contain separators or quotes.
FIELD_PATTERN = r'^[^,"\r\n]+$'
_FORBIDDEN = frozenset(',"\r\n')


def _fmt_number(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def _parse_optional(text: str) -> Optional[float]:
    text = text.strip()
    if text == "":
        return None
    return float(text)


@dataclass(frozen=True, slots=True)
class Reading:
    """One immutable sensor sample."""

    timestamp_utc: datetime
    sensor_id: str
    mode: str
    value: float
    temperature: Optional[float] = None
    supply_voltage: Optional[float] = None

    def __post_init__(self) -> None:
        for name in ("sensor_id", "mode"):
            text = getattr(self, name)
            if _FORBIDDEN.intersection(text):
                raise ValueError(f"{name} may not contain commas, quotes or line breaks: {text!r}")
        object.__setattr__(self, "timestamp_utc", ensure_utc(self.timestamp_utc))

    @property
    def is_marker(self) -> bool:
        return self.mode in MARKER_MODES

    def to_row(self) -> str:
        return ",".join(
            [
                format_timestamp(self.timestamp_utc),
                self.sensor_id,
                self.mode,
                _fmt_number(self.value),
                "" if self.temperature is None else _fmt_number(self.temperature),
                "" if self.supply_voltage is None else _fmt_number(self.supply_voltage),
            ]
        )

    @classmethod
    def from_row(cls, fields: Sequence[str]) -> "Reading":
        """Inverse of :meth:`to_row`; raises ``ValueError`` on malformed input."""

        if len(fields) < 4:
            raise ValueError(f"expected at least 4 columns, got {len(fields)}")
        padded = list(fields) + [""] * (6 - len(fields))
        return cls(
            timestamp_utc=parse_timestamp(padded[0]),
            sensor_id=padded[1],
            mode=padded[2],
            value=float(padded[3]),
            temperature=_parse_optional(padded[4]),
            supply_voltage=_parse_optional(padded[5]),
        )


def sync_marker_value(sync_id: str) -> int:
    """Numeric marker payload: the first 8 hex digits of ``sync_id`` (0 if not hex)."""

    try:
        return int(sync_id.replace("-", "")[:8], 16)
    except ValueError:
        return 0


def make_marker(sensor_id: str, sync_id: str, mode: str, at: datetime) -> Reading:
    if mode not in MARKER_MODES:
        raise ValueError(f"unknown marker mode: {mode}")
    return Reading(
        timestamp_utc=at,
        sensor_id=sensor_id,
        mode=mode,
        value=float(sync_marker_value(sync_id)),
        temperature=0.0,
        supply_voltage=0.0,
    )


__all__ = [
    "Reading",
    "CSV_COLUMNS",
    "CSV_HEADER",
    "SYNC_START",
    "SYNC_STOP",
    "MARKER_MODES",
    "FIELD_PATTERN",
    "make_marker",
    "sync_marker_value",
]
