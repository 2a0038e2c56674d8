"""On-disk naming for missions, paired recordings and sensor sessions.

::

    {storage}/{mission}/session_{timestamp}/
        sync_metadata.json
        unified_session.csv
        in-water_{session_id}/manifest.json, chunk_00000.csv ..., session.csv
        surface_{session_id}/...
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

from ..utils.time import ensure_utc

MANIFEST_FILENAME = "manifest.json"
SESSION_FILENAME = "session.csv"
SYNC_METADATA_FILENAME = "sync_metadata.json"
UNIFIED_FILENAME = "unified_session.csv"
MIRROR_STATS_FILENAME = "mirror.json"

SENSOR_DIRECTORY_PREFIX = {"in_water": "in-water", "surface": "surface"}


def unified_timestamp(at: datetime) -> str:
    """Filesystem-safe UTC stamp, e.g. ``20250101T120000Z``."""

    return ensure_utc(at).strftime("%Y%m%dT%H%M%SZ")


def session_root(storage: Path, mission: str, timestamp: str) -> Path:
    return Path(storage) / mission / f"session_{timestamp}"


def sensor_directory_name(sensor_key: str, session_id: str) -> str:
    try:
        prefix = SENSOR_DIRECTORY_PREFIX[sensor_key]
    except KeyError:
        raise ValueError(f"unknown sensor key: {sensor_key}") from None
    return f"{prefix}_{session_id}"


def sensor_directory(root: Path, sensor_key: str, session_id: str) -> Path:
    return Path(root) / sensor_directory_name(sensor_key, session_id)


__all__ = [
    "MANIFEST_FILENAME",
    "SESSION_FILENAME",
    "SYNC_METADATA_FILENAME",
    "UNIFIED_FILENAME",
    "MIRROR_STATS_FILENAME",
    "SENSOR_DIRECTORY_PREFIX",
    "unified_timestamp",
    "session_root",
    "sensor_directory_name",
    "sensor_directory",
]
