"""Data model shared by the store, the puller and the fusion engine."""

from .manifest import MANIFEST_SCHEMA_VERSION, ChunkEntry, Manifest, chunk_index, chunk_name
from .readings import (
    CSV_COLUMNS,
    CSV_HEADER,
    MARKER_MODES,
    SYNC_START,
    SYNC_STOP,
    Reading,
    make_marker,
    sync_marker_value,
)
from .session import FinalSummary, SensorKey, Session, SessionConfig, SessionState
from .sync_metadata import (
    DriftModelRecord,
    FusionStatus,
    SensorInfo,
    SyncMarker,
    SyncMetadata,
    TimeSyncRecord,
)

__all__ = [
    "ChunkEntry",
    "Manifest",
    "MANIFEST_SCHEMA_VERSION",
    "chunk_index",
    "chunk_name",
    "Reading",
    "CSV_COLUMNS",
    "CSV_HEADER",
    "MARKER_MODES",
    "SYNC_START",
    "SYNC_STOP",
    "make_marker",
    "sync_marker_value",
    "FinalSummary",
    "SensorKey",
    "Session",
    "SessionConfig",
    "SessionState",
    "DriftModelRecord",
    "FusionStatus",
    "SensorInfo",
    "SyncMarker",
    "SyncMetadata",
    "TimeSyncRecord",
]
