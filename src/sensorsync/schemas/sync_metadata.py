"""Shared record for a paired (in-water + surface) recording."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

SYNC_METADATA_SCHEMA_VERSION = 1

FusionState = Literal["pending", "complete", "skipped", "failed"]


class SensorInfo(BaseModel):
    session_id: Optional[str] = None
    directory: Optional[str] = None
    started_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None
    session_csv: Optional[str] = None
    bytes_recorded: int = 0
    bytes_mirrored: int = 0
    total_rows: int = 0


class SyncMarker(BaseModel):
    """A START or STOP marker pair observed (or synthesised) across both sensors."""

    sync_id: str = "unknown"
    type: Literal["START", "STOP"]
    inwater_timestamp: Optional[datetime] = None
    surface_timestamp: Optional[datetime] = None
    offset_ms: Optional[float] = None
    quality: Literal["measured", "synthetic"] = "measured"


class DriftModelRecord(BaseModel):
    type: Literal["constant", "linear"]
    start_offset_ms: float
    drift_rate_per_ms: Optional[float] = None
    end_offset_ms: Optional[float] = None
    reference_time_ms: Optional[float] = None


class TimeSyncRecord(BaseModel):
    method: Optional[str] = None
    offset_ms: Optional[float] = None
    uncertainty_ms: Optional[float] = None
    measured_at: Optional[datetime] = None
    error: Optional[str] = None
    markers: List[SyncMarker] = Field(default_factory=list)
    drift_model: Optional[DriftModelRecord] = None


class FusionStatus(BaseModel):
    status: FusionState = "pending"
    unified_csv: Optional[str] = None
    row_count: int = 0
    inwater_rows: int = 0
    surface_rows: int = 0
    completed_at: Optional[datetime] = None
    error: Optional[str] = None


class SyncMetadata(BaseModel):
    schema_version: int = SYNC_METADATA_SCHEMA_VERSION
    mission: str
    unified_session_timestamp: str
    created_at: datetime
    updated_at: datetime
    sensors: Dict[str, SensorInfo] = Field(
        default_factory=lambda: {"in_water": SensorInfo(), "surface": SensorInfo()}
    )
    time_sync: TimeSyncRecord = Field(default_factory=TimeSyncRecord)
    fusion: FusionStatus = Field(default_factory=FusionStatus)

    def sensor(self, key: str) -> SensorInfo:
        return self.sensors.setdefault(key, SensorInfo())


__all__ = [
    "SyncMetadata",
    "SensorInfo",
    "SyncMarker",
    "DriftModelRecord",
    "TimeSyncRecord",
    "FusionStatus",
    "FusionState",
    "SYNC_METADATA_SCHEMA_VERSION",
]
