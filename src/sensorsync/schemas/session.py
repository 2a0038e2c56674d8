"""Session lifecycle types."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

from ..config import MAX_CHUNK_INTERVAL_S, MIN_CHUNK_INTERVAL_S
from .readings import FIELD_PATTERN

SensorKey = Literal["in_water", "surface"]


class SessionState(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


class SessionConfig(BaseModel):
    """Parameters for :meth:`ChunkStore.start_session`."""

    sensor_id: str = Field(pattern=FIELD_PATTERN)
    mission: str = "default"
    sensor_key: SensorKey = "surface"
    chunk_interval_s: float = 60.0
    max_chunk_bytes: int = 5 * 1024 * 1024
    session_dir: Optional[Path] = None
    sync_id: Optional[str] = None
    session_id: Optional[str] = None

    @field_validator("chunk_interval_s")
    @classmethod
    def _interval_in_range(cls, v: float) -> float:
        if not MIN_CHUNK_INTERVAL_S <= v <= MAX_CHUNK_INTERVAL_S:
            raise ValueError(
                f"chunk_interval_s must be between {MIN_CHUNK_INTERVAL_S:g} and "
                f"{MAX_CHUNK_INTERVAL_S:g} seconds"
            )
        return v

    @field_validator("max_chunk_bytes")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("max_chunk_bytes must be positive")
        return v

    @field_validator("sensor_id", "mission")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be empty")
        if "/" in v or "\\" in v or v in {".", ".."}:
            raise ValueError("must not contain path separators")
        return v


@dataclass
class Session:
    session_id: str
    mission: str
    sensor_id: str
    started_at: datetime
    directory: Path
    state: SessionState = SessionState.IDLE
    stopped_at: Optional[datetime] = None
    sync_id: Optional[str] = None
    error: Optional[str] = None

    def as_dict(self) -> dict[str, object]:
        return {
            "session_id": self.session_id,
            "mission": self.mission,
            "sensor_id": self.sensor_id,
            "started_at": self.started_at.isoformat(),
            "stopped_at": self.stopped_at.isoformat() if self.stopped_at else None,
            "state": self.state.value,
            "directory": str(self.directory),
            "sync_id": self.sync_id,
            "error": self.error,
        }


@dataclass(frozen=True)
class FinalSummary:
    session_id: str
    session_file: Path
    total_rows: int
    total_bytes: int
    chunk_count: int
    session_sha256: str
    stopped_at: datetime

    def as_dict(self) -> dict[str, object]:
        return {
            "session_id": self.session_id,
            "session_file": str(self.session_file),
            "total_rows": self.total_rows,
            "total_bytes": self.total_bytes,
            "chunk_count": self.chunk_count,
            "session_sha256": self.session_sha256,
            "stopped_at": self.stopped_at.isoformat(),
        }


__all__ = ["SessionState", "SessionConfig", "Session", "FinalSummary", "SensorKey"]
