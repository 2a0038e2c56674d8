"""Session start/stop/status endpoints."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel, Field

from ...config import MAX_CHUNK_INTERVAL_S, MIN_CHUNK_INTERVAL_S
from ...schemas.readings import FIELD_PATTERN

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/record", tags=["record"])


class RecordStartRequest(BaseModel):
    sensor_id: str = Field(min_length=1, pattern=FIELD_PATTERN)
    mission: str = "default"
    chunk_interval_s: Optional[float] = Field(
        default=None, ge=MIN_CHUNK_INTERVAL_S, le=MAX_CHUNK_INTERVAL_S
    )
    max_chunk_bytes: Optional[int] = Field(default=None, gt=0)
    sync_id: Optional[str] = None


class RecordStopRequest(BaseModel):
    session_id: str


@router.post("/start")
def start_recording(req: RecordStartRequest, request: Request) -> dict[str, object]:
    """Start a chunked recording session and return its description."""

    recorder = request.app.state.recorder
    session = recorder.start(
        req.sensor_id,
        req.mission,
        sync_id=req.sync_id,
        chunk_interval_s=req.chunk_interval_s,
        max_chunk_bytes=req.max_chunk_bytes,
    )
    logger.info("Remote session %s started for sensor %s", session.session_id, req.sensor_id)
    return session.as_dict()


@router.post("/stop")
def stop_recording(req: RecordStopRequest, request: Request) -> dict[str, object]:
    """Finalize a session; chunks are consolidated into ``session.csv``."""

    summary = request.app.state.recorder.stop(req.session_id)
    return summary.as_dict()


@router.get("/status")
def recording_status(request: Request, session_id: str = Query(...)) -> dict[str, object]:
    store = request.app.state.store
    stats = store.stats(session_id)
    return {
        "session_id": session_id,
        "state": stats["state"],
        "rows": stats["total_rows"],
        "bytes": stats["total_bytes"],
        "last_chunk_index": stats["last_chunk_index"],
        "chunk_count": stats["chunk_count"],
        "buffered_rows": stats["buffered_rows"],
        "error": stats["error"],
    }


__all__ = ["router", "RecordStartRequest", "RecordStopRequest"]
