"""Time endpoint used for clock-offset measurement."""

from __future__ import annotations

from fastapi import APIRouter, Request

from ...utils.time import format_timestamp, to_epoch_ms

TIME_SCHEMA_VERSION = 1

router = APIRouter(prefix="/api/sync", tags=["timesync"])


@router.get("/time")
def server_time(request: Request) -> dict[str, object]:
    now = request.app.state.clock.now()
    return {
        "remote_iso": format_timestamp(now),
        "remote_unix_ms": int(to_epoch_ms(now)),
        "schema_version": TIME_SCHEMA_VERSION,
    }


__all__ = ["router", "TIME_SCHEMA_VERSION"]
