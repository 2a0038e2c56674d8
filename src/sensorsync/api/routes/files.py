"""Manifest snapshots and chunk/session file downloads."""

from __future__ import annotations

from fastapi import APIRouter, Query, Request
from fastapi.responses import FileResponse, Response

router = APIRouter(tags=["files"])


@router.get("/snapshots")
def get_snapshot(
    request: Request,
    session_id: str = Query(...),
    since_index: int = Query(0, ge=0),
) -> Response:
    """Return the session manifest with chunks filtered to ``index >= since_index``."""

    manifest = request.app.state.store.snapshot(session_id, since_index)
    return Response(manifest.to_json(), media_type="application/json")


@router.get("/files/{session_id}/{name}")
def download_file(session_id: str, name: str, request: Request) -> FileResponse:
    """Serve a committed chunk or the consolidated ``session.csv``.

    ``FileResponse`` answers ``Range`` requests with ``206 Partial Content``.
    """

    path = request.app.state.store.chunk_path(session_id, name)
    return FileResponse(path=str(path), media_type="text/csv", filename=name)


__all__ = ["router"]
