"""FastAPI application for the remote (in-water) producer node."""

from __future__ import annotations

import logging
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..config import Settings, configure_logging
from ..errors import SensorSyncError
from ..recording.recorder import LocalRecorder
from ..scheduling import Clock, Scheduler, SystemClock, ThreadScheduler
from ..storage.chunk_store import ChunkStore
from .routes import files_router, record_router, timesync_router

logger = logging.getLogger(__name__)


async def sensorsync_error_handler(request: Request, exc: SensorSyncError) -> JSONResponse:
    """Render any :class:`SensorSyncError` as the ``{detail, error_code}`` envelope."""

    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
    else:
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc.detail)
    return JSONResponse(exc.as_payload(), status_code=exc.status_code)


def create_app(
    store: ChunkStore | None = None,
    settings: Settings | None = None,
    *,
    scheduler: Scheduler | None = None,
    clock: Clock | None = None,
) -> FastAPI:
    """Build the producer API around ``store``.

    Without arguments the settings come from the environment and sessions are
    written below ``settings.storage_path``.
    """

    settings = settings or Settings.from_env()
    clock = clock or (store.clock if store is not None else SystemClock())
    store = store or ChunkStore(Path(settings.storage_path), clock=clock)
    scheduler = scheduler or ThreadScheduler()

    app = FastAPI(title="sensorsync producer")
    app.state.settings = settings
    app.state.store = store
    app.state.clock = clock
    app.state.scheduler = scheduler
    app.state.recorder = LocalRecorder(store, scheduler, settings, sensor_key="in_water")

    app.add_exception_handler(SensorSyncError, sensorsync_error_handler)

    @app.get("/health")
    def health() -> JSONResponse:
        """Simple liveness endpoint used by deployment probes."""

        return JSONResponse({"status": "ok"})

    app.include_router(record_router)
    app.include_router(files_router)
    app.include_router(timesync_router)
    return app


def _default_app() -> FastAPI:
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    return create_app(settings=settings)


app = _default_app()


__all__ = ["app", "create_app", "sensorsync_error_handler"]
