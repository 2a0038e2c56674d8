"""Local (surface) recorder: buffers driver readings into a :class:`ChunkStore`."""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from ..config import Settings
from ..data.fusion.session import attempt_fusion
from ..errors import InsufficientStorageError
from ..scheduling import PeriodicTask, Scheduler
from ..schemas.readings import Reading
from ..schemas.session import FinalSummary, SensorKey, Session, SessionConfig, SessionState
from ..storage.chunk_store import ChunkStore
from ..storage.layout import sensor_directory
from ..storage.sync_metadata import update_sensor_metadata

logger = logging.getLogger(__name__)

DEFAULT_SENSOR_KEY: SensorKey = "surface"
DEFAULT_FLUSH_TICK_S = 1.0


@dataclass
class _Recording:
    session: Session
    session_root: Optional[Path]
    task: Optional[PeriodicTask]


class LocalRecorder:
    """Owns one sensor's sessions and their flush timers (the surface sensor by default).

    The timer fires every ``flush_tick_s``; the store decides whether a roll is
    due (interval elapsed or buffer over the size cap).
    """

    def __init__(
        self,
        store: ChunkStore,
        scheduler: Scheduler,
        settings: Settings | None = None,
        flush_tick_s: float = DEFAULT_FLUSH_TICK_S,
        sensor_key: SensorKey = DEFAULT_SENSOR_KEY,
    ) -> None:
        self.store = store
        self.scheduler = scheduler
        self.settings = settings or Settings()
        self.flush_tick_s = flush_tick_s
        self.sensor_key = sensor_key
        self._recordings: dict[str, _Recording] = {}
        self._lock = threading.Lock()

    def start(
        self,
        sensor_id: str,
        mission: str,
        session_root: Path | None = None,
        *,
        sync_id: str | None = None,
        chunk_interval_s: float | None = None,
        max_chunk_bytes: int | None = None,
    ) -> Session:
        session_id = str(uuid.uuid4())
        config = SessionConfig(
            sensor_id=sensor_id,
            mission=mission,
            sensor_key=self.sensor_key,
            chunk_interval_s=chunk_interval_s or self.settings.chunk_interval_s,
            max_chunk_bytes=max_chunk_bytes or self.settings.max_chunk_bytes,
            session_dir=(
                sensor_directory(session_root, self.sensor_key, session_id) if session_root else None
            ),
            sync_id=sync_id,
            session_id=session_id,
        )
        session = self.store.start_session(config)
        task = self.scheduler.schedule_periodic(
            self.flush_tick_s, lambda: self._tick(session_id), name=f"flush-{session_id[:8]}"
        )
        with self._lock:
            self._recordings[session_id] = _Recording(session, session_root, task)

        if session_root is not None:
            update_sensor_metadata(
                session_root,
                self.sensor_key,
                session_id=session_id,
                directory=session.directory.name,
                started_at=session.started_at,
            )
        return session

    def on_reading(self, session_id: str, reading: Reading) -> None:
        """Driver callback for a single reading."""

        self.consume(session_id, [reading])

    def consume(self, session_id: str, readings: Iterable[Reading]) -> int:
        try:
            return self.store.append_readings(session_id, readings)
        except InsufficientStorageError:
            self._cancel_timer(session_id)
            raise

    def stop(self, session_id: str) -> FinalSummary:
        with self._lock:
            recording = self._recordings.get(session_id)
        # The flush timer is cancelled first; the final roll happens in stop_session.
        self._cancel_timer(session_id)
        # Sessions re-registered by ChunkStore.recover_session have no recording entry.
        summary = self.store.stop_session(session_id)

        root = recording.session_root if recording is not None else None
        if root is not None:
            update_sensor_metadata(
                root,
                self.sensor_key,
                stopped_at=summary.stopped_at,
                session_csv=str(summary.session_file.relative_to(root)),
                bytes_recorded=summary.total_bytes,
                total_rows=summary.total_rows,
            )
            attempt_fusion(root, self.settings)
        return summary

    def get_stats(self, session_id: str) -> dict[str, object]:
        stats = self.store.stats(session_id)
        session = self.store.get_session(session_id)
        stats["started_at"] = session.started_at.isoformat()
        stats["sensor_id"] = session.sensor_id
        return stats

    def _cancel_timer(self, session_id: str) -> None:
        with self._lock:
            recording = self._recordings.get(session_id)
        if recording is not None and recording.task is not None:
            recording.task.cancel()

    def _tick(self, session_id: str) -> None:
        try:
            self.store.flush(session_id)
        except InsufficientStorageError:
            logger.error("Recording %s halted: storage exhausted", session_id)
            self._cancel_timer(session_id)
        if self.store.get_session(session_id).state is SessionState.ERROR:
            self._cancel_timer(session_id)


__all__ = ["LocalRecorder", "DEFAULT_FLUSH_TICK_S", "DEFAULT_SENSOR_KEY"]
