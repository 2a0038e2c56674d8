"""Facade the UI collaborator drives: start/stop sensors, stats, fusion status.

A *paired recording* is one ``session_{timestamp}`` directory shared by the
in-water and surface sessions of a mission. The in-water sensor records on
the remote node and is mirrored here by the puller; the surface sensor is
recorded locally. Both sessions share a ``sync_id`` so their boundary
markers can be paired during fusion.
"""

from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from .clocksync.estimator import measure_in_background
from .config import Settings
from .data.fusion.session import fuse_session, get_fusion_status
from .errors import SensorSyncError, SessionNotFoundError, SessionStateError
from .recording.recorder import LocalRecorder
from .replication.client import RemoteClient
from .replication.puller import ReplicationPuller
from .scheduling import Clock, Scheduler, SystemClock
from .schemas.readings import Reading
from .schemas.session import SensorKey
from .storage.chunk_store import ChunkStore
from .storage.layout import sensor_directory_name, session_root, unified_timestamp
from .storage.sync_metadata import ensure_sync_metadata, update_sensor_metadata
from .utils.time import parse_timestamp

logger = logging.getLogger(__name__)

SENSOR_KEYS: tuple[SensorKey, ...] = ("in_water", "surface")


@dataclass
class PairedRecording:
    mission: str
    root: Path
    sync_id: str
    timestamp: str
    sessions: dict[str, str] = field(default_factory=dict)
    active: set[str] = field(default_factory=set)
    client: Optional[RemoteClient] = None
    finished: bool = False


class SessionController:
    """Coordinates the recorder, the puller and clock sync for paired recordings."""

    def __init__(
        self,
        settings: Settings,
        store: ChunkStore,
        recorder: LocalRecorder | None,
        puller: ReplicationPuller,
        scheduler: Scheduler,
        *,
        clock: Clock | None = None,
        client_factory: Callable[[str], RemoteClient] | None = None,
        executor: Executor | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.recorder = recorder or LocalRecorder(store, scheduler, settings)
        self.puller = puller
        self.scheduler = scheduler
        self.clock: Clock = clock or SystemClock()
        self.client_factory = client_factory or puller.client_factory
        self._owns_executor = executor is None
        self.executor: Executor = executor or ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="clocksync"
        )
        self.recording: Optional[PairedRecording] = None
        self._last_stats: dict[str, dict[str, object]] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # recordings
    # ------------------------------------------------------------------
    def begin_recording(self, mission: str, *, sync_id: str | None = None) -> PairedRecording:
        """Create the shared directory and ``sync_metadata.json`` for a new recording."""

        with self._lock:
            if self.recording is not None and self.recording.active:
                raise SessionStateError(
                    f"A recording for mission {self.recording.mission} is still active"
                )
            now = self.clock.now()
            stamp = unified_timestamp(now)
            root = session_root(self.settings.storage_path, mission, stamp)
            ensure_sync_metadata(root, mission, stamp, now=now)
            self.recording = PairedRecording(
                mission=mission,
                root=root,
                sync_id=sync_id or str(uuid.uuid4()),
                timestamp=stamp,
            )
            logger.info("Paired recording for mission %s at %s", mission, root)
            return self.recording

    def start_recording_sensor(
        self,
        sensor_key: SensorKey,
        sensor_id: str,
        mission: str | None = None,
        *,
        remote_endpoint: str | None = None,
        chunk_interval_s: float | None = None,
        max_chunk_bytes: int | None = None,
    ) -> dict[str, object]:
        """Start one sensor inside the current paired recording.

        A new paired recording is opened when none is active. ``remote_endpoint``
        is required for the in-water sensor.
        """

        if sensor_key not in SENSOR_KEYS:
            raise ValueError(f"unknown sensor key: {sensor_key}")
        with self._lock:
            recording = self.recording
            if recording is None or recording.finished:
                recording = self.begin_recording(mission or "default")
            elif mission is not None and mission != recording.mission:
                raise SessionStateError(
                    f"Recording for mission {recording.mission} is active; cannot start {mission}"
                )
            if sensor_key in recording.active:
                raise SessionStateError(f"Sensor {sensor_key} is already recording")

            if sensor_key == "surface":
                session = self.recorder.start(
                    sensor_id,
                    recording.mission,
                    recording.root,
                    sync_id=recording.sync_id,
                    chunk_interval_s=chunk_interval_s,
                    max_chunk_bytes=max_chunk_bytes,
                )
                session_id = session.session_id
            else:
                session_id = self._start_in_water(
                    recording,
                    sensor_id,
                    remote_endpoint,
                    chunk_interval_s=chunk_interval_s,
                    max_chunk_bytes=max_chunk_bytes,
                )

            recording.sessions[sensor_key] = session_id
            recording.active.add(sensor_key)
            logger.info("Sensor %s recording as session %s", sensor_key, session_id)
            return {
                "sensor_key": sensor_key,
                "session_id": session_id,
                "session_root": str(recording.root),
                "sync_id": recording.sync_id,
            }

    def stop_recording_sensor(self, sensor_key: SensorKey) -> dict[str, object]:
        """Stop one sensor. Remote and mirror failures are reported, not raised."""

        with self._lock:
            recording = self.recording
            if recording is None or sensor_key not in recording.active:
                raise SessionStateError(f"Sensor {sensor_key} is not recording")
            session_id = recording.sessions[sensor_key]

            result: dict[str, object] = {"sensor_key": sensor_key, "session_id": session_id}
            if sensor_key == "surface":
                try:
                    result["summary"] = self.recorder.stop(session_id).as_dict()
                finally:
                    recording.active.discard(sensor_key)
                self._last_stats[sensor_key] = self.recorder.get_stats(session_id)
            else:
                try:
                    result.update(self._stop_in_water(recording, session_id))
                finally:
                    recording.active.discard(sensor_key)

            if not recording.active:
                recording.finished = True
                other = "surface" if sensor_key == "in_water" else "in_water"
                if other not in recording.sessions:
                    # Only one sensor took part; record the fusion as skipped.
                    result["fusion"] = fuse_session(recording.root, self.settings).as_status()
            return result

    def start_both(
        self,
        mission: str,
        *,
        inwater_sensor_id: str,
        surface_sensor_id: str,
        remote_endpoint: str,
        chunk_interval_s: float | None = None,
    ) -> dict[str, object]:
        """Start the in-water sensor, then the surface sensor; roll back on failure."""

        with self._lock:
            self.begin_recording(mission)
            inwater = self.start_recording_sensor(
                "in_water",
                inwater_sensor_id,
                mission,
                remote_endpoint=remote_endpoint,
                chunk_interval_s=chunk_interval_s,
            )
            try:
                surface = self.start_recording_sensor(
                    "surface", surface_sensor_id, mission, chunk_interval_s=chunk_interval_s
                )
            except SensorSyncError:
                logger.warning("Surface sensor failed to start; rolling back in-water sensor")
                self.stop_recording_sensor("in_water")
                raise
            return {"in_water": inwater, "surface": surface}

    def stop_both(self) -> dict[str, object]:
        with self._lock:
            recording = self.recording
            if recording is None:
                raise SessionStateError("No recording in progress")
            results: dict[str, object] = {}
            for key in SENSOR_KEYS:
                if key in recording.active:
                    results[key] = self.stop_recording_sensor(key)
            return results

    def on_reading(self, reading: Reading) -> None:
        """Driver callback for the surface instrument."""

        recording = self.recording
        if recording is None or "surface" not in recording.active:
            return
        self.recorder.on_reading(recording.sessions["surface"], reading)

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------
    def get_stats(self, sensor_key: SensorKey) -> dict[str, object]:
        recording = self.recording
        if recording is None or sensor_key not in recording.sessions:
            raise SessionNotFoundError(f"No session for sensor {sensor_key}")
        session_id = recording.sessions[sensor_key]
        if sensor_key not in recording.active and sensor_key in self._last_stats:
            stats = dict(self._last_stats[sensor_key])
        elif sensor_key == "surface":
            stats = self.recorder.get_stats(session_id)
        else:
            stats = self.puller.get_stats(session_id).as_dict()
        stats["sensor_key"] = sensor_key
        stats["recording"] = sensor_key in recording.active
        return stats

    def get_fusion_status(self) -> dict[str, object]:
        recording = self.recording
        if recording is None:
            raise SessionNotFoundError("No paired recording yet")
        status = get_fusion_status(recording.root)
        status["session_root"] = str(recording.root)
        return status

    def close(self) -> None:
        """Stop whatever is still recording and release background resources."""

        recording = self.recording
        if recording is not None and recording.active:
            self.stop_both()
        if self._owns_executor:
            self.executor.shutdown(wait=True)

    # ------------------------------------------------------------------
    # in-water sensor
    # ------------------------------------------------------------------
    def _start_in_water(
        self,
        recording: PairedRecording,
        sensor_id: str,
        remote_endpoint: str | None,
        *,
        chunk_interval_s: float | None,
        max_chunk_bytes: int | None,
    ) -> str:
        if not remote_endpoint:
            raise SessionStateError("The in-water sensor needs a remote endpoint")
        client = self.client_factory(remote_endpoint)
        try:
            started = client.start_session(
                sensor_id,
                recording.mission,
                chunk_interval_s=chunk_interval_s or self.settings.chunk_interval_s,
                max_chunk_bytes=max_chunk_bytes,
                sync_id=recording.sync_id,
            )
        except SensorSyncError:
            client.close()
            raise
        session_id = str(started["session_id"])
        started_at = started.get("started_at")

        update_sensor_metadata(
            recording.root,
            "in_water",
            session_id=session_id,
            directory=sensor_directory_name("in_water", session_id),
            started_at=parse_timestamp(started_at) if isinstance(started_at, str) else None,
        )
        self.puller.start_sync(
            session_id,
            remote_endpoint,
            self.settings.poll_interval_ms,
            self.settings.bandwidth_cap_bytes_per_sec,
            session_root=recording.root,
        )
        recording.client = client
        measure_in_background(
            self.executor,
            client,
            recording.root,
            samples=self.settings.clock_sync_samples,
            max_rtt_ms=self.settings.clock_sync_max_rtt_ms,
            clock=self.clock,
        )
        return session_id

    def _stop_in_water(self, recording: PairedRecording, session_id: str) -> dict[str, object]:
        result: dict[str, object] = {}
        client = recording.client
        if client is not None:
            # The remote finalizes first so the last mirror pass sees a stopped manifest.
            try:
                result["summary"] = client.stop_session(session_id)
            except SensorSyncError as exc:
                logger.warning("Remote stop of %s failed: %s", session_id, exc.detail)
                result["error"] = exc.as_payload()
            finally:
                client.close()
                recording.client = None
        stats = self.puller.stop_sync(session_id)
        self._last_stats["in_water"] = stats.as_dict()
        result["mirror"] = stats.as_dict()
        return result


__all__ = ["SessionController", "PairedRecording", "SENSOR_KEYS"]
