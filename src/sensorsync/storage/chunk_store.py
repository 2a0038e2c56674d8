"""Append-only, crash-safe storage for one sensor session per directory.

A session directory holds ``manifest.json`` plus numbered immutable chunks
(``chunk_00000.csv`` ...). Readings are buffered in memory and rolled into a
new chunk by time, by size or on demand. Stopping a session consolidates the
chunks into ``session.csv`` and removes them.
"""

from __future__ import annotations

import logging
import re
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator, Optional, Sequence

from pydantic import ValidationError

from ..errors import (
    ChunkNotFoundError,
    InsufficientStorageError,
    ManifestError,
    SessionNotFoundError,
    SessionStateError,
    is_capacity_error,
)
from ..scheduling import Clock, SystemClock
from ..schemas.manifest import CHUNK_NAME_RE, ChunkEntry, Manifest, chunk_index, chunk_name
from ..schemas.readings import CSV_HEADER, SYNC_START, SYNC_STOP, Reading, make_marker
from ..schemas.session import FinalSummary, Session, SessionConfig, SessionState
from .atomic import atomic_concat, atomic_write_bytes, atomic_write_text, discard_temp_files, sha256_file
from .layout import MANIFEST_FILENAME, SESSION_FILENAME, sensor_directory_name

logger = logging.getLogger(__name__)

_HEADER_LINE = (CSV_HEADER + "\n").encode("utf-8")
_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def read_manifest(directory: Path) -> Manifest:
    """Load ``manifest.json``; raises :class:`ManifestError` if it is unusable."""

    path = Path(directory) / MANIFEST_FILENAME
    try:
        return Manifest.from_json(path.read_bytes())
    except FileNotFoundError:
        raise ManifestError(f"No manifest in {directory}", path=str(path)) from None
    except (ValidationError, ValueError) as exc:
        raise ManifestError(f"Unreadable manifest {path}: {exc}", path=str(path)) from exc


def write_manifest(directory: Path, manifest: Manifest) -> None:
    atomic_write_text(Path(directory) / MANIFEST_FILENAME, manifest.to_json())


def count_data_rows(path: Path) -> int:
    with open(path, "rb") as handle:
        lines = sum(1 for line in handle if line.strip())
    return max(lines - 1, 0)


def _chunk_parts(directory: Path, names: Sequence[str]) -> Iterator[bytes]:
    if not names:
        yield _HEADER_LINE
        return
    for position, name in enumerate(names):
        data = (directory / name).read_bytes()
        if position > 0:
            # Only the first chunk contributes its header line.
            newline = data.find(b"\n")
            data = b"" if newline < 0 else data[newline + 1 :]
        if data and not data.endswith(b"\n"):
            data += b"\n"
        yield data


def concatenate_chunks(directory: Path, names: Sequence[str], dest: Path) -> int:
    """Write ``names`` (in order) into ``dest`` with exactly one header row.

    Returns the number of data rows in the consolidated file.
    """

    atomic_concat(dest, _chunk_parts(Path(directory), names))
    return count_data_rows(dest)


@dataclass
class _ActiveSession:
    session: Session
    config: SessionConfig
    manifest: Manifest
    last_roll: float
    buffer: list[str] = field(default_factory=list)
    buffered_bytes: int = 0
    buffer_lock: threading.Lock = field(default_factory=threading.Lock)
    write_lock: threading.Lock = field(default_factory=threading.Lock)


class ChunkStore:
    """Registry and single writer for the sessions it starts or recovers."""

    def __init__(self, root: Path, clock: Clock | None = None) -> None:
        self.root = Path(root)
        self.clock: Clock = clock or SystemClock()
        self._sessions: dict[str, _ActiveSession] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    def start_session(self, config: SessionConfig) -> Session:
        session_id = config.session_id or str(uuid.uuid4())
        sync_id = config.sync_id or str(uuid.uuid4())
        directory = (
            Path(config.session_dir)
            if config.session_dir is not None
            else self.root / config.mission / sensor_directory_name(config.sensor_key, session_id)
        )
        with self._lock:
            if session_id in self._sessions:
                raise SessionStateError(f"Session {session_id} already exists", session_id=session_id)
            if (directory / MANIFEST_FILENAME).exists():
                raise SessionStateError(
                    f"Directory {directory} already holds a session", session_id=session_id
                )

            started_at = self.clock.now()
            manifest = Manifest(
                session_id=session_id,
                sensor_id=config.sensor_id,
                mission=config.mission,
                sync_id=sync_id,
                state=SessionState.RECORDING.value,
                started_at=started_at,
                chunk_interval_s=config.chunk_interval_s,
                last_updated=started_at,
            )
            try:
                directory.mkdir(parents=True, exist_ok=True)
                discard_temp_files(directory)
                write_manifest(directory, manifest)
            except OSError as exc:
                if is_capacity_error(exc):
                    raise InsufficientStorageError(
                        f"No space to start session in {directory}", session_id=session_id
                    ) from exc
                raise

            session = Session(
                session_id=session_id,
                mission=config.mission,
                sensor_id=config.sensor_id,
                started_at=started_at,
                directory=directory,
                state=SessionState.RECORDING,
                sync_id=sync_id,
            )
            active = _ActiveSession(
                session=session,
                config=config,
                manifest=manifest,
                last_roll=self.clock.monotonic(),
            )
            active.buffer.append(make_marker(config.sensor_id, sync_id, SYNC_START, started_at).to_row())
            active.buffered_bytes = len(active.buffer[0]) + 1
            self._sessions[session_id] = active

        logger.info(
            "Started session %s (sensor=%s, mission=%s) in %s",
            session_id,
            config.sensor_id,
            config.mission,
            directory,
        )
        return session

    def append_readings(self, session_id: str, readings: Iterable[Reading]) -> int:
        """Buffer ``readings``; returns how many were accepted."""

        active = self._active(session_id)
        self._require_recording(active)

        rows: list[str] = []
        size = 0
        for reading in readings:
            if reading.is_marker:
                logger.warning("Ignoring reserved %s row for session %s", reading.mode, session_id)
                continue
            row = reading.to_row()
            rows.append(row)
            size += len(row.encode("utf-8")) + 1
        if not rows:
            return 0

        with active.buffer_lock:
            # A concurrent stop may have closed the session while rows were built.
            self._require_recording(active)
            active.buffer.extend(rows)
            active.buffered_bytes += size
            over_size = active.buffered_bytes >= active.config.max_chunk_bytes
        if over_size:
            self._roll(active, reason="size")
        return len(rows)

    def flush(self, session_id: str, force: bool = False) -> ChunkEntry | None:
        """Roll the buffer into a chunk when forced or when a roll is due."""

        active = self._active(session_id)
        if active.session.state not in (SessionState.RECORDING, SessionState.STOPPING):
            return None

        with active.buffer_lock:
            if not active.buffer:
                return None
            elapsed = self.clock.monotonic() - active.last_roll
            if force:
                reason = "forced"
            elif active.buffered_bytes >= active.config.max_chunk_bytes:
                reason = "size"
            elif elapsed >= active.config.chunk_interval_s:
                reason = "time"
            else:
                return None
        return self._roll(active, reason=reason)

    def stop_session(self, session_id: str) -> FinalSummary:
        active = self._active(session_id)
        session = active.session
        stopped_at = self.clock.now()
        marker_row = make_marker(session.sensor_id, session.sync_id or "", SYNC_STOP, stopped_at).to_row()
        with active.buffer_lock:
            if session.state is SessionState.STOPPED:
                raise SessionStateError(f"Session {session_id} is already stopped", session_id=session_id)
            if session.state is SessionState.STOPPING:
                raise SessionStateError(f"Session {session_id} is already stopping", session_id=session_id)
            previous = session.state
            session.state = SessionState.STOPPING
            active.buffer.append(marker_row)
            active.buffered_bytes += len(marker_row) + 1
        try:
            self._roll(active, reason="final")
        except OSError:
            # The rows went back into the buffer; withdraw the stop so it can be retried.
            with active.buffer_lock:
                if marker_row in active.buffer:
                    active.buffer.remove(marker_row)
                    active.buffered_bytes -= len(marker_row) + 1
                session.state = previous
            logger.error("Final chunk of session %s could not be written", session_id)
            raise

        with active.write_lock:
            manifest = active.manifest
            directory = session.directory
            session_path = directory / SESSION_FILENAME
            names = manifest.chunk_names()
            try:
                rows = concatenate_chunks(directory, names, session_path)
                if rows != manifest.total_rows:
                    logger.warning(
                        "Session %s consolidated %d rows but manifest lists %d",
                        session_id,
                        rows,
                        manifest.total_rows,
                    )
                digest = sha256_file(session_path)
                final = manifest.model_copy(
                    update={
                        "stopped_at": stopped_at,
                        "state": SessionState.STOPPED.value,
                        "session_sha256": digest,
                        "last_updated": stopped_at,
                    }
                )
                write_manifest(directory, final)
            except OSError as exc:
                if is_capacity_error(exc):
                    self._fail(active, "disk full while finalizing session")
                    raise InsufficientStorageError(
                        f"No space to finalize session {session_id}", session_id=session_id
                    ) from exc
                raise
            for name in names:
                (directory / name).unlink(missing_ok=True)
            active.manifest = final

        session.state = SessionState.STOPPED
        session.stopped_at = stopped_at
        summary = FinalSummary(
            session_id=session_id,
            session_file=session_path,
            total_rows=final.total_rows,
            total_bytes=session_path.stat().st_size,
            chunk_count=len(names),
            session_sha256=digest,
            stopped_at=stopped_at,
        )
        logger.info(
            "Stopped session %s: %d rows in %d chunk(s), sha256=%s",
            session_id,
            summary.total_rows,
            summary.chunk_count,
            digest[:12],
        )
        return summary

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------
    def sessions(self) -> list[Session]:
        with self._lock:
            return [a.session for a in self._sessions.values()]

    def get_session(self, session_id: str) -> Session:
        return self._active(session_id).session

    def get_manifest(self, session_id: str) -> Manifest:
        with self._lock:
            active = self._sessions.get(session_id)
        if active is not None:
            return active.manifest
        return read_manifest(self.session_dir(session_id))

    def snapshot(self, session_id: str, since_index: int = 0) -> Manifest:
        manifest = self.get_manifest(session_id)
        return manifest.since(since_index) if since_index > 0 else manifest

    def session_dir(self, session_id: str) -> Path:
        with self._lock:
            active = self._sessions.get(session_id)
        if active is not None:
            return active.session.directory
        if _SESSION_ID_RE.match(session_id) and self.root.is_dir():
            for candidate in self.root.glob(f"**/*_{session_id}/{MANIFEST_FILENAME}"):
                return candidate.parent
        raise SessionNotFoundError(f"Session {session_id} not found", session_id=session_id)

    def chunk_path(self, session_id: str, name: str) -> Path:
        if name != SESSION_FILENAME and not CHUNK_NAME_RE.match(name):
            raise ChunkNotFoundError(f"Invalid file name {name!r}", session_id=session_id, name=name)
        path = self.session_dir(session_id) / name
        if not path.is_file():
            raise ChunkNotFoundError(
                f"{name} not found for session {session_id}", session_id=session_id, name=name
            )
        return path

    def session_file(self, session_id: str) -> Path:
        return self.chunk_path(session_id, SESSION_FILENAME)

    def stats(self, session_id: str) -> dict[str, object]:
        active = self._active(session_id)
        manifest = active.manifest
        with active.buffer_lock:
            buffered = len(active.buffer)
        return {
            "session_id": session_id,
            "state": active.session.state.value,
            "total_rows": manifest.total_rows,
            "total_bytes": manifest.total_bytes,
            "buffered_rows": buffered,
            "chunk_count": len(manifest.chunks),
            "last_chunk_index": manifest.chunks[-1].index if manifest.chunks else None,
            "error": active.session.error,
        }

    # ------------------------------------------------------------------
    # recovery
    # ------------------------------------------------------------------
    def recover_session(self, session_dir: Path, resume: bool = False) -> Session:
        """Bring a session directory back to a consistent state after a restart.

        Leftover temp files are discarded and the manifest is trusted as the
        record of what exists; it is rebuilt from the chunk listing when it is
        missing or unreadable. With ``resume`` an unfinished session goes back
        to ``recording``; otherwise it is registered in ``error`` so that
        :meth:`stop_session` can finalize it.
        """

        directory = Path(session_dir)
        if not directory.is_dir():
            raise SessionNotFoundError(f"No session directory at {directory}")
        discard_temp_files(directory)

        try:
            manifest = read_manifest(directory)
        except ManifestError as exc:
            logger.warning("Rebuilding manifest for %s: %s", directory, exc.detail)
            manifest = self._rebuild_manifest(directory)
            write_manifest(directory, manifest)

        listed = set(manifest.chunk_names())
        for path in sorted(directory.glob("chunk_*.csv")):
            if manifest.is_stopped or path.name not in listed:
                # Either consolidated already or written but never advertised.
                logger.warning("Removing unlisted or consolidated chunk %s", path)
                path.unlink(missing_ok=True)

        if manifest.is_stopped:
            state = SessionState.STOPPED
        elif resume:
            state = SessionState.RECORDING
        else:
            state = SessionState.ERROR

        config = SessionConfig(
            sensor_id=manifest.sensor_id or "unknown",
            mission=manifest.mission or "default",
            chunk_interval_s=manifest.chunk_interval_s,
            session_dir=directory,
            sync_id=manifest.sync_id,
            session_id=manifest.session_id,
        )
        session = Session(
            session_id=manifest.session_id,
            mission=config.mission,
            sensor_id=config.sensor_id,
            started_at=manifest.started_at,
            directory=directory,
            state=state,
            stopped_at=manifest.stopped_at,
            sync_id=manifest.sync_id,
            error="interrupted" if state is SessionState.ERROR else None,
        )
        if state is SessionState.RECORDING and manifest.state != state.value:
            manifest = manifest.model_copy(update={"state": state.value})
            write_manifest(directory, manifest)

        active = _ActiveSession(
            session=session,
            config=config,
            manifest=manifest,
            last_roll=self.clock.monotonic(),
        )
        with self._lock:
            self._sessions[session.session_id] = active
        logger.info(
            "Recovered session %s as %s (%d rows, %d chunks)",
            session.session_id,
            state.value,
            manifest.total_rows,
            len(manifest.chunks),
        )
        return session

    def _rebuild_manifest(self, directory: Path) -> Manifest:
        entries: list[ChunkEntry] = []
        cursor = 0
        now = self.clock.now()
        for path in sorted(directory.glob("chunk_*.csv")):
            index = chunk_index(path.name)
            if index is None:
                continue
            rows = count_data_rows(path)
            entries.append(
                ChunkEntry(
                    index=index,
                    name=path.name,
                    size=path.stat().st_size,
                    sha256=sha256_file(path),
                    row_start=cursor,
                    row_end=cursor + rows,
                    row_count=rows,
                    timestamp=now,
                )
            )
            cursor += rows

        started_at = now
        sensor_id = ""
        if entries:
            first = (directory / entries[0].name).read_text("utf-8").splitlines()
            if len(first) > 1:
                try:
                    reading = Reading.from_row(first[1].split(","))
                    started_at = reading.timestamp_utc
                    sensor_id = reading.sensor_id
                except ValueError:
                    pass

        name = directory.name
        session_id = name.split("_", 1)[1] if "_" in name else name
        return Manifest(
            session_id=session_id,
            sensor_id=sensor_id,
            mission=directory.parent.name,
            state=SessionState.ERROR.value,
            started_at=started_at,
            chunks=entries,
            total_rows=cursor,
            total_bytes=sum(e.size for e in entries),
            next_chunk_index=entries[-1].index + 1 if entries else 0,
            last_updated=now,
        )

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------
    def _active(self, session_id: str) -> _ActiveSession:
        with self._lock:
            active = self._sessions.get(session_id)
        if active is None:
            raise SessionNotFoundError(f"Session {session_id} not found", session_id=session_id)
        return active

    @staticmethod
    def _require_recording(active: _ActiveSession) -> None:
        state = active.session.state
        if state is not SessionState.RECORDING:
            raise SessionStateError(
                f"Session {active.session.session_id} is {state.value}, not recording",
                session_id=active.session.session_id,
            )

    def _fail(self, active: _ActiveSession, message: str) -> None:
        active.session.state = SessionState.ERROR
        active.session.error = message
        try:
            write_manifest(
                active.session.directory,
                active.manifest.model_copy(update={"state": SessionState.ERROR.value}),
            )
        except OSError:
            logger.error("Could not persist error state for session %s", active.session.session_id)

    def _roll(self, active: _ActiveSession, reason: str) -> ChunkEntry | None:
        with active.write_lock:
            with active.buffer_lock:
                rows, active.buffer = active.buffer, []
                active.buffered_bytes = 0
            if not rows:
                return None

            manifest = active.manifest
            directory = active.session.directory
            index = manifest.next_chunk_index
            name = chunk_name(index)
            path = directory / name
            data = _HEADER_LINE + ("\n".join(rows) + "\n").encode("utf-8")
            try:
                atomic_write_bytes(path, data)
                entry = ChunkEntry(
                    index=index,
                    name=name,
                    size=len(data),
                    sha256=sha256_file(path),
                    row_start=manifest.total_rows,
                    row_end=manifest.total_rows + len(rows),
                    row_count=len(rows),
                    timestamp=self.clock.now(),
                )
                updated = manifest.with_chunk(entry, at=entry.timestamp)
                write_manifest(directory, updated)
            except OSError as exc:
                # An unadvertised chunk is an orphan; recovery would delete it anyway.
                path.unlink(missing_ok=True)
                if is_capacity_error(exc):
                    logger.error(
                        "Disk full in session %s: dropped %d buffered rows",
                        active.session.session_id,
                        len(rows),
                    )
                    self._fail(active, "disk full")
                    raise InsufficientStorageError(
                        f"No space left for session {active.session.session_id}",
                        session_id=active.session.session_id,
                    ) from exc
                with active.buffer_lock:
                    active.buffer[:0] = rows
                    active.buffered_bytes += sum(len(r) + 1 for r in rows)
                raise

            active.manifest = updated
            active.last_roll = self.clock.monotonic()

        logger.info(
            "Committed %s for session %s (%s): %d rows, %d bytes, sha256=%s",
            name,
            active.session.session_id,
            reason,
            entry.row_count,
            entry.size,
            entry.sha256[:12],
        )
        return entry


__all__ = [
    "ChunkStore",
    "concatenate_chunks",
    "count_data_rows",
    "read_manifest",
    "write_manifest",
]
