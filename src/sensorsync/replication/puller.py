"""Pull replication of a remote session into a local mirror directory.

Each pass diffs the remote manifest against the chunk files already on disk
and downloads what is missing, so a pass can be re-run at any time (after a
crash, a disconnect or a restart) and converges on the same directory
contents without downloading anything twice.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from pydantic import TypeAdapter

from ..config import Settings
from ..data.fusion.session import attempt_fusion
from ..errors import (
    ChunkNotFoundError,
    IntegrityError,
    SensorSyncError,
    SessionStateError,
    is_capacity_error,
)
from ..scheduling import Clock, PeriodicTask, Scheduler, SystemClock
from ..schemas.manifest import CHUNK_NAME_RE, Manifest
from ..storage.atomic import (
    atomic_write_text,
    commit_temp,
    discard_temp_files,
    sha256_file,
    temp_path_for,
)
from ..storage.chunk_store import concatenate_chunks, write_manifest
from ..storage.layout import MIRROR_STATS_FILENAME, SESSION_FILENAME, sensor_directory
from ..storage.sync_metadata import update_sensor_metadata
from .bandwidth import BandwidthLimiter
from .client import RemoteClient

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str], RemoteClient]

DEFAULT_POLL_INTERVAL_MS = 15_000
DEFAULT_BANDWIDTH_CAP = 500 * 1024


@dataclass
class MirrorStats:
    """The only puller state exposed to callers."""

    session_id: str
    bytes_mirrored: int = 0
    last_sync_timestamp: Optional[datetime] = None
    backlog_count: int = 0
    chunks_downloaded: int = 0
    error_count: int = 0
    state: str = "idle"
    last_error: Optional[str] = None

    def as_dict(self) -> dict[str, object]:
        data = dataclasses.asdict(self)
        if self.last_sync_timestamp is not None:
            data["last_sync_timestamp"] = self.last_sync_timestamp.isoformat()
        return data


_stats_adapter = TypeAdapter(MirrorStats)


@dataclass
class PassResult:
    downloaded: list[str] = field(default_factory=list)
    rejected: list[str] = field(default_factory=list)
    bytes_downloaded: int = 0
    backlog: int = 0
    remote_stopped: bool = False
    finalized: bool = False
    error: Optional[str] = None


@dataclass
class _Mirror:
    session_id: str
    endpoint: str
    target_dir: Path
    session_root: Optional[Path]
    client: RemoteClient
    limiter: BandwidthLimiter
    stats: MirrorStats
    task: Optional[PeriodicTask] = None
    pass_lock: threading.Lock = field(default_factory=threading.Lock)


def _local_chunks(directory: Path) -> dict[str, int]:
    return {
        path.name: path.stat().st_size
        for path in directory.iterdir()
        if path.is_file() and CHUNK_NAME_RE.match(path.name)
    }


class ReplicationPuller:
    """Runs one mirror loop per remote session."""

    def __init__(
        self,
        mirror_root: Path,
        scheduler: Scheduler,
        clock: Clock | None = None,
        client_factory: ClientFactory | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.mirror_root = Path(mirror_root)
        self.scheduler = scheduler
        self.clock: Clock = clock or SystemClock()
        self.settings = settings or Settings()
        self.client_factory: ClientFactory = client_factory or (
            lambda url: RemoteClient(url, timeout_s=self.settings.http_timeout_s)
        )
        self._mirrors: dict[str, _Mirror] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # control
    # ------------------------------------------------------------------
    def start_sync(
        self,
        session_id: str,
        remote_endpoint: str,
        poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
        bandwidth_cap_bytes_per_sec: int = DEFAULT_BANDWIDTH_CAP,
        *,
        target_dir: Path | None = None,
        session_root: Path | None = None,
    ) -> MirrorStats:
        if poll_interval_ms <= 0:
            raise ValueError("poll_interval_ms must be positive")
        if target_dir is None:
            target_dir = (
                sensor_directory(session_root, "in_water", session_id)
                if session_root is not None
                else self.mirror_root / session_id
            )
        target_dir = Path(target_dir)
        target_dir.mkdir(parents=True, exist_ok=True)
        discard_temp_files(target_dir)

        with self._lock:
            if session_id in self._mirrors:
                raise SessionStateError(f"Already mirroring {session_id}", session_id=session_id)
            mirror = _Mirror(
                session_id=session_id,
                endpoint=remote_endpoint,
                target_dir=target_dir,
                session_root=Path(session_root) if session_root is not None else None,
                client=self.client_factory(remote_endpoint),
                limiter=BandwidthLimiter(bandwidth_cap_bytes_per_sec, self.clock),
                stats=self._seed_stats(session_id, target_dir),
            )
            self._mirrors[session_id] = mirror

        logger.info(
            "Mirroring %s from %s into %s (poll=%dms, cap=%dB/s)",
            session_id,
            remote_endpoint,
            target_dir,
            poll_interval_ms,
            bandwidth_cap_bytes_per_sec,
        )
        result = self.sync_pass(session_id)
        if not result.finalized and mirror.stats.state not in ("complete", "error"):
            mirror.task = self.scheduler.schedule_periodic(
                poll_interval_ms / 1000.0,
                lambda: self.sync_pass(session_id),
                name=f"mirror-{session_id[:8]}",
            )
        return self.get_stats(session_id)

    def stop_sync(self, session_id: str) -> MirrorStats:
        """Cancel the timer, run one final pass and forget the session."""

        mirror = self._mirror(session_id)
        if mirror.task is not None:
            mirror.task.cancel()
        if mirror.stats.state not in ("complete", "error"):
            self.sync_pass(session_id)
        with mirror.pass_lock:
            if mirror.stats.state == "syncing":
                mirror.stats.state = "idle"
            stats = dataclasses.replace(mirror.stats)
        with self._lock:
            self._mirrors.pop(session_id, None)
        mirror.client.close()
        logger.info("Stopped mirroring %s (%s)", session_id, stats.state)
        return stats

    def get_stats(self, session_id: str) -> MirrorStats:
        return dataclasses.replace(self._mirror(session_id).stats)

    def active_sessions(self) -> list[str]:
        with self._lock:
            return [sid for sid, m in self._mirrors.items() if m.stats.state in ("idle", "syncing")]

    # ------------------------------------------------------------------
    # passes
    # ------------------------------------------------------------------
    def sync_pass(self, session_id: str) -> PassResult:
        mirror = self._mirror(session_id)
        with mirror.pass_lock:
            result = PassResult()
            if mirror.stats.state in ("complete", "error"):
                return result
            mirror.stats.state = "syncing"
            try:
                self._run_pass(mirror, result)
            except OSError as exc:
                if is_capacity_error(exc):
                    self._halt(mirror, f"local disk full: {exc}")
                    result.error = "INSUFFICIENT_STORAGE"
                    return result
                self._record_error(mirror, f"local I/O error: {exc}")
                result.error = str(exc)
            if mirror.stats.state == "syncing":
                mirror.stats.state = "idle"
            return result

    def _run_pass(self, mirror: _Mirror, result: PassResult) -> None:
        stats = mirror.stats
        try:
            manifest = mirror.client.fetch_manifest(mirror.session_id)
        except SensorSyncError as exc:
            self._record_error(mirror, exc.detail)
            result.error = exc.error_code
            self._persist(mirror)
            return

        result.remote_stopped = manifest.is_stopped
        local = _local_chunks(mirror.target_dir)
        missing = [c for c in manifest.chunks if c.name not in local]
        stats.backlog_count = len(missing)
        unobtainable = False

        for entry in missing:
            try:
                size = self._download(mirror, entry.name, entry.sha256)
            except IntegrityError as exc:
                result.rejected.append(entry.name)
                self._record_error(mirror, exc.detail)
                continue
            except ChunkNotFoundError as exc:
                # Consolidated and removed remotely; only session.csv is left.
                unobtainable = True
                self._record_error(mirror, exc.detail)
                break
            except SensorSyncError as exc:
                self._record_error(mirror, exc.detail)
                result.error = exc.error_code
                break
            result.downloaded.append(entry.name)
            result.bytes_downloaded += size
            stats.bytes_mirrored += size
            stats.chunks_downloaded += 1
            stats.backlog_count -= 1
            stats.last_sync_timestamp = self.clock.now()
            self._persist(mirror)
            logger.info(
                "Mirrored %s/%s (%d bytes, backlog=%d)",
                mirror.session_id,
                entry.name,
                size,
                stats.backlog_count,
            )

        result.backlog = stats.backlog_count
        if manifest.is_stopped and (stats.backlog_count == 0 or unobtainable):
            result.finalized = self._finalize(mirror, manifest, result)
        stats.last_sync_timestamp = self.clock.now()
        self._persist(mirror)

    def _download(self, mirror: _Mirror, name: str, expected_sha256: str | None) -> int:
        """Stream ``name`` through the limiter into place; returns its size."""

        final = mirror.target_dir / name
        tmp = temp_path_for(final)
        block = self.settings.download_block_bytes
        size = 0
        try:
            with mirror.client.stream_file(mirror.session_id, name) as response:
                with open(tmp, "wb") as handle:
                    for data in response.iter_bytes(chunk_size=block):
                        mirror.limiter.acquire(len(data))
                        handle.write(data)
                        size += len(data)
                    handle.flush()
                    os.fsync(handle.fileno())
            actual = sha256_file(tmp)
            if expected_sha256 is not None and actual != expected_sha256:
                logger.warning(
                    "Rejected %s/%s: sha256 %s != advertised %s",
                    mirror.session_id,
                    name,
                    actual[:12],
                    expected_sha256[:12],
                )
                raise IntegrityError(
                    f"Checksum mismatch for {name}",
                    session_id=mirror.session_id,
                    name=name,
                )
            commit_temp(tmp, final)
        finally:
            tmp.unlink(missing_ok=True)
        return size

    def _finalize(self, mirror: _Mirror, manifest: Manifest, result: PassResult) -> bool:
        directory = mirror.target_dir
        dest = directory / SESSION_FILENAME
        names = manifest.chunk_names()
        verified = False

        if all((directory / name).is_file() for name in names):
            concatenate_chunks(directory, names, dest)
            verified = manifest.session_sha256 is None or sha256_file(dest) == manifest.session_sha256
            if not verified:
                logger.warning("Local consolidation of %s does not match remote hash", mirror.session_id)

        if not verified:
            try:
                size = self._download(mirror, SESSION_FILENAME, manifest.session_sha256)
            except SensorSyncError as exc:
                self._record_error(mirror, exc.detail)
                return False
            mirror.stats.bytes_mirrored += size
            result.bytes_downloaded += size

        write_manifest(directory, manifest)
        for name in names:
            (directory / name).unlink(missing_ok=True)

        stats = mirror.stats
        stats.state = "complete"
        stats.backlog_count = 0
        stats.last_sync_timestamp = self.clock.now()
        if mirror.task is not None:
            mirror.task.cancel()
        self._persist(mirror)
        logger.info(
            "Mirror of %s complete: %d rows, %d bytes mirrored",
            mirror.session_id,
            manifest.total_rows,
            stats.bytes_mirrored,
        )

        root = mirror.session_root
        if root is not None:
            update_sensor_metadata(
                root,
                "in_water",
                session_id=mirror.session_id,
                directory=directory.name,
                stopped_at=manifest.stopped_at,
                session_csv=str(dest.relative_to(root)),
                bytes_mirrored=stats.bytes_mirrored,
                total_rows=manifest.total_rows,
            )
            attempt_fusion(root, self.settings)
        return True

    # ------------------------------------------------------------------
    # bookkeeping
    # ------------------------------------------------------------------
    def _mirror(self, session_id: str) -> _Mirror:
        with self._lock:
            mirror = self._mirrors.get(session_id)
        if mirror is None:
            raise SessionStateError(f"Not mirroring {session_id}", session_id=session_id)
        return mirror

    def _seed_stats(self, session_id: str, target_dir: Path) -> MirrorStats:
        stats = MirrorStats(session_id=session_id)
        path = target_dir / MIRROR_STATS_FILENAME
        if path.is_file():
            try:
                stats = _stats_adapter.validate_json(path.read_bytes())
            except ValueError:
                logger.warning("Ignoring unreadable %s", path)
        local = _local_chunks(target_dir)
        if local:
            # Counters follow what is on disk so a restart never double counts.
            stats.bytes_mirrored = sum(local.values())
            stats.chunks_downloaded = len(local)
        if stats.state != "complete":
            stats.state = "idle"
        stats.session_id = session_id
        stats.last_error = None
        return stats

    def _record_error(self, mirror: _Mirror, message: str) -> None:
        mirror.stats.error_count += 1
        mirror.stats.last_error = message
        logger.warning("Mirror %s: %s (will retry)", mirror.session_id, message)

    def _halt(self, mirror: _Mirror, message: str) -> None:
        mirror.stats.state = "error"
        mirror.stats.error_count += 1
        mirror.stats.last_error = message
        if mirror.task is not None:
            mirror.task.cancel()
        logger.error("Mirror %s halted: %s", mirror.session_id, message)

    def _persist(self, mirror: _Mirror) -> None:
        atomic_write_text(
            mirror.target_dir / MIRROR_STATS_FILENAME,
            json.dumps(mirror.stats.as_dict(), indent=2),
        )


__all__ = [
    "ReplicationPuller",
    "MirrorStats",
    "PassResult",
    "DEFAULT_POLL_INTERVAL_MS",
    "DEFAULT_BANDWIDTH_CAP",
]
