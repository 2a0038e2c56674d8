"""Mirroring a remote session through the producer API."""

from __future__ import annotations

import errno
from pathlib import Path

import httpx
import pytest

import sensorsync.replication.puller as puller_module
from sensorsync.config import Settings
from sensorsync.replication.client import RemoteClient
from sensorsync.replication.puller import ReplicationPuller
from sensorsync.scheduling import VirtualClock, VirtualScheduler
from sensorsync.storage.atomic import TEMP_SUFFIX, sha256_file
from sensorsync.storage.chunk_store import read_manifest
from sensorsync.storage.layout import MIRROR_STATS_FILENAME, SESSION_FILENAME
from sensorsync.storage.sync_metadata import ensure_sync_metadata, read_sync_metadata

from conftest import REMOTE_URL, T0, Remote


@pytest.fixture
def session_root(tmp_path: Path) -> Path:
    root = tmp_path / "local" / "reef" / "session_20250301T120000Z"
    ensure_sync_metadata(root, "reef", "20250301T120000Z")
    return root


def _puller(remote: Remote, tmp_path: Path, settings: Settings) -> ReplicationPuller:
    clock = VirtualClock(T0)
    return ReplicationPuller(
        tmp_path / "mirrors",
        VirtualScheduler(clock),
        clock=clock,
        client_factory=remote.client_factory,
        settings=settings,
    )


def test_mirror_is_idempotent_and_finalizes(
    remote: Remote, session_root: Path, tmp_path: Path, settings: Settings
) -> None:
    session_id = remote.start()
    remote.record(session_id, [0, 100, 200])
    puller = _puller(remote, tmp_path, settings)

    stats = puller.start_sync(session_id, REMOTE_URL, 15_000, 500 * 1024, session_root=session_root)
    target = session_root / f"in-water_{session_id}"
    first = (target / "chunk_00000.csv").read_bytes()
    assert stats.chunks_downloaded == 1
    assert stats.bytes_mirrored == len(first)
    assert first == remote.store.chunk_path(session_id, "chunk_00000.csv").read_bytes()

    second = puller.sync_pass(session_id)
    assert second.downloaded == []
    assert second.bytes_downloaded == 0
    assert puller.get_stats(session_id).state == "idle"

    remote.record(session_id, [300])
    remote.client.stop_session(session_id)
    final = puller.stop_sync(session_id)

    remote_manifest = remote.store.get_manifest(session_id)
    local_csv = target / SESSION_FILENAME
    assert final.state == "complete"
    assert final.backlog_count == 0
    assert sha256_file(local_csv) == remote_manifest.session_sha256
    assert read_manifest(target).is_stopped
    assert not list(target.glob("chunk_*.csv"))
    assert not list(target.glob(f"*{TEMP_SUFFIX}"))

    in_water = read_sync_metadata(session_root).sensor("in_water")
    assert in_water.session_id == session_id
    assert in_water.session_csv == f"in-water_{session_id}/{SESSION_FILENAME}"
    assert in_water.total_rows == remote_manifest.total_rows == 6


def test_corrupted_chunk_is_rejected_then_retried(
    remote: Remote, session_root: Path, tmp_path: Path, settings: Settings
) -> None:
    session_id = remote.start()
    remote.record(session_id, [0, 100])
    served = remote.store.chunk_path(session_id, "chunk_00000.csv")
    original = served.read_bytes()
    served.write_bytes(original.replace(b"Q-IW", b"Q-XX", 1))
    puller = _puller(remote, tmp_path, settings)

    stats = puller.start_sync(session_id, REMOTE_URL, session_root=session_root)

    target = session_root / f"in-water_{session_id}"
    assert not (target / "chunk_00000.csv").exists()
    assert not list(target.glob(f"*{TEMP_SUFFIX}"))
    assert stats.error_count == 1
    assert stats.backlog_count == 1
    assert "Checksum mismatch" in (stats.last_error or "")

    served.write_bytes(original)
    result = puller.sync_pass(session_id)

    assert result.downloaded == ["chunk_00000.csv"]
    assert (target / "chunk_00000.csv").read_bytes() == original


def test_disk_full_halts_mirror(
    remote: Remote,
    session_root: Path,
    tmp_path: Path,
    settings: Settings,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    session_id = remote.start()
    remote.record(session_id, [0])

    def _disk_full(tmp: Path, path: Path) -> None:
        raise OSError(errno.ENOSPC, "No space left on device")

    monkeypatch.setattr(puller_module, "commit_temp", _disk_full)
    clock = VirtualClock(T0)
    scheduler = VirtualScheduler(clock)
    puller = ReplicationPuller(
        tmp_path / "mirrors",
        scheduler,
        clock=clock,
        client_factory=remote.client_factory,
        settings=settings,
    )

    stats = puller.start_sync(session_id, REMOTE_URL, session_root=session_root)

    assert stats.state == "error"
    assert "disk full" in (stats.last_error or "")
    assert scheduler.pending == 0
    assert puller.sync_pass(session_id).downloaded == []


def test_unreachable_remote_is_transient(tmp_path: Path, settings: Settings) -> None:
    def _refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    def _factory(url: str) -> RemoteClient:
        return RemoteClient(url, client=httpx.Client(base_url=url, transport=httpx.MockTransport(_refuse)))

    clock = VirtualClock(T0)
    scheduler = VirtualScheduler(clock)
    puller = ReplicationPuller(
        tmp_path / "mirrors", scheduler, clock=clock, client_factory=_factory, settings=settings
    )

    stats = puller.start_sync("sess-1", REMOTE_URL, poll_interval_ms=1_000)
    scheduler.advance(3.0)

    after = puller.get_stats("sess-1")
    assert stats.error_count == 1
    assert after.error_count == 4
    assert after.state == "idle"
    assert scheduler.pending == 1
    assert (tmp_path / "mirrors" / "sess-1" / MIRROR_STATS_FILENAME).is_file()


def test_restart_seeds_stats_from_disk(
    remote: Remote, session_root: Path, tmp_path: Path, settings: Settings
) -> None:
    session_id = remote.start()
    remote.record(session_id, [0, 100])
    remote.record(session_id, [200])
    first = _puller(remote, tmp_path, settings)
    before = first.start_sync(session_id, REMOTE_URL, session_root=session_root)
    first.stop_sync(session_id)

    restarted = _puller(remote, tmp_path, settings)
    seeded = restarted.start_sync(session_id, REMOTE_URL, session_root=session_root)

    assert seeded.chunks_downloaded == before.chunks_downloaded == 2
    assert seeded.bytes_mirrored == before.bytes_mirrored
    assert restarted.sync_pass(session_id).bytes_downloaded == 0
