"""End-to-end fusion of a paired recording directory."""

from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta
from pathlib import Path

import pandas as pd
import pytest

import sensorsync.data.fusion.session as fusion_session_module
from sensorsync.data.fusion import attempt_fusion, fuse_session, get_fusion_status
from sensorsync.data.fusion.engine import WIDE_COLUMNS
from sensorsync.scheduling import VirtualClock
from sensorsync.schemas.session import SessionConfig
from sensorsync.storage.chunk_store import ChunkStore
from sensorsync.storage.layout import UNIFIED_FILENAME, sensor_directory
from sensorsync.storage.sync_metadata import (
    ensure_sync_metadata,
    read_sync_metadata,
    update_sensor_metadata,
)

from conftest import T0, readings_at

SYNC_ID = "0badcafe-1111-2222-3333-444455556666"


def _record(root: Path, key: str, start: datetime, offsets_ms: list[float], duration_s: float) -> None:
    clock = VirtualClock(start)
    store = ChunkStore(root, clock=clock)
    session_id = f"{key}-session"
    store.start_session(
        SessionConfig(
            sensor_id=f"Q-{key}",
            mission="reef",
            sensor_key=key,
            chunk_interval_s=15.0,
            session_dir=sensor_directory(root, key, session_id),
            sync_id=SYNC_ID,
            session_id=session_id,
        )
    )
    store.append_readings(session_id, readings_at(offsets_ms, sensor_id=f"Q-{key}", start=start))
    clock.advance(duration_s)
    summary = store.stop_session(session_id)
    update_sensor_metadata(
        root,
        key,
        session_id=session_id,
        session_csv=str(summary.session_file.relative_to(root)),
        total_rows=summary.total_rows,
    )


@pytest.fixture
def root(tmp_path: Path) -> Path:
    root = tmp_path / "reef" / "session_20250301T120000Z"
    ensure_sync_metadata(root, "reef", "20250301T120000Z")
    return root


def test_paired_recording_fuses_onto_surface_clock(root: Path) -> None:
    _record(root, "surface", T0, [0, 1000, 2000], 3.0)
    # The in-water clock runs 1.5 s ahead for the whole recording.
    _record(root, "in_water", T0 + timedelta(milliseconds=1500), [0, 1000, 2000], 3.0)

    result = fuse_session(root)

    assert result.status == "complete"
    assert result.row_count == 3
    assert result.inwater_rows == result.surface_rows == 3
    unified = pd.read_csv(root / UNIFIED_FILENAME)
    assert list(unified.columns) == WIDE_COLUMNS
    assert list(unified["timestamp"]) == [
        "2025-03-01T12:00:00.000000Z",
        "2025-03-01T12:00:01.000000Z",
        "2025-03-01T12:00:02.000000Z",
    ]
    assert set(unified["surface_status"]) == {"fresh"}

    metadata = read_sync_metadata(root)
    assert metadata.fusion.status == "complete"
    assert metadata.fusion.row_count == 3
    assert metadata.time_sync.drift_model is not None
    assert metadata.time_sync.drift_model.type == "constant"
    assert metadata.time_sync.drift_model.start_offset_ms == pytest.approx(1500.0)
    assert [(m.type, m.quality) for m in metadata.time_sync.markers] == [
        ("START", "measured"),
        ("STOP", "measured"),
    ]
    assert metadata.time_sync.markers[0].sync_id == str(int("0badcafe", 16))


def test_single_sensor_is_skipped(root: Path) -> None:
    _record(root, "surface", T0, [0, 1000], 2.0)

    result = fuse_session(root)

    assert result.status == "skipped"
    assert "Only surface" in (result.error or "")
    assert not (root / UNIFIED_FILENAME).exists()
    status = get_fusion_status(root)
    assert status["fusion"]["status"] == "skipped"
    assert status["exists"] is False


def test_missing_session_file_fails(root: Path) -> None:
    _record(root, "surface", T0, [0], 1.0)
    update_sensor_metadata(root, "in_water", session_csv="in-water_gone/session.csv")

    result = fuse_session(root)

    assert result.status == "failed"
    assert "not found" in (result.error or "")
    assert read_sync_metadata(root).fusion.status == "failed"


def test_missing_metadata_fails(tmp_path: Path) -> None:
    assert fuse_session(tmp_path).status == "failed"


def test_attempt_fusion_waits_for_both_sensors(root: Path) -> None:
    _record(root, "surface", T0, [0, 1000], 2.0)
    assert attempt_fusion(root) is None
    assert read_sync_metadata(root).fusion.status == "pending"

    _record(root, "in_water", T0, [0, 1000], 2.0)
    result = attempt_fusion(root)

    assert result is not None and result.status == "complete"
    assert get_fusion_status(root)["exists"] is True
    # Output already written; nothing to do.
    assert attempt_fusion(root) is None


def test_concurrent_attempts_fuse_once(root: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _record(root, "surface", T0, [0, 1000], 2.0)
    _record(root, "in_water", T0, [0, 1000], 2.0)
    real_fuse = fusion_session_module.fuse_session
    calls: list[Path] = []
    entered = threading.Event()

    def _slow_fuse(session_root: Path, settings=None):
        calls.append(session_root)
        entered.set()
        time.sleep(0.2)
        return real_fuse(session_root, settings)

    monkeypatch.setattr(fusion_session_module, "fuse_session", _slow_fuse)
    results: list[object] = []

    def _attempt() -> None:
        results.append(attempt_fusion(root))

    first = threading.Thread(target=_attempt)
    first.start()
    assert entered.wait(5.0)
    second = threading.Thread(target=_attempt)
    second.start()
    first.join()
    second.join()

    assert len(calls) == 1
    assert sum(r is not None for r in results) == 1
    assert read_sync_metadata(root).fusion.status == "complete"
