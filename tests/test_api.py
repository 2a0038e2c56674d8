"""Producer API: recording control, manifests, downloads and the time endpoint."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from sensorsync.api.main import create_app
from sensorsync.config import Settings
from sensorsync.scheduling import VirtualClock, VirtualScheduler
from sensorsync.storage.chunk_store import ChunkStore
from sensorsync.utils.time import to_epoch_ms

from conftest import T0, readings_at


@pytest.fixture
def client(
    store: ChunkStore, settings: Settings, scheduler: VirtualScheduler, clock: VirtualClock
) -> TestClient:
    return TestClient(create_app(store, settings, scheduler=scheduler, clock=clock))


def _start(client: TestClient, **extra: object) -> dict:
    res = client.post(
        "/record/start",
        json={"sensor_id": "Q-IW", "mission": "reef", "chunk_interval_s": 15, **extra},
    )
    assert res.status_code == 200, res.text
    return res.json()


def test_health_check(client: TestClient) -> None:
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}


def test_start_status_stop_cycle(client: TestClient, scheduler: VirtualScheduler) -> None:
    started = _start(client, sync_id="1234abcd-0000-0000-0000-000000000000")
    session_id = started["session_id"]
    assert started["state"] == "recording"
    assert started["sync_id"].startswith("1234abcd")

    recorder = client.app.state.recorder
    recorder.consume(session_id, readings_at([0, 250, 500], sensor_id="Q-IW"))
    scheduler.advance(15.0)

    status = client.get("/record/status", params={"session_id": session_id}).json()
    assert status["state"] == "recording"
    assert status["rows"] == 4
    assert status["chunk_count"] == 1
    assert status["last_chunk_index"] == 0
    assert status["buffered_rows"] == 0

    stopped = client.post("/record/stop", json={"session_id": session_id})
    assert stopped.status_code == 200
    body = stopped.json()
    assert body["total_rows"] == 5
    assert len(body["session_sha256"]) == 64

    again = client.post("/record/stop", json={"session_id": session_id})
    assert again.status_code == 409
    assert again.json()["error_code"] == "SESSION_STATE_CONFLICT"


def test_start_validates_interval(client: TestClient) -> None:
    res = client.post("/record/start", json={"sensor_id": "Q-IW", "chunk_interval_s": 5})
    assert res.status_code == 422


def test_snapshot_filters_by_since_index(client: TestClient) -> None:
    session_id = _start(client)["session_id"]
    store = client.app.state.store
    for i in range(3):
        store.append_readings(session_id, readings_at([i * 100], sensor_id="Q-IW"))
        store.flush(session_id, force=True)

    full = client.get("/snapshots", params={"session_id": session_id}).json()
    tail = client.get("/snapshots", params={"session_id": session_id, "since_index": 2}).json()

    assert [c["name"] for c in full["chunks"]] == [
        "chunk_00000.csv",
        "chunk_00001.csv",
        "chunk_00002.csv",
    ]
    assert [c["index"] for c in tail["chunks"]] == [2]
    assert tail["since_index"] == 2
    assert tail["total_rows"] == full["total_rows"] == 4
    assert tail["chunks"][0]["row_start"] == 3


def test_chunk_download_supports_range(client: TestClient) -> None:
    session_id = _start(client)["session_id"]
    store = client.app.state.store
    store.append_readings(session_id, readings_at([0, 1, 2], sensor_id="Q-IW"))
    store.flush(session_id, force=True)
    on_disk = store.chunk_path(session_id, "chunk_00000.csv").read_bytes()

    whole = client.get(f"/files/{session_id}/chunk_00000.csv")
    part = client.get(f"/files/{session_id}/chunk_00000.csv", headers={"Range": "bytes=0-9"})

    assert whole.status_code == 200
    assert whole.content == on_disk
    assert whole.headers["content-type"].startswith("text/csv")
    assert part.status_code == 206
    assert part.content == on_disk[:10]


def test_not_found_errors_use_envelope(client: TestClient) -> None:
    session_id = _start(client)["session_id"]

    missing_chunk = client.get(f"/files/{session_id}/chunk_00042.csv")
    bad_name = client.get(f"/files/{session_id}/manifest.json")
    missing_session = client.get("/snapshots", params={"session_id": "nope"})

    assert missing_chunk.status_code == 404
    assert missing_chunk.json()["error_code"] == "CHUNK_NOT_FOUND"
    assert bad_name.status_code == 404
    assert bad_name.json()["error_code"] == "CHUNK_NOT_FOUND"
    assert missing_session.status_code == 404
    body = missing_session.json()
    assert body["error_code"] == "SESSION_NOT_FOUND"
    assert "detail" in body


def test_time_endpoint_reports_node_clock(client: TestClient, clock: VirtualClock) -> None:
    clock.advance(1.5)

    body = client.get("/api/sync/time").json()

    assert body["schema_version"] == 1
    assert body["remote_unix_ms"] == int(to_epoch_ms(T0)) + 1500
    assert body["remote_iso"] == "2025-03-01T12:00:01.500000Z"
