from __future__ import annotations

import json
from pathlib import Path

import pytest

from sensorsync.cli import main
from sensorsync.schemas.session import SessionConfig
from sensorsync.storage.chunk_store import ChunkStore, read_manifest
from sensorsync.storage.layout import UNIFIED_FILENAME
from sensorsync.storage.sync_metadata import ensure_sync_metadata, read_sync_metadata

from conftest import readings_at


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("SENSORSYNC_CHUNK_INTERVAL_S", raising=False)
    monkeypatch.delenv("SENSORSYNC_LOG_LEVEL", raising=False)


def _output(capsys: pytest.CaptureFixture[str]) -> dict:
    return json.loads(capsys.readouterr().out)


def test_recover_finalizes_interrupted_session(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    crashed = ChunkStore(tmp_path / "store")
    session = crashed.start_session(SessionConfig(sensor_id="Q1", mission="reef"))
    crashed.append_readings(session.session_id, readings_at([0, 100]))
    crashed.flush(session.session_id, force=True)
    (session.directory / "chunk_00001.csv.deadbeef.tmp").write_text("partial")

    code = main(["recover", str(session.directory), "--finalize"])

    payload = _output(capsys)
    assert code == 0
    assert payload["session"]["state"] == "stopped"
    assert payload["summary"]["total_rows"] == 4
    assert (session.directory / "session.csv").is_file()
    assert read_manifest(session.directory).is_stopped
    assert not list(session.directory.glob("*.tmp"))


def test_fuse_without_sessions_fails(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    root = tmp_path / "reef" / "session_20250301T120000Z"
    ensure_sync_metadata(root, "reef", "20250301T120000Z")

    code = main(["fuse", str(root), "--strategy", "inwater_driven", "--tolerance-ms", "40"])

    assert code == 1
    assert _output(capsys)["status"] == "failed"
    assert read_sync_metadata(root).fusion.status == "failed"
    assert not (root / UNIFIED_FILENAME).exists()


def test_invalid_environment_exits_with_config_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SENSORSYNC_CHUNK_INTERVAL_S", "5")

    assert main(["recover", "/nonexistent"]) == 2


def test_missing_session_directory_reports_error(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    code = main(["recover", str(tmp_path / "missing")])

    assert code == 1
    assert _output(capsys)["error_code"] == "SESSION_NOT_FOUND"
