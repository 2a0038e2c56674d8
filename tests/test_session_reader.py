from __future__ import annotations

from pathlib import Path

import pandas as pd
import pytest

from conftest import T0, readings_at
from sensorsync.data.ingestion import SessionReader
from sensorsync.schemas.readings import Reading, sync_marker_value
from sensorsync.schemas.session import SessionConfig
from sensorsync.storage.chunk_store import ChunkStore

CSV = """timestamp,sensor_id,mode,value,TempC,Vin
2025-03-01T12:00:00.000000Z,Q1,SYNC_START,305441741,0,0
2025-03-01T12:00:02.000000Z,Q1,freerun,2.5,,
not-a-time,Q1,freerun,2.0,12.5,12.0
2025-03-01T12:00:01.000000Z,Q1,freerun,1.5,12.5,12.0
2025-03-01T12:00:03.000000Z,,freerun,3.0,1,1
2025-03-01T12:00:04.000000Z,Q1,SYNC_STOP,305441741,0,0
"""


def test_reader_extracts_markers_and_skips_bad_rows(tmp_path: Path) -> None:
    path = tmp_path / "session.csv"
    path.write_text(CSV)

    data = SessionReader.from_csv(path, source="surface")

    assert len(data) == 2
    assert data.skipped == 2
    assert data.start is not None and data.stop is not None
    assert data.start.sync_id == "305441741"
    assert data.start.timestamp == pd.Timestamp("2025-03-01T12:00:00Z")
    assert data.stop.timestamp == pd.Timestamp("2025-03-01T12:00:04Z")
    # Data rows come back sorted, without the markers.
    assert list(data.frame["value"]) == [1.5, 2.5]
    assert set(data.frame["mode"]) == {"freerun"}


def test_readings_keep_optional_columns_empty(tmp_path: Path) -> None:
    path = tmp_path / "session.csv"
    path.write_text(CSV)

    readings = SessionReader.from_csv(path).readings()

    assert [r.value for r in readings] == [1.5, 2.5]
    assert readings[0].temperature == 12.5
    assert readings[1].temperature is None
    assert readings[1].supply_voltage is None


def test_missing_columns_and_no_markers() -> None:
    df = pd.DataFrame(
        {
            "timestamp": ["2025-03-01T12:00:00Z", "2025-03-01 12:00:01"],
            "sensor_id": ["Q1", "Q1"],
            "mode": ["freerun", "freerun"],
            "value": ["1", "2"],
        }
    )

    data = SessionReader.from_dataframe(df)

    assert len(data) == 2
    assert data.start is None and data.stop is None
    assert data.frame["TempC"].isna().all()


def test_recorded_session_reads_back_every_row(store: ChunkStore) -> None:
    sync_id = "0badcafe-0000-4000-8000-000000000000"
    session = store.start_session(
        SessionConfig(sensor_id="Q-1 port;A", mission="reef", chunk_interval_s=15.0, sync_id=sync_id)
    )
    store.append_readings(session.session_id, readings_at([0, 100, 200], sensor_id="Q-1 port;A"))
    summary = store.stop_session(session.session_id)

    data = SessionReader.from_csv(summary.session_file)

    assert len(data) == 3
    assert data.skipped == 0
    assert data.start is not None and data.stop is not None
    assert data.start.sync_id == str(sync_marker_value(sync_id))
    assert set(data.frame["sensor_id"]) == {"Q-1 port;A"}


@pytest.mark.parametrize("sensor_id", ["Q,1", 'Q"1', "Q\n1"])
def test_ids_that_would_break_the_row_are_rejected(sensor_id: str) -> None:
    with pytest.raises(ValueError):
        readings_at([0], sensor_id=sensor_id)
    with pytest.raises(ValueError):
        SessionConfig(sensor_id=sensor_id)


def test_mode_with_separator_is_rejected() -> None:
    with pytest.raises(ValueError):
        Reading(timestamp_utc=T0, sensor_id="Q1", mode="a,b", value=1.0)
