"""Shared fixtures: virtual time, stores, reading factories and a fake remote node."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterable, Sequence

import pytest
from fastapi.testclient import TestClient

from sensorsync.api.main import create_app
from sensorsync.config import Settings
from sensorsync.replication.client import RemoteClient
from sensorsync.scheduling import VirtualClock, VirtualScheduler
from sensorsync.schemas.readings import Reading
from sensorsync.storage.chunk_store import ChunkStore

T0 = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
REMOTE_URL = "http://remote.test"

ReadingFactory = Callable[..., list[Reading]]


def readings_at(
    offsets_ms: Iterable[float],
    *,
    sensor_id: str = "Q1",
    values: Sequence[float] | None = None,
    start: datetime = T0,
) -> list[Reading]:
    offsets = list(offsets_ms)
    values = list(values) if values is not None else [float(i) for i in range(len(offsets))]
    return [
        Reading(
            timestamp_utc=start + timedelta(milliseconds=ms),
            sensor_id=sensor_id,
            mode="freerun",
            value=value,
            temperature=12.5,
            supply_voltage=12.0,
        )
        for ms, value in zip(offsets, values)
    ]


class Remote:
    """A producer node served in-process: its own store, clock and API app."""

    def __init__(self, root: Path, settings: Settings, start: datetime = T0) -> None:
        self.clock = VirtualClock(start)
        self.scheduler = VirtualScheduler(self.clock)
        self.store = ChunkStore(root, clock=self.clock)
        self.app = create_app(self.store, settings, scheduler=self.scheduler, clock=self.clock)
        self.http = TestClient(self.app)
        self.client = RemoteClient(REMOTE_URL, client=self.http)

    def start(self) -> str:
        return self.client.start_session("Q-IW", "reef", chunk_interval_s=15)["session_id"]

    def record(self, session_id: str, offsets_ms: list[float], *, flush: bool = True) -> None:
        start = self.store.get_session(session_id).started_at
        self.store.append_readings(session_id, readings_at(offsets_ms, sensor_id="Q-IW", start=start))
        if flush:
            self.store.flush(session_id, force=True)

    def client_factory(self, url: str) -> RemoteClient:
        assert url == REMOTE_URL
        return RemoteClient(url, client=self.http)


@pytest.fixture
def make_readings() -> ReadingFactory:
    return readings_at


@pytest.fixture
def clock() -> VirtualClock:
    return VirtualClock(T0)


@pytest.fixture
def scheduler(clock: VirtualClock) -> VirtualScheduler:
    return VirtualScheduler(clock)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(storage_path=tmp_path / "recordings", chunk_interval_s=15.0)


@pytest.fixture
def store(tmp_path: Path, clock: VirtualClock) -> ChunkStore:
    return ChunkStore(tmp_path / "store", clock=clock)


@pytest.fixture
def remote(tmp_path: Path, settings: Settings) -> Remote:
    return Remote(tmp_path / "remote", settings)
