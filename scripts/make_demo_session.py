"""Generate a paired demo recording and fuse it."""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

import numpy as np

from sensorsync.clocksync.estimator import METHOD_HANDSHAKE
from sensorsync.data.fusion.session import fuse_session
from sensorsync.scheduling import VirtualClock
from sensorsync.schemas.readings import Reading
from sensorsync.schemas.session import FinalSummary, SessionConfig
from sensorsync.storage.chunk_store import ChunkStore
from sensorsync.storage.layout import sensor_directory, session_root, unified_timestamp
from sensorsync.storage.sync_metadata import (
    ensure_sync_metadata,
    update_sensor_metadata,
    update_time_sync,
)

MISSION = "demo"
DURATION_S = 600
TICK_S = 0.05
SURFACE_PERIOD_S = 1.0
INWATER_PERIOD_S = 0.25
# The remote clock runs ahead of the local one and drifts further away.
INWATER_OFFSET_MS = 1_500.0
INWATER_DRIFT_PPM = 40.0
START = datetime(2024, 6, 1, 9, 0, 0, tzinfo=timezone.utc)

OUTPUT_DIR = Path(__file__).resolve().parents[1] / "data" / "samples"

rng = np.random.default_rng(seed=42)


def _signal(t: float, base: float, noise: float) -> float:
    """Slow tidal swing plus a short period wave and sensor noise."""
    return float(
        base
        + 0.8 * np.sin(t / 90.0)
        + 0.2 * np.sin(t / 7.0 + 0.4)
        + rng.normal(0, noise)
    )


def _reading(sensor_id: str, clock: VirtualClock, t: float, base: float) -> Reading:
    return Reading(
        timestamp_utc=clock.now(),
        sensor_id=sensor_id,
        mode="freerun",
        value=round(_signal(t, base, 0.02), 5),
        temperature=round(12.0 + rng.normal(0, 0.05), 3),
        supply_voltage=round(12.1 + rng.normal(0, 0.01), 3),
    )


def _record_metadata(root: Path, key: str, store: ChunkStore, summary: FinalSummary) -> None:
    session = store.get_session(summary.session_id)
    size_field = "bytes_mirrored" if key == "in_water" else "bytes_recorded"
    update_sensor_metadata(
        root,
        key,
        session_id=summary.session_id,
        directory=session.directory.name,
        started_at=session.started_at,
        stopped_at=summary.stopped_at,
        session_csv=str(summary.session_file.relative_to(root)),
        total_rows=summary.total_rows,
        **{size_field: summary.total_bytes},
    )


def write_demo_session() -> Path:
    stamp = unified_timestamp(START)
    root = session_root(OUTPUT_DIR, MISSION, stamp)
    ensure_sync_metadata(root, MISSION, stamp, now=START)

    surface_clock = VirtualClock(START)
    inwater_clock = VirtualClock(START + timedelta(milliseconds=INWATER_OFFSET_MS))
    surface_store = ChunkStore(root, clock=surface_clock)
    inwater_store = ChunkStore(root, clock=inwater_clock)

    sync_id = str(uuid.uuid4())
    sessions = {}
    for key, store in (("surface", surface_store), ("in_water", inwater_store)):
        session_id = str(uuid.uuid4())
        session = store.start_session(
            SessionConfig(
                sensor_id=f"Q-{key.upper()}",
                mission=MISSION,
                sensor_key=key,
                chunk_interval_s=15.0,
                session_dir=sensor_directory(root, key, session_id),
                sync_id=sync_id,
                session_id=session_id,
            )
        )
        sessions[key] = session.session_id

    rate = 1.0 + INWATER_DRIFT_PPM * 1e-6
    steps = int(DURATION_S / TICK_S)
    surface_every = int(round(SURFACE_PERIOD_S / TICK_S))
    inwater_every = int(round(INWATER_PERIOD_S / TICK_S))
    for step in range(1, steps + 1):
        surface_clock.advance(TICK_S)
        inwater_clock.advance(TICK_S * rate)
        t = step * TICK_S
        if step % surface_every == 0:
            surface_store.append_readings(
                sessions["surface"], [_reading("Q-SURFACE", surface_clock, t, 1.0)]
            )
        if step % inwater_every == 0:
            inwater_store.append_readings(
                sessions["in_water"], [_reading("Q-IN_WATER", inwater_clock, t, 10.0)]
            )
        surface_store.flush(sessions["surface"])
        inwater_store.flush(sessions["in_water"])

    for key, store in (("surface", surface_store), ("in_water", inwater_store)):
        summary = store.stop_session(sessions[key])
        _record_metadata(root, key, store, summary)

    update_time_sync(
        root,
        {
            "method": METHOD_HANDSHAKE,
            "offset_ms": INWATER_OFFSET_MS + float(rng.normal(0, 2.0)),
            "uncertainty_ms": 4.0,
            "measured_at": surface_clock.now(),
            "error": None,
        },
    )
    return root


def main() -> None:
    root = write_demo_session()
    result = fuse_session(root)
    print(f"Wrote paired recording to {root}")
    print(
        f"Fusion {result.status}: {result.row_count} rows "
        f"({result.inwater_rows} in-water, {result.surface_rows} surface)"
    )


if __name__ == "__main__":
    main()
