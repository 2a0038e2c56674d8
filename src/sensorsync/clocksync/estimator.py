"""Round-trip clock offset estimation against the remote time endpoint.

For each sample the local clock is read before the request (``t1``) and
after the response (``t2``); the remote reports its own wall time ``r``.
The offset is ``r - (t1 + rtt / 2)`` taken from the lowest-RTT sample, with
an uncertainty of half that round trip. A measurement never raises: failures
come back as ``method="unsynced"`` with an error tag.
"""

from __future__ import annotations

import logging
from concurrent.futures import Executor, Future
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

from ..errors import ConnectivityError, SensorSyncError
from ..replication.client import RemoteClient
from ..scheduling import Clock, SystemClock
from ..storage.sync_metadata import update_time_sync
from ..utils.time import to_epoch_ms

logger = logging.getLogger(__name__)

METHOD_HANDSHAKE = "ntp_handshake_v1"
METHOD_UNSYNCED = "unsynced"

Remote = Union[str, RemoteClient]


@dataclass(frozen=True)
class ClockOffset:
    method: str
    offset_ms: Optional[float]
    uncertainty_ms: Optional[float]
    measured_at: datetime
    error: Optional[str] = None
    rtt_ms: Optional[float] = None
    samples_used: int = 0

    @property
    def synced(self) -> bool:
        return self.offset_ms is not None

    def as_time_sync(self) -> dict[str, object]:
        return {
            "method": self.method,
            "offset_ms": self.offset_ms,
            "uncertainty_ms": self.uncertainty_ms,
            "measured_at": self.measured_at,
            "error": self.error,
        }


@dataclass(frozen=True)
class _Sample:
    rtt_ms: float
    offset_ms: float


def _take_sample(client: RemoteClient, clock: Clock) -> _Sample:
    sent_wall = to_epoch_ms(clock.now())
    sent = clock.monotonic()
    body = client.server_time()
    rtt_ms = (clock.monotonic() - sent) * 1000.0
    remote_ms = body.get("remote_unix_ms")
    if isinstance(remote_ms, bool) or not isinstance(remote_ms, (int, float)):
        raise ValueError("invalid_remote_time")
    return _Sample(rtt_ms=rtt_ms, offset_ms=float(remote_ms) - (sent_wall + rtt_ms / 2.0))


def measure_offset(
    remote: Remote,
    samples: int = 5,
    timeout_s: float = 5.0,
    max_rtt_ms: float = 200.0,
    clock: Clock | None = None,
) -> ClockOffset:
    clock = clock or SystemClock()
    client = remote if isinstance(remote, RemoteClient) else RemoteClient(remote, timeout_s=timeout_s)
    taken: list[_Sample] = []
    last_error: Optional[str] = None
    try:
        for _ in range(max(samples, 1)):
            try:
                taken.append(_take_sample(client, clock))
            except ConnectivityError as exc:
                last_error = "timeout" if exc.extra.get("reason") == "timeout" else "network_error"
            except (SensorSyncError, ValueError) as exc:
                last_error = "invalid_remote_time"
                logger.debug("Invalid time response: %s", exc)
    finally:
        if client is not remote:
            client.close()

    measured_at = clock.now()
    if not taken:
        logger.warning("Clock offset measurement failed: %s", last_error)
        return ClockOffset(
            method=METHOD_UNSYNCED,
            offset_ms=None,
            uncertainty_ms=None,
            measured_at=measured_at,
            error=last_error or "network_error",
        )

    best = min(taken, key=lambda s: s.rtt_ms)
    if best.rtt_ms > max_rtt_ms:
        logger.warning("High RTT %.1fms (threshold %.1fms); offset discarded", best.rtt_ms, max_rtt_ms)
        return ClockOffset(
            method=METHOD_HANDSHAKE,
            offset_ms=None,
            uncertainty_ms=None,
            measured_at=measured_at,
            error="high_rtt",
            rtt_ms=best.rtt_ms,
            samples_used=len(taken),
        )

    logger.info(
        "Clock offset %.1fms +/- %.1fms (rtt %.1fms, %d samples)",
        best.offset_ms,
        best.rtt_ms / 2.0,
        best.rtt_ms,
        len(taken),
    )
    return ClockOffset(
        method=METHOD_HANDSHAKE,
        offset_ms=best.offset_ms,
        uncertainty_ms=best.rtt_ms / 2.0,
        measured_at=measured_at,
        rtt_ms=best.rtt_ms,
        samples_used=len(taken),
    )


def record_offset(session_root: Path, result: ClockOffset) -> None:
    update_time_sync(session_root, result.as_time_sync())


def _measure_and_record(remote: Remote, session_root: Path, kwargs: dict[str, object]) -> ClockOffset | None:
    try:
        result = measure_offset(remote, **kwargs)  # type: ignore[arg-type]
        record_offset(session_root, result)
        return result
    except Exception as exc:
        logger.exception("Background clock sync for %s failed", session_root)
        try:
            update_time_sync(session_root, {"method": METHOD_UNSYNCED, "error": str(exc)})
        except Exception:
            logger.exception("Could not record clock sync failure for %s", session_root)
        return None


def measure_in_background(
    executor: Executor, remote: Remote, session_root: Path, **kwargs: object
) -> Future:
    """Fire-and-forget measurement whose outcome lands in the sync metadata."""

    return executor.submit(_measure_and_record, remote, Path(session_root), dict(kwargs))


__all__ = [
    "ClockOffset",
    "measure_offset",
    "record_offset",
    "measure_in_background",
    "METHOD_HANDSHAKE",
    "METHOD_UNSYNCED",
]
