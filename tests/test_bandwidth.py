from __future__ import annotations

import pytest

from sensorsync.replication.bandwidth import WINDOW_S, BandwidthLimiter
from sensorsync.scheduling import VirtualClock

MIB = 1024 * 1024


class _RecordingLimiter(BandwidthLimiter):
    def __init__(self, rate: int, clock: VirtualClock) -> None:
        super().__init__(rate, clock)
        self.grants: list[tuple[float, int]] = []

    def _acquire_piece(self, nbytes: int) -> float:
        waited = super()._acquire_piece(nbytes)
        self.grants.append((self.clock.monotonic(), nbytes))
        return waited


def test_rejects_non_positive_rate() -> None:
    with pytest.raises(ValueError):
        BandwidthLimiter(0)


def test_ten_mebibytes_at_500_kib_takes_at_least_twenty_seconds(clock: VirtualClock) -> None:
    rate = 500 * 1024
    limiter = _RecordingLimiter(rate, clock)

    for _ in range(10):
        limiter.acquire(MIB)

    elapsed = clock.monotonic()
    assert elapsed >= 10 * MIB / rate - 1e-6
    assert elapsed >= 20.0
    assert limiter.granted_total == 10 * MIB
    # Requests larger than the rate are split.
    assert max(size for _, size in limiter.grants) <= rate


def test_no_one_second_window_exceeds_rate(clock: VirtualClock) -> None:
    rate = 100_000
    limiter = _RecordingLimiter(rate, clock)

    for size in [40_000, 70_000, 10_000, 250_000, 5_000, 99_000]:
        limiter.acquire(size)

    for end, _ in limiter.grants:
        in_window = sum(
            size for at, size in limiter.grants if end - WINDOW_S + 1e-6 < at <= end
        )
        assert in_window <= rate


def test_small_grants_do_not_burst_ahead_of_rate(clock: VirtualClock) -> None:
    limiter = BandwidthLimiter(1_000, clock)

    waited = limiter.acquire(1_000)

    assert waited == pytest.approx(1.0)
    assert clock.monotonic() == pytest.approx(1.0)
