"""Throughput cap for chunk downloads."""

from __future__ import annotations

import collections
import threading

from ..scheduling import Clock, SystemClock

WINDOW_S = 1.0
_EPSILON_S = 1e-9


class BandwidthLimiter:
    """Blocking limiter enforcing ``rate_bytes_per_sec``.

    Two rules apply to every grant:

    * capacity starts empty and accrues at ``rate``, so the bytes granted by
      elapsed time ``T`` never exceed ``rate * T``;
    * a log of the last second's grants keeps every one-second window at or
      under ``rate``.

    Requests larger than ``rate`` are granted in ``rate``-sized pieces.
    """

    def __init__(self, rate_bytes_per_sec: int, clock: Clock | None = None) -> None:
        if rate_bytes_per_sec <= 0:
            raise ValueError("rate_bytes_per_sec must be positive")
        self.rate = int(rate_bytes_per_sec)
        self.clock: Clock = clock or SystemClock()
        self.granted_total = 0
        self._started: float | None = None
        self._window: collections.deque[tuple[float, int]] = collections.deque()
        self._lock = threading.Lock()

    def acquire(self, nbytes: int) -> float:
        """Block until ``nbytes`` may be transferred; returns seconds waited."""

        waited = 0.0
        remaining = int(nbytes)
        while remaining > 0:
            piece = min(remaining, self.rate)
            waited += self._acquire_piece(piece)
            remaining -= piece
        return waited

    def _acquire_piece(self, nbytes: int) -> float:
        with self._lock:
            if self._started is None:
                self._started = self.clock.monotonic()
            waited = 0.0
            while True:
                now = self.clock.monotonic()
                wait = max(self._accrual_wait(nbytes, now), self._window_wait(nbytes, now))
                if wait <= _EPSILON_S:
                    break
                self.clock.sleep(wait)
                waited += wait
            self.granted_total += nbytes
            self._window.append((now, nbytes))
            return waited

    def _accrual_wait(self, nbytes: int, now: float) -> float:
        assert self._started is not None
        return (self.granted_total + nbytes) / self.rate - (now - self._started)

    def _window_wait(self, nbytes: int, now: float) -> float:
        while self._window and self._window[0][0] <= now - WINDOW_S:
            self._window.popleft()
        in_window = sum(size for _, size in self._window)
        excess = in_window + nbytes - self.rate
        if excess <= 0:
            return 0.0
        freed = 0
        for granted_at, size in self._window:
            freed += size
            if freed >= excess:
                return granted_at + WINDOW_S - now
        return WINDOW_S


__all__ = ["BandwidthLimiter", "WINDOW_S"]
