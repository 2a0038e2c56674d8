"""Clocks and cancellable periodic tasks.

Production code runs timers on daemon threads against the system clock.
Tests swap in :class:`VirtualClock` and :class:`VirtualScheduler` so timer
driven behaviour (flush rolls, poll passes, bandwidth waits) is replayed
deterministically without sleeping.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Protocol

logger = logging.getLogger(__name__)

Callback = Callable[[], None]


class Clock(Protocol):
    def monotonic(self) -> float: ...

    def now(self) -> datetime: ...

    def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Wall clock backed by :mod:`time`."""

    def monotonic(self) -> float:
        return time.monotonic()

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)


class VirtualClock:
    """Manually advanced clock; ``sleep`` moves time forward instantly."""

    def __init__(self, start: datetime | None = None) -> None:
        if start is None:
            start = datetime(2025, 1, 1, tzinfo=timezone.utc)
        elif start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        self._epoch = start.astimezone(timezone.utc)
        self._elapsed = 0.0
        self._lock = threading.Lock()

    def monotonic(self) -> float:
        return self._elapsed

    def now(self) -> datetime:
        return self._epoch + timedelta(seconds=self._elapsed)

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            self.advance(seconds)

    def advance(self, seconds: float) -> None:
        if seconds < 0:
            raise ValueError("cannot move a clock backwards")
        with self._lock:
            self._elapsed += seconds

    def advance_to(self, monotonic: float) -> None:
        with self._lock:
            if monotonic > self._elapsed:
                self._elapsed = monotonic


class PeriodicTask:
    """Handle returned by a scheduler; ``cancel`` stops future runs."""

    def __init__(self, name: str, interval_s: float, callback: Callback) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        self.name = name
        self.interval_s = interval_s
        self.callback = callback
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    def run_once(self) -> None:
        """Invoke the callback, logging instead of propagating failures."""

        try:
            self.callback()
        except Exception:
            logger.exception("Periodic task %s failed", self.name)


class Scheduler(Protocol):
    def schedule_periodic(
        self, interval_s: float, callback: Callback, name: str = "task"
    ) -> PeriodicTask: ...


class _ThreadTask(PeriodicTask):
    def __init__(self, name: str, interval_s: float, callback: Callback) -> None:
        super().__init__(name, interval_s, callback)
        self._thread = threading.Thread(target=self._loop, name=name, daemon=True)

    def start(self) -> None:
        self._thread.start()

    def _loop(self) -> None:
        while not self._cancelled.wait(self.interval_s):
            self.run_once()

    def cancel(self, wait: bool = False, timeout: float | None = None) -> None:
        # An in-flight callback finishes; the loop exits before the next run.
        super().cancel()
        if wait and threading.current_thread() is not self._thread:
            self._thread.join(timeout)


class ThreadScheduler:
    """Runs each periodic task on its own daemon thread."""

    def __init__(self) -> None:
        self._tasks: list[_ThreadTask] = []
        self._lock = threading.Lock()

    def schedule_periodic(
        self, interval_s: float, callback: Callback, name: str = "task"
    ) -> PeriodicTask:
        task = _ThreadTask(name, interval_s, callback)
        with self._lock:
            self._tasks = [t for t in self._tasks if not t.cancelled]
            self._tasks.append(task)
        task.start()
        return task

    def shutdown(self, timeout: float | None = 5.0) -> None:
        with self._lock:
            tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel(wait=True, timeout=timeout)


class VirtualScheduler:
    """Deterministic scheduler driven by :meth:`advance`.

    Due tasks run in order of due time, then registration order.
    """

    def __init__(self, clock: VirtualClock) -> None:
        self.clock = clock
        self._queue: list[tuple[float, int, PeriodicTask]] = []
        self._seq = itertools.count()

    def schedule_periodic(
        self, interval_s: float, callback: Callback, name: str = "task"
    ) -> PeriodicTask:
        task = PeriodicTask(name, interval_s, callback)
        due = self.clock.monotonic() + interval_s
        heapq.heappush(self._queue, (due, next(self._seq), task))
        return task

    @property
    def pending(self) -> int:
        return sum(1 for _, _, task in self._queue if not task.cancelled)

    def run_pending(self) -> int:
        return self._run_until(self.clock.monotonic())

    def advance(self, seconds: float) -> int:
        target = self.clock.monotonic() + seconds
        ran = self._run_until(target)
        self.clock.advance_to(target)
        return ran

    def _run_until(self, target: float) -> int:
        ran = 0
        while self._queue and self._queue[0][0] <= target:
            due, _, task = heapq.heappop(self._queue)
            if task.cancelled:
                continue
            self.clock.advance_to(due)
            task.run_once()
            ran += 1
            if not task.cancelled:
                heapq.heappush(self._queue, (due + task.interval_s, next(self._seq), task))
        return ran


__all__ = [
    "Clock",
    "SystemClock",
    "VirtualClock",
    "PeriodicTask",
    "Scheduler",
    "ThreadScheduler",
    "VirtualScheduler",
]
