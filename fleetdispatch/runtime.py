# fleet-dispatch/fleetdispatch/runtime.py
"""
Clocks, schedulers and executors used by the engine.

The engine never reads the wall clock or starts threads directly. It asks an
injected clock for the time, an injected scheduler for delayed and periodic
callbacks, and an injected executor for background route planning.

Two families are provided:
- Service mode: SystemClock, TimerScheduler (threading.Timer and daemon
  loop threads) and a concurrent.futures.ThreadPoolExecutor
- Deterministic mode: SimulatedClock, SimulatedScheduler and InlineExecutor,
  used by tests and by the offline simulation
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
from concurrent.futures import Future
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)


# =============================================================================
# CLOCKS
# =============================================================================

class SystemClock:
    """Wall clock."""

    def now(self) -> datetime:
        return datetime.now()


class SimulatedClock:
    """Manually advanced clock."""

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2024, 1, 1, 12, 0, 0)

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> datetime:
        self._now += timedelta(seconds=seconds)
        return self._now

    def set(self, moment: datetime) -> None:
        self._now = moment


# =============================================================================
# SCHEDULERS
# =============================================================================

class TimerHandle:
    """Cancellable handle for a scheduled callback."""

    def __init__(self) -> None:
        self.cancelled = False
        self._on_cancel: Optional[Callable[[], None]] = None

    def cancel(self) -> None:
        self.cancelled = True
        if self._on_cancel is not None:
            self._on_cancel()


class TimerScheduler:
    """
    Real-time scheduler for service mode.

    One-shot callbacks run on ``threading.Timer`` threads; periodic callbacks
    run on a daemon loop thread each. ``shutdown`` cancels everything pending.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._timers: List[threading.Timer] = []
        self._stops: List[threading.Event] = []

    def call_later(self, delay_seconds: float, fn: Callable[..., Any], *args: Any) -> TimerHandle:
        handle = TimerHandle()

        def _run() -> None:
            with self._lock:
                if timer in self._timers:
                    self._timers.remove(timer)
            if not handle.cancelled:
                fn(*args)

        timer = threading.Timer(delay_seconds, _run)
        timer.daemon = True
        handle._on_cancel = timer.cancel
        with self._lock:
            self._timers.append(timer)
        timer.start()
        return handle

    def call_every(self, interval_seconds: float, fn: Callable[[], Any], name: str = "loop") -> TimerHandle:
        stop = threading.Event()
        handle = TimerHandle()
        handle._on_cancel = stop.set

        def _loop() -> None:
            while not stop.wait(interval_seconds):
                try:
                    fn()
                except Exception:
                    logger.exception(f"Periodic task {name} failed")

        thread = threading.Thread(target=_loop, name=name, daemon=True)
        with self._lock:
            self._stops.append(stop)
        thread.start()
        return handle

    def shutdown(self) -> None:
        with self._lock:
            timers, self._timers = self._timers, []
            stops, self._stops = self._stops, []
        for timer in timers:
            timer.cancel()
        for stop in stops:
            stop.set()


class SimulatedScheduler:
    """
    Scheduler driven by a SimulatedClock.

    Nothing runs until ``advance`` (or ``run_until``) moves the clock past a
    task's due time. Tasks due at the same instant run in scheduling order.
    """

    def __init__(self, clock: SimulatedClock):
        self.clock = clock
        self._queue: List[Tuple[datetime, int, TimerHandle, Callable[..., Any], tuple]] = []
        self._seq = itertools.count()

    def call_later(self, delay_seconds: float, fn: Callable[..., Any], *args: Any) -> TimerHandle:
        handle = TimerHandle()
        due = self.clock.now() + timedelta(seconds=delay_seconds)
        heapq.heappush(self._queue, (due, next(self._seq), handle, fn, args))
        return handle

    def call_every(self, interval_seconds: float, fn: Callable[[], Any], name: str = "loop") -> TimerHandle:
        handle = TimerHandle()

        def _tick() -> None:
            if handle.cancelled:
                return
            fn()
            self._push(interval_seconds, handle, _tick)

        self._push(interval_seconds, handle, _tick)
        return handle

    def _push(self, delay_seconds: float, handle: TimerHandle, fn: Callable[[], Any]) -> None:
        due = self.clock.now() + timedelta(seconds=delay_seconds)
        heapq.heappush(self._queue, (due, next(self._seq), handle, fn, ()))

    @property
    def pending(self) -> int:
        return sum(1 for entry in self._queue if not entry[2].cancelled)

    def next_due(self) -> Optional[datetime]:
        for due, _, handle, _, _ in sorted(self._queue):
            if not handle.cancelled:
                return due
        return None

    def run_until(self, moment: datetime) -> int:
        """Run every task due at or before ``moment``, moving the clock along. Returns tasks run."""
        ran = 0
        while self._queue and self._queue[0][0] <= moment:
            due, _, handle, fn, args = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            if due > self.clock.now():
                self.clock.set(due)
            fn(*args)
            ran += 1
        if moment > self.clock.now():
            self.clock.set(moment)
        return ran

    def advance(self, seconds: float) -> int:
        return self.run_until(self.clock.now() + timedelta(seconds=seconds))

    def shutdown(self) -> None:
        for entry in self._queue:
            entry[2].cancel()
        self._queue.clear()


# =============================================================================
# EXECUTORS
# =============================================================================

class InlineExecutor:
    """Executor that runs submitted work immediately on the calling thread."""

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future

    def shutdown(self, wait: bool = True) -> None:
        pass
