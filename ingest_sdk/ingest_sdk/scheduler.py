"""
Timer scheduling for the flush pipeline.

The buffer's time trigger is a debounce: every add() and every completed
flush pushes the pending timer back by the full interval. DebounceTimer
implements that rearm primitive on top of a Scheduler.

Schedulers:
    ThreadScheduler: threading.Timer based, used in production
    ManualScheduler: fires callbacks only when advance() is called, for tests
"""

import heapq
import itertools
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, List, Optional, Tuple


class TimerHandle(ABC):
    """A scheduled callback that can be cancelled before it fires."""

    @abstractmethod
    def cancel(self) -> None:
        pass


class Scheduler(ABC):
    """Schedules one-shot callbacks."""

    @abstractmethod
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        """
        Run callback once after delay seconds.

        Args:
            delay: Seconds to wait
            callback: Zero-argument callable

        Returns:
            Handle that can cancel the callback
        """
        pass

    @abstractmethod
    def monotonic(self) -> float:
        """Current time in seconds on this scheduler's clock."""
        pass


class _ThreadTimerHandle(TimerHandle):
    def __init__(self, timer: threading.Timer):
        self._timer = timer

    def cancel(self) -> None:
        self._timer.cancel()


class ThreadScheduler(Scheduler):
    """Runs each callback on its own daemon threading.Timer."""

    def __init__(self, name: str = "ingest-flush-timer"):
        self.name = name

    def monotonic(self) -> float:
        return time.monotonic()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        timer = threading.Timer(delay, callback)
        timer.daemon = True
        timer.name = self.name
        timer.start()
        return _ThreadTimerHandle(timer)


class _ManualTimerHandle(TimerHandle):
    def __init__(self):
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler(Scheduler):
    """
    Deterministic scheduler driven by advance().

    Callbacks run synchronously on the thread that calls advance(), in due
    order. Nothing fires on its own.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._now = 0.0
        self._seq = itertools.count()
        self._pending: List[Tuple[float, int, _ManualTimerHandle, Callable[[], None]]] = []

    def monotonic(self) -> float:
        with self._lock:
            return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        handle = _ManualTimerHandle()
        with self._lock:
            heapq.heappush(self._pending, (self._now + delay, next(self._seq), handle, callback))
        return handle

    def advance(self, seconds: float) -> int:
        """
        Move time forward and fire every callback that became due.

        Returns:
            Number of callbacks fired
        """
        with self._lock:
            target = self._now + seconds

        fired = 0
        while True:
            # Pop one due callback at a time; callbacks may schedule new ones.
            with self._lock:
                if not self._pending or self._pending[0][0] > target:
                    self._now = target
                    return fired
                due, _, handle, callback = heapq.heappop(self._pending)
                self._now = due
            if handle.cancelled:
                continue
            callback()
            fired += 1

    @property
    def pending_count(self) -> int:
        """Number of scheduled, not cancelled callbacks."""
        with self._lock:
            return sum(1 for _, _, handle, _ in self._pending if not handle.cancelled)


class DebounceTimer:
    """
    Single outstanding timer that is pushed back on every rearm().

    The callback runs only after delay seconds pass with no rearm() or
    cancel(). rearm() moves the deadline; when the underlying timer fires
    before the current deadline it reschedules itself for the remainder, so
    a burst of rearm() calls costs one scheduled callback rather than one
    per call. A callback whose timer was cancelled is ignored even if the
    Scheduler already started running it.
    """

    def __init__(self, scheduler: Scheduler, delay: float, callback: Callable[[], None]):
        self._scheduler = scheduler
        self._delay = delay
        self._callback = callback
        self._lock = threading.Lock()
        self._handle: Optional[TimerHandle] = None
        self._deadline: Optional[float] = None
        self._generation = 0

    def rearm(self) -> None:
        """Push the deadline to delay seconds from now."""
        with self._lock:
            self._deadline = self._scheduler.monotonic() + self._delay
            if self._handle is None:
                self._schedule_locked(self._delay)

    def cancel(self) -> None:
        """Cancel the pending timer, if any."""
        with self._lock:
            if self._handle is not None:
                self._handle.cancel()
                self._handle = None
            self._deadline = None
            self._generation += 1

    @property
    def armed(self) -> bool:
        with self._lock:
            return self._handle is not None

    def _schedule_locked(self, delay: float) -> None:
        self._generation += 1
        generation = self._generation
        self._handle = self._scheduler.call_later(delay, lambda: self._fire(generation))

    def _fire(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation or self._deadline is None:
                return
            remaining = self._deadline - self._scheduler.monotonic()
            if remaining > 1e-9:
                self._schedule_locked(remaining)
                return
            self._handle = None
            self._deadline = None
        self._callback()
