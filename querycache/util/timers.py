"""
Timer Scheduling
================

Query garbage collection and retry backoff both wait on time. This module
provides the two time sources the engine can run on:

- LoopTimerScheduler: wall-clock time, timers armed on the running asyncio
  event loop. This is the default.
- ManualTimerScheduler: virtual time that only moves when advance() (or its
  own sleep()) is called. Used by tests to make GC and backoff deterministic.

Both expose the same surface: now() in milliseconds, call_later(delay_ms,
callback) returning a handle with cancel(), and an async sleep(delay_ms).
"""

import asyncio
import heapq
import itertools
import logging
import time
from typing import Callable, List, Optional, Tuple


def default_clock() -> float:
    """Current wall-clock time in milliseconds."""
    return time.time() * 1000


class TimerHandle:
    """Cancelable handle for a timer armed on a ManualTimerScheduler."""

    __slots__ = ("deadline", "callback", "cancelled")

    def __init__(self, deadline: float, callback: Callable[[], None]):
        self.deadline = deadline
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class LoopTimerScheduler:
    """Timers backed by the running event loop's call_later()."""

    def now(self) -> float:
        return default_clock()

    def call_later(self, delay: float, callback: Callable[[], None]):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logging.debug(f"No running event loop, timer of {delay}ms not armed")
            return None
        return loop.call_later(max(delay, 0) / 1000, callback)

    async def sleep(self, delay: float) -> None:
        await asyncio.sleep(max(delay, 0) / 1000)


class ManualTimerScheduler:
    """
    Virtual clock and timer queue.

    Time starts at ``start`` and moves forward only through advance() or
    sleep(). Timers fire in deadline order; timers with equal deadlines fire
    in the order they were armed.

    Example:
        timers = ManualTimerScheduler()
        fired = []
        timers.call_later(5000, lambda: fired.append("gc"))
        timers.advance(4999)   # nothing
        timers.advance(1)      # fired == ["gc"]
    """

    def __init__(self, start: float = 0.0):
        self._now = start
        self._queue: List[Tuple[float, int, TimerHandle]] = []
        self._counter = itertools.count()
        self.sleeps: List[float] = []

    def now(self) -> float:
        return self._now

    def __call__(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle(self._now + max(delay, 0), callback)
        heapq.heappush(self._queue, (handle.deadline, next(self._counter), handle))
        return handle

    def pending(self) -> int:
        """Number of armed, uncancelled timers."""
        return sum(1 for _, _, handle in self._queue if not handle.cancelled)

    def advance(self, delay: float) -> None:
        """Move time forward by ``delay`` ms, firing every timer that falls due."""
        target = self._now + delay
        while self._queue and self._queue[0][0] <= target:
            _, _, handle = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self._now = handle.deadline
            handle.callback()
        self._now = target

    async def sleep(self, delay: float) -> None:
        """Record the delay, jump the clock past it and yield to the loop once."""
        self.sleeps.append(delay)
        self.advance(max(delay, 0))
        await asyncio.sleep(0)


def cancel_timer(handle: Optional[object]) -> None:
    if handle is not None:
        handle.cancel()
