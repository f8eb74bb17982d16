"""
Removable - Delayed Eviction
============================

Base class for cache entries that evict themselves after sitting unused for
``gc_time`` milliseconds. Subclasses decide in optional_remove() whether the
entry is still unused when the timer fires.
"""

import logging
import math
from abc import ABC, abstractmethod
from typing import Any, Optional

from .types import DEFAULT_GC_TIME
from .util.timers import LoopTimerScheduler, cancel_timer


def is_valid_timeout(value: Any) -> bool:
    return isinstance(value, (int, float)) and value >= 0 and not math.isinf(value)


class Removable(ABC):
    """
    Owns one GC timer.

    ``gc_time`` only ever grows: when several observers ask for different GC
    times, the longest one wins.
    """

    def __init__(self, scheduler: Optional[Any] = None):
        self.gc_time: Optional[float] = None
        self._scheduler = scheduler or LoopTimerScheduler()
        self._gc_timeout: Optional[Any] = None

    def destroy(self) -> None:
        self.clear_gc_timeout()

    def schedule_gc(self) -> None:
        """(Re)arm the eviction timer. An infinite gc_time never arms it."""
        self.clear_gc_timeout()
        if is_valid_timeout(self.gc_time):
            logging.debug(f"Scheduling GC of {self!r} in {self.gc_time}ms")
            self._gc_timeout = self._scheduler.call_later(self.gc_time, self._on_gc_timeout)

    def update_gc_time(self, new_gc_time: Optional[float]) -> None:
        if new_gc_time is None:
            new_gc_time = DEFAULT_GC_TIME
        self.gc_time = max(self.gc_time or 0, new_gc_time)

    def clear_gc_timeout(self) -> None:
        cancel_timer(self._gc_timeout)
        self._gc_timeout = None

    @property
    def has_gc_timeout(self) -> bool:
        return self._gc_timeout is not None

    def _on_gc_timeout(self) -> None:
        self._gc_timeout = None
        self.optional_remove()

    @abstractmethod
    def optional_remove(self) -> None:
        """Evict the entry if nothing uses it any more."""
