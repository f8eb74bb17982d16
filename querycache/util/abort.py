"""
Abort signalling for fetch functions.

An AbortController is created for every fetch. Its signal travels to the
fetch function inside the QueryFunctionContext; the function may poll
``signal.aborted``, await ``signal.wait()``, or register a callback. Nothing
forces the function to cooperate.
"""

import asyncio
import logging
from typing import Any, Callable, List, Optional


class AbortSignal:
    """Read side of an abort: observed by the fetch function."""

    def __init__(self) -> None:
        self.aborted = False
        self.reason: Any = None
        self._callbacks: List[Callable[[Any], None]] = []
        self._waiters: List[asyncio.Future] = []

    def add_callback(self, callback: Callable[[Any], None]) -> None:
        """Call ``callback(reason)`` on abort, or right away if already aborted."""
        if self.aborted:
            callback(self.reason)
        else:
            self._callbacks.append(callback)

    async def wait(self) -> Any:
        """Suspend until the signal is aborted, then return the reason."""
        if self.aborted:
            return self.reason
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        return await waiter

    def _fire(self, reason: Any) -> None:
        self.aborted = True
        self.reason = reason
        callbacks, self._callbacks = self._callbacks, []
        waiters, self._waiters = self._waiters, []
        for callback in callbacks:
            try:
                callback(reason)
            except Exception as e:
                logging.error(f"Error in abort callback: {e}")
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(reason)


class AbortController:
    """Write side of an abort: owned by the Query that started the fetch."""

    def __init__(self) -> None:
        self.signal = AbortSignal()

    def abort(self, reason: Optional[Any] = None) -> None:
        if not self.signal.aborted:
            self.signal._fire(reason)
