"""
querycache Retryer - Retry With Backoff
=======================================

Retryer runs one logical operation to a single outcome. Failed attempts are
retried with a delay until the retry budget runs out:

```python
retryer = Retryer(fetch_user, retry=3, on_success=store, on_error=report)
user = await retryer.start()
```

Attempt Loop
------------

The run is a loop inside one asyncio task, not a chain of callbacks:

1. Invoke the operation. A synchronous raise counts as a failed attempt, the
   same as an awaitable that raises.
2. On success: call ``on_success(value)``, resolve the outcome, stop.
3. On failure: if ``failure_count`` has reached the retry limit, call
   ``on_error(error)``, reject the outcome, stop.
4. Otherwise compute the delay from the failure count *before* incrementing
   it, increment, report the failure through ``on_fail``, sleep, go to 1.

With the default delay this gives waits of 1000, 2000, 4000 ms and so on,
capped at 30000 ms. ``on_success`` and ``on_error`` are called at most once
between them.

Cancellation
------------

cancel() calls the ``abort`` callback so a running operation can stop early.
It also ends the loop: a pending backoff sleep is interrupted and the outcome
is rejected with CancelledError, and an attempt that is in flight gets no
retry after it fails. An attempt is never interrupted, so one that succeeds
after cancel() still resolves the outcome.
"""

import asyncio
import inspect
import logging
import math
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from .types import (
    DEFAULT_RETRY,
    RetryDelayValue,
    RetryValue,
    default_retry_delay,
)
from .util.timers import LoopTimerScheduler

T = TypeVar("T")

_default_timers = LoopTimerScheduler()


class CancelledError(Exception):
    """Outcome of a retry run that was cancelled between attempts."""

    def __init__(self, message: str = "Query was cancelled"):
        super().__init__(message)


class Retryer(Generic[T]):
    """
    Drive an operation through retries to a single outcome future.

    Args:
        fn: Zero-arg callable returning a value or an awaitable
        abort: Called by cancel() to signal the running operation
        on_success: Called once with the value of the successful attempt
        on_error: Called once with the error of the final failed attempt
        on_fail: Called as ``on_fail(failure_count, error)`` for every failure
            that will be retried
        retry: Max retries (default 3), True for unlimited, False for none, or
            ``f(failure_count, error) -> bool``
        retry_delay: Delay in ms, or ``f(failure_count, error) -> ms``
        sleep: Async ``sleep(ms)``; defaults to asyncio.sleep on the loop
    """

    def __init__(
        self,
        fn: Callable[[], Any],
        *,
        abort: Optional[Callable[[], None]] = None,
        on_success: Optional[Callable[[T], None]] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
        on_fail: Optional[Callable[[int, Exception], None]] = None,
        retry: Optional[RetryValue] = None,
        retry_delay: Optional[RetryDelayValue] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self._fn = fn
        self._abort = abort
        self._on_success = on_success
        self._on_error = on_error
        self._on_fail = on_fail
        self._retry = DEFAULT_RETRY if retry is None else retry
        self._retry_delay = retry_delay
        self._sleep = sleep or _default_timers.sleep

        self.failure_count = 0
        self.is_resolved = False
        self.future: Optional[asyncio.Future] = None
        self._cancelled = False
        self._task: Optional[asyncio.Task] = None
        self._sleeper: Optional[asyncio.Future] = None

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def start(self) -> asyncio.Future:
        """
        Schedule the attempt loop on the running event loop.

        Returns:
            Future settled with the outcome of the whole run

        Raises:
            RuntimeError: If called with no running event loop
        """
        if self.future is not None:
            return self.future
        loop = asyncio.get_running_loop()
        self.future = loop.create_future()
        self._task = loop.create_task(self._run())
        return self.future

    def cancel(self) -> None:
        """Signal the operation and stop further attempts. No-op once settled."""
        if self.is_resolved or self._cancelled:
            return
        self._cancelled = True
        logging.debug(f"Retryer cancelled after {self.failure_count} failure(s)")
        if self._abort is not None:
            self._abort()
        if self._sleeper is not None:
            self._sleeper.cancel()

    def should_retry(self, error: Exception) -> bool:
        if self._cancelled:
            return False
        retry = self._retry
        if callable(retry):
            return bool(retry(self.failure_count, error))
        if retry is True:
            limit = math.inf
        elif retry is False:
            limit = 0
        else:
            limit = retry
        return self.failure_count < limit

    def next_delay(self, error: Exception) -> float:
        delay = self._retry_delay
        if delay is None:
            return default_retry_delay(self.failure_count, error)
        if callable(delay):
            return delay(self.failure_count, error)
        return delay

    async def _run(self) -> None:
        try:
            while True:
                try:
                    value = self._fn()
                    if inspect.isawaitable(value):
                        value = await value
                except Exception as error:
                    if not self.should_retry(error):
                        self._reject(error)
                        return
                    delay = self.next_delay(error)
                    self.failure_count += 1
                    logging.debug(
                        f"Attempt {self.failure_count} failed ({error!r}), "
                        f"retrying in {delay}ms"
                    )
                    if self._on_fail is not None:
                        try:
                            self._on_fail(self.failure_count, error)
                        except Exception as e:
                            self._reject(e)
                            return
                    if not await self._backoff(delay):
                        self._reject(CancelledError())
                        return
                    continue
                self._resolve(value)
                return
        except asyncio.CancelledError:
            self._cancelled = True
            if not self.future.done():
                self.future.cancel()
            raise

    async def _backoff(self, delay: float) -> bool:
        """Sleep between attempts. Returns False if cancel() cut the sleep short."""
        if self._cancelled:
            return False
        self._sleeper = asyncio.ensure_future(self._sleep(delay))
        try:
            await self._sleeper
        except asyncio.CancelledError:
            if not self._cancelled:
                raise
        finally:
            self._sleeper = None
        return not self._cancelled

    def _resolve(self, value: T) -> None:
        if self.is_resolved:
            return
        self.is_resolved = True
        try:
            if self._on_success is not None:
                self._on_success(value)
        except Exception as e:
            self.future.set_exception(e)
            return
        self.future.set_result(value)

    def _reject(self, error: Exception) -> None:
        if self.is_resolved:
            return
        self.is_resolved = True
        try:
            if self._on_error is not None:
                self._on_error(error)
        except Exception as e:
            self.future.set_exception(e)
            return
        self.future.set_exception(error)
