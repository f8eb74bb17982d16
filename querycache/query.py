"""
querycache Query - One Cache Entry
==================================

A Query owns the state of one cache entry, the fetch that fills it, and the
list of observers watching it.

State Machine
-------------

Every change goes through _dispatch(), which runs the reducer and then, in
the same synchronous step, tells every attached observer in attach order:

- ``fetch``: status becomes PENDING and fetch_status FETCHING. Existing data
  and error stay in place so stale data can be shown during a refetch.
- ``success``: data set, error cleared, status SUCCESS, data_updated_at = now.
- ``error``: error set, status ERROR. Data is left as it was.
- ``failed``: a retryable attempt failed; only the failure counters move.
- ``invalidate``: data is marked stale regardless of its age.

An observer that raises while being told does not stop the others; the first
error propagates once the cache has been told as well. By then the state has
already changed and a started fetch keeps running.

Fetching
--------

fetch() hands the query function to a Retryer together with a fresh abort
signal and returns the Retryer's outcome future. It does not deduplicate: a
second fetch() while one is running starts a second run, which takes over the
query state. The superseded run still settles its own future but no longer
dispatches. Observers check ``state.fetch_status`` before fetching.

Garbage Collection
------------------

When the last observer detaches, a timer of ``gc_time`` ms is armed. If it
fires while the query is still unobserved and idle, the query removes itself
from its cache. Attaching an observer disarms the timer.
"""

import asyncio
import dataclasses
import logging
from typing import TYPE_CHECKING, Any, List, Optional

from .removable import Removable
from .retryer import CancelledError, Retryer
from .types import (
    FetchStatus,
    QueryFunctionContext,
    QueryOptions,
    QueryState,
    QueryStatus,
    resolve_stale_time,
)
from .util.abort import AbortController
from .util.hashing import as_key, hash_key

if TYPE_CHECKING:
    from .query_cache import QueryCache
    from .query_observer import QueryObserver


class MissingQueryFnError(Exception):
    """Raised when a query is fetched without a query function."""


def get_default_state(options: QueryOptions, now: float) -> QueryState:
    """Initial state of a new query, seeded from ``initial_data`` if present."""
    data = options.initial_data
    if callable(data):
        data = data()
    if data is None:
        return QueryState()
    return QueryState(
        data=data,
        status=QueryStatus.SUCCESS,
        data_updated_at=now,
    )


class Query(Removable):
    """
    Cache entry with its own state machine, fetch lifecycle and observers.

    Queries are built by QueryCache.build(), never directly by consumers.

    Args:
        cache: Owning cache, the only place this query is registered
        query_key: Structured key
        options: Options of the first requester
        query_hash: Precomputed hash of ``query_key``
        scheduler: Time source providing now(), call_later() and sleep()
    """

    def __init__(
        self,
        cache: "QueryCache",
        query_key: Any,
        options: QueryOptions,
        query_hash: Optional[str] = None,
        scheduler: Optional[Any] = None,
    ):
        super().__init__(scheduler)
        self.query_key = as_key(query_key)
        self.query_hash = query_hash or hash_key(self.query_key)
        self.options = options
        self._cache = cache
        self._observers: List["QueryObserver"] = []
        self._retryer: Optional[Retryer] = None
        self._initial_state = get_default_state(options, self.now())
        self.state = self._initial_state
        self.update_gc_time(options.gc_time)
        self.schedule_gc()

    def __repr__(self) -> str:
        return f"Query({self.query_hash})"

    def now(self) -> float:
        return self._scheduler.now()

    # ------------------------------------------------------------------
    # Options and staleness
    # ------------------------------------------------------------------

    def set_options(self, options: Optional[QueryOptions]) -> None:
        if options is not None:
            self.options = options
        self.update_gc_time(self.options.gc_time)

    def is_stale_by_time(self, stale_time: float = 0) -> bool:
        """True if there is no data, or the data is older than ``stale_time`` ms."""
        return (
            not self.state.has_data
            or self.state.data_updated_at + stale_time < self.now()
        )

    def is_stale(self) -> bool:
        """Stale by the query's own stale_time, or explicitly invalidated."""
        return self.state.is_invalidated or self.is_stale_by_time(
            resolve_stale_time(self.options)
        )

    def is_fetching(self) -> bool:
        return self.state.fetch_status is FetchStatus.FETCHING

    @property
    def outcome(self) -> Optional[asyncio.Future]:
        """Outcome future of the most recent fetch, if any."""
        return self._retryer.future if self._retryer is not None else None

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def add_observer(self, observer: "QueryObserver") -> None:
        if observer in self._observers:
            return
        self._observers.append(observer)
        self.clear_gc_timeout()
        self._cache.notify("observer_added", self, observer=observer)

    def remove_observer(self, observer: "QueryObserver") -> None:
        if observer not in self._observers:
            return
        self._observers.remove(observer)
        if not self._observers:
            self.schedule_gc()
        self._cache.notify("observer_removed", self, observer=observer)

    def get_observers_count(self) -> int:
        return len(self._observers)

    def is_active(self) -> bool:
        """True if at least one attached observer is enabled."""
        return any(observer.options.enabled is not False for observer in self._observers)

    def optional_remove(self) -> None:
        if not self._observers and not self.is_fetching():
            self._cache.remove(self)

    # ------------------------------------------------------------------
    # Fetch lifecycle
    # ------------------------------------------------------------------

    def fetch(self, options: Optional[QueryOptions] = None):
        """
        Start fetching and return the outcome future.

        Args:
            options: Replaces the query's options for this and later fetches

        Returns:
            asyncio.Future resolved with the data, or failed with the error
            of the last attempt once retries are exhausted

        Raises:
            RuntimeError: If called with no running event loop
            Exception: The first observer error from the fetch notification;
                the fetch is already running and its future is ``outcome``
        """
        asyncio.get_running_loop()
        self.set_options(options)
        fetch_options = self.options

        controller = AbortController()
        context = QueryFunctionContext(
            query_key=self.query_key,
            signal=controller.signal,
            meta=fetch_options.meta,
        )

        def fetch_fn():
            if fetch_options.query_fn is None:
                raise MissingQueryFnError(f"Missing query_fn for {self.query_hash}")
            return fetch_options.query_fn(context)

        def on_success(data: Any) -> None:
            if self._retryer is not retryer:
                return
            try:
                self._dispatch("success", data=data)
            finally:
                self.schedule_gc()

        def on_error(error: Exception) -> None:
            if self._retryer is not retryer:
                return
            try:
                self._dispatch("error", error=error)
            finally:
                self.schedule_gc()

        def on_fail(failure_count: int, error: Exception) -> None:
            if self._retryer is not retryer:
                return
            self._dispatch("failed", failure_count=failure_count, error=error)

        retryer = Retryer(
            fetch_fn,
            abort=lambda: controller.abort(CancelledError()),
            on_success=on_success,
            on_error=on_error,
            on_fail=on_fail,
            retry=fetch_options.retry,
            retry_delay=fetch_options.retry_delay,
            sleep=self._scheduler.sleep,
        )
        self._retryer = retryer
        # the first attempt runs on a later loop step, after observers
        # have seen the fetch action
        future = retryer.start()
        self._dispatch("fetch")
        return future

    def cancel(self) -> None:
        """Cancel the running retry run, if any."""
        if self._retryer is not None:
            self._retryer.cancel()

    def set_data(self, data: Any, updated_at: Optional[float] = None) -> Any:
        """Write data into the cache without fetching."""
        self._dispatch("success", data=data, updated_at=updated_at)
        return data

    def invalidate(self) -> None:
        if not self.state.is_invalidated:
            self._dispatch("invalidate")

    def reset(self) -> None:
        self.state = self._initial_state
        if not self._observers:
            self.schedule_gc()
        self._notify_observers("reset")

    def destroy(self) -> None:
        super().destroy()
        self.cancel()

    # ------------------------------------------------------------------
    # Reducer
    # ------------------------------------------------------------------

    def _reduce(self, state: QueryState, action: str, payload: dict) -> QueryState:
        if action == "fetch":
            return dataclasses.replace(
                state,
                status=QueryStatus.PENDING,
                fetch_status=FetchStatus.FETCHING,
                fetch_failure_count=0,
                fetch_failure_reason=None,
            )
        if action == "failed":
            return dataclasses.replace(
                state,
                fetch_failure_count=payload["failure_count"],
                fetch_failure_reason=payload["error"],
            )
        if action == "success":
            updated_at = payload.get("updated_at")
            return dataclasses.replace(
                state,
                data=payload["data"],
                error=None,
                status=QueryStatus.SUCCESS,
                fetch_status=FetchStatus.IDLE,
                data_updated_at=self.now() if updated_at is None else updated_at,
                data_update_count=state.data_update_count + 1,
                fetch_failure_count=0,
                fetch_failure_reason=None,
                is_invalidated=False,
            )
        if action == "error":
            error = payload["error"]
            return dataclasses.replace(
                state,
                error=error,
                status=QueryStatus.ERROR,
                fetch_status=FetchStatus.IDLE,
                error_updated_at=self.now(),
                error_update_count=state.error_update_count + 1,
                fetch_failure_count=state.fetch_failure_count + 1,
                fetch_failure_reason=error,
            )
        if action == "invalidate":
            return dataclasses.replace(state, is_invalidated=True)
        raise ValueError(f"Unknown query action: {action}")

    def _dispatch(self, action: str, **payload: Any) -> None:
        self.state = self._reduce(self.state, action, payload)
        logging.debug(f"{self!r} {action} -> {self.state.status.value}")
        self._notify_observers(action)

    def _notify_observers(self, action: str) -> None:
        """
        Tell every attached observer, then the cache, about a state change.

        An observer that raises does not stop the others or the cache event;
        the first error is re-raised once everyone has been told.
        """
        first_error: Optional[Exception] = None
        for observer in list(self._observers):
            if observer not in self._observers:
                continue
            try:
                observer.update_result()
            except Exception as e:
                if first_error is None:
                    first_error = e
        self._cache.notify("updated", self, action=action)
        if first_error is not None:
            raise first_error
