"""
querycache QueryObserver - Per-Consumer View of a Query
=======================================================

A QueryObserver watches one Query on behalf of one consumer, typically a UI
component. It turns the query's state into a QueryObserverResult and tells
its own listeners when that result changes.

Lifecycle
---------

- Creating an observer builds (or finds) its Query but does not attach.
- The first subscribe() attaches the observer to the Query and fetches if the
  data is missing or stale by this observer's ``stale_time``.
- Every time the Query changes state it calls update_result(). Listeners are
  only called when the new result differs from the last one delivered.
- Dropping the last listener detaches from the Query, which may arm its GC
  timer.

Re-keying
---------

set_options() with a different ``query_key`` moves the observer: it detaches
from the old Query, builds the Query for the new key, attaches to it, then
fetches if needed. The observer is never attached to both.

Usage:
    observer = QueryObserver(client, QueryOptions(query_key=["user", 1],
                                                  query_fn=load_user))
    unsubscribe = observer.subscribe(lambda result: render(result.data))
    ...
    unsubscribe()
"""

import asyncio
from typing import TYPE_CHECKING, Any, Callable, Mapping, Optional, Union

from .query import Query
from .types import (
    FetchStatus,
    QueryObserverResult,
    QueryOptions,
    QueryStatus,
    resolve_stale_time,
)
from .util.shallow import shallow_equal
from .util.subscribable import Subscribable

if TYPE_CHECKING:
    from .query_client import QueryClient


def consume_future_exception(future: asyncio.Future) -> None:
    """Mark a fetch outcome as retrieved; its error already lives in the query state."""
    if not future.cancelled():
        future.exception()


class QueryObserver(Subscribable):
    """
    Derives consumer-facing results from one Query.

    Args:
        client: Client whose cache holds the observed query
        options: Observer options; fields left as None take client defaults
    """

    def __init__(
        self,
        client: "QueryClient",
        options: Union[QueryOptions, Mapping[str, Any]],
    ):
        super().__init__()
        self._client = client
        self.options: Optional[QueryOptions] = None
        self._current_query: Optional[Query] = None
        self._current_result: Optional[QueryObserverResult] = None
        self._select_fn: Optional[Callable[[Any], Any]] = None
        self._select_input: Any = None
        self._select_output: Any = None
        self.set_options(options)

    # ------------------------------------------------------------------
    # Subscription lifecycle
    # ------------------------------------------------------------------

    def on_subscribe(self) -> None:
        if len(self.listeners) == 1:
            # the query may have been collected while nobody listened
            self._update_query()
            self._current_query.add_observer(self)
            if self._should_fetch(self._current_query, self.options):
                self._execute_fetch()
            else:
                self.update_result()

    def on_unsubscribe(self) -> None:
        if not self.has_listeners():
            self.destroy()

    def destroy(self) -> None:
        """Drop every listener and detach from the query."""
        self.listeners.clear()
        if self._current_query is not None:
            self._current_query.remove_observer(self)

    # ------------------------------------------------------------------
    # Options
    # ------------------------------------------------------------------

    def set_options(self, options: Union[QueryOptions, Mapping[str, Any]]) -> None:
        """
        Replace the observer's options.

        If the key hash changes, the observer moves to the Query for the new
        key. While subscribed, a fetch starts when the query changed, the
        observer was just enabled, or the stale time changed, and the data is
        stale under the new options.
        """
        prev_options = self.options

        self.options = self._client.default_query_options(options)
        query_changed = self._update_query()
        self._current_query.set_options(self.options)

        if self.has_listeners() and self._should_fetch(self._current_query, self.options):
            if (
                query_changed
                or prev_options is None
                or prev_options.enabled is False
                or resolve_stale_time(prev_options) != resolve_stale_time(self.options)
            ):
                self._execute_fetch()

        self.update_result()

    def _update_query(self) -> bool:
        """Point the observer at the Query for its current key. True if it moved."""
        cache = self._client.get_query_cache()
        query_hash = self.options.query_hash
        if self._current_query is not None and self._current_query.query_hash == query_hash:
            if cache.get(query_hash) is self._current_query:
                return False

        mounted = self.has_listeners()
        prev_query = self._current_query
        if prev_query is not None and mounted:
            prev_query.remove_observer(self)

        query = cache.build(self.options)
        self._current_query = query
        if mounted:
            query.add_observer(self)
        return query is not prev_query

    def get_query(self) -> Query:
        return self._current_query

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def get_current_result(self) -> QueryObserverResult:
        """The last result computed from the attached query."""
        return self._current_result

    def get_optimistic_result(
        self, options: Union[QueryOptions, Mapping[str, Any]]
    ) -> QueryObserverResult:
        """
        Compute the result for ``options`` without waiting for subscription.

        Builds the query if needed and, when its data is missing or stale by
        ``options.stale_time`` and nothing is fetching it yet, starts a fetch
        so the returned result already reports it.

        Raises:
            RuntimeError: If a fetch is needed and no event loop is running
        """
        defaulted = self._client.default_query_options(options)
        query = self._client.get_query_cache().build(defaulted)
        if self._should_fetch(query, defaulted):
            future = query.fetch(defaulted)
            future.add_done_callback(consume_future_exception)
        return self.create_result(query, defaulted)

    def create_result(self, query: Query, options: QueryOptions) -> QueryObserverResult:
        """Map a query's state into a QueryObserverResult."""
        state = query.state
        data = state.data
        if options.select is not None and state.has_data:
            data = self._select(options.select, data)

        status = state.status
        is_fetching = state.fetch_status is FetchStatus.FETCHING
        is_pending = status is QueryStatus.PENDING
        return QueryObserverResult(
            data=data,
            error=state.error,
            status=status,
            fetch_status=state.fetch_status,
            data_updated_at=state.data_updated_at,
            error_updated_at=state.error_updated_at,
            failure_count=state.fetch_failure_count,
            failure_reason=state.fetch_failure_reason,
            is_pending=is_pending,
            is_success=status is QueryStatus.SUCCESS,
            is_error=status is QueryStatus.ERROR,
            is_fetching=is_fetching,
            is_loading=is_pending and is_fetching,
            is_stale=state.is_invalidated
            or query.is_stale_by_time(resolve_stale_time(options)),
        )

    def _select(self, select: Callable[[Any], Any], data: Any) -> Any:
        # memoized on identity so an unchanged input keeps an unchanged output
        if select is self._select_fn and data is self._select_input:
            return self._select_output
        self._select_fn = select
        self._select_input = data
        self._select_output = select(data)
        return self._select_output

    def update_result(self) -> None:
        """Recompute the result; notify listeners only if it changed."""
        next_result = self.create_result(self._current_query, self.options)
        if shallow_equal(self._current_result, next_result):
            return
        self._current_result = next_result
        if self.has_listeners():
            self.broadcast(next_result)

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    def _should_fetch(self, query: Query, options: QueryOptions) -> bool:
        if options.enabled is False or query.is_fetching():
            return False
        return query.state.is_invalidated or query.is_stale_by_time(
            resolve_stale_time(options)
        )

    def _execute_fetch(self) -> asyncio.Future:
        self._update_query()
        future = self._current_query.fetch(self.options)
        future.add_done_callback(consume_future_exception)
        return future

    async def refetch(self, throw_on_error: bool = False) -> QueryObserverResult:
        """
        Fetch now, even if the data is fresh, and return the resulting result.

        Args:
            throw_on_error: Raise the fetch error instead of returning a result
                in error state
        """
        future = self._execute_fetch()
        try:
            await future
        except Exception:
            if throw_on_error:
                raise
        self.update_result()
        return self.get_current_result()
