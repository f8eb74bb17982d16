"""
querycache QueryClient - Process-Wide Handle
============================================

QueryClient carries the QueryCache and the default options every observer
and imperative call is resolved against. A UI layer keeps one client per
process and hands it to each QueryObserver.

Imperative API:

```python
client = QueryClient(default_options={"stale_time": 30_000})

user = await client.fetch_query({"query_key": ["user", 1], "query_fn": load_user})
client.get_query_data(["user", 1])          # cached value, no fetch
client.set_query_data(["user", 1], lambda old: {**old, "name": "Ada"})
await client.invalidate_queries(["user"])   # mark stale, refetch active ones
```

Default Client
--------------

get_query_client() lazily creates a module-level client on first access and
returns it thereafter. Tests reset it with _reset_query_client().
"""

import asyncio
import dataclasses
import logging
from typing import Any, Dict, List, Mapping, Optional, Union

from .query import Query
from .query_cache import QueryCache
from .types import QueryOptions, QueryState, resolve_stale_time
from .util.hashing import hash_key

OptionsLike = Union[QueryOptions, Mapping[str, Any]]


class QueryClient:
    """
    Owns a QueryCache and the default options applied to every query.

    Args:
        query_cache: Cache to use; a new one is created if omitted
        default_options: Mapping of QueryOptions field names to defaults used
            wherever the caller leaves a field as None
        scheduler: Time source for a newly created cache
    """

    def __init__(
        self,
        query_cache: Optional[QueryCache] = None,
        default_options: Optional[Mapping[str, Any]] = None,
        scheduler: Optional[Any] = None,
    ):
        self._query_cache = query_cache or QueryCache(scheduler)
        self._default_options: Dict[str, Any] = dict(default_options or {})

    def get_query_cache(self) -> QueryCache:
        return self._query_cache

    def get_default_options(self) -> Dict[str, Any]:
        return dict(self._default_options)

    def set_default_options(self, default_options: Mapping[str, Any]) -> None:
        self._default_options = dict(default_options)

    def default_query_options(self, options: OptionsLike) -> QueryOptions:
        """Merge client defaults into ``options`` and fill in the query hash."""
        defaulted = QueryOptions.coerce(options).merged_over(self._default_options)
        if defaulted.query_hash is None:
            defaulted = dataclasses.replace(
                defaulted, query_hash=hash_key(defaulted.query_key)
            )
        return defaulted

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    async def fetch_query(self, options: OptionsLike) -> Any:
        """
        Return the query's data, fetching it first if missing or stale.

        A fetch already running for the query is joined rather than repeated.

        Raises:
            Exception: The fetch function's error once retries are exhausted
        """
        defaulted = self.default_query_options(options)
        query = self._query_cache.build(defaulted)
        if query.is_fetching() and query.outcome is not None:
            return await query.outcome
        if query.state.is_invalidated or query.is_stale_by_time(
            resolve_stale_time(defaulted)
        ):
            return await query.fetch(defaulted)
        return query.state.data

    async def prefetch_query(self, options: OptionsLike) -> None:
        """Like fetch_query() but never raises; a failure stays in the query state."""
        try:
            await self.fetch_query(options)
        except Exception as e:
            logging.debug(f"Prefetch failed: {e!r}")

    async def invalidate_queries(
        self, query_key: Any = None, refetch_active: bool = True
    ) -> None:
        """
        Mark matching queries stale and refetch the active ones.

        Args:
            query_key: Key prefix to match; None matches every query
            refetch_active: Refetch queries that have an enabled observer
        """
        queries = self._query_cache.find_all(query_key)
        for query in queries:
            query.invalidate()
        if not refetch_active:
            return
        outcomes = [
            query.fetch()
            for query in queries
            if query.is_active() and not query.is_fetching()
        ]
        if outcomes:
            await asyncio.gather(*outcomes, return_exceptions=True)

    def cancel_queries(self, query_key: Any = None) -> None:
        for query in self._query_cache.find_all(query_key):
            query.cancel()

    # ------------------------------------------------------------------
    # Direct cache access
    # ------------------------------------------------------------------

    def get_query_data(self, query_key: Any) -> Any:
        query = self._query_cache.find(query_key)
        return query.state.data if query is not None else None

    def get_query_state(self, query_key: Any) -> Optional[QueryState]:
        query = self._query_cache.find(query_key)
        return query.state if query is not None else None

    def set_query_data(self, query_key: Any, updater: Any) -> Any:
        """
        Write data for ``query_key`` without fetching.

        Args:
            query_key: Key of the query to write
            updater: New data, or ``f(old_data) -> new_data``. A result of None
                leaves the cache untouched.

        Returns:
            The data written, or None
        """
        query = self._query_cache.find(query_key)
        previous = query.state.data if query is not None else None
        data = updater(previous) if callable(updater) else updater
        if data is None:
            return None
        if query is None:
            query = self._query_cache.build(
                self.default_query_options(QueryOptions(query_key=query_key))
            )
        return query.set_data(data)

    def find_all(self, query_key: Any = None) -> List[Query]:
        return self._query_cache.find_all(query_key)

    def remove_queries(self, query_key: Any = None) -> None:
        for query in self._query_cache.find_all(query_key):
            self._query_cache.remove(query)

    def clear(self) -> None:
        self._query_cache.clear()


_query_client: Optional[QueryClient] = None


def get_query_client() -> QueryClient:
    """
    Get or create the default client.

    Lazy singleton: created on first access, reused thereafter.
    """
    global _query_client
    if _query_client is None:
        _query_client = QueryClient()
    return _query_client


def set_query_client(client: QueryClient) -> None:
    """Install ``client`` as the default client."""
    global _query_client
    _query_client = client


def _reset_query_client() -> None:
    """
    Reset the default client for testing purposes.

    Clears its cache, cancelling pending GC timers, then drops the singleton.
    """
    global _query_client
    if _query_client is not None:
        _query_client.clear()
    _query_client = None
