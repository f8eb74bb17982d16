"""
querycache QueryCache - Hash to Query Registry
==============================================

QueryCache maps canonical key hashes to Query instances. It is the only place
queries are constructed, so there is never more than one Query per hash.

Removal is identity-guarded: remove(query) only deletes the entry if the
stored Query *is* the one passed in. A late removal for a query that has
since been replaced by a newer build for the same key leaves the newer one
alone.

The cache is itself Subscribable and broadcasts a CacheEvent whenever a query
is added, removed or updated, or gains or loses an observer.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from .query import Query
from .types import QueryOptions
from .util.hashing import as_key, hash_key, partial_match_key
from .util.subscribable import Subscribable
from .util.timers import LoopTimerScheduler


@dataclass(frozen=True)
class CacheEvent:
    """Notification broadcast to cache listeners."""

    type: str
    query: Query
    detail: Dict[str, Any] = field(default_factory=dict)


class QueryCache(Subscribable):
    """
    Registry of all queries, keyed by query hash.

    Args:
        scheduler: Time source handed to every Query built by this cache
    """

    def __init__(self, scheduler: Optional[Any] = None):
        super().__init__()
        self.scheduler = scheduler or LoopTimerScheduler()
        self._queries: Dict[str, Query] = {}

    def __len__(self) -> int:
        return len(self._queries)

    def build(self, options: Union[QueryOptions, Mapping[str, Any]]) -> Query:
        """
        Return the Query for ``options.query_key``, constructing it if absent.

        Args:
            options: Options carrying at least ``query_key``

        Returns:
            The one Query registered for the key's hash
        """
        options = QueryOptions.coerce(options)
        query_hash = options.query_hash or hash_key(options.query_key)
        query = self.get(query_hash)
        if query is None:
            query = Query(
                self,
                options.query_key,
                options,
                query_hash=query_hash,
                scheduler=self.scheduler,
            )
            self.add(query)
        return query

    def add(self, query: Query) -> None:
        if query.query_hash not in self._queries:
            self._queries[query.query_hash] = query
            logging.debug(f"Added {query!r} to cache")
            self.notify("added", query)

    def remove(self, query: Query) -> None:
        stored = self._queries.get(query.query_hash)
        if stored is None:
            return
        if stored is not query:
            logging.debug(f"Ignoring removal of replaced {query!r}")
            return
        query.destroy()
        del self._queries[query.query_hash]
        logging.debug(f"Removed {query!r} from cache")
        self.notify("removed", query)

    def get(self, query_hash: str) -> Optional[Query]:
        return self._queries.get(query_hash)

    def has(self, query_key: Any) -> bool:
        return hash_key(query_key) in self._queries

    def get_all(self) -> List[Query]:
        return list(self._queries.values())

    def find(self, query_key: Any) -> Optional[Query]:
        """Exact lookup by key."""
        return self.get(hash_key(query_key))

    def find_all(
        self,
        query_key: Any = None,
        exact: bool = False,
        predicate: Optional[Callable[[Query], bool]] = None,
    ) -> List[Query]:
        """
        Queries whose key matches ``query_key`` and that satisfy ``predicate``.

        Without ``exact``, ``query_key`` matches every key it is a prefix of,
        so ``["todos"]`` finds ``["todos", 1]`` and ``["todos", {"page": 2}]``.
        """
        queries = self.get_all()
        if query_key is not None:
            if exact:
                target = hash_key(query_key)
                queries = [q for q in queries if q.query_hash == target]
            else:
                prefix = as_key(query_key)
                queries = [q for q in queries if partial_match_key(q.query_key, prefix)]
        if predicate is not None:
            queries = [q for q in queries if predicate(q)]
        return queries

    def clear(self) -> None:
        for query in self.get_all():
            self.remove(query)

    def notify(self, event_type: str, query: Query, **detail: Any) -> None:
        if self.listeners:
            self.broadcast(CacheEvent(event_type, query, detail))
