"""
querycache - Asynchronous Query Cache
=====================================

An asyncio data cache: fetches are keyed by a canonical hash of a structured
key, results are cached and aged, failures are retried with backoff, and any
number of observers are told when a query changes.
"""

__version__ = "0.1.0"

from .query import MissingQueryFnError, Query
from .query_cache import CacheEvent, QueryCache
from .query_client import (
    QueryClient,
    _reset_query_client,
    get_query_client,
    set_query_client,
)
from .query_observer import QueryObserver
from .removable import Removable
from .retryer import CancelledError, Retryer
from .types import (
    DEFAULT_GC_TIME,
    DEFAULT_RETRY,
    FetchStatus,
    QueryFunctionContext,
    QueryObserverResult,
    QueryOptions,
    QueryState,
    QueryStatus,
    default_retry_delay,
)
from .util.abort import AbortController, AbortSignal
from .util.hashing import hash_key, partial_match_key
from .util.subscribable import Subscribable
from .util.timers import LoopTimerScheduler, ManualTimerScheduler

__all__ = [
    # Engine
    "Query",
    "QueryCache",
    "QueryClient",
    "QueryObserver",
    "Retryer",
    "Removable",
    "Subscribable",
    # Default client
    "get_query_client",
    "set_query_client",
    # Types
    "CacheEvent",
    "FetchStatus",
    "QueryFunctionContext",
    "QueryObserverResult",
    "QueryOptions",
    "QueryState",
    "QueryStatus",
    "DEFAULT_GC_TIME",
    "DEFAULT_RETRY",
    # Helpers
    "AbortController",
    "AbortSignal",
    "LoopTimerScheduler",
    "ManualTimerScheduler",
    "default_retry_delay",
    "hash_key",
    "partial_match_key",
    # Exceptions
    "CancelledError",
    "MissingQueryFnError",
    # Testing utilities (internal use)
    "_reset_query_client",
]
