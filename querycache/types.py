"""
querycache Types
================

Options, state and result types shared by the query engine.

QueryOptions fields left as ``None`` fall back to the QueryClient defaults and
then to the module constants below, so a caller only spells out what differs:

```python
from querycache import QueryOptions

async def load_todos(context):
    return await api.get("/todos", page=context.query_key[1]["page"])

options = QueryOptions(query_key=["todos", {"page": 1}], query_fn=load_todos,
                       stale_time=10_000)
```

All durations are milliseconds.
"""

import dataclasses
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Union

from .util.abort import AbortSignal

DEFAULT_RETRY = 3
DEFAULT_GC_TIME = 5 * 60 * 1000
DEFAULT_STALE_TIME = 0
MAX_RETRY_DELAY = 30 * 1000


class QueryStatus(Enum):
    """Whether a query has data, an error, or neither yet."""

    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


class FetchStatus(Enum):
    """Whether a fetch for the query is currently running."""

    FETCHING = "fetching"
    IDLE = "idle"


@dataclass(frozen=True)
class QueryFunctionContext:
    """Argument passed to every query function."""

    query_key: list
    signal: AbortSignal
    meta: Optional[Dict[str, Any]] = None


QueryFunction = Callable[[QueryFunctionContext], Union[Any, Awaitable[Any]]]
RetryValue = Union[bool, int, Callable[[int, Exception], bool]]
RetryDelayValue = Union[float, Callable[[int, Exception], float]]


@dataclass
class QueryOptions:
    """
    Options recognized by Query, QueryObserver and QueryClient.

    Attributes:
        query_key: Structured key identifying the query
        query_fn: Fetch function, called with a QueryFunctionContext
        query_hash: Canonical hash of query_key, filled in by the client
        retry: Max retry count, True for unlimited, False for none, or a
            predicate ``f(failure_count, error) -> bool``
        retry_delay: Delay in ms, or ``f(failure_count, error) -> ms``
        gc_time: Idle time in ms before an unobserved query is evicted
        stale_time: Age in ms after which data is considered stale
        enabled: When False, observers never fetch on their own
        initial_data: Value, or zero-arg callable, seeding a new query
        select: Observer-side projection applied to ``data``
        meta: Free-form mapping handed to the query function
    """

    query_key: Any = None
    query_fn: Optional[QueryFunction] = None
    query_hash: Optional[str] = None
    retry: Optional[RetryValue] = None
    retry_delay: Optional[RetryDelayValue] = None
    gc_time: Optional[float] = None
    stale_time: Optional[float] = None
    enabled: Optional[bool] = None
    initial_data: Any = None
    select: Optional[Callable[[Any], Any]] = None
    meta: Optional[Dict[str, Any]] = None

    @classmethod
    def coerce(cls, value: Union["QueryOptions", Mapping[str, Any]]) -> "QueryOptions":
        """Accept either a QueryOptions instance or a plain mapping."""
        if isinstance(value, cls):
            return value
        return cls(**dict(value))

    def merged_over(self, defaults: Mapping[str, Any]) -> "QueryOptions":
        """Return a copy where every field left as None takes the default."""
        overrides = {
            name: default
            for name, default in defaults.items()
            if getattr(self, name) is None
        }
        return dataclasses.replace(self, **overrides) if overrides else self


def resolve_stale_time(options: QueryOptions) -> float:
    return DEFAULT_STALE_TIME if options.stale_time is None else options.stale_time


def default_retry_delay(failure_count: int, error: Optional[Exception] = None) -> float:
    """Exponential backoff: 1s, 2s, 4s, ... capped at 30s."""
    return min(1000 * 2**failure_count, MAX_RETRY_DELAY)


@dataclass(frozen=True)
class QueryState:
    """
    Snapshot of one query's cache entry.

    ``status`` says what the query holds; ``fetch_status`` says whether a
    fetch is running. A refetch goes back to PENDING but keeps the previous
    ``data`` so it can still be shown.
    """

    data: Any = None
    error: Optional[Exception] = None
    status: QueryStatus = QueryStatus.PENDING
    fetch_status: FetchStatus = FetchStatus.IDLE
    data_updated_at: float = 0
    error_updated_at: float = 0
    data_update_count: int = 0
    error_update_count: int = 0
    fetch_failure_count: int = 0
    fetch_failure_reason: Optional[Exception] = None
    is_invalidated: bool = False

    @property
    def has_data(self) -> bool:
        return self.data_update_count > 0 or self.data is not None


@dataclass(frozen=True)
class QueryObserverResult:
    """Consumer-facing view of a query, as produced by QueryObserver."""

    data: Any
    error: Optional[Exception]
    status: QueryStatus
    fetch_status: FetchStatus
    data_updated_at: float
    error_updated_at: float
    failure_count: int
    failure_reason: Optional[Exception]
    is_pending: bool
    is_success: bool
    is_error: bool
    is_fetching: bool
    is_loading: bool
    is_stale: bool
