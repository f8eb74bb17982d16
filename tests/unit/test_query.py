"""Unit tests for the Query state machine, fetch lifecycle and GC."""

import asyncio

import pytest

from querycache import (
    CancelledError,
    FetchStatus,
    MissingQueryFnError,
    QueryOptions,
    QueryStatus,
)


class RecordingObserver:
    """Stand-in observer that records the query state on every broadcast."""

    def __init__(self, query, name="observer", log=None, on_update=None):
        self.options = QueryOptions()
        self.query = query
        self.name = name
        self.log = log if log is not None else []
        self.on_update = on_update

    def update_result(self):
        self.log.append((self.name, self.query.state.status))
        if self.on_update is not None:
            self.on_update(self)


def value(data):
    async def query_fn(context):
        return data

    return query_fn


def failing(message="boom"):
    async def query_fn(context):
        raise ValueError(message)

    return query_fn


@pytest.mark.unit
@pytest.mark.query
def test_new_query_starts_pending_and_stale(cache):
    """A query without data is pending, idle and stale immediately"""
    query = cache.build(QueryOptions(query_key=["todos"], query_fn=value([])))

    assert query.state.status is QueryStatus.PENDING
    assert query.state.fetch_status is FetchStatus.IDLE
    assert query.state.data is None
    assert query.is_stale_by_time(0)


@pytest.mark.unit
@pytest.mark.query
def test_fetch_dispatches_pending_then_success(cache):
    """fetch() goes through pending, then success with the data"""
    query = cache.build(QueryOptions(query_key=["todos"], query_fn=value(["a"])))
    observer = RecordingObserver(query)
    query.add_observer(observer)

    async def scenario():
        return await query.fetch()

    assert asyncio.run(scenario()) == ["a"]
    assert observer.log == [
        ("observer", QueryStatus.PENDING),
        ("observer", QueryStatus.SUCCESS),
    ]
    assert query.state.data == ["a"]
    assert query.state.error is None
    assert query.state.fetch_status is FetchStatus.IDLE


@pytest.mark.unit
@pytest.mark.query
def test_staleness_follows_data_age(cache, timers):
    """Fresh after success until data_updated_at + stale_time has passed"""
    query = cache.build(QueryOptions(query_key=["todos"], query_fn=value([])))
    timers.advance(100)

    asyncio.run(query.fetch())

    assert query.state.data_updated_at == 100
    assert not query.is_stale_by_time(1000)

    timers.advance(1000)
    assert not query.is_stale_by_time(1000)

    timers.advance(1)
    assert query.is_stale_by_time(1000)


@pytest.mark.unit
@pytest.mark.query
def test_refetch_keeps_previous_data_while_pending(cache):
    """A refetch is pending but the old data stays visible"""
    responses = iter(["first", "second"])
    seen = []

    async def query_fn(context):
        return next(responses)

    query = cache.build(QueryOptions(query_key=["todos"], query_fn=query_fn))
    query.add_observer(
        RecordingObserver(
            query,
            on_update=lambda o: seen.append((o.query.state.status, o.query.state.data)),
        )
    )

    async def scenario():
        await query.fetch()
        await query.fetch()

    asyncio.run(scenario())

    assert seen == [
        (QueryStatus.PENDING, None),
        (QueryStatus.SUCCESS, "first"),
        (QueryStatus.PENDING, "first"),
        (QueryStatus.SUCCESS, "second"),
    ]


@pytest.mark.unit
@pytest.mark.query
def test_terminal_failure_sets_error_and_keeps_data(cache):
    """Exhausted retries move to error; prior data is left in place"""
    query = cache.build(
        QueryOptions(query_key=["todos"], query_fn=value("cached"), retry=0)
    )

    async def scenario():
        await query.fetch()
        with pytest.raises(ValueError, match="boom"):
            await query.fetch(
                QueryOptions(query_key=["todos"], query_fn=failing(), retry=0)
            )

    asyncio.run(scenario())

    assert query.state.status is QueryStatus.ERROR
    assert isinstance(query.state.error, ValueError)
    assert query.state.data == "cached"
    assert query.state.error_update_count == 1


@pytest.mark.unit
@pytest.mark.query
def test_status_stays_pending_through_transient_failures(cache, timers):
    """Retried failures only move the failure counters"""
    attempts = []
    statuses = []

    async def query_fn(context):
        attempts.append(1)
        if len(attempts) < 3:
            raise ValueError("flaky")
        return "ok"

    query = cache.build(QueryOptions(query_key=["todos"], query_fn=query_fn))
    query.add_observer(
        RecordingObserver(
            query,
            on_update=lambda o: statuses.append(
                (o.query.state.status, o.query.state.fetch_failure_count)
            ),
        )
    )

    asyncio.run(query.fetch())

    assert statuses == [
        (QueryStatus.PENDING, 0),
        (QueryStatus.PENDING, 1),
        (QueryStatus.PENDING, 2),
        (QueryStatus.SUCCESS, 0),
    ]
    assert timers.sleeps == [1000, 2000]


@pytest.mark.unit
@pytest.mark.query
def test_query_fn_receives_key_and_signal(cache):
    """The fetch context carries the query key and an abort signal"""
    contexts = []

    async def query_fn(context):
        contexts.append(context)
        return 1

    query = cache.build(QueryOptions(query_key=["user", {"id": 7}], query_fn=query_fn))
    asyncio.run(query.fetch())

    assert contexts[0].query_key == ["user", {"id": 7}]
    assert contexts[0].signal.aborted is False


@pytest.mark.unit
@pytest.mark.query
def test_cancel_signals_fetch_function_and_errors_without_retry(cache):
    """cancel() aborts the signal; a failing in-flight attempt is not retried"""
    attempts = []

    async def query_fn(context):
        attempts.append(1)
        reason = await context.signal.wait()
        raise reason

    query = cache.build(QueryOptions(query_key=["slow"], query_fn=query_fn))

    async def scenario():
        future = query.fetch()
        await asyncio.sleep(0)
        query.cancel()
        with pytest.raises(CancelledError):
            await future

    asyncio.run(scenario())

    assert attempts == [1]
    assert query.state.status is QueryStatus.ERROR
    assert isinstance(query.state.error, CancelledError)


@pytest.mark.unit
@pytest.mark.query
def test_cancel_without_running_fetch_is_noop(cache):
    """cancel() on an idle query does nothing"""
    query = cache.build(QueryOptions(query_key=["idle"]))

    query.cancel()

    assert query.state.status is QueryStatus.PENDING


@pytest.mark.unit
@pytest.mark.query
def test_missing_query_fn_fails_the_fetch(cache):
    """Fetching without a query function ends in MissingQueryFnError"""
    query = cache.build(QueryOptions(query_key=["nothing"], retry=0))

    async def scenario():
        with pytest.raises(MissingQueryFnError):
            await query.fetch()

    asyncio.run(scenario())

    assert isinstance(query.state.error, MissingQueryFnError)


@pytest.mark.unit
@pytest.mark.query
def test_fetch_outside_event_loop_raises_before_dispatch(cache):
    """Without a running loop fetch() raises and leaves the state untouched"""
    query = cache.build(QueryOptions(query_key=["todos"], query_fn=value(1)))

    with pytest.raises(RuntimeError):
        query.fetch()

    assert query.state.fetch_status is FetchStatus.IDLE


@pytest.mark.unit
@pytest.mark.query
def test_superseded_fetch_does_not_overwrite_state(cache):
    """Only the most recent fetch writes to the query state"""

    async def scenario():
        first_gate = asyncio.Event()

        async def slow(context):
            await first_gate.wait()
            return "old"

        query = cache.build(QueryOptions(query_key=["todos"], query_fn=slow))
        first = query.fetch()
        await asyncio.sleep(0)
        second = query.fetch(QueryOptions(query_key=["todos"], query_fn=value("new")))
        assert await second == "new"
        first_gate.set()
        assert await first == "old"
        return query

    query = asyncio.run(scenario())

    assert query.state.data == "new"


@pytest.mark.unit
@pytest.mark.query
def test_add_observer_is_idempotent(cache):
    """Adding the same observer twice attaches it once"""
    query = cache.build(QueryOptions(query_key=["todos"]))
    observer = RecordingObserver(query)

    query.add_observer(observer)
    query.add_observer(observer)

    assert query.get_observers_count() == 1


@pytest.mark.unit
@pytest.mark.query
def test_broadcast_survives_observer_detaching_itself(cache):
    """Second of three observers detaching mid-broadcast"""
    query = cache.build(QueryOptions(query_key=["todos"], query_fn=value(1)))
    log = []
    first = RecordingObserver(query, "first", log)
    second = RecordingObserver(
        query, "second", log, on_update=lambda o: query.remove_observer(o)
    )
    third = RecordingObserver(query, "third", log)
    for observer in (first, second, third):
        query.add_observer(observer)

    query.set_data("a")
    query.set_data("b")

    names = [name for name, _ in log]
    assert names == ["first", "second", "third", "first", "third"]


@pytest.mark.unit
@pytest.mark.query
def test_query_is_collected_after_gc_time_without_observers(cache, timers):
    """Removed gc_time ms after its last observer detaches"""
    query = cache.build(QueryOptions(query_key=["todos"], gc_time=5000))
    observer = RecordingObserver(query)
    query.add_observer(observer)
    timers.advance(60_000)
    assert cache.get(query.query_hash) is query

    query.remove_observer(observer)
    timers.advance(4999)
    assert cache.get(query.query_hash) is query

    timers.advance(1)
    assert cache.get(query.query_hash) is None


@pytest.mark.unit
@pytest.mark.query
def test_new_observer_cancels_pending_gc(cache, timers):
    """Attaching before the GC timer fires keeps the query forever"""
    query = cache.build(QueryOptions(query_key=["todos"], gc_time=5000))
    observer = RecordingObserver(query)
    query.add_observer(observer)
    query.remove_observer(observer)
    assert query.has_gc_timeout

    timers.advance(3000)
    query.add_observer(RecordingObserver(query))
    timers.advance(60_000)

    assert cache.get(query.query_hash) is query
    assert not query.has_gc_timeout


@pytest.mark.unit
@pytest.mark.query
def test_unobserved_query_is_collected_after_construction(cache, timers):
    """A query nobody ever observes is still evicted"""
    query = cache.build(QueryOptions(query_key=["orphan"], gc_time=1000))

    timers.advance(1000)

    assert not cache.has(["orphan"])
    assert query.state.status is QueryStatus.PENDING


@pytest.mark.unit
@pytest.mark.query
def test_infinite_gc_time_never_collects(cache, timers):
    """gc_time=inf never arms a timer"""
    query = cache.build(QueryOptions(query_key=["forever"], gc_time=float("inf")))

    timers.advance(10**9)

    assert cache.get(query.query_hash) is query
    assert timers.pending() == 0


@pytest.mark.unit
@pytest.mark.query
def test_gc_time_keeps_the_longest_requested(cache):
    """update_gc_time never shrinks the GC delay"""
    query = cache.build(QueryOptions(query_key=["todos"], gc_time=10_000))

    query.set_options(QueryOptions(query_key=["todos"], gc_time=1000))

    assert query.gc_time == 10_000


@pytest.mark.unit
@pytest.mark.query
def test_initial_data_seeds_success(cache, timers):
    """initial_data makes a new query successful without fetching"""
    timers.advance(50)
    query = cache.build(
        QueryOptions(query_key=["todos"], initial_data=lambda: ["seed"])
    )

    assert query.state.status is QueryStatus.SUCCESS
    assert query.state.data == ["seed"]
    assert query.state.data_updated_at == 50


@pytest.mark.unit
@pytest.mark.query
def test_invalidate_marks_stale_until_next_success(cache):
    """An invalidated query is stale regardless of age"""
    query = cache.build(QueryOptions(query_key=["todos"], stale_time=10_000))
    query.set_data("fresh")
    assert not query.is_stale()

    query.invalidate()
    assert query.is_stale()

    query.set_data("again")
    assert not query.is_stale()


@pytest.mark.unit
@pytest.mark.query
def test_reset_restores_initial_state(cache, timers):
    """reset() returns to the built state and restarts the GC countdown"""
    query = cache.build(QueryOptions(query_key=["todos"], gc_time=1000))
    query.set_data("x")
    timers.advance(500)

    query.reset()

    assert query.state.status is QueryStatus.PENDING
    assert query.state.data is None
    timers.advance(999)
    assert cache.get(query.query_hash) is query
    timers.advance(1)
    assert cache.get(query.query_hash) is None


@pytest.mark.unit
@pytest.mark.query
def test_raising_observer_does_not_wedge_the_fetch(cache):
    """One failing observer neither starves the others nor blocks the fetch"""

    def explode(observer):
        raise RuntimeError("render failed")

    query = cache.build(QueryOptions(query_key=["todos"], query_fn=value("done")))
    log = []
    query.add_observer(RecordingObserver(query, "broken", log, on_update=explode))
    query.add_observer(RecordingObserver(query, "healthy", log))
    events = []
    cache.subscribe(lambda event: events.append(event.detail.get("action")))

    async def scenario():
        with pytest.raises(RuntimeError, match="render failed"):
            query.fetch()
        assert query.outcome is not None
        with pytest.raises(RuntimeError, match="render failed"):
            await query.outcome

    asyncio.run(scenario())

    assert log == [
        ("broken", QueryStatus.PENDING),
        ("healthy", QueryStatus.PENDING),
        ("broken", QueryStatus.SUCCESS),
        ("healthy", QueryStatus.SUCCESS),
    ]
    assert events == ["fetch", "success"]
    assert query.state.data == "done"
    assert query.state.fetch_status is FetchStatus.IDLE
    assert query.has_gc_timeout
