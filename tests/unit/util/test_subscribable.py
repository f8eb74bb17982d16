"""Unit tests for the Subscribable listener registry."""

import pytest

from querycache import Subscribable


@pytest.mark.unit
def test_broadcast_calls_listeners_in_registration_order():
    """Listeners are invoked synchronously in the order they subscribed"""
    hub = Subscribable()
    calls = []
    hub.subscribe(lambda: calls.append("a"))
    hub.subscribe(lambda: calls.append("b"))
    hub.subscribe(lambda: calls.append("c"))

    hub.broadcast()

    assert calls == ["a", "b", "c"]


@pytest.mark.unit
def test_broadcast_passes_arguments_through():
    """Arguments given to broadcast() reach every listener"""
    hub = Subscribable()
    received = []
    hub.subscribe(lambda value: received.append(value))

    hub.broadcast(42)

    assert received == [42]


@pytest.mark.unit
def test_returned_callable_unsubscribes():
    """The function returned by subscribe() removes the listener"""
    hub = Subscribable()
    calls = []
    unsubscribe = hub.subscribe(lambda: calls.append(1))

    unsubscribe()
    hub.broadcast()

    assert calls == []
    assert not hub.has_listeners()


@pytest.mark.unit
def test_duplicate_subscription_delivers_once():
    """Subscribing the same listener twice stores it once"""
    hub = Subscribable()
    calls = []

    def listener():
        calls.append(1)

    hub.subscribe(listener)
    hub.subscribe(listener)
    hub.broadcast()

    assert calls == [1]


@pytest.mark.unit
def test_unsubscribe_during_own_callback_keeps_others():
    """Second of three listeners unsubscribing itself mid-broadcast"""
    hub = Subscribable()
    calls = []

    def first():
        calls.append("first")

    def second():
        calls.append("second")
        unsubscribe_second()

    def third():
        calls.append("third")

    hub.subscribe(first)
    unsubscribe_second = hub.subscribe(second)
    hub.subscribe(third)

    # Act
    hub.broadcast()
    hub.broadcast()

    # Assert - second heard only the first broadcast
    assert calls == ["first", "second", "third", "first", "third"]


@pytest.mark.unit
def test_listener_removed_before_being_reached_is_skipped():
    """A listener removed by an earlier listener is not called"""
    hub = Subscribable()
    calls = []

    def remover():
        calls.append("remover")
        hub.unsubscribe(victim)

    def victim():
        calls.append("victim")

    hub.subscribe(remover)
    hub.subscribe(victim)

    hub.broadcast()

    assert calls == ["remover"]


@pytest.mark.unit
def test_listener_added_during_broadcast_hears_next_broadcast():
    """Subscribing from inside a callback takes effect on the next broadcast"""
    hub = Subscribable()
    calls = []

    def late():
        calls.append("late")

    def adder():
        calls.append("adder")
        hub.subscribe(late)

    hub.subscribe(adder)

    hub.broadcast()
    assert calls == ["adder"]

    hub.broadcast()
    assert calls == ["adder", "adder", "late"]


@pytest.mark.unit
def test_raising_listener_does_not_block_others():
    """Every listener runs; the first error is re-raised afterwards"""
    hub = Subscribable()
    calls = []

    def broken():
        raise ValueError("boom")

    hub.subscribe(broken)
    hub.subscribe(lambda: calls.append("after"))

    with pytest.raises(ValueError, match="boom"):
        hub.broadcast()

    assert calls == ["after"]


@pytest.mark.unit
def test_subscription_hooks_run_on_registry_changes():
    """on_subscribe / on_unsubscribe track the listener count"""

    class Counting(Subscribable):
        def __init__(self):
            super().__init__()
            self.events = []

        def on_subscribe(self):
            self.events.append(("sub", len(self.listeners)))

        def on_unsubscribe(self):
            self.events.append(("unsub", len(self.listeners)))

    hub = Counting()
    unsubscribe = hub.subscribe(lambda: None)
    unsubscribe()
    unsubscribe()  # second call is a no-op

    assert hub.events == [("sub", 1), ("unsub", 0)]
