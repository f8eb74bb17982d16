"""
Subscribable - Listener Registry and Broadcast
==============================================

This module provides Subscribable, the notification primitive shared by the
query cache and query observers.

Listeners are kept in registration order and delivered to in that order.
A listener registered twice is stored once. Broadcasting walks a snapshot of
the registry, so listeners may subscribe or unsubscribe from inside a
callback:

- a listener removed mid-broadcast is skipped if it has not been reached yet,
  and never receives a later broadcast
- a listener added mid-broadcast first hears the next broadcast

Usage:
    hub = Subscribable()
    unsubscribe = hub.subscribe(lambda: print("changed"))
    hub.broadcast()   # prints "changed"
    unsubscribe()
    hub.broadcast()   # prints nothing
"""

import logging
from typing import Callable, Dict, Optional

Listener = Callable[..., None]


class Subscribable:
    """
    Ordered, de-duplicated listener registry.

    Subclasses override on_subscribe() / on_unsubscribe() to react to the
    registry changing, for example to attach to a data source when the first
    listener arrives and detach when the last one leaves.
    """

    def __init__(self) -> None:
        # dict keeps insertion order and gives O(1) membership
        self.listeners: Dict[Listener, None] = {}

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register a listener.

        Args:
            listener: Callable invoked on every broadcast

        Returns:
            A function that unsubscribes this listener
        """
        if listener not in self.listeners:
            self.listeners[listener] = None
            self.on_subscribe()

        def unsubscribe() -> None:
            self.unsubscribe(listener)

        return unsubscribe

    def unsubscribe(self, listener: Listener) -> None:
        """Remove a listener. Removing an unknown listener is a no-op."""
        if self.listeners.pop(listener, 0) is None:
            self.on_unsubscribe()

    def has_listeners(self) -> bool:
        return len(self.listeners) > 0

    def broadcast(self, *args, **kwargs) -> None:
        """
        Invoke every registered listener synchronously, in registration order.

        A listener that raises does not stop delivery to the others. The first
        error is re-raised once every listener has been called.
        """
        first_error: Optional[Exception] = None
        for listener in list(self.listeners):
            if listener not in self.listeners:
                continue
            try:
                listener(*args, **kwargs)
            except Exception as e:
                logging.error(f"Error in listener {listener!r}: {e}")
                if first_error is None:
                    first_error = e
        if first_error is not None:
            raise first_error

    def on_subscribe(self) -> None:
        pass

    def on_unsubscribe(self) -> None:
        pass
