"""
Listener registry and ordered event delivery for a query.

Events are queued while the query holds its lock and handed to the
executor only after the lock is released, so listeners may call back into
the query (for example to change the radius) without deadlocking.
"""

from functools import partial
from typing import Iterable, List, Optional, Tuple

from .errors import DuplicateListener, UnknownListener
from .events import GeoQueryEvent, GeoQueryListener
from .executors import Executor, Outbox


class EventDispatcher:
    """Delivers events to registered listeners in registration order."""

    def __init__(self, executor: Executor):
        self._listeners: List[GeoQueryListener] = []
        self._outbox = Outbox(executor)

    def __len__(self) -> int:
        return len(self._listeners)

    @property
    def listeners(self) -> Tuple[GeoQueryListener, ...]:
        return tuple(self._listeners)

    def has_listeners(self) -> bool:
        return bool(self._listeners)

    def add(self, listener: GeoQueryListener) -> None:
        """
        Register a listener.

        Raises:
            DuplicateListener: If the listener is already registered
        """
        if self._index(listener) is not None:
            raise DuplicateListener("Added the same listener twice to a GeoQuery")
        self._listeners.append(listener)

    def remove(self, listener: GeoQueryListener) -> None:
        """
        Unregister a listener.

        Raises:
            UnknownListener: If the listener was never added or already removed
        """
        i = self._index(listener)
        if i is None:
            raise UnknownListener("Trying to remove a listener that was removed or never added")
        del self._listeners[i]

    def _index(self, listener: GeoQueryListener) -> Optional[int]:
        # Listeners are compared by identity, never by __eq__
        for i, registered in enumerate(self._listeners):
            if registered is listener:
                return i
        return None

    def clear(self) -> None:
        self._listeners.clear()

    def publish(self, events: Iterable[GeoQueryEvent]) -> None:
        """Queue events for every registered listener."""
        for event in events:
            for listener in self._listeners:
                self._outbox.put(partial(event.deliver, listener))

    def publish_to(self, listener: GeoQueryListener, events: Iterable[GeoQueryEvent]) -> None:
        """Queue events for a single listener."""
        for event in events:
            self._outbox.put(partial(event.deliver, listener))

    def flush(self) -> None:
        """Hand queued deliveries to the executor. Call without the query lock."""
        self._outbox.flush()
