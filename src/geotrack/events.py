"""
Query events and the listener interface that receives them.

The tracker and the query produce event objects; the dispatcher delivers
each one by calling the matching listener method. Events compare by key
and location only, so tests can match them without the raw record.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from .geohash import GeoPoint

Record = Mapping[str, Any]


class GeoQueryListener:
    """
    Receives events from a GeoQuery.

    Subclasses override the methods they care about; the defaults do
    nothing. Listeners are compared by identity, so the same instance can
    only be registered once per query.
    """

    def on_key_entered(self, key: str, point: GeoPoint, record: Optional[Record]) -> None:
        """
        A key entered the query circle.

        Also called once for every key already inside the circle when the
        listener is added. Called again for the same key only after
        on_key_exited.
        """

    def on_key_exited(self, key: str, point: GeoPoint, record: Optional[Record]) -> None:
        """
        A key that had entered left the circle or was deleted.

        `point` is the last known location.
        """

    def on_key_moved(self, key: str, point: GeoPoint, record: Optional[Record]) -> None:
        """A key inside the circle moved to a new location inside the circle."""

    def on_key_changed(self, key: str, point: GeoPoint, record: Optional[Record]) -> None:
        """
        A key inside the circle was rewritten.

        Always follows on_key_moved; may also arrive alone when only other
        fields of the record changed.
        """

    def on_ready(self) -> None:
        """
        All initial data for the current query criteria has been loaded and
        the resulting events delivered.

        Fires again after every center or radius change.
        """

    def on_error(self, error: Exception) -> None:
        """Loading one of the query's key ranges failed."""


class GeoQueryEvent(ABC):
    """Base class for events produced by a query."""

    @abstractmethod
    def deliver(self, listener: GeoQueryListener) -> None:
        """Invoke the listener method for this event."""
        pass


@dataclass(frozen=True)
class KeyEntered(GeoQueryEvent):
    key: str
    point: GeoPoint
    record: Optional[Record] = field(default=None, compare=False)

    def deliver(self, listener: GeoQueryListener) -> None:
        listener.on_key_entered(self.key, self.point, self.record)


@dataclass(frozen=True)
class KeyExited(GeoQueryEvent):
    key: str
    point: GeoPoint
    record: Optional[Record] = field(default=None, compare=False)

    def deliver(self, listener: GeoQueryListener) -> None:
        listener.on_key_exited(self.key, self.point, self.record)


@dataclass(frozen=True)
class KeyMoved(GeoQueryEvent):
    key: str
    point: GeoPoint
    record: Optional[Record] = field(default=None, compare=False)

    def deliver(self, listener: GeoQueryListener) -> None:
        listener.on_key_moved(self.key, self.point, self.record)


@dataclass(frozen=True)
class KeyChanged(GeoQueryEvent):
    key: str
    point: GeoPoint
    record: Optional[Record] = field(default=None, compare=False)

    def deliver(self, listener: GeoQueryListener) -> None:
        listener.on_key_changed(self.key, self.point, self.record)


@dataclass(frozen=True)
class QueryReady(GeoQueryEvent):
    generation: int

    def deliver(self, listener: GeoQueryListener) -> None:
        listener.on_ready()


@dataclass(frozen=True)
class QueryError(GeoQueryEvent):
    error: Exception

    def deliver(self, listener: GeoQueryListener) -> None:
        listener.on_error(self.error)
