"""
Per-key location state for a query.

The tracker remembers the last location of every key seen on the query's
key ranges and whether that location was inside the circle. Feeding it a
new location (or a new circle) yields the enter/exit/move/change events
implied by the difference. Membership always comes from the exact
great-circle distance, never from the hash range a record arrived on.

The tracker is not thread-safe; GeoQuery serializes access to it.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from .events import GeoQueryEvent, KeyChanged, KeyEntered, KeyExited, KeyMoved, Record
from .geohash import KEY_LENGTH, GeoPoint, encode
from .ranges import KeyRange


@dataclass
class TrackedEntry:
    """Last known state of one key."""

    key: str
    point: GeoPoint
    hash_key: str
    in_query: bool
    record: Optional[Record] = None


class LocationTracker:
    """Tracks key locations against a circle and derives transition events."""

    def __init__(self, center: GeoPoint, radius: float, hash_length: int = KEY_LENGTH):
        """
        Args:
            center: Circle center
            radius: Circle radius in meters
            hash_length: Key length used to hash tracked locations
        """
        self.center = center
        self.radius = radius
        self.hash_length = hash_length
        self._entries: Dict[str, TrackedEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def get(self, key: str) -> Optional[TrackedEntry]:
        return self._entries.get(key)

    def contains(self, point: GeoPoint) -> bool:
        """Check if a point lies inside the current circle."""
        return self.radius > 0 and point.distance_to(self.center) <= self.radius

    def members(self) -> List[TrackedEntry]:
        """Entries currently inside the circle, in first-seen order."""
        return [entry for entry in self._entries.values() if entry.in_query]

    def upsert(self, key: str, point: GeoPoint, record: Optional[Record] = None) -> List[GeoQueryEvent]:
        """
        Record a new location for a key.

        Args:
            key: Record key
            point: New location
            record: Raw stored fields, passed through to listeners

        Returns:
            Events for the transition, in delivery order
        """
        previous = self._entries.get(key)
        events = self._transition(key, previous, point, record)
        self._entries[key] = TrackedEntry(
            key=key,
            point=point,
            hash_key=encode(point, length=self.hash_length),
            in_query=self.contains(point),
            record=record,
        )
        return events

    def remove(self, key: str) -> List[GeoQueryEvent]:
        """
        Forget a key that was deleted or left the watched ranges.

        Returns:
            [KeyExited] at the last known location if the key was tracked,
            else []
        """
        entry = self._entries.pop(key, None)
        if entry is None:
            return []
        return [KeyExited(key, entry.point, entry.record)]

    def reevaluate(self, center: GeoPoint, radius: float) -> List[GeoQueryEvent]:
        """
        Move the circle and recompute membership for every tracked key.

        Args:
            center: New circle center
            radius: New circle radius in meters

        Returns:
            Events caused by the circle change alone
        """
        self.center = center
        self.radius = radius
        events: List[GeoQueryEvent] = []
        for entry in list(self._entries.values()):
            events.extend(self.upsert(entry.key, entry.point, entry.record))
        return events

    def purge(self, ranges: Iterable[KeyRange]) -> List[GeoQueryEvent]:
        """
        Drop entries whose hash is outside every given range.

        The ranges cover the circle, so dropped entries are normally outside
        it already; one that is still inside yields KeyExited.

        Args:
            ranges: The query's current canonical ranges

        Returns:
            Events for dropped entries
        """
        ranges = list(ranges)
        dropped = [
            key for key, entry in self._entries.items()
            if not any(r.contains(entry.hash_key) for r in ranges)
        ]
        events: List[GeoQueryEvent] = []
        for key in dropped:
            entry = self._entries.pop(key)
            if entry.in_query:
                events.append(KeyExited(key, entry.point, entry.record))
        return events

    def clear(self) -> None:
        self._entries.clear()

    def _transition(
        self,
        key: str,
        previous: Optional[TrackedEntry],
        point: GeoPoint,
        record: Optional[Record],
    ) -> List[GeoQueryEvent]:
        is_new = previous is None
        was_in_query = previous is not None and previous.in_query
        is_in_query = self.contains(point)

        if (is_new or not was_in_query) and is_in_query:
            return [KeyEntered(key, point, record)]

        if not is_new and is_in_query:
            events: List[GeoQueryEvent] = []
            moved = point != previous.point
            if moved:
                events.append(KeyMoved(key, point, record))
            # An identical rewrite (same point, same fields) is not a change
            if moved or record != previous.record:
                events.append(KeyChanged(key, point, record))
            return events

        if was_in_query and not is_in_query:
            return [KeyExited(key, point, record)]

        return []
