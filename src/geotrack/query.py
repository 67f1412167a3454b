"""
Live circle queries over an ordered store.

A GeoQuery watches every key whose location lies within `radius` meters of
`center`. It decomposes the circle into hash-key ranges, subscribes to each
range on the store, and turns the per-range change streams into
enter/exit/move/change events for its listeners.

Concurrency model:

- One lock per query. Listener registration, center/radius changes and
  store callbacks all take it before touching tracked entries or the
  open-range table.
- The store is never called with the lock held. Range diffs are computed
  under the lock; subscribe() and cancel() run after it is released.
- Listeners are never called with the lock held. Events are queued under
  the lock and handed to the executor afterwards, in order.
- Every subscription is tagged with the generation it was opened in.
  Callbacks whose (range, tag) no longer matches the open-range table are
  dropped, so closed or superseded subscriptions cannot change state.
"""

import logging
import math
import threading
from typing import FrozenSet, List, Optional

from .config import DEFAULT_CONFIG, GeoIndexConfig
from .dispatcher import EventDispatcher
from .errors import MalformedRecord, SubscriptionFailure
from .events import GeoQueryEvent, GeoQueryListener, KeyEntered, QueryError, QueryReady
from .executors import Executor, ImmediateExecutor
from .geohash import GeoPoint, encode
from .ranges import KeyRange, decompose
from .record import parse_location
from .store import Change, ChangeType, RangeObserver, Store
from .subscriptions import OpenRange, RangeDiff, SubscriptionManager
from .tracker import LocationTracker


def _check_radius(radius: float) -> float:
    radius = float(radius)
    if math.isnan(radius):
        raise ValueError("radius must be a number")
    return radius


class _RangeBinding(RangeObserver):
    """Routes one subscription's callbacks back to its query with their tag."""

    def __init__(self, query: "GeoQuery", key_range: KeyRange, tag: int):
        self._query = query
        self._key_range = key_range
        self._tag = tag

    def on_changes(self, changes: List[Change]) -> None:
        self._query._on_changes(self._key_range, self._tag, changes)

    def on_snapshot_complete(self) -> None:
        self._query._on_snapshot_complete(self._key_range, self._tag)

    def on_error(self, error: Exception) -> None:
        self._query._on_range_error(self._key_range, self._tag, error)


class GeoQuery:
    """
    A live query for the keys within a circle.

    The query is idle until its first listener is added. Removing the last
    listener closes every subscription and forgets all tracked keys.
    """

    def __init__(
        self,
        store: Store,
        center: GeoPoint,
        radius: float,
        config: GeoIndexConfig = DEFAULT_CONFIG,
        executor: Optional[Executor] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize a query.

        Args:
            store: Store holding the location records
            center: Circle center
            radius: Circle radius in meters; a radius <= 0 matches nothing
            config: Record layout and hashing parameters
            executor: Runs listener callbacks (default: inline)
            logger: Logger for query activity
        """
        self._store = store
        self._config = config
        self._logger = logger if logger is not None else logging.getLogger(__name__)
        self._lock = threading.Lock()

        self._center = center
        self._radius = _check_radius(radius)
        self._generation = 0
        self._active = False

        self._subscriptions = SubscriptionManager()
        self._tracker = LocationTracker(center, self._radius, config.hash_length)
        self._dispatcher = EventDispatcher(executor if executor is not None else ImmediateExecutor())

    # Criteria

    @property
    def center(self) -> GeoPoint:
        with self._lock:
            return self._center

    @property
    def radius(self) -> float:
        """Radius in meters."""
        with self._lock:
            return self._radius

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    @property
    def ranges(self) -> FrozenSet[KeyRange]:
        """Key ranges currently subscribed."""
        with self._lock:
            return self._subscriptions.ranges

    @property
    def is_ready(self) -> bool:
        """True when the query is active and no range is still loading."""
        with self._lock:
            return self._active and not self._subscriptions.has_pending()

    def keys(self) -> List[str]:
        """Keys currently inside the circle."""
        with self._lock:
            return [entry.key for entry in self._tracker.members()]

    def set_center(self, center: GeoPoint) -> None:
        """Move the query and emit the resulting events."""
        self.set_criteria(center, None)

    def set_radius(self, radius: float) -> None:
        """Resize the query (meters) and emit the resulting events."""
        self.set_criteria(None, radius)

    def set_criteria(self, center: Optional[GeoPoint], radius: Optional[float]) -> None:
        """
        Change the center and/or radius at once.

        Args:
            center: New center, or None to keep the current one
            radius: New radius in meters, or None to keep the current one
        """
        if radius is not None:
            radius = _check_radius(radius)

        diff = None
        with self._lock:
            if center is not None:
                self._center = center
            if radius is not None:
                self._radius = radius
            if self._dispatcher.has_listeners():
                diff = self._setup()
        self._apply(diff)

    # Listeners

    def add_listener(self, listener: GeoQueryListener) -> None:
        """
        Add a listener.

        On an idle query this starts loading. On an active query the new
        listener receives on_key_entered for every key already inside the
        circle, then on_ready if nothing is still loading.

        Raises:
            DuplicateListener: If the listener was already added
        """
        diff = None
        with self._lock:
            self._dispatcher.add(listener)
            if not self._active:
                diff = self._setup()
            else:
                replay: List[GeoQueryEvent] = [
                    KeyEntered(entry.key, entry.point, entry.record)
                    for entry in self._tracker.members()
                ]
                if not self._subscriptions.has_pending():
                    replay.append(QueryReady(self._generation))
                self._dispatcher.publish_to(listener, replay)
        self._apply(diff)

    def remove_listener(self, listener: GeoQueryListener) -> None:
        """
        Remove a listener. Removing the last one resets the query.

        Raises:
            UnknownListener: If the listener was never added or already removed
        """
        closed: List[OpenRange] = []
        with self._lock:
            self._dispatcher.remove(listener)
            if not self._dispatcher.has_listeners():
                closed = self._reset()
        self._cancel(closed)
        self._dispatcher.flush()

    def remove_all_listeners(self) -> None:
        """Remove every listener and reset the query."""
        with self._lock:
            self._dispatcher.clear()
            closed = self._reset()
        self._cancel(closed)
        self._dispatcher.flush()

    # Internals. _setup, _reset and the *_locked methods expect the lock held.

    def _setup(self) -> RangeDiff:
        self._generation += 1
        self._active = True
        generation = self._generation

        new_ranges = decompose(
            self._center,
            self._radius,
            length=self._config.hash_length,
            full_coverage_radius=self._config.full_coverage_radius,
        )
        diff = self._subscriptions.reconcile(new_ranges, generation)
        self._logger.debug(
            "Query generation %d: %d ranges (%d opened, %d closed, %d kept)",
            generation, len(new_ranges), len(diff.opened), len(diff.closed), len(diff.kept),
        )

        events = self._tracker.reevaluate(self._center, self._radius)
        events.extend(self._tracker.purge(self._subscriptions.ranges))
        events.extend(self._ready_events_locked())
        self._dispatcher.publish(events)
        return diff

    def _reset(self) -> List[OpenRange]:
        self._generation += 1
        self._active = False
        self._tracker.clear()
        return self._subscriptions.close_all()

    def _ready_events_locked(self) -> List[GeoQueryEvent]:
        if self._subscriptions.take_ready_signal(self._generation):
            self._logger.debug("Query generation %d ready", self._generation)
            return [QueryReady(self._generation)]
        return []

    def _apply(self, diff: Optional[RangeDiff]) -> None:
        """Carry out a range diff against the store, then deliver events."""
        if diff is not None:
            self._cancel(diff.closed)
            for entry in diff.opened:
                self._open(entry.key_range, entry.tag)
        self._dispatcher.flush()

    def _open(self, key_range: KeyRange, tag: int) -> None:
        binding = _RangeBinding(self, key_range, tag)
        try:
            handle = self._store.subscribe(
                self._config.hash_field, key_range.start, key_range.end, binding
            )
        except Exception as e:
            self._on_range_error(key_range, tag, e)
            return

        with self._lock:
            attached = self._subscriptions.attach(key_range, tag, handle)
        if not attached:
            # Closed by a reconfiguration while subscribe() was running
            handle.cancel()

    def _cancel(self, closed: List[OpenRange]) -> None:
        for entry in closed:
            if entry.handle is not None:
                entry.handle.cancel()

    def _apply_change_locked(self, change: Change) -> List[GeoQueryEvent]:
        if change.type is ChangeType.REMOVED:
            # A record that left this range may have moved into another one
            # we watch; only forget it if it is no longer observable at all.
            if change.record is not None:
                try:
                    point = parse_location(change.key, change.record, self._config)
                except MalformedRecord:
                    point = None
                if point is not None:
                    hash_key = encode(point, length=self._config.hash_length)
                    if self._subscriptions.covers(hash_key):
                        return self._tracker.upsert(change.key, point, change.record)
            return self._tracker.remove(change.key)

        try:
            point = parse_location(change.key, change.record, self._config)
        except MalformedRecord as e:
            self._logger.warning("Skipping record: %s", e)
            return []
        return self._tracker.upsert(change.key, point, change.record)

    # Store callbacks

    def _on_changes(self, key_range: KeyRange, tag: int, changes: List[Change]) -> None:
        with self._lock:
            if not self._subscriptions.is_current(key_range, tag):
                self._logger.debug("Dropping %d stale changes for %s", len(changes), key_range)
                return
            events: List[GeoQueryEvent] = []
            for change in changes:
                events.extend(self._apply_change_locked(change))
            self._dispatcher.publish(events)
        self._dispatcher.flush()

    def _on_snapshot_complete(self, key_range: KeyRange, tag: int) -> None:
        with self._lock:
            if not self._subscriptions.mark_ready(key_range, tag):
                return
            self._dispatcher.publish(self._ready_events_locked())
        self._dispatcher.flush()

    def _on_range_error(self, key_range: KeyRange, tag: int, error: Exception) -> None:
        with self._lock:
            if not self._subscriptions.mark_failed(key_range, tag):
                return
            failure = SubscriptionFailure(key_range.start, key_range.end, error)
            self._logger.error("%s", failure)
            self._dispatcher.publish([QueryError(failure)])
        self._dispatcher.flush()

    def __repr__(self) -> str:
        return f"GeoQuery(center={self._center}, radius={self._radius})"
