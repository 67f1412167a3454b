"""
Ordered key-value store interface and an in-memory implementation.

The store is the external collaborator behind an index. It keeps opaque
records by key, orders them by one string field, and lets callers watch a
half-open range of that field: a subscriber first receives every record in
the range (the initial snapshot), then a live stream of records entering,
changing within, or leaving the range.

ObservableStore implements the subscription fan-out once; concrete stores
only provide record storage and ordered range scans.
"""

import copy
import enum
import logging
import threading
from abc import ABC, abstractmethod
from bisect import bisect_left, insort
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .executors import Executor, ImmediateExecutor, Outbox

Record = Dict[str, Any]


class ChangeType(enum.Enum):
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


@dataclass(frozen=True)
class Change:
    """
    One change seen on a range subscription.

    For REMOVED, `record` is the key's new value if it was rewritten with a
    sort key outside the range, or None if the key was deleted.
    """

    type: ChangeType
    key: str
    record: Optional[Record]


class RangeObserver(ABC):
    """Receives the events of one range subscription."""

    @abstractmethod
    def on_changes(self, changes: List[Change]) -> None:
        pass

    @abstractmethod
    def on_snapshot_complete(self) -> None:
        """The initial snapshot has been delivered in full."""
        pass

    @abstractmethod
    def on_error(self, error: Exception) -> None:
        """The subscription failed; no further events will arrive."""
        pass


class Subscription(ABC):
    """Handle for a live range subscription."""

    @abstractmethod
    def cancel(self) -> None:
        """Stop delivering events. Safe to call more than once."""
        pass


class Store(ABC):
    """
    Abstract base class for ordered key-value stores.

    A store answers exact-key reads and writes, and range subscriptions
    ordered by a single string field.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[Record]:
        """
        Read a record.

        Returns:
            A copy of the stored fields, or None if the key does not exist
        """
        pass

    @abstractmethod
    def set(self, key: str, fields: Mapping[str, Any], merge: bool = False) -> None:
        """
        Write a record.

        Args:
            key: Record key
            fields: Fields to store
            merge: If True, update the given fields and keep the others
        """
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        """
        Delete a record.

        Returns:
            True if the key existed
        """
        pass

    @abstractmethod
    def subscribe(
        self,
        order_field: str,
        start: str,
        end: str,
        observer: RangeObserver,
    ) -> Subscription:
        """
        Watch the records whose `order_field` lies in [start, end).

        Args:
            order_field: Field to order and filter by
            start: Inclusive lower bound
            end: Exclusive upper bound
            observer: Receives the snapshot and subsequent changes

        Returns:
            Subscription handle
        """
        pass

    def close(self) -> None:
        """Release resources. The default does nothing."""
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class _RangeSubscription(Subscription):
    """A registered range watch; delivery stops once cancelled."""

    def __init__(self, store: "ObservableStore", start: str, end: str, observer: RangeObserver):
        self._store = store
        self.start = start
        self.end = end
        self.observer = observer
        self.active = True

    def covers(self, sort_key: Optional[str]) -> bool:
        return sort_key is not None and self.start <= sort_key < self.end

    def deliver_changes(self, changes: List[Change]) -> None:
        if self.active and changes:
            self.observer.on_changes(changes)

    def deliver_snapshot(self, changes: List[Change]) -> None:
        if not self.active:
            return
        if changes:
            self.observer.on_changes(changes)
        if self.active:
            self.observer.on_snapshot_complete()

    def deliver_error(self, error: Exception) -> None:
        if self.active:
            self.active = False
            self.observer.on_error(error)

    def cancel(self) -> None:
        if self.active:
            self.active = False
            self._store._unregister(self)


# Called with (order_field, start, end); raise to deny a subscription
AccessRule = Callable[[str, str, str], None]


class ObservableStore(Store):
    """
    Store base class implementing range subscriptions.

    Subclasses implement _read, _write, _erase and _scan. All of them are
    called with the store lock held. Observer callbacks are handed to the
    executor after the lock is released, in the order the writes happened.
    """

    def __init__(
        self,
        order_field: str = "g",
        executor: Optional[Executor] = None,
        access_rule: Optional[AccessRule] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Args:
            order_field: The single field records are ordered by
            executor: Runs observer callbacks (default: inline)
            access_rule: Optional check run on every subscribe; an exception
                it raises is reported to the observer's on_error
            logger: Logger for store activity
        """
        self.order_field = order_field
        self._executor = executor if executor is not None else ImmediateExecutor()
        self._outbox = Outbox(self._executor)
        self._access_rule = access_rule
        self._logger = logger if logger is not None else logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._subscriptions: List[_RangeSubscription] = []

    @abstractmethod
    def _read(self, key: str) -> Optional[Record]:
        pass

    @abstractmethod
    def _write(self, key: str, record: Record, sort_key: Optional[str]) -> None:
        pass

    @abstractmethod
    def _erase(self, key: str) -> None:
        pass

    @abstractmethod
    def _scan(self, start: str, end: str) -> List[Tuple[str, Record]]:
        """Records with start <= sort key < end, ordered by (sort key, key)."""
        pass

    def _sort_key(self, record: Optional[Mapping[str, Any]]) -> Optional[str]:
        if record is None:
            return None
        value = record.get(self.order_field)
        return value if isinstance(value, str) else None

    def get(self, key: str) -> Optional[Record]:
        with self._lock:
            record = self._read(key)
        return copy.deepcopy(record)

    def set(self, key: str, fields: Mapping[str, Any], merge: bool = False) -> None:
        with self._lock:
            old = self._read(key)
            if merge and old is not None:
                new = dict(old)
                new.update(copy.deepcopy(dict(fields)))
            else:
                new = copy.deepcopy(dict(fields))
            new_sort_key = self._sort_key(new)
            self._write(key, new, new_sort_key)
            self._notify(key, old, new)
        self._outbox.flush()

    def delete(self, key: str) -> bool:
        with self._lock:
            old = self._read(key)
            if old is None:
                return False
            self._erase(key)
            self._notify(key, old, None)
        self._outbox.flush()
        return True

    def subscribe(
        self,
        order_field: str,
        start: str,
        end: str,
        observer: RangeObserver,
    ) -> Subscription:
        if order_field != self.order_field:
            raise ValueError(
                f"Store is ordered by {self.order_field!r}, cannot order by {order_field!r}"
            )

        subscription = _RangeSubscription(self, start, end, observer)
        with self._lock:
            denied = None
            if self._access_rule is not None:
                try:
                    self._access_rule(order_field, start, end)
                except Exception as e:
                    denied = e

            if denied is not None:
                self._logger.warning("Subscription to [%s, %s) denied: %s", start, end, denied)
                self._outbox.put(partial(subscription.deliver_error, denied))
            else:
                self._subscriptions.append(subscription)
                snapshot = [
                    Change(ChangeType.ADDED, key, copy.deepcopy(record))
                    for key, record in self._scan(start, end)
                ]
                self._outbox.put(partial(subscription.deliver_snapshot, snapshot))
        self._outbox.flush()
        return subscription

    def fail_subscriptions(self, error: Exception, start: Optional[str] = None) -> int:
        """
        Break live subscriptions, as a lost connection would.

        Args:
            error: Error passed to each observer's on_error
            start: Only break subscriptions starting at this key (default: all)

        Returns:
            Number of subscriptions broken
        """
        with self._lock:
            broken = [
                s for s in self._subscriptions
                if start is None or s.start == start
            ]
            for subscription in broken:
                self._subscriptions.remove(subscription)
                self._outbox.put(partial(subscription.deliver_error, error))
        self._outbox.flush()
        return len(broken)

    @property
    def subscription_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def _unregister(self, subscription: _RangeSubscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def _notify(self, key: str, old: Optional[Record], new: Optional[Record]) -> None:
        old_sort_key = self._sort_key(old)
        new_sort_key = self._sort_key(new)

        for subscription in self._subscriptions:
            was_in = subscription.covers(old_sort_key)
            is_in = subscription.covers(new_sort_key)
            if is_in and not was_in:
                change = Change(ChangeType.ADDED, key, copy.deepcopy(new))
            elif is_in and was_in:
                change = Change(ChangeType.MODIFIED, key, copy.deepcopy(new))
            elif was_in:
                change = Change(ChangeType.REMOVED, key, copy.deepcopy(new))
            else:
                continue
            self._outbox.put(partial(subscription.deliver_changes, [change]))


class MemoryStore(ObservableStore):
    """Store keeping records in a dict with a sorted index on the order field."""

    def __init__(
        self,
        order_field: str = "g",
        executor: Optional[Executor] = None,
        access_rule: Optional[AccessRule] = None,
        logger: Optional[logging.Logger] = None,
    ):
        super().__init__(order_field, executor, access_rule, logger)
        self._records: Dict[str, Record] = {}
        self._index: List[Tuple[str, str]] = []

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def _read(self, key: str) -> Optional[Record]:
        return self._records.get(key)

    def _write(self, key: str, record: Record, sort_key: Optional[str]) -> None:
        self._erase(key)
        self._records[key] = record
        if sort_key is not None:
            insort(self._index, (sort_key, key))

    def _erase(self, key: str) -> None:
        old = self._records.pop(key, None)
        old_sort_key = self._sort_key(old)
        if old_sort_key is not None:
            i = bisect_left(self._index, (old_sort_key, key))
            if i < len(self._index) and self._index[i] == (old_sort_key, key):
                del self._index[i]

    def _scan(self, start: str, end: str) -> List[Tuple[str, Record]]:
        results = []
        i = bisect_left(self._index, (start, ""))
        while i < len(self._index) and self._index[i][0] < end:
            key = self._index[i][1]
            results.append((key, self._records[key]))
            i += 1
        return results
