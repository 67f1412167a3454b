"""
Bookkeeping for a query's open key-range subscriptions.

Each open range is tagged with the generation in which it was opened. Store
callbacks carry that tag back; a callback is honored only if its range is
still open under the same tag, so completions from closed or replaced
subscriptions can never change state.

A range starts PENDING and becomes READY once its initial snapshot has
been delivered. A range whose initial fetch fails becomes FAILED and stays
pending for good. The "ready" signal fires once per generation, the first
time no range is pending.

This class holds no lock and performs no I/O; GeoQuery drives it under its
own lock and talks to the store outside it.
"""

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from .ranges import KeyRange


class RangeState(enum.Enum):
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


@dataclass
class OpenRange:
    """One key range the query is subscribed to."""

    key_range: KeyRange
    tag: int
    state: RangeState = RangeState.PENDING
    loaded: bool = False
    """True once the initial snapshot arrived, even if the stream later failed."""
    handle: Optional[Any] = None
    """Store subscription handle, attached once subscribe() returns."""


@dataclass
class RangeDiff:
    """Result of reconciling the open ranges with a new canonical set."""

    opened: List[OpenRange] = field(default_factory=list)
    closed: List[OpenRange] = field(default_factory=list)
    kept: List[OpenRange] = field(default_factory=list)

    @property
    def unchanged(self) -> bool:
        return not self.opened and not self.closed


class SubscriptionManager:
    """Tracks open ranges, their readiness and the per-generation ready signal."""

    def __init__(self):
        self._open: Dict[KeyRange, OpenRange] = {}
        self._ready_generation: Optional[int] = None

    @property
    def ranges(self) -> FrozenSet[KeyRange]:
        return frozenset(self._open)

    @property
    def pending(self) -> FrozenSet[KeyRange]:
        """Ranges whose initial snapshot has not arrived."""
        return frozenset(r for r, entry in self._open.items() if not entry.loaded)

    def has_pending(self) -> bool:
        return any(not entry.loaded for entry in self._open.values())

    def get(self, key_range: KeyRange) -> Optional[OpenRange]:
        return self._open.get(key_range)

    def covers(self, hash_key: str) -> bool:
        """Check if a hash key lies inside any open range."""
        return any(r.contains(hash_key) for r in self._open)

    def reconcile(self, new_ranges: Iterable[KeyRange], generation: int) -> RangeDiff:
        """
        Replace the open set with `new_ranges`.

        Ranges present in both sets keep their subscription and state.
        Ranges only in the old set are closed. Ranges only in the new set
        are opened PENDING and tagged with `generation`.

        Args:
            new_ranges: The new canonical set
            generation: Generation the new set belongs to

        Returns:
            RangeDiff; the caller subscribes `opened` and cancels `closed`
        """
        new_ranges = frozenset(new_ranges)
        diff = RangeDiff()

        for key_range in sorted(self._open):
            if key_range not in new_ranges:
                diff.closed.append(self._open.pop(key_range))

        for key_range in sorted(new_ranges):
            entry = self._open.get(key_range)
            if entry is None:
                entry = OpenRange(key_range, tag=generation)
                self._open[key_range] = entry
                diff.opened.append(entry)
            else:
                diff.kept.append(entry)

        return diff

    def is_current(self, key_range: KeyRange, tag: int) -> bool:
        """Check if (range, tag) names a subscription that is still open."""
        entry = self._open.get(key_range)
        return entry is not None and entry.tag == tag

    def attach(self, key_range: KeyRange, tag: int, handle: Any) -> bool:
        """
        Store the handle returned by the store for an opened range.

        Returns:
            False if the range was closed in the meantime; the caller must
            then cancel the handle itself
        """
        if not self.is_current(key_range, tag):
            return False
        self._open[key_range].handle = handle
        return True

    def mark_ready(self, key_range: KeyRange, tag: int) -> bool:
        """
        Record that a range delivered its initial snapshot.

        Returns:
            True if the range moved from PENDING to READY
        """
        if not self.is_current(key_range, tag):
            return False
        entry = self._open[key_range]
        if entry.state is not RangeState.PENDING:
            return False
        entry.state = RangeState.READY
        entry.loaded = True
        return True

    def mark_failed(self, key_range: KeyRange, tag: int) -> bool:
        """
        Record that a range's fetch or stream failed.

        Returns:
            True the first time a current range fails, so the caller
            reports each failure once
        """
        if not self.is_current(key_range, tag):
            return False
        entry = self._open[key_range]
        if entry.state is RangeState.FAILED:
            return False
        entry.state = RangeState.FAILED
        return True

    def take_ready_signal(self, generation: int) -> bool:
        """
        Claim the ready signal for `generation`.

        Returns:
            True exactly once per generation, and only when nothing is pending
        """
        if self.has_pending() or self._ready_generation == generation:
            return False
        self._ready_generation = generation
        return True

    def close_all(self) -> List[OpenRange]:
        """
        Forget every open range.

        Returns:
            The closed ranges; the caller cancels their handles
        """
        closed = [self._open[r] for r in sorted(self._open)]
        self._open.clear()
        return closed
