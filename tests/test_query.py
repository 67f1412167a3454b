"""Integration tests for live circle queries."""

import logging
import threading

import pytest
from geotrack.errors import DuplicateListener, SubscriptionFailure, UnknownListener
from geotrack.events import GeoQueryListener
from geotrack.executors import QueuedExecutor, ThreadExecutor
from geotrack.geohash import GeoPoint, encode
from geotrack.geoindex import GeoIndex
from geotrack.query import GeoQuery
from geotrack.ranges import decompose
from geotrack.store import Change, ChangeType, MemoryStore, Store, Subscription

ORIGIN = GeoPoint(0.0, 0.0)
INSIDE = GeoPoint(0.0005, 0.0005)
INSIDE_2 = GeoPoint(0.0006, 0.0006)
INSIDE_SW = GeoPoint(-0.0005, -0.0005)
OUTSIDE = GeoPoint(10.0, 10.0)
FAR_AWAY = GeoPoint(45.0, 45.0)


class RecordingListener(GeoQueryListener):
    def __init__(self):
        self.events = []

    def on_key_entered(self, key, point, record):
        self.events.append(("entered", key, point.as_tuple()))

    def on_key_exited(self, key, point, record):
        self.events.append(("exited", key, point.as_tuple()))

    def on_key_moved(self, key, point, record):
        self.events.append(("moved", key, point.as_tuple()))

    def on_key_changed(self, key, point, record):
        self.events.append(("changed", key, point.as_tuple()))

    def on_ready(self):
        self.events.append(("ready",))

    def on_error(self, error):
        self.events.append(("error", error))

    def take(self):
        events, self.events = self.events, []
        return events


class CountingStore(MemoryStore):
    """Memory store counting subscribe calls."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.subscribe_calls = 0

    def subscribe(self, order_field, start, end, observer):
        self.subscribe_calls += 1
        return super().subscribe(order_field, start, end, observer)


class ManualSubscription(Subscription):
    def __init__(self, start, end, observer):
        self.start = start
        self.end = end
        self.observer = observer
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class ManualStore(Store):
    """Store whose subscriptions are driven by hand and never stop delivering."""

    def __init__(self, fail_with=None):
        self.subscriptions = []
        self.fail_with = fail_with

    def get(self, key):
        return None

    def set(self, key, fields, merge=False):
        pass

    def delete(self, key):
        return False

    def subscribe(self, order_field, start, end, observer):
        if self.fail_with is not None:
            raise self.fail_with
        subscription = ManualSubscription(start, end, observer)
        self.subscriptions.append(subscription)
        return subscription


def location(point):
    return {"g": encode(point), "l": [point.latitude, point.longitude]}


@pytest.fixture
def store():
    return CountingStore()


@pytest.fixture
def index(store):
    return GeoIndex(store)


@pytest.fixture
def listener():
    return RecordingListener()


class TestInitialLoad:
    """Tests for the first load of a query."""

    def test_enter_then_ready(self, index, listener):
        """Test existing keys inside the circle enter before ready."""
        index.set_location("a", INSIDE)
        index.set_location("b", FAR_AWAY)
        query = index.query_at_location(ORIGIN, 1000)
        query.add_listener(listener)
        assert listener.take() == [("entered", "a", INSIDE.as_tuple()), ("ready",)]
        assert query.keys() == ["a"]
        assert query.is_ready

    def test_idle_until_listener(self, index, store):
        """Test a query without listeners subscribes to nothing."""
        query = index.query_at_location(ORIGIN, 1000)
        query.set_center(OUTSIDE)
        query.set_radius(5000)
        assert store.subscribe_calls == 0
        assert query.ranges == frozenset()
        assert not query.is_ready

    def test_ready_waits_for_snapshots(self, listener):
        """Test ready fires only after every range has loaded."""
        executor = QueuedExecutor()
        store = MemoryStore(executor=executor)
        GeoIndex(store).set_location("a", INSIDE)
        query = GeoQuery(store, ORIGIN, 1000)
        query.add_listener(listener)
        assert listener.take() == []
        assert not query.is_ready

        executor.run_pending()
        assert listener.take() == [("entered", "a", INSIDE.as_tuple()), ("ready",)]
        assert query.is_ready

    def test_zero_radius(self, index, store, listener):
        """Test an empty circle is ready at once and watches nothing."""
        index.set_location("a", ORIGIN)
        query = index.query_at_location(ORIGIN, 0)
        query.add_listener(listener)
        assert listener.take() == [("ready",)]
        assert store.subscribe_calls == 0

    def test_nan_radius(self, index):
        """Test a NaN radius is rejected."""
        with pytest.raises(ValueError):
            index.query_at_location(ORIGIN, float("nan"))

    def test_ranges_match_decomposition(self, index, listener):
        """Test an active query watches the circle's canonical ranges."""
        query = index.query_at_location(ORIGIN, 1000)
        query.add_listener(listener)
        assert query.ranges == decompose(ORIGIN, 1000)


class TestLiveUpdates:
    """Tests for changes after the initial load."""

    @pytest.fixture
    def query(self, index, listener):
        query = index.query_at_location(ORIGIN, 1000)
        query.add_listener(listener)
        listener.take()
        return query

    def test_example_sequence(self, index, query, listener):
        """Test a key entering, leaving, and a distant key staying silent."""
        index.set_location("a", INSIDE)
        assert listener.take() == [("entered", "a", INSIDE.as_tuple())]

        index.set_location("a", OUTSIDE)
        assert listener.take() == [("exited", "a", INSIDE.as_tuple())]

        index.set_location("b", FAR_AWAY)
        index.set_location("b", GeoPoint(45.1, 45.1))
        assert listener.take() == []

    def test_move_within(self, index, query, listener):
        """Test a move inside the circle yields moved then changed."""
        index.set_location("a", INSIDE)
        listener.take()
        index.set_location("a", INSIDE_2)
        assert listener.take() == [
            ("moved", "a", INSIDE_2.as_tuple()),
            ("changed", "a", INSIDE_2.as_tuple()),
        ]

    def test_move_across_ranges(self, index, query, listener):
        """Test a move between two watched ranges does not exit and re-enter."""
        index.set_location("a", INSIDE)
        listener.take()
        index.set_location("a", INSIDE_SW)
        assert listener.take() == [
            ("moved", "a", INSIDE_SW.as_tuple()),
            ("changed", "a", INSIDE_SW.as_tuple()),
        ]
        assert query.keys() == ["a"]

    def test_identical_write(self, index, query, listener):
        """Test rewriting the same location emits nothing."""
        index.set_location("a", INSIDE)
        listener.take()
        index.set_location("a", INSIDE)
        assert listener.take() == []

    def test_other_fields_change(self, store, index, query, listener):
        """Test changing other fields of a member yields changed alone."""
        index.set_location("a", INSIDE)
        listener.take()
        store.set("a", {"name": "bus 12"}, merge=True)
        assert listener.take() == [("changed", "a", INSIDE.as_tuple())]

    def test_delete(self, index, store, query, listener):
        """Test deleting a member exits at its last location."""
        index.set_location("a", INSIDE)
        listener.take()
        store.delete("a")
        assert listener.take() == [("exited", "a", INSIDE.as_tuple())]

    def test_delete_tracked_non_member(self, index, store, query, listener):
        """Test deleting a watched key outside the circle still exits it."""
        corner = GeoPoint(0.0085, 0.0085)
        assert corner.distance_to(ORIGIN) > 1000
        assert any(r.contains(encode(corner)) for r in query.ranges)
        index.set_location("a", corner)
        assert listener.take() == []

        store.delete("a")
        assert listener.take() == [("exited", "a", corner.as_tuple())]
        assert query.keys() == []

    def test_remove_location(self, index, store, query, listener):
        """Test removing the location of a member exits it."""
        store.set("a", dict(location(INSIDE), name="bus"))
        listener.take()
        assert index.remove_location("a")
        assert listener.take() == [("exited", "a", INSIDE.as_tuple())]
        assert store.get("a") == {"name": "bus"}

    def test_remove_bare_location(self, index, store, query, listener):
        """Test removing the only fields of a member exits it and keeps the key."""
        index.set_location("a", INSIDE)
        listener.take()
        assert index.remove_location("a")
        assert listener.take() == [("exited", "a", INSIDE.as_tuple())]
        assert store.get("a") == {}

    def test_enter_after_exit(self, index, query, listener):
        """Test a key can enter again after exiting."""
        index.set_location("a", INSIDE)
        index.set_location("a", OUTSIDE)
        index.set_location("a", INSIDE_2)
        assert listener.take() == [
            ("entered", "a", INSIDE.as_tuple()),
            ("exited", "a", INSIDE.as_tuple()),
            ("entered", "a", INSIDE_2.as_tuple()),
        ]

    def test_in_range_but_outside_circle(self, index, query, listener):
        """Test membership uses exact distance, not the hash range."""
        corner = GeoPoint(0.0085, 0.0085)
        assert any(r.contains(encode(corner)) for r in query.ranges)
        index.set_location("a", corner)
        assert listener.take() == []
        index.set_location("a", INSIDE)
        assert listener.take() == [("entered", "a", INSIDE.as_tuple())]

    def test_malformed_record_skipped(self, store, query, listener, caplog):
        """Test a bad record in a watched range is logged and skipped."""
        with caplog.at_level(logging.WARNING, logger="geotrack.query"):
            store.set("bad", {"g": encode(INSIDE), "l": [1.0]})
        assert listener.take() == []
        assert "Skipping record" in caplog.text

        store.set("good", location(INSIDE))
        assert listener.take() == [("entered", "good", INSIDE.as_tuple())]


class TestCriteriaChanges:
    """Tests for moving and resizing an active query."""

    def test_radius_change(self, index, listener):
        """Test resizing alone produces enter and exit events."""
        near = GeoPoint(0.0, 0.0045)
        far = GeoPoint(0.0, 0.0135)
        index.set_location("near", near)
        index.set_location("far", far)

        query = index.query_at_location(ORIGIN, 1000)
        query.add_listener(listener)
        assert listener.take() == [("entered", "near", near.as_tuple()), ("ready",)]

        query.set_radius(2000)
        assert listener.take() == [("entered", "far", far.as_tuple()), ("ready",)]

        query.set_radius(1000)
        assert listener.take() == [("exited", "far", far.as_tuple()), ("ready",)]
        assert query.keys() == ["near"]

    def test_center_change(self, index, listener):
        """Test moving the center swaps members."""
        index.set_location("a", INSIDE)
        index.set_location("b", OUTSIDE)
        query = index.query_at_location(ORIGIN, 1000)
        query.add_listener(listener)
        listener.take()

        query.set_center(OUTSIDE)
        assert listener.take() == [
            ("exited", "a", INSIDE.as_tuple()),
            ("entered", "b", OUTSIDE.as_tuple()),
            ("ready",),
        ]
        assert query.keys() == ["b"]

        # Keys near the old center are no longer watched
        index.set_location("a", INSIDE_2)
        assert listener.take() == []

    def test_set_criteria(self, index, listener):
        """Test changing center and radius together."""
        index.set_location("b", OUTSIDE)
        query = index.query_at_location(ORIGIN, 1000)
        query.add_listener(listener)
        listener.take()
        query.set_criteria(GeoPoint(10.0, 10.01), 2000)
        assert listener.take() == [("entered", "b", OUTSIDE.as_tuple()), ("ready",)]
        assert query.center == GeoPoint(10.0, 10.01)
        assert query.radius == 2000

    def test_unchanged_ranges_not_resubscribed(self, index, store, listener):
        """Test re-applying the same criteria opens no new subscriptions."""
        query = index.query_at_location(ORIGIN, 1000)
        query.add_listener(listener)
        calls = store.subscribe_calls
        ranges = query.ranges
        generation = query.generation

        query.set_center(ORIGIN)
        assert store.subscribe_calls == calls
        assert query.ranges == ranges
        assert query.generation == generation + 1
        assert listener.take() == [("ready",), ("ready",)]

    def test_ready_once_per_generation(self, listener):
        """Test each criteria change fires ready exactly once."""
        executor = QueuedExecutor()
        store = MemoryStore(executor=executor)
        query = GeoQuery(store, ORIGIN, 1000)
        query.add_listener(listener)
        query.set_center(OUTSIDE)
        query.set_center(FAR_AWAY)
        executor.run_pending()
        assert listener.take() == [("ready",)]
        assert query.generation == 3


class TestStaleCallbacks:
    """Tests for callbacks from closed subscriptions."""

    def test_stale_completion_ignored(self, listener):
        """Test completions from a previous generation never fire ready."""
        store = ManualStore()
        query = GeoQuery(store, ORIGIN, 1000)
        query.add_listener(listener)
        first = list(store.subscriptions)

        query.set_center(OUTSIDE)
        second = store.subscriptions[len(first):]
        assert first and second
        assert all(s.cancelled for s in first)

        for s in first:
            s.observer.on_snapshot_complete()
        assert listener.take() == []

        for s in second[:-1]:
            s.observer.on_snapshot_complete()
        assert listener.take() == []

        second[-1].observer.on_snapshot_complete()
        assert listener.take() == [("ready",)]

        for s in second:
            s.observer.on_snapshot_complete()
        assert listener.take() == []

    def test_stale_changes_ignored(self, listener):
        """Test changes from a closed subscription are dropped."""
        store = ManualStore()
        query = GeoQuery(store, ORIGIN, 1000)
        query.add_listener(listener)
        first = list(store.subscriptions)
        query.set_center(OUTSIDE)

        change = Change(ChangeType.ADDED, "a", location(INSIDE))
        for s in first:
            s.observer.on_changes([change])
            s.observer.on_error(RuntimeError("late"))
        assert listener.take() == []
        assert query.keys() == []

    def test_listener_removed_mid_load(self, listener):
        """Test callbacks after the last listener left are dropped."""
        store = ManualStore()
        query = GeoQuery(store, ORIGIN, 1000)
        query.add_listener(listener)
        query.remove_listener(listener)
        for s in store.subscriptions:
            assert s.cancelled
            s.observer.on_changes([Change(ChangeType.ADDED, "a", location(INSIDE))])
            s.observer.on_snapshot_complete()
        assert listener.take() == []


class TestListeners:
    """Tests for listener registration."""

    def test_duplicate_listener(self, index, listener):
        """Test adding the same listener twice raises."""
        query = index.query_at_location(ORIGIN, 1000)
        query.add_listener(listener)
        with pytest.raises(DuplicateListener):
            query.add_listener(listener)

    def test_unknown_listener(self, index, listener):
        """Test removing an unknown listener raises."""
        query = index.query_at_location(ORIGIN, 1000)
        with pytest.raises(UnknownListener):
            query.remove_listener(listener)
        query.add_listener(listener)
        query.remove_listener(listener)
        with pytest.raises(UnknownListener):
            query.remove_listener(listener)

    def test_replay_to_new_listener(self, index, listener):
        """Test a listener added to a ready query gets current members then ready."""
        index.set_location("a", INSIDE)
        index.set_location("b", INSIDE_2)
        query = index.query_at_location(ORIGIN, 1000)
        query.add_listener(listener)
        listener.take()

        second = RecordingListener()
        query.add_listener(second)
        assert second.take() == [
            ("entered", "a", INSIDE.as_tuple()),
            ("entered", "b", INSIDE_2.as_tuple()),
            ("ready",),
        ]
        assert listener.take() == []

    def test_listener_added_while_loading(self, listener):
        """Test a listener added mid-load gets ready once, with everyone else."""
        executor = QueuedExecutor()
        store = MemoryStore(executor=executor)
        GeoIndex(store).set_location("a", INSIDE)
        query = GeoQuery(store, ORIGIN, 1000)
        query.add_listener(listener)
        second = RecordingListener()
        query.add_listener(second)
        assert second.take() == []

        executor.run_pending()
        expected = [("entered", "a", INSIDE.as_tuple()), ("ready",)]
        assert listener.take() == expected
        assert second.take() == expected

    def test_remove_last_listener_resets(self, index, store, listener):
        """Test removing the last listener closes every subscription."""
        index.set_location("a", INSIDE)
        query = index.query_at_location(ORIGIN, 1000)
        query.add_listener(listener)
        other = RecordingListener()
        query.add_listener(other)
        query.remove_listener(other)
        assert store.subscription_count == len(query.ranges)

        query.remove_listener(listener)
        assert store.subscription_count == 0
        assert query.ranges == frozenset()
        assert query.keys() == []

        index.set_location("a", INSIDE_2)
        assert listener.take() == [("entered", "a", INSIDE.as_tuple()), ("ready",)]

        query.add_listener(listener)
        assert listener.take() == [("entered", "a", INSIDE_2.as_tuple()), ("ready",)]

    def test_remove_all_listeners(self, index, store, listener):
        """Test remove_all_listeners resets the query."""
        query = index.query_at_location(ORIGIN, 1000)
        query.add_listener(listener)
        query.add_listener(RecordingListener())
        query.remove_all_listeners()
        assert store.subscription_count == 0
        assert not query.is_ready

    def test_reentrant_listener(self, index, store):
        """Test a listener may change the query from inside a callback."""
        index.set_location("a", INSIDE)
        query = index.query_at_location(ORIGIN, 1000)

        class Shrinker(RecordingListener):
            def on_key_entered(self, key, point, record):
                super().on_key_entered(key, point, record)
                query.set_radius(0)

        listener = Shrinker()
        query.add_listener(listener)
        assert listener.take() == [
            ("entered", "a", INSIDE.as_tuple()),
            ("exited", "a", INSIDE.as_tuple()),
            ("ready",),
        ]
        assert store.subscription_count == 0


class TestErrors:
    """Tests for range failures."""

    def test_denied_ranges(self, listener, caplog):
        """Test each denied range reports one error and ready never fires."""
        def deny(order_field, start, end):
            raise PermissionError("permission denied")

        store = MemoryStore(access_rule=deny)
        query = GeoQuery(store, ORIGIN, 1000)
        with caplog.at_level(logging.ERROR, logger="geotrack.query"):
            query.add_listener(listener)

        events = listener.take()
        assert len(events) == len(query.ranges)
        for name, error in events:
            assert name == "error"
            assert isinstance(error, SubscriptionFailure)
            assert isinstance(error.cause, PermissionError)
        assert not query.is_ready
        assert "failed" in caplog.text

    def test_partial_denial(self, listener):
        """Test other ranges keep working when one is denied."""
        denied = min(decompose(ORIGIN, 1000))

        def deny(order_field, start, end):
            if start == denied.start:
                raise PermissionError("permission denied")

        store = MemoryStore(access_rule=deny)
        GeoIndex(store).set_location("a", INSIDE)
        query = GeoQuery(store, ORIGIN, 1000)
        query.add_listener(listener)

        events = listener.take()
        assert ("entered", "a", INSIDE.as_tuple()) in events
        assert [e[0] for e in events].count("error") == 1
        assert ("ready",) not in events

    def test_error_reaches_every_listener(self, listener):
        """Test error events go to all listeners."""
        store = ManualStore()
        query = GeoQuery(store, ORIGIN, 1000)
        second = RecordingListener()
        query.add_listener(listener)
        query.add_listener(second)

        store.subscriptions[0].observer.on_error(ConnectionError("lost"))
        store.subscriptions[0].observer.on_error(ConnectionError("lost again"))
        (first_event,) = listener.take()
        (second_event,) = second.take()
        assert first_event[1] is second_event[1]
        assert first_event[1].start == store.subscriptions[0].start

    def test_subscribe_raises(self, listener):
        """Test a store raising from subscribe is reported as an error event."""
        store = ManualStore(fail_with=OSError("connection refused"))
        query = GeoQuery(store, ORIGIN, 1000)
        query.add_listener(listener)
        events = listener.take()
        assert len(events) == len(decompose(ORIGIN, 1000))
        assert all(name == "error" for name, _ in events)

    def test_stream_failure_after_ready(self, store, index, listener):
        """Test a live stream failing after load reports errors without a second ready."""
        query = index.query_at_location(ORIGIN, 1000)
        query.add_listener(listener)
        listener.take()

        broken = store.fail_subscriptions(ConnectionError("lost"))
        events = listener.take()
        assert len(events) == broken
        assert all(name == "error" for name, _ in events)
        assert query.is_ready


class TestThreading:
    """Tests for concurrent writers."""

    def test_concurrent_writers(self):
        """Test concurrent writes each produce one enter event."""
        store = MemoryStore()
        executor = ThreadExecutor()
        index = GeoIndex(store, executor=executor)
        query = index.query_at_location(ORIGIN, 1000)
        listener = RecordingListener()
        query.add_listener(listener)

        def write(worker):
            for i in range(10):
                index.set_location(f"{worker}-{i}", GeoPoint(0.0001 * i, 0.0001 * worker))

        threads = [threading.Thread(target=write, args=(w,)) for w in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        executor.shutdown(wait=True)

        entered = [e[1] for e in listener.events if e[0] == "entered"]
        assert sorted(entered) == sorted(f"{w}-{i}" for w in range(4) for i in range(10))
        assert listener.events[0] == ("ready",)
