from datetime import datetime, timedelta, timezone

import pytest

from classwall_sync.models import (
    CreateItem,
    DeleteItem,
    FeedItem,
    MutationStatus,
    Role,
    ToggleLike,
)
from classwall_sync.tracker import OptimisticMutationTracker, is_local_id, local_post_id

T0 = datetime(2025, 11, 3, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


def make_tracker(clock=None):
    ids = iter(f"c{i}" for i in range(1, 100))
    return OptimisticMutationTracker(clock=clock or FakeClock(), id_factory=lambda: next(ids))


def make_create(tracker, body="hello"):
    cid = tracker.new_correlation_id()
    item = FeedItem(
        id=local_post_id(cid),
        author_id="u1",
        author_display_name="Ada",
        role=Role.STUDENT,
        body=body,
        created_at=tracker.now(),
    )
    return cid, CreateItem(item)


def test_local_ids_are_prefixed():
    assert local_post_id("abc") == "local_post_abc"
    assert is_local_id("local_post_abc")
    assert not is_local_id("s1")


def test_now_is_strictly_increasing_with_a_frozen_clock():
    tracker = make_tracker()
    first = tracker.now()
    second = tracker.now()
    assert second > first


def test_record_orders_by_sequence():
    tracker = make_tracker()
    a = tracker.record(ToggleLike("s1", "u1", True))
    b = tracker.record(DeleteItem("s2"))
    assert [m.correlation_id for m in tracker.snapshot()] == [a, b]
    assert [m.sequence for m in tracker.snapshot()] == [1, 2]


def test_record_rejects_reused_correlation_id():
    tracker = make_tracker()
    cid = tracker.record(DeleteItem("s1"))
    with pytest.raises(ValueError):
        tracker.record(DeleteItem("s1"), cid)


def test_create_uses_item_timestamp():
    tracker = make_tracker()
    cid, mutation = make_create(tracker)
    tracker.record(mutation, cid)
    assert tracker.get(cid).recorded_at == mutation.item.created_at


def test_confirm_is_terminal_exactly_once():
    tracker = make_tracker()
    cid = tracker.record(ToggleLike("s1", "u1", True))

    assert tracker.confirm(cid, "s1") is True
    assert tracker.confirm(cid) is False
    assert tracker.fail(cid, "late failure") is False
    assert tracker.status(cid) == MutationStatus.CONFIRMED
    assert tracker.get(cid).server_id == "s1"


def test_fail_drops_the_mutation():
    tracker = make_tracker()
    cid = tracker.record(ToggleLike("s1", "u1", True))

    assert tracker.fail(cid, "permission-denied") is True
    assert tracker.snapshot() == []
    assert tracker.status(cid) == MutationStatus.FAILED
    assert tracker.confirm(cid) is False


def test_unknown_ids_are_ignored():
    tracker = make_tracker()
    assert tracker.confirm("nope") is False
    assert tracker.fail("nope", "x") is False


def test_listeners_fire_on_changes():
    tracker = make_tracker()
    calls = []
    remove = tracker.add_listener(lambda: calls.append(len(tracker.snapshot())))

    cid = tracker.record(DeleteItem("s1"))
    tracker.confirm(cid)
    remove()
    tracker.record(DeleteItem("s2"))

    assert calls == [1, 1]


def test_observe_remote_drops_only_confirmed_mutations():
    tracker = make_tracker()
    like = tracker.record(ToggleLike("s1", "u1", True))
    cid, create = make_create(tracker)
    tracker.record(create, cid, server_id="new1")
    pending = tracker.record(DeleteItem("s2"))

    tracker.confirm(like)
    tracker.confirm(cid)

    assert tracker.get(cid).server_id == "new1"
    assert tracker.observe_remote([like, pending, "unknown"]) == 1
    assert [m.correlation_id for m in tracker.snapshot()] == [cid, pending]

    assert tracker.observe_remote([cid]) == 1
    assert [m.correlation_id for m in tracker.snapshot()] == [pending]


def test_terminal_history_is_bounded():
    ids = iter(f"c{i}" for i in range(1, 100))
    tracker = OptimisticMutationTracker(clock=FakeClock(), id_factory=lambda: next(ids), history=2)
    first, second, third = (tracker.record(DeleteItem(f"s{n}")) for n in range(3))
    for cid in (first, second, third):
        tracker.fail(cid, "permission-denied")

    assert tracker.status(first) is None
    assert tracker.status(third) == MutationStatus.FAILED
    assert tracker.confirm(first) is False
    assert tracker.snapshot() == []


def test_expire_fails_stuck_mutations():
    clock = FakeClock()
    tracker = make_tracker(clock)
    old = tracker.record(ToggleLike("s1", "u1", True))
    clock.advance(10)
    fresh = tracker.record(ToggleLike("s2", "u1", True))
    clock.advance(6)

    failed = tracker.expire(timedelta(seconds=15))

    assert failed == [old]
    assert tracker.status(old) == MutationStatus.FAILED
    assert [m.correlation_id for m in tracker.snapshot()] == [fresh]


def test_clear_forgets_everything():
    tracker = make_tracker()
    tracker.record(DeleteItem("s1"))
    tracker.clear()
    assert tracker.snapshot() == []
