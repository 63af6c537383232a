from datetime import datetime, timezone

import pytest

from classwall_sync.models import FeedItem, Role
from classwall_sync.store import FeedItemStore

T0 = datetime(2025, 11, 3, 9, 0, tzinfo=timezone.utc)


def item(item_id, likes=0):
    return FeedItem(item_id, "u1", "Ada", Role.STUDENT, "post", T0, like_count=likes)


def test_single_writer():
    store = FeedItemStore()
    store.bind_writer()
    with pytest.raises(RuntimeError):
        store.bind_writer()


def test_publish_notifies_only_on_change():
    store = FeedItemStore()
    write = store.bind_writer()
    views = []
    store.add_listener(views.append)

    assert write([item("a")]) is True
    assert write([item("a")]) is False
    assert write([item("a", likes=1)]) is True

    assert len(views) == 2
    assert store.get("a").like_count == 1
    assert len(store) == 1


def test_removed_listener_is_not_called():
    store = FeedItemStore()
    write = store.bind_writer()
    views = []
    remove = store.add_listener(views.append)
    remove()
    remove()

    write([item("a")])

    assert views == []
    assert [i.id for i in store] == ["a"]


def test_view_is_immutable():
    store = FeedItemStore()
    write = store.bind_writer()
    source = [item("a")]
    write(source)
    source.append(item("b"))

    assert isinstance(store.items, tuple)
    assert len(store.items) == 1
    assert store.get("b") is None
