"""Merging the remote snapshot with pending local mutations."""

import dataclasses
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

from .models import (
    AddComment,
    Comment,
    CreateItem,
    DeleteItem,
    EditItem,
    FeedItem,
    MutationStatus,
    PendingMutation,
    RemoteSnapshot,
    ToggleLike,
)
from .store import FeedItemStore
from .tracker import OptimisticMutationTracker, is_local_id

DEFAULT_TOLERANCE = timedelta(seconds=5)

# Items without a timestamp yet (server time not resolved) sort as newest
_NEWEST = datetime.max.replace(tzinfo=timezone.utc)


def _newest_first(entries: list) -> list:
    ordered = sorted(entries, key=lambda e: e.id)
    ordered.sort(key=lambda e: e.created_at or _NEWEST, reverse=True)
    return ordered


def _correlate(
    entry: PendingMutation,
    items: dict[str, FeedItem],
    claimed: set[str],
    tolerance: timedelta,
) -> Optional[str]:
    """Find the remote item that is the confirmed form of a local create."""
    local = entry.mutation.item
    if local.created_at is None:
        return None

    candidates = []
    for item in items.values():
        if item.id in claimed or is_local_id(item.id) or item.author_id != local.author_id:
            continue
        if item.created_at is None:
            continue
        delta = abs(item.created_at - local.created_at)
        if delta <= tolerance:
            candidates.append((item.body != local.body, delta, item.id))

    if not candidates:
        return None
    return min(candidates)[2]


def _comment_reflected(entry: PendingMutation, item: FeedItem, thread: Optional[set[str]]) -> bool:
    """Whether the remote parent's counter, and its thread if loaded, include a confirmed comment."""
    if item.comment_count <= entry.mutation.base_count:
        return False
    return thread is None or entry.server_id in thread


def reflected(remote: RemoteSnapshot, pending: Sequence[PendingMutation]) -> set[str]:
    """Correlation ids of confirmed mutations the remote snapshot already carries.

    Pending mutations are never included. A confirmed mutation whose target
    item is gone from the snapshot has nothing left to overlay and counts as
    carried.
    """
    items = {item.id: item for item in remote.items}
    threads = {item_id: {c.id for c in comments} for item_id, comments in remote.comments.items()}
    done: set[str] = set()
    # A newer like toggle the snapshot carries also covers older ones by the same user
    likes_seen: set[tuple[str, str]] = set()

    for entry in sorted(pending, key=lambda m: m.sequence, reverse=True):
        if entry.status != MutationStatus.CONFIRMED:
            continue
        mutation = entry.mutation

        if isinstance(mutation, CreateItem):
            carried = entry.server_id in items
        elif isinstance(mutation, DeleteItem):
            carried = mutation.item_id not in items
        elif mutation.item_id not in items:
            carried = True
        elif isinstance(mutation, ToggleLike):
            key = (mutation.item_id, mutation.user_id)
            item = items[mutation.item_id]
            carried = key in likes_seen or (mutation.user_id in item.liked_by) == mutation.target_state
            if carried:
                likes_seen.add(key)
        elif isinstance(mutation, AddComment):
            carried = _comment_reflected(entry, items[mutation.item_id], threads.get(mutation.item_id))
        elif isinstance(mutation, EditItem):
            item = items[mutation.item_id]
            carried = item.body == mutation.body and item.attachments == mutation.attachments
        else:
            carried = False

        if carried:
            done.add(entry.correlation_id)
    return done


def merge(
    remote: RemoteSnapshot,
    pending: Sequence[PendingMutation],
    *,
    tolerance: timedelta = DEFAULT_TOLERANCE,
) -> tuple[FeedItem, ...]:
    """Combine the remote snapshot and the mutation log into one view.

    Pure: the same inputs always give the same output.

    Args:
        remote: Latest authoritative items and loaded comment threads
        pending: Unreconciled mutations in record order
        tolerance: Max distance between a local create's estimated time and
            its server timestamp for the two to be treated as one post

    Returns:
        Items sorted by created_at descending, id ascending
    """
    base: dict[str, FeedItem] = {item.id: item for item in remote.items}
    items = dict(base)
    threads: dict[str, dict[str, Comment]] = {
        item_id: {c.id: c for c in comments} for item_id, comments in remote.comments.items()
    }
    log = sorted(pending, key=lambda m: m.sequence)
    creates = [m for m in log if isinstance(m.mutation, CreateItem)]
    # Carried creates stay in play so their server id remains claimed
    done = reflected(remote, log)
    log = [m for m in log if m.correlation_id not in done or isinstance(m.mutation, CreateItem)]

    # Creates: known server id first, then author and time proximity
    claimed: set[str] = set()
    superseded: set[str] = set()
    for entry in creates:
        if entry.server_id and entry.server_id in items and entry.server_id not in claimed:
            claimed.add(entry.server_id)
            superseded.add(entry.correlation_id)
    for entry in creates:
        if entry.correlation_id in superseded or entry.server_id:
            continue
        match = _correlate(entry, items, claimed, tolerance)
        if match is not None:
            claimed.add(match)
            superseded.add(entry.correlation_id)
    for entry in creates:
        if entry.correlation_id not in superseded:
            local = entry.mutation.item
            items[local.id] = dataclasses.replace(local, pending=entry.status == MutationStatus.PENDING)

    for entry in log:
        mutation = entry.mutation
        in_flight = entry.status == MutationStatus.PENDING

        if isinstance(mutation, ToggleLike):
            item = items.get(mutation.item_id)
            if item is None or (mutation.user_id in item.liked_by) == mutation.target_state:
                continue
            if mutation.target_state:
                liked_by = item.liked_by | {mutation.user_id}
                count = item.like_count + 1
            else:
                liked_by = item.liked_by - {mutation.user_id}
                count = max(item.like_count - 1, 0)
            items[item.id] = dataclasses.replace(
                item, liked_by=liked_by, like_count=count, pending=item.pending or in_flight
            )

        elif isinstance(mutation, AddComment):
            item = items.get(mutation.item_id)
            if item is None:
                continue
            thread = threads.setdefault(item.id, {})
            if (entry.server_id and entry.server_id in thread) or mutation.comment.id in thread:
                continue
            thread[mutation.comment.id] = dataclasses.replace(mutation.comment, pending=in_flight)
            # A confirmed comment may already be counted while its thread lags behind
            remote_item = base.get(item.id)
            counted = (
                not in_flight
                and remote_item is not None
                and remote_item.comment_count > mutation.base_count
            )
            items[item.id] = dataclasses.replace(
                item,
                comment_count=item.comment_count + (0 if counted else 1),
                pending=item.pending or in_flight,
            )

        elif isinstance(mutation, EditItem):
            item = items.get(mutation.item_id)
            if item is None:
                continue
            items[item.id] = dataclasses.replace(
                item, body=mutation.body, attachments=mutation.attachments, pending=item.pending or in_flight
            )

        elif isinstance(mutation, DeleteItem):
            items.pop(mutation.item_id, None)

    for item_id, thread in threads.items():
        item = items.get(item_id)
        if item is not None and thread:
            items[item_id] = dataclasses.replace(item, comments=tuple(_newest_first(list(thread.values()))))

    return tuple(_newest_first(list(items.values())))


class ReconcileEngine:
    """Re-runs ``merge`` whenever the remote snapshot or the log changes.

    The engine is the single writer of its FeedItemStore.
    """

    def __init__(
        self,
        tracker: OptimisticMutationTracker,
        store: FeedItemStore,
        *,
        tolerance: timedelta = DEFAULT_TOLERANCE,
    ):
        self._tracker = tracker
        self._write = store.bind_writer()
        self._tolerance = tolerance
        self._remote = RemoteSnapshot()
        self._remove_listener = tracker.add_listener(self.refresh)

    @property
    def remote(self) -> RemoteSnapshot:
        return self._remote

    def apply_remote_items(self, items: Sequence[FeedItem]) -> None:
        """Take a new feed snapshot as the baseline and re-merge."""
        self._remote = dataclasses.replace(self._remote, items=tuple(items))
        self.refresh()

    def apply_remote_comments(self, item_id: str, comments: Sequence[Comment]) -> None:
        threads = dict(self._remote.comments)
        threads[item_id] = tuple(comments)
        self._remote = dataclasses.replace(self._remote, comments=threads)
        self.refresh()

    def drop_remote_comments(self, item_id: str) -> None:
        if item_id not in self._remote.comments:
            return
        threads = {k: v for k, v in self._remote.comments.items() if k != item_id}
        self._remote = dataclasses.replace(self._remote, comments=threads)
        self.refresh()

    def reset(self) -> None:
        self._remote = RemoteSnapshot()
        self.refresh()

    def refresh(self) -> tuple[FeedItem, ...]:
        """Re-merge and publish, then drop confirmed mutations the remote carries.

        Runs on every log change too, so a confirmation that arrives after
        its echo is settled against the snapshot already held.
        """
        log = self._tracker.snapshot()
        view = merge(self._remote, log, tolerance=self._tolerance)
        self._write(view)
        # merge already skips these, so the re-entrant refresh publishes nothing new
        self._tracker.observe_remote(reflected(self._remote, log))
        return view

    def close(self) -> None:
        self._remove_listener()
