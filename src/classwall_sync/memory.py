"""In-process document store with push delivery, used for tests and demos."""

import asyncio
import copy
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Sequence

from .adapter import SnapshotCallback, Subscription, auto_id
from .models import Document, FieldFilter, Precondition, PushResult, ResultKind

logger = logging.getLogger(__name__)


def _lookup(fields: dict, path: str) -> Any:
    value: Any = fields
    for segment in path.split("."):
        if not isinstance(value, dict) or segment not in value:
            return None
        value = value[segment]
    return value


def _matches(doc: Document, f: FieldFilter) -> bool:
    value = _lookup(doc.fields, f.field)
    if f.op == "==":
        return value == f.value
    if f.op == "in":
        return value in list(f.value)
    raise ValueError(f"Unsupported query operator: {f.op}")


class InMemorySyncAdapter:
    """RemoteSyncAdapter backed by dictionaries.

    Every committed write schedules a whole-collection snapshot for the
    collection's subscribers with ``loop.call_soon``, so snapshots arrive in
    commit order and never synchronously inside the writing call.

    Test hooks: ``deny()`` rejects writes under a path prefix,
    ``inject_fault()`` makes the next mutations fail with a given kind, and
    ``pause()``/``resume()`` hold mutations in flight.
    """

    def __init__(
        self,
        *,
        feed_collection: str = "feedItems",
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.feed_collection = feed_collection
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._collections: dict[str, dict[str, Document]] = {}
        self._subscriptions: dict[str, list[Subscription]] = {}
        self._denied: list[str] = []
        self._faults: deque[ResultKind] = deque()
        self._gate: Optional[asyncio.Event] = None
        self._revision = 0
        self.mutation_count = 0

    # Test hooks

    def deny(self, path_prefix: str) -> None:
        self._denied.append(path_prefix.strip("/"))

    def allow(self, path_prefix: str) -> None:
        prefix = path_prefix.strip("/")
        self._denied = [p for p in self._denied if p != prefix]

    def inject_fault(self, kind: ResultKind, times: int = 1) -> None:
        self._faults.extend([kind] * times)

    def pause(self) -> None:
        self._gate = asyncio.Event()

    def resume(self) -> None:
        if self._gate is not None:
            self._gate.set()
            self._gate = None

    def seed(self, collection: str, doc_id: str, fields: dict[str, Any]) -> Document:
        """Store a document directly, as if another client had written it."""
        return self._put(collection, doc_id, fields)

    def documents(self, collection: str) -> list[Document]:
        docs = self._collections.get(collection.strip("/"), {})
        return [self._copy(doc) for _, doc in sorted(docs.items())]

    # Internals

    @staticmethod
    def _split(path: str) -> tuple[str, str]:
        collection, _, doc_id = path.strip("/").rpartition("/")
        if not collection or not doc_id:
            raise ValueError(f"Not a document path: {path!r}")
        return collection, doc_id

    @staticmethod
    def _copy(doc: Document) -> Document:
        return Document(doc.id, doc.collection, copy.deepcopy(doc.fields), doc.update_time, doc.version)

    def _get(self, collection: str, doc_id: str) -> Optional[Document]:
        return self._collections.get(collection, {}).get(doc_id)

    def _put(self, collection: str, doc_id: str, fields: dict[str, Any]) -> Document:
        self._revision += 1
        doc = Document(
            id=doc_id,
            collection=collection,
            fields=copy.deepcopy(fields),
            update_time=self._clock(),
            version=str(self._revision),
        )
        self._collections.setdefault(collection, {})[doc_id] = doc
        self._notify(collection)
        return doc

    def _remove(self, collection: str, doc_id: str) -> None:
        self._revision += 1
        self._collections.get(collection, {}).pop(doc_id, None)
        self._notify(collection)

    def _notify(self, collection: str) -> None:
        for subscription in list(self._subscriptions.get(collection, [])):
            self._schedule(subscription)

    def _schedule(self, subscription: Subscription) -> None:
        snapshot = self.documents(subscription.collection)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            subscription.deliver(snapshot)
            return
        loop.call_soon(subscription.deliver, snapshot, subscription.epoch)

    async def _admit(self, path: str) -> Optional[PushResult]:
        """Apply test hooks to a mutation. Returns a failure result, if any."""
        self.mutation_count += 1
        if self._gate is not None:
            await self._gate.wait()
        if self._faults:
            kind = self._faults.popleft()
            logger.debug("Injecting %s into write of %s", kind.value, path)
            return PushResult(kind, f"Injected {kind.value}")
        path = path.strip("/")
        for prefix in self._denied:
            if path == prefix or path.startswith(prefix + "/"):
                return PushResult(ResultKind.PERMISSION_DENIED, f"Missing or insufficient permissions for {path}")
        return None

    def _not_found(self, path: str) -> PushResult:
        return PushResult(ResultKind.NOT_FOUND, f"No document to update: {path}")

    # Feed mutations

    async def create_item(self, fields: dict[str, Any], document_id: Optional[str] = None) -> PushResult:
        doc_id = document_id or auto_id()
        failure = await self._admit(f"{self.feed_collection}/{doc_id}")
        if failure:
            return failure
        if self._get(self.feed_collection, doc_id) is not None:
            return PushResult(ResultKind.CONFLICT, f"Document already exists: {self.feed_collection}/{doc_id}")
        self._put(self.feed_collection, doc_id, {**fields, "createdAt": self._clock()})
        return PushResult.success(doc_id)

    async def toggle_like(self, item_id: str, user_id: str, delta: int) -> PushResult:
        path = f"{self.feed_collection}/{item_id}"
        failure = await self._admit(path)
        if failure:
            return failure
        doc = self._get(self.feed_collection, item_id)
        if doc is None:
            return self._not_found(path)

        fields = copy.deepcopy(doc.fields)
        liked_by = list(fields.get("likedBy") or [])
        if delta > 0 and user_id not in liked_by:
            liked_by.append(user_id)
        elif delta < 0:
            liked_by = [uid for uid in liked_by if uid != user_id]
        fields["likedBy"] = liked_by
        fields["likes"] = int(fields.get("likes") or 0) + delta
        self._put(self.feed_collection, item_id, fields)
        return PushResult.success(item_id)

    async def add_comment(
        self, item_id: str, fields: dict[str, Any], comment_id: Optional[str] = None
    ) -> PushResult:
        path = f"{self.feed_collection}/{item_id}"
        failure = await self._admit(f"{path}/comments")
        if failure:
            return failure
        parent = self._get(self.feed_collection, item_id)
        if parent is None:
            return self._not_found(path)

        comment_id = comment_id or auto_id()
        if self._get(f"{path}/comments", comment_id) is not None:
            return PushResult(ResultKind.CONFLICT, f"Document already exists: {path}/comments/{comment_id}")
        self._put(f"{path}/comments", comment_id, {**fields, "createdAt": self._clock()})
        parent_fields = copy.deepcopy(parent.fields)
        parent_fields["comments"] = int(parent_fields.get("comments") or 0) + 1
        self._put(self.feed_collection, item_id, parent_fields)
        return PushResult.success(comment_id)

    async def update_item(self, item_id: str, fields: dict[str, Any]) -> PushResult:
        path = f"{self.feed_collection}/{item_id}"
        failure = await self._admit(path)
        if failure:
            return failure
        doc = self._get(self.feed_collection, item_id)
        if doc is None:
            return self._not_found(path)
        self._put(self.feed_collection, item_id, {**doc.fields, **fields, "updatedAt": self._clock()})
        return PushResult.success(item_id)

    async def delete_item(self, item_id: str) -> PushResult:
        path = f"{self.feed_collection}/{item_id}"
        failure = await self._admit(path)
        if failure:
            return failure
        if self._get(self.feed_collection, item_id) is None:
            return self._not_found(path)
        self._remove(self.feed_collection, item_id)
        return PushResult.success(item_id)

    def subscribe(self, collection: str, on_snapshot: SnapshotCallback) -> Subscription:
        collection = collection.strip("/")

        def forget(subscription: Subscription) -> None:
            subscribers = self._subscriptions.get(collection, [])
            if subscription in subscribers:
                subscribers.remove(subscription)

        subscription = Subscription(collection, on_snapshot, forget)
        self._subscriptions.setdefault(collection, []).append(subscription)
        self._schedule(subscription)
        return subscription

    # Generic documents

    async def get_document(self, path: str) -> Optional[Document]:
        collection, doc_id = self._split(path)
        doc = self._get(collection, doc_id)
        return self._copy(doc) if doc is not None else None

    async def set_document(
        self,
        path: str,
        fields: dict[str, Any],
        *,
        server_timestamps: Sequence[str] = (),
        precondition: Optional[Precondition] = None,
    ) -> PushResult:
        failure = await self._admit(path)
        if failure:
            return failure
        collection, doc_id = self._split(path)
        current = self._get(collection, doc_id)

        if precondition is not None:
            if precondition.version is not None:
                if current is None or current.version != precondition.version:
                    return PushResult(ResultKind.CONFLICT, f"Stored version of {path} has changed")
            elif precondition.exists is True and current is None:
                return self._not_found(path)
            elif precondition.exists is False and current is not None:
                return PushResult(ResultKind.CONFLICT, f"Document already exists: {path}")

        now = self._clock()
        data = copy.deepcopy(fields)
        for field in server_timestamps:
            data[field] = now
        self._put(collection, doc_id, data)
        return PushResult.success(doc_id)

    async def delete_document(self, path: str) -> PushResult:
        failure = await self._admit(path)
        if failure:
            return failure
        collection, doc_id = self._split(path)
        if self._get(collection, doc_id) is not None:
            self._remove(collection, doc_id)
        return PushResult.success(doc_id)

    async def query(self, collection: str, filters: Sequence[FieldFilter]) -> list[Document]:
        return [doc for doc in self.documents(collection) if all(_matches(doc, f) for f in filters)]
