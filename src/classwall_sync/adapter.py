"""Remote store contract shared by the REST and in-memory adapters."""

import logging
import secrets
import string
from typing import Any, Callable, Optional, Protocol, Sequence

from .models import Document, FieldFilter, Precondition, PushResult

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[list[Document]], None]

_AUTO_ID_ALPHABET = string.ascii_letters + string.digits


def auto_id() -> str:
    """Generate a 20 character document id, as the Firestore SDKs do."""
    return "".join(secrets.choice(_AUTO_ID_ALPHABET) for _ in range(20))


class Subscription:
    """Handle for a live collection subscription.

    Transports capture ``epoch`` when they schedule a delivery and pass it
    back to ``deliver``. Unsubscribing bumps the epoch, so a delivery that was
    already scheduled is dropped instead of reaching a view nobody reads.
    """

    def __init__(
        self,
        collection: str,
        on_snapshot: SnapshotCallback,
        on_unsubscribe: Optional[Callable[["Subscription"], None]] = None,
    ):
        self.collection = collection
        self._on_snapshot = on_snapshot
        self._on_unsubscribe = on_unsubscribe
        self._epoch = 0
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    @property
    def epoch(self) -> int:
        return self._epoch

    def deliver(self, documents: Sequence[Document], epoch: Optional[int] = None) -> bool:
        """Pass a snapshot to the subscriber.

        Returns:
            False if the snapshot was discarded as stale
        """
        if not self._active or (epoch is not None and epoch != self._epoch):
            logger.debug("Discarding stale snapshot for %s (epoch %s)", self.collection, epoch)
            return False
        self._on_snapshot(list(documents))
        return True

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        self._epoch += 1
        if self._on_unsubscribe is not None:
            self._on_unsubscribe(self)


class PushChannel(Protocol):
    """Transport that pushes whole-collection snapshots in commit order.

    ``deliver`` receives REST document resources (``name``, ``fields``,
    ``updateTime``). The returned callable closes the stream.
    """

    def open(self, collection: str, deliver: Callable[[list[dict]], None]) -> Callable[[], None]:
        raise NotImplementedError


class RemoteSyncAdapter(Protocol):
    """Mutations and live snapshots against the remote document store.

    Feed mutations report failures through the returned PushResult and
    never raise for remote errors. Document reads raise the exceptions in
    ``classwall_sync.exceptions``.
    """

    # Feed mutations
    async def create_item(self, fields: dict[str, Any], document_id: Optional[str] = None) -> PushResult:
        """Create a post; ``createdAt`` is set to the server time.

        Reusing ``document_id`` on a retry turns a duplicate create into a
        conflict instead of a second post.
        """

        raise NotImplementedError

    async def toggle_like(self, item_id: str, user_id: str, delta: int) -> PushResult:
        raise NotImplementedError

    async def add_comment(
        self, item_id: str, fields: dict[str, Any], comment_id: Optional[str] = None
    ) -> PushResult:
        """Add a comment and bump the parent's counter."""

        raise NotImplementedError

    async def update_item(self, item_id: str, fields: dict[str, Any]) -> PushResult:
        raise NotImplementedError

    async def delete_item(self, item_id: str) -> PushResult:
        raise NotImplementedError

    def subscribe(self, collection: str, on_snapshot: SnapshotCallback) -> Subscription:
        raise NotImplementedError

    # Generic documents
    async def get_document(self, path: str) -> Optional[Document]:
        raise NotImplementedError

    async def set_document(
        self,
        path: str,
        fields: dict[str, Any],
        *,
        server_timestamps: Sequence[str] = (),
        precondition: Optional[Precondition] = None,
    ) -> PushResult:
        """Replace a document's fields, optionally only if a precondition holds."""

        raise NotImplementedError

    async def delete_document(self, path: str) -> PushResult:
        raise NotImplementedError

    async def query(self, collection: str, filters: Sequence[FieldFilter]) -> list[Document]:
        raise NotImplementedError
