"""Class wall actions with optimistic local updates."""

import asyncio
import logging
from datetime import timedelta
from typing import Awaitable, Callable, Optional

from .adapter import RemoteSyncAdapter, Subscription, auto_id
from .config import Settings
from .exceptions import NotFoundError, PermissionDeniedError, ValidationError
from .models import (
    AddComment,
    Attachments,
    AuthContext,
    Comment,
    CreateItem,
    DeleteItem,
    Document,
    EditItem,
    FeedItem,
    Mutation,
    MutationOutcome,
    PushResult,
    ResultKind,
    ToggleLike,
)
from .parsers import (
    attachment_fields,
    comment_fields,
    comment_from_document,
    feed_item_fields,
    feed_item_from_document,
)
from .reconcile import ReconcileEngine
from .store import FeedItemStore
from .tracker import OptimisticMutationTracker, is_local_id, local_comment_id, local_post_id

logger = logging.getLogger(__name__)

Send = Callable[[], Awaitable[PushResult]]


class ClassWallFeed:
    """The class wall as seen by one signed-in user.

    Every action is applied to the local view at once, pushed to the remote
    store, and then confirmed or rolled back. Remote snapshots from the feed
    subscription (and from open comment threads) re-merge the view.
    """

    def __init__(
        self,
        adapter: RemoteSyncAdapter,
        auth: AuthContext,
        *,
        settings: Optional[Settings] = None,
        tracker: Optional[OptimisticMutationTracker] = None,
        store: Optional[FeedItemStore] = None,
    ):
        self._adapter = adapter
        self._auth = auth
        self._settings = settings or Settings()
        self.tracker = tracker or OptimisticMutationTracker()
        self.store = store or FeedItemStore()
        self.engine = ReconcileEngine(
            self.tracker,
            self.store,
            tolerance=timedelta(seconds=self._settings.correlation_tolerance),
        )
        self._collection = self._settings.feed_collection
        self._subscription: Optional[Subscription] = None
        self._threads: dict[str, Subscription] = {}
        self._epoch = 0

    @property
    def items(self) -> tuple[FeedItem, ...]:
        return self.store.items

    # Subscriptions

    def start(self) -> None:
        """Subscribe to the feed collection."""
        if self._subscription is not None:
            return
        self._epoch += 1
        epoch = self._epoch
        self._subscription = self._adapter.subscribe(
            self._collection, lambda docs: self._on_feed_snapshot(docs, epoch)
        )

    def stop(self) -> None:
        """Unsubscribe from the feed and every open thread.

        Snapshots already scheduled when this runs are discarded.
        """
        self._epoch += 1
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
        for item_id in list(self._threads):
            self.close_thread(item_id)

    def open_thread(self, item_id: str) -> None:
        """Load and follow the comments of one post."""
        if item_id in self._threads:
            return
        if is_local_id(item_id):
            raise ValidationError("Post has not been synced yet")
        epoch = self._epoch
        self._threads[item_id] = self._adapter.subscribe(
            f"{self._collection}/{item_id}/comments",
            lambda docs: self._on_thread_snapshot(item_id, docs, epoch),
        )

    def close_thread(self, item_id: str) -> None:
        subscription = self._threads.pop(item_id, None)
        if subscription is not None:
            subscription.unsubscribe()
        self.engine.drop_remote_comments(item_id)

    def _on_feed_snapshot(self, docs: list[Document], epoch: int) -> None:
        if epoch != self._epoch:
            logger.debug("Discarding feed snapshot from epoch %d", epoch)
            return

        items = []
        for doc in docs:
            try:
                items.append(feed_item_from_document(doc))
            except (TypeError, ValueError) as e:
                logger.warning("Skipping malformed feed item %s: %s", doc.id, e)
        self.engine.apply_remote_items(items)
        self.tracker.expire(timedelta(seconds=self._settings.mutation_timeout))

    def _on_thread_snapshot(self, item_id: str, docs: list[Document], epoch: int) -> None:
        if epoch != self._epoch or item_id not in self._threads:
            logger.debug("Discarding comments snapshot for %s", item_id)
            return

        comments = []
        for doc in docs:
            try:
                comments.append(comment_from_document(doc, item_id))
            except (TypeError, ValueError) as e:
                logger.warning("Skipping malformed comment %s on %s: %s", doc.id, item_id, e)
        self.engine.apply_remote_comments(item_id, comments)

    # Actions

    def _require_item(self, item_id: str) -> FeedItem:
        if not item_id:
            raise ValidationError("Post id is required")
        if is_local_id(item_id):
            raise ValidationError("Post has not been synced yet")
        item = self.store.get(item_id)
        if item is None:
            raise NotFoundError(f"Post not found: {item_id}")
        return item

    @staticmethod
    def _check_content(body: str, attachments: Attachments) -> None:
        if not (body or "").strip() and attachments.is_empty():
            raise ValidationError("Post must have text or an attachment")
        # Posts store a single image field
        if len(attachments.images) > 1:
            raise ValidationError("A post can have at most one image")

    async def create_post(self, body: str, attachments: Optional[Attachments] = None) -> MutationOutcome:
        """Publish a new post.

        Args:
            body: Post text
            attachments: Images, files and links to attach

        Returns:
            MutationOutcome with the server id of the post on success

        Raises:
            ValidationError: If the content is invalid or the user has no id
        """
        attachments = attachments or Attachments()
        self._check_content(body, attachments)
        if not self._auth.user_id:
            raise ValidationError("Signed-in user has no id")

        correlation_id = self.tracker.new_correlation_id()
        item = FeedItem(
            id=local_post_id(correlation_id),
            author_id=self._auth.user_id,
            author_display_name=self._auth.display_name,
            role=self._auth.role,
            body=body,
            created_at=self.tracker.now(),
            attachments=attachments,
            pending=True,
        )
        doc_id = auto_id()
        fields = feed_item_fields(item)
        return await self._run(
            CreateItem(item),
            correlation_id,
            lambda: self._adapter.create_item(fields, document_id=doc_id),
            item.id,
            known_id=doc_id,
        )

    async def toggle_like(self, item_id: str) -> MutationOutcome:
        """Like a post, or unlike it if the user already likes it."""
        item = self._require_item(item_id)
        target = self._auth.user_id not in item.liked_by
        delta = 1 if target else -1
        return await self._run(
            ToggleLike(item_id, self._auth.user_id, target),
            self.tracker.new_correlation_id(),
            lambda: self._adapter.toggle_like(item_id, self._auth.user_id, delta),
            item_id,
        )

    async def add_comment(self, item_id: str, body: str) -> MutationOutcome:
        """Add a comment to a post's thread.

        A comment the backend refuses is rolled back like any other mutation.
        """
        text = (body or "").strip()
        if not text:
            raise ValidationError("Comment cannot be empty")
        parent = self._require_item(item_id)

        correlation_id = self.tracker.new_correlation_id()
        comment = Comment(
            id=local_comment_id(correlation_id),
            parent_id=item_id,
            author_id=self._auth.user_id,
            body=text,
            created_at=self.tracker.now(),
            author_display_name=self._auth.display_name,
            role=self._auth.role,
            pending=True,
        )
        comment_id = auto_id()
        fields = comment_fields(comment)
        return await self._run(
            AddComment(item_id, comment, parent.comment_count),
            correlation_id,
            lambda: self._adapter.add_comment(item_id, fields, comment_id=comment_id),
            item_id,
            known_id=comment_id,
        )

    async def edit_post(
        self, item_id: str, body: str, attachments: Optional[Attachments] = None
    ) -> MutationOutcome:
        """Replace the text and attachments of the user's own post.

        Raises:
            PermissionDeniedError: If the post belongs to someone else
        """
        item = self._require_item(item_id)
        if item.author_id != self._auth.user_id:
            raise PermissionDeniedError("Only the author can edit a post")
        attachments = attachments if attachments is not None else item.attachments
        self._check_content(body, attachments)

        fields = {"message": body, **attachment_fields(attachments)}
        return await self._run(
            EditItem(item_id, body, attachments),
            self.tracker.new_correlation_id(),
            lambda: self._adapter.update_item(item_id, fields),
            item_id,
        )

    async def delete_post(self, item_id: str) -> MutationOutcome:
        """Delete a post. Instructors may delete any post, students their own."""
        item = self._require_item(item_id)
        if item.author_id != self._auth.user_id and not self._auth.is_instructor:
            raise PermissionDeniedError("Students can only delete their own posts")
        return await self._run(
            DeleteItem(item_id),
            self.tracker.new_correlation_id(),
            lambda: self._adapter.delete_item(item_id),
            item_id,
        )

    # Push

    async def _run(
        self,
        mutation: Mutation,
        correlation_id: str,
        send: Send,
        item_id: str,
        *,
        known_id: Optional[str] = None,
    ) -> MutationOutcome:
        self.tracker.record(mutation, correlation_id, server_id=known_id)
        timeout = self._settings.mutation_timeout
        try:
            result = await asyncio.wait_for(self._send_with_retry(send, known_id), timeout=timeout)
        except asyncio.TimeoutError:
            result = PushResult(ResultKind.TRANSIENT, f"No confirmation within {timeout:g}s")

        if result.ok:
            self.tracker.confirm(correlation_id, result.document_id)
            return MutationOutcome(correlation_id, ResultKind.SUCCESS, item_id=result.document_id or item_id)

        self.tracker.fail(correlation_id, f"{result.kind.value}: {result.message}")
        logger.warning(
            "%s on %s not synced (%s): %s",
            type(mutation).__name__,
            item_id,
            result.kind.value,
            result.message,
        )
        return MutationOutcome(correlation_id, result.kind, result.message, item_id)

    async def _send_with_retry(self, send: Send, known_id: Optional[str] = None) -> PushResult:
        """Send a push, retrying transient failures with exponential backoff.

        For creates with a client-chosen id, a conflict after a retry means an
        earlier attempt was committed even though its response was lost.
        """
        delay = self._settings.retry_backoff
        attempt = 0
        while True:
            result = await send()
            if attempt and known_id and result.kind == ResultKind.CONFLICT:
                logger.info("Earlier attempt was already committed: %s", result.message)
                return PushResult.success(known_id)
            if result.kind != ResultKind.TRANSIENT or attempt >= self._settings.max_retries:
                return result

            attempt += 1
            logger.info(
                "Transient failure (%s), retry %d/%d in %.2fs",
                result.message,
                attempt,
                self._settings.max_retries,
                delay,
            )
            await asyncio.sleep(delay)
            delay = min(delay * 2, self._settings.retry_backoff_max)

    def close(self) -> None:
        """Stop subscriptions and forget local state, e.g. on sign-out."""
        self.stop()
        self.tracker.clear()
        self.engine.reset()
        self.engine.close()
