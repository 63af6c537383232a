"""Per sign-in wiring of the adapter, feed and attendance workflow."""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from .adapter import PushChannel, RemoteSyncAdapter
from .attendance import AttendanceWorkflow
from .client import FirestoreClient
from .config import Settings
from .feed import ClassWallFeed
from .models import AuthContext

logger = logging.getLogger(__name__)


@dataclass
class ClassroomSession:
    """Everything that lives between sign-in and sign-out.

    Nothing here outlives the session; unconfirmed local changes are lost
    on close.
    """

    auth: AuthContext
    settings: Settings
    adapter: RemoteSyncAdapter
    feed: ClassWallFeed
    attendance: AttendanceWorkflow

    async def close(self) -> None:
        """Tear the session down on sign-out."""
        self.feed.close()
        if isinstance(self.adapter, FirestoreClient):
            await self.adapter.close()
        logger.info("Closed session for %s", self.auth.user_id)

    async def __aenter__(self) -> "ClassroomSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


def open_session(
    settings: Settings,
    auth: AuthContext,
    *,
    adapter: Optional[RemoteSyncAdapter] = None,
    channel: Optional[PushChannel] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    start: bool = True,
) -> ClassroomSession:
    """Build a session for a signed-in user.

    Args:
        settings: Loaded settings
        auth: The signed-in user
        adapter: Remote store to use; defaults to the Firestore REST client
        channel: Push transport for the default client's subscriptions
        transport: httpx transport for the default client, mainly for tests
        start: Subscribe to the feed right away

    Returns:
        The wired session

    Raises:
        ValueError: If the default client lacks a project id, or lacks a push
            channel while ``start`` is set
    """
    if adapter is None:
        if not settings.project_id:
            raise ValueError("CLASSWALL_PROJECT_ID must be set to use the Firestore client")
        if start and channel is None:
            raise ValueError("A push channel is required to start the feed on the Firestore client")
        adapter = FirestoreClient.from_settings(settings, auth, channel=channel, transport=transport)

    feed = ClassWallFeed(adapter, auth, settings=settings)
    attendance = AttendanceWorkflow(
        adapter,
        auth,
        collection=settings.attendance_collection,
        max_conflict_retries=settings.attendance_conflict_retries,
    )
    if start:
        feed.start()

    logger.info("Opened session for %s (%s)", auth.user_id, auth.role.value)
    return ClassroomSession(auth=auth, settings=settings, adapter=adapter, feed=feed, attendance=attendance)
