"""Log of optimistic mutations waiting for the remote store."""

import dataclasses
import logging
import uuid
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional

from .models import CreateItem, Mutation, MutationStatus, PendingMutation

logger = logging.getLogger(__name__)

LOCAL_ID_PREFIX = "local_"

# Terminal states remembered after their mutation left the log
DEFAULT_HISTORY = 1000


def local_post_id(correlation_id: str) -> str:
    return f"{LOCAL_ID_PREFIX}post_{correlation_id}"


def local_comment_id(correlation_id: str) -> str:
    return f"{LOCAL_ID_PREFIX}comment_{correlation_id}"


def is_local_id(item_id: str) -> bool:
    return item_id.startswith(LOCAL_ID_PREFIX)


class OptimisticMutationTracker:
    """Records locally applied mutations keyed by correlation id.

    A mutation moves from pending to confirmed or failed exactly once. Failed
    mutations leave the log at once. Confirmed ones stay until the reconcile
    engine reports, through ``observe_remote``, that the remote snapshot
    carries their effect, so the merged view never drops a change between the
    write acknowledgement and its echo. Repeated or late terminal calls are
    ignored.
    """

    def __init__(
        self,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        id_factory: Optional[Callable[[], str]] = None,
        history: int = DEFAULT_HISTORY,
    ):
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._id_factory = id_factory or (lambda: uuid.uuid4().hex)
        self._log: dict[str, PendingMutation] = {}
        self._terminal: "OrderedDict[str, MutationStatus]" = OrderedDict()
        self._history = history
        self._sequence = 0
        self._last_estimate: Optional[datetime] = None
        self._listeners: list[Callable[[], None]] = []

    def new_correlation_id(self) -> str:
        return self._id_factory()

    def now(self) -> datetime:
        """Client-side timestamp estimate, strictly increasing across calls."""
        now = self._clock()
        if self._last_estimate is not None and now <= self._last_estimate:
            now = self._last_estimate + timedelta(microseconds=1)
        self._last_estimate = now
        return now

    def add_listener(self, listener: Callable[[], None]) -> Callable[[], None]:
        """Register a callback fired whenever the log changes.

        Returns:
            A callable that removes the listener
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _changed(self) -> None:
        for listener in list(self._listeners):
            listener()

    def record(
        self,
        mutation: Mutation,
        correlation_id: Optional[str] = None,
        *,
        server_id: Optional[str] = None,
    ) -> str:
        """Add a pending mutation to the log.

        Args:
            mutation: The mutation already applied to the local view
            correlation_id: Id reserved with new_correlation_id(), if any
            server_id: Document id the write will use, when the client picks it

        Returns:
            The correlation id
        """
        correlation_id = correlation_id or self.new_correlation_id()
        if correlation_id in self._log or correlation_id in self._terminal:
            raise ValueError(f"Correlation id already used: {correlation_id}")

        self._sequence += 1
        recorded_at = mutation.item.created_at if isinstance(mutation, CreateItem) else None
        self._log[correlation_id] = PendingMutation(
            correlation_id=correlation_id,
            sequence=self._sequence,
            mutation=mutation,
            recorded_at=recorded_at or self.now(),
            server_id=server_id,
        )
        self._changed()
        return correlation_id

    def get(self, correlation_id: str) -> Optional[PendingMutation]:
        return self._log.get(correlation_id)

    def status(self, correlation_id: str) -> Optional[MutationStatus]:
        if correlation_id in self._terminal:
            return self._terminal[correlation_id]
        entry = self._log.get(correlation_id)
        return entry.status if entry else None

    def _settle(self, correlation_id: str, status: MutationStatus) -> Optional[PendingMutation]:
        entry = self._log.get(correlation_id)
        if entry is None or entry.status != MutationStatus.PENDING:
            logger.debug(
                "Ignoring %s for %s: already %s",
                status.value,
                correlation_id,
                self.status(correlation_id) or "unknown",
            )
            return None
        self._terminal[correlation_id] = status
        while len(self._terminal) > self._history:
            self._terminal.popitem(last=False)
        return entry

    def confirm(self, correlation_id: str, server_id: Optional[str] = None) -> bool:
        """Mark a mutation confirmed by the remote store.

        Returns:
            False if the mutation was unknown or already settled
        """
        entry = self._settle(correlation_id, MutationStatus.CONFIRMED)
        if entry is None:
            return False
        self._log[correlation_id] = dataclasses.replace(
            entry, status=MutationStatus.CONFIRMED, server_id=server_id or entry.server_id
        )
        self._changed()
        return True

    def fail(self, correlation_id: str, reason: str) -> bool:
        """Mark a mutation failed and drop it, rolling back its overlay.

        Returns:
            False if the mutation was unknown or already settled
        """
        entry = self._settle(correlation_id, MutationStatus.FAILED)
        if entry is None:
            return False
        del self._log[correlation_id]
        logger.info("Mutation %s (%s) failed: %s", correlation_id, entry.kind, reason)
        self._changed()
        return True

    def snapshot(self) -> list[PendingMutation]:
        """Mutations the merged view must still overlay, in record order."""
        return sorted(self._log.values(), key=lambda m: m.sequence)

    def pending(self) -> list[PendingMutation]:
        return [m for m in self.snapshot() if m.status == MutationStatus.PENDING]

    def observe_remote(self, reflected: Iterable[str]) -> int:
        """Drop confirmed mutations whose effect a remote snapshot now carries.

        Args:
            reflected: Correlation ids the remote snapshot was found to carry.
                Ids of pending or unknown mutations are ignored.

        Returns:
            Number of mutations dropped
        """
        ids = set(reflected)
        done = [
            m.correlation_id
            for m in self._log.values()
            if m.status == MutationStatus.CONFIRMED and m.correlation_id in ids
        ]
        for correlation_id in done:
            del self._log[correlation_id]
        if done:
            self._changed()
        return len(done)

    def expire(self, older_than: timedelta, reason: str = "transient: timed out") -> list[str]:
        """Settle everything recorded more than ``older_than`` ago.

        Pending mutations are failed; confirmed ones whose echo never arrived
        are dropped.

        Returns:
            Correlation ids of the mutations failed here
        """
        cutoff = self._clock() - older_than
        failed = []
        dropped = False
        for entry in self.snapshot():
            if entry.recorded_at >= cutoff:
                continue
            if entry.status == MutationStatus.PENDING:
                self.fail(entry.correlation_id, reason)
                failed.append(entry.correlation_id)
            else:
                del self._log[entry.correlation_id]
                dropped = True
        if dropped:
            self._changed()
        return failed

    def clear(self) -> None:
        """Forget every mutation, e.g. on sign-out."""
        self._log.clear()
        self._terminal.clear()
        self._changed()
