"""Data models for the class wall and attendance sync core."""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional, Union


class Role(str, Enum):
    """Role of the signed-in user or of a post's author."""

    INSTRUCTOR = "instructor"
    STUDENT = "student"


class ResultKind(str, Enum):
    """Outcome of a single push to the remote store."""

    SUCCESS = "success"
    PERMISSION_DENIED = "permission-denied"
    TRANSIENT = "transient-error"
    NOT_FOUND = "not-found"
    CONFLICT = "conflict"


class MutationStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class AttendanceStatus(str, Enum):
    """Statuses stored in the aggregate attendance map."""

    PRESENT = "present"
    LATE = "late"
    ABSENT = "absent"
    REQUESTED = "request"


@dataclass(frozen=True)
class AuthContext:
    """Identity of the signed-in user, stable for the life of a session."""

    user_id: str
    display_name: str
    role: Role
    id_token: Optional[str] = None

    @property
    def is_instructor(self) -> bool:
        return self.role == Role.INSTRUCTOR


@dataclass(frozen=True)
class Attachments:
    """Media attached to a post. Descriptors are opaque to the core."""

    images: tuple[str, ...] = ()
    files: tuple[dict, ...] = ()
    links: tuple[str, ...] = ()

    def is_empty(self) -> bool:
        return not (self.images or self.files or self.links)


@dataclass(frozen=True)
class Comment:
    """A comment in a feed item's thread."""

    id: str
    parent_id: str
    author_id: str
    body: str
    created_at: Optional[datetime]
    author_display_name: str = ""
    role: Role = Role.STUDENT
    pending: bool = False


@dataclass(frozen=True)
class FeedItem:
    """A class wall post as shown to the user."""

    id: str
    author_id: str
    author_display_name: str
    role: Role
    body: str
    created_at: Optional[datetime]
    attachments: Attachments = field(default_factory=Attachments)
    like_count: int = 0
    liked_by: frozenset[str] = frozenset()
    comment_count: int = 0
    comments: tuple[Comment, ...] = ()
    pending: bool = False


@dataclass(frozen=True)
class Document:
    """A remote document with its fields already decoded to Python values."""

    id: str
    collection: str
    fields: dict[str, Any]
    update_time: Optional[datetime] = None
    version: Optional[str] = None

    @property
    def path(self) -> str:
        return f"{self.collection}/{self.id}"


@dataclass(frozen=True)
class Precondition:
    """Condition a conditional write must satisfy on the stored document.

    ``version`` is the opaque token read from ``Document.version``.
    """

    exists: Optional[bool] = None
    version: Optional[str] = None


@dataclass(frozen=True)
class FieldFilter:
    """An equality (``==``) or membership (``in``) filter for queries."""

    field: str
    op: str
    value: Any


@dataclass(frozen=True)
class PushResult:
    """Result of a mutating call on the remote store."""

    kind: ResultKind
    message: str = ""
    document_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.kind == ResultKind.SUCCESS

    @classmethod
    def success(cls, document_id: Optional[str] = None) -> "PushResult":
        return cls(ResultKind.SUCCESS, "", document_id)


@dataclass(frozen=True)
class RemoteSnapshot:
    """The latest authoritative state received from the remote store.

    ``comments`` only holds threads that are currently open; items whose
    thread is not loaded show their counter without comment bodies.
    """

    items: tuple[FeedItem, ...] = ()
    comments: dict[str, tuple[Comment, ...]] = field(default_factory=dict)


# Pending mutation payloads


@dataclass(frozen=True)
class CreateItem:
    item: FeedItem


@dataclass(frozen=True)
class ToggleLike:
    item_id: str
    user_id: str
    target_state: bool


@dataclass(frozen=True)
class AddComment:
    item_id: str
    comment: Comment
    # Parent's comment_count as shown when the comment was written
    base_count: int = 0


@dataclass(frozen=True)
class DeleteItem:
    item_id: str


@dataclass(frozen=True)
class EditItem:
    item_id: str
    body: str
    attachments: Attachments


Mutation = Union[CreateItem, ToggleLike, AddComment, DeleteItem, EditItem]


@dataclass(frozen=True)
class PendingMutation:
    """A locally applied mutation tracked until the remote store settles it."""

    correlation_id: str
    sequence: int
    mutation: Mutation
    recorded_at: datetime
    status: MutationStatus = MutationStatus.PENDING
    reason: Optional[str] = None
    server_id: Optional[str] = None

    @property
    def kind(self) -> str:
        return type(self.mutation).__name__


@dataclass(frozen=True)
class MutationOutcome:
    """Structured result handed back to the caller of a feed action."""

    correlation_id: str
    kind: ResultKind
    message: str = ""
    item_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.kind == ResultKind.SUCCESS


@dataclass(frozen=True)
class AttendanceRecord:
    """One student's status for one class and day."""

    class_id: str
    student_id: str
    day: date
    status: AttendanceStatus


@dataclass(frozen=True)
class AttendanceRequest:
    """A student's request, waiting for an instructor's decision."""

    id: str
    class_id: str
    student_id: str
    student_name: str
    day: date
    requested_at: Optional[datetime] = None


@dataclass(frozen=True)
class AttendanceState:
    """Workflow state for (class, day, student).

    ``state`` is one of ``none``, ``requested``, ``approved`` or ``rejected``;
    ``status`` is set when approved.
    """

    state: str
    status: Optional[AttendanceStatus] = None
