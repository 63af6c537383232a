"""Optimistic class wall and attendance sync for a shared document store."""

import logging

from .attendance import AttendanceWorkflow
from .client import FirestoreClient
from .config import Settings, load_settings
from .exceptions import (
    ClassWallError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    TransientNetworkError,
    ValidationError,
)
from .feed import ClassWallFeed
from .memory import InMemorySyncAdapter
from .models import Attachments, AttendanceStatus, AuthContext, FeedItem, ResultKind, Role
from .reconcile import ReconcileEngine, merge
from .session import ClassroomSession, open_session
from .store import FeedItemStore
from .tracker import OptimisticMutationTracker

__version__ = "0.1.0"

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "Attachments",
    "AttendanceStatus",
    "AttendanceWorkflow",
    "AuthContext",
    "ClassWallError",
    "ClassWallFeed",
    "ClassroomSession",
    "ConflictError",
    "FeedItem",
    "FeedItemStore",
    "FirestoreClient",
    "InMemorySyncAdapter",
    "NotFoundError",
    "OptimisticMutationTracker",
    "PermissionDeniedError",
    "ReconcileEngine",
    "ResultKind",
    "Role",
    "Settings",
    "TransientNetworkError",
    "ValidationError",
    "load_settings",
    "merge",
    "open_session",
]
