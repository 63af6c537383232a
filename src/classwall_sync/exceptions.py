"""Errors raised by the sync core."""

from .models import PushResult, ResultKind


class ClassWallError(Exception):
    """Base exception for the sync core."""

    kind = "error"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def as_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class ValidationError(ClassWallError):
    """Raised when an action is rejected before anything is recorded."""

    kind = "validation"


class PermissionDeniedError(ClassWallError):
    """Raised when the backend or a role check refuses an action."""

    kind = ResultKind.PERMISSION_DENIED.value


class NotFoundError(ClassWallError):
    """Raised when a referenced document does not exist."""

    kind = ResultKind.NOT_FOUND.value


class TransientNetworkError(ClassWallError):
    """Raised when the backend could not be reached or was unavailable."""

    kind = ResultKind.TRANSIENT.value


class ConflictError(ClassWallError):
    """Raised when a conditional write lost against a concurrent writer."""

    kind = ResultKind.CONFLICT.value


_BY_KIND = {
    ResultKind.PERMISSION_DENIED: PermissionDeniedError,
    ResultKind.NOT_FOUND: NotFoundError,
    ResultKind.TRANSIENT: TransientNetworkError,
    ResultKind.CONFLICT: ConflictError,
}


def raise_for_result(result: PushResult) -> None:
    """Raise the exception matching a failed push result."""
    if result.ok:
        return
    raise _BY_KIND[result.kind](result.message or result.kind.value)
