"""Error taxonomy for board mutations, storage calls, and the push stream."""

from __future__ import annotations

from uuid import UUID


class BoardError(Exception):
    """Base class for every failure the board engine surfaces to callers."""

    code = "board_error"
    retryable = False

    def __init__(self, message: str, *, task_id: UUID | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.task_id = task_id


class PermissionDenied(BoardError):
    """The actor is not allowed to perform the action; nothing was mutated."""

    code = "permission_denied"

    def __init__(
        self,
        message: str,
        *,
        action: str,
        task_id: UUID | None = None,
    ) -> None:
        super().__init__(message, task_id=task_id)
        self.action = action


class ValidationError(BoardError):
    """The request was rejected before any optimistic apply (e.g. an empty title)."""

    code = "validation_error"

    def __init__(self, message: str, *, field: str, task_id: UUID | None = None) -> None:
        super().__init__(message, task_id=task_id)
        self.field = field


class NotFound(BoardError):
    """The task, attachment, or assignee no longer exists in the projection."""

    code = "not_found"


class StorageError(BoardError):
    """Typed failure returned by the storage/query service.

    ``code`` is one of ``not_found``, ``permission_denied``,
    ``constraint_violation``, or ``transport_error``.
    """

    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    CONSTRAINT_VIOLATION = "constraint_violation"
    TRANSPORT_ERROR = "transport_error"

    def __init__(
        self,
        message: str,
        *,
        code: str = CONSTRAINT_VIOLATION,
        status_code: int | None = None,
        task_id: UUID | None = None,
    ) -> None:
        super().__init__(message, task_id=task_id)
        self.code = code
        self.status_code = status_code


class TransportError(StorageError):
    """The storage service was unreachable or did not answer in time."""

    retryable = True

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        task_id: UUID | None = None,
    ) -> None:
        super().__init__(
            message,
            code=StorageError.TRANSPORT_ERROR,
            status_code=status_code,
            task_id=task_id,
        )


class FetchError(TransportError):
    """Loading the task collection failed; the previous projection is kept."""


class ConflictOnRollback(BoardError):
    """The storage service rejected an optimistic write, which was rolled back."""

    code = "conflict_on_rollback"

    def __init__(
        self,
        message: str,
        *,
        cause: StorageError,
        task_id: UUID | None = None,
    ) -> None:
        super().__init__(message, task_id=task_id)
        self.cause = cause


class SubscriptionLost(BoardError):
    """The push subscription dropped; missed events must be recovered by a reload."""

    code = "subscription_lost"
    retryable = True
