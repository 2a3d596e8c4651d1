"""Append-only audit trail for task activity and stage movements.

Audit writes are best-effort: a failed write is logged and never rolls back or
fails the mutation it describes.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from taskboard.core.errors import StorageError
from taskboard.core.logging import get_logger
from taskboard.core.time import utcnow
from taskboard.models.activity import ActivityAction, TaskActivity, TaskMovement
from taskboard.models.tasks import TaskStatus, stage_title
from taskboard.services.profiles import SYSTEM_NAME

if TYPE_CHECKING:
    from uuid import UUID

    from taskboard.services.storage import BoardRepository
    from taskboard.services.store import TaskStore

logger = get_logger(__name__)


class ActivityRecorder:
    """Writes activity and movement rows and appends confirmed ones to the store."""

    def __init__(self, repository: BoardRepository, store: TaskStore) -> None:
        self._repository = repository
        self._store = store

    async def record_movement(
        self,
        task_id: UUID,
        from_status: TaskStatus,
        to_status: TaskStatus,
        actor_id: UUID | None,
        workspace_id: UUID,
    ) -> TaskMovement | None:
        """Append a movement row; returns None when the write failed."""
        movement = TaskMovement(
            task_id=task_id,
            workspace_id=workspace_id,
            moved_by_user_id=actor_id,
            from_status=from_status,
            to_status=to_status,
            created_at=utcnow(),
        )
        try:
            stored = await self._repository.insert_movement(movement)
        except StorageError as exc:
            logger.warning(
                "audit.movement.record_failed",
                extra={
                    "task_id": str(task_id),
                    "from_status": from_status.value,
                    "to_status": to_status.value,
                    "error": str(exc),
                },
            )
            return None

        name = await self._store.profiles.display_name(actor_id)
        stored = stored.model_copy(update={"moved_by_name": name})
        async with self._store.writing():
            self._store.append_movement(stored)
        return stored

    async def record_activity(
        self,
        task_id: UUID,
        actor_id: UUID | None,
        action: ActivityAction,
        details: dict[str, Any] | None = None,
        old_value: str | None = None,
        new_value: str | None = None,
    ) -> TaskActivity | None:
        """Append an activity row; returns None when the write failed."""
        activity = TaskActivity(
            task_id=task_id,
            user_id=actor_id,
            action=action,
            details=details or {},
            old_value=old_value,
            new_value=new_value,
            created_at=utcnow(),
        )
        try:
            stored = await self._repository.insert_activity(activity)
        except StorageError as exc:
            logger.warning(
                "audit.activity.record_failed",
                extra={"task_id": str(task_id), "action": action.value, "error": str(exc)},
            )
            return None

        name = await self._store.profiles.display_name(actor_id, missing=SYSTEM_NAME)
        stored = stored.model_copy(update={"user_name": name})
        async with self._store.writing():
            self._store.append_activity(stored)
        return stored


def describe_activity(activity: TaskActivity) -> str:
    """Render the human-readable line shown in a task's activity feed."""
    details = activity.details or {}
    match activity.action:
        case ActivityAction.TITLE_UPDATED:
            return "Title changed"
        case ActivityAction.DESCRIPTION_UPDATED:
            return "Description updated"
        case ActivityAction.FILE_UPLOADED:
            return f"Uploaded file: {details.get('file_name') or 'File'}"
        case ActivityAction.FILE_DOWNLOADED:
            return f"Downloaded file: {details.get('file_name') or 'File'}"
        case ActivityAction.FILE_DELETED:
            return f"Deleted file: {details.get('file_name') or 'File'}"
        case ActivityAction.COMMENT_ADDED:
            return "Added a comment"
        case ActivityAction.TASK_CREATED:
            return "Created this task"
        case ActivityAction.USERS_ASSIGNED:
            count = int(details.get("count") or len(details.get("user_ids") or []))
            return f"Assigned {count} user{'s' if count != 1 else ''}"
        case ActivityAction.USER_REMOVED:
            return "Removed a user from this task"
        case ActivityAction.STATUS_CHANGED:
            from_stage = stage_title(activity.old_value or details.get("from_status"))
            to_stage = stage_title(activity.new_value or details.get("to_status"))
            return f"Moved task from {from_stage} to {to_stage}"
    return "Made changes"
