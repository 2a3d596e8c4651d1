"""Append-only audit models: task activities and stage movements."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import field_validator
from sqlmodel import Field, SQLModel

from taskboard.core.time import as_utc, utcnow
from taskboard.models.tasks import TaskStatus

RUNTIME_ANNOTATION_TYPES = (datetime,)


class ActivityAction(str, Enum):
    """Tracked task changes written to the activity log."""

    TASK_CREATED = "task_created"
    TITLE_UPDATED = "title_updated"
    DESCRIPTION_UPDATED = "description_updated"
    STATUS_CHANGED = "status_changed"
    COMMENT_ADDED = "comment_added"
    FILE_UPLOADED = "file_uploaded"
    FILE_DOWNLOADED = "file_downloaded"
    FILE_DELETED = "file_deleted"
    USERS_ASSIGNED = "users_assigned"
    USER_REMOVED = "user_removed"


class TaskActivity(SQLModel):
    """Append-only activity entry; ``user_id`` is None for system actions."""

    id: UUID = Field(default_factory=uuid4)
    task_id: UUID
    user_id: UUID | None = None
    action: ActivityAction
    details: dict[str, Any] = Field(default_factory=dict)
    old_value: str | None = None
    new_value: str | None = None
    created_at: datetime = Field(default_factory=utcnow)

    user_name: str | None = None

    @field_validator("created_at")
    @classmethod
    def _zoned(cls, value: datetime) -> datetime:
        return as_utc(value)

    def persisted_values(self) -> dict[str, object]:
        return self.model_dump(mode="json", exclude={"user_name"})


class TaskMovement(SQLModel):
    """Append-only record of one stage transition."""

    id: UUID = Field(default_factory=uuid4)
    task_id: UUID
    workspace_id: UUID
    moved_by_user_id: UUID | None = None
    from_status: TaskStatus
    to_status: TaskStatus
    created_at: datetime = Field(default_factory=utcnow)

    moved_by_name: str | None = None

    @field_validator("created_at")
    @classmethod
    def _zoned(cls, value: datetime) -> datetime:
        return as_utc(value)

    def persisted_values(self) -> dict[str, object]:
        return self.model_dump(mode="json", exclude={"moved_by_name"})

    def as_activity(self) -> TaskActivity:
        """Render the movement as a ``status_changed`` feed entry."""
        return TaskActivity(
            id=self.id,
            task_id=self.task_id,
            user_id=self.moved_by_user_id,
            action=ActivityAction.STATUS_CHANGED,
            details={
                "from_status": self.from_status.value,
                "to_status": self.to_status.value,
            },
            old_value=self.from_status.value,
            new_value=self.to_status.value,
            created_at=self.created_at,
            user_name=self.moved_by_name,
        )
