"""Task model representing board work items and their workflow stage."""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import field_validator
from sqlmodel import Field, SQLModel

from taskboard.core.time import as_utc, utcnow

RUNTIME_ANNOTATION_TYPES = (datetime, date)


class TaskStatus(str, Enum):
    """The six workflow stages a task can occupy, in board column order."""

    PLANNING = "planning"
    IN_PROGRESS = "in_progress"
    AT_RISK = "at_risk"
    UPDATE_REQUIRED = "update_required"
    ON_HOLD = "on_hold"
    COMPLETED = "completed"

    @property
    def label(self) -> str:
        return STAGE_TITLES[self]

    @classmethod
    def parse(cls, value: object) -> TaskStatus | None:
        """Return the stage for ``value`` or None when it is not a board column."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value))
        except ValueError:
            return None


STAGE_TITLES: dict[TaskStatus, str] = {
    TaskStatus.PLANNING: "Planning",
    TaskStatus.IN_PROGRESS: "In Progress",
    TaskStatus.AT_RISK: "At Risk",
    TaskStatus.UPDATE_REQUIRED: "Update Required",
    TaskStatus.ON_HOLD: "On Hold",
    TaskStatus.COMPLETED: "Completed",
}


def stage_title(value: object) -> str:
    stage = TaskStatus.parse(value)
    if stage is not None:
        return stage.label
    return str(value).replace("_", " ")


class Task(SQLModel):
    """Workspace-scoped task with workflow stage, ownership, and timing fields.

    ``attachments_count``, ``comments_count`` and ``assigned_user_name`` are
    projection-only and never written back to storage.
    """

    id: UUID = Field(default_factory=uuid4)
    workspace_id: UUID

    title: str
    description: str | None = None
    status: TaskStatus = Field(default=TaskStatus.PLANNING)
    priority: int | None = None
    due_date: date | None = None

    assigned_to: UUID | None = None
    created_by: UUID

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    attachments_count: int = 0
    comments_count: int = 0
    assigned_user_name: str | None = None

    @field_validator("created_at", "updated_at")
    @classmethod
    def _zoned(cls, value: datetime) -> datetime:
        return as_utc(value)

    def is_overdue(self, *, today: date | None = None) -> bool:
        if self.due_date is None or self.status == TaskStatus.COMPLETED:
            return False
        return self.due_date < (today or utcnow().date())

    def persisted_values(self) -> dict[str, Any]:
        """Return the JSON-ready column values stored for this task."""
        return self.model_dump(mode="json", include=set(PERSISTED_TASK_FIELDS))

    def same_persisted_state(self, other: Task) -> bool:
        return self.persisted_values() == other.persisted_values()


PERSISTED_TASK_FIELDS: tuple[str, ...] = (
    "id",
    "workspace_id",
    "title",
    "description",
    "status",
    "priority",
    "due_date",
    "assigned_to",
    "created_by",
    "created_at",
    "updated_at",
)
DERIVED_TASK_FIELDS: tuple[str, ...] = (
    "attachments_count",
    "comments_count",
    "assigned_user_name",
)
