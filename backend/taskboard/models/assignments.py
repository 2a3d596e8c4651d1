"""Task assignment join rows."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from pydantic import field_validator
from sqlmodel import Field, SQLModel

from taskboard.core.time import as_utc, utcnow

RUNTIME_ANNOTATION_TYPES = (datetime,)


class TaskAssignment(SQLModel):
    """Membership of one user in a task's assignment set."""

    id: UUID = Field(default_factory=uuid4)
    task_id: UUID
    user_id: UUID
    assigned_by: UUID | None = None
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("created_at")
    @classmethod
    def _zoned(cls, value: datetime) -> datetime:
        return as_utc(value)

    def persisted_values(self) -> dict[str, object]:
        return self.model_dump(mode="json")
