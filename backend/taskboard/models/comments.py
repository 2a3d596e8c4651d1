"""Task comment model."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from pydantic import field_validator
from sqlmodel import Field, SQLModel

from taskboard.core.time import as_utc, utcnow

RUNTIME_ANNOTATION_TYPES = (datetime,)


class TaskComment(SQLModel):
    """Append-only comment posted on a task."""

    id: UUID = Field(default_factory=uuid4)
    task_id: UUID
    user_id: UUID | None = None
    body: str
    created_at: datetime = Field(default_factory=utcnow)

    user_name: str | None = None

    @field_validator("created_at")
    @classmethod
    def _zoned(cls, value: datetime) -> datetime:
        return as_utc(value)

    def persisted_values(self) -> dict[str, object]:
        return self.model_dump(mode="json", exclude={"user_name"})
