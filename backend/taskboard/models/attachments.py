"""Task attachment metadata model."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from pydantic import field_validator
from sqlmodel import Field, SQLModel

from taskboard.core.time import as_utc, utcnow

RUNTIME_ANNOTATION_TYPES = (datetime,)


class TaskAttachment(SQLModel):
    """Metadata row for a file stored in blob storage."""

    id: UUID = Field(default_factory=uuid4)
    task_id: UUID
    file_name: str
    file_path: str
    file_size: int = 0
    file_type: str = "application/octet-stream"
    uploaded_by: UUID | None = None
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("created_at")
    @classmethod
    def _zoned(cls, value: datetime) -> datetime:
        return as_utc(value)

    def persisted_values(self) -> dict[str, object]:
        return self.model_dump(mode="json")
