"""Contracts for the external storage/query service and blob storage.

The board engine only talks to these protocols. Every method either returns
data or raises a ``StorageError`` (``TransportError`` for unreachable/timeouts).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from collections.abc import Sequence
    from uuid import UUID

    from taskboard.models.activity import TaskActivity, TaskMovement
    from taskboard.models.assignments import TaskAssignment
    from taskboard.models.attachments import TaskAttachment
    from taskboard.models.comments import TaskComment
    from taskboard.models.profiles import Profile
    from taskboard.models.tasks import Task

TASKS_TABLE = "tasks"
COMMENTS_TABLE = "task_comments"
ATTACHMENTS_TABLE = "task_attachments"
ACTIVITIES_TABLE = "task_activities"
MOVEMENTS_TABLE = "task_movements"
ASSIGNMENTS_TABLE = "task_assignments"
PROFILES_TABLE = "profiles"


class BoardRepository(Protocol):
    """CRUD-style requests the engine issues against durable storage."""

    async def fetch_tasks(self, workspace_id: UUID) -> list[Task]: ...

    async def count_by_task(self, table: str, task_ids: Sequence[UUID]) -> dict[UUID, int]: ...

    async def fetch_assignments(self, task_ids: Sequence[UUID]) -> list[TaskAssignment]: ...

    async def fetch_comments(self, task_id: UUID) -> list[TaskComment]: ...

    async def fetch_attachments(self, task_id: UUID) -> list[TaskAttachment]: ...

    async def fetch_activities(self, task_id: UUID, *, limit: int) -> list[TaskActivity]: ...

    async def fetch_movements(self, task_id: UUID, *, limit: int) -> list[TaskMovement]: ...

    async def fetch_profiles(self, user_ids: Sequence[UUID]) -> list[Profile]: ...

    async def insert_task(self, task: Task) -> Task: ...

    async def update_task(self, task_id: UUID, values: dict[str, Any]) -> Task: ...

    async def delete_task(self, task_id: UUID) -> None: ...

    async def insert_comment(self, comment: TaskComment) -> TaskComment: ...

    async def insert_attachment(self, attachment: TaskAttachment) -> TaskAttachment: ...

    async def delete_attachment(self, attachment_id: UUID) -> None: ...

    async def insert_activity(self, activity: TaskActivity) -> TaskActivity: ...

    async def insert_movement(self, movement: TaskMovement) -> TaskMovement: ...

    async def insert_assignments(
        self,
        assignments: Sequence[TaskAssignment],
    ) -> list[TaskAssignment]: ...

    async def delete_assignment(self, task_id: UUID, user_id: UUID) -> None: ...


class BlobStore(Protocol):
    """Upload/download delegate for attachment file contents."""

    async def upload(self, path: str, content: bytes, *, content_type: str) -> None: ...

    async def download(self, path: str) -> bytes: ...

    async def remove(self, paths: Sequence[str]) -> None: ...
