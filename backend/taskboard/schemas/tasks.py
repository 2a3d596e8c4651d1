"""Schemas for task board read and mutation API operations."""

from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING, Self
from uuid import UUID

from pydantic import model_validator
from sqlmodel import Field, SQLModel

from taskboard.models.tasks import TaskStatus
from taskboard.services.audit import describe_activity
from taskboard.services.store import assigned_name

if TYPE_CHECKING:
    from taskboard.models.activity import TaskActivity, TaskMovement
    from taskboard.models.attachments import TaskAttachment
    from taskboard.models.comments import TaskComment
    from taskboard.models.tasks import Task
    from taskboard.services.optimistic import MutationResult
    from taskboard.services.store import BoardStats, RecentActivity, TaskStore

RUNTIME_ANNOTATION_TYPES = (datetime, date, UUID)
_ERR_TITLE_REQUIRED = "title is required"


class TaskCreate(SQLModel):
    """Payload for creating a task."""

    title: str
    description: str | None = None
    status: TaskStatus = TaskStatus.PLANNING
    priority: int | None = Field(default=None, ge=0)
    due_date: date | None = None
    assigned_to: UUID | None = None

    @model_validator(mode="after")
    def validate_title(self) -> Self:
        title = self.title.strip()
        if not title:
            raise ValueError(_ERR_TITLE_REQUIRED)
        self.title = title
        return self


class TaskMove(SQLModel):
    """Target stage for a move; validated by the board so bad stages get a typed error."""

    status: str


class TaskTitleUpdate(SQLModel):
    title: str


class TaskDescriptionUpdate(SQLModel):
    description: str | None = None


class CommentCreate(SQLModel):
    body: str


class AssigneesAdd(SQLModel):
    user_ids: list[UUID] = Field(default_factory=list)


class MovementRead(SQLModel):
    id: UUID
    from_status: TaskStatus
    to_status: TaskStatus
    moved_by_user_id: UUID | None = None
    moved_by_name: str | None = None
    created_at: datetime

    @classmethod
    def from_movement(cls, movement: TaskMovement) -> MovementRead:
        return cls.model_validate(movement, from_attributes=True)


class TaskRead(SQLModel):
    """Board card: persisted fields plus projection-only counts and names."""

    id: UUID
    workspace_id: UUID
    title: str
    description: str | None = None
    status: TaskStatus
    priority: int | None = None
    due_date: date | None = None
    assigned_to: UUID | None = None
    assigned_user_name: str
    assignees: list[UUID] = Field(default_factory=list)
    created_by: UUID
    created_at: datetime
    updated_at: datetime
    attachments_count: int = 0
    comments_count: int = 0
    is_overdue: bool = False
    recent_movements: list[MovementRead] = Field(default_factory=list)

    @classmethod
    def from_store(cls, task: Task, store: TaskStore) -> TaskRead:
        return cls(
            **task.model_dump(exclude={"assigned_user_name"}),
            assigned_user_name=assigned_name(task),
            assignees=sorted(store.assigned_users(task.id), key=str),
            is_overdue=task.is_overdue(),
            recent_movements=[
                MovementRead.from_movement(movement)
                for movement in store.recent_movements(task.id)
            ],
        )


class CommentRead(SQLModel):
    id: UUID
    task_id: UUID
    user_id: UUID | None = None
    user_name: str | None = None
    body: str
    created_at: datetime

    @classmethod
    def from_comment(cls, comment: TaskComment) -> CommentRead:
        return cls.model_validate(comment, from_attributes=True)


class AttachmentRead(SQLModel):
    id: UUID
    task_id: UUID
    file_name: str
    file_path: str
    file_size: int
    file_type: str
    uploaded_by: UUID | None = None
    created_at: datetime

    @classmethod
    def from_attachment(cls, attachment: TaskAttachment) -> AttachmentRead:
        return cls.model_validate(attachment, from_attributes=True)


class ActivityRead(SQLModel):
    """Activity feed entry with its rendered message."""

    id: UUID
    action: str
    user_id: UUID | None = None
    user_name: str | None = None
    message: str
    details: dict[str, object] = Field(default_factory=dict)
    old_value: str | None = None
    new_value: str | None = None
    created_at: datetime

    @classmethod
    def from_activity(cls, activity: TaskActivity) -> ActivityRead:
        return cls(
            id=activity.id,
            action=activity.action.value,
            user_id=activity.user_id,
            user_name=activity.user_name,
            message=describe_activity(activity),
            details=dict(activity.details),
            old_value=activity.old_value,
            new_value=activity.new_value,
            created_at=activity.created_at,
        )


class TaskDetailRead(SQLModel):
    """Task detail panel: the card plus comments, files, and the activity feed."""

    task: TaskRead
    comments: list[CommentRead] = Field(default_factory=list)
    attachments: list[AttachmentRead] = Field(default_factory=list)
    activities: list[ActivityRead] = Field(default_factory=list)

    @classmethod
    def from_store(cls, task_id: UUID, store: TaskStore) -> TaskDetailRead:
        return cls(
            task=TaskRead.from_store(store.require(task_id), store),
            comments=[CommentRead.from_comment(item) for item in store.comments(task_id)],
            attachments=[
                AttachmentRead.from_attachment(item) for item in store.attachments(task_id)
            ],
            activities=[ActivityRead.from_activity(item) for item in store.activities(task_id)],
        )


class BoardStatsRead(SQLModel):
    total: int
    completed: int
    in_progress: int
    at_risk: int
    overdue: int

    @classmethod
    def from_stats(cls, stats: BoardStats) -> BoardStatsRead:
        return cls(
            total=stats.total,
            completed=stats.completed,
            in_progress=stats.in_progress,
            at_risk=stats.at_risk,
            overdue=stats.overdue,
        )


class RecentActivityRead(SQLModel):
    id: UUID
    title: str
    message: str
    created_at: datetime

    @classmethod
    def from_item(cls, item: RecentActivity) -> RecentActivityRead:
        return cls(id=item.id, title=item.title, message=item.message, created_at=item.created_at)


class MutationRead(SQLModel):
    """Outcome of a board mutation.

    ``state`` is ``confirmed``, ``superseded`` (a newer request for the same
    field is pending), or ``unchanged``.
    """

    state: str
    task_id: UUID | None = None
    field: str = ""
    task: TaskRead | None = None

    @classmethod
    def from_result(cls, result: MutationResult, store: TaskStore) -> MutationRead:
        task = store.get(result.task_id) if result.task_id is not None else None
        return cls(
            state=result.state.value,
            task_id=result.task_id,
            field=result.field,
            task=TaskRead.from_store(task, store) if task is not None else None,
        )
