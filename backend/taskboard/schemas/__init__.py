"""Public schema exports shared across API route modules."""

from taskboard.schemas.errors import ErrorResponse, HealthStatusResponse
from taskboard.schemas.tasks import (
    ActivityRead,
    AssigneesAdd,
    AttachmentRead,
    BoardStatsRead,
    CommentCreate,
    CommentRead,
    MovementRead,
    MutationRead,
    RecentActivityRead,
    TaskCreate,
    TaskDescriptionUpdate,
    TaskDetailRead,
    TaskMove,
    TaskRead,
    TaskTitleUpdate,
)

__all__ = [
    "ActivityRead",
    "AssigneesAdd",
    "AttachmentRead",
    "BoardStatsRead",
    "CommentCreate",
    "CommentRead",
    "ErrorResponse",
    "HealthStatusResponse",
    "MovementRead",
    "MutationRead",
    "RecentActivityRead",
    "TaskCreate",
    "TaskDescriptionUpdate",
    "TaskDetailRead",
    "TaskMove",
    "TaskRead",
    "TaskTitleUpdate",
]
