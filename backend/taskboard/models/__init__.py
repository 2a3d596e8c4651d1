"""Record models mirrored from the storage service tables."""

from taskboard.models.activity import ActivityAction, TaskActivity, TaskMovement
from taskboard.models.assignments import TaskAssignment
from taskboard.models.attachments import TaskAttachment
from taskboard.models.comments import TaskComment
from taskboard.models.profiles import Actor, Profile, Role
from taskboard.models.tasks import STAGE_TITLES, Task, TaskStatus

__all__ = [
    "STAGE_TITLES",
    "ActivityAction",
    "Actor",
    "Profile",
    "Role",
    "Task",
    "TaskActivity",
    "TaskAssignment",
    "TaskAttachment",
    "TaskComment",
    "TaskMovement",
    "TaskStatus",
]
