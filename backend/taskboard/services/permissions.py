"""Role and assignment based permission checks for board mutations.

All role comparisons for the board live here. Predicates are pure: they take the
actor and the records involved and never perform I/O.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from taskboard.core.errors import PermissionDenied
from taskboard.models.profiles import Role

if TYPE_CHECKING:
    from collections.abc import Collection
    from uuid import UUID

    from taskboard.models.attachments import TaskAttachment
    from taskboard.models.profiles import Actor
    from taskboard.models.tasks import Task

# Roles allowed to comment on or move any task regardless of assignment.
BOARD_WIDE_ROLES: frozenset[str] = frozenset({Role.ADMIN.value, Role.SALES_ADMIN.value})

# Roles that may never create tasks; every other role may.
NON_CREATOR_ROLES: frozenset[str] = frozenset({Role.MEMBER.value, Role.CLIENT.value})

DENIED_MESSAGES: dict[str, str] = {
    "task.create": "Only admins and managers can create tasks",
    "task.edit": "Only admins or the task creator can edit this task",
    "task.comment": "Only admins, sales admins, and assigned users can comment",
    "task.assign": "Only admins or assigned users can manage assignments",
    "task.move": "You don't have permission to move this task",
    "task.delete": "Only admins can delete tasks",
    "attachment.upload": "Only admins or the task creator can upload files",
    "attachment.delete": "Only admins or the uploader can delete files",
}


def _role(actor: Actor) -> str:
    return str(getattr(actor.role, "value", actor.role))


def can_create_task(actor: Actor) -> bool:
    role = _role(actor)
    return role == Role.ADMIN.value or role not in NON_CREATOR_ROLES


def can_edit(actor: Actor, task: Task) -> bool:
    return _role(actor) == Role.ADMIN.value or actor.id == task.created_by


def can_comment(actor: Actor, task: Task, assigned_users: Collection[UUID]) -> bool:
    del task
    return _role(actor) in BOARD_WIDE_ROLES or actor.id in assigned_users


def can_manage_assignments(
    actor: Actor,
    task: Task,
    assigned_users: Collection[UUID],
) -> bool:
    del task
    return _role(actor) == Role.ADMIN.value or actor.id in assigned_users


def can_delete_attachment(actor: Actor, attachment: TaskAttachment) -> bool:
    return _role(actor) == Role.ADMIN.value or actor.id == attachment.uploaded_by


def can_move_task(actor: Actor, task: Task) -> bool:
    return (
        _role(actor) in BOARD_WIDE_ROLES
        or actor.id == task.created_by
        or (task.assigned_to is not None and actor.id == task.assigned_to)
    )


def can_delete_task(actor: Actor) -> bool:
    return _role(actor) == Role.ADMIN.value


def ensure_allowed(
    allowed: bool,
    *,
    action: str,
    task_id: UUID | None = None,
) -> None:
    """Raise ``PermissionDenied`` for ``action`` unless ``allowed``."""
    if allowed:
        return
    raise PermissionDenied(
        DENIED_MESSAGES.get(action, "Permission denied"),
        action=action,
        task_id=task_id,
    )
