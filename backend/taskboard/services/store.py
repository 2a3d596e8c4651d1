"""In-memory projection of one workspace's tasks and their sub-collections.

The store is the single source of truth the presentation layer renders from.
Every write goes through ``writing()``, an ``asyncio.Lock`` shared by optimistic
mutations and the realtime reconciler, so read-modify-write steps never
interleave. Mutating methods are synchronous and expect the caller to hold it.
"""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from taskboard.core.config import settings
from taskboard.core.errors import FetchError, NotFound, StorageError
from taskboard.core.logging import get_logger
from taskboard.core.time import utcnow
from taskboard.models.tasks import Task, TaskStatus
from taskboard.services.changes import ChangeBroadcaster
from taskboard.services.profiles import (
    SYSTEM_NAME,
    UNASSIGNED_NAME,
    USER_PLACEHOLDER,
    ProfileDirectory,
)
from taskboard.services.storage import ATTACHMENTS_TABLE, COMMENTS_TABLE

if TYPE_CHECKING:
    from collections.abc import Iterable

    from taskboard.models.activity import TaskActivity, TaskMovement
    from taskboard.models.attachments import TaskAttachment
    from taskboard.models.comments import TaskComment
    from taskboard.services.storage import BoardRepository

logger = get_logger(__name__)

ANONYMOUS_NAME = "Anonymous"


@dataclass
class TaskDetail:
    """Sub-collections of one task; ``loaded`` is set once fetched in full."""

    comments: dict[UUID, TaskComment] = field(default_factory=dict)
    attachments: dict[UUID, TaskAttachment] = field(default_factory=dict)
    activities: dict[UUID, TaskActivity] = field(default_factory=dict)
    loaded: bool = False


@dataclass(frozen=True)
class BoardStats:
    total: int = 0
    completed: int = 0
    in_progress: int = 0
    at_risk: int = 0
    overdue: int = 0


@dataclass(frozen=True)
class RecentActivity:
    """Feed item describing a change made by another user."""

    id: UUID
    title: str
    message: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class DetachedTask:
    """Everything the store held for a task that was removed, for restoring it."""

    task: Task
    assignments: frozenset[UUID]
    movements: tuple[TaskMovement, ...]
    detail: TaskDetail | None


@dataclass
class _Snapshot:
    tasks: list[Task]
    assignments: dict[UUID, set[UUID]]
    movements: dict[UUID, list[TaskMovement]]
    details: dict[UUID, TaskDetail]


class TaskStore:
    """Ordered-by-recency collection of tasks for a single workspace."""

    def __init__(
        self,
        repository: BoardRepository,
        *,
        workspace_id: UUID,
        profiles: ProfileDirectory | None = None,
        changes: ChangeBroadcaster | None = None,
        activity_feed_limit: int | None = None,
        recent_movements_limit: int | None = None,
        recent_activity_limit: int | None = None,
    ) -> None:
        self._repository = repository
        self.workspace_id = workspace_id
        self.profiles = profiles or ProfileDirectory(repository)
        self.changes = changes or ChangeBroadcaster()
        self._feed_limit = activity_feed_limit or settings.activity_feed_limit
        self._movements_limit = (
            settings.recent_movements_limit
            if recent_movements_limit is None
            else recent_movements_limit
        )
        self._recent_limit = (
            settings.recent_activity_limit
            if recent_activity_limit is None
            else recent_activity_limit
        )
        self._lock = asyncio.Lock()
        self._tasks: dict[UUID, Task] = {}
        self._assignments: dict[UUID, set[UUID]] = {}
        self._movements: dict[UUID, list[TaskMovement]] = {}
        self._details: dict[UUID, TaskDetail] = {}
        self._recent: list[RecentActivity] = []
        # Bumped whenever a record read from storage replaces the held one.
        self._revisions: dict[UUID, int] = {}
        self._revision_counter = itertools.count(1)
        self.loaded_at: datetime | None = None

    def writing(self) -> asyncio.Lock:
        """Return the lock every projection write must hold."""
        return self._lock

    # -------------------- loading --------------------

    async def load(self, workspace_id: UUID | None = None) -> None:
        """Replace the whole collection from storage.

        On failure raises ``FetchError`` and keeps the previous collection.
        """
        target = workspace_id or self.workspace_id
        try:
            snapshot = await self._fetch_snapshot(target)
        except StorageError as exc:
            logger.warning(
                "store.load.failed",
                extra={"workspace_id": str(target), "error": str(exc)},
            )
            raise FetchError(f"Failed to load tasks: {exc.message}") from exc

        async with self._lock:
            self.workspace_id = target
            self._tasks = {task.id: task for task in snapshot.tasks}
            self._revisions = {task.id: next(self._revision_counter) for task in snapshot.tasks}
            self._assignments = snapshot.assignments
            self._movements = snapshot.movements
            self._details = snapshot.details
            self.loaded_at = utcnow()
        logger.info(
            "store.load.complete",
            extra={"workspace_id": str(target), "task_count": len(snapshot.tasks)},
        )
        self.changes.task_list_changed()

    async def _fetch_snapshot(self, workspace_id: UUID) -> _Snapshot:
        tasks = await self._repository.fetch_tasks(workspace_id)
        task_ids = [task.id for task in tasks]
        attachment_counts, comment_counts, assignment_rows = await asyncio.gather(
            self._repository.count_by_task(ATTACHMENTS_TABLE, task_ids),
            self._repository.count_by_task(COMMENTS_TABLE, task_ids),
            self._repository.fetch_assignments(task_ids),
        )
        movements: dict[UUID, list[TaskMovement]] = {}
        if self._movements_limit > 0 and task_ids:
            batches = await asyncio.gather(
                *(
                    self._repository.fetch_movements(task_id, limit=self._movements_limit)
                    for task_id in task_ids
                ),
            )
            movements = dict(zip(task_ids, (list(batch) for batch in batches), strict=True))

        assignments: dict[UUID, set[UUID]] = {task_id: set() for task_id in task_ids}
        for row in assignment_rows:
            assignments.setdefault(row.task_id, set()).add(row.user_id)

        # Reopened detail panels are refreshed along with the board.
        details: dict[UUID, TaskDetail] = {}
        for task_id, detail in self._details.items():
            if detail.loaded and task_id in assignments:
                details[task_id] = await self._fetch_detail(task_id)

        names = await self.profiles.display_names(task.assigned_to for task in tasks)
        enriched: list[Task] = []
        for task in tasks:
            updated = task.model_copy(
                update={
                    "attachments_count": attachment_counts.get(task.id, 0),
                    "comments_count": comment_counts.get(task.id, 0),
                    "assigned_user_name": (
                        names.get(task.assigned_to, USER_PLACEHOLDER)
                        if task.assigned_to is not None
                        else None
                    ),
                },
            )
            detail = details.get(task.id)
            if detail is not None:
                updated = _with_detail_counts(updated, detail)
            enriched.append(updated)
        return _Snapshot(
            tasks=enriched,
            assignments=assignments,
            movements=movements,
            details=details,
        )

    async def load_detail(self, task_id: UUID) -> TaskDetail:
        """Fetch comments, attachments and the activity feed of one task."""
        self.require(task_id)
        try:
            detail = await self._fetch_detail(task_id)
        except StorageError as exc:
            logger.warning(
                "store.load_detail.failed",
                extra={"task_id": str(task_id), "error": str(exc)},
            )
            raise FetchError(f"Failed to load task details: {exc.message}") from exc

        async with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise NotFound("Task not found", task_id=task_id)
            self._details[task_id] = detail
            self._tasks[task_id] = _with_detail_counts(task, detail)
        self.changes.task_detail_changed(task_id)
        return detail

    async def _fetch_detail(self, task_id: UUID) -> TaskDetail:
        attachments, comments, activities, movements = await asyncio.gather(
            self._repository.fetch_attachments(task_id),
            self._repository.fetch_comments(task_id),
            self._repository.fetch_activities(task_id, limit=self._feed_limit),
            self._repository.fetch_movements(task_id, limit=self._feed_limit),
        )
        names = await self.profiles.display_names(
            [comment.user_id for comment in comments]
            + [activity.user_id for activity in activities]
            + [movement.moved_by_user_id for movement in movements],
        )

        def _name(user_id: UUID | None, missing: str) -> str:
            return missing if user_id is None else names.get(user_id, USER_PLACEHOLDER)

        detail = TaskDetail(loaded=True)
        for comment in comments:
            detail.comments[comment.id] = comment.model_copy(
                update={"user_name": _name(comment.user_id, ANONYMOUS_NAME)},
            )
        for attachment in attachments:
            detail.attachments[attachment.id] = attachment
        for activity in activities:
            detail.activities[activity.id] = activity.model_copy(
                update={"user_name": _name(activity.user_id, SYSTEM_NAME)},
            )
        for movement in movements:
            named = movement.model_copy(
                update={"moved_by_name": _name(movement.moved_by_user_id, USER_PLACEHOLDER)},
            )
            detail.activities[movement.id] = named.as_activity()
        return detail

    # -------------------- task collection --------------------

    def get(self, task_id: UUID) -> Task | None:
        return self._tasks.get(task_id)

    def require(self, task_id: UUID) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise NotFound("Task not found", task_id=task_id)
        return task

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    def tasks(self, *, query: str = "") -> list[Task]:
        """Return tasks newest first, filtered by title/description when ``query`` is set."""
        needle = query.strip().lower()
        ordered = sorted(self._tasks.values(), key=lambda task: task.created_at, reverse=True)
        return [task for task in ordered if not needle or _matches(task, needle)]

    def tasks_for_stage(self, stage: TaskStatus | str, *, query: str = "") -> list[Task]:
        status = TaskStatus.parse(stage)
        if status is None:
            return []
        return [task for task in self.tasks(query=query) if task.status == status]

    def stats(self) -> BoardStats:
        tasks = list(self._tasks.values())
        return BoardStats(
            total=len(tasks),
            completed=sum(1 for task in tasks if task.status == TaskStatus.COMPLETED),
            in_progress=sum(1 for task in tasks if task.status == TaskStatus.IN_PROGRESS),
            at_risk=sum(1 for task in tasks if task.status == TaskStatus.AT_RISK),
            overdue=sum(1 for task in tasks if task.is_overdue()),
        )

    def upsert(self, task: Task) -> Task:
        """Insert or replace ``task`` by id."""
        self._tasks[task.id] = task
        self._revisions[task.id] = next(self._revision_counter)
        self._assignments.setdefault(task.id, set())
        self.changes.task_list_changed(task.id)
        return task

    def revision(self, task_id: UUID) -> int:
        """Counter of storage-sourced replacements of ``task_id``; 0 when absent."""
        return self._revisions.get(task_id, 0)

    def patch(self, task_id: UUID, **values: Any) -> Task:
        """Replace selected fields of a held task and return the new record."""
        task = self.require(task_id)
        updated = task.model_copy(update=values)
        self._tasks[task_id] = updated
        self.changes.task_list_changed(task_id)
        if task_id in self._details:
            self.changes.task_detail_changed(task_id)
        return updated

    def remove(self, task_id: UUID) -> Task | None:
        """Delete ``task_id``; removing an absent id is a no-op."""
        task = self._tasks.pop(task_id, None)
        self._assignments.pop(task_id, None)
        self._movements.pop(task_id, None)
        self._details.pop(task_id, None)
        if task is not None:
            self.changes.task_list_changed(task_id)
        return task

    def detach(self, task_id: UUID) -> DetachedTask | None:
        """Remove ``task_id`` and return what was held so ``reattach`` can undo it."""
        task = self._tasks.get(task_id)
        if task is None:
            return None
        detached = DetachedTask(
            task=task,
            assignments=frozenset(self._assignments.get(task_id, ())),
            movements=tuple(self._movements.get(task_id, ())),
            detail=self._details.get(task_id),
        )
        self.remove(task_id)
        return detached

    def reattach(self, detached: DetachedTask) -> None:
        task_id = detached.task.id
        self._tasks[task_id] = detached.task
        self._assignments[task_id] = set(detached.assignments)
        if detached.movements:
            self._movements[task_id] = list(detached.movements)
        if detached.detail is not None:
            self._details[task_id] = detached.detail
        self.changes.task_list_changed(task_id)

    # -------------------- assignments --------------------

    def assigned_users(self, task_id: UUID) -> frozenset[UUID]:
        return frozenset(self._assignments.get(task_id, ()))

    def set_assigned_users(self, task_id: UUID, user_ids: Iterable[UUID]) -> None:
        self.require(task_id)
        self._assignments[task_id] = set(user_ids)
        self.changes.task_list_changed(task_id)
        self.changes.task_detail_changed(task_id)

    def add_assignee(self, task_id: UUID, user_id: UUID) -> bool:
        assigned = self._assignments.setdefault(task_id, set())
        if user_id in assigned:
            return False
        assigned.add(user_id)
        self.changes.task_detail_changed(task_id)
        return True

    def remove_assignee(self, task_id: UUID, user_id: UUID) -> bool:
        assigned = self._assignments.get(task_id)
        if not assigned or user_id not in assigned:
            return False
        assigned.discard(user_id)
        self.changes.task_detail_changed(task_id)
        return True

    # -------------------- sub-collections --------------------

    def detail(self, task_id: UUID) -> TaskDetail:
        return self._details.setdefault(task_id, TaskDetail())

    def is_detail_loaded(self, task_id: UUID) -> bool:
        detail = self._details.get(task_id)
        return detail is not None and detail.loaded

    def comments(self, task_id: UUID) -> list[TaskComment]:
        detail = self._details.get(task_id)
        if detail is None:
            return []
        return sorted(detail.comments.values(), key=lambda comment: comment.created_at)

    def has_comment(self, task_id: UUID, comment_id: UUID) -> bool:
        detail = self._details.get(task_id)
        return detail is not None and comment_id in detail.comments

    def add_comment(self, comment: TaskComment) -> bool:
        """Append ``comment``; an id already held is merged, not counted twice."""
        detail = self.detail(comment.task_id)
        existing = detail.comments.get(comment.id)
        if existing is not None:
            detail.comments[comment.id] = existing.model_copy(
                update={
                    "created_at": comment.created_at,
                    "user_name": comment.user_name or existing.user_name,
                },
            )
            return False
        detail.comments[comment.id] = comment
        self._adjust_count(comment.task_id, "comments_count", 1)
        self.changes.task_detail_changed(comment.task_id)
        return True

    def discard_comment(self, task_id: UUID, comment_id: UUID) -> bool:
        detail = self._details.get(task_id)
        if detail is None or detail.comments.pop(comment_id, None) is None:
            return False
        self._adjust_count(task_id, "comments_count", -1)
        self.changes.task_detail_changed(task_id)
        return True

    def attachments(self, task_id: UUID) -> list[TaskAttachment]:
        detail = self._details.get(task_id)
        if detail is None:
            return []
        return sorted(
            detail.attachments.values(),
            key=lambda attachment: attachment.created_at,
            reverse=True,
        )

    def find_attachment(self, attachment_id: UUID) -> TaskAttachment | None:
        for detail in self._details.values():
            attachment = detail.attachments.get(attachment_id)
            if attachment is not None:
                return attachment
        return None

    def add_attachment(self, attachment: TaskAttachment) -> bool:
        detail = self.detail(attachment.task_id)
        if attachment.id in detail.attachments:
            detail.attachments[attachment.id] = attachment
            return False
        detail.attachments[attachment.id] = attachment
        self._adjust_count(attachment.task_id, "attachments_count", 1)
        self.changes.task_detail_changed(attachment.task_id)
        return True

    def discard_attachment(self, attachment_id: UUID) -> TaskAttachment | None:
        for task_id, detail in self._details.items():
            attachment = detail.attachments.pop(attachment_id, None)
            if attachment is not None:
                self._adjust_count(task_id, "attachments_count", -1)
                self.changes.task_detail_changed(task_id)
                return attachment
        return None

    def activities(self, task_id: UUID) -> list[TaskActivity]:
        """Return the merged activity/movement feed, newest first."""
        detail = self._details.get(task_id)
        if detail is None:
            return []
        return sorted(
            detail.activities.values(),
            key=lambda activity: activity.created_at,
            reverse=True,
        )

    def append_activity(self, activity: TaskActivity) -> bool:
        """Append an audit entry; entries are never replaced once held."""
        detail = self.detail(activity.task_id)
        if activity.id in detail.activities:
            return False
        detail.activities[activity.id] = activity
        self.changes.task_detail_changed(activity.task_id)
        return True

    def append_movement(self, movement: TaskMovement) -> bool:
        """Record a stage transition in the card history and the detail feed."""
        history = self._movements.setdefault(movement.task_id, [])
        if any(existing.id == movement.id for existing in history):
            return False
        added_to_feed = self.append_activity(movement.as_activity())
        if not added_to_feed:
            return False
        if self._movements_limit > 0:
            history.append(movement)
            history.sort(key=lambda item: item.created_at, reverse=True)
            del history[self._movements_limit :]
            self.changes.task_list_changed(movement.task_id)
        return True

    def recent_movements(self, task_id: UUID) -> list[TaskMovement]:
        return list(self._movements.get(task_id, ()))

    def push_recent_activity(self, item: RecentActivity) -> None:
        if self._recent_limit <= 0:
            return
        self._recent = [item, *self._recent][: self._recent_limit]

    def recent_activity(self) -> list[RecentActivity]:
        return list(self._recent)

    def clear_recent_activity(self) -> None:
        self._recent = []

    def _adjust_count(self, task_id: UUID, field_name: str, delta: int) -> None:
        task = self._tasks.get(task_id)
        if task is None:
            return
        detail = self._details.get(task_id)
        if detail is not None and detail.loaded:
            collection = (
                detail.comments if field_name == "comments_count" else detail.attachments
            )
            value = len(collection)
        else:
            value = max(0, getattr(task, field_name) + delta)
        self._tasks[task_id] = task.model_copy(update={field_name: value})
        self.changes.task_list_changed(task_id)


def _matches(task: Task, needle: str) -> bool:
    if needle in task.title.lower():
        return True
    return bool(task.description) and needle in (task.description or "").lower()


def _with_detail_counts(task: Task, detail: TaskDetail) -> Task:
    return task.model_copy(
        update={
            "attachments_count": len(detail.attachments),
            "comments_count": len(detail.comments),
        },
    )


def assigned_name(task: Task) -> str:
    if task.assigned_to is None:
        return UNASSIGNED_NAME
    return task.assigned_user_name or USER_PLACEHOLDER
