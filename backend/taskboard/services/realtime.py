"""Fold push-stream change events into the board projection.

The push transport is an external collaborator: anything implementing
``RealtimeSource`` can feed the reconciler. Events are dispatched by table to a
handler; every handler is idempotent so duplicate delivery is harmless.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol
from uuid import UUID

from taskboard.core.config import settings
from taskboard.core.errors import FetchError, SubscriptionLost, TransportError
from taskboard.core.logging import get_logger
from taskboard.models.activity import TaskActivity, TaskMovement
from taskboard.models.assignments import TaskAssignment
from taskboard.models.attachments import TaskAttachment
from taskboard.models.comments import TaskComment
from taskboard.models.profiles import Profile
from taskboard.models.tasks import DERIVED_TASK_FIELDS, Task, stage_title
from taskboard.services.profiles import SYSTEM_NAME, USER_PLACEHOLDER
from taskboard.services.storage import (
    ACTIVITIES_TABLE,
    ASSIGNMENTS_TABLE,
    ATTACHMENTS_TABLE,
    COMMENTS_TABLE,
    MOVEMENTS_TABLE,
    PROFILES_TABLE,
    TASKS_TABLE,
)
from taskboard.services.store import ANONYMOUS_NAME, RecentActivity

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

    from taskboard.services.store import TaskStore

logger = get_logger(__name__)

RESYNC_FAILED_MESSAGE = "Lost connection to live updates. Reload the board to see new changes."


class ChangeType(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class RealtimeEvent:
    """One row change delivered by the push service.

    ``payload`` is the new row (empty for deletes); ``old`` carries at least the
    primary key of a deleted or updated row.
    """

    event: ChangeType
    table: str
    payload: dict[str, Any] = field(default_factory=dict)
    old: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_message(cls, message: dict[str, Any]) -> RealtimeEvent:
        """Build an event from a ``{eventType|event, table, new|payload, old}`` message."""
        kind = str(message.get("eventType") or message.get("event") or "").lower()
        return cls(
            event=ChangeType(kind),
            table=str(message.get("table") or ""),
            payload=dict(message.get("new") or message.get("payload") or {}),
            old=dict(message.get("old") or {}),
        )

    @property
    def row_id(self) -> UUID | None:
        raw = self.payload.get("id") or self.old.get("id")
        if raw is None:
            return None
        return raw if isinstance(raw, UUID) else UUID(str(raw))


class RealtimeSource(Protocol):
    """Push subscription for one workspace.

    Iteration ends when the subscription is closed on purpose; a dropped
    connection raises ``SubscriptionLost``.
    """

    def subscribe(self, workspace_id: UUID) -> AsyncIterator[RealtimeEvent]: ...


class RealtimeReconciler:
    """Apply push events to a ``TaskStore`` and resynchronize after stream loss."""

    def __init__(
        self,
        store: TaskStore,
        *,
        actor_id: UUID | None = None,
        resync_max_attempts: int | None = None,
        resync_backoff_seconds: float | None = None,
        resync_backoff_max_seconds: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._actor_id = actor_id
        self._max_attempts = resync_max_attempts or settings.resync_max_attempts
        self._backoff = (
            settings.resync_backoff_seconds
            if resync_backoff_seconds is None
            else resync_backoff_seconds
        )
        self._backoff_max = (
            settings.resync_backoff_max_seconds
            if resync_backoff_max_seconds is None
            else resync_backoff_max_seconds
        )
        self._sleep = sleep
        self._handlers: dict[str, Callable[[RealtimeEvent], Awaitable[bool]]] = {
            TASKS_TABLE: self._on_task,
            COMMENTS_TABLE: self._on_comment,
            ACTIVITIES_TABLE: self._on_activity,
            MOVEMENTS_TABLE: self._on_movement,
            ATTACHMENTS_TABLE: self._on_attachment,
            ASSIGNMENTS_TABLE: self._on_assignment,
            PROFILES_TABLE: self._on_profile,
        }
        self.resync_count = 0

    # -------------------- stream lifecycle --------------------

    async def run(self, source: RealtimeSource) -> None:
        """Consume ``source`` until it closes, reloading the store after each drop.

        Raises ``FetchError`` once resynchronization has failed
        ``resync_max_attempts`` times in a row.
        """
        while True:
            try:
                async for event in source.subscribe(self._store.workspace_id):
                    await self._apply_logged(event)
            except (SubscriptionLost, TransportError) as exc:
                logger.info(
                    "realtime.subscription.lost",
                    extra={"workspace_id": str(self._store.workspace_id), "error": str(exc)},
                )
                await self.resync()
                continue
            logger.info(
                "realtime.subscription.closed",
                extra={"workspace_id": str(self._store.workspace_id)},
            )
            return

    async def resync(self) -> None:
        """Reload the whole projection with exponential backoff between attempts."""
        delay = self._backoff
        attempt = 0
        while True:
            attempt += 1
            try:
                await self._store.load()
            except FetchError as exc:
                logger.warning(
                    "realtime.resync.failed",
                    extra={
                        "workspace_id": str(self._store.workspace_id),
                        "attempt": attempt,
                        "error": str(exc),
                    },
                )
                if attempt >= self._max_attempts:
                    logger.error(
                        "realtime.resync.gave_up",
                        extra={
                            "workspace_id": str(self._store.workspace_id),
                            "attempts": attempt,
                        },
                    )
                    self._store.changes.notify("error", RESYNC_FAILED_MESSAGE)
                    raise
                await self._sleep(delay)
                delay = min(delay * 2, self._backoff_max)
                continue
            self.resync_count += 1
            logger.info(
                "realtime.resync.complete",
                extra={"workspace_id": str(self._store.workspace_id), "attempt": attempt},
            )
            return

    async def _apply_logged(self, event: RealtimeEvent) -> None:
        try:
            await self.apply(event)
        except ValueError as exc:
            logger.warning(
                "realtime.event.malformed",
                extra={"table": event.table, "event": event.event.value, "error": str(exc)},
            )

    # -------------------- dispatch --------------------

    async def apply(self, event: RealtimeEvent) -> bool:
        """Fold ``event`` into the store; returns True when the projection changed."""
        handler = self._handlers.get(event.table)
        if handler is None:
            logger.debug("realtime.event.ignored", extra={"table": event.table})
            return False
        changed = await handler(event)
        logger.debug(
            "realtime.event.applied",
            extra={
                "table": event.table,
                "event": event.event.value,
                "row_id": str(event.row_id),
                "changed": changed,
            },
        )
        return changed

    async def _on_task(self, event: RealtimeEvent) -> bool:
        if event.event == ChangeType.DELETE:
            task_id = event.row_id
            if task_id is None:
                return False
            async with self._store.writing():
                return self._store.remove(task_id) is not None

        incoming = Task.model_validate(event.payload)
        if incoming.workspace_id != self._store.workspace_id:
            return False
        assignee_name: str | None = None
        if incoming.assigned_to is not None:
            assignee_name = await self._store.profiles.display_name(
                incoming.assigned_to,
                missing=USER_PLACEHOLDER,
            )

        async with self._store.writing():
            held = self._store.get(incoming.id)
            if held is not None:
                if held.same_persisted_state(incoming) or incoming.updated_at < held.updated_at:
                    return False
                derived = {name: getattr(held, name) for name in DERIVED_TASK_FIELDS}
                derived["assigned_user_name"] = assignee_name
                self._store.upsert(incoming.model_copy(update=derived))
                if held.status != incoming.status or held.title != incoming.title:
                    self._store.changes.task_detail_changed(incoming.id)
                return True
            self._store.upsert(incoming.model_copy(update={"assigned_user_name": assignee_name}))
            return True

    async def _on_comment(self, event: RealtimeEvent) -> bool:
        if event.event != ChangeType.INSERT:
            return False
        comment = TaskComment.model_validate(event.payload)
        if comment.task_id not in self._store:
            return False
        if self._store.has_comment(comment.task_id, comment.id):
            async with self._store.writing():
                self._store.add_comment(comment)
            return False
        name = await self._store.profiles.display_name(comment.user_id, missing=ANONYMOUS_NAME)
        async with self._store.writing():
            return self._store.add_comment(comment.model_copy(update={"user_name": name}))

    async def _on_activity(self, event: RealtimeEvent) -> bool:
        if event.event != ChangeType.INSERT:
            return False
        activity = TaskActivity.model_validate(event.payload)
        if not self._store.is_detail_loaded(activity.task_id):
            return False
        name = await self._store.profiles.display_name(activity.user_id, missing=SYSTEM_NAME)
        async with self._store.writing():
            return self._store.append_activity(activity.model_copy(update={"user_name": name}))

    async def _on_movement(self, event: RealtimeEvent) -> bool:
        if event.event != ChangeType.INSERT:
            return False
        movement = TaskMovement.model_validate(event.payload)
        task = self._store.get(movement.task_id)
        if task is None or movement.workspace_id != self._store.workspace_id:
            return False
        name = await self._store.profiles.display_name(
            movement.moved_by_user_id,
            missing=USER_PLACEHOLDER,
        )
        async with self._store.writing():
            added = self._store.append_movement(movement.model_copy(update={"moved_by_name": name}))
            if not added or movement.moved_by_user_id == self._actor_id:
                return added
            from_stage = stage_title(movement.from_status)
            to_stage = stage_title(movement.to_status)
            self._store.push_recent_activity(
                RecentActivity(
                    id=movement.id,
                    title=task.title,
                    message=f'{name} moved "{task.title}" from {from_stage} to {to_stage}',
                    created_at=movement.created_at,
                ),
            )
        self._store.changes.notify("info", f'{name} moved "{task.title}"', task_id=task.id)
        return True

    async def _on_attachment(self, event: RealtimeEvent) -> bool:
        if event.event == ChangeType.DELETE:
            attachment_id = event.row_id
            if attachment_id is None:
                return False
            async with self._store.writing():
                return self._store.discard_attachment(attachment_id) is not None
        if event.event != ChangeType.INSERT:
            return False
        attachment = TaskAttachment.model_validate(event.payload)
        if attachment.task_id not in self._store:
            return False
        async with self._store.writing():
            return self._store.add_attachment(attachment)

    async def _on_assignment(self, event: RealtimeEvent) -> bool:
        if event.event == ChangeType.UPDATE:
            return False
        row = event.old if event.event == ChangeType.DELETE else event.payload
        if "task_id" not in row or "user_id" not in row:
            return False
        assignment = TaskAssignment.model_validate(row)
        if assignment.task_id not in self._store:
            return False
        async with self._store.writing():
            if event.event == ChangeType.DELETE:
                return self._store.remove_assignee(assignment.task_id, assignment.user_id)
            return self._store.add_assignee(assignment.task_id, assignment.user_id)

    async def _on_profile(self, event: RealtimeEvent) -> bool:
        if event.event == ChangeType.DELETE:
            return False
        profile = Profile.model_validate(event.payload)
        if self._store.profiles.cached(profile.id) == profile.display_name:
            return False
        self._store.profiles.remember(profile.id, profile.display_name)
        return True
