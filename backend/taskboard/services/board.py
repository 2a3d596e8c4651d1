"""Board session: the mutation API one signed-in user works through.

A session owns the projection of one workspace for one actor. Every mutation
checks permissions and validates input before anything is applied, then runs
through the optimistic pipeline. Audit entries are written once storage has
accepted the change.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

from taskboard.core.errors import (
    ConflictOnRollback,
    NotFound,
    StorageError,
    TransportError,
    ValidationError,
)
from taskboard.core.logging import get_logger
from taskboard.core.time import utcnow
from taskboard.models.activity import ActivityAction
from taskboard.models.assignments import TaskAssignment
from taskboard.models.attachments import TaskAttachment
from taskboard.models.comments import TaskComment
from taskboard.models.tasks import Task, TaskStatus
from taskboard.services.audit import ActivityRecorder
from taskboard.services.drag import StageTransitionController
from taskboard.services.optimistic import (
    FieldPatch,
    Mutation,
    MutationResult,
    MutationState,
    OptimisticPipeline,
)
from taskboard.services.permissions import (
    can_comment,
    can_create_task,
    can_delete_attachment,
    can_delete_task,
    can_edit,
    can_manage_assignments,
    can_move_task,
    ensure_allowed,
)
from taskboard.services.profiles import ProfileDirectory
from taskboard.services.realtime import RealtimeReconciler
from taskboard.services.store import ANONYMOUS_NAME, TaskStore

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable
    from datetime import date

    from taskboard.models.profiles import Actor
    from taskboard.services.changes import BoardChange, ChangeBroadcaster
    from taskboard.services.realtime import RealtimeSource
    from taskboard.services.storage import BlobStore, BoardRepository
    from taskboard.services.store import BoardStats, TaskDetail

logger = get_logger(__name__)

DEFAULT_FILE_TYPE = "application/octet-stream"


@dataclass(frozen=True)
class FileUpload:
    """File contents handed over by the presentation layer."""

    file_name: str
    content: bytes
    content_type: str = DEFAULT_FILE_TYPE

    @property
    def size(self) -> int:
        return len(self.content)


def attachment_path(task_id: UUID, file_name: str, *, now_ms: int | None = None) -> str:
    """Blob key for an upload: ``<task_id>_<epoch-ms>.<ext>``."""
    stamp = now_ms if now_ms is not None else int(utcnow().timestamp() * 1000)
    _, dot, extension = file_name.rpartition(".")
    if dot and extension:
        return f"{task_id}_{stamp}.{extension.lower()}"
    return f"{task_id}_{stamp}"


def _required_text(value: str | None, *, field: str, message: str) -> str:
    text = (value or "").strip()
    if not text:
        raise ValidationError(message, field=field)
    return text


class BoardSession:
    """Projection plus mutation API for one (workspace, actor) pair."""

    def __init__(
        self,
        repository: BoardRepository,
        blobs: BlobStore,
        *,
        workspace_id: UUID,
        actor: Actor,
        store: TaskStore | None = None,
        profiles: ProfileDirectory | None = None,
        changes: ChangeBroadcaster | None = None,
        timeout_seconds: float | None = None,
        reconciler: RealtimeReconciler | None = None,
    ) -> None:
        self.repository = repository
        self.blobs = blobs
        self.actor = actor
        self.store = store or TaskStore(
            repository,
            workspace_id=workspace_id,
            profiles=profiles or ProfileDirectory(repository),
            changes=changes,
        )
        self.changes = self.store.changes
        self.recorder = ActivityRecorder(repository, self.store)
        self.pipeline = OptimisticPipeline(self.store, timeout_seconds=timeout_seconds)
        self.reconciler = reconciler or RealtimeReconciler(self.store, actor_id=actor.id)
        self._stream_task: asyncio.Task[None] | None = None

    @property
    def workspace_id(self) -> UUID:
        return self.store.workspace_id

    # -------------------- lifecycle --------------------

    async def open(self, source: RealtimeSource | None = None) -> None:
        """Load the board and, when given a push source, start reconciling it."""
        await self.store.load()
        if source is not None and self._stream_task is None:
            self._stream_task = asyncio.create_task(
                self.reconciler.run(source),
                name=f"taskboard-realtime-{self.workspace_id}",
            )
            self._stream_task.add_done_callback(self._on_stream_done)

    async def close(self) -> None:
        task, self._stream_task = self._stream_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    def _on_stream_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "board.realtime.stopped",
                extra={"workspace_id": str(self.workspace_id), "error": str(error)},
            )

    def subscribe(self, listener: Callable[[BoardChange], None]) -> Callable[[], None]:
        """Register a "task list / task detail changed" listener."""
        return self.changes.subscribe(listener)

    def drag(self) -> StageTransitionController:
        return StageTransitionController(self)

    # -------------------- reads --------------------

    def get_tasks_for_stage(self, stage: TaskStatus | str, *, query: str = "") -> list[Task]:
        return self.store.tasks_for_stage(stage, query=query)

    def tasks(self, *, query: str = "") -> list[Task]:
        return self.store.tasks(query=query)

    def stats(self) -> BoardStats:
        return self.store.stats()

    async def open_task(self, task_id: UUID) -> TaskDetail:
        """Load comments, attachments, and the activity feed of a task."""
        return await self.store.load_detail(task_id)

    # -------------------- task mutations --------------------

    async def create_task(
        self,
        title: str,
        *,
        description: str | None = None,
        status: TaskStatus | str = TaskStatus.PLANNING,
        priority: int | None = None,
        due_date: date | None = None,
        assigned_to: UUID | None = None,
    ) -> MutationResult[Task]:
        ensure_allowed(can_create_task(self.actor), action="task.create")
        clean_title = _required_text(title, field="title", message="Title is required")
        stage = TaskStatus.parse(status)
        if stage is None:
            raise ValidationError(f"Invalid stage: {status}", field="status")
        now = utcnow()
        task = Task(
            workspace_id=self.workspace_id,
            title=clean_title,
            description=(description or "").strip() or None,
            status=stage,
            priority=priority,
            due_date=due_date,
            assigned_to=assigned_to,
            created_by=self.actor.id,
            created_at=now,
            updated_at=now,
        )
        if assigned_to is not None:
            name = await self.store.profiles.display_name(assigned_to)
            task = task.model_copy(update={"assigned_user_name": name})

        def _apply() -> Callable[[], None]:
            self.store.upsert(task)
            if assigned_to is not None:
                self.store.add_assignee(task.id, assigned_to)

            def _undo() -> None:
                self.store.remove(task.id)

            return _undo

        async def _remote() -> Task:
            stored = await self.repository.insert_task(task)
            if assigned_to is not None:
                await self.repository.insert_assignments(
                    [
                        TaskAssignment(
                            task_id=task.id,
                            user_id=assigned_to,
                            assigned_by=self.actor.id,
                        ),
                    ],
                )
            return stored

        result = await self._run(
            Mutation(task_id=task.id, field="task", apply=_apply, remote=_remote),
            failure_message="Failed to create task",
        )
        if not result.persisted:
            return result
        await self.recorder.record_activity(
            task.id,
            self.actor.id,
            ActivityAction.TASK_CREATED,
            {"title": task.title, "status": stage.value},
        )
        logger.info("board.task.created", extra={"task_id": str(task.id)})
        self.changes.notify("success", "Task created", task_id=task.id)
        return result

    async def move_task(self, task_id: UUID, target: TaskStatus | str) -> MutationResult[Task]:
        stage = TaskStatus.parse(target)
        if stage is None:
            raise ValidationError(f"Invalid stage: {target}", field="status", task_id=task_id)
        task = self.store.require(task_id)
        ensure_allowed(can_move_task(self.actor, task), action="task.move", task_id=task_id)
        if task.status == stage:
            return MutationResult(state=MutationState.UNCHANGED, task_id=task_id, field="status")

        patch = FieldPatch(self.store, task_id, {"status": stage})
        result = await self._run(
            Mutation(
                task_id=task_id,
                field="status",
                apply=patch.apply,
                remote=lambda: self.repository.update_task(task_id, patch.remote_values),
                current=lambda: self.store.require(task_id).status,
            ),
            failure_message="Failed to move task",
        )
        if not result.persisted:
            return result
        from_status = TaskStatus(result.previous)
        if from_status == stage:
            # An earlier request for this task never landed; storage did not change stage.
            return result
        await self.recorder.record_movement(
            task_id,
            from_status,
            stage,
            self.actor.id,
            self.workspace_id,
        )
        logger.info(
            "board.move.confirmed",
            extra={
                "task_id": str(task_id),
                "from_status": from_status.value,
                "to_status": stage.value,
                "state": result.state.value,
            },
        )
        if result.state == MutationState.CONFIRMED:
            self.changes.notify(
                "success",
                f"Task moved from {from_status.label} to {stage.label}",
                task_id=task_id,
            )
        return result

    async def update_title(self, task_id: UUID, new_title: str) -> MutationResult[Task]:
        title = _required_text(new_title, field="title", message="Title cannot be empty")
        return await self._update_text(
            task_id,
            "title",
            title,
            action=ActivityAction.TITLE_UPDATED,
            failure_message="Failed to update title",
        )

    async def update_description(
        self,
        task_id: UUID,
        new_description: str | None,
    ) -> MutationResult[Task]:
        description = (new_description or "").strip() or None
        return await self._update_text(
            task_id,
            "description",
            description,
            action=ActivityAction.DESCRIPTION_UPDATED,
            failure_message="Failed to update description",
        )

    async def _update_text(
        self,
        task_id: UUID,
        field_name: str,
        value: str | None,
        *,
        action: ActivityAction,
        failure_message: str,
    ) -> MutationResult[Task]:
        task = self.store.require(task_id)
        ensure_allowed(can_edit(self.actor, task), action="task.edit", task_id=task_id)
        old_value = getattr(task, field_name)
        if old_value == value:
            return MutationResult(state=MutationState.UNCHANGED, task_id=task_id, field=field_name)

        patch = FieldPatch(self.store, task_id, {field_name: value})
        result = await self._run(
            Mutation(
                task_id=task_id,
                field=field_name,
                apply=patch.apply,
                remote=lambda: self.repository.update_task(task_id, patch.remote_values),
            ),
            failure_message=failure_message,
        )
        if not result.persisted:
            return result
        await self.recorder.record_activity(
            task_id,
            self.actor.id,
            action,
            {"field": field_name},
            old_value=old_value,
            new_value=value,
        )
        return result

    async def delete_task(self, task_id: UUID) -> MutationResult[None]:
        ensure_allowed(can_delete_task(self.actor), action="task.delete", task_id=task_id)
        self.store.require(task_id)

        def _apply() -> Callable[[], None]:
            detached = self.store.detach(task_id)

            def _undo() -> None:
                if detached is not None and task_id not in self.store:
                    self.store.reattach(detached)

            return _undo

        result = await self._run(
            Mutation(
                task_id=task_id,
                field="task",
                apply=_apply,
                remote=lambda: self.repository.delete_task(task_id),
            ),
            failure_message="Failed to delete task",
        )
        if not result.persisted:
            return result
        logger.info("board.task.deleted", extra={"task_id": str(task_id)})
        self.changes.notify("success", "Task deleted", task_id=task_id)
        return result

    # -------------------- comments --------------------

    async def add_comment(self, task_id: UUID, body: str) -> MutationResult[TaskComment]:
        text = _required_text(body, field="body", message="Comment cannot be empty")
        task = self.store.require(task_id)
        ensure_allowed(
            can_comment(self.actor, task, self.store.assigned_users(task_id)),
            action="task.comment",
            task_id=task_id,
        )
        name = await self.store.profiles.display_name(self.actor.id, missing=ANONYMOUS_NAME)
        comment = TaskComment(
            task_id=task_id,
            user_id=self.actor.id,
            body=text,
            user_name=name,
        )
        touch = FieldPatch(self.store, task_id, {})

        def _apply() -> Callable[[], None]:
            self.store.add_comment(comment)
            untouch = touch.apply()

            def _undo() -> None:
                self.store.discard_comment(task_id, comment.id)
                untouch()

            return _undo

        async def _remote() -> TaskComment:
            stored = await self.repository.insert_comment(comment)
            await self._touch(task_id, touch)
            return stored

        result = await self._run(
            Mutation(task_id=task_id, field=f"comment:{comment.id}", apply=_apply, remote=_remote),
            failure_message="Failed to add comment",
        )
        if result.value is not None:
            async with self.store.writing():
                self.store.add_comment(result.value.model_copy(update={"user_name": name}))
        if not result.persisted:
            return result
        await self.recorder.record_activity(
            task_id,
            self.actor.id,
            ActivityAction.COMMENT_ADDED,
            {"comment_id": str(comment.id)},
        )
        return result

    # -------------------- attachments --------------------

    async def add_attachment(
        self,
        task_id: UUID,
        upload: FileUpload,
    ) -> MutationResult[TaskAttachment]:
        task = self.store.require(task_id)
        ensure_allowed(can_edit(self.actor, task), action="attachment.upload", task_id=task_id)
        file_name = _required_text(upload.file_name, field="file", message="File name is required")
        if not upload.content:
            raise ValidationError("File is empty", field="file", task_id=task_id)
        attachment = TaskAttachment(
            task_id=task_id,
            file_name=file_name,
            file_path=attachment_path(task_id, file_name),
            file_size=upload.size,
            file_type=upload.content_type or DEFAULT_FILE_TYPE,
            uploaded_by=self.actor.id,
        )
        touch = FieldPatch(self.store, task_id, {})

        def _apply() -> Callable[[], None]:
            self.store.add_attachment(attachment)
            untouch = touch.apply()

            def _undo() -> None:
                self.store.discard_attachment(attachment.id)
                untouch()

            return _undo

        async def _remote() -> TaskAttachment:
            await self.blobs.upload(
                attachment.file_path,
                upload.content,
                content_type=attachment.file_type,
            )
            try:
                stored = await self.repository.insert_attachment(attachment)
            except StorageError:
                await self._remove_blob(attachment)
                raise
            await self._touch(task_id, touch)
            return stored

        result = await self._run(
            Mutation(
                task_id=task_id,
                field=f"attachment:{attachment.id}",
                apply=_apply,
                remote=_remote,
            ),
            failure_message="Failed to upload file",
        )
        if not result.persisted:
            return result
        await self.recorder.record_activity(
            task_id,
            self.actor.id,
            ActivityAction.FILE_UPLOADED,
            {
                "attachment_id": str(attachment.id),
                "file_name": attachment.file_name,
                "file_size": attachment.file_size,
            },
        )
        return result

    async def remove_attachment(self, attachment_id: UUID) -> MutationResult[None]:
        attachment = self.store.find_attachment(attachment_id)
        if attachment is None:
            raise NotFound("Attachment not found")
        task_id = attachment.task_id
        ensure_allowed(
            can_delete_attachment(self.actor, attachment),
            action="attachment.delete",
            task_id=task_id,
        )
        touch = FieldPatch(self.store, task_id, {})

        def _apply() -> Callable[[], None]:
            self.store.discard_attachment(attachment_id)
            untouch = touch.apply()

            def _undo() -> None:
                self.store.add_attachment(attachment)
                untouch()

            return _undo

        async def _remote() -> None:
            await self.repository.delete_attachment(attachment_id)
            await self._remove_blob(attachment)
            await self._touch(task_id, touch)

        result = await self._run(
            Mutation(
                task_id=task_id,
                field=f"attachment:{attachment_id}",
                apply=_apply,
                remote=_remote,
            ),
            failure_message="Failed to delete file",
        )
        if not result.persisted:
            return result
        await self.recorder.record_activity(
            task_id,
            self.actor.id,
            ActivityAction.FILE_DELETED,
            {"attachment_id": str(attachment_id), "file_name": attachment.file_name},
        )
        return result

    async def download_attachment(self, attachment_id: UUID) -> tuple[TaskAttachment, bytes]:
        attachment = self.store.find_attachment(attachment_id)
        if attachment is None:
            raise NotFound("Attachment not found")
        content = await self.blobs.download(attachment.file_path)
        await self.recorder.record_activity(
            attachment.task_id,
            self.actor.id,
            ActivityAction.FILE_DOWNLOADED,
            {"attachment_id": str(attachment_id), "file_name": attachment.file_name},
        )
        return attachment, content

    # -------------------- assignments --------------------

    async def assign_users(
        self,
        task_id: UUID,
        user_ids: Iterable[UUID],
    ) -> MutationResult[list[TaskAssignment]]:
        requested = list(dict.fromkeys(user_ids))
        if not requested:
            raise ValidationError("Select at least one user", field="user_ids", task_id=task_id)
        task = self.store.require(task_id)
        assigned = self.store.assigned_users(task_id)
        ensure_allowed(
            can_manage_assignments(self.actor, task, assigned),
            action="task.assign",
            task_id=task_id,
        )
        new_ids = [user_id for user_id in requested if user_id not in assigned]
        if not new_ids:
            return MutationResult(state=MutationState.UNCHANGED, task_id=task_id, field="assignees")

        values: dict[str, Any] = {}
        derived: dict[str, Any] = {}
        if task.assigned_to is None:
            values["assigned_to"] = new_ids[0]
            derived["assigned_user_name"] = await self.store.profiles.display_name(new_ids[0])
        patch = FieldPatch(self.store, task_id, values, derived=derived)
        rows = [
            TaskAssignment(task_id=task_id, user_id=user_id, assigned_by=self.actor.id)
            for user_id in new_ids
        ]

        def _apply() -> Callable[[], None]:
            added = [user_id for user_id in new_ids if self.store.add_assignee(task_id, user_id)]
            unpatch = patch.apply()

            def _undo() -> None:
                for user_id in added:
                    self.store.remove_assignee(task_id, user_id)
                unpatch()

            return _undo

        async def _remote() -> list[TaskAssignment]:
            stored = await self.repository.insert_assignments(rows)
            await self._touch(task_id, patch)
            return stored

        result = await self._run(
            Mutation(
                task_id=task_id,
                field=f"assignees:{uuid4()}",
                apply=_apply,
                remote=_remote,
            ),
            failure_message="Failed to assign users",
        )
        if not result.persisted:
            return result
        await self.recorder.record_activity(
            task_id,
            self.actor.id,
            ActivityAction.USERS_ASSIGNED,
            {"user_ids": [str(user_id) for user_id in new_ids], "count": len(new_ids)},
        )
        return result

    async def unassign_user(self, task_id: UUID, user_id: UUID) -> MutationResult[None]:
        task = self.store.require(task_id)
        assigned = self.store.assigned_users(task_id)
        ensure_allowed(
            can_manage_assignments(self.actor, task, assigned),
            action="task.assign",
            task_id=task_id,
        )
        if user_id not in assigned:
            raise NotFound("User is not assigned to this task", task_id=task_id)

        values: dict[str, Any] = {}
        derived: dict[str, Any] = {}
        if task.assigned_to == user_id:
            remaining = sorted(assigned - {user_id}, key=str)
            successor = remaining[0] if remaining else None
            values["assigned_to"] = successor
            derived["assigned_user_name"] = (
                await self.store.profiles.display_name(successor) if successor else None
            )
        patch = FieldPatch(self.store, task_id, values, derived=derived)

        def _apply() -> Callable[[], None]:
            removed = self.store.remove_assignee(task_id, user_id)
            unpatch = patch.apply()

            def _undo() -> None:
                if removed:
                    self.store.add_assignee(task_id, user_id)
                unpatch()

            return _undo

        async def _remote() -> None:
            await self.repository.delete_assignment(task_id, user_id)
            await self._touch(task_id, patch)

        result = await self._run(
            Mutation(task_id=task_id, field=f"assignee:{user_id}", apply=_apply, remote=_remote),
            failure_message="Failed to remove user",
        )
        if not result.persisted:
            return result
        await self.recorder.record_activity(
            task_id,
            self.actor.id,
            ActivityAction.USER_REMOVED,
            {"user_id": str(user_id)},
        )
        return result

    # -------------------- helpers --------------------

    async def _run(self, mutation: Mutation[Any], *, failure_message: str) -> MutationResult[Any]:
        try:
            return await self.pipeline.run(mutation)
        except (TransportError, ConflictOnRollback) as exc:
            logger.warning(
                "board.mutation.failed",
                extra={
                    "task_id": str(mutation.task_id),
                    "field": mutation.field,
                    "code": exc.code,
                    "error": str(exc),
                },
            )
            self.changes.notify("error", failure_message, task_id=mutation.task_id)
            raise

    async def _touch(self, task_id: UUID, patch: FieldPatch) -> None:
        """Persist the parent task's bumped ``updated_at``; failures are logged only."""
        try:
            await self.repository.update_task(task_id, patch.remote_values)
        except StorageError as exc:
            logger.warning(
                "board.task.touch_failed",
                extra={"task_id": str(task_id), "error": str(exc)},
            )

    async def _remove_blob(self, attachment: TaskAttachment) -> None:
        try:
            await self.blobs.remove([attachment.file_path])
        except StorageError as exc:
            logger.warning(
                "board.attachment.blob_remove_failed",
                extra={"attachment_id": str(attachment.id), "error": str(exc)},
            )
