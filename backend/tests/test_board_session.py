# ruff: noqa

from __future__ import annotations

import asyncio
from uuid import uuid4

import pytest

from fakes import actor
from taskboard.core.errors import (
    ConflictOnRollback,
    NotFound,
    PermissionDenied,
    StorageError,
    TransportError,
    ValidationError,
)
from taskboard.models.activity import ActivityAction
from taskboard.models.tasks import TaskStatus
from taskboard.services.board import BoardSession, FileUpload, attachment_path
from taskboard.services.changes import ChangeKind
from taskboard.services.optimistic import MutationState


async def _session(repository, blobs, workspace_id, who) -> BoardSession:
    session = BoardSession(repository, blobs, workspace_id=workspace_id, actor=who)
    await session.open()
    return session


def _notifications(session: BoardSession) -> list[tuple[str, str]]:
    seen: list[tuple[str, str]] = []

    def _listener(change) -> None:
        if change.kind == ChangeKind.NOTIFICATION:
            seen.append((change.notification.level, change.notification.message))

    session.subscribe(_listener)
    return seen


def _actions(repository) -> list[ActivityAction]:
    return [row.action for row in repository.activities]


# -------------------- moves --------------------


@pytest.mark.asyncio
async def test_move_updates_status_and_records_one_movement(
    repository,
    blobs,
    workspace_id,
) -> None:
    creator = actor("member")
    task = repository.add_task(workspace_id=workspace_id, created_by=creator.id)
    session = await _session(repository, blobs, workspace_id, creator)
    notifications = _notifications(session)
    before = session.store.require(task.id).updated_at

    result = await session.move_task(task.id, "completed")

    assert result.state == MutationState.CONFIRMED
    held = session.store.require(task.id)
    assert held.status == TaskStatus.COMPLETED
    assert held.updated_at > before
    assert repository.tasks[task.id].status == TaskStatus.COMPLETED
    assert repository.tasks[task.id].updated_at > before
    [movement] = repository.movements
    assert (movement.from_status, movement.to_status) == (
        TaskStatus.PLANNING,
        TaskStatus.COMPLETED,
    )
    assert movement.moved_by_user_id == creator.id
    assert [item.id for item in session.store.recent_movements(task.id)] == [movement.id]
    assert ("success", "Task moved from Planning to Completed") in notifications


@pytest.mark.asyncio
async def test_move_to_same_stage_is_a_no_op(repository, blobs, workspace_id) -> None:
    creator = actor("member")
    task = repository.add_task(
        workspace_id=workspace_id,
        created_by=creator.id,
        status=TaskStatus.ON_HOLD,
    )
    session = await _session(repository, blobs, workspace_id, creator)
    before = session.store.require(task.id).updated_at

    result = await session.move_task(task.id, TaskStatus.ON_HOLD)

    assert result.state == MutationState.UNCHANGED
    assert session.store.require(task.id).updated_at == before
    assert repository.movements == []
    assert repository.count("update_task") == 0


@pytest.mark.asyncio
async def test_failed_move_reverts_to_prior_value(repository, blobs, workspace_id) -> None:
    creator = actor("member")
    task = repository.add_task(
        workspace_id=workspace_id,
        created_by=creator.id,
        status=TaskStatus.IN_PROGRESS,
    )
    session = await _session(repository, blobs, workspace_id, creator)
    notifications = _notifications(session)
    before = session.store.require(task.id)
    repository.failures["update_task"] = [
        StorageError("check constraint", code=StorageError.CONSTRAINT_VIOLATION),
    ]

    with pytest.raises(ConflictOnRollback):
        await session.move_task(task.id, "at_risk")

    after = session.store.require(task.id)
    assert after.status == before.status
    assert after.updated_at == before.updated_at
    assert repository.movements == []
    assert ("error", "Failed to move task") in notifications


@pytest.mark.asyncio
async def test_unreachable_storage_reverts_move(repository, blobs, workspace_id) -> None:
    creator = actor("member")
    task = repository.add_task(workspace_id=workspace_id, created_by=creator.id)
    session = await _session(repository, blobs, workspace_id, creator)
    repository.failures["update_task"] = [TransportError("connection reset")]

    with pytest.raises(TransportError):
        await session.move_task(task.id, "completed")

    assert session.store.require(task.id).status == TaskStatus.PLANNING


@pytest.mark.asyncio
async def test_movement_starts_from_stored_stage_after_discarded_move(
    repository,
    blobs,
    workspace_id,
) -> None:
    creator = actor("member")
    task = repository.add_task(workspace_id=workspace_id, created_by=creator.id)
    session = await _session(repository, blobs, workspace_id, creator)
    gate = asyncio.Event()
    repository.holds["update_task"] = [gate]
    repository.failures["update_task"] = [None, StorageError("stale write")]

    first = asyncio.create_task(session.move_task(task.id, "in_progress"))
    for _ in range(5):
        await asyncio.sleep(0)
    second = await session.move_task(task.id, "completed")
    gate.set()
    discarded = await first

    assert second.state == MutationState.CONFIRMED
    assert discarded.state == MutationState.DISCARDED
    assert repository.tasks[task.id].status == TaskStatus.COMPLETED
    assert session.store.require(task.id).status == TaskStatus.COMPLETED
    assert [(row.from_status, row.to_status) for row in repository.movements] == [
        (TaskStatus.PLANNING, TaskStatus.COMPLETED),
    ]


@pytest.mark.asyncio
async def test_superseded_moves_each_record_their_own_transition(
    repository,
    blobs,
    workspace_id,
) -> None:
    creator = actor("member")
    task = repository.add_task(workspace_id=workspace_id, created_by=creator.id)
    session = await _session(repository, blobs, workspace_id, creator)
    first_gate, second_gate = asyncio.Event(), asyncio.Event()
    repository.holds["update_task"] = [first_gate, second_gate]

    first = asyncio.create_task(session.move_task(task.id, "in_progress"))
    for _ in range(5):
        await asyncio.sleep(0)
    second = asyncio.create_task(session.move_task(task.id, "completed"))
    for _ in range(5):
        await asyncio.sleep(0)
    first_gate.set()
    assert (await first).state == MutationState.SUPERSEDED
    second_gate.set()
    assert (await second).state == MutationState.CONFIRMED

    assert [(row.from_status, row.to_status) for row in repository.movements] == [
        (TaskStatus.PLANNING, TaskStatus.IN_PROGRESS),
        (TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED),
    ]


@pytest.mark.asyncio
async def test_member_without_relation_cannot_move(repository, blobs, workspace_id) -> None:
    task = repository.add_task(workspace_id=workspace_id, created_by=uuid4())
    session = await _session(repository, blobs, workspace_id, actor("member"))
    calls_before = list(repository.calls)

    with pytest.raises(PermissionDenied):
        await session.move_task(task.id, "completed")

    assert session.store.require(task.id).status == TaskStatus.PLANNING
    assert repository.calls == calls_before


@pytest.mark.asyncio
async def test_move_to_unknown_stage_is_rejected(repository, blobs, workspace_id) -> None:
    creator = actor("member")
    task = repository.add_task(workspace_id=workspace_id, created_by=creator.id)
    session = await _session(repository, blobs, workspace_id, creator)

    with pytest.raises(ValidationError):
        await session.move_task(task.id, "archived")
    assert repository.count("update_task") == 0


@pytest.mark.asyncio
async def test_audit_failure_does_not_fail_move(repository, blobs, workspace_id) -> None:
    creator = actor("member")
    task = repository.add_task(workspace_id=workspace_id, created_by=creator.id)
    session = await _session(repository, blobs, workspace_id, creator)
    repository.always_fail["insert_movement"] = StorageError("rls")

    result = await session.move_task(task.id, "update_required")

    assert result.state == MutationState.CONFIRMED
    assert session.store.require(task.id).status == TaskStatus.UPDATE_REQUIRED
    assert session.store.recent_movements(task.id) == []


# -------------------- tasks --------------------


@pytest.mark.asyncio
async def test_create_task_is_applied_and_audited(repository, blobs, workspace_id) -> None:
    admin = actor("admin")
    session = await _session(repository, blobs, workspace_id, admin)
    notifications = _notifications(session)

    result = await session.create_task("  Prepare launch  ", status="in_progress")

    assert result.state == MutationState.CONFIRMED
    task = session.store.require(result.task_id)
    assert task.title == "Prepare launch"
    assert task.status == TaskStatus.IN_PROGRESS
    assert task.created_by == admin.id
    assert result.task_id in repository.tasks
    assert _actions(repository) == [ActivityAction.TASK_CREATED]
    assert ("success", "Task created") in notifications


@pytest.mark.asyncio
async def test_create_task_failure_removes_optimistic_row(repository, blobs, workspace_id) -> None:
    session = await _session(repository, blobs, workspace_id, actor("admin"))
    repository.failures["insert_task"] = [StorageError("denied", code="permission_denied")]

    with pytest.raises(ConflictOnRollback):
        await session.create_task("Doomed")

    assert len(session.store) == 0
    assert repository.activities == []


@pytest.mark.asyncio
async def test_create_task_validates_before_applying(repository, blobs, workspace_id) -> None:
    admin_session = await _session(repository, blobs, workspace_id, actor("admin"))
    member_session = await _session(repository, blobs, workspace_id, actor("member"))

    with pytest.raises(ValidationError):
        await admin_session.create_task("   ")
    with pytest.raises(ValidationError):
        await admin_session.create_task("Valid", status="done")
    with pytest.raises(PermissionDenied):
        await member_session.create_task("Not mine to create")

    assert repository.count("insert_task") == 0


@pytest.mark.asyncio
async def test_update_title_records_old_and_new(repository, blobs, workspace_id) -> None:
    creator = actor("member")
    task = repository.add_task(workspace_id=workspace_id, created_by=creator.id, title="Draft")
    session = await _session(repository, blobs, workspace_id, creator)

    result = await session.update_title(task.id, "Final")

    assert result.state == MutationState.CONFIRMED
    assert repository.tasks[task.id].title == "Final"
    [activity] = repository.activities
    assert activity.action == ActivityAction.TITLE_UPDATED
    assert (activity.old_value, activity.new_value) == ("Draft", "Final")

    with pytest.raises(ValidationError):
        await session.update_title(task.id, "  ")
    assert (await session.update_title(task.id, "Final")).state == MutationState.UNCHANGED


@pytest.mark.asyncio
async def test_update_description_requires_edit_rights(repository, blobs, workspace_id) -> None:
    task = repository.add_task(workspace_id=workspace_id, created_by=uuid4())
    session = await _session(repository, blobs, workspace_id, actor("sales_admin"))

    with pytest.raises(PermissionDenied):
        await session.update_description(task.id, "New scope")
    assert session.store.require(task.id).description is None


@pytest.mark.asyncio
async def test_delete_task_failure_restores_it(repository, blobs, workspace_id) -> None:
    task = repository.add_task(workspace_id=workspace_id, created_by=uuid4())
    session = await _session(repository, blobs, workspace_id, actor("admin"))
    repository.failures["delete_task"] = [StorageError("fk violation")]

    with pytest.raises(ConflictOnRollback):
        await session.delete_task(task.id)
    assert task.id in session.store

    result = await session.delete_task(task.id)

    assert result.state == MutationState.CONFIRMED
    assert task.id not in session.store
    assert task.id not in repository.tasks


@pytest.mark.asyncio
async def test_only_admin_deletes_tasks(repository, blobs, workspace_id) -> None:
    creator = actor("member")
    task = repository.add_task(workspace_id=workspace_id, created_by=creator.id)
    session = await _session(repository, blobs, workspace_id, creator)

    with pytest.raises(PermissionDenied):
        await session.delete_task(task.id)
    assert task.id in repository.tasks


# -------------------- comments --------------------


@pytest.mark.asyncio
async def test_comment_denial_has_no_side_effects(repository, blobs, workspace_id) -> None:
    task = repository.add_task(workspace_id=workspace_id, created_by=uuid4())
    session = await _session(repository, blobs, workspace_id, actor("member"))
    calls_before = list(repository.calls)

    with pytest.raises(PermissionDenied):
        await session.add_comment(task.id, "hello")

    assert repository.calls == calls_before
    assert session.store.require(task.id).comments_count == 0
    assert session.store.comments(task.id) == []


@pytest.mark.asyncio
async def test_admin_creates_and_assigns_then_assignee_comments(
    repository,
    blobs,
    workspace_id,
) -> None:
    assignee = actor("member")
    repository.add_profile(assignee.id, "Uma")
    admin_session = await _session(repository, blobs, workspace_id, actor("admin"))
    created = await admin_session.create_task("Client onboarding")
    await admin_session.assign_users(created.task_id, [assignee.id])

    session = await _session(repository, blobs, workspace_id, assignee)
    result = await session.add_comment(created.task_id, "hello")

    assert result.state == MutationState.CONFIRMED
    assert [comment.body for comment in repository.comments] == ["hello"]
    assert session.store.require(created.task_id).comments_count == 1
    [comment] = session.store.comments(created.task_id)
    assert comment.user_name == "Uma"
    assert _actions(repository).count(ActivityAction.COMMENT_ADDED) == 1


@pytest.mark.asyncio
async def test_failed_comment_is_withdrawn(repository, blobs, workspace_id) -> None:
    task = repository.add_task(workspace_id=workspace_id, created_by=uuid4())
    session = await _session(repository, blobs, workspace_id, actor("sales_admin"))
    repository.failures["insert_comment"] = [StorageError("too long")]

    with pytest.raises(ConflictOnRollback):
        await session.add_comment(task.id, "hello")

    assert session.store.require(task.id).comments_count == 0
    assert session.store.comments(task.id) == []
    assert repository.activities == []


@pytest.mark.asyncio
async def test_empty_comment_is_rejected(repository, blobs, workspace_id) -> None:
    task = repository.add_task(workspace_id=workspace_id, created_by=uuid4())
    session = await _session(repository, blobs, workspace_id, actor("admin"))

    with pytest.raises(ValidationError):
        await session.add_comment(task.id, "   ")


# -------------------- attachments --------------------


def test_attachment_path_uses_task_id_timestamp_and_extension() -> None:
    task_id = uuid4()

    assert attachment_path(task_id, "Report.PDF", now_ms=1700000000000) == (
        f"{task_id}_1700000000000.pdf"
    )
    assert attachment_path(task_id, "README", now_ms=5) == f"{task_id}_5"


@pytest.mark.asyncio
async def test_upload_stores_blob_and_row(repository, blobs, workspace_id) -> None:
    creator = actor("member")
    task = repository.add_task(workspace_id=workspace_id, created_by=creator.id)
    session = await _session(repository, blobs, workspace_id, creator)

    result = await session.add_attachment(
        task.id,
        FileUpload(file_name="brief.pdf", content=b"%PDF", content_type="application/pdf"),
    )

    attachment = result.value
    assert attachment is not None
    assert blobs.blobs[attachment.file_path] == b"%PDF"
    assert attachment.file_size == 4
    assert [row.id for row in repository.attachments] == [attachment.id]
    assert session.store.require(task.id).attachments_count == 1
    assert ActivityAction.FILE_UPLOADED in _actions(repository)


@pytest.mark.asyncio
async def test_upload_failure_removes_orphan_blob(repository, blobs, workspace_id) -> None:
    creator = actor("member")
    task = repository.add_task(workspace_id=workspace_id, created_by=creator.id)
    session = await _session(repository, blobs, workspace_id, creator)
    repository.failures["insert_attachment"] = [StorageError("quota")]

    with pytest.raises(ConflictOnRollback):
        await session.add_attachment(task.id, FileUpload(file_name="a.txt", content=b"hi"))

    assert blobs.blobs == {}
    assert len(blobs.removed) == 1
    assert session.store.require(task.id).attachments_count == 0


@pytest.mark.asyncio
async def test_empty_upload_is_rejected(repository, blobs, workspace_id) -> None:
    creator = actor("member")
    task = repository.add_task(workspace_id=workspace_id, created_by=creator.id)
    session = await _session(repository, blobs, workspace_id, creator)

    with pytest.raises(ValidationError):
        await session.add_attachment(task.id, FileUpload(file_name="a.txt", content=b""))
    assert blobs.blobs == {}


@pytest.mark.asyncio
async def test_non_uploader_cannot_remove_attachment(repository, blobs, workspace_id) -> None:
    uploader = actor("member")
    task = repository.add_task(workspace_id=workspace_id, created_by=uploader.id)
    uploader_session = await _session(repository, blobs, workspace_id, uploader)
    uploaded = await uploader_session.add_attachment(
        task.id,
        FileUpload(file_name="f.png", content=b"png"),
    )
    other = await _session(repository, blobs, workspace_id, actor("member"))
    await other.open_task(task.id)

    with pytest.raises(PermissionDenied):
        await other.remove_attachment(uploaded.value.id)

    assert other.store.find_attachment(uploaded.value.id) is not None
    assert [row.id for row in repository.attachments] == [uploaded.value.id]
    assert uploaded.value.file_path in blobs.blobs


@pytest.mark.asyncio
async def test_uploader_removes_attachment_and_blob(repository, blobs, workspace_id) -> None:
    uploader = actor("member")
    task = repository.add_task(workspace_id=workspace_id, created_by=uploader.id)
    session = await _session(repository, blobs, workspace_id, uploader)
    uploaded = await session.add_attachment(task.id, FileUpload(file_name="f.png", content=b"x"))

    result = await session.remove_attachment(uploaded.value.id)

    assert result.state == MutationState.CONFIRMED
    assert repository.attachments == []
    assert blobs.removed == [uploaded.value.file_path]
    assert session.store.require(task.id).attachments_count == 0
    assert ActivityAction.FILE_DELETED in _actions(repository)


@pytest.mark.asyncio
async def test_download_returns_content_and_is_audited(repository, blobs, workspace_id) -> None:
    uploader = actor("member")
    task = repository.add_task(workspace_id=workspace_id, created_by=uploader.id)
    session = await _session(repository, blobs, workspace_id, uploader)
    uploaded = await session.add_attachment(task.id, FileUpload(file_name="f.csv", content=b"a,b"))

    attachment, content = await session.download_attachment(uploaded.value.id)

    assert attachment.id == uploaded.value.id
    assert content == b"a,b"
    assert ActivityAction.FILE_DOWNLOADED in _actions(repository)
    with pytest.raises(NotFound):
        await session.download_attachment(uuid4())


# -------------------- assignments --------------------


@pytest.mark.asyncio
async def test_first_assignee_becomes_primary(repository, blobs, workspace_id) -> None:
    first, second = uuid4(), uuid4()
    repository.add_profile(first, "Ada")
    task = repository.add_task(workspace_id=workspace_id, created_by=uuid4())
    session = await _session(repository, blobs, workspace_id, actor("admin"))

    result = await session.assign_users(task.id, [first, second, first])

    assert result.state == MutationState.CONFIRMED
    held = session.store.require(task.id)
    assert held.assigned_to == first
    assert held.assigned_user_name == "Ada"
    assert session.store.assigned_users(task.id) == frozenset({first, second})
    assert repository.tasks[task.id].assigned_to == first
    [activity] = repository.activities
    assert activity.action == ActivityAction.USERS_ASSIGNED
    assert activity.details["count"] == 2

    again = await session.assign_users(task.id, [second])
    assert again.state == MutationState.UNCHANGED


@pytest.mark.asyncio
async def test_unassigning_primary_promotes_remaining_user(repository, blobs, workspace_id) -> None:
    first, second = uuid4(), uuid4()
    task = repository.add_task(workspace_id=workspace_id, created_by=uuid4(), assigned_to=first)
    repository.assign(task.id, second)
    session = await _session(repository, blobs, workspace_id, actor("admin"))

    await session.unassign_user(task.id, first)

    held = session.store.require(task.id)
    assert held.assigned_to == second
    assert session.store.assigned_users(task.id) == frozenset({second})

    await session.unassign_user(task.id, second)

    held = session.store.require(task.id)
    assert held.assigned_to is None
    assert held.assigned_user_name is None
    assert repository.tasks[task.id].assigned_to is None
    assert repository.assignments == []

    with pytest.raises(NotFound):
        await session.unassign_user(task.id, second)


@pytest.mark.asyncio
async def test_failed_assignment_is_rolled_back(repository, blobs, workspace_id) -> None:
    user_id = uuid4()
    task = repository.add_task(workspace_id=workspace_id, created_by=uuid4())
    session = await _session(repository, blobs, workspace_id, actor("admin"))
    repository.failures["insert_assignments"] = [StorageError("unknown user")]

    with pytest.raises(ConflictOnRollback):
        await session.assign_users(task.id, [user_id])

    held = session.store.require(task.id)
    assert held.assigned_to is None
    assert session.store.assigned_users(task.id) == frozenset()


@pytest.mark.asyncio
async def test_assignment_rules(repository, blobs, workspace_id) -> None:
    task = repository.add_task(workspace_id=workspace_id, created_by=uuid4())
    session = await _session(repository, blobs, workspace_id, actor("sales_admin"))

    with pytest.raises(PermissionDenied):
        await session.assign_users(task.id, [uuid4()])

    admin = await _session(repository, blobs, workspace_id, actor("admin"))
    with pytest.raises(ValidationError):
        await admin.assign_users(task.id, [])
