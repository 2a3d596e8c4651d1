# ruff: noqa

from __future__ import annotations

from uuid import uuid4

import pytest

from taskboard.core.errors import StorageError
from taskboard.models.activity import ActivityAction, TaskActivity
from taskboard.models.tasks import TaskStatus
from taskboard.services import audit
from taskboard.services.audit import ActivityRecorder, describe_activity
from taskboard.services.store import TaskStore


async def _recorder(repository, workspace_id):
    task = repository.add_task(workspace_id=workspace_id, created_by=uuid4())
    store = TaskStore(repository, workspace_id=workspace_id)
    await store.load()
    await store.load_detail(task.id)
    return task, store, ActivityRecorder(repository, store)


@pytest.mark.asyncio
async def test_record_activity_appends_to_storage_and_feed(repository, workspace_id) -> None:
    actor_id = uuid4()
    repository.add_profile(actor_id, "Riley")
    task, store, recorder = await _recorder(repository, workspace_id)

    stored = await recorder.record_activity(
        task.id,
        actor_id,
        ActivityAction.TITLE_UPDATED,
        {"field": "title"},
        old_value="Old",
        new_value="New",
    )

    assert stored is not None
    assert stored.user_name == "Riley"
    assert [row.id for row in repository.activities] == [stored.id]
    assert [entry.id for entry in store.activities(task.id)] == [stored.id]


@pytest.mark.asyncio
async def test_record_failure_is_logged_and_returns_none(
    repository,
    workspace_id,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    warnings: list[str] = []
    monkeypatch.setattr(
        audit.logger,
        "warning",
        lambda message, *args, **kwargs: warnings.append(message),
    )
    task, store, recorder = await _recorder(repository, workspace_id)
    repository.always_fail["insert_activity"] = StorageError("rls")
    repository.always_fail["insert_movement"] = StorageError("rls")

    activity = await recorder.record_activity(task.id, uuid4(), ActivityAction.COMMENT_ADDED)
    movement = await recorder.record_movement(
        task.id,
        TaskStatus.PLANNING,
        TaskStatus.COMPLETED,
        uuid4(),
        workspace_id,
    )

    assert activity is None
    assert movement is None
    assert warnings == ["audit.activity.record_failed", "audit.movement.record_failed"]
    assert store.activities(task.id) == []


@pytest.mark.asyncio
async def test_record_movement_updates_card_history(repository, workspace_id) -> None:
    task, store, recorder = await _recorder(repository, workspace_id)

    movement = await recorder.record_movement(
        task.id,
        TaskStatus.PLANNING,
        TaskStatus.AT_RISK,
        None,
        workspace_id,
    )

    assert movement is not None
    assert movement.moved_by_name == "System"
    assert [item.id for item in store.recent_movements(task.id)] == [movement.id]
    [entry] = store.activities(task.id)
    assert describe_activity(entry) == "Moved task from Planning to At Risk"


@pytest.mark.parametrize(
    ("action", "details", "expected"),
    [
        (ActivityAction.TITLE_UPDATED, {}, "Title changed"),
        (ActivityAction.DESCRIPTION_UPDATED, {}, "Description updated"),
        (ActivityAction.FILE_UPLOADED, {"file_name": "plan.pdf"}, "Uploaded file: plan.pdf"),
        (ActivityAction.FILE_DELETED, {}, "Deleted file: File"),
        (ActivityAction.COMMENT_ADDED, {}, "Added a comment"),
        (ActivityAction.USERS_ASSIGNED, {"count": 1}, "Assigned 1 user"),
        (ActivityAction.USERS_ASSIGNED, {"user_ids": ["a", "b"]}, "Assigned 2 users"),
        (ActivityAction.USER_REMOVED, {}, "Removed a user from this task"),
    ],
)
def test_describe_activity(action, details, expected) -> None:
    activity = TaskActivity(task_id=uuid4(), action=action, details=details)

    assert describe_activity(activity) == expected
