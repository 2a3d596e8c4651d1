# ruff: noqa

from __future__ import annotations

from uuid import uuid4

import pytest

from fakes import actor
from taskboard.core.errors import PermissionDenied, ValidationError
from taskboard.models.tasks import TaskStatus
from taskboard.services.board import BoardSession
from taskboard.services.changes import ChangeKind
from taskboard.services.drag import DragState
from taskboard.services.optimistic import MutationState


async def _board(repository, blobs, workspace_id, who=None):
    who = who or actor("member")
    task = repository.add_task(workspace_id=workspace_id, created_by=who.id)
    session = BoardSession(repository, blobs, workspace_id=workspace_id, actor=who)
    await session.open()
    return session, task


@pytest.mark.asyncio
async def test_drop_on_other_stage_moves_task(repository, blobs, workspace_id) -> None:
    session, task = await _board(repository, blobs, workspace_id)
    drag = session.drag()

    drag.start(task.id)
    assert drag.state == DragState.DRAGGING
    outcome = await drag.drop("in_progress")

    assert outcome.state == DragState.DROPPED
    assert outcome.target == TaskStatus.IN_PROGRESS
    assert outcome.result.state == MutationState.CONFIRMED
    assert session.store.require(task.id).status == TaskStatus.IN_PROGRESS
    assert len(repository.movements) == 1


@pytest.mark.asyncio
async def test_drop_on_same_stage_changes_nothing(repository, blobs, workspace_id) -> None:
    session, task = await _board(repository, blobs, workspace_id)
    drag = session.drag()

    drag.start(task.id)
    outcome = await drag.drop(TaskStatus.PLANNING)

    assert outcome.state == DragState.DROPPED
    assert outcome.result.state == MutationState.UNCHANGED
    assert repository.count("update_task") == 0
    assert repository.movements == []


@pytest.mark.asyncio
@pytest.mark.parametrize("target", [None, "backlog", 42])
async def test_drop_outside_a_column_cancels(repository, blobs, workspace_id, target) -> None:
    session, task = await _board(repository, blobs, workspace_id)
    drag = session.drag()

    drag.start(task.id)
    outcome = await drag.drop(target)

    assert outcome.state == DragState.CANCELLED
    assert outcome.task_id == task.id
    assert drag.state == DragState.CANCELLED
    assert session.store.require(task.id).status == TaskStatus.PLANNING


@pytest.mark.asyncio
async def test_start_refuses_cards_the_actor_cannot_move(repository, blobs, workspace_id) -> None:
    session, _ = await _board(repository, blobs, workspace_id)
    other = repository.add_task(workspace_id=workspace_id, created_by=uuid4())
    await session.store.load()
    seen = []
    session.subscribe(seen.append)
    drag = session.drag()

    with pytest.raises(PermissionDenied):
        drag.start(other.id)

    assert drag.state == DragState.CANCELLED
    assert drag.task_id is None
    assert [change.notification.level for change in seen if change.kind == ChangeKind.NOTIFICATION] == [
        "error",
    ]


@pytest.mark.asyncio
async def test_drop_without_drag_is_rejected(repository, blobs, workspace_id) -> None:
    session, _ = await _board(repository, blobs, workspace_id)

    with pytest.raises(ValidationError):
        await session.drag().drop("completed")


@pytest.mark.asyncio
async def test_cancel_resets_gesture(repository, blobs, workspace_id) -> None:
    session, task = await _board(repository, blobs, workspace_id)
    drag = session.drag()
    drag.start(task.id)

    outcome = drag.cancel()

    assert outcome.state == DragState.CANCELLED
    assert outcome.task_id == task.id
    with pytest.raises(ValidationError):
        await drag.drop("completed")
