"""Drag gesture state machine that turns a drop into a stage move."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from taskboard.core.errors import PermissionDenied, ValidationError
from taskboard.core.logging import get_logger
from taskboard.models.tasks import TaskStatus
from taskboard.services.optimistic import MutationResult, MutationState
from taskboard.services.permissions import DENIED_MESSAGES, can_move_task

if TYPE_CHECKING:
    from uuid import UUID

    from taskboard.services.board import BoardSession

logger = get_logger(__name__)


class DragState(str, Enum):
    IDLE = "idle"
    DRAGGING = "dragging"
    DROPPED = "dropped"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class DropOutcome:
    state: DragState
    task_id: UUID | None = None
    target: TaskStatus | None = None
    result: MutationResult | None = None


class StageTransitionController:
    """One drag gesture at a time for a board session.

    ``start`` refuses to pick up a card the actor may not move. ``drop`` ignores
    targets that are not board columns and drops onto the card's own column.
    """

    def __init__(self, board: BoardSession) -> None:
        self._board = board
        self.state = DragState.IDLE
        self.task_id: UUID | None = None

    def start(self, task_id: UUID) -> None:
        if self.state == DragState.DRAGGING:
            self.cancel()
        task = self._board.store.require(task_id)
        if not can_move_task(self._board.actor, task):
            self.state = DragState.CANCELLED
            self.task_id = None
            logger.info(
                "board.drag.denied",
                extra={"task_id": str(task_id), "actor_id": str(self._board.actor.id)},
            )
            self._board.changes.notify("error", DENIED_MESSAGES["task.move"], task_id=task_id)
            raise PermissionDenied(
                DENIED_MESSAGES["task.move"],
                action="task.move",
                task_id=task_id,
            )
        self.state = DragState.DRAGGING
        self.task_id = task_id

    def cancel(self) -> DropOutcome:
        task_id = self.task_id
        self.state = DragState.CANCELLED
        self.task_id = None
        return DropOutcome(state=DragState.CANCELLED, task_id=task_id)

    async def drop(self, target: object | None) -> DropOutcome:
        """Finish the gesture over ``target`` (a stage id, or None outside any column)."""
        if self.state != DragState.DRAGGING or self.task_id is None:
            msg = "No drag in progress"
            raise ValidationError(msg, field="task_id")
        stage = TaskStatus.parse(target) if target is not None else None
        if stage is None:
            return self.cancel()

        task_id = self.task_id
        self.state = DragState.DROPPED
        self.task_id = None
        task = self._board.store.get(task_id)
        if task is None:
            return DropOutcome(state=DragState.CANCELLED, task_id=task_id)
        if task.status == stage:
            return DropOutcome(
                state=DragState.DROPPED,
                task_id=task_id,
                target=stage,
                result=MutationResult(
                    state=MutationState.UNCHANGED,
                    task_id=task_id,
                    field="status",
                ),
            )
        result = await self._board.move_task(task_id, stage)
        return DropOutcome(state=DragState.DROPPED, task_id=task_id, target=stage, result=result)
