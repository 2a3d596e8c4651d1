"""Change and notification fan-out from the board projection to its viewers."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID

from taskboard.core.logging import get_logger
from taskboard.core.time import utcnow

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

logger = get_logger(__name__)
_STREAM_BUFFER = 256


class ChangeKind(str, Enum):
    TASK_LIST = "task_list"
    TASK_DETAIL = "task_detail"
    NOTIFICATION = "notification"


@dataclass(frozen=True)
class BoardNotification:
    """Toast-style message for the presentation layer."""

    level: str
    message: str
    task_id: UUID | None = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class BoardChange:
    kind: ChangeKind
    task_id: UUID | None = None
    notification: BoardNotification | None = None

    def to_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {"kind": self.kind.value}
        if self.task_id is not None:
            payload["task_id"] = str(self.task_id)
        if self.notification is not None:
            payload["level"] = self.notification.level
            payload["message"] = self.notification.message
            payload["created_at"] = self.notification.created_at.isoformat()
        return payload


class ChangeBroadcaster:
    """Synchronous listener registry plus buffered async streams."""

    def __init__(self) -> None:
        self._listeners: list[Callable[[BoardChange], None]] = []

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def subscribe(self, listener: Callable[[BoardChange], None]) -> Callable[[], None]:
        """Register ``listener`` and return a callable that removes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def publish(self, change: BoardChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                logger.exception(
                    "board.changes.listener_failed",
                    extra={"kind": change.kind.value},
                )

    def task_list_changed(self, task_id: UUID | None = None) -> None:
        self.publish(BoardChange(kind=ChangeKind.TASK_LIST, task_id=task_id))

    def task_detail_changed(self, task_id: UUID) -> None:
        self.publish(BoardChange(kind=ChangeKind.TASK_DETAIL, task_id=task_id))

    def notify(self, level: str, message: str, *, task_id: UUID | None = None) -> None:
        notification = BoardNotification(level=level, message=message, task_id=task_id)
        self.publish(
            BoardChange(
                kind=ChangeKind.NOTIFICATION,
                task_id=task_id,
                notification=notification,
            ),
        )

    async def stream(self) -> AsyncIterator[BoardChange]:
        """Yield changes as they are published until the consumer stops iterating.

        A slow consumer loses the oldest buffered changes, never blocks publishers.
        """
        queue: asyncio.Queue[BoardChange] = asyncio.Queue(maxsize=_STREAM_BUFFER)

        def _enqueue(change: BoardChange) -> None:
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(change)

        unsubscribe = self.subscribe(_enqueue)
        try:
            while True:
                yield await queue.get()
        finally:
            unsubscribe()
