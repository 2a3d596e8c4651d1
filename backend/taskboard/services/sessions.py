"""Per (workspace, actor) board sessions shared by the HTTP surface."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from taskboard.core.logging import get_logger
from taskboard.services.board import BoardSession

if TYPE_CHECKING:
    from collections.abc import Callable
    from uuid import UUID

    from taskboard.models.profiles import Actor
    from taskboard.services.realtime import RealtimeSource
    from taskboard.services.storage import BlobStore, BoardRepository

logger = get_logger(__name__)


class BoardSessionRegistry:
    """Open sessions lazily and keep them until the application shuts down.

    ``source_factory`` builds the push subscription for a new session; without
    one, sessions only see their own mutations and explicit reloads.
    """

    def __init__(
        self,
        repository: BoardRepository,
        blobs: BlobStore,
        *,
        source_factory: Callable[[UUID], RealtimeSource] | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self.repository = repository
        self.blobs = blobs
        self._source_factory = source_factory
        self._timeout = timeout_seconds
        self._sessions: dict[tuple[UUID, UUID, str], BoardSession] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    async def get(self, workspace_id: UUID, actor: Actor) -> BoardSession:
        key = (workspace_id, actor.id, actor.role)
        session = self._sessions.get(key)
        if session is not None:
            return session
        async with self._lock:
            session = self._sessions.get(key)
            if session is not None:
                return session
            session = BoardSession(
                self.repository,
                self.blobs,
                workspace_id=workspace_id,
                actor=actor,
                timeout_seconds=self._timeout,
            )
            source = self._source_factory(workspace_id) if self._source_factory else None
            await session.open(source)
            self._sessions[key] = session
        logger.info(
            "board.session.opened",
            extra={"workspace_id": str(workspace_id), "actor_id": str(actor.id)},
        )
        return session

    async def close(self) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            await session.close()
        logger.info("board.session.closed_all", extra={"session_count": len(sessions)})
