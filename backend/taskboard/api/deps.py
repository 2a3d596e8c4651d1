"""Reusable FastAPI dependencies for the acting user and their board session.

The identity provider sits in front of this service; it forwards the signed-in
user as ``X-User-Id`` and ``X-User-Role``. Permission checks themselves live in
``taskboard.services.permissions`` and run inside the board session.
"""

from __future__ import annotations

from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request, status

from taskboard.models.profiles import Actor, Role
from taskboard.services.board import BoardSession
from taskboard.services.sessions import BoardSessionRegistry

USER_ID_HEADER = "X-User-Id"
USER_ROLE_HEADER = "X-User-Role"


def get_actor(
    x_user_id: str | None = Header(default=None, alias=USER_ID_HEADER),
    x_user_role: str | None = Header(default=None, alias=USER_ROLE_HEADER),
) -> Actor:
    """Resolve the acting user from identity headers."""
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)
    try:
        actor_id = UUID(x_user_id.strip())
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid user id",
        ) from exc
    return Actor(id=actor_id, role=(x_user_role or "").strip().lower() or Role.MEMBER.value)


def get_registry(request: Request) -> BoardSessionRegistry:
    registry = getattr(request.app.state, "sessions", None)
    if registry is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Board sessions are not configured",
        )
    return registry


ACTOR_DEP = Depends(get_actor)
REGISTRY_DEP = Depends(get_registry)


async def get_board(
    workspace_id: UUID,
    actor: Actor = ACTOR_DEP,
    registry: BoardSessionRegistry = REGISTRY_DEP,
) -> BoardSession:
    """Return the loaded board session for the caller in ``workspace_id``."""
    return await registry.get(workspace_id, actor)


BOARD_DEP = Depends(get_board)
