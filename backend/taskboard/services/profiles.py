"""Display-name lookups against the profile service with placeholder fallback."""

from __future__ import annotations

from typing import TYPE_CHECKING

from taskboard.core.errors import StorageError
from taskboard.core.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Iterable
    from uuid import UUID

    from taskboard.services.storage import BoardRepository

logger = get_logger(__name__)

USER_PLACEHOLDER = "User"
SYSTEM_NAME = "System"
UNASSIGNED_NAME = "Unassigned"


class ProfileDirectory:
    """Resolve user ids to display names, caching successful lookups.

    A failed lookup degrades to ``"User"`` and is retried on the next call.
    """

    def __init__(self, repository: BoardRepository) -> None:
        self._repository = repository
        self._names: dict[UUID, str] = {}

    def remember(self, user_id: UUID, name: str) -> None:
        self._names[user_id] = name

    def cached(self, user_id: UUID) -> str | None:
        return self._names.get(user_id)

    async def display_names(self, user_ids: Iterable[UUID | None]) -> dict[UUID, str]:
        wanted = {user_id for user_id in user_ids if user_id is not None}
        missing = sorted(wanted - self._names.keys(), key=str)
        if missing:
            try:
                profiles = await self._repository.fetch_profiles(missing)
            except StorageError as exc:
                logger.warning(
                    "profiles.lookup_failed",
                    extra={"user_count": len(missing), "error": str(exc)},
                )
            else:
                for profile in profiles:
                    self._names[profile.id] = profile.display_name
        return {user_id: self._names.get(user_id, USER_PLACEHOLDER) for user_id in wanted}

    async def display_name(self, user_id: UUID | None, *, missing: str = SYSTEM_NAME) -> str:
        """Return the name for ``user_id``; ``missing`` is used when there is no user."""
        if user_id is None:
            return missing
        names = await self.display_names([user_id])
        return names.get(user_id, USER_PLACEHOLDER)
