"""Identity facts consumed from the identity provider and profile service."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from uuid import UUID

from sqlmodel import SQLModel


class Role(str, Enum):
    """Workspace roles recognized by the permission evaluator."""

    ADMIN = "admin"
    SALES_ADMIN = "sales_admin"
    MEMBER = "member"
    CLIENT = "client"


@dataclass(frozen=True)
class Actor:
    """The signed-in user acting on a board; read-only for the engine."""

    id: UUID
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


class Profile(SQLModel):
    """Display data for a user id."""

    id: UUID
    name: str | None = None
    email: str | None = None
    role: str | None = None

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        if self.email:
            local_part = self.email.split("@", 1)[0]
            if local_part:
                return local_part
        return "User"
