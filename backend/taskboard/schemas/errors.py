"""Structured error payload schema used by API responses."""

from __future__ import annotations

from pydantic import Field
from sqlmodel import SQLModel


class ErrorResponse(SQLModel):
    """Error body returned by every handler in ``taskboard.core.error_handling``."""

    detail: str | dict[str, object] | list[object] = Field(
        description="Human-readable message, or the list of request validation errors.",
        examples=["Only admins can delete tasks"],
    )
    code: str | None = Field(
        default=None,
        description="Machine-readable error code.",
        examples=["permission_denied", "conflict_on_rollback", "transport_error"],
    )
    retryable: bool | None = Field(
        default=None,
        description="Whether retrying the same call may succeed.",
    )
    request_id: str | None = Field(
        default=None,
        description="Request correlation identifier injected by middleware.",
    )


class HealthStatusResponse(SQLModel):
    """Standard payload for service liveness checks."""

    ok: bool = Field(
        description="Indicates whether the probe check succeeded.",
        examples=[True],
    )
