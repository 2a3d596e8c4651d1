"""Time helpers shared by models and services."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

_MIN_TICK = timedelta(microseconds=1)


def utcnow() -> datetime:
    """Return the current timezone-aware UTC timestamp."""
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Read a timestamp without a zone as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def bump_after(previous: datetime | None) -> datetime:
    """Return a timestamp strictly later than ``previous``.

    Local clocks can repeat values for back-to-back mutations, and an
    ``updated_at`` bump must always move forward.
    """
    now = utcnow()
    if previous is None:
        return now
    previous = as_utc(previous)
    return now if now > previous else previous + _MIN_TICK
