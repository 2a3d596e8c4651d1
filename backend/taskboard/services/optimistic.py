"""Optimistic mutation pipeline: apply locally, persist, then confirm or roll back.

Each (task_id, field) pair moves through ``idle -> pending -> confirmed |
rolled_back -> idle``. A newer request for the same pair supersedes an older one:
the older response is discarded, and a rollback always restores the last value
storage is known to hold rather than an intermediate optimistic value.
"""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from pydantic_core import to_jsonable_python

from taskboard.core.config import settings
from taskboard.core.errors import ConflictOnRollback, StorageError, TransportError
from taskboard.core.logging import get_logger
from taskboard.core.time import bump_after

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from datetime import datetime
    from uuid import UUID

    from taskboard.services.store import TaskStore

logger = get_logger(__name__)

T = TypeVar("T")


class MutationState(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"
    # Storage accepted the write but a newer request for the same field had started.
    SUPERSEDED = "superseded"
    # The request failed after a newer request for the same field had started.
    DISCARDED = "discarded"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class Mutation(Generic[T]):
    """One optimistic change.

    ``apply`` runs while the store write lock is held and returns a closure that
    restores the exact prior value. ``remote`` issues the persistence request.
    ``current`` optionally reads the field before ``apply`` so the result can
    report the value storage held before this write.
    """

    task_id: UUID
    field: str
    apply: Callable[[], Callable[[], None]]
    remote: Callable[[], Awaitable[T]]
    current: Callable[[], Any] | None = None


@dataclass(frozen=True)
class MutationResult(Generic[T]):
    state: MutationState
    task_id: UUID | None = None
    field: str = ""
    value: T | None = None
    # Value storage held for the field immediately before this write landed.
    previous: Any = None

    @property
    def persisted(self) -> bool:
        """True when storage accepted the write."""
        return self.state in {MutationState.CONFIRMED, MutationState.SUPERSEDED}


@dataclass
class _Slot:
    latest: int
    rollback: Callable[[], None]
    undos: dict[int, Callable[[], None]] = field(default_factory=dict)
    # Field value storage is known to hold, and each request's pre-apply value.
    stored: Any = None
    priors: dict[int, Any] = field(default_factory=dict)

    def next_after(self, token: int) -> int | None:
        newer = [candidate for candidate in self.undos if candidate > token]
        return min(newer) if newer else None


class OptimisticPipeline:
    """Runs mutations against one ``TaskStore`` with per-field pending slots."""

    def __init__(self, store: TaskStore, *, timeout_seconds: float | None = None) -> None:
        self._store = store
        self._timeout = timeout_seconds or settings.mutation_timeout_seconds
        self._slots: dict[tuple[UUID, str], _Slot] = {}
        self._tokens = itertools.count(1)

    def state(self, task_id: UUID, field_name: str) -> MutationState:
        if (task_id, field_name) in self._slots:
            return MutationState.PENDING
        return MutationState.IDLE

    @property
    def pending_count(self) -> int:
        return len(self._slots)

    async def run(self, mutation: Mutation[T]) -> MutationResult[T]:
        """Apply ``mutation`` optimistically and persist it.

        Raises ``TransportError`` (unreachable or timed out) or
        ``ConflictOnRollback`` (rejected by storage) after rolling back.
        """
        key = (mutation.task_id, mutation.field)
        async with self._store.writing():
            prior = mutation.current() if mutation.current is not None else None
            undo = mutation.apply()
            token = next(self._tokens)
            slot = self._slots.get(key)
            if slot is None:
                slot = _Slot(latest=token, rollback=undo, stored=prior)
                self._slots[key] = slot
            else:
                slot.latest = token
            slot.undos[token] = undo
            slot.priors[token] = prior
        logger.debug(
            "optimistic.pending",
            extra={"task_id": str(mutation.task_id), "field": mutation.field, "token": token},
        )

        failure: StorageError | None = None
        value: T | None = None
        try:
            value = await asyncio.wait_for(mutation.remote(), timeout=self._timeout)
        except TimeoutError:
            failure = TransportError(
                f"Saving {mutation.field} timed out",
                task_id=mutation.task_id,
            )
        except StorageError as exc:
            failure = exc

        previous: Any = None
        async with self._store.writing():
            superseded = slot.latest != token
            active = self._slots.get(key) is slot
            if failure is None:
                previous = slot.stored
                if superseded:
                    # Storage now holds this request's value; later rollbacks stop here.
                    newer = slot.next_after(token)
                    if active and newer is not None:
                        slot.rollback = slot.undos[newer]
                        slot.stored = slot.priors[newer]
                    state = MutationState.SUPERSEDED
                else:
                    self._slots.pop(key, None)
                    state = MutationState.CONFIRMED
            elif superseded:
                state = MutationState.DISCARDED
            else:
                slot.rollback()
                self._slots.pop(key, None)
                state = MutationState.ROLLED_BACK
            slot.undos.pop(token, None)
            slot.priors.pop(token, None)

        log_extra = {
            "task_id": str(mutation.task_id),
            "field": mutation.field,
            "token": token,
            "state": state.value,
        }
        if failure is not None and state == MutationState.ROLLED_BACK:
            logger.warning("optimistic.rolled_back", extra={**log_extra, "error": str(failure)})
            if isinstance(failure, TransportError):
                raise failure
            raise ConflictOnRollback(
                f"Saving {mutation.field} was rejected: {failure.message}",
                cause=failure,
                task_id=mutation.task_id,
            ) from failure
        if state in {MutationState.SUPERSEDED, MutationState.DISCARDED}:
            logger.info("optimistic.discarded_response", extra=log_extra)
        else:
            logger.debug("optimistic.confirmed", extra=log_extra)
        return MutationResult(
            state=state,
            task_id=mutation.task_id,
            field=mutation.field,
            value=value,
            previous=previous,
        )


class FieldPatch:
    """Optimistic replacement of task columns that also bumps ``updated_at``.

    ``remote_values`` is only available after ``apply`` has run, because the new
    ``updated_at`` is derived from the value held at apply time.
    """

    def __init__(
        self,
        store: TaskStore,
        task_id: UUID,
        values: dict[str, Any],
        *,
        derived: dict[str, Any] | None = None,
    ) -> None:
        self._store = store
        self._task_id = task_id
        self._values = dict(values)
        # Projection-only fields updated and restored together with ``values``.
        self._derived = dict(derived or {})
        self._stamp: datetime | None = None

    @property
    def stamp(self) -> datetime:
        if self._stamp is None:
            msg = "FieldPatch.apply() has not run"
            raise RuntimeError(msg)
        return self._stamp

    @property
    def remote_values(self) -> dict[str, Any]:
        return to_jsonable_python({**self._values, "updated_at": self.stamp})

    def apply(self) -> Callable[[], None]:
        task = self._store.require(self._task_id)
        changed = {**self._values, **self._derived}
        previous = {name: getattr(task, name) for name in changed}
        previous_updated_at = task.updated_at
        revision = self._store.revision(self._task_id)
        stamp = bump_after(previous_updated_at)
        self._stamp = stamp
        self._store.patch(self._task_id, **changed, updated_at=stamp)

        def _undo() -> None:
            current = self._store.get(self._task_id)
            # A newer storage row replaced the record; its values stand.
            if current is None or self._store.revision(self._task_id) != revision:
                return
            restore = dict(previous)
            # Leave updated_at alone if another change has bumped it since.
            if current.updated_at == stamp:
                restore["updated_at"] = previous_updated_at
            self._store.patch(self._task_id, **restore)

        return _undo
