"""httpx clients for a PostgREST-style storage service and its object store."""

from __future__ import annotations

from collections import Counter
from typing import TYPE_CHECKING, Any
from uuid import UUID

import httpx

from taskboard.core.config import settings
from taskboard.core.errors import StorageError, TransportError
from taskboard.core.logging import get_logger
from taskboard.models.activity import TaskActivity, TaskMovement
from taskboard.models.assignments import TaskAssignment
from taskboard.models.attachments import TaskAttachment
from taskboard.models.comments import TaskComment
from taskboard.models.profiles import Profile
from taskboard.models.tasks import PERSISTED_TASK_FIELDS, Task
from taskboard.services.storage import (
    ACTIVITIES_TABLE,
    ASSIGNMENTS_TABLE,
    ATTACHMENTS_TABLE,
    COMMENTS_TABLE,
    MOVEMENTS_TABLE,
    PROFILES_TABLE,
    TASKS_TABLE,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = get_logger(__name__)

# Postgres error codes surfaced by PostgREST in the `code` field.
_PG_INSUFFICIENT_PRIVILEGE = "42501"
_PG_CONSTRAINT_CODES = frozenset({"23503", "23505", "23514", "23502", "22P02"})
_PGRST_NO_ROWS = "PGRST116"

# Tables owned by a task, deleted before the task row itself.
_TASK_CHILD_TABLES: tuple[str, ...] = (
    COMMENTS_TABLE,
    ATTACHMENTS_TABLE,
    ACTIVITIES_TABLE,
    MOVEMENTS_TABLE,
    ASSIGNMENTS_TABLE,
)


def _in_filter(values: Sequence[UUID]) -> str:
    return f"in.({','.join(str(value) for value in values)})"


def _error_body(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {"message": response.text[:300]}
    return body if isinstance(body, dict) else {"message": str(body)[:300]}


def storage_error_for(response: httpx.Response, *, table: str) -> StorageError:
    """Map an unsuccessful storage response onto the typed failure taxonomy."""
    body = _error_body(response)
    pg_code = str(body.get("code") or "")
    message = str(body.get("message") or f"{table} request failed")
    status_code = response.status_code

    if status_code >= 500 or status_code == 429:
        return TransportError(message, status_code=status_code)
    if status_code in {401, 403} or pg_code == _PG_INSUFFICIENT_PRIVILEGE:
        return StorageError(
            message,
            code=StorageError.PERMISSION_DENIED,
            status_code=status_code,
        )
    if status_code == 404 or pg_code == _PGRST_NO_ROWS:
        return StorageError(message, code=StorageError.NOT_FOUND, status_code=status_code)
    if status_code == 409 or pg_code in _PG_CONSTRAINT_CODES:
        return StorageError(
            message,
            code=StorageError.CONSTRAINT_VIOLATION,
            status_code=status_code,
        )
    return StorageError(message, code=StorageError.CONSTRAINT_VIOLATION, status_code=status_code)


class PostgrestRepository:
    """``BoardRepository`` backed by PostgREST table endpoints."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        schema: str | None = None,
        timeout: float | None = None,
    ) -> None:
        key = settings.storage_api_key if api_key is None else api_key
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=f"{base_url or settings.storage_url}/rest/v1",
            timeout=timeout or settings.mutation_timeout_seconds,
        )
        self._headers = {
            "apikey": key,
            "Authorization": f"Bearer {key}",
            "Accept-Profile": schema or settings.storage_schema,
            "Content-Profile": schema or settings.storage_schema,
        }

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(
        self,
        method: str,
        table: str,
        *,
        params: dict[str, str] | None = None,
        json: object | None = None,
        returning: bool = False,
    ) -> list[dict[str, Any]]:
        headers = dict(self._headers)
        if returning:
            headers["Prefer"] = "return=representation"
        try:
            response = await self._client.request(
                method,
                f"/{table}",
                params=params,
                json=json,
                headers=headers,
            )
        except httpx.TimeoutException as exc:
            logger.warning(
                "storage.request.timeout",
                extra={"table": table, "method": method, "error": str(exc)},
            )
            raise TransportError(f"{table} request timed out") from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "storage.request.transport_failed",
                extra={"table": table, "method": method, "error": str(exc)},
            )
            raise TransportError(f"{table} request failed: {exc}") from exc

        if response.is_error:
            error = storage_error_for(response, table=table)
            logger.warning(
                "storage.request.rejected",
                extra={
                    "table": table,
                    "method": method,
                    "status_code": response.status_code,
                    "code": error.code,
                },
            )
            raise error
        if not response.content:
            return []
        rows = response.json()
        if isinstance(rows, dict):
            return [rows]
        return list(rows)

    async def _insert_one(self, table: str, values: dict[str, Any]) -> dict[str, Any]:
        rows = await self._request("POST", table, json=values, returning=True)
        if not rows:
            raise StorageError(f"{table} insert returned no row", code=StorageError.NOT_FOUND)
        return rows[0]

    async def fetch_tasks(self, workspace_id: UUID) -> list[Task]:
        rows = await self._request(
            "GET",
            TASKS_TABLE,
            params={
                "select": "*",
                "workspace_id": f"eq.{workspace_id}",
                "order": "created_at.desc",
            },
        )
        return [Task.model_validate(row) for row in rows]

    async def count_by_task(self, table: str, task_ids: Sequence[UUID]) -> dict[UUID, int]:
        if not task_ids:
            return {}
        rows = await self._request(
            "GET",
            table,
            params={"select": "task_id", "task_id": _in_filter(task_ids)},
        )
        counts = Counter(UUID(str(row["task_id"])) for row in rows)
        return {task_id: counts.get(task_id, 0) for task_id in task_ids}

    async def fetch_assignments(self, task_ids: Sequence[UUID]) -> list[TaskAssignment]:
        if not task_ids:
            return []
        rows = await self._request(
            "GET",
            ASSIGNMENTS_TABLE,
            params={"select": "*", "task_id": _in_filter(task_ids)},
        )
        return [TaskAssignment.model_validate(row) for row in rows]

    async def fetch_comments(self, task_id: UUID) -> list[TaskComment]:
        rows = await self._request(
            "GET",
            COMMENTS_TABLE,
            params={"select": "*", "task_id": f"eq.{task_id}", "order": "created_at.asc"},
        )
        return [TaskComment.model_validate(row) for row in rows]

    async def fetch_attachments(self, task_id: UUID) -> list[TaskAttachment]:
        rows = await self._request(
            "GET",
            ATTACHMENTS_TABLE,
            params={"select": "*", "task_id": f"eq.{task_id}", "order": "created_at.desc"},
        )
        return [TaskAttachment.model_validate(row) for row in rows]

    async def fetch_activities(self, task_id: UUID, *, limit: int) -> list[TaskActivity]:
        rows = await self._request(
            "GET",
            ACTIVITIES_TABLE,
            params={
                "select": "*",
                "task_id": f"eq.{task_id}",
                "order": "created_at.desc",
                "limit": str(limit),
            },
        )
        return [TaskActivity.model_validate(row) for row in rows]

    async def fetch_movements(self, task_id: UUID, *, limit: int) -> list[TaskMovement]:
        rows = await self._request(
            "GET",
            MOVEMENTS_TABLE,
            params={
                "select": "*",
                "task_id": f"eq.{task_id}",
                "order": "created_at.desc",
                "limit": str(limit),
            },
        )
        return [TaskMovement.model_validate(row) for row in rows]

    async def fetch_profiles(self, user_ids: Sequence[UUID]) -> list[Profile]:
        if not user_ids:
            return []
        rows = await self._request(
            "GET",
            PROFILES_TABLE,
            params={"select": "id,name,email,role", "id": _in_filter(user_ids)},
        )
        return [Profile.model_validate(row) for row in rows]

    async def insert_task(self, task: Task) -> Task:
        row = await self._insert_one(TASKS_TABLE, task.persisted_values())
        return Task.model_validate(row)

    async def update_task(self, task_id: UUID, values: dict[str, Any]) -> Task:
        unknown = set(values) - set(PERSISTED_TASK_FIELDS)
        if unknown:
            msg = f"Not task columns: {', '.join(sorted(unknown))}"
            raise ValueError(msg)
        rows = await self._request(
            "PATCH",
            TASKS_TABLE,
            params={"id": f"eq.{task_id}"},
            json=values,
            returning=True,
        )
        if not rows:
            raise StorageError(
                "Task not found",
                code=StorageError.NOT_FOUND,
                task_id=task_id,
            )
        return Task.model_validate(rows[0])

    async def delete_task(self, task_id: UUID) -> None:
        for table in _TASK_CHILD_TABLES:
            await self._request("DELETE", table, params={"task_id": f"eq.{task_id}"})
        await self._request("DELETE", TASKS_TABLE, params={"id": f"eq.{task_id}"})

    async def insert_comment(self, comment: TaskComment) -> TaskComment:
        row = await self._insert_one(COMMENTS_TABLE, comment.persisted_values())
        return TaskComment.model_validate(row)

    async def insert_attachment(self, attachment: TaskAttachment) -> TaskAttachment:
        row = await self._insert_one(ATTACHMENTS_TABLE, attachment.persisted_values())
        return TaskAttachment.model_validate(row)

    async def delete_attachment(self, attachment_id: UUID) -> None:
        await self._request("DELETE", ATTACHMENTS_TABLE, params={"id": f"eq.{attachment_id}"})

    async def insert_activity(self, activity: TaskActivity) -> TaskActivity:
        row = await self._insert_one(ACTIVITIES_TABLE, activity.persisted_values())
        return TaskActivity.model_validate(row)

    async def insert_movement(self, movement: TaskMovement) -> TaskMovement:
        row = await self._insert_one(MOVEMENTS_TABLE, movement.persisted_values())
        return TaskMovement.model_validate(row)

    async def insert_assignments(
        self,
        assignments: Sequence[TaskAssignment],
    ) -> list[TaskAssignment]:
        if not assignments:
            return []
        rows = await self._request(
            "POST",
            ASSIGNMENTS_TABLE,
            json=[assignment.persisted_values() for assignment in assignments],
            returning=True,
        )
        return [TaskAssignment.model_validate(row) for row in rows]

    async def delete_assignment(self, task_id: UUID, user_id: UUID) -> None:
        await self._request(
            "DELETE",
            ASSIGNMENTS_TABLE,
            params={"task_id": f"eq.{task_id}", "user_id": f"eq.{user_id}"},
        )


class ObjectStorageClient:
    """``BlobStore`` backed by a bucket on the storage service object API."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        bucket: str | None = None,
        timeout: float | None = None,
    ) -> None:
        key = settings.storage_api_key if api_key is None else api_key
        self._bucket = bucket or settings.attachments_bucket
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=f"{base_url or settings.storage_url}/storage/v1",
            timeout=timeout or settings.mutation_timeout_seconds,
        )
        self._headers = {"apikey": key, "Authorization": f"Bearer {key}"}

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        headers = {**self._headers, **kwargs.pop("headers", {})}
        try:
            response = await self._client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise TransportError(f"object storage request failed: {exc}") from exc
        if response.is_error:
            raise storage_error_for(response, table=self._bucket)
        return response

    async def upload(self, path: str, content: bytes, *, content_type: str) -> None:
        await self._send(
            "POST",
            f"/object/{self._bucket}/{path}",
            content=content,
            headers={"Content-Type": content_type},
        )

    async def download(self, path: str) -> bytes:
        response = await self._send("GET", f"/object/{self._bucket}/{path}")
        return response.content

    async def remove(self, paths: Sequence[str]) -> None:
        if not paths:
            return
        await self._send("DELETE", f"/object/{self._bucket}", json={"prefixes": list(paths)})
