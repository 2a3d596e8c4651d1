"""Task board routes: listing, moves, edits, comments, files, and live events."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING
from uuid import UUID

from fastapi import APIRouter, File, HTTPException, Query, Request, Response, UploadFile, status
from sse_starlette.sse import EventSourceResponse

from taskboard.api.deps import BOARD_DEP
from taskboard.core.config import settings
from taskboard.schemas.errors import ErrorResponse
from taskboard.schemas.tasks import (
    AssigneesAdd,
    AttachmentRead,
    BoardStatsRead,
    CommentCreate,
    MutationRead,
    RecentActivityRead,
    TaskCreate,
    TaskDescriptionUpdate,
    TaskDetailRead,
    TaskMove,
    TaskRead,
    TaskTitleUpdate,
)
from taskboard.services.board import BoardSession, FileUpload

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

router = APIRouter(prefix="/api/v1/workspaces/{workspace_id}", tags=["tasks"])

STAGE_QUERY = Query(default=None, description="Limit results to one workflow stage.")
SEARCH_QUERY = Query(
    default="",
    alias="q",
    description="Case-insensitive title/description filter.",
)
FILE_UPLOAD = File(...)
ERROR_RESPONSES: dict[int | str, dict[str, object]] = {
    status.HTTP_403_FORBIDDEN: {"model": ErrorResponse},
    status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
    status.HTTP_409_CONFLICT: {"model": ErrorResponse},
    422: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


@router.get("/tasks", response_model=list[TaskRead])
async def list_tasks(
    board: BoardSession = BOARD_DEP,
    stage: str | None = STAGE_QUERY,
    query: str = SEARCH_QUERY,
) -> list[TaskRead]:
    """List tasks newest first, optionally for one stage."""
    if stage is not None:
        tasks = board.get_tasks_for_stage(stage, query=query)
    else:
        tasks = board.tasks(query=query)
    return [TaskRead.from_store(task, board.store) for task in tasks]


@router.get("/stats", response_model=BoardStatsRead)
async def get_stats(board: BoardSession = BOARD_DEP) -> BoardStatsRead:
    return BoardStatsRead.from_stats(board.stats())


@router.get("/recent-activity", response_model=list[RecentActivityRead])
async def list_recent_activity(board: BoardSession = BOARD_DEP) -> list[RecentActivityRead]:
    """Moves made by other users since the board was opened."""
    return [RecentActivityRead.from_item(item) for item in board.store.recent_activity()]


@router.delete("/recent-activity", status_code=status.HTTP_204_NO_CONTENT)
async def clear_recent_activity(board: BoardSession = BOARD_DEP) -> Response:
    board.store.clear_recent_activity()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/tasks",
    response_model=MutationRead,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
)
async def create_task(payload: TaskCreate, board: BoardSession = BOARD_DEP) -> MutationRead:
    result = await board.create_task(
        payload.title,
        description=payload.description,
        status=payload.status,
        priority=payload.priority,
        due_date=payload.due_date,
        assigned_to=payload.assigned_to,
    )
    return MutationRead.from_result(result, board.store)


@router.get("/tasks/{task_id}", response_model=TaskDetailRead, responses=ERROR_RESPONSES)
async def get_task(task_id: UUID, board: BoardSession = BOARD_DEP) -> TaskDetailRead:
    await board.open_task(task_id)
    return TaskDetailRead.from_store(task_id, board.store)


@router.delete("/tasks/{task_id}", response_model=MutationRead, responses=ERROR_RESPONSES)
async def delete_task(task_id: UUID, board: BoardSession = BOARD_DEP) -> MutationRead:
    result = await board.delete_task(task_id)
    return MutationRead.from_result(result, board.store)


@router.post("/tasks/{task_id}/move", response_model=MutationRead, responses=ERROR_RESPONSES)
async def move_task(
    task_id: UUID,
    payload: TaskMove,
    board: BoardSession = BOARD_DEP,
) -> MutationRead:
    result = await board.move_task(task_id, payload.status)
    return MutationRead.from_result(result, board.store)


@router.patch("/tasks/{task_id}/title", response_model=MutationRead, responses=ERROR_RESPONSES)
async def update_title(
    task_id: UUID,
    payload: TaskTitleUpdate,
    board: BoardSession = BOARD_DEP,
) -> MutationRead:
    result = await board.update_title(task_id, payload.title)
    return MutationRead.from_result(result, board.store)


@router.patch(
    "/tasks/{task_id}/description",
    response_model=MutationRead,
    responses=ERROR_RESPONSES,
)
async def update_description(
    task_id: UUID,
    payload: TaskDescriptionUpdate,
    board: BoardSession = BOARD_DEP,
) -> MutationRead:
    result = await board.update_description(task_id, payload.description)
    return MutationRead.from_result(result, board.store)


@router.post(
    "/tasks/{task_id}/comments",
    response_model=MutationRead,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
)
async def add_comment(
    task_id: UUID,
    payload: CommentCreate,
    board: BoardSession = BOARD_DEP,
) -> MutationRead:
    result = await board.add_comment(task_id, payload.body)
    return MutationRead.from_result(result, board.store)


@router.post(
    "/tasks/{task_id}/attachments",
    response_model=AttachmentRead,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
)
async def upload_attachment(
    task_id: UUID,
    file: UploadFile = FILE_UPLOAD,
    board: BoardSession = BOARD_DEP,
) -> AttachmentRead:
    content = await file.read()
    result = await board.add_attachment(
        task_id,
        FileUpload(
            file_name=file.filename or "",
            content=content,
            content_type=file.content_type or "application/octet-stream",
        ),
    )
    if result.value is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Attachment was not saved",
        )
    return AttachmentRead.from_attachment(result.value)


@router.get("/attachments/{attachment_id}", responses=ERROR_RESPONSES)
async def download_attachment(
    attachment_id: UUID,
    board: BoardSession = BOARD_DEP,
) -> Response:
    attachment, content = await board.download_attachment(attachment_id)
    return Response(
        content=content,
        media_type=attachment.file_type,
        headers={"Content-Disposition": f'attachment; filename="{attachment.file_name}"'},
    )


@router.delete(
    "/attachments/{attachment_id}",
    response_model=MutationRead,
    responses=ERROR_RESPONSES,
)
async def remove_attachment(
    attachment_id: UUID,
    board: BoardSession = BOARD_DEP,
) -> MutationRead:
    result = await board.remove_attachment(attachment_id)
    return MutationRead.from_result(result, board.store)


@router.post("/tasks/{task_id}/assignees", response_model=MutationRead, responses=ERROR_RESPONSES)
async def assign_users(
    task_id: UUID,
    payload: AssigneesAdd,
    board: BoardSession = BOARD_DEP,
) -> MutationRead:
    result = await board.assign_users(task_id, payload.user_ids)
    return MutationRead.from_result(result, board.store)


@router.delete(
    "/tasks/{task_id}/assignees/{user_id}",
    response_model=MutationRead,
    responses=ERROR_RESPONSES,
)
async def unassign_user(
    task_id: UUID,
    user_id: UUID,
    board: BoardSession = BOARD_DEP,
) -> MutationRead:
    result = await board.unassign_user(task_id, user_id)
    return MutationRead.from_result(result, board.store)


@router.get("/events")
async def stream_events(request: Request, board: BoardSession = BOARD_DEP) -> EventSourceResponse:
    """Stream "task list changed", "task detail changed", and notifications."""

    async def event_generator() -> AsyncIterator[dict[str, str]]:
        async for change in board.changes.stream():
            if await request.is_disconnected():
                break
            yield {"event": change.kind.value, "data": json.dumps(change.to_payload())}

    return EventSourceResponse(event_generator(), ping=settings.stream_ping_seconds)