"""FastAPI application entrypoint and router wiring for the task board."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI, status
from fastapi.middleware.cors import CORSMiddleware

from taskboard.api.tasks import router as tasks_router
from taskboard.core.config import settings
from taskboard.core.error_handling import REQUEST_ID_HEADER, install_error_handling
from taskboard.core.logging import configure_logging, get_logger
from taskboard.schemas.errors import HealthStatusResponse
from taskboard.services.postgrest import ObjectStorageClient, PostgrestRepository
from taskboard.services.sessions import BoardSessionRegistry

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable
    from contextlib import AbstractAsyncContextManager
    from uuid import UUID

    from taskboard.services.realtime import RealtimeSource

logger = get_logger(__name__)
OPENAPI_TAGS = [
    {
        "name": "health",
        "description": "Service liveness probes used by infrastructure and runtime checks.",
    },
    {
        "name": "tasks",
        "description": (
            "Workspace task board: stage moves, edits, comments, attachments, "
            "assignments, and the live change stream."
        ),
    },
]


def _lifespan(
    registry: BoardSessionRegistry | None,
    source_factory: Callable[[UUID], RealtimeSource] | None,
) -> Callable[[FastAPI], AbstractAsyncContextManager[None]]:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Wire the storage clients and session registry before serving requests."""
        logger.info("app.lifecycle.starting", extra={"environment": settings.environment})
        repository: PostgrestRepository | None = None
        blobs: ObjectStorageClient | None = None
        sessions = registry
        if sessions is None:
            repository = PostgrestRepository()
            blobs = ObjectStorageClient()
            sessions = BoardSessionRegistry(repository, blobs, source_factory=source_factory)
        app.state.sessions = sessions
        logger.info("app.lifecycle.started")
        try:
            yield
        finally:
            await sessions.close()
            if repository is not None:
                await repository.aclose()
            if blobs is not None:
                await blobs.aclose()
            logger.info("app.lifecycle.stopped")

    return lifespan


def create_app(
    *,
    registry: BoardSessionRegistry | None = None,
    source_factory: Callable[[UUID], RealtimeSource] | None = None,
) -> FastAPI:
    """Build the application; tests pass a registry backed by in-memory fakes."""
    app = FastAPI(
        title="Task Board API",
        version="0.1.0",
        lifespan=_lifespan(registry, source_factory),
        openapi_tags=OPENAPI_TAGS,
    )
    if registry is not None:
        app.state.sessions = registry

    origins = settings.cors_origin_list
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
            expose_headers=[REQUEST_ID_HEADER],
        )
        logger.info("app.cors.enabled", extra={"origins_count": len(origins)})
    else:
        logger.info("app.cors.disabled")

    install_error_handling(app)
    app.include_router(tasks_router)

    @app.get(
        "/healthz",
        tags=["health"],
        response_model=HealthStatusResponse,
        summary="Health Check",
        description="Lightweight liveness probe endpoint.",
        responses={
            status.HTTP_200_OK: {
                "description": "Service is alive.",
                "content": {"application/json": {"example": {"ok": True}}},
            },
        },
    )
    def healthz() -> HealthStatusResponse:
        """Lightweight liveness probe endpoint."""
        return HealthStatusResponse(ok=True)

    return app


configure_logging(
    level=settings.log_level,
    log_format=settings.log_format,
    use_utc=settings.log_use_utc,
)
app = create_app()
