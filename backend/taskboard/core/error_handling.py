"""Global exception handlers and request-id middleware for FastAPI."""

from __future__ import annotations

from collections.abc import Sequence
from time import perf_counter
from typing import TYPE_CHECKING, Any, Final
from uuid import uuid4

from fastapi import status
from fastapi.exceptions import RequestValidationError, ResponseValidationError
from fastapi.responses import JSONResponse
from starlette.datastructures import Headers, MutableHeaders
from starlette.exceptions import HTTPException as StarletteHTTPException

from taskboard.core.config import settings
from taskboard.core.errors import (
    BoardError,
    ConflictOnRollback,
    NotFound,
    PermissionDenied,
    StorageError,
    SubscriptionLost,
    TransportError,
    ValidationError,
)
from taskboard.core.logging import get_logger

if TYPE_CHECKING:
    from fastapi import FastAPI
    from starlette.requests import Request
    from starlette.types import ASGIApp, Message, Receive, Scope, Send

logger = get_logger(__name__)

REQUEST_ID_HEADER: Final[str] = "X-Request-Id"
HTTP_422_UNPROCESSABLE: Final[int] = 422
_HEALTH_PATHS: Final[frozenset[str]] = frozenset({"/healthz"})

# Checked in order; the first matching class decides the status code.
_BOARD_ERROR_STATUS: Final[tuple[tuple[type[BoardError], int], ...]] = (
    (PermissionDenied, status.HTTP_403_FORBIDDEN),
    (ValidationError, HTTP_422_UNPROCESSABLE),
    (NotFound, status.HTTP_404_NOT_FOUND),
    (TransportError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (SubscriptionLost, status.HTTP_503_SERVICE_UNAVAILABLE),
    (ConflictOnRollback, status.HTTP_409_CONFLICT),
)
_STORAGE_CODE_STATUS: Final[dict[str, int]] = {
    StorageError.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    StorageError.PERMISSION_DENIED: status.HTTP_403_FORBIDDEN,
    StorageError.CONSTRAINT_VIOLATION: status.HTTP_409_CONFLICT,
    StorageError.TRANSPORT_ERROR: status.HTTP_503_SERVICE_UNAVAILABLE,
}


class RequestIdMiddleware:
    """Attach a request id to scope state and echo it on every response."""

    def __init__(self, app: ASGIApp, *, header_name: str = REQUEST_ID_HEADER) -> None:
        self._app = app
        self._header_name = header_name

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self._app(scope, receive, send)
            return

        request_id = (Headers(scope=scope).get(self._header_name) or "").strip() or uuid4().hex
        scope.setdefault("state", {})["request_id"] = request_id
        path = str(scope.get("path") or "")
        method = str(scope.get("method") or "")
        log_request = settings.request_log_include_health or path not in _HEALTH_PATHS
        started = perf_counter()
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

        async def send_with_request_id(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = int(message["status"])
                headers = MutableHeaders(scope=message)
                if self._header_name not in headers:
                    headers.append(self._header_name, request_id)
            await send(message)

        try:
            await self._app(scope, receive, send_with_request_id)
        finally:
            if log_request:
                duration_ms = int((perf_counter() - started) * 1000)
                context = {
                    "method": method,
                    "path": path,
                    "status_code": status_code,
                    "duration_ms": duration_ms,
                    "request_id": request_id,
                }
                if duration_ms >= settings.request_log_slow_ms:
                    logger.warning(
                        "http.request.slow",
                        extra={**context, "slow_threshold_ms": settings.request_log_slow_ms},
                    )
                else:
                    logger.debug("http.request.complete", extra=context)


def install_error_handling(app: FastAPI) -> None:
    """Register the request-id middleware and every exception handler."""
    app.add_middleware(RequestIdMiddleware)
    app.add_exception_handler(BoardError, _board_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_exception_handler)
    app.add_exception_handler(ResponseValidationError, _response_validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, _http_exception_exception_handler)
    app.add_exception_handler(Exception, _unhandled_exception_handler)


def _get_request_id(request: Request) -> str | None:
    request_id = getattr(request.state, "request_id", None)
    if isinstance(request_id, str) and request_id:
        return request_id
    return None


def _error_payload(
    *,
    detail: object,
    request_id: str | None,
    code: str | None = None,
    retryable: bool | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {"detail": detail}
    if code is not None:
        payload["code"] = code
    if retryable is not None:
        payload["retryable"] = retryable
    if request_id is not None:
        payload["request_id"] = request_id
    return payload


def _json_safe(value: object) -> object:
    if isinstance(value, bytes | bytearray | memoryview):
        return bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, dict):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, str):
        return [_json_safe(item) for item in value]
    if value is None or isinstance(value, str | int | float | bool):
        return value
    return str(value)


def _response(
    request: Request,
    status_code: int,
    *,
    detail: object,
    code: str | None = None,
    retryable: bool | None = None,
) -> JSONResponse:
    request_id = _get_request_id(request)
    headers = {REQUEST_ID_HEADER: request_id} if request_id else None
    return JSONResponse(
        status_code=status_code,
        content=_error_payload(
            detail=detail,
            request_id=request_id,
            code=code,
            retryable=retryable,
        ),
        headers=headers,
    )


def board_error_status(exc: BoardError) -> int:
    for error_type, status_code in _BOARD_ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    if isinstance(exc, StorageError):
        return _STORAGE_CODE_STATUS.get(exc.code, status.HTTP_502_BAD_GATEWAY)
    return status.HTTP_400_BAD_REQUEST


async def _board_error_handler(request: Request, exc: Exception) -> JSONResponse:
    if not isinstance(exc, BoardError):
        msg = "Expected BoardError"
        raise TypeError(msg)
    status_code = board_error_status(exc)
    logger.info(
        "http.board_error",
        extra={
            "code": exc.code,
            "status_code": status_code,
            "task_id": str(exc.task_id) if exc.task_id else None,
            "path": request.url.path,
        },
    )
    return _response(
        request,
        status_code,
        detail=exc.message,
        code=exc.code,
        retryable=exc.retryable,
    )


async def _request_validation_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    if not isinstance(exc, RequestValidationError):
        msg = "Expected RequestValidationError"
        raise TypeError(msg)
    return _response(
        request,
        HTTP_422_UNPROCESSABLE,
        detail=_json_safe(exc.errors()),
        code="request_validation_failed",
        retryable=False,
    )


async def _response_validation_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    if not isinstance(exc, ResponseValidationError):
        msg = "Expected ResponseValidationError"
        raise TypeError(msg)
    logger.error(
        "http.response_validation_failed",
        extra={"path": request.url.path, "error_count": len(exc.errors())},
    )
    return _response(request, status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal Server Error")


async def _http_exception_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    if not isinstance(exc, StarletteHTTPException):
        msg = "Expected StarletteHTTPException"
        raise TypeError(msg)
    return _response(request, exc.status_code, detail=exc.detail)


async def _unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "http.unhandled_exception",
        extra={"path": request.url.path, "error_type": type(exc).__name__},
    )
    return _response(request, status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal Server Error")
