"""
Error taxonomy for the account/session core and its HTTP translation.

Every failure raised by the services is an ``AppError`` tagged with an
``ErrorKind``. The kind alone decides the HTTP status, in ``STATUS_BY_KIND``;
``app_error_handler`` is the only place that turns an error into a response.
"""

from __future__ import annotations

import enum
from typing import Any

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
import structlog

from vidtube.schemas.common import ApiError

logger = structlog.get_logger(__name__)


class ErrorKind(str, enum.Enum):
    VALIDATION = "validation"
    CONFLICT = "conflict"
    AUTH = "auth"
    NOT_FOUND = "not_found"
    UPSTREAM = "upstream"
    INTERNAL = "internal"


STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.AUTH: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.INTERNAL: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorKind.UPSTREAM: status.HTTP_502_BAD_GATEWAY,
}


class AppError(Exception):
    kind: ErrorKind = ErrorKind.INTERNAL
    default_message = "Something went wrong"

    def __init__(self, message: str | None = None, *, errors: list[Any] | None = None) -> None:
        self.message = message or self.default_message
        self.errors = list(errors or [])
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        return STATUS_BY_KIND[self.kind]


class ValidationError(AppError):
    kind = ErrorKind.VALIDATION
    default_message = "Invalid request"


class ConflictError(AppError):
    kind = ErrorKind.CONFLICT
    default_message = "Resource already exists"


class AuthError(AppError):
    kind = ErrorKind.AUTH
    default_message = "Unauthorized request"


class NotFoundError(AppError):
    kind = ErrorKind.NOT_FOUND
    default_message = "Resource not found"


class UpstreamError(AppError):
    kind = ErrorKind.UPSTREAM
    default_message = "Upstream service failed"


class InternalError(AppError):
    kind = ErrorKind.INTERNAL


def error_response(status_code: int, message: str, errors: list[Any] | None = None) -> JSONResponse:
    body = ApiError(statusCode=status_code, message=message, errors=errors or [])
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if exc.kind in (ErrorKind.INTERNAL, ErrorKind.UPSTREAM):
        logger.error("request_failed", method=request.method, path=request.url.path, error=exc.message)
    else:
        logger.info(
            "request_rejected",
            method=request.method,
            path=request.url.path,
            kind=exc.kind.value,
            error=exc.message,
        )
    return error_response(exc.status_code, exc.message, exc.errors)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"loc": list(e.get("loc", ())), "msg": e.get("msg", "")}
        for e in exc.errors()
    ]
    return error_response(status.HTTP_400_BAD_REQUEST, "Invalid request", errors)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error", method=request.method, path=request.url.path)
    return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")
