"""
Application errors

Every failed operation raises an AppError subclass carrying a stable wire code.
HTTP handlers render {"code", "message", "details"}; the realtime gateway sends the
same code inside an error event to the caller only.
"""

from enum import Enum
from typing import Any, Optional

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from kindred.core.logging import get_logger

logger = get_logger(__name__)


class ErrorCode(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "notFound"
    CONFLICT = "conflict"
    INVALID = "invalid"
    EXPIRED = "expired"
    BLOCKED = "blockedByPolicy"
    RATE_LIMITED = "rateLimited"
    TRANSIENT = "transient"
    UNAVAILABLE = "unavailable"


class AppError(Exception):
    """Base application error"""

    code: ErrorCode = ErrorCode.TRANSIENT
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        *,
        code: Optional[ErrorCode] = None,
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class AuthenticationError(AppError):
    code = ErrorCode.UNAUTHENTICATED
    status_code = status.HTTP_401_UNAUTHORIZED


class ForbiddenError(AppError):
    code = ErrorCode.FORBIDDEN
    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(AppError):
    code = ErrorCode.NOT_FOUND
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(AppError):
    code = ErrorCode.CONFLICT
    status_code = status.HTTP_409_CONFLICT


class ValidationError(AppError):
    code = ErrorCode.INVALID
    status_code = 422


class ExpiredError(AppError):
    code = ErrorCode.EXPIRED
    status_code = status.HTTP_410_GONE


class BlockedError(AppError):
    code = ErrorCode.BLOCKED
    status_code = status.HTTP_403_FORBIDDEN


class RateLimitedError(AppError):
    code = ErrorCode.RATE_LIMITED
    status_code = status.HTTP_429_TOO_MANY_REQUESTS


class TransientError(AppError):
    code = ErrorCode.TRANSIENT
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class UnavailableError(AppError):
    code = ErrorCode.UNAVAILABLE
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


_HTTP_STATUS_CODES = {
    status.HTTP_401_UNAUTHORIZED: ErrorCode.UNAUTHENTICATED,
    status.HTTP_403_FORBIDDEN: ErrorCode.FORBIDDEN,
    status.HTTP_404_NOT_FOUND: ErrorCode.NOT_FOUND,
    status.HTTP_409_CONFLICT: ErrorCode.CONFLICT,
    status.HTTP_410_GONE: ErrorCode.EXPIRED,
    status.HTTP_429_TOO_MANY_REQUESTS: ErrorCode.RATE_LIMITED,
}


async def app_exception_handler(request: Request, exc: AppError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning(f"{exc.code.value} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code = _HTTP_STATUS_CODES.get(exc.status_code, ErrorCode.INVALID)
    return JSONResponse(
        status_code=exc.status_code,
        content={"code": code.value, "message": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={
            "code": ErrorCode.INVALID.value,
            "message": "Request validation failed",
            "details": {"errors": jsonable_errors(exc.errors())},
        },
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"code": ErrorCode.TRANSIENT.value, "message": "Internal server error"},
    )


def jsonable_errors(errors: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Strip non-serializable context from pydantic error dicts"""
    return [
        {"loc": list(e.get("loc", ())), "msg": e.get("msg", ""), "type": e.get("type", "")}
        for e in errors
    ]
