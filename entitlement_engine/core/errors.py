"""
Error Handling
==============

Categorized error codes, exception types and exception handlers.

Client-facing failures are ``AppException`` subclasses and carry a
structured ``{code, message}`` detail. Store and signature failures are
plain exceptions: they never reach a client verbatim and are normalized to
``UnexpectedInternalError`` (or swallowed) by the entry points.
"""

import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


# =============================================================================
# Error Codes
# =============================================================================

class ErrorCodes:
    """Categorized error codes shared with the mobile client."""

    UNAUTHENTICATED = "unauthenticated"
    INVALID_ARGUMENT = "invalid-argument"
    FAILED_PRECONDITION = "failed-precondition"
    NOT_FOUND = "not-found"
    INTERNAL = "internal"

    # Rate Limit
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT"

    # Request body validation (FastAPI / pydantic)
    VALIDATION_ERROR = "VALIDATION_ERROR"


# =============================================================================
# Client-facing Exceptions
# =============================================================================

class AppException(HTTPException):
    """Base application exception with structured error response."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        field: Optional[str] = None,
        **extra,
    ):
        self.code = code
        self.message = message
        self.field = field
        self.extra = extra

        detail = {
            "code": code,
            "message": message,
        }

        if field:
            detail["field"] = field

        detail.update(extra)

        super().__init__(status_code=status_code, detail=detail)


class AuthenticationError(AppException):
    """Caller is not authenticated; the client must sign in again."""

    def __init__(self, message: str = "User must be authenticated", **extra):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            code=ErrorCodes.UNAUTHENTICATED,
            message=message,
            **extra,
        )


class ValidationInputError(AppException):
    """Caller supplied missing or inconsistent purchase input."""

    def __init__(
        self,
        message: str = "Missing required fields",
        field: Optional[str] = None,
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            code=ErrorCodes.INVALID_ARGUMENT,
            message=message,
            field=field,
            **extra,
        )


class ConfigurationError(AppException):
    """A verification credential is not configured (operator-fixable)."""

    def __init__(self, message: str = "Verification credential not configured", **extra):
        super().__init__(
            status_code=status.HTTP_412_PRECONDITION_FAILED,
            code=ErrorCodes.FAILED_PRECONDITION,
            message=message,
            **extra,
        )


class NotFoundError(AppException):
    """No matching purchase exists in the store data."""

    def __init__(self, message: str = "No matching purchase found", **extra):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            code=ErrorCodes.NOT_FOUND,
            message=message,
            **extra,
        )


class UnexpectedInternalError(AppException):
    """Generic failure; never carries upstream payload contents."""

    def __init__(self, message: str = "Validation failed", **extra):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            code=ErrorCodes.INTERNAL,
            message=message,
            **extra,
        )


class RateLimitError(AppException):
    """Too many requests from one caller."""

    def __init__(self, reset_in: int, limit: int, **extra):
        super().__init__(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            code=ErrorCodes.RATE_LIMIT_EXCEEDED,
            message=f"Rate limit exceeded. Try again in {reset_in} seconds.",
            **extra,
        )
        self.headers = {
            "X-RateLimit-Limit": str(limit),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(reset_in),
            "Retry-After": str(reset_in),
        }


# =============================================================================
# Internal Exceptions
# =============================================================================

class UpstreamVerificationError(Exception):
    """The store rejected the receipt/token or could not be reached."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class SignatureVerificationError(Exception):
    """A signed notification or nested transaction failed verification."""


# =============================================================================
# Exception Handlers
# =============================================================================

def _error_response(
    status_code: int,
    error: dict,
    headers: Optional[dict[str, str]] = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": error},
        headers=headers,
    )


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    return _error_response(exc.status_code, exc.detail, getattr(exc, "headers", None))


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Framework and router errors (404 route, 405, push-token 401)."""
    if isinstance(exc.detail, dict) and "code" in exc.detail:
        error = exc.detail
    else:
        error = {"code": "HTTP_ERROR", "message": str(exc.detail)}
    return _error_response(exc.status_code, error, getattr(exc, "headers", None))


async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Report the first failing body field."""
    errors = exc.errors()
    error = {"code": ErrorCodes.VALIDATION_ERROR, "message": "Validation error"}
    if errors:
        first = errors[0]
        error["message"] = first.get("msg", error["message"])
        error["field"] = ".".join(str(loc) for loc in first.get("loc", []))
    return _error_response(status.HTTP_422_UNPROCESSABLE_ENTITY, error)


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s: %s", request.url.path, type(exc).__name__)
    return _error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        {"code": ErrorCodes.INTERNAL, "message": "An unexpected error occurred"},
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Register the structured error handlers on ``app``."""
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
