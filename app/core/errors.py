"""
Error Handling
==============

Standardized error codes, HTTP-facing exceptions and the subscription
lifecycle failure taxonomy.

HTTP errors all render as::

    {"success": false, "error": {"code": "...", "message": "...", "field": "..."}}
"""

import logging
from typing import Any, Optional

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.models.dead_letter import FailureKind
from app.schemas.common import ErrorDetail, ErrorResponse

logger = logging.getLogger(__name__)


# =============================================================================
# Error Codes
# =============================================================================

class ErrorCodes:
    """Standardized error codes."""

    # Authentication (AUTH_001 - AUTH_010)
    AUTH_INVALID_CREDENTIALS = "AUTH_001"
    AUTH_INVALID_CRON_SECRET = "AUTH_002"

    # Subscription (SUB_001 - SUB_010)
    SUB_RECORD_FAILED = "SUB_002"
    SUB_LINK_CONFLICT = "SUB_003"
    SUB_DLQ_ENTRY_NOT_FOUND = "SUB_004"
    SUB_DLQ_ENTRY_STATE = "SUB_005"

    # General
    HTTP_ERROR = "HTTP_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"


# =============================================================================
# HTTP Exceptions
# =============================================================================

class AppException(HTTPException):
    """
    Base application exception with a structured error body.

    Subclasses pick the HTTP status and the default code/message; callers
    override ``code`` and ``message`` per raise site.
    """

    http_status: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_code: str = ErrorCodes.INTERNAL_ERROR
    default_message: str = "An unexpected error occurred"

    def __init__(
        self,
        code: Optional[str] = None,
        message: Optional[str] = None,
        field: Optional[str] = None,
        **extra: Any,
    ):
        self.code = code or self.default_code
        self.message = message or self.default_message
        self.field = field
        self.extra = extra
        super().__init__(
            status_code=self.http_status,
            detail={"code": self.code, "message": self.message, **extra},
        )


class AuthenticationError(AppException):
    http_status = status.HTTP_401_UNAUTHORIZED
    default_code = ErrorCodes.AUTH_INVALID_CREDENTIALS
    default_message = "Authentication failed"


class NotFoundError(AppException):
    http_status = status.HTTP_404_NOT_FOUND
    default_code = ErrorCodes.HTTP_ERROR
    default_message = "Resource not found"


class ConflictError(AppException):
    """The request contradicts stored state (e.g. a transaction owned by someone else)."""

    http_status = status.HTTP_409_CONFLICT
    default_message = "Resource conflict"


class ServiceUnavailableError(AppException):
    """Storage unavailable; the caller should retry."""

    http_status = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "Service temporarily unavailable"


# =============================================================================
# Lifecycle Failures
# =============================================================================

class LifecycleError(Exception):
    """
    Base class for failures while applying a recorded event.

    These never reach the webhook caller: the event is already durable,
    so the processor parks it in the dead-letter queue instead.
    """

    failure_kind: FailureKind = FailureKind.TRANSIENT

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details


class InvalidTransition(LifecycleError):
    """Proposed status change is not in the transition graph."""

    failure_kind = FailureKind.INVALID_TRANSITION


class UnresolvedUser(LifecycleError):
    """No application user could be linked to the transaction."""

    failure_kind = FailureKind.UNRESOLVED_USER


class TransientFailure(LifecycleError):
    """Retryable downstream or storage failure."""

    failure_kind = FailureKind.TRANSIENT


class ConcurrentUpdateError(TransientFailure):
    """Row version changed between read and conditional write."""


class PermanentFailure(LifecycleError):
    """Retry budget exhausted; needs manual triage."""


# =============================================================================
# Exception Handlers
# =============================================================================

def error_response(
    status_code: int,
    code: str,
    message: str,
    field: Optional[str] = None,
    **extra: Any,
) -> JSONResponse:
    """Render the standard error body."""
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, field=field))
    content = body.model_dump(exclude_none=True)
    content["error"].update(extra)
    return JSONResponse(status_code=status_code, content=content)


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning(
            "%s %s -> %d %s: %s",
            request.method,
            request.url.path,
            exc.status_code,
            exc.code,
            exc.message,
        )
    return error_response(exc.status_code, exc.code, exc.message, exc.field, **exc.extra)


async def http_exception_handler(
    request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    """Framework-raised HTTP errors (404 on unknown routes, 405, ...)."""
    if isinstance(exc.detail, dict) and "code" in exc.detail:
        detail = dict(exc.detail)
        return error_response(
            exc.status_code,
            detail.pop("code"),
            str(detail.pop("message", "")),
            detail.pop("field", None),
            **detail,
        )
    return error_response(exc.status_code, ErrorCodes.HTTP_ERROR, str(exc.detail))


async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Report the first failing field of the request."""
    errors = exc.errors()
    if not errors:
        return error_response(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            ErrorCodes.VALIDATION_ERROR,
            "Validation error",
        )

    first = errors[0]
    return error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        ErrorCodes.VALIDATION_ERROR,
        first.get("msg", "Validation error"),
        ".".join(str(loc) for loc in first.get("loc", ())),
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "Unhandled error on %s %s: %s",
        request.method,
        request.url.path,
        type(exc).__name__,
    )
    return error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        ErrorCodes.INTERNAL_ERROR,
        AppException.default_message,
    )


def setup_exception_handlers(app) -> None:
    """Register the handlers above on ``app``."""
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
