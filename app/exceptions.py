"""
Exceptions for the notification backend.

Two families live here:
- Domain errors raised by the notification store, channels and providers.
  The dispatcher catches these per tick / per item; they never escape a
  background job.
- RFC 7807 Problem Details responses for the HTTP API.

See: https://datatracker.ietf.org/doc/html/rfc7807
"""

from typing import Optional, Dict, Any, List
from enum import Enum
from pydantic import BaseModel, Field
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging
import uuid
from datetime import datetime, timezone

logger = logging.getLogger(__name__)


# =============================================================================
# Domain errors
# =============================================================================

class NotificationError(Exception):
    """Base class for notification subsystem errors."""


class StoreUnavailableError(NotificationError):
    """The persistent store could not be reached. Retryable on the next tick."""


class PushProviderError(NotificationError):
    """The push provider rejected a message or could not be reached."""

    def __init__(self, message: str, code: Optional[str] = None):
        self.code = code
        super().__init__(message)


# =============================================================================
# HTTP problem details
# =============================================================================

def _new_trace_id() -> str:
    return str(uuid.uuid4())[:12]


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class ErrorCode(str, Enum):
    """Standardized error codes for the API."""

    # Validation
    VALIDATION_ERROR = "VAL_001"

    # Resource
    NOT_FOUND = "RES_001"
    CONFLICT = "RES_003"

    # External Services
    EXTERNAL_SERVICE_ERROR = "EXT_001"
    DATABASE_ERROR = "EXT_004"
    PUSH_PROVIDER_ERROR = "EXT_007"

    # Server
    INTERNAL_ERROR = "SRV_001"
    SERVICE_UNAVAILABLE = "SRV_002"


_STATUS_TITLES = {
    400: "Bad Request",
    404: "Not Found",
    409: "Conflict",
    422: "Validation Error",
    500: "Internal Server Error",
    502: "Bad Gateway",
    503: "Service Unavailable",
}

_STATUS_CODES = {
    400: ErrorCode.VALIDATION_ERROR,
    404: ErrorCode.NOT_FOUND,
    409: ErrorCode.CONFLICT,
    422: ErrorCode.VALIDATION_ERROR,
    500: ErrorCode.INTERNAL_ERROR,
    502: ErrorCode.EXTERNAL_SERVICE_ERROR,
    503: ErrorCode.SERVICE_UNAVAILABLE,
}


class ProblemDetail(BaseModel):
    """
    RFC 7807 Problem Details response schema.

    Attributes:
        type: URI reference identifying the problem type
        title: Short, human-readable summary
        status: HTTP status code
        detail: Human-readable explanation specific to this occurrence
        instance: URI reference identifying this specific occurrence
        code: Machine-readable error code for client handling
        timestamp: ISO 8601 timestamp of when the error occurred
        trace_id: Unique identifier for tracing in logs
        errors: List of field-level validation errors (for 422)
    """

    type: str = Field(default="about:blank")
    title: str
    status: int
    detail: str
    instance: Optional[str] = None
    code: str
    timestamp: str
    trace_id: str
    errors: Optional[List[Dict[str, Any]]] = None


class APIException(HTTPException):
    """
    HTTP error carrying an RFC 7807 error code.

    Usage:
        raise APIException(
            status_code=404,
            code=ErrorCode.NOT_FOUND,
            detail="Notification not found",
        )
    """

    def __init__(
        self,
        status_code: int,
        code: ErrorCode,
        detail: str,
        errors: Optional[List[Dict[str, Any]]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.code = code
        self.errors = errors
        self.trace_id = _new_trace_id()
        super().__init__(status_code=status_code, detail=detail, headers=headers)


class NotFoundError(APIException):
    """Resource not found (404)."""

    def __init__(self, resource: str, resource_id):
        super().__init__(
            status_code=404,
            code=ErrorCode.NOT_FOUND,
            detail=f"{resource} with ID {resource_id} was not found",
        )


def create_problem_response(
    status_code: int,
    code: ErrorCode,
    detail: str,
    request: Request,
    errors: Optional[List[Dict[str, Any]]] = None,
    trace_id: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """Create a RFC 7807 compliant JSON response."""
    problem = ProblemDetail(
        type=f"/problems/{code.value.lower().replace('_', '-')}",
        title=_STATUS_TITLES.get(status_code, "Error"),
        status=status_code,
        detail=detail,
        instance=str(request.url.path),
        code=code.value,
        timestamp=_timestamp(),
        trace_id=trace_id or _new_trace_id(),
        errors=errors,
    )

    return JSONResponse(
        status_code=status_code,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
        headers=headers,
    )


def create_exception_handlers(debug: bool = False):
    """
    Create exception handlers.

    Usage in main.py:
        handlers = create_exception_handlers(settings.DEBUG)
        app.add_exception_handler(StarletteHTTPException, handlers["http"])
        app.add_exception_handler(RequestValidationError, handlers["validation"])
        app.add_exception_handler(NotificationError, handlers["notification"])
        app.add_exception_handler(Exception, handlers["generic"])
    """

    async def handle_http_exception(
        request: Request,
        exc: StarletteHTTPException
    ) -> JSONResponse:
        if isinstance(exc, APIException):
            code = exc.code
            errors = exc.errors
            trace_id = exc.trace_id
        else:
            code = _STATUS_CODES.get(exc.status_code, ErrorCode.INTERNAL_ERROR)
            errors = None
            trace_id = None

        return create_problem_response(
            status_code=exc.status_code,
            code=code,
            detail=str(exc.detail),
            request=request,
            errors=errors,
            trace_id=trace_id,
            headers=getattr(exc, "headers", None),
        )

    async def handle_validation_exception(
        request: Request,
        exc: RequestValidationError
    ) -> JSONResponse:
        """Handle Pydantic validation errors with field-level details."""
        errors = []
        for error in exc.errors():
            errors.append({
                "field": ".".join(str(loc) for loc in error["loc"]),
                "message": error["msg"],
                "type": error["type"],
            })

        return create_problem_response(
            status_code=422,
            code=ErrorCode.VALIDATION_ERROR,
            detail="Request validation failed",
            request=request,
            errors=errors,
        )

    async def handle_notification_error(
        request: Request,
        exc: NotificationError
    ) -> JSONResponse:
        if isinstance(exc, StoreUnavailableError):
            logger.warning("Store unavailable while serving %s: %s", request.url.path, exc)
            return create_problem_response(
                503,
                ErrorCode.DATABASE_ERROR,
                "Notification store is temporarily unavailable",
                request,
                headers={"Retry-After": "5"},
            )
        if isinstance(exc, PushProviderError):
            return create_problem_response(502, ErrorCode.PUSH_PROVIDER_ERROR, str(exc), request)
        return create_problem_response(500, ErrorCode.INTERNAL_ERROR, str(exc), request)

    async def handle_generic_exception(
        request: Request,
        exc: Exception
    ) -> JSONResponse:
        """Handle unexpected exceptions with RFC 7807 response."""
        trace_id = _new_trace_id()

        logger.error(
            "Unhandled exception: %s",
            exc,
            exc_info=exc,
            extra={"trace_id": trace_id, "path": request.url.path},
        )

        # Don't expose internal details in production
        detail = str(exc) if debug else "An unexpected error occurred"

        return create_problem_response(
            status_code=500,
            code=ErrorCode.INTERNAL_ERROR,
            detail=detail,
            request=request,
            trace_id=trace_id,
        )

    return {
        "http": handle_http_exception,
        "validation": handle_validation_exception,
        "notification": handle_notification_error,
        "generic": handle_generic_exception,
    }
