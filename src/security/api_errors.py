"""
Unified error types for the access core.

The lifecycle services and the access gate raise these exceptions; FastAPI
applications that mount entity services install ``register_exception_handlers``
so each error becomes a standardized JSON response with the right status
code. Permission failures (403) and missing resources (404) stay
distinguishable.

Usage:
    from security.api_errors import ForbiddenError, NotFoundError

    raise NotFoundError("lead", lead_id)
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


# =============================================================================
# ERROR CODES
# =============================================================================


class ErrorCode(str, Enum):
    """Standardized error codes for service and API errors."""

    # Authentication & Authorization (401, 403)
    AUTH_REQUIRED = "AUTH_REQUIRED"
    AUTH_INSUFFICIENT_PERMISSIONS = "AUTH_INSUFFICIENT_PERMISSIONS"

    # Validation (400)
    VALIDATION_ERROR = "VALIDATION_ERROR"

    # Resource errors (404, 409)
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    RESOURCE_ALREADY_EXISTS = "RESOURCE_ALREADY_EXISTS"
    RESOURCE_CONFLICT = "RESOURCE_CONFLICT"

    # Business rules (400)
    BUSINESS_RULE_VIOLATION = "BUSINESS_RULE_VIOLATION"

    # Server errors (500)
    SERVER_INTERNAL_ERROR = "SERVER_INTERNAL_ERROR"
    SERVER_DATABASE_ERROR = "SERVER_DATABASE_ERROR"


ERROR_CODE_STATUS_MAP: Dict[ErrorCode, int] = {
    ErrorCode.AUTH_REQUIRED: status.HTTP_401_UNAUTHORIZED,
    ErrorCode.AUTH_INSUFFICIENT_PERMISSIONS: status.HTTP_403_FORBIDDEN,
    ErrorCode.VALIDATION_ERROR: status.HTTP_400_BAD_REQUEST,
    ErrorCode.RESOURCE_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.RESOURCE_ALREADY_EXISTS: status.HTTP_409_CONFLICT,
    ErrorCode.RESOURCE_CONFLICT: status.HTTP_409_CONFLICT,
    ErrorCode.BUSINESS_RULE_VIOLATION: status.HTTP_400_BAD_REQUEST,
    ErrorCode.SERVER_INTERNAL_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorCode.SERVER_DATABASE_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


# =============================================================================
# ERROR RESPONSE MODEL
# =============================================================================


class ErrorResponse(BaseModel):
    """Standardized error response body."""
    error: bool = Field(default=True, description="Always true for errors")
    code: str = Field(..., description="Error code from ErrorCode enum")
    message: str = Field(..., description="Human-readable error message")
    status_code: int = Field(..., description="HTTP status code")
    timestamp: str = Field(..., description="ISO 8601 timestamp")
    request_id: str = Field(..., description="Unique request identifier for tracking")
    path: Optional[str] = Field(None, description="Request path that caused the error")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error context")


# =============================================================================
# EXCEPTIONS
# =============================================================================


class APIError(Exception):
    """
    Base exception for service errors that reach the caller.

    Raise a subclass anywhere in service code; transports map it to a
    response through ``to_response``.
    """

    def __init__(
        self,
        code: Union[ErrorCode, str],
        message: str,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        log_error: bool = True,
    ):
        self.code = code if isinstance(code, ErrorCode) else ErrorCode(code)
        self.message = message
        self.status_code = status_code or ERROR_CODE_STATUS_MAP.get(
            self.code, status.HTTP_500_INTERNAL_SERVER_ERROR
        )
        self.details = details
        self.log_error = log_error
        super().__init__(message)

    def to_response(self, request_id: str, path: Optional[str] = None) -> ErrorResponse:
        """Convert to ErrorResponse model."""
        return ErrorResponse(
            error=True,
            code=self.code.value,
            message=self.message,
            status_code=self.status_code,
            timestamp=datetime.utcnow().isoformat() + "Z",
            request_id=request_id,
            path=path,
            details=self.details,
        )


class AuthenticationRequiredError(APIError):
    """No acting principal could be resolved for the operation."""

    def __init__(self, message: str = "Authentication required"):
        super().__init__(ErrorCode.AUTH_REQUIRED, message)


class ForbiddenError(APIError):
    """Permission check failed; the operation was aborted before any mutation."""

    def __init__(
        self,
        message: str = "You do not have permission to perform this action",
        resource: Optional[str] = None,
        action: Optional[str] = None,
    ):
        details = None
        if resource or action:
            details = {"resource": resource, "action": action}
        super().__init__(ErrorCode.AUTH_INSUFFICIENT_PERMISSIONS, message, details=details)
        self.resource = resource
        self.action = action


class NotFoundError(APIError):
    """Entity is absent or soft-deleted."""

    def __init__(self, resource: str, identifier: Optional[Any] = None):
        message = f"{resource} not found"
        if identifier is not None:
            message += f": {identifier}"
        super().__init__(
            ErrorCode.RESOURCE_NOT_FOUND,
            message,
            details={"resource": resource, "id": str(identifier) if identifier is not None else None},
        )
        self.resource = resource
        self.identifier = identifier


class ConflictError(APIError):
    """Uniqueness violation on create/update."""

    def __init__(self, resource: str, field: Optional[str] = None, value: Optional[Any] = None):
        message = f"{resource} already exists"
        if field:
            message += f" with {field}: {value}"
        super().__init__(
            ErrorCode.RESOURCE_ALREADY_EXISTS,
            message,
            details={"resource": resource, "field": field},
        )
        self.resource = resource
        self.field = field


# =============================================================================
# HELPERS
# =============================================================================


def get_request_id(request: Request) -> str:
    """Get or generate request ID for tracking."""
    request_id = request.headers.get("X-Request-ID")
    if not request_id:
        request_id = getattr(request.state, "request_id", None)
    if not request_id:
        request_id = str(uuid.uuid4())
    return request_id


def register_exception_handlers(app: FastAPI) -> None:
    """
    Register the access-core exception handlers with a FastAPI app.

    Call this in your app initialization:
        from security.api_errors import register_exception_handlers
        register_exception_handlers(app)
    """

    @app.exception_handler(APIError)
    async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
        """Handle APIError exceptions."""
        request_id = get_request_id(request)

        if exc.log_error:
            log_level = logging.WARNING if exc.status_code < 500 else logging.ERROR
            logger.log(
                log_level,
                f"[{request_id}] APIError: {exc.code.value} - {exc.message}",
                extra={
                    "request_id": request_id,
                    "error_code": exc.code.value,
                    "status_code": exc.status_code,
                    "path": request.url.path,
                    "method": request.method,
                }
            )

        response = exc.to_response(request_id, request.url.path)
        return JSONResponse(
            status_code=exc.status_code,
            content=response.model_dump(),
            headers={"X-Request-ID": request_id}
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        """Handle standard HTTP exceptions."""
        request_id = get_request_id(request)

        status_to_code = {
            400: ErrorCode.VALIDATION_ERROR,
            401: ErrorCode.AUTH_REQUIRED,
            403: ErrorCode.AUTH_INSUFFICIENT_PERMISSIONS,
            404: ErrorCode.RESOURCE_NOT_FOUND,
            409: ErrorCode.RESOURCE_CONFLICT,
        }
        error_code = status_to_code.get(exc.status_code, ErrorCode.SERVER_INTERNAL_ERROR)

        logger.warning(
            f"[{request_id}] HTTP {exc.status_code}: {exc.detail}",
            extra={
                "request_id": request_id,
                "status_code": exc.status_code,
                "path": request.url.path,
            }
        )

        response = ErrorResponse(
            error=True,
            code=error_code.value,
            message=str(exc.detail) if exc.detail else "An error occurred",
            status_code=exc.status_code,
            timestamp=datetime.utcnow().isoformat() + "Z",
            request_id=request_id,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=response.model_dump(),
            headers={"X-Request-ID": request_id}
        )
