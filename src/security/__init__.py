"""
Security module for the access core.

Provides the error taxonomy surfaced by services and the FastAPI exception
handlers that render it.
"""

from .api_errors import (
    ErrorCode,
    ErrorResponse,
    APIError,
    AuthenticationRequiredError,
    ForbiddenError,
    NotFoundError,
    ConflictError,
    get_request_id,
    register_exception_handlers,
)

__all__ = [
    "ErrorCode",
    "ErrorResponse",
    "APIError",
    "AuthenticationRequiredError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "get_request_id",
    "register_exception_handlers",
]
