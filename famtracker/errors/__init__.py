"""
Error handling module for the FamTracker backend.

This module provides structured error handling with:
- ErrorCode enum for standardized error codes
- AppException and one subclass per named failure kind
- Error response models for consistent API responses
- Exception handlers for FastAPI integration
"""

from famtracker.errors.codes import ErrorCode
from famtracker.errors.exceptions import (
    AppException,
    AuthorizationError,
    PermissionDeniedError,
    ValidationError,
)
from famtracker.errors.handlers import (
    ErrorResponse,
    handle_app_exception,
    handle_unexpected_exception,
    register_exception_handlers,
)

__all__ = [
    "ErrorCode",
    "AppException",
    "AuthorizationError",
    "PermissionDeniedError",
    "ValidationError",
    "ErrorResponse",
    "handle_app_exception",
    "handle_unexpected_exception",
    "register_exception_handlers",
]
