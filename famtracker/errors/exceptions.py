"""
Exception classes for the FamTracker backend.

This module provides the AppException base class, one subclass per named
failure kind of the core operations, and convenience factory functions
for creating them with the right error codes and HTTP status codes.
"""

from typing import Any, Optional

from famtracker.errors.codes import ErrorCode, RETRYABLE_ERROR_CODES, get_default_status_code


class AppException(Exception):
    """
    Base exception class for all application-specific errors.

    This exception provides structured error information including:
    - error_code: A standardized error code from the ErrorCode enum
    - message: A human-readable error message
    - status_code: The HTTP status code to return
    - details: Optional additional context (e.g., field-level errors)

    Example:
        raise AppException(
            error_code=ErrorCode.VALIDATION_ERROR,
            message="Invalid latitude value",
            status_code=400,
            details={"field": "latitude", "reason": "Must be between -90 and 90"}
        )
    """

    def __init__(
        self,
        error_code: ErrorCode,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None
    ):
        """
        Initialize an AppException.

        Args:
            error_code: The error code from the ErrorCode enum
            message: A human-readable error message
            status_code: The HTTP status code (defaults to the error code's default)
            details: Optional dictionary with additional error context
        """
        self.error_code = error_code
        self.message = message
        self.status_code = status_code or get_default_status_code(error_code)
        self.details = details
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        """Whether the caller may resubmit the same request later."""
        return self.error_code in RETRYABLE_ERROR_CODES

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the exception to a dictionary for JSON serialization.

        Returns:
            Dictionary containing error_code, message, and details
        """
        result = {
            "error_code": self.error_code.value,
            "message": self.message,
        }
        if self.details is not None:
            result["details"] = self.details
        return result

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(error_code={self.error_code.value!r}, "
            f"message={self.message!r}, status_code={self.status_code}, "
            f"details={self.details!r})"
        )


class ValidationError(AppException):
    """Malformed or out-of-range input, rejected before any persistence."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(ErrorCode.VALIDATION_ERROR, message, details=details)


class AuthorizationError(AppException):
    """The caller is not a member of the referenced group."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(ErrorCode.NOT_GROUP_MEMBER, message, details=details)


class PermissionDeniedError(AppException):
    """The caller shares no group with the subject and is not the subject."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(ErrorCode.PERMISSION_DENIED, message, details=details)


# Convenience factory functions for common error types

def validation_error(
    message: str,
    details: Optional[dict[str, Any]] = None
) -> ValidationError:
    """Create a validation error exception."""
    return ValidationError(message=message, details=details)


def not_group_member(
    user_id: str,
    group_id: str,
    message: str = "Not a member of this family"
) -> AuthorizationError:
    """Create an authorization error for a user outside the group."""
    return AuthorizationError(
        message=message,
        details={"user_id": user_id, "group_id": group_id}
    )


def permission_denied(
    requester_id: str,
    subject_id: str,
    message: str = "Permission denied"
) -> PermissionDeniedError:
    """Create a permission error for a requester unrelated to the subject."""
    return PermissionDeniedError(
        message=message,
        details={"requester_id": requester_id, "subject_id": subject_id}
    )


def unauthorized(
    message: str = "Authentication required",
    details: Optional[dict[str, Any]] = None
) -> AppException:
    """Create an unauthorized exception."""
    return AppException(
        error_code=ErrorCode.UNAUTHORIZED,
        message=message,
        details=details
    )


def elasticsearch_unavailable(
    message: str = "Database connection failed",
    details: Optional[dict[str, Any]] = None
) -> AppException:
    """Create an Elasticsearch unavailable exception."""
    return AppException(
        error_code=ErrorCode.ELASTICSEARCH_UNAVAILABLE,
        message=message,
        details=details
    )


def circuit_open(
    message: str = "Service temporarily unavailable",
    details: Optional[dict[str, Any]] = None
) -> AppException:
    """Create a circuit open exception."""
    return AppException(
        error_code=ErrorCode.CIRCUIT_OPEN,
        message=message,
        details=details
    )
