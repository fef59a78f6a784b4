"""
Error code catalog for the FamTracker backend.

This module defines every error code the service can return, covering
validation errors, identity and permission failures, storage failures,
and internal errors.
"""

from enum import Enum


class ErrorCode(str, Enum):
    """
    Enumeration of all error codes used in the application.

    Each error code maps to a specific HTTP status code and error category:
    - Validation errors (4xx): Malformed or out-of-range input
    - Access errors (4xx): Missing identity, group membership or view rights
    - Storage errors (5xx): Elasticsearch failures, retryable by the caller
    - Internal errors (5xx): Server-side issues
    """

    # Validation errors (4xx)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    """Request payload validation failed (HTTP 400)"""

    # Access errors (4xx)
    UNAUTHORIZED = "UNAUTHORIZED"
    """Caller identity missing (HTTP 401)"""

    NOT_GROUP_MEMBER = "NOT_GROUP_MEMBER"
    """Caller is not a member of the referenced group (HTTP 403)"""

    PERMISSION_DENIED = "PERMISSION_DENIED"
    """Caller shares no group with the subject and is not the subject (HTTP 403)"""

    RATE_LIMITED = "RATE_LIMITED"
    """Too many requests (HTTP 429)"""

    # Storage errors (5xx)
    ELASTICSEARCH_UNAVAILABLE = "ELASTICSEARCH_UNAVAILABLE"
    """Database connection failed (HTTP 503)"""

    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    """Circuit breaker is open (HTTP 503)"""

    # Internal errors (5xx)
    INTERNAL_ERROR = "INTERNAL_ERROR"
    """Unexpected server error (HTTP 500)"""


# Mapping of error codes to their default HTTP status codes
ERROR_CODE_STATUS_MAP: dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.NOT_GROUP_MEMBER: 403,
    ErrorCode.PERMISSION_DENIED: 403,
    ErrorCode.RATE_LIMITED: 429,
    ErrorCode.ELASTICSEARCH_UNAVAILABLE: 503,
    ErrorCode.CIRCUIT_OPEN: 503,
    ErrorCode.INTERNAL_ERROR: 500,
}

# Codes the caller may retry unchanged
RETRYABLE_ERROR_CODES = frozenset({
    ErrorCode.ELASTICSEARCH_UNAVAILABLE,
    ErrorCode.CIRCUIT_OPEN,
})


def get_default_status_code(error_code: ErrorCode) -> int:
    """
    Get the default HTTP status code for an error code.

    Args:
        error_code: The error code to look up

    Returns:
        The default HTTP status code for the error code
    """
    return ERROR_CODE_STATUS_MAP.get(error_code, 500)
