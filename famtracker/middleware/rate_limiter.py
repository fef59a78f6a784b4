"""
Rate limiting for the public API.

Built on slowapi with per-IP keys. General endpoints share the default
limit; position submission has its own, higher limit since tracking
clients report several times a minute.
"""

import logging
from typing import Callable

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from famtracker.errors.codes import ErrorCode

logger = logging.getLogger(__name__)


def get_client_ip(request: Request) -> str:
    """
    Extract the client IP address from the request.

    Forwarding headers set by the load balancer take precedence over the
    direct peer address.
    """
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Leftmost entry is the original client
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    return get_remote_address(request)


limiter = Limiter(key_func=get_client_ip)

# Limits in effect; replaced by setup_rate_limiting from settings
_limits = {
    "api": 100,
    "location": 120,
}


def get_rate_limit_string(requests_per_minute: int) -> str:
    """Format a per-minute limit the way slowapi expects it, e.g. "100/minute"."""
    return f"{requests_per_minute}/minute"


def api_rate_limit() -> Callable:
    """Decorator applying the general API limit to an endpoint."""
    return limiter.limit(lambda: get_rate_limit_string(_limits["api"]))


def location_rate_limit() -> Callable:
    """Decorator applying the position submission limit to an endpoint."""
    return limiter.limit(lambda: get_rate_limit_string(_limits["location"]))


def setup_rate_limiting(
    app: FastAPI,
    api_rate_limit: int = 100,
    location_rate_limit: int = 120,
    enabled: bool = True
) -> None:
    """
    Attach the limiter to the application and register the 429 handler.

    Args:
        app: The FastAPI application instance
        api_rate_limit: Requests per minute per IP for general endpoints
        location_rate_limit: Position submissions per minute per IP
        enabled: Whether limits are enforced
    """
    _limits["api"] = api_rate_limit
    _limits["location"] = location_rate_limit

    limiter.enabled = enabled
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    logger.info(
        "Rate limiting configured",
        extra={"extra_data": {
            "enabled": enabled,
            "api_per_minute": api_rate_limit,
            "location_per_minute": location_rate_limit,
        }}
    )


async def _rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Render a RateLimitExceeded as the standard RATE_LIMITED error body."""
    request_id = getattr(request.state, "request_id", "unknown")
    retry_after = 60

    logger.warning(
        "Rate limit exceeded",
        extra={"extra_data": {
            "client_ip": get_client_ip(request),
            "request_id": request_id,
            "path": request.url.path,
            "method": request.method,
            "limit": str(exc.detail),
        }}
    )

    return JSONResponse(
        status_code=429,
        content={
            "error_code": ErrorCode.RATE_LIMITED.value,
            "message": "Too many requests. Please slow down.",
            "details": {
                "limit": str(exc.detail),
                "retry_after_seconds": retry_after,
            },
            "request_id": request_id,
        },
        headers={"Retry-After": str(retry_after)},
    )
