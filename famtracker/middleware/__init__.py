"""
Middleware components for the FamTracker backend.

Request correlation and per-IP rate limiting.
"""

from famtracker.middleware.request_id import RequestIDMiddleware, request_id_var
from famtracker.middleware.rate_limiter import (
    limiter,
    setup_rate_limiting,
    api_rate_limit,
    location_rate_limit,
    get_client_ip,
)

__all__ = [
    "RequestIDMiddleware",
    "request_id_var",
    "limiter",
    "setup_rate_limiting",
    "api_rate_limit",
    "location_rate_limit",
    "get_client_ip",
]
