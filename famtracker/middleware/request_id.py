"""
Request ID middleware for request correlation.

Every request gets an ID, taken from the X-Request-ID header or freshly
generated, which is exposed to error handlers through request.state and
to the JSON log formatter through a context variable.
"""

import uuid
from contextvars import ContextVar
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

# Context variable read by the JSON log formatter
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

REQUEST_ID_HEADER = "X-Request-ID"
MAX_REQUEST_ID_LENGTH = 128


def _accept_request_id(raw: str) -> bool:
    """Client-supplied IDs are kept only when short and printable."""
    return 0 < len(raw) <= MAX_REQUEST_ID_LENGTH and raw.isprintable()


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Middleware that attaches a request ID to each HTTP request.

    The ID is stored in request.state, bound to ``request_id_var`` for the
    duration of the request and echoed back in the X-Request-ID header.
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Response]
    ) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER, "").strip()
        if not _accept_request_id(request_id):
            request_id = str(uuid.uuid4())

        request.state.request_id = request_id
        token = request_id_var.set(request_id)

        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            request_id_var.reset(token)
