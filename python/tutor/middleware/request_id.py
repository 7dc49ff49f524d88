"""X-Request-ID middleware for request correlation and access logging.

An incoming X-Request-ID is kept when it is a UUID (normalized to lowercase
canonical form) or a short token of [A-Za-z0-9._-]; anything else is
replaced with a fresh UUID4. The id is stored on request.state, bound into
the logging context, echoed on the response, and forwarded into answer jobs.

Must be added last so it runs first and wraps the auth middleware; auth
rejections then still carry the header.
"""

import re
import time
import uuid

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from tutor.logging import clear_request_context, get_logger, set_request_context

REQUEST_ID_HEADER = "X-Request-ID"
MAX_REQUEST_ID_LENGTH = 128

_TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9._-]{1,128}$")

logger = get_logger(__name__)


def accept_request_id(value: str | None) -> str | None:
    """Normalized form of a client-supplied id, or None if unusable."""
    if not value or len(value.encode("utf-8")) > MAX_REQUEST_ID_LENGTH:
        return None
    if len(value) == 36:
        try:
            return str(uuid.UUID(value))
        except ValueError:
            pass
    if _TOKEN_PATTERN.match(value):
        return value
    return None


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Assigns a request id and emits one request_completed entry per request."""

    def __init__(self, app, log_requests: bool = True):
        super().__init__(app)
        self.log_requests = log_requests

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        started = time.monotonic()
        request_id = accept_request_id(request.headers.get(REQUEST_ID_HEADER)) or str(
            uuid.uuid4()
        )
        request.state.request_id = request_id
        set_request_context(request_id, path=request.url.path, method=request.method)

        try:
            response = await call_next(request)

            viewer = getattr(request.state, "viewer", None)
            if viewer is not None:
                set_request_context(request_id, user_id=str(viewer.user_id))

            response.headers[REQUEST_ID_HEADER] = request_id
            if self.log_requests:
                logger.info(
                    "request_completed",
                    status_code=response.status_code,
                    duration_ms=round((time.monotonic() - started) * 1000, 2),
                )
            return response
        except Exception:
            logger.exception("request_failed")
            raise
        finally:
            clear_request_context()
