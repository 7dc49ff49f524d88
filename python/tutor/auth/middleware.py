"""Gateway identity for FastAPI.

Authentication happens upstream. The gateway forwards:
- X-Viewer-Id: integer user id (absent for anonymous callers)
- X-Viewer-Role: "user" (default) or "admin"
- X-Tutor-Internal: shared secret, required in staging/prod

Provides:
- GatewayAuthMiddleware: verifies the internal header and attaches the viewer
- get_viewer / get_optional_viewer / get_admin_viewer: route dependencies
"""

import hmac
from dataclasses import dataclass

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from tutor.errors import ERROR_CODE_TO_STATUS, ApiError, ApiErrorCode, ForbiddenError
from tutor.logging import get_logger
from tutor.responses import error_response

logger = get_logger(__name__)

VIEWER_ID_HEADER = "x-viewer-id"
VIEWER_ROLE_HEADER = "x-viewer-role"
INTERNAL_HEADER = "x-tutor-internal"

# Paths reachable without the internal header
PUBLIC_PATHS = {"/health", "/docs", "/redoc", "/openapi.json"}

ROLE_USER = "user"
ROLE_ADMIN = "admin"


@dataclass(frozen=True)
class Viewer:
    """Caller identity as asserted by the gateway."""

    user_id: int
    role: str = ROLE_USER

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


class GatewayAuthMiddleware(BaseHTTPMiddleware):
    """Attach request.state.viewer from gateway headers.

    Order of checks:
    1. Skip if public path
    2. Verify internal header (if required)
    3. Parse viewer headers; a malformed id is rejected, a missing one
       leaves the request anonymous (routes decide whether that is allowed)
    """

    def __init__(
        self,
        app: ASGIApp,
        requires_internal_header: bool = False,
        internal_secret: str | None = None,
    ):
        super().__init__(app)
        self.requires_internal_header = requires_internal_header
        self.internal_secret = internal_secret

    async def dispatch(self, request: Request, call_next):
        request.state.viewer = None
        if request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        if self.requires_internal_header and not self._internal_header_ok(request):
            return _error(ApiErrorCode.E_INTERNAL_ONLY, "Internal API access required")

        raw_id = request.headers.get(VIEWER_ID_HEADER)
        if raw_id is not None:
            try:
                user_id = int(raw_id)
            except ValueError:
                logger.warning("auth_failure", reason="invalid_viewer_id")
                return _error(ApiErrorCode.E_UNAUTHENTICATED, "Invalid viewer identity")

            role = (request.headers.get(VIEWER_ROLE_HEADER) or ROLE_USER).strip().lower()
            if role not in (ROLE_USER, ROLE_ADMIN):
                logger.warning("auth_failure", reason="invalid_viewer_role")
                return _error(ApiErrorCode.E_UNAUTHENTICATED, "Invalid viewer role")

            request.state.viewer = Viewer(user_id=user_id, role=role)

        return await call_next(request)

    def _internal_header_ok(self, request: Request) -> bool:
        header_value = request.headers.get(INTERNAL_HEADER)
        if header_value is None:
            logger.warning("auth_failure", reason="internal_header_missing")
            return False
        if not self.internal_secret:
            logger.error("auth_failure", reason="internal_secret_not_configured")
            return False
        if not hmac.compare_digest(header_value.encode(), self.internal_secret.encode()):
            logger.warning("auth_failure", reason="internal_header_mismatch")
            return False
        return True


def _error(code: ApiErrorCode, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=ERROR_CODE_TO_STATUS[code], content=error_response(code, message)
    )


def get_optional_viewer(request: Request) -> Viewer | None:
    """Viewer if the gateway identified one, else None."""
    return getattr(request.state, "viewer", None)


def get_viewer(request: Request) -> Viewer:
    """FastAPI dependency for routes that require an identified caller.

    Raises:
        ApiError: E_UNAUTHENTICATED if the request is anonymous.
    """
    viewer = get_optional_viewer(request)
    if viewer is None:
        raise ApiError(ApiErrorCode.E_UNAUTHENTICATED, "Authentication required")
    return viewer


def get_admin_viewer(request: Request) -> Viewer:
    """FastAPI dependency for /admin routes.

    Raises:
        ApiError: E_UNAUTHENTICATED if anonymous.
        ForbiddenError: If the caller is not an admin.
    """
    viewer = get_viewer(request)
    if not viewer.is_admin:
        raise ForbiddenError(ApiErrorCode.E_FORBIDDEN, "Admin access required")
    return viewer
