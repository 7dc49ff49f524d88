"""Caller identity forwarded by the upstream gateway."""

from tutor.auth.middleware import (
    GatewayAuthMiddleware,
    Viewer,
    get_admin_viewer,
    get_optional_viewer,
    get_viewer,
)

__all__ = [
    "GatewayAuthMiddleware",
    "Viewer",
    "get_admin_viewer",
    "get_optional_viewer",
    "get_viewer",
]
