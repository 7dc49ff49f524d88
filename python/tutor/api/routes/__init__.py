"""API route definitions.

Uses a factory pattern to avoid import-time settings loading.
This allows tests to import modules without requiring all environment
variables to be configured upfront.
"""

from fastapi import APIRouter

from tutor.api.routes.admin import router as admin_router
from tutor.api.routes.health import router as health_router
from tutor.api.routes.questions import router as questions_router
from tutor.api.routes.usage import router as usage_router


def create_api_router() -> APIRouter:
    """Create and configure the API router."""
    api_router = APIRouter()
    api_router.include_router(health_router, tags=["health"])
    api_router.include_router(questions_router, tags=["questions"])
    api_router.include_router(usage_router, tags=["usage"])
    api_router.include_router(admin_router, tags=["admin"])
    return api_router


__all__ = ["create_api_router"]
