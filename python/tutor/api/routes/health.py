"""Health check endpoints."""

from fastapi import APIRouter

from tutor.responses import success_response

router = APIRouter()


@router.get("/health")
async def health_check() -> dict:
    """Liveness only; does not touch the database, broker, or providers."""
    return success_response({"status": "ok"})
