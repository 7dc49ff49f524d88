"""FastAPI dependencies for route handlers.

The long-lived collaborators are built once in the app lifespan and read
from app.state here.
"""

from fastapi import Request

from tutor.db.session import get_db
from tutor.services.jobs import JobDispatcher
from tutor.services.ledger import UsageLedger
from tutor.storage import AttachmentStoreBase

__all__ = [
    "get_attachment_store",
    "get_db",
    "get_dispatcher",
    "get_ledger",
    "get_request_id",
]


def get_ledger(request: Request) -> UsageLedger:
    return request.app.state.ledger


def get_attachment_store(request: Request) -> AttachmentStoreBase:
    return request.app.state.attachment_store


def get_dispatcher(request: Request) -> JobDispatcher:
    return request.app.state.dispatcher


def get_request_id(request: Request) -> str | None:
    """Request id assigned by RequestIDMiddleware, forwarded into jobs."""
    return getattr(request.state, "request_id", None)
