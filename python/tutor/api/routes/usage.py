"""Usage routes."""

from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from tutor.api.deps import get_db, get_ledger
from tutor.auth.middleware import Viewer, get_viewer
from tutor.responses import success_response
from tutor.services.ledger import UsageLedger
from tutor.services.usage import get_usage

router = APIRouter()


@router.get("/usage")
def current_usage(
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
    ledger: Annotated[UsageLedger, Depends(get_ledger)],
) -> dict:
    """Counters and limits for the caller's current billing period.

    A limit of -1 means unlimited.
    """
    result = get_usage(db, ledger, viewer.user_id)
    return success_response(result)
