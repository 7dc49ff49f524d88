"""Operator routes with unrestricted visibility.

Every route requires X-Viewer-Role: admin.
"""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from tutor.api.deps import get_db
from tutor.auth.middleware import Viewer, get_admin_viewer
from tutor.responses import success_response
from tutor.services import questions as question_service

router = APIRouter(prefix="/admin")


@router.get("/questions")
def list_questions(
    viewer: Annotated[Viewer, Depends(get_admin_viewer)],
    db: Annotated[Session, Depends(get_db)],
    status: str | None = None,
    search: str | None = None,
    user_id: Annotated[int | None, Query(alias="userId")] = None,
    subject_id: Annotated[int | None, Query(alias="subjectId")] = None,
    include_deleted: Annotated[bool, Query(alias="includeDeleted")] = False,
    page: int = 1,
    limit: int = 20,
) -> dict:
    """All users' questions, newest first.

    search matches question text or subject name. Soft-deleted questions
    are listed only with includeDeleted=true.
    """
    result = question_service.admin_list_questions(
        db,
        status=status,
        search=search,
        user_id=user_id,
        subject_id=subject_id,
        include_deleted=include_deleted,
        page=page,
        limit=limit,
    )
    return success_response(result)


@router.get("/questions/{question_id}")
def get_question(
    question_id: UUID,
    viewer: Annotated[Viewer, Depends(get_admin_viewer)],
    db: Annotated[Session, Depends(get_db)],
) -> dict:
    """Any question with its conversation, including soft-deleted ones."""
    result = question_service.admin_get_question(db, question_id)
    return success_response(result)
