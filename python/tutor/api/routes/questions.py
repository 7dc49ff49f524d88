"""Question and conversation routes.

Routes are transport-only:
- Extract the viewer from request.state
- Call exactly one service function
- Return success_response(...) or raise ApiError

No domain logic or raw DB access in routes.
"""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, UploadFile
from sqlalchemy.orm import Session

from tutor.api.deps import (
    get_attachment_store,
    get_db,
    get_dispatcher,
    get_ledger,
    get_request_id,
)
from tutor.auth.middleware import Viewer, get_optional_viewer, get_viewer
from tutor.errors import ApiErrorCode, InvalidRequestError
from tutor.responses import success_response
from tutor.schemas.question import SendFollowUpRequest
from tutor.services import conversations as conversation_service
from tutor.services import questions as question_service
from tutor.services.jobs import JobDispatcher
from tutor.services.ledger import UsageLedger
from tutor.storage import AttachmentStoreBase

router = APIRouter()


def _read_uploads(files: list[UploadFile] | None) -> list[question_service.UploadedFile]:
    uploads = []
    for f in files or []:
        # Browsers send an empty part when the file input is left blank
        if not f.filename:
            continue
        uploads.append(
            question_service.UploadedFile(
                filename=f.filename,
                content_type=f.content_type or "application/octet-stream",
                content=f.file.read(),
            )
        )
    return uploads


@router.post("/questions", status_code=201)
def ask_question(
    viewer: Annotated[Viewer | None, Depends(get_optional_viewer)],
    db: Annotated[Session, Depends(get_db)],
    ledger: Annotated[UsageLedger, Depends(get_ledger)],
    store: Annotated[AttachmentStoreBase, Depends(get_attachment_store)],
    dispatcher: Annotated[JobDispatcher, Depends(get_dispatcher)],
    request_id: Annotated[str | None, Depends(get_request_id)],
    subject_id: Annotated[int, Form(alias="subjectId")],
    question: Annotated[str | None, Form()] = None,
    files: Annotated[list[UploadFile] | None, File()] = None,
) -> dict:
    """Admit a question and enqueue its answer.

    Returns the pending question immediately; clients poll
    GET /questions/{questionId} until the status is terminal.
    """
    result = question_service.ask_question(
        db,
        ledger=ledger,
        store=store,
        dispatcher=dispatcher,
        user_id=viewer.user_id if viewer else None,
        subject_id=subject_id,
        text=question,
        files=_read_uploads(files),
        request_id=request_id,
    )
    return success_response(result)


@router.get("/questions")
def list_my_questions(
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
    mine: bool = True,
) -> dict:
    """The caller's own questions, newest first."""
    if not mine:
        raise InvalidRequestError(
            ApiErrorCode.E_INVALID_REQUEST, "Only mine=true is supported; use /admin/questions"
        )
    result = question_service.get_user_questions(db, viewer.user_id)
    return success_response(result)


@router.get("/questions/stats")
def question_stats(
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
) -> dict:
    result = question_service.get_question_stats(db, viewer.user_id)
    return success_response(result)


@router.get("/questions/{question_id}")
def get_question(
    question_id: UUID,
    viewer: Annotated[Viewer | None, Depends(get_optional_viewer)],
    db: Annotated[Session, Depends(get_db)],
    include: str | None = None,
) -> dict:
    """Get a question; include=messages adds the conversation.

    Returns 404 if the question does not exist or the viewer cannot read it
    (masks existence).
    """
    if include not in (None, "messages"):
        raise InvalidRequestError(ApiErrorCode.E_INVALID_REQUEST, f"Unknown include '{include}'")
    result = question_service.get_question(
        db,
        question_id,
        viewer.user_id if viewer else None,
        include_messages=include == "messages",
    )
    return success_response(result)


@router.get("/questions/{question_id}/messages")
def list_messages(
    question_id: UUID,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
) -> dict:
    """Conversation under a question, oldest first."""
    result = conversation_service.list_messages(db, question_id, viewer.user_id)
    return success_response(result)


@router.post("/questions/{question_id}/messages", status_code=201)
def send_follow_up(
    question_id: UUID,
    body: SendFollowUpRequest,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
    ledger: Annotated[UsageLedger, Depends(get_ledger)],
    dispatcher: Annotated[JobDispatcher, Depends(get_dispatcher)],
    request_id: Annotated[str | None, Depends(get_request_id)],
) -> dict:
    """Post a follow-up message; the assistant reply arrives asynchronously.

    Returns 409 E_CONVERSATION_NOT_READY unless the question is answered,
    and 409 E_CONVERSATION_BUSY while a previous follow-up is in flight.
    """
    result = conversation_service.send_follow_up(
        db,
        ledger=ledger,
        dispatcher=dispatcher,
        question_id=question_id,
        user_id=viewer.user_id,
        content=body.message,
        ai_model_id=body.ai_model_id,
        request_id=request_id,
    )
    return success_response(result)


@router.get("/questions/{question_id}/attachments/{access_key:path}")
def get_attachment_url(
    question_id: UUID,
    access_key: str,
    viewer: Annotated[Viewer | None, Depends(get_optional_viewer)],
    db: Annotated[Session, Depends(get_db)],
    store: Annotated[AttachmentStoreBase, Depends(get_attachment_store)],
) -> dict:
    """Resolve an attachment's access key to a short-lived URL."""
    result = question_service.get_attachment_url(
        db, store, question_id, access_key, viewer.user_id if viewer else None
    )
    return success_response(result)
