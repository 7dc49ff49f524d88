"""Question admission, reads, and the pending -> terminal transition.

Admission (ask_question):
1. Validate text and attachments (synchronous, nothing persisted on failure)
2. Resolve the subject
3. Non-binding quota pre-check, then store attachments
4. In one transaction: reserve usage, insert the question (status=pending)
5. After commit: dispatch the answer job and return immediately

If reservation or the insert fails after attachments were stored, the
stored blobs are deleted best-effort before the error propagates.

Visibility:
- A user reads their own questions; anyone holding the id may read an
  anonymous question; any other combination is indistinguishable from a
  missing question (NotFound).
- Admin reads are unrestricted by owner and include soft-deleted rows.

The terminal transition is a single conditional UPDATE guarded by
status = 'pending', so at most one terminal write can ever land.
"""

from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session, selectinload

from tutor.config import Settings, get_settings
from tutor.db.models import AiModel, ChatMessage, Question, QuestionStatus, Subject
from tutor.db.session import transaction
from tutor.db.types import utcnow
from tutor.errors import (
    ApiError,
    ApiErrorCode,
    FileRejectedError,
    InvalidRequestError,
    NotFoundError,
)
from tutor.logging import get_logger
from tutor.schemas.question import (
    AdminQuestionListOut,
    AttachmentOut,
    AttachmentUrlOut,
    ChatMessageOut,
    QuestionOut,
    QuestionStatsOut,
    QuestionWithMessagesOut,
)
from tutor.services.jobs import AnswerJob, JobDispatcher, JobKind
from tutor.services.ledger import UsageKind, UsageLedger
from tutor.storage import AttachmentStoreBase, StorageError, StoredAttachment

logger = get_logger(__name__)

# Magic bytes for content sniffing; types not listed are trusted by MIME type
MAGIC_BYTES = {
    "application/pdf": (b"%PDF-",),
    "image/png": (b"\x89PNG\r\n\x1a\n",),
    "image/jpeg": (b"\xff\xd8\xff",),
    "image/gif": (b"GIF87a", b"GIF89a"),
}

ADMIN_MAX_LIMIT = 100


@dataclass(frozen=True)
class UploadedFile:
    """An attachment as received by the transport layer."""

    filename: str
    content_type: str
    content: bytes


# =============================================================================
# Validation
# =============================================================================


def validate_question_text(text: str | None, settings: Settings) -> str:
    """Trim and bound-check question text.

    Raises:
        InvalidRequestError: E_QUESTION_INVALID if blank, too short, or too long.
    """
    text = (text or "").strip()
    if not text:
        raise InvalidRequestError(ApiErrorCode.E_QUESTION_INVALID, "Question cannot be empty")
    if len(text) < settings.question_min_chars:
        raise InvalidRequestError(
            ApiErrorCode.E_QUESTION_INVALID,
            f"Question must be at least {settings.question_min_chars} characters",
        )
    if len(text) > settings.question_max_chars:
        raise InvalidRequestError(
            ApiErrorCode.E_QUESTION_INVALID,
            f"Question exceeds {settings.question_max_chars} characters",
        )
    return text


def _matches_magic_bytes(content: bytes, content_type: str) -> bool:
    expected = MAGIC_BYTES.get(content_type)
    if expected is None:
        return True
    return content.startswith(expected)


def validate_attachments(files: list[UploadedFile], settings: Settings) -> None:
    """Check count, MIME allow-list, size ceiling, and content sniffing.

    Raises:
        InvalidRequestError: If too many files were sent.
        FileRejectedError: Naming the first offending file.
    """
    if len(files) > settings.attachment_max_files:
        raise InvalidRequestError(
            ApiErrorCode.E_INVALID_REQUEST,
            f"At most {settings.attachment_max_files} files may be attached",
        )

    allowed = settings.allowed_mime_type_set
    for file in files:
        content_type = (file.content_type or "").split(";")[0].strip().lower()
        if content_type not in allowed:
            raise FileRejectedError(
                file.filename,
                "mime_type",
                f"type '{content_type or 'unknown'}' is not allowed",
            )
        if not file.content:
            raise FileRejectedError(file.filename, "empty", "file is empty")
        if len(file.content) > settings.attachment_max_bytes:
            raise FileRejectedError(
                file.filename,
                "too_large",
                f"size {len(file.content)} bytes exceeds maximum "
                f"{settings.attachment_max_bytes} bytes",
            )
        if not _matches_magic_bytes(file.content, content_type):
            raise FileRejectedError(
                file.filename,
                "content",
                f"content does not match declared type '{content_type}'",
            )


# =============================================================================
# Mapping
# =============================================================================


def question_to_out(question: Question) -> QuestionOut:
    return QuestionOut(
        question_id=question.question_id,
        subject_id=question.subject_id,
        subject_name=question.subject.name,
        user_id=question.user_id,
        question_text=question.question_text,
        status=question.status,
        answer_text=question.answer_text,
        error_message=question.error_message,
        processing_time_ms=question.processing_time_ms,
        token_usage=question.token_usage,
        file_attachments=[AttachmentOut.model_validate(a) for a in question.file_attachments or []],
        ai_model_id=question.ai_model_id,
        follow_up_in_flight=question.active_followup_id is not None,
        created_at=question.created_at,
        updated_at=question.updated_at,
        deleted_at=question.deleted_at,
    )


def message_to_out(question_id: UUID, message: ChatMessage) -> ChatMessageOut:
    return ChatMessageOut(
        message_id=message.message_id,
        question_id=question_id,
        role=message.role,
        content=message.content,
        ai_model_id=message.ai_model_id,
        token_usage=message.token_usage,
        processing_time_ms=message.processing_time_ms,
        error_code=message.error_code,
        created_at=message.created_at,
    )


def question_with_messages_to_out(question: Question) -> QuestionWithMessagesOut:
    return QuestionWithMessagesOut(
        **question_to_out(question).model_dump(),
        messages=[message_to_out(question.question_id, m) for m in question.messages],
    )


# =============================================================================
# Admission
# =============================================================================


def _default_model_id(db: Session) -> int | None:
    return db.execute(
        select(AiModel.id)
        .where(AiModel.is_default.is_(True), AiModel.is_available.is_(True))
        .order_by(AiModel.id)
        .limit(1)
    ).scalar_one_or_none()


def _discard_attachments(store: AttachmentStoreBase, stored: list[StoredAttachment]) -> None:
    for attachment in stored:
        store.delete(attachment.access_key)
    if stored:
        logger.info("attachments_discarded", count=len(stored))


def ask_question(
    db: Session,
    *,
    ledger: UsageLedger,
    store: AttachmentStoreBase,
    dispatcher: JobDispatcher,
    user_id: int | None,
    subject_id: int,
    text: str | None,
    files: list[UploadedFile] | None = None,
    request_id: str | None = None,
    settings: Settings | None = None,
) -> QuestionOut:
    """Admit a question and hand it to the answer worker pool.

    Never blocks on inference; the returned question is pending.

    Args:
        db: Database session.
        ledger: Usage ledger for quota reservation.
        store: Attachment store.
        dispatcher: Job dispatcher, called after commit.
        user_id: Owner, or None for an anonymous question.
        subject_id: Subject the question is asked against.
        text: Question text.
        files: Attachments.
        request_id: Request id forwarded into the job for log correlation.
        settings: Settings override for tests.

    Returns:
        The admitted question.

    Raises:
        ApiError: E_UNAUTHENTICATED if anonymous questions are disabled.
        InvalidRequestError: E_QUESTION_INVALID / E_INVALID_REQUEST.
        FileRejectedError: An attachment failed validation.
        NotFoundError: E_SUBJECT_NOT_FOUND.
        QuotaExceededError: The plan has no capacity left.
        ApiError: E_STORAGE_ERROR if an attachment could not be stored.
    """
    settings = settings or get_settings()
    files = files or []

    if user_id is None and not settings.allow_anonymous_questions:
        raise ApiError(ApiErrorCode.E_UNAUTHENTICATED, "Authentication required")

    text = validate_question_text(text, settings)
    validate_attachments(files, settings)

    subject = db.get(Subject, subject_id)
    if subject is None or subject.deleted_at is not None:
        raise NotFoundError(ApiErrorCode.E_SUBJECT_NOT_FOUND, "Subject not found")

    units = {UsageKind.QUESTIONS: 1, UsageKind.FILE_UPLOADS: len(files)}
    if user_id is not None:
        ledger.check(db, user_id, units)
    # End the read transaction before talking to storage
    db.rollback()

    stored: list[StoredAttachment] = []
    try:
        for file in files:
            stored.append(store.store(file.filename, file.content, file.content_type))
    except StorageError as e:
        logger.error("attachment_store_failed", error_code=e.code, stored_count=len(stored))
        _discard_attachments(store, stored)
        raise ApiError(ApiErrorCode.E_STORAGE_ERROR, "Failed to store attachment") from e

    try:
        with transaction(db):
            if user_id is not None:
                ledger.reserve(db, user_id, units)
            question = Question(
                subject_id=subject_id,
                user_id=user_id,
                question_text=text,
                status=QuestionStatus.pending.value,
                file_attachments=[
                    {
                        "name": file.filename,
                        "mime_type": attachment.mime_type,
                        "size": attachment.size,
                        "access_key": attachment.access_key,
                    }
                    for file, attachment in zip(files, stored, strict=True)
                ],
                ai_model_id=_default_model_id(db),
            )
            db.add(question)
            db.flush()
            result = question_to_out(question)
    except Exception:
        _discard_attachments(store, stored)
        raise

    logger.info(
        "question_admitted",
        question_id=str(result.question_id),
        user_id=user_id,
        subject_id=subject_id,
        question_chars=len(text),
        attachment_count=len(stored),
    )

    dispatcher.dispatch(
        AnswerJob(
            kind=JobKind.INITIAL_QUESTION,
            question_id=result.question_id,
            request_id=request_id,
        )
    )
    return result


# =============================================================================
# Reads
# =============================================================================


def load_question(
    db: Session, question_id: UUID, *, include_deleted: bool = False
) -> Question | None:
    """Fetch a question by public id, with its subject loaded."""
    query = (
        select(Question)
        .options(selectinload(Question.subject))
        .where(Question.question_id == question_id)
    )
    if not include_deleted:
        query = query.where(Question.deleted_at.is_(None))
    return db.execute(query).scalar_one_or_none()


def can_read_question(question: Question, viewer_id: int | None) -> bool:
    """Owners read their questions; anonymous questions are readable by id."""
    if question.user_id is None:
        return True
    return viewer_id is not None and question.user_id == viewer_id


def get_readable_question(db: Session, question_id: UUID, viewer_id: int | None) -> Question:
    """Load a question the viewer may read.

    Raises:
        NotFoundError: If missing, soft-deleted, or not readable.
    """
    question = load_question(db, question_id)
    if question is None or not can_read_question(question, viewer_id):
        raise NotFoundError(ApiErrorCode.E_QUESTION_NOT_FOUND, "Question not found")
    return question


def get_question(
    db: Session,
    question_id: UUID,
    viewer_id: int | None,
    *,
    include_messages: bool = False,
) -> QuestionOut | QuestionWithMessagesOut:
    """GetQuestion / GetQuestionWithMessages."""
    question = get_readable_question(db, question_id, viewer_id)
    if include_messages:
        return question_with_messages_to_out(question)
    return question_to_out(question)


def get_user_questions(db: Session, user_id: int) -> list[QuestionOut]:
    """All of a user's live questions, newest first."""
    questions = (
        db.execute(
            select(Question)
            .options(selectinload(Question.subject))
            .where(Question.user_id == user_id, Question.deleted_at.is_(None))
            .order_by(Question.created_at.desc(), Question.id.desc())
        )
        .scalars()
        .all()
    )
    return [question_to_out(q) for q in questions]


def get_question_stats(db: Session, user_id: int) -> QuestionStatsOut:
    """Per-status counts over a user's live questions."""
    rows = db.execute(
        select(Question.status, func.count())
        .where(Question.user_id == user_id, Question.deleted_at.is_(None))
        .group_by(Question.status)
    ).all()
    counts = {status: count for status, count in rows}
    return QuestionStatsOut(
        total=sum(counts.values()),
        answered=counts.get(QuestionStatus.answered.value, 0),
        pending=counts.get(QuestionStatus.pending.value, 0),
        failed=counts.get(QuestionStatus.failed.value, 0),
    )


def get_attachment_url(
    db: Session,
    store: AttachmentStoreBase,
    question_id: UUID,
    access_key: str,
    viewer_id: int | None,
) -> AttachmentUrlOut:
    """Resolve an attachment of a readable question to a fetchable URL.

    Raises:
        NotFoundError: If the question is not readable or the key is not one of its attachments.
        ApiError: E_STORAGE_ERROR if the store cannot sign the URL.
    """
    question = get_readable_question(db, question_id, viewer_id)
    keys = {a["access_key"] for a in question.file_attachments or []}
    if access_key not in keys:
        raise NotFoundError(ApiErrorCode.E_ATTACHMENT_NOT_FOUND, "Attachment not found")

    try:
        url = store.resolve(access_key)
    except StorageError as e:
        logger.error("attachment_resolve_failed", error_code=e.code)
        raise ApiError(ApiErrorCode.E_STORAGE_ERROR, "Failed to resolve attachment") from e

    return AttachmentUrlOut(access_key=access_key, url=url)


# =============================================================================
# Admin
# =============================================================================


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def admin_list_questions(
    db: Session,
    *,
    status: str | None = None,
    search: str | None = None,
    user_id: int | None = None,
    subject_id: int | None = None,
    include_deleted: bool = False,
    page: int = 1,
    limit: int = 20,
) -> AdminQuestionListOut:
    """All questions matching the filters, newest first, one page at a time.

    search matches question text or subject name, case-insensitively.

    Raises:
        InvalidRequestError: On an unknown status or out-of-range paging.
    """
    if status is not None and status not in {s.value for s in QuestionStatus}:
        raise InvalidRequestError(ApiErrorCode.E_INVALID_REQUEST, f"Unknown status '{status}'")
    if page < 1 or limit < 1 or limit > ADMIN_MAX_LIMIT:
        raise InvalidRequestError(
            ApiErrorCode.E_INVALID_REQUEST,
            f"page must be >= 1 and limit between 1 and {ADMIN_MAX_LIMIT}",
        )

    filters = []
    if status is not None:
        filters.append(Question.status == status)
    if user_id is not None:
        filters.append(Question.user_id == user_id)
    if subject_id is not None:
        filters.append(Question.subject_id == subject_id)
    if not include_deleted:
        filters.append(Question.deleted_at.is_(None))
    if search and search.strip():
        pattern = f"%{_escape_like(search.strip())}%"
        filters.append(
            or_(
                Question.question_text.ilike(pattern, escape="\\"),
                Subject.name.ilike(pattern, escape="\\"),
            )
        )

    base = select(Question).join(Subject, Subject.id == Question.subject_id).where(*filters)
    total = db.execute(select(func.count()).select_from(base.subquery())).scalar_one()
    questions = (
        db.execute(
            base.options(selectinload(Question.subject))
            .order_by(Question.created_at.desc(), Question.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        .scalars()
        .all()
    )

    return AdminQuestionListOut(
        questions=[question_to_out(q) for q in questions],
        total=total,
        page=page,
        limit=limit,
    )


def admin_get_question(db: Session, question_id: UUID) -> QuestionWithMessagesOut:
    """Full detail of any question, soft-deleted included.

    Raises:
        NotFoundError: If no question has this id.
    """
    question = load_question(db, question_id, include_deleted=True)
    if question is None:
        raise NotFoundError(ApiErrorCode.E_QUESTION_NOT_FOUND, "Question not found")
    return question_with_messages_to_out(question)


# =============================================================================
# State machine
# =============================================================================


def transition_if_pending(
    db: Session,
    question_row_id: int,
    status: QuestionStatus,
    *,
    answer_text: str | None = None,
    error_message: str | None = None,
    token_usage: int | None = None,
    processing_time_ms: int | None = None,
    ai_model_id: int | None = None,
) -> bool:
    """Move a pending question to a terminal state.

    Returns:
        True if this call performed the transition; False if the question
        was no longer pending (the write is a no-op and is logged).

    Raises:
        ValueError: If the terminal payload does not match the status.
    """
    if status == QuestionStatus.answered and not answer_text:
        raise ValueError("answered transition requires answer_text")
    if status == QuestionStatus.failed and not error_message:
        raise ValueError("failed transition requires error_message")
    if status == QuestionStatus.pending:
        raise ValueError("pending is not a terminal state")

    values: dict = {
        "status": status.value,
        "answer_text": answer_text if status == QuestionStatus.answered else None,
        "error_message": error_message if status == QuestionStatus.failed else None,
        "token_usage": token_usage,
        "processing_time_ms": processing_time_ms,
        "updated_at": utcnow(),
    }
    if ai_model_id is not None:
        values["ai_model_id"] = ai_model_id

    result = db.execute(
        update(Question)
        .where(Question.id == question_row_id, Question.status == QuestionStatus.pending.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        logger.info(
            "question_transition_skipped",
            question_row_id=question_row_id,
            attempted_status=status.value,
        )
        return False
    return True
