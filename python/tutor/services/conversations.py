"""Follow-up conversation under an answered question.

At most one follow-up is in flight per question. The slot is
questions.active_followup_id, claimed with a conditional UPDATE:

    UPDATE questions SET active_followup_id = :message_id
     WHERE id = :id AND status = 'answered'
       AND active_followup_id IS NULL AND deleted_at IS NULL

Exactly one of any number of concurrent SendFollowUp calls can match. The
loser re-reads the status to tell ConversationNotReady from
ConversationBusy. Claim, chat-unit reservation, and the user message insert
share one transaction, so a quota rejection also releases the claim.

The slot is released by the answer worker (or the stale-job sweeper) with a
conditional UPDATE keyed on the same message id, in the same transaction
that appends the assistant reply, so every user message is followed by
exactly one assistant message.
"""

from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from tutor.config import Settings, get_settings
from tutor.db.models import AiModel, ChatMessage, MessageRole, Question, QuestionStatus
from tutor.db.session import transaction
from tutor.db.types import utcnow
from tutor.errors import (
    ApiErrorCode,
    ConversationBusyError,
    ConversationNotReadyError,
    InvalidRequestError,
    NotFoundError,
)
from tutor.logging import get_logger
from tutor.schemas.question import ChatMessageOut
from tutor.services.jobs import AnswerJob, JobDispatcher, JobKind
from tutor.services.ledger import UsageKind, UsageLedger
from tutor.services.llm.types import Turn
from tutor.services.questions import get_readable_question, load_question, message_to_out

logger = get_logger(__name__)

APOLOGY_MESSAGE = (
    "I apologize, but I encountered an error processing your message. Please try again."
)


def validate_message(content: str | None, settings: Settings) -> str:
    """Trim and bound-check a follow-up message.

    Raises:
        InvalidRequestError: E_MESSAGE_INVALID if blank or too long.
    """
    content = (content or "").strip()
    if not content:
        raise InvalidRequestError(ApiErrorCode.E_MESSAGE_INVALID, "Message cannot be empty")
    if len(content) > settings.message_max_chars:
        raise InvalidRequestError(
            ApiErrorCode.E_MESSAGE_INVALID,
            f"Message exceeds {settings.message_max_chars} characters",
        )
    return content


def send_follow_up(
    db: Session,
    *,
    ledger: UsageLedger,
    dispatcher: JobDispatcher,
    question_id: UUID,
    user_id: int,
    content: str | None,
    ai_model_id: int | None = None,
    request_id: str | None = None,
    settings: Settings | None = None,
) -> ChatMessageOut:
    """Accept a follow-up message and enqueue its answer.

    The user message is visible to readers as soon as this returns.

    Raises:
        InvalidRequestError: E_MESSAGE_INVALID, or E_INVALID_REQUEST for an unusable model.
        NotFoundError: If the question is missing or not owned by user_id.
        ConversationNotReadyError: If the question is not answered.
        ConversationBusyError: If another follow-up is still in flight.
        QuotaExceededError: If the plan has no chat units left.
    """
    settings = settings or get_settings()
    content = validate_message(content, settings)

    question = load_question(db, question_id)
    if question is None or question.user_id != user_id:
        raise NotFoundError(ApiErrorCode.E_QUESTION_NOT_FOUND, "Question not found")

    if ai_model_id is not None:
        model = db.get(AiModel, ai_model_id)
        if model is None or not model.is_available:
            raise InvalidRequestError(ApiErrorCode.E_INVALID_REQUEST, "AI model not available")

    message_id = uuid4()
    with transaction(db):
        claimed = db.execute(
            update(Question)
            .where(
                Question.id == question.id,
                Question.status == QuestionStatus.answered.value,
                Question.active_followup_id.is_(None),
                Question.deleted_at.is_(None),
            )
            .values(active_followup_id=message_id, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        ).rowcount

        if claimed == 0:
            current_status = db.execute(
                select(Question.status).where(Question.id == question.id)
            ).scalar_one()
            if current_status != QuestionStatus.answered.value:
                logger.info("follow_up_rejected", reason="not_ready", status=current_status)
                raise ConversationNotReadyError()
            logger.info("follow_up_rejected", reason="busy")
            raise ConversationBusyError()

        ledger.reserve(db, user_id, {UsageKind.CHATS: 1})

        message = ChatMessage(
            message_id=message_id,
            question_row_id=question.id,
            user_id=user_id,
            role=MessageRole.user.value,
            content=content,
            ai_model_id=ai_model_id,
        )
        db.add(message)
        db.flush()
        result = message_to_out(question.question_id, message)

    logger.info(
        "follow_up_accepted",
        question_id=str(question_id),
        message_id=str(message_id),
        message_chars=len(content),
    )

    dispatcher.dispatch(
        AnswerJob(
            kind=JobKind.FOLLOW_UP,
            question_id=question_id,
            message_id=message_id,
            request_id=request_id,
        )
    )
    return result


def list_messages(db: Session, question_id: UUID, viewer_id: int | None) -> list[ChatMessageOut]:
    """Conversation of a readable question, oldest first.

    Raises:
        NotFoundError: If the question is missing or not readable.
    """
    question = get_readable_question(db, question_id, viewer_id)
    return [message_to_out(question.question_id, m) for m in question.messages]


# =============================================================================
# Worker-side helpers
# =============================================================================


def conversation_history(messages: list[ChatMessage], current_message_id: UUID) -> list[Turn]:
    """Prior turns for a follow-up prompt.

    Failed exchanges (a user message closed by an apology) are dropped as a
    pair so the history keeps strict user/assistant alternation.
    """
    turns: list[Turn] = []
    for message in messages:
        if message.message_id == current_message_id:
            continue
        if message.error_code is not None:
            if turns and turns[-1].role == MessageRole.user.value:
                turns.pop()
            continue
        turns.append(Turn(role=message.role, content=message.content))
    return turns


def close_follow_up(
    db: Session,
    question_row_id: int,
    message_id: UUID,
    *,
    content: str,
    user_id: int | None,
    ai_model_id: int | None = None,
    token_usage: int | None = None,
    processing_time_ms: int | None = None,
    error_code: str | None = None,
) -> bool:
    """Release the in-flight slot and append the assistant reply.

    Both happen only if the slot still belongs to message_id, so a
    redelivered job or a racing sweeper cannot append a second reply.

    Returns:
        True if this call closed the follow-up.
    """
    released = db.execute(
        update(Question)
        .where(Question.id == question_row_id, Question.active_followup_id == message_id)
        .values(active_followup_id=None, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    ).rowcount
    if released == 0:
        logger.info("follow_up_close_skipped", message_id=str(message_id))
        return False

    db.add(
        ChatMessage(
            question_row_id=question_row_id,
            user_id=user_id,
            role=MessageRole.assistant.value,
            content=content,
            ai_model_id=ai_model_id,
            token_usage=token_usage,
            processing_time_ms=processing_time_ms,
            error_code=error_code,
        )
    )
    db.flush()
    return True
