"""Stale answer job sweeper.

Run by Celery beat every minute. Bounds how long work can stay unfinished
when a job was lost (enqueue failure, worker crash past the broker's
redelivery):

- Questions still pending after STALE_JOB_AFTER_S are failed through the
  same conditional transition the worker uses.
- Follow-ups whose user message is older than the threshold and still hold
  the in-flight slot get the apology reply with error_code
  E_ORPHANED_PENDING, which releases the slot.

Each finalization is its own transaction, so a worker finishing the same
job concurrently either wins cleanly or turns the sweep into a no-op.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from tutor.celery import celery_app
from tutor.config import get_settings
from tutor.db.models import ChatMessage, Question, QuestionStatus
from tutor.db.session import get_session_factory, transaction
from tutor.db.types import utcnow
from tutor.logging import clear_task_context, configure_task_logging, get_logger
from tutor.services.conversations import APOLOGY_MESSAGE, close_follow_up
from tutor.services.llm.errors import ERROR_CLASS_TO_MESSAGE, LLMErrorClass
from tutor.services.questions import transition_if_pending

logger = get_logger(__name__)

ORPHANED_ERROR_CODE = "E_ORPHANED_PENDING"


@dataclass(frozen=True)
class SweepResult:
    questions_failed: int
    follow_ups_closed: int

    @property
    def total(self) -> int:
        return self.questions_failed + self.follow_ups_closed


def sweep_stale_jobs(
    session_factory: sessionmaker[Session] | None = None,
    stale_after_s: int | None = None,
    now: datetime | None = None,
) -> SweepResult:
    """Finalize questions and follow-ups that have been in flight too long.

    Args:
        session_factory: Defaults to the process-wide factory.
        stale_after_s: Defaults to settings.stale_job_after_s.
        now: Clock override for tests.

    Returns:
        Counts of rows this sweep finalized.
    """
    session_factory = session_factory or get_session_factory()
    if stale_after_s is None:
        stale_after_s = get_settings().stale_job_after_s
    now = now or utcnow()
    threshold = now - timedelta(seconds=stale_after_s)

    with session_factory() as db:
        questions_failed = _fail_stale_questions(db, threshold, now)
        follow_ups_closed = _close_stale_follow_ups(db, threshold, now)

    result = SweepResult(questions_failed, follow_ups_closed)
    if result.total > 0:
        logger.info(
            "sweeper_complete",
            questions_failed=questions_failed,
            follow_ups_closed=follow_ups_closed,
        )
    return result


def _fail_stale_questions(db: Session, threshold: datetime, now: datetime) -> int:
    rows = db.execute(
        select(Question.id, Question.created_at)
        .where(
            Question.status == QuestionStatus.pending.value,
            Question.created_at < threshold,
        )
        .order_by(Question.created_at)
    ).all()
    db.rollback()

    finalized = 0
    for row_id, created_at in rows:
        with transaction(db):
            done = transition_if_pending(
                db,
                row_id,
                QuestionStatus.failed,
                error_message=ERROR_CLASS_TO_MESSAGE[LLMErrorClass.TIMEOUT],
            )
        if done:
            finalized += 1
            logger.info(
                "sweeper_finalized",
                question_row_id=row_id,
                age_seconds=int((now - created_at).total_seconds()),
            )
    return finalized


def _close_stale_follow_ups(db: Session, threshold: datetime, now: datetime) -> int:
    rows = db.execute(
        select(Question.id, Question.user_id, ChatMessage.message_id, ChatMessage.created_at)
        .join(ChatMessage, ChatMessage.message_id == Question.active_followup_id)
        .where(ChatMessage.created_at < threshold)
        .order_by(ChatMessage.created_at)
    ).all()
    db.rollback()

    finalized = 0
    for row_id, user_id, message_id, created_at in rows:
        with transaction(db):
            done = close_follow_up(
                db,
                row_id,
                message_id,
                content=APOLOGY_MESSAGE,
                user_id=user_id,
                error_code=ORPHANED_ERROR_CODE,
            )
        if done:
            finalized += 1
            logger.info(
                "sweeper_finalized",
                message_id=str(message_id),
                age_seconds=int((now - created_at).total_seconds()),
            )
    return finalized


@celery_app.task(bind=True, max_retries=0, name="sweep_stale_jobs")
def sweep_stale_jobs_task(self) -> dict:
    """Beat entrypoint for sweep_stale_jobs."""
    configure_task_logging(task_name="sweep_stale_jobs", task_id=self.request.id)
    try:
        result = sweep_stale_jobs()
        return {
            "questions_failed": result.questions_failed,
            "follow_ups_closed": result.follow_ups_closed,
        }
    finally:
        clear_task_context()
