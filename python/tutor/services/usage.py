"""Usage read model for the caller's current billing period."""

from sqlalchemy.orm import Session

from tutor.schemas.question import UsageOut
from tutor.services.ledger import UsageLedger


def get_usage(db: Session, ledger: UsageLedger, user_id: int) -> UsageOut:
    """Counters and limits for the period containing now. -1 means unlimited."""
    snapshot = ledger.snapshot(db, user_id)
    return UsageOut(
        plan=snapshot.plan_name,
        period_start=snapshot.period.start,
        period_end=snapshot.period.end,
        questions_used=snapshot.questions_used,
        questions_limit=snapshot.limits.max_questions,
        chats_used=snapshot.chats_used,
        chats_limit=snapshot.limits.max_chats,
        file_uploads_used=snapshot.file_uploads_used,
        file_uploads_limit=snapshot.limits.max_file_uploads,
        credits_consumed=snapshot.credits_consumed,
    )
