"""SQLAlchemy ORM models for the question-answering pipeline.

Tables:
- subjects: subject catalog (read-only here; managed by the admin backend)
- ai_models: inference model registry with credit pricing
- subscription_packages / user_subscriptions: plan limits and billing windows
- usage_records: per-user, per-billing-period counters (the usage ledger)
- usage_commits: idempotency markers for credit commits, keyed by job id
- questions: questions and their pending -> answered | failed state machine
- chat_messages: follow-up conversation under an answered question

Column types are portable (Uuid, JSON, UTCDateTime) so the same models run
against PostgreSQL in deployment and SQLite in tests. Migrations remain the
source of truth for the PostgreSQL schema.
"""

from datetime import datetime
from enum import Enum as PyEnum
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    Text,
    UniqueConstraint,
    Uuid,
    false,
    func,
    true,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from tutor.db.types import UTCDateTime, utcnow


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# =============================================================================
# Enums
# =============================================================================


class QuestionStatus(str, PyEnum):
    """Question lifecycle states.

    pending is the only initial state; answered and failed are terminal.
    """

    pending = "pending"
    answered = "answered"
    failed = "failed"


class MessageRole(str, PyEnum):
    """Roles for chat messages under a question."""

    user = "user"
    assistant = "assistant"


class SubscriptionStatus(str, PyEnum):
    """Subscription states mirrored from the billing provider."""

    active = "active"
    trialing = "trialing"
    past_due = "past_due"
    canceled = "canceled"
    expired = "expired"


ACTIVE_SUBSCRIPTION_STATUSES = (SubscriptionStatus.active.value, SubscriptionStatus.trialing.value)


# =============================================================================
# Catalog
# =============================================================================


class Subject(Base):
    """Subject model - the topic a question is asked against."""

    __tablename__ = "subjects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    ai_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, server_default=func.now(), nullable=False
    )
    deleted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class AiModel(Base):
    """Inference model registry.

    Pricing columns are credits per 1000 tokens. Null pricing falls back to
    the built-in pricing table keyed by model_name.
    """

    __tablename__ = "ai_models"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(Text, nullable=False)
    model_name: Mapped[str] = mapped_column(Text, nullable=False)
    is_default: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    is_available: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=true()
    )
    input_cost_per_1k: Mapped[float | None] = mapped_column(Float, nullable=True)
    output_cost_per_1k: Mapped[float | None] = mapped_column(Float, nullable=True)
    minimum_credits: Mapped[float | None] = mapped_column(Float, nullable=True)
    model_multiplier: Mapped[float] = mapped_column(
        Float, nullable=False, default=1.0, server_default="1"
    )

    __table_args__ = (
        CheckConstraint(
            "provider IN ('openai', 'anthropic', 'gemini')",
            name="ck_ai_models_provider",
        ),
        UniqueConstraint("provider", "model_name", name="uix_ai_models_provider_model_name"),
    )


# =============================================================================
# Plans and usage
# =============================================================================


class SubscriptionPackage(Base):
    """Subscription package - plan limits. A limit of -1 or NULL is unlimited."""

    __tablename__ = "subscription_packages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    max_questions_per_month: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_chats_per_month: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_file_uploads: Mapped[int | None] = mapped_column(Integer, nullable=True)
    credits_allocation: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    credit_multiplier: Mapped[float] = mapped_column(
        Float, nullable=False, default=1.0, server_default="1"
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=true()
    )


class UserSubscription(Base):
    """A user's subscription to a package and its current billing window."""

    __tablename__ = "user_subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    package_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("subscription_packages.id", ondelete="RESTRICT"), nullable=False
    )
    status: Mapped[str] = mapped_column(
        Text, nullable=False, default="active", server_default="active"
    )
    current_period_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    current_period_end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'trialing', 'past_due', 'canceled', 'expired')",
            name="ck_user_subscriptions_status",
        ),
        CheckConstraint(
            "current_period_end > current_period_start",
            name="ck_user_subscriptions_period_order",
        ),
        Index("idx_user_subscriptions_user", "user_id"),
    )

    package: Mapped["SubscriptionPackage"] = relationship("SubscriptionPackage")


class UsageRecord(Base):
    """Per-user usage counters for one billing period.

    A new row is created lazily when a new period starts; old rows are kept
    as history. Counters only grow within a period.
    """

    __tablename__ = "usage_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    period_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    period_end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    questions_used: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    chats_used: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    file_uploads_used: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    credits_consumed: Mapped[float] = mapped_column(
        Numeric(14, 4, asdecimal=False), nullable=False, default=0, server_default="0"
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("user_id", "period_start", name="uix_usage_records_user_period"),
        CheckConstraint("questions_used >= 0", name="ck_usage_records_questions_nonneg"),
        CheckConstraint("chats_used >= 0", name="ck_usage_records_chats_nonneg"),
        CheckConstraint("file_uploads_used >= 0", name="ck_usage_records_uploads_nonneg"),
        CheckConstraint("credits_consumed >= 0", name="ck_usage_records_credits_nonneg"),
    )


class UsageCommit(Base):
    """Marker row proving credits for a job were committed exactly once."""

    __tablename__ = "usage_commits"

    job_id: Mapped[str] = mapped_column(Text, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    usage_record_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("usage_records.id", ondelete="CASCADE"), nullable=False
    )
    credits: Mapped[float] = mapped_column(Numeric(14, 4, asdecimal=False), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, server_default=func.now(), nullable=False
    )


# =============================================================================
# Questions and conversation
# =============================================================================


class Question(Base):
    """Question model - a user question and its answering lifecycle.

    The integer id is internal only; clients see question_id (UUID).
    answer_text is set iff status is answered, error_message iff failed.
    active_followup_id holds the user message whose follow-up is in flight.
    """

    __tablename__ = "questions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    question_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, unique=True, default=uuid4)
    subject_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("subjects.id", ondelete="RESTRICT"), nullable=False
    )
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    question_text: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(
        Text, nullable=False, default="pending", server_default="pending"
    )
    answer_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    processing_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    token_usage: Mapped[int | None] = mapped_column(Integer, nullable=True)
    file_attachments: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    ai_model_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("ai_models.id", ondelete="SET NULL"), nullable=True
    )
    active_followup_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, server_default=func.now(), nullable=False
    )
    deleted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'answered', 'failed')",
            name="ck_questions_status",
        ),
        CheckConstraint(
            "(status = 'answered' AND answer_text IS NOT NULL)"
            " OR (status != 'answered' AND answer_text IS NULL)",
            name="ck_questions_answer_iff_answered",
        ),
        CheckConstraint(
            "(status = 'failed' AND error_message IS NOT NULL)"
            " OR (status != 'failed' AND error_message IS NULL)",
            name="ck_questions_error_iff_failed",
        ),
        CheckConstraint(
            "active_followup_id IS NULL OR status = 'answered'",
            name="ck_questions_followup_only_answered",
        ),
        Index("idx_questions_user_created", "user_id", "created_at"),
        Index("idx_questions_status_created", "status", "created_at"),
    )

    # Relationships
    subject: Mapped["Subject"] = relationship("Subject")
    ai_model: Mapped["AiModel | None"] = relationship("AiModel")
    messages: Mapped[list["ChatMessage"]] = relationship(
        "ChatMessage",
        back_populates="question",
        cascade="all, delete-orphan",
        order_by=lambda: (ChatMessage.created_at, ChatMessage.id),
    )


class ChatMessage(Base):
    """ChatMessage model - one turn of the follow-up conversation.

    Immutable after insert. Ordered by (created_at, id) within a question.
    error_code is set only on the assistant apology that closes a failed
    follow-up.
    """

    __tablename__ = "chat_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    message_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, unique=True, default=uuid4)
    question_row_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("questions.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    role: Mapped[str] = mapped_column(Text, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    ai_model_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("ai_models.id", ondelete="SET NULL"), nullable=True
    )
    token_usage: Mapped[int | None] = mapped_column(Integer, nullable=True)
    processing_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_code: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "role IN ('user', 'assistant')",
            name="ck_chat_messages_role",
        ),
        CheckConstraint(
            "(error_code IS NULL OR role = 'assistant')",
            name="ck_chat_messages_error_only_assistant",
        ),
        Index("idx_chat_messages_question_created", "question_row_id", "created_at", "id"),
    )

    # Relationships
    question: Mapped["Question"] = relationship("Question", back_populates="messages")
