"""Questions, conversation, model registry, plans and usage ledger

Revision ID: 0001
Revises:
Create Date: 2026-10-18

Creates subjects, ai_models, subscription_packages, user_subscriptions,
usage_records, usage_commits, questions and chat_messages.
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.TIMESTAMP(timezone=True), nullable=True)
    return sa.Column(
        name,
        sa.TIMESTAMP(timezone=True),
        server_default=sa.text("now()"),
        nullable=False,
    )


def upgrade() -> None:
    # ==========================================================================
    # subjects
    # ==========================================================================
    op.create_table(
        "subjects",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("ai_prompt", sa.Text(), nullable=True),
        _timestamp("created_at"),
        _timestamp("deleted_at", nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )

    # ==========================================================================
    # ai_models
    # ==========================================================================
    op.create_table(
        "ai_models",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("provider", sa.Text(), nullable=False),
        sa.Column("model_name", sa.Text(), nullable=False),
        sa.Column("is_default", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("is_available", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("input_cost_per_1k", sa.Float(), nullable=True),
        sa.Column("output_cost_per_1k", sa.Float(), nullable=True),
        sa.Column("minimum_credits", sa.Float(), nullable=True),
        sa.Column("model_multiplier", sa.Float(), server_default="1", nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "provider IN ('openai', 'anthropic', 'gemini')",
            name="ck_ai_models_provider",
        ),
        sa.UniqueConstraint("provider", "model_name", name="uix_ai_models_provider_model_name"),
    )

    # ==========================================================================
    # subscription_packages / user_subscriptions
    # ==========================================================================
    op.create_table(
        "subscription_packages",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("max_questions_per_month", sa.Integer(), nullable=True),
        sa.Column("max_chats_per_month", sa.Integer(), nullable=True),
        sa.Column("max_file_uploads", sa.Integer(), nullable=True),
        sa.Column("credits_allocation", sa.Integer(), server_default="0", nullable=False),
        sa.Column("credit_multiplier", sa.Float(), server_default="1", nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "user_subscriptions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("package_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.Text(), server_default="active", nullable=False),
        sa.Column("current_period_start", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("current_period_end", sa.TIMESTAMP(timezone=True), nullable=False),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["package_id"],
            ["subscription_packages.id"],
            ondelete="RESTRICT",
        ),
        sa.CheckConstraint(
            "status IN ('active', 'trialing', 'past_due', 'canceled', 'expired')",
            name="ck_user_subscriptions_status",
        ),
        sa.CheckConstraint(
            "current_period_end > current_period_start",
            name="ck_user_subscriptions_period_order",
        ),
    )
    op.create_index("idx_user_subscriptions_user", "user_subscriptions", ["user_id"])

    # ==========================================================================
    # usage_records / usage_commits
    # ==========================================================================
    op.create_table(
        "usage_records",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("period_start", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("period_end", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("questions_used", sa.Integer(), server_default="0", nullable=False),
        sa.Column("chats_used", sa.Integer(), server_default="0", nullable=False),
        sa.Column("file_uploads_used", sa.Integer(), server_default="0", nullable=False),
        sa.Column("credits_consumed", sa.Numeric(14, 4), server_default="0", nullable=False),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "period_start", name="uix_usage_records_user_period"),
        sa.CheckConstraint("questions_used >= 0", name="ck_usage_records_questions_nonneg"),
        sa.CheckConstraint("chats_used >= 0", name="ck_usage_records_chats_nonneg"),
        sa.CheckConstraint("file_uploads_used >= 0", name="ck_usage_records_uploads_nonneg"),
        sa.CheckConstraint("credits_consumed >= 0", name="ck_usage_records_credits_nonneg"),
    )

    op.create_table(
        "usage_commits",
        sa.Column("job_id", sa.Text(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("usage_record_id", sa.Integer(), nullable=False),
        sa.Column("credits", sa.Numeric(14, 4), nullable=False),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("job_id"),
        sa.ForeignKeyConstraint(
            ["usage_record_id"],
            ["usage_records.id"],
            ondelete="CASCADE",
        ),
    )

    # ==========================================================================
    # questions
    # ==========================================================================
    op.create_table(
        "questions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("question_id", sa.UUID(), nullable=False),
        sa.Column("subject_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("question_text", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), server_default="pending", nullable=False),
        sa.Column("answer_text", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("processing_time_ms", sa.Integer(), nullable=True),
        sa.Column("token_usage", sa.Integer(), nullable=True),
        sa.Column("file_attachments", sa.JSON(), nullable=False),
        sa.Column("ai_model_id", sa.Integer(), nullable=True),
        sa.Column("active_followup_id", sa.UUID(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        _timestamp("deleted_at", nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("question_id"),
        sa.ForeignKeyConstraint(["subject_id"], ["subjects.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["ai_model_id"], ["ai_models.id"], ondelete="SET NULL"),
        sa.CheckConstraint(
            "status IN ('pending', 'answered', 'failed')",
            name="ck_questions_status",
        ),
        # A terminal question carries exactly one of answer / error
        sa.CheckConstraint(
            "(status = 'answered' AND answer_text IS NOT NULL)"
            " OR (status != 'answered' AND answer_text IS NULL)",
            name="ck_questions_answer_iff_answered",
        ),
        sa.CheckConstraint(
            "(status = 'failed' AND error_message IS NOT NULL)"
            " OR (status != 'failed' AND error_message IS NULL)",
            name="ck_questions_error_iff_failed",
        ),
        sa.CheckConstraint(
            "active_followup_id IS NULL OR status = 'answered'",
            name="ck_questions_followup_only_answered",
        ),
    )
    op.create_index("idx_questions_user_created", "questions", ["user_id", "created_at"])
    op.create_index("idx_questions_status_created", "questions", ["status", "created_at"])

    # ==========================================================================
    # chat_messages
    # ==========================================================================
    op.create_table(
        "chat_messages",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("message_id", sa.UUID(), nullable=False),
        sa.Column("question_row_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("role", sa.Text(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("ai_model_id", sa.Integer(), nullable=True),
        sa.Column("token_usage", sa.Integer(), nullable=True),
        sa.Column("processing_time_ms", sa.Integer(), nullable=True),
        sa.Column("error_code", sa.Text(), nullable=True),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("message_id"),
        sa.ForeignKeyConstraint(["question_row_id"], ["questions.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["ai_model_id"], ["ai_models.id"], ondelete="SET NULL"),
        sa.CheckConstraint("role IN ('user', 'assistant')", name="ck_chat_messages_role"),
        sa.CheckConstraint(
            "(error_code IS NULL OR role = 'assistant')",
            name="ck_chat_messages_error_only_assistant",
        ),
    )
    op.create_index(
        "idx_chat_messages_question_created",
        "chat_messages",
        ["question_row_id", "created_at", "id"],
    )


def downgrade() -> None:
    op.drop_table("chat_messages")
    op.drop_table("questions")
    op.drop_table("usage_commits")
    op.drop_table("usage_records")
    op.drop_table("user_subscriptions")
    op.drop_table("subscription_packages")
    op.drop_table("ai_models")
    op.drop_table("subjects")
