"""Question, conversation, and usage Pydantic schemas.

Field names are snake_case in Python and camelCase on the wire
(questionId, subjectId, aiModelId, ...). Routes dump with by_alias=True.
"""

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

# Valid question statuses - must match DB constraint
QUESTION_STATUSES = Literal["pending", "answered", "failed"]

# Valid message roles - must match DB constraint
MESSAGE_ROLES = Literal["user", "assistant"]


class ApiModel(BaseModel):
    """Base for wire schemas: camelCase aliases, constructible by field name."""

    model_config = ConfigDict(
        from_attributes=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


# =============================================================================
# Response Schemas
# =============================================================================


class AttachmentOut(ApiModel):
    """Attachment metadata as persisted on the question.

    access_key is opaque; resolve it through the attachments endpoint.
    """

    name: str
    mime_type: str
    size: int
    access_key: str


class ChatMessageOut(ApiModel):
    """One follow-up conversation turn. Immutable after creation."""

    message_id: UUID
    question_id: UUID
    role: MESSAGE_ROLES
    content: str
    ai_model_id: int | None = None
    token_usage: int | None = None
    processing_time_ms: int | None = None
    error_code: str | None = None
    created_at: datetime


class QuestionOut(ApiModel):
    """Response schema for a question.

    The internal numeric id is never exposed; question_id is the public key.
    answer_text is set iff status is answered, error_message iff failed.
    """

    question_id: UUID
    subject_id: int
    subject_name: str
    user_id: int | None = None
    question_text: str
    status: QUESTION_STATUSES
    answer_text: str | None = None
    error_message: str | None = None
    processing_time_ms: int | None = None
    token_usage: int | None = None
    file_attachments: list[AttachmentOut]
    ai_model_id: int | None = None
    follow_up_in_flight: bool = False
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None = None


class QuestionWithMessagesOut(QuestionOut):
    """Question plus its conversation, oldest message first."""

    messages: list[ChatMessageOut]


class QuestionStatsOut(ApiModel):
    """Per-status question counts for one user."""

    total: int
    answered: int
    pending: int
    failed: int


class AdminQuestionListOut(ApiModel):
    """One page of the operator question listing, newest first."""

    questions: list[QuestionOut]
    total: int
    page: int
    limit: int


class AttachmentUrlOut(ApiModel):
    """A fetchable, short-lived URL for a stored attachment."""

    access_key: str
    url: str


class UsageOut(ApiModel):
    """Current billing period usage and limits. A limit of -1 is unlimited."""

    plan: str
    period_start: datetime
    period_end: datetime
    questions_used: int
    questions_limit: int
    chats_used: int
    chats_limit: int
    file_uploads_used: int
    file_uploads_limit: int
    credits_consumed: float


# =============================================================================
# Request Schemas
# =============================================================================


class SendFollowUpRequest(ApiModel):
    """Request body for POST /questions/{question_id}/messages.

    Length and blank checks happen in the service so they surface as
    E_MESSAGE_INVALID rather than a generic validation error.
    """

    message: str
    ai_model_id: int | None = None
