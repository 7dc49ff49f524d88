"""Database module for the question-answering pipeline.

Provides engine creation, session management, transaction helpers, and ORM models.
"""

from tutor.db.engine import create_db_engine, get_engine
from tutor.db.models import (
    AiModel,
    Base,
    ChatMessage,
    MessageRole,
    Question,
    QuestionStatus,
    Subject,
    SubscriptionPackage,
    UsageCommit,
    UsageRecord,
    UserSubscription,
)
from tutor.db.session import get_db, transaction

__all__ = [
    # Engine and session
    "create_db_engine",
    "get_engine",
    "get_db",
    "transaction",
    # Base
    "Base",
    # Enums
    "QuestionStatus",
    "MessageRole",
    # Models
    "Subject",
    "AiModel",
    "SubscriptionPackage",
    "UserSubscription",
    "UsageRecord",
    "UsageCommit",
    "Question",
    "ChatMessage",
]
