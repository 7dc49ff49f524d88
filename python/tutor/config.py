"""Application settings loaded from environment variables.

Environment Configuration:
    TUTOR_ENV: Deployment environment (local | test | staging | prod)
    DATABASE_URL: SQLAlchemy connection string (required)
    TUTOR_INTERNAL_SECRET: Gateway secret (required in staging/prod)
    LOG_LEVEL, LOG_FORMAT: root log level and renderer (json | console)

Redis / Celery Configuration:
    REDIS_URL: Redis connection string (required for worker)
    CELERY_BROKER_URL: Celery broker URL (defaults to REDIS_URL)
    CELERY_RESULT_BACKEND: Celery result backend URL (defaults to REDIS_URL)
    JOB_DISPATCH_MODE: "celery" (enqueue to broker) or "inline" (run in-process)

Answer pipeline:
    INFERENCE_TIMEOUT_S, INFERENCE_MAX_ATTEMPTS, INFERENCE_BACKOFF_BASE_S,
    INFERENCE_BACKOFF_MAX_S: retry budget for a single answer job.
    STALE_JOB_AFTER_S: age after which the sweeper fails stranded work.

Note: limits of -1 mean unlimited, matching subscription package semantics.
"""

from enum import Enum
from functools import lru_cache
from typing import Annotated

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings

DEFAULT_ALLOWED_MIME_TYPES = ",".join(
    [
        "application/pdf",
        "image/png",
        "image/jpeg",
        "image/gif",
        "image/webp",
        "text/plain",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ]
)


class Environment(str, Enum):
    """Valid deployment environments."""

    LOCAL = "local"
    TEST = "test"
    STAGING = "staging"
    PROD = "prod"


class LogFormat(str, Enum):
    """Log renderers."""

    JSON = "json"
    CONSOLE = "console"


class JobDispatchMode(str, Enum):
    """How admitted work reaches the answer worker."""

    CELERY = "celery"
    INLINE = "inline"


class Settings(BaseSettings):
    """Application configuration.

    Settings are loaded from environment variables.
    Validation rules:
    - DATABASE_URL is always required
    - TUTOR_INTERNAL_SECRET is required in staging and prod only
    - Supabase storage credentials are required in staging and prod only
    - Retry budget values must be positive
    """

    tutor_env: Environment = Field(default=Environment.LOCAL, alias="TUTOR_ENV")
    database_url: Annotated[str, Field(alias="DATABASE_URL")]
    tutor_internal_secret: str | None = Field(default=None, alias="TUTOR_INTERNAL_SECRET")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_format: LogFormat = Field(default=LogFormat.JSON, alias="LOG_FORMAT")

    # Redis / Celery settings
    redis_url: str | None = Field(default=None, alias="REDIS_URL")
    celery_broker_url: str | None = Field(default=None, alias="CELERY_BROKER_URL")
    celery_result_backend: str | None = Field(default=None, alias="CELERY_RESULT_BACKEND")
    job_dispatch_mode: JobDispatchMode = Field(
        default=JobDispatchMode.CELERY, alias="JOB_DISPATCH_MODE"
    )

    # Supabase Storage settings (attachment store)
    supabase_url: str | None = Field(default=None, alias="SUPABASE_URL")
    supabase_service_key: str | None = Field(default=None, alias="SUPABASE_SERVICE_KEY")
    storage_bucket: str = Field(default="attachments", alias="STORAGE_BUCKET")
    signed_url_expiry_s: int = Field(default=300, alias="SIGNED_URL_EXPIRY_S")

    # Platform API keys for inference providers
    openai_api_key: str | None = Field(default=None, alias="OPENAI_API_KEY")
    anthropic_api_key: str | None = Field(default=None, alias="ANTHROPIC_API_KEY")
    gemini_api_key: str | None = Field(default=None, alias="GEMINI_API_KEY")
    enable_openai: bool = Field(default=True, alias="ENABLE_OPENAI")
    enable_anthropic: bool = Field(default=True, alias="ENABLE_ANTHROPIC")
    enable_gemini: bool = Field(default=True, alias="ENABLE_GEMINI")

    # Admission limits
    question_min_chars: int = Field(default=10, alias="QUESTION_MIN_CHARS")
    question_max_chars: int = Field(default=5000, alias="QUESTION_MAX_CHARS")
    message_max_chars: int = Field(default=5000, alias="MESSAGE_MAX_CHARS")
    attachment_max_bytes: int = Field(
        default=10 * 1024 * 1024, alias="ATTACHMENT_MAX_BYTES"
    )  # 10 MiB
    attachment_max_files: int = Field(default=5, alias="ATTACHMENT_MAX_FILES")
    attachment_allowed_mime_types: str = Field(
        default=DEFAULT_ALLOWED_MIME_TYPES, alias="ATTACHMENT_ALLOWED_MIME_TYPES"
    )
    allow_anonymous_questions: bool = Field(default=False, alias="ALLOW_ANONYMOUS_QUESTIONS")

    # Answer worker retry budget
    inference_timeout_s: int = Field(default=60, alias="INFERENCE_TIMEOUT_S")
    inference_max_attempts: int = Field(default=3, alias="INFERENCE_MAX_ATTEMPTS")
    inference_backoff_base_s: float = Field(default=2.0, alias="INFERENCE_BACKOFF_BASE_S")
    inference_backoff_max_s: float = Field(default=30.0, alias="INFERENCE_BACKOFF_MAX_S")
    inference_max_tokens: int = Field(default=2048, alias="INFERENCE_MAX_TOKENS")
    stale_job_after_s: int = Field(default=300, alias="STALE_JOB_AFTER_S")
    inline_job_workers: int = Field(default=4, alias="INLINE_JOB_WORKERS")

    # Usage limits for users without an active subscription
    free_tier_max_questions: int = Field(default=5, alias="FREE_TIER_MAX_QUESTIONS")
    free_tier_max_chats: int = Field(default=20, alias="FREE_TIER_MAX_CHATS")
    free_tier_max_file_uploads: int = Field(default=5, alias="FREE_TIER_MAX_FILE_UPLOADS")
    free_tier_credit_multiplier: float = Field(default=1.0, alias="FREE_TIER_CREDIT_MULTIPLIER")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @model_validator(mode="after")
    def validate_required_settings(self) -> "Settings":
        """Ensure environment-dependent settings are present and sane."""
        if self.tutor_env in (Environment.STAGING, Environment.PROD):
            if not self.tutor_internal_secret:
                raise ValueError(
                    f"TUTOR_INTERNAL_SECRET is required for TUTOR_ENV={self.tutor_env.value}"
                )
            missing_storage = []
            if not self.supabase_url:
                missing_storage.append("SUPABASE_URL")
            if not self.supabase_service_key:
                missing_storage.append("SUPABASE_SERVICE_KEY")
            if missing_storage:
                raise ValueError(
                    f"Missing attachment storage settings: {', '.join(missing_storage)}"
                )

        if self.inference_max_attempts < 1:
            raise ValueError("INFERENCE_MAX_ATTEMPTS must be at least 1")
        if self.inference_timeout_s <= 0:
            raise ValueError("INFERENCE_TIMEOUT_S must be positive")
        if self.question_min_chars < 1 or self.question_min_chars > self.question_max_chars:
            raise ValueError("QUESTION_MIN_CHARS must be between 1 and QUESTION_MAX_CHARS")
        if self.inline_job_workers < 1:
            raise ValueError("INLINE_JOB_WORKERS must be at least 1")
        if self.stale_job_after_s <= self.max_job_duration_s:
            raise ValueError(
                "STALE_JOB_AFTER_S must exceed the answer job budget "
                f"({self.max_job_duration_s:g}s: every attempt timing out plus backoff)"
            )

        return self

    def backoff_s(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number attempt (1-based), capped."""
        return min(
            self.inference_backoff_base_s * (2 ** (attempt - 1)), self.inference_backoff_max_s
        )

    @property
    def max_job_duration_s(self) -> float:
        """Longest an answer job can run: every attempt times out, with backoff between."""
        backoff = sum(self.backoff_s(attempt) for attempt in range(1, self.inference_max_attempts))
        return self.inference_max_attempts * self.inference_timeout_s + backoff

    @property
    def requires_internal_header(self) -> bool:
        """Whether requests must include the internal secret header."""
        return self.tutor_env in (Environment.STAGING, Environment.PROD)

    @property
    def allowed_mime_type_set(self) -> frozenset[str]:
        """Parse the comma-separated MIME allow-list."""
        return frozenset(
            t.strip().lower() for t in self.attachment_allowed_mime_types.split(",") if t.strip()
        )

    @property
    def effective_celery_broker_url(self) -> str | None:
        """Return Celery broker URL, falling back to REDIS_URL if not set."""
        return self.celery_broker_url or self.redis_url

    @property
    def effective_celery_result_backend(self) -> str | None:
        """Return Celery result backend URL, falling back to REDIS_URL if not set."""
        return self.celery_result_backend or self.redis_url

    def provider_api_key(self, provider: str) -> str | None:
        """Return the platform API key configured for a provider."""
        return {
            "openai": self.openai_api_key,
            "anthropic": self.anthropic_api_key,
            "gemini": self.gemini_api_key,
        }.get(provider)


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Returns:
        Settings instance loaded from environment.

    Raises:
        ValidationError: If required settings are missing or invalid.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache. Useful for testing."""
    get_settings.cache_clear()
