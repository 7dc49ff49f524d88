"""Inference error classification and normalization.

- Classifies provider-specific errors into normalized error classes
- Called by the router after catching adapter exceptions
- Supports OpenAI, Anthropic, and Gemini error patterns

Error classes:
- E_LLM_INVALID_KEY: Authentication failure (401/403) or no key configured
- E_LLM_RATE_LIMIT: Rate limit exceeded (429)
- E_LLM_CONTEXT_TOO_LARGE: Context length exceeded
- E_LLM_CONTENT_REJECTED: Provider safety system refused the prompt or output
- E_LLM_TIMEOUT: Request timed out
- E_LLM_PROVIDER_DOWN: Provider unavailable (5xx, network error, malformed reply)
- E_MODEL_NOT_AVAILABLE: Model not found or disabled
"""

from enum import Enum

from tutor.logging import get_logger

logger = get_logger(__name__)


class LLMErrorClass(str, Enum):
    """Normalized inference error classifications."""

    INVALID_KEY = "E_LLM_INVALID_KEY"
    RATE_LIMIT = "E_LLM_RATE_LIMIT"
    CONTEXT_TOO_LARGE = "E_LLM_CONTEXT_TOO_LARGE"
    CONTENT_REJECTED = "E_LLM_CONTENT_REJECTED"
    TIMEOUT = "E_LLM_TIMEOUT"
    PROVIDER_DOWN = "E_LLM_PROVIDER_DOWN"
    MODEL_NOT_AVAILABLE = "E_MODEL_NOT_AVAILABLE"


# Failures that a second attempt cannot fix
NON_RETRYABLE_ERROR_CLASSES = frozenset(
    {
        LLMErrorClass.INVALID_KEY,
        LLMErrorClass.CONTEXT_TOO_LARGE,
        LLMErrorClass.CONTENT_REJECTED,
        LLMErrorClass.MODEL_NOT_AVAILABLE,
    }
)

# User-visible summaries stored in Question.error_message
ERROR_CLASS_TO_MESSAGE: dict[LLMErrorClass, str] = {
    LLMErrorClass.INVALID_KEY: (
        "The AI service is not configured correctly. Please submit your question again later."
    ),
    LLMErrorClass.RATE_LIMIT: (
        "The AI service is handling too many requests right now. "
        "Please submit your question again in a few minutes."
    ),
    LLMErrorClass.CONTEXT_TOO_LARGE: (
        "Your question is too long for the AI model to process. "
        "Please shorten it and submit it again."
    ),
    LLMErrorClass.CONTENT_REJECTED: (
        "The AI service declined to answer this question because of its content policy."
    ),
    LLMErrorClass.TIMEOUT: (
        "The AI service took too long to respond. Please submit your question again."
    ),
    LLMErrorClass.PROVIDER_DOWN: (
        "The AI service is temporarily unavailable. Please submit your question again later."
    ),
    LLMErrorClass.MODEL_NOT_AVAILABLE: (
        "No AI model is currently available to answer this question."
    ),
}


class LLMError(Exception):
    """Exception for inference-related errors.

    Attributes:
        error_class: The normalized error classification
        message: Internal error message (never shown to end users)
        provider: The provider that returned the error (if known)
    """

    def __init__(
        self,
        error_class: LLMErrorClass,
        message: str,
        provider: str | None = None,
    ):
        self.error_class = error_class
        self.message = message
        self.provider = provider
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        """Whether another attempt may succeed."""
        return self.error_class not in NON_RETRYABLE_ERROR_CLASSES

    @property
    def user_message(self) -> str:
        """Human-readable summary for storage on a failed question."""
        return ERROR_CLASS_TO_MESSAGE[self.error_class]


def classify_provider_error(
    provider: str,
    status_code: int | None,
    json_body: dict | None,
    exception: Exception | None,
) -> LLMErrorClass:
    """Classify provider error into normalized error class.

    Args:
        provider: One of "openai", "anthropic", "gemini"
        status_code: HTTP status code (if available)
        json_body: Parsed JSON error response (if available)
        exception: The exception that was raised (if any)

    Returns:
        The appropriate LLMErrorClass for this error.
    """
    if exception is not None:
        exception_type = type(exception).__name__
        if "Timeout" in exception_type or "timeout" in str(exception).lower():
            return LLMErrorClass.TIMEOUT
        if "Network" in exception_type or "Connection" in exception_type:
            return LLMErrorClass.PROVIDER_DOWN

    if status_code is None:
        return LLMErrorClass.PROVIDER_DOWN

    if provider == "openai":
        return _classify_openai_error(status_code, json_body)
    elif provider == "anthropic":
        return _classify_anthropic_error(status_code, json_body)
    elif provider == "gemini":
        return _classify_gemini_error(status_code, json_body)
    else:
        logger.warning("unknown_provider_for_error_classification", provider=provider)
        return LLMErrorClass.PROVIDER_DOWN


def _classify_openai_error(status_code: int, json_body: dict | None) -> LLMErrorClass:
    """Classify OpenAI-specific errors.

    - 401 or 403 -> INVALID_KEY
    - 429 -> RATE_LIMIT
    - 404 -> MODEL_NOT_AVAILABLE
    - 400 + context_length_exceeded -> CONTEXT_TOO_LARGE
    - 400 + content_policy_violation / content_filter -> CONTENT_REJECTED
    - 5xx -> PROVIDER_DOWN
    """
    if status_code in (401, 403):
        return LLMErrorClass.INVALID_KEY

    if status_code == 429:
        return LLMErrorClass.RATE_LIMIT

    if status_code == 404:
        return LLMErrorClass.MODEL_NOT_AVAILABLE

    if status_code >= 500:
        return LLMErrorClass.PROVIDER_DOWN

    if status_code == 400 and json_body:
        error = json_body.get("error") or {}
        error_code = error.get("code") or ""
        error_message = (error.get("message") or "").lower()

        if error_code == "context_length_exceeded" or "maximum context length" in error_message:
            return LLMErrorClass.CONTEXT_TOO_LARGE
        if error_code in ("content_policy_violation", "content_filter"):
            return LLMErrorClass.CONTENT_REJECTED
        if "content policy" in error_message or "safety system" in error_message:
            return LLMErrorClass.CONTENT_REJECTED
        if "model" in error_message and "not found" in error_message:
            return LLMErrorClass.MODEL_NOT_AVAILABLE

    return LLMErrorClass.PROVIDER_DOWN


def _classify_anthropic_error(status_code: int, json_body: dict | None) -> LLMErrorClass:
    """Classify Anthropic-specific errors.

    - 401 or 403 -> INVALID_KEY
    - 429 or 529 (overloaded) -> RATE_LIMIT
    - 404 -> MODEL_NOT_AVAILABLE
    - 400 + invalid_request_error + "too long" -> CONTEXT_TOO_LARGE
    - 400 + "content policy" / "safety" -> CONTENT_REJECTED
    - 5xx -> PROVIDER_DOWN
    """
    if status_code in (401, 403):
        return LLMErrorClass.INVALID_KEY

    if status_code in (429, 529):
        return LLMErrorClass.RATE_LIMIT

    if status_code == 404:
        return LLMErrorClass.MODEL_NOT_AVAILABLE

    if status_code >= 500:
        return LLMErrorClass.PROVIDER_DOWN

    if status_code == 400 and json_body:
        error = json_body.get("error") or {}
        error_type = error.get("type") or ""
        error_message = (error.get("message") or "").lower()

        if error_type == "invalid_request_error" and "too long" in error_message:
            return LLMErrorClass.CONTEXT_TOO_LARGE
        if "content policy" in error_message or "safety" in error_message:
            return LLMErrorClass.CONTENT_REJECTED

    return LLMErrorClass.PROVIDER_DOWN


def _classify_gemini_error(status_code: int, json_body: dict | None) -> LLMErrorClass:
    """Classify Gemini-specific errors.

    - 401 or 403 or "API_KEY_INVALID" in body -> INVALID_KEY
    - 429 or "RESOURCE_EXHAUSTED" -> RATE_LIMIT
    - "exceeds the maximum" in message -> CONTEXT_TOO_LARGE
    - "SAFETY" / "blocked" in a 400 body -> CONTENT_REJECTED
    - 404 or "model not found" -> MODEL_NOT_AVAILABLE
    - 5xx -> PROVIDER_DOWN
    """
    body_str = str(json_body).lower() if json_body else ""

    if "api_key_invalid" in body_str:
        return LLMErrorClass.INVALID_KEY

    if status_code in (401, 403):
        return LLMErrorClass.INVALID_KEY

    if status_code == 429 or "resource_exhausted" in body_str:
        return LLMErrorClass.RATE_LIMIT

    if "exceeds the maximum" in body_str:
        return LLMErrorClass.CONTEXT_TOO_LARGE

    if status_code == 400 and ("safety" in body_str or "blocked" in body_str):
        return LLMErrorClass.CONTENT_REJECTED

    if status_code == 404 or "model not found" in body_str:
        return LLMErrorClass.MODEL_NOT_AVAILABLE

    return LLMErrorClass.PROVIDER_DOWN
