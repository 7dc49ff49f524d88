"""Shared type definitions for the inference provider layer.

- Turn: Provider-agnostic conversation turn
- LLMRequest: Request to an adapter
- LLMUsage: Token usage from provider response
- LLMResponse: Complete response from a generation call
- LLMOperation / LLMCallContext: observability metadata attached by callers
"""

from dataclasses import dataclass
from enum import Enum
from typing import Literal


@dataclass(frozen=True)
class Turn:
    """Provider-agnostic conversation turn.

    Attributes:
        role: One of "system", "user", or "assistant"
        content: The text content of the turn
    """

    role: Literal["system", "user", "assistant"]
    content: str


@dataclass(frozen=True)
class LLMUsage:
    """Token usage from provider response.

    All fields are optional as not all providers return all metrics.

    Attributes:
        prompt_tokens: Number of tokens in the prompt
        completion_tokens: Number of tokens in the completion
        total_tokens: Total tokens (usually prompt + completion)
    """

    prompt_tokens: int | None
    completion_tokens: int | None
    total_tokens: int | None

    @property
    def billable_total(self) -> int:
        """Total tokens, summing the parts when the provider omits the total."""
        if self.total_tokens is not None:
            return self.total_tokens
        return (self.prompt_tokens or 0) + (self.completion_tokens or 0)


@dataclass(frozen=True)
class LLMRequest:
    """Request to an inference adapter.

    Attributes:
        model_name: The model identifier (e.g., "gpt-4o", "claude-3-5-sonnet-latest")
        messages: List of Turn objects (system turn first if present)
        max_tokens: Maximum tokens in the completion
        temperature: Sampling temperature, None uses provider default
    """

    model_name: str
    messages: list[Turn]
    max_tokens: int
    temperature: float | None = None


@dataclass(frozen=True)
class LLMResponse:
    """Complete response from a generation call.

    Attributes:
        text: The generated text content
        usage: Token usage information (may be None if provider doesn't return it)
        provider_request_id: Provider's request ID for debugging (may be None)
    """

    text: str
    usage: LLMUsage | None
    provider_request_id: str | None


class LLMOperation(str, Enum):
    """What a generation call is for, used in log events."""

    QUESTION_ANSWER = "question_answer"
    FOLLOW_UP = "follow_up"
    OTHER = "other"


@dataclass(frozen=True)
class LLMCallContext:
    """Observability metadata for one generation attempt.

    Attributes:
        operation: Which pipeline step issued the call
        job_id: Answer job identity
        question_id: Public question id (string form)
        attempt: 1-based attempt number within the job's retry budget
    """

    operation: LLMOperation
    job_id: str | None = None
    question_id: str | None = None
    attempt: int | None = None
