"""Inference layer for provider-agnostic answer generation.

Provides a unified interface for calling OpenAI, Anthropic, and Gemini
models:

- Synchronous provider adapters over a shared httpx.Client
- Error classification and normalization
- Prompt rendering for initial questions and follow-ups
- Feature-flag enforcement

Usage:
    from tutor.services.llm import LLMRouter, LLMRequest, Turn

    router = LLMRouter(httpx.Client(), enable_gemini=False)
    request = LLMRequest(
        model_name="gpt-4o",
        messages=[Turn(role="user", content="Hello!")],
        max_tokens=100,
    )
    response = router.generate("openai", request, api_key="sk-...")
"""

from tutor.services.llm.adapter import LLMAdapter
from tutor.services.llm.errors import (
    ERROR_CLASS_TO_MESSAGE,
    LLMError,
    LLMErrorClass,
    classify_provider_error,
)
from tutor.services.llm.prompt import (
    PromptTooLargeError,
    render_follow_up_prompt,
    render_question_prompt,
    validate_prompt_size,
)
from tutor.services.llm.router import LLMRouter
from tutor.services.llm.types import (
    LLMCallContext,
    LLMOperation,
    LLMRequest,
    LLMResponse,
    LLMUsage,
    Turn,
)

__all__ = [
    # Core types
    "Turn",
    "LLMRequest",
    "LLMResponse",
    "LLMUsage",
    "LLMOperation",
    "LLMCallContext",
    # Adapter interface
    "LLMAdapter",
    # Router
    "LLMRouter",
    # Errors
    "LLMError",
    "LLMErrorClass",
    "ERROR_CLASS_TO_MESSAGE",
    "classify_provider_error",
    # Prompt rendering
    "render_question_prompt",
    "render_follow_up_prompt",
    "validate_prompt_size",
    "PromptTooLargeError",
]
