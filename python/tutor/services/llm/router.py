"""Inference router for adapter selection and error normalization.

- Resolves adapter based on provider name
- Checks feature flags for provider availability
- Wraps adapter calls with error normalization (one place, not per adapter)
- Emits llm.request.started / llm.request.finished / llm.request.failed events
  through safe_kv() so prompt and answer text never reach the logs

Error handling:
- Provider 401/403 -> E_LLM_INVALID_KEY
- Provider 429 -> E_LLM_RATE_LIMIT
- Timeout -> E_LLM_TIMEOUT
- Context too large -> E_LLM_CONTEXT_TOO_LARGE
- Safety refusal -> E_LLM_CONTENT_REJECTED
- Other -> E_LLM_PROVIDER_DOWN
"""

import time

import httpx

from tutor.logging import get_logger
from tutor.services.llm.adapter import LLMAdapter
from tutor.services.llm.anthropic_adapter import AnthropicAdapter
from tutor.services.llm.errors import LLMError, LLMErrorClass, classify_provider_error
from tutor.services.llm.gemini_adapter import GeminiAdapter
from tutor.services.llm.openai_adapter import OpenAIAdapter
from tutor.services.llm.types import LLMCallContext, LLMOperation, LLMRequest, LLMResponse
from tutor.services.redact import safe_kv

logger = get_logger(__name__)

DEFAULT_TIMEOUT_S = 60


def _base_log_fields(provider: str, req: LLMRequest, call_ctx: LLMCallContext | None) -> dict:
    """Build base log fields for inference events."""
    fields: dict = {
        "provider": provider,
        "model_name": req.model_name,
        "llm_operation": call_ctx.operation.value if call_ctx else LLMOperation.OTHER.value,
    }
    if call_ctx:
        if call_ctx.question_id:
            fields["question_id"] = call_ctx.question_id
        if call_ctx.attempt is not None:
            fields["attempt"] = call_ctx.attempt
    return fields


class LLMRouter:
    """Routes inference requests to the appropriate provider adapter.

    Handles:
    - Adapter selection based on provider name
    - Feature flag enforcement
    - Error normalization across all providers
    - Observability event emission
    """

    def __init__(
        self,
        client: httpx.Client,
        *,
        enable_openai: bool = True,
        enable_anthropic: bool = True,
        enable_gemini: bool = True,
    ):
        """Initialize router with shared HTTP client and feature flags.

        Args:
            client: Shared httpx.Client for connection pooling.
            enable_openai: Whether OpenAI provider is enabled.
            enable_anthropic: Whether Anthropic provider is enabled.
            enable_gemini: Whether Gemini provider is enabled.
        """
        self._client = client
        self._feature_flags = {
            "openai": enable_openai,
            "anthropic": enable_anthropic,
            "gemini": enable_gemini,
        }
        self._adapters: dict[str, LLMAdapter] = {
            "openai": OpenAIAdapter(client),
            "anthropic": AnthropicAdapter(client),
            "gemini": GeminiAdapter(client),
        }

    def resolve_adapter(self, provider: str) -> LLMAdapter:
        """Get adapter for provider, checking feature flags.

        Raises:
            LLMError: If provider is unknown or disabled.
        """
        if provider not in self._adapters:
            raise LLMError(
                LLMErrorClass.MODEL_NOT_AVAILABLE,
                f"Unknown provider: {provider}",
                provider=provider,
            )

        if not self._feature_flags.get(provider, False):
            raise LLMError(
                LLMErrorClass.MODEL_NOT_AVAILABLE,
                f"Provider {provider} is disabled",
                provider=provider,
            )

        return self._adapters[provider]

    def is_provider_available(self, provider: str) -> bool:
        """True if provider exists and is enabled."""
        return provider in self._adapters and self._feature_flags.get(provider, False)

    def generate(
        self,
        provider: str,
        req: LLMRequest,
        api_key: str,
        *,
        timeout_s: int = DEFAULT_TIMEOUT_S,
        call_context: LLMCallContext | None = None,
    ) -> LLMResponse:
        """Non-streaming generation with error normalization.

        Args:
            provider: Provider name ("openai", "anthropic", or "gemini").
            req: The inference request.
            api_key: API key for the provider.
            timeout_s: Request timeout in seconds.
            call_context: Observability metadata for this call.

        Returns:
            LLMResponse with generated text and usage info.

        Raises:
            LLMError: With normalized error class on failure.
        """
        adapter = self.resolve_adapter(provider)
        base = _base_log_fields(provider, req, call_context)

        logger.info(
            "llm.request.started",
            **safe_kv(
                **base,
                message_chars=sum(len(m.content) for m in req.messages),
                num_turns=len(req.messages),
            ),
        )

        start = time.monotonic()

        def _failed(error_class: LLMErrorClass, **extra) -> None:
            logger.error(
                "llm.request.failed",
                **safe_kv(
                    **base,
                    outcome="error",
                    error_class=error_class.value,
                    latency_ms=int((time.monotonic() - start) * 1000),
                    **extra,
                ),
            )

        try:
            response = adapter.generate(req, api_key=api_key, timeout_s=timeout_s)
        except httpx.TimeoutException as e:
            _failed(LLMErrorClass.TIMEOUT)
            raise LLMError(LLMErrorClass.TIMEOUT, "Request timed out", provider=provider) from e
        except httpx.HTTPStatusError as e:
            json_body = self._safe_parse_json(e.response)
            error_class = classify_provider_error(provider, e.response.status_code, json_body, None)
            _failed(
                error_class,
                status_code=e.response.status_code,
                provider_request_id=e.response.headers.get("x-request-id")
                or e.response.headers.get("request-id"),
            )
            raise LLMError(
                error_class,
                f"Provider returned HTTP {e.response.status_code}",
                provider=provider,
            ) from e
        except httpx.TransportError as e:
            error_class = classify_provider_error(provider, None, None, e)
            _failed(error_class)
            raise LLMError(error_class, "Network error", provider=provider) from e
        except LLMError as e:
            _failed(e.error_class)
            raise
        except Exception as e:
            _failed(LLMErrorClass.PROVIDER_DOWN)
            raise LLMError(
                LLMErrorClass.PROVIDER_DOWN,
                f"Unexpected error: {type(e).__name__}",
                provider=provider,
            ) from e

        usage = response.usage
        logger.info(
            "llm.request.finished",
            **safe_kv(
                **base,
                outcome="success",
                latency_ms=int((time.monotonic() - start) * 1000),
                tokens_input=usage.prompt_tokens if usage else None,
                tokens_output=usage.completion_tokens if usage else None,
                tokens_total=usage.total_tokens if usage else None,
                provider_request_id=response.provider_request_id,
            ),
        )
        return response

    @staticmethod
    def _safe_parse_json(response: httpx.Response) -> dict | None:
        try:
            body = response.json()
        except ValueError:
            return None
        return body if isinstance(body, dict) else None
