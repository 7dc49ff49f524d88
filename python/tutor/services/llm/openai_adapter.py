"""OpenAI chat completions adapter.

- Endpoint: POST https://api.openai.com/v1/chat/completions
- Headers: Authorization: Bearer <key>, Content-Type: application/json

Request body:
{
  "model": "<model_name>",
  "messages": [{"role": "system", "content": "..."}, {"role": "user", "content": "..."}],
  "max_tokens": 2048,
  "temperature": 0.7
}

Response - extract:
- text = choices[0].message.content
- usage = direct mapping of prompt/completion/total tokens
- provider_request_id = response header x-request-id or body id

A finish_reason of "content_filter" is reported as a content rejection.
"""

import httpx

from tutor.services.llm.adapter import LLMAdapter
from tutor.services.llm.errors import LLMError, LLMErrorClass
from tutor.services.llm.types import LLMRequest, LLMResponse, LLMUsage, Turn

OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"


class OpenAIAdapter(LLMAdapter):
    """OpenAI API adapter for chat completions."""

    def generate(
        self,
        req: LLMRequest,
        *,
        api_key: str,
        timeout_s: int,
    ) -> LLMResponse:
        """Non-streaming chat completion."""
        response = self._client.post(
            OPENAI_CHAT_URL,
            headers=self._build_headers(api_key),
            json=self._build_request_body(req),
            timeout=self._timeout(timeout_s),
        )
        response.raise_for_status()
        return self._parse_response(response.json(), response.headers)

    def _build_headers(self, api_key: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def _build_request_body(self, req: LLMRequest) -> dict:
        body: dict = {
            "model": req.model_name,
            "messages": [self._turn_to_message(turn) for turn in req.messages],
            "max_tokens": req.max_tokens,
        }
        if req.temperature is not None:
            body["temperature"] = req.temperature
        return body

    def _turn_to_message(self, turn: Turn) -> dict[str, str]:
        """OpenAI uses the same role names as our Turn type."""
        return {"role": turn.role, "content": turn.content}

    def _parse_response(self, data: dict, headers: httpx.Headers) -> LLMResponse:
        choices = data.get("choices") or []
        if not choices:
            raise LLMError(
                LLMErrorClass.PROVIDER_DOWN,
                "OpenAI response missing choices",
                provider="openai",
            )

        choice = choices[0]
        if choice.get("finish_reason") == "content_filter":
            raise LLMError(
                LLMErrorClass.CONTENT_REJECTED,
                "OpenAI content filter stopped the completion",
                provider="openai",
            )

        text = (choice.get("message") or {}).get("content") or ""
        if not text.strip():
            raise LLMError(
                LLMErrorClass.PROVIDER_DOWN,
                "OpenAI returned an empty completion",
                provider="openai",
            )

        usage = None
        usage_data = data.get("usage")
        if usage_data:
            usage = LLMUsage(
                prompt_tokens=usage_data.get("prompt_tokens"),
                completion_tokens=usage_data.get("completion_tokens"),
                total_tokens=usage_data.get("total_tokens"),
            )

        return LLMResponse(
            text=text,
            usage=usage,
            provider_request_id=headers.get("x-request-id") or data.get("id"),
        )
