"""Anthropic messages adapter.

- Endpoint: POST https://api.anthropic.com/v1/messages
- Headers: x-api-key: <key>, anthropic-version: 2023-06-01, Content-Type: application/json

Turn conversion:
- System turn extracted to the separate "system" field
- Remaining turns mapped to messages with role preserved

Response - extract:
- text = concatenate all content[].text where type="text"
- usage.prompt_tokens = input_tokens, usage.completion_tokens = output_tokens
- provider_request_id = id

A stop_reason of "refusal" is reported as a content rejection.
"""

from tutor.services.llm.adapter import LLMAdapter
from tutor.services.llm.errors import LLMError, LLMErrorClass
from tutor.services.llm.types import LLMRequest, LLMResponse, LLMUsage, Turn

ANTHROPIC_MESSAGES_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_API_VERSION = "2023-06-01"


class AnthropicAdapter(LLMAdapter):
    """Anthropic API adapter for the messages endpoint."""

    def generate(
        self,
        req: LLMRequest,
        *,
        api_key: str,
        timeout_s: int,
    ) -> LLMResponse:
        """Non-streaming message creation."""
        response = self._client.post(
            ANTHROPIC_MESSAGES_URL,
            headers=self._build_headers(api_key),
            json=self._build_request_body(req),
            timeout=self._timeout(timeout_s),
        )
        response.raise_for_status()
        return self._parse_response(response.json())

    def _build_headers(self, api_key: str) -> dict[str, str]:
        return {
            "x-api-key": api_key,
            "anthropic-version": ANTHROPIC_API_VERSION,
            "Content-Type": "application/json",
        }

    def _build_request_body(self, req: LLMRequest) -> dict:
        system_prompt = None
        messages = []
        for turn in req.messages:
            if turn.role == "system":
                system_prompt = turn.content
            else:
                messages.append(self._turn_to_message(turn))

        body: dict = {
            "model": req.model_name,
            "max_tokens": req.max_tokens,
            "messages": messages,
        }
        if system_prompt:
            body["system"] = system_prompt
        if req.temperature is not None:
            body["temperature"] = req.temperature
        return body

    def _turn_to_message(self, turn: Turn) -> dict[str, str]:
        return {"role": turn.role, "content": turn.content}

    def _parse_response(self, data: dict) -> LLMResponse:
        if data.get("stop_reason") == "refusal":
            raise LLMError(
                LLMErrorClass.CONTENT_REJECTED,
                "Anthropic declined to answer",
                provider="anthropic",
            )

        text = "".join(
            block.get("text", "")
            for block in data.get("content") or []
            if block.get("type") == "text"
        )
        if not text.strip():
            raise LLMError(
                LLMErrorClass.PROVIDER_DOWN,
                "Anthropic returned an empty message",
                provider="anthropic",
            )

        usage = None
        usage_data = data.get("usage")
        if usage_data:
            input_tokens = usage_data.get("input_tokens")
            output_tokens = usage_data.get("output_tokens")
            total = None
            if input_tokens is not None and output_tokens is not None:
                total = input_tokens + output_tokens
            usage = LLMUsage(
                prompt_tokens=input_tokens,
                completion_tokens=output_tokens,
                total_tokens=total,
            )

        return LLMResponse(text=text, usage=usage, provider_request_id=data.get("id"))
