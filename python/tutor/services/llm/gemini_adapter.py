"""Gemini generateContent adapter.

- Endpoint: POST https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent
- Header: x-goog-api-key: <key> (never a query param, so URLs are safe to log)

Turn conversion:
- System turn -> systemInstruction.parts[0].text
- "assistant" role -> "model" role
- Each turn's content -> parts: [{"text": "..."}]

Response - extract:
- text = concatenate candidates[0].content.parts[].text
- usage from usageMetadata (promptTokenCount, candidatesTokenCount, totalTokenCount)
- provider_request_id = responseId when present

A promptFeedback.blockReason or a SAFETY finishReason is reported as a content rejection.
"""

from tutor.services.llm.adapter import LLMAdapter
from tutor.services.llm.errors import LLMError, LLMErrorClass
from tutor.services.llm.types import LLMRequest, LLMResponse, LLMUsage, Turn

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"

_BLOCKED_FINISH_REASONS = frozenset({"SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "SPII"})


class GeminiAdapter(LLMAdapter):
    """Google Gemini API adapter."""

    def generate(
        self,
        req: LLMRequest,
        *,
        api_key: str,
        timeout_s: int,
    ) -> LLMResponse:
        """Non-streaming content generation."""
        response = self._client.post(
            f"{GEMINI_BASE_URL}/{req.model_name}:generateContent",
            headers=self._build_headers(api_key),
            json=self._build_request_body(req),
            timeout=self._timeout(timeout_s),
        )
        response.raise_for_status()
        return self._parse_response(response.json())

    def _build_headers(self, api_key: str) -> dict[str, str]:
        return {
            "x-goog-api-key": api_key,
            "Content-Type": "application/json",
        }

    def _build_request_body(self, req: LLMRequest) -> dict:
        system_prompt = None
        contents = []
        for turn in req.messages:
            if turn.role == "system":
                system_prompt = turn.content
            else:
                contents.append(self._turn_to_content(turn))

        generation_config: dict = {"maxOutputTokens": req.max_tokens}
        if req.temperature is not None:
            generation_config["temperature"] = req.temperature

        body: dict = {"contents": contents, "generationConfig": generation_config}
        if system_prompt:
            body["systemInstruction"] = {"parts": [{"text": system_prompt}]}
        return body

    def _turn_to_content(self, turn: Turn) -> dict:
        role = "model" if turn.role == "assistant" else turn.role
        return {"role": role, "parts": [{"text": turn.content}]}

    def _parse_response(self, data: dict) -> LLMResponse:
        if (data.get("promptFeedback") or {}).get("blockReason"):
            raise LLMError(
                LLMErrorClass.CONTENT_REJECTED,
                "Gemini blocked the prompt",
                provider="gemini",
            )

        candidates = data.get("candidates") or []
        if not candidates:
            raise LLMError(
                LLMErrorClass.PROVIDER_DOWN,
                "Gemini response missing candidates",
                provider="gemini",
            )

        candidate = candidates[0]
        if candidate.get("finishReason") in _BLOCKED_FINISH_REASONS:
            raise LLMError(
                LLMErrorClass.CONTENT_REJECTED,
                "Gemini stopped the candidate for safety",
                provider="gemini",
            )

        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(part.get("text", "") for part in parts)
        if not text.strip():
            raise LLMError(
                LLMErrorClass.PROVIDER_DOWN,
                "Gemini returned an empty candidate",
                provider="gemini",
            )

        usage = None
        usage_metadata = data.get("usageMetadata")
        if usage_metadata:
            usage = LLMUsage(
                prompt_tokens=usage_metadata.get("promptTokenCount"),
                completion_tokens=usage_metadata.get("candidatesTokenCount"),
                total_tokens=usage_metadata.get("totalTokenCount"),
            )

        return LLMResponse(text=text, usage=usage, provider_request_id=data.get("responseId"))
