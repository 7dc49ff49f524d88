"""Abstract base class for inference adapters.

- Synchronous adapters over a shared httpx.Client; the answer worker runs
  one blocking call per job inside a Celery worker process
- No retries inside adapters (the answer worker owns the retry budget)
- No DB access
- No logging of request/response bodies
- Raw provider errors bubble up to the router for classification
- Each adapter handles Turn -> provider format conversion internally
"""

from abc import ABC, abstractmethod

import httpx

from tutor.services.llm.types import LLMRequest, LLMResponse


class LLMAdapter(ABC):
    """Abstract base class for inference provider adapters.

    Rules:
    - No retries inside adapters
    - No DB access
    - No logging of request/response bodies
    - Raw provider errors bubble up to router for classification
    """

    def __init__(self, client: httpx.Client):
        """Initialize adapter with shared HTTP client.

        Args:
            client: Shared httpx.Client for connection pooling.
        """
        self._client = client

    @abstractmethod
    def generate(
        self,
        req: LLMRequest,
        *,
        api_key: str,
        timeout_s: int,
    ) -> LLMResponse:
        """Non-streaming generation. Returns complete response.

        Args:
            req: The request containing model, messages, and parameters.
            api_key: The API key for authentication.
            timeout_s: Hard request timeout in seconds.

        Returns:
            LLMResponse with the complete generated text and usage info.

        Raises:
            httpx.HTTPStatusError: On non-2xx HTTP response.
            httpx.TimeoutException: On request timeout.
            httpx.NetworkError: On network failure.
            LLMError: On a 2xx reply that carries no usable answer.
        """
        ...

    def _timeout(self, timeout_s: int) -> httpx.Timeout:
        """Per-call timeout: the whole budget for reads, capped connect phase."""
        return httpx.Timeout(timeout_s, connect=min(10.0, float(timeout_s)))
