"""
Vision LLM provider.

Wraps the OpenAI SDK's async client. OpenAI, Anthropic and Groq are all
reached through their OpenAI-compatible chat completion endpoints, so one
adapter class serves every solve provider; only the base URL, key and model
differ.
"""

import logging
import time
from typing import Any

from openai import APIConnectionError, APIStatusError, AsyncOpenAI, RateLimitError

from mathgrader.config import AIProviderName, Settings, get_settings
from mathgrader.models import ImageInput, SolveResponse
from mathgrader.providers.base import (
    FatalProviderError,
    ParseError,
    ProviderError,
    SolveProvider,
    TransientProviderError,
    elapsed_ms,
    with_timeout,
)

logger = logging.getLogger(__name__)


class VisionLLMProvider(SolveProvider):
    """
    Solve adapter for one OpenAI-compatible vision model.

    Calls are single-shot: retries and fallback belong to the
    ProviderManager so that a failing provider is abandoned quickly.
    """

    def __init__(
        self,
        provider: AIProviderName,
        settings: Settings | None = None,
        client: AsyncOpenAI | None = None,
    ):
        """
        Initialize the provider.

        Args:
            provider: Which configured provider this adapter talks to.
            settings: Configuration settings. Uses global settings if not provided.
            client: Pre-built SDK client (tests inject a mock).
        """
        self._settings = settings or get_settings()
        self._provider = provider
        api_key, base_url, model = self._settings.provider_credentials(provider)
        self._api_key = api_key
        self._model = model
        self._timeout = self._settings.solve_timeout_seconds
        self._client = client or AsyncOpenAI(
            api_key=api_key or "unset",
            base_url=base_url,
            max_retries=0,
        )

    @property
    def name(self) -> str:  # type: ignore[override]
        return self._provider.value

    @property
    def model(self) -> str:
        return self._model

    def is_available(self) -> bool:
        return bool(self._api_key)

    async def analyze_image(
        self,
        image: ImageInput,
        prompt: str,
        system_prompt: str | None = None,
    ) -> SolveResponse:
        """
        Send a worksheet image with a prompt.

        Args:
            image: The worksheet image.
            prompt: User prompt.
            system_prompt: Optional system message.

        Returns:
            SolveResponse with the model's raw text.

        Raises:
            TransientProviderError: Rate limit, connection failure, timeout or 5xx.
            FatalProviderError: Missing key or a 4xx rejection.
            ParseError: Empty completion.
        """
        content: list[dict[str, Any]] = [
            {"type": "image_url", "image_url": {"url": image.data_url, "detail": "high"}},
            {"type": "text", "text": prompt},
        ]
        return await self._chat(self._messages(content, system_prompt))

    async def complete(self, prompt: str, system_prompt: str | None = None) -> SolveResponse:
        return await self._chat(self._messages(prompt, system_prompt))

    @staticmethod
    def _messages(content: Any, system_prompt: str | None) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": content})
        return messages

    async def _chat(self, messages: list[dict[str, Any]]) -> SolveResponse:
        if not self.is_available():
            raise FatalProviderError(self.name, "API key not configured")

        started = time.perf_counter()
        try:
            response = await with_timeout(
                self.name,
                self._client.chat.completions.create(
                    model=self._model,
                    messages=messages,  # type: ignore[arg-type]
                    temperature=self._settings.llm_temperature,
                    max_tokens=self._settings.llm_max_tokens,
                ),
                self._timeout,
            )
        except RateLimitError as e:
            raise TransientProviderError(self.name, "Rate limit exceeded", cause=e) from e
        except APIConnectionError as e:
            raise TransientProviderError(self.name, f"Connection failed: {e}", cause=e) from e
        except APIStatusError as e:
            # Don't retry on client errors (4xx except 429)
            if 400 <= e.status_code < 500 and e.status_code != 429:
                raise FatalProviderError(self.name, f"API error: {e.message}", cause=e) from e
            raise TransientProviderError(self.name, f"API error: {e.message}", cause=e) from e

        if not response.choices or not response.choices[0].message.content:
            raise ParseError(f"Empty response from {self.name}")

        usage = getattr(response, "usage", None)
        return SolveResponse(
            content=response.choices[0].message.content,
            provider=self.name,
            model=self._model,
            tokens_used=getattr(usage, "total_tokens", None),
            latency_ms=elapsed_ms(started),
        )

    async def health_check(self) -> bool:
        """
        Check if the API is reachable.

        Returns:
            True if a minimal completion succeeds.
        """
        if not self.is_available():
            return False
        try:
            response = await with_timeout(
                self.name,
                self._client.chat.completions.create(
                    model=self._model,
                    messages=[{"role": "user", "content": "ping"}],
                    max_tokens=5,
                ),
                self._settings.provider_timeout_seconds,
            )
        except (ProviderError, APIConnectionError, APIStatusError) as e:
            logger.warning("Health check failed for %s: %s", self.name, e)
            return False
        return bool(response.choices)

    async def aclose(self) -> None:
        await self._client.close()
