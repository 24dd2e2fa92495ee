"""
Provider manager.

Holds the configured adapters and walks the solve providers in fallback
order, retrying transient failures with exponential backoff before moving
on to the next provider.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import NamedTuple

from mathgrader.config import AIProviderName, Settings, get_settings
from mathgrader.models import ImageInput, ProviderAnalyticsEvent, SolveResponse
from mathgrader.providers.base import (
    FatalProviderError,
    OcrProvider,
    ParseError,
    ProviderError,
    SolveProvider,
    SymbolicProvider,
    elapsed_ms,
)
from mathgrader.providers.llm import VisionLLMProvider
from mathgrader.providers.mathpix import MathpixProvider
from mathgrader.providers.wolfram import WolframProvider
from mathgrader.telemetry import Analytics

logger = logging.getLogger(__name__)


class AllProvidersFailed(FatalProviderError):
    """Every solve provider in the fallback order failed."""

    def __init__(self, attempted: list[str], last_error: Exception | None):
        self.attempted = attempted
        detail = str(last_error) if last_error else "No providers available"
        super().__init__("solve", f"All providers failed. Last error: {detail}", cause=last_error)


class SolveOutcome(NamedTuple):
    """A successful solve and how many providers were skipped to get it."""

    response: SolveResponse
    fallbacks_used: int


class ProviderManager:
    """
    Registry of OCR, solve and symbolic adapters.

    Solve providers are kept in configured fallback order; only providers
    with credentials are registered.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        solve_providers: list[SolveProvider] | None = None,
        ocr_provider: OcrProvider | None = None,
        symbolic_provider: SymbolicProvider | None = None,
        analytics: Analytics | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the manager.

        Args:
            settings: Configuration settings. Uses global settings if not provided.
            solve_providers: Explicit solve adapters in fallback order. Built
                from settings when omitted.
            ocr_provider: OCR adapter. Mathpix when omitted and OCR is enabled.
            symbolic_provider: Symbolic adapter. Wolfram when omitted and enabled.
            analytics: Receives one event per provider attempt.
            sleep: Backoff sleep, replaceable in tests.
        """
        self._settings = settings or get_settings()
        self._analytics = analytics
        self._sleep = sleep
        self._max_retries = self._settings.provider_max_retries
        self._base_delay = self._settings.retry_base_delay_seconds
        self._max_delay = 30.0

        if solve_providers is None:
            solve_providers = [VisionLLMProvider(name, self._settings) for name in self._settings.ai_fallback_order]
        self._solve_providers = [p for p in solve_providers if p.is_available()]

        if ocr_provider is None and self._settings.enable_ocr:
            ocr_provider = MathpixProvider(self._settings)
        self._ocr_provider = ocr_provider

        if symbolic_provider is None and self._settings.enable_symbolic_verification:
            symbolic_provider = WolframProvider(self._settings)
        self._symbolic_provider = symbolic_provider

    # ==========================================================================
    # Lookup
    # ==========================================================================

    @property
    def available_solve_providers(self) -> list[str]:
        return [p.name for p in self._solve_providers]

    @property
    def ocr(self) -> OcrProvider | None:
        """The OCR adapter, or None when disabled or unconfigured."""
        if self._ocr_provider is None or not self._settings.enable_ocr:
            return None
        return self._ocr_provider if self._ocr_provider.is_available() else None

    @property
    def symbolic(self) -> SymbolicProvider | None:
        """The symbolic adapter, or None when disabled or unconfigured."""
        if self._symbolic_provider is None or not self._settings.enable_symbolic_verification:
            return None
        return self._symbolic_provider if self._symbolic_provider.is_available() else None

    def primary(self) -> SolveProvider | None:
        return self._solve_providers[0] if self._solve_providers else None

    def _ordered(self, preferred: AIProviderName | str | None) -> list[SolveProvider]:
        if preferred is None:
            return list(self._solve_providers)
        key = getattr(preferred, "value", preferred)
        first = [p for p in self._solve_providers if p.name == key]
        return first + [p for p in self._solve_providers if p.name != key]

    # ==========================================================================
    # Calls with fallback
    # ==========================================================================

    async def analyze_image(
        self,
        image: ImageInput,
        prompt: str,
        system_prompt: str | None = None,
        preferred: AIProviderName | str | None = None,
    ) -> SolveOutcome:
        """
        Solve a worksheet image, falling back through providers.

        Args:
            image: The worksheet image.
            prompt: Grading prompt.
            system_prompt: System message.
            preferred: Provider to try first.

        Returns:
            SolveOutcome from the first provider that succeeded.

        Raises:
            AllProvidersFailed: If every provider failed.
        """
        return await self._with_fallback(
            lambda provider: provider.analyze_image(image, prompt, system_prompt),
            preferred,
        )

    async def complete(
        self,
        prompt: str,
        system_prompt: str | None = None,
        preferred: AIProviderName | str | None = None,
    ) -> SolveOutcome:
        """Text-only completion with the same fallback behavior."""
        return await self._with_fallback(
            lambda provider: provider.complete(prompt, system_prompt),
            preferred,
        )

    async def _with_fallback(
        self,
        call: Callable[[SolveProvider], Awaitable[SolveResponse]],
        preferred: AIProviderName | str | None,
    ) -> SolveOutcome:
        order = self._ordered(preferred)
        attempted: list[str] = []
        last_error: Exception | None = None

        for index, provider in enumerate(order):
            attempted.append(provider.name)
            try:
                response = await self._call_with_retry(provider, call, is_fallback=index > 0)
            except (ProviderError, ParseError) as e:
                last_error = e
                logger.warning("Provider %s failed, trying next: %s", provider.name, e)
                continue
            if index > 0:
                logger.warning("Solved with fallback provider %s after %d failures", provider.name, index)
            return SolveOutcome(response=response, fallbacks_used=index)

        logger.error("All solve providers failed (%s)", ", ".join(attempted) or "none configured")
        raise AllProvidersFailed(attempted, last_error)

    async def _call_with_retry(
        self,
        provider: SolveProvider,
        call: Callable[[SolveProvider], Awaitable[SolveResponse]],
        is_fallback: bool,
    ) -> SolveResponse:
        """
        Call one provider, retrying transient errors with exponential backoff.

        Raises:
            ProviderError: Fatal error, or transient error after the last retry.
            ParseError: Response could not be used.
        """
        for attempt in range(self._max_retries):
            started = time.perf_counter()
            try:
                response = await call(provider)
            except (ProviderError, ParseError) as e:
                self._record(provider.name, False, elapsed_ms(started), is_fallback, type(e).__name__)
                retryable = isinstance(e, ProviderError) and e.retryable
                if not retryable or attempt == self._max_retries - 1:
                    raise
                delay = self._calculate_delay(attempt)
                logger.info("Retrying %s in %.1fs (attempt %d): %s", provider.name, delay, attempt + 1, e)
                await self._sleep(delay)
                continue
            self._record(provider.name, True, response.latency_ms, is_fallback, None)
            return response

        raise FatalProviderError(provider.name, "No attempts made")

    def _calculate_delay(self, attempt: int) -> float:
        """
        Calculate delay for exponential backoff.

        Args:
            attempt: Current attempt number (0-indexed).

        Returns:
            Delay in seconds.
        """
        delay = self._base_delay * (2**attempt)
        return min(delay, self._max_delay)

    def _record(self, provider: str, success: bool, latency_ms: int, is_fallback: bool, error_type: str | None) -> None:
        if self._analytics is None:
            return
        self._analytics.track_provider(
            ProviderAnalyticsEvent(
                provider=provider,
                success=success,
                latency_ms=latency_ms,
                is_fallback=is_fallback,
                error_type=error_type,
            )
        )

    # ==========================================================================
    # Health and lifecycle
    # ==========================================================================

    async def health_check_all(self) -> dict[str, bool]:
        """Check every registered adapter."""
        results: dict[str, bool] = {}
        for provider in self._solve_providers:
            results[provider.name] = await provider.health_check()
        if self._ocr_provider is not None:
            results[self._ocr_provider.name] = await self._ocr_provider.health_check()
        if self._symbolic_provider is not None:
            results[self._symbolic_provider.name] = await self._symbolic_provider.health_check()
        return results

    async def aclose(self) -> None:
        for provider in self._solve_providers:
            await provider.aclose()
        if self._ocr_provider is not None:
            await self._ocr_provider.aclose()
        if self._symbolic_provider is not None:
            await self._symbolic_provider.aclose()
