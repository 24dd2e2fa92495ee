"""
Provider contracts and the provider error taxonomy.

Every external service (OCR, vision solve, symbolic verification) sits
behind one of the abstract classes below so the orchestrator never sees a
vendor SDK or a raw transport exception.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable
from typing import ClassVar, TypeVar

import httpx

from mathgrader.models import ImageInput, OcrResult, SolveResponse, VerifyResult

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ==============================================================================
# Errors
# ==============================================================================


class ProviderError(Exception):
    """Raised when a provider call fails."""

    retryable: ClassVar[bool] = False

    def __init__(self, provider: str, message: str, cause: Exception | None = None):
        self.provider = provider
        self.cause = cause
        super().__init__(f"[{provider}] {message}")


class TransientProviderError(ProviderError):
    """Network failure, timeout, rate limit or 5xx. Worth a retry or a fallback."""

    retryable = True


class FatalProviderError(ProviderError):
    """Missing credentials or a rejected request. Retrying will not help."""


class ParseError(Exception):
    """Raised when a provider response is not in the expected shape."""

    def __init__(self, message: str, raw_response: str | None = None):
        self.raw_response = raw_response
        super().__init__(message)


def error_for_status(provider: str, status_code: int, body: str = "") -> ProviderError:
    """Map an HTTP status to the matching provider error."""
    message = f"HTTP {status_code}: {body[:200]}" if body else f"HTTP {status_code}"
    if status_code == 429 or status_code >= 500:
        return TransientProviderError(provider, message)
    return FatalProviderError(provider, message)


async def with_timeout(provider: str, call: Awaitable[T], timeout: float) -> T:
    """
    Await a provider call under a per-call timeout.

    Args:
        provider: Provider name for error reporting.
        call: The awaitable to run.
        timeout: Seconds before giving up.

    Raises:
        TransientProviderError: On timeout or any httpx transport error.
    """
    try:
        return await asyncio.wait_for(call, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise TransientProviderError(provider, f"Timed out after {timeout:.1f}s", cause=e) from e
    except httpx.TransportError as e:
        raise TransientProviderError(provider, f"Transport error: {e}", cause=e) from e


def elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


# ==============================================================================
# Provider Contracts
# ==============================================================================


class OcrProvider(ABC):
    """Image to text and markup, with a confidence score."""

    name: ClassVar[str]

    @abstractmethod
    def is_available(self) -> bool:
        """Whether credentials are configured."""

    @abstractmethod
    async def extract(self, image: ImageInput) -> OcrResult:
        """
        Extract math from an image.

        Raises:
            ProviderError: On transport or credential failure.
            ParseError: If the response is not in the expected shape.
        """

    async def health_check(self) -> bool:
        return self.is_available()

    async def aclose(self) -> None:
        return None


class SolveProvider(ABC):
    """Vision-capable language model that reads and grades a worksheet."""

    name: ClassVar[str]

    @abstractmethod
    def is_available(self) -> bool:
        """Whether credentials are configured."""

    @abstractmethod
    async def analyze_image(
        self,
        image: ImageInput,
        prompt: str,
        system_prompt: str | None = None,
    ) -> SolveResponse:
        """Send an image and a prompt, return the raw model text."""

    @abstractmethod
    async def complete(self, prompt: str, system_prompt: str | None = None) -> SolveResponse:
        """Text-only completion, used for verification and feedback."""

    async def health_check(self) -> bool:
        return self.is_available()

    async def aclose(self) -> None:
        return None


class SymbolicProvider(ABC):
    """Computational solver used to verify complex answers."""

    name: ClassVar[str]

    @abstractmethod
    def is_available(self) -> bool:
        """Whether credentials are configured."""

    @abstractmethod
    async def solve(self, expression: str) -> VerifyResult:
        """Evaluate or solve an already-normalized expression."""

    async def health_check(self) -> bool:
        return self.is_available()

    async def aclose(self) -> None:
        return None
