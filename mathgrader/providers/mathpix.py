"""
Mathpix OCR provider.

Converts handwritten math into LaTeX and plain text through the Mathpix
``/text`` endpoint. Responses are validated with pydantic; anything that
does not fit the expected shape raises ParseError.
"""

import logging
import re
import time
from typing import Any, ClassVar

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from mathgrader.config import Settings, get_settings
from mathgrader.models import ImageInput, OcrResult, OcrWord
from mathgrader.providers.base import (
    FatalProviderError,
    OcrProvider,
    ParseError,
    elapsed_ms,
    error_for_status,
    with_timeout,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 0.8

_WHITESPACE = re.compile(r"\s+")


class _Point(BaseModel):
    x: float = 0.0
    y: float = 0.0


class _WordData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    text: str = ""
    confidence: float | None = None
    cnt: list[_Point] | None = None


class MathpixResponse(BaseModel):
    """The subset of the Mathpix response the engine reads."""

    model_config = ConfigDict(extra="ignore")

    text: str = ""
    latex_styled: str | None = None
    latex: str | None = None
    confidence: float | None = None
    confidence_rate: float | None = None
    word_data: list[_WordData] | None = None
    detected_alphabets: dict[str, bool] | None = None
    error: str | None = None


def _clean_base64(data: str) -> str:
    cleaned = _WHITESPACE.sub("", data)
    if "," in cleaned:
        cleaned = cleaned.split(",", 1)[1] or cleaned
    return cleaned


def _word_rect(points: list[_Point] | None) -> tuple[float, float, float, float] | None:
    if not points:
        return None
    x, y = points[0].x, points[0].y
    if len(points) < 3:
        return (x, y, 0.0, 0.0)
    return (x, y, points[2].x - x, points[2].y - y)


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


class MathpixProvider(OcrProvider):
    """OCR adapter for the Mathpix API."""

    name: ClassVar[str] = "mathpix"

    def __init__(self, settings: Settings | None = None, client: httpx.AsyncClient | None = None):
        """
        Initialize the Mathpix adapter.

        Args:
            settings: Configuration settings. Uses global settings if not provided.
            client: Optional HTTP client (tests pass one with a mock transport).
        """
        self._settings = settings or get_settings()
        self._client = client or httpx.AsyncClient(base_url=self._settings.mathpix_base_url)
        self._timeout = self._settings.provider_timeout_seconds

    def is_available(self) -> bool:
        return bool(self._settings.mathpix_app_id and self._settings.mathpix_app_key)

    def build_payload(self, image: ImageInput) -> dict[str, Any]:
        src = image.data if image.type == "url" else f"data:{image.mime_type};base64,{_clean_base64(image.data)}"
        return {
            "src": src,
            "formats": ["latex_styled", "text"],
            "data_options": {
                "include_detected_alphabets": True,
                "include_word_data": True,
            },
        }

    async def extract(self, image: ImageInput) -> OcrResult:
        """
        Extract math from an image.

        Args:
            image: The worksheet image.

        Returns:
            Validated OcrResult.

        Raises:
            FatalProviderError: If credentials are missing or the request is rejected.
            TransientProviderError: On timeout, connection failure, 429 or 5xx.
            ParseError: If the response body is not a valid Mathpix result.
        """
        if not self.is_available():
            raise FatalProviderError(self.name, "Mathpix API not configured (missing app id or key)")

        started = time.perf_counter()
        response = await with_timeout(
            self.name,
            self._client.post(
                "/text",
                json=self.build_payload(image),
                headers={
                    "app_id": self._settings.mathpix_app_id,
                    "app_key": self._settings.mathpix_app_key,
                },
            ),
            self._timeout,
        )

        if response.status_code >= 400:
            raise error_for_status(self.name, response.status_code, response.text)

        result = self.parse_response(response.text)
        latency = elapsed_ms(started)
        logger.info("Mathpix OCR finished in %dms (confidence %.2f)", latency, result.confidence)
        return result.model_copy(update={"latency_ms": latency})

    def parse_response(self, body: str) -> OcrResult:
        try:
            data = MathpixResponse.model_validate_json(body)
        except ValidationError as e:
            raise ParseError(f"Unexpected Mathpix response: {e.error_count()} errors", raw_response=body) from e

        if data.error:
            raise ParseError(f"Mathpix reported an error: {data.error}", raw_response=body)

        if data.confidence is not None:
            confidence = data.confidence
        elif data.confidence_rate is not None:
            confidence = data.confidence_rate
        else:
            confidence = DEFAULT_CONFIDENCE

        words = tuple(
            OcrWord(
                text=w.text,
                confidence=_clamp(w.confidence) if w.confidence is not None else DEFAULT_CONFIDENCE,
                rect=_word_rect(w.cnt),
            )
            for w in data.word_data or []
        )

        return OcrResult(
            text=data.text,
            latex=data.latex_styled or data.latex or "",
            confidence=_clamp(confidence),
            words=words,
            detected_alphabets=data.detected_alphabets or {},
        )

    async def aclose(self) -> None:
        await self._client.aclose()
