"""
Wolfram Alpha symbolic verification provider.

Queries the Full Results API (JSON output) and extracts the answer from the
labeled result pods, preferring ``Result``, then ``Decimal approximation``,
then ``Solution``.
"""

import logging
import re
import time
from typing import Any, ClassVar

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from mathgrader.config import Settings, get_settings
from mathgrader.models import VerifyResult
from mathgrader.providers.base import (
    FatalProviderError,
    ParseError,
    SymbolicProvider,
    elapsed_ms,
    error_for_status,
    with_timeout,
)

logger = logging.getLogger(__name__)

RESULT_POD_PRIORITY = ("Result", "Decimal approximation", "Solution", "Solutions", "Exact result")
SOLVER_CONFIDENCE = 0.95


# ==============================================================================
# Expression Normalization
# ==============================================================================

_REWRITES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\s*=\s*$"), ""),
    (re.compile(r"\\frac\{([^}]+)\}\{([^}]+)\}"), r"(\1)/(\2)"),
    (re.compile(r"\\times|\\cdot"), "*"),
    (re.compile(r"\\div"), "/"),
    (re.compile(r"\\sqrt\{([^}]+)\}"), r"sqrt(\1)"),
    (re.compile(r"\^\{([^}]+)\}"), r"^\1"),
    (re.compile(r"×"), "*"),
    (re.compile(r"÷"), "/"),
    (re.compile(r"−"), "-"),
    (re.compile(r"√"), "sqrt"),
)

_SINGLE_EQUALS = re.compile(r"(?<![=<>!])=(?!=)")


def normalize_expression(expression: str, solve_equation: bool = True) -> str:
    """
    Convert LaTeX-like notation to solver syntax.

    ``\\frac{a}{b}`` becomes ``(a)/(b)``, ``\\times``/``\\cdot`` become ``*``,
    ``\\div`` becomes ``/``, ``\\sqrt{x}`` becomes ``sqrt(x)``, ``^{n}``
    becomes ``^n`` and unicode operators are replaced. A trailing ``=`` is
    dropped. When ``solve_equation`` is set, a remaining ``=`` becomes ``==``.

    Args:
        expression: Problem text or expression.
        solve_equation: Rewrite equations for the solver's equation syntax.

    Returns:
        The normalized expression.
    """
    normalized = expression.strip()
    for pattern, replacement in _REWRITES:
        normalized = pattern.sub(replacement, normalized)
    if solve_equation:
        normalized = _SINGLE_EQUALS.sub("==", normalized)
    return re.sub(r"\s+", " ", normalized).strip()


# ==============================================================================
# Response Models
# ==============================================================================


class _Subpod(BaseModel):
    model_config = ConfigDict(extra="ignore")

    plaintext: str = ""


class _Pod(BaseModel):
    model_config = ConfigDict(extra="ignore")

    title: str
    subpods: list[_Subpod] = Field(default_factory=list)


class _QueryResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    success: bool
    error: Any = False
    pods: list[_Pod] = Field(default_factory=list)


class WolframResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    queryresult: _QueryResult


def extract_sections(response: WolframResponse) -> dict[str, str]:
    """Flatten pods into ``{title: plaintext}``; empty pods are skipped."""
    sections: dict[str, str] = {}
    for pod in response.queryresult.pods:
        text = "; ".join(s.plaintext.strip() for s in pod.subpods if s.plaintext.strip())
        if text:
            sections[pod.title] = text
    return sections


def pick_result(sections: dict[str, str]) -> str | None:
    for title in RESULT_POD_PRIORITY:
        if title in sections:
            return sections[title]
    return None


class WolframProvider(SymbolicProvider):
    """Symbolic verification adapter for Wolfram Alpha."""

    name: ClassVar[str] = "wolfram"

    def __init__(self, settings: Settings | None = None, client: httpx.AsyncClient | None = None):
        self._settings = settings or get_settings()
        self._client = client or httpx.AsyncClient(base_url=self._settings.wolfram_base_url)
        self._timeout = self._settings.provider_timeout_seconds

    def is_available(self) -> bool:
        return bool(self._settings.wolfram_app_id)

    async def solve(self, expression: str) -> VerifyResult:
        """
        Solve an expression already in solver syntax.

        Args:
            expression: Normalized expression (see ``normalize_expression``).

        Returns:
            VerifyResult with the chosen result text and every labeled section.

        Raises:
            FatalProviderError: Missing app id, a rejected request, or a query
                the solver could not interpret.
            TransientProviderError: On timeout, connection failure, 429 or 5xx.
            ParseError: If the body is not a Full Results JSON document or
                contains no usable result pod.
        """
        if not self.is_available():
            raise FatalProviderError(self.name, "Wolfram Alpha not configured (missing app id)")

        started = time.perf_counter()
        response = await with_timeout(
            self.name,
            self._client.get(
                "/query",
                params={
                    "appid": self._settings.wolfram_app_id,
                    "input": expression,
                    "format": "plaintext",
                    "output": "json",
                },
            ),
            self._timeout,
        )

        if response.status_code == 501:
            raise FatalProviderError(self.name, "Wolfram Alpha could not interpret the expression")
        if response.status_code >= 400:
            raise error_for_status(self.name, response.status_code, response.text)

        try:
            parsed = WolframResponse.model_validate_json(response.text)
        except ValidationError as e:
            raise ParseError("Unexpected Wolfram Alpha response shape", raw_response=response.text) from e

        if not parsed.queryresult.success or parsed.queryresult.error:
            raise FatalProviderError(self.name, f"Query not understood: {expression!r}")

        sections = extract_sections(parsed)
        result_text = pick_result(sections)
        if result_text is None:
            raise ParseError("No Result or Decimal approximation pod in response", raw_response=response.text)

        latency = elapsed_ms(started)
        logger.info("Wolfram Alpha solved %r in %dms", expression, latency)
        return VerifyResult(
            input=expression,
            result_text=result_text,
            confidence=SOLVER_CONFIDENCE,
            sections=sections,
            latency_ms=latency,
        )

    async def aclose(self) -> None:
        await self._client.aclose()
