"""
Verification router.

Routes each question to a verification strategy by difficulty:
- simple: none
- moderate: chain-of-thought (the model re-derives the answer)
- complex: symbolic (Wolfram Alpha), chain-of-thought when unavailable

Symbolic failure degrades to chain-of-thought, never to none. A failed
chain-of-thought pass is recorded and the question keeps its solve-stage
answer.
"""

import logging
import re
import time
from collections import Counter
from typing import Any

from mathgrader.config import Settings, get_settings
from mathgrader.grading.classifier import classify_difficulty
from mathgrader.grading.comparator import compare_answers
from mathgrader.grading.prompt_builder import PromptBuilder
from mathgrader.grading.scorer import ResponseParser
from mathgrader.models import Difficulty, VerificationMethod, VerificationOutcome
from mathgrader.providers.base import ParseError, ProviderError, elapsed_ms
from mathgrader.providers.manager import ProviderManager
from mathgrader.providers.wolfram import normalize_expression

logger = logging.getLogger(__name__)

# Verify-signal confidences fed into the confidence aggregator
NO_VERIFICATION_CONFIDENCE = 0.7
SYMBOLIC_MATCH_CONFIDENCE = 0.98
SYMBOLIC_MISMATCH_CONFIDENCE = 0.5
COT_MATCH_CONFIDENCE = 0.85
COT_CONFLICT_CONFIDENCE = 0.6
COT_FAILED_CONFIDENCE = 0.7

_WORD_PROBLEM = re.compile(
    r"\b(has|had|have|bought|sold|gave|received|each|total|how many|how much|find|what is)\b",
    re.IGNORECASE,
)
_ALGEBRA = re.compile(r"[a-z]\s*[=+\-*/]|solve\s+for|simplify|factor|expand", re.IGNORECASE)


def select_method(difficulty: Difficulty, symbolic_available: bool = True) -> VerificationMethod:
    """Map a difficulty to the verification strategy."""
    if difficulty == Difficulty.COMPLEX:
        return VerificationMethod.SYMBOLIC if symbolic_available else VerificationMethod.CHAIN_OF_THOUGHT
    if difficulty == Difficulty.MODERATE:
        return VerificationMethod.CHAIN_OF_THOUGHT
    return VerificationMethod.NONE


def select_verification_prompt(problem_text: str, ai_answer: str, difficulty: Difficulty) -> str:
    """Algebra prompt for complex algebra, word-problem prompt for word problems, generic otherwise."""
    if difficulty == Difficulty.COMPLEX and _ALGEBRA.search(problem_text):
        return PromptBuilder.build_algebra_verification_prompt(problem_text, ai_answer)
    if _WORD_PROBLEM.search(problem_text):
        return PromptBuilder.build_word_problem_verification_prompt(problem_text, ai_answer)
    return PromptBuilder.build_verification_prompt(problem_text, ai_answer)


class VerificationRouter:
    """
    Runs the verification strategy for one question.

    Never raises on provider failure: every failure is folded into the
    returned VerificationOutcome.
    """

    def __init__(self, manager: ProviderManager, settings: Settings | None = None):
        self._settings = settings or get_settings()
        self._manager = manager
        self._parser = ResponseParser()
        self._tolerance = self._settings.answer_tolerance

    async def verify(
        self,
        problem_text: str,
        ai_answer: str,
        difficulty: Difficulty | None = None,
    ) -> VerificationOutcome:
        """
        Verify the AI's answer to one problem.

        Args:
            problem_text: Problem as read from the page.
            ai_answer: The solve stage's answer.
            difficulty: Pre-computed difficulty; classified here when omitted.

        Returns:
            VerificationOutcome describing method, agreement and confidence.
        """
        if difficulty is None:
            difficulty = classify_difficulty(problem_text)

        if not self._settings.enable_verification:
            return VerificationOutcome(
                method=VerificationMethod.NONE,
                difficulty=difficulty,
                original_answer=ai_answer,
                confidence=NO_VERIFICATION_CONFIDENCE,
                details="Verification disabled",
            )

        method = select_method(difficulty, symbolic_available=self._manager.symbolic is not None)

        if method == VerificationMethod.SYMBOLIC:
            return await self._verify_symbolic(problem_text, ai_answer, difficulty)
        if method == VerificationMethod.CHAIN_OF_THOUGHT:
            return await self._verify_chain_of_thought(problem_text, ai_answer, difficulty)

        return VerificationOutcome(
            method=VerificationMethod.NONE,
            difficulty=difficulty,
            original_answer=ai_answer,
            confidence=NO_VERIFICATION_CONFIDENCE,
            details="Simple arithmetic",
        )

    async def _verify_symbolic(self, problem_text: str, ai_answer: str, difficulty: Difficulty) -> VerificationOutcome:
        symbolic = self._manager.symbolic
        if symbolic is None:
            return await self._verify_chain_of_thought(
                problem_text, ai_answer, difficulty, degraded_from=VerificationMethod.SYMBOLIC
            )

        expression = normalize_expression(problem_text)
        try:
            result = await symbolic.solve(expression)
        except (ProviderError, ParseError) as e:
            logger.warning("Symbolic verification failed for %r, using chain-of-thought: %s", problem_text, e)
            outcome = await self._verify_chain_of_thought(
                problem_text, ai_answer, difficulty, degraded_from=VerificationMethod.SYMBOLIC
            )
            return outcome.model_copy(update={"details": f"Symbolic failed ({e}); {outcome.details}"})

        comparison = compare_answers(ai_answer, result.result_text, self._tolerance)
        return VerificationOutcome(
            method=VerificationMethod.SYMBOLIC,
            difficulty=difficulty,
            original_answer=ai_answer,
            verification_answer=result.result_text,
            matched=comparison.matched,
            conflict=not comparison.matched,
            confidence=SYMBOLIC_MATCH_CONFIDENCE if comparison.matched else SYMBOLIC_MISMATCH_CONFIDENCE,
            details=(
                f"Symbolic verified: {result.result_text}"
                if comparison.matched
                else f"CONFLICT: AI={ai_answer}, solver={result.result_text}"
            ),
            provider=symbolic.name,
            latency_ms=result.latency_ms,
        )

    async def _verify_chain_of_thought(
        self,
        problem_text: str,
        ai_answer: str,
        difficulty: Difficulty,
        degraded_from: VerificationMethod | None = None,
    ) -> VerificationOutcome:
        started = time.perf_counter()
        prompt = select_verification_prompt(problem_text, ai_answer, difficulty)

        try:
            outcome = await self._manager.complete(prompt, PromptBuilder.VERIFICATION_SYSTEM_PROMPT)
            reply = self._parser.parse_verification(outcome.response.content)
        except (ProviderError, ParseError) as e:
            logger.warning("Chain-of-thought verification failed for %r: %s", problem_text, e)
            return VerificationOutcome(
                method=VerificationMethod.CHAIN_OF_THOUGHT,
                difficulty=difficulty,
                original_answer=ai_answer,
                matched=True,
                conflict=False,
                confidence=COT_FAILED_CONFIDENCE,
                failed=True,
                degraded_from=degraded_from,
                details=f"Chain-of-thought verification failed: {e}",
                latency_ms=elapsed_ms(started),
            )

        comparison = compare_answers(ai_answer, reply.your_answer, self._tolerance)
        matched = comparison.matched or reply.match
        return VerificationOutcome(
            method=VerificationMethod.CHAIN_OF_THOUGHT,
            difficulty=difficulty,
            original_answer=ai_answer,
            verification_answer=reply.your_answer or None,
            matched=matched,
            conflict=not matched,
            confidence=COT_MATCH_CONFIDENCE if matched else COT_CONFLICT_CONFIDENCE,
            degraded_from=degraded_from,
            details=(
                f"Chain-of-thought verified: {reply.your_answer}"
                if matched
                else f"CONFLICT: AI={ai_answer}, re-derived={reply.your_answer}. {reply.discrepancy or ''}".strip()
            ),
            provider=outcome.response.provider,
            tokens_used=outcome.response.tokens_used,
            latency_ms=elapsed_ms(started),
        )


def verification_stats(outcomes: list[VerificationOutcome]) -> dict[str, Any]:
    """Summary over a set of outcomes: counts per method, conflicts, failures."""
    if not outcomes:
        return {"total": 0, "by_method": {}, "conflicts": 0, "failures": 0, "degraded": 0, "average_confidence": 0.0}
    by_method = Counter(o.method.value for o in outcomes)
    return {
        "total": len(outcomes),
        "by_method": dict(by_method),
        "conflicts": sum(1 for o in outcomes if o.conflict),
        "failures": sum(1 for o in outcomes if o.failed),
        "degraded": sum(1 for o in outcomes if o.degraded_from is not None),
        "average_confidence": sum(o.confidence for o in outcomes) / len(outcomes),
    }
