"""
Grading engine - the core orchestrator.

Runs one submission through the pipeline:

    pending -> extracting -> solving -> classifying -> verifying
            -> aggregating -> {completed, needs_review, failed}

OCR failure is logged and skipped, solve failure walks the provider fallback
order, verification runs per question concurrently, and the whole run is
bounded by a pipeline timeout that keeps whatever questions were already
produced.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field

from mathgrader.config import Settings, get_settings
from mathgrader.grading.classifier import classify_difficulty, max_difficulty
from mathgrader.grading.comparator import compare_answers, matches_any
from mathgrader.grading.confidence import ConfidenceAggregator, detect_reading_conflict
from mathgrader.grading.prompt_builder import PromptBuilder
from mathgrader.grading.scorer import ResponseParser
from mathgrader.grading.verification import VerificationRouter
from mathgrader.models import (
    Difficulty,
    GradingAnalyticsEvent,
    GradingRequest,
    GradingResult,
    OcrProviderName,
    OcrResult,
    ParsedGrading,
    ParsedQuestion,
    PipelineStage,
    QuestionResult,
    ReviewEntry,
    ReviewReason,
    SubmissionStatus,
    VerificationMethod,
    VerificationOutcome,
)
from mathgrader.providers.base import ParseError, ProviderError
from mathgrader.providers.manager import ProviderManager, SolveOutcome
from mathgrader.telemetry import Analytics, CostTracker, ReviewTracker

logger = logging.getLogger(__name__)

PIPELINE_TIMEOUT_REASON = "pipeline timeout"

_METHOD_RANK = {
    VerificationMethod.NONE: 0,
    VerificationMethod.CHAIN_OF_THOUGHT: 1,
    VerificationMethod.SYMBOLIC: 2,
}


class PipelineTimeout(Exception):
    """Raised when a grading run exceeds the pipeline timeout."""

    def __init__(self, submission_id: str, elapsed: float):
        self.submission_id = submission_id
        self.elapsed = elapsed
        super().__init__(f"Grading {submission_id} exceeded pipeline timeout after {elapsed:.1f}s")


@dataclass
class _RunState:
    """Accumulator written by the pipeline as it goes; survives cancellation."""

    request: GradingRequest
    started: float = field(default_factory=time.perf_counter)
    stages: list[PipelineStage] = field(default_factory=lambda: [PipelineStage.PENDING])
    ocr: OcrResult | None = None
    solve: SolveOutcome | None = None
    parsed: ParsedGrading | None = None
    difficulties: dict[int, Difficulty] = field(default_factory=dict)
    outcomes: dict[int, VerificationOutcome] = field(default_factory=dict)
    questions: tuple[QuestionResult, ...] = ()

    def enter(self, stage: PipelineStage) -> None:
        self.stages.append(stage)
        logger.debug("%s -> %s", self.request.submission_id, stage.value)

    @property
    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self.started) * 1000)


class GradingOrchestrator:
    """
    Grades one submission end to end.

    Telemetry services are injected; omitted ones are created from settings.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        manager: ProviderManager | None = None,
        analytics: Analytics | None = None,
        cost_tracker: CostTracker | None = None,
        review_tracker: ReviewTracker | None = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            settings: Configuration settings. Uses global settings if not provided.
            manager: Provider manager. Built from settings when omitted.
            analytics: Analytics sink.
            cost_tracker: Per-call cost recorder.
            review_tracker: Review-rate tracker.
        """
        self._settings = settings or get_settings()
        self._analytics = analytics or Analytics(enabled=self._settings.enable_analytics)
        self._manager = manager or ProviderManager(self._settings, analytics=self._analytics)
        self._cost_tracker = cost_tracker or CostTracker(enabled=self._settings.track_costs, analytics=self._analytics)
        self._review_tracker = review_tracker or ReviewTracker(
            window_minutes=self._settings.review_window_minutes,
            alert_threshold=self._settings.review_rate_alert_threshold,
        )
        self._router = VerificationRouter(self._manager, self._settings)
        self._aggregator = ConfidenceAggregator(self._settings)
        self._parser = ResponseParser()

    @property
    def manager(self) -> ProviderManager:
        return self._manager

    # ==========================================================================
    # Public API
    # ==========================================================================

    async def grade(self, request: GradingRequest) -> GradingResult:
        """
        Grade one submission.

        Never raises for provider failures: an exhausted solve fallback
        chain produces a failed result, a timeout a partial one.

        Args:
            request: The grading request.

        Returns:
            Immutable GradingResult.
        """
        run = _RunState(request)
        logger.info("Grading submission %s", request.submission_id)
        self._cost_tracker.reset(request.submission_id)
        try:
            result = await self._run_with_timeout(run)
        except PipelineTimeout as e:
            logger.error(str(e))
            result = self._timeout_result(run)

        self._record_run(result)
        return result

    async def generate_feedback(self, result: GradingResult) -> GradingResult:
        """
        Add per-question feedback to a graded result.

        Failure leaves the result unchanged.
        """
        if not result.questions:
            return result
        try:
            outcome = await self._manager.complete(
                PromptBuilder.build_feedback_prompt(result.questions),
                PromptBuilder.FEEDBACK_SYSTEM_PROMPT,
            )
            reply = self._parser.parse_feedback(outcome.response.content)
        except (ProviderError, ParseError) as e:
            logger.warning("Feedback generation failed for %s: %s", result.submission_id, e)
            return result

        self._cost_tracker.record(
            result.submission_id,
            "feedback",
            outcome.response.provider,
            outcome.response.tokens_used,
            outcome.response.latency_ms,
        )
        messages = reply.by_question()
        questions = tuple(
            q.model_copy(update={"feedback": messages.get(q.question_number, q.feedback)}) for q in result.questions
        )
        return result.model_copy(
            update={
                "questions": questions,
                "cost_breakdown": self._cost_tracker.breakdown(result.submission_id),
            }
        )

    async def health_check(self) -> dict[str, bool]:
        """
        Check if the grading engine is operational.

        Returns:
            Health per configured provider.
        """
        return await self._manager.health_check_all()

    # ==========================================================================
    # Pipeline
    # ==========================================================================

    async def _run_with_timeout(self, run: _RunState) -> GradingResult:
        timeout = self._settings.pipeline_timeout_seconds
        try:
            return await asyncio.wait_for(self._pipeline(run), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise PipelineTimeout(run.request.submission_id, run.elapsed_ms / 1000) from e

    async def _pipeline(self, run: _RunState) -> GradingResult:
        request = run.request

        # Extracting (optional)
        if self._manager.ocr is not None and request.image.type == "base64":
            run.enter(PipelineStage.EXTRACTING)
            run.ocr = await self._extract(run)

        # Solving
        run.enter(PipelineStage.SOLVING)
        try:
            run.solve = await self._manager.analyze_image(
                request.image,
                PromptBuilder.build_grading_prompt(run.ocr),
                PromptBuilder.get_system_prompt(),
            )
        except ProviderError as e:
            logger.error("Solve stage failed for %s: %s", request.submission_id, e)
            return self._failed_result(run, str(e))

        response = run.solve.response
        self._cost_tracker.record(
            request.submission_id, "solve", response.provider, response.tokens_used, response.latency_ms
        )

        try:
            run.parsed = self._parser.parse_grading(response.content)
        except ParseError as e:
            logger.error("Could not parse grading response for %s: %s", request.submission_id, e)
            return self._failed_result(run, f"Failed to parse AI response: {e}")

        # Classifying
        run.enter(PipelineStage.CLASSIFYING)
        for q in run.parsed.questions:
            run.difficulties[q.question_number] = classify_difficulty(q.problem_text)

        # Verifying
        if self._settings.enable_verification:
            run.enter(PipelineStage.VERIFYING)
            await asyncio.gather(*(self._verify_question(run, q) for q in run.parsed.questions))

        # Aggregating
        run.enter(PipelineStage.AGGREGATING)
        run.questions = self._build_questions(run)
        result = self._result(run)

        if request.options.generate_feedback:
            result = await self.generate_feedback(result)

        return result

    async def _extract(self, run: _RunState) -> OcrResult | None:
        ocr = self._manager.ocr
        if ocr is None:
            return None
        try:
            result = await ocr.extract(run.request.image)
        except (ProviderError, ParseError) as e:
            logger.warning("OCR failed for %s, continuing with vision only: %s", run.request.submission_id, e)
            return None
        self._cost_tracker.record(run.request.submission_id, "ocr", ocr.name, latency_ms=result.latency_ms)
        if result.is_empty:
            logger.warning("OCR returned no text for %s", run.request.submission_id)
            return None
        return result

    async def _verify_question(self, run: _RunState, question: ParsedQuestion) -> None:
        difficulty = run.difficulties.get(question.question_number, Difficulty.SIMPLE)
        if not question.ai_answer:
            return
        # The router folds provider failures into the outcome, so siblings never abort
        outcome = await self._router.verify(question.problem_text, question.ai_answer, difficulty)
        run.outcomes[question.question_number] = outcome
        if outcome.provider is not None:
            self._cost_tracker.record(
                run.request.submission_id,
                outcome.method.value,
                outcome.provider,
                outcome.tokens_used,
                outcome.latency_ms,
            )

    # ==========================================================================
    # Aggregation
    # ==========================================================================

    def _build_questions(self, run: _RunState) -> tuple[QuestionResult, ...]:
        if run.parsed is None:
            return ()
        return tuple(self._build_question(run, q) for q in run.parsed.questions)

    def _build_question(self, run: _RunState, q: ParsedQuestion) -> QuestionResult:
        key = run.request.answer_key
        entry = key.entry_for(q.question_number) if key is not None else None
        outcome = run.outcomes.get(q.question_number)
        difficulty = run.difficulties.get(q.question_number) or classify_difficulty(q.problem_text)
        tolerance = self._settings.answer_tolerance

        points_possible = float(entry.points) if entry is not None else max(q.points_possible, 1.0)
        points_awarded = min(q.points_awarded, points_possible)
        is_correct = q.is_correct

        discrepancy = None
        if entry is not None:
            if q.ai_answer and not matches_any(q.ai_answer, entry.accepted_answers, tolerance):
                discrepancy = f'AI calculated "{q.ai_answer}" but answer key says "{entry.correct_answer}"'
            # Answer key overrides the model's own verdict
            key_correct = bool(q.student_answer) and (
                matches_any(q.student_answer, entry.accepted_answers, tolerance)
                or compare_answers(q.student_answer, q.ai_answer, tolerance).matched
            )
            if key_correct and not is_correct:
                points_awarded = points_possible
            elif not key_correct and is_correct:
                points_awarded = 0.0
            is_correct = key_correct
        elif is_correct and points_awarded == 0:
            points_awarded = points_possible

        reading_conflict = detect_reading_conflict(q.student_answer, run.ocr)
        assessment = self._aggregator.assess(
            solve_confidence=q.confidence,
            readability_confidence=q.readability_confidence,
            verification=outcome,
            ocr_confidence=run.ocr.confidence if run.ocr is not None else None,
            has_answer=bool(q.ai_answer),
            reading_conflict=reading_conflict,
        )
        reasons = list(assessment.reasons)
        if discrepancy is not None:
            reasons.append(ReviewReason.ANSWER_KEY_MISMATCH)

        return QuestionResult(
            question_number=q.question_number,
            problem_text=q.problem_text,
            student_answer=q.student_answer,
            correct_answer=q.ai_answer,
            answer_key_value=entry.correct_answer if entry is not None else None,
            ai_calculation=q.ai_calculation,
            ai_answer=q.ai_answer,
            is_correct=is_correct,
            points_awarded=points_awarded,
            points_possible=points_possible,
            ocr_confidence=run.ocr.confidence if run.ocr is not None else None,
            solve_confidence=q.confidence,
            readability_confidence=q.readability_confidence,
            verify_confidence=outcome.confidence if outcome is not None else 0.7,
            confidence=assessment.score,
            confidence_dots=assessment.dots,
            difficulty=difficulty,
            verification_method=outcome.method if outcome is not None else VerificationMethod.NONE,
            verification_answer=outcome.verification_answer if outcome is not None else None,
            verification_conflict=outcome.conflict if outcome is not None else False,
            reading_conflict=reading_conflict,
            verification_details=outcome.details if outcome is not None else "",
            discrepancy=discrepancy,
            readability_issue=q.readability_issue,
            needs_review=bool(reasons),
            review_reasons=tuple(reasons),
        )

    def _review_reason(self, run: _RunState, questions: tuple[QuestionResult, ...]) -> str | None:
        parts: list[str] = []
        if run.parsed is not None and run.parsed.review_reason:
            parts.append(run.parsed.review_reason)
        seen: list[str] = []
        for q in questions:
            for reason in q.review_reasons:
                if reason.value not in seen:
                    seen.append(reason.value)
        parts.extend(seen)
        return "; ".join(parts) if parts else None

    def _result(self, run: _RunState, extra_reason: str | None = None) -> GradingResult:
        request = run.request
        questions = run.questions
        response = run.solve.response if run.solve is not None else None

        model_flagged = run.parsed is not None and run.parsed.needs_review
        needs_review = model_flagged or any(q.needs_review for q in questions) or extra_reason is not None
        review_reason = self._review_reason(run, questions)
        if extra_reason is not None:
            review_reason = f"{extra_reason}; {review_reason}" if review_reason else extra_reason

        methods = [q.verification_method for q in questions]
        tokens = [response.tokens_used] if response is not None and response.tokens_used else []
        tokens.extend(o.tokens_used for o in run.outcomes.values() if o.tokens_used)
        name = run.parsed.student_name if run.parsed is not None and request.options.extract_name else None

        run.enter(PipelineStage.NEEDS_REVIEW if needs_review else PipelineStage.COMPLETED)
        return GradingResult(
            submission_id=request.submission_id,
            success=True,
            status=SubmissionStatus.NEEDS_REVIEW if needs_review else SubmissionStatus.COMPLETED,
            questions=questions,
            detected_student_name=name,
            name_confidence=run.parsed.name_confidence if name is not None and run.parsed is not None else None,
            ocr_provider=OcrProviderName.MATHPIX if run.ocr is not None else OcrProviderName.VISION,
            ocr_confidence=run.ocr.confidence if run.ocr is not None else None,
            provider=response.provider if response is not None else None,
            model=response.model if response is not None else None,
            math_difficulty=max_difficulty([q.difficulty for q in questions]),
            verification_method=max(methods, key=_METHOD_RANK.__getitem__) if methods else VerificationMethod.NONE,
            needs_review=needs_review,
            review_reason=review_reason,
            processing_time_ms=run.elapsed_ms,
            tokens_used=sum(tokens) if tokens else None,
            fallbacks_used=run.solve.fallbacks_used if run.solve is not None else 0,
            cost_breakdown=self._cost_tracker.breakdown(request.submission_id),
            stages=tuple(run.stages),
        )

    def _failed_result(self, run: _RunState, error: str) -> GradingResult:
        run.enter(PipelineStage.FAILED)
        response = run.solve.response if run.solve is not None else None
        return GradingResult(
            submission_id=run.request.submission_id,
            success=False,
            status=SubmissionStatus.FAILED,
            ocr_provider=OcrProviderName.MATHPIX if run.ocr is not None else OcrProviderName.VISION,
            ocr_confidence=run.ocr.confidence if run.ocr is not None else None,
            provider=response.provider if response is not None else None,
            model=response.model if response is not None else None,
            needs_review=True,
            review_reason=error,
            error=error,
            processing_time_ms=run.elapsed_ms,
            cost_breakdown=self._cost_tracker.breakdown(run.request.submission_id),
            stages=tuple(run.stages),
        )

    def _timeout_result(self, run: _RunState) -> GradingResult:
        """Partial result from whatever the run had produced before the timeout."""
        if run.parsed is None:
            return self._failed_result(run, PIPELINE_TIMEOUT_REASON)
        if not run.questions:
            run.questions = self._build_questions(run)
        result = self._result(run, extra_reason=PIPELINE_TIMEOUT_REASON)
        return result.model_copy(update={"error": PIPELINE_TIMEOUT_REASON})

    # ==========================================================================
    # Telemetry
    # ==========================================================================

    def _record_run(self, result: GradingResult) -> None:
        self._analytics.track_grading(
            GradingAnalyticsEvent(
                submission_id=result.submission_id,
                difficulty=result.math_difficulty,
                success=result.success,
                needs_review=result.needs_review,
                latency_ms=result.processing_time_ms,
                provider=result.provider,
                ocr_provider=result.ocr_provider,
                verification_method=result.verification_method,
                cost_total=result.cost_breakdown.total,
            )
        )
        reasons: list[ReviewReason] = []
        for q in result.questions:
            reasons.extend(r for r in q.review_reasons if r not in reasons)
        if not result.success:
            reasons.append(ReviewReason.GRADING_FAILED)
        elif result.error == PIPELINE_TIMEOUT_REASON:
            reasons.append(ReviewReason.PIPELINE_TIMEOUT)
        elif result.needs_review and not reasons:
            reasons.append(ReviewReason.MODEL_FLAGGED)
        self._review_tracker.record(
            ReviewEntry(
                submission_id=result.submission_id,
                needs_review=result.needs_review,
                reasons=tuple(reasons),
                difficulty=result.math_difficulty,
            )
        )
