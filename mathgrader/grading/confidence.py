"""
Confidence aggregator.

Blends the OCR, solve and verification signals for one question into a
score, a 1-3 dot rating and a needs-review flag with distinct reasons.
"""

import re

from mathgrader.config import Settings, get_settings
from mathgrader.grading.comparator import normalize_answer
from mathgrader.models import ConfidenceAssessment, OcrResult, ReviewReason, VerificationOutcome

DEFAULT_VERIFY_CONFIDENCE = 0.7

_COMPACT = re.compile(r"[\s,$]+")


def _compact(text: str) -> str:
    return _COMPACT.sub("", text.lower())


def detect_reading_conflict(student_answer: str | None, ocr: OcrResult | None) -> bool:
    """
    True when OCR ran but never saw the answer the vision model read.

    Only checked when both readings exist; an empty OCR result or a blank
    answer is not a conflict.
    """
    if ocr is None or ocr.is_empty or not student_answer:
        return False
    answer = _compact(normalize_answer(student_answer))
    if not answer:
        return False
    seen = _compact(ocr.text) + "|" + _compact(ocr.latex)
    return answer not in seen


class ConfidenceAggregator:
    """Weighted blend of per-question signals using the configured thresholds."""

    def __init__(self, settings: Settings | None = None):
        self._settings = settings or get_settings()

    def score(self, ocr_confidence: float, solve_confidence: float, verify_confidence: float) -> float:
        s = self._settings
        blended = s.ocr_weight * ocr_confidence + s.solve_weight * solve_confidence + s.verify_weight * verify_confidence
        return max(0.0, min(1.0, blended))

    def dots(self, score: float, verification_conflict: bool, reading_conflict: bool) -> int:
        """3 dots by default; the lowest applicable rating wins."""
        candidates = [3]
        if reading_conflict:
            candidates.append(1)
        if verification_conflict:
            candidates.append(2)
        if score < self._settings.medium_confidence_threshold:
            candidates.append(2)
        if score < self._settings.low_confidence_threshold:
            candidates.append(1)
        return min(candidates)

    def assess(
        self,
        solve_confidence: float,
        readability_confidence: float,
        verification: VerificationOutcome | None,
        ocr_confidence: float | None = None,
        has_answer: bool = True,
        reading_conflict: bool = False,
    ) -> ConfidenceAssessment:
        """
        Assess one question.

        Args:
            solve_confidence: The model's confidence in its own answer.
            readability_confidence: How clearly the model could read the page.
            verification: Outcome of the verification stage, if any.
            ocr_confidence: OCR confidence, None when OCR did not run.
            has_answer: Whether the solve stage produced an answer.
            reading_conflict: OCR and the vision model read different answers.

        Returns:
            ConfidenceAssessment with score, dots, needs_review and reasons.
        """
        ocr_signal = ocr_confidence if ocr_confidence is not None else readability_confidence
        verify_signal = verification.confidence if verification is not None else DEFAULT_VERIFY_CONFIDENCE
        conflict = verification is not None and verification.conflict

        score = self.score(ocr_signal, solve_confidence, verify_signal)

        reasons: list[ReviewReason] = []
        if ocr_confidence is not None and ocr_confidence < self._settings.ocr_review_threshold:
            reasons.append(ReviewReason.OCR_UNCERTAIN)
        if conflict:
            reasons.append(ReviewReason.VERIFICATION_CONFLICT)
        if readability_confidence < self._settings.readability_review_threshold:
            reasons.append(ReviewReason.HANDWRITING_UNCLEAR)
        if not has_answer:
            reasons.append(ReviewReason.NO_ANSWER)

        return ConfidenceAssessment(
            score=round(score, 4),
            dots=self.dots(score, conflict, reading_conflict),
            needs_review=bool(reasons),
            reasons=tuple(reasons),
        )
