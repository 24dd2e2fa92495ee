"""
Pydantic models for the math grading engine.

These models define the strict schemas for:
- Grading requests, per-question results and submission results
- Provider payloads (OCR, solve, symbolic verification)
- Batch progress snapshots
- Token ledger entries and telemetry events

Results are frozen once produced; only batch state is mutable.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ==============================================================================
# Enumerations
# ==============================================================================


class Difficulty(str, Enum):
    """Difficulty of a single math problem; drives verification routing."""

    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


class VerificationMethod(str, Enum):
    NONE = "none"
    CHAIN_OF_THOUGHT = "chain_of_thought"
    SYMBOLIC = "symbolic"


class OcrProviderName(str, Enum):
    MATHPIX = "mathpix"
    VISION = "vision"  # no dedicated OCR, the solve model reads the image


class SubmissionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    NEEDS_REVIEW = "needs_review"
    FAILED = "failed"


class PipelineStage(str, Enum):
    PENDING = "pending"
    CLASSIFYING = "classifying"
    EXTRACTING = "extracting"
    SOLVING = "solving"
    VERIFYING = "verifying"
    AGGREGATING = "aggregating"
    COMPLETED = "completed"
    NEEDS_REVIEW = "needs_review"
    FAILED = "failed"


class TokenOperation(str, Enum):
    SUBMISSION = "submission"
    REFUND = "refund"
    ADMIN_GRANT = "admin_grant"
    SIGNUP_BONUS = "signup_bonus"
    PURCHASE = "purchase"


class BalanceStatus(str, Enum):
    HEALTHY = "healthy"
    LOW = "low"
    CRITICAL = "critical"
    ZERO = "zero"


class ReviewReason(str, Enum):
    """Distinct, inspectable reasons a question or submission needs a human."""

    OCR_UNCERTAIN = "ocr_uncertain"
    VERIFICATION_CONFLICT = "verification_conflict"
    HANDWRITING_UNCLEAR = "handwriting_unclear"
    NO_ANSWER = "no_answer"
    ANSWER_KEY_MISMATCH = "answer_key_mismatch"
    MODEL_FLAGGED = "model_flagged"
    PIPELINE_TIMEOUT = "pipeline_timeout"
    GRADING_FAILED = "grading_failed"


# ==============================================================================
# Request Models
# ==============================================================================


class ImageInput(BaseModel):
    """An image handed to OCR and vision providers."""

    model_config = ConfigDict(frozen=True)

    type: str = Field(default="base64", pattern="^(base64|url)$")
    data: str = Field(..., description="Base64 string (no data URL prefix) or URL")
    mime_type: str = Field(
        default="image/jpeg",
        pattern="^image/(jpeg|png|webp|gif)$",
    )

    @property
    def data_url(self) -> str:
        """Return the image as a URL usable in chat completion payloads."""
        if self.type == "url":
            return self.data
        return f"data:{self.mime_type};base64,{self.data}"


class AnswerKeyEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    question_number: int = Field(..., ge=1)
    correct_answer: str
    alternate_answers: tuple[str, ...] = ()
    points: int = Field(default=1, ge=1)

    @property
    def accepted_answers(self) -> tuple[str, ...]:
        return (self.correct_answer, *self.alternate_answers)


class AnswerKey(BaseModel):
    """Teacher-provided answers. Optional: the model grades blind without one."""

    model_config = ConfigDict(frozen=True)

    type: str = Field(default="manual", pattern="^(manual|image)$")
    answers: tuple[AnswerKeyEntry, ...] = ()

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_questions(self) -> int:
        return len(self.answers)

    def entry_for(self, question_number: int) -> AnswerKeyEntry | None:
        for entry in self.answers:
            if entry.question_number == question_number:
                return entry
        return None


class GradingOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    generate_feedback: bool = False
    extract_name: bool = True


class GradingRequest(BaseModel):
    """Immutable input to one grading run."""

    model_config = ConfigDict(frozen=True)

    submission_id: str = Field(..., min_length=1)
    image: ImageInput
    answer_key: AnswerKey | None = None
    options: GradingOptions = Field(default_factory=GradingOptions)
    project_id: str | None = None
    user_id: str | None = None


# ==============================================================================
# Provider Payload Models
# ==============================================================================


class OcrWord(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    rect: tuple[float, float, float, float] | None = None


class OcrResult(BaseModel):
    """Validated output of an OCR provider."""

    model_config = ConfigDict(frozen=True)

    text: str = ""
    latex: str = ""
    confidence: float = Field(..., ge=0.0, le=1.0)
    words: tuple[OcrWord, ...] = ()
    detected_alphabets: dict[str, bool] = Field(default_factory=dict)
    latency_ms: int = 0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def is_empty(self) -> bool:
        return not self.text.strip() and not self.latex.strip()


class SolveResponse(BaseModel):
    """Raw free-text response of a vision solve provider."""

    model_config = ConfigDict(frozen=True)

    content: str
    provider: str
    model: str
    tokens_used: int | None = None
    latency_ms: int = 0


class VerifyResult(BaseModel):
    """Result of a symbolic solver query."""

    model_config = ConfigDict(frozen=True)

    input: str
    result_text: str
    confidence: float = Field(default=0.95, ge=0.0, le=1.0)
    sections: dict[str, str] = Field(default_factory=dict)
    latency_ms: int = 0


# ==============================================================================
# Comparison and Verification Models
# ==============================================================================


class ComparisonResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    matched: bool
    method: str = "none"  # exact | numeric | fraction | percentage | none
    normalized_a: str | None = None
    normalized_b: str | None = None


class VerificationOutcome(BaseModel):
    """What the verification stage concluded for one question."""

    model_config = ConfigDict(frozen=True)

    method: VerificationMethod = VerificationMethod.NONE
    difficulty: Difficulty = Difficulty.SIMPLE
    original_answer: str = ""
    verification_answer: str | None = None
    matched: bool = True
    conflict: bool = False
    confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    failed: bool = False
    degraded_from: VerificationMethod | None = None
    details: str = ""
    provider: str | None = None  # provider of the verification call that succeeded
    tokens_used: int | None = None
    latency_ms: int = 0


class ConfidenceAssessment(BaseModel):
    model_config = ConfigDict(frozen=True)

    score: float = Field(..., ge=0.0, le=1.0)
    dots: int = Field(..., ge=1, le=3)
    needs_review: bool
    reasons: tuple[ReviewReason, ...] = ()


# ==============================================================================
# Grading Result Models
# ==============================================================================


class ParsedQuestion(BaseModel):
    """One question as reported by the solve model, before verification."""

    model_config = ConfigDict(frozen=True)

    question_number: int = Field(..., ge=1)
    problem_text: str = ""
    ai_calculation: str = ""
    ai_answer: str = ""
    student_answer: str | None = None
    is_correct: bool = False
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    readability_confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    readability_issue: str | None = None
    points_awarded: float = Field(default=0.0, ge=0.0)
    points_possible: float = Field(default=1.0, ge=0.0)


class ParsedGrading(BaseModel):
    """The solve model's whole-page answer."""

    model_config = ConfigDict(frozen=True)

    student_name: str | None = None
    name_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    questions: tuple[ParsedQuestion, ...]
    needs_review: bool = False
    review_reason: str | None = None


class QuestionResult(BaseModel):
    """
    The graded result for a single question.

    Produced once per question per grading run and never mutated; a re-grade
    produces a new instance.
    """

    model_config = ConfigDict(frozen=True)

    question_number: int = Field(..., ge=1)
    problem_text: str = ""
    student_answer: str | None = None
    correct_answer: str = ""
    answer_key_value: str | None = None
    ai_calculation: str = ""
    ai_answer: str = ""
    is_correct: bool
    points_awarded: float = Field(..., ge=0.0)
    points_possible: float = Field(..., gt=0.0)

    ocr_confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    solve_confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    readability_confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    verify_confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    confidence_dots: int = Field(default=3, ge=1, le=3)

    difficulty: Difficulty = Difficulty.SIMPLE
    verification_method: VerificationMethod = VerificationMethod.NONE
    verification_answer: str | None = None
    verification_conflict: bool = False
    reading_conflict: bool = False
    verification_details: str = ""

    discrepancy: str | None = None
    readability_issue: str | None = None
    feedback: str | None = None
    needs_review: bool = False
    review_reasons: tuple[ReviewReason, ...] = ()

    @model_validator(mode="after")
    def validate_points_range(self) -> "QuestionResult":
        """Ensure awarded points don't exceed possible points."""
        if self.points_awarded > self.points_possible:
            raise ValueError(
                f"Awarded points ({self.points_awarded}) cannot exceed "
                f"possible points ({self.points_possible})"
            )
        return self


class CostBreakdown(BaseModel):
    model_config = ConfigDict(frozen=True)

    ocr: float = 0.0
    solve: float = 0.0
    verification: float = 0.0
    feedback: float = 0.0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total(self) -> float:
        return round(self.ocr + self.solve + self.verification + self.feedback, 6)


class GradingResult(BaseModel):
    """
    Complete grading result for one submission.

    Owned by the orchestrator that produced it; immutable once returned.
    """

    model_config = ConfigDict(frozen=True)

    result_id: UUID = Field(default_factory=uuid4)
    submission_id: str
    success: bool
    status: SubmissionStatus
    questions: tuple[QuestionResult, ...] = ()

    detected_student_name: str | None = None
    name_confidence: float | None = None

    ocr_provider: OcrProviderName = OcrProviderName.VISION
    ocr_confidence: float | None = None
    provider: str | None = None
    model: str | None = None
    math_difficulty: Difficulty = Difficulty.SIMPLE
    verification_method: VerificationMethod = VerificationMethod.NONE

    needs_review: bool = False
    review_reason: str | None = None
    error: str | None = None

    processing_time_ms: int = 0
    tokens_used: int | None = None
    fallbacks_used: int = 0
    cost_breakdown: CostBreakdown = Field(default_factory=CostBreakdown)
    stages: tuple[PipelineStage, ...] = ()
    graded_at: datetime = Field(default_factory=utcnow)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_score(self) -> float:
        return sum(q.points_awarded for q in self.questions)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_possible(self) -> float:
        return sum(q.points_possible for q in self.questions)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def percentage(self) -> int:
        if self.total_possible == 0:
            return 0
        return round(self.total_score / self.total_possible * 100)

    def verification_payload(self) -> dict[str, Any]:
        """Per-question verification data in the shape the results store persists."""
        return {
            str(q.question_number): {
                "difficulty": q.difficulty.value,
                "method": q.verification_method.value,
                "answer": q.verification_answer,
                "conflict": q.verification_conflict,
                "details": q.verification_details,
            }
            for q in self.questions
        }


# ==============================================================================
# Batch Models
# ==============================================================================


class BatchStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class BatchProgress(BaseModel):
    """Read-only snapshot of a batch run, emitted after every transition."""

    model_config = ConfigDict(frozen=True)

    status: BatchStatus
    current_id: str | None
    completed: int
    failed: int
    needs_review: int
    remaining: int
    total: int
    elapsed_seconds: float
    eta_seconds: float
    last_event: str = ""

    @computed_field  # type: ignore[prop-decorator]
    @property
    def percent(self) -> int:
        if self.total == 0:
            return 0
        return round((self.completed + self.failed) / self.total * 100)


# ==============================================================================
# Ledger Models
# ==============================================================================


class TokenLedgerEntry(BaseModel):
    """
    One append-only ledger record.

    Entries are never edited or deleted; balance is the latest entry's
    ``balance_after``.
    """

    model_config = ConfigDict(frozen=True)

    entry_id: UUID = Field(default_factory=uuid4)
    user_id: str = Field(..., min_length=1)
    amount: int
    balance_after: int
    operation: TokenOperation
    reference_id: str | None = None
    notes: str | None = None
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("amount")
    @classmethod
    def validate_nonzero(cls, v: int) -> int:
        if v == 0:
            raise ValueError("Ledger entries must move the balance")
        return v


class BalanceReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    balance: int
    status: BalanceStatus
    can_grade: bool


# ==============================================================================
# Telemetry Models
# ==============================================================================


class CostEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    submission_id: str
    provider: str
    kind: str  # ocr | solve | symbolic | chain_of_thought | feedback
    cost: float = Field(..., ge=0.0)
    tokens_used: int | None = None
    latency_ms: int = 0
    created_at: datetime = Field(default_factory=utcnow)


class ProviderAnalyticsEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: str
    success: bool
    latency_ms: int
    is_fallback: bool
    error_type: str | None = None


class GradingAnalyticsEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    submission_id: str
    difficulty: Difficulty
    success: bool
    needs_review: bool
    latency_ms: int
    provider: str | None
    ocr_provider: OcrProviderName
    verification_method: VerificationMethod
    cost_total: float = 0.0


class ReviewEntry(BaseModel):
    """One graded question or submission fed into the review-rate tracker."""

    model_config = ConfigDict(frozen=True)

    submission_id: str
    needs_review: bool
    reasons: tuple[ReviewReason, ...] = ()
    difficulty: Difficulty = Difficulty.SIMPLE
    recorded_at: datetime = Field(default_factory=utcnow)


class ReviewMetrics(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: int
    flagged: int
    review_rate: float
    by_reason: dict[str, int] = Field(default_factory=dict)
    by_difficulty: dict[str, float] = Field(default_factory=dict)
    window_minutes: int
    alert: bool = False
