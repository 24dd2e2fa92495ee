"""
Response parser for vision model output.

Parses the JSON the model returns for grading, verification and feedback
prompts and validates it with pydantic. Anything that is not in the
expected shape raises ParseError, which the orchestrator treats as a failed
stage rather than a crash.
"""

import json
import logging
import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from mathgrader.models import ParsedGrading, ParsedQuestion
from mathgrader.providers.base import ParseError

logger = logging.getLogger(__name__)

DEFAULT_VERIFY_CONFIDENCE = 0.8


class _Payload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class _QuestionPayload(_Payload):
    question_number: int | None = None
    problem_text: str | None = None
    ai_calculation: str | None = None
    ai_answer: Any = None
    student_answer: Any = None
    is_correct: bool | None = None
    confidence: float | None = None
    readability_confidence: float | None = None
    readability_issue: str | None = None
    points_awarded: float | None = None
    points_possible: float | None = None


class _GradingPayload(_Payload):
    student_name: str | None = None
    name_confidence: float | None = None
    questions: list[_QuestionPayload]
    needs_review: bool | None = None
    review_reason: str | None = None


class VerificationReply(_Payload):
    """A chain-of-thought verification answer."""

    your_answer: str = ""
    provided_answer: str = ""
    match: bool = False
    confidence: float = DEFAULT_VERIFY_CONFIDENCE
    steps: list[str] = Field(default_factory=list)
    discrepancy: str | None = None

    @field_validator("your_answer", "provided_answer", mode="before")
    @classmethod
    def stringify(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @field_validator("confidence", mode="before")
    @classmethod
    def default_confidence(cls, v: Any) -> float:
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            return DEFAULT_VERIFY_CONFIDENCE
        return max(0.0, min(1.0, float(v)))

    @field_validator("steps", mode="before")
    @classmethod
    def listify(cls, v: Any) -> list[str]:
        if not isinstance(v, list):
            return []
        return [str(s) for s in v]


class FeedbackItem(_Payload):
    question_number: int
    message: str


class FeedbackReply(_Payload):
    feedback: list[FeedbackItem] = Field(default_factory=list)
    overall_message: str = ""

    def by_question(self) -> dict[int, str]:
        return {item.question_number: item.message for item in self.feedback}


def _unit(value: float | None, default: float) -> float:
    if value is None:
        return default
    return max(0.0, min(1.0, value))


def _answer_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class ResponseParser:
    """
    Parses and validates model responses.

    Ensures:
    1. Response contains a JSON object (markdown fences tolerated)
    2. The object has the fields the prompt asked for
    3. Confidences are within [0, 1] and points are consistent
    """

    def parse_grading(self, response: str) -> ParsedGrading:
        """
        Parse a grading response.

        Args:
            response: Raw model response (expected JSON).

        Returns:
            Validated ParsedGrading.

        Raises:
            ParseError: If parsing or validation fails.
        """
        data = self._load(response)
        try:
            payload = _GradingPayload.model_validate(data)
        except ValidationError as e:
            raise ParseError(f"Invalid grading response: {e.error_count()} errors", raw_response=response) from e

        if not payload.questions:
            raise ParseError("Grading response contains no questions", raw_response=response)

        questions = tuple(self._convert_question(q, i) for i, q in enumerate(payload.questions))
        return ParsedGrading(
            student_name=payload.student_name or None,
            name_confidence=_unit(payload.name_confidence, 0.0),
            questions=questions,
            needs_review=bool(payload.needs_review),
            review_reason=payload.review_reason or None,
        )

    def parse_verification(self, response: str) -> VerificationReply:
        """Parse a chain-of-thought verification response."""
        data = self._load(response)
        if "yourAnswer" not in data and "calculatedAnswer" in data:
            data["yourAnswer"] = data["calculatedAnswer"]
        try:
            return VerificationReply.model_validate(data)
        except ValidationError as e:
            raise ParseError("Invalid verification response", raw_response=response) from e

    def parse_feedback(self, response: str) -> FeedbackReply:
        """Parse a batch feedback response."""
        data = self._load(response)
        try:
            return FeedbackReply.model_validate(data)
        except ValidationError as e:
            raise ParseError("Invalid feedback response", raw_response=response) from e

    def _convert_question(self, item: _QuestionPayload, index: int) -> ParsedQuestion:
        possible = max(item.points_possible if item.points_possible is not None else 1.0, 0.0)
        awarded = item.points_awarded if item.points_awarded is not None else 0.0
        clamped = min(max(awarded, 0.0), possible)
        if clamped != awarded:
            logger.warning("Clamped points for question %d from %s to %s", index + 1, awarded, clamped)
        number = item.question_number if item.question_number and item.question_number > 0 else index + 1
        return ParsedQuestion(
            question_number=number,
            problem_text=item.problem_text or "",
            ai_calculation=item.ai_calculation or "",
            ai_answer=_answer_text(item.ai_answer) or "",
            student_answer=_answer_text(item.student_answer),
            is_correct=bool(item.is_correct),
            confidence=_unit(item.confidence, 0.5),
            readability_confidence=_unit(item.readability_confidence, 1.0),
            readability_issue=item.readability_issue or None,
            points_awarded=clamped,
            points_possible=possible,
        )

    def _load(self, response: str) -> dict[str, Any]:
        json_str = self._extract_json(response)
        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            raise ParseError(f"Invalid JSON in response: {e}", raw_response=response) from e
        if not isinstance(data, dict):
            raise ParseError("Response JSON is not an object", raw_response=response)
        return data

    def _extract_json(self, response: str) -> str:
        """
        Extract JSON from response, handling common formats.

        Args:
            response: Raw response text.

        Returns:
            Extracted JSON string.
        """
        # Remove markdown code block if present
        json_match = re.search(r"```(?:json)?\s*([\s\S]*?)```", response)
        if json_match:
            return json_match.group(1).strip()

        brace_start = response.find("{")
        if brace_start == -1:
            raise ParseError("No JSON object found in response", raw_response=response)

        # Find matching closing brace
        depth = 0
        in_string = False
        escaped = False
        for i, char in enumerate(response[brace_start:], start=brace_start):
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return response[brace_start : i + 1]

        raise ParseError("Unclosed JSON object in response", raw_response=response)
