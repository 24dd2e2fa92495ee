"""
Grading Engine Module.

Difficulty classification, answer comparison, verification routing,
confidence aggregation and the per-submission orchestrator.
"""

from mathgrader.grading.classifier import classify_difficulty, classify_with_reason, max_difficulty
from mathgrader.grading.comparator import compare_answers, normalize_answer
from mathgrader.grading.confidence import ConfidenceAggregator
from mathgrader.grading.engine import GradingOrchestrator, PipelineTimeout
from mathgrader.grading.prompt_builder import PromptBuilder
from mathgrader.grading.scorer import ResponseParser
from mathgrader.grading.verification import VerificationRouter, select_method, verification_stats

__all__ = [
    "ConfidenceAggregator",
    "GradingOrchestrator",
    "PipelineTimeout",
    "PromptBuilder",
    "ResponseParser",
    "VerificationRouter",
    "classify_difficulty",
    "classify_with_reason",
    "compare_answers",
    "max_difficulty",
    "normalize_answer",
    "select_method",
    "verification_stats",
]
