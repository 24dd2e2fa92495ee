"""
Math difficulty classifier.

Classifies a problem's text to decide how much verification it gets:
- simple: basic integer arithmetic, no verification
- moderate: fractions, decimals, percentages, multi-step arithmetic
- complex: algebra, equations, powers, roots and functions

Patterns are checked in priority order (complex, then moderate) and the
first match wins. The classifier is pure and never raises.
"""

import re
from typing import NamedTuple

from mathgrader.models import Difficulty

_I = re.IGNORECASE

COMPLEX_PATTERNS: tuple[re.Pattern[str], ...] = (
    # Variables next to operators
    re.compile(r"[a-z]\s*[=+\-*/]", _I),
    re.compile(r"[+\-*/=]\s*[a-z]", _I),
    # Solve / equation keywords
    re.compile(r"solve\s+(for|the)", _I),
    re.compile(r"find\s+(the|x|y)", _I),
    re.compile(r"equation", _I),
    re.compile(r"simplify", _I),
    re.compile(r"factor", _I),
    re.compile(r"expand", _I),
    # Exponents of 2 or more
    re.compile(r"\^[2-9]"),
    re.compile(r"\^\{[2-9]"),
    re.compile(r"squared", _I),
    re.compile(r"cubed", _I),
    # Roots
    re.compile(r"sqrt|√", _I),
    re.compile(r"\\sqrt"),
    re.compile(r"square\s*root", _I),
    # Parenthesized sub-expression followed by an operator
    re.compile(r"\([^)]+[+\-*/][^)]+\)\s*[*/+\-]"),
    # Systems of equations
    re.compile(r"and\s+[a-z]\s*[=+\-]", _I),
    # Inequalities
    re.compile(r"[<>≤≥]"),
    re.compile(r"less\s+than", _I),
    re.compile(r"greater\s+than", _I),
    # Absolute value
    re.compile(r"\|[^|]+\|"),
    re.compile(r"absolute", _I),
    # Logarithms and trigonometry
    re.compile(r"log|ln", _I),
    re.compile(r"sin|cos|tan|cot|sec|csc", _I),
)

MODERATE_PATTERNS: tuple[re.Pattern[str], ...] = (
    # Fractions
    re.compile(r"\\frac"),
    re.compile(r"\d+\s*/\s*\d+"),
    re.compile(r"fraction", _I),
    # Decimals inside an operation
    re.compile(r"\d+\.\d+\s*[+\-*/]"),
    re.compile(r"[+\-*/]\s*\d+\.\d+"),
    # Percentages
    re.compile(r"%"),
    re.compile(r"percent", _I),
    # Mixed numbers (2 1/2)
    re.compile(r"\d+\s+\d+\s*/\s*\d+"),
    # Exponent of exactly one
    re.compile(r"\^1\b"),
    re.compile(r"\^\{1\}"),
    # Mixed precedence
    re.compile(r"[+\-]\s*\d+\s*[*/]\s*\d+"),
    re.compile(r"\d+\s*[*/]\s*\d+\s*[+\-]"),
    # Negative operands
    re.compile(r"-\d+\s*[+\-*/]"),
    re.compile(r"[+\-*/]\s*-\d+"),
    # Ratio / proportion
    re.compile(r"ratio", _I),
    re.compile(r"proportion", _I),
    re.compile(r":\s*\d+"),
    # Three or more operands
    re.compile(r"\d+\s*[+\-*/]\s*\d+\s*[+\-*/]\s*\d+"),
)

_DIFFICULTY_RANK = {
    Difficulty.SIMPLE: 0,
    Difficulty.MODERATE: 1,
    Difficulty.COMPLEX: 2,
}


class Classification(NamedTuple):
    """Difficulty together with the reason it was chosen."""

    difficulty: Difficulty
    reason: str
    matched_pattern: str | None = None


def classify_with_reason(problem_text: str | None) -> Classification:
    """
    Classify a problem and explain the decision.

    Args:
        problem_text: Problem text, plain or LaTeX. May be empty or None.

    Returns:
        Classification with the difficulty, a readable reason and the
        pattern that matched (None for the simple default).
    """
    if not problem_text or not problem_text.strip():
        return Classification(Difficulty.SIMPLE, "Empty or missing problem text")

    normalized = problem_text.strip()

    for pattern in COMPLEX_PATTERNS:
        if pattern.search(normalized):
            return Classification(
                Difficulty.COMPLEX,
                "Contains algebraic variables, equations, or advanced operations",
                pattern.pattern,
            )

    for pattern in MODERATE_PATTERNS:
        if pattern.search(normalized):
            return Classification(
                Difficulty.MODERATE,
                "Contains fractions, decimals, percentages, or multi-step operations",
                pattern.pattern,
            )

    return Classification(Difficulty.SIMPLE, "Basic arithmetic with integers")


def classify_difficulty(problem_text: str | None) -> Difficulty:
    """Return the difficulty of a single problem."""
    return classify_with_reason(problem_text).difficulty


def classify_batch(problems: list[str]) -> list[Difficulty]:
    return [classify_difficulty(p) for p in problems]


def max_difficulty(difficulties: list[Difficulty]) -> Difficulty:
    """
    Highest difficulty in a collection; simple when empty.

    Used to summarize a whole worksheet.
    """
    if not difficulties:
        return Difficulty.SIMPLE
    return max(difficulties, key=_DIFFICULTY_RANK.__getitem__)
