"""
Answer comparator.

Decides whether two answer strings (AI answer, verifier answer, student
answer, answer key) denote the same value. Equivalent forms are accepted:
decimals, fractions, mixed numbers and percentages.

Comparison order, first success wins:
1. exact match of the normalized strings
2. numeric, when at least one side is a plain decimal number
3. fraction cross-multiplication, when both sides are fraction literals
4. percentage, against another percentage or a plain decimal

Nothing here raises; malformed input simply fails to match.
"""

import re
from fractions import Fraction

from mathgrader.models import ComparisonResult

DEFAULT_TOLERANCE = 1e-4
RELATIVE_TOLERANCE = 1e-4

_LEADING_MARK = re.compile(r"^[=:]\s*")
_WHITESPACE = re.compile(r"\s+")
_TRAILING_ZEROS = re.compile(r"\.0+$")
_UNITS = re.compile(
    r"(?<=\d)\s*(dollars?|cents?|meters?|feet|inches|cm|mm|kg|g|lbs?|oz)$",
    re.IGNORECASE,
)
_CURRENCY = re.compile(r"^\$\s*")

_PLAIN_NUMBER = re.compile(r"^-?(\d+(\.\d*)?|\.\d+)$")
_FRACTION = re.compile(r"^(-?\d+)\s*/\s*(\d+)$")
_MIXED_NUMBER = re.compile(r"^(-?\d+)\s+(\d+)\s*/\s*(\d+)$")
_PERCENTAGE = re.compile(r"^(-?\d+\.?\d*)\s*(%|percent)$")


def normalize_answer(answer: str) -> str:
    """
    Normalize an answer string for comparison.

    Lowercases, trims, strips a leading ``=`` or ``:``, thousands separators,
    trailing units, a leading ``$`` and a trailing ``.0+``, and collapses
    internal whitespace.
    """
    normalized = answer.strip().lower()
    normalized = _LEADING_MARK.sub("", normalized)
    normalized = normalized.replace(",", "")
    normalized = _WHITESPACE.sub(" ", normalized).strip()
    normalized = _UNITS.sub("", normalized)
    normalized = _CURRENCY.sub("", normalized)
    return _TRAILING_ZEROS.sub("", normalized)


def parse_fraction(value: str) -> Fraction | None:
    """
    Parse ``a/b`` or a mixed number ``w a/b``.

    Returns None for anything else, including a zero denominator or digit
    runs too long to convert.
    """
    text = value.strip()

    try:
        mixed = _MIXED_NUMBER.match(text)
        if mixed:
            whole, num, den = (int(g) for g in mixed.groups())
            if den == 0:
                return None
            sign = -1 if mixed.group(1).startswith("-") else 1
            return Fraction(sign * (abs(whole) * den + num), den)

        simple = _FRACTION.match(text)
        if simple:
            num, den = int(simple.group(1)), int(simple.group(2))
            if den == 0:
                return None
            return Fraction(num, den)
    except ValueError:
        return None

    return None


def parse_percentage(value: str) -> float | None:
    """Parse ``50%``, ``50 %`` or ``50 percent`` into 50.0."""
    match = _PERCENTAGE.match(value.strip().lower())
    if not match:
        return None
    try:
        return float(match.group(1))
    except ValueError:
        return None


def _plain_number(value: str) -> float | None:
    if not _PLAIN_NUMBER.match(value):
        return None
    return float(value)


def _as_number(value: str) -> float | None:
    """Plain decimal, or a fraction literal evaluated as a float."""
    number = _plain_number(value)
    if number is not None:
        return number
    fraction = parse_fraction(value)
    if fraction is None:
        return None
    try:
        return float(fraction)
    except OverflowError:
        return None


def _close(a: float, b: float, tolerance: float) -> bool:
    diff = abs(a - b)
    if diff < tolerance:
        return True
    # Whole numbers are compared exactly; relative slack only absorbs float rounding
    if a.is_integer() and b.is_integer():
        return False
    return diff < max(abs(a), abs(b)) * RELATIVE_TOLERANCE


def compare_answers(
    answer_a: str | None,
    answer_b: str | None,
    tolerance: float = DEFAULT_TOLERANCE,
) -> ComparisonResult:
    """
    Compare two answers, accepting equivalent forms.

    Args:
        answer_a: First answer (e.g. the AI's answer).
        answer_b: Second answer (e.g. the verifier's answer or answer key).
        tolerance: Absolute tolerance for numeric comparison.

    Returns:
        ComparisonResult. On no match both normalized forms are included
        so an operator can see what was compared.
    """
    if not answer_a or not answer_b:
        return ComparisonResult(matched=False)

    norm_a = normalize_answer(answer_a)
    norm_b = normalize_answer(answer_b)

    if norm_a == norm_b and norm_a:
        return ComparisonResult(matched=True, method="exact")

    # Numeric: one side must be a plain decimal
    plain_a, plain_b = _plain_number(norm_a), _plain_number(norm_b)
    if plain_a is not None or plain_b is not None:
        num_a, num_b = _as_number(norm_a), _as_number(norm_b)
        if num_a is not None and num_b is not None and _close(num_a, num_b, tolerance):
            return ComparisonResult(matched=True, method="numeric")

    frac_a, frac_b = parse_fraction(norm_a), parse_fraction(norm_b)
    if frac_a is not None and frac_b is not None:
        # Cross multiply: a/b == c/d when a*d == c*b
        if frac_a.numerator * frac_b.denominator == frac_b.numerator * frac_a.denominator:
            return ComparisonResult(matched=True, method="fraction")

    pct_a, pct_b = parse_percentage(norm_a), parse_percentage(norm_b)
    if pct_a is not None and pct_b is not None and abs(pct_a - pct_b) < tolerance:
        return ComparisonResult(matched=True, method="percentage")
    if pct_a is not None and plain_b is not None and abs(pct_a / 100 - plain_b) < tolerance:
        return ComparisonResult(matched=True, method="percentage")
    if pct_b is not None and plain_a is not None and abs(pct_b / 100 - plain_a) < tolerance:
        return ComparisonResult(matched=True, method="percentage")

    return ComparisonResult(
        matched=False,
        method="none",
        normalized_a=norm_a,
        normalized_b=norm_b,
    )


def answers_equivalent(
    answer_a: str | None,
    answer_b: str | None,
    tolerance: float = DEFAULT_TOLERANCE,
) -> bool:
    return compare_answers(answer_a, answer_b, tolerance).matched


def matches_any(answer: str | None, accepted: tuple[str, ...], tolerance: float = DEFAULT_TOLERANCE) -> bool:
    """True when ``answer`` matches any of the accepted answers."""
    return any(answers_equivalent(answer, candidate, tolerance) for candidate in accepted)
