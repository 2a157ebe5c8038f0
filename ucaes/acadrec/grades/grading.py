"""
Institutional grading scale.

A score is the sum of three components, each clamped to its weight:
continuous assessment (10), mid-semester (20) and final exam (70).
"""

from __future__ import annotations

import math
from typing import Any

COMPONENT_LIMITS: dict[str, float] = {
    "assessment": 10,
    "midsem": 20,
    "exams": 70,
}

GRADE_SCALE: tuple[tuple[float, str], ...] = (
    (80, "A"),
    (75, "B+"),
    (70, "B"),
    (65, "C+"),
    (60, "C"),
    (55, "D+"),
    (50, "D"),
    (45, "E"),
)

FAIL_GRADE = "F"
MAX_SCORE = 100


def as_number(value: Any) -> float | None:
    """Float value of a number or numeric string; None for blanks, junk, NaN and infinities."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def clamp_component(name: str, value: Any) -> float | None:
    """Clamp a component to [0, limit]; blank or non-numeric input is None."""
    number = as_number(value)
    if number is None:
        return None
    return max(0.0, min(COMPONENT_LIMITS[name], number))


def total_score(components: dict[str, Any]) -> float | None:
    """Sum the clamped components, or None if none was entered."""
    values = [clamp_component(name, components.get(name)) for name in COMPONENT_LIMITS]
    if all(value is None for value in values):
        return None
    return sum(value or 0.0 for value in values)


def letter_grade(score: Any) -> str | None:
    """Letter grade for a score, or None if the score is missing or out of range."""
    number = as_number(score)
    if number is None or number < 0 or number > MAX_SCORE:
        return None
    for threshold, letter in GRADE_SCALE:
        if number >= threshold:
            return letter
    return FAIL_GRADE
