"""
Progression module for AcadRec - level progression and the academic period.

This module handles:
- Planning which students move up a level
- Executing plans with per-student compare-and-set
- Reading and advancing the current academic year
"""

from .engine import (
    ProgressionEngine,
    ProgressionPlan,
    ProgressionPolicy,
    ProgressionResult,
    StudentFilter,
    execute_progression,
    parse_level,
    plan_progression,
)
from .period import (
    AcademicPeriod,
    advance_current_period,
    load_current_period,
    next_academic_year,
)

__all__ = [
    "ProgressionEngine",
    "ProgressionPlan",
    "ProgressionPolicy",
    "ProgressionResult",
    "StudentFilter",
    "execute_progression",
    "parse_level",
    "plan_progression",
    "AcademicPeriod",
    "advance_current_period",
    "load_current_period",
    "next_academic_year",
]
