"""
Grades module for AcadRec - submission, approval and publication.

This module handles:
- The institutional grading scale
- Grade batches and their per-student records
- The draft -> pending_approval -> approved -> published workflow

Invariants:
    - Students only ever see records whose own status is published
    - A record is never ahead of its batch
"""

from .grading import COMPONENT_LIMITS, GRADE_SCALE, clamp_component, letter_grade, total_score
from .models import (
    BatchState,
    BatchStatus,
    FanoutReport,
    GradeSubmissionBatch,
    StudentGradeRecord,
    can_advance,
    is_ahead,
)
from .workflow import GradeWorkflow, normalize_grade_entry

__all__ = [
    "COMPONENT_LIMITS",
    "GRADE_SCALE",
    "clamp_component",
    "letter_grade",
    "total_score",
    "BatchState",
    "BatchStatus",
    "FanoutReport",
    "GradeSubmissionBatch",
    "StudentGradeRecord",
    "can_advance",
    "is_ahead",
    "GradeWorkflow",
    "normalize_grade_entry",
]
