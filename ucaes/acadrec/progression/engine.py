"""
End-of-year level progression for AcadRec.

Progression moves every active student up one level (100 -> 200 -> ...)
and then advances the institution's current academic year. It runs in two
phases:

    plan     - pure: decide, per student, the new level or why not
    execute  - apply eligible plans one student at a time, then move the
               current-period pointer once

Invariants:
    - Planning never writes
    - A student is only advanced if their stored level is still the one
      the plan was made from, so re-running the same plans is harmless
    - Students at the maximum level are reported, never advanced
    - The current period moves after every student was attempted, only if
      at least one student progressed, and at most once per academic year

How to change safely:
    - Keep level writes on compare_and_set
    - Never advance the period from inside the per-student loop
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from typing import Any

from ..config import ProgressionConfig, WorkflowConfig
from ..errors import ConflictError, ValidationError
from ..identity import Collections
from ..store import Document, DocumentStore, now_ms
from .period import AcademicPeriod, advance_current_period, load_current_period

logger = logging.getLogger(__name__)

REGULAR_SCHEDULE = "Regular"
ACTIVE_STATUS = "active"

_DIGITS_RE = re.compile(r"\D")


@dataclass(frozen=True)
class ProgressionPolicy:
    """How levels advance.

    Attributes:
        increment: Added to the level on progression
        min_level: Level assumed when a record has none
        max_level: Students at or above this level do not progress
    """

    increment: int = 100
    min_level: int = 100
    max_level: int = 400

    @classmethod
    def from_config(cls, config: ProgressionConfig) -> ProgressionPolicy:
        return cls(
            increment=config.increment,
            min_level=config.min_level,
            max_level=config.max_level,
        )


@dataclass(frozen=True)
class StudentFilter:
    """Which students a progression run covers.

    Attributes:
        schedule_type: "Regular", "Weekend", ... or None for everyone.
            Records with no schedule type count as Regular.
        status: Student status to include
        collections: Collections to load students from
    """

    schedule_type: str | None = None
    status: str = ACTIVE_STATUS
    collections: tuple[str, ...] = (Collections.STUDENT_REGISTRATIONS,)


@dataclass
class ProgressionPlan:
    """One student's progression decision and, after execution, its outcome."""

    student_id: str
    collection: str
    registration_number: str | None
    name: str
    recorded_level: Any
    current_level: int
    new_level: int
    current_year: str
    new_year: str
    period_year: str
    eligible: bool
    reason: str | None = None
    executed: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "student_id": self.student_id,
            "collection": self.collection,
            "registration_number": self.registration_number,
            "name": self.name,
            "current_level": self.current_level,
            "new_level": self.new_level,
            "current_year": self.current_year,
            "new_year": self.new_year,
            "period_year": self.period_year,
            "eligible": self.eligible,
            "reason": self.reason,
            "executed": self.executed,
            "error": self.error,
        }


@dataclass
class ProgressionResult:
    """Outcome of a progression run."""

    academic_year: str
    next_academic_year: str
    plans: list[ProgressionPlan] = field(default_factory=list)
    dry_run: bool = False
    period_advanced: bool = False

    @property
    def progressed(self) -> list[ProgressionPlan]:
        return [plan for plan in self.plans if plan.executed]

    @property
    def ineligible(self) -> list[ProgressionPlan]:
        return [plan for plan in self.plans if not plan.eligible]

    @property
    def failed(self) -> list[ProgressionPlan]:
        return [plan for plan in self.plans if plan.error]

    def to_dict(self) -> dict[str, Any]:
        return {
            "academic_year": self.academic_year,
            "next_academic_year": self.next_academic_year,
            "dry_run": self.dry_run,
            "students_processed": len(self.plans),
            "eligible": len(self.plans) - len(self.ineligible),
            "progressed": len(self.progressed),
            "failed": len(self.failed),
            "period_advanced": self.period_advanced,
            "results": [plan.to_dict() for plan in self.plans],
        }


def parse_level(value: Any, default: int) -> int:
    """Numeric level from values like 200, "200" or "Level 200"."""
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    digits = _DIGITS_RE.sub("", value) if isinstance(value, str) else ""
    return int(digits) if digits else default


def _student_name(student: Document) -> str:
    parts = [student.get("surname") or "", student.get("otherNames") or ""]
    name = " ".join(part for part in parts if part).strip()
    return name or student.get("name") or ""


def plan_progression(
    students: Iterable[Document],
    policy: ProgressionPolicy,
    period: AcademicPeriod,
) -> list[ProgressionPlan]:
    """Decide each student's next level. Reads nothing, writes nothing."""
    next_year = period.next_year
    plans = []

    for student in students:
        recorded = student.get("currentLevel")
        level = parse_level(recorded, policy.min_level)
        eligible = level < policy.max_level

        plans.append(
            ProgressionPlan(
                student_id=student.doc_id,
                collection=student.collection,
                registration_number=(
                    student.get("registrationNumber") or student.get("studentIndexNumber")
                ),
                name=_student_name(student),
                recorded_level=recorded,
                current_level=level,
                new_level=level + policy.increment if eligible else level,
                current_year=student.get("currentAcademicYear") or period.academic_year,
                new_year=next_year,
                period_year=period.academic_year,
                eligible=eligible,
                reason=None if eligible else "at max level",
            )
        )

    return plans


def _fresh(plan: ProgressionPlan) -> ProgressionPlan:
    """Copy of a plan with any earlier execution outcome cleared."""
    if not plan.eligible:
        return replace(plan)
    return replace(plan, reason=None, executed=False, error=None)


async def _progress_student(
    store: DocumentStore,
    plan: ProgressionPlan,
    period: AcademicPeriod,
    actor: str,
    max_attempts: int,
) -> None:
    for _ in range(max_attempts):
        student = await store.get(plan.collection, plan.student_id)
        if student is None:
            plan.error = "student record not found"
            return
        if student.get("currentLevel") != plan.recorded_level:
            plan.reason = "level changed since planning"
            return

        now = now_ms()
        updated = await store.compare_and_set(
            plan.collection,
            plan.student_id,
            student.version,
            {
                "currentLevel": str(plan.new_level),
                "currentAcademicYear": plan.new_year,
                "lastProgressionDate": now,
                "lastUpdated": now,
            },
        )
        if updated is None:
            continue

        plan.executed = True
        await store.create_if_absent(
            Collections.PROGRESSION_HISTORY,
            f"{plan.collection}:{plan.student_id}:{period.academic_year}",
            {
                "studentId": plan.student_id,
                "collection": plan.collection,
                "registrationNumber": plan.registration_number,
                "fromLevel": plan.current_level,
                "toLevel": plan.new_level,
                "fromAcademicYear": plan.current_year,
                "toAcademicYear": plan.new_year,
                "progressedBy": actor,
                "progressedAt": now,
            },
        )
        return

    plan.error = f"write contention after {max_attempts} attempts"


async def execute_progression(
    store: DocumentStore,
    plans: Sequence[ProgressionPlan],
    period: AcademicPeriod,
    actor: str = "system-progression",
    config: WorkflowConfig | None = None,
) -> ProgressionResult:
    """Apply eligible plans, then advance the current period once.

    Args:
        store: Document store
        plans: Output of plan_progression
        period: Period the plans were made for
        actor: Recorded on the period pointer and progression history
        config: Write retry bounds

    Returns:
        ProgressionResult with each plan's executed flag or error filled in
    """
    config = config or WorkflowConfig()
    result = ProgressionResult(
        academic_year=period.academic_year,
        next_academic_year=period.next_year,
        plans=[_fresh(plan) for plan in plans],
    )

    for plan in result.plans:
        if not plan.eligible:
            continue
        try:
            await _progress_student(store, plan, period, actor, config.max_cas_retries)
        except Exception as e:
            logger.error(f"Error progressing student {plan.student_id}: {e}", exc_info=True)
            plan.error = str(e)

    if result.progressed:
        try:
            result.period_advanced = await advance_current_period(
                store, period.academic_year, actor
            )
        except ConflictError as e:
            logger.error(f"Failed to advance academic period: {e.message}")

    logger.info(
        "Progression executed",
        extra={
            "academic_year": result.academic_year,
            "students": len(result.plans),
            "progressed": len(result.progressed),
            "failed": len(result.failed),
            "period_advanced": result.period_advanced,
        },
    )
    return result


class ProgressionEngine:
    """Plans and executes level progression against the store.

    Example:
        >>> engine = ProgressionEngine(store)
        >>> preview = await engine.run(StudentFilter(schedule_type="Regular"), dry_run=True)
        >>> result = await engine.execute(preview.plans)
        >>> result.period_advanced
        True
    """

    def __init__(
        self,
        store: DocumentStore,
        config: ProgressionConfig | None = None,
        workflow_config: WorkflowConfig | None = None,
    ) -> None:
        self.store = store
        self.policy = ProgressionPolicy.from_config(config or ProgressionConfig())
        self.workflow_config = workflow_config or WorkflowConfig()

    async def select_students(self, student_filter: StudentFilter | None = None) -> list[Document]:
        """Load the students a run covers."""
        student_filter = student_filter or StudentFilter()
        if not student_filter.collections:
            raise ValidationError("No student collections to select from", field_name="collections")

        schedule_values: list[str | None] = []
        if student_filter.schedule_type is not None:
            schedule_values.append(student_filter.schedule_type)
            if student_filter.schedule_type == REGULAR_SCHEDULE:
                schedule_values.append(None)

        students: list[Document] = []
        for collection in student_filter.collections:
            if not schedule_values:
                students.extend(
                    await self.store.query(collection, {"status": student_filter.status})
                )
                continue
            for schedule in schedule_values:
                students.extend(
                    await self.store.query(
                        collection,
                        {"status": student_filter.status, "scheduleType": schedule},
                    )
                )
        return students

    async def plan(
        self,
        student_filter: StudentFilter | None = None,
        policy: ProgressionPolicy | None = None,
        period: AcademicPeriod | None = None,
    ) -> list[ProgressionPlan]:
        """Plan progression for the selected students in the current period."""
        period = period or await load_current_period(self.store)
        students = await self.select_students(student_filter)
        return plan_progression(students, policy or self.policy, period)

    async def execute(
        self,
        plans: Sequence[ProgressionPlan],
        actor: str = "system-progression",
        period: AcademicPeriod | None = None,
    ) -> ProgressionResult:
        """Execute plans for the period they were made in.

        Raises:
            ValidationError: If the plans span more than one academic year
        """
        if period is None:
            years = {plan.period_year for plan in plans}
            if len(years) > 1:
                raise ValidationError(
                    "Plans were made for different academic years",
                    field_name="period_year",
                    errors=sorted(years),
                )
            if years:
                period = AcademicPeriod(academic_year=years.pop())
            else:
                period = await load_current_period(self.store)

        return await execute_progression(
            self.store, plans, period, actor=actor, config=self.workflow_config
        )

    async def run(
        self,
        student_filter: StudentFilter | None = None,
        policy: ProgressionPolicy | None = None,
        dry_run: bool = True,
        actor: str = "system-progression",
    ) -> ProgressionResult:
        """Plan and, unless dry_run, execute in one call."""
        period = await load_current_period(self.store)
        plans = await self.plan(student_filter, policy, period)

        if dry_run:
            logger.info(
                "Progression dry run",
                extra={"academic_year": period.academic_year, "students": len(plans)},
            )
            return ProgressionResult(
                academic_year=period.academic_year,
                next_academic_year=period.next_year,
                plans=plans,
                dry_run=True,
            )

        return await self.execute(plans, actor=actor, period=period)
