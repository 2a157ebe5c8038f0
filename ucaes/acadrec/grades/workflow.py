"""
Grade submission workflow for AcadRec.

A lecturer's grades for one course and period form a batch in
grade-submissions, with one record per student in student-grades. The batch
moves through draft -> pending_approval -> approved -> published, or to
rejected from pending_approval, and every record follows it.

There is no transaction spanning the batch and its records, so a
transition runs in two steps:

    1. Flip the batch status with compare-and-set and mark the fan-out as
       pending (fanoutPending = target status).
    2. Move every lagging record to the target status, each with its own
       compare-and-set, and clear fanoutPending once all have moved.

If step 2 fails part-way, calling the same transition again finishes it.
Records lag the batch, they are never ahead of it.

Invariants:
    - A record is never at a status ahead of its batch
    - Transitions are idempotent: repeating one never re-stamps a record
    - A batch with an unfinished fan-out cannot start another transition
    - At most one live batch per (lecturer, course, period); rejected
      batches release the slot for a resubmission
    - Every status change is appended to the batch history and audit log
    - A draft is submittable only if it holds all recordCount records and
      was not abandoned

How to change safely:
    - New statuses need a rank in models._RANKS and a stamp in STATUS_STAMPS
    - Keep batch flips and record moves on compare_and_set, never patch
"""

from __future__ import annotations

import logging
import uuid
from collections import Counter
from collections.abc import Mapping, Sequence
from typing import Any

from ..config import WorkflowConfig
from ..errors import (
    ConflictError,
    DuplicateSubmissionError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from ..identity import Collections, ExternalKey
from ..identity.keys import normalized_values
from ..store import Document, DocumentStore, now_ms
from .grading import COMPONENT_LIMITS, as_number, letter_grade, total_score
from .models import (
    STATUS_STAMPS,
    BatchState,
    BatchStatus,
    FanoutReport,
    GradeSubmissionBatch,
    can_advance,
    is_ahead,
)

logger = logging.getLogger(__name__)

# Status a batch must be in for each target status.
TRANSITION_SOURCES: dict[BatchStatus, BatchStatus] = {
    BatchStatus.PENDING_APPROVAL: BatchStatus.DRAFT,
    BatchStatus.APPROVED: BatchStatus.PENDING_APPROVAL,
    BatchStatus.REJECTED: BatchStatus.PENDING_APPROVAL,
    BatchStatus.PUBLISHED: BatchStatus.APPROVED,
}

STUDENT_KEY_FIELDS = ("studentKey", "registrationNumber", "studentId")


def _is_past(status: BatchStatus, target: BatchStatus) -> bool:
    if status is BatchStatus.REJECTED or target is BatchStatus.REJECTED:
        return False
    return status.rank > target.rank


def _student_key(entry: Mapping[str, Any]) -> str | None:
    for field_name in STUDENT_KEY_FIELDS:
        value = entry.get(field_name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def normalize_grade_entry(entry: Mapping[str, Any]) -> dict[str, Any]:
    """Turn lecturer input into record fields.

    Components are clamped to their weights and summed. A bare score is used
    only when no component was entered. Non-numeric, NaN and infinite values
    count as not entered.

    Raises:
        ValidationError: If the entry has no student key
    """
    student_key = _student_key(entry)
    if student_key is None:
        raise ValidationError(
            "Grade entry has no student key",
            field_name="studentKey",
            errors=[f"one of {', '.join(STUDENT_KEY_FIELDS)} is required"],
        )

    score = total_score(entry)
    if score is None:
        score = as_number(entry.get("score"))

    fields: dict[str, Any] = {
        "studentKey": student_key,
        "studentName": entry.get("studentName"),
        "score": score,
        "grade": letter_grade(score),
    }
    for name in COMPONENT_LIMITS:
        fields[name] = as_number(entry.get(name))
    return fields


class GradeWorkflow:
    """Drives grade batches and their records through the approval workflow.

    Example:
        >>> workflow = GradeWorkflow(store)
        >>> batch = await workflow.create_batch(
        ...     "lect-001", "AGR101", "2024/2025-S1",
        ...     [{"studentKey": "UCAES20240001", "assessment": 8, "midsem": 15, "exams": 55}],
        ... )
        >>> await workflow.submit(batch.batch_id, actor="lect-001")
        >>> await workflow.approve(batch.batch_id, actor="director-01")
        >>> state = await workflow.publish(batch.batch_id, actor="director-01")
        >>> state.status
        <BatchStatus.PUBLISHED: 'published'>
    """

    def __init__(self, store: DocumentStore, config: WorkflowConfig | None = None) -> None:
        self.store = store
        self.config = config or WorkflowConfig()

    # ── Batch creation ──────────────────────────────────────────────

    async def create_batch(
        self,
        lecturer: str,
        course_ref: str,
        period_ref: str,
        grades: Sequence[Mapping[str, Any]],
        course_name: str | None = None,
        previous_submission_id: str | None = None,
    ) -> GradeSubmissionBatch:
        """Create a draft batch and its grade records.

        Args:
            lecturer: Lecturer submitting the grades
            course_ref: Course identifier
            period_ref: Academic period, e.g. "2024/2025-S1"
            grades: One mapping per student (studentKey plus components or score)
            course_name: Display name of the course
            previous_submission_id: Rejected batch this one replaces

        Returns:
            The new draft batch

        Raises:
            ValidationError: If an argument is blank or a student appears twice
            DuplicateSubmissionError: If a live batch exists for the same
                lecturer, course and period
        """
        missing = [
            name
            for name, value in (
                ("lecturer", lecturer),
                ("course_ref", course_ref),
                ("period_ref", period_ref),
            )
            if not isinstance(value, str) or not value.strip()
        ]
        if missing:
            raise ValidationError(
                f"Missing required fields: {', '.join(missing)}",
                field_name=missing[0],
                errors=missing,
            )
        if not grades:
            raise ValidationError("A batch needs at least one grade", field_name="grades")

        entries = [normalize_grade_entry(entry) for entry in grades]
        repeated = [key for key, n in Counter(e["studentKey"] for e in entries).items() if n > 1]
        if repeated:
            raise ValidationError(
                "Students listed more than once",
                field_name="studentKey",
                errors=repeated,
            )

        await self._check_existing_batches(lecturer, course_ref, period_ref)

        batch_id = str(uuid.uuid4())
        now = now_ms()
        batch_doc = await self.store.insert(
            Collections.GRADE_SUBMISSIONS,
            {
                "lecturerId": lecturer,
                "submittedBy": lecturer,
                "courseRef": course_ref,
                "courseName": course_name,
                "periodRef": period_ref,
                "status": BatchStatus.DRAFT.value,
                "totalStudents": 0,
                "recordCount": len(entries),
                "fanoutPending": None,
                "previousSubmissionId": previous_submission_id,
                "history": [],
                "createdAt": now,
            },
            doc_id=batch_id,
        )

        await self._claim_slot(batch_id, lecturer, course_ref, period_ref)

        try:
            for entry in entries:
                await self.store.insert(
                    Collections.STUDENT_GRADES,
                    {
                        **entry,
                        "submissionId": batch_id,
                        "courseRef": course_ref,
                        "courseName": course_name,
                        "periodRef": period_ref,
                        "lecturerId": lecturer,
                        "status": BatchStatus.DRAFT.value,
                        "createdAt": now,
                    },
                    doc_id=f"{batch_id}:{entry['studentKey']}",
                )
        except Exception:
            await self._abandon(batch_id, None)
            raise

        await self.store.append_audit(
            Collections.GRADE_SUBMISSIONS,
            batch_id,
            "create",
            lecturer,
            {"records": len(entries), "previous_submission_id": previous_submission_id},
        )
        logger.info(
            "Created grade batch",
            extra={"batch_id": batch_id, "course_ref": course_ref, "records": len(entries)},
        )
        return GradeSubmissionBatch.from_document(batch_doc)

    @staticmethod
    def _holds_slot(batch: Document) -> bool:
        return batch.get("status") != BatchStatus.REJECTED.value and not batch.get("abandoned")

    async def _check_existing_batches(
        self, lecturer: str, course_ref: str, period_ref: str
    ) -> None:
        existing = await self.store.query(
            Collections.GRADE_SUBMISSIONS,
            {"lecturerId": lecturer, "courseRef": course_ref, "periodRef": period_ref},
        )
        for batch in existing:
            if self._holds_slot(batch):
                raise DuplicateSubmissionError(batch.doc_id, course_ref, period_ref, lecturer)

    async def _claim_slot(
        self, batch_id: str, lecturer: str, course_ref: str, period_ref: str
    ) -> None:
        """Take the (lecturer, course, period) slot for a batch, or abandon it."""
        claim_id = "|".join((lecturer, course_ref, period_ref))
        holder_id: str | None = None

        for _ in range(self.config.max_cas_retries):
            claimed = await self.store.create_if_absent(
                Collections.SUBMISSION_CLAIMS,
                claim_id,
                {"batchId": batch_id, "claimedAt": now_ms()},
            )
            if claimed:
                return

            claim = await self.store.get(Collections.SUBMISSION_CLAIMS, claim_id)
            if claim is None:
                continue
            holder_id = claim.get("batchId")
            holder = await self.store.get(Collections.GRADE_SUBMISSIONS, holder_id)
            if holder is not None and self._holds_slot(holder):
                await self._abandon(batch_id, holder_id)
                raise DuplicateSubmissionError(holder_id, course_ref, period_ref, lecturer)

            taken = await self.store.compare_and_set(
                Collections.SUBMISSION_CLAIMS,
                claim_id,
                claim.version,
                {"batchId": batch_id, "claimedAt": now_ms(), "previousBatchId": holder_id},
            )
            if taken is not None:
                return

        await self._abandon(batch_id, holder_id)
        raise ConflictError(
            f"Could not claim submission slot for {course_ref} ({period_ref})",
            conflicting_id=holder_id,
        )

    async def _abandon(self, batch_id: str, superseded_by: str | None) -> None:
        await self.store.patch(
            Collections.GRADE_SUBMISSIONS,
            batch_id,
            {"abandoned": True, "supersededBy": superseded_by, "updatedAt": now_ms()},
        )

    # ── Transitions ─────────────────────────────────────────────────

    async def submit(self, batch_id: str, actor: str) -> BatchState:
        """Move a draft batch to pending_approval.

        Raises:
            ValidationError: If any record has no score or derivable grade
            InvalidTransitionError: If the batch is not a draft
        """
        return await self._transition(batch_id, BatchStatus.PENDING_APPROVAL, actor)

    async def approve(self, batch_id: str, actor: str) -> BatchState:
        """Move a pending batch to approved."""
        return await self._transition(batch_id, BatchStatus.APPROVED, actor)

    async def reject(self, batch_id: str, actor: str, reason: str) -> BatchState:
        """Move a pending batch to rejected.

        Raises:
            ValidationError: If reason is blank
        """
        if not isinstance(reason, str) or not reason.strip():
            raise ValidationError("A rejection reason is required", field_name="reason")
        return await self._transition(
            batch_id, BatchStatus.REJECTED, actor, {"rejectionReason": reason.strip()}
        )

    async def publish(self, batch_id: str, actor: str) -> BatchState:
        """Move an approved batch to published, making its grades visible."""
        return await self._transition(batch_id, BatchStatus.PUBLISHED, actor)

    async def resubmit(
        self,
        batch_id: str,
        actor: str,
        grades: Sequence[Mapping[str, Any]] | None = None,
    ) -> BatchState:
        """Replace a rejected batch with a new one and submit it.

        The rejected batch keeps its status; the new batch points back to it
        through previousSubmissionId.

        Args:
            batch_id: Rejected batch
            actor: User resubmitting
            grades: Corrected grades (defaults to the rejected batch's grades)

        Returns:
            State of the new batch
        """
        rejected = await self._load_batch(batch_id)
        status = BatchStatus(rejected.get("status"))
        if status is not BatchStatus.REJECTED:
            raise InvalidTransitionError(batch_id, status.value, "resubmitted")

        if grades is None:
            grades = [
                {
                    "studentKey": record.get("studentKey"),
                    "studentName": record.get("studentName"),
                    "score": record.get("score"),
                    **{name: record.get(name) for name in COMPONENT_LIMITS},
                }
                for record in await self.records(batch_id)
            ]

        batch = await self.create_batch(
            rejected.get("lecturerId") or rejected.get("submittedBy"),
            rejected.get("courseRef"),
            rejected.get("periodRef"),
            grades,
            course_name=rejected.get("courseName"),
            previous_submission_id=batch_id,
        )
        await self.store.patch(
            Collections.GRADE_SUBMISSIONS,
            batch_id,
            {"resubmittedAs": batch.batch_id, "updatedAt": now_ms()},
        )
        return await self.submit(batch.batch_id, actor)

    async def _transition(
        self,
        batch_id: str,
        target: BatchStatus,
        actor: str,
        extra: dict[str, Any] | None = None,
    ) -> BatchState:
        batch = await self._load_batch(batch_id)

        pending = batch.get("fanoutPending")
        if pending and pending != target.value:
            report = await self._fan_out(batch, BatchStatus(pending))
            if not report.complete:
                raise ConflictError(
                    f"Batch {batch_id} has an unfinished {pending} fan-out",
                    conflicting_id=batch_id,
                    code="FANOUT_PENDING",
                    details=report.to_dict(),
                )

        batch = await self._flip(batch_id, target, actor, extra or {})

        fanout = None
        pending = batch.get("fanoutPending")
        if pending:
            fanout = await self._fan_out(batch, BatchStatus(pending))

        state = await self.get_state(batch_id)
        state.fanout = fanout
        return state

    async def _flip(
        self,
        batch_id: str,
        target: BatchStatus,
        actor: str,
        extra: dict[str, Any],
    ) -> Document:
        """Move the batch document itself; returns it unchanged if already there."""
        source = TRANSITION_SOURCES[target]

        for _ in range(self.config.max_cas_retries):
            batch = await self._load_batch(batch_id)
            status = BatchStatus(batch.get("status", BatchStatus.DRAFT.value))

            if status is target or _is_past(status, target):
                return batch
            if status is not source:
                raise InvalidTransitionError(batch_id, status.value, target.value)

            now = now_ms()
            at_field, by_field = STATUS_STAMPS[target]
            patch: dict[str, Any] = {
                "status": target.value,
                "fanoutPending": target.value,
                at_field: now,
                by_field: actor,
                "updatedAt": now,
                "history": [
                    *batch.get("history", []),
                    {"from": status.value, "to": target.value, "actor": actor, "at": now, **extra},
                ],
                **extra,
            }

            if target is BatchStatus.PENDING_APPROVAL:
                records = await self.records(batch_id)
                self._check_submittable(batch, records)
                patch["totalStudents"] = len(records)

            updated = await self.store.compare_and_set(
                Collections.GRADE_SUBMISSIONS, batch_id, batch.version, patch
            )
            if updated is not None:
                await self.store.append_audit(
                    Collections.GRADE_SUBMISSIONS,
                    batch_id,
                    target.value,
                    actor,
                    {"from": status.value, **extra},
                )
                logger.info(
                    "Batch status changed",
                    extra={"batch_id": batch_id, "from": status.value, "to": target.value},
                )
                return updated

        raise ConflictError(
            f"Batch {batch_id} kept changing during {target.value}",
            conflicting_id=batch_id,
        )

    @staticmethod
    def _check_submittable(batch: Document, records: list[Document]) -> None:
        batch_id = batch.doc_id
        if batch.get("abandoned"):
            raise ValidationError(f"Batch {batch_id} was abandoned", field_name="abandoned")
        if not records:
            raise ValidationError(f"Batch {batch_id} has no grade records", field_name="grades")

        expected = batch.get("recordCount")
        if expected is not None and len(records) != expected:
            raise ValidationError(
                f"Batch {batch_id} has {len(records)} of {expected} grade records",
                field_name="recordCount",
                errors=[f"expected {expected} records, found {len(records)}"],
            )

        incomplete = [
            record.get("studentKey", record.doc_id)
            for record in records
            if record.get("score") is None or letter_grade(record.get("score")) is None
        ]
        if incomplete:
            raise ValidationError(
                f"{len(incomplete)} record(s) have no valid score",
                field_name="score",
                errors=incomplete,
            )

    async def _fan_out(self, batch: Document, target: BatchStatus) -> FanoutReport:
        """Bring every record of a batch up to the target status."""
        at_field, by_field = STATUS_STAMPS[target]
        stamps: dict[str, Any] = {
            at_field: batch.get(at_field) or now_ms(),
            by_field: batch.get(by_field),
        }
        if target is BatchStatus.REJECTED:
            stamps["rejectionReason"] = batch.get("rejectionReason")

        report = FanoutReport(target=target)
        for record in await self.records(batch.doc_id):
            try:
                moved = await self._advance_record(record, target, stamps)
            except Exception as e:
                logger.error(
                    f"Failed to move grade record {record.doc_id} to {target.value}: {e}",
                    exc_info=True,
                )
                report.failed.append({"record_id": record.doc_id, "reason": str(e)})
                continue
            (report.updated if moved else report.skipped).append(record.doc_id)

        if report.complete:
            await self._clear_pending(batch.doc_id, target)
        else:
            logger.warning(
                "Grade fan-out incomplete, repeat the transition to finish it",
                extra={
                    "batch_id": batch.doc_id,
                    "target": target.value,
                    "failed": len(report.failed),
                },
            )
        return report

    async def _advance_record(
        self,
        record: Document,
        target: BatchStatus,
        stamps: dict[str, Any],
    ) -> bool:
        """Move one record to the target status. False if it was already there."""
        current: Document | None = record
        for _ in range(self.config.max_cas_retries):
            if current is None:
                raise NotFoundError(
                    f"Grade record {record.doc_id} disappeared",
                    collection=Collections.STUDENT_GRADES,
                )

            status = BatchStatus(current.get("status", BatchStatus.DRAFT.value))
            if status is target:
                return False
            if not can_advance(status, target):
                raise InvalidTransitionError(current.doc_id, status.value, target.value)

            updated = await self.store.compare_and_set(
                Collections.STUDENT_GRADES,
                current.doc_id,
                current.version,
                {"status": target.value, **stamps, "updatedAt": now_ms()},
            )
            if updated is not None:
                return True
            current = await self.store.get(Collections.STUDENT_GRADES, record.doc_id)

        raise ConflictError(
            f"Grade record {record.doc_id} kept changing",
            conflicting_id=record.doc_id,
        )

    async def _clear_pending(self, batch_id: str, target: BatchStatus) -> None:
        for _ in range(self.config.max_cas_retries):
            batch = await self._load_batch(batch_id)
            if batch.get("fanoutPending") != target.value:
                return
            updated = await self.store.compare_and_set(
                Collections.GRADE_SUBMISSIONS,
                batch_id,
                batch.version,
                {"fanoutPending": None, "fanoutCompletedAt": now_ms()},
            )
            if updated is not None:
                return
        logger.warning(f"Could not clear pending fan-out on batch {batch_id}")

    # ── Reads ───────────────────────────────────────────────────────

    async def _load_batch(self, batch_id: str) -> Document:
        batch = await self.store.get(Collections.GRADE_SUBMISSIONS, batch_id)
        if batch is None:
            raise NotFoundError(
                f"Grade batch not found: {batch_id}",
                collection=Collections.GRADE_SUBMISSIONS,
            )
        return batch

    async def records(self, batch_id: str) -> list[Document]:
        """Grade records belonging to a batch."""
        return await self.store.query(Collections.STUDENT_GRADES, {"submissionId": batch_id})

    async def get_state(self, batch_id: str) -> BatchState:
        batch = await self._load_batch(batch_id)
        counts = Counter(
            record.get("status", BatchStatus.DRAFT.value) for record in await self.records(batch_id)
        )
        return BatchState(
            batch_id=batch_id,
            status=BatchStatus(batch.get("status", BatchStatus.DRAFT.value)),
            total_students=int(batch.get("totalStudents", 0) or 0),
            record_counts=dict(counts),
            fanout_pending=batch.get("fanoutPending"),
        )

    async def find_records_ahead(self, batch_id: str) -> list[str]:
        """Ids of records whose status is ahead of their batch. Should be empty."""
        batch = await self._load_batch(batch_id)
        batch_status = BatchStatus(batch.get("status", BatchStatus.DRAFT.value))
        return [
            record.doc_id
            for record in await self.records(batch_id)
            if is_ahead(BatchStatus(record.get("status", BatchStatus.DRAFT.value)), batch_status)
        ]

    async def published_grades(self, student_key: str) -> list[Document]:
        """Grades a student may see: records that are themselves published."""
        seen: set[str] = set()
        published: list[Document] = []
        for value in normalized_values(ExternalKey.REGISTRATION_NUMBER, student_key):
            for record in await self.store.query(
                Collections.STUDENT_GRADES,
                {"studentKey": value, "status": BatchStatus.PUBLISHED.value},
            ):
                if record.doc_id not in seen:
                    seen.add(record.doc_id)
                    published.append(record)
        return published
