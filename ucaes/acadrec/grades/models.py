"""
Grade workflow types.

A GradeSubmissionBatch is one lecturer's submission for one course and
period. Each StudentGradeRecord belongs to exactly one batch through its
submissionId and mirrors the batch status, possibly lagging behind it while
a fan-out is in flight.

Status order:

    draft -> pending_approval -> approved -> published
                     \\
                      -> rejected
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..store import Document


class BatchStatus(Enum):
    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    PUBLISHED = "published"
    REJECTED = "rejected"

    @property
    def rank(self) -> int:
        return _RANKS[self]


_RANKS = {
    BatchStatus.DRAFT: 0,
    BatchStatus.PENDING_APPROVAL: 1,
    BatchStatus.APPROVED: 2,
    BatchStatus.PUBLISHED: 3,
    BatchStatus.REJECTED: 2,
}

# Fields stamped on a batch and its records when they enter a status.
STATUS_STAMPS: dict[BatchStatus, tuple[str, str]] = {
    BatchStatus.PENDING_APPROVAL: ("submittedAt", "submittedBy"),
    BatchStatus.APPROVED: ("approvedAt", "approvedBy"),
    BatchStatus.REJECTED: ("rejectedAt", "rejectedBy"),
    BatchStatus.PUBLISHED: ("publishedAt", "publishedBy"),
}


def is_ahead(record_status: BatchStatus, batch_status: BatchStatus) -> bool:
    """Whether a record status is ahead of its batch status."""
    if record_status is batch_status:
        return False
    if record_status is BatchStatus.REJECTED:
        return True
    if batch_status is BatchStatus.REJECTED:
        return record_status.rank > BatchStatus.PENDING_APPROVAL.rank
    return record_status.rank > batch_status.rank


def can_advance(current: BatchStatus, target: BatchStatus) -> bool:
    """Whether a lagging record may move straight to the target status."""
    if current is target:
        return False
    if target is BatchStatus.REJECTED:
        return current in (BatchStatus.DRAFT, BatchStatus.PENDING_APPROVAL)
    if current is BatchStatus.REJECTED:
        return False
    return current.rank < target.rank


@dataclass
class GradeSubmissionBatch:
    batch_id: str
    status: BatchStatus
    lecturer: str
    course_ref: str
    period_ref: str
    total_students: int = 0
    fanout_pending: str | None = None
    previous_submission_id: str | None = None
    version: int = 0

    @classmethod
    def from_document(cls, doc: Document) -> GradeSubmissionBatch:
        return cls(
            batch_id=doc.doc_id,
            status=BatchStatus(doc.get("status", BatchStatus.DRAFT.value)),
            lecturer=doc.get("lecturerId") or doc.get("submittedBy", ""),
            course_ref=doc.get("courseRef", ""),
            period_ref=doc.get("periodRef", ""),
            total_students=int(doc.get("totalStudents", 0) or 0),
            fanout_pending=doc.get("fanoutPending"),
            previous_submission_id=doc.get("previousSubmissionId"),
            version=doc.version,
        )


@dataclass
class StudentGradeRecord:
    record_id: str
    submission_id: str
    student_key: str
    status: BatchStatus
    score: float | None
    grade: str | None

    @classmethod
    def from_document(cls, doc: Document) -> StudentGradeRecord:
        return cls(
            record_id=doc.doc_id,
            submission_id=doc.get("submissionId", ""),
            student_key=doc.get("studentKey", ""),
            status=BatchStatus(doc.get("status", BatchStatus.DRAFT.value)),
            score=doc.get("score"),
            grade=doc.get("grade"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "submission_id": self.submission_id,
            "student_key": self.student_key,
            "status": self.status.value,
            "score": self.score,
            "grade": self.grade,
        }


@dataclass
class FanoutReport:
    """Per-record outcome of fanning a batch transition out.

    Attributes:
        target: Status the records were moved to
        updated: Records moved by this call
        skipped: Records already at the target status
        failed: Records that could not be moved, with reasons
    """

    target: BatchStatus
    updated: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[dict[str, str]] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict[str, Any]:
        return {
            "target": self.target.value,
            "updated": len(self.updated),
            "skipped": len(self.skipped),
            "failed": self.failed,
        }


@dataclass
class BatchState:
    """Batch status as returned by every workflow transition."""

    batch_id: str
    status: BatchStatus
    total_students: int
    record_counts: dict[str, int]
    fanout_pending: str | None = None
    fanout: FanoutReport | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "status": self.status.value,
            "total_students": self.total_students,
            "record_counts": self.record_counts,
            "fanout_pending": self.fanout_pending,
            "fanout": self.fanout.to_dict() if self.fanout else None,
        }
