"""
Error types for AcadRec.

This module defines all exception types raised by the engine:
- AcadRecError: Base exception
- ValidationError: Malformed input, never retried
- ConflictError: Concurrent or duplicate state, carries the conflicting id
- NotFoundError / DuplicateMatchError: Lookup outcomes, always distinct
- PropagationPartialFailure: Opt-in hard error for a partial propagation

Invariants:
    - All errors inherit from AcadRecError
    - Errors include context for debugging in `details`
    - "Multiple matches" is never reported as NotFoundError
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .sync.synchronizer import PropagationReport


class AcadRecError(Exception):
    """Base exception for all AcadRec errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "ACADREC_ERROR"
        self.details = details or {}


class ValidationError(AcadRecError):
    """Input validation failed.

    Raised when:
    - A required argument is missing or blank
    - A grade record has no score or letter grade
    - A candidate key list is empty
    - A document payload holds NaN or Infinity
    """

    def __init__(
        self,
        message: str,
        field_name: str | None = None,
        errors: list[str] | None = None,
    ) -> None:
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            details={"field": field_name, "errors": errors or []},
        )
        self.field_name = field_name
        self.errors = errors or []


class ConflictError(AcadRecError):
    """Operation conflicts with existing or concurrently changed state.

    The caller decides between retry and abort using `conflicting_id`.
    """

    def __init__(
        self,
        message: str,
        conflicting_id: str | None = None,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message,
            code=code or "CONFLICT",
            details={"conflicting_id": conflicting_id, **(details or {})},
        )
        self.conflicting_id = conflicting_id


class DocumentExistsError(ConflictError):
    """A document with the requested id already exists."""

    def __init__(self, collection: str, doc_id: str) -> None:
        super().__init__(
            f"Document already exists: {collection}/{doc_id}",
            conflicting_id=doc_id,
            code="DOCUMENT_EXISTS",
            details={"collection": collection},
        )
        self.collection = collection


class DuplicateSubmissionError(ConflictError):
    """A batch already exists for the same lecturer, course and period."""

    def __init__(self, batch_id: str, course_ref: str, period_ref: str, lecturer: str) -> None:
        super().__init__(
            f"Grades for {course_ref} ({period_ref}) were already submitted by "
            f"{lecturer} in batch {batch_id}",
            conflicting_id=batch_id,
            code="DUPLICATE_SUBMISSION",
            details={"course_ref": course_ref, "period_ref": period_ref, "lecturer": lecturer},
        )


class CounterContentionError(ConflictError):
    """Counter increment kept losing the compare-and-set race."""

    def __init__(self, period_key: str, attempts: int) -> None:
        super().__init__(
            f"Counter {period_key} still contended after {attempts} attempts",
            conflicting_id=period_key,
            code="COUNTER_CONTENTION",
            details={"attempts": attempts},
        )
        self.attempts = attempts


class InvalidTransitionError(ConflictError):
    """Requested workflow transition is not allowed from the current status."""

    def __init__(self, batch_id: str, current: str, requested: str) -> None:
        super().__init__(
            f"Cannot move batch {batch_id} from {current} to {requested}",
            conflicting_id=batch_id,
            code="INVALID_TRANSITION",
            details={"current_status": current, "requested_status": requested},
        )
        self.current = current
        self.requested = requested


class NotFoundError(AcadRecError):
    """No record matched the lookup."""

    def __init__(self, message: str, collection: str | None = None) -> None:
        super().__init__(message, code="NOT_FOUND", details={"collection": collection})
        self.collection = collection


class DuplicateMatchError(AcadRecError):
    """More than one record matched a lookup key.

    This is a data-integrity condition. Writing to any one of the matches
    could corrupt the wrong record.

    Attributes:
        collection: Collection searched
        key_field: Field that produced multiple matches
        value: Value searched for
        matched_ids: Ids of every matching record
    """

    def __init__(
        self,
        collection: str,
        key_field: str,
        value: Any,
        matched_ids: list[str],
    ) -> None:
        super().__init__(
            f"{len(matched_ids)} records in {collection} match {key_field}={value!r}",
            code="DUPLICATE_MATCH",
            details={
                "collection": collection,
                "key_field": key_field,
                "value": value,
                "matched_ids": matched_ids,
            },
        )
        self.collection = collection
        self.key_field = key_field
        self.value = value
        self.matched_ids = matched_ids


class PropagationPartialFailure(AcadRecError):
    """One or more propagation targets failed.

    Raised only on request, via PropagationReport.raise_for_failures().
    """

    def __init__(self, report: PropagationReport) -> None:
        failed = [entry.collection for entry in report.failed]
        super().__init__(
            f"Propagation for {report.canonical_id} failed on: {', '.join(failed)}",
            code="PROPAGATION_PARTIAL_FAILURE",
            details={"canonical_id": report.canonical_id, "failed": failed},
        )
        self.report = report
