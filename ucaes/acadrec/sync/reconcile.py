"""
Registration number reconciliation.

When an admitted applicant is transferred to the student portal, their
application id becomes their registration number. Older transfers copied a
different number into the student collections. This routine finds those
applications and propagates the application id everywhere the student lives.

Re-running it is safe: fixed records already hold the new number and are
left untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from ..identity import Collections, document_id, email, registration
from ..store import Document, DocumentStore
from .synchronizer import CrossCollectionSynchronizer, FieldChange, PropagationTarget

logger = logging.getLogger(__name__)


@dataclass
class ReconcileSummary:
    total_processed: int = 0
    fixed_count: int = 0
    matching_count: int = 0
    failed_count: int = 0
    results: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_processed": self.total_processed,
            "fixed_count": self.fixed_count,
            "matching_count": self.matching_count,
            "failed_count": self.failed_count,
            "results": self.results,
        }


def _applicant_email(application: Document) -> str | None:
    contact = application.get("contactInfo") or {}
    value = contact.get("email") if isinstance(contact, dict) else None
    value = value or application.get("email")
    return value.lower() if isinstance(value, str) and value.strip() else None


async def reconcile_registration_numbers(
    store: DocumentStore,
    synchronizer: CrossCollectionSynchronizer | None = None,
    actor: str = "system:reconcile",
) -> ReconcileSummary:
    """Align registration numbers with application ids for transferred applicants.

    Args:
        store: Document store
        synchronizer: Synchronizer to use (one is created if not provided)
        actor: Recorded in the audit log

    Returns:
        ReconcileSummary with one result per transferred application
    """
    synchronizer = synchronizer or CrossCollectionSynchronizer(store)
    summary = ReconcileSummary()

    applications = await store.query(
        Collections.ADMISSION_APPLICATIONS, {"transferredToPortal": True}
    )

    for application in applications:
        summary.total_processed += 1
        application_id = application.get("applicationId")
        current = application.get("registrationNumber")

        if not application_id:
            summary.failed_count += 1
            summary.results.append(
                {"document_id": application.doc_id, "status": "missing_application_id"}
            )
            continue

        if current == application_id:
            summary.matching_count += 1
            summary.results.append(
                {"application_id": application_id, "status": "already_correct"}
            )
            continue

        changes = {"registrationNumber": FieldChange(application_id, expected=current)}
        marker = {"fixedRegistrationNumber": True}
        student_keys = [
            registration(current),
            registration(application_id),
            email(_applicant_email(application)),
        ]

        report = await synchronizer.propagate(
            application_id,
            changes,
            [
                PropagationTarget(Collections.STUDENT_REGISTRATIONS, student_keys),
                PropagationTarget(Collections.STUDENTS, student_keys),
            ],
            actor=actor,
            marker=marker,
        )

        # The application is only corrected once every student record is, so
        # a failed run is picked up again next time.
        if report.ok:
            application_report = await synchronizer.propagate(
                application_id,
                changes,
                [
                    PropagationTarget(
                        Collections.ADMISSION_APPLICATIONS, [document_id(application.doc_id)]
                    )
                ],
                actor=actor,
                marker=marker,
            )
            report.outcomes.extend(application_report.outcomes)

        if report.ok:
            summary.fixed_count += 1
            status = "fixed"
        else:
            summary.failed_count += 1
            status = "failed"

        summary.results.append(
            {
                "application_id": application_id,
                "old_registration_number": current,
                "new_registration_number": application_id,
                "status": status,
                "report": report.to_dict(),
            }
        )

    logger.info(
        "Registration number reconciliation completed",
        extra={
            "total_processed": summary.total_processed,
            "fixed": summary.fixed_count,
            "matching": summary.matching_count,
            "failed": summary.failed_count,
        },
    )
    return summary
