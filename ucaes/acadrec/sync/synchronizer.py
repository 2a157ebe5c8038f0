"""
Cross-collection propagation for AcadRec.

Student attributes are copied into several collections with no foreign keys
between them. propagate() pushes one change set into every target, resolving
each target record with the EntityResolver and patching it independently.

There is no transaction spanning the targets, so the operation is
best-effort with an audit trail: each target gets its own outcome, one
target failing never stops the others, and the whole call is safe to repeat.

Invariants:
    - Targets are attempted independently; failures are reported, not raised
    - A target with several matching records is a failure and is not written
    - A field that already holds the new value is left untouched
    - The first overwritten value of a field is kept under original<Field>
    - Records are patched, never created or deleted
    - Every target write is a compare-and-set on the record's version

How to change safely:
    - Keep outcomes limited to applied, skipped-not-found and failed
    - Never let an audit-log problem change a target's reported outcome
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..config import WorkflowConfig
from ..errors import PropagationPartialFailure, ValidationError
from ..identity import CandidateKey, EntityResolver, ResolutionOutcome
from ..store import Document, DocumentStore, now_ms

logger = logging.getLogger(__name__)

_UNSET = object()


class TargetStatus(Enum):
    APPLIED = "applied"
    SKIPPED_NOT_FOUND = "skipped-not-found"
    FAILED = "failed"


@dataclass(frozen=True)
class FieldChange:
    """New value for a field, optionally with the value the caller expects to replace.

    Attributes:
        value: Value to write
        expected: Previous value the caller believes is stored; a different
            stored value is still overwritten but reported as drift
    """

    value: Any
    expected: Any = _UNSET

    @property
    def has_expected(self) -> bool:
        return self.expected is not _UNSET


@dataclass(frozen=True)
class PropagationTarget:
    """Where to propagate: a collection and how to find the record in it."""

    collection: str
    candidate_keys: Sequence[CandidateKey]


@dataclass
class TargetOutcome:
    """Outcome of propagating into one target.

    Attributes:
        collection: Target collection
        status: applied, skipped-not-found or failed
        doc_id: Record that was (or would have been) patched
        changed_fields: Fields whose value changed
        shadowed_fields: Fields whose old value was saved to original<Field>
        drifted_fields: Fields whose stored value differed from the expected one
        reason: Failure reason
    """

    collection: str
    status: TargetStatus
    doc_id: str | None = None
    changed_fields: list[str] = field(default_factory=list)
    shadowed_fields: list[str] = field(default_factory=list)
    drifted_fields: list[str] = field(default_factory=list)
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "collection": self.collection,
            "status": self.status.value,
            "doc_id": self.doc_id,
            "changed_fields": self.changed_fields,
            "shadowed_fields": self.shadowed_fields,
            "drifted_fields": self.drifted_fields,
            "reason": self.reason,
        }


@dataclass
class PropagationReport:
    """Per-target outcomes of one propagate() call."""

    canonical_id: str
    outcomes: list[TargetOutcome] = field(default_factory=list)

    def _with_status(self, status: TargetStatus) -> list[TargetOutcome]:
        return [outcome for outcome in self.outcomes if outcome.status is status]

    @property
    def applied(self) -> list[TargetOutcome]:
        return self._with_status(TargetStatus.APPLIED)

    @property
    def skipped(self) -> list[TargetOutcome]:
        return self._with_status(TargetStatus.SKIPPED_NOT_FOUND)

    @property
    def failed(self) -> list[TargetOutcome]:
        return self._with_status(TargetStatus.FAILED)

    @property
    def ok(self) -> bool:
        return not self.failed

    def raise_for_failures(self) -> None:
        """Raise PropagationPartialFailure if any target failed."""
        if self.failed:
            raise PropagationPartialFailure(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "canonical_id": self.canonical_id,
            "applied": len(self.applied),
            "skipped_not_found": len(self.skipped),
            "failed": len(self.failed),
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
        }


def shadow_field(field_name: str) -> str:
    """registrationNumber -> originalRegistrationNumber"""
    return f"original{field_name[:1].upper()}{field_name[1:]}"


def build_patch(
    current: Mapping[str, Any],
    changes: Mapping[str, FieldChange],
) -> tuple[dict[str, Any], list[str], list[str], list[str]]:
    """Compute the patch that brings a record in line with a change set.

    Returns:
        Tuple of (patch, changed_fields, shadowed_fields, drifted_fields)
    """
    patch: dict[str, Any] = {}
    changed: list[str] = []
    shadowed: list[str] = []
    drifted: list[str] = []

    for field_name, change in changes.items():
        stored = current.get(field_name)
        if stored == change.value:
            continue

        patch[field_name] = change.value
        changed.append(field_name)

        if change.has_expected and stored != change.expected:
            drifted.append(field_name)

        shadow = shadow_field(field_name)
        if stored is not None and shadow not in current:
            patch[shadow] = stored
            shadowed.append(field_name)

    return patch, changed, shadowed, drifted


class CrossCollectionSynchronizer:
    """Propagates attribute changes into denormalized collections.

    Example:
        >>> sync = CrossCollectionSynchronizer(store)
        >>> report = await sync.propagate(
        ...     "UCAES20250007",
        ...     {"registrationNumber": FieldChange("UCAES20250007", expected="UCAES20250003")},
        ...     [PropagationTarget("students", [email("ama@ucaes.edu.gh")])],
        ... )
        >>> [outcome.status.value for outcome in report.outcomes]
        ['applied']
    """

    def __init__(
        self,
        store: DocumentStore,
        resolver: EntityResolver | None = None,
        config: WorkflowConfig | None = None,
    ) -> None:
        self.store = store
        self.resolver = resolver or EntityResolver(store)
        self.config = config or WorkflowConfig()

    async def propagate(
        self,
        canonical_id: str,
        changes: Mapping[str, Any],
        targets: Sequence[PropagationTarget],
        actor: str = "system:sync",
        marker: Mapping[str, Any] | None = None,
    ) -> PropagationReport:
        """Apply a change set to every target record.

        Args:
            canonical_id: Identifier of the logical entity the change belongs to
            changes: Field -> new value, or FieldChange with an expected value
            targets: Collections and candidate keys to resolve the record in each
            actor: Recorded in the audit log
            marker: Extra fields stamped on a record only when it actually changes

        Returns:
            PropagationReport with one outcome per target, in target order

        Raises:
            ValidationError: If changes or targets are empty
        """
        if not changes:
            raise ValidationError("changes must not be empty", field_name="changes")
        if not targets:
            raise ValidationError("targets must not be empty", field_name="targets")

        normalized = {
            name: change if isinstance(change, FieldChange) else FieldChange(change)
            for name, change in changes.items()
        }

        report = PropagationReport(canonical_id=canonical_id)
        for target in targets:
            outcome = await self._apply_target(target, normalized, marker or {})
            report.outcomes.append(outcome)
            await self._audit(canonical_id, actor, outcome)

        logger.info(
            "Propagation finished",
            extra={
                "canonical_id": canonical_id,
                "applied": len(report.applied),
                "skipped_not_found": len(report.skipped),
                "failed": len(report.failed),
            },
        )
        return report

    async def _apply_target(
        self,
        target: PropagationTarget,
        changes: Mapping[str, FieldChange],
        marker: Mapping[str, Any],
    ) -> TargetOutcome:
        try:
            resolution = await self.resolver.resolve(target.collection, target.candidate_keys)

            if resolution.outcome is ResolutionOutcome.NOT_FOUND:
                return TargetOutcome(target.collection, TargetStatus.SKIPPED_NOT_FOUND)

            if resolution.outcome is ResolutionOutcome.DUPLICATE:
                return TargetOutcome(
                    target.collection,
                    TargetStatus.FAILED,
                    reason=(
                        f"duplicate match on {resolution.matched_field}: "
                        f"{', '.join(resolution.matched_ids)}"
                    ),
                )

            record: Document | None = resolution.record
            for _ in range(self.config.max_cas_retries):
                if record is None:
                    return TargetOutcome(
                        target.collection,
                        TargetStatus.FAILED,
                        reason="record disappeared during propagation",
                    )

                patch, changed, shadowed, drifted = build_patch(record.data, changes)
                if not changed:
                    return TargetOutcome(
                        target.collection, TargetStatus.APPLIED, doc_id=record.doc_id
                    )

                patch.update(marker)
                patch["updatedAt"] = now_ms()
                updated = await self.store.compare_and_set(
                    target.collection, record.doc_id, record.version, patch
                )
                if updated is not None:
                    return TargetOutcome(
                        target.collection,
                        TargetStatus.APPLIED,
                        doc_id=record.doc_id,
                        changed_fields=changed,
                        shadowed_fields=shadowed,
                        drifted_fields=drifted,
                    )

                record = await self.store.get(target.collection, record.doc_id)

            return TargetOutcome(
                target.collection,
                TargetStatus.FAILED,
                doc_id=record.doc_id if record else None,
                reason=f"write contention after {self.config.max_cas_retries} attempts",
            )

        except ValidationError as e:
            return TargetOutcome(target.collection, TargetStatus.FAILED, reason=e.message)
        except Exception as e:
            logger.error(
                f"Propagation to {target.collection} failed: {e}",
                exc_info=True,
            )
            return TargetOutcome(target.collection, TargetStatus.FAILED, reason=str(e))

    async def _audit(self, canonical_id: str, actor: str, outcome: TargetOutcome) -> None:
        try:
            await self.store.append_audit(
                outcome.collection,
                outcome.doc_id or "-",
                "propagate",
                actor,
                {"canonical_id": canonical_id, **outcome.to_dict()},
            )
        except Exception as e:
            logger.error(f"Failed to audit propagation for {canonical_id}: {e}", exc_info=True)
