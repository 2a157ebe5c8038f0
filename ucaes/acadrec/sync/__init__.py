"""
Sync module for AcadRec - keeping denormalized copies in line.

This module handles:
- Generic propagation of a change set into target collections
- Provenance via original<Field> shadow fields
- Registration number reconciliation for transferred applicants

Invariants:
    - Propagation is idempotent by construction
    - Per-target failures are reported, never raised by default
    - Records are patched, never deleted
"""

from .reconcile import ReconcileSummary, reconcile_registration_numbers
from .synchronizer import (
    CrossCollectionSynchronizer,
    FieldChange,
    PropagationReport,
    PropagationTarget,
    TargetOutcome,
    TargetStatus,
    shadow_field,
)

__all__ = [
    "ReconcileSummary",
    "reconcile_registration_numbers",
    "CrossCollectionSynchronizer",
    "FieldChange",
    "PropagationReport",
    "PropagationTarget",
    "TargetOutcome",
    "TargetStatus",
    "shadow_field",
]
