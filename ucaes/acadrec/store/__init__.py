"""
Store module for AcadRec - documents, versions and the audit log.

This module handles:
- Collection/document storage in a single SQLite file
- Atomic primitives: compare-and-set on version, create-if-absent
- Exact-match field lookups
- The append-only audit log

Invariants:
    - Every write bumps the document version
    - Lookups never match partially
    - Domain documents are never deleted

How to change safely:
    - Keep every write confined to a single document
    - Verify new primitives under concurrent writers before relying on them
"""

from .document_store import AuditEntry, Document, DocumentStore, now_ms

__all__ = [
    "AuditEntry",
    "Document",
    "DocumentStore",
    "now_ms",
]
