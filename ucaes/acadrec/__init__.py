"""
AcadRec - Academic record consistency and workflow engine.

This package keeps student records consistent across the denormalized
collections of the university portals, built on:
- A document store with atomic primitives (compare-and-set, create-if-absent)
- Sequential identifier allocation scoped by period key
- Entity resolution by ordered candidate keys
- Best-effort propagation with a per-target report and audit log
- A grade approval/publication workflow with idempotent fan-out
- End-of-year level progression with an explicit academic period

Architecture:
    ┌─────────────┐     ┌──────────────┐     ┌───────────────┐
    │  Handlers   │────▶│  Allocator   │────▶│               │
    │  (routes,   │     └──────────────┘     │               │
    │   CLI)      │     ┌──────────────┐     │               │
    │             │────▶│   Resolver   │────▶│               │
    │             │     └──────┬───────┘     │   Document    │
    │             │            │             │    Store      │
    │             │     ┌──────▼───────┐     │   (SQLite)    │
    │             │────▶│ Synchronizer │────▶│               │
    │             │     └──────────────┘     │               │
    │             │     ┌──────────────┐     │               │
    │             │────▶│Grade Workflow│────▶│               │
    │             │     └──────────────┘     │               │
    │             │     ┌──────────────┐     │               │
    │             │────▶│ Progression  │────▶│               │
    └─────────────┘     └──────────────┘     └───────────────┘

Invariants:
    - The store is the only shared mutable resource
    - Atomicity comes from store primitives, never from in-process locks
    - Multiple matches for a lookup are surfaced, never silently resolved
    - A grade record's status is never ahead of its batch's status
    - Cross-record operations are idempotent and safe to re-invoke

How to change safely:
    - New writes must go through compare-and-set or create-if-absent
    - Fan-out and propagation must stay resumable after partial failure
    - Never delete records from a synchronizer or workflow path
"""

from ._version import __version__

__all__ = ["__version__"]
