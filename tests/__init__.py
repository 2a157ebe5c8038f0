"""
AcadRec Test Suite.

This package contains:
- unit/: Unit tests (pure logic and single components on a temporary SQLite store)
- integration/: Integration tests (workflows across components, concurrent writers, CLI)
"""
