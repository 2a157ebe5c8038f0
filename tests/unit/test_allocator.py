"""
Unit tests for sequential identifier allocation.

Tests cover:
- Sequential numbering per period key
- Independent counters per period key
- Fallback identifiers and CounterContentionError on exhausted contention
- Registration number parsing
"""

import asyncio
import re
import tempfile

import pytest

from ucaes.acadrec.config import AllocatorConfig
from ucaes.acadrec.errors import CounterContentionError, ValidationError
from ucaes.acadrec.identity import (
    IdentifierAllocator,
    is_fallback_identifier,
    parse_registration_number,
    period_key_for_year,
)
from ucaes.acadrec.store import DocumentStore


class LosingStore(DocumentStore):
    """Store whose compare-and-set always loses the race."""

    async def compare_and_set(self, collection, doc_id, expected_version, patch):
        return None


class TestIdentifierAllocator:
    """Tests for IdentifierAllocator."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def store(self, data_dir):
        store = DocumentStore(data_dir, wal_mode=False)
        asyncio.run(store.initialize())
        return store

    @pytest.fixture
    def losing_store(self, data_dir):
        store = LosingStore(data_dir, wal_mode=False)
        asyncio.run(store.initialize())
        return store

    @pytest.mark.asyncio
    async def test_sequential(self, store):
        """Empty counter yields 0001, 0002, 0003."""
        allocator = IdentifierAllocator(store)

        ids = [await allocator.allocate("UCAES2025") for _ in range(3)]

        assert ids == ["UCAES20250001", "UCAES20250002", "UCAES20250003"]
        assert await allocator.peek("UCAES2025") == 3

    @pytest.mark.asyncio
    async def test_counters_are_per_period_key(self, store):
        allocator = IdentifierAllocator(store)

        assert await allocator.allocate("UCAES2025") == "UCAES20250001"
        assert await allocator.allocate("UCAES2026") == "UCAES20260001"
        assert await allocator.allocate("UCAES2025") == "UCAES20250002"

    @pytest.mark.asyncio
    async def test_prefix(self, store):
        allocator = IdentifierAllocator(store, AllocatorConfig(prefix="APP-"))
        assert await allocator.allocate("UCAES2025") == "APP-UCAES20250001"

    @pytest.mark.asyncio
    async def test_blank_period_key(self, store):
        allocator = IdentifierAllocator(store)
        with pytest.raises(ValidationError):
            await allocator.allocate("  ")

    @pytest.mark.asyncio
    async def test_peek_unknown_key(self, store):
        allocator = IdentifierAllocator(store)
        assert await allocator.peek("UCAES1999") == 0

    @pytest.mark.asyncio
    async def test_sequence_past_four_digits(self, store):
        """The sequence widens past 9999 instead of wrapping."""
        await store.create_if_absent("counters", "UCAES2025", {"lastNumber": 9999})
        allocator = IdentifierAllocator(store)

        assert await allocator.allocate("UCAES2025") == "UCAES202510000"

    @pytest.mark.asyncio
    async def test_fallback_on_exhausted_contention(self, losing_store):
        """Exhausted retries produce a distinguishable fallback identifier."""
        await losing_store.create_if_absent("counters", "UCAES2025", {"lastNumber": 4})
        allocator = IdentifierAllocator(
            losing_store, AllocatorConfig(max_retries=2, retry_delay_ms=0)
        )

        first = await allocator.allocate("UCAES2025")

        assert is_fallback_identifier(first)
        assert re.fullmatch(r"UCAES2025-T\d+[0-9A-F]{3}", first)
        assert parse_registration_number(first) is None

    @pytest.mark.asyncio
    async def test_contention_error_when_fallback_disabled(self, losing_store):
        await losing_store.create_if_absent("counters", "UCAES2025", {"lastNumber": 4})
        allocator = IdentifierAllocator(
            losing_store,
            AllocatorConfig(max_retries=3, retry_delay_ms=0, fallback_enabled=False),
        )

        with pytest.raises(CounterContentionError) as exc_info:
            await allocator.allocate("UCAES2025")
        assert exc_info.value.attempts == 3
        assert exc_info.value.conflicting_id == "UCAES2025"

    @pytest.mark.asyncio
    async def test_interleaved_allocations_are_distinct(self, store):
        """Allocations interleaved on one loop never share a number."""
        allocator = IdentifierAllocator(store, AllocatorConfig(max_retries=50))

        ids = await asyncio.gather(*(allocator.allocate("UCAES2025") for _ in range(20)))

        assert len(set(ids)) == 20


class TestIdentifierHelpers:
    """Tests for period keys and registration number parsing."""

    def test_period_key_for_year(self):
        assert period_key_for_year(2025) == "UCAES2025"
        assert period_key_for_year("2026", institution="KNUST") == "KNUST2026"

    def test_period_key_rejects_bad_year(self):
        with pytest.raises(ValidationError):
            period_key_for_year("25")

    def test_parse_registration_number(self):
        parsed = parse_registration_number("ucaes20250042")
        assert parsed is not None
        assert parsed.prefix == "UCAES"
        assert parsed.year == 2025
        assert parsed.sequence == 42
        assert parsed.period_key == "UCAES2025"

    def test_parse_rejects_other_shapes(self):
        assert parse_registration_number("UCAES2025") is None
        assert parse_registration_number("UCAES2025-T1700000000000ABC") is None

    def test_sequence_identifiers_are_not_fallbacks(self):
        assert not is_fallback_identifier("UCAES20250001")
