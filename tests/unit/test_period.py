"""
Unit tests for the current academic period pointer.
"""

import asyncio
import tempfile

import pytest

from ucaes.acadrec.errors import NotFoundError, ValidationError
from ucaes.acadrec.progression import (
    advance_current_period,
    load_current_period,
    next_academic_year,
)
from ucaes.acadrec.store import DocumentStore


class TestNextAcademicYear:
    def test_next_year(self):
        assert next_academic_year("2024/2025") == "2025/2026"
        assert next_academic_year(" 2099/2100 ") == "2100/2101"

    @pytest.mark.parametrize("value", ["2024", "2024-2025", "2024/2026", "", None])
    def test_invalid(self, value):
        with pytest.raises(ValidationError):
            next_academic_year(value)


class TestCurrentPeriod:
    """Tests for loading and advancing the period pointer."""

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

    @pytest.mark.asyncio
    async def test_centralized_wins(self, store):
        await store.insert(
            "systemConfig",
            {"currentAcademicYear": "2024/2025", "currentSemester": "Second"},
            "academicPeriod",
        )
        await store.insert("academic-settings", {"currentYear": "2019/2020"}, "current-year")

        period = await load_current_period(store)

        assert period.academic_year == "2024/2025"
        assert period.semester == "Second"
        assert not period.is_legacy
        assert period.next_year == "2025/2026"

    @pytest.mark.asyncio
    async def test_legacy_fallback(self, store, caplog):
        await store.insert("academic-settings", {"currentYear": "2023/2024"}, "current-year")

        period = await load_current_period(store)

        assert period.academic_year == "2023/2024"
        assert period.is_legacy
        assert "legacy" in caplog.text

    @pytest.mark.asyncio
    async def test_no_period(self, store):
        with pytest.raises(NotFoundError):
            await load_current_period(store)

    @pytest.mark.asyncio
    async def test_advance_once(self, store):
        """Advancing twice from the same year moves the pointer once."""
        await store.insert("systemConfig", {"currentAcademicYear": "2024/2025"}, "academicPeriod")

        assert await advance_current_period(store, "2024/2025", "registrar") is True
        assert await advance_current_period(store, "2024/2025", "registrar") is False

        doc = await store.get("systemConfig", "academicPeriod")
        assert doc.get("currentAcademicYear") == "2025/2026"
        assert doc.get("previousAcademicYear") == "2024/2025"
        assert doc.get("updatedBy") == "registrar"

    @pytest.mark.asyncio
    async def test_advance_from_legacy_creates_centralized(self, store):
        await store.insert("academic-settings", {"currentYear": "2023/2024"}, "current-year")

        assert await advance_current_period(store, "2023/2024", "registrar") is True

        period = await load_current_period(store)
        assert period.academic_year == "2024/2025"
        assert not period.is_legacy
        legacy = await store.get("academic-settings", "current-year")
        assert legacy.get("currentYear") == "2023/2024"
