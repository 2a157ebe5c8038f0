"""
Integration tests for level progression against a real SQLite store.

Tests cover:
- Student selection by status and schedule type
- Execution with compare-and-set guards
- Period advance after execution, only when someone progressed
- Re-running the same plans never double-advances
"""

import asyncio
import tempfile

import pytest

from ucaes.acadrec.errors import NotFoundError, ValidationError
from ucaes.acadrec.progression import (
    AcademicPeriod,
    ProgressionEngine,
    StudentFilter,
    load_current_period,
)
from ucaes.acadrec.store import DocumentStore

REGISTRATIONS = "student-registrations"


class TestProgressionEngine:
    """Integration tests for ProgressionEngine."""

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
    def engine(self, store):
        return ProgressionEngine(store)

    async def _seed(self, store, year="2024/2025"):
        await store.insert("systemConfig", {"currentAcademicYear": year}, "academicPeriod")
        await store.insert(
            REGISTRATIONS,
            {"status": "active", "currentLevel": "100", "registrationNumber": "UCAES20240001"},
            "s100",
        )
        await store.insert(
            REGISTRATIONS,
            {"status": "active", "currentLevel": "Level 300", "scheduleType": "Regular"},
            "s300",
        )
        await store.insert(
            REGISTRATIONS,
            {"status": "active", "currentLevel": "400", "scheduleType": "Regular"},
            "s400",
        )
        await store.insert(
            REGISTRATIONS,
            {"status": "active", "currentLevel": "200", "scheduleType": "Weekend"},
            "w200",
        )
        await store.insert(REGISTRATIONS, {"status": "deferred", "currentLevel": "200"}, "d200")

    @pytest.mark.asyncio
    async def test_select_students(self, store, engine):
        await self._seed(store)

        everyone = await engine.select_students()
        regular = await engine.select_students(StudentFilter(schedule_type="Regular"))
        weekend = await engine.select_students(StudentFilter(schedule_type="Weekend"))

        assert {s.doc_id for s in everyone} == {"s100", "s300", "s400", "w200"}
        # Records without a schedule type count as Regular
        assert {s.doc_id for s in regular} == {"s100", "s300", "s400"}
        assert {s.doc_id for s in weekend} == {"w200"}

    @pytest.mark.asyncio
    async def test_select_requires_collections(self, engine):
        with pytest.raises(ValidationError):
            await engine.select_students(StudentFilter(collections=()))

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, store, engine):
        await self._seed(store)

        result = await engine.run(dry_run=True)

        assert result.dry_run
        assert len(result.plans) == 4
        assert result.progressed == []
        assert (await store.get(REGISTRATIONS, "s100")).get("currentLevel") == "100"
        assert (await load_current_period(store)).academic_year == "2024/2025"

    @pytest.mark.asyncio
    async def test_execute(self, store, engine):
        """Eligible students move up a level and the period advances once."""
        await self._seed(store)

        plans = await engine.plan(StudentFilter(schedule_type="Regular"))
        result = await engine.execute(plans, actor="registrar")

        assert {p.student_id for p in result.progressed} == {"s100", "s300"}
        assert [p.student_id for p in result.ineligible] == ["s400"]
        assert result.period_advanced

        s100 = await store.get(REGISTRATIONS, "s100")
        assert s100.get("currentLevel") == "200"
        assert s100.get("currentAcademicYear") == "2025/2026"
        assert s100.get("lastProgressionDate") is not None
        assert (await store.get(REGISTRATIONS, "s300")).get("currentLevel") == "400"
        assert (await store.get(REGISTRATIONS, "s400")).get("currentLevel") == "400"
        assert (await store.get(REGISTRATIONS, "w200")).get("currentLevel") == "200"

        assert (await load_current_period(store)).academic_year == "2025/2026"

        history = await store.list_collection("progression-history")
        assert len(history) == 2
        entry = next(h for h in history if h.get("studentId") == "s100")
        assert entry.get("fromLevel") == 100
        assert entry.get("toLevel") == 200
        assert entry.get("progressedBy") == "registrar"

    @pytest.mark.asyncio
    async def test_all_ineligible_leaves_everything(self, store, engine):
        """Only max-level students: no level changes and the period stays."""
        await store.insert("systemConfig", {"currentAcademicYear": "2024/2025"}, "academicPeriod")
        await store.insert(REGISTRATIONS, {"status": "active", "currentLevel": "400"}, "a")
        await store.insert(REGISTRATIONS, {"status": "active", "currentLevel": "Level 400"}, "b")

        result = await engine.run(dry_run=False)

        assert len(result.ineligible) == 2
        assert result.progressed == []
        assert not result.period_advanced
        assert (await load_current_period(store)).academic_year == "2024/2025"
        assert (await store.get(REGISTRATIONS, "a")).version == 1

    @pytest.mark.asyncio
    async def test_rerun_same_plans(self, store, engine):
        """Executing the same plans twice advances neither levels nor the period twice."""
        await self._seed(store)
        plans = await engine.plan()

        await engine.execute(plans)
        second = await engine.execute(plans)

        assert second.progressed == []
        assert not second.period_advanced
        assert all(p.reason == "level changed since planning" for p in second.plans if p.eligible)
        assert (await store.get(REGISTRATIONS, "s100")).get("currentLevel") == "200"
        assert (await load_current_period(store)).academic_year == "2025/2026"

    @pytest.mark.asyncio
    async def test_late_retry_does_not_advance_again(self, store, engine):
        """A student progressed on a retry does not move the period a second time."""
        await self._seed(store)
        plans = await engine.plan(StudentFilter(schedule_type="Weekend"))
        first_run = [p for p in await engine.plan() if p.student_id == "s100"]

        await engine.execute(first_run)
        assert (await load_current_period(store)).academic_year == "2025/2026"

        result = await engine.execute(plans)

        assert [p.student_id for p in result.progressed] == ["w200"]
        assert not result.period_advanced
        assert (await load_current_period(store)).academic_year == "2025/2026"

    @pytest.mark.asyncio
    async def test_concurrent_level_change_is_respected(self, store, engine):
        """A level edited after planning is not overwritten."""
        await self._seed(store)
        plans = await engine.plan(StudentFilter(schedule_type="Weekend"))
        await store.patch(REGISTRATIONS, "w200", {"currentLevel": "300"})

        result = await engine.execute(plans)

        assert result.progressed == []
        assert result.plans[0].reason == "level changed since planning"
        assert (await store.get(REGISTRATIONS, "w200")).get("currentLevel") == "300"

    @pytest.mark.asyncio
    async def test_missing_student_reported(self, store, engine):
        await self._seed(store)
        plans = await engine.plan(StudentFilter(schedule_type="Weekend"))
        plans[0].student_id = "ghost"

        result = await engine.execute(plans)

        assert result.failed[0].error == "student record not found"
        assert not result.period_advanced

    @pytest.mark.asyncio
    async def test_mixed_period_plans_rejected(self, engine):
        from ucaes.acadrec.progression import ProgressionPolicy, plan_progression
        from ucaes.acadrec.store import Document

        doc = Document(REGISTRATIONS, "s1", {"currentLevel": "100"}, 1, 0, 0)
        plans = plan_progression(
            [doc], ProgressionPolicy(), AcademicPeriod("2024/2025")
        ) + plan_progression([doc], ProgressionPolicy(), AcademicPeriod("2025/2026"))

        with pytest.raises(ValidationError):
            await engine.execute(plans)

    @pytest.mark.asyncio
    async def test_no_period_configured(self, store, engine):
        await store.insert(REGISTRATIONS, {"status": "active", "currentLevel": "100"}, "s1")

        with pytest.raises(NotFoundError):
            await engine.run()
