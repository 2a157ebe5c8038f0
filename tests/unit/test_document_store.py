"""
Unit tests for the SQLite document store.

Tests cover:
- Insert, get and exact-match lookups
- Compare-and-set version checks
- create_if_absent winner semantics
- Audit log append and read
"""

import asyncio
import tempfile

import pytest

from ucaes.acadrec.errors import DocumentExistsError, ValidationError
from ucaes.acadrec.store import DocumentStore


class TestDocumentStore:
    """Tests for DocumentStore."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def store(self, data_dir):
        """Create an initialized store."""
        store = DocumentStore(data_dir, wal_mode=False)
        asyncio.run(store.initialize())
        return store

    @pytest.mark.asyncio
    async def test_insert_and_get(self, store):
        """Inserted document is readable with version 1."""
        doc = await store.insert("students", {"email": "ama@ucaes.edu.gh"}, doc_id="s1")

        assert doc.version == 1
        fetched = await store.get("students", "s1")
        assert fetched is not None
        assert fetched.data == {"email": "ama@ucaes.edu.gh"}
        assert fetched.to_dict() == {"id": "s1", "email": "ama@ucaes.edu.gh"}

    @pytest.mark.asyncio
    async def test_get_missing(self, store):
        """Missing document returns None."""
        assert await store.get("students", "nope") is None

    @pytest.mark.asyncio
    async def test_insert_duplicate_id(self, store):
        """Inserting an existing id raises DocumentExistsError."""
        await store.insert("students", {}, doc_id="s1")

        with pytest.raises(DocumentExistsError) as exc_info:
            await store.insert("students", {}, doc_id="s1")
        assert exc_info.value.conflicting_id == "s1"

    @pytest.mark.asyncio
    async def test_same_id_in_different_collections(self, store):
        """Document ids are scoped by collection."""
        await store.insert("students", {"a": 1}, doc_id="x")
        await store.insert("users", {"a": 2}, doc_id="x")

        assert (await store.get("students", "x")).get("a") == 1
        assert (await store.get("users", "x")).get("a") == 2

    @pytest.mark.asyncio
    async def test_find_is_exact(self, store):
        """find matches whole values only."""
        await store.insert("students", {"registrationNumber": "UCAES20250001"})
        await store.insert("students", {"registrationNumber": "UCAES202500011"})

        matches = await store.find("students", "registrationNumber", "UCAES20250001")
        assert len(matches) == 1
        assert matches[0].get("registrationNumber") == "UCAES20250001"

    @pytest.mark.asyncio
    async def test_query_multiple_filters_and_null(self, store):
        """query ANDs filters and None matches absent fields."""
        await store.insert("student-registrations", {"status": "active", "scheduleType": "Weekend"})
        await store.insert("student-registrations", {"status": "active"})
        await store.insert("student-registrations", {"status": "deferred"})

        weekend = await store.query(
            "student-registrations", {"status": "active", "scheduleType": "Weekend"}
        )
        unset = await store.query(
            "student-registrations", {"status": "active", "scheduleType": None}
        )

        assert len(weekend) == 1
        assert len(unset) == 1
        assert unset[0].get("scheduleType") is None

    @pytest.mark.asyncio
    async def test_query_boolean_value(self, store):
        """Boolean filters match JSON true."""
        await store.insert("admission-applications", {"transferredToPortal": True})
        await store.insert("admission-applications", {"transferredToPortal": False})

        matches = await store.query("admission-applications", {"transferredToPortal": True})
        assert len(matches) == 1

    @pytest.mark.asyncio
    async def test_query_rejects_structured_value(self, store):
        """Filtering on a dict value is a validation error."""
        with pytest.raises(ValidationError):
            await store.query("students", {"contactInfo": {"email": "x"}})

    @pytest.mark.asyncio
    async def test_query_pagination(self, store):
        """limit and offset page through creation order."""
        for i in range(5):
            await store.insert("counters", {"n": i}, doc_id=f"c{i}")

        page = await store.query("counters", limit=2, offset=2)
        assert [doc.doc_id for doc in page] == ["c2", "c3"]
        assert len(await store.list_collection("counters")) == 5

    @pytest.mark.asyncio
    async def test_compare_and_set(self, store):
        """CAS succeeds on the read version and fails on a stale one."""
        doc = await store.insert("students", {"currentLevel": "100"}, doc_id="s1")

        updated = await store.compare_and_set(
            "students", "s1", doc.version, {"currentLevel": "200"}
        )
        assert updated is not None
        assert updated.version == 2
        assert updated.get("currentLevel") == "200"

        stale = await store.compare_and_set("students", "s1", doc.version, {"currentLevel": "300"})
        assert stale is None
        assert (await store.get("students", "s1")).get("currentLevel") == "200"

    @pytest.mark.asyncio
    async def test_compare_and_set_merges(self, store):
        """CAS keeps fields not named in the patch."""
        doc = await store.insert("students", {"email": "a@b.c", "currentLevel": "100"}, doc_id="s1")

        await store.compare_and_set("students", "s1", doc.version, {"currentLevel": "200"})

        fetched = await store.get("students", "s1")
        assert fetched.get("email") == "a@b.c"

    @pytest.mark.asyncio
    async def test_compare_and_set_missing(self, store):
        """CAS on a missing document returns None."""
        assert await store.compare_and_set("students", "ghost", 1, {"a": 1}) is None

    @pytest.mark.asyncio
    async def test_create_if_absent(self, store):
        """Only the first create_if_absent wins."""
        assert await store.create_if_absent("counters", "UCAES2025", {"lastNumber": 1}) is True
        assert await store.create_if_absent("counters", "UCAES2025", {"lastNumber": 99}) is False

        counter = await store.get("counters", "UCAES2025")
        assert counter.get("lastNumber") == 1

    @pytest.mark.asyncio
    async def test_patch_bumps_version(self, store):
        """patch merges unconditionally and bumps the version."""
        await store.insert("students", {"a": 1}, doc_id="s1")

        patched = await store.patch("students", "s1", {"b": 2})

        assert patched.version == 2
        assert patched.data == {"a": 1, "b": 2}
        assert await store.patch("students", "ghost", {"b": 2}) is None

    @pytest.mark.asyncio
    async def test_non_finite_numbers_rejected(self, store):
        """NaN and Infinity never reach disk, so field queries keep working."""
        doc = await store.insert("student-grades", {"studentKey": "S1", "score": 70}, doc_id="g1")

        with pytest.raises(ValidationError):
            await store.insert("student-grades", {"studentKey": "S2", "score": float("nan")})
        with pytest.raises(ValidationError):
            await store.compare_and_set(
                "student-grades", "g1", doc.version, {"score": float("inf")}
            )
        with pytest.raises(ValidationError):
            await store.patch("student-grades", "g1", {"score": float("-inf")})

        matches = await store.query("student-grades", {"studentKey": "S1"})
        assert [m.get("score") for m in matches] == [70]
        assert (await store.get("student-grades", "g1")).version == 1

    @pytest.mark.asyncio
    async def test_audit_log(self, store):
        """Audit entries are appended and filtered."""
        await store.append_audit(
            "students", "s1", "propagate", "system:sync", {"status": "applied"}
        )
        await store.append_audit("students", "s2", "propagate", "system:sync")
        await store.append_audit("grade-submissions", "b1", "approved", "director-01")

        entries = await store.get_audit(collection="students")
        assert [entry.doc_id for entry in entries] == ["s1", "s2"]
        assert entries[0].details == {"status": "applied"}

        approved = await store.get_audit(operation="approved")
        assert len(approved) == 1
        assert approved[0].actor == "director-01"

    @pytest.mark.asyncio
    async def test_stats(self, store):
        """Stats count documents per collection and audit rows."""
        await store.insert("students", {})
        await store.insert("students", {})
        await store.append_audit("students", "x", "op", "me")

        stats = await store.get_stats()
        assert stats["students"] == 2
        assert stats["audit_log"] == 1
