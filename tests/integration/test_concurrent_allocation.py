"""
Integration tests for identifier allocation under real concurrency.

Several threads, each with its own event loop and store instance, allocate
from one database file the way separate portal processes would.
"""

import asyncio
import tempfile
import threading

import pytest

from ucaes.acadrec.config import AllocatorConfig
from ucaes.acadrec.identity import IdentifierAllocator, is_fallback_identifier
from ucaes.acadrec.store import DocumentStore

THREADS = 4
PER_THREAD = 10


class TestConcurrentAllocation:
    """Allocation from several writers sharing one SQLite file."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            asyncio.run(DocumentStore(tmpdir).initialize())
            yield tmpdir

    def _allocate_many(self, data_dir, config, results, errors):
        async def run():
            allocator = IdentifierAllocator(DocumentStore(data_dir), config)
            return [await allocator.allocate("UCAES2025") for _ in range(PER_THREAD)]

        try:
            results.extend(asyncio.run(run()))
        except Exception as e:
            errors.append(e)

    def _run_threads(self, data_dir, config):
        results: list[str] = []
        errors: list[Exception] = []
        threads = [
            threading.Thread(target=self._allocate_many, args=(data_dir, config, results, errors))
            for _ in range(THREADS)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        return results, errors

    def test_identifiers_are_distinct(self, data_dir):
        """No two writers ever receive the same identifier."""
        config = AllocatorConfig(max_retries=200, retry_delay_ms=1)

        results, errors = self._run_threads(data_dir, config)

        assert errors == []
        assert len(results) == THREADS * PER_THREAD
        assert len(set(results)) == len(results)

    def test_counter_matches_sequence_ids(self, data_dir):
        """The counter equals the number of sequence-derived ids handed out."""
        config = AllocatorConfig(max_retries=200, retry_delay_ms=1)

        results, errors = self._run_threads(data_dir, config)
        last_number = asyncio.run(
            IdentifierAllocator(DocumentStore(data_dir)).peek("UCAES2025")
        )

        sequence_ids = sorted(r for r in results if not is_fallback_identifier(r))
        assert errors == []
        assert last_number == len(sequence_ids)
        assert sequence_ids == [f"UCAES2025{n:04d}" for n in range(1, last_number + 1)]
