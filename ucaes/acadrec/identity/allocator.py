"""
Sequential identifier allocation for AcadRec.

Application ids and registration numbers are `prefix + periodKey + NNNN`,
where NNNN is a per-period counter zero-padded to four digits:

    allocate("UCAES2025") -> "UCAES20250001", "UCAES20250002", ...

Counters live in the `counters` collection, one document per period key,
created lazily and never deleted.

Invariants:
    - Two allocations for the same period key never share a sequence number
    - The counter only moves through compare-and-set on its version
    - The first allocation creates the counter with create-if-absent;
      exactly one caller receives 1
    - Fallback identifiers contain "-T" and so never collide with, and are
      always distinguishable from, sequence-derived identifiers

How to change safely:
    - Never read-then-write the counter outside compare_and_set
    - Keep the fallback pattern lexically disjoint from the sequence pattern
"""

from __future__ import annotations

import asyncio
import logging
import random
import secrets
from dataclasses import dataclass

from ..config import AllocatorConfig
from ..errors import CounterContentionError, ValidationError
from ..store import DocumentStore, now_ms
from .keys import REGISTRATION_NUMBER_RE, Collections

logger = logging.getLogger(__name__)

FALLBACK_MARKER = "-T"
SEQUENCE_WIDTH = 4
MAX_BACKOFF_MS = 250


def period_key_for_year(year: int | str, institution: str = "UCAES") -> str:
    """Build a period key such as "UCAES2025"."""
    year_text = str(year).strip()
    if not (len(year_text) == 4 and year_text.isdigit()):
        raise ValidationError(f"Invalid year: {year!r}", field_name="year")
    return f"{institution}{year_text}"


def is_fallback_identifier(identifier: str) -> bool:
    """Whether an identifier came from the contention fallback."""
    return FALLBACK_MARKER in identifier


@dataclass(frozen=True)
class RegistrationNumber:
    """Parsed `<PREFIX><YYYY><NNNN>` registration number."""

    prefix: str
    year: int
    sequence: int

    @property
    def period_key(self) -> str:
        return f"{self.prefix}{self.year}"


def parse_registration_number(value: str) -> RegistrationNumber | None:
    """Parse a registration number, or None if it does not match the pattern."""
    match = REGISTRATION_NUMBER_RE.match(value.strip().upper())
    if not match:
        return None
    return RegistrationNumber(
        prefix=match.group("prefix"),
        year=int(match.group("year")),
        sequence=int(match.group("sequence")),
    )


class IdentifierAllocator:
    """Issues unique sequential identifiers per period key.

    Example:
        >>> allocator = IdentifierAllocator(store)
        >>> await allocator.allocate("UCAES2025")
        'UCAES20250001'
    """

    def __init__(self, store: DocumentStore, config: AllocatorConfig | None = None) -> None:
        self.store = store
        self.config = config or AllocatorConfig()

    def format_identifier(self, period_key: str, sequence: int) -> str:
        return f"{self.config.prefix}{period_key}{sequence:0{SEQUENCE_WIDTH}d}"

    def fallback_identifier(self, period_key: str) -> str:
        """Timestamp-derived identifier used when the counter stays contended."""
        return (
            f"{self.config.prefix}{period_key}{FALLBACK_MARKER}"
            f"{now_ms()}{secrets.token_hex(2)[:3].upper()}"
        )

    async def allocate(self, period_key: str) -> str:
        """Allocate the next identifier for a period key.

        Args:
            period_key: Counter scope, e.g. "UCAES2025"

        Returns:
            Sequence-derived identifier, or a fallback identifier if the
            counter could not be advanced within max_retries

        Raises:
            ValidationError: If period_key is blank
            CounterContentionError: If contention persists and fallback is disabled
        """
        period_key = (period_key or "").strip()
        if not period_key:
            raise ValidationError("period_key is required", field_name="period_key")

        sequence = await self._next_sequence(period_key)
        if sequence is not None:
            identifier = self.format_identifier(period_key, sequence)
            logger.debug(
                "Allocated identifier",
                extra={"period_key": period_key, "identifier": identifier},
            )
            return identifier

        if not self.config.fallback_enabled:
            raise CounterContentionError(period_key, self.config.max_retries)

        identifier = self.fallback_identifier(period_key)
        logger.warning(
            "Counter contention exhausted, using fallback identifier",
            extra={
                "period_key": period_key,
                "identifier": identifier,
                "attempts": self.config.max_retries,
            },
        )
        return identifier

    async def peek(self, period_key: str) -> int:
        """Last issued sequence number for a period key (0 if none)."""
        counter = await self.store.get(Collections.COUNTERS, period_key)
        return int(counter.get("lastNumber", 0)) if counter else 0

    async def _next_sequence(self, period_key: str) -> int | None:
        created = await self.store.create_if_absent(
            Collections.COUNTERS,
            period_key,
            {
                "periodKey": period_key,
                "lastNumber": 1,
                "createdAt": now_ms(),
                "lastUpdated": now_ms(),
            },
        )
        if created:
            logger.info("Created counter", extra={"period_key": period_key})
            return 1

        for attempt in range(self.config.max_retries):
            counter = await self.store.get(Collections.COUNTERS, period_key)
            if counter is None:
                # Counters are never deleted, so this only happens if the
                # store was reset underneath us.
                raise RuntimeError(f"Counter {period_key} disappeared")

            next_number = int(counter.get("lastNumber", 0)) + 1
            updated = await self.store.compare_and_set(
                Collections.COUNTERS,
                period_key,
                counter.version,
                {"lastNumber": next_number, "lastUpdated": now_ms()},
            )
            if updated is not None:
                return next_number

            delay = min(self.config.retry_delay_ms * (2**attempt), MAX_BACKOFF_MS) / 1000.0
            logger.debug(
                "Counter compare-and-set lost, retrying",
                extra={"period_key": period_key, "attempt": attempt + 1},
            )
            await asyncio.sleep(delay * random.uniform(0.5, 1.5))

        return None
