"""
Current academic period pointer.

The authoritative pointer is systemConfig/academicPeriod.currentAcademicYear.
Older deployments kept it in academic-settings/current-year.currentYear; that
document is still read as a fallback but never written.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from ..errors import ConflictError, NotFoundError, ValidationError
from ..identity import Collections
from ..store import DocumentStore, now_ms

logger = logging.getLogger(__name__)

PERIOD_DOC_ID = "academicPeriod"
LEGACY_PERIOD_DOC_ID = "current-year"

ACADEMIC_YEAR_RE = re.compile(r"^(?P<start>\d{4})/(?P<end>\d{4})$")

MAX_ADVANCE_ATTEMPTS = 5


@dataclass(frozen=True)
class AcademicPeriod:
    """The academic year the institution is currently in.

    Attributes:
        academic_year: e.g. "2024/2025"
        semester: Current semester label, if recorded
        source: Collection the value was read from
        version: Version of the source document
    """

    academic_year: str
    semester: str | None = None
    source: str = Collections.SYSTEM_CONFIG
    version: int = 0

    @property
    def is_legacy(self) -> bool:
        return self.source != Collections.SYSTEM_CONFIG

    @property
    def next_year(self) -> str:
        return next_academic_year(self.academic_year)


def next_academic_year(academic_year: str) -> str:
    """Following academic year: 2024/2025 -> 2025/2026.

    Raises:
        ValidationError: If the value is not a "YYYY/YYYY" pair of consecutive years
    """
    match = ACADEMIC_YEAR_RE.match((academic_year or "").strip())
    if not match or int(match["end"]) != int(match["start"]) + 1:
        raise ValidationError(
            f"Invalid academic year: {academic_year!r}",
            field_name="academicYear",
            errors=["expected YYYY/YYYY with consecutive years"],
        )
    start = int(match["start"]) + 1
    return f"{start}/{start + 1}"


async def load_current_period(store: DocumentStore) -> AcademicPeriod:
    """Read the current academic period.

    Raises:
        NotFoundError: If neither the centralized nor the legacy pointer is set
    """
    doc = await store.get(Collections.SYSTEM_CONFIG, PERIOD_DOC_ID)
    if doc is not None and doc.get("currentAcademicYear"):
        return AcademicPeriod(
            academic_year=doc.get("currentAcademicYear"),
            semester=doc.get("currentSemester"),
            source=Collections.SYSTEM_CONFIG,
            version=doc.version,
        )

    legacy = await store.get(Collections.ACADEMIC_SETTINGS, LEGACY_PERIOD_DOC_ID)
    if legacy is not None and legacy.get("currentYear"):
        logger.warning(
            "Centralized academic period missing, using legacy academic-settings value",
            extra={"academic_year": legacy.get("currentYear")},
        )
        return AcademicPeriod(
            academic_year=legacy.get("currentYear"),
            semester=legacy.get("currentSemester"),
            source=Collections.ACADEMIC_SETTINGS,
            version=legacy.version,
        )

    raise NotFoundError(
        "No current academic period configured",
        collection=Collections.SYSTEM_CONFIG,
    )


async def advance_current_period(store: DocumentStore, current: str, actor: str) -> bool:
    """Move the centralized pointer from `current` to the following year.

    Nothing happens if the pointer no longer holds `current`, so repeating a
    progression run never advances twice.

    Returns:
        True if this call advanced the pointer
    """
    next_year = next_academic_year(current)
    fields = {
        "currentAcademicYear": next_year,
        "previousAcademicYear": current,
        "lastUpdated": now_ms(),
        "updatedBy": actor,
    }

    for _ in range(MAX_ADVANCE_ATTEMPTS):
        doc = await store.get(Collections.SYSTEM_CONFIG, PERIOD_DOC_ID)

        if doc is None or not doc.get("currentAcademicYear"):
            # Only reachable when the period came from the legacy document.
            if doc is None:
                created = await store.create_if_absent(
                    Collections.SYSTEM_CONFIG, PERIOD_DOC_ID, fields
                )
                if created:
                    logger.info(
                        "Created centralized academic period",
                        extra={"from": current, "to": next_year},
                    )
                    return True
                continue
        elif doc.get("currentAcademicYear") != current:
            logger.warning(
                "Academic period already moved, not advancing",
                extra={"expected": current, "found": doc.get("currentAcademicYear")},
            )
            return False

        updated = await store.compare_and_set(
            Collections.SYSTEM_CONFIG, PERIOD_DOC_ID, doc.version, fields
        )
        if updated is not None:
            logger.info("Advanced academic period", extra={"from": current, "to": next_year})
            return True

    raise ConflictError(
        f"Academic period pointer kept changing while advancing from {current}",
        conflicting_id=PERIOD_DOC_ID,
    )
