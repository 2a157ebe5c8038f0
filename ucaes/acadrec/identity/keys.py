"""
External keys and collection names shared across the engine.

A logical student has no single authoritative record. Each physical record
carries some subset of these keys, sometimes under a different field name
per collection.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any


class Collections:
    """Collection names used by the portals."""

    STUDENTS = "students"
    STUDENT_REGISTRATIONS = "student-registrations"
    ADMISSION_APPLICATIONS = "admission-applications"
    USERS = "users"
    COUNTERS = "counters"
    GRADE_SUBMISSIONS = "grade-submissions"
    STUDENT_GRADES = "student-grades"
    SUBMISSION_CLAIMS = "grade-submission-claims"
    PROGRESSION_HISTORY = "progression-history"
    SYSTEM_CONFIG = "systemConfig"
    ACADEMIC_SETTINGS = "academic-settings"


class ExternalKey(Enum):
    """Keys a caller may use to look up a logical student."""

    REGISTRATION_NUMBER = "registrationNumber"
    INDEX_NUMBER = "indexNumber"
    EMAIL = "email"
    DOCUMENT_ID = "documentId"


# Registration numbers are assigned once and never change; emails are editable.
DEFAULT_PRECEDENCE: tuple[ExternalKey, ...] = (
    ExternalKey.DOCUMENT_ID,
    ExternalKey.REGISTRATION_NUMBER,
    ExternalKey.INDEX_NUMBER,
    ExternalKey.EMAIL,
)

# Field names a key is stored under, tried in order.
DEFAULT_KEY_FIELDS: dict[ExternalKey, tuple[str, ...]] = {
    ExternalKey.REGISTRATION_NUMBER: ("registrationNumber",),
    ExternalKey.INDEX_NUMBER: ("indexNumber",),
    ExternalKey.EMAIL: ("email",),
}

COLLECTION_KEY_FIELDS: dict[str, dict[ExternalKey, tuple[str, ...]]] = {
    Collections.STUDENTS: {
        ExternalKey.REGISTRATION_NUMBER: ("registrationNumber", "studentId", "adminStudentId"),
        ExternalKey.INDEX_NUMBER: ("indexNumber", "studentIndexNumber"),
    },
    Collections.STUDENT_REGISTRATIONS: {
        ExternalKey.INDEX_NUMBER: ("studentIndexNumber", "indexNumber"),
    },
    Collections.ADMISSION_APPLICATIONS: {
        ExternalKey.REGISTRATION_NUMBER: ("registrationNumber", "applicationId"),
    },
}

REGISTRATION_NUMBER_RE = re.compile(r"^(?P<prefix>[A-Z]+)(?P<year>\d{4})(?P<sequence>\d{4})$")


@dataclass(frozen=True)
class CandidateKey:
    """One lookup key with its value.

    Attributes:
        key: Which external key this is
        value: Value to match exactly
    """

    key: ExternalKey
    value: Any

    @classmethod
    def parse(cls, text: str) -> CandidateKey:
        """Parse "registrationNumber=UCAES20250001" style text."""
        name, sep, value = text.partition("=")
        if not sep:
            raise ValueError(f"Invalid candidate key: {text!r}")
        return cls(ExternalKey(name.strip()), value.strip())

    def __str__(self) -> str:
        return f"{self.key.value}={self.value}"


def registration(value: str) -> CandidateKey:
    return CandidateKey(ExternalKey.REGISTRATION_NUMBER, value)


def index_number(value: str) -> CandidateKey:
    return CandidateKey(ExternalKey.INDEX_NUMBER, value)


def email(value: str) -> CandidateKey:
    return CandidateKey(ExternalKey.EMAIL, value)


def document_id(value: str) -> CandidateKey:
    return CandidateKey(ExternalKey.DOCUMENT_ID, value)


def key_fields(collection: str, key: ExternalKey) -> tuple[str, ...]:
    """Field names to try for a key in a collection."""
    overrides = COLLECTION_KEY_FIELDS.get(collection, {})
    return overrides.get(key, DEFAULT_KEY_FIELDS.get(key, (key.value,)))


def normalized_values(key: ExternalKey, value: Any) -> list[Any]:
    """Exact values to try for a key, most literal first.

    Codes are stored upper-case by the admissions flow but older records keep
    whatever was typed, so both spellings are tried. Emails are stored
    lower-case.
    """
    if not isinstance(value, str):
        return [value]

    text = value.strip()
    if key is ExternalKey.EMAIL:
        candidates = [text.lower(), text]
    elif key in (ExternalKey.REGISTRATION_NUMBER, ExternalKey.INDEX_NUMBER):
        candidates = [text, text.upper()]
    else:
        candidates = [text]

    seen: list[Any] = []
    for candidate in candidates:
        if candidate not in seen:
            seen.append(candidate)
    return seen


def by_precedence(
    candidate_keys: list[CandidateKey],
    precedence: tuple[ExternalKey, ...] = DEFAULT_PRECEDENCE,
) -> list[CandidateKey]:
    """Order candidate keys by key precedence, keeping caller order within a key."""
    rank = {key: position for position, key in enumerate(precedence)}
    return sorted(candidate_keys, key=lambda candidate: rank.get(candidate.key, len(rank)))
