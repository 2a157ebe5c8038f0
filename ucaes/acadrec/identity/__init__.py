"""
Identity module for AcadRec - who a student is and what they are called.

This module handles:
- Sequential identifier allocation per period key
- Resolution of a logical student to one record per collection
- External key definitions and field aliases

Invariants:
    - Identifiers for one period key are pairwise distinct
    - Resolution never writes and never silently picks among duplicates
"""

from .allocator import (
    IdentifierAllocator,
    RegistrationNumber,
    is_fallback_identifier,
    parse_registration_number,
    period_key_for_year,
)
from .keys import (
    DEFAULT_PRECEDENCE,
    CandidateKey,
    Collections,
    ExternalKey,
    by_precedence,
    document_id,
    email,
    index_number,
    registration,
)
from .resolver import EntityResolver, Resolution, ResolutionOutcome

__all__ = [
    "IdentifierAllocator",
    "RegistrationNumber",
    "is_fallback_identifier",
    "parse_registration_number",
    "period_key_for_year",
    "DEFAULT_PRECEDENCE",
    "by_precedence",
    "CandidateKey",
    "Collections",
    "ExternalKey",
    "document_id",
    "email",
    "index_number",
    "registration",
    "EntityResolver",
    "Resolution",
    "ResolutionOutcome",
]
