"""
Entity resolution for AcadRec.

Finds the canonical record of a logical student inside one collection, given
candidate keys in caller-specified precedence order. Each key is tried with
every field alias the collection stores it under and with every normalized
spelling, and the hits are merged by document id. The first key that
matches anything decides the outcome.

Invariants:
    - Resolution performs no writes and is safe to retry or call speculatively
    - More than one distinct record for a key is DUPLICATE, never an
      arbitrary pick, even when the records match on different aliases
    - Matching is exact equality; document ids are never prefix-matched
    - A later key is consulted only if every earlier key matched nothing

How to change safely:
    - Add field aliases in keys.COLLECTION_KEY_FIELDS, not here
    - Keep immutable keys (document id, registration number) ahead of editable ones
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum

from ..errors import DuplicateMatchError, NotFoundError, ValidationError
from ..store import Document, DocumentStore
from .keys import CandidateKey, ExternalKey, key_fields, normalized_values

logger = logging.getLogger(__name__)


class ResolutionOutcome(Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    DUPLICATE = "duplicate_match"


@dataclass
class Resolution:
    """Result of resolving candidate keys against one collection.

    Attributes:
        collection: Collection searched
        outcome: FOUND, NOT_FOUND or DUPLICATE
        record: The canonical record when FOUND
        matched_key: Candidate key that produced the outcome
        matched_field: Field name the key matched on
        matched_ids: Every matching id (one for FOUND, several for DUPLICATE)
        tried: "field=value" lookups attempted, in order
    """

    collection: str
    outcome: ResolutionOutcome
    record: Document | None = None
    matched_key: CandidateKey | None = None
    matched_field: str | None = None
    matched_ids: list[str] = field(default_factory=list)
    tried: list[str] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return self.outcome is ResolutionOutcome.FOUND

    @property
    def is_duplicate(self) -> bool:
        return self.outcome is ResolutionOutcome.DUPLICATE

    def require(self) -> Document:
        """Return the record or raise the matching lookup error.

        Raises:
            NotFoundError: Nothing matched
            DuplicateMatchError: A key matched several records
        """
        if self.outcome is ResolutionOutcome.FOUND and self.record is not None:
            return self.record
        if self.outcome is ResolutionOutcome.DUPLICATE:
            raise DuplicateMatchError(
                self.collection,
                self.matched_field or "",
                self.matched_key.value if self.matched_key else None,
                self.matched_ids,
            )
        raise NotFoundError(
            f"No record in {self.collection} matches {', '.join(self.tried) or 'no keys'}",
            collection=self.collection,
        )

    def to_dict(self) -> dict:
        return {
            "collection": self.collection,
            "outcome": self.outcome.value,
            "record": self.record.to_dict() if self.record else None,
            "matched_key": str(self.matched_key) if self.matched_key else None,
            "matched_field": self.matched_field,
            "matched_ids": self.matched_ids,
        }


def _is_blank(value: object) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class EntityResolver:
    """Resolves logical students to physical records.

    Example:
        >>> resolver = EntityResolver(store)
        >>> result = await resolver.resolve(
        ...     "students", [registration("UCAES20250001"), email("ama@ucaes.edu.gh")]
        ... )
        >>> result.outcome
        <ResolutionOutcome.FOUND: 'found'>
    """

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def resolve(
        self,
        collection: str,
        candidate_keys: Sequence[CandidateKey],
    ) -> Resolution:
        """Resolve candidate keys to one record in a collection.

        Args:
            collection: Collection to search
            candidate_keys: Keys in precedence order, highest first

        Returns:
            Resolution with outcome FOUND, NOT_FOUND or DUPLICATE

        Raises:
            ValidationError: If no candidate key carries a usable value
        """
        usable = [candidate for candidate in candidate_keys if not _is_blank(candidate.value)]
        if not usable:
            raise ValidationError("At least one non-blank candidate key is required")

        tried: list[str] = []

        for candidate in usable:
            if candidate.key is ExternalKey.DOCUMENT_ID:
                doc_id = str(candidate.value).strip()
                tried.append(f"documentId={doc_id}")
                record = await self.store.get(collection, doc_id)
                if record is not None:
                    return Resolution(
                        collection=collection,
                        outcome=ResolutionOutcome.FOUND,
                        record=record,
                        matched_key=candidate,
                        matched_field="documentId",
                        matched_ids=[record.doc_id],
                        tried=tried,
                    )
                continue

            hits: dict[str, Document] = {}
            hit_fields: list[str] = []
            for field_name in key_fields(collection, candidate.key):
                for value in normalized_values(candidate.key, candidate.value):
                    tried.append(f"{field_name}={value}")
                    for doc in await self.store.find(collection, field_name, value):
                        hits.setdefault(doc.doc_id, doc)
                        if field_name not in hit_fields:
                            hit_fields.append(field_name)

            if not hits:
                continue

            if len(hits) > 1:
                matched_ids = list(hits)
                logger.warning(
                    "Duplicate match during resolution",
                    extra={
                        "collection": collection,
                        "field": ", ".join(hit_fields),
                        "value": candidate.value,
                        "matched_ids": matched_ids,
                    },
                )
                return Resolution(
                    collection=collection,
                    outcome=ResolutionOutcome.DUPLICATE,
                    matched_key=candidate,
                    matched_field=", ".join(hit_fields),
                    matched_ids=matched_ids,
                    tried=tried,
                )

            record = next(iter(hits.values()))
            return Resolution(
                collection=collection,
                outcome=ResolutionOutcome.FOUND,
                record=record,
                matched_key=candidate,
                matched_field=hit_fields[0],
                matched_ids=[record.doc_id],
                tried=tried,
            )

        logger.debug("No match during resolution", extra={"collection": collection, "tried": tried})
        return Resolution(collection=collection, outcome=ResolutionOutcome.NOT_FOUND, tried=tried)

    async def resolve_one(
        self,
        collection: str,
        candidate_keys: Sequence[CandidateKey],
    ) -> Document:
        """Resolve and return the record, raising on NOT_FOUND or DUPLICATE."""
        resolution = await self.resolve(collection, candidate_keys)
        return resolution.require()

    async def locate(
        self,
        collections: Iterable[str],
        candidate_keys: Sequence[CandidateKey],
    ) -> dict[str, Resolution]:
        """Resolve the same logical student in several collections."""
        return {
            collection: await self.resolve(collection, candidate_keys)
            for collection in collections
        }
