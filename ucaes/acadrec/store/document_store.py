"""
Document store for AcadRec.

This module manages the SQLite database that stores:
- Documents grouped into named collections, with JSON payloads
- A per-document version used for compare-and-set
- An append-only audit log of propagation and workflow outcomes

Collections mirror the portal's denormalized layout (students,
student-registrations, grade-submissions, student-grades, counters, ...).
There is no cross-collection transaction: every write touches exactly one
document, and atomicity comes from the version check.

Invariants:
    - Every write increments the document version
    - compare_and_set succeeds only if the version is unchanged since read
    - create_if_absent has exactly one winner per (collection, doc_id)
    - Lookups are exact equality on a top-level field, never partial
    - Domain documents are never deleted

How to change safely:
    - Schema migrations must be backward compatible
    - New write paths must go through compare_and_set, create_if_absent or patch
    - Keep one connection per operation so independent processes can share the file

Table schema:
    documents:
        - collection TEXT
        - doc_id TEXT
        - payload_json TEXT
        - version INTEGER
        - created_at INTEGER (Unix ms)
        - updated_at INTEGER (Unix ms)
        - PRIMARY KEY (collection, doc_id)

    audit_log:
        - entry_id INTEGER PRIMARY KEY
        - collection TEXT
        - doc_id TEXT
        - operation TEXT
        - actor TEXT
        - details_json TEXT
        - recorded_at INTEGER
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..errors import DocumentExistsError, ValidationError

logger = logging.getLogger(__name__)


def now_ms() -> int:
    """Current time as Unix milliseconds."""
    return int(time.time() * 1000)


@dataclass
class Document:
    """A stored document.

    Attributes:
        collection: Collection name
        doc_id: Document identifier, unique within the collection
        data: Payload fields
        version: Store-maintained write counter
        created_at: Creation timestamp (Unix ms)
        updated_at: Last update timestamp (Unix ms)
    """

    collection: str
    doc_id: str
    data: dict[str, Any]
    version: int
    created_at: int
    updated_at: int

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.doc_id, **self.data}


@dataclass
class AuditEntry:
    """One audit log row."""

    entry_id: int
    collection: str
    doc_id: str
    operation: str
    actor: str
    details: dict[str, Any] = field(default_factory=dict)
    recorded_at: int = 0


def _dumps(payload: dict[str, Any]) -> str:
    """Serialize a payload as strict JSON; NaN and Infinity are rejected."""
    try:
        return json.dumps(payload, allow_nan=False)
    except ValueError as e:
        raise ValidationError(f"Payload is not valid JSON: {e}", field_name="payload")


def _field_path(field_name: str) -> str:
    if not field_name or '"' in field_name:
        raise ValidationError(f"Invalid field name: {field_name!r}", field_name=field_name)
    return f'$."{field_name}"'


class DocumentStore:
    """SQLite-backed collection/document store.

    Thread safety:
        Each operation opens its own connection. SQLite serializes writers
        through BEGIN IMMEDIATE and the busy timeout, so several processes
        or threads may share one database file.

    Example:
        >>> store = DocumentStore("/var/lib/acadrec")
        >>> await store.initialize()
        >>> doc = await store.insert("students", {"email": "ama@ucaes.edu.gh"})
        >>> await store.compare_and_set("students", doc.doc_id, doc.version, {"currentLevel": "200"})
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        data_dir: str,
        db_name: str = "acadrec.db",
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        cache_size_pages: int = -16000,
    ) -> None:
        """Initialize the document store.

        Args:
            data_dir: Directory for the SQLite database file
            db_name: Database file name
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            cache_size_pages: SQLite cache size (negative = KB)
        """
        self.data_dir = Path(data_dir)
        self.db_name = db_name
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.cache_size_pages = cache_size_pages
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config: Any) -> DocumentStore:
        """Create a store from a StorageConfig."""
        return cls(
            config.data_dir,
            db_name=config.db_name,
            wal_mode=config.wal_mode,
            busy_timeout_ms=config.busy_timeout_ms,
            cache_size_pages=config.cache_size_pages,
        )

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.db_name

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection for one operation."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute(f"PRAGMA cache_size = {self.cache_size_pages}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")

            yield conn
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS documents (
                collection TEXT NOT NULL,
                doc_id TEXT NOT NULL,
                payload_json TEXT NOT NULL DEFAULT '{}',
                version INTEGER NOT NULL DEFAULT 1,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                PRIMARY KEY (collection, doc_id)
            );

            CREATE INDEX IF NOT EXISTS idx_documents_created
                ON documents(collection, created_at);

            CREATE TABLE IF NOT EXISTS audit_log (
                entry_id INTEGER PRIMARY KEY AUTOINCREMENT,
                collection TEXT NOT NULL,
                doc_id TEXT NOT NULL,
                operation TEXT NOT NULL,
                actor TEXT NOT NULL,
                details_json TEXT NOT NULL DEFAULT '{}',
                recorded_at INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_audit_doc ON audit_log(collection, doc_id);

            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)

    async def initialize(self) -> None:
        """Create the database file and schema if they don't exist."""
        async with self._lock:
            with self._get_connection() as conn:
                self._create_schema(conn)
                logger.info(f"Initialized document store: {self.db_path}")

    @staticmethod
    def _row_to_document(row: sqlite3.Row) -> Document:
        return Document(
            collection=row["collection"],
            doc_id=row["doc_id"],
            data=json.loads(row["payload_json"]),
            version=row["version"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    async def get(self, collection: str, doc_id: str) -> Document | None:
        """Get a document by id.

        Returns:
            Document or None if not found
        """
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM documents WHERE collection = ? AND doc_id = ?",
                (collection, doc_id),
            )
            row = cursor.fetchone()
            return self._row_to_document(row) if row else None

    async def find(
        self,
        collection: str,
        field_name: str,
        value: Any,
        limit: int | None = None,
    ) -> list[Document]:
        """Find documents whose top-level field equals a value.

        A value of None matches documents where the field is null or absent.

        Args:
            collection: Collection name
            field_name: Top-level payload field
            value: Exact value to match
            limit: Optional maximum number of documents

        Returns:
            Matching documents in creation order
        """
        return await self.query(collection, {field_name: value}, limit=limit)

    async def query(
        self,
        collection: str,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Document]:
        """Find documents matching every equality filter.

        Args:
            collection: Collection name
            filters: Field -> exact value; None matches null or absent fields
            limit: Optional maximum number of documents
            offset: Pagination offset

        Returns:
            Matching documents in creation order
        """
        sql = "SELECT * FROM documents WHERE collection = ?"
        params: list[Any] = [collection]

        for field_name, value in (filters or {}).items():
            if value is None:
                sql += " AND json_extract(payload_json, ?) IS NULL"
                params.append(_field_path(field_name))
            else:
                if isinstance(value, (dict, list)):
                    raise ValidationError(
                        f"Cannot filter on structured value for {field_name}",
                        field_name=field_name,
                    )
                sql += " AND json_extract(payload_json, ?) = ?"
                params.extend([_field_path(field_name), value])

        sql += " ORDER BY created_at, doc_id"
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        elif offset:
            sql += " LIMIT -1 OFFSET ?"
            params.append(offset)

        with self._get_connection() as conn:
            cursor = conn.execute(sql, params)
            return [self._row_to_document(row) for row in cursor.fetchall()]

    async def list_collection(self, collection: str, limit: int | None = None) -> list[Document]:
        """List documents in a collection in creation order."""
        return await self.query(collection, None, limit=limit)

    async def insert(
        self,
        collection: str,
        data: dict[str, Any],
        doc_id: str | None = None,
    ) -> Document:
        """Insert a new document.

        Args:
            collection: Collection name
            data: Payload fields
            doc_id: Optional specific id (generated if not provided)

        Returns:
            Created Document

        Raises:
            DocumentExistsError: If doc_id is already taken
        """
        if doc_id is None:
            doc_id = str(uuid.uuid4())
        now = now_ms()

        with self._get_connection() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO documents (collection, doc_id, payload_json, version,
                                           created_at, updated_at)
                    VALUES (?, ?, ?, 1, ?, ?)
                    """,
                    (collection, doc_id, _dumps(data), now, now),
                )
            except sqlite3.IntegrityError:
                raise DocumentExistsError(collection, doc_id)

        logger.debug("Inserted document", extra={"collection": collection, "doc_id": doc_id})
        return Document(collection, doc_id, dict(data), 1, now, now)

    async def create_if_absent(
        self,
        collection: str,
        doc_id: str,
        data: dict[str, Any],
    ) -> bool:
        """Atomically create a document unless it already exists.

        Returns:
            True if this call created the document, False if it existed
        """
        now = now_ms()
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO documents (collection, doc_id, payload_json, version,
                                                 created_at, updated_at)
                VALUES (?, ?, ?, 1, ?, ?)
                """,
                (collection, doc_id, _dumps(data), now, now),
            )
            return cursor.rowcount == 1

    async def compare_and_set(
        self,
        collection: str,
        doc_id: str,
        expected_version: int,
        patch: dict[str, Any],
    ) -> Document | None:
        """Merge a patch into a document only if its version is unchanged.

        Args:
            collection: Collection name
            doc_id: Document identifier
            expected_version: Version the caller read
            patch: Top-level fields to set

        Returns:
            Updated Document, or None if the document is missing or its
            version moved on (the caller lost the race and should re-read)
        """
        now = now_ms()

        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    "SELECT * FROM documents WHERE collection = ? AND doc_id = ?",
                    (collection, doc_id),
                ).fetchone()
                if not row or row["version"] != expected_version:
                    conn.execute("ROLLBACK")
                    return None

                payload = json.loads(row["payload_json"])
                payload.update(patch)

                cursor = conn.execute(
                    """
                    UPDATE documents SET payload_json = ?, version = version + 1, updated_at = ?
                    WHERE collection = ? AND doc_id = ? AND version = ?
                    """,
                    (_dumps(payload), now, collection, doc_id, expected_version),
                )
                if cursor.rowcount != 1:
                    conn.execute("ROLLBACK")
                    return None

                conn.execute("COMMIT")

            except Exception:
                conn.execute("ROLLBACK")
                raise

        return Document(
            collection=collection,
            doc_id=doc_id,
            data=payload,
            version=expected_version + 1,
            created_at=row["created_at"],
            updated_at=now,
        )

    async def patch(
        self,
        collection: str,
        doc_id: str,
        patch: dict[str, Any],
    ) -> Document | None:
        """Merge a patch into a document regardless of its version.

        Uses PATCH semantics - merges with existing payload.

        Returns:
            Updated Document or None if not found
        """
        now = now_ms()

        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    "SELECT * FROM documents WHERE collection = ? AND doc_id = ?",
                    (collection, doc_id),
                ).fetchone()
                if not row:
                    conn.execute("ROLLBACK")
                    return None

                payload = json.loads(row["payload_json"])
                payload.update(patch)

                conn.execute(
                    """
                    UPDATE documents SET payload_json = ?, version = version + 1, updated_at = ?
                    WHERE collection = ? AND doc_id = ?
                    """,
                    (_dumps(payload), now, collection, doc_id),
                )

                conn.execute("COMMIT")

            except Exception:
                conn.execute("ROLLBACK")
                raise

        return Document(
            collection=collection,
            doc_id=doc_id,
            data=payload,
            version=row["version"] + 1,
            created_at=row["created_at"],
            updated_at=now,
        )

    async def append_audit(
        self,
        collection: str,
        doc_id: str,
        operation: str,
        actor: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Append an entry to the audit log."""
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO audit_log (collection, doc_id, operation, actor, details_json,
                                       recorded_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (collection, doc_id, operation, actor, _dumps(details or {}), now_ms()),
            )

    async def get_audit(
        self,
        collection: str | None = None,
        doc_id: str | None = None,
        operation: str | None = None,
    ) -> list[AuditEntry]:
        """Read audit entries, oldest first, optionally filtered."""
        sql = "SELECT * FROM audit_log WHERE 1 = 1"
        params: list[Any] = []
        if collection is not None:
            sql += " AND collection = ?"
            params.append(collection)
        if doc_id is not None:
            sql += " AND doc_id = ?"
            params.append(doc_id)
        if operation is not None:
            sql += " AND operation = ?"
            params.append(operation)
        sql += " ORDER BY entry_id"

        with self._get_connection() as conn:
            return [
                AuditEntry(
                    entry_id=row["entry_id"],
                    collection=row["collection"],
                    doc_id=row["doc_id"],
                    operation=row["operation"],
                    actor=row["actor"],
                    details=json.loads(row["details_json"]),
                    recorded_at=row["recorded_at"],
                )
                for row in conn.execute(sql, params).fetchall()
            ]

    async def get_stats(self) -> dict[str, int]:
        """Document counts per collection, plus audit entries."""
        with self._get_connection() as conn:
            stats = {
                row[0]: row[1]
                for row in conn.execute(
                    "SELECT collection, COUNT(*) FROM documents GROUP BY collection"
                ).fetchall()
            }
            stats["audit_log"] = conn.execute("SELECT COUNT(*) FROM audit_log").fetchone()[0]
            return stats
