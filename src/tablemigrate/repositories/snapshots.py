"""
Durable storage for rollback snapshots.

A snapshot document holds the before-images of every row a phase is about
to touch. Values in a document are already encoded for storage (see
``FieldType.to_storage``); decoding them back into typed rows is the
rollback manager's job, since only it knows the table shape.

Documents are pydantic models so every backend serializes them the same
way.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from tablemigrate.observability import Tracer, create_tracer
from tablemigrate.observability.attributes import (
    ATTR_DB_SYSTEM,
    ATTR_PHASE_ID,
    ATTR_ROW_COUNT,
    ATTR_SNAPSHOT_ID,
)
from tablemigrate.repositories._connection import execute_with_connection

if TYPE_CHECKING:
    import aiosqlite


class CapturedImage(BaseModel):
    """Before-image of one row. ``before`` is None when the row did not exist."""

    model_config = ConfigDict(frozen=True)

    key: list[Any]
    before: dict[str, Any] | None = None


class SnapshotDocument(BaseModel):
    """
    Persisted form of a rollback snapshot.

    Attributes:
        snapshot_id: Unique snapshot identifier
        phase_id: Phase that captured the snapshot
        scope_key: Ledger scope key of the run
        run_id: Run that captured the snapshot
        table: Table the captured rows belong to
        captured: Before-images in capture order
        created_at: When the snapshot was captured
        restored_at: When a restore completed, or None
        whole_table: The captured rows are the whole table
    """

    model_config = ConfigDict(frozen=True)

    snapshot_id: str
    phase_id: str
    scope_key: str
    run_id: str | None = None
    table: str
    captured: list[CapturedImage] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    restored_at: datetime | None = None
    whole_table: bool = False

    @property
    def restored(self) -> bool:
        return self.restored_at is not None

    @property
    def row_count(self) -> int:
        return len(self.captured)


@runtime_checkable
class SnapshotStore(Protocol):
    """Protocol for durable rollback snapshot storage."""

    async def save(self, document: SnapshotDocument) -> None:
        """Persist a snapshot. Must be durable when this returns."""
        ...

    async def get(self, snapshot_id: str) -> SnapshotDocument | None:
        """Load a snapshot by id."""
        ...

    async def get_latest(self, phase_id: str, scope_key: str) -> SnapshotDocument | None:
        """Load the most recent kept snapshot for a phase and scope."""
        ...

    async def mark_restored(self, snapshot_id: str) -> bool:
        """
        Record that a snapshot has been restored.

        Returns:
            True if the marker was set by this call, False if it was already set
            or the snapshot does not exist
        """
        ...

    async def delete(self, snapshot_id: str) -> bool:
        """Discard a snapshot. Returns True if it existed."""
        ...


class InMemorySnapshotStore:
    """In-memory snapshot store for tests and dry runs."""

    def __init__(
        self,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._documents: dict[str, SnapshotDocument] = {}
        self._lock = asyncio.Lock()

    async def save(self, document: SnapshotDocument) -> None:
        with self._tracer.span(
            "tablemigrate.snapshot_store.save",
            {
                ATTR_SNAPSHOT_ID: document.snapshot_id,
                ATTR_PHASE_ID: document.phase_id,
                ATTR_ROW_COUNT: document.row_count,
            },
        ):
            async with self._lock:
                self._documents[document.snapshot_id] = document

    async def get(self, snapshot_id: str) -> SnapshotDocument | None:
        async with self._lock:
            return self._documents.get(snapshot_id)

    async def get_latest(self, phase_id: str, scope_key: str) -> SnapshotDocument | None:
        async with self._lock:
            matches = [
                doc
                for doc in self._documents.values()
                if doc.phase_id == phase_id and doc.scope_key == scope_key
            ]
        if not matches:
            return None
        return max(matches, key=lambda doc: doc.created_at)

    async def mark_restored(self, snapshot_id: str) -> bool:
        async with self._lock:
            document = self._documents.get(snapshot_id)
            if document is None or document.restored:
                return False
            self._documents[snapshot_id] = document.model_copy(
                update={"restored_at": datetime.now(UTC)}
            )
            return True

    async def delete(self, snapshot_id: str) -> bool:
        async with self._lock:
            return self._documents.pop(snapshot_id, None) is not None

    async def clear(self) -> None:
        """Clear all snapshots. Useful for testing."""
        async with self._lock:
            self._documents.clear()


class SQLiteSnapshotStore:
    """
    SQLite snapshot store using the ``rollback_snapshots`` table.

    The document column holds the snapshot as JSON text. ``restored_at``
    is kept in its own column so the restored marker can be set without
    rewriting the document.
    """

    def __init__(
        self,
        connection: aiosqlite.Connection,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the snapshot store.

        Args:
            connection: aiosqlite database connection
            tracer: Optional tracer for tracing (if not provided, one will be created)
            enable_tracing: Whether to enable OpenTelemetry tracing (default True)
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._connection = connection

    async def save(self, document: SnapshotDocument) -> None:
        with self._tracer.span(
            "tablemigrate.snapshot_store.save",
            {
                ATTR_SNAPSHOT_ID: document.snapshot_id,
                ATTR_PHASE_ID: document.phase_id,
                ATTR_ROW_COUNT: document.row_count,
                ATTR_DB_SYSTEM: "sqlite",
            },
        ):
            await self._connection.execute(
                """
                INSERT INTO rollback_snapshots
                    (snapshot_id, phase_id, scope_key, run_id, table_name,
                     row_count, document, created_at, restored_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (snapshot_id) DO UPDATE SET
                    document = excluded.document,
                    row_count = excluded.row_count,
                    restored_at = excluded.restored_at
                """,
                (
                    document.snapshot_id,
                    document.phase_id,
                    document.scope_key,
                    document.run_id,
                    document.table,
                    document.row_count,
                    document.model_dump_json(exclude={"restored_at"}),
                    document.created_at.isoformat(),
                    document.restored_at.isoformat() if document.restored_at else None,
                ),
            )
            await self._connection.commit()

    async def get(self, snapshot_id: str) -> SnapshotDocument | None:
        cursor = await self._connection.execute(
            "SELECT document, restored_at FROM rollback_snapshots WHERE snapshot_id = ?",
            (snapshot_id,),
        )
        row = await cursor.fetchone()
        return self._row_to_document(row) if row else None

    async def get_latest(self, phase_id: str, scope_key: str) -> SnapshotDocument | None:
        cursor = await self._connection.execute(
            """
            SELECT document, restored_at FROM rollback_snapshots
            WHERE phase_id = ? AND scope_key = ?
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (phase_id, scope_key),
        )
        row = await cursor.fetchone()
        return self._row_to_document(row) if row else None

    async def mark_restored(self, snapshot_id: str) -> bool:
        cursor = await self._connection.execute(
            """
            UPDATE rollback_snapshots SET restored_at = ?
            WHERE snapshot_id = ? AND restored_at IS NULL
            """,
            (datetime.now(UTC).isoformat(), snapshot_id),
        )
        await self._connection.commit()
        return cursor.rowcount > 0

    async def delete(self, snapshot_id: str) -> bool:
        cursor = await self._connection.execute(
            "DELETE FROM rollback_snapshots WHERE snapshot_id = ?",
            (snapshot_id,),
        )
        await self._connection.commit()
        return cursor.rowcount > 0

    @staticmethod
    def _row_to_document(row: Any) -> SnapshotDocument:
        document = SnapshotDocument.model_validate_json(row[0])
        if row[1] is None:
            return document
        return document.model_copy(update={"restored_at": datetime.fromisoformat(row[1])})


class PostgreSQLSnapshotStore:
    """PostgreSQL snapshot store using the ``rollback_snapshots`` table (JSONB document)."""

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self.conn = conn

    async def save(self, document: SnapshotDocument) -> None:
        with self._tracer.span(
            "tablemigrate.snapshot_store.save",
            {
                ATTR_SNAPSHOT_ID: document.snapshot_id,
                ATTR_PHASE_ID: document.phase_id,
                ATTR_ROW_COUNT: document.row_count,
                ATTR_DB_SYSTEM: "postgresql",
            },
        ):
            query = text("""
                INSERT INTO rollback_snapshots
                    (snapshot_id, phase_id, scope_key, run_id, table_name,
                     row_count, document, created_at, restored_at)
                VALUES
                    (:snapshot_id, :phase_id, :scope_key, :run_id, :table_name,
                     :row_count, CAST(:document AS JSONB), :created_at, :restored_at)
                ON CONFLICT (snapshot_id) DO UPDATE SET
                    document = EXCLUDED.document,
                    row_count = EXCLUDED.row_count,
                    restored_at = EXCLUDED.restored_at
            """)
            params = {
                "snapshot_id": document.snapshot_id,
                "phase_id": document.phase_id,
                "scope_key": document.scope_key,
                "run_id": document.run_id,
                "table_name": document.table,
                "row_count": document.row_count,
                "document": document.model_dump_json(exclude={"restored_at"}),
                "created_at": document.created_at,
                "restored_at": document.restored_at,
            }
            async with execute_with_connection(self.conn, transactional=True) as conn:
                await conn.execute(query, params)

    async def get(self, snapshot_id: str) -> SnapshotDocument | None:
        query = text("""
            SELECT document, restored_at FROM rollback_snapshots
            WHERE snapshot_id = :snapshot_id
        """)
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query, {"snapshot_id": snapshot_id})
            row = result.fetchone()
        return self._row_to_document(row) if row else None

    async def get_latest(self, phase_id: str, scope_key: str) -> SnapshotDocument | None:
        query = text("""
            SELECT document, restored_at FROM rollback_snapshots
            WHERE phase_id = :phase_id AND scope_key = :scope_key
            ORDER BY created_at DESC
            LIMIT 1
        """)
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query, {"phase_id": phase_id, "scope_key": scope_key})
            row = result.fetchone()
        return self._row_to_document(row) if row else None

    async def mark_restored(self, snapshot_id: str) -> bool:
        query = text("""
            UPDATE rollback_snapshots SET restored_at = :restored_at
            WHERE snapshot_id = :snapshot_id AND restored_at IS NULL
        """)
        async with execute_with_connection(self.conn, transactional=True) as conn:
            result = await conn.execute(
                query, {"snapshot_id": snapshot_id, "restored_at": datetime.now(UTC)}
            )
            return bool(result.rowcount)

    async def delete(self, snapshot_id: str) -> bool:
        query = text("DELETE FROM rollback_snapshots WHERE snapshot_id = :snapshot_id")
        async with execute_with_connection(self.conn, transactional=True) as conn:
            result = await conn.execute(query, {"snapshot_id": snapshot_id})
            return bool(result.rowcount)

    @staticmethod
    def _row_to_document(row: Any) -> SnapshotDocument:
        raw = row[0]
        if isinstance(raw, str | bytes):
            document = SnapshotDocument.model_validate_json(raw)
        else:
            document = SnapshotDocument.model_validate(raw)
        if row[1] is None:
            return document
        return document.model_copy(update={"restored_at": row[1]})


__all__ = [
    "CapturedImage",
    "SnapshotDocument",
    "SnapshotStore",
    "InMemorySnapshotStore",
    "SQLiteSnapshotStore",
    "PostgreSQLSnapshotStore",
]
