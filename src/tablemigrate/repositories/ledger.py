"""
Migration ledger: the durable idempotency registry.

The ledger records which migration tags have been applied, at what scope,
and when. It is the only state that outlives a single run, and it is only
ever appended to.

Every phase follows the same pattern against the ledger:

    has tag?  -> skip
    otherwise -> do the work, then commit the tag

``commit_tag`` is an atomic check-and-set. When two runs race to commit
the same tag for the same scope, exactly one succeeds; the other receives
AlreadyCommittedError and must treat it as success.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import UTC, date, datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from tablemigrate.exceptions import AlreadyCommittedError
from tablemigrate.observability import Tracer, create_tracer
from tablemigrate.observability.attributes import (
    ATTR_DB_SYSTEM,
    ATTR_SCOPE,
    ATTR_TAG_ID,
)
from tablemigrate.repositories._connection import execute_with_connection

if TYPE_CHECKING:
    import aiosqlite

GLOBAL_SCOPE_KEY = "global"
TENANT_SCOPE_PREFIX = "tenant:"


@dataclass(frozen=True)
class TagScope:
    """
    Granularity at which a tag is tracked.

    A scope is either global (one per deployment) or per tenant.

    Example:
        >>> TagScope.global_().key
        'global'
        >>> TagScope.tenant("acme").key
        'tenant:acme'
    """

    tenant_id: str | None = None

    def __post_init__(self) -> None:
        if self.tenant_id is not None and not self.tenant_id:
            raise ValueError("tenant_id must not be empty")

    @classmethod
    def global_(cls) -> TagScope:
        return cls(tenant_id=None)

    @classmethod
    def tenant(cls, tenant_id: str) -> TagScope:
        return cls(tenant_id=str(tenant_id))

    @classmethod
    def from_key(cls, key: str) -> TagScope:
        """
        Parse a storage key back into a scope.

        Raises:
            ValueError: If the key is not a valid scope key
        """
        if key == GLOBAL_SCOPE_KEY:
            return cls.global_()
        if key.startswith(TENANT_SCOPE_PREFIX):
            return cls.tenant(key[len(TENANT_SCOPE_PREFIX) :])
        raise ValueError(f"Invalid scope key: {key!r}")

    @property
    def is_global(self) -> bool:
        return self.tenant_id is None

    @property
    def key(self) -> str:
        """Storage key used as part of the ledger's primary key."""
        if self.tenant_id is None:
            return GLOBAL_SCOPE_KEY
        return f"{TENANT_SCOPE_PREFIX}{self.tenant_id}"

    def __str__(self) -> str:
        return self.key


@dataclass(frozen=True)
class MigrationTag:
    """
    A committed ledger entry.

    Attributes:
        tag_id: Tag identifier (see ``migration_tag`` for the naming convention)
        scope: Scope the tag was committed for
        applied_at: When the tag was committed
        run_id: Run that committed the tag, if recorded
    """

    tag_id: str
    scope: TagScope
    applied_at: datetime
    run_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tag_id": self.tag_id,
            "scope": self.scope.key,
            "applied_at": self.applied_at.isoformat(),
            "run_id": self.run_id,
        }


def migration_tag(component_id: str | int, feature_name: str, on_date: date) -> str:
    """
    Build a tag id following the ``{componentId}-{featureName}-{YYYYMMDD}`` convention.

    Example:
        >>> migration_tag("50100", "CustomerGrade", date(2025, 1, 20))
        '50100-CustomerGrade-20250120'
    """
    if not str(component_id) or not feature_name:
        raise ValueError("component_id and feature_name must not be empty")
    return f"{component_id}-{feature_name}-{on_date.strftime('%Y%m%d')}"


@runtime_checkable
class MigrationLedger(Protocol):
    """
    Protocol for the migration ledger.

    Implementations must make ``commit_tag`` atomic across concurrent
    callers, including callers in other processes for durable backends.
    """

    async def has_tag(self, tag_id: str, scope: TagScope) -> bool:
        """Check whether a tag has been committed for a scope."""
        ...

    async def commit_tag(
        self,
        tag_id: str,
        scope: TagScope,
        *,
        run_id: str | None = None,
    ) -> MigrationTag:
        """
        Commit a tag for a scope.

        Returns:
            The committed tag

        Raises:
            AlreadyCommittedError: If the tag is already committed for the scope
        """
        ...

    async def get_tag(self, tag_id: str, scope: TagScope) -> MigrationTag | None:
        """Get a committed tag, or None."""
        ...

    async def list_tags(self, scope: TagScope | None = None) -> list[MigrationTag]:
        """List committed tags in commit order, optionally for one scope."""
        ...


class InMemoryMigrationLedger:
    """
    In-memory ledger for tests and single-process dry runs.

    Check-and-set is serialized with an asyncio.Lock.
    """

    def __init__(
        self,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._tags: dict[tuple[str, str], MigrationTag] = {}
        self._lock = asyncio.Lock()

    async def has_tag(self, tag_id: str, scope: TagScope) -> bool:
        with self._tracer.span(
            "tablemigrate.ledger.has_tag",
            {ATTR_TAG_ID: tag_id, ATTR_SCOPE: scope.key},
        ):
            async with self._lock:
                return (tag_id, scope.key) in self._tags

    async def commit_tag(
        self,
        tag_id: str,
        scope: TagScope,
        *,
        run_id: str | None = None,
    ) -> MigrationTag:
        with self._tracer.span(
            "tablemigrate.ledger.commit_tag",
            {ATTR_TAG_ID: tag_id, ATTR_SCOPE: scope.key},
        ):
            async with self._lock:
                if (tag_id, scope.key) in self._tags:
                    raise AlreadyCommittedError(tag_id, scope.key)
                tag = MigrationTag(
                    tag_id=tag_id,
                    scope=scope,
                    applied_at=datetime.now(UTC),
                    run_id=run_id,
                )
                self._tags[(tag_id, scope.key)] = tag
                return tag

    async def get_tag(self, tag_id: str, scope: TagScope) -> MigrationTag | None:
        async with self._lock:
            return self._tags.get((tag_id, scope.key))

    async def list_tags(self, scope: TagScope | None = None) -> list[MigrationTag]:
        async with self._lock:
            return [
                tag for tag in self._tags.values() if scope is None or tag.scope.key == scope.key
            ]

    async def clear(self) -> None:
        """Clear all tags. Useful for testing."""
        async with self._lock:
            self._tags.clear()


class SQLiteMigrationLedger:
    """
    SQLite ledger stored in the ``migration_tags`` table.

    The (tag_id, scope_key) primary key makes the INSERT the check-and-set:
    a conflicting insert changes no rows and is reported as already
    committed.

    Example:
        >>> async with aiosqlite.connect("ledger.db") as db:
        ...     await db.executescript(get_schema("migration_tags", backend="sqlite"))
        ...     ledger = SQLiteMigrationLedger(db)
        ...     await ledger.commit_tag("50100-CustomerGrade-20250120", TagScope.global_())
    """

    def __init__(
        self,
        connection: aiosqlite.Connection,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the ledger.

        Args:
            connection: aiosqlite database connection
            tracer: Optional tracer for tracing (if not provided, one will be created)
            enable_tracing: Whether to enable OpenTelemetry tracing (default True)
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._connection = connection

    async def has_tag(self, tag_id: str, scope: TagScope) -> bool:
        with self._tracer.span(
            "tablemigrate.ledger.has_tag",
            {ATTR_TAG_ID: tag_id, ATTR_SCOPE: scope.key, ATTR_DB_SYSTEM: "sqlite"},
        ):
            cursor = await self._connection.execute(
                "SELECT 1 FROM migration_tags WHERE tag_id = ? AND scope_key = ?",
                (tag_id, scope.key),
            )
            return await cursor.fetchone() is not None

    async def commit_tag(
        self,
        tag_id: str,
        scope: TagScope,
        *,
        run_id: str | None = None,
    ) -> MigrationTag:
        with self._tracer.span(
            "tablemigrate.ledger.commit_tag",
            {ATTR_TAG_ID: tag_id, ATTR_SCOPE: scope.key, ATTR_DB_SYSTEM: "sqlite"},
        ):
            applied_at = datetime.now(UTC)
            cursor = await self._connection.execute(
                """
                INSERT INTO migration_tags (tag_id, scope_key, tenant_id, run_id, applied_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (tag_id, scope_key) DO NOTHING
                """,
                (tag_id, scope.key, scope.tenant_id, run_id, applied_at.isoformat()),
            )
            await self._connection.commit()
            if cursor.rowcount == 0:
                raise AlreadyCommittedError(tag_id, scope.key)
            return MigrationTag(tag_id=tag_id, scope=scope, applied_at=applied_at, run_id=run_id)

    async def get_tag(self, tag_id: str, scope: TagScope) -> MigrationTag | None:
        cursor = await self._connection.execute(
            """
            SELECT tag_id, scope_key, applied_at, run_id
            FROM migration_tags
            WHERE tag_id = ? AND scope_key = ?
            """,
            (tag_id, scope.key),
        )
        row = await cursor.fetchone()
        return self._row_to_tag(row) if row else None

    async def list_tags(self, scope: TagScope | None = None) -> list[MigrationTag]:
        query = "SELECT tag_id, scope_key, applied_at, run_id FROM migration_tags"
        params: tuple[Any, ...] = ()
        if scope is not None:
            query += " WHERE scope_key = ?"
            params = (scope.key,)
        cursor = await self._connection.execute(query + " ORDER BY applied_at, tag_id", params)
        rows = await cursor.fetchall()
        return [self._row_to_tag(row) for row in rows]

    @staticmethod
    def _row_to_tag(row: Any) -> MigrationTag:
        return MigrationTag(
            tag_id=row[0],
            scope=TagScope.from_key(row[1]),
            applied_at=datetime.fromisoformat(row[2]),
            run_id=row[3],
        )


class PostgreSQLMigrationLedger:
    """
    PostgreSQL ledger stored in the ``migration_tags`` table.

    Uses ``INSERT ... ON CONFLICT DO NOTHING RETURNING`` so the
    check-and-set is a single atomic statement.

    Example:
        >>> ledger = PostgreSQLMigrationLedger(engine)
        >>> if not await ledger.has_tag(tag, scope):
        ...     ...
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self.conn = conn

    async def has_tag(self, tag_id: str, scope: TagScope) -> bool:
        with self._tracer.span(
            "tablemigrate.ledger.has_tag",
            {ATTR_TAG_ID: tag_id, ATTR_SCOPE: scope.key, ATTR_DB_SYSTEM: "postgresql"},
        ):
            query = text("""
                SELECT 1 FROM migration_tags
                WHERE tag_id = :tag_id AND scope_key = :scope_key
            """)
            async with execute_with_connection(self.conn, transactional=False) as conn:
                result = await conn.execute(query, {"tag_id": tag_id, "scope_key": scope.key})
                return result.fetchone() is not None

    async def commit_tag(
        self,
        tag_id: str,
        scope: TagScope,
        *,
        run_id: str | None = None,
    ) -> MigrationTag:
        with self._tracer.span(
            "tablemigrate.ledger.commit_tag",
            {ATTR_TAG_ID: tag_id, ATTR_SCOPE: scope.key, ATTR_DB_SYSTEM: "postgresql"},
        ):
            query = text("""
                INSERT INTO migration_tags (tag_id, scope_key, tenant_id, run_id, applied_at)
                VALUES (:tag_id, :scope_key, :tenant_id, :run_id, :applied_at)
                ON CONFLICT (tag_id, scope_key) DO NOTHING
                RETURNING applied_at
            """)
            params = {
                "tag_id": tag_id,
                "scope_key": scope.key,
                "tenant_id": scope.tenant_id,
                "run_id": run_id,
                "applied_at": datetime.now(UTC),
            }
            async with execute_with_connection(self.conn, transactional=True) as conn:
                result = await conn.execute(query, params)
                row = result.fetchone()
            if row is None:
                raise AlreadyCommittedError(tag_id, scope.key)
            return MigrationTag(tag_id=tag_id, scope=scope, applied_at=row[0], run_id=run_id)

    async def get_tag(self, tag_id: str, scope: TagScope) -> MigrationTag | None:
        query = text("""
            SELECT tag_id, scope_key, applied_at, run_id
            FROM migration_tags
            WHERE tag_id = :tag_id AND scope_key = :scope_key
        """)
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query, {"tag_id": tag_id, "scope_key": scope.key})
            row = result.fetchone()
        if row is None:
            return None
        return MigrationTag(
            tag_id=row[0], scope=TagScope.from_key(row[1]), applied_at=row[2], run_id=row[3]
        )

    async def list_tags(self, scope: TagScope | None = None) -> list[MigrationTag]:
        where = "WHERE scope_key = :scope_key" if scope is not None else ""
        query = text(f"""
            SELECT tag_id, scope_key, applied_at, run_id
            FROM migration_tags
            {where}
            ORDER BY applied_at, tag_id
        """)  # nosec B608
        params = {"scope_key": scope.key} if scope is not None else {}
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query, params)
            rows = result.fetchall()
        return [
            MigrationTag(
                tag_id=row[0], scope=TagScope.from_key(row[1]), applied_at=row[2], run_id=row[3]
            )
            for row in rows
        ]


__all__ = [
    "TagScope",
    "MigrationTag",
    "migration_tag",
    "MigrationLedger",
    "InMemoryMigrationLedger",
    "SQLiteMigrationLedger",
    "PostgreSQLMigrationLedger",
]
