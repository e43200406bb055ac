"""
SQLite implementation of the table store.

SQLite-specific adaptations:
- DECIMAL, DATE, DATETIME, UUID and JSON values stored as TEXT
- BOOLEAN stored as INTEGER (0/1)
- Upserts use INSERT ... ON CONFLICT DO UPDATE (SQLite 3.24+)
- Positional parameters (?) instead of named parameters

Range conditions on DECIMAL, UUID and JSON fields cannot be compared
correctly as TEXT, so those are evaluated in Python after the query.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterable, Sequence
from typing import TYPE_CHECKING, Any

from tablemigrate.exceptions import UnknownTableError
from tablemigrate.migrations import generate_table_schema
from tablemigrate.observability import Tracer, create_tracer
from tablemigrate.observability.attributes import (
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_ROW_COUNT,
    ATTR_TABLE,
)
from tablemigrate.rows.query import Filter, RowFilter
from tablemigrate.rows.row import Row
from tablemigrate.rows.schema import FieldType, RowKey, TableShape

if TYPE_CHECKING:
    import aiosqlite

_TEXT_ORDERED_TYPES = frozenset(
    {
        FieldType.TEXT,
        FieldType.INTEGER,
        FieldType.FLOAT,
        FieldType.BOOLEAN,
        FieldType.DATE,
        FieldType.DATETIME,
    }
)


class SQLiteTableStore:
    """
    SQLite implementation of TableStore.

    Tables must be registered with their shapes; ``create_table`` also
    creates them in the database.

    Example:
        >>> import aiosqlite
        >>> async with aiosqlite.connect("data.db") as db:
        ...     store = SQLiteTableStore(db, [customers_shape])
        ...     await store.create_table(customers_shape)
        ...     await store.upsert("customers", [Row(id=1, name="Ada")])
    """

    def __init__(
        self,
        connection: aiosqlite.Connection,
        shapes: Iterable[TableShape] = (),
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the SQLite store.

        Args:
            connection: aiosqlite database connection
            shapes: Shapes of the tables this store manages
            tracer: Optional tracer for tracing (if not provided, one will be created)
            enable_tracing: Whether to enable OpenTelemetry tracing (default True)
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._connection = connection
        self._shapes: dict[str, TableShape] = {shape.name: shape for shape in shapes}

    async def create_table(self, shape: TableShape) -> None:
        """Register a shape and create its table if it does not exist."""
        self._shapes[shape.name] = shape
        await self._connection.execute(generate_table_schema(shape, dialect="sqlite"))
        await self._connection.commit()

    async def get_shape(self, table: str) -> TableShape | None:
        """Get the registered shape, or None if the table is unknown or not created."""
        shape = self._shapes.get(table)
        if shape is None:
            return None
        cursor = await self._connection.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
            (table,),
        )
        row = await cursor.fetchone()
        return shape if row else None

    async def get(self, table: str, key: RowKey) -> Row | None:
        with self._tracer.span(
            "tablemigrate.store.get",
            {ATTR_TABLE: table, ATTR_DB_SYSTEM: "sqlite", ATTR_DB_OPERATION: "SELECT"},
        ):
            shape = self._require_shape(table)
            where = " AND ".join(f"{k} = ?" for k in shape.key)
            cursor = await self._connection.execute(
                f"SELECT {', '.join(shape.field_ids)} FROM {table} WHERE {where}",  # nosec B608
                tuple(self._encode_key(shape, key)),
            )
            record = await cursor.fetchone()
            return self._row_from_record(shape, record) if record else None

    async def find(
        self,
        table: str,
        row_filter: RowFilter | None = None,
    ) -> AsyncIterator[Row]:
        shape = self._require_shape(table)
        where, params, residual = self._build_where(shape, row_filter)
        query = f"SELECT {', '.join(shape.field_ids)} FROM {table}{where}"  # nosec B608
        async with self._connection.execute(query, params) as cursor:
            async for record in cursor:
                row = self._row_from_record(shape, record)
                if residual is None or residual.matches(row):
                    yield row

    async def count(self, table: str, row_filter: RowFilter | None = None) -> int:
        with self._tracer.span(
            "tablemigrate.store.count",
            {ATTR_TABLE: table, ATTR_DB_SYSTEM: "sqlite", ATTR_DB_OPERATION: "SELECT"},
        ):
            shape = self._require_shape(table)
            where, params, residual = self._build_where(shape, row_filter)
            if residual is not None:
                count = 0
                async for _ in self.find(table, row_filter):
                    count += 1
                return count
            cursor = await self._connection.execute(
                f"SELECT COUNT(*) FROM {table}{where}",  # nosec B608
                params,
            )
            record = await cursor.fetchone()
            return int(record[0]) if record else 0

    async def upsert(self, table: str, rows: Sequence[Row]) -> int:
        """
        Insert or replace rows in a single transaction.

        Raises:
            UnknownTableError: If the table is not registered
            ValueError: If any row does not fit the table shape (nothing is written)
        """
        with self._tracer.span(
            "tablemigrate.store.upsert",
            {
                ATTR_TABLE: table,
                ATTR_ROW_COUNT: len(rows),
                ATTR_DB_SYSTEM: "sqlite",
                ATTR_DB_OPERATION: "INSERT",
            },
        ):
            shape = self._require_shape(table)
            params = []
            for row in rows:
                problems = shape.check_row(row)
                if problems:
                    raise ValueError(f"Row rejected by {table}: {'; '.join(problems)}")
                encoded = shape.encode(row)
                params.append(tuple(encoded.get(field_id) for field_id in shape.field_ids))
            if not params:
                return 0

            columns = ", ".join(shape.field_ids)
            placeholders = ", ".join("?" for _ in shape.field_ids)
            updates = [f"{f} = excluded.{f}" for f in shape.field_ids if f not in shape.key]
            conflict = f"DO UPDATE SET {', '.join(updates)}" if updates else "DO NOTHING"
            query = (
                f"INSERT INTO {table} ({columns}) VALUES ({placeholders}) "  # nosec B608
                f"ON CONFLICT ({', '.join(shape.key)}) {conflict}"
            )
            try:
                await self._connection.executemany(query, params)
                await self._connection.commit()
            except Exception:
                await self._connection.rollback()
                raise
            return len(params)

    async def delete(self, table: str, key: RowKey) -> bool:
        with self._tracer.span(
            "tablemigrate.store.delete",
            {ATTR_TABLE: table, ATTR_DB_SYSTEM: "sqlite", ATTR_DB_OPERATION: "DELETE"},
        ):
            shape = self._require_shape(table)
            where = " AND ".join(f"{k} = ?" for k in shape.key)
            cursor = await self._connection.execute(
                f"DELETE FROM {table} WHERE {where}",  # nosec B608
                tuple(self._encode_key(shape, key)),
            )
            await self._connection.commit()
            return cursor.rowcount > 0

    def _require_shape(self, table: str) -> TableShape:
        shape = self._shapes.get(table)
        if shape is None:
            raise UnknownTableError(table)
        return shape

    @staticmethod
    def _encode_key(shape: TableShape, key: RowKey) -> list[Any]:
        return [
            shape.field(field_id).type.to_storage(value)  # type: ignore[union-attr]
            for field_id, value in zip(shape.key, key, strict=True)
        ]

    @staticmethod
    def _row_from_record(shape: TableShape, record: Sequence[Any]) -> Row:
        return Row(shape.decode(dict(zip(shape.field_ids, record, strict=True))))

    def _build_where(
        self,
        shape: TableShape,
        row_filter: RowFilter | None,
    ) -> tuple[str, tuple[Any, ...], RowFilter | None]:
        """
        Split a filter into a WHERE clause and a residual filter.

        Returns:
            Tuple of (WHERE clause or "", parameters, filter to apply in Python or None)
        """
        if row_filter is None or row_filter.is_empty:
            return "", (), None

        clauses: list[str] = []
        params: list[Any] = []
        residual: list[Filter] = []
        for condition in row_filter.conditions:
            translated = self._filter_to_sql(shape, condition)
            if translated is None:
                residual.append(condition)
                continue
            clause, clause_params = translated
            clauses.append(clause)
            params.extend(clause_params)

        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        if residual or row_filter.predicate is not None:
            return where, tuple(params), RowFilter(
                conditions=tuple(residual),
                predicate=row_filter.predicate,
                description=row_filter.description,
            )
        return where, tuple(params), None

    def _filter_to_sql(self, shape: TableShape, filter_: Filter) -> tuple[str, list[Any]] | None:
        """
        Convert a Filter to a SQL clause with parameters.

        Returns:
            Tuple of (SQL clause, parameter list), or None when the condition
            must be evaluated in Python
        """
        spec = shape.field(filter_.field)
        if spec is None:
            raise ValueError(f"Filter on unknown field {filter_.field!r} of {shape.name}")
        field = filter_.field
        encode = spec.type.to_storage

        if filter_.operator == "is_null":
            return f"{field} IS {'' if filter_.value else 'NOT '}NULL", []
        if filter_.operator == "eq":
            if filter_.value is None:
                return f"{field} IS NULL", []
            return f"{field} = ?", [encode(filter_.value)]
        elif filter_.operator == "ne":
            if filter_.value is None:
                return f"{field} IS NOT NULL", []
            return f"({field} != ? OR {field} IS NULL)", [encode(filter_.value)]
        elif filter_.operator in ("in", "not_in"):
            values = [encode(v) for v in filter_.value]
            if not values:
                return ("1 = 0", []) if filter_.operator == "in" else ("1 = 1", [])
            placeholders = ",".join("?" * len(values))
            if filter_.operator == "in":
                return f"{field} IN ({placeholders})", values
            return f"({field} NOT IN ({placeholders}) OR {field} IS NULL)", values

        if spec.type not in _TEXT_ORDERED_TYPES:
            return None
        symbols = {"gt": ">", "gte": ">=", "lt": "<", "lte": "<="}
        return f"{field} {symbols[filter_.operator]} ?", [encode(filter_.value)]

    def __repr__(self) -> str:
        return (
            f"SQLiteTableStore(tables={sorted(self._shapes)}, "
            f"tracing={'enabled' if self._enable_tracing else 'disabled'})"
        )


__all__ = ["SQLiteTableStore"]
