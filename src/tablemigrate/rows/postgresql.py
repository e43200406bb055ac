"""
PostgreSQL implementation of the table store.

Uses SQLAlchemy async with ``text()`` queries, so any async driver SQLAlchemy
supports (asyncpg by default) can be used. Values are passed natively except
JSON, which is sent as text and cast to JSONB.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Iterable, Sequence
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from tablemigrate.exceptions import UnknownTableError
from tablemigrate.migrations import generate_table_schema
from tablemigrate.observability import Tracer, create_tracer
from tablemigrate.observability.attributes import (
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_ROW_COUNT,
    ATTR_TABLE,
)
from tablemigrate.repositories._connection import execute_with_connection
from tablemigrate.rows.query import Filter, RowFilter
from tablemigrate.rows.row import Row
from tablemigrate.rows.schema import FieldType, RowKey, TableShape


class PostgreSQLTableStore:
    """
    PostgreSQL implementation of TableStore.

    Example:
        >>> engine = create_async_engine("postgresql+asyncpg://localhost/app")
        >>> store = PostgreSQLTableStore(engine, [customers_shape])
        >>> await store.upsert("customers", [Row(id=1, name="Ada")])
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        shapes: Iterable[TableShape] = (),
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the PostgreSQL store.

        Args:
            conn: Database connection or engine
            shapes: Shapes of the tables this store manages
            tracer: Optional tracer for tracing (if not provided, one will be created)
            enable_tracing: Whether to enable OpenTelemetry tracing (default True)
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self.conn = conn
        self._shapes: dict[str, TableShape] = {shape.name: shape for shape in shapes}

    async def create_table(self, shape: TableShape) -> None:
        """Register a shape and create its table if it does not exist."""
        self._shapes[shape.name] = shape
        async with execute_with_connection(self.conn, transactional=True) as conn:
            await conn.execute(text(generate_table_schema(shape, dialect="postgresql")))

    async def get_shape(self, table: str) -> TableShape | None:
        shape = self._shapes.get(table)
        if shape is None:
            return None
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(
                text("SELECT to_regclass(:table_name) IS NOT NULL"),
                {"table_name": table},
            )
            exists = result.scalar()
        return shape if exists else None

    async def get(self, table: str, key: RowKey) -> Row | None:
        with self._tracer.span(
            "tablemigrate.store.get",
            {ATTR_TABLE: table, ATTR_DB_SYSTEM: "postgresql", ATTR_DB_OPERATION: "SELECT"},
        ):
            shape = self._require_shape(table)
            where, params = self._key_clause(shape, key)
            query = text(
                f"SELECT {', '.join(shape.field_ids)} FROM {table} WHERE {where}"  # nosec B608
            )
            async with execute_with_connection(self.conn, transactional=False) as conn:
                result = await conn.execute(query, params)
                record = result.fetchone()
            return self._row_from_record(shape, record) if record else None

    async def find(
        self,
        table: str,
        row_filter: RowFilter | None = None,
    ) -> AsyncIterator[Row]:
        shape = self._require_shape(table)
        where, params = self._build_where(shape, row_filter)
        query = text(f"SELECT {', '.join(shape.field_ids)} FROM {table}{where}")  # nosec B608
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.stream(query, params)
            async for record in result:
                row = self._row_from_record(shape, record)
                if row_filter is None or row_filter.predicate is None or row_filter.predicate(row):
                    yield row

    async def count(self, table: str, row_filter: RowFilter | None = None) -> int:
        with self._tracer.span(
            "tablemigrate.store.count",
            {ATTR_TABLE: table, ATTR_DB_SYSTEM: "postgresql", ATTR_DB_OPERATION: "SELECT"},
        ):
            shape = self._require_shape(table)
            if row_filter is not None and row_filter.predicate is not None:
                count = 0
                async for _ in self.find(table, row_filter):
                    count += 1
                return count
            where, params = self._build_where(shape, row_filter)
            query = text(f"SELECT COUNT(*) FROM {table}{where}")  # nosec B608
            async with execute_with_connection(self.conn, transactional=False) as conn:
                result = await conn.execute(query, params)
                return int(result.scalar() or 0)

    async def upsert(self, table: str, rows: Sequence[Row]) -> int:
        """
        Insert or replace rows in one statement.

        Raises:
            UnknownTableError: If the table is not registered
            ValueError: If any row does not fit the table shape (nothing is written)
        """
        with self._tracer.span(
            "tablemigrate.store.upsert",
            {
                ATTR_TABLE: table,
                ATTR_ROW_COUNT: len(rows),
                ATTR_DB_SYSTEM: "postgresql",
                ATTR_DB_OPERATION: "INSERT",
            },
        ):
            shape = self._require_shape(table)
            params = []
            for row in rows:
                problems = shape.check_row(row)
                if problems:
                    raise ValueError(f"Row rejected by {table}: {'; '.join(problems)}")
                params.append(
                    {
                        field_id: self._to_param(shape, field_id, row.get(field_id))
                        for field_id in shape.field_ids
                    }
                )
            if not params:
                return 0

            columns = ", ".join(shape.field_ids)
            values = ", ".join(
                f"CAST(:{spec.field_id} AS JSONB)"
                if spec.type is FieldType.JSON
                else f":{spec.field_id}"
                for spec in shape.fields
            )
            updates = [f"{f} = EXCLUDED.{f}" for f in shape.field_ids if f not in shape.key]
            conflict = f"DO UPDATE SET {', '.join(updates)}" if updates else "DO NOTHING"
            query = text(
                f"INSERT INTO {table} ({columns}) VALUES ({values}) "  # nosec B608
                f"ON CONFLICT ({', '.join(shape.key)}) {conflict}"
            )
            async with execute_with_connection(self.conn, transactional=True) as conn:
                await conn.execute(query, params)
            return len(params)

    async def delete(self, table: str, key: RowKey) -> bool:
        with self._tracer.span(
            "tablemigrate.store.delete",
            {ATTR_TABLE: table, ATTR_DB_SYSTEM: "postgresql", ATTR_DB_OPERATION: "DELETE"},
        ):
            shape = self._require_shape(table)
            where, params = self._key_clause(shape, key)
            query = text(f"DELETE FROM {table} WHERE {where}")  # nosec B608
            async with execute_with_connection(self.conn, transactional=True) as conn:
                result = await conn.execute(query, params)
                return bool(result.rowcount)

    def _require_shape(self, table: str) -> TableShape:
        shape = self._shapes.get(table)
        if shape is None:
            raise UnknownTableError(table)
        return shape

    @staticmethod
    def _to_param(shape: TableShape, field_id: str, value: Any) -> Any:
        spec = shape.field(field_id)
        if spec is not None and spec.type is FieldType.JSON and value is not None:
            return json.dumps(value)
        return value

    def _key_clause(self, shape: TableShape, key: RowKey) -> tuple[str, dict[str, Any]]:
        params = {
            f"k{i}": self._to_param(shape, field_id, value)
            for i, (field_id, value) in enumerate(zip(shape.key, key, strict=True))
        }
        where = " AND ".join(f"{field_id} = :k{i}" for i, field_id in enumerate(shape.key))
        return where, params

    @staticmethod
    def _row_from_record(shape: TableShape, record: Sequence[Any]) -> Row:
        return Row(shape.decode(dict(zip(shape.field_ids, record, strict=True))))

    def _build_where(
        self,
        shape: TableShape,
        row_filter: RowFilter | None,
    ) -> tuple[str, dict[str, Any]]:
        """Translate the filter's conditions into a WHERE clause with named parameters."""
        if row_filter is None or not row_filter.conditions:
            return "", {}
        clauses = []
        params: dict[str, Any] = {}
        for i, condition in enumerate(row_filter.conditions):
            clause, clause_params = self._filter_to_sql(shape, condition, f"f{i}")
            clauses.append(clause)
            params.update(clause_params)
        return f" WHERE {' AND '.join(clauses)}", params

    def _filter_to_sql(
        self,
        shape: TableShape,
        filter_: Filter,
        name: str,
    ) -> tuple[str, dict[str, Any]]:
        """Convert a Filter to a SQL clause with named parameters."""
        if not shape.has_field(filter_.field):
            raise ValueError(f"Filter on unknown field {filter_.field!r} of {shape.name}")
        field = filter_.field
        value = filter_.value

        if filter_.operator == "is_null":
            return f"{field} IS {'' if value else 'NOT '}NULL", {}
        if filter_.operator == "eq":
            if value is None:
                return f"{field} IS NULL", {}
            return f"{field} = :{name}", {name: value}
        elif filter_.operator == "ne":
            if value is None:
                return f"{field} IS NOT NULL", {}
            return f"{field} IS DISTINCT FROM :{name}", {name: value}
        elif filter_.operator == "in":
            return f"{field} = ANY(:{name})", {name: list(value)}
        elif filter_.operator == "not_in":
            return f"({field} IS NULL OR NOT ({field} = ANY(:{name})))", {name: list(value)}
        symbols = {"gt": ">", "gte": ">=", "lt": "<", "lte": "<="}
        if filter_.operator not in symbols:
            raise ValueError(f"Unknown operator: {filter_.operator}")
        return f"{field} {symbols[filter_.operator]} :{name}", {name: value}


__all__ = ["PostgreSQLTableStore"]
