"""
In-memory table store.

Suitable for tests, dry runs, and small datasets. Rows are copied on the
way in and on the way out so callers can never mutate stored state.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterable, Sequence
from typing import Any

from tablemigrate.exceptions import UnknownTableError
from tablemigrate.observability import Tracer, create_tracer
from tablemigrate.observability.attributes import ATTR_ROW_COUNT, ATTR_TABLE
from tablemigrate.rows.query import RowFilter
from tablemigrate.rows.row import Row
from tablemigrate.rows.schema import RowKey, TableShape


class InMemoryTableStore:
    """
    In-memory implementation of TableStore.

    Upserts validate every row against the table shape before writing any of
    them, so a call with one bad row writes nothing.

    Example:
        >>> store = InMemoryTableStore([customers_shape])
        >>> await store.upsert("customers", [Row(id=1, name="Ada")])
        >>> await store.count("customers")
        1
    """

    def __init__(
        self,
        shapes: Iterable[TableShape] = (),
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the store.

        Args:
            shapes: Tables to create up front
            tracer: Optional tracer for tracing (if not provided, one will be created)
            enable_tracing: Whether to enable OpenTelemetry tracing (default True)
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._shapes: dict[str, TableShape] = {}
        self._rows: dict[str, dict[RowKey, dict[str, Any]]] = {}
        self._lock = asyncio.Lock()
        for shape in shapes:
            self._shapes[shape.name] = shape
            self._rows[shape.name] = {}

    async def create_table(self, shape: TableShape) -> None:
        """Create a table (no-op if a table with that name exists)."""
        async with self._lock:
            if shape.name not in self._shapes:
                self._shapes[shape.name] = shape
                self._rows[shape.name] = {}

    async def get_shape(self, table: str) -> TableShape | None:
        return self._shapes.get(table)

    async def get(self, table: str, key: RowKey) -> Row | None:
        with self._tracer.span("tablemigrate.store.get", {ATTR_TABLE: table}):
            async with self._lock:
                values = self._table_rows(table).get(tuple(key))
                return Row(values) if values is not None else None

    async def find(
        self,
        table: str,
        row_filter: RowFilter | None = None,
    ) -> AsyncIterator[Row]:
        """Stream rows matching a filter from a point-in-time copy of the table."""
        async with self._lock:
            rows = [Row(values) for values in self._table_rows(table).values()]
        for row in rows:
            if row_filter is None or row_filter.matches(row):
                yield row

    async def count(self, table: str, row_filter: RowFilter | None = None) -> int:
        with self._tracer.span("tablemigrate.store.count", {ATTR_TABLE: table}):
            count = 0
            async for _ in self.find(table, row_filter):
                count += 1
            return count

    async def upsert(self, table: str, rows: Sequence[Row]) -> int:
        """
        Insert or replace rows.

        Raises:
            UnknownTableError: If the table does not exist
            ValueError: If any row does not fit the table shape (nothing is written)
        """
        with self._tracer.span(
            "tablemigrate.store.upsert",
            {ATTR_TABLE: table, ATTR_ROW_COUNT: len(rows)},
        ):
            shape = self._require_shape(table)
            staged: list[tuple[RowKey, dict[str, Any]]] = []
            for row in rows:
                values = dict(row)
                problems = shape.check_row(values)
                if problems:
                    raise ValueError(f"Row rejected by {table}: {'; '.join(problems)}")
                full = {field_id: values.get(field_id) for field_id in shape.field_ids}
                staged.append((shape.key_of(full), full))

            async with self._lock:
                table_rows = self._rows[table]
                for key, values in staged:
                    table_rows[key] = values
            return len(staged)

    async def delete(self, table: str, key: RowKey) -> bool:
        with self._tracer.span("tablemigrate.store.delete", {ATTR_TABLE: table}):
            async with self._lock:
                return self._table_rows(table).pop(tuple(key), None) is not None

    async def all_rows(self, table: str) -> list[Row]:
        """
        Get every row of a table, ordered by key.

        Useful for comparing whole-table state in tests.
        """
        async with self._lock:
            table_rows = self._table_rows(table)
            return [Row(table_rows[key]) for key in sorted(table_rows, key=repr)]

    def _require_shape(self, table: str) -> TableShape:
        shape = self._shapes.get(table)
        if shape is None:
            raise UnknownTableError(table)
        return shape

    def _table_rows(self, table: str) -> dict[RowKey, dict[str, Any]]:
        rows = self._rows.get(table)
        if rows is None:
            raise UnknownTableError(table)
        return rows


__all__ = ["InMemoryTableStore"]
