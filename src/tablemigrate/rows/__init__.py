"""
Row abstraction and storage backends.

The engine depends only on Row, TableShape, RowFilter and the TableStore
protocol. Three stores ship with the library:

    InMemoryTableStore: Tests and small datasets
    SQLiteTableStore: Embedded use (requires aiosqlite)
    PostgreSQLTableStore: Production use (SQLAlchemy async)

Example:
    >>> from tablemigrate.rows import (
    ...     FieldSpec, FieldType, Filter, InMemoryTableStore, Row, RowFilter, TableShape,
    ... )
    >>> shape = TableShape(
    ...     "customers",
    ...     [FieldSpec("id", FieldType.INTEGER, nullable=False), FieldSpec("name", FieldType.TEXT)],
    ...     key=("id",),
    ... )
    >>> store = InMemoryTableStore([shape])
    >>> await store.upsert("customers", [Row(id=1, name="Ada")])
    >>> async for row in store.find("customers", RowFilter.where(Filter.eq("name", "Ada"))):
    ...     print(row["id"])
"""

from tablemigrate.rows.in_memory import InMemoryTableStore
from tablemigrate.rows.interface import TableStore
from tablemigrate.rows.postgresql import PostgreSQLTableStore
from tablemigrate.rows.query import MATCH_ALL, Filter, RowFilter
from tablemigrate.rows.row import Row
from tablemigrate.rows.schema import (
    LOSSLESS_CONVERSIONS,
    FieldSpec,
    FieldType,
    RowKey,
    TableShape,
    convert_value,
)
from tablemigrate.rows.sqlite import SQLiteTableStore

__all__ = [
    "Row",
    "RowKey",
    "FieldType",
    "FieldSpec",
    "TableShape",
    "LOSSLESS_CONVERSIONS",
    "convert_value",
    "Filter",
    "RowFilter",
    "MATCH_ALL",
    "TableStore",
    "InMemoryTableStore",
    "SQLiteTableStore",
    "PostgreSQLTableStore",
]
