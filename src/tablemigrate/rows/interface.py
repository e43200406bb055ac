"""
Storage collaborator protocol.

The engine talks to record storage only through TableStore. Implementations
must provide upsert semantics keyed by the table's key fields, and each
``upsert`` call must be atomic: either every row in the call is written or
none is.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Sequence
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from tablemigrate.rows.query import RowFilter
    from tablemigrate.rows.row import Row
    from tablemigrate.rows.schema import RowKey, TableShape


@runtime_checkable
class TableStore(Protocol):
    """
    Protocol for tabular record storage.

    Key Design Decisions:
        - ``upsert()`` inserts or replaces whole rows, keyed by TableShape.key
        - ``find()`` streams rows; callers must not assume any order
        - Filters are passed through unmodified; a store may push simple
          conditions down to its query language and must evaluate the
          predicate part in Python

    Example:
        >>> store: TableStore = InMemoryTableStore()
        >>> await store.create_table(customers_shape)
        >>> await store.upsert("customers", [Row(id=1, name="Ada")])
        >>> async for row in store.find("customers", RowFilter.where(Filter.eq("id", 1))):
        ...     print(row["name"])
    """

    async def get_shape(self, table: str) -> TableShape | None:
        """
        Get the shape of a table.

        Returns:
            The table's shape, or None if the table does not exist
        """
        ...

    async def get(self, table: str, key: RowKey) -> Row | None:
        """
        Get a single row by key.

        Raises:
            UnknownTableError: If the table does not exist
        """
        ...

    def find(
        self, table: str, row_filter: RowFilter | None = None
    ) -> AsyncGenerator[Row, None]:
        """
        Stream rows matching a filter.

        Implemented as an async generator; callers that stop early close it
        with ``contextlib.aclosing`` so the underlying cursor is released.

        Raises:
            UnknownTableError: If the table does not exist
        """
        ...

    async def count(self, table: str, row_filter: RowFilter | None = None) -> int:
        """Count rows matching a filter."""
        ...

    async def upsert(self, table: str, rows: Sequence[Row]) -> int:
        """
        Insert or replace rows atomically.

        Returns:
            Number of rows written
        """
        ...

    async def delete(self, table: str, key: RowKey) -> bool:
        """
        Delete a row by key.

        Returns:
            True if a row was deleted, False if it did not exist
        """
        ...


__all__ = ["TableStore"]
