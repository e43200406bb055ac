"""
Row filters.

A RowFilter is the opaque predicate the engine hands to a TableStore's
``find`` and ``count``. It combines simple field conditions (Filter), which
SQL backends translate into WHERE clauses, with an optional Python predicate
that every backend evaluates row by row.

The engine never inspects a filter; it only passes it through and
combines it with extra conditions via ``RowFilter.and_``.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal

if TYPE_CHECKING:
    from tablemigrate.rows.row import Row

FilterOperator = Literal["eq", "ne", "gt", "gte", "lt", "lte", "in", "not_in", "is_null"]


@dataclass(frozen=True)
class Filter:
    """
    A single field condition.

    Attributes:
        field: Field id to test
        operator: Comparison operator
        value: Value to compare against (a list for in/not_in, a bool for is_null)

    Example:
        >>> Filter.eq("status", "active")
        Filter(field='status', operator='eq', value='active')
        >>> Filter.in_("region", ["EU", "US"])
        Filter(field='region', operator='in', value=['EU', 'US'])
    """

    field: str
    operator: FilterOperator
    value: Any

    @classmethod
    def eq(cls, field: str, value: Any) -> Filter:
        """Create an equality filter (field = value)."""
        return cls(field=field, operator="eq", value=value)

    @classmethod
    def ne(cls, field: str, value: Any) -> Filter:
        """Create a not-equal filter (field != value)."""
        return cls(field=field, operator="ne", value=value)

    @classmethod
    def gt(cls, field: str, value: Any) -> Filter:
        return cls(field=field, operator="gt", value=value)

    @classmethod
    def gte(cls, field: str, value: Any) -> Filter:
        return cls(field=field, operator="gte", value=value)

    @classmethod
    def lt(cls, field: str, value: Any) -> Filter:
        return cls(field=field, operator="lt", value=value)

    @classmethod
    def lte(cls, field: str, value: Any) -> Filter:
        return cls(field=field, operator="lte", value=value)

    @classmethod
    def in_(cls, field: str, values: list[Any]) -> Filter:
        """Create an "in list" filter (field IN (values))."""
        return cls(field=field, operator="in", value=list(values))

    @classmethod
    def not_in(cls, field: str, values: list[Any]) -> Filter:
        """Create a "not in list" filter (field NOT IN (values))."""
        return cls(field=field, operator="not_in", value=list(values))

    @classmethod
    def is_null(cls, field: str, is_null: bool = True) -> Filter:
        """Create a null check (field IS NULL, or IS NOT NULL when ``is_null`` is False)."""
        return cls(field=field, operator="is_null", value=is_null)

    def matches(self, row: Row) -> bool:
        """
        Evaluate the condition against a row.

        Comparisons against None (other than eq/ne/is_null) never match,
        mirroring SQL NULL semantics.
        """
        actual = row.get(self.field)
        op = self.operator
        if op == "is_null":
            return (actual is None) == bool(self.value)
        if op == "eq":
            return actual == self.value
        if op == "ne":
            return actual != self.value
        if op == "in":
            return actual in self.value
        if op == "not_in":
            return actual not in self.value
        if actual is None:
            return False
        if op == "gt":
            return bool(actual > self.value)
        if op == "gte":
            return bool(actual >= self.value)
        if op == "lt":
            return bool(actual < self.value)
        if op == "lte":
            return bool(actual <= self.value)
        raise ValueError(f"Unsupported filter operator: {op}")

    def __str__(self) -> str:
        op_symbols = {
            "eq": "=",
            "ne": "!=",
            "gt": ">",
            "gte": ">=",
            "lt": "<",
            "lte": "<=",
            "in": "IN",
            "not_in": "NOT IN",
        }
        if self.operator == "is_null":
            return f"{self.field} IS {'' if self.value else 'NOT '}NULL"
        return f"{self.field} {op_symbols[self.operator]} {self.value!r}"


@dataclass(frozen=True)
class RowFilter:
    """
    Conjunction of field conditions plus an optional Python predicate.

    An empty RowFilter matches every row.

    Attributes:
        conditions: Field conditions, all of which must hold
        predicate: Optional callable evaluated per row after the conditions
        description: Human-readable label used in logs and reports

    Example:
        >>> active_eu = RowFilter.where(
        ...     Filter.eq("status", "active"),
        ...     Filter.eq("region", "EU"),
        ... )
        >>> not_b = RowFilter.from_predicate(lambda row: row["code"] != "B", "code != B")
    """

    conditions: tuple[Filter, ...] = ()
    predicate: Callable[[Row], bool] | None = field(default=None, compare=False)
    description: str | None = None

    @classmethod
    def where(cls, *conditions: Filter) -> RowFilter:
        return cls(conditions=tuple(conditions))

    @classmethod
    def from_predicate(
        cls,
        predicate: Callable[[Row], bool],
        description: str | None = None,
    ) -> RowFilter:
        return cls(predicate=predicate, description=description)

    @property
    def is_empty(self) -> bool:
        return not self.conditions and self.predicate is None

    def matches(self, row: Row) -> bool:
        """Evaluate every condition and the predicate against a row."""
        if not all(condition.matches(row) for condition in self.conditions):
            return False
        return self.predicate is None or bool(self.predicate(row))

    def and_(self, *conditions: Filter) -> RowFilter:
        """Return a new filter with extra conditions; the predicate is kept."""
        return RowFilter(
            conditions=self.conditions + tuple(conditions),
            predicate=self.predicate,
            description=self.description,
        )

    def __str__(self) -> str:
        parts = [str(c) for c in self.conditions]
        if self.predicate is not None:
            parts.append(self.description or "<predicate>")
        return " AND ".join(parts) if parts else "<all rows>"


MATCH_ALL = RowFilter()
"""Filter that matches every row."""


__all__ = [
    "FilterOperator",
    "Filter",
    "RowFilter",
    "MATCH_ALL",
]
