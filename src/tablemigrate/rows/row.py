"""
Generic tabular record.

A Row is a mutable mapping of field id to value. It carries no schema of its
own; TableShape supplies types and identity when needed.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping, MutableMapping
from typing import Any


class Row(MutableMapping[str, Any]):
    """
    A single record, addressed by field id.

    Example:
        >>> row = Row({"id": 1, "name": "Ada"})
        >>> row.get("name")
        'Ada'
        >>> row.set("grade", "A")
        >>> row.to_dict()
        {'id': 1, 'name': 'Ada', 'grade': 'A'}
    """

    __slots__ = ("_values",)

    def __init__(self, values: Mapping[str, Any] | None = None, **fields: Any) -> None:
        self._values: dict[str, Any] = dict(values or {})
        self._values.update(fields)

    def __getitem__(self, field_id: str) -> Any:
        return self._values[field_id]

    def __setitem__(self, field_id: str, value: Any) -> None:
        self._values[field_id] = value

    def __delitem__(self, field_id: str) -> None:
        del self._values[field_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Row):
            return self._values == other._values
        if isinstance(other, Mapping):
            return self._values == dict(other)
        return NotImplemented

    def __repr__(self) -> str:
        return f"Row({self._values!r})"

    def set(self, field_id: str, value: Any) -> None:
        """Set a field value."""
        self._values[field_id] = value

    def to_dict(self) -> dict[str, Any]:
        """Return a shallow copy of the row's values."""
        return dict(self._values)

    def copy(self) -> Row:
        return Row(self._values)


__all__ = ["Row"]
