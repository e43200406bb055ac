"""
Table shapes and field types.

A TableShape describes the fields of a table and which of them form the row
identity (the key). The mapping compiler validates mappings against shapes,
and storage backends use them to encode values and generate DDL.

Field types know three things about their values:
    - which Python values they accept (``FieldType.accepts``)
    - which other types they convert to without loss (``LOSSLESS_CONVERSIONS``)
    - how values are encoded for text-based storage (``to_storage`` /
      ``from_storage``)

Example:
    >>> customers = TableShape(
    ...     "customers",
    ...     [
    ...         FieldSpec("id", FieldType.INTEGER, nullable=False),
    ...         FieldSpec("name", FieldType.TEXT),
    ...         FieldSpec("credit_limit", FieldType.DECIMAL),
    ...     ],
    ...     key=("id",),
    ... )
    >>> customers.key_of({"id": 7, "name": "Ada"})
    (7,)
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, date, datetime, time
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any
from uuid import UUID

RowKey = tuple[Any, ...]
"""Identity of a row within its table: the values of its key fields, in order."""


class FieldType(Enum):
    """Logical type of a table field."""

    TEXT = "text"
    INTEGER = "integer"
    FLOAT = "float"
    DECIMAL = "decimal"
    BOOLEAN = "boolean"
    DATE = "date"
    DATETIME = "datetime"
    UUID = "uuid"
    JSON = "json"

    def accepts(self, value: Any) -> bool:
        """
        Check whether a (non-None) Python value is a valid value of this type.

        bool is rejected for numeric types and datetime is rejected for DATE,
        even though Python treats them as subclasses.
        """
        if self is FieldType.TEXT:
            return isinstance(value, str)
        if self is FieldType.BOOLEAN:
            return isinstance(value, bool)
        if isinstance(value, bool):
            return False
        if self is FieldType.INTEGER:
            return isinstance(value, int)
        if self is FieldType.FLOAT:
            return isinstance(value, int | float)
        if self is FieldType.DECIMAL:
            return isinstance(value, int | Decimal)
        if self is FieldType.DATE:
            return isinstance(value, date) and not isinstance(value, datetime)
        if self is FieldType.DATETIME:
            return isinstance(value, datetime)
        if self is FieldType.UUID:
            return isinstance(value, UUID)
        return isinstance(value, dict | list)

    def can_convert_to(self, target: FieldType) -> bool:
        """Check whether values of this type convert to ``target`` without loss."""
        return target is self or target in LOSSLESS_CONVERSIONS[self]

    def to_storage(self, value: Any) -> Any:
        """Encode a value for text-oriented storage (SQLite columns, JSON documents)."""
        if value is None:
            return None
        if self is FieldType.DECIMAL:
            return str(value)
        if self is FieldType.BOOLEAN:
            return 1 if value else 0
        if self in (FieldType.DATE, FieldType.DATETIME):
            return value.isoformat()
        if self is FieldType.UUID:
            return str(value)
        if self is FieldType.JSON:
            return json.dumps(value, sort_keys=True)
        return value

    def from_storage(self, value: Any) -> Any:
        """
        Decode a stored value back to its Python type.

        Values that are already of the right type pass through unchanged, so
        this is safe for backends that return native types.

        Raises:
            ValueError: If the stored value cannot be decoded
        """
        if value is None or self.accepts(value):
            if self is FieldType.DECIMAL and isinstance(value, int):
                return Decimal(value)
            if self is FieldType.FLOAT and isinstance(value, int):
                return float(value)
            return value
        try:
            if self is FieldType.DECIMAL:
                return Decimal(str(value))
            if self is FieldType.BOOLEAN:
                return bool(int(value))
            if self is FieldType.DATE:
                return date.fromisoformat(value)
            if self is FieldType.DATETIME:
                return datetime.fromisoformat(value)
            if self is FieldType.UUID:
                return UUID(str(value))
            if self is FieldType.JSON:
                return json.loads(value)
            if self is FieldType.INTEGER:
                return int(value)
            if self is FieldType.FLOAT:
                return float(value)
        except (TypeError, ValueError, InvalidOperation) as e:
            raise ValueError(f"Cannot decode {value!r} as {self.value}: {e}") from e
        raise ValueError(f"Cannot decode {value!r} as {self.value}")


LOSSLESS_CONVERSIONS: dict[FieldType, frozenset[FieldType]] = {
    FieldType.TEXT: frozenset(),
    FieldType.INTEGER: frozenset({FieldType.DECIMAL, FieldType.TEXT}),
    FieldType.FLOAT: frozenset({FieldType.TEXT}),
    FieldType.DECIMAL: frozenset({FieldType.TEXT}),
    FieldType.BOOLEAN: frozenset({FieldType.INTEGER, FieldType.TEXT}),
    FieldType.DATE: frozenset({FieldType.DATETIME, FieldType.TEXT}),
    FieldType.DATETIME: frozenset({FieldType.TEXT}),
    FieldType.UUID: frozenset({FieldType.TEXT}),
    FieldType.JSON: frozenset({FieldType.TEXT}),
}
"""Conversions a DIRECT mapping may apply implicitly (identity is always allowed)."""


def convert_value(value: Any, source: FieldType, target: FieldType) -> Any:
    """
    Convert a value between two field types along a lossless conversion.

    Args:
        value: Value of type ``source`` (or None)
        source: Field type of the value
        target: Field type to produce

    Returns:
        The converted value

    Raises:
        ValueError: If the conversion is not lossless
    """
    if value is None or source is target:
        return value
    if not source.can_convert_to(target):
        raise ValueError(f"No lossless conversion from {source.value} to {target.value}")
    if target is FieldType.TEXT:
        if source is FieldType.JSON:
            return json.dumps(value, sort_keys=True)
        if source in (FieldType.DATE, FieldType.DATETIME):
            return value.isoformat()
        if source is FieldType.FLOAT:
            return repr(float(value))
        return str(value)
    if target is FieldType.DECIMAL:
        return Decimal(value)
    if target is FieldType.INTEGER:
        return int(value)
    # DATE -> DATETIME
    return datetime.combine(value, time.min, tzinfo=UTC)


@dataclass(frozen=True)
class FieldSpec:
    """
    Definition of a single field in a table shape.

    Attributes:
        field_id: Field (column) name
        type: Logical field type
        nullable: Whether the field may hold None
    """

    field_id: str
    type: FieldType
    nullable: bool = True

    def check(self, value: Any) -> str | None:
        """Return a description of why ``value`` is invalid, or None if it is valid."""
        if value is None:
            return None if self.nullable else f"{self.field_id} is not nullable"
        if not self.type.accepts(value):
            return (
                f"{self.field_id} expects {self.type.value}, "
                f"got {type(value).__name__} {value!r}"
            )
        return None


@dataclass(frozen=True)
class TableShape:
    """
    Field layout and row identity of a table.

    Attributes:
        name: Table name
        fields: Ordered field definitions
        key: Field ids that identify a row (upserts are keyed on these)
    """

    name: str
    fields: tuple[FieldSpec, ...]
    key: tuple[str, ...]

    def __post_init__(self) -> None:
        """Normalize sequences to tuples and validate shape consistency."""
        object.__setattr__(self, "fields", tuple(self.fields))
        key = (self.key,) if isinstance(self.key, str) else tuple(self.key)
        object.__setattr__(self, "key", key)
        if not self.name:
            raise ValueError("Table name must not be empty")
        seen: set[str] = set()
        for spec in self.fields:
            if spec.field_id in seen:
                raise ValueError(f"Duplicate field {spec.field_id!r} in table {self.name}")
            seen.add(spec.field_id)
        if not self.key:
            raise ValueError(f"Table {self.name} must declare at least one key field")
        for key_field in self.key:
            if key_field not in seen:
                raise ValueError(f"Key field {key_field!r} is not a field of table {self.name}")

    @property
    def field_ids(self) -> tuple[str, ...]:
        return tuple(spec.field_id for spec in self.fields)

    def field(self, field_id: str) -> FieldSpec | None:
        """Look up a field definition by id."""
        for spec in self.fields:
            if spec.field_id == field_id:
                return spec
        return None

    def has_field(self, field_id: str) -> bool:
        return self.field(field_id) is not None

    def key_of(self, values: Mapping[str, Any]) -> RowKey:
        """
        Extract the row key from a row or mapping.

        Raises:
            KeyError: If a key field is missing
        """
        return tuple(values[key_field] for key_field in self.key)

    def check_row(self, values: Mapping[str, Any]) -> list[str]:
        """
        Check a row against this shape.

        Returns:
            Problems found (empty when the row is valid)
        """
        problems = []
        for spec in self.fields:
            problem = spec.check(values.get(spec.field_id))
            if problem:
                problems.append(problem)
        for field_id in values:
            if not self.has_field(field_id):
                problems.append(f"{field_id} is not a field of {self.name}")
        return problems

    def encode(self, values: Mapping[str, Any]) -> dict[str, Any]:
        """Encode a row's values for text-oriented storage."""
        encoded = {}
        for field_id, value in values.items():
            spec = self.field(field_id)
            encoded[field_id] = spec.type.to_storage(value) if spec else value
        return encoded

    def decode(self, values: Mapping[str, Any]) -> dict[str, Any]:
        """Decode stored values back to their Python types."""
        decoded = {}
        for field_id, value in values.items():
            spec = self.field(field_id)
            decoded[field_id] = spec.type.from_storage(value) if spec else value
        return decoded

    def decode_key(self, key: Iterable[Any]) -> RowKey:
        """Decode a stored key (e.g. a JSON list) back to a typed RowKey."""
        values = tuple(key)
        if len(values) != len(self.key):
            raise ValueError(f"Key {values!r} does not match key fields {self.key}")
        return tuple(
            self.field(key_field).type.from_storage(value)  # type: ignore[union-attr]
            for key_field, value in zip(self.key, values, strict=True)
        )


__all__ = [
    "RowKey",
    "FieldType",
    "FieldSpec",
    "TableShape",
    "LOSSLESS_CONVERSIONS",
    "convert_value",
]
