"""
Field mapping data structures.

Mappings are declared as rule specs (``direct``, ``constant``,
``transform``) and compiled against a source and target TableShape into a
CompiledMapping. Only compiled mappings can be applied to rows.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from tablemigrate.exceptions import RowTransformError
from tablemigrate.rows.row import Row
from tablemigrate.rows.schema import FieldType, TableShape, convert_value


class MappingKind(Enum):
    """How a target field gets its value."""

    DIRECT = "direct"
    CONSTANT = "constant"
    TRANSFORM = "transform"


@dataclass(frozen=True)
class RuleSpec:
    """
    An uncompiled mapping rule.

    Use the ``direct``, ``constant`` and ``transform`` helpers rather than
    building these by hand.
    """

    kind: MappingKind
    target: str
    source: str | None = None
    value: Any = None
    transform_name: str | None = None

    def __str__(self) -> str:
        if self.kind is MappingKind.CONSTANT:
            return f"constant({self.target}={self.value!r})"
        if self.kind is MappingKind.TRANSFORM:
            return f"transform({self.source} -> {self.target} via {self.transform_name})"
        return f"direct({self.source} -> {self.target})"


def direct(source: str, target: str) -> RuleSpec:
    """Copy ``source`` into ``target``, applying a lossless conversion if the types differ."""
    return RuleSpec(kind=MappingKind.DIRECT, source=source, target=target)


def constant(target: str, value: Any) -> RuleSpec:
    """Set ``target`` to a fixed value on every row."""
    return RuleSpec(kind=MappingKind.CONSTANT, target=target, value=value)


def transform(source: str, target: str, name: str) -> RuleSpec:
    """Compute ``target`` from ``source`` with the registered transform ``name``."""
    return RuleSpec(kind=MappingKind.TRANSFORM, source=source, target=target, transform_name=name)


@dataclass(frozen=True)
class RegisteredTransform:
    """
    A named, typed value transform.

    Attributes:
        name: Registry name
        func: Callable taking one value of ``input_type``
        input_type: Declared type of the value the transform accepts
        output_type: Declared type of the value the transform returns
    """

    name: str
    func: Callable[[Any], Any] = field(compare=False)
    input_type: FieldType
    output_type: FieldType

    def __call__(self, value: Any) -> Any:
        return self.func(value)


@dataclass(frozen=True)
class FieldMapping:
    """
    A compiled, type-checked mapping for one target field.

    Attributes:
        source_field_id: Source field (None for constants)
        target_field_id: Target field
        kind: Mapping kind
        constant: Value for CONSTANT mappings
        transform: Transform for TRANSFORM mappings
        source_type: Type of the source field (None for constants)
        target_type: Type of the target field
    """

    source_field_id: str | None
    target_field_id: str
    kind: MappingKind
    target_type: FieldType
    target_nullable: bool = True
    source_type: FieldType | None = None
    constant: Any = None
    transform: RegisteredTransform | None = None

    def produce(self, row: Row) -> Any:
        """
        Compute this field's value for a source row.

        None source values pass through without calling the transform.

        Raises:
            RowTransformError: If the value cannot be produced
        """
        if self.kind is MappingKind.CONSTANT:
            return self.constant

        assert self.source_field_id is not None and self.source_type is not None
        value = row.get(self.source_field_id)
        if value is None:
            if not self.target_nullable:
                raise RowTransformError(
                    self.target_field_id,
                    f"source field {self.source_field_id!r} is null but target is not nullable",
                )
            return None

        if self.kind is MappingKind.DIRECT:
            try:
                return convert_value(value, self.source_type, self.target_type)
            except (TypeError, ValueError, ArithmeticError) as e:
                raise RowTransformError(self.target_field_id, str(e)) from e

        assert self.transform is not None
        try:
            argument = convert_value(value, self.source_type, self.transform.input_type)
            result = self.transform(argument)
        except Exception as e:
            raise RowTransformError(
                self.target_field_id,
                f"transform {self.transform.name!r} failed: {type(e).__name__}: {e}",
            ) from e
        if result is None:
            if not self.target_nullable:
                raise RowTransformError(
                    self.target_field_id,
                    f"transform {self.transform.name!r} returned None for a non-nullable field",
                )
            return None
        if not self.transform.output_type.accepts(result):
            raise RowTransformError(
                self.target_field_id,
                f"transform {self.transform.name!r} returned {type(result).__name__}, "
                f"expected {self.transform.output_type.value}",
            )
        return convert_value(result, self.transform.output_type, self.target_type)


@dataclass(frozen=True)
class CompiledMapping:
    """
    A validated mapping from a source table shape to a target table shape.

    Target fields without a mapping are nullable (the compiler guarantees
    it) and are set to None.

    Example:
        >>> mapping = compiler.compile(src, tgt, [direct("x", "x"), constant("y", "MIGRATED")])
        >>> mapping.apply(Row(id=1, x="a"))
        Row({'id': 1, 'x': 'a', 'y': 'MIGRATED'})
    """

    source_shape: TableShape
    target_shape: TableShape
    mappings: tuple[FieldMapping, ...]

    @property
    def target_fields(self) -> tuple[str, ...]:
        return tuple(m.target_field_id for m in self.mappings)

    def apply(self, row: Row) -> Row:
        """
        Build the target row for a source row.

        Raises:
            RowTransformError: If any mapped field cannot be produced
        """
        values: dict[str, Any] = dict.fromkeys(self.target_shape.field_ids)
        for mapping in self.mappings:
            value = mapping.produce(row)
            if value is not None and not mapping.target_type.accepts(value):
                raise RowTransformError(
                    mapping.target_field_id,
                    f"expected {mapping.target_type.value}, got {type(value).__name__} {value!r}",
                )
            values[mapping.target_field_id] = value
        return Row(values)


__all__ = [
    "MappingKind",
    "RuleSpec",
    "direct",
    "constant",
    "transform",
    "RegisteredTransform",
    "FieldMapping",
    "CompiledMapping",
]
