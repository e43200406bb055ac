"""
Unit tests for MappingCompiler.

Tests for:
- Valid mappings of every kind
- Each violation the compiler reports
- Collecting all violations before raising
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from tablemigrate.exceptions import CompileError
from tablemigrate.mapping import (
    MappingCompiler,
    MappingKind,
    TransformRegistry,
    constant,
    default_registry,
    direct,
    transform,
)
from tablemigrate.rows import FieldSpec, FieldType, Row, TableShape
from tests.fixtures import CUSTOMERS, CUSTOMERS_V2, LEGACY_ORDERS, ORDERS


@pytest.fixture
def compiler(registry: TransformRegistry) -> MappingCompiler:
    registry.register("upper", str.upper, FieldType.TEXT, FieldType.TEXT)
    registry.register("parse_amount", Decimal, FieldType.TEXT, FieldType.DECIMAL)
    registry.register("double", lambda v: v * 2, FieldType.INTEGER, FieldType.INTEGER)
    return MappingCompiler(registry, enable_tracing=False)


def base_rules() -> list:
    return [direct("id", "id"), constant("y", "MIGRATED")]


class TestValidMappings:
    """Mappings the compiler accepts."""

    def test_direct_and_constant(self, compiler: MappingCompiler) -> None:
        mapping = compiler.compile(CUSTOMERS, CUSTOMERS_V2, [*base_rules(), direct("x", "x")])

        assert mapping.target_fields == ("id", "y", "x")
        assert [m.kind for m in mapping.mappings] == [
            MappingKind.DIRECT,
            MappingKind.CONSTANT,
            MappingKind.DIRECT,
        ]

    def test_lossless_direct_conversion(self, compiler: MappingCompiler) -> None:
        mapping = compiler.compile(
            CUSTOMERS, CUSTOMERS_V2, [*base_rules(), direct("credit", "credit")]
        )

        target = mapping.apply(Row(id=1, code="A", credit=15))

        assert target["credit"] == Decimal(15)
        assert isinstance(target["credit"], Decimal)

    def test_unmapped_nullable_target_is_none(self, compiler: MappingCompiler) -> None:
        mapping = compiler.compile(CUSTOMERS, CUSTOMERS_V2, base_rules())

        target = mapping.apply(Row(id=1, code="A", x="ignored"))

        assert target.to_dict() == {"id": 1, "x": None, "y": "MIGRATED", "credit": None}

    def test_transform_mapping(self, compiler: MappingCompiler) -> None:
        mapping = compiler.compile(
            LEGACY_ORDERS,
            ORDERS,
            [
                direct("order_no", "order_no"),
                direct("customer_id", "customer_id"),
                transform("amount", "amount", "parse_amount"),
            ],
        )

        target = mapping.apply(Row(order_no="O-1", customer_id=1, amount="12.25"))

        assert target["amount"] == Decimal("12.25")

    def test_transform_input_accepts_lossless_source(self, compiler: MappingCompiler) -> None:
        """An INTEGER source may feed a TEXT transform because INTEGER converts to TEXT."""
        mapping = compiler.compile(
            CUSTOMERS, CUSTOMERS_V2, [*base_rules(), transform("credit", "x", "upper")]
        )

        assert mapping.apply(Row(id=1, code="A", credit=7))["x"] == "7"

    def test_empty_rules_for_target_without_requirements(
        self, compiler: MappingCompiler
    ) -> None:
        shape = TableShape(
            "notes", [FieldSpec("id", FieldType.INTEGER), FieldSpec("note", FieldType.TEXT)], "id"
        )

        mapping = compiler.compile(CUSTOMERS, shape, [direct("id", "id")])

        assert mapping.apply(Row(id=4))["note"] is None


class TestViolations:
    """Each kind of violation is reported with the offending pair."""

    def test_incompatible_types_names_the_pair(self, compiler: MappingCompiler) -> None:
        with pytest.raises(CompileError) as exc_info:
            compiler.compile(
                LEGACY_ORDERS,
                ORDERS,
                [
                    direct("order_no", "order_no"),
                    direct("customer_id", "customer_id"),
                    direct("amount", "amount"),
                ],
            )

        error = exc_info.value
        assert error.involves("amount", "amount")
        assert "incompatible types: text cannot be converted to decimal" in str(error)

    def test_unknown_source_field(self, compiler: MappingCompiler) -> None:
        with pytest.raises(CompileError) as exc_info:
            compiler.compile(CUSTOMERS, CUSTOMERS_V2, [*base_rules(), direct("nope", "x")])

        assert exc_info.value.involves("nope", "x")
        assert "unknown source field" in str(exc_info.value)

    def test_unknown_target_field(self, compiler: MappingCompiler) -> None:
        with pytest.raises(CompileError, match="unknown target field"):
            compiler.compile(CUSTOMERS, CUSTOMERS_V2, [*base_rules(), direct("x", "nope")])

    def test_target_mapped_twice(self, compiler: MappingCompiler) -> None:
        with pytest.raises(CompileError, match="mapped more than once"):
            compiler.compile(
                CUSTOMERS, CUSTOMERS_V2, [*base_rules(), direct("x", "x"), direct("code", "x")]
            )

    def test_required_target_unmapped(self, compiler: MappingCompiler) -> None:
        with pytest.raises(CompileError) as exc_info:
            compiler.compile(CUSTOMERS, CUSTOMERS_V2, [direct("id", "id")])

        assert exc_info.value.involves(None, "y")
        assert "required but has no mapping" in str(exc_info.value)

    def test_constant_of_wrong_type(self, compiler: MappingCompiler) -> None:
        with pytest.raises(CompileError, match="is not a text value"):
            compiler.compile(CUSTOMERS, CUSTOMERS_V2, [direct("id", "id"), constant("y", 5)])

    def test_constant_none_for_non_nullable(self, compiler: MappingCompiler) -> None:
        with pytest.raises(CompileError, match="constant None"):
            compiler.compile(CUSTOMERS, CUSTOMERS_V2, [direct("id", "id"), constant("y", None)])

    def test_unknown_transform(self, compiler: MappingCompiler) -> None:
        with pytest.raises(CompileError, match="unknown transform 'missing'"):
            compiler.compile(
                CUSTOMERS, CUSTOMERS_V2, [*base_rules(), transform("x", "x", "missing")]
            )

    def test_transform_input_type_mismatch(self, compiler: MappingCompiler) -> None:
        with pytest.raises(CompileError, match="expects integer, source is text"):
            compiler.compile(
                CUSTOMERS, CUSTOMERS_V2, [*base_rules(), transform("x", "credit", "double")]
            )

    def test_transform_output_type_mismatch(self, compiler: MappingCompiler) -> None:
        with pytest.raises(CompileError, match="returns text, target is decimal"):
            compiler.compile(
                CUSTOMERS, CUSTOMERS_V2, [*base_rules(), transform("x", "credit", "upper")]
            )

    def test_all_violations_collected(self, compiler: MappingCompiler) -> None:
        with pytest.raises(CompileError) as exc_info:
            compiler.compile(
                CUSTOMERS,
                CUSTOMERS_V2,
                [direct("nope", "x"), direct("code", "credit"), constant("y", 1)],
            )

        # unknown source, incompatible types, wrong constant, missing key
        assert len(exc_info.value.violations) == 4

    def test_error_carries_phase_id(self, compiler: MappingCompiler) -> None:
        with pytest.raises(CompileError) as exc_info:
            compiler.compile(CUSTOMERS, CUSTOMERS_V2, [], phase_id="p1")

        assert exc_info.value.phase_id == "p1"
        assert exc_info.value.to_dict()["violations"]


class TestDefaultRegistry:
    """The compiler falls back to the default registry."""

    def test_uses_default_registry(self) -> None:
        assert MappingCompiler(enable_tracing=False).registry is default_registry
