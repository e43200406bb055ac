"""
Unit tests for TransformRegistry and row-level mapping behavior.
"""

from __future__ import annotations

import pytest

from tablemigrate.exceptions import (
    DuplicateTransformError,
    RowTransformError,
    TransformNotFoundError,
)
from tablemigrate.mapping import (
    FieldMapping,
    MappingKind,
    RegisteredTransform,
    TransformRegistry,
    constant,
    direct,
    register_transform,
    transform,
)
from tablemigrate.rows import FieldType, Row


class TestTransformRegistry:
    """Tests for TransformRegistry."""

    def test_register_and_get(self, registry: TransformRegistry) -> None:
        registry.register("upper", str.upper, FieldType.TEXT, FieldType.TEXT)

        registered = registry.get("upper")

        assert registered("abc") == "ABC"
        assert "upper" in registry
        assert len(registry) == 1

    def test_duplicate_registration_raises(self, registry: TransformRegistry) -> None:
        registry.register("upper", str.upper, FieldType.TEXT, FieldType.TEXT)

        with pytest.raises(DuplicateTransformError):
            registry.register("upper", str.lower, FieldType.TEXT, FieldType.TEXT)

        assert registry.get("upper")("a") == "A"

    def test_missing_transform_lists_available(self, registry: TransformRegistry) -> None:
        registry.register("b", str.upper, FieldType.TEXT, FieldType.TEXT)
        registry.register("a", str.upper, FieldType.TEXT, FieldType.TEXT)

        with pytest.raises(TransformNotFoundError) as exc_info:
            registry.get("c")

        assert exc_info.value.available == ["a", "b"]

    def test_empty_name_rejected(self, registry: TransformRegistry) -> None:
        with pytest.raises(ValueError):
            registry.register("", str.upper, FieldType.TEXT, FieldType.TEXT)

    def test_unregister_and_clear(self, registry: TransformRegistry) -> None:
        registry.register("a", str.upper, FieldType.TEXT, FieldType.TEXT)
        registry.register("b", str.upper, FieldType.TEXT, FieldType.TEXT)

        assert registry.unregister("a") is True
        assert registry.unregister("a") is False
        assert registry.list_names() == ["b"]

        registry.clear()
        assert len(registry) == 0
        assert registry.get_or_none("b") is None

    def test_empty_registry_is_truthy(self, registry: TransformRegistry) -> None:
        assert registry

    def test_decorator_registers_and_returns_function(
        self, registry: TransformRegistry
    ) -> None:
        @register_transform("grade", FieldType.INTEGER, FieldType.TEXT, registry=registry)
        def grade(score: int) -> str:
            return "A" if score >= 90 else "B"

        assert grade(95) == "A"
        assert registry.get("grade").output_type is FieldType.TEXT
        assert list(registry) == ["grade"]


class TestRuleSpecs:
    """Tests for the rule helper functions."""

    def test_direct(self) -> None:
        rule = direct("a", "b")
        assert rule.kind is MappingKind.DIRECT
        assert str(rule) == "direct(a -> b)"

    def test_constant(self) -> None:
        rule = constant("y", "MIGRATED")
        assert rule.source is None
        assert str(rule) == "constant(y='MIGRATED')"

    def test_transform(self) -> None:
        rule = transform("a", "b", "upper")
        assert rule.transform_name == "upper"
        assert str(rule) == "transform(a -> b via upper)"


class TestFieldMappingProduce:
    """Row-level failures become RowTransformError."""

    def _transform_mapping(self, func, *, nullable: bool = True) -> FieldMapping:
        return FieldMapping(
            source_field_id="score",
            target_field_id="grade",
            kind=MappingKind.TRANSFORM,
            source_type=FieldType.INTEGER,
            target_type=FieldType.TEXT,
            target_nullable=nullable,
            transform=RegisteredTransform("t", func, FieldType.INTEGER, FieldType.TEXT),
        )

    def test_none_source_skips_transform(self) -> None:
        calls: list[int] = []
        mapping = self._transform_mapping(lambda v: calls.append(v) or "x")

        assert mapping.produce(Row(score=None)) is None
        assert calls == []

    def test_none_source_for_non_nullable_target(self) -> None:
        mapping = self._transform_mapping(str, nullable=False)

        with pytest.raises(RowTransformError, match="is null but target is not nullable"):
            mapping.produce(Row(score=None))

    def test_transform_exception_is_wrapped(self) -> None:
        mapping = self._transform_mapping(lambda v: 1 / 0)

        with pytest.raises(RowTransformError) as exc_info:
            mapping.produce(Row(score=3))

        assert exc_info.value.target_field == "grade"
        assert "ZeroDivisionError" in str(exc_info.value)

    def test_transform_wrong_output_type(self) -> None:
        mapping = self._transform_mapping(lambda v: v * 2)

        with pytest.raises(RowTransformError, match="returned int, expected text"):
            mapping.produce(Row(score=3))

    def test_transform_none_result_for_non_nullable(self) -> None:
        mapping = self._transform_mapping(lambda v: None, nullable=False)

        with pytest.raises(RowTransformError, match="returned None"):
            mapping.produce(Row(score=3))
