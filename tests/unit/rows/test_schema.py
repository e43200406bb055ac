"""
Unit tests for table shapes and field types.

Tests for:
- FieldType.accepts / can_convert_to
- to_storage / from_storage encoding
- convert_value lossless conversions
- TableShape validation, key extraction and row checks
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal
from uuid import uuid4

import pytest

from tablemigrate.rows import FieldSpec, FieldType, Row, TableShape, convert_value
from tests.fixtures import CUSTOMERS


class TestFieldTypeAccepts:
    """Tests for FieldType.accepts."""

    def test_text_accepts_str_only(self) -> None:
        assert FieldType.TEXT.accepts("abc")
        assert not FieldType.TEXT.accepts(1)

    def test_bool_is_not_an_integer(self) -> None:
        """bool is rejected by numeric types even though it subclasses int."""
        assert not FieldType.INTEGER.accepts(True)
        assert not FieldType.DECIMAL.accepts(False)
        assert FieldType.BOOLEAN.accepts(True)

    def test_datetime_is_not_a_date(self) -> None:
        assert FieldType.DATE.accepts(date(2025, 1, 20))
        assert not FieldType.DATE.accepts(datetime(2025, 1, 20, tzinfo=UTC))

    def test_decimal_accepts_int_and_decimal(self) -> None:
        assert FieldType.DECIMAL.accepts(Decimal("1.5"))
        assert FieldType.DECIMAL.accepts(3)
        assert not FieldType.DECIMAL.accepts(1.5)

    def test_json_accepts_dicts_and_lists(self) -> None:
        assert FieldType.JSON.accepts({"a": 1})
        assert FieldType.JSON.accepts([1, 2])
        assert not FieldType.JSON.accepts("{}")


class TestConversions:
    """Tests for lossless conversion rules."""

    @pytest.mark.parametrize(
        ("source", "target"),
        [
            (FieldType.INTEGER, FieldType.DECIMAL),
            (FieldType.INTEGER, FieldType.TEXT),
            (FieldType.BOOLEAN, FieldType.INTEGER),
            (FieldType.DATE, FieldType.DATETIME),
            (FieldType.UUID, FieldType.TEXT),
        ],
    )
    def test_lossless_pairs(self, source: FieldType, target: FieldType) -> None:
        assert source.can_convert_to(target)

    @pytest.mark.parametrize(
        ("source", "target"),
        [
            (FieldType.TEXT, FieldType.INTEGER),
            (FieldType.DECIMAL, FieldType.INTEGER),
            (FieldType.FLOAT, FieldType.DECIMAL),
            (FieldType.DATETIME, FieldType.DATE),
        ],
    )
    def test_lossy_pairs_are_rejected(self, source: FieldType, target: FieldType) -> None:
        assert not source.can_convert_to(target)

    def test_identity_is_always_allowed(self) -> None:
        for field_type in FieldType:
            assert field_type.can_convert_to(field_type)

    def test_convert_integer_to_decimal(self) -> None:
        assert convert_value(5, FieldType.INTEGER, FieldType.DECIMAL) == Decimal(5)

    def test_convert_date_to_datetime_is_midnight_utc(self) -> None:
        result = convert_value(date(2025, 1, 20), FieldType.DATE, FieldType.DATETIME)
        assert result == datetime(2025, 1, 20, tzinfo=UTC)

    def test_convert_none_passes_through(self) -> None:
        assert convert_value(None, FieldType.INTEGER, FieldType.TEXT) is None

    def test_convert_lossy_raises(self) -> None:
        with pytest.raises(ValueError, match="No lossless conversion"):
            convert_value("12", FieldType.TEXT, FieldType.INTEGER)


class TestStorageEncoding:
    """Tests for to_storage / from_storage."""

    @pytest.mark.parametrize(
        ("field_type", "value"),
        [
            (FieldType.DECIMAL, Decimal("12.50")),
            (FieldType.BOOLEAN, True),
            (FieldType.DATE, date(2025, 1, 20)),
            (FieldType.DATETIME, datetime(2025, 1, 20, 8, 30, tzinfo=UTC)),
            (FieldType.UUID, uuid4()),
            (FieldType.JSON, {"tier": "gold", "tags": [1, 2]}),
        ],
    )
    def test_values_survive_storage(self, field_type: FieldType, value: object) -> None:
        assert field_type.from_storage(field_type.to_storage(value)) == value

    def test_from_storage_passes_native_values_through(self) -> None:
        value = Decimal("1.25")
        assert FieldType.DECIMAL.from_storage(value) is value

    def test_from_storage_invalid_raises_value_error(self) -> None:
        with pytest.raises(ValueError, match="Cannot decode"):
            FieldType.INTEGER.from_storage("not-a-number")


class TestTableShape:
    """Tests for TableShape."""

    def test_key_of_extracts_key_in_order(self) -> None:
        assert CUSTOMERS.key_of(Row(id=7, code="A")) == (7,)

    def test_string_key_is_normalized(self) -> None:
        shape = TableShape("t", [FieldSpec("id", FieldType.INTEGER)], key="id")
        assert shape.key == ("id",)

    def test_duplicate_field_rejected(self) -> None:
        with pytest.raises(ValueError, match="Duplicate field"):
            TableShape(
                "t",
                [FieldSpec("id", FieldType.INTEGER), FieldSpec("id", FieldType.TEXT)],
                key=("id",),
            )

    def test_missing_key_rejected(self) -> None:
        with pytest.raises(ValueError, match="at least one key"):
            TableShape("t", [FieldSpec("id", FieldType.INTEGER)], key=())

    def test_unknown_key_field_rejected(self) -> None:
        with pytest.raises(ValueError, match="not a field"):
            TableShape("t", [FieldSpec("id", FieldType.INTEGER)], key=("other",))

    def test_check_row_reports_problems(self) -> None:
        problems = CUSTOMERS.check_row({"id": "seven", "code": None, "extra": 1})

        assert any("id expects integer" in p for p in problems)
        assert any("code is not nullable" in p for p in problems)
        assert any("extra is not a field" in p for p in problems)

    def test_check_row_valid(self) -> None:
        assert CUSTOMERS.check_row({"id": 1, "code": "A"}) == []

    def test_decode_key(self) -> None:
        assert CUSTOMERS.decode_key(["5"]) == (5,)

    def test_decode_key_wrong_length(self) -> None:
        with pytest.raises(ValueError, match="does not match"):
            CUSTOMERS.decode_key([1, 2])
