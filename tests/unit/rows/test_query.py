"""
Unit tests for Filter and RowFilter.
"""

from __future__ import annotations

import pytest

from tablemigrate.rows import MATCH_ALL, Filter, Row, RowFilter


@pytest.fixture
def row() -> Row:
    return Row(id=3, code="C", region="EU", note=None)


class TestFilter:
    """Tests for single field conditions."""

    def test_eq_and_ne(self, row: Row) -> None:
        assert Filter.eq("code", "C").matches(row)
        assert not Filter.ne("code", "C").matches(row)

    def test_range_operators(self, row: Row) -> None:
        assert Filter.gt("id", 2).matches(row)
        assert Filter.gte("id", 3).matches(row)
        assert Filter.lt("id", 4).matches(row)
        assert not Filter.lte("id", 2).matches(row)

    def test_in_and_not_in(self, row: Row) -> None:
        assert Filter.in_("region", ["EU", "US"]).matches(row)
        assert not Filter.not_in("region", ["EU"]).matches(row)

    def test_is_null(self, row: Row) -> None:
        assert Filter.is_null("note").matches(row)
        assert Filter.is_null("code", is_null=False).matches(row)

    def test_range_against_null_does_not_match(self, row: Row) -> None:
        assert not Filter.gt("note", 1).matches(row)


class TestRowFilter:
    """Tests for RowFilter conjunctions and predicates."""

    def test_match_all(self, row: Row) -> None:
        assert MATCH_ALL.is_empty
        assert MATCH_ALL.matches(row)

    def test_where_requires_every_condition(self, row: Row) -> None:
        row_filter = RowFilter.where(Filter.eq("region", "EU"), Filter.eq("code", "X"))
        assert not row_filter.matches(row)

    def test_predicate_is_evaluated(self, row: Row) -> None:
        row_filter = RowFilter.from_predicate(lambda r: r["id"] % 2 == 1, "odd ids")
        assert row_filter.matches(row)
        assert str(row_filter) == "odd ids"

    def test_and_keeps_predicate(self, row: Row) -> None:
        row_filter = RowFilter.from_predicate(lambda r: True).and_(Filter.eq("code", "Z"))

        assert row_filter.predicate is not None
        assert len(row_filter.conditions) == 1
        assert not row_filter.matches(row)

    def test_str_of_empty_filter(self) -> None:
        assert str(MATCH_ALL) == "<all rows>"
