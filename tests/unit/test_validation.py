"""
Unit tests for ValidationGate and the built-in rules.
"""

from __future__ import annotations

import pytest

from tablemigrate.mapping import direct
from tablemigrate.phases import MigrationPhase, RunContext, TransferPhaseKind
from tablemigrate.repositories import TagScope
from tablemigrate.rows import Filter, InMemoryTableStore, Row, RowFilter
from tablemigrate.transfer import TransferResult
from tablemigrate.validation import (
    GateResult,
    ValidationGate,
    ValidationInput,
    ValidationRule,
    ValidationSeverity,
    ValidationStage,
    no_duplicate_keys,
    row_count_parity,
    source_count_at_most,
    target_table_exists,
)


def make_phase(*rules: ValidationRule, phase_id: str = "p1") -> MigrationPhase:
    return MigrationPhase(
        id=phase_id,
        name="copy customers",
        order=1,
        kind=TransferPhaseKind("customers", "customers_v2", rules=(direct("id", "id"),)),
        rules=rules,
    )


@pytest.fixture
def ctx(populated_store: InMemoryTableStore) -> RunContext:
    return RunContext(scope=TagScope.tenant("acme"), store=populated_store)


@pytest.fixture
def gate(populated_store: InMemoryTableStore) -> ValidationGate:
    return ValidationGate(populated_store, enable_tracing=False)


def rule(
    name: str,
    predicate,
    *,
    stage: ValidationStage = ValidationStage.PRE,
    severity: ValidationSeverity = ValidationSeverity.BLOCKING,
    phase_id: str | None = None,
) -> ValidationRule:
    return ValidationRule(name, predicate, stage=stage, severity=severity, phase_id=phase_id)


class TestValidationGate:
    """Tests for running rules through the gate."""

    @pytest.mark.asyncio
    async def test_no_rules_passes(self, gate: ValidationGate, ctx: RunContext) -> None:
        result = await gate.run_pre(make_phase(), ctx)

        assert result == GateResult(passed=True)

    @pytest.mark.asyncio
    async def test_blocking_failure(self, gate: ValidationGate, ctx: RunContext) -> None:
        phase = make_phase(rule("always_false", lambda data: False))

        result = await gate.run_pre(phase, ctx)

        assert not result.passed
        assert result.failures[0].rule_name == "always_false"
        assert result.failures[0].message == "failed"
        assert result.failures[0].stage is ValidationStage.PRE

    @pytest.mark.asyncio
    async def test_warning_does_not_block(self, gate: ValidationGate, ctx: RunContext) -> None:
        phase = make_phase(
            rule(
                "soft",
                lambda data: (False, "looks odd"),
                severity=ValidationSeverity.WARNING,
            )
        )

        result = await gate.run_pre(phase, ctx)

        assert result.passed
        assert result.failures == ()
        assert result.warnings[0].message == "looks odd"

    @pytest.mark.asyncio
    async def test_raising_predicate_counts_as_failure(
        self, gate: ValidationGate, ctx: RunContext
    ) -> None:
        def explode(data: ValidationInput) -> bool:
            raise KeyError("missing")

        result = await gate.run_pre(make_phase(rule("explode", explode)), ctx)

        assert not result.passed
        assert result.failures[0].message.startswith("KeyError")

    @pytest.mark.asyncio
    async def test_async_predicate(self, gate: ValidationGate, ctx: RunContext) -> None:
        async def has_rows(data: ValidationInput) -> bool:
            return await data.store.count("customers") > 0

        result = await gate.run_pre(make_phase(rule("has_rows", has_rows)), ctx)

        assert result.passed

    @pytest.mark.asyncio
    async def test_stages_are_separate(self, gate: ValidationGate, ctx: RunContext) -> None:
        phase = make_phase(rule("post_only", lambda data: False, stage=ValidationStage.POST))

        pre = await gate.run_pre(phase, ctx)
        post = await gate.run_post(phase, ctx, TransferResult(copied=3))

        assert pre.passed
        assert not post.passed

    @pytest.mark.asyncio
    async def test_post_rules_see_transfer_result(
        self, gate: ValidationGate, ctx: RunContext
    ) -> None:
        phase = make_phase(
            rule(
                "nothing_skipped",
                lambda data: data.transfer_result.skipped == 0,
                stage=ValidationStage.POST,
            )
        )

        result = await gate.run_post(phase, ctx, TransferResult(copied=2, skipped=1))

        assert not result.passed

    @pytest.mark.asyncio
    async def test_gate_rules_filtered_by_phase(
        self, populated_store: InMemoryTableStore, ctx: RunContext
    ) -> None:
        gate = ValidationGate(
            populated_store,
            [rule("only_p2", lambda data: False, phase_id="p2")],
            enable_tracing=False,
        )
        gate.add_rule(rule("everyone", lambda data: True))

        assert (await gate.run_pre(make_phase(phase_id="p1"), ctx)).passed
        assert not (await gate.run_pre(make_phase(phase_id="p2"), ctx)).passed

    def test_phase_rules_run_first(self, gate: ValidationGate) -> None:
        gate.add_rule(rule("gate_rule", lambda data: True))
        phase = make_phase(rule("phase_rule", lambda data: True))

        names = [r.name for r in gate.rules_for(phase, ValidationStage.PRE)]

        assert names == ["phase_rule", "gate_rule"]

    @pytest.mark.asyncio
    async def test_result_to_dict(self, gate: ValidationGate, ctx: RunContext) -> None:
        result = await gate.run_pre(make_phase(rule("no", lambda data: False)), ctx)

        data = result.to_dict()

        assert data["passed"] is False
        assert data["failures"][0]["severity"] == "blocking"
        assert data["failures"][0]["stage"] == "pre"


class TestBuiltInRules:
    """Tests for the bundled rule factories."""

    @pytest.mark.asyncio
    async def test_source_count_at_most(self, gate: ValidationGate, ctx: RunContext) -> None:
        within = await gate.run_pre(make_phase(source_count_at_most("customers", 25)), ctx)
        over = await gate.run_pre(make_phase(source_count_at_most("customers", 24)), ctx)

        assert within.passed
        assert not over.passed
        assert over.failures[0].message == "customers has 25 row(s), limit is 24"

    @pytest.mark.asyncio
    async def test_source_count_with_filter(self, gate: ValidationGate, ctx: RunContext) -> None:
        small = RowFilter.where(Filter.lte("id", 3))

        result = await gate.run_pre(make_phase(source_count_at_most("customers", 3, small)), ctx)

        assert result.passed

    @pytest.mark.asyncio
    async def test_target_table_exists(self, gate: ValidationGate, ctx: RunContext) -> None:
        exists = await gate.run_pre(make_phase(target_table_exists("customers_v2")), ctx)
        missing = await gate.run_pre(make_phase(target_table_exists("nope")), ctx)

        assert exists.passed
        assert missing.failures[0].message == "table nope does not exist"

    @pytest.mark.asyncio
    async def test_row_count_parity(
        self, gate: ValidationGate, ctx: RunContext, populated_store: InMemoryTableStore
    ) -> None:
        phase = make_phase(row_count_parity("customers", "customers_v2"))

        before = await gate.run_post(phase, ctx, TransferResult())
        await populated_store.upsert(
            "customers_v2", [Row(id=i, y="MIGRATED") for i in range(1, 26)]
        )
        after = await gate.run_post(phase, ctx, TransferResult(copied=25))

        assert not before.passed
        assert "customers_v2 has 0" in before.failures[0].message
        assert after.passed

    @pytest.mark.asyncio
    async def test_no_duplicate_keys(self, gate: ValidationGate, ctx: RunContext) -> None:
        phase = make_phase(no_duplicate_keys("customers", ["tenant_id"]))
        unique = make_phase(no_duplicate_keys("customers", ["code"]))

        duplicated = await gate.run_post(phase, ctx, TransferResult())
        distinct = await gate.run_post(unique, ctx, TransferResult())

        assert not duplicated.passed
        assert "24 duplicate(s)" in duplicated.failures[0].message
        assert distinct.passed

    @pytest.mark.asyncio
    async def test_no_duplicate_keys_unknown_table(
        self, gate: ValidationGate, ctx: RunContext
    ) -> None:
        result = await gate.run_post(
            make_phase(no_duplicate_keys("nope", ["id"])), ctx, TransferResult()
        )

        assert result.failures[0].message.startswith("UnknownTableError")

    def test_no_duplicate_keys_requires_fields(self) -> None:
        with pytest.raises(ValueError):
            no_duplicate_keys("customers", [])
