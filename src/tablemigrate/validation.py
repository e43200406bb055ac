"""
Validation gates run before and after a phase's transfer.

A rule pairs a predicate with a stage (PRE or POST) and a severity. A
BLOCKING failure aborts the phase; a WARNING failure is logged and
reported but lets the phase continue. A predicate that raises counts as a
failure of its rule, carrying the exception message.

Predicates receive a ValidationInput and return either a bool or a
``(bool, message)`` tuple. They may be plain functions or coroutines.

Example:
    >>> gate = ValidationGate(store)
    >>> phase = MigrationPhase(
    ...     id="50100-CustomerGrade-20250120",
    ...     name="Customer grades",
    ...     order=1,
    ...     kind=TransferPhaseKind(...),
    ...     rules=(
    ...         target_table_exists("customers_v2"),
    ...         row_count_parity("customers", "customers_v2", severity=ValidationSeverity.WARNING),
    ...     ),
    ... )
    >>> result = await gate.run_pre(phase, ctx)
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from tablemigrate.exceptions import UnknownTableError
from tablemigrate.observability import Tracer, create_tracer
from tablemigrate.observability.attributes import (
    ATTR_PHASE_ID,
    ATTR_RULE_COUNT,
    ATTR_VALIDATION_STAGE,
)
from tablemigrate.rows.interface import TableStore
from tablemigrate.rows.query import RowFilter

if TYPE_CHECKING:
    from tablemigrate.phases import MigrationPhase, RunContext
    from tablemigrate.transfer import TransferResult

logger = logging.getLogger(__name__)


class ValidationStage(Enum):
    """When a rule runs relative to the transfer."""

    PRE = "pre"
    POST = "post"


class ValidationSeverity(Enum):
    """Effect of a failed rule on its phase."""

    BLOCKING = "blocking"
    WARNING = "warning"


@dataclass(frozen=True)
class ValidationInput:
    """
    What a predicate gets to look at.

    Attributes:
        phase: Phase being validated
        ctx: Run context (scope, run id, shared state)
        store: Table store the phase operates on
        transfer_result: Outcome of the transfer (POST stage only)
    """

    phase: MigrationPhase
    ctx: RunContext
    store: TableStore
    transfer_result: TransferResult | None = None


PredicateResult = bool | tuple[bool, str]
Predicate = Callable[[ValidationInput], PredicateResult | Awaitable[PredicateResult]]


@dataclass(frozen=True)
class ValidationRule:
    """
    A named check attached to a phase.

    Attributes:
        name: Rule name used in reports
        predicate: The check itself
        stage: PRE (before snapshot and transfer) or POST (after transfer)
        severity: BLOCKING aborts the phase, WARNING only reports
        phase_id: Restricts a gate-level rule to one phase (None for all)
    """

    name: str
    predicate: Predicate = field(compare=False)
    stage: ValidationStage = ValidationStage.PRE
    severity: ValidationSeverity = ValidationSeverity.BLOCKING
    phase_id: str | None = None

    def applies_to(self, phase_id: str, stage: ValidationStage) -> bool:
        return self.stage is stage and (self.phase_id is None or self.phase_id == phase_id)


@dataclass(frozen=True)
class ValidationFailure:
    """A rule that did not pass. This is a record, not an exception."""

    rule_name: str
    phase_id: str
    stage: ValidationStage
    severity: ValidationSeverity
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule_name": self.rule_name,
            "phase_id": self.phase_id,
            "stage": self.stage.value,
            "severity": self.severity.value,
            "message": self.message,
        }


@dataclass(frozen=True)
class GateResult:
    """
    Outcome of running one stage of rules.

    Attributes:
        passed: True when no BLOCKING rule failed
        failures: Failed BLOCKING rules
        warnings: Failed WARNING rules
    """

    passed: bool
    failures: tuple[ValidationFailure, ...] = ()
    warnings: tuple[ValidationFailure, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "failures": [f.to_dict() for f in self.failures],
            "warnings": [w.to_dict() for w in self.warnings],
        }


class ValidationGate:
    """
    Runs validation rules for a phase.

    Rules come from the phase itself (``MigrationPhase.rules``) and from
    the gate (``rules`` / ``add_rule``). Gate-level rules with a
    ``phase_id`` apply only to that phase.
    """

    def __init__(
        self,
        store: TableStore,
        rules: Iterable[ValidationRule] = (),
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._store = store
        self._rules: list[ValidationRule] = list(rules)

    def add_rule(self, rule: ValidationRule) -> None:
        """Add a gate-level rule."""
        self._rules.append(rule)

    def rules_for(self, phase: MigrationPhase, stage: ValidationStage) -> list[ValidationRule]:
        """Rules that run for a phase at a stage, phase rules first."""
        return [
            rule
            for rule in (*phase.rules, *self._rules)
            if rule.applies_to(phase.id, stage)
        ]

    async def run_pre(self, phase: MigrationPhase, ctx: RunContext) -> GateResult:
        """Run PRE rules. Called before any snapshot or row mutation."""
        return await self._run(ValidationStage.PRE, ValidationInput(phase, ctx, self._store))

    async def run_post(
        self,
        phase: MigrationPhase,
        ctx: RunContext,
        transfer_result: TransferResult,
    ) -> GateResult:
        """Run POST rules against the outcome of the transfer."""
        return await self._run(
            ValidationStage.POST,
            ValidationInput(phase, ctx, self._store, transfer_result),
        )

    async def _run(self, stage: ValidationStage, data: ValidationInput) -> GateResult:
        rules = self.rules_for(data.phase, stage)
        with self._tracer.span(
            "tablemigrate.validation.run",
            {
                ATTR_PHASE_ID: data.phase.id,
                ATTR_VALIDATION_STAGE: stage.value,
                ATTR_RULE_COUNT: len(rules),
            },
        ):
            failures: list[ValidationFailure] = []
            warnings: list[ValidationFailure] = []
            for rule in rules:
                ok, message = await self._evaluate(rule, data)
                if ok:
                    continue
                failure = ValidationFailure(
                    rule_name=rule.name,
                    phase_id=data.phase.id,
                    stage=stage,
                    severity=rule.severity,
                    message=message,
                )
                if rule.severity is ValidationSeverity.WARNING:
                    logger.warning(
                        "Validation warning for phase %s (%s): %s: %s",
                        data.phase.id,
                        stage.value,
                        rule.name,
                        message,
                    )
                    warnings.append(failure)
                else:
                    logger.error(
                        "Validation failed for phase %s (%s): %s: %s",
                        data.phase.id,
                        stage.value,
                        rule.name,
                        message,
                    )
                    failures.append(failure)
            return GateResult(
                passed=not failures,
                failures=tuple(failures),
                warnings=tuple(warnings),
            )

    @staticmethod
    async def _evaluate(rule: ValidationRule, data: ValidationInput) -> tuple[bool, str]:
        try:
            outcome = rule.predicate(data)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except Exception as e:
            return False, f"{type(e).__name__}: {e}"

        if isinstance(outcome, tuple):
            ok, message = outcome
            return bool(ok), message or ("passed" if ok else "failed")
        return bool(outcome), "passed" if outcome else "failed"


# Built-in rules


def source_count_at_most(
    table: str,
    limit: int,
    row_filter: RowFilter | None = None,
    *,
    stage: ValidationStage = ValidationStage.PRE,
    severity: ValidationSeverity = ValidationSeverity.BLOCKING,
) -> ValidationRule:
    """Fail when ``table`` holds more than ``limit`` matching rows."""

    async def predicate(data: ValidationInput) -> tuple[bool, str]:
        count = await data.store.count(table, row_filter)
        return count <= limit, f"{table} has {count} row(s), limit is {limit}"

    return ValidationRule(
        name=f"source_count_at_most({table}, {limit})",
        predicate=predicate,
        stage=stage,
        severity=severity,
    )


def target_table_exists(
    table: str,
    *,
    stage: ValidationStage = ValidationStage.PRE,
    severity: ValidationSeverity = ValidationSeverity.BLOCKING,
) -> ValidationRule:
    """Fail when the store does not hold ``table``."""

    async def predicate(data: ValidationInput) -> tuple[bool, str]:
        shape = await data.store.get_shape(table)
        if shape is None:
            return False, f"table {table} does not exist"
        return True, f"table {table} exists"

    return ValidationRule(
        name=f"target_table_exists({table})",
        predicate=predicate,
        stage=stage,
        severity=severity,
    )


def row_count_parity(
    source_table: str,
    target_table: str,
    source_filter: RowFilter | None = None,
    target_filter: RowFilter | None = None,
    *,
    stage: ValidationStage = ValidationStage.POST,
    severity: ValidationSeverity = ValidationSeverity.BLOCKING,
) -> ValidationRule:
    """Fail when the filtered row counts of two tables differ."""

    async def predicate(data: ValidationInput) -> tuple[bool, str]:
        source_count = await data.store.count(source_table, source_filter)
        target_count = await data.store.count(target_table, target_filter)
        return (
            source_count == target_count,
            f"{source_table} has {source_count} row(s), {target_table} has {target_count}",
        )

    return ValidationRule(
        name=f"row_count_parity({source_table}, {target_table})",
        predicate=predicate,
        stage=stage,
        severity=severity,
    )


def no_duplicate_keys(
    table: str,
    fields: Sequence[str],
    *,
    stage: ValidationStage = ValidationStage.POST,
    severity: ValidationSeverity = ValidationSeverity.BLOCKING,
) -> ValidationRule:
    """
    Fail when two rows of ``table`` share the same values for ``fields``.

    Useful for natural keys that are not the table's primary key.
    """
    field_ids = tuple(fields)
    if not field_ids:
        raise ValueError("no_duplicate_keys requires at least one field")

    async def predicate(data: ValidationInput) -> tuple[bool, str]:
        shape = await data.store.get_shape(table)
        if shape is None:
            raise UnknownTableError(table)
        seen: set[tuple[Any, ...]] = set()
        duplicates: list[tuple[Any, ...]] = []
        async for row in data.store.find(table):
            values = tuple(row.get(f) for f in field_ids)
            if values in seen:
                duplicates.append(values)
            seen.add(values)
        if duplicates:
            shown = ", ".join(repr(d) for d in duplicates[:5])
            return False, f"{len(duplicates)} duplicate(s) of {field_ids} in {table}: {shown}"
        return True, f"no duplicates of {field_ids} in {table}"

    return ValidationRule(
        name=f"no_duplicate_keys({table}, {', '.join(field_ids)})",
        predicate=predicate,
        stage=stage,
        severity=severity,
    )


__all__ = [
    "ValidationStage",
    "ValidationSeverity",
    "ValidationInput",
    "ValidationRule",
    "ValidationFailure",
    "GateResult",
    "ValidationGate",
    "source_count_at_most",
    "target_table_exists",
    "row_count_parity",
    "no_duplicate_keys",
]
