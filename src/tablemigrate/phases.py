"""
Phase definitions, phase kinds and the per-run context.

A MigrationPhase is one idempotent unit of migration work. Its ``id`` is
the ledger tag that marks it done. What the phase actually does is
delegated to a PhaseKind:

    TransferPhaseKind: copy rows through a compiled field mapping
    DeletePhaseKind: remove the rows matching a filter
    CallablePhaseKind: run a user coroutine that returns the keys it touched

Every kind answers three questions for the orchestrator:

    validate: is the definition sound? (before any row is touched)
    affected_keys: which target rows will change? (snapshot input)
    transfer: do the work

State machine transitions (PhaseState):
    PENDING -> SKIPPED (tag already in the ledger)
    PENDING -> VALIDATING -> [SNAPSHOTTING ->] TRANSFERRING -> POST_VALIDATING -> COMMITTED
                   |               |               |                  |
                   +-> FAILED      +-> FAILED      +-> ROLLING_BACK -> FAILED
    POST_VALIDATING -> SKIPPED (another run committed the tag first)
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from tablemigrate.config import EngineConfig, RowErrorPolicy
from tablemigrate.exceptions import PhaseDefinitionError, RowTransformError
from tablemigrate.mapping.compiler import MappingCompiler
from tablemigrate.mapping.models import CompiledMapping, RuleSpec
from tablemigrate.repositories.ledger import TagScope
from tablemigrate.rows.interface import TableStore
from tablemigrate.rows.query import MATCH_ALL, Filter, RowFilter
from tablemigrate.rows.schema import RowKey, TableShape
from tablemigrate.transfer import (
    BatchTransferExecutor,
    TransferJob,
    TransferProgress,
    TransferResult,
)
from tablemigrate.validation import ValidationRule

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[TransferProgress], None]


class PhaseState(Enum):
    """
    Lifecycle state of a phase within one run.

    Attributes:
        PENDING: Not started (or not reached)
        VALIDATING: Running PRE validation rules
        SNAPSHOTTING: Capturing before-images for rollback
        TRANSFERRING: Mutating rows
        POST_VALIDATING: Running POST validation rules
        COMMITTED: Tag committed to the ledger
        ROLLING_BACK: Restoring the snapshot after a failure
        FAILED: Phase failed (rows restored if a snapshot existed)
        SKIPPED: Tag was already committed; no rows were written
    """

    PENDING = "pending"
    VALIDATING = "validating"
    SNAPSHOTTING = "snapshotting"
    TRANSFERRING = "transferring"
    POST_VALIDATING = "post_validating"
    COMMITTED = "committed"
    ROLLING_BACK = "rolling_back"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        """COMMITTED, FAILED and SKIPPED are final."""
        return self in (PhaseState.COMMITTED, PhaseState.FAILED, PhaseState.SKIPPED)

    @property
    def is_success(self) -> bool:
        return self in (PhaseState.COMMITTED, PhaseState.SKIPPED)

    def can_transition_to(self, target: PhaseState) -> bool:
        """
        Check if transition to target state is valid.

        Args:
            target: The state to transition to.

        Returns:
            True if the transition is valid.
        """
        if self.is_terminal:
            return False
        return target in _VALID_TRANSITIONS.get(self, ())


_VALID_TRANSITIONS: dict[PhaseState, tuple[PhaseState, ...]] = {
    PhaseState.PENDING: (PhaseState.VALIDATING, PhaseState.SKIPPED, PhaseState.FAILED),
    PhaseState.VALIDATING: (
        PhaseState.SNAPSHOTTING,
        PhaseState.TRANSFERRING,
        PhaseState.FAILED,
    ),
    PhaseState.SNAPSHOTTING: (PhaseState.TRANSFERRING, PhaseState.FAILED),
    PhaseState.TRANSFERRING: (
        PhaseState.POST_VALIDATING,
        PhaseState.ROLLING_BACK,
        PhaseState.FAILED,
    ),
    PhaseState.POST_VALIDATING: (
        PhaseState.COMMITTED,
        PhaseState.SKIPPED,
        PhaseState.ROLLING_BACK,
        PhaseState.FAILED,
    ),
    PhaseState.ROLLING_BACK: (PhaseState.FAILED,),
}


@dataclass
class RunContext:
    """
    Mutable state of one run, shared by the orchestrator, the phase kinds
    and validation predicates.

    Attributes:
        run_id: Unique run identifier
        scope: Ledger scope of the run
        store: Table store the run operates on
        config: Engine configuration
        started_at: When the run started
        mappings: Compiled mappings by phase id
        state: Free-form values phases and predicates may share
    """

    scope: TagScope
    store: TableStore
    config: EngineConfig = field(default_factory=EngineConfig)
    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    mappings: dict[str, CompiledMapping] = field(default_factory=dict)
    state: dict[str, Any] = field(default_factory=dict)
    _cancelled: bool = field(default=False, init=False, repr=False)

    @property
    def tenant_id(self) -> str | None:
        return self.scope.tenant_id

    def cancel(self) -> None:
        """Request cancellation. Observed between batches and between phases."""
        if not self._cancelled:
            self._cancelled = True
            logger.info("Cancellation requested for run %s", self.run_id)

    def is_cancelled(self) -> bool:
        return self._cancelled


@runtime_checkable
class PhaseKind(Protocol):
    """Strategy implementing what a phase does."""

    @property
    def target_table(self) -> str:
        """Table whose rows the phase mutates (and the snapshot captures)."""
        ...

    @property
    def captures_whole_table(self) -> bool:
        """Whether ``affected_keys`` lists every row of the target table."""
        ...

    async def validate(
        self,
        phase: MigrationPhase,
        store: TableStore,
        compiler: MappingCompiler,
    ) -> CompiledMapping | None:
        """
        Check the definition against the store before any row is touched.

        Returns:
            The compiled mapping, for kinds that have one

        Raises:
            PhaseDefinitionError: If the definition cannot run
            CompileError: If a mapping does not compile
        """
        ...

    async def affected_keys(self, phase: MigrationPhase, ctx: RunContext) -> list[RowKey]:
        """Keys of the target rows the phase will write or delete."""
        ...

    async def transfer(
        self,
        phase: MigrationPhase,
        ctx: RunContext,
        executor: BatchTransferExecutor,
        progress_callback: ProgressCallback | None = None,
    ) -> TransferResult:
        """Do the work."""
        ...


def _scoped_filter(
    base: RowFilter,
    scope_field: str | None,
    shape: TableShape,
    ctx: RunContext,
) -> RowFilter:
    """Restrict ``base`` to the run's tenant when a scope field is configured."""
    if scope_field is None or ctx.tenant_id is None:
        return base
    spec = shape.field(scope_field)
    value = spec.type.from_storage(ctx.tenant_id) if spec is not None else ctx.tenant_id
    return base.and_(Filter.eq(scope_field, value))


async def _require_shape(store: TableStore, table: str, phase: MigrationPhase) -> TableShape:
    shape = await store.get_shape(table)
    if shape is None:
        raise PhaseDefinitionError([f"{phase.id}: table {table!r} does not exist"])
    return shape


def _check_scope_field(shape: TableShape, scope_field: str | None, phase: MigrationPhase) -> None:
    if scope_field is not None and not shape.has_field(scope_field):
        raise PhaseDefinitionError(
            [f"{phase.id}: scope field {scope_field!r} is not a field of {shape.name}"]
        )


@dataclass(frozen=True)
class TransferPhaseKind:
    """
    Copy rows from one table to another through a field mapping.

    Attributes:
        source_table: Table rows are read from
        target_table: Table rows are upserted into
        rules: Mapping rules (``direct``, ``constant``, ``transform``)
        filter: Restricts which source rows are copied
        scope_field: Source field holding the tenant id; per-tenant runs
            copy only rows whose value matches the run's tenant
        batch_size: Overrides EngineConfig.batch_size

    Example:
        >>> kind = TransferPhaseKind(
        ...     "customers",
        ...     "customers_v2",
        ...     rules=(direct("id", "id"), direct("x", "x"), constant("y", "MIGRATED")),
        ...     filter=RowFilter.where(Filter.ne("name", "B")),
        ... )
    """

    source_table: str
    target_table: str
    rules: Sequence[RuleSpec]
    filter: RowFilter = MATCH_ALL
    scope_field: str | None = None
    batch_size: int | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "rules", tuple(self.rules))

    @property
    def captures_whole_table(self) -> bool:
        return False

    async def validate(
        self,
        phase: MigrationPhase,
        store: TableStore,
        compiler: MappingCompiler,
    ) -> CompiledMapping:
        source_shape = await _require_shape(store, self.source_table, phase)
        target_shape = await _require_shape(store, self.target_table, phase)
        _check_scope_field(source_shape, self.scope_field, phase)
        return compiler.compile(source_shape, target_shape, self.rules, phase_id=phase.id)

    def job(self, phase: MigrationPhase, ctx: RunContext) -> TransferJob:
        """Build the transfer job for this run."""
        mapping = ctx.mappings[phase.id]
        return TransferJob(
            source_table=self.source_table,
            target_table=self.target_table,
            mapping=mapping,
            filter=_scoped_filter(self.filter, self.scope_field, mapping.source_shape, ctx),
            batch_size=self.batch_size or ctx.config.batch_size,
        )

    async def affected_keys(self, phase: MigrationPhase, ctx: RunContext) -> list[RowKey]:
        job = self.job(phase, ctx)
        target_shape = job.mapping.target_shape
        keys: list[RowKey] = []
        async for row in ctx.store.find(job.source_table, job.filter):
            try:
                keys.append(target_shape.key_of(job.mapping.apply(row)))
            except RowTransformError:
                continue
        return keys

    async def transfer(
        self,
        phase: MigrationPhase,
        ctx: RunContext,
        executor: BatchTransferExecutor,
        progress_callback: ProgressCallback | None = None,
    ) -> TransferResult:
        return await executor.execute(
            self.job(phase, ctx),
            row_error_policy=phase.row_error_policy,
            cancel_check=ctx.is_cancelled,
            progress_callback=progress_callback,
        )


@dataclass(frozen=True)
class DeletePhaseKind:
    """
    Delete the rows of a table that match a filter.

    ``rows_transferred`` in the phase result counts deleted rows.
    """

    table: str
    filter: RowFilter = MATCH_ALL
    scope_field: str | None = None
    batch_size: int | None = None

    @property
    def target_table(self) -> str:
        return self.table

    @property
    def captures_whole_table(self) -> bool:
        return False

    async def validate(
        self,
        phase: MigrationPhase,
        store: TableStore,
        compiler: MappingCompiler,
    ) -> None:
        shape = await _require_shape(store, self.table, phase)
        _check_scope_field(shape, self.scope_field, phase)
        return None

    async def affected_keys(self, phase: MigrationPhase, ctx: RunContext) -> list[RowKey]:
        shape = await _require_shape(ctx.store, self.table, phase)
        row_filter = _scoped_filter(self.filter, self.scope_field, shape, ctx)
        return [shape.key_of(row) async for row in ctx.store.find(self.table, row_filter)]

    async def transfer(
        self,
        phase: MigrationPhase,
        ctx: RunContext,
        executor: BatchTransferExecutor,
        progress_callback: ProgressCallback | None = None,
    ) -> TransferResult:
        start_time = time.monotonic()
        keys = await self.affected_keys(phase, ctx)
        batch_size = self.batch_size or ctx.config.batch_size
        result = TransferResult()

        for start in range(0, len(keys), batch_size):
            for key in keys[start : start + batch_size]:
                if await ctx.store.delete(self.table, key):
                    result.copied += 1
            result.batches_written += 1
            if progress_callback is not None:
                elapsed = time.monotonic() - start_time
                progress_callback(
                    TransferProgress(
                        source_table=self.table,
                        target_table=self.table,
                        rows_read=min(start + batch_size, len(keys)),
                        rows_copied=result.copied,
                        rows_skipped=0,
                        batches_written=result.batches_written,
                        rows_per_second=result.copied / elapsed if elapsed > 0 else 0.0,
                        is_complete=start + batch_size >= len(keys),
                    )
                )
            if start + batch_size < len(keys) and ctx.is_cancelled():
                result.cancelled = True
                break

        result.duration_ms = (time.monotonic() - start_time) * 1000
        logger.info("Deleted %d row(s) from %s", result.copied, self.table)
        return result


KeysFunc = Callable[[RunContext], Awaitable[Iterable[RowKey]]]


@dataclass(frozen=True)
class CallablePhaseKind:
    """
    Run a user coroutine as the phase's work.

    ``func`` receives the run context (``ctx.store`` gives access to the
    tables) and returns the keys it touched. ``keys`` returns the keys it
    is about to touch, for the rollback snapshot. Without it the whole
    table is captured, and a restore also deletes any row the phase added.

    Example:
        >>> async def backfill_grades(ctx: RunContext) -> list[RowKey]:
        ...     ...
        >>> kind = CallablePhaseKind("customers_v2", backfill_grades)
    """

    table: str
    func: KeysFunc = field(compare=False)
    keys: KeysFunc | None = field(default=None, compare=False)

    @property
    def target_table(self) -> str:
        return self.table

    @property
    def captures_whole_table(self) -> bool:
        return self.keys is None

    async def validate(
        self,
        phase: MigrationPhase,
        store: TableStore,
        compiler: MappingCompiler,
    ) -> None:
        await _require_shape(store, self.table, phase)
        return None

    async def affected_keys(self, phase: MigrationPhase, ctx: RunContext) -> list[RowKey]:
        if self.keys is not None:
            return [tuple(key) for key in await self.keys(ctx)]
        shape = await _require_shape(ctx.store, self.table, phase)
        return [shape.key_of(row) async for row in ctx.store.find(self.table)]

    async def transfer(
        self,
        phase: MigrationPhase,
        ctx: RunContext,
        executor: BatchTransferExecutor,
        progress_callback: ProgressCallback | None = None,
    ) -> TransferResult:
        start_time = time.monotonic()
        touched = list(await self.func(ctx))
        return TransferResult(
            copied=len(touched),
            batches_written=1 if touched else 0,
            duration_ms=(time.monotonic() - start_time) * 1000,
        )


@dataclass(frozen=True)
class MigrationPhase:
    """
    One idempotent, ordered unit of migration work.

    Attributes:
        id: Ledger tag identifying the phase (see ``migration_tag``)
        name: Human-readable name
        order: Position in the run; phases run in increasing order
        kind: What the phase does
        depends_on: Phase ids that must be committed first
        rollback_required: Snapshot before mutating and restore on failure
        independent: A failure of this phase does not halt the run
        row_error_policy: Overrides EngineConfig.row_error_policy
        rules: Validation rules for this phase
    """

    id: str
    name: str
    order: int
    kind: PhaseKind
    depends_on: tuple[str, ...] = ()
    rollback_required: bool = False
    independent: bool = False
    row_error_policy: RowErrorPolicy | None = None
    rules: tuple[ValidationRule, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "depends_on", tuple(self.depends_on))
        object.__setattr__(self, "rules", tuple(self.rules))
        if not self.id:
            raise ValueError("Phase id must not be empty")
        if self.id in self.depends_on:
            raise ValueError(f"Phase {self.id} cannot depend on itself")


def check_phase_definitions(phases: Iterable[MigrationPhase]) -> list[MigrationPhase]:
    """
    Validate a set of phases and return them in execution order.

    Raises:
        PhaseDefinitionError: Listing every problem found
    """
    ordered = sorted(phases, key=lambda phase: phase.order)
    problems: list[str] = []
    by_id: dict[str, MigrationPhase] = {}
    orders: dict[int, str] = {}

    for phase in ordered:
        if phase.id in by_id:
            problems.append(f"duplicate phase id {phase.id!r}")
        else:
            by_id[phase.id] = phase
        if phase.order in orders:
            problems.append(
                f"phases {orders[phase.order]!r} and {phase.id!r} share order {phase.order}"
            )
        else:
            orders[phase.order] = phase.id

    for phase in ordered:
        for dependency in phase.depends_on:
            required = by_id.get(dependency)
            if required is None:
                problems.append(f"{phase.id!r} depends on unknown phase {dependency!r}")
            elif required.order >= phase.order:
                problems.append(
                    f"{phase.id!r} depends on {dependency!r}, which is not ordered before it"
                )

    if problems:
        raise PhaseDefinitionError(problems)
    return ordered


__all__ = [
    "PhaseState",
    "RunContext",
    "PhaseKind",
    "TransferPhaseKind",
    "DeletePhaseKind",
    "CallablePhaseKind",
    "MigrationPhase",
    "check_phase_definitions",
]
