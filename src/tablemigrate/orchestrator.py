"""
PhaseOrchestrator - Runs migration phases in order for one scope.

The orchestrator owns the run: it creates the RunContext, compiles every
mapping before any row is touched and then drives each phase through its
state machine:

    ledger check -> dependencies -> PRE validation -> [snapshot] ->
    transfer -> POST validation -> commit tag

A phase whose tag is already in the ledger is SKIPPED without touching
rows. A failure after the snapshot restores it (ROLLING_BACK -> FAILED).
The run halts at the first FAILED phase unless that phase is independent.

Committing the tag is always the last action of a phase, so a crash at any
earlier point leaves the phase eligible to run again.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from typing import Any

from tablemigrate.config import EngineConfig
from tablemigrate.exceptions import (
    AlreadyCommittedError,
    CompileError,
    InvalidPhaseTransitionError,
    MigrationError,
    PhaseDefinitionError,
    RestoreError,
    TransferError,
    UnmetDependencyError,
)
from tablemigrate.mapping.compiler import MappingCompiler
from tablemigrate.metrics import MigrationMetrics
from tablemigrate.observability import Tracer, create_tracer
from tablemigrate.observability.attributes import (
    ATTR_PHASE_ID,
    ATTR_PHASE_STATE,
    ATTR_ROWS_COPIED,
    ATTR_RUN_ID,
    ATTR_SCOPE,
    ATTR_TENANT_ID,
)
from tablemigrate.phases import (
    MigrationPhase,
    PhaseState,
    ProgressCallback,
    RunContext,
    check_phase_definitions,
)
from tablemigrate.reporting import PhaseResult, ProgressReporter, RunReport
from tablemigrate.repositories.ledger import MigrationLedger, TagScope
from tablemigrate.repositories.snapshots import InMemorySnapshotStore, SnapshotStore
from tablemigrate.rollback import RollbackManager, RollbackSnapshot
from tablemigrate.rows.interface import TableStore
from tablemigrate.transfer import BatchTransferExecutor, TransferProgress, TransferResult
from tablemigrate.validation import GateResult, ValidationGate

logger = logging.getLogger(__name__)

BeforePhaseHook = Callable[[MigrationPhase, RunContext], None]
AfterPhaseHook = Callable[[MigrationPhase, RunContext, PhaseResult], None]


class PhaseOrchestrator:
    """
    Sequences migration phases for a tenant or for the whole system.

    Example:
        >>> orchestrator = PhaseOrchestrator(
        ...     [phase_1, phase_2],
        ...     store,
        ...     InMemoryMigrationLedger(),
        ... )
        >>> report = await orchestrator.run_per_scope("acme")
        >>> report.overall_success
        True

    Phase definitions are checked when the orchestrator is created; an
    invalid set raises PhaseDefinitionError immediately.
    """

    def __init__(
        self,
        phases: Iterable[MigrationPhase],
        store: TableStore,
        ledger: MigrationLedger,
        snapshot_store: SnapshotStore | None = None,
        *,
        config: EngineConfig | None = None,
        compiler: MappingCompiler | None = None,
        gate: ValidationGate | None = None,
        progress_callback: ProgressCallback | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            phases: Phases to run; executed in increasing ``order``
            store: Table store holding every table the phases touch
            ledger: Ledger recording committed phase tags
            snapshot_store: Where rollback snapshots are kept
                (defaults to an in-memory store)
            config: Engine configuration (defaults to EngineConfig())
            compiler: Mapping compiler (defaults to one over the default registry)
            gate: Validation gate for gate-level rules
            progress_callback: Called with every TransferProgress
            tracer: Optional custom Tracer instance
            enable_tracing: Whether to enable OpenTelemetry tracing.
                          Ignored if tracer is explicitly provided.

        Raises:
            PhaseDefinitionError: If the phases cannot form a valid run
        """
        self._config = config or EngineConfig()
        self._tracer = tracer or create_tracer(
            __name__, enable_tracing and self._config.enable_tracing
        )
        self._enable_tracing = self._tracer.enabled

        self._phases = check_phase_definitions(phases)
        self._store = store
        self._ledger = ledger
        self._snapshot_store = snapshot_store or InMemorySnapshotStore()
        self._compiler = compiler or MappingCompiler(tracer=self._tracer)
        self._gate = gate or ValidationGate(store, tracer=self._tracer)
        self._executor = BatchTransferExecutor(store, self._config, tracer=self._tracer)
        self._rollback = RollbackManager(store, self._snapshot_store, tracer=self._tracer)
        self._progress_callback = progress_callback

        self._before_hooks: list[BeforePhaseHook] = []
        self._after_hooks: list[AfterPhaseHook] = []
        self._reporters: list[ProgressReporter] = []
        self._active: dict[str, RunContext] = {}
        self._last_metrics: MigrationMetrics | None = None

    @property
    def phases(self) -> list[MigrationPhase]:
        """Phases in execution order."""
        return list(self._phases)

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def gate(self) -> ValidationGate:
        return self._gate

    @property
    def last_metrics(self) -> MigrationMetrics | None:
        """Metrics of the most recent run."""
        return self._last_metrics

    def add_before_phase(self, hook: BeforePhaseHook) -> None:
        """Register a callback invoked before each phase, in registration order."""
        self._before_hooks.append(hook)

    def add_after_phase(self, hook: AfterPhaseHook) -> None:
        """Register a callback invoked with each phase's result, in registration order."""
        self._after_hooks.append(hook)

    def add_reporter(self, reporter: ProgressReporter) -> None:
        self._reporters.append(reporter)

    def cancel(self) -> None:
        """
        Cancel every run in progress.

        Observed between batches and between phases. The current phase
        keeps the state it reached and its snapshot; nothing is rolled back.
        """
        for ctx in list(self._active.values()):
            ctx.cancel()

    async def plan(self) -> list[str]:
        """
        Validate every phase against the store without touching rows.

        Returns:
            Phase ids in execution order

        Raises:
            PhaseDefinitionError: If a phase references a missing table or field
            CompileError: If a mapping does not compile
        """
        for phase in self._phases:
            await phase.kind.validate(phase, self._store, self._compiler)
        return [phase.id for phase in self._phases]

    async def run_per_scope(self, tenant_id: str) -> RunReport:
        """Run every phase for one tenant."""
        return await self._run(TagScope.tenant(tenant_id))

    async def run_per_global(self) -> RunReport:
        """Run every phase once for the whole system."""
        return await self._run(TagScope.global_())

    async def rollback_phase(self, phase_id: str, scope: TagScope) -> RollbackSnapshot:
        """
        Restore the most recent kept snapshot of a phase.

        Used after a cancelled or interrupted run. The phase's tag is not
        committed in that case, so a later run executes the phase again.

        Returns:
            The restored snapshot

        Raises:
            SnapshotNotFoundError: If no snapshot is kept for the phase and scope
            RestoreError: If the restore fails
        """
        with self._tracer.span(
            "tablemigrate.orchestrator.rollback_phase",
            {ATTR_PHASE_ID: phase_id, ATTR_SCOPE: scope.key},
        ):
            snapshot = await self._rollback.load(phase_id, scope)
            await self._rollback.restore(snapshot)
            logger.info(
                "Rolled back phase %s for %s from snapshot %s",
                phase_id,
                scope.key,
                snapshot.snapshot_id,
            )
            return snapshot

    async def _run(self, scope: TagScope) -> RunReport:
        ctx = RunContext(scope=scope, store=self._store, config=self._config)
        metrics = MigrationMetrics(
            run_id=ctx.run_id,
            scope=scope.key,
            enable_metrics=self._config.enable_metrics,
        )
        self._last_metrics = metrics
        results = [PhaseResult(phase.id) for phase in self._phases]
        report = RunReport(run_id=ctx.run_id, scope=scope.key, phases_run=results)
        start_time = time.monotonic()

        self._active[ctx.run_id] = ctx
        try:
            with self._tracer.span(
                "tablemigrate.orchestrator.run",
                {
                    ATTR_RUN_ID: ctx.run_id,
                    ATTR_SCOPE: scope.key,
                    ATTR_TENANT_ID: scope.tenant_id or "",
                },
            ):
                logger.info(
                    "Starting run %s for %s with %d phase(s)",
                    ctx.run_id,
                    scope.key,
                    len(self._phases),
                )
                self._notify("on_run_started", ctx, self.phases)

                if await self._prepare(ctx, results, report):
                    await self._run_phases(ctx, results, report, metrics)
        finally:
            self._active.pop(ctx.run_id, None)

        report.restore_errors = [
            result.error for result in results if isinstance(result.error, RestoreError)
        ]
        report.overall_success = (
            report.error is None
            and not report.cancelled
            and all(result.succeeded for result in results)
        )
        report.duration_ms = int((time.monotonic() - start_time) * 1000)

        log = logger.info if report.overall_success else logger.warning
        log(
            "Run %s for %s finished: success=%s cancelled=%s",
            ctx.run_id,
            scope.key,
            report.overall_success,
            report.cancelled,
        )
        self._notify("on_run_finished", ctx, report)
        return report

    async def _prepare(
        self, ctx: RunContext, results: list[PhaseResult], report: RunReport
    ) -> bool:
        """
        Compile every mapping up front. Returns False if the run cannot start.

        Phases already committed for the scope are not checked; their tables
        may since have been dropped.
        """
        for phase, result in zip(self._phases, results, strict=True):
            if await self._ledger.has_tag(phase.id, ctx.scope):
                continue
            try:
                mapping = await phase.kind.validate(phase, self._store, self._compiler)
            except (CompileError, PhaseDefinitionError) as e:
                e.phase_id = e.phase_id or phase.id
                e.tenant_id = e.tenant_id or ctx.tenant_id
                result.error = e
                self._transition(ctx, phase, result, PhaseState.FAILED)
                report.error = e
                logger.error("Run %s cannot start: %s", ctx.run_id, e)
                return False
            if mapping is not None:
                ctx.mappings[phase.id] = mapping
        return True

    async def _run_phases(
        self,
        ctx: RunContext,
        results: list[PhaseResult],
        report: RunReport,
        metrics: MigrationMetrics,
    ) -> None:
        for index, phase in enumerate(self._phases):
            if ctx.is_cancelled():
                report.cancelled = True
                logger.warning("Run %s cancelled before phase %s", ctx.run_id, phase.id)
                return

            result = await self._run_phase(phase, ctx, metrics)
            results[index] = result

            if result.cancelled:
                report.cancelled = True
                return
            if result.status is PhaseState.FAILED:
                if phase.independent:
                    logger.warning(
                        "Independent phase %s failed; continuing run %s",
                        phase.id,
                        ctx.run_id,
                    )
                    continue
                logger.error("Run %s halted at phase %s", ctx.run_id, phase.id)
                return

    async def _run_phase(
        self, phase: MigrationPhase, ctx: RunContext, metrics: MigrationMetrics
    ) -> PhaseResult:
        result = PhaseResult(phase.id)
        for before in self._before_hooks:
            before(phase, ctx)

        with self._tracer.span(
            "tablemigrate.orchestrator.phase",
            {ATTR_PHASE_ID: phase.id, ATTR_RUN_ID: ctx.run_id, ATTR_SCOPE: ctx.scope.key},
        ) as span:
            with metrics.time_phase(phase.id) as timer:
                await self._execute_phase(phase, ctx, result, metrics)
            result.duration_ms = int(timer.duration_ms)
            if span is not None:
                span.set_attribute(ATTR_PHASE_STATE, result.status.value)
                span.set_attribute(ATTR_ROWS_COPIED, result.rows_transferred)

        metrics.record_phase_status(phase.id, result.status.value)
        for after in self._after_hooks:
            after(phase, ctx, result)
        self._notify("on_phase_finished", ctx, phase, result)
        return result

    async def _execute_phase(
        self,
        phase: MigrationPhase,
        ctx: RunContext,
        result: PhaseResult,
        metrics: MigrationMetrics,
    ) -> None:
        if await self._ledger.has_tag(phase.id, ctx.scope):
            self._transition(ctx, phase, result, PhaseState.SKIPPED)
            logger.info("Phase %s already committed for %s, skipping", phase.id, ctx.scope.key)
            return

        missing = [
            dependency
            for dependency in phase.depends_on
            if not await self._ledger.has_tag(dependency, ctx.scope)
        ]
        if missing:
            result.error = UnmetDependencyError(phase.id, missing, tenant_id=ctx.tenant_id)
            self._transition(ctx, phase, result, PhaseState.FAILED)
            logger.error("Phase %s cannot run: %s", phase.id, result.error)
            return

        self._transition(ctx, phase, result, PhaseState.VALIDATING)
        gate_result = await self._gate.run_pre(phase, ctx)
        self._record_gate(phase, result, gate_result, metrics)
        if not gate_result.passed:
            self._transition(ctx, phase, result, PhaseState.FAILED)
            return

        snapshot: RollbackSnapshot | None = None
        if phase.rollback_required:
            self._transition(ctx, phase, result, PhaseState.SNAPSHOTTING)
            try:
                keys = await phase.kind.affected_keys(phase, ctx)
                snapshot = await self._rollback.snapshot(
                    phase,
                    phase.kind.target_table,
                    keys,
                    ctx,
                    whole_table=phase.kind.captures_whole_table,
                )
            except Exception as e:
                result.error = self._as_migration_error(e, phase, ctx)
                self._transition(ctx, phase, result, PhaseState.FAILED)
                logger.error("Snapshot for phase %s failed: %s", phase.id, result.error)
                return

        self._transition(ctx, phase, result, PhaseState.TRANSFERRING)
        try:
            transfer = await phase.kind.transfer(
                phase, ctx, self._executor, progress_callback=self._progress_for(phase, ctx)
            )
        except Exception as e:
            error = self._as_migration_error(e, phase, ctx)
            if isinstance(error, TransferError) and error.partial_result is not None:
                self._record_transfer(phase, result, error.partial_result, metrics)
            result.error = error
            logger.error("Phase %s transfer failed: %s", phase.id, error)
            await self._fail(phase, ctx, result, snapshot, metrics)
            return

        self._record_transfer(phase, result, transfer, metrics)
        if transfer.cancelled:
            result.cancelled = True
            logger.warning(
                "Phase %s cancelled in %s after %d row(s)%s",
                phase.id,
                result.status.value,
                result.rows_transferred,
                f"; snapshot {snapshot.snapshot_id} kept" if snapshot is not None else "",
            )
            return

        self._transition(ctx, phase, result, PhaseState.POST_VALIDATING)
        gate_result = await self._gate.run_post(phase, ctx, transfer)
        self._record_gate(phase, result, gate_result, metrics)
        if not gate_result.passed:
            await self._fail(phase, ctx, result, snapshot, metrics)
            return

        try:
            await self._ledger.commit_tag(phase.id, ctx.scope, run_id=ctx.run_id)
        except AlreadyCommittedError:
            result.already_committed = True
            self._transition(ctx, phase, result, PhaseState.SKIPPED)
            logger.warning(
                "Phase %s was committed for %s by another run", phase.id, ctx.scope.key
            )
        except Exception as e:
            result.error = self._as_migration_error(e, phase, ctx)
            logger.error("Committing phase %s failed: %s", phase.id, result.error)
            await self._fail(phase, ctx, result, snapshot, metrics)
            return
        else:
            self._transition(ctx, phase, result, PhaseState.COMMITTED)
            logger.info(
                "Phase %s committed for %s: %d row(s)",
                phase.id,
                ctx.scope.key,
                result.rows_transferred,
            )

        if snapshot is not None:
            await self._rollback.discard(snapshot)

    async def _fail(
        self,
        phase: MigrationPhase,
        ctx: RunContext,
        result: PhaseResult,
        snapshot: RollbackSnapshot | None,
        metrics: MigrationMetrics,
    ) -> None:
        """Restore the snapshot, if one was taken, and mark the phase FAILED."""
        if snapshot is None:
            self._transition(ctx, phase, result, PhaseState.FAILED)
            return

        self._transition(ctx, phase, result, PhaseState.ROLLING_BACK)
        try:
            await self._rollback.restore(snapshot)
        except RestoreError as e:
            result.error = e
            metrics.record_rollback(phase.id, success=False)
        else:
            metrics.record_rollback(phase.id, success=True)
        self._transition(ctx, phase, result, PhaseState.FAILED)

    def _transition(
        self,
        ctx: RunContext,
        phase: MigrationPhase,
        result: PhaseResult,
        target: PhaseState,
    ) -> None:
        if not result.status.can_transition_to(target):
            raise InvalidPhaseTransitionError(phase.id, result.status, target)
        logger.debug("Phase %s: %s -> %s", phase.id, result.status.value, target.value)
        result.status = target
        self._notify("on_phase_state", ctx, phase, target)

    def _progress_for(self, phase: MigrationPhase, ctx: RunContext) -> ProgressCallback:
        def on_progress(progress: TransferProgress) -> None:
            if self._progress_callback is not None:
                self._progress_callback(progress)
            self._notify("on_transfer_progress", ctx, phase, progress)

        return on_progress

    @staticmethod
    def _record_transfer(
        phase: MigrationPhase,
        result: PhaseResult,
        transfer: TransferResult,
        metrics: MigrationMetrics,
    ) -> None:
        result.rows_transferred = transfer.copied
        result.row_errors = list(transfer.errors)
        metrics.record_rows_transferred(phase.id, transfer.copied, transfer.batches_written)
        metrics.record_row_errors(phase.id, len(transfer.errors))
        if transfer.errors:
            logger.warning(
                "Phase %s skipped %d row(s) with errors", phase.id, len(transfer.errors)
            )

    @staticmethod
    def _record_gate(
        phase: MigrationPhase,
        result: PhaseResult,
        gate_result: GateResult,
        metrics: MigrationMetrics,
    ) -> None:
        result.validation_failures.extend(gate_result.failures)
        result.validation_warnings.extend(gate_result.warnings)
        for failure in (*gate_result.failures, *gate_result.warnings):
            metrics.record_validation_failure(phase.id, failure.severity.value)

    @staticmethod
    def _as_migration_error(
        error: Exception, phase: MigrationPhase, ctx: RunContext
    ) -> MigrationError:
        if isinstance(error, MigrationError):
            error.phase_id = error.phase_id or phase.id
            error.tenant_id = error.tenant_id or ctx.tenant_id
            return error
        wrapped = TransferError(f"{type(error).__name__}: {error}", phase_id=phase.id)
        wrapped.tenant_id = ctx.tenant_id
        wrapped.__cause__ = error
        return wrapped

    def _notify(self, method: str, *args: Any) -> None:
        for reporter in self._reporters:
            getattr(reporter, method)(*args)


__all__ = ["PhaseOrchestrator", "BeforePhaseHook", "AfterPhaseHook"]
