"""
Run and phase reports, and progress reporters.

PhaseResult and RunReport are what a run returns. Reporters receive the
same information as it happens; attach them with
``PhaseOrchestrator.add_reporter``. Dashboards, notifications and audit
sinks implement ProgressReporter; the library ships one that logs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from tablemigrate.exceptions import MigrationError
from tablemigrate.phases import MigrationPhase, PhaseState, RunContext
from tablemigrate.transfer import RowError, TransferProgress
from tablemigrate.validation import ValidationFailure

logger = logging.getLogger(__name__)


@dataclass
class PhaseResult:
    """
    Outcome of one phase in one run.

    Attributes:
        phase_id: Phase (and ledger tag) id
        status: State the phase ended in
        rows_transferred: Rows written (or deleted) by the phase
        row_errors: Rows skipped because they could not be mapped
        validation_failures: Failed BLOCKING rules
        validation_warnings: Failed WARNING rules
        error: The error that failed the phase, if any
        already_committed: Another run committed the tag first
        cancelled: The run was cancelled while this phase was running
        duration_ms: Time spent in the phase
    """

    phase_id: str
    status: PhaseState = PhaseState.PENDING
    rows_transferred: int = 0
    row_errors: list[RowError] = field(default_factory=list)
    validation_failures: list[ValidationFailure] = field(default_factory=list)
    validation_warnings: list[ValidationFailure] = field(default_factory=list)
    error: MigrationError | None = None
    already_committed: bool = False
    cancelled: bool = False
    duration_ms: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status.is_success

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase_id": self.phase_id,
            "status": self.status.value,
            "rows_transferred": self.rows_transferred,
            "row_errors": [e.to_dict() for e in self.row_errors],
            "validation_failures": [f.to_dict() for f in self.validation_failures],
            "validation_warnings": [w.to_dict() for w in self.validation_warnings],
            "error": self.error.to_dict() if self.error is not None else None,
            "already_committed": self.already_committed,
            "cancelled": self.cancelled,
            "duration_ms": self.duration_ms,
        }


@dataclass
class RunReport:
    """
    Outcome of a run.

    Attributes:
        run_id: Run identifier
        scope: Scope key of the run ("global" or "tenant:<id>")
        phases_run: One result per defined phase, in order
        overall_success: Every phase committed or skipped, and not cancelled
        duration_ms: Time spent in the run
        cancelled: The run was cancelled
        restore_errors: Rollbacks that failed; these need operator attention
        error: Error that stopped the run before its phases ran, if any
    """

    run_id: str
    scope: str
    phases_run: list[PhaseResult] = field(default_factory=list)
    overall_success: bool = False
    duration_ms: int = 0
    cancelled: bool = False
    restore_errors: list[MigrationError] = field(default_factory=list)
    error: MigrationError | None = None

    def phase(self, phase_id: str) -> PhaseResult | None:
        """Look up the result of one phase."""
        for result in self.phases_run:
            if result.phase_id == phase_id:
                return result
        return None

    @property
    def rows_transferred(self) -> int:
        return sum(result.rows_transferred for result in self.phases_run)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "scope": self.scope,
            "phases_run": [result.to_dict() for result in self.phases_run],
            "overall_success": self.overall_success,
            "duration_ms": self.duration_ms,
            "cancelled": self.cancelled,
            "restore_errors": [error.to_dict() for error in self.restore_errors],
            "error": self.error.to_dict() if self.error is not None else None,
        }


@runtime_checkable
class ProgressReporter(Protocol):
    """Receives run progress as it happens. Methods must not block."""

    def on_run_started(self, ctx: RunContext, phases: list[MigrationPhase]) -> None: ...

    def on_phase_state(self, ctx: RunContext, phase: MigrationPhase, state: PhaseState) -> None: ...

    def on_transfer_progress(
        self, ctx: RunContext, phase: MigrationPhase, progress: TransferProgress
    ) -> None: ...

    def on_phase_finished(
        self, ctx: RunContext, phase: MigrationPhase, result: PhaseResult
    ) -> None: ...

    def on_run_finished(self, ctx: RunContext, report: RunReport) -> None: ...


class LoggingProgressReporter:
    """
    Reporter that writes progress to a logger.

    State changes and results go to INFO, per-batch progress to DEBUG.
    """

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._log = log or logger

    def on_run_started(self, ctx: RunContext, phases: list[MigrationPhase]) -> None:
        self._log.info(
            "Run %s started for %s with %d phase(s)",
            ctx.run_id,
            ctx.scope.key,
            len(phases),
        )

    def on_phase_state(self, ctx: RunContext, phase: MigrationPhase, state: PhaseState) -> None:
        self._log.info("Phase %s -> %s", phase.id, state.value)

    def on_transfer_progress(
        self, ctx: RunContext, phase: MigrationPhase, progress: TransferProgress
    ) -> None:
        self._log.debug(
            "Phase %s: %d read, %d copied, %d skipped (%.0f rows/s)",
            phase.id,
            progress.rows_read,
            progress.rows_copied,
            progress.rows_skipped,
            progress.rows_per_second,
        )

    def on_phase_finished(
        self, ctx: RunContext, phase: MigrationPhase, result: PhaseResult
    ) -> None:
        level = logging.INFO if result.succeeded else logging.WARNING
        self._log.log(
            level,
            "Phase %s finished %s: %d row(s), %d row error(s) in %dms",
            phase.id,
            result.status.value,
            result.rows_transferred,
            len(result.row_errors),
            result.duration_ms,
        )

    def on_run_finished(self, ctx: RunContext, report: RunReport) -> None:
        level = logging.INFO if report.overall_success else logging.WARNING
        self._log.log(
            level,
            "Run %s for %s finished: success=%s cancelled=%s in %dms",
            report.run_id,
            report.scope,
            report.overall_success,
            report.cancelled,
            report.duration_ms,
        )


__all__ = [
    "PhaseResult",
    "RunReport",
    "ProgressReporter",
    "LoggingProgressReporter",
]
