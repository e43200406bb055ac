"""
Unit tests for run reports and the logging progress reporter.
"""

from __future__ import annotations

import logging

import pytest

from tablemigrate.exceptions import BatchWriteError, RestoreError
from tablemigrate.mapping import direct
from tablemigrate.phases import MigrationPhase, PhaseState, RunContext, TransferPhaseKind
from tablemigrate.reporting import (
    LoggingProgressReporter,
    PhaseResult,
    ProgressReporter,
    RunReport,
)
from tablemigrate.repositories import TagScope
from tablemigrate.rows import InMemoryTableStore
from tablemigrate.transfer import RowError, TransferProgress
from tablemigrate.validation import ValidationFailure, ValidationSeverity, ValidationStage

PHASE = MigrationPhase(
    id="p1",
    name="copy customers",
    order=1,
    kind=TransferPhaseKind("customers", "customers_v2", (direct("id", "id"),)),
)


@pytest.fixture
def ctx(in_memory_store: InMemoryTableStore) -> RunContext:
    return RunContext(scope=TagScope.tenant("acme"), store=in_memory_store)


class TestPhaseResult:
    """Tests for PhaseResult."""

    @pytest.mark.parametrize(
        ("status", "succeeded"),
        [
            (PhaseState.COMMITTED, True),
            (PhaseState.SKIPPED, True),
            (PhaseState.FAILED, False),
            (PhaseState.PENDING, False),
            (PhaseState.TRANSFERRING, False),
        ],
    )
    def test_succeeded(self, status: PhaseState, succeeded: bool) -> None:
        assert PhaseResult("p1", status=status).succeeded is succeeded

    def test_to_dict(self) -> None:
        result = PhaseResult(
            "p1",
            status=PhaseState.FAILED,
            rows_transferred=40,
            row_errors=[RowError((7,), "bad credit", "RowTransformError")],
            validation_warnings=[
                ValidationFailure(
                    "soft", "p1", ValidationStage.POST, ValidationSeverity.WARNING, "odd"
                )
            ],
            error=BatchWriteError(5, "disk full"),
        )

        data = result.to_dict()

        assert data["status"] == "failed"
        assert data["rows_transferred"] == 40
        assert data["row_errors"] == [
            {"source_key": [7], "message": "bad credit", "error_type": "RowTransformError"}
        ]
        assert data["validation_warnings"][0]["severity"] == "warning"
        assert data["error"]["error_code"] == "BATCH_WRITE_ERROR"
        assert data["already_committed"] is False


class TestRunReport:
    """Tests for RunReport."""

    def test_phase_lookup_and_totals(self) -> None:
        report = RunReport(
            run_id="run-1",
            scope="tenant:acme",
            phases_run=[
                PhaseResult("p1", PhaseState.COMMITTED, rows_transferred=10),
                PhaseResult("p2", PhaseState.COMMITTED, rows_transferred=5),
            ],
        )

        assert report.phase("p2").rows_transferred == 5
        assert report.phase("missing") is None
        assert report.rows_transferred == 15

    def test_to_dict(self) -> None:
        restore_error = RestoreError("snap-1", "store went away", phase_id="p1")
        report = RunReport(
            run_id="run-1",
            scope="global",
            phases_run=[PhaseResult("p1", PhaseState.FAILED, error=restore_error)],
            restore_errors=[restore_error],
        )

        data = report.to_dict()

        assert data["scope"] == "global"
        assert data["overall_success"] is False
        assert data["phases_run"][0]["status"] == "failed"
        assert data["restore_errors"][0]["classification"]["severity"] == "critical"
        assert data["error"] is None


class TestLoggingProgressReporter:
    """Tests for LoggingProgressReporter."""

    def test_implements_protocol(self) -> None:
        assert isinstance(LoggingProgressReporter(), ProgressReporter)

    def test_logs_lifecycle(
        self, ctx: RunContext, caplog: pytest.LogCaptureFixture
    ) -> None:
        reporter = LoggingProgressReporter()
        report = RunReport(run_id=ctx.run_id, scope=ctx.scope.key, overall_success=True)

        with caplog.at_level(logging.DEBUG, logger="tablemigrate.reporting"):
            reporter.on_run_started(ctx, [PHASE])
            reporter.on_phase_state(ctx, PHASE, PhaseState.TRANSFERRING)
            reporter.on_transfer_progress(
                ctx,
                PHASE,
                TransferProgress(
                    source_table="customers",
                    target_table="customers_v2",
                    rows_read=12,
                    rows_copied=10,
                    rows_skipped=2,
                    batches_written=1,
                    rows_per_second=500.0,
                    is_complete=False,
                ),
            )
            reporter.on_phase_finished(
                ctx, PHASE, PhaseResult("p1", PhaseState.COMMITTED, rows_transferred=10)
            )
            reporter.on_run_finished(ctx, report)

        messages = [record.getMessage() for record in caplog.records]
        assert f"Run {ctx.run_id} started for tenant:acme with 1 phase(s)" in messages
        assert "Phase p1 -> transferring" in messages
        assert "Phase p1: 12 read, 10 copied, 2 skipped (500 rows/s)" in messages
        assert all(record.levelno <= logging.INFO for record in caplog.records)

    def test_failures_log_warnings(
        self, ctx: RunContext, caplog: pytest.LogCaptureFixture
    ) -> None:
        log = logging.getLogger("tablemigrate.tests.reporter")
        reporter = LoggingProgressReporter(log)

        with caplog.at_level(logging.INFO, logger="tablemigrate.tests.reporter"):
            reporter.on_phase_finished(ctx, PHASE, PhaseResult("p1", PhaseState.FAILED))
            reporter.on_run_finished(
                ctx, RunReport(run_id=ctx.run_id, scope=ctx.scope.key, cancelled=True)
            )

        assert [record.levelno for record in caplog.records] == [
            logging.WARNING,
            logging.WARNING,
        ]
        assert "cancelled=True" in caplog.records[-1].getMessage()
