"""
OpenTelemetry metrics for migration runs.

The metrics degrade gracefully when OpenTelemetry is not installed: every
instrument becomes a no-op and nothing raises.

Example:
    >>> metrics = MigrationMetrics(run_id="run-1", scope="tenant:acme")
    >>> metrics.record_rows_transferred("50100-CustomerGrade-20250120", 1000)
    >>> with metrics.time_phase("50100-CustomerGrade-20250120"):
    ...     await run_phase()

Metrics Exposed:
    - tablemigrate.rows.transferred (Counter): Rows written by phases
    - tablemigrate.rows.errors (Counter): Rows skipped because of row errors
    - tablemigrate.batches.written (Counter): Batches flushed
    - tablemigrate.phases (Counter): Finished phases, by status
    - tablemigrate.phase.duration (Histogram): Time spent in each phase
    - tablemigrate.rollbacks (Counter): Snapshot restores, by outcome
    - tablemigrate.validation.failures (Counter): Failed rules, by severity

All metrics carry the ``run_id`` and ``scope`` attributes.
"""

from __future__ import annotations

import time
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

try:
    from opentelemetry import metrics

    OTEL_METRICS_AVAILABLE = True
except ImportError:
    OTEL_METRICS_AVAILABLE = False
    metrics = None  # type: ignore[assignment]


_meter: Any = None


def _get_meter() -> Any:
    """
    Get or create the meter instance.

    Returns:
        OpenTelemetry Meter, or None if OpenTelemetry is not available
    """
    global _meter
    if _meter is None and OTEL_METRICS_AVAILABLE and metrics is not None:
        _meter = metrics.get_meter("tablemigrate", version="0.1.0")
    return _meter


def reset_meter() -> None:
    """
    Reset the global meter instance.

    Useful for testing to ensure fresh meter state between tests.
    """
    global _meter
    _meter = None


class NoOpCounter:
    """Stand-in for an OpenTelemetry Counter when metrics are off."""

    def add(
        self,
        amount: int | float,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        pass


class NoOpHistogram:
    """Stand-in for an OpenTelemetry Histogram when metrics are off."""

    def record(
        self,
        value: float,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        pass


@dataclass(frozen=True)
class MigrationMetricSnapshot:
    """
    Accumulated metric values for one run.

    Useful for tests and debugging to see what would be reported.
    """

    rows_transferred: int = 0
    row_errors: int = 0
    batches_written: int = 0
    rollbacks: int = 0
    failed_rollbacks: int = 0
    validation_failures: int = 0
    validation_warnings: int = 0
    phase_durations: dict[str, float] = field(default_factory=dict)
    phase_statuses: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "rows_transferred": self.rows_transferred,
            "row_errors": self.row_errors,
            "batches_written": self.batches_written,
            "rollbacks": self.rollbacks,
            "failed_rollbacks": self.failed_rollbacks,
            "validation_failures": self.validation_failures,
            "validation_warnings": self.validation_warnings,
            "phase_durations": dict(self.phase_durations),
            "phase_statuses": dict(self.phase_statuses),
        }


@dataclass
class MigrationMetrics:
    """
    Metric instruments for one migration run.

    All methods are safe to call when OpenTelemetry is not installed.

    Attributes:
        run_id: Run identifier used as a metric label
        scope: Scope key used as a metric label
        enable_metrics: Whether metrics are recorded through OpenTelemetry
    """

    run_id: str
    scope: str
    enable_metrics: bool = True

    _meter: Any = field(default=None, init=False, repr=False)
    _rows_counter: Any = field(default=None, init=False, repr=False)
    _row_errors_counter: Any = field(default=None, init=False, repr=False)
    _batches_counter: Any = field(default=None, init=False, repr=False)
    _phases_counter: Any = field(default=None, init=False, repr=False)
    _phase_duration_histogram: Any = field(default=None, init=False, repr=False)
    _rollbacks_counter: Any = field(default=None, init=False, repr=False)
    _validation_failures_counter: Any = field(default=None, init=False, repr=False)

    _rows_count: int = field(default=0, init=False, repr=False)
    _row_errors_count: int = field(default=0, init=False, repr=False)
    _batches_count: int = field(default=0, init=False, repr=False)
    _rollbacks_count: int = field(default=0, init=False, repr=False)
    _failed_rollbacks_count: int = field(default=0, init=False, repr=False)
    _validation_failures_count: int = field(default=0, init=False, repr=False)
    _validation_warnings_count: int = field(default=0, init=False, repr=False)
    _phase_durations: dict[str, float] = field(default_factory=dict, init=False, repr=False)
    _phase_statuses: dict[str, str] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        """Initialize metric instruments."""
        if self.enable_metrics and OTEL_METRICS_AVAILABLE:
            self._setup_metrics()
        else:
            self._setup_noop()

    def _setup_metrics(self) -> None:
        self._meter = _get_meter()

        if self._meter is None:
            self._setup_noop()
            return

        self._rows_counter = self._meter.create_counter(
            name="tablemigrate.rows.transferred",
            unit="rows",
            description="Rows written to target tables by migration phases",
        )
        self._row_errors_counter = self._meter.create_counter(
            name="tablemigrate.rows.errors",
            unit="rows",
            description="Source rows skipped because they could not be mapped",
        )
        self._batches_counter = self._meter.create_counter(
            name="tablemigrate.batches.written",
            unit="batches",
            description="Batches flushed to target tables",
        )
        self._phases_counter = self._meter.create_counter(
            name="tablemigrate.phases",
            unit="phases",
            description="Finished migration phases by final status",
        )
        self._phase_duration_histogram = self._meter.create_histogram(
            name="tablemigrate.phase.duration",
            unit="s",
            description="Time spent in each migration phase in seconds",
        )
        self._rollbacks_counter = self._meter.create_counter(
            name="tablemigrate.rollbacks",
            unit="rollbacks",
            description="Rollback snapshot restores by outcome",
        )
        self._validation_failures_counter = self._meter.create_counter(
            name="tablemigrate.validation.failures",
            unit="failures",
            description="Failed validation rules by severity",
        )

    def _setup_noop(self) -> None:
        self._rows_counter = NoOpCounter()
        self._row_errors_counter = NoOpCounter()
        self._batches_counter = NoOpCounter()
        self._phases_counter = NoOpCounter()
        self._phase_duration_histogram = NoOpHistogram()
        self._rollbacks_counter = NoOpCounter()
        self._validation_failures_counter = NoOpCounter()

    def _base_attributes(self) -> dict[str, str]:
        return {"run_id": self.run_id, "scope": self.scope}

    def record_rows_transferred(self, phase_id: str, count: int, batches: int = 0) -> None:
        """Record rows (and optionally batches) written by a phase."""
        attrs = {**self._base_attributes(), "phase_id": phase_id}
        if count:
            self._rows_counter.add(count, attrs)
            self._rows_count += count
        if batches:
            self._batches_counter.add(batches, attrs)
            self._batches_count += batches

    def record_row_errors(self, phase_id: str, count: int) -> None:
        if count <= 0:
            return
        self._row_errors_counter.add(count, {**self._base_attributes(), "phase_id": phase_id})
        self._row_errors_count += count

    def record_phase_status(self, phase_id: str, status: str) -> None:
        """Record the final status of a phase."""
        self._phases_counter.add(
            1, {**self._base_attributes(), "phase_id": phase_id, "status": status}
        )
        self._phase_statuses[phase_id] = status

    def record_phase_duration(self, phase_id: str, duration_seconds: float) -> None:
        attrs = {**self._base_attributes(), "phase_id": phase_id}
        self._phase_duration_histogram.record(duration_seconds, attrs)
        self._phase_durations[phase_id] = (
            self._phase_durations.get(phase_id, 0.0) + duration_seconds
        )

    def record_rollback(self, phase_id: str, success: bool = True) -> None:
        attrs = {
            **self._base_attributes(),
            "phase_id": phase_id,
            "success": str(success).lower(),
        }
        self._rollbacks_counter.add(1, attrs)
        if success:
            self._rollbacks_count += 1
        else:
            self._failed_rollbacks_count += 1

    def record_validation_failure(self, phase_id: str, severity: str) -> None:
        attrs = {**self._base_attributes(), "phase_id": phase_id, "severity": severity}
        self._validation_failures_counter.add(1, attrs)
        if severity == "warning":
            self._validation_warnings_count += 1
        else:
            self._validation_failures_count += 1

    @contextmanager
    def time_phase(self, phase_id: str) -> Generator[_PhaseTimer, None, None]:
        """
        Context manager timing a phase.

        Records the phase duration when the context exits, even on error.

        Example:
            >>> with metrics.time_phase(phase.id) as timer:
            ...     await run_phase()
            >>> timer.duration_seconds
        """
        timer = _PhaseTimer()
        timer.start()
        try:
            yield timer
        finally:
            timer.stop()
            self.record_phase_duration(phase_id, timer.duration_seconds)

    def get_snapshot(self) -> MigrationMetricSnapshot:
        return MigrationMetricSnapshot(
            rows_transferred=self._rows_count,
            row_errors=self._row_errors_count,
            batches_written=self._batches_count,
            rollbacks=self._rollbacks_count,
            failed_rollbacks=self._failed_rollbacks_count,
            validation_failures=self._validation_failures_count,
            validation_warnings=self._validation_warnings_count,
            phase_durations=dict(self._phase_durations),
            phase_statuses=dict(self._phase_statuses),
        )

    @property
    def metrics_enabled(self) -> bool:
        """True if metrics are enabled and OpenTelemetry is available."""
        return self.enable_metrics and OTEL_METRICS_AVAILABLE


class _PhaseTimer:
    """Timer used by ``MigrationMetrics.time_phase``."""

    def __init__(self) -> None:
        self._start: float = 0.0
        self._end: float = 0.0
        self._stopped: bool = False

    def start(self) -> None:
        self._start = time.perf_counter()
        self._stopped = False

    def stop(self) -> None:
        if not self._stopped:
            self._end = time.perf_counter()
            self._stopped = True

    @property
    def duration_seconds(self) -> float:
        if self._start == 0:
            return 0.0
        end = self._end if self._stopped else time.perf_counter()
        return end - self._start

    @property
    def duration_ms(self) -> float:
        return self.duration_seconds * 1000


__all__ = [
    "OTEL_METRICS_AVAILABLE",
    "MigrationMetrics",
    "MigrationMetricSnapshot",
    "NoOpCounter",
    "NoOpHistogram",
    "reset_meter",
]
