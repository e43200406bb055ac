"""
Engine configuration.

EngineConfig holds the knobs shared by every phase of a run: batch sizing,
flow control, row error handling and observability switches. Phases may
override the row error policy individually.

Example:
    >>> config = EngineConfig(batch_size=500, max_rows_per_second=2000)
    >>> orchestrator = PhaseOrchestrator(phases, store, ledger, snapshots, config=config)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from tablemigrate.exceptions import RetryConfig


class RowErrorPolicy(Enum):
    """
    What the transfer executor does when a single row cannot be mapped.

    Attributes:
        CONTINUE: Record a RowError, skip the row and keep going
        ABORT: Stop the transfer with RowErrorAbort
    """

    CONTINUE = "continue"
    ABORT = "abort"


@dataclass(frozen=True)
class EngineConfig:
    """
    Configuration for a migration run.

    Attributes:
        batch_size: Rows per upsert batch
        max_rows_per_second: Transfer rate ceiling (0 means unlimited)
        max_concurrent_batches: Batches that may be flushed at the same time
        row_error_policy: Default policy for phases that do not set one
        max_row_errors: Row errors tolerated per phase before it fails (0 means unbounded)
        flush_retry: Retry settings for transient batch flush failures
        enable_tracing: Whether components create OpenTelemetry tracers
        enable_metrics: Whether the orchestrator records OpenTelemetry metrics
    """

    batch_size: int = 1000
    max_rows_per_second: int = 0
    max_concurrent_batches: int = 1
    row_error_policy: RowErrorPolicy = RowErrorPolicy.CONTINUE
    max_row_errors: int = 0
    flush_retry: RetryConfig = field(default_factory=RetryConfig)
    enable_tracing: bool = True
    enable_metrics: bool = True

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.max_rows_per_second < 0:
            raise ValueError(
                f"max_rows_per_second must be >= 0, got {self.max_rows_per_second}"
            )
        if self.max_concurrent_batches < 1:
            raise ValueError(
                f"max_concurrent_batches must be >= 1, got {self.max_concurrent_batches}"
            )
        if self.max_row_errors < 0:
            raise ValueError(f"max_row_errors must be >= 0, got {self.max_row_errors}")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "batch_size": self.batch_size,
            "max_rows_per_second": self.max_rows_per_second,
            "max_concurrent_batches": self.max_concurrent_batches,
            "row_error_policy": self.row_error_policy.value,
            "max_row_errors": self.max_row_errors,
            "flush_retry": self.flush_retry.to_dict(),
            "enable_tracing": self.enable_tracing,
            "enable_metrics": self.enable_metrics,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EngineConfig:
        """Create from dictionary. Missing keys take their defaults."""
        values = dict(data)
        if "row_error_policy" in values:
            values["row_error_policy"] = RowErrorPolicy(values["row_error_policy"])
        if "flush_retry" in values and isinstance(values["flush_retry"], dict):
            values["flush_retry"] = RetryConfig.from_dict(values["flush_retry"])
        return cls(**values)


__all__ = ["EngineConfig", "RowErrorPolicy"]
