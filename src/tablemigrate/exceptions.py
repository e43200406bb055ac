"""
Exceptions for the tablemigrate engine.

Exception Hierarchy:
    MigrationError (base)
    +-- CompileError
    +-- PhaseDefinitionError
    +-- UnmetDependencyError
    +-- InvalidPhaseTransitionError
    +-- AlreadyCommittedError
    +-- TransferError
    |   +-- RowTransformError
    |   +-- RowErrorAbort
    |   +-- BatchWriteError
    +-- TransientStoreError
    +-- RestoreError
    +-- SnapshotNotFoundError
    +-- UnknownTableError
    +-- TransformRegistryError
        +-- DuplicateTransformError
        +-- TransformNotFoundError

Every MigrationError carries an ErrorClassification describing how severe
it is and whether an operator can recover from it. RestoreError is the only
CRITICAL error: a failed rollback is surfaced directly and never retried.

Non-exception failure records (RowError, ValidationFailure) live next to the
components that produce them.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from tablemigrate.phases import PhaseState
    from tablemigrate.transfer import TransferResult


class ErrorSeverity(Enum):
    """
    Severity level of migration errors.

    Used for logging and operator notification decisions.
    """

    CRITICAL = "critical"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"

    @property
    def should_alert(self) -> bool:
        """True for CRITICAL and ERROR levels."""
        return self in (ErrorSeverity.CRITICAL, ErrorSeverity.ERROR)

    @property
    def log_level(self) -> int:
        """
        Get the corresponding Python logging level.

        Returns:
            Python logging level constant.
        """
        level_map = {
            ErrorSeverity.CRITICAL: logging.CRITICAL,
            ErrorSeverity.ERROR: logging.ERROR,
            ErrorSeverity.WARNING: logging.WARNING,
            ErrorSeverity.INFO: logging.INFO,
        }
        return level_map[self]


class ErrorRecoverability(Enum):
    """
    Recoverability classification for migration errors.

    Attributes:
        RECOVERABLE: Operator action (fix the definition, rerun) resolves it.
        TRANSIENT: Temporary condition that may resolve on retry.
        FATAL: No automatic recovery is possible.
    """

    RECOVERABLE = "recoverable"
    TRANSIENT = "transient"
    FATAL = "fatal"

    @property
    def should_retry(self) -> bool:
        """Only transient errors are retried automatically."""
        return self == ErrorRecoverability.TRANSIENT


@dataclass(frozen=True)
class RetryConfig:
    """
    Configuration for automatic retry of transient errors.

    Implements exponential backoff with jitter.

    Example:
        >>> config = RetryConfig(max_attempts=5, base_delay_ms=100)
        >>> config.get_delay_ms(attempt=3)  # ~800ms plus jitter
    """

    max_attempts: int = 3
    """Maximum number of attempts, including the initial one."""

    base_delay_ms: float = 100.0
    max_delay_ms: float = 10000.0
    exponential_base: float = 2.0
    jitter_factor: float = 0.1

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms must be >= 0, got {self.base_delay_ms}")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError(
                f"max_delay_ms ({self.max_delay_ms}) must be >= "
                f"base_delay_ms ({self.base_delay_ms})"
            )
        if self.exponential_base < 1.0:
            raise ValueError(f"exponential_base must be >= 1.0, got {self.exponential_base}")
        if not 0.0 <= self.jitter_factor <= 1.0:
            raise ValueError(f"jitter_factor must be between 0.0 and 1.0, got {self.jitter_factor}")

    def get_delay_ms(self, attempt: int) -> float:
        """
        Calculate delay for a specific retry attempt.

        Args:
            attempt: Current attempt number (0-indexed).

        Returns:
            Delay in milliseconds before the next retry.
        """
        delay = self.base_delay_ms * (self.exponential_base**attempt)
        if self.jitter_factor > 0:
            delay += delay * self.jitter_factor * random.random()  # nosec B311 - retry jitter
        return min(delay, self.max_delay_ms)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "max_attempts": self.max_attempts,
            "base_delay_ms": self.base_delay_ms,
            "max_delay_ms": self.max_delay_ms,
            "exponential_base": self.exponential_base,
            "jitter_factor": self.jitter_factor,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RetryConfig:
        """Create from dictionary."""
        return cls(**data)


@dataclass(frozen=True)
class ErrorClassification:
    """
    Metadata describing how an error should be handled and reported.

    Attributes:
        severity: The severity level of the error.
        recoverability: How the error can be recovered from.
        error_code: Unique error code for programmatic handling.
        suggested_action: Human-readable guidance for operators.
    """

    severity: ErrorSeverity
    recoverability: ErrorRecoverability
    error_code: str
    suggested_action: str

    def to_dict(self) -> dict[str, Any]:
        """Convert classification to dictionary for serialization."""
        return {
            "severity": self.severity.value,
            "recoverability": self.recoverability.value,
            "error_code": self.error_code,
            "suggested_action": self.suggested_action,
        }


class MigrationError(Exception):
    """
    Base exception for all tablemigrate errors.

    Attributes:
        message: Human-readable error description.
        phase_id: The phase that raised the error, if applicable.
        tenant_id: The tenant scope involved, if applicable.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MIGRATION_ERROR",
        suggested_action="Review migration logs",
    )

    def __init__(
        self,
        message: str,
        *,
        phase_id: str | None = None,
        tenant_id: str | None = None,
    ) -> None:
        self.message = message
        self.phase_id = phase_id
        self.tenant_id = tenant_id
        super().__init__(message)

    def __str__(self) -> str:
        """Return formatted error string with context."""
        parts = [self.message]
        if self.phase_id:
            parts.append(f"phase_id={self.phase_id}")
        if self.tenant_id:
            parts.append(f"tenant_id={self.tenant_id}")
        return " ".join(parts)

    @property
    def classification(self) -> ErrorClassification:
        """Classification metadata for this error type."""
        return self._default_classification

    @property
    def severity(self) -> ErrorSeverity:
        return self.classification.severity

    @property
    def recoverability(self) -> ErrorRecoverability:
        return self.classification.recoverability

    @property
    def error_code(self) -> str:
        return self.classification.error_code

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the exception to a dictionary for serialization.

        Returns:
            Dictionary representation of the error.
        """
        return {
            "message": self.message,
            "phase_id": self.phase_id,
            "tenant_id": self.tenant_id,
            "error_code": self.error_code,
            "classification": self.classification.to_dict(),
        }


@dataclass(frozen=True)
class MappingViolation:
    """
    A single problem found while compiling a field mapping.

    Attributes:
        source_field: Source field id involved (None for constants).
        target_field: Target field id involved.
        reason: What is wrong with the pair.
    """

    source_field: str | None
    target_field: str | None
    reason: str

    def __str__(self) -> str:
        source = self.source_field or "<constant>"
        return f"{source} -> {self.target_field or '<none>'}: {self.reason}"


class CompileError(MigrationError):
    """
    Raised when a mapping definition is invalid.

    Always fatal and always raised before any row is touched. The error
    lists every violation found so a definition can be fixed in one pass.

    Attributes:
        violations: All violations found by the compiler.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="MAPPING_COMPILE_ERROR",
        suggested_action="Fix the listed field mappings and rerun the migration",
    )

    def __init__(
        self,
        violations: list[MappingViolation],
        *,
        phase_id: str | None = None,
    ) -> None:
        self.violations = list(violations)
        details = "; ".join(str(v) for v in self.violations)
        super().__init__(
            f"Mapping has {len(self.violations)} violation(s): {details}",
            phase_id=phase_id,
        )

    def involves(self, source_field: str | None, target_field: str | None) -> bool:
        """Check whether a specific field pair is among the violations."""
        return any(
            v.source_field == source_field and v.target_field == target_field
            for v in self.violations
        )

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["violations"] = [
            {
                "source_field": v.source_field,
                "target_field": v.target_field,
                "reason": v.reason,
            }
            for v in self.violations
        ]
        return result


class PhaseDefinitionError(MigrationError):
    """
    Raised when a set of phases cannot form a valid run.

    Examples: duplicate ids or orders, dependencies on unknown phases,
    or a dependency ordered after its dependent.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="PHASE_DEFINITION_ERROR",
        suggested_action="Correct the phase definitions",
    )

    def __init__(self, problems: list[str]) -> None:
        self.problems = list(problems)
        super().__init__("Invalid phase definitions: " + "; ".join(self.problems))


class UnmetDependencyError(MigrationError):
    """
    Raised when a phase depends on phases whose tags are not committed.

    Attributes:
        missing: Dependency phase ids that are not in the ledger.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="UNMET_DEPENDENCY",
        suggested_action="Run the prerequisite phases first",
    )

    def __init__(
        self,
        phase_id: str,
        missing: list[str],
        *,
        tenant_id: str | None = None,
    ) -> None:
        self.missing = list(missing)
        super().__init__(
            f"Phase depends on uncommitted phases: {', '.join(self.missing)}",
            phase_id=phase_id,
            tenant_id=tenant_id,
        )


class InvalidPhaseTransitionError(MigrationError):
    """
    Raised when the orchestrator attempts an illegal state transition.

    Attributes:
        current_state: The state the phase is in.
        target_state: The state that was attempted.
    """

    def __init__(
        self,
        phase_id: str,
        current_state: PhaseState,
        target_state: PhaseState,
    ) -> None:
        self.current_state = current_state
        self.target_state = target_state
        super().__init__(
            f"Invalid phase transition: {current_state.value} -> {target_state.value}",
            phase_id=phase_id,
        )


class AlreadyCommittedError(MigrationError):
    """
    Raised by the ledger when a tag is already committed for a scope.

    This is not a failure: the caller lost a commit race or the work already
    ran, and must treat it as a successful skip.

    Attributes:
        tag_id: The tag that was already committed.
        scope_key: Storage key of the scope.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.INFO,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="ALREADY_COMMITTED",
        suggested_action="None required; the migration already ran",
    )

    def __init__(self, tag_id: str, scope_key: str) -> None:
        self.tag_id = tag_id
        self.scope_key = scope_key
        super().__init__(f"Tag {tag_id!r} already committed for scope {scope_key}")


class TransferError(MigrationError):
    """
    Base class for failures raised by the batch transfer executor.

    Attributes:
        partial_result: Counts accumulated before the failure, if known.
    """

    def __init__(
        self,
        message: str,
        *,
        partial_result: TransferResult | None = None,
        phase_id: str | None = None,
    ) -> None:
        self.partial_result = partial_result
        super().__init__(message, phase_id=phase_id)


class RowTransformError(TransferError):
    """
    Raised when a single row cannot be mapped to the target shape.

    The executor normally turns this into a RowError record and skips
    the row.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="ROW_TRANSFORM_ERROR",
        suggested_action="Inspect the reported row and the transform that rejected it",
    )

    def __init__(self, target_field: str, error: str) -> None:
        self.target_field = target_field
        self.original_error = error
        super().__init__(f"Cannot produce field {target_field!r}: {error}")


class RowErrorAbort(TransferError):
    """Raised when a row error occurs under the ABORT row-error policy."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="ROW_ERROR_ABORT",
        suggested_action="Fix the failing rows or relax the row error policy",
    )


class BatchWriteError(TransferError):
    """
    Raised when a batch cannot be flushed to the target table.

    Previously flushed batches are not undone by the executor; restoring
    them is the rollback manager's job.

    Attributes:
        batch_number: 1-based number of the batch that failed.
        original_error: The underlying error message.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="BATCH_WRITE_ERROR",
        suggested_action="Check target store health, then rerun the migration",
    )

    def __init__(
        self,
        batch_number: int,
        error: str,
        *,
        partial_result: TransferResult | None = None,
    ) -> None:
        self.batch_number = batch_number
        self.original_error = error
        super().__init__(
            f"Batch {batch_number} failed to write: {error}",
            partial_result=partial_result,
        )


class TransientStoreError(MigrationError):
    """
    Raised by storage backends for failures that may succeed on retry.

    The executor retries flushes that fail with this error according to
    EngineConfig.flush_retry.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="TRANSIENT_STORE_ERROR",
        suggested_action="Retry; check store connectivity if it persists",
    )


class RestoreError(MigrationError):
    """
    Raised when restoring a rollback snapshot fails.

    This is the most severe error class. The store may be partially
    restored, so it is surfaced to the operator without automatic retry.

    Attributes:
        snapshot_id: ID of the snapshot being restored.
        original_error: The underlying error message.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="RESTORE_ERROR",
        suggested_action=(
            "Rollback did not complete. Inspect the snapshot and the target "
            "table manually before taking any further action."
        ),
    )

    def __init__(
        self,
        snapshot_id: str,
        error: str,
        *,
        phase_id: str | None = None,
        tenant_id: str | None = None,
    ) -> None:
        self.snapshot_id = snapshot_id
        self.original_error = error
        super().__init__(
            f"Restore of snapshot {snapshot_id} failed: {error}",
            phase_id=phase_id,
            tenant_id=tenant_id,
        )


class SnapshotNotFoundError(MigrationError):
    """Raised when no kept rollback snapshot exists for a phase and scope."""

    def __init__(self, phase_id: str, scope_key: str) -> None:
        self.scope_key = scope_key
        super().__init__(
            f"No rollback snapshot kept for scope {scope_key}",
            phase_id=phase_id,
        )


class UnknownTableError(MigrationError):
    """Raised by table stores when an operation names a table they do not hold."""

    def __init__(self, table: str) -> None:
        self.table = table
        super().__init__(f"Unknown table: {table}")


class TransformRegistryError(MigrationError):
    """Base class for transform registry errors."""


class DuplicateTransformError(TransformRegistryError):
    """Raised when registering a transform name that is already taken."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Transform {name!r} is already registered")


class TransformNotFoundError(TransformRegistryError):
    """Raised when looking up a transform name that is not registered."""

    def __init__(self, name: str, available: list[str]) -> None:
        self.name = name
        self.available = available
        super().__init__(
            f"Transform {name!r} is not registered. Available: {', '.join(available) or 'none'}"
        )


__all__ = [
    "ErrorSeverity",
    "ErrorRecoverability",
    "ErrorClassification",
    "RetryConfig",
    "MigrationError",
    "MappingViolation",
    "CompileError",
    "PhaseDefinitionError",
    "UnmetDependencyError",
    "InvalidPhaseTransitionError",
    "AlreadyCommittedError",
    "TransferError",
    "RowTransformError",
    "RowErrorAbort",
    "BatchWriteError",
    "TransientStoreError",
    "RestoreError",
    "SnapshotNotFoundError",
    "UnknownTableError",
    "TransformRegistryError",
    "DuplicateTransformError",
    "TransformNotFoundError",
]
