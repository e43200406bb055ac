"""
tablemigrate - Bulk, idempotent, phased data migrations for Python.

This library provides:
- An idempotency ledger recording committed migration tags per scope
- Declarative field mappings compiled against table shapes
- Batched, rate-limited row transfer with per-row error capture
- Ordered migration phases with validation gates
- Before-image snapshots and rollback on failure
- In-memory, SQLite and PostgreSQL backends
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("tablemigrate")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

# Configuration
from tablemigrate.config import EngineConfig, RowErrorPolicy

# Exceptions
from tablemigrate.exceptions import (
    AlreadyCommittedError,
    BatchWriteError,
    CompileError,
    DuplicateTransformError,
    ErrorClassification,
    ErrorRecoverability,
    ErrorSeverity,
    InvalidPhaseTransitionError,
    MappingViolation,
    MigrationError,
    PhaseDefinitionError,
    RestoreError,
    RetryConfig,
    RowErrorAbort,
    RowTransformError,
    SnapshotNotFoundError,
    TransferError,
    TransformNotFoundError,
    TransformRegistryError,
    TransientStoreError,
    UnknownTableError,
    UnmetDependencyError,
)

# Field mapping
from tablemigrate.mapping import (
    CompiledMapping,
    FieldMapping,
    MappingCompiler,
    MappingKind,
    RuleSpec,
    TransformRegistry,
    constant,
    default_registry,
    direct,
    register_transform,
    transform,
)

# Metrics
from tablemigrate.metrics import MigrationMetrics, MigrationMetricSnapshot

# Orchestration
from tablemigrate.orchestrator import PhaseOrchestrator
from tablemigrate.phases import (
    CallablePhaseKind,
    DeletePhaseKind,
    MigrationPhase,
    PhaseKind,
    PhaseState,
    RunContext,
    TransferPhaseKind,
    check_phase_definitions,
)
from tablemigrate.reporting import (
    LoggingProgressReporter,
    PhaseResult,
    ProgressReporter,
    RunReport,
)

# Ledger and snapshot repositories
from tablemigrate.repositories import (
    InMemoryMigrationLedger,
    InMemorySnapshotStore,
    MigrationLedger,
    MigrationTag,
    PostgreSQLMigrationLedger,
    PostgreSQLSnapshotStore,
    SnapshotStore,
    SQLiteMigrationLedger,
    SQLiteSnapshotStore,
    TagScope,
    migration_tag,
)

# Rollback
from tablemigrate.rollback import CapturedRow, RollbackManager, RollbackSnapshot

# Rows and table stores
from tablemigrate.rows import (
    MATCH_ALL,
    FieldSpec,
    FieldType,
    Filter,
    InMemoryTableStore,
    PostgreSQLTableStore,
    Row,
    RowFilter,
    RowKey,
    SQLiteTableStore,
    TableShape,
    TableStore,
)

# Batch transfer
from tablemigrate.transfer import (
    BatchTransferExecutor,
    RateLimiter,
    RowError,
    TransferJob,
    TransferProgress,
    TransferResult,
)

# Validation
from tablemigrate.validation import (
    GateResult,
    ValidationFailure,
    ValidationGate,
    ValidationRule,
    ValidationSeverity,
    ValidationStage,
    no_duplicate_keys,
    row_count_parity,
    source_count_at_most,
    target_table_exists,
)

__all__ = [
    # Version
    "__version__",
    # Configuration
    "EngineConfig",
    "RowErrorPolicy",
    # Exceptions
    "MigrationError",
    "ErrorSeverity",
    "ErrorRecoverability",
    "ErrorClassification",
    "RetryConfig",
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
    # Rows
    "Row",
    "RowKey",
    "FieldType",
    "FieldSpec",
    "TableShape",
    "Filter",
    "RowFilter",
    "MATCH_ALL",
    "TableStore",
    "InMemoryTableStore",
    "SQLiteTableStore",
    "PostgreSQLTableStore",
    # Ledger and snapshots
    "TagScope",
    "MigrationTag",
    "migration_tag",
    "MigrationLedger",
    "InMemoryMigrationLedger",
    "SQLiteMigrationLedger",
    "PostgreSQLMigrationLedger",
    "SnapshotStore",
    "InMemorySnapshotStore",
    "SQLiteSnapshotStore",
    "PostgreSQLSnapshotStore",
    # Mapping
    "MappingKind",
    "RuleSpec",
    "direct",
    "constant",
    "transform",
    "FieldMapping",
    "CompiledMapping",
    "MappingCompiler",
    "TransformRegistry",
    "default_registry",
    "register_transform",
    # Transfer
    "RowError",
    "TransferJob",
    "TransferProgress",
    "TransferResult",
    "RateLimiter",
    "BatchTransferExecutor",
    # Validation
    "ValidationStage",
    "ValidationSeverity",
    "ValidationRule",
    "ValidationFailure",
    "GateResult",
    "ValidationGate",
    "source_count_at_most",
    "target_table_exists",
    "row_count_parity",
    "no_duplicate_keys",
    # Rollback
    "CapturedRow",
    "RollbackSnapshot",
    "RollbackManager",
    # Phases and orchestration
    "PhaseState",
    "RunContext",
    "PhaseKind",
    "TransferPhaseKind",
    "DeletePhaseKind",
    "CallablePhaseKind",
    "MigrationPhase",
    "check_phase_definitions",
    "PhaseOrchestrator",
    # Reporting
    "PhaseResult",
    "RunReport",
    "ProgressReporter",
    "LoggingProgressReporter",
    # Metrics
    "MigrationMetrics",
    "MigrationMetricSnapshot",
]
