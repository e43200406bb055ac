"""
Standard span and metric attributes for tablemigrate.

Attribute constants shared by all components so spans and metrics are
labelled consistently. Database attributes follow OpenTelemetry semantic
conventions.

Example:
    >>> from tablemigrate.observability.attributes import ATTR_PHASE_ID, ATTR_TABLE
    >>>
    >>> with tracer.span(
    ...     "tablemigrate.transfer.execute",
    ...     {ATTR_PHASE_ID: phase.id, ATTR_TABLE: job.target_table},
    ... ):
    ...     pass
"""

# =============================================================================
# Run and Phase Attributes
# =============================================================================

ATTR_RUN_ID = "tablemigrate.run.id"
"""Identifier of one orchestrator run (string)."""

ATTR_SCOPE = "tablemigrate.scope"
"""Scope key of the run: 'global' or 'tenant:<id>' (string)."""

ATTR_TENANT_ID = "tablemigrate.tenant.id"
"""Tenant identifier for per-tenant runs (string)."""

ATTR_PHASE_ID = "tablemigrate.phase.id"
"""Phase identifier, also used as the ledger tag (string)."""

ATTR_PHASE_STATE = "tablemigrate.phase.state"
"""Current state of a phase (string)."""

ATTR_TAG_ID = "tablemigrate.tag.id"
"""Ledger tag identifier (string)."""

# =============================================================================
# Transfer Attributes
# =============================================================================

ATTR_TABLE = "tablemigrate.table"
"""Table an operation reads or writes (string)."""

ATTR_SOURCE_TABLE = "tablemigrate.source_table"
"""Source table of a transfer job (string)."""

ATTR_TARGET_TABLE = "tablemigrate.target_table"
"""Target table of a transfer job (string)."""

ATTR_BATCH_SIZE = "tablemigrate.batch.size"
"""Configured or actual number of rows in a batch (integer)."""

ATTR_BATCH_NUMBER = "tablemigrate.batch.number"
"""1-based batch number within a transfer (integer)."""

ATTR_ROW_COUNT = "tablemigrate.row.count"
"""Number of rows involved in an operation (integer)."""

ATTR_ROWS_COPIED = "tablemigrate.rows.copied"
"""Rows written to the target (integer)."""

ATTR_ROWS_SKIPPED = "tablemigrate.rows.skipped"
"""Rows skipped because of row errors (integer)."""

# =============================================================================
# Validation and Rollback Attributes
# =============================================================================

ATTR_VALIDATION_STAGE = "tablemigrate.validation.stage"
"""Validation stage: 'pre' or 'post' (string)."""

ATTR_RULE_COUNT = "tablemigrate.validation.rule_count"
"""Number of rules evaluated (integer)."""

ATTR_SNAPSHOT_ID = "tablemigrate.snapshot.id"
"""Rollback snapshot identifier (string)."""

# =============================================================================
# Database Attributes (OpenTelemetry semantic conventions)
# =============================================================================

ATTR_DB_SYSTEM = "db.system"
"""Database system identifier (e.g., 'postgresql', 'sqlite')."""

ATTR_DB_OPERATION = "db.operation"
"""Database operation name (e.g., 'SELECT', 'INSERT')."""

# =============================================================================
# Error Attributes
# =============================================================================

ATTR_ERROR_TYPE = "error.type"
"""Type/class of error that occurred (string)."""

ATTR_RETRY_COUNT = "tablemigrate.retry.count"
"""Number of retry attempts (integer)."""


__all__ = [
    "ATTR_RUN_ID",
    "ATTR_SCOPE",
    "ATTR_TENANT_ID",
    "ATTR_PHASE_ID",
    "ATTR_PHASE_STATE",
    "ATTR_TAG_ID",
    "ATTR_TABLE",
    "ATTR_SOURCE_TABLE",
    "ATTR_TARGET_TABLE",
    "ATTR_BATCH_SIZE",
    "ATTR_BATCH_NUMBER",
    "ATTR_ROW_COUNT",
    "ATTR_ROWS_COPIED",
    "ATTR_ROWS_SKIPPED",
    "ATTR_VALIDATION_STAGE",
    "ATTR_RULE_COUNT",
    "ATTR_SNAPSHOT_ID",
    "ATTR_DB_SYSTEM",
    "ATTR_DB_OPERATION",
    "ATTR_ERROR_TYPE",
    "ATTR_RETRY_COUNT",
]
