"""
Observability utilities for tablemigrate.

Provides the injectable Tracer abstraction and standard attribute names.
OpenTelemetry is an optional dependency; everything here degrades to no-ops
when it is not installed.

Example:
    >>> from tablemigrate.observability import create_tracer
    >>>
    >>> class MyStore:
    ...     def __init__(self, enable_tracing: bool = True):
    ...         self._tracer = create_tracer(__name__, enable_tracing)
    ...         self._enable_tracing = self._tracer.enabled
"""

from tablemigrate.observability.attributes import (
    ATTR_BATCH_NUMBER,
    ATTR_BATCH_SIZE,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_ERROR_TYPE,
    ATTR_PHASE_ID,
    ATTR_PHASE_STATE,
    ATTR_RETRY_COUNT,
    ATTR_ROW_COUNT,
    ATTR_ROWS_COPIED,
    ATTR_ROWS_SKIPPED,
    ATTR_RULE_COUNT,
    ATTR_RUN_ID,
    ATTR_SCOPE,
    ATTR_SNAPSHOT_ID,
    ATTR_SOURCE_TABLE,
    ATTR_TABLE,
    ATTR_TAG_ID,
    ATTR_TARGET_TABLE,
    ATTR_TENANT_ID,
    ATTR_VALIDATION_STAGE,
)
from tablemigrate.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    Tracer,
    create_tracer,
)
from tablemigrate.observability.tracing import (
    OTEL_AVAILABLE,
    get_tracer,
    should_trace,
)

__all__ = [
    "OTEL_AVAILABLE",
    "get_tracer",
    "should_trace",
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "create_tracer",
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
