"""
Shared pytest fixtures for the tablemigrate tests.

This module provides:
- Store fixtures (in_memory_store, populated_store)
- Ledger and snapshot store fixtures
- A fresh transform registry per test
- SQLite fixtures (sqlite_connection, sqlite_table_store, sqlite_ledger, ...)
- OpenTelemetry metrics fixtures (metric_reader)
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import TYPE_CHECKING, Any

import pytest
import pytest_asyncio

from tablemigrate.mapping import TransformRegistry
from tablemigrate.migrations import get_schema
from tablemigrate.repositories import (
    InMemoryMigrationLedger,
    InMemorySnapshotStore,
    SQLiteMigrationLedger,
    SQLiteSnapshotStore,
)
from tablemigrate.rows import InMemoryTableStore, SQLiteTableStore
from tests.fixtures import (
    CUSTOMERS,
    CUSTOMERS_V2,
    LEGACY_ORDERS,
    ORDERS,
    make_customers,
)

if TYPE_CHECKING:
    import aiosqlite

# ============================================================================
# SQLite Availability Check
# ============================================================================

AIOSQLITE_AVAILABLE = False
try:
    import aiosqlite

    AIOSQLITE_AVAILABLE = True
except ImportError:
    aiosqlite = None  # type: ignore[assignment]


# ============================================================================
# OpenTelemetry Metrics Availability Check
# ============================================================================

OTEL_METRICS_AVAILABLE = False
try:
    from opentelemetry import metrics as otel_metrics
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import InMemoryMetricReader

    OTEL_METRICS_AVAILABLE = True
except ImportError:
    otel_metrics = None  # type: ignore[assignment]
    MeterProvider = None  # type: ignore[assignment, misc]
    InMemoryMetricReader = None  # type: ignore[assignment, misc]


# ============================================================================
# Skip Conditions
# ============================================================================

skip_if_no_aiosqlite = pytest.mark.skipif(not AIOSQLITE_AVAILABLE, reason="aiosqlite not installed")

skip_if_no_otel_metrics = pytest.mark.skipif(
    not OTEL_METRICS_AVAILABLE, reason="opentelemetry-sdk not installed"
)


# ============================================================================
# In-Memory Fixtures
# ============================================================================


@pytest.fixture
def in_memory_store() -> InMemoryTableStore:
    """
    Provide an empty in-memory store with the test tables created.

    Returns:
        InMemoryTableStore holding customers, customers_v2, legacy_orders and orders
    """
    return InMemoryTableStore(
        [CUSTOMERS, CUSTOMERS_V2, LEGACY_ORDERS, ORDERS],
        enable_tracing=False,
    )


@pytest_asyncio.fixture
async def populated_store(in_memory_store: InMemoryTableStore) -> InMemoryTableStore:
    """Provide an in-memory store with 25 customers of tenant ``acme``."""
    await in_memory_store.upsert("customers", make_customers(25))
    return in_memory_store


@pytest.fixture
def ledger() -> InMemoryMigrationLedger:
    return InMemoryMigrationLedger(enable_tracing=False)


@pytest.fixture
def snapshot_store() -> InMemorySnapshotStore:
    return InMemorySnapshotStore(enable_tracing=False)


@pytest.fixture
def registry() -> TransformRegistry:
    """Provide a fresh, empty transform registry."""
    return TransformRegistry()


# ============================================================================
# OpenTelemetry Metrics Fixtures
# ============================================================================


@pytest.fixture
def metric_reader() -> Any:
    """
    Provide an InMemoryMetricReader for testing metrics.

    Creates a fresh metric reader and meter provider for each test and
    resets the cached tablemigrate meter around it.

    Yields:
        InMemoryMetricReader: Reader for inspecting collected metrics.
    """
    if not OTEL_METRICS_AVAILABLE:
        pytest.skip("opentelemetry-sdk not installed")

    from tablemigrate.metrics import reset_meter

    reader = InMemoryMetricReader()
    provider = MeterProvider(metric_readers=[reader])

    from opentelemetry.metrics import _internal as otel_metrics_internal

    def _allow_provider_override() -> None:
        # The OTel global meter provider is set-once; re-arm it per test.
        otel_metrics_internal._METER_PROVIDER_SET_ONCE._done = False

    reset_meter()
    old_provider = otel_metrics.get_meter_provider()
    _allow_provider_override()
    otel_metrics.set_meter_provider(provider)

    yield reader

    _allow_provider_override()
    otel_metrics.set_meter_provider(old_provider)
    reset_meter()


# ============================================================================
# SQLite Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def sqlite_connection() -> AsyncGenerator[Any, None]:
    """
    Provide a raw aiosqlite connection to an in-memory database.

    Creates a fresh in-memory SQLite database for each test.
    The connection is automatically closed after the test.

    Yields:
        aiosqlite.Connection: Raw database connection
    """
    if not AIOSQLITE_AVAILABLE:
        pytest.skip("aiosqlite not installed")

    conn = await aiosqlite.connect(":memory:")

    yield conn

    await conn.close()


@pytest_asyncio.fixture
async def sqlite_table_store(
    sqlite_connection: aiosqlite.Connection,
) -> SQLiteTableStore:
    """
    Provide a SQLiteTableStore with the test tables created.

    Args:
        sqlite_connection: Raw aiosqlite connection fixture

    Returns:
        SQLiteTableStore instance
    """
    store = SQLiteTableStore(sqlite_connection, enable_tracing=False)
    for shape in (CUSTOMERS, CUSTOMERS_V2, LEGACY_ORDERS, ORDERS):
        await store.create_table(shape)
    return store


@pytest_asyncio.fixture
async def sqlite_ledger(sqlite_connection: aiosqlite.Connection) -> SQLiteMigrationLedger:
    """Provide a SQLiteMigrationLedger with its table created."""
    await sqlite_connection.executescript(get_schema("migration_tags", backend="sqlite"))
    await sqlite_connection.commit()
    return SQLiteMigrationLedger(sqlite_connection, enable_tracing=False)


@pytest_asyncio.fixture
async def sqlite_snapshot_store(
    sqlite_connection: aiosqlite.Connection,
) -> SQLiteSnapshotStore:
    """Provide a SQLiteSnapshotStore with its table created."""
    await sqlite_connection.executescript(get_schema("rollback_snapshots", backend="sqlite"))
    await sqlite_connection.commit()
    return SQLiteSnapshotStore(sqlite_connection, enable_tracing=False)
