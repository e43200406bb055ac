"""
Shared test fixtures for tablemigrate tests.

Provides table shapes, row factories and store doubles used across the
unit tests. These live in a regular module (rather than conftest.py) so
they can be imported directly by tests.
"""

from tests.fixtures.stores import (
    CursorTrackingStore,
    FailingUpsertStore,
    FlakyUpsertStore,
    SlowUpsertStore,
)
from tests.fixtures.tables import (
    CUSTOMERS,
    CUSTOMERS_V2,
    LEGACY_ORDERS,
    ORDERS,
    make_customers,
    make_orders,
    scenario_a_rows,
)

__all__ = [
    # Tables
    "CUSTOMERS",
    "CUSTOMERS_V2",
    "LEGACY_ORDERS",
    "ORDERS",
    "make_customers",
    "make_orders",
    "scenario_a_rows",
    # Stores
    "CursorTrackingStore",
    "FailingUpsertStore",
    "FlakyUpsertStore",
    "SlowUpsertStore",
]
