"""
Durable state for the engine: the migration ledger and rollback snapshots.

Each has a protocol and three implementations (in-memory, SQLite,
PostgreSQL). The SQL backends expect the tables from
``tablemigrate.migrations.get_all_schemas``.
"""

from tablemigrate.repositories.ledger import (
    InMemoryMigrationLedger,
    MigrationLedger,
    MigrationTag,
    PostgreSQLMigrationLedger,
    SQLiteMigrationLedger,
    TagScope,
    migration_tag,
)
from tablemigrate.repositories.snapshots import (
    CapturedImage,
    InMemorySnapshotStore,
    PostgreSQLSnapshotStore,
    SnapshotDocument,
    SnapshotStore,
    SQLiteSnapshotStore,
)

__all__ = [
    # Ledger
    "TagScope",
    "MigrationTag",
    "migration_tag",
    "MigrationLedger",
    "InMemoryMigrationLedger",
    "SQLiteMigrationLedger",
    "PostgreSQLMigrationLedger",
    # Snapshots
    "CapturedImage",
    "SnapshotDocument",
    "SnapshotStore",
    "InMemorySnapshotStore",
    "SQLiteSnapshotStore",
    "PostgreSQLSnapshotStore",
]
