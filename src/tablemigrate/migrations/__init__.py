"""
SQL schema support for tablemigrate.

Provides the SQL templates for the engine's own bookkeeping tables and a
generator that turns a TableShape into a CREATE TABLE statement.

Tables:
    - migration_tags: The migration ledger
    - rollback_snapshots: Durable rollback snapshots

Supported backends:
    - postgresql (default)
    - sqlite

Usage:
    from tablemigrate.migrations import get_schema, get_all_schemas

    ledger_sql = get_schema("migration_tags")
    all_sqlite_sql = get_all_schemas(backend="sqlite")

    async with aiosqlite.connect(":memory:") as db:
        await db.executescript(get_all_schemas(backend="sqlite"))
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    from tablemigrate.rows.schema import TableShape

SchemaName = Literal["migration_tags", "rollback_snapshots", "all"]

BackendName = Literal["postgresql", "sqlite"]

_TEMPLATES_DIR = Path(__file__).parent / "templates"


def _get_backend_templates_dir(backend: BackendName) -> Path:
    if backend == "postgresql":
        return _TEMPLATES_DIR
    return _TEMPLATES_DIR / backend


def get_schema(name: SchemaName, backend: BackendName = "postgresql") -> str:
    """
    Load a SQL schema template by name and backend.

    Args:
        name: "migration_tags", "rollback_snapshots", or "all"
        backend: "postgresql" (default) or "sqlite"

    Returns:
        SQL schema definition as a string

    Raises:
        ValueError: If the schema is not available for the specified backend
    """
    if name == "all":
        return get_all_schemas(backend)

    path = _get_backend_templates_dir(backend) / f"{name}.sql"
    if not path.exists():
        raise ValueError(
            f"Schema '{name}' is not available for backend '{backend}'. "
            f"Available schemas: {list_schemas(backend)}"
        )
    return path.read_text()


def get_all_schemas(backend: BackendName = "postgresql") -> str:
    """
    Load every schema template for a backend, concatenated.

    Example:
        >>> async with aiosqlite.connect(":memory:") as db:
        ...     await db.executescript(get_all_schemas(backend="sqlite"))
    """
    names = list_schemas(backend)
    return "\n".join(get_schema(name, backend) for name in names)  # type: ignore[arg-type]


def list_schemas(backend: BackendName = "postgresql") -> list[str]:
    """List the schema templates available for a backend."""
    templates_dir = _get_backend_templates_dir(backend)
    if not templates_dir.exists():
        return []
    return sorted(p.stem for p in templates_dir.glob("*.sql"))


def list_backends() -> list[str]:
    """List all database backends that have schema templates."""
    backends = ["postgresql"]
    for subdir in _TEMPLATES_DIR.iterdir():
        if subdir.is_dir() and list(subdir.glob("*.sql")):
            backends.append(subdir.name)
    return sorted(backends)


# Column types per dialect, keyed by FieldType value
POSTGRESQL_TYPE_MAP: dict[str, str] = {
    "text": "TEXT",
    "integer": "BIGINT",
    "float": "DOUBLE PRECISION",
    "decimal": "NUMERIC",
    "boolean": "BOOLEAN",
    "date": "DATE",
    "datetime": "TIMESTAMP WITH TIME ZONE",
    "uuid": "UUID",
    "json": "JSONB",
}

SQLITE_TYPE_MAP: dict[str, str] = {
    "text": "TEXT",
    "integer": "INTEGER",
    "float": "REAL",
    "decimal": "TEXT",
    "boolean": "INTEGER",
    "date": "TEXT",
    "datetime": "TEXT",
    "uuid": "TEXT",
    "json": "TEXT",
}


def generate_table_schema(
    shape: TableShape,
    dialect: BackendName = "postgresql",
    if_not_exists: bool = True,
) -> str:
    """
    Generate CREATE TABLE SQL for a table shape.

    Args:
        shape: The table shape
        dialect: Database dialect ('postgresql' or 'sqlite')
        if_not_exists: Include IF NOT EXISTS clause (default True)

    Returns:
        CREATE TABLE SQL statement

    Example:
        >>> print(generate_table_schema(customers, dialect="sqlite"))
        CREATE TABLE IF NOT EXISTS customers (
            id INTEGER NOT NULL,
            name TEXT,
            PRIMARY KEY (id)
        );
    """
    type_map = POSTGRESQL_TYPE_MAP if dialect == "postgresql" else SQLITE_TYPE_MAP
    columns = []
    for spec in shape.fields:
        column = f"{spec.field_id} {type_map[spec.type.value]}"
        if not spec.nullable or spec.field_id in shape.key:
            column += " NOT NULL"
        columns.append(column)
    columns.append(f"PRIMARY KEY ({', '.join(shape.key)})")

    exists_clause = "IF NOT EXISTS " if if_not_exists else ""
    columns_sql = ",\n    ".join(columns)
    return f"""CREATE TABLE {exists_clause}{shape.name} (
    {columns_sql}
);"""


__all__ = [
    "SchemaName",
    "BackendName",
    "get_schema",
    "get_all_schemas",
    "list_schemas",
    "list_backends",
    "generate_table_schema",
    "POSTGRESQL_TYPE_MAP",
    "SQLITE_TYPE_MAP",
]
