"""
Basic Usage Example

This example demonstrates the fundamental concepts of a phased migration:
- Describing table shapes
- Declaring field mappings and a registered transform
- Ordering phases with dependencies and validation rules
- Running per tenant, and re-running without repeating work

Run with: python examples/basic_usage.py
"""

import asyncio
import logging
from datetime import date
from decimal import Decimal

from tablemigrate import (
    EngineConfig,
    FieldSpec,
    FieldType,
    Filter,
    InMemoryMigrationLedger,
    InMemorySnapshotStore,
    InMemoryTableStore,
    LoggingProgressReporter,
    MigrationPhase,
    PhaseOrchestrator,
    Row,
    RowFilter,
    TableShape,
    TransferPhaseKind,
    constant,
    direct,
    migration_tag,
    register_transform,
    row_count_parity,
    transform,
)

# =============================================================================
# Step 1: Describe the Tables
# =============================================================================
# Every table has an ordered list of typed fields and a key.
# Upserts into a table are keyed on its key fields.

CUSTOMERS = TableShape(
    "customers",
    [
        FieldSpec("id", FieldType.INTEGER, nullable=False),
        FieldSpec("name", FieldType.TEXT, nullable=False),
        FieldSpec("tenant_id", FieldType.TEXT, nullable=False),
        FieldSpec("credit_cents", FieldType.INTEGER),
    ],
    key=("id",),
)

CUSTOMERS_V2 = TableShape(
    "customers_v2",
    [
        FieldSpec("id", FieldType.INTEGER, nullable=False),
        FieldSpec("name", FieldType.TEXT, nullable=False),
        FieldSpec("credit", FieldType.DECIMAL),
        FieldSpec("grade", FieldType.TEXT, nullable=False),
    ],
    key=("id",),
)


# =============================================================================
# Step 2: Register Transforms
# =============================================================================
# Transforms are looked up by name when a mapping is compiled, so the
# compiler can check their input and output types against the tables.


@register_transform("cents_to_units", FieldType.INTEGER, FieldType.DECIMAL)
def cents_to_units(cents: int) -> Decimal:
    return Decimal(cents) / 100


# =============================================================================
# Step 3: Define the Phases
# =============================================================================
# A phase id is its ledger tag: once committed for a scope, the phase is
# skipped on every later run for that scope.

COPY_TAG = migration_tag("50100", "CustomerGrade", date(2025, 1, 20))
GOLD_TAG = migration_tag("50100", "GoldGrade", date(2025, 1, 21))

copy_customers = MigrationPhase(
    id=COPY_TAG,
    name="Copy customers with a default grade",
    order=1,
    kind=TransferPhaseKind(
        "customers",
        "customers_v2",
        rules=(
            direct("id", "id"),
            direct("name", "name"),
            transform("credit_cents", "credit", "cents_to_units"),
            constant("grade", "STANDARD"),
        ),
        filter=RowFilter.where(Filter.ne("name", "inactive")),
        scope_field="tenant_id",
    ),
    rollback_required=True,
    rules=(
        row_count_parity(
            "customers",
            "customers_v2",
            source_filter=RowFilter.where(
                Filter.ne("name", "inactive"), Filter.eq("tenant_id", "acme")
            ),
        ),
    ),
)

promote_gold = MigrationPhase(
    id=GOLD_TAG,
    name="Promote high-credit customers",
    order=2,
    kind=TransferPhaseKind(
        "customers",
        "customers_v2",
        rules=(
            direct("id", "id"),
            direct("name", "name"),
            transform("credit_cents", "credit", "cents_to_units"),
            constant("grade", "GOLD"),
        ),
        filter=RowFilter.where(Filter.gte("credit_cents", 100_000)),
        scope_field="tenant_id",
    ),
    depends_on=(COPY_TAG,),
)


# =============================================================================
# Step 4: Run the Migration
# =============================================================================


async def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    store = InMemoryTableStore([CUSTOMERS, CUSTOMERS_V2])
    await store.upsert(
        "customers",
        [
            Row(id=1, name="Ada", tenant_id="acme", credit_cents=150_000),
            Row(id=2, name="Grace", tenant_id="acme", credit_cents=2_500),
            Row(id=3, name="inactive", tenant_id="acme", credit_cents=0),
            Row(id=4, name="Linus", tenant_id="globex", credit_cents=9_900),
        ],
    )

    ledger = InMemoryMigrationLedger()
    orchestrator = PhaseOrchestrator(
        [copy_customers, promote_gold],
        store,
        ledger,
        InMemorySnapshotStore(),
        config=EngineConfig(batch_size=2, enable_metrics=False),
    )
    orchestrator.add_reporter(LoggingProgressReporter())

    print("Planned phases:", await orchestrator.plan())

    report = await orchestrator.run_per_scope("acme")
    print(f"\nFirst run succeeded: {report.overall_success}")
    for result in report.phases_run:
        print(f"  {result.phase_id}: {result.status.value}, {result.rows_transferred} row(s)")

    print("\ncustomers_v2:")
    for row in await store.all_rows("customers_v2"):
        print(f"  {row.to_dict()}")

    # A second run finds both tags in the ledger and does nothing.
    rerun = await orchestrator.run_per_scope("acme")
    print(f"\nSecond run: {[result.status.value for result in rerun.phases_run]}")

    print("\nLedger:")
    for tag in await ledger.list_tags():
        print(f"  {tag.tag_id} @ {tag.scope.key}")


if __name__ == "__main__":
    asyncio.run(main())
