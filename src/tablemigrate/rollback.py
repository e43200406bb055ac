"""
RollbackManager - Captures before-images and restores them on failure.

Before a phase mutates any row, the manager reads the current state of
every row the phase will touch and persists it as a snapshot. On failure
the snapshot is replayed in reverse capture order:

    before-image present -> upsert it back
    before-image absent  -> delete the row (the phase created it)

Restore is idempotent. The persisted restored marker is checked before
replaying, so restoring twice leaves the store as the first restore did.

A failed restore raises RestoreError, the most severe error the engine
produces. It is never retried automatically.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from tablemigrate.exceptions import RestoreError, SnapshotNotFoundError, UnknownTableError
from tablemigrate.observability import Tracer, create_tracer
from tablemigrate.observability.attributes import (
    ATTR_PHASE_ID,
    ATTR_ROW_COUNT,
    ATTR_SCOPE,
    ATTR_SNAPSHOT_ID,
    ATTR_TABLE,
)
from tablemigrate.repositories.ledger import TagScope
from tablemigrate.repositories.snapshots import CapturedImage, SnapshotDocument, SnapshotStore
from tablemigrate.rows.interface import TableStore
from tablemigrate.rows.row import Row
from tablemigrate.rows.schema import RowKey, TableShape

if TYPE_CHECKING:
    from tablemigrate.phases import MigrationPhase, RunContext

logger = logging.getLogger(__name__)

RESTORE_BATCH_SIZE = 500


@dataclass(frozen=True)
class CapturedRow:
    """
    Before-image of one row.

    Attributes:
        key: Row key in the snapshot's table
        before_image: The row as it was, or None if it did not exist
    """

    key: RowKey
    before_image: Row | None


@dataclass
class RollbackSnapshot:
    """
    Before-images of the rows a phase is about to touch.

    Attributes:
        snapshot_id: Unique snapshot identifier
        phase_id: Phase that captured it
        scope: Scope of the run
        table: Table the rows belong to
        captured: Captured rows in capture order
        run_id: Run that captured it
        created_at: Capture time
        restored: Whether a restore has completed
        whole_table: The snapshot holds every row of the table, so rows
            missing from it are deleted on restore
    """

    snapshot_id: str
    phase_id: str
    scope: TagScope
    table: str
    captured: tuple[CapturedRow, ...] = ()
    run_id: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    restored: bool = False
    whole_table: bool = False

    @property
    def row_count(self) -> int:
        return len(self.captured)


class RollbackManager:
    """
    Snapshots and restores table rows around a phase.

    Example:
        >>> manager = RollbackManager(store, InMemorySnapshotStore())
        >>> snapshot = await manager.snapshot(phase, "customers_v2", keys, ctx)
        >>> try:
        ...     await run_transfer()
        ... except TransferError:
        ...     await manager.restore(snapshot)
        ... else:
        ...     await manager.discard(snapshot)
    """

    def __init__(
        self,
        store: TableStore,
        snapshot_store: SnapshotStore,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._store = store
        self._snapshot_store = snapshot_store

    @property
    def snapshot_store(self) -> SnapshotStore:
        return self._snapshot_store

    async def snapshot(
        self,
        phase: MigrationPhase,
        table: str,
        affected_keys: Iterable[RowKey],
        ctx: RunContext,
        *,
        whole_table: bool = False,
    ) -> RollbackSnapshot:
        """
        Capture and persist before-images of ``affected_keys``.

        The snapshot is durable when this returns; callers mutate rows only
        afterwards. Duplicate keys are captured once. Pass ``whole_table``
        when ``affected_keys`` are all the keys of the table; restore then
        also deletes rows the phase inserted under keys it did not report.

        Raises:
            UnknownTableError: If the store does not hold ``table``
        """
        with self._tracer.span(
            "tablemigrate.rollback.snapshot",
            {ATTR_PHASE_ID: phase.id, ATTR_TABLE: table, ATTR_SCOPE: ctx.scope.key},
        ) as span:
            shape = await self._require_shape(table)
            captured: list[CapturedRow] = []
            seen: set[RowKey] = set()
            for key in affected_keys:
                key = tuple(key)
                if key in seen:
                    continue
                seen.add(key)
                before_image = await self._store.get(table, key)
                captured.append(CapturedRow(key=key, before_image=before_image))

            snapshot = RollbackSnapshot(
                snapshot_id=str(uuid.uuid4()),
                phase_id=phase.id,
                scope=ctx.scope,
                table=table,
                captured=tuple(captured),
                run_id=ctx.run_id,
                whole_table=whole_table,
            )
            await self._snapshot_store.save(self._to_document(shape, snapshot))

            if span is not None:
                span.set_attribute(ATTR_SNAPSHOT_ID, snapshot.snapshot_id)
                span.set_attribute(ATTR_ROW_COUNT, snapshot.row_count)
            logger.info(
                "Captured snapshot %s for phase %s: %d row(s) of %s",
                snapshot.snapshot_id,
                phase.id,
                snapshot.row_count,
                table,
            )
            return snapshot

    async def restore(self, snapshot: RollbackSnapshot) -> None:
        """
        Put every captured row back the way it was.

        Replays in reverse capture order. Restoring an already restored
        snapshot does nothing.

        Raises:
            RestoreError: If the snapshot is missing or any write fails
        """
        with self._tracer.span(
            "tablemigrate.rollback.restore",
            {
                ATTR_SNAPSHOT_ID: snapshot.snapshot_id,
                ATTR_PHASE_ID: snapshot.phase_id,
                ATTR_TABLE: snapshot.table,
                ATTR_ROW_COUNT: snapshot.row_count,
            },
        ):
            try:
                document = await self._snapshot_store.get(snapshot.snapshot_id)
                if document is None:
                    raise RestoreError(
                        snapshot.snapshot_id,
                        "snapshot is not in the snapshot store",
                        phase_id=snapshot.phase_id,
                        tenant_id=snapshot.scope.tenant_id,
                    )
                if document.restored or snapshot.restored:
                    snapshot.restored = True
                    logger.info(
                        "Snapshot %s already restored, nothing to do", snapshot.snapshot_id
                    )
                    return

                await self._replay(snapshot)
                await self._snapshot_store.mark_restored(snapshot.snapshot_id)
            except RestoreError as e:
                logger.critical("Restore failed: %s", e)
                raise
            except Exception as e:
                error = RestoreError(
                    snapshot.snapshot_id,
                    f"{type(e).__name__}: {e}",
                    phase_id=snapshot.phase_id,
                    tenant_id=snapshot.scope.tenant_id,
                )
                logger.critical("Restore failed: %s", error)
                raise error from e

            snapshot.restored = True
            logger.info(
                "Restored snapshot %s for phase %s: %d row(s) of %s",
                snapshot.snapshot_id,
                snapshot.phase_id,
                snapshot.row_count,
                snapshot.table,
            )

    async def discard(self, snapshot: RollbackSnapshot) -> None:
        """Drop a snapshot once its phase has committed."""
        with self._tracer.span(
            "tablemigrate.rollback.discard",
            {ATTR_SNAPSHOT_ID: snapshot.snapshot_id, ATTR_PHASE_ID: snapshot.phase_id},
        ):
            await self._snapshot_store.delete(snapshot.snapshot_id)
            logger.debug("Discarded snapshot %s", snapshot.snapshot_id)

    async def load(self, phase_id: str, scope: TagScope) -> RollbackSnapshot:
        """
        Load the most recent kept snapshot for a phase and scope.

        Used for operator rollback after a cancelled or interrupted run.

        Raises:
            SnapshotNotFoundError: If no snapshot is kept
            UnknownTableError: If the snapshot's table is no longer in the store
        """
        document = await self._snapshot_store.get_latest(phase_id, scope.key)
        if document is None:
            raise SnapshotNotFoundError(phase_id, scope.key)
        shape = await self._require_shape(document.table)
        return self._from_document(shape, document)

    async def _replay(self, snapshot: RollbackSnapshot) -> None:
        """Apply captured images in reverse, batching consecutive upserts."""
        pending: list[Row] = []
        for captured in reversed(snapshot.captured):
            if captured.before_image is None:
                if pending:
                    await self._store.upsert(snapshot.table, pending)
                    pending = []
                await self._store.delete(snapshot.table, captured.key)
                continue
            pending.append(captured.before_image)
            if len(pending) >= RESTORE_BATCH_SIZE:
                await self._store.upsert(snapshot.table, pending)
                pending = []
        if pending:
            await self._store.upsert(snapshot.table, pending)

        if snapshot.whole_table:
            await self._delete_uncaptured(snapshot)

    async def _delete_uncaptured(self, snapshot: RollbackSnapshot) -> None:
        """Delete rows whose keys were not in the table when it was captured."""
        shape = await self._require_shape(snapshot.table)
        captured_keys = {captured.key for captured in snapshot.captured}
        inserted: list[RowKey] = []
        async with aclosing(self._store.find(snapshot.table)) as rows:
            async for row in rows:
                key = shape.key_of(row)
                if key not in captured_keys:
                    inserted.append(key)
        for key in inserted:
            await self._store.delete(snapshot.table, key)
        if inserted:
            logger.info(
                "Deleted %d row(s) of %s inserted after snapshot %s",
                len(inserted),
                snapshot.table,
                snapshot.snapshot_id,
            )

    async def _require_shape(self, table: str) -> TableShape:
        shape = await self._store.get_shape(table)
        if shape is None:
            raise UnknownTableError(table)
        return shape

    @staticmethod
    def _to_document(shape: TableShape, snapshot: RollbackSnapshot) -> SnapshotDocument:
        images = []
        for captured in snapshot.captured:
            key_values: dict[str, Any] = shape.encode(
                dict(zip(shape.key, captured.key, strict=True))
            )
            before = shape.encode(captured.before_image) if captured.before_image else None
            images.append(CapturedImage(key=[key_values[k] for k in shape.key], before=before))
        return SnapshotDocument(
            snapshot_id=snapshot.snapshot_id,
            phase_id=snapshot.phase_id,
            scope_key=snapshot.scope.key,
            run_id=snapshot.run_id,
            table=snapshot.table,
            captured=images,
            created_at=snapshot.created_at,
            whole_table=snapshot.whole_table,
        )

    @staticmethod
    def _from_document(shape: TableShape, document: SnapshotDocument) -> RollbackSnapshot:
        captured = tuple(
            CapturedRow(
                key=shape.decode_key(image.key),
                before_image=Row(shape.decode(image.before)) if image.before is not None else None,
            )
            for image in document.captured
        )
        return RollbackSnapshot(
            snapshot_id=document.snapshot_id,
            phase_id=document.phase_id,
            scope=TagScope.from_key(document.scope_key),
            table=document.table,
            captured=captured,
            run_id=document.run_id,
            created_at=document.created_at,
            restored=document.restored,
            whole_table=document.whole_table,
        )


__all__ = ["CapturedRow", "RollbackSnapshot", "RollbackManager"]
