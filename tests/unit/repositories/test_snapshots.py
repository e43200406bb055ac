"""
Unit tests for rollback snapshot stores.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from tablemigrate.repositories import (
    CapturedImage,
    InMemorySnapshotStore,
    SnapshotDocument,
    SnapshotStore,
)
from tests.conftest import AIOSQLITE_AVAILABLE


def make_document(
    snapshot_id: str = "snap-1",
    *,
    phase_id: str = "p1",
    scope_key: str = "tenant:acme",
    created_at: datetime | None = None,
) -> SnapshotDocument:
    return SnapshotDocument(
        snapshot_id=snapshot_id,
        phase_id=phase_id,
        scope_key=scope_key,
        run_id="run-1",
        table="customers",
        captured=[
            CapturedImage(key=[1], before={"id": 1, "code": "A", "credit": "10.50"}),
            CapturedImage(key=[2], before=None),
        ],
        created_at=created_at or datetime.now(UTC),
    )


@pytest.fixture(
    params=[
        "memory",
        pytest.param(
            "sqlite",
            marks=[
                pytest.mark.sqlite,
                pytest.mark.skipif(not AIOSQLITE_AVAILABLE, reason="aiosqlite not installed"),
            ],
        ),
    ]
)
def any_snapshot_store(request: pytest.FixtureRequest) -> SnapshotStore:
    if request.param == "memory":
        return request.getfixturevalue("snapshot_store")
    return request.getfixturevalue("sqlite_snapshot_store")


class TestSnapshotDocument:
    """Tests for the SnapshotDocument model."""

    def test_row_count_and_restored(self) -> None:
        document = make_document()

        assert document.row_count == 2
        assert not document.restored

    def test_is_frozen(self) -> None:
        document = make_document()

        with pytest.raises(ValueError):
            document.phase_id = "other"  # type: ignore[misc]

    def test_json_round_trip_keeps_missing_before_image(self) -> None:
        document = make_document()

        loaded = SnapshotDocument.model_validate_json(document.model_dump_json())

        assert loaded == document
        assert loaded.captured[1].before is None


class TestSnapshotStoreConformance:
    """Behavior every SnapshotStore must share."""

    def test_implements_protocol(self, any_snapshot_store: SnapshotStore) -> None:
        assert isinstance(any_snapshot_store, SnapshotStore)

    @pytest.mark.asyncio
    async def test_save_and_get(self, any_snapshot_store: SnapshotStore) -> None:
        document = make_document()

        await any_snapshot_store.save(document)
        loaded = await any_snapshot_store.get("snap-1")

        assert loaded is not None
        assert loaded.table == "customers"
        assert loaded.captured == document.captured
        assert loaded.restored_at is None

    @pytest.mark.asyncio
    async def test_get_missing(self, any_snapshot_store: SnapshotStore) -> None:
        assert await any_snapshot_store.get("nope") is None

    @pytest.mark.asyncio
    async def test_get_latest_picks_newest(self, any_snapshot_store: SnapshotStore) -> None:
        now = datetime.now(UTC)
        await any_snapshot_store.save(make_document("old", created_at=now - timedelta(hours=1)))
        await any_snapshot_store.save(make_document("new", created_at=now))
        await any_snapshot_store.save(make_document("other", phase_id="p2", created_at=now))

        latest = await any_snapshot_store.get_latest("p1", "tenant:acme")

        assert latest is not None
        assert latest.snapshot_id == "new"
        assert await any_snapshot_store.get_latest("p1", "global") is None

    @pytest.mark.asyncio
    async def test_mark_restored_only_once(self, any_snapshot_store: SnapshotStore) -> None:
        await any_snapshot_store.save(make_document())

        assert await any_snapshot_store.mark_restored("snap-1") is True
        assert await any_snapshot_store.mark_restored("snap-1") is False

        loaded = await any_snapshot_store.get("snap-1")
        assert loaded is not None
        assert loaded.restored

    @pytest.mark.asyncio
    async def test_mark_restored_missing(self, any_snapshot_store: SnapshotStore) -> None:
        assert await any_snapshot_store.mark_restored("nope") is False

    @pytest.mark.asyncio
    async def test_delete(self, any_snapshot_store: SnapshotStore) -> None:
        await any_snapshot_store.save(make_document())

        assert await any_snapshot_store.delete("snap-1") is True
        assert await any_snapshot_store.delete("snap-1") is False
        assert await any_snapshot_store.get("snap-1") is None


class TestInMemorySnapshotStore:
    """Tests specific to InMemorySnapshotStore."""

    @pytest.mark.asyncio
    async def test_clear(self, snapshot_store: InMemorySnapshotStore) -> None:
        await snapshot_store.save(make_document())

        await snapshot_store.clear()

        assert await snapshot_store.get("snap-1") is None
