"""Tests for the in-memory and JSON cell stores."""

from datetime import datetime, timezone
from pathlib import Path

import pytest

from gridconquest.rasterizer import build_cell
from gridconquest.schemas import CellHistoryEntry, GridCoordinate, Interaction, TerritoryCell
from gridconquest.store import (
    CellConflictError,
    InMemoryCellStore,
    JsonCellStore,
    StoreNotInitializedError,
    build_territory_chunks,
    chunked,
)


END = datetime(2024, 5, 10, 9, 0, tzinfo=timezone.utc)


def make_cell(x: int, y: int = 0, user_id: str = "u1", activity_id: str = "a1") -> TerritoryCell:
    return build_cell(
        GridCoordinate(x, y),
        user_id=user_id,
        activity_id=activity_id,
        conquered_at=END,
        expiration_days=7,
    )


def make_history(cell: TerritoryCell, interaction: Interaction = Interaction.CONQUEST) -> CellHistoryEntry:
    return CellHistoryEntry(
        cell_id=cell.id,
        user_id=cell.user_id,
        activity_id=cell.activity_id,
        interaction=interaction,
        timestamp=END,
    )


@pytest.fixture(params=["memory", "json"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryCellStore()
    return JsonCellStore(tmp_path / "territory")


@pytest.mark.asyncio
async def test_absent_cell_reads_as_version_zero(store):
    await store.initialize()

    snapshot = await store.read_cell("1_2")

    assert snapshot.record is None
    assert snapshot.version == 0
    assert not snapshot.exists
    assert await store.get_cell("1_2") is None


@pytest.mark.asyncio
async def test_commit_then_read_round_trip(store):
    await store.initialize()
    cell = make_cell(1)

    version = await store.commit_cell(cell, make_history(cell), expected_version=0)
    snapshot = await store.read_cell(cell.id)

    assert version == 1
    assert snapshot.version == 1
    assert snapshot.record == cell


@pytest.mark.asyncio
async def test_stale_version_raises_conflict_and_writes_nothing(store):
    await store.initialize()
    first = make_cell(1, user_id="u1")
    second = make_cell(1, user_id="u2", activity_id="a2")

    await store.commit_cell(first, make_history(first), expected_version=0)

    with pytest.raises(CellConflictError) as excinfo:
        await store.commit_cell(second, make_history(second), expected_version=0)

    assert excinfo.value.expected_version == 0
    assert excinfo.value.actual_version == 1
    assert (await store.get_cell(first.id)).user_id == "u1"
    assert len(await store.get_history(first.id)) == 1


@pytest.mark.asyncio
async def test_history_is_append_only_in_order(store):
    await store.initialize()
    first = make_cell(3, user_id="u1")
    second = make_cell(3, user_id="u2", activity_id="a2")

    await store.commit_cell(first, make_history(first), expected_version=0)
    await store.commit_cell(second, make_history(second, Interaction.STEAL), expected_version=1)

    history = await store.get_history(first.id)

    assert [entry.interaction for entry in history] == [Interaction.CONQUEST, Interaction.STEAL]
    assert [entry.user_id for entry in history] == ["u1", "u2"]
    assert await store.get_history("9_9") == []


@pytest.mark.asyncio
async def test_get_cells_skips_absent_ids(store):
    await store.initialize()
    for x in range(3):
        cell = make_cell(x)
        await store.commit_cell(cell, make_history(cell), expected_version=0)

    found = await store.get_cells(["0_0", "2_0", "7_7"])

    assert set(found) == {"0_0", "2_0"}


@pytest.mark.asyncio
async def test_activity_territories_are_chunked_in_order(store):
    await store.initialize()
    cells = [make_cell(x) for x in range(450)]

    chunk_count = await store.save_activity_territories("a1", cells)
    restored = await store.get_activity_territories("a1")

    assert chunk_count == 3
    assert [cell.id for cell in restored] == [cell.id for cell in cells]
    assert await store.get_activity_territories("missing") == []


@pytest.mark.asyncio
async def test_saving_activity_territories_replaces_previous_chunks(store):
    await store.initialize()

    await store.save_activity_territories("a1", [make_cell(x) for x in range(450)])
    await store.save_activity_territories("a1", [make_cell(x) for x in range(5)])

    assert len(await store.get_activity_territories("a1")) == 5


@pytest.mark.asyncio
async def test_multi_get_never_exceeds_batch_limit():
    store = InMemoryCellStore(max_batch_size=30)
    ids = [f"{x}_0" for x in range(65)]

    await store.get_cells(ids + ids[:10])

    assert [len(batch) for batch in store.batch_queries] == [30, 30, 5]


@pytest.mark.asyncio
async def test_in_memory_reads_return_copies():
    store = InMemoryCellStore()
    cell = make_cell(1)
    await store.commit_cell(cell, make_history(cell), expected_version=0)

    snapshot = await store.read_cell(cell.id)
    snapshot.record.user_id = "tampered"

    assert (await store.get_cell(cell.id)).user_id == "u1"


@pytest.mark.asyncio
async def test_json_store_persists_across_instances(tmp_path):
    cell = make_cell(4, user_id="u1")
    writer = JsonCellStore(tmp_path)
    await writer.initialize()
    await writer.commit_cell(cell, make_history(cell), expected_version=0)
    await writer.save_activity_territories("a1", [cell])
    await writer.close()

    reader = JsonCellStore(tmp_path)
    await reader.initialize()
    snapshot = await reader.read_cell(cell.id)

    assert snapshot.version == 1
    assert snapshot.record == cell
    assert (tmp_path / "cells" / f"{cell.id}.json").exists()
    assert (tmp_path / "activities" / "a1" / "chunk_00000.json").exists()
    assert [c.id for c in await reader.get_activity_territories("a1")] == [cell.id]


@pytest.mark.asyncio
async def test_postgres_store_requires_initialize():
    pytest.importorskip("asyncpg")
    from gridconquest.store import PostgresCellStore

    store = PostgresCellStore("postgresql://localhost/unused")

    with pytest.raises(StoreNotInitializedError):
        await store.read_cell("1_1")


def test_chunked_splits_and_rejects_non_positive_size():
    assert list(chunked([1, 2, 3, 4, 5], 2)) == [[1, 2], [3, 4], [5]]
    assert list(chunked([], 3)) == []

    with pytest.raises(ValueError):
        list(chunked([1], 0))


def test_build_territory_chunks_counts_cells():
    chunks = build_territory_chunks([make_cell(x) for x in range(5)], 2)

    assert [chunk.order for chunk in chunks] == [0, 1, 2]
    assert [chunk.cell_count for chunk in chunks] == [2, 2, 1]


@pytest.mark.asyncio
async def test_json_store_leaves_record_unchanged_when_history_append_fails(tmp_path, monkeypatch):
    store = JsonCellStore(tmp_path)
    await store.initialize()
    cell = make_cell(5)
    original_open = Path.open

    def failing_open(self, *args, **kwargs):
        if self.suffix == ".jsonl":
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", failing_open)
    with pytest.raises(OSError):
        await store.commit_cell(cell, make_history(cell), expected_version=0)
    monkeypatch.undo()

    snapshot = await store.read_cell(cell.id)
    assert snapshot.record is None
    assert snapshot.version == 0
    assert await store.get_history(cell.id) == []
