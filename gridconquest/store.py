"""
CellStore interface for pluggable territory storage backends.

This module provides the abstract CellStore interface and three concrete
implementations for storing cell ownership records. The engine never talks to
a database directly; the store is injected into the orchestrator.

Three included implementations:
1. InMemoryCellStore - Dict-based storage, data lost on exit (testing, prototyping)
2. JsonCellStore - File-based storage, one JSON document per cell (small deployments)
3. PostgresCellStore - Database storage with versioned rows (production)

Key responsibilities:
- Point lookups of a cell record together with its version
- Multi-id lookups, chunked to the backend's per-query limit (default 30 ids)
- Atomic per-cell commit of (record, history entry) guarded by the version read
- Append-only cell history
- Activity-scoped territory chunks for client mini-maps

Concurrency contract (optimistic):
    snapshot = await store.read_cell(cell_id)
    ... decide using snapshot.record ...
    await store.commit_cell(record, history, expected_version=snapshot.version)

commit_cell raises CellConflictError when another writer committed the cell after
the read. The caller re-reads and re-decides; nothing is written on conflict.
Version 0 means "no record yet", so two first-time claimants cannot both insert.

Usage pattern:
    store = InMemoryCellStore()  # or JsonCellStore(), PostgresCellStore()
    await store.initialize()
    ...
    await store.close()
"""

import asyncio
import json
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, TypeVar

from .config import Config
from .schemas import ActivityTerritoryChunk, CellHistoryEntry, TerritoryCell

try:  # Optional dependency (only needed for PostgresCellStore)
    import asyncpg
except ImportError:  # pragma: no cover - asyncpg may not be installed for json/memory usage
    asyncpg = None


T = TypeVar("T")


# =============================
# Module-level Exceptions
# =============================

class StoreError(Exception):
    """Base class for failures reading or writing the cell store."""


class StoreNotInitializedError(StoreError):
    """Raised when a store is used before initialize() or after close()."""

    def __init__(self, store_name: str) -> None:
        super().__init__(
            f"{store_name} is not initialized. Call `await store.initialize()` before use."
        )


class CellConflictError(StoreError):
    """Raised when a cell changed between read_cell() and commit_cell()."""

    def __init__(self, *, cell_id: str, expected_version: int, actual_version: int) -> None:
        self.cell_id = cell_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Cell {cell_id} changed concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )


@dataclass(frozen=True)
class CellSnapshot:
    """A cell record as read, plus the version to commit against."""

    cell_id: str
    record: Optional[TerritoryCell]
    version: int = 0

    @property
    def exists(self) -> bool:
        return self.record is not None


def chunked(items: Sequence[T], size: int) -> Iterator[List[T]]:
    """Yield consecutive slices of ``items`` of at most ``size`` elements."""
    if size <= 0:
        raise ValueError(f"Chunk size must be positive (got {size})")
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


def build_territory_chunks(
    cells: Sequence[TerritoryCell], chunk_size: int
) -> List[ActivityTerritoryChunk]:
    return [
        ActivityTerritoryChunk(order=index, cells=chunk, cell_count=len(chunk))
        for index, chunk in enumerate(chunked(cells, chunk_size))
    ]


class CellStore(ABC):
    """Abstract base class for territory cell persistence.

    All methods are async so database and file backends never block the event loop;
    for InMemoryCellStore the async is a no-op.

    Method categories:
    1. Lifecycle: initialize(), close()
    2. Reads: read_cell(), get_cell(), get_cells()
    3. Atomic writes: commit_cell()
    4. History: get_history()
    5. Activity territories: save_activity_territories(), get_activity_territories()

    Subclasses implement _fetch_batch(); get_cells() handles chunking to
    max_batch_size so no backend query ever exceeds the per-query id limit.
    """

    def __init__(
        self,
        *,
        max_batch_size: Optional[int] = None,
        territory_chunk_size: Optional[int] = None,
    ):
        self.max_batch_size = max_batch_size or Config.STORE_BATCH_SIZE
        self.territory_chunk_size = territory_chunk_size or Config.ACTIVITY_TERRITORY_CHUNK_SIZE

    @abstractmethod
    async def initialize(self) -> None:
        """Set up connections, tables or directories. Safe to call more than once."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release connections and file handles."""
        pass

    @abstractmethod
    async def read_cell(self, cell_id: str) -> CellSnapshot:
        """Read one cell record and its version (version 0 when absent).

        Raises:
            StoreError: If the read fails
        """
        pass

    async def get_cell(self, cell_id: str) -> Optional[TerritoryCell]:
        snapshot = await self.read_cell(cell_id)
        return snapshot.record

    async def get_cells(self, cell_ids: Sequence[str]) -> Dict[str, TerritoryCell]:
        """Look up many cells at once; absent ids are simply missing from the result."""
        found: Dict[str, TerritoryCell] = {}
        unique_ids = list(dict.fromkeys(cell_ids))
        for batch in chunked(unique_ids, self.max_batch_size):
            found.update(await self._fetch_batch(batch))
        return found

    @abstractmethod
    async def _fetch_batch(self, cell_ids: List[str]) -> Dict[str, TerritoryCell]:
        """Fetch at most max_batch_size cells in one backend query."""
        pass

    @abstractmethod
    async def commit_cell(
        self,
        cell: TerritoryCell,
        history: CellHistoryEntry,
        *,
        expected_version: int,
    ) -> int:
        """Atomically write a cell record and its history entry.

        Args:
            cell: New ownership record
            history: History entry appended in the same unit of work
            expected_version: Version returned by the read this decision was based on

        Returns:
            The new version of the cell

        Raises:
            CellConflictError: If the stored version differs from expected_version
            StoreError: If the write fails
        """
        pass

    @abstractmethod
    async def get_history(self, cell_id: str) -> List[CellHistoryEntry]:
        """History entries for a cell, oldest first."""
        pass

    @abstractmethod
    async def save_activity_territories(
        self, activity_id: str, cells: Sequence[TerritoryCell]
    ) -> int:
        """Replace the stored territory chunks of an activity. Returns the chunk count."""
        pass

    @abstractmethod
    async def get_activity_territories(self, activity_id: str) -> List[TerritoryCell]:
        """All cells stored for an activity, in chunk order."""
        pass


class InMemoryCellStore(CellStore):
    """In-memory cell store using Python dicts (no database, no files).

    Storage structure:
    - cells: Dict[cell_id, (version, TerritoryCell)]
    - history: Dict[cell_id, List[CellHistoryEntry]]
    - activity_territories: Dict[activity_id, List[ActivityTerritoryChunk]]
    - batch_queries: every id list passed to _fetch_batch (inspection in tests)

    Perfect for unit tests and prototyping. Data is lost when the process exits and
    is not shared across processes.
    """

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.cells: Dict[str, tuple[int, TerritoryCell]] = {}
        self.history: Dict[str, List[CellHistoryEntry]] = {}
        self.activity_territories: Dict[str, List[ActivityTerritoryChunk]] = {}
        self.batch_queries: List[List[str]] = []
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        # Data is kept so callers can inspect it after a run
        pass

    async def read_cell(self, cell_id: str) -> CellSnapshot:
        entry = self.cells.get(cell_id)
        if entry is None:
            return CellSnapshot(cell_id=cell_id, record=None, version=0)
        version, record = entry
        return CellSnapshot(cell_id=cell_id, record=record.model_copy(deep=True), version=version)

    async def _fetch_batch(self, cell_ids: List[str]) -> Dict[str, TerritoryCell]:
        self.batch_queries.append(list(cell_ids))
        return {
            cell_id: self.cells[cell_id][1].model_copy(deep=True)
            for cell_id in cell_ids
            if cell_id in self.cells
        }

    async def commit_cell(
        self,
        cell: TerritoryCell,
        history: CellHistoryEntry,
        *,
        expected_version: int,
    ) -> int:
        async with self._lock:
            current_version = self.cells.get(cell.id, (0, None))[0]
            if current_version != expected_version:
                raise CellConflictError(
                    cell_id=cell.id,
                    expected_version=expected_version,
                    actual_version=current_version,
                )
            new_version = current_version + 1
            self.cells[cell.id] = (new_version, cell.model_copy(deep=True))
            self.history.setdefault(cell.id, []).append(history)
            return new_version

    async def get_history(self, cell_id: str) -> List[CellHistoryEntry]:
        return list(self.history.get(cell_id, []))

    async def save_activity_territories(
        self, activity_id: str, cells: Sequence[TerritoryCell]
    ) -> int:
        chunks = build_territory_chunks(cells, self.territory_chunk_size)
        self.activity_territories[activity_id] = chunks
        return len(chunks)

    async def get_activity_territories(self, activity_id: str) -> List[TerritoryCell]:
        chunks = self.activity_territories.get(activity_id, [])
        return [cell for chunk in sorted(chunks, key=lambda c: c.order) for cell in chunk.cells]


class JsonCellStore(CellStore):
    """File-based cell store using JSON for human-readable storage.

    Directory structure:
    ```
    {base_path}/
      cells/
        12345_-678.json           # {"version": n, "cell": {...}}
      history/
        12345_-678.jsonl          # one CellHistoryEntry per line, append-only
      activities/
        {activity_id}/
          chunk_00000.json        # ActivityTerritoryChunk
    ```

    File I/O runs in a thread pool (asyncio.to_thread). Commits are serialized by
    an asyncio.Lock, which makes the version check atomic within one process only;
    use PostgresCellStore when several workers share the territory.

    A commit touches two files and is not atomic across them. The history line
    is appended before the cell file is renamed into place, so a committed record
    always has its entry; a crash between the two can leave an extra history line
    for a write that never landed.
    """

    def __init__(self, base_path: Path | str | None = None, **kwargs):
        super().__init__(**kwargs)
        self.base_path = Path(base_path) if base_path is not None else Config.DATA_DIR
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        for sub in ("cells", "history", "activities"):
            await asyncio.to_thread(
                (self.base_path / sub).mkdir, parents=True, exist_ok=True
            )

    async def close(self) -> None:
        # Nothing to clean up for JSON storage
        return None

    def _cell_path(self, cell_id: str) -> Path:
        return self.base_path / "cells" / f"{cell_id}.json"

    def _history_path(self, cell_id: str) -> Path:
        return self.base_path / "history" / f"{cell_id}.jsonl"

    def _activity_dir(self, activity_id: str) -> Path:
        return self.base_path / "activities" / activity_id

    def _load(self, cell_id: str) -> CellSnapshot:
        path = self._cell_path(cell_id)
        if not path.exists():
            return CellSnapshot(cell_id=cell_id, record=None, version=0)
        payload = json.loads(path.read_text("utf-8"))
        return CellSnapshot(
            cell_id=cell_id,
            record=TerritoryCell.model_validate(payload["cell"]),
            version=int(payload["version"]),
        )

    async def read_cell(self, cell_id: str) -> CellSnapshot:
        return await asyncio.to_thread(self._load, cell_id)

    async def _fetch_batch(self, cell_ids: List[str]) -> Dict[str, TerritoryCell]:
        def _read_all() -> Dict[str, TerritoryCell]:
            found: Dict[str, TerritoryCell] = {}
            for cell_id in cell_ids:
                snapshot = self._load(cell_id)
                if snapshot.record is not None:
                    found[cell_id] = snapshot.record
            return found

        return await asyncio.to_thread(_read_all)

    async def commit_cell(
        self,
        cell: TerritoryCell,
        history: CellHistoryEntry,
        *,
        expected_version: int,
    ) -> int:
        def _write(new_version: int) -> None:
            payload = {"version": new_version, "cell": cell.model_dump(mode="json")}
            path = self._cell_path(cell.id)
            tmp_path = path.with_suffix(".json.tmp")
            tmp_path.write_text(json.dumps(payload, indent=2), "utf-8")
            with self._history_path(cell.id).open("a", encoding="utf-8") as handle:
                handle.write(history.model_dump_json())
                handle.write("\n")
            # The rename is the commit point; a failure before it leaves the record unchanged
            tmp_path.replace(path)

        async with self._lock:
            current = await self.read_cell(cell.id)
            if current.version != expected_version:
                raise CellConflictError(
                    cell_id=cell.id,
                    expected_version=expected_version,
                    actual_version=current.version,
                )
            new_version = current.version + 1
            await asyncio.to_thread(_write, new_version)
            return new_version

    async def get_history(self, cell_id: str) -> List[CellHistoryEntry]:
        path = self._history_path(cell_id)
        if not path.exists():
            return []

        lines = await asyncio.to_thread(lambda: path.read_text("utf-8").splitlines())
        return [CellHistoryEntry.model_validate_json(line) for line in lines if line]

    async def save_activity_territories(
        self, activity_id: str, cells: Sequence[TerritoryCell]
    ) -> int:
        chunks = build_territory_chunks(cells, self.territory_chunk_size)
        directory = self._activity_dir(activity_id)

        def _write() -> None:
            if directory.exists():
                shutil.rmtree(directory)
            directory.mkdir(parents=True, exist_ok=True)
            for chunk in chunks:
                path = directory / f"chunk_{chunk.order:05d}.json"
                path.write_text(json.dumps(chunk.model_dump(mode="json"), indent=2), "utf-8")

        await asyncio.to_thread(_write)
        return len(chunks)

    async def get_activity_territories(self, activity_id: str) -> List[TerritoryCell]:
        directory = self._activity_dir(activity_id)
        if not directory.exists():
            return []

        def _read() -> List[ActivityTerritoryChunk]:
            return [
                ActivityTerritoryChunk.model_validate_json(path.read_text("utf-8"))
                for path in sorted(directory.glob("chunk_*.json"))
            ]

        chunks = await asyncio.to_thread(_read)
        return [cell for chunk in sorted(chunks, key=lambda c: c.order) for cell in chunk.cells]


class PostgresCellStore(CellStore):
    """PostgreSQL-backed cell store for production deployments.

    Database schema (created by initialize()):
    - territory_cells: (id, version, cell JSONB, updated_at)
    - territory_cell_history: (id, cell_id, entry JSONB, created_at)
    - activity_territories: (activity_id, chunk_order, cells JSONB, cell_count)

    commit_cell runs the version-guarded upsert and the history insert in one
    transaction. A version mismatch (INSERT that hit an existing row, or UPDATE
    that matched no row) raises CellConflictError, which rolls the transaction back.
    Safe for many workers sharing one database.
    """

    SCHEMA_SQL = """
        CREATE TABLE IF NOT EXISTS territory_cells (
            id TEXT PRIMARY KEY,
            version INTEGER NOT NULL,
            cell JSONB NOT NULL,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
        CREATE TABLE IF NOT EXISTS territory_cell_history (
            id BIGSERIAL PRIMARY KEY,
            cell_id TEXT NOT NULL,
            entry JSONB NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
        CREATE INDEX IF NOT EXISTS territory_cell_history_cell_id_idx
            ON territory_cell_history (cell_id);
        CREATE TABLE IF NOT EXISTS activity_territories (
            activity_id TEXT NOT NULL,
            chunk_order INTEGER NOT NULL,
            cells JSONB NOT NULL,
            cell_count INTEGER NOT NULL,
            PRIMARY KEY (activity_id, chunk_order)
        );
    """

    def __init__(self, database_url: Optional[str] = None, **kwargs):
        if asyncpg is None:  # pragma: no cover - handled during runtime when dependency missing
            raise ImportError(
                "asyncpg is required for PostgresCellStore. Install with `pip install gridconquest[postgres]`."
            )

        super().__init__(**kwargs)
        self.database_url = database_url or Config.DATABASE_URL
        self.pool: Optional["asyncpg.Pool"] = None

    async def initialize(self) -> None:
        if self.pool is None:
            self.pool = await asyncpg.create_pool(self.database_url)
            async with self.pool.acquire() as conn:
                await conn.execute(self.SCHEMA_SQL)

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.close()
            self.pool = None

    def _require_pool(self) -> "asyncpg.Pool":
        if self.pool is None:
            raise StoreNotInitializedError(type(self).__name__)
        return self.pool

    async def read_cell(self, cell_id: str) -> CellSnapshot:
        pool = self._require_pool()

        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT version, cell FROM territory_cells WHERE id = $1", cell_id
            )

        if not row:
            return CellSnapshot(cell_id=cell_id, record=None, version=0)
        return CellSnapshot(
            cell_id=cell_id,
            record=TerritoryCell.model_validate_json(row["cell"]),
            version=row["version"],
        )

    async def _fetch_batch(self, cell_ids: List[str]) -> Dict[str, TerritoryCell]:
        pool = self._require_pool()

        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT id, cell FROM territory_cells WHERE id = ANY($1::text[])",
                cell_ids,
            )

        return {row["id"]: TerritoryCell.model_validate_json(row["cell"]) for row in rows}

    async def commit_cell(
        self,
        cell: TerritoryCell,
        history: CellHistoryEntry,
        *,
        expected_version: int,
    ) -> int:
        pool = self._require_pool()
        cell_json = cell.model_dump_json()

        async with pool.acquire() as conn:
            async with conn.transaction():
                if expected_version == 0:
                    status = await conn.execute(
                        """
                        INSERT INTO territory_cells (id, version, cell)
                        VALUES ($1, 1, $2::jsonb)
                        ON CONFLICT (id) DO NOTHING
                        """,
                        cell.id,
                        cell_json,
                    )
                else:
                    status = await conn.execute(
                        """
                        UPDATE territory_cells
                        SET version = version + 1, cell = $3::jsonb, updated_at = now()
                        WHERE id = $1 AND version = $2
                        """,
                        cell.id,
                        expected_version,
                        cell_json,
                    )

                # Status is "INSERT 0 <n>" or "UPDATE <n>"; zero rows means someone else won
                if status.split()[-1] == "0":
                    actual = await conn.fetchval(
                        "SELECT version FROM territory_cells WHERE id = $1", cell.id
                    )
                    raise CellConflictError(
                        cell_id=cell.id,
                        expected_version=expected_version,
                        actual_version=actual or 0,
                    )

                await conn.execute(
                    "INSERT INTO territory_cell_history (cell_id, entry) VALUES ($1, $2::jsonb)",
                    cell.id,
                    history.model_dump_json(),
                )

        return expected_version + 1

    async def get_history(self, cell_id: str) -> List[CellHistoryEntry]:
        pool = self._require_pool()

        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT entry FROM territory_cell_history WHERE cell_id = $1 ORDER BY id",
                cell_id,
            )

        return [CellHistoryEntry.model_validate_json(row["entry"]) for row in rows]

    async def save_activity_territories(
        self, activity_id: str, cells: Sequence[TerritoryCell]
    ) -> int:
        pool = self._require_pool()
        chunks = build_territory_chunks(cells, self.territory_chunk_size)
        records = [
            (
                activity_id,
                chunk.order,
                json.dumps([c.model_dump(mode="json") for c in chunk.cells]),
                chunk.cell_count,
            )
            for chunk in chunks
        ]

        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    "DELETE FROM activity_territories WHERE activity_id = $1", activity_id
                )
                if records:
                    await conn.executemany(
                        """
                        INSERT INTO activity_territories (activity_id, chunk_order, cells, cell_count)
                        VALUES ($1, $2, $3::jsonb, $4)
                        """,
                        records,
                    )

        return len(chunks)

    async def get_activity_territories(self, activity_id: str) -> List[TerritoryCell]:
        pool = self._require_pool()

        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT cells FROM activity_territories
                WHERE activity_id = $1
                ORDER BY chunk_order
                """,
                activity_id,
            )

        cells: List[TerritoryCell] = []
        for row in rows:
            cells.extend(TerritoryCell.model_validate(item) for item in json.loads(row["cells"]))
        return cells
