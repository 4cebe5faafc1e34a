"""Tests covering the conquest orchestrator flow against in-memory and JSON stores."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from gridconquest.config import Config
from gridconquest.orchestrator import (
    ConquestOrchestrator,
    InvalidActivityError,
    TerritoryCommitError,
    UserContextUnavailableError,
)
from gridconquest.providers import (
    ConfigProvider,
    ContextProvider,
    InMemoryContextProvider,
    StaticConfigProvider,
)
from gridconquest.schemas import (
    Activity,
    GameplayConfig,
    GamificationState,
    Interaction,
    RoutePoint,
    TerritoryCell,
    UserContext,
    XPConfig,
)
from gridconquest.store import CellConflictError, InMemoryCellStore, JsonCellStore, StoreError


END = datetime(2024, 5, 10, 9, 0, tzinfo=timezone.utc)
ROUTE_CELLS = {f"0_{y}" for y in range(6)}


def make_route(end: datetime = END) -> list[RoutePoint]:
    """~1.1 km straight north through cells 0_0 .. 0_5."""
    start = end - timedelta(minutes=30)
    return [
        RoutePoint(latitude=0.0001 + 0.001 * i, longitude=0.0001, timestamp=start + timedelta(minutes=3 * i))
        for i in range(11)
    ]


def make_activity(activity_id: str, user_id: str, end: datetime = END) -> Activity:
    return Activity(
        activity_id=activity_id,
        user_id=user_id,
        activity_type="run",
        distance_meters=5000,
        duration_seconds=1800,
        end_date=end,
    )


def make_contexts(*user_ids: str) -> InMemoryContextProvider:
    return InMemoryContextProvider({user_id: UserContext(user_id=user_id) for user_id in user_ids})


def make_orchestrator(store=None, contexts=None, config_provider=None, **kwargs) -> ConquestOrchestrator:
    return ConquestOrchestrator(
        store if store is not None else InMemoryCellStore(),
        contexts if contexts is not None else make_contexts("alice", "bob"),
        config_provider,
        **kwargs,
    )


def outcomes(result) -> set:
    return {resolution.outcome for resolution in result.resolutions}


class FailingConfigProvider(ConfigProvider):
    async def get_xp_config(self) -> Optional[XPConfig]:
        raise RuntimeError("config store offline")

    async def get_gameplay_config(self) -> Optional[GameplayConfig]:
        raise RuntimeError("config store offline")


class BrokenContextProvider(ContextProvider):
    async def get_user_context(self, user_id: str) -> Optional[UserContext]:
        raise ConnectionError("user store unreachable")


class CompetingWriteStore(InMemoryCellStore):
    """Lets a rival with a newer claim commit each cell just before our first write."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.interfered: set[str] = set()

    async def commit_cell(self, cell, history, *, expected_version):
        if cell.id not in self.interfered:
            self.interfered.add(cell.id)
            rival = cell.model_copy(
                update={
                    "user_id": "rival",
                    "activity_id": "rival-activity",
                    "last_conquered_at": cell.last_conquered_at + timedelta(hours=1),
                    "expires_at": cell.expires_at + timedelta(hours=1),
                }
            )
            version = self.cells.get(cell.id, (0, None))[0]
            self.cells[cell.id] = (version + 1, rival)
        return await super().commit_cell(cell, history, expected_version=expected_version)


class InterleavingStore(InMemoryCellStore):
    """Yields between reading a cell and handing back the snapshot, so concurrent
    activities read the same version before either commits."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.conflicts: dict[str, int] = {}

    async def read_cell(self, cell_id: str):
        snapshot = await super().read_cell(cell_id)
        await asyncio.sleep(0)
        return snapshot

    async def commit_cell(self, cell, history, *, expected_version):
        try:
            return await super().commit_cell(cell, history, expected_version=expected_version)
        except CellConflictError:
            self.conflicts[cell.id] = self.conflicts.get(cell.id, 0) + 1
            raise


class AlwaysConflictingStore(InMemoryCellStore):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.attempts: dict[str, int] = {}

    async def commit_cell(self, cell: TerritoryCell, history, *, expected_version: int) -> int:
        self.attempts[cell.id] = self.attempts.get(cell.id, 0) + 1
        raise CellConflictError(cell_id=cell.id, expected_version=expected_version, actual_version=expected_version + 1)


# ============================================================================
# Basic flow
# ============================================================================


@pytest.mark.asyncio
async def test_first_activity_conquers_every_cell():
    store = InMemoryCellStore()
    orchestrator = make_orchestrator(store)

    result = await orchestrator.process_activity(make_activity("a1", "alice"), make_route())

    assert set(result.cells) == ROUTE_CELLS
    assert outcomes(result) == {Interaction.CONQUEST}
    assert result.territory_stats.new_cells_count == 6
    assert result.victim_steals == {}
    assert {cell.user_id for _, cell in store.cells.values()} == {"alice"}
    assert len(await store.get_history("0_0")) == 1
    assert [c.id for c in await store.get_activity_territories("a1")] == list(result.cells)

    # 5 km run: 60 base + 6 new cells * 8
    assert result.xp_breakdown.xp_base == 60
    assert result.xp_breakdown.xp_territory == 48
    assert result.xp_breakdown.total == 108
    assert [m.name for m in result.missions] == ["Expedition"]
    assert result.dry_run is False


@pytest.mark.asyncio
async def test_empty_route_scores_without_territory():
    store = InMemoryCellStore()

    result = await make_orchestrator(store).process_activity(make_activity("a1", "alice"), [])

    assert result.cells == {}
    assert result.territory_stats.total == 0
    assert result.xp_breakdown.xp_territory == 0
    assert result.xp_breakdown.xp_base == 60
    assert store.cells == {}
    assert store.activity_territories == {}


@pytest.mark.asyncio
async def test_progress_reports_level_up():
    contexts = InMemoryContextProvider(
        {
            "alice": UserContext(
                user_id="alice",
                current_week_distance_km=3,
                today_base_xp_earned=10,
                gamification_state=GamificationState(total_xp=990, level=1),
            )
        }
    )

    result = await make_orchestrator(contexts=contexts).process_activity(
        make_activity("a1", "alice"), make_route()
    )
    progress = result.progress

    assert progress.total_xp == 990 + result.xp_breakdown.total
    assert progress.level == 2
    assert progress.previous_level == 1
    assert progress.leveled_up is True
    assert progress.current_week_distance_km == pytest.approx(8.0)
    assert progress.today_base_xp_earned == 10 + result.xp_breakdown.xp_base


# ============================================================================
# Ownership transitions
# ============================================================================


@pytest.mark.asyncio
async def test_reprocessing_same_activity_never_reports_defenses():
    store = InMemoryCellStore()
    orchestrator = make_orchestrator(store)
    activity = make_activity("a1", "alice")

    first = await orchestrator.process_activity(activity, make_route())
    second = await orchestrator.process_activity(activity, make_route())

    assert second.territory_stats == first.territory_stats
    assert second.territory_stats.defended_cells_count == 0
    assert second.xp_breakdown == first.xp_breakdown


@pytest.mark.asyncio
async def test_reprocessing_on_identical_fresh_stores_is_deterministic():
    activity = make_activity("a1", "alice")

    first = await make_orchestrator(InMemoryCellStore()).process_activity(activity, make_route())
    second = await make_orchestrator(InMemoryCellStore()).process_activity(activity, make_route())

    assert first == second


@pytest.mark.asyncio
async def test_later_activity_by_owner_defends():
    orchestrator = make_orchestrator()
    await orchestrator.process_activity(make_activity("a1", "alice"), make_route())

    result = await orchestrator.process_activity(
        make_activity("a2", "alice", END + timedelta(days=1)), make_route(END + timedelta(days=1))
    )

    assert outcomes(result) == {Interaction.DEFENSE}
    assert result.territory_stats.defended_cells_count == 6
    assert result.xp_breakdown.xp_territory == 6 * 3


@pytest.mark.asyncio
async def test_later_activity_by_other_user_steals():
    store = InMemoryCellStore()
    orchestrator = make_orchestrator(store)
    await orchestrator.process_activity(make_activity("a1", "alice"), make_route())

    result = await orchestrator.process_activity(
        make_activity("b1", "bob", END + timedelta(hours=2)), make_route(END + timedelta(hours=2))
    )

    assert outcomes(result) == {Interaction.STEAL}
    assert result.territory_stats.stolen_cells_count == 6
    assert result.victim_steals == {"alice": 6}
    assert {cell.user_id for _, cell in store.cells.values()} == {"bob"}
    history = await store.get_history("0_3")
    assert history[-1].previous_owner_id == "alice"


@pytest.mark.asyncio
async def test_older_activity_by_other_user_is_skipped():
    store = InMemoryCellStore()
    orchestrator = make_orchestrator(store)
    await orchestrator.process_activity(make_activity("a1", "alice"), make_route())

    result = await orchestrator.process_activity(
        make_activity("b0", "bob", END - timedelta(days=1)), make_route(END - timedelta(days=1))
    )

    assert outcomes(result) == {Interaction.SKIP}
    assert result.territory_stats.total == 0
    assert result.written_cells == []
    assert {cell.user_id for _, cell in store.cells.values()} == {"alice"}
    assert len(await store.get_history("0_0")) == 1


@pytest.mark.asyncio
async def test_expired_territory_is_recaptured_by_owner_and_conquered_by_others():
    orchestrator = make_orchestrator()
    later = END + timedelta(days=8)
    await orchestrator.process_activity(make_activity("a1", "alice"), make_route())

    recaptured = await orchestrator.process_activity(make_activity("a2", "alice", later), make_route(later))

    assert outcomes(recaptured) == {Interaction.RECAPTURE}
    assert recaptured.xp_breakdown.xp_territory == 6 * 12
    assert "Reconquest" in [m.name for m in recaptured.missions]

    much_later = later + timedelta(days=8)
    conquered = await orchestrator.process_activity(make_activity("b1", "bob", much_later), make_route(much_later))

    assert outcomes(conquered) == {Interaction.CONQUEST}
    assert conquered.victim_steals == {}


# ============================================================================
# Failure handling
# ============================================================================


@pytest.mark.asyncio
async def test_missing_context_aborts_before_any_write():
    store = InMemoryCellStore()
    orchestrator = make_orchestrator(store, contexts=make_contexts("bob"))

    with pytest.raises(UserContextUnavailableError) as excinfo:
        await orchestrator.process_activity(make_activity("a1", "alice"), make_route())

    assert excinfo.value.user_id == "alice"
    assert store.cells == {}
    assert store.activity_territories == {}


@pytest.mark.asyncio
async def test_context_provider_failure_aborts():
    store = InMemoryCellStore()
    orchestrator = make_orchestrator(store, contexts=BrokenContextProvider())

    with pytest.raises(UserContextUnavailableError, match="user store unreachable"):
        await orchestrator.process_activity(make_activity("a1", "alice"), make_route())

    assert store.cells == {}


@pytest.mark.asyncio
async def test_context_for_wrong_user_is_rejected():
    contexts = InMemoryContextProvider({"alice": UserContext(user_id="bob")})

    with pytest.raises(InvalidActivityError):
        await make_orchestrator(contexts=contexts).process_activity(
            make_activity("a1", "alice"), make_route()
        )


@pytest.mark.asyncio
async def test_config_failure_falls_back_to_defaults():
    orchestrator = make_orchestrator(config_provider=FailingConfigProvider())

    result = await orchestrator.process_activity(make_activity("a1", "alice"), make_route())

    cell = result.written_cells[0]
    assert cell.expires_at == END + timedelta(days=7)
    assert result.xp_breakdown.xp_territory == 6 * XPConfig().xp_per_new_cell


@pytest.mark.asyncio
async def test_default_provider_uses_configured_expiration(monkeypatch):
    monkeypatch.setattr(Config, "TERRITORY_EXPIRATION_DAYS", 2.0)
    orchestrator = ConquestOrchestrator(InMemoryCellStore(), make_contexts("alice"))

    result = await orchestrator.process_activity(make_activity("a1", "alice"), make_route())

    assert len(result.written_cells) == 6
    assert all(cell.expires_at == END + timedelta(days=2) for cell in result.written_cells)


@pytest.mark.asyncio
async def test_injected_config_is_used():
    provider = StaticConfigProvider(
        XPConfig(xpPerNewCell=20),
        GameplayConfig(territoryExpirationDays=3),
    )

    result = await make_orchestrator(config_provider=provider).process_activity(
        make_activity("a1", "alice"), make_route()
    )

    assert all(cell.expires_at == END + timedelta(days=3) for cell in result.written_cells)
    assert result.xp_breakdown.xp_territory == 6 * 20


@pytest.mark.asyncio
async def test_conflicting_commit_is_retried_from_a_fresh_read():
    store = CompetingWriteStore()

    result = await make_orchestrator(store).process_activity(make_activity("b1", "bob"), make_route())

    # Every cell was claimed by a newer rival between our read and write
    assert outcomes(result) == {Interaction.SKIP}
    assert result.territory_stats.total == 0
    assert {cell.user_id for _, cell in store.cells.values()} == {"rival"}
    assert all(store.history.get(cell_id) is None for cell_id in ROUTE_CELLS)


@pytest.mark.asyncio
async def test_exhausted_retries_raise_commit_error():
    store = AlwaysConflictingStore()
    orchestrator = make_orchestrator(store, max_commit_attempts=2)

    with pytest.raises(TerritoryCommitError) as excinfo:
        await orchestrator.process_activity(make_activity("a1", "alice"), make_route())

    error = excinfo.value
    assert isinstance(error, StoreError)
    assert set(error.errors) == ROUTE_CELLS
    assert all(isinstance(exc, CellConflictError) for exc in error.errors.values())
    assert set(store.attempts.values()) == {2}
    assert store.activity_territories == {}


@pytest.mark.asyncio
async def test_concurrent_activities_never_both_claim_a_cell():
    store = InterleavingStore()
    orchestrator = make_orchestrator(store)

    alice, bob = await asyncio.gather(
        orchestrator.process_activity(make_activity("a1", "alice"), make_route()),
        orchestrator.process_activity(make_activity("b1", "bob"), make_route()),
    )

    # Both read every cell as absent; the loser re-read and re-decided
    assert sum(store.conflicts.values()) > 0
    claimed = alice.territory_stats.new_cells_count + bob.territory_stats.new_cells_count
    assert claimed == 6
    assert alice.territory_stats.stolen_cells_count == 0
    assert bob.territory_stats.stolen_cells_count == 0
    for cell_id in ROUTE_CELLS:
        history = await store.get_history(cell_id)
        assert len(history) == 1
        owner = (await store.get_cell(cell_id)).user_id
        assert history[0].user_id == owner


@pytest.mark.asyncio
async def test_small_commit_chunks_cover_every_cell():
    store = InMemoryCellStore()

    result = await make_orchestrator(store, commit_chunk_size=2).process_activity(
        make_activity("a1", "alice"), make_route()
    )

    assert result.territory_stats.new_cells_count == 6
    assert set(store.cells) == ROUTE_CELLS


# ============================================================================
# Preview and file-backed store
# ============================================================================


@pytest.mark.asyncio
async def test_preview_classifies_without_writing():
    store = InMemoryCellStore()
    orchestrator = make_orchestrator(store)
    await orchestrator.process_activity(make_activity("a1", "alice"), make_route())

    later = END + timedelta(hours=1)
    preview = await orchestrator.preview_activity(make_activity("b1", "bob", later), make_route(later))

    assert preview.dry_run is True
    assert preview.territory_stats.stolen_cells_count == 6
    assert preview.victim_steals == {"alice": 6}
    assert {cell.user_id for _, cell in store.cells.values()} == {"alice"}
    assert len(await store.get_history("0_0")) == 1
    assert "b1" not in store.activity_territories
    assert store.batch_queries == [[f"0_{y}" for y in range(6)]]


@pytest.mark.asyncio
async def test_json_store_keeps_ownership_between_runs(tmp_path):
    first_store = JsonCellStore(tmp_path)
    await first_store.initialize()
    await make_orchestrator(first_store).process_activity(make_activity("a1", "alice"), make_route())

    second_store = JsonCellStore(tmp_path)
    await second_store.initialize()
    later = END + timedelta(days=1)
    result = await make_orchestrator(second_store).process_activity(
        make_activity("a2", "alice", later), make_route(later)
    )

    assert outcomes(result) == {Interaction.DEFENSE}
    assert len(await second_store.get_history("0_0")) == 2
