"""
Conquest orchestrator.

Fully decoupled from databases, files and global config.
All collaborators (store, config provider, context provider) are injected.

Coordinates the processing of one completed activity:
1. Load XP / gameplay configuration (defaults on failure)
2. Load the acting user's context (abort on failure, before any write)
3. Rasterize the route into candidate cells
4. Resolve and commit every cell atomically against the store (per-cell retry)
5. Aggregate territory stats and the per-victim steal tally
6. Persist the activity's territory chunks
7. Compute XP, missions and the user's new progress
"""

import asyncio
from typing import Dict, List, Optional, Sequence

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from .config import Config
from .logging_utils import (
    log_debug,
    log_deterministic,
    log_error,
    log_info,
    log_store,
    log_success,
)
from .missions import classify_missions
from .ownership import TerritoryTally, resolve
from .providers import ConfigProvider, ContextProvider, StaticConfigProvider
from .rasterizer import rasterize
from .schemas import (
    Activity,
    CellResolution,
    ConquestResult,
    GameplayConfig,
    RoutePoint,
    TerritoryCell,
    UserContext,
    UserProgress,
    XPConfig,
)
from .scoring import compute_xp, level, new_week_distance_km
from .store import CellConflictError, CellStore, StoreError, chunked


# =============================
# Module-level Exceptions
# =============================

class UserContextUnavailableError(Exception):
    """Raised when the acting user's context cannot be loaded.

    Scoring cannot run without it, so the whole activity is aborted before any
    territory is written and left for a later retry.
    """

    def __init__(self, *, activity_id: str, user_id: str, reason: str) -> None:
        self.activity_id = activity_id
        self.user_id = user_id
        self.reason = reason
        message = (
            f"User context unavailable for user {user_id} (activity {activity_id}): {reason}\n\n"
            "Remediation tips:\n"
            "  - Verify the user record exists in the context provider\n"
            "  - Retry the activity once the user store is reachable"
        )
        super().__init__(message)


class InvalidActivityError(Exception):
    """Raised when an activity and its supplied context do not belong together."""


class TerritoryCommitError(StoreError):
    """Raised when one or more cell commits fail while processing an activity.

    Contains a mapping of cell_id to the underlying exception. Cells committed
    before the failure stay committed; reprocessing the activity is safe because
    cells it already wrote are re-classified as conquests.
    """

    def __init__(self, *, activity_id: str, errors: Dict[str, Exception]) -> None:
        self.activity_id = activity_id
        self.errors = errors
        message_lines = [
            f"Territory commit failed for activity {activity_id}.",
            "Cells that failed:",
        ]
        for cell_id, exc in errors.items():
            message_lines.append(f"  - {cell_id}: {exc}")
        message_lines.extend(
            [
                "\nRemediation tips:",
                "  - Check store connectivity (DATABASE_URL / DATA_DIR)",
                "  - Raise COMMIT_MAX_ATTEMPTS if conflicts persist under heavy contention",
                "  - Reprocess the activity; already-written cells are handled idempotently",
            ]
        )
        super().__init__("\n".join(message_lines))


class ConquestOrchestrator:
    """
    Territory conquest orchestrator.

    Fully decoupled - accepts all dependencies as parameters.
    No database requirement, no global state.
    """

    def __init__(
        self,
        store: CellStore,
        context_provider: ContextProvider,
        config_provider: Optional[ConfigProvider] = None,
        *,
        commit_chunk_size: Optional[int] = None,
        max_commit_attempts: Optional[int] = None,
        persist_activity_territories: bool = True,
    ):
        """Initialize orchestrator with all dependencies injected.

        Args:
            store: CellStore holding ownership records
            context_provider: Source of per-user scoring context
            config_provider: Optional source of XP/gameplay config (defaults if omitted)
            commit_chunk_size: Cells committed concurrently per chunk
            max_commit_attempts: Optimistic retries per cell on CellConflictError
            persist_activity_territories: Store the activity's cells for mini-maps
        """
        self.store = store
        self.context_provider = context_provider
        self.config_provider = config_provider or StaticConfigProvider()
        self.commit_chunk_size = commit_chunk_size or Config.COMMIT_CHUNK_SIZE
        self.max_commit_attempts = max_commit_attempts or Config.COMMIT_MAX_ATTEMPTS
        self.persist_activity_territories = persist_activity_territories

    async def process_activity(
        self, activity: Activity, points: Sequence[RoutePoint]
    ) -> ConquestResult:
        """Run the full conquest pipeline for one activity and commit its territory.

        Args:
            activity: Validated activity
            points: Route points in temporal order (may be empty, e.g. indoor)

        Returns:
            ConquestResult describing all writes and counters

        Raises:
            UserContextUnavailableError: If the user's context cannot be loaded
            TerritoryCommitError: If any cell commit failed; no scoring is returned
        """
        log_info(
            f"Processing activity {activity.activity_id} for user {activity.user_id} "
            f"({len(points)} points)"
        )

        xp_config, gameplay_config = await self._load_configs()
        context = await self._load_context(activity)

        cells = self._rasterize(activity, points, gameplay_config)
        resolutions = await self._commit_cells(activity, cells)

        if cells and self.persist_activity_territories:
            chunk_count = await self.store.save_activity_territories(
                activity.activity_id, list(cells.values())
            )
            log_store(
                f"Persisted {len(cells)} cells in {chunk_count} chunks "
                f"to activity {activity.activity_id}"
            )

        result = self._build_result(activity, cells, resolutions, context, xp_config)
        self._print_summary(result)
        return result

    async def preview_activity(
        self, activity: Activity, points: Sequence[RoutePoint]
    ) -> ConquestResult:
        """Dry run: classify every cell against current owners without writing.

        Uses batched multi-get reads instead of per-cell transactions, so the
        outcome is advisory when other activities are committing concurrently.
        """
        xp_config, gameplay_config = await self._load_configs()
        context = await self._load_context(activity)

        cells = self._rasterize(activity, points, gameplay_config)
        existing = await self.store.get_cells(list(cells.keys()))
        log_store(f"Read {len(existing)} existing owners for {len(cells)} cells (preview)")

        resolutions = [
            resolve(
                cell_id,
                candidate,
                existing.get(cell_id),
                activity.user_id,
                activity.activity_id,
                activity.end_date,
            )
            for cell_id, candidate in cells.items()
        ]

        result = self._build_result(activity, cells, resolutions, context, xp_config)
        result.dry_run = True
        return result

    async def _load_configs(self) -> tuple[XPConfig, GameplayConfig]:
        """Fetch configuration snapshots, falling back to defaults when unavailable."""
        try:
            xp_config = await self.config_provider.get_xp_config()
        except Exception as exc:
            log_error(f"Failed to fetch XP config, using defaults: {exc}")
            xp_config = None
        if xp_config is None:
            log_info("No XP config stored; using defaults")
            xp_config = XPConfig()

        try:
            gameplay_config = await self.config_provider.get_gameplay_config()
        except Exception as exc:
            log_error(f"Failed to fetch gameplay config, using defaults: {exc}")
            gameplay_config = None
        if gameplay_config is None:
            gameplay_config = GameplayConfig(
                territory_expiration_days=Config.TERRITORY_EXPIRATION_DAYS
            )

        return xp_config, gameplay_config

    async def _load_context(self, activity: Activity) -> UserContext:
        try:
            context = await self.context_provider.get_user_context(activity.user_id)
        except Exception as exc:
            log_error(f"Could not build user context for {activity.user_id}. Aborting.")
            raise UserContextUnavailableError(
                activity_id=activity.activity_id,
                user_id=activity.user_id,
                reason=str(exc),
            ) from exc

        if context is None:
            log_error(f"Could not build user context for {activity.user_id}. Aborting.")
            raise UserContextUnavailableError(
                activity_id=activity.activity_id,
                user_id=activity.user_id,
                reason="user not found",
            )

        if context.user_id != activity.user_id:
            raise InvalidActivityError(
                f"Context for user {context.user_id} supplied for activity "
                f"{activity.activity_id} owned by {activity.user_id}"
            )
        return context

    def _rasterize(
        self,
        activity: Activity,
        points: Sequence[RoutePoint],
        gameplay_config: GameplayConfig,
    ) -> Dict[str, TerritoryCell]:
        cells = rasterize(
            points,
            user_id=activity.user_id,
            activity_id=activity.activity_id,
            end_time=activity.end_date,
            expiration_days=gameplay_config.territory_expiration_days,
        )
        log_deterministic(f"[Rasterize] {len(points)} points -> {len(cells)} cells")
        return cells

    async def _commit_cells(
        self, activity: Activity, cells: Dict[str, TerritoryCell]
    ) -> List[CellResolution]:
        """Resolve and commit every cell, chunk by chunk.

        Cells are independent, so each chunk runs its per-cell transactions
        concurrently. Chunk boundaries never split a cell's read-decide-write unit.
        """
        resolutions: List[CellResolution] = []
        candidates = list(cells.values())

        for chunk_index, chunk in enumerate(chunked(candidates, self.commit_chunk_size)):
            results = await asyncio.gather(
                *[self._resolve_and_commit(activity, candidate) for candidate in chunk],
                return_exceptions=True,
            )

            failures: Dict[str, Exception] = {}
            for candidate, outcome in zip(chunk, results):
                if isinstance(outcome, Exception):
                    failures[candidate.id] = outcome
                else:
                    resolutions.append(outcome)

            if failures:
                log_error(
                    f"[Commit] {len(failures)} of {len(chunk)} cells failed "
                    f"in chunk {chunk_index} of activity {activity.activity_id}"
                )
                raise TerritoryCommitError(activity_id=activity.activity_id, errors=failures)

            written = sum(1 for r in results if r.updated_record is not None)
            log_store(f"[Commit] Chunk {chunk_index}: {written} cells written, {len(chunk) - written} skipped")

        return resolutions

    async def _resolve_and_commit(
        self, activity: Activity, candidate: TerritoryCell
    ) -> CellResolution:
        """Read, classify and write one cell as a single optimistic unit.

        On CellConflictError the whole decision is retried from a fresh read, since
        the outcome may have changed (e.g. a STEAL becoming a SKIP).
        """
        attempt_number = 0
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(CellConflictError),
            stop=stop_after_attempt(self.max_commit_attempts),
            reraise=True,
        ):
            with attempt:
                attempt_number += 1
                if attempt_number > 1:
                    log_error(
                        f"Cell {candidate.id} changed concurrently; "
                        f"retry {attempt_number}/{self.max_commit_attempts}"
                    )

                snapshot = await self.store.read_cell(candidate.id)
                resolution = resolve(
                    candidate.id,
                    candidate,
                    snapshot.record,
                    activity.user_id,
                    activity.activity_id,
                    activity.end_date,
                )
                log_debug(f"Cell {candidate.id}: {resolution.outcome.value}")

                if resolution.updated_record is not None:
                    await self.store.commit_cell(
                        resolution.updated_record,
                        resolution.history_entry,
                        expected_version=snapshot.version,
                    )
                return resolution

        raise RuntimeError("Cell commit retry loop exited unexpectedly")

    def _build_result(
        self,
        activity: Activity,
        cells: Dict[str, TerritoryCell],
        resolutions: List[CellResolution],
        context: UserContext,
        xp_config: XPConfig,
    ) -> ConquestResult:
        tally = TerritoryTally(activity.user_id).extend(resolutions)
        stats = tally.stats

        xp_breakdown = compute_xp(activity, stats, context, xp_config)
        missions = classify_missions(activity, stats, context, xp_config)

        state = context.gamification_state
        new_total_xp = state.total_xp + xp_breakdown.total
        new_level = level(new_total_xp)
        progress = UserProgress(
            total_xp=new_total_xp,
            level=new_level,
            previous_level=state.level,
            leveled_up=new_level > state.level,
            current_week_distance_km=new_week_distance_km(activity, context),
            today_base_xp_earned=context.today_base_xp_earned + xp_breakdown.xp_base,
        )

        return ConquestResult(
            activity_id=activity.activity_id,
            user_id=activity.user_id,
            cells=cells,
            resolutions=resolutions,
            territory_stats=stats,
            victim_steals=tally.victim_steals,
            xp_breakdown=xp_breakdown,
            missions=missions,
            progress=progress,
        )

    def _print_summary(self, result: ConquestResult) -> None:
        stats = result.territory_stats
        log_deterministic(
            f"[Territory] new={stats.new_cells_count} defended={stats.defended_cells_count} "
            f"recaptured={stats.recaptured_cells_count} stolen={stats.stolen_cells_count}"
        )
        for victim_id, count in result.victim_steals.items():
            log_info(f"[Territory] Stole {count} cells from {victim_id}")
        if result.missions:
            names = " · ".join(m.name for m in result.missions)
            log_deterministic(f"[Missions] {names}")
        log_success(
            f"Activity {result.activity_id}: +{result.xp_breakdown.total} XP "
            f"(level {result.progress.level}{', level up!' if result.progress.leveled_up else ''})"
        )
