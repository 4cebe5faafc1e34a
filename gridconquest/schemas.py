"""
Pydantic schemas for the gridconquest territory engine.

All data structures that cross a module boundary are defined here.

Design Philosophy:
- Closed, validated value types at the boundary (no loosely-typed activity maps)
- Immutable configuration snapshots (XPConfig, GameplayConfig are frozen)
- camelCase aliases on stored documents so existing configuration payloads load as-is
- Pydantic validation ensures data integrity across store backends
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def ensure_utc(value: datetime) -> datetime:
    """Interpret naive datetimes as UTC so comparisons never mix naive and aware values."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ============================================================================
# Geometry Schemas
# ============================================================================


class Coordinate(BaseModel):
    """A latitude/longitude pair in degrees (cell centers and boundary corners)."""

    model_config = ConfigDict(allow_inf_nan=False)

    latitude: float = Field(..., description="Latitude in degrees")
    longitude: float = Field(..., description="Longitude in degrees")


class RoutePoint(BaseModel):
    """A single GPS sample of an activity route.

    Points are supplied in temporal order by the caller. The engine does not sort
    them or check that timestamps are monotonic; one contiguous route per activity
    is the caller's responsibility.
    """

    # NaN and infinite coordinates have no grid cell
    model_config = ConfigDict(allow_inf_nan=False)

    latitude: float = Field(..., description="Latitude in degrees")
    longitude: float = Field(..., description="Longitude in degrees")
    timestamp: datetime = Field(..., description="When the sample was recorded")

    @field_validator("timestamp")
    @classmethod
    def _aware_timestamp(cls, value: datetime) -> datetime:
        return ensure_utc(value)


@dataclass(frozen=True)
class GridCoordinate:
    """Integer (x, y) index of a grid cell.

    x indexes longitude, y indexes latitude. Frozen so it can be used as a dict key
    and shared freely between the rasterizer and resolver.
    """

    x: int
    y: int

    @property
    def cell_id(self) -> str:
        return f"{self.x}_{self.y}"


# ============================================================================
# Territory Schemas
# ============================================================================


class Interaction(str, Enum):
    """Outcome of arbitrating one cell against its stored owner record."""

    CONQUEST = "conquest"
    DEFENSE = "defense"
    STEAL = "steal"
    RECAPTURE = "recapture"
    # A newer claim from another user already holds the cell; nothing is written.
    SKIP = "skip"


class TerritoryCell(BaseModel):
    """Ownership record for one grid cell (the unit of ownership).

    Created the first time any route touches the cell, overwritten on every
    successful conquest/defense/steal/recapture, never deleted. Ownership lapses
    implicitly once ``expires_at`` passes.
    """

    id: str = Field(..., description="Cell key, '{x}_{y}'")
    center_latitude: float = Field(..., description="Latitude of the cell center")
    center_longitude: float = Field(..., description="Longitude of the cell center")
    # Axis-aligned square in degree space: top-left, top-right, bottom-right, bottom-left
    boundary: List[Coordinate] = Field(
        ..., min_length=4, max_length=4, description="Four corner points of the cell"
    )
    expires_at: datetime = Field(..., description="Instant after which ownership lapses")
    last_conquered_at: datetime = Field(..., description="End time of the activity that last claimed it")
    user_id: str = Field(..., description="Owning user")
    activity_id: Optional[str] = Field(None, description="Activity that last wrote the cell")
    last_interaction: Optional[Interaction] = Field(
        None, description="Interaction label of the last write"
    )

    @field_validator("expires_at", "last_conquered_at")
    @classmethod
    def _aware_times(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    def is_expired_at(self, when: datetime) -> bool:
        """Expired means the expiry instant is strictly before ``when``."""
        return self.expires_at < ensure_utc(when)


class CellHistoryEntry(BaseModel):
    """Append-only audit record written alongside every non-skip cell update."""

    cell_id: str = Field(..., description="Cell the entry belongs to")
    user_id: str = Field(..., description="Acting user")
    activity_id: str = Field(..., description="Acting activity")
    interaction: Interaction = Field(..., description="Outcome that produced the write")
    previous_owner_id: Optional[str] = Field(
        None, description="Owner before this write (None for fresh or self-collided cells)"
    )
    # Activity end time, not wall-clock, so replays produce identical history
    timestamp: datetime = Field(..., description="When the interaction took effect")


class CellResolution(BaseModel):
    """Result of resolving a single candidate cell."""

    cell_id: str
    outcome: Interaction
    updated_record: Optional[TerritoryCell] = Field(
        None, description="Record to write; None when the outcome is SKIP"
    )
    history_entry: Optional[CellHistoryEntry] = None
    # Dispossessed user, set only for STEAL
    victim_id: Optional[str] = None


class ActivityTerritoryChunk(BaseModel):
    """Slice of an activity's rasterized cells, stored for client-side mini-maps."""

    order: int = Field(..., ge=0, description="Chunk position within the activity")
    cells: List[TerritoryCell] = Field(default_factory=list)
    cell_count: int = Field(0, ge=0)


class TerritoryStats(BaseModel):
    """Per-activity aggregate counters derived from one resolution pass."""

    new_cells_count: int = Field(0, ge=0)
    defended_cells_count: int = Field(0, ge=0)
    recaptured_cells_count: int = Field(0, ge=0)
    stolen_cells_count: int = Field(0, ge=0)

    @property
    def claimed_cells_count(self) -> int:
        """Cells newly owned by the acting user: conquests plus steals.

        Scoring and mission classification both read this bucket so that a steal
        is rewarded the same way as a fresh conquest.
        """
        return self.new_cells_count + self.stolen_cells_count

    @property
    def total(self) -> int:
        return (
            self.new_cells_count
            + self.defended_cells_count
            + self.recaptured_cells_count
            + self.stolen_cells_count
        )


# ============================================================================
# Activity & User Schemas
# ============================================================================


class ActivityType(str, Enum):
    RUN = "run"
    BIKE = "bike"
    WALK = "walk"
    HIKE = "hike"
    OTHER_OUTDOOR = "otherOutdoor"
    INDOOR = "indoor"
    UNKNOWN = "unknown"


class Activity(BaseModel):
    """A completed physical activity, validated at the system boundary.

    Unknown activity type strings are coerced to ``ActivityType.UNKNOWN`` instead of
    failing validation: such activities simply earn the neutral distance factor and
    never qualify as high intensity.
    """

    activity_id: str = Field(..., description="Unique activity identifier")
    user_id: str = Field(..., description="User who recorded the activity")
    activity_type: ActivityType = Field(ActivityType.UNKNOWN, description="Kind of activity")
    distance_meters: float = Field(0.0, ge=0, description="Total distance covered")
    duration_seconds: float = Field(0.0, ge=0, description="Total moving duration")
    end_date: datetime = Field(..., description="When the activity finished")
    location_label: Optional[str] = Field(None, description="Human-friendly place name")

    @field_validator("activity_type", mode="before")
    @classmethod
    def _coerce_activity_type(cls, value: Any) -> Any:
        if isinstance(value, ActivityType):
            return value
        try:
            return ActivityType(value)
        except ValueError:
            return ActivityType.UNKNOWN

    @field_validator("end_date")
    @classmethod
    def _aware_end_date(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @property
    def distance_km(self) -> float:
        return self.distance_meters / 1000.0


class GamificationState(BaseModel):
    total_xp: int = Field(0, ge=0, description="Lifetime XP before this activity")
    level: int = Field(1, ge=1)
    current_streak_weeks: int = Field(0, ge=0)


class UserContext(BaseModel):
    """Read-only snapshot of the per-user state scoring depends on.

    The engine derives new values from it (see UserProgress) but never writes
    them back; the caller owns persistence.
    """

    user_id: str
    current_week_distance_km: float = Field(0.0, ge=0)
    best_weekly_distance_km: Optional[float] = Field(
        None, description="Best completed week so far; None when the user has no history"
    )
    current_streak_weeks: int = Field(0, ge=0)
    # Running total supplied by the caller; the daily cap is enforced against it
    today_base_xp_earned: int = Field(0, ge=0)
    gamification_state: GamificationState = Field(default_factory=GamificationState)


# ============================================================================
# Configuration Schemas
# ============================================================================


class XPConfig(BaseModel):
    """Immutable scoring configuration snapshot.

    Field names are snake_case; aliases match the stored configuration document
    so ``XPConfig.model_validate(document)`` accepts it directly.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    min_distance_km: float = Field(0.5, alias="minDistanceKm")
    min_duration_seconds: float = Field(5 * 60, alias="minDurationSeconds")

    base_factor_per_km: float = Field(10.0, alias="baseFactorPerKm")
    factor_run: float = Field(1.2, alias="factorRun")
    factor_bike: float = Field(0.7, alias="factorBike")
    factor_walk: float = Field(0.9, alias="factorWalk")
    factor_other: float = Field(1.0, alias="factorOther")
    factor_indoor: float = Field(0.5, alias="factorIndoor")
    indoor_xp_per_minute: float = Field(3.0, alias="indoorXPPerMinute")

    daily_base_xp_cap: int = Field(300, alias="dailyBaseXPCap")

    xp_per_new_cell: int = Field(8, alias="xpPerNewCell")
    xp_per_defended_cell: int = Field(3, alias="xpPerDefendedCell")
    xp_per_recaptured_cell: int = Field(12, alias="xpPerRecapturedCell")
    max_new_cells_xp_per_activity: int = Field(50, alias="maxNewCellsXPPerActivity")

    # XP = base_streak_xp_per_week * current_streak_weeks
    base_streak_xp_per_week: int = Field(10, alias="baseStreakXPPerWeek")

    weekly_record_base_xp: int = Field(30, alias="weeklyRecordBaseXP")
    weekly_record_per_km_diff_xp: float = Field(5, alias="weeklyRecordPerKmDiffXP")
    min_weekly_record_km: float = Field(5.0, alias="minWeeklyRecordKm")

    # Mission thresholds
    legendary_threshold_cells: int = Field(20, alias="legendaryThresholdCells")

    def type_factor(self, activity_type: ActivityType) -> float:
        """Distance multiplier for an activity type (1.0 when none is configured)."""

        factors = {
            ActivityType.RUN: self.factor_run,
            ActivityType.BIKE: self.factor_bike,
            ActivityType.WALK: self.factor_walk,
            ActivityType.HIKE: self.factor_walk,
            ActivityType.OTHER_OUTDOOR: self.factor_other,
            ActivityType.INDOOR: self.factor_indoor,
        }
        return factors.get(activity_type, 1.0)


class GameplayConfig(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    territory_expiration_days: float = Field(7, gt=0, alias="territoryExpirationDays")


# ============================================================================
# Result Schemas
# ============================================================================


class XPBreakdown(BaseModel):
    xp_base: int = 0
    xp_territory: int = 0
    xp_streak: int = 0
    xp_weekly_record: int = 0
    # Reserved for an external badge engine
    xp_badges: int = 0
    total: int = 0


class MissionCategory(str, Enum):
    TERRITORIAL = "territorial"
    PROGRESSION = "progression"
    PHYSICAL_EFFORT = "physicalEffort"


class MissionRarity(str, Enum):
    COMMON = "common"
    RARE = "rare"
    EPIC = "epic"
    LEGENDARY = "legendary"


class Mission(BaseModel):
    """Qualitative achievement earned by one activity (not deduplicated against history)."""

    user_id: str
    category: MissionCategory
    name: str
    description: str
    rarity: MissionRarity


class UserProgress(BaseModel):
    """New per-user values derived from an activity, for the caller to persist."""

    total_xp: int
    level: int
    previous_level: int
    leveled_up: bool
    current_week_distance_km: float
    today_base_xp_earned: int


class ConquestResult(BaseModel):
    """Everything one activity produced: cell writes, counters, XP and missions."""

    activity_id: str
    user_id: str
    # Rasterized cells keyed by id, as stamped for this activity
    cells: Dict[str, TerritoryCell] = Field(default_factory=dict)
    resolutions: List[CellResolution] = Field(default_factory=list)
    territory_stats: TerritoryStats = Field(default_factory=TerritoryStats)
    # victim user id -> number of cells taken from them
    victim_steals: Dict[str, int] = Field(default_factory=dict)
    xp_breakdown: XPBreakdown = Field(default_factory=XPBreakdown)
    missions: List[Mission] = Field(default_factory=list)
    progress: Optional[UserProgress] = None
    # True for preview runs that read the store but wrote nothing
    dry_run: bool = False

    @property
    def written_cells(self) -> List[TerritoryCell]:
        return [r.updated_record for r in self.resolutions if r.updated_record is not None]
