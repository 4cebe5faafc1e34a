"""Mission classification: qualitative achievement tags for an activity.

Missions are not mutually exclusive and are not deduplicated against the
user's history; every activity is classified on its own.
"""

from __future__ import annotations

from typing import List, Optional

from .schemas import (
    Activity,
    ActivityType,
    Mission,
    MissionCategory,
    MissionRarity,
    TerritoryStats,
    UserContext,
    XPConfig,
)
from .scoring import new_week_distance_km, weekly_record_improvement


# Pace ceilings in seconds per km below which an activity counts as high intensity
HIGH_INTENSITY_PACE = {
    ActivityType.RUN: 360.0,  # 6 min/km
    ActivityType.BIKE: 180.0,  # 20 km/h
    ActivityType.WALK: 720.0,
    ActivityType.HIKE: 720.0,
}
SPRINT_PACE_SECONDS_PER_KM = 360.0
LEGENDARY_RECORD_IMPROVEMENT_KM = 10.0


def pace_seconds_per_km(activity: Activity) -> Optional[float]:
    if activity.distance_km <= 0:
        return None
    return activity.duration_seconds / activity.distance_km


def is_high_intensity(activity: Activity) -> bool:
    pace = pace_seconds_per_km(activity)
    threshold = HIGH_INTENSITY_PACE.get(activity.activity_type)
    if pace is None or threshold is None:
        return False
    return pace < threshold


def territorial_mission(user_id: str, stats: TerritoryStats, config: XPConfig) -> Mission:
    count = stats.claimed_cells_count
    if count < 5:
        rarity, name = MissionRarity.COMMON, "First Exploration"
        description = f"You conquered {count} new territories"
    elif count < 15:
        rarity, name = MissionRarity.RARE, "Expedition"
        description = f"You expanded your domain with {count} territories"
    elif count < config.legendary_threshold_cells:
        rarity, name = MissionRarity.EPIC, "Epic Conquest"
        description = f"Impressive! {count} territories conquered"
    else:
        rarity, name = MissionRarity.LEGENDARY, "Legendary Dominion"
        description = f"Legendary feat! {count} territories under your control"

    return Mission(
        user_id=user_id,
        category=MissionCategory.TERRITORIAL,
        name=name,
        description=description,
        rarity=rarity,
    )


def recapture_mission(user_id: str, stats: TerritoryStats) -> Mission:
    return Mission(
        user_id=user_id,
        category=MissionCategory.TERRITORIAL,
        name="Reconquest",
        description=f"You recovered {stats.recaptured_cells_count} lost territories",
        rarity=MissionRarity.EPIC,
    )


def streak_mission(user_id: str, streak_weeks: int) -> Mission:
    return Mission(
        user_id=user_id,
        category=MissionCategory.PROGRESSION,
        name="Active Streak",
        description=f"Week #{streak_weeks} of your streak",
        rarity=MissionRarity.EPIC if streak_weeks >= 4 else MissionRarity.RARE,
    )


def weekly_record_mission(user_id: str, new_distance_km: float, improvement_km: float) -> Mission:
    rarity = (
        MissionRarity.LEGENDARY
        if improvement_km > LEGENDARY_RECORD_IMPROVEMENT_KM
        else MissionRarity.EPIC
    )
    return Mission(
        user_id=user_id,
        category=MissionCategory.PROGRESSION,
        name="New Weekly Record",
        description=f"{new_distance_km:.1f} km this week! You beat your record",
        rarity=rarity,
    )


def physical_effort_mission(user_id: str, activity: Activity) -> Mission:
    pace = pace_seconds_per_km(activity)
    is_sprint = (
        activity.activity_type is ActivityType.RUN
        and pace is not None
        and pace < SPRINT_PACE_SECONDS_PER_KM
    )
    return Mission(
        user_id=user_id,
        category=MissionCategory.PHYSICAL_EFFORT,
        name="Intense Sprint" if is_sprint else "Outstanding Effort",
        description="High intensity workout completed",
        rarity=MissionRarity.RARE if is_sprint else MissionRarity.COMMON,
    )


def classify_missions(
    activity: Activity,
    territory_stats: TerritoryStats,
    context: UserContext,
    config: XPConfig,
) -> List[Mission]:
    """Return every mission this activity qualifies for, in a stable order."""

    missions: List[Mission] = []
    user_id = context.user_id

    if territory_stats.claimed_cells_count > 0:
        missions.append(territorial_mission(user_id, territory_stats, config))

    if territory_stats.recaptured_cells_count > 0:
        missions.append(recapture_mission(user_id, territory_stats))

    if context.current_streak_weeks > 0:
        missions.append(streak_mission(user_id, context.current_streak_weeks))

    improvement = weekly_record_improvement(activity, context, config)
    if improvement is not None:
        missions.append(
            weekly_record_mission(user_id, new_week_distance_km(activity, context), improvement)
        )

    if is_high_intensity(activity):
        missions.append(physical_effort_mission(user_id, activity))

    return missions
