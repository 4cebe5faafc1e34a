"""XP scoring for completed activities.

Pure computation: no I/O, no mutation of its inputs. Given the same activity,
territory stats, user context and configuration, ``compute_xp`` always returns
the same breakdown, and ``total`` is always the sum of its five components.
Edge values (zero distance, zero duration, unknown activity type) degrade to
zero XP rather than raising.
"""

from __future__ import annotations

import math
from typing import Optional

from .schemas import (
    Activity,
    ActivityType,
    TerritoryStats,
    UserContext,
    XPBreakdown,
    XPConfig,
)


XP_PER_LEVEL = 1000


def level(total_xp: int) -> int:
    """Level for a lifetime XP total: 1 + floor(total_xp / 1000)."""
    return 1 + math.floor(total_xp / XP_PER_LEVEL)


def remaining_daily_cap(context: UserContext, config: XPConfig) -> int:
    return max(0, config.daily_base_xp_cap - context.today_base_xp_earned)


def compute_base_xp(activity: Activity, context: UserContext, config: XPConfig) -> int:
    """Distance-based XP (time-based for indoor activities), clamped to the daily cap."""

    duration = activity.duration_seconds

    if activity.activity_type is ActivityType.INDOOR:
        if duration < config.min_duration_seconds:
            return 0
        minutes = duration / 60.0
        raw_xp = math.floor(minutes * config.indoor_xp_per_minute)
        return min(raw_xp, remaining_daily_cap(context, config))

    distance_km = activity.distance_km
    if distance_km < config.min_distance_km or duration < config.min_duration_seconds:
        return 0

    factor = config.base_factor_per_km * config.type_factor(activity.activity_type)
    raw_xp = math.floor(distance_km * factor)
    return min(raw_xp, remaining_daily_cap(context, config))


def compute_territory_xp(stats: TerritoryStats, config: XPConfig) -> int:
    # Steals count as newly owned cells and share the per-activity cap
    effective_new = min(stats.claimed_cells_count, config.max_new_cells_xp_per_activity)
    return (
        effective_new * config.xp_per_new_cell
        + stats.defended_cells_count * config.xp_per_defended_cell
        + stats.recaptured_cells_count * config.xp_per_recaptured_cell
    )


def maintains_streak(activity: Activity, config: XPConfig) -> bool:
    return activity.duration_seconds >= config.min_duration_seconds


def compute_streak_bonus(activity: Activity, context: UserContext, config: XPConfig) -> int:
    if not maintains_streak(activity, config):
        return 0
    return config.base_streak_xp_per_week * context.current_streak_weeks


def new_week_distance_km(activity: Activity, context: UserContext) -> float:
    return context.current_week_distance_km + activity.distance_km


def weekly_record_improvement(
    activity: Activity, context: UserContext, config: XPConfig
) -> Optional[float]:
    """Kilometres by which this activity lifts the week past the prior best.

    Returns None when there is no qualifying record: no prior best, a prior best
    below ``min_weekly_record_km``, or a new weekly total that does not exceed it.
    Shared by the XP bonus and the weekly-record mission so both agree.
    """
    best = context.best_weekly_distance_km
    if not best or best < config.min_weekly_record_km:
        return None

    new_week = new_week_distance_km(activity, context)
    if new_week > best:
        return new_week - best
    return None


def compute_weekly_record_bonus(
    activity: Activity, context: UserContext, config: XPConfig
) -> int:
    improvement = weekly_record_improvement(activity, context, config)
    if improvement is None:
        return 0
    return math.floor(
        config.weekly_record_base_xp + improvement * config.weekly_record_per_km_diff_xp
    )


def compute_xp(
    activity: Activity,
    territory_stats: TerritoryStats,
    context: UserContext,
    config: XPConfig,
) -> XPBreakdown:
    """Full XP breakdown for one activity."""

    xp_base = compute_base_xp(activity, context, config)
    xp_territory = compute_territory_xp(territory_stats, config)
    xp_streak = compute_streak_bonus(activity, context, config)
    xp_weekly_record = compute_weekly_record_bonus(activity, context, config)
    xp_badges = 0

    return XPBreakdown(
        xp_base=xp_base,
        xp_territory=xp_territory,
        xp_streak=xp_streak,
        xp_weekly_record=xp_weekly_record,
        xp_badges=xp_badges,
        total=xp_base + xp_territory + xp_streak + xp_weekly_record + xp_badges,
    )
