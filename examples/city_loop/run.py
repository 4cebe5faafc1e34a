"""
Example: City Loop - Two Users Competing for the Same Park
==========================================================

WHAT THIS SHOWS:
- Rasterizing a GPS loop into grid cells
- Conquest, steal and defense across activities
- Recapturing your own cells after they expire
- Previewing an activity without writing anything
- Swapping the in-memory store for the JSON store (--data-dir)

RUN:
    python examples/city_loop/run.py
    python examples/city_loop/run.py --data-dir territory_data
"""

import argparse
import asyncio
import math
from datetime import datetime, timedelta, timezone
from typing import List

from gridconquest import (
    Activity,
    ConquestOrchestrator,
    InMemoryCellStore,
    InMemoryContextProvider,
    JsonCellStore,
    RoutePoint,
    UserContext,
)


# Roughly the outline of a city park, in degrees
PARK_CENTER = (40.4153, -3.6845)
PARK_RADIUS_DEGREES = 0.006


# ============================================================================
# STEP 1: Build routes
# ============================================================================

def loop_route(start: datetime, samples: int = 60, minutes: float = 30) -> List[RoutePoint]:
    """Closed loop around the park center, one sample every few seconds."""
    lat0, lon0 = PARK_CENTER
    points = []
    for i in range(samples + 1):
        angle = 2 * math.pi * i / samples
        points.append(
            RoutePoint(
                latitude=lat0 + PARK_RADIUS_DEGREES * math.sin(angle),
                longitude=lon0 + PARK_RADIUS_DEGREES * math.cos(angle),
                timestamp=start + timedelta(minutes=minutes * i / samples),
            )
        )
    return points


def activity(activity_id: str, user_id: str, activity_type: str, end: datetime, km: float, minutes: float) -> Activity:
    return Activity(
        activity_id=activity_id,
        user_id=user_id,
        activity_type=activity_type,
        distance_meters=km * 1000,
        duration_seconds=minutes * 60,
        end_date=end,
        location_label="City Park",
    )


# ============================================================================
# STEP 2: Run the season
# ============================================================================

async def main(data_dir: str | None = None):
    print("=" * 60)
    print("CITY LOOP: TERRITORY CONQUEST")
    print("=" * 60)
    print()

    store = JsonCellStore(data_dir) if data_dir else InMemoryCellStore()
    await store.initialize()

    contexts = InMemoryContextProvider(
        {
            "alice": UserContext(user_id="alice", current_streak_weeks=2),
            "bob": UserContext(user_id="bob", best_weekly_distance_km=6.0),
        }
    )
    orchestrator = ConquestOrchestrator(store, contexts)

    monday = datetime(2024, 5, 6, 8, 0, tzinfo=timezone.utc)
    tuesday = monday + timedelta(days=1)
    wednesday = monday + timedelta(days=2)
    next_month = monday + timedelta(days=30)

    # Alice claims the park
    await orchestrator.process_activity(
        activity("alice-1", "alice", "run", monday, km=4.6, minutes=26), loop_route(monday)
    )

    # Bob checks what a ride would do, then rides
    preview = await orchestrator.preview_activity(
        activity("bob-1", "bob", "bike", tuesday, km=9.2, minutes=25), loop_route(tuesday)
    )
    print(f"\nPreview for bob: {preview.territory_stats.stolen_cells_count} cells would be stolen\n")

    await orchestrator.process_activity(
        activity("bob-1", "bob", "bike", tuesday, km=9.2, minutes=25), loop_route(tuesday)
    )

    # Bob rides again and defends
    await orchestrator.process_activity(
        activity("bob-2", "bob", "bike", wednesday, km=9.2, minutes=24), loop_route(wednesday)
    )

    # Bob's claims have lapsed by the time he comes back: his own expired cells are recaptured
    comeback = await orchestrator.process_activity(
        activity("bob-3", "bob", "bike", next_month, km=9.2, minutes=24), loop_route(next_month)
    )

    # Alice rides the loop the next day and takes it back from Bob
    day_after = next_month + timedelta(days=1)
    result = await orchestrator.process_activity(
        activity("alice-2", "alice", "run", day_after, km=4.6, minutes=24), loop_route(day_after)
    )

    print()
    print("=" * 60)
    print(f"Bob's comeback: {comeback.territory_stats.recaptured_cells_count} cells recaptured, "
          f"{comeback.xp_breakdown.total} XP")
    print(f"Alice's reply: {result.territory_stats.stolen_cells_count} cells stolen, "
          f"{result.xp_breakdown.total} XP")
    for mission in result.missions:
        print(f"  - {mission.name} ({mission.rarity.value}): {mission.description}")
    print("=" * 60)

    await store.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Replay a small territory season")
    parser.add_argument("--data-dir", default=None, help="Persist cells as JSON under this directory")
    args = parser.parse_args()
    asyncio.run(main(args.data_dir))
