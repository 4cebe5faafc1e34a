"""
Ownership arbitration for territory cells.

Given a candidate cell from the rasterizer and the currently stored record for
the same cell id (or None), decide the interaction outcome and the record to
write. The decision table is evaluated in a fixed precedence order:

1. No stored record                                   -> CONQUEST
2. Stored record written by this same activity        -> CONQUEST (self-collision)
3. Another user's live record at least as new as ours -> SKIP (nothing written)
4. Stored record expired before the activity ended    -> RECAPTURE (own) / CONQUEST (other)
5. Another user's live record                          -> STEAL
6. The acting user's live record                       -> DEFENSE

Rule 2 short-circuits everything after it so that re-running an activity never
reports its own cells as defended. Expiry is evaluated against the activity's
end time, never the wall clock, which keeps backfills and out-of-order
processing reproducible.

The resolver is a total function over valid inputs and performs no I/O. Store
reads and the atomic commit around it belong to the orchestrator.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, Optional

from .schemas import (
    CellHistoryEntry,
    CellResolution,
    Interaction,
    TerritoryCell,
    TerritoryStats,
    ensure_utc,
)


def classify(
    existing: Optional[TerritoryCell],
    *,
    acting_user_id: str,
    activity_id: str,
    activity_end_time: datetime,
) -> Interaction:
    """Return the interaction outcome for one cell (no record building)."""

    if existing is None:
        return Interaction.CONQUEST

    if existing.activity_id == activity_id:
        return Interaction.CONQUEST

    end_time = ensure_utc(activity_end_time)
    is_owner = existing.user_id == acting_user_id
    is_expired = existing.is_expired_at(end_time)

    # A live claim by someone else that is at least as recent as this activity wins
    if not is_owner and not is_expired and existing.last_conquered_at >= end_time:
        return Interaction.SKIP

    if is_expired:
        return Interaction.RECAPTURE if is_owner else Interaction.CONQUEST

    if not is_owner:
        return Interaction.STEAL

    return Interaction.DEFENSE


def resolve(
    cell_id: str,
    candidate: TerritoryCell,
    existing: Optional[TerritoryCell],
    acting_user_id: str,
    activity_id: str,
    activity_end_time: datetime,
) -> CellResolution:
    """Arbitrate ``candidate`` against ``existing`` and build the write, if any.

    The updated record keeps the candidate's geometry and expiry window length,
    re-stamped with the acting user, activity and end time, and labelled with the
    outcome. A history entry accompanies every write.
    """

    end_time = ensure_utc(activity_end_time)
    outcome = classify(
        existing,
        acting_user_id=acting_user_id,
        activity_id=activity_id,
        activity_end_time=end_time,
    )

    if outcome is Interaction.SKIP:
        return CellResolution(cell_id=cell_id, outcome=outcome)

    self_collision = existing is not None and existing.activity_id == activity_id
    previous_owner_id = None
    if existing is not None and not self_collision:
        previous_owner_id = existing.user_id

    lifetime = candidate.expires_at - candidate.last_conquered_at
    updated = candidate.model_copy(
        update={
            "id": cell_id,
            "user_id": acting_user_id,
            "activity_id": activity_id,
            "last_conquered_at": end_time,
            "expires_at": end_time + lifetime,
            "last_interaction": outcome,
        }
    )
    history = CellHistoryEntry(
        cell_id=cell_id,
        user_id=acting_user_id,
        activity_id=activity_id,
        interaction=outcome,
        previous_owner_id=previous_owner_id,
        timestamp=end_time,
    )
    victim_id = previous_owner_id if outcome is Interaction.STEAL else None

    return CellResolution(
        cell_id=cell_id,
        outcome=outcome,
        updated_record=updated,
        history_entry=history,
        victim_id=victim_id,
    )


class TerritoryTally:
    """Accumulates TerritoryStats and the per-victim steal tally from resolutions.

    SKIP outcomes contribute to no counter. Steals from the acting user cannot
    happen by construction, but the victim tally still excludes them so callers
    never notify a user about themselves.
    """

    def __init__(self, acting_user_id: str):
        self.acting_user_id = acting_user_id
        self.stats = TerritoryStats()
        self.victim_steals: Dict[str, int] = {}

    def record(self, resolution: CellResolution) -> None:
        outcome = resolution.outcome
        if outcome is Interaction.CONQUEST:
            self.stats.new_cells_count += 1
        elif outcome is Interaction.DEFENSE:
            self.stats.defended_cells_count += 1
        elif outcome is Interaction.RECAPTURE:
            self.stats.recaptured_cells_count += 1
        elif outcome is Interaction.STEAL:
            self.stats.stolen_cells_count += 1
            victim = resolution.victim_id
            if victim and victim != self.acting_user_id:
                self.victim_steals[victim] = self.victim_steals.get(victim, 0) + 1

    def extend(self, resolutions: Iterable[CellResolution]) -> "TerritoryTally":
        for resolution in resolutions:
            self.record(resolution)
        return self
