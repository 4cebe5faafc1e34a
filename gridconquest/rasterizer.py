"""Route rasterization: ordered GPS points -> set of touched grid cells.

Consecutive points are joined by straight segments in (lat, lon) space and
sampled every ``SAMPLE_INTERVAL_METERS`` so that sparse or fast-moving GPS
samples do not skip the cells in between. Linear interpolation of geographic
coordinates is accurate enough at cell resolution.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Dict, Sequence

from .geo_grid import cell_boundary, cell_center, cell_index, haversine_distance_meters
from .schemas import GridCoordinate, RoutePoint, TerritoryCell, ensure_utc


SAMPLE_INTERVAL_METERS = 20.0
# Segments shorter than this only contribute their start cell
STATIONARY_THRESHOLD_METERS = 10.0


def segment_cells(start: RoutePoint, end: RoutePoint) -> Dict[str, GridCoordinate]:
    """Cells touched by the straight segment from ``start`` to ``end``."""
    cells: Dict[str, GridCoordinate] = {}
    distance = haversine_distance_meters(start, end)

    if distance < STATIONARY_THRESHOLD_METERS:
        coord = cell_index(start.latitude, start.longitude)
        cells[coord.cell_id] = coord
        return cells

    steps = math.ceil(distance / SAMPLE_INTERVAL_METERS)
    for i in range(steps + 1):
        fraction = i / steps
        lat = start.latitude + (end.latitude - start.latitude) * fraction
        lon = start.longitude + (end.longitude - start.longitude) * fraction
        coord = cell_index(lat, lon)
        cells.setdefault(coord.cell_id, coord)
    return cells


def trace_route(points: Sequence[RoutePoint]) -> Dict[str, GridCoordinate]:
    """Deduplicated cells touched by the whole route, keyed by cell id.

    The first point is always seeded, so a one-point route yields exactly one cell.
    An empty route yields no cells.
    """
    traversed: Dict[str, GridCoordinate] = {}
    if not points:
        return traversed

    first = cell_index(points[0].latitude, points[0].longitude)
    traversed[first.cell_id] = first

    for start, end in zip(points, points[1:]):
        for key, coord in segment_cells(start, end).items():
            traversed.setdefault(key, coord)
    return traversed


def build_cell(
    coord: GridCoordinate,
    *,
    user_id: str,
    activity_id: str,
    conquered_at: datetime,
    expiration_days: float,
) -> TerritoryCell:
    """Fresh ownership record for ``coord``, stamped for the acting user/activity."""
    conquered_at = ensure_utc(conquered_at)
    center = cell_center(coord.x, coord.y)
    return TerritoryCell(
        id=coord.cell_id,
        center_latitude=center.latitude,
        center_longitude=center.longitude,
        boundary=cell_boundary(center),
        expires_at=conquered_at + timedelta(days=expiration_days),
        last_conquered_at=conquered_at,
        user_id=user_id,
        activity_id=activity_id,
    )


def rasterize(
    points: Sequence[RoutePoint],
    *,
    user_id: str,
    activity_id: str,
    end_time: datetime,
    expiration_days: float = 7,
) -> Dict[str, TerritoryCell]:
    """Map a route to candidate cell records, not yet compared against any owner.

    Every record is stamped with the activity's end time (not the sample time) and
    the acting user, so processing the same route twice yields identical output.
    """
    return {
        key: build_cell(
            coord,
            user_id=user_id,
            activity_id=activity_id,
            conquered_at=end_time,
            expiration_days=expiration_days,
        )
        for key, coord in trace_route(points).items()
    }
