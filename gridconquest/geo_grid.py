"""Fixed-size lat/lon grid math.

The world is divided into square cells of ``CELL_SIZE_DEGREES`` in degree space
(about 200 m at the equator, narrower toward the poles). No geodesic correction
is applied and extreme coordinates (poles, antimeridian) are accepted as-is.
"""

from __future__ import annotations

import math
from typing import List, Protocol

from .schemas import Coordinate, GridCoordinate


CELL_SIZE_DEGREES = 0.002
EARTH_RADIUS_METERS = 6371e3


class LatLon(Protocol):
    latitude: float
    longitude: float


def cell_index(latitude: float, longitude: float) -> GridCoordinate:
    """Return the grid coordinate containing a point (x from longitude, y from latitude)."""
    x = math.floor(longitude / CELL_SIZE_DEGREES)
    y = math.floor(latitude / CELL_SIZE_DEGREES)
    return GridCoordinate(x, y)


def cell_id(x: int, y: int) -> str:
    return f"{x}_{y}"


def parse_cell_id(value: str) -> GridCoordinate:
    """Inverse of :func:`cell_id`.

    Raises:
        ValueError: If ``value`` is not of the form ``"{x}_{y}"``
    """
    # Negative indices contain '-', never '_', so rpartition is unambiguous
    x_text, sep, y_text = value.rpartition("_")
    if not sep:
        raise ValueError(f"Malformed cell id: {value!r}")
    return GridCoordinate(int(x_text), int(y_text))


def cell_center(x: int, y: int) -> Coordinate:
    return Coordinate(
        latitude=(y + 0.5) * CELL_SIZE_DEGREES,
        longitude=(x + 0.5) * CELL_SIZE_DEGREES,
    )


def cell_boundary(center: Coordinate) -> List[Coordinate]:
    """Corners of the cell around ``center``: top-left, top-right, bottom-right, bottom-left."""
    half = CELL_SIZE_DEGREES / 2.0
    return [
        Coordinate(latitude=center.latitude + half, longitude=center.longitude - half),
        Coordinate(latitude=center.latitude + half, longitude=center.longitude + half),
        Coordinate(latitude=center.latitude - half, longitude=center.longitude + half),
        Coordinate(latitude=center.latitude - half, longitude=center.longitude - half),
    ]


def haversine_distance_meters(start: LatLon, end: LatLon) -> float:
    """Great-circle distance between two points, in meters."""
    phi1 = math.radians(start.latitude)
    phi2 = math.radians(end.latitude)
    delta_phi = math.radians(end.latitude - start.latitude)
    delta_lambda = math.radians(end.longitude - start.longitude)

    a = (
        math.sin(delta_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_METERS * c
