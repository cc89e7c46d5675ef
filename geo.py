"""
geo.py — small geometry helpers for route paths.

All coordinates are (lon, lat) pairs in WGS84 degrees, the GeoJSON order.
Planar operations (nearest vertex, segment projection) work directly in
degrees; distances reported in meters use the haversine formula.
"""

import math
from decimal import Decimal, ROUND_HALF_UP
from typing import Sequence

from shapely.geometry import LineString, Point

from config import COORD_PRECISION

EARTH_RADIUS_M = 6371000.0

Coord = tuple[float, float]


def haversine_m(a: Sequence[float], b: Sequence[float]) -> float:
    """Return the great-circle distance in meters between two (lon, lat) points."""
    lon1, lat1 = a[0], a[1]
    lon2, lat2 = b[0], b[1]
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    h = (math.sin(dlat / 2) ** 2 +
         math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) *
         math.sin(dlon / 2) ** 2)
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def path_length_m(path: Sequence[Sequence[float]]) -> float:
    """Sum of haversine distances between consecutive points."""
    return sum(haversine_m(path[i], path[i + 1]) for i in range(len(path) - 1))


def bounding_box(path: Sequence[Sequence[float]]) -> tuple[float, float, float, float]:
    """Return (min_lon, min_lat, max_lon, max_lat).  Raises ValueError on an empty path."""
    if not path:
        raise ValueError("cannot compute a bounding box of an empty path")
    lons = [p[0] for p in path]
    lats = [p[1] for p in path]
    return min(lons), min(lats), max(lons), max(lats)


def find_nearest_coord_index(point: Sequence[float], coords: Sequence[Sequence[float]]) -> int | None:
    """Index of the vertex in coords closest to point (planar), or None if coords is empty.

    Ties resolve to the earliest vertex.
    """
    best_idx = None
    best_dist = math.inf
    px, py = point[0], point[1]
    for i, c in enumerate(coords):
        d = (c[0] - px) ** 2 + (c[1] - py) ** 2
        if d < best_dist:
            best_dist = d
            best_idx = i
    return best_idx


def closest_point_on_polyline(
    point: Sequence[float],
    coords: Sequence[Sequence[float]],
) -> tuple[Coord, float] | None:
    """Project point onto the polyline and return ((lon, lat), distance_m).

    The projection is the nearest point on any segment, not only on the
    vertices.  Returns None for an empty polyline.
    """
    if not coords:
        return None
    if len(coords) == 1:
        only = (float(coords[0][0]), float(coords[0][1]))
        return only, haversine_m(point, only)

    line = LineString([(c[0], c[1]) for c in coords])
    projected = line.interpolate(line.project(Point(point[0], point[1])))
    snapped = (projected.x, projected.y)
    return snapped, haversine_m(point, snapped)


def quantize_coordinate(value: float, digits: int = COORD_PRECISION) -> float:
    """Round to a fixed number of decimals, halves away from zero.

    Goes through the shortest decimal repr of the float so that applying it
    twice gives the same result as applying it once.
    """
    step = Decimal(1).scaleb(-digits)
    return float(Decimal(repr(float(value))).quantize(step, rounding=ROUND_HALF_UP))


def dedupe_consecutive(coords: Sequence[Sequence[float]]) -> list[list[float]]:
    """Drop points identical to their predecessor."""
    out: list[list[float]] = []
    for c in coords:
        pt = [float(c[0]), float(c[1])]
        if not out or out[-1] != pt:
            out.append(pt)
    return out
