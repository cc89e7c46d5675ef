"""
route_pipeline.py — turn a noisy stop sequence into one road-following path.

Stages (run per route, strictly in this order):
  1. Sanitize  — pull drifted interior stops onto the road between their neighbours
  2. Stitch    — route overlapping chunks of stops and join them into one path,
                 recording where each stop sits on that path
  3. Turn      — find the stop where the direction code first changes
  4. Metrics   — bounding box and length, then round coordinates for output
  5. Assemble  — package everything as a DerivedRouteFeature

A router is any callable taking [(lon, lat), ...] and returning
[[lon, lat], ...] or None; OSRMClient is the production one.
"""

import logging
from typing import Callable, Sequence

from config import CORRIDOR_SNAP_THRESHOLD_M, COORD_PRECISION, DISTANCE_PRECISION, OSRM_CHUNK_SIZE
from geo import (
    bounding_box, closest_point_on_polyline, dedupe_consecutive, find_nearest_coord_index,
    path_length_m, quantize_coordinate,
)
from models import BoundingBox, DerivedRouteFeature, RawRoute, RouteMetrics, Stop

logger = logging.getLogger(__name__)

Router = Callable[[Sequence[Sequence[float]]], list | None]


# ── Stage 1: Corridor sanitizer ──────────────────────────────────────

def sanitize_stops_to_corridor(
    stops: Sequence[Stop],
    router: Router,
    threshold_m: float = CORRIDOR_SNAP_THRESHOLD_M,
) -> list[Stop]:
    """Move each interior stop onto the road between its neighbours when close enough.

    The corridor for stop i is routed from the (already corrected) stop i-1 to
    stop i+1.  A stop with no corridor, or further than threshold_m from it,
    is returned unchanged.
    """
    stops = list(stops)
    if len(stops) < 3:
        return stops

    moved = 0
    for i in range(1, len(stops) - 1):
        corridor = router([stops[i - 1].coordinate, stops[i + 1].coordinate])
        if not corridor:
            continue

        hit = closest_point_on_polyline(stops[i].coordinate, corridor)
        if hit is None:
            continue
        (lon, lat), dist = hit
        if dist <= threshold_m:
            stops[i] = stops[i].moved_to(lon, lat)
            moved += 1
        else:
            logger.debug(f"Stop {stops[i].node_id} is {dist:.1f} m off its corridor; left as is")

    logger.debug(f"Sanitized {moved}/{len(stops) - 2} interior stops")
    return stops


# ── Stage 2: Chunked path builder ────────────────────────────────────

def global_path_index(prior_len: int, local_idx: int) -> int:
    """Translate an index into a chunk's raw geometry to an index into the stitched path.

    prior_len is the path length before the chunk was appended.  Every chunk
    after the first has its first point dropped (it repeats the previous
    chunk's last point), so its local 0 is the previous chunk's last point.
    """
    if prior_len < 0 or local_idx < 0:
        raise ValueError(f"negative index: prior_len={prior_len}, local_idx={local_idx}")
    if prior_len == 0:
        return local_idx
    if local_idx == 0:
        return prior_len - 1
    return prior_len + local_idx - 1


def _clamp(value: int, upper: int) -> int:
    return max(0, min(value, upper))


def _fill_unmapped(
    stops: Sequence[Stop],
    mapped: list[int | None],
    path: Sequence[Sequence[float]],
) -> list[int]:
    """Resolve stops no chunk could place, then force the map to be non-decreasing.

    An unmapped stop between two mapped stops takes the nearest path point
    between their indices, so a gap in the middle of a route cannot push later
    stops to the end of the path.  Unmapped stops after the last mapped stop
    take the last path index.
    """
    last = len(path) - 1
    result: list[int] = []
    for i, idx in enumerate(mapped):
        lo = result[-1] if result else 0
        if idx is None:
            hi = next((m for m in mapped[i + 1:] if m is not None), None)
            if hi is None:
                idx = last
            else:
                hi = max(lo, _clamp(hi, last))
                local = find_nearest_coord_index(stops[i].coordinate, path[lo:hi + 1])
                idx = lo + local if local is not None else hi
        result.append(max(lo, _clamp(idx, last)))
    return result


def _raw_fallback_path(stops: Sequence[Stop]) -> tuple[list[list[float]], list[int]]:
    """Path made of the stops' own coordinates, used when no chunk could be routed."""
    path: list[list[float]] = []
    index_map: list[int] = []
    for stop in stops:
        pt = [stop.longitude, stop.latitude]
        if not path or path[-1] != pt:
            path.append(pt)
        index_map.append(len(path) - 1)
    return path, index_map


def build_chunked_path(
    stops: Sequence[Stop],
    router: Router,
    chunk_size: int = OSRM_CHUNK_SIZE,
) -> tuple[list[list[float]], list[int]]:
    """Route the stops in overlapping chunks and stitch the results.

    Returns (path, index_map): the path has no adjacent duplicate points, and
    index_map[i] is the path index of stops[i], every entry in bounds and
    non-decreasing.  Chunks are processed in order because each chunk's
    offset depends on everything stitched before it.
    """
    n = len(stops)
    if n < 2:
        raise ValueError(f"need at least 2 stops to build a path, got {n}")
    if chunk_size < 2:
        raise ValueError(f"chunk size must be at least 2, got {chunk_size}")

    path: list[list[float]] = []
    mapped: list[int | None] = [None] * n

    start = 0
    while start < n - 1:
        end = min(start + chunk_size, n)
        chunk = stops[start:end]
        if len(chunk) < 2:
            break

        raw = router([s.coordinate for s in chunk])
        if not raw:
            logger.warning(f"No geometry for stops {start}-{end - 1}; leaving gap")
            start = end - 1
            continue

        coords = dedupe_consecutive(raw)
        prior_len = len(path)
        path.extend(coords[1:] if prior_len else coords)
        last = len(path) - 1

        for i, stop in enumerate(chunk):
            global_stop_idx = start + i
            if mapped[global_stop_idx] is not None:
                continue
            local_idx = find_nearest_coord_index(stop.coordinate, coords)
            mapped[global_stop_idx] = _clamp(global_path_index(prior_len, local_idx), last)

        start = end - 1

    if not path:
        logger.warning(f"No chunk could be routed; keeping raw coordinates for {n} stops")
        return _raw_fallback_path(stops)

    return path, _fill_unmapped(stops, mapped, path)


# ── Stage 3: Turn point locator ──────────────────────────────────────

def locate_turn_stop(stops: Sequence[Stop]) -> int:
    """Index of the last stop before the direction code first changes (last stop if never)."""
    for i in range(len(stops) - 1):
        if stops[i].direction_code != stops[i + 1].direction_code:
            return i
    return len(stops) - 1


def locate_turn_index(stops: Sequence[Stop], index_map: Sequence[int], path_len: int) -> int:
    """Path index of the turnaround, or the path midpoint if the stop is not mapped."""
    turn_stop = locate_turn_stop(stops)
    if 0 <= turn_stop < len(index_map):
        return index_map[turn_stop]
    return path_len // 2


# ── Stage 4: Metrics & optimizer ─────────────────────────────────────

def compute_metrics(path: Sequence[Sequence[float]]) -> RouteMetrics:
    if not path:
        return RouteMetrics(bounding_box=None, total_distance=0.0)
    return RouteMetrics(
        bounding_box=BoundingBox(*bounding_box(path)),
        total_distance=path_length_m(path),
    )


def optimize_path(
    path: Sequence[Sequence[float]],
    index_map: Sequence[int],
    turn_index: int,
    digits: int = COORD_PRECISION,
) -> tuple[list[list[float]], list[int], int]:
    """Round every coordinate and drop points that rounding made identical.

    Indices are remapped onto the shortened path.  Must only run after the
    index map is final, since it was computed against unrounded points.
    """
    rounded: list[list[float]] = []
    new_pos: list[int] = []
    for pt in path:
        q = [quantize_coordinate(pt[0], digits), quantize_coordinate(pt[1], digits)]
        if not rounded or rounded[-1] != q:
            rounded.append(q)
        new_pos.append(len(rounded) - 1)

    def remap(idx: int) -> int:
        return new_pos[idx] if 0 <= idx < len(new_pos) else _clamp(idx, len(rounded) - 1)

    return rounded, [remap(i) for i in index_map], remap(turn_index)


def report_metrics(metrics: RouteMetrics) -> RouteMetrics:
    """Metrics as written to disk: bbox at coordinate precision, distance to 0.1 m."""
    bbox = metrics.bounding_box
    if bbox is not None:
        bbox = BoundingBox(*(quantize_coordinate(v) for v in bbox.as_list()))
    return RouteMetrics(
        bounding_box=bbox,
        total_distance=quantize_coordinate(metrics.total_distance, DISTANCE_PRECISION),
    )


# ── Stage 5: Assembly ────────────────────────────────────────────────

def stop_metadata(stops: Sequence[Stop]) -> tuple[dict, ...]:
    return tuple(
        {"id": s.node_id, "name": s.name, "ord": s.sequence_order, "up_down": s.direction_code}
        for s in stops
    )


def assemble_feature(
    raw: RawRoute,
    stops: Sequence[Stop],
    path: Sequence[Sequence[float]],
    index_map: Sequence[int],
    turn_index: int,
    metrics: RouteMetrics,
) -> DerivedRouteFeature:
    return DerivedRouteFeature(
        route_id=raw.route_id,
        route_number=raw.route_number,
        path=tuple((pt[0], pt[1]) for pt in path),
        bounding_box=metrics.bounding_box,
        total_distance=metrics.total_distance,
        turn_index=turn_index,
        index_map=tuple(index_map),
        stop_metadata=stop_metadata(stops),
        source_version=raw.fetched_at,
    )


# ── Pipeline ─────────────────────────────────────────────────────────

def derive_route(
    raw: RawRoute,
    router: Router,
    chunk_size: int = OSRM_CHUNK_SIZE,
) -> DerivedRouteFeature | None:
    """Run every stage for one route.  Returns None for routes with fewer than 2 stops."""
    stops = sanitize_stops_to_corridor(raw.stops, router)
    if len(stops) < 2:
        logger.info(f"Route {raw.route_number} ({raw.route_id}) has {len(stops)} stop(s); skipped")
        return None

    path, index_map = build_chunked_path(stops, router, chunk_size)
    turn_index = locate_turn_index(stops, index_map, len(path))

    metrics = report_metrics(compute_metrics(path))
    path, index_map, turn_index = optimize_path(path, index_map, turn_index)

    logger.debug(
        f"Route {raw.route_number} ({raw.route_id}): {len(path)} points, "
        f"{metrics.total_distance} m, turn at {turn_index}"
    )
    return assemble_feature(raw, stops, path, index_map, turn_index, metrics)
