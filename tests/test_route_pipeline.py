"""Tests for route_pipeline.py"""

import pytest

from geo import path_length_m, quantize_coordinate
from models import BoundingBox, RawRoute, RouteMetrics, Stop, validate_derived_feature
from route_pipeline import (
    build_chunked_path, compute_metrics, derive_route, global_path_index,
    locate_turn_index, locate_turn_stop, optimize_path, report_metrics,
    sanitize_stops_to_corridor,
)


# --- Helpers -------------------------------------------------------------- #

def make_stops(coords, directions=None):
    """Stops at the given (lon, lat) points, in order."""
    directions = directions or [0] * len(coords)
    return [
        Stop(
            node_id=f"N{i}",
            name=f"Stop {i}",
            sequence_order=i + 1,
            direction_code=directions[i],
            latitude=lat,
            longitude=lon,
            node_no=str(1000 + i),
        )
        for i, (lon, lat) in enumerate(coords)
    ]


def line_stops(n, step=0.01):
    return make_stops([(i * step, 0.0) for i in range(n)])


class FakeRouter:
    """Router stand-in.  By default returns the input with midpoints inserted."""

    def __init__(self, respond=None):
        self.calls = []
        self.respond = respond or self.with_midpoints

    @staticmethod
    def with_midpoints(coords):
        out = []
        for i, c in enumerate(coords):
            if i:
                prev = coords[i - 1]
                out.append([(prev[0] + c[0]) / 2, (prev[1] + c[1]) / 2])
            out.append([c[0], c[1]])
        return out

    def __call__(self, coords):
        coords = [tuple(c) for c in coords]
        self.calls.append(coords)
        return self.respond(coords)


def assert_index_map_valid(index_map, n_stops, path_len):
    assert len(index_map) == n_stops
    assert all(0 <= idx <= path_len - 1 for idx in index_map)
    assert all(a <= b for a, b in zip(index_map, index_map[1:]))


# --- Corridor sanitizer --------------------------------------------------- #

class TestSanitizeStopsToCorridor:
    def test_moves_stop_within_threshold(self):
        stops = make_stops([(0.0, 0.0), (0.5, 0.0005), (1.0, 0.0)])
        router = FakeRouter(lambda coords: [[0.0, 0.0], [1.0, 0.0]])
        result = sanitize_stops_to_corridor(stops, router)
        assert result[1].longitude == pytest.approx(0.5)
        assert result[1].latitude == pytest.approx(0.0)

    def test_far_stop_is_unchanged(self):
        stops = make_stops([(0.0, 0.0), (0.5, 0.01), (1.0, 0.0)])
        router = FakeRouter(lambda coords: [[0.0, 0.0], [1.0, 0.0]])
        result = sanitize_stops_to_corridor(stops, router)
        assert result[1] == stops[1]
        assert result[1].latitude == 0.01

    def test_routing_failure_keeps_stop(self):
        stops = make_stops([(0.0, 0.0), (0.5, 0.0005), (1.0, 0.0)])
        result = sanitize_stops_to_corridor(stops, FakeRouter(lambda coords: None))
        assert result == stops

    def test_queries_neighbours_of_each_interior_stop(self):
        stops = line_stops(4)
        router = FakeRouter()
        sanitize_stops_to_corridor(stops, router)
        assert len(router.calls) == 2
        assert router.calls[0] == [stops[0].coordinate, stops[2].coordinate]
        assert router.calls[1][0] == pytest.approx(stops[1].coordinate)
        assert router.calls[1][1] == stops[3].coordinate

    def test_uses_corrected_predecessor(self):
        stops = make_stops([(0.0, 0.0), (0.5, 0.0005), (1.0, 0.0), (1.5, 0.0)])
        router = FakeRouter(lambda coords: [[coords[0][0], 0.0], [coords[1][0], 0.0]])
        sanitize_stops_to_corridor(stops, router)
        assert router.calls[1][0] == pytest.approx((0.5, 0.0))

    def test_keeps_identity_and_order(self):
        stops = make_stops([(0.0, 0.0), (0.5, 0.0005), (1.0, 0.0)], directions=[0, 1, 1])
        router = FakeRouter(lambda coords: [[0.0, 0.0], [1.0, 0.0]])
        result = sanitize_stops_to_corridor(stops, router)
        assert [s.node_id for s in result] == ["N0", "N1", "N2"]
        assert result[1].name == "Stop 1"
        assert result[1].direction_code == 1
        assert result[1].sequence_order == 2

    def test_short_route_not_queried(self):
        router = FakeRouter()
        stops = line_stops(2)
        assert sanitize_stops_to_corridor(stops, router) == stops
        assert router.calls == []


# --- Chunk index translation ---------------------------------------------- #

class TestGlobalPathIndex:
    def test_first_chunk_has_no_offset(self):
        assert global_path_index(0, 0) == 0
        assert global_path_index(0, 3) == 3

    def test_later_chunk_local_zero_is_previous_last_point(self):
        assert global_path_index(5, 0) == 4

    def test_later_chunk_skips_dropped_point(self):
        assert global_path_index(5, 1) == 5
        assert global_path_index(5, 3) == 7

    def test_negative_rejected(self):
        with pytest.raises(ValueError):
            global_path_index(-1, 0)
        with pytest.raises(ValueError):
            global_path_index(3, -1)


# --- Chunked path builder ------------------------------------------------- #

class TestBuildChunkedPath:
    def test_stitched_indices_point_at_stops(self):
        stops = line_stops(10)
        path, index_map = build_chunked_path(stops, FakeRouter(), chunk_size=4)
        assert len(path) == 19
        assert index_map == [2 * i for i in range(10)]
        for stop, idx in zip(stops, index_map):
            assert path[idx] == pytest.approx(list(stop.coordinate))

    def test_chunks_overlap_by_one_stop(self):
        stops = line_stops(10)
        router = FakeRouter()
        build_chunked_path(stops, router, chunk_size=4)
        assert [len(c) for c in router.calls] == [4, 4, 4]
        assert router.calls[1][0] == stops[3].coordinate
        assert router.calls[2][0] == stops[6].coordinate

    def test_no_adjacent_duplicates(self):
        def doubled(coords):
            out = []
            for p in FakeRouter.with_midpoints(coords):
                out.extend([p, p])
            return out

        path, _ = build_chunked_path(line_stops(12), FakeRouter(doubled), chunk_size=5)
        assert all(a != b for a, b in zip(path, path[1:]))

    def test_index_map_invariants_across_sizes(self):
        for n in (2, 3, 5, 11, 26, 53):
            for chunk_size in (2, 3, 25):
                path, index_map = build_chunked_path(line_stops(n), FakeRouter(), chunk_size)
                assert_index_map_valid(index_map, n, len(path))

    def test_failed_middle_chunk_leaves_gap(self):
        stops = line_stops(10)

        def fail_second(coords):
            if coords[0] == stops[3].coordinate:
                return None
            return FakeRouter.with_midpoints(coords)

        path, index_map = build_chunked_path(stops, FakeRouter(fail_second), chunk_size=4)
        assert len(path) == 13
        assert_index_map_valid(index_map, 10, len(path))
        assert index_map[:4] == [0, 2, 4, 6]
        assert index_map[4:7] == [6, 6, 6]
        assert index_map[7:] == [8, 10, 12]

    def test_failed_first_chunk(self):
        stops = line_stops(7)

        def fail_first(coords):
            if coords[0] == stops[0].coordinate:
                return []
            return FakeRouter.with_midpoints(coords)

        path, index_map = build_chunked_path(stops, FakeRouter(fail_first), chunk_size=4)
        assert len(path) == 7
        assert index_map == [0, 0, 0, 0, 2, 4, 6]

    def test_failed_last_chunk_maps_trailing_stops_to_path_end(self):
        stops = make_stops([(0.0, 0.0), (1.0, 0.0), (2.0, 0.0), (3.0, 0.0)])

        def overshoot_then_fail(coords):
            if coords[0] == stops[0].coordinate:
                return [[0.0, 0.0], [1.0, 0.0], [2.0, 0.0], [3.0, 0.0], [4.0, 0.0]]
            return None

        path, index_map = build_chunked_path(stops, FakeRouter(overshoot_then_fail), chunk_size=3)
        assert len(path) == 5
        # Stop 3 sits exactly on path[3], but nothing after it was routed.
        assert index_map == [0, 1, 2, 4]

    def test_all_chunks_fail_keeps_raw_coordinates(self):
        stops = line_stops(5)
        path, index_map = build_chunked_path(stops, FakeRouter(lambda c: None), chunk_size=3)
        assert path == [list(s.coordinate) for s in stops]
        assert index_map == [0, 1, 2, 3, 4]

    def test_all_chunks_fail_with_repeated_coordinates(self):
        stops = make_stops([(0.0, 0.0), (0.0, 0.0), (1.0, 0.0)])
        path, index_map = build_chunked_path(stops, FakeRouter(lambda c: None))
        assert path == [[0.0, 0.0], [1.0, 0.0]]
        assert index_map == [0, 0, 1]

    def test_collapsed_geometry_stays_in_bounds(self):
        # Router simplifies every chunk down to its two endpoints.
        endpoints = FakeRouter(lambda coords: [list(coords[0]), list(coords[-1])])
        stops = line_stops(5)
        path, index_map = build_chunked_path(stops, endpoints, chunk_size=3)
        assert len(path) == 3
        assert_index_map_valid(index_map, 5, len(path))
        assert index_map[0] == 0
        assert index_map[-1] == 2

    def test_requires_two_stops(self):
        with pytest.raises(ValueError):
            build_chunked_path(line_stops(1), FakeRouter())

    def test_rejects_tiny_chunk_size(self):
        with pytest.raises(ValueError):
            build_chunked_path(line_stops(4), FakeRouter(), chunk_size=1)


# --- Turn point locator --------------------------------------------------- #

class TestTurnPoint:
    def test_turn_is_last_stop_before_change(self):
        stops = make_stops([(i, 0) for i in range(5)], directions=[0, 0, 1, 1, 1])
        assert locate_turn_stop(stops) == 1

    def test_single_direction_defaults_to_last_stop(self):
        stops = make_stops([(i, 0) for i in range(3)], directions=[0, 0, 0])
        assert locate_turn_stop(stops) == 2

    def test_turn_index_goes_through_index_map(self):
        stops = make_stops([(i, 0) for i in range(3)], directions=[0, 1, 1])
        assert locate_turn_index(stops, [0, 3, 5], path_len=6) == 0

    def test_missing_mapping_falls_back_to_midpoint(self):
        stops = make_stops([(i, 0) for i in range(3)])
        assert locate_turn_index(stops, [], path_len=9) == 4


# --- Metrics & optimizer -------------------------------------------------- #

class TestMetrics:
    def test_bounding_box(self):
        metrics = compute_metrics([(0, 0), (1, 2), (-1, 3)])
        assert metrics.bounding_box == BoundingBox(min_lon=-1, min_lat=0, max_lon=1, max_lat=3)

    def test_total_distance(self):
        path = [(0.0, 0.0), (0.001, 0.0), (0.001, 0.001)]
        assert compute_metrics(path).total_distance == pytest.approx(path_length_m(path))

    def test_empty_path(self):
        metrics = compute_metrics([])
        assert metrics.bounding_box is None
        assert metrics.total_distance == 0.0

    def test_report_rounds_distance_half_up(self):
        metrics = compute_metrics([(0, 0), (1, 1)])
        reported = report_metrics(RouteMetrics(metrics.bounding_box, 0.25))
        assert reported.total_distance == 0.3


class TestOptimizePath:
    def test_rounds_and_remaps_collapsed_points(self):
        path = [[0.0000001, 0.0], [0.0000002, 0.0], [1.0, 1.0]]
        rounded, index_map, turn = optimize_path(path, [0, 1, 2], 2)
        assert rounded == [[0.0, 0.0], [1.0, 1.0]]
        assert index_map == [0, 0, 1]
        assert turn == 1

    def test_idempotent(self):
        path = [[127.91976543219, 37.34210000049], [127.9201234567, 37.3430987654]]
        once = optimize_path(path, [0, 1], 1)
        twice = optimize_path(once[0], once[1], once[2])
        assert once == twice


# --- End to end ----------------------------------------------------------- #

class TestDeriveRoute:
    GEOMETRY = [[0.0, 0.0], [0.001, 0.0], [0.002, 0.001], [0.003, 0.002], [0.004, 0.003]]

    def _raw(self, stops):
        return RawRoute(route_id="WJB251000001", route_number="34-1",
                        fetched_at="2026-10-18T09:00:00+09:00", stops=stops)

    def test_two_stop_route(self):
        raw = self._raw(make_stops([(0.0, 0.0), (0.004, 0.003)]))
        feature = derive_route(raw, FakeRouter(lambda coords: self.GEOMETRY))

        assert len(feature.path) == 5
        assert feature.index_map == (0, 4)
        assert feature.turn_index == 4
        assert feature.total_distance == quantize_coordinate(path_length_m(self.GEOMETRY), 1)
        assert feature.bounding_box == BoundingBox(0.0, 0.0, 0.004, 0.003)
        assert feature.source_version == "2026-10-18T09:00:00+09:00"

    def test_geojson_output(self):
        raw = self._raw(make_stops([(0.0, 0.0), (0.004, 0.003)], directions=[0, 1]))
        data = derive_route(raw, FakeRouter(lambda coords: self.GEOMETRY)).to_geojson()

        assert validate_derived_feature(data) == []
        feature = data["features"][0]
        assert feature["id"] == "WJB251000001"
        assert feature["bbox"] == [0.0, 0.0, 0.004, 0.003]
        props = feature["properties"]
        assert props["route_no"] == "34-1"
        assert props["stops"][1] == {"id": "N1", "name": "Stop 1", "ord": 2, "up_down": 1}
        assert props["indices"] == {"turn_idx": 0, "stop_to_coord": [0, 4]}
        assert props["meta"]["source_ver"] == "2026-10-18T09:00:00+09:00"

    def test_routing_down_still_emits_feature(self):
        raw = self._raw(line_stops(6))
        feature = derive_route(raw, FakeRouter(lambda coords: None), chunk_size=3)

        assert len(feature.path) == 6
        assert_index_map_valid(list(feature.index_map), 6, len(feature.path))
        assert validate_derived_feature(feature.to_geojson()) == []

    def test_single_stop_route_is_skipped(self):
        raw = self._raw(line_stops(1))
        router = FakeRouter()
        assert derive_route(raw, router) is None
        assert router.calls == []

    def test_coordinates_are_quantized(self):
        geometry = [[127.91976543219, 37.34210000049], [127.9201234567, 37.3430987654]]
        raw = self._raw(make_stops([tuple(geometry[0]), tuple(geometry[1])]))
        feature = derive_route(raw, FakeRouter(lambda coords: geometry))
        assert feature.path == ((127.919765, 37.3421), (127.920123, 37.343099))
