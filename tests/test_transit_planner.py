"""
Unit tests for public transit day planning (services/transit_planner.py).
"""
import pytest
from conftest import SEOUL_STATION, build_trip
from models.schemas import (
    Coordinate,
    DayEndpointIds,
    FixedSchedule,
    Node,
    NodeKind,
    Place,
    PlaceCluster,
    RouteSegment,
    SegmentAnomalyType,
    TransitDetails,
    TransitSubPath,
    TransportMode,
    UnassignedReasonCode,
)
from services.planning_context import PlanningContext
from services.routes_matrix import RoutesMatrixService, TravelMatrix
from services.transit_planner import (
    REMOVED_MESSAGE,
    apply_local_fixes,
    backtracking_score,
    balanced_clustering,
    choose_end_anchor,
    complexity_impact,
    count_crossings,
    detect_anomalous_segments,
    minimize_crossings,
    order_clusters_one_direction,
    order_within_cluster,
    plan_transit_days,
    remove_overloaded,
    segment_anomalies,
    segments_intersect,
    smooth_cluster_order,
)
from utils.diagnostics import CollectingDiagnostics


def coord(lat, lng=127.0):
    return Coordinate(lat=lat, lng=lng)


def make_node(node_id, lat, lng=127.0, duration=60, **fields):
    return Node(
        id=node_id,
        kind=NodeKind.PLACE,
        name=node_id.upper(),
        coordinate=coord(lat, lng),
        duration=duration,
        **fields,
    )


def node_map(*nodes):
    return {n.id: n for n in nodes}


def cluster(cluster_id, lat, lng=127.0):
    return PlaceCluster(cluster_id=cluster_id, place_ids=[cluster_id], centroid=coord(lat, lng))


def segment(duration, transfers=0, section_times=()):
    details = None
    if transfers or section_times:
        details = TransitDetails(
            transfer_count=transfers,
            sub_paths=[TransitSubPath(traffic_type=1, section_time=t) for t in section_times],
        )
    return RouteSegment(mode=TransportMode.PUBLIC, distance=1000, duration=duration, transit_details=details)


def group_places(prefix, lat, count, duration=60):
    return [
        Place(id=f"{prefix}{i}", name=f"{prefix}{i}", lat=lat + i * 0.002, lng=SEOUL_STATION.lng, estimated_duration=duration)
        for i in range(count)
    ]


def public_context(places, fixed_schedules=None, **trip_overrides):
    trip = build_trip(transport_modes=[TransportMode.PUBLIC], **trip_overrides)
    context = PlanningContext.build(trip, places, fixed_schedules)
    matrix = RoutesMatrixService(provider=object()).build_estimated(context.node_list, TransportMode.PUBLIC)
    return context, matrix


# X자 모양: p(SW) q(NE) r(SE) s(NW)
X_NODES = node_map(
    make_node("p", 37.00, 127.00),
    make_node("q", 37.01, 127.01),
    make_node("r", 37.00, 127.01),
    make_node("s", 37.01, 127.00),
)


class TestGeometry:
    def test_crossing_segments(self):
        assert segments_intersect(coord(37.0, 127.0), coord(37.01, 127.01), coord(37.01, 127.0), coord(37.0, 127.01))

    def test_parallel_segments_do_not_cross(self):
        assert not segments_intersect(coord(37.0, 127.0), coord(37.0, 127.01), coord(37.01, 127.0), coord(37.01, 127.01))

    def test_count_and_remove_crossing(self):
        route = ["p", "q", "r", "s"]
        assert count_crossings(route, X_NODES) == 1

        uncrossed = minimize_crossings(route, X_NODES)

        assert uncrossed == ["p", "r", "q", "s"]
        assert count_crossings(uncrossed, X_NODES) == 0

    def test_crossing_kept_when_fixed_place_inside_range(self):
        nodes = dict(X_NODES)
        nodes["q"] = nodes["q"].model_copy(update={"is_fixed": True, "fixed_start_time": "12:00"})

        assert minimize_crossings(["p", "q", "r", "s"], nodes) == ["p", "q", "r", "s"]

    def test_backtracking_score(self):
        nodes = node_map(*(make_node(p, lat) for p, lat in [("a", 37.00), ("b", 37.02), ("c", 37.01), ("d", 37.03)]))

        assert backtracking_score(["a", "b", "c", "d"], nodes) == pytest.approx(1.0)
        assert backtracking_score(["a", "c", "d"], nodes) == 0


class TestBalancedClustering:
    def test_separate_groups_stay_together(self):
        nodes = [make_node(f"a{i}", 37.00 + i * 0.001) for i in range(3)]
        nodes += [make_node(f"b{i}", 37.30 + i * 0.001) for i in range(3)]

        clusters = balanced_clustering(nodes, day_count=2, target_per_day=3)

        groups = sorted(sorted(c.place_ids) for c in clusters)
        assert groups == [["a0", "a1", "a2"], ["b0", "b1", "b2"]]

    def test_capacity_spills_to_other_cluster(self):
        nodes = [make_node(f"a{i}", 37.00 + i * 0.001) for i in range(5)]
        nodes.append(make_node("far", 37.30))

        clusters = balanced_clustering(nodes, day_count=2, target_per_day=3)

        assert sorted(len(c.place_ids) for c in clusters) == [3, 3]

    def test_dated_fixed_places_left_out(self):
        nodes = [make_node(f"a{i}", 37.00 + i * 0.001) for i in range(4)]
        nodes.append(make_node("f", 37.01, is_fixed=True, fixed_date="2025-03-01", fixed_start_time="12:00"))

        clusters = balanced_clustering(nodes, day_count=2, target_per_day=2)

        assert all("f" not in c.place_ids for c in clusters)
        assert sum(len(c.place_ids) for c in clusters) == 4

    def test_fewer_places_than_days(self):
        nodes = [make_node("a", 37.0), make_node("b", 37.1)]

        clusters = balanced_clustering(nodes, day_count=3, target_per_day=1)

        assert len(clusters) == 2

    def test_centroid_is_member_average(self):
        nodes = [make_node("a", 37.0), make_node("b", 37.002)]

        clusters = balanced_clustering(nodes, day_count=1, target_per_day=2)

        assert clusters[0].centroid.lat == pytest.approx(37.001)


class TestClusterOrdering:
    def test_lodging_is_end_anchor(self):
        lodging = coord(37.5)
        assert choose_end_anchor(lodging, [cluster("a", 37.0)]) == lodging

    def test_farthest_centroid_without_lodging(self):
        clusters = [cluster("a", 37.0), cluster("b", 37.1), cluster("c", 37.5)]

        assert choose_end_anchor(None, clusters).lat == pytest.approx(37.5)

    def test_no_anchor_without_clusters(self):
        with pytest.raises(ValueError):
            choose_end_anchor(None, [])

    def test_nearest_to_anchor_first(self):
        clusters = [cluster("a", 37.0), cluster("b", 37.1), cluster("c", 37.2)]

        ordered = order_clusters_one_direction(clusters, coord(37.25))

        assert [c.cluster_id for c in ordered] == ["c", "b", "a"]

    def test_smoothing_removes_zigzag(self):
        east = cluster("east", 37.0, 127.01)
        west = cluster("west", 37.0, 126.989)
        far_east = cluster("far_east", 37.0, 127.02)

        ordered = smooth_cluster_order([east, west, far_east])

        assert [c.cluster_id for c in ordered] == ["east", "far_east", "west"]


class TestWithinClusterOrdering:
    def test_follows_start_to_end_axis(self):
        nodes = node_map(make_node("a", 37.03), make_node("b", 37.01), make_node("c", 37.02))

        ordered = order_within_cluster(["a", "b", "c"], nodes, coord(37.0), coord(37.05))

        assert ordered == ["b", "c", "a"]

    def test_fixed_places_in_time_order(self):
        nodes = node_map(
            make_node("a", 37.01),
            make_node("b", 37.03),
            make_node("f", 37.015, is_fixed=True, fixed_start_time="14:00"),
            make_node("g", 37.04, is_fixed=True, fixed_start_time="11:00"),
        )

        ordered = order_within_cluster(["a", "b", "f", "g"], nodes, coord(37.0), coord(37.05))

        assert ordered == ["g", "a", "b", "f"]

    def test_single_place(self):
        nodes = node_map(make_node("a", 37.0))
        assert order_within_cluster(["a"], nodes, coord(37.0), coord(37.1)) == ["a"]


class TestComplexityRemoval:
    def setup_method(self):
        self.nodes = node_map(*(make_node(p, 37.0 + i * 0.002, duration=250) for i, p in enumerate("abcd")))
        self.matrix = RoutesMatrixService(provider=object()).build_estimated(
            list(self.nodes.values()), TransportMode.PUBLIC
        )

    def test_overloaded_day_trimmed_to_window(self):
        day_places = [list("abcd")]

        removed = remove_overloaded(day_places, [600], [DayEndpointIds()], self.nodes, self.matrix, max_removals=3)

        assert len(removed) == 2
        assert len(day_places[0]) == 2
        assert set(removed).isdisjoint(day_places[0])

    def test_removal_capped(self):
        day_places = [list("abcd")]

        removed = remove_overloaded(day_places, [600], [DayEndpointIds()], self.nodes, self.matrix, max_removals=1)

        assert len(removed) == 1
        assert len(day_places[0]) == 3

    def test_fixed_places_never_removed(self):
        nodes = {k: v.model_copy(update={"is_fixed": True}) for k, v in self.nodes.items()}
        day_places = [list("abcd")]

        removed = remove_overloaded(day_places, [600], [DayEndpointIds()], nodes, self.matrix, max_removals=3)

        assert removed == []
        assert day_places == [list("abcd")]

    def test_day_within_window_untouched(self):
        day_places = [["a", "b"]]

        assert remove_overloaded(day_places, [600], [DayEndpointIds()], self.nodes, self.matrix, max_removals=3) == []

    def test_backtracking_place_scores_higher(self):
        nodes = node_map(*(make_node(p, lat) for p, lat in [
            ("a", 37.00), ("b", 37.01), ("x", 36.98), ("c", 37.02), ("d", 37.03),
        ]))
        route = ["a", "b", "x", "c", "d"]

        assert complexity_impact("x", route, nodes) > complexity_impact("b", route, nodes)


class TestAnomalies:
    def test_segment_anomaly_types(self):
        anomalies = segment_anomalies(segment(45, transfers=3, section_times=[30]), 0, "a", "b")

        assert {a.type for a in anomalies} == {
            SegmentAnomalyType.LONG_DURATION,
            SegmentAnomalyType.TOO_MANY_TRANSFERS,
            SegmentAnomalyType.LONG_WAIT_TIME,
        }
        assert all(a.suggestion for a in anomalies)

    def test_normal_segment(self):
        assert segment_anomalies(segment(10, transfers=1, section_times=[8]), 0, "a", "b") == []

    def test_start_and_end_legs_checked(self):
        matrix = TravelMatrix(
            ["s", "a", "b", "e"],
            {("s", "a"): segment(40), ("a", "b"): segment(10), ("b", "e"): segment(10)},
        )

        anomalies = detect_anomalous_segments([["a", "b"]], [DayEndpointIds(start_id="s", end_id="e")], matrix)

        assert [(a.from_id, a.to_id, a.type) for a in anomalies] == [("s", "a", SegmentAnomalyType.LONG_DURATION)]

    def test_swap_kept_when_day_gets_shorter(self):
        nodes = node_map(make_node("a", 37.0), make_node("b", 37.01))
        matrix = TravelMatrix(
            ["s", "a", "b", "e"],
            {
                ("s", "a"): segment(30), ("a", "b"): segment(25), ("b", "e"): segment(30),
                ("s", "b"): segment(5), ("b", "a"): segment(25), ("a", "e"): segment(5),
            },
        )
        endpoints = [DayEndpointIds(start_id="s", end_id="e")]
        day_places = [["a", "b"]]
        anomalies = detect_anomalous_segments(day_places, endpoints, matrix)

        swaps = apply_local_fixes(day_places, anomalies, endpoints, nodes, matrix)

        assert swaps == 1
        assert day_places == [["b", "a"]]

    def test_swap_reverted_when_not_shorter(self):
        nodes = node_map(make_node("a", 37.0), make_node("b", 37.01))
        matrix = TravelMatrix(
            ["s", "a", "b", "e"],
            {
                ("s", "a"): segment(5), ("a", "b"): segment(25), ("b", "e"): segment(5),
                ("s", "b"): segment(30), ("b", "a"): segment(25), ("a", "e"): segment(30),
            },
        )
        endpoints = [DayEndpointIds(start_id="s", end_id="e")]
        day_places = [["a", "b"]]
        anomalies = detect_anomalous_segments(day_places, endpoints, matrix)

        assert apply_local_fixes(day_places, anomalies, endpoints, nodes, matrix) == 0
        assert day_places == [["a", "b"]]


class TestPlanTransitDays:
    def test_each_day_covers_one_area(self):
        places = group_places("a", SEOUL_STATION.lat, 3) + group_places("b", SEOUL_STATION.lat + 0.05, 3)
        context, matrix = public_context(places)

        plan = plan_transit_days(context, matrix)

        assert len(plan.days) == 2
        assert sorted(p for day in plan.days for p in day) == sorted(p.id for p in places)
        areas = [{p[0] for p in day} for day in plan.days]
        assert all(len(area) == 1 for area in areas)
        assert areas[0] != areas[1]
        assert plan.excluded == []

    def test_fixed_place_pinned_to_its_date(self):
        places = group_places("a", SEOUL_STATION.lat, 3) + group_places("b", SEOUL_STATION.lat + 0.05, 3)
        fixed = [FixedSchedule(id="f1", place_id="b0", date="2025-03-02", start_time="12:00", end_time="13:00")]
        context, matrix = public_context(places, fixed)

        plan = plan_transit_days(context, matrix)

        assert "b0" in plan.days[1]
        assert all("b0" not in c.place_ids for c in plan.clusters)

    def test_overloaded_day_excludes_places(self):
        places = group_places("a", SEOUL_STATION.lat, 6, duration=150)
        context, matrix = public_context(places, end_date="2025-03-01")
        diagnostics = CollectingDiagnostics()

        plan = plan_transit_days(context, matrix, diagnostics)

        assert 1 <= len(plan.excluded) <= 3
        assert all(info.reason_code == UnassignedReasonCode.TIME_EXCEEDED for info in plan.excluded)
        assert all(info.reason_message == REMOVED_MESSAGE for info in plan.excluded)
        assert diagnostics.count("transit.place_removed") == len(plan.excluded)
        kept = [p for day in plan.days for p in day]
        assert sorted(kept + [info.place_id for info in plan.excluded]) == sorted(p.id for p in places)
