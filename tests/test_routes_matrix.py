"""
Unit tests for the travel cost matrix (services/routes_matrix.py).
"""
import logging
import math
import numpy as np
import pytest
from unittest.mock import AsyncMock, Mock
from models.schemas import CarRoute, Coordinate, Node, NodeKind, OptimizeConfig, TransportMode
from services.routes_matrix import RoutesMatrixService, TravelMatrix, generate_pairs
from utils.diagnostics import CollectingDiagnostics
from utils.retry_helpers import RoutingProviderError


def make_node(node_id: str, lat: float, lng: float, kind: NodeKind = NodeKind.PLACE) -> Node:
    return Node(id=node_id, kind=kind, name=node_id, coordinate=Coordinate(lat=lat, lng=lng))


@pytest.fixture
def nodes():
    return [
        make_node("origin", 37.5665, 126.9780, NodeKind.ORIGIN),
        make_node("a", 37.5796, 126.9770),
        make_node("b", 37.5512, 126.9882),
        make_node("dest", 37.5547, 126.9707, NodeKind.DESTINATION),
    ]


@pytest.fixture
def service():
    svc = RoutesMatrixService(provider=Mock())
    svc.batch_delay = 0
    return svc


class TestGeneratePairs:
    def test_excludes_self_into_origin_and_out_of_destination(self, nodes):
        pairs = {(a.id, b.id) for a, b in generate_pairs(nodes)}

        assert ("origin", "a") in pairs
        assert ("a", "dest") in pairs
        assert ("a", "b") in pairs and ("b", "a") in pairs
        assert not any(to_id == "origin" for _, to_id in pairs)
        assert not any(from_id == "dest" for from_id, _ in pairs)
        assert not any(a == b for a, b in pairs)
        # origin->a,b,dest / a->b,dest / b->a,dest
        assert len(pairs) == 7


class TestTravelMatrix:
    def test_lookup_and_unknown_pairs(self, nodes, service):
        matrix = service.build_estimated(nodes, TransportMode.CAR)

        assert matrix.get("origin", "a") is not None
        assert matrix.get("a", "origin") is None
        assert matrix.get("a", None) is None
        assert matrix.get("a", "nope") is None
        assert "a" in matrix
        assert "nope" not in matrix

    def test_missing_pair_costs_infinity(self, nodes, service):
        matrix = service.build_estimated(nodes, TransportMode.CAR)
        config = OptimizeConfig()

        assert matrix.cost("a", "origin", config) == math.inf
        assert matrix.cost("a", "a", config) == 0.0

    def test_weighted_cost(self, nodes, service):
        matrix = service.build_estimated(nodes, TransportMode.CAR)
        entry = matrix.get("a", "b")
        config = OptimizeConfig(time_weight=2.0, distance_weight=0.5)

        assert matrix.cost("a", "b", config) == pytest.approx(2.0 * entry.duration + 0.5 * entry.distance)

    def test_arrays_are_read_only_with_nan_for_unknown(self, nodes, service):
        matrix = service.build_estimated(nodes, TransportMode.CAR)
        i, j = matrix.index["a"], matrix.index["origin"]

        assert np.isnan(matrix.durations[i, j])
        assert matrix.durations[i, i] == 0
        with pytest.raises(ValueError):
            matrix.durations[0, 1] = 5

    def test_estimated_matrix_is_deterministic(self, nodes, service):
        first = service.build_estimated(nodes, TransportMode.PUBLIC)
        second = service.build_estimated(nodes, TransportMode.PUBLIC)
        assert dict(first.items()) == dict(second.items())


@pytest.mark.asyncio
class TestBuild:
    async def test_duplicate_ids_rejected(self, nodes, service):
        with pytest.raises(ValueError):
            await service.build(nodes + [make_node("a", 37.0, 127.0)], TransportMode.CAR)

    async def test_estimate_without_provider(self, nodes, service):
        service.provider.get_car_route = AsyncMock()
        matrix = await service.build(nodes, TransportMode.CAR, use_external_provider=False)

        assert len(matrix) == 7
        service.provider.get_car_route.assert_not_called()

    async def test_walking_never_calls_provider(self, nodes, service):
        service.provider.get_car_route = AsyncMock()
        matrix = await service.build(nodes, TransportMode.WALKING, use_external_provider=True)

        assert matrix.get("a", "b").mode == TransportMode.WALKING
        service.provider.get_car_route.assert_not_called()

    async def test_provider_routes_used(self, nodes, service):
        service.provider.get_car_route = AsyncMock(
            return_value=CarRoute(distance=1234, duration=7, polyline="abc", fare=0)
        )
        matrix = await service.build(nodes, TransportMode.CAR, use_external_provider=True, batch_size=2)

        segment = matrix.get("origin", "a")
        assert segment.distance == 1234
        assert segment.duration == 7
        assert segment.polyline == "abc"
        assert service.provider.get_car_route.await_count == 7

    async def test_public_mode_scales_car_duration(self, nodes, service):
        service.provider.get_car_route = AsyncMock(return_value=CarRoute(distance=1000, duration=10))
        matrix = await service.build(nodes, TransportMode.PUBLIC, use_external_provider=True)

        segment = matrix.get("a", "b")
        assert segment.mode == TransportMode.PUBLIC
        assert segment.duration == 13

    async def test_failed_pair_falls_back_to_estimate(self, nodes, service):
        async def route(origin, destination, priority="RECOMMEND"):
            if origin == nodes[1].coordinate:
                raise RoutingProviderError("boom", code="HTTP_ERROR", status_code=500)
            return CarRoute(distance=999, duration=9)

        service.provider.get_car_route = AsyncMock(side_effect=route)
        diagnostics = CollectingDiagnostics()
        matrix = await service.build(
            nodes, TransportMode.CAR, use_external_provider=True, diagnostics=diagnostics
        )

        assert matrix.get("origin", "a").distance == 999
        fallback = matrix.get("a", "b")
        assert fallback.distance != 999
        assert fallback.polyline is None
        assert diagnostics.count("matrix.fallback") == 2
        assert diagnostics.warnings[0]["reason"] == "HTTP_ERROR"
        assert diagnostics.events[0]["level"] == logging.getLevelName(logging.WARNING)

    async def test_no_route_falls_back(self, nodes, service):
        service.provider.get_car_route = AsyncMock(return_value=None)
        diagnostics = CollectingDiagnostics()
        matrix = await service.build(
            nodes, TransportMode.CAR, use_external_provider=True, diagnostics=diagnostics
        )

        assert len(matrix) == 7
        assert all(e["reason"] == "NO_ROUTE" for e in diagnostics.events)

    async def test_same_location_skips_provider(self, service):
        twins = [
            make_node("origin", 37.5, 127.0, NodeKind.ORIGIN),
            make_node("hotel", 37.50001, 127.0),
        ]
        service.provider.get_car_route = AsyncMock()
        matrix = await service.build(twins, TransportMode.CAR, use_external_provider=True)

        assert matrix.get("origin", "hotel").duration == 1
        service.provider.get_car_route.assert_not_called()
