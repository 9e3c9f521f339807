import asyncio
import logging
import math
from typing import List, Dict, Optional, Tuple, Iterable
import numpy as np
from config import settings
from models.schemas import (
    Node,
    NodeKind,
    OptimizeConfig,
    RouteSegment,
    TransportMode,
)
from services.routing_provider import RoutingProvider, routing_provider, car_route_to_segment
from utils.diagnostics import DiagnosticsSink, null_diagnostics
from utils.geo import estimate_segment, haversine
from utils.retry_helpers import RoutingProviderError

logger = logging.getLogger(__name__)


class TravelMatrix:
    """
    노드 간 이동 비용 행렬 (방향성 있음, 생성 후 읽기 전용)

    distances/durations는 numpy 배열이며 값을 모르는 쌍은 NaN이다.
    항목이 없는 쌍은 비용 0이 아니라 "알 수 없음"으로 취급한다.
    """

    def __init__(self, node_ids: List[str], entries: Dict[Tuple[str, str], RouteSegment]):
        self.node_ids = list(node_ids)
        self.index = {node_id: i for i, node_id in enumerate(self.node_ids)}
        self._entries = dict(entries)

        n = len(self.node_ids)
        self.distances = np.full((n, n), np.nan)
        self.durations = np.full((n, n), np.nan)
        for i in range(n):
            self.distances[i, i] = 0.0
            self.durations[i, i] = 0.0
        for (from_id, to_id), entry in self._entries.items():
            i, j = self.index[from_id], self.index[to_id]
            self.distances[i, j] = entry.distance
            self.durations[i, j] = entry.duration

        self.distances.setflags(write=False)
        self.durations.setflags(write=False)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self.index

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, from_id: Optional[str], to_id: Optional[str]) -> Optional[RouteSegment]:
        """이동 구간 조회, 모르는 ID나 계산되지 않은 쌍이면 None"""
        if from_id is None or to_id is None:
            return None
        return self._entries.get((from_id, to_id))

    def duration(self, from_id: Optional[str], to_id: Optional[str], default: float = 0) -> float:
        entry = self.get(from_id, to_id)
        return entry.duration if entry else default

    def cost(self, from_id: str, to_id: str, config: OptimizeConfig) -> float:
        """가중 비용 (time_weight * 분 + distance_weight * 미터), 항목이 없으면 inf"""
        if from_id == to_id:
            return 0.0
        entry = self.get(from_id, to_id)
        if entry is None:
            return math.inf
        return config.time_weight * entry.duration + config.distance_weight * entry.distance

    def items(self) -> Iterable[Tuple[Tuple[str, str], RouteSegment]]:
        return self._entries.items()


def generate_pairs(nodes: List[Node]) -> List[Tuple[Node, Node]]:
    """
    계산이 필요한 (출발, 도착) 노드 쌍 생성

    도착지에서 출발하는 쌍과 출발지로 도착하는 쌍은 제외한다.
    """
    pairs = []
    for origin in nodes:
        if origin.kind == NodeKind.DESTINATION:
            continue
        for destination in nodes:
            if destination.id == origin.id or destination.kind == NodeKind.ORIGIN:
                continue
            pairs.append((origin, destination))
    return pairs


class RoutesMatrixService:
    def __init__(self, provider: RoutingProvider = None):
        self.provider = provider or routing_provider
        self.batch_size = settings.matrix_batch_size
        self.batch_delay = settings.matrix_batch_delay
        self.same_location_threshold = settings.same_location_threshold_meters
        self.public_factor = settings.public_transit_duration_factor

    def build_estimated(self, nodes: List[Node], mode: TransportMode) -> TravelMatrix:
        """
        Haversine 기반 근사 행렬 생성 (네트워크 미사용, 결정적)

        Args:
            nodes: 노드 리스트
            mode: 이동 수단

        Returns:
            TravelMatrix
        """
        entries = {
            (a.id, b.id): estimate_segment(a.coordinate, b.coordinate, mode)
            for a, b in generate_pairs(nodes)
        }
        return TravelMatrix([n.id for n in nodes], entries)

    async def build(
        self,
        nodes: List[Node],
        mode: TransportMode,
        use_external_provider: bool = False,
        batch_size: Optional[int] = None,
        diagnostics: DiagnosticsSink = null_diagnostics,
    ) -> TravelMatrix:
        """
        노드 간 이동 비용 행렬 계산

        외부 API 사용 시 batch_size개씩 동시 호출하고 배치 사이에 대기한다.
        쌍 단위 실패는 Haversine 추정치로 대체하고 계속 진행한다.

        Args:
            nodes: 노드 리스트 (ID 중복 불가)
            mode: 이동 수단 (walking, public, car)
            use_external_provider: 외부 경로 API 사용 여부
            batch_size: 동시 호출 수 (기본값: settings.matrix_batch_size)
            diagnostics: 진단 이벤트 sink

        Returns:
            TravelMatrix
        """
        ids = [n.id for n in nodes]
        if len(set(ids)) != len(ids):
            raise ValueError("Node ids must be unique within a planning run")

        mode = TransportMode(mode)
        if not use_external_provider or mode == TransportMode.WALKING:
            logger.info(f"Building estimated {mode.value} matrix for {len(nodes)} nodes")
            return self.build_estimated(nodes, mode)

        pairs = generate_pairs(nodes)
        batch_size = max(1, batch_size or self.batch_size)
        semaphore = asyncio.Semaphore(batch_size)
        entries: Dict[Tuple[str, str], RouteSegment] = {}

        logger.info(
            f"Requesting {mode.value} matrix: {len(nodes)} nodes, {len(pairs)} pairs, "
            f"batch_size={batch_size}"
        )

        async def compute(origin: Node, destination: Node):
            async with semaphore:
                entries[(origin.id, destination.id)] = await self._compute_pair(
                    origin, destination, mode, diagnostics
                )

        for start in range(0, len(pairs), batch_size):
            batch = pairs[start:start + batch_size]
            await asyncio.gather(*(compute(a, b) for a, b in batch))
            if start + batch_size < len(pairs):
                await asyncio.sleep(self.batch_delay)

        logger.info(f"Successfully computed matrix with {len(entries)} entries")
        return TravelMatrix(ids, entries)

    async def _compute_pair(
        self,
        origin: Node,
        destination: Node,
        mode: TransportMode,
        diagnostics: DiagnosticsSink,
    ) -> RouteSegment:
        distance = haversine(origin.coordinate, destination.coordinate)
        if distance < self.same_location_threshold:
            return estimate_segment(origin.coordinate, destination.coordinate, mode, min_duration=1)

        try:
            route = await self.provider.get_car_route(
                origin.coordinate, destination.coordinate, priority="RECOMMEND"
            )
        except RoutingProviderError as e:
            logger.warning(f"Route lookup failed for {origin.id} -> {destination.id}: {e}")
            diagnostics.emit(
                "matrix.fallback",
                logging.WARNING,
                from_id=origin.id,
                to_id=destination.id,
                reason=e.code,
            )
            return estimate_segment(origin.coordinate, destination.coordinate, mode)

        if route is None:
            diagnostics.emit(
                "matrix.fallback",
                logging.WARNING,
                from_id=origin.id,
                to_id=destination.id,
                reason="NO_ROUTE",
            )
            return estimate_segment(origin.coordinate, destination.coordinate, mode)

        if mode == TransportMode.PUBLIC:
            # 대중교통 상세 경로는 일정 확정 후 enrich 단계에서 조회
            return RouteSegment(
                mode=TransportMode.PUBLIC,
                distance=route.distance,
                duration=int(math.ceil(route.duration * self.public_factor)),
            )
        return car_route_to_segment(route)


# 싱글톤 인스턴스
routes_matrix_service = RoutesMatrixService()
