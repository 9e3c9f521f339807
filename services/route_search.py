"""
Route search: endpoint-anchored nearest neighbor construction + 2-opt improvement.

Cost of an edge is ``time_weight * duration + distance_weight * distance``.
Unknown matrix entries cost infinity.
"""
import logging
import math
import random
from typing import List, Optional, Sequence
import numpy as np
from models.schemas import (
    Node,
    NodeKind,
    OptimizeConfig,
    RouteResult,
    RouteSearchResult,
    TwoOptResult,
)
from services.routes_matrix import TravelMatrix

logger = logging.getLogger(__name__)


def weighted_cost_matrix(matrix: TravelMatrix, config: OptimizeConfig) -> np.ndarray:
    """가중 비용 행렬, 값이 없는 쌍은 inf"""
    costs = config.time_weight * matrix.durations + config.distance_weight * matrix.distances
    return np.where(np.isnan(costs), np.inf, costs)


def calculate_route_cost(
    route: Sequence[str],
    matrix: TravelMatrix,
    config: OptimizeConfig,
) -> float:
    """경로 전체 가중 비용"""
    return sum(
        matrix.cost(route[k], route[k + 1], config) for k in range(len(route) - 1)
    )


def _route_totals(route: Sequence[str], matrix: TravelMatrix):
    distance = 0.0
    duration = 0.0
    for k in range(len(route) - 1):
        entry = matrix.get(route[k], route[k + 1])
        if entry is not None:
            distance += entry.distance
            duration += entry.duration
    return distance, duration


def nearest_neighbor(
    nodes: List[Node],
    matrix: TravelMatrix,
    origin_id: str,
    destination_id: Optional[str],
    config: OptimizeConfig,
) -> RouteResult:
    """
    출발/도착 고정 Nearest Neighbor 경로 생성

    현재 노드에서 가중 비용이 가장 작은 미방문 장소를 선택한다.
    동률이면 priority가 낮은 장소, 그 다음 입력 순서가 앞선 장소를 선택한다.

    Args:
        nodes: 노드 리스트 (앵커 포함 가능, PLACE만 방문 대상)
        matrix: 이동 비용 행렬
        origin_id: 출발 노드 ID
        destination_id: 도착 노드 ID (없으면 열린 경로)
        config: 가중치 설정

    Returns:
        앵커를 포함한 RouteResult
    """
    costs = weighted_cost_matrix(matrix, config)
    candidates = [
        (order, node) for order, node in enumerate(nodes)
        if node.kind == NodeKind.PLACE and node.id not in (origin_id, destination_id)
    ]

    route = [origin_id]
    current = matrix.index[origin_id]
    remaining = list(candidates)

    while remaining:
        best_pos = min(
            range(len(remaining)),
            key=lambda pos: (
                costs[current, matrix.index[remaining[pos][1].id]],
                remaining[pos][1].priority,
                remaining[pos][0],
            ),
        )
        _, chosen = remaining.pop(best_pos)
        route.append(chosen.id)
        current = matrix.index[chosen.id]

    if destination_id is not None:
        route.append(destination_id)

    distance, duration = _route_totals(route, matrix)
    total_cost = calculate_route_cost(route, matrix, config)
    logger.info(f"Nearest neighbor route built: {len(route)} nodes, cost={total_cost:.1f}")

    return RouteResult(
        route=route,
        total_distance=distance,
        total_duration=duration,
        total_cost=total_cost,
    )


def _path_cost(indices: List[int], costs: np.ndarray) -> float:
    return float(sum(costs[indices[k], indices[k + 1]] for k in range(len(indices) - 1)))


def _improvement_percentage(initial: float, final: float) -> float:
    if not math.isfinite(initial) or initial <= 0:
        return 0.0
    return round(max(0.0, (initial - final) / initial * 100), 2)


def _two_opt_indices(
    indices: List[int],
    costs: np.ndarray,
    config: OptimizeConfig,
    fixed_end: bool,
):
    """
    2-opt (sweep마다 best-improvement)

    route[i+1..j] 구간을 뒤집는다. 방향성 있는 행렬이므로 뒤집힌 내부 구간의
    비용 변화도 함께 계산한다. 이득이 같으면 (i, j) 순서상 먼저 찾은 이동을 택한다.
    """
    route = list(indices)
    n = len(route)
    current_cost = _path_cost(route, costs)
    iterations = 0
    no_improvement = 0
    last_j = n - 2 if fixed_end else n - 1

    while iterations < config.max_iterations and no_improvement < config.no_improvement_limit:
        iterations += 1
        threshold = (
            config.min_improvement_threshold * current_cost
            if math.isfinite(current_cost) else 0.0
        )
        best_gain = 0.0
        best_move = None

        for i in range(0, n - 3 if fixed_end else n - 2):
            a, b = route[i], route[i + 1]
            forward_inner = 0.0
            reverse_inner = 0.0
            for j in range(i + 2, last_j + 1):
                c = route[j]
                forward_inner += costs[route[j - 1], c]
                reverse_inner += costs[c, route[j - 1]]
                if j + 1 < n:
                    d = route[j + 1]
                    old_tail, new_tail = costs[c, d], costs[b, d]
                else:
                    old_tail = new_tail = 0.0

                old = costs[a, b] + forward_inner + old_tail
                new = costs[a, c] + reverse_inner + new_tail
                gain = old - new
                if gain > threshold and gain > best_gain:
                    best_gain = gain
                    best_move = (i, j)

        if best_move is None:
            no_improvement += 1
            # 결정적 탐색이므로 개선이 없는 sweep은 이후에도 반복됨
            break

        i, j = best_move
        route[i + 1:j + 1] = reversed(route[i + 1:j + 1])
        current_cost = _path_cost(route, costs)
        no_improvement = 0

    return route, current_cost, iterations


def two_opt(
    route: List[str],
    matrix: TravelMatrix,
    config: OptimizeConfig,
    fixed_end: bool = True,
) -> TwoOptResult:
    """
    2-opt 경로 개선

    첫 노드(출발지)와, fixed_end이면 마지막 노드(도착지)는 고정된다.
    노드가 4개 미만이면 그대로 반환한다.

    Args:
        route: 앵커를 포함한 경로
        matrix: 이동 비용 행렬
        config: 가중치 및 반복 설정
        fixed_end: 마지막 노드 고정 여부

    Returns:
        TwoOptResult
    """
    costs = weighted_cost_matrix(matrix, config)
    indices = [matrix.index[node_id] for node_id in route]
    initial_cost = _path_cost(indices, costs)

    if len(route) < 4:
        return TwoOptResult(
            route=list(route),
            initial_cost=initial_cost,
            final_cost=initial_cost,
            improvement_percentage=0.0,
            iterations=0,
        )

    improved, final_cost, iterations = _two_opt_indices(indices, costs, config, fixed_end)
    if final_cost > initial_cost:
        improved, final_cost = indices, initial_cost

    result = TwoOptResult(
        route=[matrix.node_ids[k] for k in improved],
        initial_cost=initial_cost,
        final_cost=final_cost,
        improvement_percentage=_improvement_percentage(initial_cost, final_cost),
        iterations=iterations,
    )
    logger.info(
        f"2-opt finished after {iterations} sweeps: {initial_cost:.1f} -> {final_cost:.1f} "
        f"({result.improvement_percentage}%)"
    )
    return result


def _double_bridge(route: List[int], rng: random.Random, fixed_end: bool) -> List[int]:
    """내부 구간을 4조각으로 나눠 재배치 (앵커는 유지)"""
    head = route[:1]
    tail = route[-1:] if fixed_end else []
    inner = route[1:-1] if fixed_end else route[1:]
    if len(inner) < 4:
        shuffled = list(inner)
        rng.shuffle(shuffled)
        return head + shuffled + tail
    p1, p2, p3 = sorted(rng.sample(range(1, len(inner)), 3))
    inner = inner[:p1] + inner[p3:] + inner[p2:p3] + inner[p1:p2]
    return head + inner + tail


def iterated_two_opt(
    route: List[str],
    matrix: TravelMatrix,
    config: OptimizeConfig,
    restarts: int = 5,
    seed: int = 0,
    fixed_end: bool = True,
) -> TwoOptResult:
    """
    섭동(double-bridge) + 2-opt 반복

    같은 seed에 대해 결과가 결정적이다.
    """
    base = two_opt(route, matrix, config, fixed_end=fixed_end)
    if len(route) < 4:
        return base

    costs = weighted_cost_matrix(matrix, config)
    rng = random.Random(seed)
    best = [matrix.index[node_id] for node_id in base.route]
    best_cost = base.final_cost
    total_iterations = base.iterations

    for _ in range(restarts):
        candidate = _double_bridge(best, rng, fixed_end)
        candidate, cost, iterations = _two_opt_indices(candidate, costs, config, fixed_end)
        total_iterations += iterations
        if cost < best_cost:
            best, best_cost = candidate, cost

    return TwoOptResult(
        route=[matrix.node_ids[k] for k in best],
        initial_cost=base.initial_cost,
        final_cost=best_cost,
        improvement_percentage=_improvement_percentage(base.initial_cost, best_cost),
        iterations=total_iterations,
    )


def search_route(
    nodes: List[Node],
    matrix: TravelMatrix,
    origin_id: str,
    destination_id: Optional[str],
    config: OptimizeConfig,
) -> RouteSearchResult:
    """
    Nearest Neighbor + 2-opt 경로 탐색

    Returns:
        앵커를 제외한 방문 순서와 비용 정보
    """
    nn = nearest_neighbor(nodes, matrix, origin_id, destination_id, config)
    fixed_end = destination_id is not None
    if config.restarts > 0:
        improved = iterated_two_opt(
            nn.route, matrix, config, restarts=config.restarts, seed=config.seed, fixed_end=fixed_end
        )
    else:
        improved = two_opt(nn.route, matrix, config, fixed_end=fixed_end)

    anchors = {origin_id, destination_id}
    return RouteSearchResult(
        route=[node_id for node_id in improved.route if node_id not in anchors],
        initial_cost=improved.initial_cost,
        final_cost=improved.final_cost,
        improvement_percentage=improved.improvement_percentage,
        iterations=improved.iterations,
    )
