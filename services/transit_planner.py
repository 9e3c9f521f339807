"""
Public transit day planning.

대중교통 여행은 자동차처럼 전체 경로 하나를 만든 뒤 잘라 쓰면 하루 안에서 되돌아가는
구간과 환승이 많아진다. 그래서 장소를 하루 단위 묶음으로 먼저 나누고, 묶음을 한 방향으로
진행하도록 정렬한 다음, 묶음 안의 방문 순서를 정한다.

1. 균형 클러스터링 (일수만큼 묶음, 묶음 크기 균형)
2. 종료 앵커 기준 한 방향 묶음 정렬
3. 묶음 안 순서 (시작 -> 종료 축 투영, 고정 일정 시간순, 교차 제거)
4. 하루 시간을 넘는 날은 복잡도를 많이 올리는 장소부터 제외
5. 이상 구간 (긴 이동, 많은 환승, 긴 대기) 탐지 후 인접 장소 교환으로 국소 수정
"""
import logging
import math
from functools import cmp_to_key
from typing import Dict, List, Optional, Sequence, Tuple
import numpy as np
from config import settings
from models.schemas import (
    Coordinate,
    DayEndpointIds,
    Node,
    PlaceCluster,
    RouteSegment,
    SegmentAnomaly,
    SegmentAnomalyType,
    TransitPlan,
    UnassignedPlaceInfo,
    UnassignedReasonCode,
)
from services.daily_distributor import day_start_id, endpoint_for_day
from services.itinerary_assembler import resolve_distribution_endpoints
from services.planning_context import PlanningContext
from services.routes_matrix import TravelMatrix
from utils.diagnostics import DiagnosticsSink, null_diagnostics
from utils.geo import EARTH_RADIUS_METERS, haversine
from utils.time_utils import time_to_minutes

logger = logging.getLogger(__name__)

# 묶음 크기 허용 폭 (목표 크기의 40%)
CLUSTER_SIZE_FLEXIBILITY = 0.4
MAX_BALANCE_ITERATIONS = 100
# 다른 묶음으로 옮길 장소는 자기 중심보다 3배 넘게 멀면 안 된다
MAX_MOVE_DISTANCE_RATIO = 3.0
MAX_SMOOTHING_ITERATIONS = 5
MIN_SMOOTHING_GAIN_METERS = 1.0
MAX_UNCROSS_ITERATIONS = 50
PROJECTION_EPSILON = 1e-6

# 제외 점수 가중치
BACKTRACKING_WEIGHT = 2.0
CROSSING_WEIGHT = 1.0
TIME_WEIGHT = 1.0
DISTANCE_WEIGHT = 0.5
IMPORTANCE_WEIGHT = 2.0
STAY_WEIGHT = 1.0
MINUTES_PER_KM = 5

REMOVED_MESSAGE = "일일 활동 시간이 부족하여 일정에 포함하지 못했습니다."


# ============================================
# Geometry
# ============================================

def _xy(coordinate: Coordinate) -> np.ndarray:
    return np.array([coordinate.lng, coordinate.lat], dtype=float)


def centroid(coordinates: Sequence[Coordinate]) -> Coordinate:
    points = np.array([[c.lat, c.lng] for c in coordinates], dtype=float)
    lat, lng = points.mean(axis=0)
    return Coordinate(lat=float(lat), lng=float(lng))


def haversine_matrix(coordinates: Sequence[Coordinate]) -> np.ndarray:
    """좌표 쌍별 대권 거리 행렬 (미터)"""
    lat = np.radians([c.lat for c in coordinates])
    lng = np.radians([c.lng for c in coordinates])
    d_lat = lat[:, None] - lat[None, :]
    d_lng = lng[:, None] - lng[None, :]
    h = np.sin(d_lat / 2) ** 2 + np.cos(lat)[:, None] * np.cos(lat)[None, :] * np.sin(d_lng / 2) ** 2
    h = np.clip(h, 0.0, 1.0)
    return EARTH_RADIUS_METERS * 2 * np.arctan2(np.sqrt(h), np.sqrt(1 - h))


def direction_vector(start: Coordinate, end: Coordinate) -> np.ndarray:
    """start -> end 단위 벡터 (경도, 위도 평면)"""
    vector = _xy(end) - _xy(start)
    norm = np.linalg.norm(vector)
    return vector / norm if norm > 0 else np.zeros(2)


def _cross(p1: Coordinate, p2: Coordinate, p3: Coordinate) -> float:
    return (p2.lng - p1.lng) * (p3.lat - p1.lat) - (p2.lat - p1.lat) * (p3.lng - p1.lng)


def segments_intersect(a1: Coordinate, a2: Coordinate, b1: Coordinate, b2: Coordinate) -> bool:
    """두 선분이 서로를 가로지르는지 (끝점 접촉은 제외)"""
    d1 = _cross(b1, b2, a1)
    d2 = _cross(b1, b2, a2)
    d3 = _cross(a1, a2, b1)
    d4 = _cross(a1, a2, b2)
    return d1 * d2 < 0 and d3 * d4 < 0


def count_crossings(route: List[str], nodes: Dict[str, Node]) -> int:
    """인접하지 않은 구간끼리 교차하는 횟수"""
    points = [nodes[p].coordinate for p in route]
    crossings = 0
    for i in range(len(points) - 1):
        for j in range(i + 2, len(points) - 1):
            if segments_intersect(points[i], points[i + 1], points[j], points[j + 1]):
                crossings += 1
    return crossings


def backtracking_score(route: List[str], nodes: Dict[str, Node]) -> float:
    """
    되돌아가는 정도

    첫 장소 -> 마지막 장소 방향과 반대로 움직이는 구간의 (음의 내적) 크기 합.
    """
    if len(route) < 3:
        return 0.0
    points = [nodes[p].coordinate for p in route]
    overall = direction_vector(points[0], points[-1])
    score = 0.0
    for a, b in zip(points, points[1:]):
        dot = float(np.dot(direction_vector(a, b), overall))
        if dot < 0:
            score += -dot
    return score


# ============================================
# Clustering
# ============================================

class _ClusterDraft:
    def __init__(self, seed: int):
        self.seed = seed
        self.members = [seed]

    def centroid(self, candidates: List[Node]) -> Coordinate:
        return centroid([candidates[i].coordinate for i in self.members])


def select_distributed_seeds(candidates: List[Node], k: int, distances: np.ndarray = None) -> List[int]:
    """
    서로 멀리 떨어진 k개의 시드 선택

    첫 시드는 전체 중심에서 가장 먼 장소, 이후는 기존 시드들과의 최소 거리가 가장 큰 장소.
    """
    if not candidates or k <= 0:
        return []
    if distances is None:
        distances = haversine_matrix([n.coordinate for n in candidates])
    center = centroid([n.coordinate for n in candidates])
    center_distances = [haversine(n.coordinate, center) for n in candidates]
    seeds = [int(np.argmax(center_distances))]

    while len(seeds) < k:
        nearest_seed = distances[:, seeds].min(axis=1)
        nearest_seed[seeds] = -1
        candidate = int(np.argmax(nearest_seed))
        if nearest_seed[candidate] < 0:
            break
        seeds.append(candidate)
    return seeds


def _balance_cluster_sizes(drafts: List[_ClusterDraft], candidates: List[Node], target_per_day: int) -> None:
    max_size = math.ceil(target_per_day * (1 + CLUSTER_SIZE_FLEXIBILITY))
    for _ in range(MAX_BALANCE_ITERATIONS):
        by_size = sorted(drafts, key=lambda d: len(d.members), reverse=True)
        largest, smallest = by_size[0], by_size[-1]
        if len(largest.members) - len(smallest.members) <= 1 or len(largest.members) <= max_size + 1:
            break

        movable = [
            i for i in largest.members
            if i != largest.seed and not candidates[i].is_fixed
        ]
        if not movable:
            break

        smallest_center = smallest.centroid(candidates)
        largest_center = largest.centroid(candidates)
        chosen = min(movable, key=lambda i: haversine(candidates[i].coordinate, smallest_center))
        to_smallest = haversine(candidates[chosen].coordinate, smallest_center)
        to_own = haversine(candidates[chosen].coordinate, largest_center)
        if to_smallest > to_own * MAX_MOVE_DISTANCE_RATIO:
            break

        largest.members.remove(chosen)
        smallest.members.append(chosen)


def balanced_clustering(nodes: List[Node], day_count: int, target_per_day: int) -> List[PlaceCluster]:
    """
    장소를 일수만큼의 묶음으로 나눈다

    날짜가 정해진 고정 장소는 해당 날짜에 따로 배치되므로 제외한다.
    각 장소는 용량(target_per_day)이 남은 가장 가까운 시드에 들어가고,
    모두 찼으면 가장 가까운 시드에 들어간다. 빈 묶음은 반환하지 않는다.
    """
    candidates = [n for n in nodes if not (n.is_fixed and n.fixed_date)]
    if not candidates or day_count <= 0:
        return []

    distances = haversine_matrix([n.coordinate for n in candidates])
    seeds = select_distributed_seeds(candidates, min(day_count, len(candidates)), distances)
    drafts = [_ClusterDraft(seed) for seed in seeds]
    seed_set = set(seeds)

    for i in range(len(candidates)):
        if i in seed_set:
            continue
        open_drafts = [d for d in drafts if len(d.members) < target_per_day] or drafts
        nearest = min(open_drafts, key=lambda d: distances[d.seed, i])
        nearest.members.append(i)

    _balance_cluster_sizes(drafts, candidates, target_per_day)

    clusters = [
        PlaceCluster(
            cluster_id=f"cluster-{index}",
            place_ids=[candidates[i].id for i in draft.members],
            centroid=draft.centroid(candidates),
        )
        for index, draft in enumerate(drafts)
        if draft.members
    ]
    logger.info(
        f"Clustered {len(candidates)} places into {len(clusters)} groups: "
        f"{[len(c.place_ids) for c in clusters]}"
    )
    return clusters


# ============================================
# Cluster ordering
# ============================================

def choose_end_anchor(lodging: Optional[Coordinate], clusters: List[PlaceCluster]) -> Coordinate:
    """숙소가 있으면 숙소, 없으면 평균 중심에서 가장 먼 묶음 중심"""
    if lodging is not None:
        return lodging
    if not clusters:
        raise ValueError("No clusters to choose an end anchor from")
    average = centroid([c.centroid for c in clusters])
    return max((c.centroid for c in clusters), key=lambda c: haversine(c, average))


def _centroid_path_length(ordered: List[PlaceCluster]) -> float:
    return sum(haversine(a.centroid, b.centroid) for a, b in zip(ordered, ordered[1:]))


def smooth_cluster_order(ordered: List[PlaceCluster]) -> List[PlaceCluster]:
    """
    뒤쪽 묶음을 앞으로 당겨 묶음 중심을 잇는 경로가 짧아지면 적용

    첫 묶음은 움직이지 않는다.
    """
    ordered = list(ordered)
    for _ in range(MAX_SMOOTHING_ITERATIONS):
        improved = False
        for i in range(1, len(ordered) - 1):
            for j in range(i + 1, len(ordered)):
                candidate = list(ordered)
                candidate.insert(i, candidate.pop(j))
                if _centroid_path_length(candidate) < _centroid_path_length(ordered) - MIN_SMOOTHING_GAIN_METERS:
                    ordered = candidate
                    improved = True
        if not improved:
            break
    return ordered


def order_clusters_one_direction(clusters: List[PlaceCluster], end_anchor: Coordinate) -> List[PlaceCluster]:
    """종료 앵커에서 가까운 묶음부터 한 방향으로 진행하도록 정렬"""
    ordered = sorted(clusters, key=lambda c: haversine(c.centroid, end_anchor))
    return smooth_cluster_order(ordered)


# ============================================
# Within-cluster ordering
# ============================================

def _is_time_fixed(node: Node) -> bool:
    return node.is_fixed and bool(node.fixed_start_time)


def minimize_crossings(route: List[str], nodes: Dict[str, Node]) -> List[str]:
    """
    교차하는 두 구간 사이를 뒤집어 교차 제거 (2-opt)

    뒤집을 범위에 고정 시간 장소가 있으면 건너뛴다.
    """
    route = list(route)
    locked = {i for i, p in enumerate(route) if _is_time_fixed(nodes[p])}
    for _ in range(MAX_UNCROSS_ITERATIONS):
        improved = False
        for i in range(len(route) - 3):
            for j in range(i + 2, len(route) - 1):
                if any(k in locked for k in range(i + 1, j + 1)):
                    continue
                if segments_intersect(
                    nodes[route[i]].coordinate,
                    nodes[route[i + 1]].coordinate,
                    nodes[route[j]].coordinate,
                    nodes[route[j + 1]].coordinate,
                ):
                    route[i + 1:j + 1] = reversed(route[i + 1:j + 1])
                    improved = True
        if not improved:
            break
    return route


def order_within_cluster(
    place_ids: List[str],
    nodes: Dict[str, Node],
    start: Coordinate,
    end: Coordinate,
) -> List[str]:
    """
    묶음 안 방문 순서

    일반 장소는 시작 -> 종료 축에 투영한 값 순서 (같으면 시작점에서 가까운 순),
    고정 시간 장소는 시작 시간 순. 일반 장소는 다음 고정 장소에 더 가깝지 않으면
    현재 고정 장소 앞에 들어간다. 마지막으로 교차를 제거한다.
    """
    members = [nodes[p] for p in place_ids if p in nodes]
    if len(members) <= 1:
        return [n.id for n in members]

    axis = direction_vector(start, end)
    origin = _xy(start)

    def compare(a: Node, b: Node) -> int:
        projection_a = float(np.dot(_xy(a.coordinate) - origin, axis))
        projection_b = float(np.dot(_xy(b.coordinate) - origin, axis))
        if abs(projection_a - projection_b) > PROJECTION_EPSILON:
            return -1 if projection_a < projection_b else 1
        distance_a = haversine(a.coordinate, start)
        distance_b = haversine(b.coordinate, start)
        return (distance_a > distance_b) - (distance_a < distance_b)

    fixed = sorted((n for n in members if _is_time_fixed(n)), key=lambda n: time_to_minutes(n.fixed_start_time))
    flexible = sorted((n for n in members if not _is_time_fixed(n)), key=cmp_to_key(compare))

    if not fixed:
        return minimize_crossings([n.id for n in flexible], nodes)

    ordered: List[str] = []
    cursor = 0
    for index, fixed_node in enumerate(fixed):
        next_fixed = fixed[index + 1] if index + 1 < len(fixed) else None
        while cursor < len(flexible):
            candidate = flexible[cursor]
            if next_fixed is not None and (
                haversine(candidate.coordinate, next_fixed.coordinate)
                < haversine(candidate.coordinate, fixed_node.coordinate)
            ):
                break
            ordered.append(candidate.id)
            cursor += 1
        ordered.append(fixed_node.id)
    ordered.extend(n.id for n in flexible[cursor:])
    return minimize_crossings(ordered, nodes)


# ============================================
# Complexity removal
# ============================================

def _day_anchor_ids(
    endpoints: List[DayEndpointIds],
    day_places: List[List[str]],
    d: int,
) -> Tuple[Optional[str], Optional[str]]:
    endpoint = endpoint_for_day(endpoints, d)
    return day_start_id(endpoint, day_places[d - 1] if d > 0 else []), endpoint.end_id


def day_minutes(
    places: List[str],
    start_id: Optional[str],
    end_id: Optional[str],
    nodes: Dict[str, Node],
    matrix: TravelMatrix,
) -> int:
    """하루 실제 소요 시간 (시작/종료 구간 이동 + 장소 간 이동 + 체류)"""
    if not places:
        return 0
    stops = [start_id] + places + [end_id]
    travel = sum(matrix.duration(a, b) for a, b in zip(stops, stops[1:]))
    return int(travel + sum(nodes[p].duration for p in places))


def _importance(node: Node) -> float:
    # priority는 작을수록 먼저 (0은 고정 일정)
    return 1.0 / node.priority if node.priority > 0 else 1.0


def complexity_impact(place_id: str, route: List[str], nodes: Dict[str, Node]) -> float:
    """
    장소를 뺐을 때 줄어드는 경로 복잡도 점수 (클수록 먼저 제외)

    되돌아감, 교차, 우회 거리/시간은 점수를 올리고 중요도와 체류 시간은 낮춘다.
    """
    index = route.index(place_id)
    without = route[:index] + route[index + 1:]
    backtracking = backtracking_score(route, nodes) - backtracking_score(without, nodes)
    crossing = count_crossings(route, nodes) - count_crossings(without, nodes)

    detour_meters = 0.0
    if 0 < index < len(route) - 1:
        previous = nodes[route[index - 1]].coordinate
        current = nodes[place_id].coordinate
        following = nodes[route[index + 1]].coordinate
        detour_meters = max(
            0.0,
            haversine(previous, current) + haversine(current, following) - haversine(previous, following),
        )
    detour_km = detour_meters / 1000

    node = nodes[place_id]
    return (
        BACKTRACKING_WEIGHT * backtracking
        + CROSSING_WEIGHT * crossing
        + TIME_WEIGHT * detour_km * MINUTES_PER_KM
        + DISTANCE_WEIGHT * detour_km
        - IMPORTANCE_WEIGHT * _importance(node)
        - STAY_WEIGHT * node.duration
    )


def _time_saved(
    place_id: str,
    places: List[str],
    start_id: Optional[str],
    end_id: Optional[str],
    nodes: Dict[str, Node],
    matrix: TravelMatrix,
) -> int:
    index = places.index(place_id)
    previous = places[index - 1] if index > 0 else start_id
    following = places[index + 1] if index + 1 < len(places) else end_id
    detour = (
        matrix.duration(previous, place_id)
        + matrix.duration(place_id, following)
        - matrix.duration(previous, following)
    )
    return nodes[place_id].duration + max(0, detour)


def select_places_to_remove(
    places: List[str],
    exceed: int,
    start_id: Optional[str],
    end_id: Optional[str],
    nodes: Dict[str, Node],
    matrix: TravelMatrix,
) -> List[str]:
    """초과 시간을 메울 때까지 복잡도 점수가 높은 일반 장소부터 선택"""
    candidates = [p for p in places if not nodes[p].is_fixed]
    scored = sorted(candidates, key=lambda p: complexity_impact(p, places, nodes), reverse=True)
    selected = []
    saved = 0
    for place_id in scored:
        if saved >= exceed:
            break
        selected.append(place_id)
        saved += _time_saved(place_id, places, start_id, end_id, nodes, matrix)
    return selected


def remove_overloaded(
    day_places: List[List[str]],
    windows: List[int],
    endpoints: List[DayEndpointIds],
    nodes: Dict[str, Node],
    matrix: TravelMatrix,
    max_removals: int,
    rounds: int = None,
) -> List[str]:
    """
    하루 시간을 넘는 날에서 장소를 제외 (가장 많이 넘는 날부터, 라운드마다 하루)

    day_places를 직접 수정하고 제외된 장소 ID를 반환한다.
    """
    rounds = settings.transit_reoptimize_rounds if rounds is None else rounds
    removed: List[str] = []
    for _ in range(rounds):
        overloaded = []
        for d, places in enumerate(day_places):
            start_id, end_id = _day_anchor_ids(endpoints, day_places, d)
            exceed = day_minutes(places, start_id, end_id, nodes, matrix) - windows[d]
            if exceed > 0:
                overloaded.append((exceed, d))
        if not overloaded:
            break

        exceed, d = max(overloaded, key=lambda item: item[0])
        start_id, end_id = _day_anchor_ids(endpoints, day_places, d)
        selected = select_places_to_remove(day_places[d], exceed, start_id, end_id, nodes, matrix)
        selected = selected[:max(0, max_removals - len(removed))]
        if not selected:
            logger.warning(f"Day {d + 1} exceeds its window by {exceed} min but nothing can be removed")
            break
        for place_id in selected:
            day_places[d].remove(place_id)
            removed.append(place_id)
        logger.info(f"Removed {len(selected)} places from day {d + 1} (exceeded by {exceed} min)")
    return removed


# ============================================
# Segment anomalies
# ============================================

def segment_anomalies(segment: RouteSegment, day_index: int, from_id: str, to_id: str) -> List[SegmentAnomaly]:
    """구간 하나의 이상 여부 (소요 시간, 환승 횟수, 대기 시간)"""
    anomalies = []

    def anomaly(kind: SegmentAnomalyType, suggestion: str) -> SegmentAnomaly:
        return SegmentAnomaly(
            type=kind,
            day_index=day_index,
            from_id=from_id,
            to_id=to_id,
            duration=segment.duration,
            suggestion=suggestion,
        )

    if segment.duration > settings.transit_long_segment_minutes:
        anomalies.append(anomaly(SegmentAnomalyType.LONG_DURATION, "방문 순서를 바꾸거나 중간에 장소를 추가해 보세요."))

    details = segment.transit_details
    if details is None:
        return anomalies
    if details.transfer_count > settings.transit_max_transfers:
        anomalies.append(anomaly(SegmentAnomalyType.TOO_MANY_TRANSFERS, "환승이 적은 경로를 고려해 보세요."))
    if details.sub_paths:
        wait = segment.duration - sum(sub.section_time for sub in details.sub_paths)
        if wait > settings.transit_long_wait_minutes:
            anomalies.append(anomaly(SegmentAnomalyType.LONG_WAIT_TIME, "출발 시간을 조정해 보세요."))
    return anomalies


def detect_anomalous_segments(
    day_places: List[List[str]],
    endpoints: List[DayEndpointIds],
    matrix: TravelMatrix,
) -> List[SegmentAnomaly]:
    """일자별 모든 구간 (시작/종료 구간 포함)의 이상 탐지"""
    anomalies = []
    for d, places in enumerate(day_places):
        if not places:
            continue
        start_id, end_id = _day_anchor_ids(endpoints, day_places, d)
        stops = [s for s in [start_id] + places + [end_id] if s is not None]
        for from_id, to_id in zip(stops, stops[1:]):
            segment = matrix.get(from_id, to_id)
            if segment is not None:
                anomalies.extend(segment_anomalies(segment, d, from_id, to_id))
    return anomalies


def _day_travel(places, d, day_places, endpoints, matrix) -> int:
    start_id, end_id = _day_anchor_ids(endpoints, day_places, d)
    stops = [start_id] + places + [end_id]
    return sum(matrix.duration(a, b) for a, b in zip(stops, stops[1:]))


def apply_local_fixes(
    day_places: List[List[str]],
    anomalies: List[SegmentAnomaly],
    endpoints: List[DayEndpointIds],
    nodes: Dict[str, Node],
    matrix: TravelMatrix,
) -> int:
    """
    긴 이동 구간의 두 장소를 서로 바꿔 하루 이동 시간이 줄면 유지

    Returns:
        바꾼 횟수
    """
    swaps = 0
    for anomaly in anomalies:
        if anomaly.type != SegmentAnomalyType.LONG_DURATION:
            continue
        places = day_places[anomaly.day_index]
        if anomaly.from_id not in places or anomaly.to_id not in places:
            continue
        i, j = places.index(anomaly.from_id), places.index(anomaly.to_id)
        if abs(i - j) != 1 or nodes[places[i]].is_fixed or nodes[places[j]].is_fixed:
            continue

        swapped = list(places)
        swapped[i], swapped[j] = swapped[j], swapped[i]
        before = _day_travel(places, anomaly.day_index, day_places, endpoints, matrix)
        after = _day_travel(swapped, anomaly.day_index, day_places, endpoints, matrix)
        if after < before:
            day_places[anomaly.day_index] = swapped
            swaps += 1
    return swaps


# ============================================
# Entry point
# ============================================

def _anchor_coordinates(
    d: int,
    day_places: List[List[str]],
    ordered: List[PlaceCluster],
    endpoints: List[DayEndpointIds],
    nodes: Dict[str, Node],
    end_anchor: Optional[Coordinate],
) -> Tuple[Optional[Coordinate], Optional[Coordinate]]:
    """
    묶음 안 정렬에 쓰는 시작/종료 좌표

    종료는 그날 밤 숙소(마지막 날은 도착지), 없으면 다음 묶음 중심, 그것도 없으면 종료 앵커.
    """
    start_id, end_id = _day_anchor_ids(endpoints, day_places, d)
    start = nodes[start_id].coordinate if start_id in nodes else None
    if end_id in nodes:
        end = nodes[end_id].coordinate
    elif d + 1 < len(ordered):
        end = ordered[d + 1].centroid
    else:
        end = end_anchor
    return start, end


def plan_transit_days(
    context: PlanningContext,
    matrix: TravelMatrix,
    diagnostics: DiagnosticsSink = null_diagnostics,
) -> TransitPlan:
    """
    대중교통 일자별 계획

    Args:
        context: 실행 계획 정보
        matrix: 이동 비용 행렬 (대중교통)
        diagnostics: 진단 이벤트 sink

    Returns:
        TransitPlan (days는 fit_days_to_windows로 시간표에 맞춘다)
    """
    nodes = context.nodes
    place_nodes = list(context.place_nodes.values())
    total_days = context.total_days
    target_per_day = math.ceil(len(place_nodes) / total_days) if total_days else 0

    clusters = balanced_clustering(place_nodes, total_days, target_per_day)
    lodging = context.trip.accommodations[0].location.coordinate() if context.trip.accommodations else None
    end_anchor = choose_end_anchor(lodging, clusters) if clusters or lodging else None
    ordered = order_clusters_one_direction(clusters, end_anchor) if clusters else []

    day_places = [list(c.place_ids) for c in ordered[:total_days]]
    day_places += [[] for _ in range(total_days - len(day_places))]

    excluded: List[UnassignedPlaceInfo] = []
    day_index_by_date = {date: i for i, date in enumerate(context.dates)}
    for node in place_nodes:
        if not (node.is_fixed and node.fixed_date):
            continue
        d = day_index_by_date.get(node.fixed_date)
        if d is None:
            excluded.append(
                UnassignedPlaceInfo(
                    place_id=node.id,
                    place_name=node.name,
                    reason_code=UnassignedReasonCode.FIXED_CONFLICT,
                    reason_message=f"고정 일정 날짜({node.fixed_date})가 여행 기간에 없습니다.",
                    details={"fixed_date": node.fixed_date},
                )
            )
            continue
        day_places[d].append(node.id)

    endpoints = resolve_distribution_endpoints(context)
    for d in range(total_days):
        start, end = _anchor_coordinates(d, day_places, ordered, endpoints, nodes, end_anchor)
        start = start or end
        end = end or start
        if start is not None:
            day_places[d] = order_within_cluster(day_places[d], nodes, start, end)

    windows = [
        time_to_minutes(config.end_time) - time_to_minutes(config.start_time)
        for config in context.day_configs
    ]
    max_removals = int(len(place_nodes) * settings.transit_max_removal_ratio)
    removed = remove_overloaded(day_places, windows, endpoints, nodes, matrix, max_removals)
    for place_id in removed:
        node = nodes[place_id]
        excluded.append(
            UnassignedPlaceInfo(
                place_id=place_id,
                place_name=node.name,
                reason_code=UnassignedReasonCode.TIME_EXCEEDED,
                reason_message=REMOVED_MESSAGE,
                details={"estimated_duration": node.duration},
            )
        )
        diagnostics.emit("transit.place_removed", logging.INFO, place_id=place_id)

    anomalies = detect_anomalous_segments(day_places, endpoints, matrix)
    for anomaly in anomalies:
        diagnostics.emit(
            "transit.anomaly",
            logging.WARNING,
            type=anomaly.type.value,
            day=anomaly.day_index + 1,
            from_id=anomaly.from_id,
            to_id=anomaly.to_id,
            duration=anomaly.duration,
        )
    swaps = apply_local_fixes(day_places, anomalies, endpoints, nodes, matrix)

    logger.info(
        f"Transit plan: {len(ordered)} clusters, {len(removed)} removed, "
        f"{len(anomalies)} anomalies, {swaps} swaps"
    )
    return TransitPlan(
        clusters=ordered,
        days=day_places,
        excluded=excluded,
        anomalies=anomalies,
        fixed_swaps=swaps,
    )
