import logging
import math
from typing import List, Dict, Optional, Any, Tuple
from config import settings
from models.schemas import (
    DayEndpointIds,
    DayTimeConfig,
    DistributionResult,
    DistributorOptions,
    Node,
    UnassignedPlaceInfo,
    UnassignedReasonCode,
)
from services.constraints import get_reserved_fixed_minutes
from services.itinerary_assembler import split_place_ids_by_check_in
from services.routes_matrix import TravelMatrix
from utils.diagnostics import DiagnosticsSink, null_diagnostics
from utils.time_utils import (
    generate_date_range,
    get_days_between,
    time_to_minutes,
)

logger = logging.getLogger(__name__)


class _DayState:
    """분배 중인 하루의 가용 시간 상태"""

    def __init__(self, date: str, start: int, end: int, window: int, reserved: int, extra: int = 0):
        self.date = date
        self.start = start
        self.end = end
        self.window = window
        # 경로 밖 고정 일정으로 미리 잡힌 시간
        self.reserved = reserved
        # 일반 장소가 끝나야 하는 시각
        self.latest_departure = min(end, start + window)
        self.used = reserved + extra
        self.available = max(0, window - self.used)
        self.places: List[str] = []
        self.normal_count = 0
        self.last_place_id: Optional[str] = None
        self.end_travel = 0

    def settle(self, busy: int):
        """타임라인 기준 사용 시간(이동+체류+체크인)으로 used/available 갱신"""
        self.used = self.reserved + busy
        self.available = max(0, self.window - self.used)


def _day_windows(options: DistributorOptions) -> List[DayTimeConfig]:
    total_days = get_days_between(options.start_date, options.end_date)
    dates = generate_date_range(options.start_date, total_days)
    configs = {c.date: c for c in options.day_time_configs or []}
    return [
        configs.get(date) or DayTimeConfig(
            date=date,
            start_time=options.daily_start_time,
            end_time=options.daily_end_time,
        )
        for date in dates
    ]


def calculate_daily_availability(
    options: DistributorOptions,
    route_ids: Optional[set] = None,
) -> List[_DayState]:
    """
    일자별 가용 시간 계산

    경로에 포함되지 않은 고정 일정은 시간을 미리 예약한다.
    경로에 포함된 고정 장소는 배치 시점에 차감된다.
    extra_reserved_minutes(체크인 등)는 균등 분배 단계의 가용 시간에서만 빠지고,
    최종 검사는 실제 타임라인으로 한다.
    """
    route_ids = route_ids or set()
    states = []
    for window in _day_windows(options):
        start = time_to_minutes(window.start_time)
        end = time_to_minutes(window.end_time)
        window_minutes = max(0, end - start)
        if options.max_daily_minutes:
            window_minutes = min(window_minutes, options.max_daily_minutes)

        reserved = get_reserved_fixed_minutes(
            options.fixed_schedules,
            window.date,
            exclude_place_ids=route_ids,
            place_durations=options.place_durations,
        )
        states.append(
            _DayState(
                date=window.date,
                start=start,
                end=end,
                window=window_minutes,
                reserved=reserved,
                extra=options.extra_reserved_minutes.get(window.date, 0),
            )
        )
    return states


def distribute_to_daily(
    route: List[str],
    nodes: Dict[str, Node],
    matrix: TravelMatrix,
    options: DistributorOptions,
    diagnostics: DiagnosticsSink = null_diagnostics,
) -> DistributionResult:
    """
    최적화된 경로를 일자별로 분배

    - 고정 일정은 해당 날짜에 우선 배치
    - 일반 장소는 경로 순서를 유지하면서 균등하게 분배
    - 이동 시간(이전 장소 → 장소 → 일자 종료 지점)을 고려
    - 어느 날에도 들어가지 않는 장소는 unassigned_places로 보고 (예외 없음)

    Args:
        route: 최적화된 경로 (장소 ID 순서, 앵커 제외)
        nodes: 노드 맵
        matrix: 이동 비용 행렬
        options: 분배 옵션
        diagnostics: 진단 이벤트 sink

    Returns:
        DistributionResult
    """
    days = calculate_daily_availability(options, set(route))
    total_days = len(days)
    endpoints: List[DayEndpointIds] = options.day_endpoints or []
    unassigned: List[UnassignedPlaceInfo] = []
    day_index_by_date = {day.date: i for i, day in enumerate(days)}

    def day_end_id(d: int) -> Optional[str]:
        return endpoint_for_day(endpoints, d).end_id

    def placement_delta(d: int, node: Node):
        day = days[d]
        previous = day.last_place_id or _day_start_id(days, endpoints, d)
        travel_from_prev = matrix.duration(previous, node.id)
        end_id = day_end_id(d)
        new_end_travel = matrix.duration(node.id, end_id) if end_id else 0
        delta = node.duration + travel_from_prev + new_end_travel - day.end_travel
        return delta, travel_from_prev, new_end_travel

    # 1단계: 고정 일정과 일반 장소 분리
    normal_places: List[str] = []
    for place_id in route:
        node = nodes.get(place_id)
        if node is None:
            logger.warning(f"Route contains unknown place {place_id}")
            unassigned.append(
                UnassignedPlaceInfo(
                    place_id=place_id,
                    place_name=place_id,
                    reason_code=UnassignedReasonCode.UNKNOWN,
                    reason_message="장소 정보를 찾을 수 없습니다.",
                )
            )
            continue

        if node.is_fixed and node.fixed_date:
            d = day_index_by_date.get(node.fixed_date)
            if d is None:
                unassigned.append(
                    UnassignedPlaceInfo(
                        place_id=place_id,
                        place_name=node.name,
                        reason_code=UnassignedReasonCode.FIXED_CONFLICT,
                        reason_message=f"고정 일정 날짜({node.fixed_date})가 여행 기간 밖입니다.",
                    )
                )
                continue
            days[d].places.append(place_id)
            days[d].used += node.duration
            days[d].available -= node.duration
        else:
            normal_places.append(place_id)

    # 2단계: 일반 장소를 일자별로 균등 분배
    places_per_day = math.ceil(len(normal_places) / total_days) if total_days else 0
    current = 0

    for place_id in normal_places:
        node = nodes[place_id]
        required, _, _ = placement_delta(current, node)
        is_last_day = current >= total_days - 1
        if not is_last_day and (
            days[current].normal_count >= places_per_day
            or days[current].available < required
        ):
            current += 1

        assigned = False
        for d in range(current, total_days):
            delta, _, new_end_travel = placement_delta(d, node)
            if days[d].available >= delta:
                day = days[d]
                day.places.append(place_id)
                day.used += delta
                day.available -= delta
                day.last_place_id = place_id
                day.end_travel = new_end_travel
                day.normal_count += 1
                current = d
                assigned = True
                break

        if not assigned:
            _, travel, _ = placement_delta(current, node)
            remaining = max((days[d].available for d in range(current, total_days)), default=0)
            unassigned.append(
                UnassignedPlaceInfo(
                    place_id=place_id,
                    place_name=node.name,
                    reason_code=UnassignedReasonCode.TIME_EXCEEDED,
                    reason_message="일일 활동 시간 안에 배치할 수 없습니다.",
                    details={
                        "estimated_duration": node.duration,
                        "estimated_travel_time": travel,
                        "available_time": remaining,
                    },
                )
            )

    # 3단계: 실제 타임라인으로 재검사
    unassigned.extend(_fit_to_timeline(days, endpoints, nodes, matrix, diagnostics))
    return _build_result(days, unassigned, diagnostics)


def fit_days_to_windows(
    day_places: List[List[str]],
    nodes: Dict[str, Node],
    matrix: TravelMatrix,
    options: DistributorOptions,
    diagnostics: DiagnosticsSink = null_diagnostics,
) -> DistributionResult:
    """
    이미 일자별로 나뉜 장소 목록을 일일 활동 시간에 맞춘다

    일자별 방문 순서는 유지하고 (고정 일정만 시작 시간 기준으로 끼워 넣음),
    종료 시간을 넘는 일반 장소는 다음 날로 옮기거나 unassigned로 보고한다.
    """
    days = calculate_daily_availability(options, {p for places in day_places for p in places})
    for day, places in zip(days, day_places):
        day.places = [p for p in places if p in nodes]
    unassigned = _fit_to_timeline(days, options.day_endpoints or [], nodes, matrix, diagnostics)
    return _build_result(days, unassigned, diagnostics)


def endpoint_for_day(endpoints: List[DayEndpointIds], d: int) -> DayEndpointIds:
    return endpoints[d] if d < len(endpoints) else DayEndpointIds()


def day_start_id(endpoint: DayEndpointIds, previous_places: List[str]) -> Optional[str]:
    """전날 숙소가 없으면 조립 단계와 같이 전날 마지막 장소에서 출발 (전날 장소가 없으면 start_id)"""
    if endpoint.start_after_previous_day and previous_places:
        return previous_places[-1]
    return endpoint.start_id


def _day_start_id(days: List[_DayState], endpoints: List[DayEndpointIds], d: int) -> Optional[str]:
    return day_start_id(endpoint_for_day(endpoints, d), days[d - 1].places if d > 0 else [])


def _fit_to_timeline(
    days: List[_DayState],
    endpoints: List[DayEndpointIds],
    nodes: Dict[str, Node],
    matrix: TravelMatrix,
    diagnostics: DiagnosticsSink,
) -> List[UnassignedPlaceInfo]:
    """
    첫날부터 순서대로 타임라인을 따라가며 종료 시간을 넘는 일반 장소를 다음 날로 넘긴다

    출발 지점이 전날 마지막 장소에 달려 있으므로 전날이 확정된 뒤에 검사한다.
    넘겨받은 장소는 그날 맨 앞, 안 되면 맨 뒤에 넣어 보고 넘치지 않을 때만 받는다.
    """
    pending: List[Tuple[str, int]] = []
    for d, day in enumerate(days):
        endpoint = endpoint_for_day(endpoints, d)
        start_id = _day_start_id(days, endpoints, d)

        def simulate(places: List[str]) -> Tuple[List[str], int]:
            return _simulate_day(
                places, day, nodes, matrix, start_id, endpoint.end_id, endpoint.check_in_time
            )

        day.places = _order_day_places(day.places, day.start, nodes, matrix, start_id)
        overflow, busy = simulate(day.places)
        while overflow:
            victim = overflow[-1]
            day.places.remove(victim)
            pending.append((victim, d))
            day.places = _order_day_places(day.places, day.start, nodes, matrix, start_id)
            overflow, busy = simulate(day.places)

        for entry in list(pending):
            place_id, from_day = entry
            if from_day >= d:
                continue
            for trial in ([place_id] + day.places, day.places + [place_id]):
                trial = _order_day_places(trial, day.start, nodes, matrix, start_id)
                trial_overflow, trial_busy = simulate(trial)
                if not trial_overflow:
                    day.places = trial
                    busy = trial_busy
                    pending.remove(entry)
                    diagnostics.emit(
                        "distribution.rebalanced",
                        logging.INFO,
                        place_id=place_id,
                        from_day=from_day + 1,
                        to_day=d + 1,
                        moved=True,
                    )
                    break

        day.settle(busy)

    unassigned = []
    for place_id, from_day in pending:
        node = nodes[place_id]
        unassigned.append(
            UnassignedPlaceInfo(
                place_id=place_id,
                place_name=node.name,
                reason_code=UnassignedReasonCode.TIME_EXCEEDED,
                reason_message="일일 활동 시간 안에 배치할 수 없습니다.",
                details={"estimated_duration": node.duration},
            )
        )
        diagnostics.emit(
            "distribution.rebalanced",
            logging.INFO,
            place_id=place_id,
            from_day=from_day + 1,
            moved=False,
        )
    return unassigned


def _build_result(
    days: List[_DayState],
    unassigned: List[UnassignedPlaceInfo],
    diagnostics: DiagnosticsSink,
) -> DistributionResult:
    for info in unassigned:
        diagnostics.emit(
            "distribution.unassigned",
            logging.WARNING,
            place_id=info.place_id,
            reason=info.reason_code.value,
        )
    if unassigned:
        logger.warning(f"{len(unassigned)} places could not be assigned to any day")

    return DistributionResult(
        days=[day.places for day in days],
        daily_durations=[int(day.used) for day in days],
        unassigned_places=[info.place_id for info in unassigned],
        unassigned_place_details=unassigned,
    )


def _order_day_places(
    places: List[str],
    day_start: int,
    nodes: Dict[str, Node],
    matrix: TravelMatrix,
    start_id: Optional[str],
) -> List[str]:
    """
    고정 일정은 시작 시간 순으로, 일반 장소는 경로 순서를 유지하며 배치

    일반 장소는 고정 일정 시작 전에 끝낼 수 있을 때만 그 앞에 들어간다.
    """
    fixed = sorted(
        (p for p in places if nodes[p].is_fixed and nodes[p].fixed_start_time),
        key=lambda p: time_to_minutes(nodes[p].fixed_start_time),
    )
    if not fixed:
        return list(places)

    normal = [p for p in places if p not in fixed]
    ordered: List[str] = []
    clock = day_start
    previous = start_id
    cursor = 0

    for fixed_id in fixed:
        fixed_node = nodes[fixed_id]
        fixed_start = time_to_minutes(fixed_node.fixed_start_time)
        while cursor < len(normal):
            candidate = nodes[normal[cursor]]
            arrival = clock + matrix.duration(previous, candidate.id)
            finish = arrival + candidate.duration + matrix.duration(candidate.id, fixed_id)
            if finish > fixed_start:
                break
            ordered.append(candidate.id)
            clock = arrival + candidate.duration
            previous = candidate.id
            cursor += 1

        ordered.append(fixed_id)
        clock = max(clock + matrix.duration(previous, fixed_id), fixed_start) + fixed_node.duration
        previous = fixed_id

    ordered.extend(normal[cursor:])
    return ordered


def _walk_places(
    place_ids: List[str],
    clock: int,
    previous: Optional[str],
    nodes: Dict[str, Node],
    matrix: TravelMatrix,
    latest_departure: int,
    overflow: List[str],
) -> Tuple[int, Optional[str], int]:
    """
    create_daily_itinerary와 같은 규칙으로 도착/출발 시각을 따라간다

    고정 일정은 고정 시작 시간에 도착한다.
    latest_departure를 넘겨 출발하는 일반 장소는 overflow에 추가된다.

    Returns:
        (마지막 출발 시각, 마지막 장소 ID, 이동+체류 시간)
    """
    busy = 0
    for place_id in place_ids:
        node = nodes[place_id]
        travel = matrix.duration(previous, place_id)
        arrival = clock + travel
        if node.is_fixed and node.fixed_start_time:
            arrival = time_to_minutes(node.fixed_start_time)
        departure = arrival + node.duration
        if not node.is_fixed and departure > latest_departure:
            overflow.append(place_id)
        busy += travel + node.duration
        clock = departure
        previous = place_id
    return clock, previous, busy


def _simulate_day(
    places: List[str],
    day: _DayState,
    nodes: Dict[str, Node],
    matrix: TravelMatrix,
    start_id: Optional[str],
    end_id: Optional[str],
    check_in_time: Optional[str] = None,
) -> Tuple[List[str], int]:
    """
    하루 일정을 조립 단계와 같은 순서로 따라가며 검사

    체크인 날은 체크인 전 장소 -> 숙소 도착 -> max(체크인 시각, 도착) 부터 체크인
    -> 숙소에서 출발하는 체크인 후 장소 순으로 계산한다.

    Returns:
        (latest_departure를 넘는 일반 장소, 이동+체류+체크인 시간)
    """
    overflow: List[str] = []
    if not places:
        return overflow, 0

    if check_in_time is None or end_id is None:
        _, last_id, busy = _walk_places(
            places, day.start, start_id, nodes, matrix, day.latest_departure, overflow
        )
        return overflow, busy + matrix.duration(last_id, end_id)

    check_in_minutes = time_to_minutes(check_in_time)
    before, after = split_place_ids_by_check_in(
        places, nodes, matrix, start_id, day.start, check_in_minutes
    )
    clock, previous, busy = _walk_places(
        before, day.start, start_id, nodes, matrix, day.latest_departure, overflow
    )
    to_hotel = matrix.duration(previous, end_id)
    check_in_end = max(check_in_minutes, clock + to_hotel) + settings.check_in_duration
    busy += to_hotel + settings.check_in_duration

    if after:
        _, last_id, after_busy = _walk_places(
            after, check_in_end, end_id, nodes, matrix, day.latest_departure, overflow
        )
        busy += after_busy + matrix.duration(last_id, end_id)
    return overflow, busy


def validate_distribution(result: DistributionResult, original_route: List[str]) -> Dict[str, Any]:
    """분배 결과 검증 (누락/중복 장소)"""
    assigned = set()
    duplicates = []
    for day_places in result.days:
        for place_id in day_places:
            if place_id in assigned:
                duplicates.append(place_id)
            assigned.add(place_id)

    unassigned = set(result.unassigned_places)
    missing = [p for p in original_route if p not in assigned and p not in unassigned]

    return {
        "is_valid": not missing and not duplicates and not result.unassigned_places,
        "missing_places": missing,
        "duplicate_places": duplicates,
        "all_places_assigned": not result.unassigned_places,
    }


def get_distribution_stats(result: DistributionResult) -> Dict[str, Any]:
    counts = [len(d) for d in result.days]
    total_days = len(result.days)
    total_places = sum(counts)
    return {
        "total_days": total_days,
        "total_places": total_places,
        "avg_places_per_day": total_places / total_days if total_days else 0,
        "avg_duration_per_day": sum(result.daily_durations) / total_days if total_days else 0,
        "max_day_places": max(counts, default=0),
        "min_day_places": min(counts, default=0),
        "unassigned_count": len(result.unassigned_places),
    }


def default_distributor_options(**overrides: Any) -> DistributorOptions:
    """settings 기본 시간대로 DistributorOptions 생성"""
    values = {
        "daily_start_time": settings.distributor_default_start,
        "daily_end_time": settings.distributor_default_end,
        **overrides,
    }
    return DistributorOptions(**values)
