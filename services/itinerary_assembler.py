"""
Itinerary assembly.

분배된 일자별 장소 목록을 시간표(DailyItinerary)로 만든다.
일자별 출발/도착 지점 결정, 숙소 체크인 분할, 시간 재계산, 일정 검증을 포함한다.
"""
import logging
from typing import Callable, List, Dict, Optional, Tuple
from config import settings
from models.schemas import (
    CheckInEvent,
    DailyAccommodation,
    DailyItinerary,
    DayEndpoint,
    DayEndpointIds,
    EndpointType,
    ItineraryIssue,
    Node,
    NodeKind,
    RouteSegment,
    ScheduleItem,
    TrafficType,
    TransportMode,
)
from services.planning_context import PlanningContext
from services.routes_matrix import TravelMatrix
from utils.diagnostics import DiagnosticsSink, null_diagnostics
from utils.time_utils import minutes_to_time, normalize_time, time_to_minutes

logger = logging.getLogger(__name__)

MIN_STAY_MINUTES = 30
MAX_STAY_MINUTES = 720
STAY_UNIT_MINUTES = 30

# (노드 ID, 지점 정보), 도착 지점이 없는 날은 (None, None)
EndpointChoice = Tuple[Optional[str], Optional[DayEndpoint]]
EndpointStrategy = Callable[[int, PlanningContext, Optional[DailyItinerary]], Optional[EndpointChoice]]


# ============================================
# Day endpoints
# ============================================

def _endpoint_for_node(node: Node, endpoint_type: EndpointType, address: str = "") -> DayEndpoint:
    return DayEndpoint(
        type=endpoint_type,
        name=node.name,
        address=address,
        coordinate=node.coordinate,
        node_id=node.id,
    )


def _accommodation_choice(context: PlanningContext, index: int) -> Optional[EndpointChoice]:
    node = context.accommodation_node(index)
    if node is None:
        return None
    accommodation = context.trip.accommodations[index]
    return node.id, _endpoint_for_node(node, EndpointType.ACCOMMODATION, accommodation.location.address)


def _origin_on_first_day(day_index, context, previous_day):
    if day_index != 0:
        return None
    node = context.nodes[context.origin_id]
    return node.id, _endpoint_for_node(node, EndpointType.ORIGIN, context.trip.origin.address)


def _origin_from_previous_accommodation(day_index, context, previous_day):
    if day_index == 0:
        return None
    index = context.accommodation_for(context.dates[day_index - 1])
    if index is None:
        return None
    return _accommodation_choice(context, index)


def _origin_from_previous_last_place(day_index, context, previous_day):
    if previous_day is None or not previous_day.schedule:
        return None
    node = context.nodes.get(previous_day.schedule[-1].place_id)
    if node is None:
        return None
    return node.id, _endpoint_for_node(node, EndpointType.LAST_PLACE)


def _origin_fallback(day_index, context, previous_day):
    node = context.nodes[context.origin_id]
    return node.id, _endpoint_for_node(node, EndpointType.ORIGIN, context.trip.origin.address)


def _destination_on_last_day(day_index, context, previous_day):
    if not context.is_last_day(day_index):
        return None
    node = context.nodes[context.destination_id]
    return node.id, _endpoint_for_node(node, EndpointType.DESTINATION, context.trip.destination.address)


def _destination_tonight_accommodation(day_index, context, previous_day):
    index = context.accommodation_for(context.dates[day_index])
    if index is None:
        return None
    return _accommodation_choice(context, index)


def _destination_none(day_index, context, previous_day):
    return None, None


ORIGIN_STRATEGIES: List[EndpointStrategy] = [
    _origin_on_first_day,
    _origin_from_previous_accommodation,
    _origin_from_previous_last_place,
    _origin_fallback,
]

DESTINATION_STRATEGIES: List[EndpointStrategy] = [
    _destination_on_last_day,
    _destination_tonight_accommodation,
    _destination_none,
]


def _resolve(strategies: List[EndpointStrategy], day_index, context, previous_day) -> EndpointChoice:
    for strategy in strategies:
        choice = strategy(day_index, context, previous_day)
        if choice is not None:
            return choice
    return None, None


def resolve_day_origin(
    day_index: int,
    context: PlanningContext,
    previous_day: Optional[DailyItinerary] = None,
) -> EndpointChoice:
    """
    일자별 출발 지점 결정

    첫날은 여행 출발지, 이후는 전날 숙소 -> 전날 마지막 장소 -> 여행 출발지 순으로 찾는다.
    """
    return _resolve(ORIGIN_STRATEGIES, day_index, context, previous_day)


def resolve_day_destination(
    day_index: int,
    context: PlanningContext,
    previous_day: Optional[DailyItinerary] = None,
) -> EndpointChoice:
    """
    일자별 도착 지점 결정

    마지막 날은 여행 도착지, 그 외에는 당일 숙소이며 숙소가 없으면 도착 지점이 없다.
    """
    return _resolve(DESTINATION_STRATEGIES, day_index, context, previous_day)


def resolve_distribution_endpoints(context: PlanningContext) -> List[DayEndpointIds]:
    """
    분배 단계용 시작/종료 노드

    전날 숙소가 없는 날은 전날 마지막 장소에서 출발하므로 분배기가 직접 결정하도록
    start_after_previous_day를 켠다 (전날 장소가 없으면 여행 출발지).
    체크인 날은 체크인 시각을 함께 넘긴다.
    """
    endpoints = []
    for day_index in range(context.total_days):
        start_id, start = resolve_day_origin(day_index, context)
        end_id, _ = resolve_day_destination(day_index, context)
        check_in = check_in_for_day(context, day_index, end_id)
        endpoints.append(
            DayEndpointIds(
                start_id=start_id,
                end_id=end_id,
                start_after_previous_day=(
                    day_index > 0 and start is not None and start.type == EndpointType.ORIGIN
                ),
                check_in_time=(
                    normalize_time(check_in[1].check_in_time or settings.default_check_in_time)
                    if check_in else None
                ),
            )
        )
    return endpoints


# ============================================
# Check-in
# ============================================

def check_in_for_day(
    context: PlanningContext,
    day_index: int,
    end_id: Optional[str],
) -> Optional[Tuple[int, DailyAccommodation]]:
    """
    체크인이 필요한 날이면 (숙소 인덱스, 숙소) 반환

    당일 체크인하는 숙소가 있고, 그 숙소가 당일 도착 지점일 때만 적용된다.
    """
    index = context.check_in_accommodation(context.dates[day_index])
    if index is None or end_id is None:
        return None
    end_node = context.nodes.get(end_id)
    if end_node is None or end_node.kind != NodeKind.ACCOMMODATION:
        return None
    if end_node.accommodation_index != index:
        return None
    return index, context.trip.accommodations[index]


def check_in_reserved_minutes(context: PlanningContext) -> Dict[str, int]:
    """체크인 날짜별 예약 시간 (분배 단계 가용 시간에서 차감)"""
    reserved = {}
    for day_index, date in enumerate(context.dates):
        end_id, _ = resolve_day_destination(day_index, context)
        if check_in_for_day(context, day_index, end_id):
            reserved[date] = settings.check_in_duration
    return reserved


def split_place_ids_by_check_in(
    place_ids: List[str],
    nodes: Dict[str, Node],
    matrix: TravelMatrix,
    start_id: Optional[str],
    day_start_minutes: int,
    check_in_minutes: int,
) -> Tuple[List[str], List[str]]:
    """
    체크인 시간을 기준으로 오전/오후 장소 분할

    도착 시간이 체크인 시간보다 이른 장소까지 체크인 전에 방문한다.
    고정 일정은 고정 시작 시간으로 판단한다.

    Returns:
        (체크인 전 장소, 체크인 후 장소)
    """
    if check_in_minutes <= day_start_minutes:
        return [], list(place_ids)

    before: List[str] = []
    clock = day_start_minutes
    previous = start_id
    for position, place_id in enumerate(place_ids):
        node = nodes.get(place_id)
        arrival = clock + matrix.duration(previous, place_id)
        if node is not None and node.is_fixed and node.fixed_start_time:
            fixed_start = time_to_minutes(node.fixed_start_time)
            if fixed_start >= check_in_minutes:
                return before, list(place_ids[position:])
            arrival = max(fixed_start, arrival)
        elif arrival >= check_in_minutes:
            return before, list(place_ids[position:])

        before.append(place_id)
        clock = arrival + (node.duration if node else 0)
        previous = place_id

    return before, []


# ============================================
# Daily itinerary
# ============================================

def _itinerary_legs(itinerary: DailyItinerary) -> List[RouteSegment]:
    legs = [itinerary.transport_from_origin]
    legs.extend(item.transport_to_next for item in itinerary.schedule)
    legs.append(itinerary.transport_to_destination)
    if itinerary.check_in_event:
        legs.append(itinerary.check_in_event.transport_to_hotel)
        legs.append(itinerary.check_in_event.transport_from_hotel)
    return [leg for leg in legs if leg is not None]


def _with_totals(itinerary: DailyItinerary) -> DailyItinerary:
    """이동 거리/시간, 체류 시간, 장소 수 합계 갱신"""
    legs = _itinerary_legs(itinerary)
    stay = sum(item.duration for item in itinerary.schedule)
    if itinerary.check_in_event:
        stay += itinerary.check_in_event.duration_min
    return itinerary.model_copy(
        update={
            "total_distance": sum(leg.distance for leg in legs),
            "total_duration": sum(leg.duration for leg in legs),
            "total_stay_duration": stay,
            "place_count": len(itinerary.schedule),
        }
    )


def create_daily_itinerary(
    place_ids: List[str],
    nodes: Dict[str, Node],
    matrix: TravelMatrix,
    date: str,
    day_number: int,
    start_time: str,
    end_time: str,
    start_id: Optional[str] = None,
    end_id: Optional[str] = None,
    day_origin: Optional[DayEndpoint] = None,
    day_destination: Optional[DayEndpoint] = None,
    diagnostics: DiagnosticsSink = null_diagnostics,
) -> DailyItinerary:
    """
    하루 일정 생성

    - 시작 시간 + 출발지 이동 시간부터 첫 장소 도착
    - 고정 일정은 고정 시작 시간에 도착
    - 출발 시간 = 도착 시간 + 체류 시간
    - end_id가 없으면 도착지 이동 구간을 만들지 않는다

    Args:
        place_ids: 방문 순서대로의 장소 ID
        nodes: 노드 맵
        matrix: 이동 비용 행렬
        date: 날짜 (YYYY-MM-DD)
        day_number: 일차 (1부터)
        start_time: 일과 시작 시간
        end_time: 일과 종료 시간
        start_id: 출발 노드 ID
        end_id: 도착 노드 ID
        day_origin: 출발 지점 정보
        day_destination: 도착 지점 정보
        diagnostics: 진단 이벤트 sink

    Returns:
        DailyItinerary
    """
    day_start = time_to_minutes(start_time)
    day_end = time_to_minutes(end_time)

    known_ids = []
    for place_id in place_ids:
        if place_id in nodes:
            known_ids.append(place_id)
        else:
            logger.warning(f"Skipping unknown place {place_id} on {date}")

    if not known_ids:
        return DailyItinerary(
            day_number=day_number,
            date=date,
            start_time=minutes_to_time(day_start),
            end_time=minutes_to_time(day_start),
            daily_start_time=normalize_time(start_time),
            daily_end_time=normalize_time(end_time),
            day_origin=day_origin,
            day_destination=day_destination,
        )

    transport_from_origin = matrix.get(start_id, known_ids[0])
    clock = day_start + (transport_from_origin.duration if transport_from_origin else 0)

    schedule: List[ScheduleItem] = []
    for position, place_id in enumerate(known_ids):
        node = nodes[place_id]
        if node.is_fixed and node.fixed_start_time:
            arrival = time_to_minutes(node.fixed_start_time)
        else:
            arrival = clock
        departure = arrival + node.duration

        next_id = known_ids[position + 1] if position + 1 < len(known_ids) else None
        transport_to_next = matrix.get(place_id, next_id)

        if departure > day_end:
            diagnostics.emit(
                "itinerary.out_of_hours",
                logging.WARNING,
                date=date,
                place_id=place_id,
                departure_time=minutes_to_time(departure),
                daily_end_time=end_time,
                is_fixed=node.is_fixed,
            )

        schedule.append(
            ScheduleItem(
                order=position + 1,
                place_id=place_id,
                place_name=node.name,
                arrival_time=minutes_to_time(arrival),
                departure_time=minutes_to_time(departure),
                duration=node.duration,
                is_fixed=node.is_fixed,
                transport_to_next=transport_to_next,
                exceeds_day_end=node.is_fixed and departure > day_end,
            )
        )
        clock = departure + (transport_to_next.duration if transport_to_next else 0)

    transport_to_destination = matrix.get(known_ids[-1], end_id)
    last_departure = time_to_minutes(schedule[-1].departure_time)
    finish = last_departure + (transport_to_destination.duration if transport_to_destination else 0)

    itinerary = DailyItinerary(
        day_number=day_number,
        date=date,
        schedule=schedule,
        start_time=minutes_to_time(day_start),
        end_time=minutes_to_time(finish),
        transport_from_origin=transport_from_origin,
        transport_to_destination=transport_to_destination,
        daily_start_time=normalize_time(start_time),
        daily_end_time=normalize_time(end_time),
        day_origin=day_origin,
        day_destination=day_destination,
    )
    return _with_totals(itinerary)


def _assemble_check_in_day(
    place_ids: List[str],
    context: PlanningContext,
    matrix: TravelMatrix,
    day_index: int,
    start_id: str,
    end_id: str,
    day_origin: Optional[DayEndpoint],
    day_destination: Optional[DayEndpoint],
    accommodation: DailyAccommodation,
    diagnostics: DiagnosticsSink,
) -> DailyItinerary:
    """체크인 전/후 일정을 따로 만든 뒤 체크인 이벤트와 함께 합친다"""
    config = context.day_configs[day_index]
    day_start = time_to_minutes(config.start_time)
    check_in_time = normalize_time(accommodation.check_in_time or settings.default_check_in_time)
    check_in_duration = settings.check_in_duration

    before_ids, after_ids = split_place_ids_by_check_in(
        place_ids, context.nodes, matrix, start_id, day_start, time_to_minutes(check_in_time)
    )

    morning = None
    if before_ids:
        morning = create_daily_itinerary(
            before_ids, context.nodes, matrix, config.date, day_index + 1,
            config.start_time, config.end_time,
            start_id=start_id, end_id=end_id,
            diagnostics=diagnostics,
        )
        arrival = time_to_minutes(morning.end_time)
        transport_to_hotel = morning.transport_to_destination
    else:
        transport_to_hotel = matrix.get(start_id, end_id)
        arrival = day_start + (transport_to_hotel.duration if transport_to_hotel else 0)

    check_in_start = max(time_to_minutes(check_in_time), arrival)
    check_in_end = check_in_start + check_in_duration

    afternoon = None
    if after_ids:
        afternoon = create_daily_itinerary(
            after_ids, context.nodes, matrix, config.date, day_index + 1,
            minutes_to_time(check_in_end), config.end_time,
            start_id=end_id, end_id=end_id,
            diagnostics=diagnostics,
        )

    schedule = list(morning.schedule) if morning else []
    if afternoon:
        offset = len(schedule)
        schedule.extend(
            item.model_copy(update={"order": item.order + offset}) for item in afternoon.schedule
        )

    event = CheckInEvent(
        accommodation_name=accommodation.location.name,
        accommodation_address=accommodation.location.address,
        coordinate=accommodation.location.coordinate(),
        check_in_time=check_in_time,
        duration_min=check_in_duration,
        arrival_time=minutes_to_time(arrival),
        start_time=minutes_to_time(check_in_start),
        end_time=minutes_to_time(check_in_end),
        insert_after_order=len(morning.schedule) if morning else 0,
        transport_to_hotel=transport_to_hotel,
        transport_from_hotel=afternoon.transport_from_origin if afternoon else None,
    )

    itinerary = DailyItinerary(
        day_number=day_index + 1,
        date=config.date,
        schedule=schedule,
        start_time=normalize_time(config.start_time),
        end_time=afternoon.end_time if afternoon else event.end_time,
        transport_from_origin=morning.transport_from_origin if morning else None,
        transport_to_destination=afternoon.transport_to_destination if afternoon else None,
        daily_start_time=normalize_time(config.start_time),
        daily_end_time=normalize_time(config.end_time),
        day_origin=day_origin,
        day_destination=day_destination,
        check_in_event=event,
    )
    return _with_totals(itinerary)


def assemble(
    day_assignments: List[List[str]],
    matrix: TravelMatrix,
    context: PlanningContext,
    diagnostics: DiagnosticsSink = null_diagnostics,
) -> List[DailyItinerary]:
    """
    일자별 장소 배정으로 전체 일정 생성

    장소가 없는 날도 빠지지 않으며, 그날의 시작/종료 시간은 일과 시작 시간이다.

    Args:
        day_assignments: 일자별 장소 ID 리스트
        matrix: 이동 비용 행렬
        context: 실행 컨텍스트 (노드, 숙소, 일자별 시간)
        diagnostics: 진단 이벤트 sink

    Returns:
        DailyItinerary 리스트 (여행 일수만큼)
    """
    itineraries: List[DailyItinerary] = []
    previous: Optional[DailyItinerary] = None

    for day_index, config in enumerate(context.day_configs):
        place_ids = day_assignments[day_index] if day_index < len(day_assignments) else []
        start_id, day_origin = resolve_day_origin(day_index, context, previous)
        end_id, day_destination = resolve_day_destination(day_index, context, previous)

        check_in = check_in_for_day(context, day_index, end_id) if place_ids else None
        if check_in:
            _, accommodation = check_in
            itinerary = _assemble_check_in_day(
                place_ids, context, matrix, day_index, start_id, end_id,
                day_origin, day_destination, accommodation, diagnostics,
            )
        else:
            itinerary = create_daily_itinerary(
                place_ids, context.nodes, matrix, config.date, day_index + 1,
                config.start_time, config.end_time,
                start_id=start_id, end_id=end_id,
                day_origin=day_origin, day_destination=day_destination,
                diagnostics=diagnostics,
            )

        itineraries.append(itinerary)
        previous = itinerary

    logger.info(
        f"Assembled {len(itineraries)} days, "
        f"{sum(i.place_count for i in itineraries)} scheduled places"
    )
    return itineraries


# ============================================
# Time recalculation
# ============================================

def _reschedule_check_in(event: CheckInEvent, clock: int) -> Tuple[CheckInEvent, int]:
    """도착 시각(clock)부터 숙소 이동 + 체크인 시간을 다시 계산, 체크인 후 시각 반환"""
    arrival = clock + (event.transport_to_hotel.duration if event.transport_to_hotel else 0)
    start = max(time_to_minutes(event.check_in_time), arrival)
    end = start + event.duration_min
    updated = event.model_copy(
        update={
            "arrival_time": minutes_to_time(arrival),
            "start_time": minutes_to_time(start),
            "end_time": minutes_to_time(end),
        }
    )
    return updated, end + (event.transport_from_hotel.duration if event.transport_from_hotel else 0)


def recalculate_itinerary_times(
    itinerary: DailyItinerary,
    daily_start_time: str = "10:00",
    daily_end_time: str = "22:00",
) -> DailyItinerary:
    """
    편집된 일정의 도착/출발 시간과 합계 재계산

    일과 시작 시간 + 출발지 이동 시간부터 다시 이어 붙인다.
    고정 일정은 기존 도착 시간을 유지한다.

    Args:
        itinerary: 재계산할 일정
        daily_start_time: 일정에 시간 정보가 없을 때 사용할 시작 시간
        daily_end_time: 일정에 시간 정보가 없을 때 사용할 종료 시간

    Returns:
        시간이 재계산된 DailyItinerary
    """
    start_time = normalize_time(itinerary.daily_start_time or daily_start_time)
    end_time = normalize_time(itinerary.daily_end_time or daily_end_time)
    day_end = time_to_minutes(end_time)

    if not itinerary.schedule:
        updated = itinerary.model_copy(
            update={
                "start_time": start_time,
                "end_time": start_time,
                "daily_start_time": start_time,
                "daily_end_time": end_time,
            }
        )
        return _with_totals(updated)

    event = itinerary.check_in_event
    insert_after = min(event.insert_after_order, len(itinerary.schedule)) if event else None

    clock = time_to_minutes(start_time)
    if itinerary.transport_from_origin:
        clock += itinerary.transport_from_origin.duration
    if event is not None and insert_after == 0:
        event, clock = _reschedule_check_in(event, time_to_minutes(start_time))

    schedule: List[ScheduleItem] = []
    finish = clock
    for position, item in enumerate(itinerary.schedule):
        arrival = time_to_minutes(item.arrival_time) if item.is_fixed else clock
        departure = arrival + item.duration
        schedule.append(
            item.model_copy(
                update={
                    "order": position + 1,
                    "arrival_time": minutes_to_time(arrival),
                    "departure_time": minutes_to_time(departure),
                    "exceeds_day_end": item.is_fixed and departure > day_end,
                }
            )
        )
        finish = departure
        clock = departure + (item.transport_to_next.duration if item.transport_to_next else 0)
        if event is not None and insert_after == position + 1:
            event, clock = _reschedule_check_in(event, departure)
            finish = time_to_minutes(event.end_time)

    if itinerary.transport_to_destination:
        finish += itinerary.transport_to_destination.duration

    updated = itinerary.model_copy(
        update={
            "schedule": schedule,
            "start_time": start_time,
            "end_time": minutes_to_time(finish),
            "daily_start_time": start_time,
            "daily_end_time": end_time,
            "check_in_event": event,
        }
    )
    return _with_totals(updated)


# ============================================
# Validation / display helpers
# ============================================

def validate_duration(duration: int) -> bool:
    return (
        MIN_STAY_MINUTES <= duration <= MAX_STAY_MINUTES
        and duration % STAY_UNIT_MINUTES == 0
    )


def validate_itinerary(
    itineraries: List[DailyItinerary],
    daily_start_time: str = "10:00",
    daily_end_time: str = "22:00",
) -> List[ItineraryIssue]:
    """
    일정 검증

    - EMPTY_DAY: 장소가 없는 날
    - INVALID_DURATION: 체류 시간이 30분 미만, 720분 초과, 30분 단위가 아닌 경우
    - OUT_OF_HOURS: 일과 시간 밖의 도착/출발
    - INVALID_TIME: 도착 시간이 출발 시간보다 늦거나 같은 경우

    Returns:
        ItineraryIssue 리스트 (비어 있으면 유효)
    """
    issues: List[ItineraryIssue] = []

    for itinerary in itineraries:
        if not itinerary.schedule:
            issues.append(
                ItineraryIssue(
                    code="EMPTY_DAY",
                    day_number=itinerary.day_number,
                    message=f"{itinerary.day_number}일차에 장소가 없습니다. 최소 1개 장소가 필요합니다.",
                )
            )

    for itinerary in itineraries:
        start_time = itinerary.daily_start_time or daily_start_time
        end_time = itinerary.daily_end_time or daily_end_time
        start_minutes = time_to_minutes(start_time)
        end_minutes = time_to_minutes(end_time)

        for item in itinerary.schedule:
            def issue(code: str, message: str) -> ItineraryIssue:
                return ItineraryIssue(
                    code=code,
                    day_number=itinerary.day_number,
                    message=message,
                    place_id=item.place_id,
                )

            if item.duration < MIN_STAY_MINUTES:
                issues.append(issue(
                    "INVALID_DURATION",
                    f'"{item.place_name}"의 체류 시간이 너무 짧습니다. 최소 {MIN_STAY_MINUTES}분이 필요합니다.',
                ))
            if item.duration > MAX_STAY_MINUTES:
                issues.append(issue(
                    "INVALID_DURATION",
                    f'"{item.place_name}"의 체류 시간이 너무 깁니다. 최대 {MAX_STAY_MINUTES}분까지 가능합니다.',
                ))
            if item.duration % STAY_UNIT_MINUTES != 0:
                issues.append(issue(
                    "INVALID_DURATION",
                    f'"{item.place_name}"의 체류 시간은 {STAY_UNIT_MINUTES}분 단위여야 합니다.',
                ))

            arrival = time_to_minutes(item.arrival_time)
            departure = time_to_minutes(item.departure_time)
            if arrival < start_minutes:
                issues.append(issue(
                    "OUT_OF_HOURS",
                    f'"{item.place_name}"의 도착 시간이 일과 시작 시간({start_time})보다 이릅니다.',
                ))
            if departure > end_minutes:
                issues.append(issue(
                    "OUT_OF_HOURS",
                    f'"{item.place_name}"의 출발 시간이 일과 종료 시간({end_time})보다 늦습니다.',
                ))
            if arrival >= departure:
                issues.append(issue(
                    "INVALID_TIME",
                    f'"{item.place_name}"의 도착 시간이 출발 시간보다 늦거나 같습니다.',
                ))

    return issues


def classify_segment_mode(segment: RouteSegment) -> TransportMode:
    """
    화면 표시용 이동 수단 분류

    대중교통 구간 중 상세 정보가 없거나 도보 구간 하나뿐이면 도보로 본다.
    """
    if segment.mode != TransportMode.PUBLIC:
        return segment.mode
    details = segment.transit_details
    if details is None:
        return TransportMode.WALKING
    if len(details.sub_paths) == 1 and details.sub_paths[0].traffic_type == TrafficType.WALK:
        return TransportMode.WALKING
    return TransportMode.PUBLIC

