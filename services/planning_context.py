"""
Per-run planning tables.

한 번의 최적화 실행에서 사용하는 노드 테이블과 날짜별 숙소 테이블을 만든다.
모듈 수준 상태 없이 실행마다 새로 생성된다.
"""
import logging
from typing import List, Dict, Optional
from config import settings
from models.schemas import (
    DailyAccommodation,
    DayTimeConfig,
    FixedSchedule,
    Node,
    NodeKind,
    Place,
    TransportMode,
    Trip,
    TripLocation,
)
from services.constraints import fixed_schedule_to_node
from utils.time_utils import generate_daily_time_configs

logger = logging.getLogger(__name__)

ORIGIN_ID = "__origin__"
DESTINATION_ID = "__destination__"

# 이동 수단 우선순위 (앞쪽이 우선)
TRANSPORT_MODE_PREFERENCE = [TransportMode.CAR, TransportMode.PUBLIC, TransportMode.WALKING]


def accommodation_node_id(index: int) -> str:
    return f"__accommodation_{index}__"


def primary_transport_mode(modes: List[TransportMode]) -> TransportMode:
    """여행의 이동 수단 중 대표 수단 선택 (car > public > walking)"""
    for mode in TRANSPORT_MODE_PREFERENCE:
        if mode in modes:
            return mode
    return TransportMode.CAR


def place_to_node(place: Place, index: int) -> Node:
    """장소를 노드로 변환 (priority가 없으면 입력 순서)"""
    return Node(
        id=place.id,
        kind=NodeKind.PLACE,
        name=place.name,
        coordinate={"lat": place.lat, "lng": place.lng},
        duration=place.estimated_duration,
        priority=place.priority if place.priority is not None else index + 1,
    )


def location_to_node(node_id: str, kind: NodeKind, location: TripLocation,
                     accommodation_index: int = None) -> Node:
    return Node(
        id=node_id,
        kind=kind,
        accommodation_index=accommodation_index,
        name=location.name,
        coordinate=location.coordinate(),
    )


def build_place_nodes(places: List[Place], fixed_schedules: List[FixedSchedule]) -> Dict[str, Node]:
    """
    장소 노드 테이블 생성

    고정 일정이 있는 장소는 고정 노드(priority 0, 체류 시간 = 종료 - 시작)로 바뀐다.
    같은 장소에 고정 일정이 여러 개면 첫 번째만 사용한다.
    """
    nodes = {place.id: place_to_node(place, i) for i, place in enumerate(places)}
    applied = set()
    for schedule in fixed_schedules:
        node = nodes.get(schedule.place_id)
        if node is None:
            logger.warning(f"Fixed schedule {schedule.id} references unknown place {schedule.place_id}")
            continue
        if schedule.place_id in applied:
            logger.warning(f"Place {schedule.place_id} has more than one fixed schedule, using the first")
            continue
        nodes[schedule.place_id] = fixed_schedule_to_node(schedule, node)
        applied.add(schedule.place_id)
    return nodes


def build_accommodation_table(
    accommodations: List[DailyAccommodation],
    dates: List[str],
) -> Dict[str, int]:
    """
    날짜 -> 숙소 인덱스 테이블

    숙소는 start_date부터 end_date 전날까지의 밤에 해당한다.
    겹치는 숙소가 있으면 먼저 등록된 숙소를 사용한다.
    """
    table: Dict[str, int] = {}
    for index, accommodation in enumerate(accommodations):
        for date in dates:
            if accommodation.start_date <= date < accommodation.end_date:
                table.setdefault(date, index)
    return table


def build_day_configs(trip: Trip) -> List[DayTimeConfig]:
    """일자별 활동 시간 (첫날/마지막날은 여행 설정, 중간 날은 기본값)"""
    return generate_daily_time_configs(
        trip.start_date,
        trip.end_date,
        trip.daily_start_time,
        trip.daily_end_time,
        middle_day_start=settings.default_middle_day_start,
        middle_day_end=settings.default_middle_day_end,
    )


class PlanningContext:
    """최적화 한 번에 필요한 노드와 날짜 정보"""

    def __init__(
        self,
        trip: Trip,
        place_nodes: Dict[str, Node],
        day_configs: List[DayTimeConfig],
    ):
        self.trip = trip
        self.day_configs = list(day_configs)
        self.dates = [config.date for config in self.day_configs]
        self.origin_id = ORIGIN_ID
        self.destination_id = DESTINATION_ID
        self.place_ids = list(place_nodes.keys())
        self.accommodation_by_date = build_accommodation_table(trip.accommodations, self.dates)

        self.nodes: Dict[str, Node] = {
            ORIGIN_ID: location_to_node(ORIGIN_ID, NodeKind.ORIGIN, trip.origin),
        }
        self.nodes.update(place_nodes)
        self.nodes[DESTINATION_ID] = location_to_node(DESTINATION_ID, NodeKind.DESTINATION, trip.destination)
        for index in sorted(set(self.accommodation_by_date.values())):
            node_id = accommodation_node_id(index)
            self.nodes[node_id] = location_to_node(
                node_id,
                NodeKind.ACCOMMODATION,
                trip.accommodations[index].location,
                accommodation_index=index,
            )

    @classmethod
    def build(
        cls,
        trip: Trip,
        places: List[Place],
        fixed_schedules: List[FixedSchedule] = None,
    ) -> "PlanningContext":
        return cls(trip, build_place_nodes(places, fixed_schedules or []), build_day_configs(trip))

    @property
    def total_days(self) -> int:
        return len(self.dates)

    @property
    def node_list(self) -> List[Node]:
        return list(self.nodes.values())

    @property
    def place_nodes(self) -> Dict[str, Node]:
        return {node_id: self.nodes[node_id] for node_id in self.place_ids}

    @property
    def mode(self) -> TransportMode:
        return primary_transport_mode(self.trip.transport_modes)

    def accommodation_for(self, date: str) -> Optional[int]:
        """해당 날짜 밤에 묵는 숙소 인덱스"""
        return self.accommodation_by_date.get(date)

    def accommodation_node(self, index: int) -> Optional[Node]:
        return self.nodes.get(accommodation_node_id(index))

    def check_in_accommodation(self, date: str) -> Optional[int]:
        """해당 날짜에 체크인하는 숙소 인덱스"""
        for index, accommodation in enumerate(self.trip.accommodations):
            if accommodation.start_date == date and self.accommodation_for(date) == index:
                return index
        return None

    def is_last_day(self, day_index: int) -> bool:
        return day_index == len(self.dates) - 1
