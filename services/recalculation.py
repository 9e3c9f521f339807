"""
Incremental route recalculation.

편집된 일정에서 바뀐 구간만 외부 API로 다시 조회하고, 바뀌지 않은 구간은
이전에 저장된 이동 정보를 그대로 재사용한다. 이후 시간은 일자별로 전부 다시 계산한다.
"""
import asyncio
import logging
from typing import Dict, List, Optional, Tuple
from config import settings
from models.schemas import (
    Coordinate,
    DailyItinerary,
    DayEndpoint,
    Place,
    RecalculationResult,
    RouteSegment,
    SaveReport,
    TrafficType,
    TransportMode,
    Trip,
)
from services.database import PersistenceGateway
from services.itinerary_assembler import recalculate_itinerary_times
from services.planning_context import PlanningContext, primary_transport_mode
from services.routing_provider import (
    RoutingProvider,
    car_route_to_segment,
    routing_provider,
    transit_route_to_segment,
)
from utils.diagnostics import CollectingDiagnostics, DiagnosticsSink, null_diagnostics
from utils.geo import coordinate_key, estimate_segment, haversine
from utils.retry_helpers import RoutingProviderError

logger = logging.getLogger(__name__)

MIN_TRANSIT_POLYLINE_LENGTH = 50

# 구간 위치: 출발지 -> 첫 장소, 장소 -> 다음 장소, 마지막 장소 -> 도착지, 숙소 이동
SLOT_ORIGIN = "origin"
SLOT_NEXT = "next"
SLOT_DESTINATION = "destination"
SLOT_TO_HOTEL = "to_hotel"
SLOT_FROM_HOTEL = "from_hotel"


def segment_key(from_ref: str, to_ref: str) -> str:
    """구간 키 "{from}:{to}" (ID가 없는 지점은 소수점 6자리 좌표)"""
    return f"{from_ref}:{to_ref}"


def endpoint_ref(endpoint: DayEndpoint) -> str:
    return endpoint.node_id or coordinate_key(endpoint.coordinate)


class SegmentSlot:
    """일정 안에서 이동 구간 하나가 놓이는 자리"""

    def __init__(
        self,
        kind: str,
        from_ref: str,
        to_ref: str,
        segment: Optional[RouteSegment],
        position: int = None,
        from_coord: Coordinate = None,
        to_coord: Coordinate = None,
    ):
        self.kind = kind
        self.position = position
        self.from_ref = from_ref
        self.to_ref = to_ref
        self.segment = segment
        self.from_coord = from_coord
        self.to_coord = to_coord

    @property
    def key(self) -> str:
        return segment_key(self.from_ref, self.to_ref)


def _hotel_endpoint(itinerary: DailyItinerary) -> Optional[Tuple[str, Coordinate]]:
    event = itinerary.check_in_event
    if event is None:
        return None
    destination = itinerary.day_destination
    if destination is not None and destination.node_id:
        return destination.node_id, event.coordinate
    return coordinate_key(event.coordinate), event.coordinate


def day_segment_slots(itinerary: DailyItinerary) -> List[SegmentSlot]:
    """
    하루 일정의 이동 구간 자리 목록

    체크인이 있는 날은 체크인 위치에서 (장소 -> 숙소), (숙소 -> 장소) 구간으로 나뉜다.
    """
    schedule = itinerary.schedule
    if not schedule:
        return []

    event = itinerary.check_in_event
    hotel = _hotel_endpoint(itinerary)
    insert_after = min(event.insert_after_order, len(schedule)) if event else None
    slots: List[SegmentSlot] = []

    origin = itinerary.day_origin
    if event is not None and insert_after == 0:
        if origin is not None:
            slots.append(SegmentSlot(
                SLOT_TO_HOTEL, endpoint_ref(origin), hotel[0], event.transport_to_hotel,
                from_coord=origin.coordinate, to_coord=hotel[1],
            ))
        slots.append(SegmentSlot(
            SLOT_FROM_HOTEL, hotel[0], schedule[0].place_id, event.transport_from_hotel,
            from_coord=hotel[1],
        ))
    elif origin is not None:
        slots.append(SegmentSlot(
            SLOT_ORIGIN, endpoint_ref(origin), schedule[0].place_id, itinerary.transport_from_origin,
            from_coord=origin.coordinate,
        ))

    for position, item in enumerate(schedule):
        order = position + 1
        is_last = order == len(schedule)
        if event is not None and insert_after == order:
            slots.append(SegmentSlot(
                SLOT_TO_HOTEL, item.place_id, hotel[0], event.transport_to_hotel,
                position=position, to_coord=hotel[1],
            ))
            if not is_last:
                slots.append(SegmentSlot(
                    SLOT_FROM_HOTEL, hotel[0], schedule[position + 1].place_id, event.transport_from_hotel,
                    position=position, from_coord=hotel[1],
                ))
        elif not is_last:
            slots.append(SegmentSlot(
                SLOT_NEXT, item.place_id, schedule[position + 1].place_id, item.transport_to_next,
                position=position,
            ))

    destination = itinerary.day_destination
    ends_at_check_in = event is not None and insert_after == len(schedule)
    if destination is not None and not ends_at_check_in:
        slots.append(SegmentSlot(
            SLOT_DESTINATION, schedule[-1].place_id, endpoint_ref(destination),
            itinerary.transport_to_destination, to_coord=destination.coordinate,
        ))

    return slots


def extract_segment_keys(itineraries: List[DailyItinerary]) -> List[str]:
    """일정 전체의 구간 키 (일자 순, 일자 내 방문 순)"""
    return [slot.key for itinerary in itineraries for slot in day_segment_slots(itinerary)]


def collect_stored_segments(itineraries: List[DailyItinerary]) -> Dict[str, RouteSegment]:
    """저장된 일정에서 구간 키 -> 이동 정보 맵 생성"""
    stored: Dict[str, RouteSegment] = {}
    for itinerary in itineraries:
        for slot in day_segment_slots(itinerary):
            if slot.segment is not None:
                stored.setdefault(slot.key, slot.segment)
    return stored


def is_segment_complete(segment: Optional[RouteSegment], mode: TransportMode) -> bool:
    """
    저장된 이동 정보를 그대로 재사용할 수 있는지 검사

    - 소요 시간과 거리가 있어야 함
    - 대중교통: 50자 이상의 polyline과 도보가 아닌 세부 구간이 하나 이상 필요
    - 자동차: polyline 필요
    - 도보 구간은 추정치 그대로 사용
    """
    if segment is None or segment.duration is None or segment.distance is None:
        return False
    if segment.mode == TransportMode.WALKING:
        return True

    mode = TransportMode(mode)
    if mode == TransportMode.PUBLIC:
        if not segment.polyline or len(segment.polyline) < MIN_TRANSIT_POLYLINE_LENGTH:
            return False
        details = segment.transit_details
        if details is None:
            return False
        return any(sp.traffic_type != TrafficType.WALK for sp in details.sub_paths)
    if mode == TransportMode.CAR:
        return bool(segment.polyline)
    return True


def apply_segments(
    itinerary: DailyItinerary,
    slots: List[SegmentSlot],
    segments: Dict[str, RouteSegment],
) -> DailyItinerary:
    """구간 자리에 새 이동 정보를 채운 일정 반환 (시간은 그대로)"""
    schedule = list(itinerary.schedule)
    update = {}
    event_update = {}

    for slot in slots:
        segment = segments.get(slot.key, slot.segment)
        if slot.kind == SLOT_ORIGIN:
            update["transport_from_origin"] = segment
        elif slot.kind == SLOT_DESTINATION:
            update["transport_to_destination"] = segment
        elif slot.kind == SLOT_NEXT:
            schedule[slot.position] = schedule[slot.position].model_copy(
                update={"transport_to_next": segment}
            )
        elif slot.kind == SLOT_TO_HOTEL:
            event_update["transport_to_hotel"] = segment
        elif slot.kind == SLOT_FROM_HOTEL:
            event_update["transport_from_hotel"] = segment

    update["schedule"] = schedule
    if event_update and itinerary.check_in_event is not None:
        update["check_in_event"] = itinerary.check_in_event.model_copy(update=event_update)
    return itinerary.model_copy(update=update)


class RecalculationService:
    def __init__(self, provider: RoutingProvider = None):
        self.provider = provider or routing_provider
        self.concurrency = settings.recalc_concurrency
        self.walking_threshold = settings.walking_threshold_meters

    async def _supplement_train_polyline(
        self,
        segment: RouteSegment,
        origin: Coordinate,
        destination: Coordinate,
    ) -> Tuple[RouteSegment, int]:
        """열차 구간이 있는데 polyline이 짧으면 자동차 경로 polyline으로 보완"""
        details = segment.transit_details
        has_train = details is not None and any(
            sp.traffic_type == TrafficType.ODSAY_TRAIN for sp in details.sub_paths
        )
        current = segment.polyline or ""
        if not has_train or len(current) >= MIN_TRANSIT_POLYLINE_LENGTH:
            return segment, 0

        try:
            car_route = await self.provider.get_car_route(origin, destination, priority="TIME")
        except RoutingProviderError as e:
            logger.warning(f"Train polyline supplement failed: {e}")
            return segment, 1

        if car_route and car_route.polyline and len(car_route.polyline) > len(current):
            logger.info(
                f"Train polyline supplemented with car route: {len(current)} -> {len(car_route.polyline)} chars"
            )
            return segment.model_copy(update={"polyline": car_route.polyline}), 1
        return segment, 1

    async def fetch_segment(
        self,
        origin: Coordinate,
        destination: Coordinate,
        mode: TransportMode,
    ) -> Tuple[Optional[RouteSegment], int]:
        """
        구간 하나를 외부 API로 조회

        Returns:
            (이동 정보 또는 None, 외부 API 호출 수)

        Raises:
            RoutingProviderError: 조회 실패 (timeout 포함)
        """
        mode = TransportMode(mode)
        if mode == TransportMode.WALKING:
            return estimate_segment(origin, destination, TransportMode.WALKING), 0

        if mode == TransportMode.CAR:
            route = await self.provider.get_car_route(origin, destination, priority="TIME")
            return (car_route_to_segment(route) if route else None), 1

        if haversine(origin, destination) <= self.walking_threshold:
            return estimate_segment(origin, destination, TransportMode.WALKING), 0

        route = await self.provider.get_transit_route_with_details(origin, destination)
        if route is None:
            return None, 1
        segment, extra_calls = await self._supplement_train_polyline(
            transit_route_to_segment(route), origin, destination
        )
        return segment, 1 + extra_calls

    async def recalculate(
        self,
        trip: Trip,
        places: List[Place],
        new_itineraries: List[DailyItinerary],
        prior_itineraries: Optional[List[DailyItinerary]] = None,
        mode: Optional[TransportMode] = None,
        diagnostics: DiagnosticsSink = null_diagnostics,
    ) -> RecalculationResult:
        """
        편집된 일정의 이동 구간 재계산

        - 이전 일정에 같은 키의 구간이 있고 완전하면 그대로 재사용
        - 그 외 구간은 외부 API로 조회 (동시 호출 수 제한, 호출마다 timeout)
        - 조회 실패 시 이전 값을 유지, 이전 값도 없으면 직선 거리 추정치 사용
        - 이후 일자별 시간 전체 재계산

        Args:
            trip: 여행 정보
            places: 여행 장소 (좌표 조회용)
            new_itineraries: 편집된 일정
            prior_itineraries: 이전에 저장된 일정 (없으면 모든 구간을 조회)
            mode: 이동 수단 (없으면 여행의 대표 이동 수단)
            diagnostics: 진단 이벤트 sink

        Returns:
            RecalculationResult
        """
        mode = TransportMode(mode) if mode else primary_transport_mode(trip.transport_modes)
        collector = CollectingDiagnostics(forward=diagnostics)
        # 편집된 일정에 붙은 구간은 재사용 대상이 아님
        stored = collect_stored_segments(prior_itineraries or [])
        coordinates = {place.id: Coordinate(lat=place.lat, lng=place.lng) for place in places}

        day_slots = [day_segment_slots(itinerary) for itinerary in new_itineraries]
        resolved: Dict[str, RouteSegment] = {}
        to_fetch: Dict[str, SegmentSlot] = {}
        reused = 0

        for slots in day_slots:
            for slot in slots:
                previous = stored.get(slot.key)
                if is_segment_complete(previous, mode):
                    resolved[slot.key] = previous
                    reused += 1
                    collector.emit("recalc.reused", logging.DEBUG, key=slot.key)
                else:
                    to_fetch.setdefault(slot.key, slot)

        semaphore = asyncio.Semaphore(max(1, self.concurrency))
        counters = {"api_calls": 0, "fallbacks": 0}

        async def resolve(slot: SegmentSlot):
            origin = slot.from_coord or coordinates.get(slot.from_ref)
            destination = slot.to_coord or coordinates.get(slot.to_ref)
            previous = stored.get(slot.key)
            if origin is None or destination is None:
                logger.warning(f"Missing coordinates for segment {slot.key}")
                fallback = previous
                reason = "MISSING_COORDINATES"
            else:
                async with semaphore:
                    try:
                        segment, calls = await self.fetch_segment(origin, destination, mode)
                        counters["api_calls"] += calls
                    except RoutingProviderError as e:
                        logger.warning(f"Segment lookup failed for {slot.key}: {e}")
                        counters["api_calls"] += 1
                        segment, reason = None, e.code
                    else:
                        reason = "NO_ROUTE"
                if segment is not None:
                    resolved[slot.key] = segment
                    return
                fallback = previous or estimate_segment(origin, destination, mode)

            counters["fallbacks"] += 1
            collector.emit(
                "recalc.fallback",
                logging.WARNING,
                key=slot.key,
                reason=reason,
                has_prior=previous is not None,
            )
            if fallback is not None:
                resolved[slot.key] = fallback

        await asyncio.gather(*(resolve(slot) for slot in to_fetch.values()))

        itineraries = [
            recalculate_itinerary_times(
                apply_segments(itinerary, slots, resolved),
                trip.daily_start_time,
                trip.daily_end_time,
            )
            for itinerary, slots in zip(new_itineraries, day_slots)
        ]

        logger.info(
            f"Recalculated {len(itineraries)} days: reused={reused}, "
            f"api_calls={counters['api_calls']}, fallbacks={counters['fallbacks']}"
        )
        return RecalculationResult(
            itineraries=itineraries,
            api_call_count=counters["api_calls"],
            reused_count=reused,
            fallback_count=counters["fallbacks"],
            warnings=collector.warnings,
        )


async def save_itineraries_per_day(
    gateway: PersistenceGateway,
    trip_id: str,
    itineraries: List[DailyItinerary],
) -> SaveReport:
    """
    일자별 일정을 동시에 저장

    실패한 날이 있어도 성공한 날은 되돌리지 않고, 결과를 일자별로 보고한다.
    """
    results = await asyncio.gather(
        *(
            asyncio.to_thread(gateway.save_day_itinerary, trip_id, itinerary)
            for itinerary in itineraries
        ),
        return_exceptions=True,
    )

    report = SaveReport()
    for itinerary, result in zip(itineraries, results):
        if isinstance(result, BaseException):
            logger.error(f"Saving day {itinerary.day_number} of trip {trip_id} failed: {result}")
            report.failed_days.append(itinerary.day_number)
            report.errors[itinerary.day_number] = str(result)
        else:
            report.saved_days.append(itinerary.day_number)
    return report


async def enrich_transit_routes(
    itineraries: List[DailyItinerary],
    provider: RoutingProvider,
    context: PlanningContext,
    diagnostics: DiagnosticsSink = null_diagnostics,
) -> List[DailyItinerary]:
    """
    대중교통 일정의 추정 구간을 실제 대중교통 경로로 교체

    500m 이하 구간은 도보 추정치로, 그 외는 대중교통 상세 경로로 바꾼다.
    같은 키의 구간은 한 번만 조회하고, 실패하면 기존 추정치를 유지한다.
    """
    service = RecalculationService(provider)
    day_slots = [day_segment_slots(itinerary) for itinerary in itineraries]
    unique: Dict[str, SegmentSlot] = {}
    for slots in day_slots:
        for slot in slots:
            unique.setdefault(slot.key, slot)

    semaphore = asyncio.Semaphore(max(1, settings.recalc_concurrency))
    resolved: Dict[str, RouteSegment] = {}

    async def enrich(slot: SegmentSlot):
        origin_node = context.nodes.get(slot.from_ref)
        destination_node = context.nodes.get(slot.to_ref)
        origin = slot.from_coord or (origin_node.coordinate if origin_node else None)
        destination = slot.to_coord or (destination_node.coordinate if destination_node else None)
        if origin is None or destination is None:
            return
        async with semaphore:
            try:
                segment, _ = await service.fetch_segment(origin, destination, TransportMode.PUBLIC)
            except RoutingProviderError as e:
                diagnostics.emit(
                    "transit.enrich_failed",
                    logging.WARNING,
                    key=slot.key,
                    reason=e.code,
                )
                return
        if segment is not None:
            resolved[slot.key] = segment

    await asyncio.gather(*(enrich(slot) for slot in unique.values()))
    logger.info(f"Transit enrichment resolved {len(resolved)}/{len(unique)} segments")

    return [
        recalculate_itinerary_times(apply_segments(itinerary, slots, resolved))
        for itinerary, slots in zip(itineraries, day_slots)
    ]
