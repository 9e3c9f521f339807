"""
Optimize run orchestration.

거리 행렬 -> 경로 탐색 -> 일자별 분배 -> 일정 생성 순으로 한 번의 최적화를 수행하고,
DB에 저장된 여행에 대한 최적화/재계산 흐름을 제공한다.
"""
import logging
import time
from datetime import datetime
from typing import List, Optional
from config import settings
from models.schemas import (
    DailyItinerary,
    FixedSchedule,
    OptimizeConfig,
    OptimizeError,
    OptimizeErrorCode,
    OptimizeResult,
    OptimizeStatistics,
    Place,
    RecalculationResult,
    TransportMode,
    Trip,
    TripStatus,
)
from services.constraints import validate_fixed_schedules
from services.daily_distributor import (
    default_distributor_options,
    distribute_to_daily,
    fit_days_to_windows,
)
from services.database import PersistenceGateway, db_gateway
from services.itinerary_assembler import (
    assemble,
    check_in_reserved_minutes,
    resolve_distribution_endpoints,
)
from services.planning_context import PlanningContext, build_day_configs
from services.recalculation import (
    RecalculationService,
    enrich_transit_routes,
    save_itineraries_per_day,
)
from services.route_search import search_route
from services.routes_matrix import RoutesMatrixService, routes_matrix_service
from services.routing_provider import RoutingProvider, routing_provider
from services.transit_planner import plan_transit_days
from utils.diagnostics import CollectingDiagnostics, DiagnosticsSink, null_diagnostics
from utils.geo import is_valid_coordinate
from utils.time_utils import is_valid_time, parse_date, time_to_minutes

logger = logging.getLogger(__name__)

MIN_PLACES = 2


class OptimizeInputError(Exception):
    """최적화 입력 검증 실패"""

    def __init__(self, code: OptimizeErrorCode, message: str, place_id: str = None, details: dict = None):
        super().__init__(message)
        self.code = code
        self.place_id = place_id
        self.details = details or {}

    def to_error(self) -> OptimizeError:
        return OptimizeError(
            code=self.code,
            message=str(self),
            place_id=self.place_id,
            details=self.details,
        )


class TripNotFoundError(Exception):
    """저장소에 여행이 없음"""


def default_optimize_config() -> OptimizeConfig:
    return OptimizeConfig(
        time_weight=settings.time_weight,
        distance_weight=settings.distance_weight,
        max_iterations=settings.max_iterations,
        no_improvement_limit=settings.no_improvement_limit,
        min_improvement_threshold=settings.min_improvement_threshold,
        restarts=settings.two_opt_restarts,
    )


def validate_optimize_input(
    trip: Trip,
    places: List[Place],
    fixed_schedules: List[FixedSchedule],
) -> List[str]:
    """
    최적화 입력 검증

    Returns:
        경고 메시지 리스트

    Raises:
        OptimizeInputError: 계산을 시작할 수 없는 입력
    """
    if len(places) < MIN_PLACES:
        raise OptimizeInputError(
            OptimizeErrorCode.INSUFFICIENT_PLACES,
            f"최소 {MIN_PLACES}개 이상의 장소가 필요합니다.",
            details={"place_count": len(places)},
        )

    for place in places:
        if not is_valid_coordinate(place.lat, place.lng):
            raise OptimizeInputError(
                OptimizeErrorCode.INVALID_COORDINATES,
                f'"{place.name}"의 좌표가 올바르지 않습니다.',
                place_id=place.id,
                details={"lat": place.lat, "lng": place.lng},
            )

    locations = [("origin", trip.origin), ("destination", trip.destination)]
    locations += [(f"accommodation_{i}", a.location) for i, a in enumerate(trip.accommodations)]
    for label, location in locations:
        if not is_valid_coordinate(location.lat, location.lng):
            raise OptimizeInputError(
                OptimizeErrorCode.INVALID_COORDINATES,
                f'"{location.name}"({label})의 좌표가 올바르지 않습니다.',
                details={"location": label, "lat": location.lat, "lng": location.lng},
            )

    if not is_valid_time(trip.daily_start_time) or not is_valid_time(trip.daily_end_time):
        raise OptimizeInputError(
            OptimizeErrorCode.UNKNOWN,
            "일일 시작/종료 시간 형식이 올바르지 않습니다.",
            details={"daily_start_time": trip.daily_start_time, "daily_end_time": trip.daily_end_time},
        )
    if time_to_minutes(trip.daily_start_time) >= time_to_minutes(trip.daily_end_time):
        raise OptimizeInputError(
            OptimizeErrorCode.UNKNOWN,
            "일일 시작 시간은 종료 시간보다 빨라야 합니다.",
            details={"daily_start_time": trip.daily_start_time, "daily_end_time": trip.daily_end_time},
        )
    try:
        invalid_dates = parse_date(trip.start_date) > parse_date(trip.end_date)
    except ValueError as e:
        raise OptimizeInputError(
            OptimizeErrorCode.UNKNOWN,
            "여행 날짜 형식이 올바르지 않습니다.",
            details={"start_date": trip.start_date, "end_date": trip.end_date},
        ) from e
    if invalid_dates:
        raise OptimizeInputError(
            OptimizeErrorCode.UNKNOWN,
            "여행 시작일은 종료일보다 늦을 수 없습니다.",
            details={"start_date": trip.start_date, "end_date": trip.end_date},
        )

    validation = validate_fixed_schedules(
        fixed_schedules,
        trip.start_date,
        trip.end_date,
        trip.daily_start_time,
        trip.daily_end_time,
        day_configs=build_day_configs(trip),
    )
    if not validation.is_valid:
        first = validation.conflicts[0]
        raise OptimizeInputError(
            OptimizeErrorCode.FIXED_SCHEDULE_CONFLICT,
            first.message,
            details={"conflicts": [c.model_dump() for c in validation.conflicts]},
        )

    warnings = list(validation.warnings)
    place_ids = {place.id for place in places}
    for schedule in fixed_schedules:
        if schedule.place_id not in place_ids:
            warnings.append(f'고정 일정 "{schedule.id}"의 장소를 찾을 수 없습니다.')
    return warnings


def build_statistics(
    itineraries: List[DailyItinerary],
    total_places: int,
    optimization_time_ms: int,
    improvement_percentage: float,
) -> OptimizeStatistics:
    total_days = len(itineraries)
    distance_km = sum(i.total_distance for i in itineraries) / 1000
    return OptimizeStatistics(
        total_places=total_places,
        total_days=total_days,
        total_distance=round(distance_km, 1),
        total_duration=sum(i.total_duration for i in itineraries),
        total_stay_duration=sum(i.total_stay_duration for i in itineraries),
        average_daily_distance=round(distance_km / total_days, 1) if total_days else 0,
        average_daily_places=(
            round(sum(i.place_count for i in itineraries) / total_days, 1) if total_days else 0
        ),
        optimization_time_ms=optimization_time_ms,
        improvement_percentage=improvement_percentage,
    )


class OptimizerService:
    def __init__(
        self,
        matrix_service: RoutesMatrixService = None,
        provider: RoutingProvider = None,
        gateway: PersistenceGateway = None,
    ):
        self.matrix_service = matrix_service or routes_matrix_service
        self.provider = provider or routing_provider
        self.gateway = gateway or db_gateway
        self.recalculation_service = RecalculationService(self.provider)

    async def optimize(
        self,
        trip: Trip,
        places: List[Place],
        fixed_schedules: Optional[List[FixedSchedule]] = None,
        use_external_provider: bool = False,
        config: Optional[OptimizeConfig] = None,
        diagnostics: DiagnosticsSink = null_diagnostics,
    ) -> OptimizeResult:
        """
        여행 일정 최적화

        1. 입력 검증 (실패 시 계산 없이 success=False)
        2. 노드/일자별 시간/숙소 테이블 생성
        3. 이동 비용 행렬 계산
        4. 일자별 분배 (자동차/도보: Nearest Neighbor + 2-opt 경로를 분배,
           대중교통: 묶음 단위 계획을 일일 시간에 맞춤)
        5. 일정 생성 (대중교통이면 실제 경로로 보완)

        Args:
            trip: 여행 정보
            places: 방문할 장소
            fixed_schedules: 고정 일정
            use_external_provider: 외부 경로 API 사용 여부
            config: 경로 탐색 설정 (없으면 settings 기본값)
            diagnostics: 진단 이벤트 sink

        Returns:
            OptimizeResult
        """
        started = time.perf_counter()
        fixed_schedules = fixed_schedules or []
        config = config or default_optimize_config()
        collector = CollectingDiagnostics(forward=diagnostics)

        try:
            input_warnings = validate_optimize_input(trip, places, fixed_schedules)
        except OptimizeInputError as e:
            logger.warning(f"Optimize input rejected for trip {trip.id}: {e.code.value} {e}")
            return OptimizeResult(success=False, trip_id=trip.id, errors=[e.to_error()])

        errors = [OptimizeError(code=OptimizeErrorCode.UNKNOWN, message=w) for w in input_warnings]

        context = PlanningContext.build(trip, places, fixed_schedules)
        mode = context.mode
        logger.info(
            f"Optimizing trip {trip.id}: {len(places)} places, {context.total_days} days, mode={mode.value}"
        )

        # Step 1: 이동 비용 행렬
        matrix = await self.matrix_service.build(
            context.node_list,
            mode,
            use_external_provider=use_external_provider,
            diagnostics=collector,
        )

        # Step 2: 일자별 분배 (대중교통은 묶음 단위 계획, 그 외는 경로 탐색 후 분배)
        options = default_distributor_options(
            start_date=trip.start_date,
            end_date=trip.end_date,
            daily_start_time=trip.daily_start_time,
            daily_end_time=trip.daily_end_time,
            day_time_configs=context.day_configs,
            fixed_schedules=fixed_schedules,
            place_durations={node_id: node.duration for node_id, node in context.place_nodes.items()},
            day_endpoints=resolve_distribution_endpoints(context),
            extra_reserved_minutes=check_in_reserved_minutes(context),
        )
        if mode == TransportMode.PUBLIC:
            plan = plan_transit_days(context, matrix, collector)
            distribution = fit_days_to_windows(plan.days, context.nodes, matrix, options, collector)
            distribution.unassigned_place_details = plan.excluded + distribution.unassigned_place_details
            distribution.unassigned_places = [info.place_id for info in distribution.unassigned_place_details]
            improvement = 0.0
        else:
            # Nearest Neighbor + 2-opt
            search = search_route(
                context.node_list, matrix, context.origin_id, context.destination_id, config
            )
            distribution = distribute_to_daily(search.route, context.nodes, matrix, options, collector)
            improvement = search.improvement_percentage

        if distribution.unassigned_places:
            errors.append(
                OptimizeError(
                    code=OptimizeErrorCode.EXCEEDS_DAILY_LIMIT,
                    message=f"{len(distribution.unassigned_places)}개 장소가 일정에 포함되지 못했습니다.",
                    details={
                        "unassigned_places": distribution.unassigned_places,
                        "unassigned_place_details": [
                            info.model_dump(mode="json") for info in distribution.unassigned_place_details
                        ],
                    },
                )
            )

        # Step 3: 일정 생성
        itineraries = assemble(distribution.days, matrix, context, collector)
        if mode == TransportMode.PUBLIC and use_external_provider:
            itineraries = await enrich_transit_routes(itineraries, self.provider, context, collector)

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        statistics = build_statistics(
            itineraries, len(places), elapsed_ms, improvement
        )
        logger.info(
            f"Trip {trip.id} optimized in {elapsed_ms}ms: "
            f"{statistics.total_distance}km, improvement {statistics.improvement_percentage}%"
        )

        return OptimizeResult(
            success=True,
            trip_id=trip.id,
            itinerary=itineraries,
            statistics=statistics,
            errors=errors,
            warnings=collector.warnings,
            completed_at=datetime.now().isoformat(),
        )

    async def optimize_trip(
        self,
        trip_id: str,
        use_external_provider: bool = True,
        config: Optional[OptimizeConfig] = None,
        diagnostics: DiagnosticsSink = null_diagnostics,
    ) -> OptimizeResult:
        """
        저장된 여행 최적화 후 일정 교체

        성공하면 일정을 교체하고 상태를 optimized로 바꾼다.
        실패하면 저장된 일정은 그대로 두고 상태를 이전 값으로 되돌린다.

        Raises:
            TripNotFoundError: 여행이 없음
            ItineraryPersistenceError: 일정 저장 실패
        """
        trip = self.gateway.load_trip(trip_id)
        if trip is None:
            raise TripNotFoundError(f"Trip not found: {trip_id}")

        previous_status = trip.status
        self.gateway.update_trip_status(trip_id, TripStatus.OPTIMIZING)
        try:
            places = self.gateway.load_places(trip_id)
            fixed_schedules = self.gateway.load_fixed_schedules(trip_id)
            result = await self.optimize(
                trip,
                places,
                fixed_schedules,
                use_external_provider=use_external_provider,
                config=config,
                diagnostics=diagnostics,
            )
            if not result.success:
                self.gateway.update_trip_status(trip_id, previous_status)
                return result

            self.gateway.replace_itinerary(trip_id, result.itinerary, diagnostics)
            self.gateway.update_trip_status(trip_id, TripStatus.OPTIMIZED)
            return result
        except Exception:
            logger.error(f"Optimize failed for trip {trip_id}, restoring status {previous_status}")
            self.gateway.update_trip_status(trip_id, previous_status)
            raise

    async def recalculate_trip(
        self,
        trip_id: str,
        itineraries: List[DailyItinerary],
        save: bool = True,
        diagnostics: DiagnosticsSink = null_diagnostics,
    ) -> RecalculationResult:
        """
        편집된 일정의 이동 구간/시간 재계산 (저장된 일정의 구간 재사용)

        Raises:
            TripNotFoundError: 여행이 없음
        """
        trip = self.gateway.load_trip(trip_id)
        if trip is None:
            raise TripNotFoundError(f"Trip not found: {trip_id}")

        places = self.gateway.load_places(trip_id)
        prior = self.gateway.load_stored_itinerary(trip_id)
        result = await self.recalculation_service.recalculate(
            trip,
            places,
            itineraries,
            prior_itineraries=prior or None,
            diagnostics=diagnostics,
        )

        if save:
            result.save_report = await save_itineraries_per_day(self.gateway, trip_id, result.itineraries)
            if not result.save_report.success:
                logger.warning(
                    f"Trip {trip_id}: failed to save days {result.save_report.failed_days}"
                )
        return result


# 싱글톤 인스턴스
optimizer_service = OptimizerService()
