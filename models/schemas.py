from typing import List, Optional, Dict, Any
from enum import Enum, IntEnum
from pydantic import BaseModel, Field


# ============================================
# Enums
# ============================================

class TransportMode(str, Enum):
    """이동 수단"""
    WALKING = "walking"
    PUBLIC = "public"
    CAR = "car"


class NodeKind(str, Enum):
    """최적화 노드 종류 (장소 / 출발지 / 도착지 / 숙소)"""
    PLACE = "place"
    ORIGIN = "origin"
    DESTINATION = "destination"
    ACCOMMODATION = "accommodation"


class TrafficType(IntEnum):
    """대중교통 구간 유형 (ODsay trafficType)"""
    SUBWAY = 1
    BUS = 2
    WALK = 3
    TRAIN = 4
    EXPRESS_BUS = 5
    INTERCITY_BUS = 6
    AIRPLANE = 7
    ODSAY_TRAIN = 10  # ODsay 열차 (KTX, 새마을 등)
    ODSAY_EXPRESS_BUS = 11
    ODSAY_INTERCITY_BUS = 12
    FERRY = 14


class TripStatus(str, Enum):
    DRAFT = "draft"
    OPTIMIZING = "optimizing"
    OPTIMIZED = "optimized"
    COMPLETED = "completed"


class EndpointType(str, Enum):
    """일자별 출발/도착 지점 유형"""
    ORIGIN = "origin"
    ACCOMMODATION = "accommodation"
    LAST_PLACE = "lastPlace"
    DESTINATION = "destination"


class OptimizeErrorCode(str, Enum):
    INVALID_COORDINATES = "INVALID_COORDINATES"
    API_RATE_LIMIT = "API_RATE_LIMIT"
    ROUTE_NOT_FOUND = "ROUTE_NOT_FOUND"
    FIXED_SCHEDULE_CONFLICT = "FIXED_SCHEDULE_CONFLICT"
    TIMEOUT = "TIMEOUT"
    INSUFFICIENT_PLACES = "INSUFFICIENT_PLACES"
    EXCEEDS_DAILY_LIMIT = "EXCEEDS_DAILY_LIMIT"
    TRANSIT_DETAILS_ERROR = "TRANSIT_DETAILS_ERROR"
    UNKNOWN = "UNKNOWN"


class UnassignedReasonCode(str, Enum):
    """분배되지 못한 장소의 이유"""
    TIME_EXCEEDED = "TIME_EXCEEDED"  # 일일 활동 시간 초과
    DISTANCE_TOO_FAR = "DISTANCE_TOO_FAR"
    FIXED_CONFLICT = "FIXED_CONFLICT"  # 고정 일정 날짜가 여행 기간 밖
    NO_ROUTE = "NO_ROUTE"
    LOW_PRIORITY = "LOW_PRIORITY"
    UNKNOWN = "UNKNOWN"


class SegmentAnomalyType(str, Enum):
    """대중교통 구간 이상 유형"""
    LONG_DURATION = "LONG_DURATION"
    TOO_MANY_TRANSFERS = "TOO_MANY_TRANSFERS"
    LONG_WAIT_TIME = "LONG_WAIT_TIME"


# ============================================
# Geo / Route segments
# ============================================

class Coordinate(BaseModel):
    lat: float = Field(..., ge=-90, le=90, description="위도")
    lng: float = Field(..., ge=-180, le=180, description="경도")


class TransitLane(BaseModel):
    """대중교통 노선 정보"""
    name: str = Field(..., description="노선명 (예: 2호선, 146번)")
    bus_no: Optional[str] = None
    bus_type: Optional[str] = None
    subway_code: Optional[int] = None
    line_color: Optional[str] = None


class TransitSubPath(BaseModel):
    """대중교통 세부 구간"""
    traffic_type: int = Field(..., description="구간 유형 (TrafficType)")
    distance: float = Field(default=0, description="구간 거리 (미터)")
    section_time: int = Field(default=0, description="구간 소요 시간 (분)")
    station_count: Optional[int] = None
    start_name: Optional[str] = None
    start_coord: Optional[Coordinate] = None
    end_name: Optional[str] = None
    end_coord: Optional[Coordinate] = None
    lane: Optional[TransitLane] = None
    way: Optional[str] = None
    pass_stop_coords: Optional[List[Coordinate]] = None
    polyline: Optional[str] = None


class TransitDetails(BaseModel):
    """대중교통 상세 정보"""
    total_fare: int = Field(default=0, description="총 요금 (원)")
    transfer_count: int = Field(default=0, description="환승 횟수")
    walking_time: int = Field(default=0, description="총 도보 시간 (분)")
    walking_distance: float = Field(default=0, description="총 도보 거리 (미터)")
    sub_paths: List[TransitSubPath] = Field(default_factory=list)


class RouteSegment(BaseModel):
    """두 지점 사이의 이동 구간 (거리 행렬 항목 겸 일정의 이동 정보)"""
    mode: TransportMode = Field(..., description="이동 수단")
    distance: float = Field(..., ge=0, description="거리 (미터)")
    duration: int = Field(..., ge=0, description="소요 시간 (분)")
    description: Optional[str] = None
    polyline: Optional[str] = Field(default=None, description="인코딩된 폴리라인")
    fare: Optional[int] = Field(default=None, description="요금 (대중교통 요금 또는 통행료)")
    taxi_fare: Optional[int] = None
    transit_details: Optional[TransitDetails] = None


class CarRoute(BaseModel):
    """자동차 경로 조회 결과"""
    distance: float = Field(..., description="거리 (미터)")
    duration: int = Field(..., description="소요 시간 (분)")
    polyline: Optional[str] = None
    fare: int = Field(default=0, description="통행료 (원)")
    taxi_fare: Optional[int] = None
    description: Optional[str] = None


class TransitRoute(BaseModel):
    """대중교통 최적 경로 + 상세 정보"""
    distance: float = Field(..., description="거리 (미터)")
    duration: int = Field(..., description="소요 시간 (분)")
    fare: int = Field(default=0, description="요금 (원)")
    polyline: Optional[str] = None
    details: TransitDetails


# ============================================
# Trip input
# ============================================

class TripLocation(BaseModel):
    name: str
    address: str = ""
    lat: float
    lng: float

    def coordinate(self) -> Coordinate:
        return Coordinate(lat=self.lat, lng=self.lng)


class DailyAccommodation(BaseModel):
    """숙소 정보 (start_date 밤부터 end_date 아침까지 숙박)"""
    start_date: str = Field(..., description="체크인 날짜 (YYYY-MM-DD)")
    end_date: str = Field(..., description="체크아웃 날짜 (YYYY-MM-DD)")
    location: TripLocation
    check_in_time: Optional[str] = Field(default=None, description="체크인 시간 (HH:MM)")
    check_out_time: Optional[str] = Field(default=None, description="체크아웃 시간 (HH:MM)")


class Place(BaseModel):
    """여행에 추가된 장소"""
    id: str
    name: str
    address: str = ""
    lat: float
    lng: float
    category: Optional[str] = None
    estimated_duration: int = Field(default=60, ge=0, description="예상 체류 시간 (분)")
    priority: Optional[int] = Field(default=None, description="우선순위 (낮을수록 먼저)")


class FixedSchedule(BaseModel):
    """사용자가 시간을 고정한 일정"""
    id: str
    place_id: str
    date: str = Field(..., description="YYYY-MM-DD")
    start_time: str = Field(..., description="HH:MM")
    end_time: str = Field(..., description="HH:MM")
    note: Optional[str] = None


class Trip(BaseModel):
    id: str
    title: str = ""
    start_date: str = Field(..., description="YYYY-MM-DD")
    end_date: str = Field(..., description="YYYY-MM-DD")
    origin: TripLocation
    destination: TripLocation
    daily_start_time: str = Field(default="10:00", description="HH:MM")
    daily_end_time: str = Field(default="22:00", description="HH:MM")
    transport_modes: List[TransportMode] = Field(default_factory=lambda: [TransportMode.CAR])
    status: TripStatus = TripStatus.DRAFT
    accommodations: List[DailyAccommodation] = Field(default_factory=list)


# ============================================
# Optimization internals
# ============================================

class Node(BaseModel):
    """최적화 노드"""
    id: str
    kind: NodeKind = NodeKind.PLACE
    accommodation_index: Optional[int] = None
    name: str
    coordinate: Coordinate
    duration: int = Field(default=0, ge=0, description="체류 시간 (분)")
    priority: int = Field(default=0, description="동률 시 우선순위 (낮을수록 먼저)")
    is_fixed: bool = False
    fixed_date: Optional[str] = None
    fixed_start_time: Optional[str] = None
    fixed_end_time: Optional[str] = None

    @property
    def is_anchor(self) -> bool:
        return self.kind != NodeKind.PLACE


class OptimizeConfig(BaseModel):
    time_weight: float = 1.0
    distance_weight: float = 0.1
    max_iterations: int = 100
    no_improvement_limit: int = 20
    min_improvement_threshold: float = 0.001
    restarts: int = Field(default=0, description="0보다 크면 double-bridge 섭동 후 2-opt를 이만큼 반복")
    seed: int = 0


class RouteResult(BaseModel):
    """Nearest Neighbor 결과 (앵커 포함 경로)"""
    route: List[str]
    total_distance: float
    total_duration: float
    total_cost: float


class TwoOptResult(BaseModel):
    route: List[str]
    initial_cost: float
    final_cost: float
    improvement_percentage: float
    iterations: int


class RouteSearchResult(BaseModel):
    """경로 탐색 결과 (앵커 제외 방문 순서)"""
    route: List[str]
    initial_cost: float
    final_cost: float
    improvement_percentage: float
    iterations: int


class DayTimeConfig(BaseModel):
    date: str
    start_time: str
    end_time: str


class DayEndpointIds(BaseModel):
    """분배 단계에서 사용하는 일자별 시작/종료 노드 ID"""
    start_id: Optional[str] = None
    end_id: Optional[str] = None
    start_after_previous_day: bool = Field(
        default=False, description="전날 마지막 장소에서 출발 (전날 장소가 없으면 start_id)"
    )
    check_in_time: Optional[str] = Field(
        default=None, description="체크인 날이면 end_id 숙소의 체크인 시각 (HH:MM)"
    )


class ScheduleConflict(BaseModel):
    type: str = Field(..., description="overlap, outside_hours, exceeds_daily_limit, invalid_range")
    schedule_ids: List[str]
    date: str
    message: str


class ConstraintValidationResult(BaseModel):
    is_valid: bool
    conflicts: List[ScheduleConflict] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class UnassignedPlaceInfo(BaseModel):
    place_id: str
    place_name: str
    reason_code: UnassignedReasonCode
    reason_message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class DistributorOptions(BaseModel):
    start_date: str
    end_date: str
    daily_start_time: str = "10:00"
    daily_end_time: str = "22:00"
    day_time_configs: Optional[List[DayTimeConfig]] = Field(
        default=None, description="일자별 활동 시간 (없으면 daily_start/end_time 사용)"
    )
    max_daily_minutes: Optional[int] = None
    fixed_schedules: List[FixedSchedule] = Field(default_factory=list)
    place_durations: Dict[str, int] = Field(default_factory=dict)
    day_endpoints: List[DayEndpointIds] = Field(default_factory=list)
    extra_reserved_minutes: Dict[str, int] = Field(
        default_factory=dict, description="날짜별 추가 예약 시간 (예: 숙소 체크인)"
    )


class DistributionResult(BaseModel):
    days: List[List[str]]
    daily_durations: List[int]
    unassigned_places: List[str] = Field(default_factory=list)
    unassigned_place_details: List[UnassignedPlaceInfo] = Field(default_factory=list)


class PlaceCluster(BaseModel):
    """대중교통 일정의 하루 단위 장소 묶음"""
    cluster_id: str
    place_ids: List[str]
    centroid: Coordinate


class SegmentAnomaly(BaseModel):
    """경로 조회 후 발견된 이상 구간"""
    type: SegmentAnomalyType
    day_index: int = Field(..., description="0부터 시작하는 일자 인덱스")
    from_id: str
    to_id: str
    duration: int = Field(default=0, description="구간 소요 시간 (분)")
    suggestion: str = ""


class TransitPlan(BaseModel):
    """대중교통 일자별 계획"""
    clusters: List[PlaceCluster] = Field(default_factory=list, description="진행 순서대로 정렬된 묶음")
    days: List[List[str]] = Field(default_factory=list, description="일자별 방문 순서")
    excluded: List[UnassignedPlaceInfo] = Field(default_factory=list, description="과부하로 제외된 장소")
    anomalies: List[SegmentAnomaly] = Field(default_factory=list)
    fixed_swaps: int = Field(default=0, description="이상 구간 때문에 순서를 바꾼 횟수")


# ============================================
# Itinerary output
# ============================================

class ScheduleItem(BaseModel):
    order: int = Field(..., ge=1, description="일별 방문 순서")
    place_id: str
    place_name: str
    arrival_time: str = Field(..., description="도착 시간 (HH:MM)")
    departure_time: str = Field(..., description="출발 시간 (HH:MM)")
    duration: int = Field(..., ge=0, description="체류 시간 (분)")
    is_fixed: bool = False
    transport_to_next: Optional[RouteSegment] = None
    exceeds_day_end: bool = Field(default=False, description="고정 일정이 일과 종료 시간을 넘는 경우")


class DayEndpoint(BaseModel):
    type: EndpointType
    name: str
    address: str = ""
    coordinate: Coordinate
    node_id: Optional[str] = Field(default=None, description="노드 ID (숙소 식별용)")


class CheckInEvent(BaseModel):
    accommodation_name: str
    accommodation_address: str = ""
    coordinate: Coordinate
    check_in_time: str
    duration_min: int
    arrival_time: str
    start_time: str
    end_time: str
    insert_after_order: int = Field(..., description="이 순서 뒤에 체크인 (0이면 일정 시작 전)")
    transport_to_hotel: Optional[RouteSegment] = None
    transport_from_hotel: Optional[RouteSegment] = None


class DailyItinerary(BaseModel):
    day_number: int = Field(..., ge=1)
    date: str
    schedule: List[ScheduleItem] = Field(default_factory=list)
    total_distance: float = 0
    total_duration: int = 0
    total_stay_duration: int = 0
    place_count: int = 0
    start_time: str
    end_time: str
    transport_from_origin: Optional[RouteSegment] = None
    transport_to_destination: Optional[RouteSegment] = None
    daily_start_time: Optional[str] = None
    daily_end_time: Optional[str] = None
    day_origin: Optional[DayEndpoint] = None
    day_destination: Optional[DayEndpoint] = None
    check_in_event: Optional[CheckInEvent] = None


class OptimizeError(BaseModel):
    code: OptimizeErrorCode
    message: str
    place_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class OptimizeStatistics(BaseModel):
    total_places: int = 0
    total_days: int = 0
    total_distance: float = Field(default=0, description="총 이동 거리 (km)")
    total_duration: int = Field(default=0, description="총 이동 시간 (분)")
    total_stay_duration: int = 0
    average_daily_distance: float = 0
    average_daily_places: float = 0
    optimization_time_ms: int = 0
    improvement_percentage: float = 0


class OptimizeResult(BaseModel):
    success: bool
    trip_id: str
    itinerary: List[DailyItinerary] = Field(default_factory=list)
    statistics: Optional[OptimizeStatistics] = None
    errors: List[OptimizeError] = Field(default_factory=list)
    warnings: List[Dict[str, Any]] = Field(default_factory=list)
    completed_at: Optional[str] = None


# ============================================
# API request / response
# ============================================

class OptimizeRequest(BaseModel):
    """DB 없이 전체 입력으로 최적화하는 요청"""
    trip: Trip
    places: List[Place]
    fixed_schedules: List[FixedSchedule] = Field(default_factory=list)
    use_external_provider: bool = Field(default=False, description="외부 경로 API 사용 여부")
    options: Optional[OptimizeConfig] = None


class TripOptimizeRequest(BaseModel):
    use_external_provider: bool = True
    options: Optional[OptimizeConfig] = None


class RecalculateRequest(BaseModel):
    itineraries: List[DailyItinerary] = Field(..., description="편집된 일정")
    save: bool = Field(default=True, description="재계산 후 저장 여부")


class SaveReport(BaseModel):
    saved_days: List[int] = Field(default_factory=list)
    failed_days: List[int] = Field(default_factory=list)
    errors: Dict[int, str] = Field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.failed_days


class RecalculationResult(BaseModel):
    itineraries: List[DailyItinerary]
    api_call_count: int = 0
    reused_count: int = 0
    fallback_count: int = 0
    warnings: List[Dict[str, Any]] = Field(default_factory=list)
    save_report: Optional[SaveReport] = None


class ItineraryIssue(BaseModel):
    """일정 검증 결과 항목"""
    code: str
    day_number: int
    message: str
    place_id: Optional[str] = None


class ValidateItineraryRequest(BaseModel):
    itineraries: List[DailyItinerary]
    daily_start_time: str = "10:00"
    daily_end_time: str = "22:00"


class ValidateItineraryResponse(BaseModel):
    is_valid: bool
    issues: List[ItineraryIssue] = Field(default_factory=list)


class StoredItineraryResponse(BaseModel):
    trip_id: str
    itinerary: List[DailyItinerary] = Field(default_factory=list)
