"""
Geo utilities: Haversine distance and speed-based travel estimates.
"""
import math
from typing import List, Optional, Sequence
from models.schemas import Coordinate, TransportMode, RouteSegment

EARTH_RADIUS_METERS = 6_371_000

# 이동 수단별 평균 속도 (미터/분)
AVERAGE_SPEED_M_PER_MIN = {
    TransportMode.WALKING: 66.7,  # 약 4km/h
    TransportMode.PUBLIC: 333.0,  # 약 20km/h
    TransportMode.CAR: 500.0,  # 약 30km/h
}


def haversine(a: Coordinate, b: Coordinate) -> float:
    """
    두 좌표 사이의 대권 거리 계산

    Args:
        a: 출발 좌표
        b: 도착 좌표

    Returns:
        거리 (미터)
    """
    lat1 = math.radians(a.lat)
    lat2 = math.radians(b.lat)
    d_lat = math.radians(b.lat - a.lat)
    d_lng = math.radians(b.lng - a.lng)

    h = (
        math.sin(d_lat / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_METERS * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def estimate_duration(distance_meters: float, mode: TransportMode) -> int:
    """거리와 이동 수단으로 소요 시간(분) 추정, 올림 처리"""
    speed = AVERAGE_SPEED_M_PER_MIN[TransportMode(mode)]
    return int(math.ceil(distance_meters / speed))


def estimate_segment(
    origin: Coordinate,
    destination: Coordinate,
    mode: TransportMode,
    min_duration: int = 0,
    description: Optional[str] = None,
) -> RouteSegment:
    """
    직선 거리 기반 이동 구간 추정 (API 미사용 또는 실패 시 fallback)

    Args:
        origin: 출발 좌표
        destination: 도착 좌표
        mode: 이동 수단
        min_duration: 최소 소요 시간 (분)
        description: 구간 설명

    Returns:
        RouteSegment (polyline 없음)
    """
    distance = round(haversine(origin, destination))
    duration = max(min_duration, estimate_duration(distance, mode))
    return RouteSegment(
        mode=mode,
        distance=distance,
        duration=duration,
        description=description,
    )


def coordinate_key(coordinate: Coordinate) -> str:
    """소수점 6자리(약 10cm)로 반올림한 좌표 키"""
    return f"{coordinate.lat:.6f},{coordinate.lng:.6f}"


def is_valid_coordinate(lat: float, lng: float) -> bool:
    """위경도 범위 검사 (0,0 좌표는 누락 데이터로 간주)"""
    if lat is None or lng is None:
        return False
    if math.isnan(lat) or math.isnan(lng):
        return False
    if lat == 0 and lng == 0:
        return False
    return -90 <= lat <= 90 and -180 <= lng <= 180


def vertexes_to_coordinates(vertexes: Sequence[float]) -> List[Coordinate]:
    """Kakao 응답의 [x1, y1, x2, y2, ...] 배열을 좌표 리스트로 변환"""
    return [Coordinate(lat=y, lng=x) for x, y in zip(vertexes[0::2], vertexes[1::2])]
