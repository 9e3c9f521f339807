import asyncio
import logging
from typing import List, Optional, Dict, Any
import httpx
import polyline
from config import settings
from models.schemas import (
    CarRoute,
    Coordinate,
    RouteSegment,
    TrafficType,
    TransitDetails,
    TransitLane,
    TransitRoute,
    TransitSubPath,
    TransportMode,
)
from utils.geo import vertexes_to_coordinates
from utils.retry_helpers import (
    InvalidProviderResponseError,
    RoutingProviderError,
    routing_api_retry,
)

logger = logging.getLogger(__name__)

# ODsay 경로 없음 에러 코드
ODSAY_NO_ROUTE_CODES = {-98, -99}

ODSAY_SUBWAY_LINE_MAP: Dict[int, str] = {
    1: "1호선", 2: "2호선", 3: "3호선", 4: "4호선", 5: "5호선",
    6: "6호선", 7: "7호선", 8: "8호선", 9: "9호선",
    100: "분당선", 101: "공항철도", 104: "경의중앙선", 108: "경춘선",
    109: "신분당선", 112: "경강선", 113: "우이신설", 116: "수인분당선",
    117: "GTX-A", 21: "인천1호선", 22: "인천2호선", 71: "부산1호선",
    72: "부산2호선", 73: "부산3호선", 74: "부산4호선",
}

SUBWAY_LINE_COLORS: Dict[int, str] = {
    1: "#0052A4", 2: "#00A84D", 3: "#EF7C1C", 4: "#00A5DE", 5: "#996CAC",
    6: "#CD7C2F", 7: "#747F00", 8: "#E6186C", 9: "#BDB092",
    100: "#FABE00", 101: "#0090D2", 104: "#77C4A3", 108: "#0C8E72",
    109: "#D4003B", 112: "#0054A6", 113: "#B7C452", 116: "#FABE00",
    117: "#9A6292",
}

ODSAY_BUS_TYPE_MAP: Dict[int, str] = {
    1: "일반", 2: "좌석", 3: "마을", 4: "직행좌석", 5: "공항", 6: "간선",
    7: "외곽", 10: "마을", 11: "간선", 12: "지선", 13: "순환", 14: "광역",
    15: "급행", 16: "관광", 20: "농어촌", 21: "제주", 22: "시외", 26: "급행간선",
}

BUS_TYPE_COLORS: Dict[int, str] = {
    1: "#52B043", 2: "#00A0E9", 3: "#52B043", 4: "#E60012", 5: "#0068B7",
    6: "#0068B7", 7: "#52B043", 11: "#0068B7", 12: "#52B043", 13: "#F2B70A",
    14: "#E60012", 15: "#E60012",
}

DEFAULT_BUS_COLOR = "#52B043"
TRAIN_COLOR = "#0052A4"
FERRY_COLOR = "#00A0E9"


def _raise_for_status(response: httpx.Response, provider: str) -> None:
    if response.status_code != 200:
        logger.error(
            f"{provider} API failed with status {response.status_code}: {response.text}"
        )
        response.raise_for_status()


def _parse_json(response: httpx.Response, provider: str) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError as e:
        raise InvalidProviderResponseError(f"{provider} returned non-JSON body") from e
    if not isinstance(data, dict):
        raise InvalidProviderResponseError(f"{provider} returned unexpected payload type")
    return data


def encode_coordinates(coordinates: List[Coordinate]) -> str:
    """좌표 리스트를 Google encoded polyline (정밀도 1e5) 문자열로 변환"""
    return polyline.encode([(c.lat, c.lng) for c in coordinates])


# ============================================
# Kakao Mobility (자동차 경로)
# ============================================

def summarize_road_names(road_names: List[str]) -> Optional[str]:
    """
    도로명 리스트를 구간 설명으로 요약

    5개 이하이면 모두, 초과하면 처음 3개 + 중간 1개 + 마지막 1개를 표시한다.
    """
    unique_names = list(dict.fromkeys(n for n in road_names if n and n.strip()))
    if not unique_names:
        return None
    if len(unique_names) <= 5:
        return " → ".join(unique_names)
    middle = unique_names[len(unique_names) // 2]
    return f"{' → '.join(unique_names[:3])} → ... → {middle} → ... → {unique_names[-1]}"


class KakaoMobilityClient:
    def __init__(self):
        self.api_url = f"{settings.kakao_mobility_base_url}/directions"
        self.api_key = settings.kakao_mobility_key
        self.timeout = settings.routing_request_timeout

    @routing_api_retry
    async def _request(self, params: Dict[str, str]) -> Dict[str, Any]:
        headers = {
            "Authorization": f"KakaoAK {self.api_key}",
            "Content-Type": "application/json",
        }
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.get(self.api_url, params=params, headers=headers)
            _raise_for_status(response, "Kakao Mobility")
            return _parse_json(response, "Kakao Mobility")

    async def get_car_route(
        self,
        origin: Coordinate,
        destination: Coordinate,
        priority: str = "RECOMMEND",
    ) -> Optional[CarRoute]:
        """
        Kakao Mobility 길찾기 API로 자동차 경로 조회

        Args:
            origin: 출발 좌표
            destination: 도착 좌표
            priority: 경로 우선순위 (RECOMMEND, TIME, DISTANCE)

        Returns:
            CarRoute, 경로가 없으면 None

        Raises:
            RoutingProviderError: API 키 누락, HTTP 오류, 응답 형식 오류
        """
        if not self.api_key:
            raise RoutingProviderError("KAKAO_MOBILITY_KEY가 설정되지 않았습니다", code="CONFIG_ERROR")

        params = {
            "origin": f"{origin.lng},{origin.lat}",
            "destination": f"{destination.lng},{destination.lat}",
            "priority": priority,
            "alternatives": "false",
        }

        try:
            data = await self._request(params)
        except httpx.HTTPStatusError as e:
            raise RoutingProviderError(
                f"Kakao Mobility request failed: {e.response.status_code}",
                code="HTTP_ERROR",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise RoutingProviderError(f"Kakao Mobility network error: {e}", code="NETWORK_ERROR") from e

        routes = data.get("routes") or []
        if not routes:
            logger.info("Kakao Mobility returned no routes")
            return None

        route = routes[0]
        # result_code 1: 주변 도로 유고 정보, 2: 출발지와 도착지가 5m 이내
        if route.get("result_code", 0) != 0:
            logger.info(
                f"Kakao Mobility route failed with code {route.get('result_code')}: "
                f"{route.get('result_msg')}"
            )
            return None

        try:
            return self._parse_route(route)
        except (KeyError, TypeError) as e:
            raise InvalidProviderResponseError(f"Malformed Kakao Mobility route: {e}") from e

    def _parse_route(self, route: Dict[str, Any]) -> CarRoute:
        summary = route["summary"]
        fare = summary.get("fare") or {}
        distance = summary["distance"]

        vertexes: List[float] = []
        road_names: List[str] = []
        for section in route.get("sections", []):
            for road in section.get("roads", []):
                vertexes.extend(road.get("vertexes", []))
                road_names.append(road.get("name", ""))

        toll = fare.get("toll") or 0
        # 50km 이하 + 통행료 1000원 이하는 도시 내 경로로 보고 통행료 제외
        if distance <= 50000 and toll <= 1000:
            toll = 0

        coordinates = vertexes_to_coordinates(vertexes)
        return CarRoute(
            distance=distance,
            duration=max(1, round(summary["duration"] / 60)),
            polyline=encode_coordinates(coordinates) if len(coordinates) >= 2 else None,
            fare=toll,
            taxi_fare=fare.get("taxi"),
            description=summarize_road_names(road_names),
        )


# ============================================
# ODsay (대중교통 경로)
# ============================================

def _coordinate_or_none(x: Any, y: Any) -> Optional[Coordinate]:
    if not x or not y:
        return None
    return Coordinate(lat=float(y), lng=float(x))


def convert_sub_path(sub_path: Dict[str, Any]) -> TransitSubPath:
    """ODsay subPath를 TransitSubPath로 변환"""
    traffic_type = sub_path["trafficType"]
    lanes = sub_path.get("lane") or []
    lane = lanes[0] if lanes else None
    transit_lane = None

    if lane:
        if traffic_type == TrafficType.SUBWAY:
            code = lane.get("subwayCode")
            transit_lane = TransitLane(
                name=ODSAY_SUBWAY_LINE_MAP.get(code, lane.get("name", "")),
                subway_code=code,
                line_color=SUBWAY_LINE_COLORS.get(code),
            )
        elif traffic_type == TrafficType.BUS:
            bus_type = lane.get("type")
            transit_lane = TransitLane(
                name=lane.get("busNo") or lane.get("name", ""),
                bus_no=lane.get("busNo"),
                bus_type=ODSAY_BUS_TYPE_MAP.get(bus_type),
                line_color=BUS_TYPE_COLORS.get(bus_type, DEFAULT_BUS_COLOR),
            )
        elif traffic_type == TrafficType.ODSAY_TRAIN:
            transit_lane = TransitLane(name=lane.get("name", ""), line_color=TRAIN_COLOR)
        elif traffic_type in (TrafficType.ODSAY_EXPRESS_BUS, TrafficType.ODSAY_INTERCITY_BUS):
            default_name = "고속버스" if traffic_type == TrafficType.ODSAY_EXPRESS_BUS else "시외버스"
            transit_lane = TransitLane(name=lane.get("name") or default_name, line_color=DEFAULT_BUS_COLOR)
        elif traffic_type == TrafficType.FERRY:
            transit_lane = TransitLane(name=lane.get("name") or "해운", line_color=FERRY_COLOR)

    stations = (sub_path.get("passStopList") or {}).get("stations") or []
    pass_stops = [
        Coordinate(lat=float(s["y"]), lng=float(s["x"]))
        for s in stations
        if s.get("x") and s.get("y")
    ]

    start_coord = _coordinate_or_none(sub_path.get("startX"), sub_path.get("startY"))
    end_coord = _coordinate_or_none(sub_path.get("endX"), sub_path.get("endY"))

    path_coords = [c for c in [start_coord, *pass_stops, end_coord] if c is not None]

    return TransitSubPath(
        traffic_type=traffic_type,
        distance=sub_path.get("distance", 0),
        section_time=sub_path.get("sectionTime", 0),
        station_count=sub_path.get("stationCount"),
        start_name=sub_path.get("startName"),
        start_coord=start_coord,
        end_name=sub_path.get("endName"),
        end_coord=end_coord,
        lane=transit_lane,
        way=sub_path.get("way"),
        pass_stop_coords=pass_stops or None,
        polyline=encode_coordinates(path_coords) if len(path_coords) >= 2 else None,
    )


def extract_transit_details(path: Dict[str, Any]) -> TransitDetails:
    """
    ODsay path에서 TransitDetails 추출

    도보 구간에 좌표가 없으면 인접 구간의 좌표로 보완한다.
    """
    sub_paths = [convert_sub_path(sp) for sp in path.get("subPath", [])]

    for i, sub_path in enumerate(sub_paths):
        if sub_path.traffic_type != TrafficType.WALK:
            continue
        if sub_path.start_coord is None and i > 0 and sub_paths[i - 1].end_coord:
            sub_path.start_coord = sub_paths[i - 1].end_coord.model_copy()
        if sub_path.end_coord is None and i < len(sub_paths) - 1 and sub_paths[i + 1].start_coord:
            sub_path.end_coord = sub_paths[i + 1].start_coord.model_copy()

    walks = [sp for sp in sub_paths if sp.traffic_type == TrafficType.WALK]
    vehicle_count = len(sub_paths) - len(walks)

    return TransitDetails(
        total_fare=path.get("info", {}).get("payment", 0),
        transfer_count=max(0, vehicle_count - 1),
        walking_time=sum(sp.section_time for sp in walks),
        walking_distance=sum(sp.distance for sp in walks),
        sub_paths=sub_paths,
    )


def build_sub_path_polyline(details: TransitDetails) -> Optional[str]:
    """각 구간의 시작/경유/종료 좌표를 이어 전체 polyline 생성"""
    coords: List[Coordinate] = []
    for sub_path in details.sub_paths:
        if sub_path.start_coord:
            coords.append(sub_path.start_coord)
        coords.extend(sub_path.pass_stop_coords or [])
        if sub_path.end_coord:
            coords.append(sub_path.end_coord)
    if len(coords) < 2:
        return None
    return encode_coordinates(coords)


class ODsayClient:
    def __init__(self):
        self.base_url = settings.odsay_base_url
        self.api_key = settings.odsay_api_key
        self.timeout = settings.routing_request_timeout

    @routing_api_retry
    async def _request(self, endpoint: str, params: Dict[str, Any]) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.get(
                f"{self.base_url}/{endpoint}",
                params={"apiKey": self.api_key, "lang": 0, "output": "json", **params},
            )
            _raise_for_status(response, "ODsay")
            return _parse_json(response, "ODsay")

    @staticmethod
    def _error_code(data: Dict[str, Any]) -> Optional[int]:
        error = data.get("error")
        if not error:
            return None
        if isinstance(error, list):
            error = error[0] if error else {}
        try:
            return int(error.get("code"))
        except (TypeError, ValueError):
            return -1

    async def search_transit_paths(
        self,
        origin: Coordinate,
        destination: Coordinate,
        sort_type: int = 0,
    ) -> Optional[List[Dict[str, Any]]]:
        """searchPubTransPathT 호출, 경로가 없으면 None"""
        if not self.api_key:
            raise RoutingProviderError("ODSAY_API_KEY가 설정되지 않았습니다", code="CONFIG_ERROR")

        params = {
            "SX": origin.lng,
            "SY": origin.lat,
            "EX": destination.lng,
            "EY": destination.lat,
            "OPT": sort_type,
            "SearchType": 0,
        }

        try:
            data = await self._request("searchPubTransPathT", params)
        except httpx.HTTPStatusError as e:
            raise RoutingProviderError(
                f"ODsay request failed: {e.response.status_code}",
                code="HTTP_ERROR",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise RoutingProviderError(f"ODsay network error: {e}", code="NETWORK_ERROR") from e

        error_code = self._error_code(data)
        if error_code is not None:
            if error_code in ODSAY_NO_ROUTE_CODES:
                logger.info(f"ODsay found no route (code {error_code})")
                return None
            raise RoutingProviderError(f"ODsay API error code {error_code}", code=str(error_code))

        paths = (data.get("result") or {}).get("path") or []
        if not paths:
            logger.info("ODsay returned no paths")
            return None
        return paths

    async def load_lane_coordinates(self, map_obj: str) -> List[Coordinate]:
        """
        loadLane API로 상세 경로 좌표 조회

        mapObj 앞에 "0:0@" 접두사가 필요하다.
        """
        if not self.api_key or not map_obj:
            return []

        map_object = map_obj if map_obj.startswith("0:0@") else f"0:0@{map_obj}"
        data = await self._request("loadLane", {"mapObject": map_object})

        coords: List[Coordinate] = []
        for lane in (data.get("result") or {}).get("lane") or []:
            for section in lane.get("section") or []:
                for point in section.get("graphPos") or []:
                    if isinstance(point, dict) and "x" in point and "y" in point:
                        coords.append(Coordinate(lat=point["y"], lng=point["x"]))
        return coords

    async def get_transit_route_with_details(
        self,
        origin: Coordinate,
        destination: Coordinate,
    ) -> Optional[TransitRoute]:
        """
        대중교통 최적 경로 1개 + 상세 정보 조회

        Args:
            origin: 출발 좌표
            destination: 도착 좌표

        Returns:
            TransitRoute, 경로가 없으면 None

        Raises:
            RoutingProviderError: API 키 누락, HTTP 오류, 응답 형식 오류
        """
        paths = await self.search_transit_paths(origin, destination)
        if not paths:
            return None

        path = paths[0]
        try:
            info = path["info"]
            details = extract_transit_details(path)
        except (KeyError, TypeError) as e:
            raise InvalidProviderResponseError(f"Malformed ODsay path: {e}") from e

        encoded = None
        try:
            lane_coords = await self.load_lane_coordinates(info.get("mapObj", ""))
            if len(lane_coords) >= 2:
                encoded = encode_coordinates(lane_coords)
        except (httpx.HTTPError, RoutingProviderError) as e:
            logger.warning(f"ODsay loadLane failed, using sub path coordinates: {e}")

        if encoded is None:
            encoded = build_sub_path_polyline(details)

        return TransitRoute(
            distance=info.get("totalDistance", 0),
            duration=info.get("totalTime", 0),
            fare=info.get("payment", 0),
            polyline=encoded,
            details=details,
        )


# ============================================
# Facade (per-call timeout)
# ============================================

def car_route_to_segment(route: CarRoute, mode: TransportMode = TransportMode.CAR) -> RouteSegment:
    return RouteSegment(
        mode=mode,
        distance=route.distance,
        duration=route.duration,
        description=route.description,
        polyline=route.polyline,
        fare=route.fare,
        taxi_fare=route.taxi_fare,
    )


def transit_route_to_segment(route: TransitRoute) -> RouteSegment:
    return RouteSegment(
        mode=TransportMode.PUBLIC,
        distance=route.distance,
        duration=route.duration,
        polyline=route.polyline,
        fare=route.fare,
        transit_details=route.details,
    )


class RoutingProvider:
    """
    자동차/대중교통 경로 조회 진입점

    모든 호출에 per-call timeout을 적용하며, timeout은 RoutingProviderError(TIMEOUT)로 변환한다.
    경로가 없는 경우(None)와 조회 실패(예외)를 구분한다.
    """

    def __init__(self, car_client: KakaoMobilityClient = None, transit_client: ODsayClient = None):
        self.car_client = car_client or KakaoMobilityClient()
        self.transit_client = transit_client or ODsayClient()
        self.call_timeout = settings.routing_request_timeout

    async def _with_timeout(self, coro, label: str):
        try:
            return await asyncio.wait_for(coro, timeout=self.call_timeout)
        except asyncio.TimeoutError as e:
            logger.warning(f"{label} timed out after {self.call_timeout}s")
            raise RoutingProviderError(f"{label} timed out", code="TIMEOUT") from e

    async def get_car_route(
        self,
        origin: Coordinate,
        destination: Coordinate,
        priority: str = "RECOMMEND",
    ) -> Optional[CarRoute]:
        return await self._with_timeout(
            self.car_client.get_car_route(origin, destination, priority),
            "Kakao car route",
        )

    async def get_transit_route_with_details(
        self,
        origin: Coordinate,
        destination: Coordinate,
    ) -> Optional[TransitRoute]:
        return await self._with_timeout(
            self.transit_client.get_transit_route_with_details(origin, destination),
            "ODsay transit route",
        )


# 싱글톤 인스턴스
routing_provider = RoutingProvider()
