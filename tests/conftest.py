"""
Shared fixtures: trips, places and in-memory fakes for the gateway and routing provider.
"""
from typing import Dict, List, Optional
import pytest
from models.schemas import (
    CarRoute,
    DailyAccommodation,
    DailyItinerary,
    FixedSchedule,
    Place,
    TransitDetails,
    TransitRoute,
    TransitSubPath,
    TransportMode,
    Trip,
    TripLocation,
    TripStatus,
)
from services.database import ItineraryPersistenceError
from utils.geo import haversine
from utils.retry_helpers import RoutingProviderError


SEOUL_STATION = TripLocation(name="서울역", address="서울 용산구 한강대로 405", lat=37.5547, lng=126.9707)
HOTEL = TripLocation(name="명동 호텔", address="서울 중구 명동길 1", lat=37.5636, lng=126.9826)

PLACE_COORDS = [
    ("p1", "경복궁", 37.5796, 126.9770),
    ("p2", "창덕궁", 37.5794, 126.9910),
    ("p3", "남산타워", 37.5512, 126.9882),
    ("p4", "동대문디자인플라자", 37.5665, 127.0092),
    ("p5", "이태원", 37.5345, 126.9946),
]


def build_trip(**overrides) -> Trip:
    values = {
        "id": "trip-1",
        "title": "서울 여행",
        "start_date": "2025-03-01",
        "end_date": "2025-03-02",
        "origin": SEOUL_STATION,
        "destination": SEOUL_STATION,
        "daily_start_time": "10:00",
        "daily_end_time": "20:00",
        "transport_modes": [TransportMode.CAR],
    }
    values.update(overrides)
    return Trip(**values)


def build_places(count: int = 5, duration: int = 60) -> List[Place]:
    return [
        Place(id=place_id, name=name, lat=lat, lng=lng, estimated_duration=duration)
        for place_id, name, lat, lng in PLACE_COORDS[:count]
    ]


@pytest.fixture
def trip() -> Trip:
    return build_trip()


@pytest.fixture
def places() -> List[Place]:
    return build_places()


@pytest.fixture
def hotel_trip() -> Trip:
    return build_trip(
        accommodations=[
            DailyAccommodation(
                start_date="2025-03-01",
                end_date="2025-03-02",
                location=HOTEL,
                check_in_time="15:00",
            )
        ]
    )


class FakeRoutingProvider:
    """Distance-based fake that records every lookup."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.car_calls = []
        self.transit_calls = []

    async def get_car_route(self, origin, destination, priority="RECOMMEND") -> Optional[CarRoute]:
        self.car_calls.append((origin, destination, priority))
        if self.fail:
            raise RoutingProviderError("provider down", code="HTTP_ERROR", status_code=503)
        distance = round(haversine(origin, destination) * 1.2)
        return CarRoute(
            distance=distance,
            duration=max(1, distance // 400),
            polyline="car_" + "x" * 60,
            fare=0,
        )

    async def get_transit_route_with_details(self, origin, destination) -> Optional[TransitRoute]:
        self.transit_calls.append((origin, destination))
        if self.fail:
            raise RoutingProviderError("provider down", code="HTTP_ERROR", status_code=503)
        distance = round(haversine(origin, destination) * 1.3)
        return TransitRoute(
            distance=distance,
            duration=max(5, distance // 250),
            fare=1400,
            polyline="transit_" + "y" * 60,
            details=TransitDetails(
                total_fare=1400,
                sub_paths=[
                    TransitSubPath(traffic_type=3, distance=200, section_time=3),
                    TransitSubPath(traffic_type=1, distance=distance - 200, section_time=10),
                ],
            ),
        )

    @property
    def call_count(self) -> int:
        return len(self.car_calls) + len(self.transit_calls)


class FakeGateway:
    """In-memory persistence gateway."""

    def __init__(self, trip: Trip = None, places: List[Place] = None,
                 fixed_schedules: List[FixedSchedule] = None):
        self.trips: Dict[str, Trip] = {trip.id: trip} if trip else {}
        self.places = {trip.id: list(places or [])} if trip else {}
        self.fixed = {trip.id: list(fixed_schedules or [])} if trip else {}
        self.itineraries: Dict[str, List[DailyItinerary]] = {}
        self.status_history: List[TripStatus] = []
        self.fail_days = set()
        self.fail_replace = False

    def load_trip(self, trip_id):
        return self.trips.get(trip_id)

    def load_places(self, trip_id):
        return list(self.places.get(trip_id, []))

    def load_fixed_schedules(self, trip_id):
        return list(self.fixed.get(trip_id, []))

    def load_stored_itinerary(self, trip_id):
        return list(self.itineraries.get(trip_id, []))

    def replace_itinerary(self, trip_id, itineraries, diagnostics=None):
        if self.fail_replace:
            raise ItineraryPersistenceError("insert failed")
        self.itineraries[trip_id] = list(itineraries)

    def save_day_itinerary(self, trip_id, itinerary):
        if itinerary.day_number in self.fail_days:
            raise RuntimeError(f"day {itinerary.day_number} write failed")
        days = {d.day_number: d for d in self.itineraries.get(trip_id, [])}
        days[itinerary.day_number] = itinerary
        self.itineraries[trip_id] = [days[k] for k in sorted(days)]

    def update_trip_status(self, trip_id, status):
        self.status_history.append(status)
        self.trips[trip_id] = self.trips[trip_id].model_copy(update={"status": status})


@pytest.fixture
def fake_provider() -> FakeRoutingProvider:
    return FakeRoutingProvider()
