"""
Unit tests for the MySQL persistence gateway (services/database.py).

pymysql connections are replaced with MagicMock objects; no database is used.
"""
import json
import logging
from datetime import date, timedelta
import pytest
import pymysql
from unittest.mock import MagicMock, patch
from models.schemas import (
    CheckInEvent,
    Coordinate,
    DailyItinerary,
    DayEndpoint,
    EndpointType,
    RouteSegment,
    ScheduleItem,
    TransportMode,
    TripStatus,
)
from services.database import (
    ITINERARY_COLUMNS,
    ItineraryPersistenceError,
    MySQLPersistenceGateway,
    itinerary_to_row,
    row_to_itinerary,
)
from utils.diagnostics import CollectingDiagnostics


def build_itinerary(day_number: int = 1) -> DailyItinerary:
    segment = RouteSegment(mode=TransportMode.CAR, distance=1234.4, duration=7, polyline="abc")
    return DailyItinerary(
        day_number=day_number,
        date=f"2025-03-0{day_number}",
        schedule=[
            ScheduleItem(
                order=1,
                place_id="p1",
                place_name="경복궁",
                arrival_time="10:10",
                departure_time="11:10",
                duration=60,
                transport_to_next=segment,
            ),
            ScheduleItem(
                order=2,
                place_id="p2",
                place_name="창덕궁",
                arrival_time="11:17",
                departure_time="12:17",
                duration=60,
            ),
        ],
        total_distance=3456.6,
        total_duration=17,
        total_stay_duration=120,
        place_count=2,
        start_time="10:00",
        end_time="12:17",
        transport_from_origin=RouteSegment(mode=TransportMode.CAR, distance=2000, duration=10),
        daily_start_time="10:00",
        daily_end_time="20:00",
        day_origin=DayEndpoint(
            type=EndpointType.ORIGIN,
            name="서울역",
            coordinate=Coordinate(lat=37.5547, lng=126.9707),
        ),
        check_in_event=CheckInEvent(
            accommodation_name="명동 호텔",
            coordinate=Coordinate(lat=37.5636, lng=126.9826),
            check_in_time="15:00",
            duration_min=30,
            arrival_time="15:00",
            start_time="15:00",
            end_time="15:30",
            insert_after_order=2,
        ),
    )


def mock_connection():
    connection = MagicMock()
    cursor = MagicMock()
    connection.cursor.return_value.__enter__.return_value = cursor
    return connection, cursor


class TestItineraryRows:
    """Test row conversion in both directions"""

    def test_to_row_serializes_json_columns(self):
        row = itinerary_to_row("trip-1", build_itinerary())

        assert set(row) == set(ITINERARY_COLUMNS)
        assert row["total_distance"] == 3457
        schedule = json.loads(row["schedule"])
        assert schedule[0]["transport_to_next"]["polyline"] == "abc"
        assert row["transport_to_destination"] is None
        assert json.loads(row["day_origin"])["type"] == "origin"

    def test_from_mysql_row(self):
        row = itinerary_to_row("trip-1", build_itinerary())
        row["date"] = date(2025, 3, 1)
        row["daily_start_time"] = timedelta(hours=10)
        row["daily_end_time"] = timedelta(hours=20)
        row["schedule"] = row["schedule"].encode("utf-8")

        itinerary = row_to_itinerary(row)

        assert itinerary.date == "2025-03-01"
        assert itinerary.daily_start_time == "10:00"
        assert itinerary.daily_end_time == "20:00"
        assert [item.place_id for item in itinerary.schedule] == ["p1", "p2"]
        assert itinerary.schedule[0].transport_to_next.distance == 1234.4
        assert itinerary.check_in_event.accommodation_name == "명동 호텔"
        assert itinerary.transport_to_destination is None

    def test_missing_json_columns_default(self):
        itinerary = row_to_itinerary({"day_number": 2, "date": "2025-03-02", "schedule": None})

        assert itinerary.schedule == []
        assert itinerary.day_origin is None
        assert itinerary.start_time == "00:00"


class TestLoads:
    """Test read queries"""

    def setup_method(self):
        self.gateway = MySQLPersistenceGateway()
        self.connection, self.cursor = mock_connection()

    def test_load_trip_parses_json_and_times(self):
        self.cursor.fetchall.return_value = [
            {
                "id": 7,
                "title": "서울 여행",
                "start_date": date(2025, 3, 1),
                "end_date": date(2025, 3, 2),
                "origin": json.dumps({"name": "서울역", "lat": 37.5547, "lng": 126.9707}),
                "destination": json.dumps({"name": "서울역", "lat": 37.5547, "lng": 126.9707}),
                "daily_start_time": timedelta(hours=9, minutes=30),
                "daily_end_time": None,
                "transport_mode": '["public"]',
                "status": "draft",
                "accommodations": None,
            }
        ]

        with patch.object(self.gateway, "get_connection", return_value=self.connection):
            trip = self.gateway.load_trip("7")

        assert trip.id == "7"
        assert trip.start_date == "2025-03-01"
        assert trip.daily_start_time == "09:30"
        assert trip.daily_end_time == "22:00"
        assert trip.transport_modes == [TransportMode.PUBLIC]
        assert trip.accommodations == []
        self.connection.close.assert_called_once()

    def test_load_trip_missing(self):
        self.cursor.fetchall.return_value = []

        with patch.object(self.gateway, "get_connection", return_value=self.connection):
            assert self.gateway.load_trip("missing") is None

    def test_load_places_default_duration(self):
        self.cursor.fetchall.return_value = [
            {"id": 1, "name": "경복궁", "address": None, "lat": "37.5796", "lng": "126.9770",
             "category": None, "estimated_duration": None, "priority": None},
        ]

        with patch.object(self.gateway, "get_connection", return_value=self.connection):
            places = self.gateway.load_places("trip-1")

        assert places[0].id == "1"
        assert places[0].lat == pytest.approx(37.5796)
        assert places[0].estimated_duration > 0


class TestReplaceItinerary:
    """Test delete-then-insert replacement"""

    def setup_method(self):
        self.gateway = MySQLPersistenceGateway()
        self.connection, self.cursor = mock_connection()

    def test_commits_once(self):
        with patch.object(self.gateway, "get_connection", return_value=self.connection):
            self.gateway.replace_itinerary("trip-1", [build_itinerary(1), build_itinerary(2)])

        # DELETE 1번 + INSERT 2번
        assert self.cursor.execute.call_count == 3
        assert "DELETE" in self.cursor.execute.call_args_list[0][0][0]
        self.connection.commit.assert_called_once()
        self.connection.rollback.assert_not_called()
        self.connection.close.assert_called_once()

    def test_insert_failure_rolls_back(self):
        self.cursor.execute.side_effect = [None, pymysql.err.IntegrityError(1062, "Duplicate entry")]

        with patch.object(self.gateway, "get_connection", return_value=self.connection):
            with pytest.raises(ItineraryPersistenceError) as exc_info:
                self.gateway.replace_itinerary("trip-1", [build_itinerary(1)])

        assert exc_info.value.degraded is False
        self.connection.commit.assert_not_called()
        self.connection.rollback.assert_called_once()

    def test_rollback_failure_is_degraded(self):
        self.cursor.execute.side_effect = [None, pymysql.err.IntegrityError(1062, "Duplicate entry")]
        self.connection.rollback.side_effect = pymysql.err.OperationalError(2013, "Lost connection")
        diagnostics = CollectingDiagnostics()

        with patch.object(self.gateway, "get_connection", return_value=self.connection):
            with pytest.raises(ItineraryPersistenceError) as exc_info:
                self.gateway.replace_itinerary("trip-1", [build_itinerary(1)], diagnostics)

        assert exc_info.value.degraded is True
        assert diagnostics.count("persistence.degraded") == 1
        assert diagnostics.events[0]["level"] == logging.getLevelName(logging.ERROR)

    def test_connection_failure(self):
        with patch.object(
            self.gateway, "get_connection", side_effect=pymysql.err.OperationalError(2003, "refused")
        ):
            with pytest.raises(ItineraryPersistenceError) as exc_info:
                self.gateway.replace_itinerary("trip-1", [build_itinerary(1)])

        assert exc_info.value.degraded is False


class TestSaveDayItinerary:
    """Test per-day upsert"""

    def setup_method(self):
        self.gateway = MySQLPersistenceGateway()
        self.connection, self.cursor = mock_connection()

    def test_upsert_query(self):
        with patch.object(self.gateway, "get_connection", return_value=self.connection):
            self.gateway.save_day_itinerary("trip-1", build_itinerary(2))

        query, params = self.cursor.execute.call_args[0]
        assert "ON DUPLICATE KEY UPDATE" in query
        assert params[ITINERARY_COLUMNS.index("day_number")] == 2
        self.connection.commit.assert_called_once()

    def test_transient_error_retried(self):
        self.cursor.execute.side_effect = [pymysql.err.OperationalError(1205, "Lock wait timeout"), None]

        with patch.object(self.gateway, "get_connection", return_value=self.connection) as get_connection:
            self.gateway.save_day_itinerary("trip-1", build_itinerary(1))

        assert get_connection.call_count == 2
        self.connection.commit.assert_called_once()

    def test_error_wrapped(self):
        self.cursor.execute.side_effect = pymysql.err.IntegrityError(1048, "Column cannot be null")

        with patch.object(self.gateway, "get_connection", return_value=self.connection) as get_connection:
            with pytest.raises(ItineraryPersistenceError, match="1일차"):
                self.gateway.save_day_itinerary("trip-1", build_itinerary(1))

        assert get_connection.call_count == 1


class TestUpdateTripStatus:
    def test_writes_enum_value(self):
        gateway = MySQLPersistenceGateway()
        connection, cursor = mock_connection()

        with patch.object(gateway, "get_connection", return_value=connection):
            gateway.update_trip_status("trip-1", TripStatus.OPTIMIZING)

        assert cursor.execute.call_args[0][1] == ("optimizing", "trip-1")
        connection.commit.assert_called_once()
