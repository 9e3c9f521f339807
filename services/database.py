import json
import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Protocol
import pymysql
from pymysql.cursors import DictCursor
from config import settings
from models.schemas import (
    DailyItinerary,
    FixedSchedule,
    Place,
    Trip,
    TripStatus,
)
from utils.diagnostics import DiagnosticsSink, null_diagnostics
from utils.json_encoder import dumps
from utils.retry_helpers import db_write_retry

logger = logging.getLogger(__name__)


class ItineraryPersistenceError(Exception):
    """일정 저장 실패

    degraded=True이면 롤백까지 실패해 저장된 일정이 부분적으로 바뀌었을 수 있다.
    """

    def __init__(self, message: str, degraded: bool = False):
        super().__init__(message)
        self.degraded = degraded


class PersistenceGateway(Protocol):
    """여행/장소/일정 저장소 인터페이스"""

    def load_trip(self, trip_id: str) -> Optional[Trip]:
        ...

    def load_places(self, trip_id: str) -> List[Place]:
        ...

    def load_fixed_schedules(self, trip_id: str) -> List[FixedSchedule]:
        ...

    def load_stored_itinerary(self, trip_id: str) -> List[DailyItinerary]:
        ...

    def replace_itinerary(
        self,
        trip_id: str,
        itineraries: List[DailyItinerary],
        diagnostics: DiagnosticsSink = null_diagnostics,
    ) -> None:
        ...

    def save_day_itinerary(self, trip_id: str, itinerary: DailyItinerary) -> None:
        ...

    def update_trip_status(self, trip_id: str, status: TripStatus) -> None:
        ...


# trip_itineraries의 JSON 컬럼
ITINERARY_JSON_COLUMNS = [
    "schedule",
    "transport_from_origin",
    "transport_to_destination",
    "check_in_event",
    "day_origin",
    "day_destination",
]

ITINERARY_COLUMNS = [
    "trip_id",
    "day_number",
    "date",
    "total_distance",
    "total_duration",
    "total_stay_duration",
    "place_count",
    "daily_start_time",
    "daily_end_time",
    *ITINERARY_JSON_COLUMNS,
]


def _time_str(value: Any) -> Optional[str]:
    """MySQL TIME(timedelta) 또는 문자열을 HH:MM으로 변환"""
    if value is None:
        return None
    if isinstance(value, timedelta):
        minutes = int(value.total_seconds() // 60)
        return f"{minutes // 60:02d}:{minutes % 60:02d}"
    return str(value)[:5]


def _date_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (date, datetime)):
        return value.strftime("%Y-%m-%d")
    return str(value)[:10]


def _json_value(value: Any, default: Any = None) -> Any:
    if value is None:
        return default
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    if isinstance(value, str):
        return json.loads(value) if value else default
    return value


def itinerary_to_row(trip_id: str, itinerary: DailyItinerary) -> Dict[str, Any]:
    """DailyItinerary -> trip_itineraries 행 (JSON 컬럼은 snake_case 직렬화)"""
    data = itinerary.model_dump(mode="json")
    row = {
        "trip_id": trip_id,
        "day_number": itinerary.day_number,
        "date": itinerary.date,
        "total_distance": int(round(itinerary.total_distance)),
        "total_duration": itinerary.total_duration,
        "total_stay_duration": itinerary.total_stay_duration,
        "place_count": itinerary.place_count,
        "daily_start_time": itinerary.daily_start_time,
        "daily_end_time": itinerary.daily_end_time,
    }
    for column in ITINERARY_JSON_COLUMNS:
        value = data.get(column)
        row[column] = dumps(value) if value is not None else None
    return row


def row_to_itinerary(row: Dict[str, Any]) -> DailyItinerary:
    daily_start = _time_str(row.get("daily_start_time"))
    return DailyItinerary(
        day_number=row["day_number"],
        date=_date_str(row["date"]),
        schedule=_json_value(row.get("schedule"), []),
        total_distance=row.get("total_distance") or 0,
        total_duration=row.get("total_duration") or 0,
        total_stay_duration=row.get("total_stay_duration") or 0,
        place_count=row.get("place_count") or 0,
        # 시작/종료 시각은 저장하지 않으므로 읽은 뒤 재계산 전까지 일과 시간으로 채움
        start_time=daily_start or "00:00",
        end_time=daily_start or "00:00",
        transport_from_origin=_json_value(row.get("transport_from_origin")),
        transport_to_destination=_json_value(row.get("transport_to_destination")),
        daily_start_time=daily_start,
        daily_end_time=_time_str(row.get("daily_end_time")),
        day_origin=_json_value(row.get("day_origin")),
        day_destination=_json_value(row.get("day_destination")),
        check_in_event=_json_value(row.get("check_in_event")),
    )


class MySQLPersistenceGateway:
    def __init__(self):
        self.connection_params = {
            "host": settings.db_host,
            "port": settings.db_port,
            "user": settings.db_user,
            "password": settings.db_password,
            "database": settings.db_name,
            "charset": "utf8mb4",
            "cursorclass": DictCursor,
        }

    def get_connection(self):
        """MySQL 연결 생성"""
        try:
            return pymysql.connect(**self.connection_params)
        except pymysql.MySQLError as e:
            logger.error(f"Database connection failed: {str(e)}")
            raise

    def _fetch_all(self, query: str, params: tuple) -> List[Dict[str, Any]]:
        connection = None
        try:
            connection = self.get_connection()
            with connection.cursor() as cursor:
                cursor.execute(query, params)
                return list(cursor.fetchall())
        finally:
            if connection:
                connection.close()

    def load_trip(self, trip_id: str) -> Optional[Trip]:
        """
        여행 기본 정보 조회

        Args:
            trip_id: 여행 ID

        Returns:
            Trip 객체, 없으면 None
        """
        rows = self._fetch_all(
            """
            SELECT id, title, start_date, end_date, origin, destination,
                   daily_start_time, daily_end_time, transport_mode, status, accommodations
            FROM trips
            WHERE id = %s
            """,
            (trip_id,),
        )
        if not rows:
            logger.warning(f"Trip not found: {trip_id}")
            return None

        row = rows[0]
        return Trip(
            id=str(row["id"]),
            title=row.get("title") or "",
            start_date=_date_str(row["start_date"]),
            end_date=_date_str(row["end_date"]),
            origin=_json_value(row["origin"]),
            destination=_json_value(row["destination"]),
            daily_start_time=_time_str(row.get("daily_start_time")) or "10:00",
            daily_end_time=_time_str(row.get("daily_end_time")) or "22:00",
            transport_modes=_json_value(row.get("transport_mode"), ["car"]),
            status=row.get("status") or TripStatus.DRAFT,
            accommodations=_json_value(row.get("accommodations"), []),
        )

    def load_places(self, trip_id: str) -> List[Place]:
        rows = self._fetch_all(
            """
            SELECT id, name, address, lat, lng, category, estimated_duration, priority
            FROM trip_places
            WHERE trip_id = %s
            ORDER BY created_at, id
            """,
            (trip_id,),
        )
        places = [
            Place(
                id=str(row["id"]),
                name=row["name"],
                address=row.get("address") or "",
                lat=float(row["lat"]),
                lng=float(row["lng"]),
                category=row.get("category"),
                estimated_duration=row.get("estimated_duration") or settings.default_stay_duration,
                priority=row.get("priority"),
            )
            for row in rows
        ]
        logger.info(f"Loaded {len(places)} places for trip {trip_id}")
        return places

    def load_fixed_schedules(self, trip_id: str) -> List[FixedSchedule]:
        rows = self._fetch_all(
            """
            SELECT id, place_id, date, start_time, end_time, note
            FROM trip_fixed_schedules
            WHERE trip_id = %s AND place_id IS NOT NULL
            ORDER BY date, start_time
            """,
            (trip_id,),
        )
        return [
            FixedSchedule(
                id=str(row["id"]),
                place_id=str(row["place_id"]),
                date=_date_str(row["date"]),
                start_time=_time_str(row["start_time"]),
                end_time=_time_str(row["end_time"]),
                note=row.get("note"),
            )
            for row in rows
        ]

    def load_stored_itinerary(self, trip_id: str) -> List[DailyItinerary]:
        columns = ", ".join(ITINERARY_COLUMNS)
        rows = self._fetch_all(
            f"""
            SELECT {columns}
            FROM trip_itineraries
            WHERE trip_id = %s
            ORDER BY day_number
            """,
            (trip_id,),
        )
        return [row_to_itinerary(row) for row in rows]

    def replace_itinerary(
        self,
        trip_id: str,
        itineraries: List[DailyItinerary],
        diagnostics: DiagnosticsSink = null_diagnostics,
    ) -> None:
        """
        여행의 전체 일정을 교체 (한 트랜잭션에서 삭제 후 삽입)

        삽입 중 실패하면 롤백한다. 롤백도 실패하면 degraded 오류를 발생시킨다.

        Args:
            trip_id: 여행 ID
            itineraries: 저장할 일정
            diagnostics: 진단 이벤트 sink

        Raises:
            ItineraryPersistenceError: 저장 실패
        """
        columns = ", ".join(ITINERARY_COLUMNS)
        placeholders = ", ".join(["%s"] * len(ITINERARY_COLUMNS))
        insert_query = f"INSERT INTO trip_itineraries ({columns}) VALUES ({placeholders})"

        connection = None
        try:
            connection = self.get_connection()
            with connection.cursor() as cursor:
                cursor.execute("DELETE FROM trip_itineraries WHERE trip_id = %s", (trip_id,))
                for itinerary in itineraries:
                    row = itinerary_to_row(trip_id, itinerary)
                    cursor.execute(insert_query, [row[c] for c in ITINERARY_COLUMNS])
            connection.commit()
            logger.info(f"Replaced itinerary for trip {trip_id}: {len(itineraries)} days")
        except pymysql.MySQLError as e:
            logger.error(f"Failed to replace itinerary for trip {trip_id}: {str(e)}")
            if connection is None:
                raise ItineraryPersistenceError(f"일정 저장에 실패했습니다: {str(e)}") from e
            try:
                connection.rollback()
            except pymysql.MySQLError as rollback_error:
                diagnostics.emit(
                    "persistence.degraded",
                    logging.ERROR,
                    trip_id=trip_id,
                    error=str(e),
                    rollback_error=str(rollback_error),
                )
                raise ItineraryPersistenceError(
                    f"일정 저장과 롤백에 모두 실패했습니다: {str(rollback_error)}",
                    degraded=True,
                ) from rollback_error
            raise ItineraryPersistenceError(f"일정 저장에 실패했습니다: {str(e)}") from e
        finally:
            if connection:
                connection.close()

    @db_write_retry
    def _upsert_day(self, trip_id: str, itinerary: DailyItinerary) -> None:
        row = itinerary_to_row(trip_id, itinerary)
        columns = ", ".join(ITINERARY_COLUMNS)
        placeholders = ", ".join(["%s"] * len(ITINERARY_COLUMNS))
        updates = ", ".join(
            f"{c} = VALUES({c})" for c in ITINERARY_COLUMNS if c not in ("trip_id", "day_number")
        )
        query = (
            f"INSERT INTO trip_itineraries ({columns}) VALUES ({placeholders}) "
            f"ON DUPLICATE KEY UPDATE {updates}"
        )

        connection = None
        try:
            connection = self.get_connection()
            with connection.cursor() as cursor:
                cursor.execute(query, [row[c] for c in ITINERARY_COLUMNS])
            connection.commit()
        finally:
            if connection:
                connection.close()

    def save_day_itinerary(self, trip_id: str, itinerary: DailyItinerary) -> None:
        """
        하루 일정 저장 (trip_id, day_number 기준 upsert)

        Raises:
            ItineraryPersistenceError: 저장 실패
        """
        try:
            self._upsert_day(trip_id, itinerary)
        except pymysql.MySQLError as e:
            logger.error(f"Failed to save day {itinerary.day_number} of trip {trip_id}: {str(e)}")
            raise ItineraryPersistenceError(
                f"{itinerary.day_number}일차 일정 저장에 실패했습니다: {str(e)}"
            ) from e

    def update_trip_status(self, trip_id: str, status: TripStatus) -> None:
        connection = None
        try:
            connection = self.get_connection()
            with connection.cursor() as cursor:
                cursor.execute(
                    "UPDATE trips SET status = %s WHERE id = %s",
                    (TripStatus(status).value, trip_id),
                )
            connection.commit()
            logger.info(f"Trip {trip_id} status -> {TripStatus(status).value}")
        finally:
            if connection:
                connection.close()


# 싱글톤 인스턴스
db_gateway = MySQLPersistenceGateway()
