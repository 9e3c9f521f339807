"""
Time and date helpers for itinerary scheduling.

Times are "HH:MM" strings measured from midnight. Values past midnight are not
wrapped ("25:10"), so schedule times stay comparable within a single day.
"""
from datetime import date, timedelta
from typing import List, Optional
from models.schemas import DayTimeConfig


def time_to_minutes(time_str: str) -> int:
    """
    Convert time string "HH:MM" (or "HH:MM:SS") to total minutes from midnight.

    Example:
        >>> time_to_minutes("14:30")
        870
    """
    try:
        parts = time_str.split(":")
        hour, minute = int(parts[0]), int(parts[1])
        return hour * 60 + minute
    except (ValueError, AttributeError, IndexError) as e:
        raise ValueError(f"Invalid time format: {time_str}. Expected 'HH:MM'") from e


def minutes_to_time(minutes: int) -> str:
    """
    Convert total minutes from midnight to "HH:MM" (zero-padded, no day wrap).

    Example:
        >>> minutes_to_time(870)
        '14:30'
        >>> minutes_to_time(1510)
        '25:10'
    """
    minutes = int(minutes)
    hours, mins = divmod(max(0, minutes), 60)
    return f"{hours:02d}:{mins:02d}"


def add_minutes_to_time(time_str: str, minutes: int) -> str:
    return minutes_to_time(time_to_minutes(time_str) + minutes)


def get_minutes_between(start: str, end: str) -> int:
    """start에서 end까지의 분 차이 (end가 더 이르면 음수)"""
    return time_to_minutes(end) - time_to_minutes(start)


def normalize_time(time_str: str) -> str:
    """9:5, 09:05:00 등의 시간 문자열을 HH:MM 형식으로 정규화"""
    return minutes_to_time(time_to_minutes(time_str))


def is_valid_time(time_str: Optional[str]) -> bool:
    if not time_str:
        return False
    try:
        parts = time_str.split(":")
        hour, minute = int(parts[0]), int(parts[1])
    except (ValueError, IndexError):
        return False
    return 0 <= hour <= 23 and 0 <= minute <= 59


def parse_date(date_str: str) -> date:
    return date.fromisoformat(date_str[:10])


def get_days_between(start_date: str, end_date: str) -> int:
    """시작일과 종료일을 모두 포함한 일수 (같은 날이면 1)"""
    return (parse_date(end_date) - parse_date(start_date)).days + 1


def generate_date_range(start_date: str, days: int) -> List[str]:
    """시작일부터 days일 동안의 날짜 리스트 (YYYY-MM-DD)"""
    start = parse_date(start_date)
    return [(start + timedelta(days=i)).isoformat() for i in range(days)]


def generate_daily_time_configs(
    start_date: str,
    end_date: str,
    trip_start_time: str,
    trip_end_time: str,
    middle_day_start: str = "10:00",
    middle_day_end: str = "20:00",
) -> List[DayTimeConfig]:
    """
    일자별 활동 시간 설정 생성

    첫날은 여행 시작 시간부터, 마지막 날은 여행 종료 시간까지이며
    중간 일차는 기본 시간대(10:00~20:00)를 사용한다.
    하루짜리 여행은 여행 시작~종료 시간을 그대로 사용한다.

    Args:
        start_date: 여행 시작일
        end_date: 여행 종료일
        trip_start_time: 첫날 시작 시간
        trip_end_time: 마지막 날 종료 시간
        middle_day_start: 중간 일차 시작 시간
        middle_day_end: 중간 일차 종료 시간

    Returns:
        DayTimeConfig 리스트
    """
    total_days = get_days_between(start_date, end_date)
    dates = generate_date_range(start_date, total_days)

    configs = []
    for index, day in enumerate(dates):
        is_first = index == 0
        is_last = index == total_days - 1
        configs.append(
            DayTimeConfig(
                date=day,
                start_time=normalize_time(trip_start_time if is_first else middle_day_start),
                end_time=normalize_time(trip_end_time if is_last else middle_day_end),
            )
        )
    return configs
