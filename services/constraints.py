"""
Fixed schedule constraint handling.

Fixed schedules are time-pinned appointments. They are validated before every
optimize run and turned into fixed nodes for the distribution stage.
"""
import logging
from collections import defaultdict
from typing import Collection, Dict, List, Optional
from models.schemas import (
    ConstraintValidationResult,
    DayTimeConfig,
    FixedSchedule,
    Node,
    ScheduleConflict,
)
from utils.time_utils import (
    generate_date_range,
    get_days_between,
    get_minutes_between,
    is_valid_time,
    time_to_minutes,
)

logger = logging.getLogger(__name__)


def _group_by_date(schedules: List[FixedSchedule]) -> Dict[str, List[FixedSchedule]]:
    by_date: Dict[str, List[FixedSchedule]] = defaultdict(list)
    for schedule in schedules:
        by_date[schedule.date].append(schedule)
    return by_date


def detect_schedule_conflicts(schedules: List[FixedSchedule]) -> List[ScheduleConflict]:
    """같은 날짜의 고정 일정끼리 [start, end) 구간이 겹치는지 검사"""
    conflicts = []
    for date, day_schedules in _group_by_date(schedules).items():
        ordered = sorted(day_schedules, key=lambda s: time_to_minutes(s.start_time))
        for current, following in zip(ordered, ordered[1:]):
            if time_to_minutes(current.end_time) > time_to_minutes(following.start_time):
                conflicts.append(
                    ScheduleConflict(
                        type="overlap",
                        schedule_ids=[current.id, following.id],
                        date=date,
                        message=(
                            f'고정 일정 "{current.id}"와 "{following.id}"가 '
                            f"{following.start_time}~{current.end_time} 시간대에 겹칩니다."
                        ),
                    )
                )
    return conflicts


def detect_out_of_hours_conflicts(
    schedules: List[FixedSchedule],
    daily_start_time: str,
    daily_end_time: str,
    day_configs: Optional[List[DayTimeConfig]] = None,
) -> List[ScheduleConflict]:
    """
    고정 일정이 일일 활동 시간 밖에 있는지 검사

    day_configs가 있으면 해당 날짜의 시간대를, 없으면 전체 시간대를 사용한다.
    """
    windows = {c.date: (c.start_time, c.end_time) for c in day_configs or []}
    conflicts = []
    for schedule in schedules:
        start_time, end_time = windows.get(schedule.date, (daily_start_time, daily_end_time))
        if (
            time_to_minutes(schedule.start_time) < time_to_minutes(start_time)
            or time_to_minutes(schedule.end_time) > time_to_minutes(end_time)
        ):
            conflicts.append(
                ScheduleConflict(
                    type="outside_hours",
                    schedule_ids=[schedule.id],
                    date=schedule.date,
                    message=(
                        f'고정 일정 "{schedule.id}"({schedule.start_time}~{schedule.end_time})가 '
                        f"일일 시간 범위({start_time}~{end_time}) 밖입니다."
                    ),
                )
            )
    return conflicts


def detect_daily_limit_conflicts(
    schedules: List[FixedSchedule],
    max_daily_minutes: int,
) -> List[ScheduleConflict]:
    conflicts = []
    for date, day_schedules in _group_by_date(schedules).items():
        total = sum(get_minutes_between(s.start_time, s.end_time) for s in day_schedules)
        if total > max_daily_minutes:
            conflicts.append(
                ScheduleConflict(
                    type="exceeds_daily_limit",
                    schedule_ids=[s.id for s in day_schedules],
                    date=date,
                    message=(
                        f"{date}의 고정 일정 총 시간({total}분)이 "
                        f"일일 제한({max_daily_minutes}분)을 초과합니다."
                    ),
                )
            )
    return conflicts


def validate_fixed_schedules(
    schedules: List[FixedSchedule],
    start_date: str,
    end_date: str,
    daily_start_time: str,
    daily_end_time: str,
    day_configs: Optional[List[DayTimeConfig]] = None,
) -> ConstraintValidationResult:
    """
    고정 일정 전체 검증

    여행 기간 밖의 날짜는 경고로, 겹침/활동 시간 초과/잘못된 시간 범위는 충돌로 보고한다.

    Args:
        schedules: 고정 일정 리스트
        start_date: 여행 시작일
        end_date: 여행 종료일
        daily_start_time: 일일 시작 시간
        daily_end_time: 일일 종료 시간
        day_configs: 일자별 시간 설정 (선택)

    Returns:
        ConstraintValidationResult
    """
    conflicts: List[ScheduleConflict] = []
    warnings: List[str] = []

    malformed = [
        s for s in schedules
        if not is_valid_time(s.start_time) or not is_valid_time(s.end_time)
    ]
    for schedule in malformed:
        conflicts.append(
            ScheduleConflict(
                type="invalid_range",
                schedule_ids=[schedule.id],
                date=schedule.date,
                message=f'고정 일정 "{schedule.id}"의 시간 형식이 올바르지 않습니다.',
            )
        )
    schedules = [s for s in schedules if s not in malformed]

    trip_dates = set(generate_date_range(start_date, get_days_between(start_date, end_date)))
    for schedule in schedules:
        if schedule.date not in trip_dates:
            warnings.append(
                f'고정 일정 "{schedule.id}"의 날짜({schedule.date})가 여행 기간 밖입니다.'
            )

    conflicts.extend(detect_schedule_conflicts(schedules))
    conflicts.extend(
        detect_out_of_hours_conflicts(schedules, daily_start_time, daily_end_time, day_configs)
    )

    for schedule in schedules:
        if time_to_minutes(schedule.start_time) >= time_to_minutes(schedule.end_time):
            conflicts.append(
                ScheduleConflict(
                    type="invalid_range",
                    schedule_ids=[schedule.id],
                    date=schedule.date,
                    message=(
                        f'고정 일정 "{schedule.id}"의 시작 시간({schedule.start_time})이 '
                        f"종료 시간({schedule.end_time})보다 늦거나 같습니다."
                    ),
                )
            )

    if conflicts:
        logger.warning(f"Fixed schedule validation found {len(conflicts)} conflicts")

    return ConstraintValidationResult(
        is_valid=not conflicts,
        conflicts=conflicts,
        warnings=warnings,
    )


def fixed_schedule_to_node(schedule: FixedSchedule, node: Node) -> Node:
    """장소 노드에 고정 일정 정보를 입힌 노드 (체류 시간 = 종료 - 시작)"""
    return node.model_copy(
        update={
            "duration": get_minutes_between(schedule.start_time, schedule.end_time),
            "priority": 0,
            "is_fixed": True,
            "fixed_date": schedule.date,
            "fixed_start_time": schedule.start_time,
            "fixed_end_time": schedule.end_time,
        }
    )


def get_reserved_fixed_minutes(
    schedules: List[FixedSchedule],
    date: str,
    exclude_place_ids: Collection[str] = (),
    place_durations: Optional[Dict[str, int]] = None,
) -> int:
    """
    날짜에 미리 잡아 둘 고정 일정 시간 (분)

    exclude_place_ids의 장소는 분배 중 노드로 배치되므로 제외한다.
    place_durations에 체류 시간이 있으면 고정 일정 길이 대신 사용한다.
    """
    place_durations = place_durations or {}
    total = 0
    for schedule in schedules:
        if schedule.date != date or schedule.place_id in exclude_place_ids:
            continue
        duration = place_durations.get(
            schedule.place_id,
            get_minutes_between(schedule.start_time, schedule.end_time),
        )
        total += max(0, duration)
    return total
