"""
Multi-day segmentation.

Splits a job's total duration across consecutive working days. Each block is
stored on the job as {date, dayNumber, startTime, endTime, durationMinutes}.
"""
import math
from dataclasses import dataclass
from datetime import date, time, timedelta
from typing import Any, Dict, FrozenSet, List, Optional

from ..config import settings
from ..errors import PolicyViolation
from .availability import normalize_date
from .time_rules import format_12h, format_hhmm, parse_hhmm, time_to_minutes

MINUTES_PER_DAY = 24 * 60


def _parse_days(value) -> FrozenSet[int]:
    if isinstance(value, str):
        value = [p for p in value.split(",") if p.strip()]
    try:
        days = frozenset(int(d) for d in value)
    except (TypeError, ValueError):
        raise PolicyViolation("Work week days must be weekday numbers (Monday=0)")
    return days


@dataclass(frozen=True)
class WorkWeek:
    """Working days (Monday=0), daily start time and daily capacity in minutes."""

    days: FrozenSet[int] = frozenset({0, 1, 2, 3, 4})
    start_time: time = time(8, 0)
    daily_capacity_min: int = 480

    def __post_init__(self):
        if not self.days or not self.days.issubset(range(7)):
            raise PolicyViolation("Work week must contain at least one weekday between 0 and 6")
        if self.daily_capacity_min <= 0:
            raise PolicyViolation("Daily capacity must be positive")
        if time_to_minutes(self.start_time) + self.daily_capacity_min > MINUTES_PER_DAY:
            raise PolicyViolation("Working day cannot run past midnight")

    @classmethod
    def from_settings(cls) -> "WorkWeek":
        start = parse_hhmm(settings.workday_start)
        if start is None:
            raise PolicyViolation(f"Invalid WORKDAY_START: {settings.workday_start}")
        return cls(
            days=_parse_days(settings.work_week_days),
            start_time=start,
            daily_capacity_min=settings.daily_capacity_min,
        )

    @classmethod
    def for_contractor(cls, contractor: Any) -> "WorkWeek":
        """Defaults from settings, overridden by the contractor's scheduling.workWeek."""
        base = cls.from_settings()
        scheduling = getattr(contractor, "scheduling", None) or {}
        override = scheduling.get("workWeek") or {}
        if not override:
            return base

        start = base.start_time
        if override.get("startTime"):
            start = parse_hhmm(override["startTime"])
            if start is None:
                raise PolicyViolation(f"Invalid work week start time: {override['startTime']}")
        return cls(
            days=_parse_days(override["days"]) if override.get("days") is not None else base.days,
            start_time=start,
            daily_capacity_min=int(override.get("dailyCapacityMinutes") or base.daily_capacity_min),
        )

    def is_working_day(self, day: date) -> bool:
        return day.weekday() in self.days

    def next_working_day(self, day: date) -> date:
        """`day` itself when it is a working day, otherwise the next one."""
        while not self.is_working_day(day):
            day += timedelta(days=1)
        return day

    def to_dict(self) -> Dict[str, Any]:
        return {
            "days": sorted(self.days),
            "startTime": self.start_time.strftime("%H:%M"),
            "dailyCapacityMinutes": self.daily_capacity_min,
        }


def generate_schedule_blocks(
    start: Any,
    duration_minutes: int,
    work_week: Optional[WorkWeek] = None,
    first_day_start: Optional[time] = None,
) -> List[Dict[str, Any]]:
    """
    Allocate `duration_minutes` across working days starting at `start`.

    Each working day gets min(remaining, capacity) minutes beginning at the
    work week's start time. Non-working days are skipped, including a
    non-working start date. `first_day_start` moves day 1's start (the time a
    customer confirmed); day 1 still ends by midnight.

    Returns:
        Ordered blocks; empty when the duration is not positive
    """
    if not duration_minutes or duration_minutes <= 0:
        return []
    current = normalize_date(start)
    if current is None:
        raise PolicyViolation("A valid start date is required")
    work_week = work_week or WorkWeek.from_settings()

    blocks = []
    remaining = int(duration_minutes)
    day_number = 1
    while remaining > 0:
        current = work_week.next_working_day(current)
        start_minutes = time_to_minutes(work_week.start_time)
        if day_number == 1 and first_day_start is not None:
            start_minutes = time_to_minutes(first_day_start)
        allocated = min(remaining, work_week.daily_capacity_min, MINUTES_PER_DAY - start_minutes)
        blocks.append({
            "date": current.isoformat(),
            "dayNumber": day_number,
            "startTime": format_hhmm(start_minutes),
            "endTime": format_hhmm(start_minutes + allocated),
            "durationMinutes": allocated,
        })
        remaining -= allocated
        day_number += 1
        current += timedelta(days=1)
    return blocks


def is_multi_day_job(duration_minutes: Optional[int], capacity_minutes: int = 480) -> bool:
    return bool(duration_minutes) and duration_minutes > capacity_minutes


def calculate_days_needed(duration_minutes: Optional[int], capacity_minutes: int = 480) -> int:
    if not duration_minutes or duration_minutes <= 0:
        return 1
    return math.ceil(duration_minutes / capacity_minutes)


def create_multi_day_schedule(start: Any, duration_minutes: int, work_week: Optional[WorkWeek] = None) -> Dict[str, Any]:
    segments = generate_schedule_blocks(start, duration_minutes, work_week)
    return {
        "isMultiDay": len(segments) > 1,
        "totalDays": len(segments),
        "totalDurationMinutes": duration_minutes,
        "startDate": segments[0]["date"] if segments else None,
        "endDate": segments[-1]["date"] if segments else None,
        "segments": segments,
    }


def get_segment_for_date(blocks: Optional[List[Dict[str, Any]]], day: Any) -> Optional[Dict[str, Any]]:
    target = normalize_date(day)
    if target is None or not blocks:
        return None
    for block in blocks:
        if normalize_date(block.get("date")) == target:
            return block
    return None


def format_segment_display(block: Optional[Dict[str, Any]], total_days: int) -> str:
    """
    "Day 1 of 3: 8:00 AM - 4:00 PM"
    """
    if not block:
        return ""
    return (
        f"Day {block['dayNumber']} of {total_days}: "
        f"{format_12h(block['startTime'])} - {format_12h(block['endTime'])}"
    )


def get_multi_day_label(blocks: Optional[List[Dict[str, Any]]], day: Any) -> str:
    """
    "Day 2/3" for a date inside a multi-day schedule, else "".
    """
    if not blocks or len(blocks) < 2:
        return ""
    block = get_segment_for_date(blocks, day)
    if block is None:
        return ""
    return f"Day {block['dayNumber']}/{len(blocks)}"


# Crew requirements

def build_crew_requirements(crew_size: Optional[int], duration_minutes: Optional[int]) -> Dict[str, Any]:
    """
    Crew sizing for a job. Extra technicians add labor hours; they do not
    shorten the number of days.
    """
    size = crew_size if crew_size and crew_size > 0 else 1
    duration = duration_minutes or settings.default_job_duration_min
    return {
        "required": size,
        "minimum": max(1, size - 1),
        "maximum": size + 2,
        "source": "specified" if crew_size else "default",
        "requiresMultipleTechs": size > 1,
        "totalLaborHours": duration / 60 * size,
        "notes": [f"Direct job: {size} techs specified"] if size > 1 else [],
    }


def validate_crew_size(crew_ids: List[Any], requirements: Optional[Dict[str, Any]]) -> None:
    if not requirements:
        return
    count = len(set(str(c) for c in crew_ids))
    minimum = int(requirements.get("minimum") or 1)
    maximum = requirements.get("maximum")
    if count < minimum:
        raise PolicyViolation(f"Crew of {count} is below the minimum of {minimum}")
    if maximum is not None and count > int(maximum):
        raise PolicyViolation(f"Crew of {count} exceeds the maximum of {maximum}")
