"""
Technician availability.

Answers two questions for the scheduler: is a technician free on a given date
(approved time off, daily capacity), and which dates in a range are blocked.

Stored time-off entries are dicts shaped like
{id, techId, startDate, endDate, type, status, notes}. Dates coming out of the
store may be strings, datetimes or timestamp wrappers; normalize_date turns all
of them into `date` and everything past it compares dates only.
"""
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog

from .time_rules import as_utc, combine_date_time, parse_hhmm

log = structlog.get_logger(__name__)

APPROVED = "approved"
DENIED = "denied"

# Job statuses that no longer hold a technician's time
INACTIVE_JOB_STATUSES = {"cancelled", "completed"}


def normalize_date(value: Any) -> Optional[date]:
    """
    Coerce a stored date-ish value into a `date`.

    Accepts "YYYY-MM-DD", ISO datetime strings, date/datetime objects and
    timestamp wrappers exposing to_datetime()/ToDatetime(). Returns None for
    anything it cannot read.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            if len(text) == 10:
                return date.fromisoformat(text)
            return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
        except ValueError:
            return None
    for attr in ("to_datetime", "ToDatetime"):
        converter = getattr(value, attr, None)
        if callable(converter):
            try:
                return normalize_date(converter())
            except (TypeError, ValueError):
                return None
    return None


def _get(entry: Any, key: str, default=None):
    if isinstance(entry, dict):
        return entry.get(key, default)
    return getattr(entry, key, default)


def entry_window(entry: Any) -> Optional[Tuple[date, date]]:
    """(start, end) of a time-off entry; a missing end date means a single day."""
    start = normalize_date(_get(entry, "startDate"))
    if start is None:
        return None
    end = normalize_date(_get(entry, "endDate")) or start
    return start, end


def is_date_blocked_by_time_off(check_date: Any, entries: Optional[Iterable[Any]]) -> Dict[str, Any]:
    """
    Check whether a date falls inside any approved time-off entry.

    Args:
        check_date: Date to check (any form normalize_date accepts)
        entries: Time-off entries

    Returns:
        {"blocked": bool, "reason": type, "notes": notes}. The first matching
        entry in list order supplies the reason.
    """
    day = normalize_date(check_date)
    if day is None or not entries:
        return {"blocked": False}

    for entry in entries:
        status = _get(entry, "status")
        if status and status != APPROVED:
            continue
        window = entry_window(entry)
        if window is None:
            continue
        start, end = window
        if start <= day <= end:
            return {
                "blocked": True,
                "reason": _get(entry, "type") or "other",
                "notes": _get(entry, "notes") or "",
            }
    return {"blocked": False}


def tech_time_off(tech: Any) -> List[Any]:
    """Time-off entries carried on a technician: `time_off`, else scheduling.timeOff."""
    direct = _get(tech, "time_off") or _get(tech, "timeOff")
    if direct:
        return list(direct)
    scheduling = _get(tech, "scheduling") or {}
    return list(_get(scheduling, "timeOff") or [])


def is_tech_available_on_date(tech: Any, check_date: Any) -> Dict[str, Any]:
    if tech is None:
        return {"available": True}
    result = is_date_blocked_by_time_off(check_date, tech_time_off(tech))
    if result["blocked"]:
        reason = f"On {result['reason']}"
        if result.get("notes"):
            reason += f": {result['notes']}"
        return {"available": False, "reason": reason}
    return {"available": True}


def get_time_off_in_range(entries: Optional[Iterable[Any]], start: Any, end: Any) -> List[Any]:
    """
    Entries overlapping [start, end] (inclusive). Entries of every status are
    returned; callers filter by status.
    """
    range_start = normalize_date(start)
    range_end = normalize_date(end)
    if range_start is None or range_end is None or not entries:
        return []

    found = []
    for entry in entries:
        window = entry_window(entry)
        if window is None:
            continue
        entry_start, entry_end = window
        if entry_start <= range_end and entry_end >= range_start:
            found.append(entry)
    return found


def get_time_off_for_tech(entries: Optional[Iterable[Any]], tech_id: Any) -> List[Any]:
    if not entries:
        return []
    wanted = str(tech_id)
    return [e for e in entries if str(_get(e, "techId")) == wanted]


def get_upcoming_time_off(entries: Optional[Iterable[Any]], today: date, days: int = 90) -> List[Any]:
    """Non-denied entries overlapping the next `days` days, earliest first."""
    upcoming = [
        e for e in get_time_off_in_range(entries, today, today + timedelta(days=days))
        if _get(e, "status") != DENIED
    ]
    return sorted(upcoming, key=lambda e: entry_window(e)[0])


def get_blocked_dates(
    entries: Optional[Iterable[Any]],
    start: Any,
    end: Any,
    work_week=None,
) -> List[Tuple[date, str]]:
    """
    Every calendar day in [start, end] that is blocked, with its reason.

    Non-working days are reported as "non_working_day" when a work week is
    given; time off reports its type.
    """
    range_start = normalize_date(start)
    range_end = normalize_date(end)
    if range_start is None or range_end is None or range_end < range_start:
        return []

    candidates = get_time_off_in_range(entries, range_start, range_end)
    blocked = []
    day = range_start
    while day <= range_end:
        if work_week is not None and not work_week.is_working_day(day):
            blocked.append((day, "non_working_day"))
        else:
            result = is_date_blocked_by_time_off(day, candidates)
            if result["blocked"]:
                blocked.append((day, result["reason"]))
        day += timedelta(days=1)
    return blocked


# Capacity

def _job_tech_ids(job: Any) -> set:
    ids = {str(i) for i in (_get(job, "assigned_crew_ids") or [])}
    lead = _get(job, "assigned_tech_id")
    if lead is not None:
        ids.add(str(lead))
    return ids


def _is_active(job: Any) -> bool:
    return (_get(job, "status") or "pending") not in INACTIVE_JOB_STATUSES


def _job_minutes_on(job: Any, day: date) -> int:
    blocks = _get(job, "schedule_blocks") or []
    if _get(job, "is_multi_day") and blocks:
        return sum(
            int(b.get("durationMinutes") or 0)
            for b in blocks
            if normalize_date(b.get("date")) == day
        )
    if normalize_date(_get(job, "scheduled_date")) == day:
        return int(_get(job, "estimated_duration") or 0)
    return 0


def committed_minutes_on_date(jobs: Iterable[Any], tech_id: Any, day: Any) -> int:
    """Minutes of active work the technician already holds on `day`."""
    target = normalize_date(day)
    if target is None:
        return 0
    wanted = str(tech_id)
    return sum(
        _job_minutes_on(job, target)
        for job in jobs
        if _is_active(job) and wanted in _job_tech_ids(job)
    )


def is_tech_schedulable(
    tech: Any,
    day: Any,
    jobs: Iterable[Any],
    work_week,
    minutes: int = 0,
    exclude_job_id: Any = None,
) -> Dict[str, Any]:
    """
    Time off and daily capacity combined.

    Returns:
        {"available": bool, "reason": str?, "committedMinutes": int}
    """
    availability = is_tech_available_on_date(tech, day)
    if not availability["available"]:
        return availability

    others = [j for j in jobs if exclude_job_id is None or str(_get(j, "id")) != str(exclude_job_id)]
    committed = committed_minutes_on_date(others, _get(tech, "id"), day)
    if committed + minutes > work_week.daily_capacity_min:
        return {"available": False, "reason": "Fully booked", "committedMinutes": committed}
    return {"available": True, "committedMinutes": committed}


def _times_overlap(start1: datetime, end1: datetime, start2: datetime, end2: datetime) -> bool:
    """
    Two intervals overlap if start1 < end2 AND start2 < end1.
    """
    return start1 < end2 and start2 < end1


def job_windows(job: Any) -> List[Tuple[datetime, datetime]]:
    """UTC intervals a job occupies: one per schedule block, else its scheduled window."""
    tz = _get(job, "scheduled_timezone")
    blocks = _get(job, "schedule_blocks") or []
    if _get(job, "is_multi_day") and blocks:
        windows = []
        for block in blocks:
            day = normalize_date(block.get("date"))
            start_t = parse_hhmm(block.get("startTime"))
            if day is None or start_t is None:
                continue
            start = combine_date_time(day, start_t, tz)
            windows.append((start, start + timedelta(minutes=int(block.get("durationMinutes") or 0))))
        return windows

    start = as_utc(_get(job, "scheduled_time"))
    if start is None:
        return []
    end = as_utc(_get(job, "scheduled_end_time"))
    if end is None:
        end = start + timedelta(minutes=int(_get(job, "estimated_duration") or 0))
    return [(start, end)]


def find_crew_conflict(tech_id: Any, target_job: Any, jobs: Iterable[Any]) -> Optional[Any]:
    """
    First active job of the technician whose time overlaps the target job.
    """
    wanted = str(tech_id)
    target_windows = job_windows(target_job)
    if not target_windows:
        return None
    target_id = str(_get(target_job, "id"))

    for job in jobs:
        if str(_get(job, "id")) == target_id or not _is_active(job):
            continue
        if wanted not in _job_tech_ids(job):
            continue
        for start, end in job_windows(job):
            if any(_times_overlap(start, end, ts, te) for ts, te in target_windows):
                log.info("crew_conflict", tech_id=wanted, job_id=target_id, conflicting_job_id=str(_get(job, "id")))
                return job
    return None
