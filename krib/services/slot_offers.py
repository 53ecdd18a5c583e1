"""
Slot offers.

A contractor offers a customer up to `offer_max_slots` time windows for a job;
the customer accepts one. Slots live in jobs.scheduling["offeredSlots"] as
{id, start, end, status, offeredAt, supersededBy?} with UTC ISO instants.

Job states: pending/pending_schedule -> slots_offered -> scheduled, and
slots_offered -> slots_offered when a batch is re-offered. A lapsed batch
returns the job to pending_schedule.
"""
import copy
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified

from ..config import settings
from ..db import commit_or_rollback
from ..errors import Conflict, PolicyViolation
from ..models.models import Contractor, Job, Technician
from .audit import create_audit_log
from .availability import is_date_blocked_by_time_off, normalize_date
from .schedule_blocks import WorkWeek, generate_schedule_blocks
from .time_off import time_off_for_technician
from .time_rules import (
    as_utc, combine_date_time, format_12h, format_hhmm, parse_hhmm,
    today_in_timezone, utc_now, utc_to_local,
)

log = structlog.get_logger(__name__)

OFFERABLE_STATUSES = {"pending", "pending_schedule", "slots_offered"}

SLOT_OFFERED = "offered"
SLOT_ACCEPTED = "accepted"
SLOT_SUPERSEDED = "superseded"
SLOT_EXPIRED = "expired"

TIME_PRESETS = [
    {"id": "morning", "label": "Morning", "start": "08:00", "end": "12:00"},
    {"id": "afternoon", "label": "Afternoon", "start": "12:00", "end": "17:00"},
    {"id": "evening", "label": "Evening", "start": "17:00", "end": "20:00"},
]

QUICK_FILL_DAYS = 3
QUICK_FILL_START = "09:00"
QUICK_FILL_END = "12:00"

# Latest selectable start/end in the time picker
_LAST_PICKER_MINUTE = 20 * 60


def _iso(value: datetime) -> str:
    return as_utc(value).isoformat()


def _parse_instant(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return as_utc(value)
    if not value or not isinstance(value, str):
        return None
    try:
        return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None


def next_business_days(today: date, count: Optional[int] = None) -> List[date]:
    """
    The next `count` business days starting tomorrow. Sundays are never
    business days, independent of any contractor's work week.
    """
    count = settings.offer_window_business_days if count is None else count
    days = []
    day = today + timedelta(days=1)
    while len(days) < count:
        if day.weekday() != 6:
            days.append(day)
        day += timedelta(days=1)
    return days


def time_options(step: Optional[int] = None) -> List[Dict[str, str]]:
    """
    Picker values from 00:00 to 20:00 in `step` minute increments.
    """
    step = step or settings.offer_slot_step_min
    return [
        {"value": format_hhmm(m), "label": format_12h(format_hhmm(m))}
        for m in range(0, _LAST_PICKER_MINUTE + 1, step)
    ]


def build_offered_slots(slots: List[Dict[str, Any]], timezone_str: Optional[str], now: datetime) -> List[Dict[str, Any]]:
    """
    Turn {id?, date, startTime, endTime} inputs into offered slots with UTC
    start/end instants, combining each date and time in the job's timezone.
    """
    stamp = int(now.timestamp() * 1000)
    offered = []
    seen = set()
    for idx, slot in enumerate(slots):
        day = normalize_date(slot.get("date"))
        start_t = parse_hhmm(slot.get("startTime"))
        end_t = parse_hhmm(slot.get("endTime"))
        if day is None or start_t is None or end_t is None:
            raise PolicyViolation(f"Slot {idx + 1} needs a date, start time and end time")

        start = combine_date_time(day, start_t, timezone_str)
        end = combine_date_time(day, end_t, timezone_str)
        if end <= start:
            raise PolicyViolation(f"Slot {idx + 1} must end after it starts")

        key = (day, start_t)
        if key in seen:
            raise PolicyViolation(f"Slot {idx + 1} duplicates another slot")
        seen.add(key)

        offered.append({
            "id": slot.get("id") or f"slot_{stamp}_{idx + 1}",
            "start": _iso(start),
            "end": _iso(end),
            "status": SLOT_OFFERED,
            "offeredAt": _iso(now),
        })

    if len({s["id"] for s in offered}) != len(offered):
        raise PolicyViolation("Slot ids must be unique")
    return offered


def _assigned_time_off(db: Session, job: Job) -> List[Dict[str, Any]]:
    if job.assigned_tech_id is None:
        return []
    tech = db.query(Technician).filter(Technician.id == job.assigned_tech_id).first()
    contractor = db.query(Contractor).filter(Contractor.id == job.contractor_id).first()
    if tech is None or contractor is None:
        return []
    return time_off_for_technician(contractor, tech)


def _work_week_for(db: Session, job: Job) -> WorkWeek:
    contractor = db.query(Contractor).filter(Contractor.id == job.contractor_id).first()
    return WorkWeek.for_contractor(contractor) if contractor else WorkWeek.from_settings()


def _touch(job: Job, now: datetime) -> None:
    job.updated_at = now
    job.last_activity = now


def _set_scheduling(job: Job, scheduling: Dict[str, Any]) -> None:
    job.scheduling = scheduling
    flag_modified(job, "scheduling")


def create_offer(
    db: Session,
    job: Job,
    slots: List[Dict[str, Any]],
    message: Optional[str] = None,
    actor_id=None,
    actor_role: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Offer a batch of time slots to the customer.

    All policy checks run before anything is written: slot count, end after
    start, dates inside the business-day window, working days only for
    multi-day jobs, and the assigned technician not being on approved time
    off. A previous batch still on the job is moved to offerHistory with its
    open slots marked superseded.

    Args:
        db: Database session
        job: Job to offer slots for
        slots: [{id?, date, startTime, endTime}]
        message: Optional note to the customer
        actor_id: Contractor user making the offer
        actor_role: Role recorded on the audit entry
        now: Current instant (UTC); defaults to the wall clock

    Returns:
        The job's updated scheduling document
    """
    now = as_utc(now) if now else utc_now()
    if job.status not in OFFERABLE_STATUSES:
        raise Conflict(f"Cannot offer slots for a job in status '{job.status}'")
    if not slots:
        raise PolicyViolation("At least one time slot is required")
    if len(slots) > settings.offer_max_slots:
        raise PolicyViolation(f"Maximum {settings.offer_max_slots} time slots per offer")

    tz = job.scheduled_timezone or settings.tz_default
    window = set(next_business_days(today_in_timezone(tz, now)))
    for idx, slot in enumerate(slots):
        day = normalize_date(slot.get("date"))
        if day is not None and day not in window:
            raise PolicyViolation(
                f"Slot {idx + 1} date {day.isoformat()} is outside the next "
                f"{settings.offer_window_business_days} business days"
            )

    offered = build_offered_slots(slots, tz, now)

    # Day 1 of a multi-day job is the accepted slot's date, so it must be a working day
    if job.is_multi_day:
        work_week = _work_week_for(db, job)
        for idx, slot in enumerate(slots):
            day = normalize_date(slot.get("date"))
            if not work_week.is_working_day(day):
                raise PolicyViolation(
                    f"Slot {idx + 1} date {day.isoformat()} is not a working day for this multi-day job"
                )

    time_off = _assigned_time_off(db, job)
    if time_off:
        for slot in slots:
            blocked = is_date_blocked_by_time_off(slot.get("date"), time_off)
            if blocked["blocked"]:
                raise PolicyViolation(
                    f"Assigned technician is on {blocked['reason']} on {normalize_date(slot.get('date')).isoformat()}"
                )

    scheduling = copy.deepcopy(job.scheduling or {})
    previous = scheduling.get("offeredSlots") or []
    if previous:
        for slot in previous:
            if slot.get("status") == SLOT_OFFERED:
                slot["status"] = SLOT_SUPERSEDED
                slot["supersededBy"] = None
        history = scheduling.get("offerHistory") or []
        history.append({
            "offeredAt": scheduling.get("offeredAt"),
            "offeredMessage": scheduling.get("offeredMessage"),
            "slots": previous,
            "replacedAt": _iso(now),
        })
        scheduling["offerHistory"] = history

    scheduling.update({
        "offeredSlots": offered,
        "offeredAt": _iso(now),
        "offeredMessage": message or None,
        "requestedNewTimes": False,
        "expiresAt": _iso(now + timedelta(hours=settings.offer_expiry_hours)),
    })
    _set_scheduling(job, scheduling)

    before_status = job.status
    job.status = "slots_offered"
    job.proposed_times = list(job.proposed_times or []) + [{
        "date": offered[0]["start"],
        "proposedBy": "contractor",
        "createdAt": _iso(now),
        "type": "multi_slot",
        "slotCount": len(offered),
    }]
    flag_modified(job, "proposed_times")
    _touch(job, now)

    create_audit_log(
        db,
        entity_type="job",
        entity_id=str(job.id),
        action="OFFER",
        actor_id=actor_id,
        actor_role=actor_role,
        source="api",
        changes_json={"status": {"before": before_status, "after": job.status}},
        context={"slot_ids": [s["id"] for s in offered], "replaced_batch": bool(previous)},
    )
    commit_or_rollback(db, "slot offer", job_id=str(job.id))
    log.info("slots_offered", job_id=str(job.id), count=len(offered), reoffer=bool(previous))
    return scheduling


def record_customer_preferences(
    db: Session,
    job: Job,
    prefs: Dict[str, Any],
    actor_id=None,
    actor_role: Optional[str] = None,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> Dict[str, Any]:
    """
    Store the customer's scheduling preferences on the job. Advisory only;
    nothing checks offered slots against them.
    """
    now = as_utc(now) if now else utc_now()
    record = {
        "type": "new_times",
        "timeOfDay": list(prefs.get("time_of_day") or []),
        "dayPreference": prefs.get("day_preference"),
        "specificDates": prefs.get("specific_dates"),
        "additionalNotes": prefs.get("additional_notes"),
        "requestedAt": _iso(now),
        "requestedBy": str(actor_id) if actor_id else None,
    }
    job.scheduling_requests = list(job.scheduling_requests or []) + [record]
    flag_modified(job, "scheduling_requests")
    _touch(job, now)

    if commit:
        create_audit_log(
            db,
            entity_type="job",
            entity_id=str(job.id),
            action="PREFERENCES",
            actor_id=actor_id,
            actor_role=actor_role,
            source="api",
            context={"preferences": record},
        )
        commit_or_rollback(db, "customer preferences", job_id=str(job.id))
        log.info("customer_preferences_recorded", job_id=str(job.id))
    return record


def request_new_times(
    db: Session,
    job: Job,
    prefs: Dict[str, Any],
    actor_id=None,
    actor_role: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Customer turns down the current batch and asks for other times.
    """
    now = as_utc(now) if now else utc_now()
    if job.status != "slots_offered":
        raise Conflict("No open slot offer to decline")

    record = record_customer_preferences(db, job, prefs, actor_id, actor_role, now, commit=False)
    scheduling = copy.deepcopy(job.scheduling or {})
    scheduling["requestedNewTimes"] = True
    scheduling["requestedNewTimesAt"] = _iso(now)
    _set_scheduling(job, scheduling)

    create_audit_log(
        db,
        entity_type="job",
        entity_id=str(job.id),
        action="REQUEST_NEW_TIMES",
        actor_id=actor_id,
        actor_role=actor_role,
        source="api",
        context={"preferences": record},
    )
    commit_or_rollback(db, "new time request", job_id=str(job.id))
    log.info("new_times_requested", job_id=str(job.id))
    return record


def _offer_expired(scheduling: Dict[str, Any], now: datetime) -> bool:
    expires_at = _parse_instant(scheduling.get("expiresAt"))
    return expires_at is not None and expires_at <= now


def accept_slot(
    db: Session,
    job: Job,
    slot_id: str,
    actor_id=None,
    actor_role: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Customer accepts one offered slot.

    The chosen slot becomes accepted and every other open slot in the batch
    superseded by it. The job is scheduled at the slot's start; multi-day jobs
    get per-day blocks from the slot's local date, day 1 starting at the
    slot's local start time.

    Raises:
        Conflict: job not awaiting a choice, unknown slot, slot not open,
            the batch has expired, or a multi-day slot no longer falls on a
            working day
    """
    now = as_utc(now) if now else utc_now()
    if job.status != "slots_offered":
        raise Conflict(f"Job is not awaiting a slot choice (status '{job.status}')")

    scheduling = copy.deepcopy(job.scheduling or {})
    slots = scheduling.get("offeredSlots") or []
    chosen = next((s for s in slots if s.get("id") == slot_id), None)
    if chosen is None:
        raise Conflict("Slot is not part of the current offer")
    if chosen.get("status") != SLOT_OFFERED:
        raise Conflict(f"Slot is {chosen.get('status')}, not offered")
    if _offer_expired(scheduling, now):
        raise Conflict("This offer has expired; ask the contractor for new times")

    start = _parse_instant(chosen["start"])
    end = _parse_instant(chosen["end"])
    tz = job.scheduled_timezone or settings.tz_default
    local_start = utc_to_local(start, tz)
    local_day = local_start.date()

    blocks = None
    if job.is_multi_day:
        work_week = _work_week_for(db, job)
        if not work_week.is_working_day(local_day):
            raise Conflict(f"{local_day.isoformat()} is no longer a working day; ask the contractor for new times")
        blocks = generate_schedule_blocks(
            local_day, job.estimated_duration, work_week,
            first_day_start=local_start.time().replace(second=0, microsecond=0),
        )

    for slot in slots:
        if slot is chosen:
            slot["status"] = SLOT_ACCEPTED
            slot["acceptedAt"] = _iso(now)
        elif slot.get("status") == SLOT_OFFERED:
            slot["status"] = SLOT_SUPERSEDED
            slot["supersededBy"] = slot_id

    scheduling.update({
        "offeredSlots": slots,
        "selectedSlotId": slot_id,
        "selectedAt": _iso(now),
        "confirmedSlot": {"start": chosen["start"], "end": chosen["end"]},
        "confirmedAt": _iso(now),
    })
    _set_scheduling(job, scheduling)

    # The confirmed slot fixes the start; multi-day jobs run on to their last block
    before_status = job.status
    job.status = "scheduled"
    job.scheduled_date = local_day.isoformat()
    job.scheduled_time = start
    job.scheduled_end_time = end
    if blocks:
        job.schedule_blocks = blocks
        flag_modified(job, "schedule_blocks")
        last = blocks[-1]
        job.scheduled_end_time = combine_date_time(normalize_date(last["date"]), parse_hhmm(last["endTime"]), tz)
    _touch(job, now)

    create_audit_log(
        db,
        entity_type="job",
        entity_id=str(job.id),
        action="ACCEPT",
        actor_id=actor_id,
        actor_role=actor_role,
        source="api",
        changes_json={"status": {"before": before_status, "after": job.status}},
        context={"slot_id": slot_id, "start": chosen["start"], "end": chosen["end"]},
    )
    commit_or_rollback(db, "slot acceptance", job_id=str(job.id))
    log.info("slot_accepted", job_id=str(job.id), slot_id=slot_id, scheduled_date=job.scheduled_date)
    return scheduling


def expire_stale_offers(db: Session, now: Optional[datetime] = None) -> int:
    """
    Lapse every open offer whose expiresAt has passed.

    Returns:
        Number of jobs returned to pending_schedule
    """
    now = as_utc(now) if now else utc_now()
    expired = 0
    for job in db.query(Job).filter(Job.status == "slots_offered").all():
        scheduling = copy.deepcopy(job.scheduling or {})
        if not _offer_expired(scheduling, now):
            continue
        for slot in scheduling.get("offeredSlots") or []:
            if slot.get("status") == SLOT_OFFERED:
                slot["status"] = SLOT_EXPIRED
        scheduling["expiredAt"] = _iso(now)
        _set_scheduling(job, scheduling)
        job.status = "pending_schedule"
        _touch(job, now)
        create_audit_log(
            db,
            entity_type="job",
            entity_id=str(job.id),
            action="EXPIRE",
            actor_role="system",
            source="cron",
            changes_json={"status": {"before": "slots_offered", "after": "pending_schedule"}},
            context={"expires_at": scheduling.get("expiresAt")},
        )
        expired += 1

    if expired:
        commit_or_rollback(db, "offer expiry")
    log.info("offers_expired", count=expired)
    return expired


def quick_fill_slots(today: date) -> List[Dict[str, str]]:
    """Morning slots on the next three business days."""
    return [
        {"id": f"slot_{idx}", "date": day.isoformat(), "startTime": QUICK_FILL_START, "endTime": QUICK_FILL_END}
        for idx, day in enumerate(next_business_days(today, QUICK_FILL_DAYS))
    ]


def apply_suggestion(slots: List[Dict[str, Any]], suggestion: Dict[str, Any]) -> List[Dict[str, Any]]:
    """
    Add a suggested {date, startTime, endTime} to a draft slot list.

    An empty single draft slot is filled in place. A suggestion matching an
    existing date and start time, or a full list, is rejected.
    """
    day = normalize_date(suggestion.get("date"))
    if day is None:
        raise PolicyViolation("Suggestion needs a valid date")
    date_str = day.isoformat()

    for slot in slots:
        if normalize_date(slot.get("date")) == day and slot.get("startTime") == suggestion.get("startTime"):
            raise PolicyViolation("This time is already added")

    new_slot = {"date": date_str, "startTime": suggestion.get("startTime"), "endTime": suggestion.get("endTime")}
    if len(slots) == 1 and not slots[0].get("date"):
        return [dict(new_slot, id=slots[0].get("id") or "slot_1")]
    if len(slots) >= settings.offer_max_slots:
        raise PolicyViolation(f"Maximum {settings.offer_max_slots} slots - remove one first")
    return list(slots) + [dict(new_slot, id=_next_slot_id(slots))]


def _next_slot_id(slots: List[Dict[str, Any]]) -> str:
    taken = {s.get("id") for s in slots}
    n = len(slots) + 1
    while f"slot_{n}" in taken:
        n += 1
    return f"slot_{n}"
