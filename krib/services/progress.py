"""
Multi-day job progress.

Each working day of a multi-day job closes with a daily progress record and a
handoff note for the next day's crew. Both are immutable once written and are
committed together.
"""
import copy
import uuid
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified

from ..db import commit_or_rollback
from ..errors import Conflict, PolicyViolation
from ..models.models import Contractor, Job, JobDailyProgress, JobHandoff, Technician
from .audit import create_audit_log
from .availability import normalize_date
from .schedule_blocks import WorkWeek, format_segment_display, get_segment_for_date
from .time_rules import utc_now

log = structlog.get_logger(__name__)

DAILY_IN_PROGRESS = "in_progress"
DAILY_COMPLETED = "completed"
DAILY_BLOCKED = "blocked"
DAILY_NOT_STARTED = "not_started"

HANDOFF_END_OF_DAY = "end_of_day"

# Statuses in which crews may record work on a job
WORKABLE_STATUSES = {"scheduled", "in_progress", "paused"}


def _ids(values) -> List[str]:
    return [str(v) for v in (values or [])]


def load_progress(db: Session, job_id) -> List[JobDailyProgress]:
    return (
        db.query(JobDailyProgress)
        .filter(JobDailyProgress.job_id == job_id)
        .order_by(JobDailyProgress.day_number.asc())
        .all()
    )


def load_handoffs(db: Session, job_id) -> List[JobHandoff]:
    return (
        db.query(JobHandoff)
        .filter(JobHandoff.job_id == job_id)
        .order_by(JobHandoff.date.asc(), JobHandoff.created_at.asc())
        .all()
    )


def _work_week_for(db: Session, job: Job) -> WorkWeek:
    contractor = db.query(Contractor).filter(Contractor.id == job.contractor_id).first()
    return WorkWeek.for_contractor(contractor) if contractor else WorkWeek.from_settings()


def submit_daily_handoff(
    db: Session,
    job: Job,
    submission: Dict[str, Any],
    actor_id=None,
    actor_role: Optional[str] = None,
    technician: Optional[Technician] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Record one day's progress and the handoff to the next crew.

    Args:
        db: Database session
        job: Multi-day job being worked
        submission: Fields of DailyHandoffCreate (snake_case)
        actor_id: User submitting
        actor_role: Role recorded on the audit entry
        technician: Technician record of the submitter, when there is one
        now: Current instant (UTC)

    Returns:
        {"progress": JobDailyProgress, "handoff": JobHandoff}

    Raises:
        PolicyViolation: not a multi-day job, empty work list, percent out of
            range, non-working day, or a date earlier than the last record
        Conflict: job not in a workable status, or the date already recorded
    """
    now = now or utc_now()
    if not job.is_multi_day:
        raise PolicyViolation("Daily progress is only tracked for multi-day jobs")
    if job.status not in WORKABLE_STATUSES:
        raise Conflict(f"Cannot record progress for a job in status '{job.status}'")

    work_completed = [w for w in (submission.get("work_completed") or []) if w]
    if not work_completed:
        raise PolicyViolation("At least one work completed item is required")
    percent = submission.get("percent_complete")
    if percent is None or not 0 <= int(percent) <= 100:
        raise PolicyViolation("Percent complete must be between 0 and 100")
    percent = int(percent)

    day = normalize_date(submission.get("date"))
    if day is None:
        raise PolicyViolation("A valid date is required")
    work_week = _work_week_for(db, job)
    if not work_week.is_working_day(day):
        raise PolicyViolation(f"{day.isoformat()} is not a working day")

    existing = load_progress(db, job.id)
    if any(r.date == day for r in existing):
        raise Conflict(f"Progress for {day.isoformat()} has already been recorded")
    if existing and max(r.date for r in existing) > day:
        raise PolicyViolation("Progress must be recorded in date order")
    day_number = len(existing) + 1

    planned = (job.per_day_crew or {}).get(day.isoformat()) or {}
    crew_ids = _ids(submission.get("crew_ids")) or _ids(planned.get("crewIds")) or _ids(job.assigned_crew_ids)
    if not crew_ids and technician is not None:
        crew_ids = [str(technician.id)]
    lead_tech_id = (
        submission.get("lead_tech_id")
        or planned.get("leadTechId")
        or job.assigned_tech_id
        or (technician.id if technician is not None else None)
    )

    record = JobDailyProgress(
        id=uuid.uuid4(),
        job_id=job.id,
        date=day,
        day_number=day_number,
        crew_ids=crew_ids,
        lead_tech_id=_as_uuid(lead_tech_id),
        hours_worked=float(submission.get("hours_worked") or 0),
        percent_complete=percent,
        work_completed=work_completed,
        issues_encountered=list(submission.get("issues") or []),
        materials_used=list(submission.get("materials_used") or []),
        notes=submission.get("notes") or "",
        status=_status_value(submission.get("status")) or DAILY_COMPLETED,
        recorded_at=now,
        recorded_by=_as_uuid(actor_id),
    )
    db.add(record)

    next_crew = _ids(submission.get("next_crew_ids"))
    next_lead = submission.get("next_lead_tech_id")
    handoff = JobHandoff(
        job_id=job.id,
        progress=record,
        type=HANDOFF_END_OF_DAY,
        date=day,
        day_number=day_number,
        from_crew_ids=crew_ids,
        from_lead_tech_id=_as_uuid(lead_tech_id),
        to_crew_ids=next_crew or crew_ids,
        to_lead_tech_id=_as_uuid(next_lead or lead_tech_id),
        work_completed=work_completed,
        work_remaining=list(submission.get("work_remaining") or []),
        issues=list(submission.get("issues") or []),
        materials_needed=list(submission.get("materials_needed") or []),
        access_notes=submission.get("access_notes") or "",
        safety_notes=submission.get("safety_notes") or "",
        customer_notes=submission.get("customer_notes") or "",
        created_at=now,
        created_by=_as_uuid(actor_id),
    )
    db.add(handoff)

    # A different crew named for tomorrow becomes that day's planned assignment
    if next_crew and set(next_crew) != set(crew_ids):
        next_day = work_week.next_working_day(day + timedelta(days=1))
        per_day = copy.deepcopy(job.per_day_crew or {})
        per_day[next_day.isoformat()] = {
            "crewIds": next_crew,
            "leadTechId": str(next_lead) if next_lead else (str(lead_tech_id) if lead_tech_id else None),
        }
        job.per_day_crew = per_day
        flag_modified(job, "per_day_crew")

    before_status = job.status
    job.overall_progress_percent = percent
    if percent >= 100:
        job.status = "pending_completion"
    elif job.status == "scheduled":
        job.status = "in_progress"
    job.updated_at = now
    job.last_activity = now

    create_audit_log(
        db,
        entity_type="daily_progress",
        entity_id=str(record.id),
        action="HANDOFF",
        actor_id=actor_id,
        actor_role=actor_role,
        source="api",
        changes_json={"status": {"before": before_status, "after": job.status}} if before_status != job.status else None,
        context={"job_id": str(job.id), "day_number": day_number, "date": day.isoformat(), "percent_complete": percent},
    )
    commit_or_rollback(db, "daily progress", job_id=str(job.id), date=day.isoformat())
    log.info("daily_handoff_recorded", job_id=str(job.id), day_number=day_number, percent_complete=percent)
    return {"progress": record, "handoff": handoff}


def _as_uuid(value):
    if value is None or value == "":
        return None
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


def _status_value(value) -> Optional[str]:
    if value is None:
        return None
    return getattr(value, "value", value)


# Read side

def get_progress_summary(job: Job, records: List[JobDailyProgress], today: date) -> Dict[str, Any]:
    completed = [r for r in records if r.status == DAILY_COMPLETED]
    hours = sum(r.hours_worked or 0 for r in records)
    blocks = job.schedule_blocks or []
    if not blocks:
        return {
            "daysTotal": 1,
            "daysCompleted": len(completed),
            "percentComplete": job.overall_progress_percent or 0,
            "hoursWorked": hours,
            "currentDay": 1,
            "isComplete": job.status == "completed",
        }

    segment = get_segment_for_date(blocks, today)
    return {
        "daysTotal": len(blocks),
        "daysCompleted": len(completed),
        "percentComplete": job.overall_progress_percent or 0,
        "hoursWorked": hours,
        "currentDay": segment["dayNumber"] if segment else None,
        "isToday": segment is not None,
        "isComplete": job.status == "completed",
        "daysRemaining": max(0, len(blocks) - len(completed)),
    }


def get_latest_handoff(handoffs: List[JobHandoff]) -> Optional[JobHandoff]:
    if not handoffs:
        return None
    return max(handoffs, key=lambda h: (h.date, h.day_number))


def get_handoff_for_date(handoffs: List[JobHandoff], day: Any) -> Optional[JobHandoff]:
    target = normalize_date(day)
    if target is None:
        return None
    return next((h for h in handoffs if h.date == target), None)


def get_crew_continuity_report(job: Job, records: List[JobDailyProgress], handoffs: List[JobHandoff]) -> Dict[str, Any]:
    """
    Which crew was planned and which actually worked each scheduled day,
    and how many times the crew changed between consecutive days.
    """
    blocks = job.schedule_blocks or []
    if not blocks:
        return {"isMultiDay": False, "totalDays": 1, "crewChanges": 0, "report": []}

    by_date = {r.date: r for r in records}
    handoff_by_date = {h.date: h for h in handoffs}
    per_day = job.per_day_crew or {}

    report = []
    for block in blocks:
        day = normalize_date(block["date"])
        progress = by_date.get(day)
        handoff = handoff_by_date.get(day)
        planned = per_day.get(block["date"]) or {}
        lead = (
            (progress.lead_tech_id if progress else None)
            or planned.get("leadTechId")
            or job.assigned_tech_id
        )
        report.append({
            "date": block["date"],
            "dayNumber": block["dayNumber"],
            "scheduledCrewIds": _ids(planned.get("crewIds")) or _ids(job.assigned_crew_ids),
            "actualCrewIds": _ids(progress.crew_ids) if progress else [],
            "leadTechId": str(lead) if lead else None,
            "status": progress.status if progress else DAILY_NOT_STARTED,
            "hasHandoff": handoff is not None,
            "handoffNotes": list(handoff.work_remaining or []) if handoff else [],
        })

    # Yesterday's actual crew against today's planned crew
    crew_changes = sum(
        1 for prev, curr in zip(report, report[1:])
        if set(prev["actualCrewIds"]) != set(curr["scheduledCrewIds"])
    )
    return {"isMultiDay": True, "totalDays": len(blocks), "crewChanges": crew_changes, "report": report}


def check_crew_consistency(job: Job) -> Dict[str, Any]:
    blocks = job.schedule_blocks or []
    primary_crew = _ids(job.assigned_crew_ids)
    primary_lead = str(job.assigned_tech_id) if job.assigned_tech_id else None
    if not blocks:
        return {"isConsistent": True, "warnings": [], "primaryCrewIds": primary_crew, "primaryLeadId": primary_lead}

    warnings = []
    for day, assignment in sorted((job.per_day_crew or {}).items()):
        day_crew = set(_ids(assignment.get("crewIds")))
        missing = [c for c in primary_crew if c not in day_crew]
        if missing:
            warnings.append({
                "type": "missing_crew",
                "date": day,
                "message": f"{len(missing)} primary crew member(s) not assigned",
                "missingIds": missing,
            })
        lead = assignment.get("leadTechId")
        if lead and str(lead) != primary_lead:
            warnings.append({
                "type": "lead_change",
                "date": day,
                "message": "Different lead tech assigned",
                "originalLead": primary_lead,
                "newLead": str(lead),
            })

    return {
        "isConsistent": not warnings,
        "warnings": warnings,
        "primaryCrewIds": primary_crew,
        "primaryLeadId": primary_lead,
    }


# Crew briefings

def get_daily_summary(
    job: Job,
    records: List[JobDailyProgress],
    handoffs: List[JobHandoff],
    today: Any,
) -> Optional[Dict[str, Any]]:
    """
    Start-of-day briefing for the crew working `today`.

    Carries the day's place in the schedule (day N of M, first/last day),
    how the previous recorded day ended, and the latest earlier handoff's
    remaining work, materials and notes. None when `today` is not one of the
    job's scheduled days.
    """
    blocks = job.schedule_blocks or []
    segment = get_segment_for_date(blocks, today)
    if segment is None:
        return None
    today = normalize_date(today)

    earlier = [r for r in records if r.date < today]
    previous = max(earlier, key=lambda r: r.date) if earlier else None
    todays = next((r for r in records if r.date == today), None)
    last_handoff = get_latest_handoff([h for h in handoffs if h.date < today])
    total = len(blocks)
    return {
        "jobId": str(job.id),
        "jobNumber": job.job_number,
        "jobTitle": job.title or job.description,
        "date": today.isoformat(),
        "dayNumber": segment["dayNumber"],
        "totalDays": total,
        "startTime": segment["startTime"],
        "endTime": segment["endTime"],
        "displayLabel": format_segment_display(segment, total),
        "isFirstDay": segment["dayNumber"] == 1,
        "isLastDay": segment["dayNumber"] == total,
        "previousDayStatus": previous.status if previous else None,
        "todayStatus": todays.status if todays else DAILY_NOT_STARTED,
        "lastHandoffNotes": list(last_handoff.work_remaining or []) if last_handoff else [],
        "materialsNeeded": list(last_handoff.materials_needed or []) if last_handoff else [],
        "accessNotes": (last_handoff.access_notes or "") if last_handoff else "",
        "safetyNotes": (last_handoff.safety_notes or "") if last_handoff else "",
        "overallProgress": job.overall_progress_percent or 0,
    }


def daily_start_entry(
    job: Job,
    records: List[JobDailyProgress],
    handoffs: List[JobHandoff],
    day: Any,
) -> Optional[Dict[str, Any]]:
    """
    A continuing day (day 2 onward) of `job` that still needs doing on `day`,
    with the handoff left on the previous scheduled day.
    """
    blocks = job.schedule_blocks or []
    segment = get_segment_for_date(blocks, day)
    # Day 1 follows the normal job start
    if segment is None or segment["dayNumber"] == 1:
        return None
    day = normalize_date(day)
    todays = next((r for r in records if r.date == day), None)
    if todays is not None and todays.status == DAILY_COMPLETED:
        return None

    previous_day = blocks[segment["dayNumber"] - 2]["date"]
    previous = get_handoff_for_date(handoffs, previous_day)
    return {
        "jobId": str(job.id),
        "jobNumber": job.job_number,
        "jobTitle": job.title or job.description,
        "date": day.isoformat(),
        "segment": dict(segment),
        "displayLabel": format_segment_display(segment, len(blocks)),
        "previousHandoff": handoff_to_dict(previous) if previous else None,
        "workRemaining": list(previous.work_remaining or []) if previous else [],
    }


def get_jobs_for_daily_start(db: Session, contractor_id, day: Any) -> List[Dict[str, Any]]:
    """
    Multi-day jobs of a contractor continuing on `day` that have no completed
    progress for it yet, ordered by job number.
    """
    target = normalize_date(day)
    if target is None:
        raise PolicyViolation("A valid date is required")
    jobs = (
        db.query(Job)
        .filter(
            Job.contractor_id == contractor_id,
            Job.is_multi_day.is_(True),
            Job.status.in_(sorted(WORKABLE_STATUSES)),
        )
        .order_by(Job.job_number.asc())
        .all()
    )
    briefings = []
    for job in jobs:
        entry = daily_start_entry(job, load_progress(db, job.id), load_handoffs(db, job.id), target)
        if entry is not None:
            briefings.append(entry)
    log.info("daily_start_listed", contractor_id=str(contractor_id), date=target.isoformat(), count=len(briefings))
    return briefings


# Pause / resume

def pause_job_for_day(
    db: Session,
    job: Job,
    data: Dict[str, Any],
    actor_id=None,
    actor_role: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or utc_now()
    if job.status not in ("scheduled", "in_progress"):
        raise Conflict(f"Cannot pause a job in status '{job.status}'")
    day = normalize_date(data.get("date"))
    if day is None:
        raise PolicyViolation("A valid pause date is required")

    segment = get_segment_for_date(job.schedule_blocks, day)
    entry = {
        "pausedAt": now.isoformat(),
        "pausedBy": str(actor_id) if actor_id else None,
        "pauseDate": day.isoformat(),
        "dayNumber": segment["dayNumber"] if segment else None,
        "notes": data.get("notes") or "",
        "workCompleted": list(data.get("work_completed") or []),
        "workRemaining": list(data.get("work_remaining") or []),
        "resumeNeeded": True,
    }
    before_status = job.status
    job.current_pause = entry
    job.pause_history = list(job.pause_history or []) + [entry]
    flag_modified(job, "pause_history")
    job.status = "paused"
    job.updated_at = now
    job.last_activity = now

    create_audit_log(
        db,
        entity_type="job",
        entity_id=str(job.id),
        action="PAUSE",
        actor_id=actor_id,
        actor_role=actor_role,
        source="api",
        changes_json={"status": {"before": before_status, "after": "paused"}},
        context={"pause_date": entry["pauseDate"]},
    )
    commit_or_rollback(db, "job pause", job_id=str(job.id))
    log.info("job_paused", job_id=str(job.id), pause_date=entry["pauseDate"])
    return entry


def resume_job(
    db: Session,
    job: Job,
    data: Dict[str, Any],
    actor_id=None,
    actor_role: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Resume a paused job. The closing pause entry in the history is stamped
    with the resume details.
    """
    now = now or utc_now()
    if job.status != "paused":
        raise Conflict("Job is not paused")

    history = copy.deepcopy(job.pause_history or [])
    resumed = dict(job.current_pause or {})
    resumed.update({
        "resumeNeeded": False,
        "resumedAt": now.isoformat(),
        "resumedBy": str(actor_id) if actor_id else None,
        "resumeNotes": data.get("notes") or "",
    })
    if history:
        history[-1] = resumed
    else:
        history.append(resumed)
    job.pause_history = history
    flag_modified(job, "pause_history")
    job.current_pause = None
    job.status = "in_progress"
    job.updated_at = now
    job.last_activity = now

    create_audit_log(
        db,
        entity_type="job",
        entity_id=str(job.id),
        action="RESUME",
        actor_id=actor_id,
        actor_role=actor_role,
        source="api",
        changes_json={"status": {"before": "paused", "after": "in_progress"}},
    )
    commit_or_rollback(db, "job resume", job_id=str(job.id))
    log.info("job_resumed", job_id=str(job.id))
    return resumed


# Serialization

def progress_to_dict(record: JobDailyProgress) -> Dict[str, Any]:
    return {
        "id": str(record.id),
        "jobId": str(record.job_id),
        "date": record.date.isoformat(),
        "dayNumber": record.day_number,
        "crewIds": _ids(record.crew_ids),
        "leadTechId": str(record.lead_tech_id) if record.lead_tech_id else None,
        "hoursWorked": record.hours_worked,
        "percentComplete": record.percent_complete,
        "workCompleted": list(record.work_completed or []),
        "issuesEncountered": list(record.issues_encountered or []),
        "materialsUsed": list(record.materials_used or []),
        "notes": record.notes or "",
        "status": record.status,
        "recordedAt": record.recorded_at.isoformat() if record.recorded_at else None,
        "recordedBy": str(record.recorded_by) if record.recorded_by else None,
    }


def handoff_to_dict(handoff: JobHandoff) -> Dict[str, Any]:
    return {
        "id": str(handoff.id),
        "jobId": str(handoff.job_id),
        "progressId": str(handoff.progress_id),
        "type": handoff.type,
        "date": handoff.date.isoformat(),
        "dayNumber": handoff.day_number,
        "from": {
            "crewIds": _ids(handoff.from_crew_ids),
            "leadTechId": str(handoff.from_lead_tech_id) if handoff.from_lead_tech_id else None,
        },
        "to": {
            "crewIds": _ids(handoff.to_crew_ids),
            "leadTechId": str(handoff.to_lead_tech_id) if handoff.to_lead_tech_id else None,
        },
        "workCompleted": list(handoff.work_completed or []),
        "workRemaining": list(handoff.work_remaining or []),
        "issues": list(handoff.issues or []),
        "materialsNeeded": list(handoff.materials_needed or []),
        "accessNotes": handoff.access_notes or "",
        "safetyNotes": handoff.safety_notes or "",
        "customerNotes": handoff.customer_notes or "",
        "createdAt": handoff.created_at.isoformat() if handoff.created_at else None,
        "createdBy": str(handoff.created_by) if handoff.created_by else None,
    }
