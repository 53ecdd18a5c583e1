"""
Job creation and crew assignment.
"""
import secrets
import string
import time
import uuid
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified

from ..config import settings
from ..db import commit_or_rollback
from ..errors import Conflict, NotFound, PolicyViolation
from ..models.models import Contractor, Job, Technician
from .audit import create_audit_log, compute_diff
from .availability import find_crew_conflict, is_tech_schedulable, normalize_date
from .schedule_blocks import (
    WorkWeek, build_crew_requirements, generate_schedule_blocks, is_multi_day_job, validate_crew_size,
)
from .time_off import time_off_for_technician
from .time_rules import combine_date_time, parse_hhmm, utc_now

log = structlog.get_logger(__name__)

_B36 = string.digits + string.ascii_uppercase


def _base36(value: int) -> str:
    out = ""
    while value:
        value, rem = divmod(value, 36)
        out = _B36[rem] + out
    return out or "0"


def new_job_number() -> str:
    """JOB-<base36 ms timestamp>-<4 random chars>"""
    suffix = "".join(secrets.choice(_B36) for _ in range(4))
    return f"JOB-{_base36(int(time.time() * 1000))}-{suffix}"


def _apply_schedule(job: Job, day: date, start_hhmm: Optional[str], work_week: WorkWeek) -> None:
    """Set scheduled date/times (and blocks for multi-day jobs) from a local date."""
    tz = job.scheduled_timezone or settings.tz_default
    if job.is_multi_day:
        blocks = generate_schedule_blocks(day, job.estimated_duration, work_week)
        job.schedule_blocks = blocks
        flag_modified(job, "schedule_blocks")
        first, last = blocks[0], blocks[-1]
        job.scheduled_date = first["date"]
        job.scheduled_time = combine_date_time(normalize_date(first["date"]), parse_hhmm(first["startTime"]), tz)
        job.scheduled_end_time = combine_date_time(normalize_date(last["date"]), parse_hhmm(last["endTime"]), tz)
        return

    start_t = parse_hhmm(start_hhmm) if start_hhmm else work_week.start_time
    job.schedule_blocks = None
    job.scheduled_date = day.isoformat()
    job.scheduled_time = combine_date_time(day, start_t, tz)
    job.scheduled_end_time = job.scheduled_time + timedelta(minutes=job.estimated_duration)


def _scheduled_days(job: Job) -> List[tuple]:
    """(day, minutes) pairs the job occupies."""
    if job.is_multi_day and job.schedule_blocks:
        return [(normalize_date(b["date"]), int(b["durationMinutes"])) for b in job.schedule_blocks]
    day = normalize_date(job.scheduled_date)
    return [(day, job.estimated_duration)] if day else []


def _contractor_technicians(contractor: Contractor, tech_ids: List[Any]) -> Dict[str, Technician]:
    techs = {str(t.id): t for t in contractor.technicians if t.is_active}
    found = {}
    for tech_id in tech_ids:
        tech = techs.get(str(tech_id))
        if tech is None:
            raise NotFound(f"Technician {tech_id} not found for this contractor")
        found[str(tech_id)] = tech
    return found


def check_assignment(db: Session, job: Job, contractor: Contractor, lead_id, crew_ids: List[Any], work_week: WorkWeek) -> None:
    """
    Validate a crew for a job before it is written.

    Checks crew size against the job's requirements and, once the job has a
    schedule, each technician's time off, daily capacity and overlapping jobs.
    """
    everyone = list(dict.fromkeys([str(c) for c in crew_ids] + ([str(lead_id)] if lead_id else [])))
    techs = _contractor_technicians(contractor, everyone)
    if crew_ids:
        validate_crew_size(crew_ids, job.crew_requirements)

    days = _scheduled_days(job)
    if not days:
        return
    others = db.query(Job).filter(Job.contractor_id == contractor.id, Job.id != job.id).all()
    for tech_id, tech in techs.items():
        view = {"id": tech.id, "time_off": time_off_for_technician(contractor, tech)}
        for day, minutes in days:
            result = is_tech_schedulable(view, day, others, work_week, minutes=minutes)
            if not result["available"]:
                raise PolicyViolation(f"{tech.name} is unavailable on {day.isoformat()}: {result['reason']}")
        conflict = find_crew_conflict(tech_id, job, others)
        if conflict is not None:
            raise Conflict(f"{tech.name} is already booked on job {conflict.job_number} at that time")


def create_job(
    db: Session,
    contractor: Contractor,
    data: Dict[str, Any],
    actor_id=None,
    actor_role: Optional[str] = None,
) -> Job:
    """
    Create a job. Multi-day status, schedule blocks and crew requirements are
    derived from the duration and the contractor's work week.
    """
    work_week = WorkWeek.for_contractor(contractor)
    duration = data.get("estimated_duration") or settings.default_job_duration_min
    now = utc_now()

    job = Job(
        id=uuid.uuid4(),
        job_number=new_job_number(),
        contractor_id=contractor.id,
        homeowner_user_id=data.get("homeowner_user_id"),
        title=data["title"],
        description=data.get("description") or data["title"],
        priority=getattr(data.get("priority"), "value", data.get("priority")) or "normal",
        status="pending",
        estimated_duration=duration,
        scheduled_timezone=data.get("timezone") or contractor.timezone or settings.tz_default,
        is_multi_day=is_multi_day_job(duration, work_week.daily_capacity_min),
        crew_requirements=build_crew_requirements(data.get("crew_size"), duration),
        assigned_tech_id=data.get("assigned_tech_id"),
        assigned_crew_ids=[str(c) for c in (data.get("assigned_crew_ids") or [])],
        scheduling={},
        proposed_times=[],
        scheduling_requests=[],
        per_day_crew={},
        pause_history=[],
        created_by=actor_id,
        created_at=now,
        updated_at=now,
        last_activity=now,
    )

    day = normalize_date(data.get("scheduled_date"))
    if day is not None:
        _apply_schedule(job, day, data.get("scheduled_time"), work_week)
        job.status = "scheduled"

    if job.assigned_tech_id or job.assigned_crew_ids:
        check_assignment(db, job, contractor, job.assigned_tech_id, job.assigned_crew_ids, work_week)

    db.add(job)
    create_audit_log(
        db,
        entity_type="job",
        entity_id=str(job.id),
        action="CREATE",
        actor_id=actor_id,
        actor_role=actor_role,
        source="api",
        context={
            "contractor_id": str(contractor.id),
            "job_number": job.job_number,
            "is_multi_day": job.is_multi_day,
            "estimated_duration": duration,
        },
    )
    commit_or_rollback(db, "job", contractor_id=str(contractor.id))
    log.info("job_created", job_id=str(job.id), job_number=job.job_number, is_multi_day=job.is_multi_day)
    return job


def assign_job(
    db: Session,
    job: Job,
    contractor: Contractor,
    lead_id,
    crew_ids: List[Any],
    actor_id=None,
    actor_role: Optional[str] = None,
) -> Job:
    if job.status in ("completed", "cancelled"):
        raise Conflict(f"Cannot assign a {job.status} job")
    if lead_id is None and not crew_ids:
        raise PolicyViolation("A lead technician or crew is required")

    work_week = WorkWeek.for_contractor(contractor)
    check_assignment(db, job, contractor, lead_id, crew_ids, work_week)

    before = {"assigned_tech_id": str(job.assigned_tech_id) if job.assigned_tech_id else None,
              "assigned_crew_ids": list(job.assigned_crew_ids or [])}
    job.assigned_tech_id = lead_id
    job.assigned_crew_ids = [str(c) for c in crew_ids]
    flag_modified(job, "assigned_crew_ids")
    job.updated_at = utc_now()
    job.last_activity = job.updated_at
    after = {"assigned_tech_id": str(lead_id) if lead_id else None, "assigned_crew_ids": list(job.assigned_crew_ids)}

    create_audit_log(
        db,
        entity_type="job",
        entity_id=str(job.id),
        action="ASSIGN",
        actor_id=actor_id,
        actor_role=actor_role,
        source="api",
        changes_json=compute_diff(before, after),
    )
    commit_or_rollback(db, "job assignment", job_id=str(job.id))
    log.info("job_assigned", job_id=str(job.id), lead_tech_id=after["assigned_tech_id"], crew_size=len(crew_ids))
    return job


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def job_to_dict(job: Job) -> Dict[str, Any]:
    return {
        "id": str(job.id),
        "job_number": job.job_number,
        "contractor_id": str(job.contractor_id),
        "homeowner_user_id": str(job.homeowner_user_id) if job.homeowner_user_id else None,
        "title": job.title,
        "description": job.description,
        "status": job.status,
        "priority": job.priority,
        "estimated_duration": job.estimated_duration,
        "scheduled_date": job.scheduled_date,
        "scheduled_time": _iso(job.scheduled_time),
        "scheduled_end_time": _iso(job.scheduled_end_time),
        "scheduled_timezone": job.scheduled_timezone,
        "is_multi_day": job.is_multi_day,
        "schedule_blocks": job.schedule_blocks or [],
        "crew_requirements": job.crew_requirements,
        "assigned_tech_id": str(job.assigned_tech_id) if job.assigned_tech_id else None,
        "assigned_crew_ids": list(job.assigned_crew_ids or []),
        "scheduling": job.scheduling or {},
        "proposed_times": job.proposed_times or [],
        "scheduling_requests": job.scheduling_requests or [],
        "overall_progress_percent": job.overall_progress_percent or 0,
        "per_day_crew": job.per_day_crew or {},
        "current_pause": job.current_pause,
        "created_at": _iso(job.created_at),
        "updated_at": _iso(job.updated_at),
    }
