"""
Multi-day progress routes: daily handoffs, progress summary, crew reports,
daily crew briefings, pause and resume.
"""
import uuid
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth.security import get_current_user
from ..db import get_db
from ..errors import Forbidden
from ..models.models import User
from ..schemas.scheduling import DailyHandoffCreate, PauseCreate, ResumeCreate
from ..services.progress import (
    check_crew_consistency, get_crew_continuity_report, get_daily_summary, get_handoff_for_date,
    get_jobs_for_daily_start, get_latest_handoff, get_progress_summary, handoff_to_dict, load_handoffs,
    load_progress, pause_job_for_day, progress_to_dict, resume_job, submit_daily_handoff,
)
from ..services.permissions import (
    get_user_role, is_contractor_owner, load_contractor, load_job, require_job_crew_or_contractor,
    require_job_viewer, technician_for_user,
)
from ..services.time_rules import today_in_timezone

router = APIRouter(tags=["progress"])


@router.post("/jobs/{job_id}/daily-progress", status_code=201)
def record_daily_progress(
    job_id: uuid.UUID,
    payload: DailyHandoffCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """
    End-of-day submission: the day's progress record and the handoff to the
    next crew, written together.
    """
    job = load_job(db, job_id)
    technician = require_job_crew_or_contractor(db, user, job)
    contractor = load_contractor(db, job.contractor_id)
    result = submit_daily_handoff(
        db,
        job,
        payload.model_dump(),
        actor_id=user.id,
        actor_role=get_user_role(user, db, contractor),
        technician=technician,
    )
    return {
        "progress": progress_to_dict(result["progress"]),
        "handoff": handoff_to_dict(result["handoff"]),
        "job_status": job.status,
        "overall_progress_percent": job.overall_progress_percent,
    }


@router.get("/jobs/{job_id}/progress")
def progress_summary(
    job_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    job = load_job(db, job_id)
    require_job_viewer(db, user, job)
    records = load_progress(db, job.id)
    today = today_in_timezone(job.scheduled_timezone)
    return {
        "summary": get_progress_summary(job, records, today),
        "records": [progress_to_dict(r) for r in records],
    }


@router.get("/jobs/{job_id}/handoffs")
def list_handoffs(
    job_id: uuid.UUID,
    date: Optional[date] = None,
    latest: bool = False,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    job = load_job(db, job_id)
    require_job_viewer(db, user, job)
    handoffs = load_handoffs(db, job.id)
    if date is not None:
        handoff = get_handoff_for_date(handoffs, date)
        return {"handoffs": [handoff_to_dict(handoff)] if handoff else []}
    if latest:
        handoff = get_latest_handoff(handoffs)
        return {"handoffs": [handoff_to_dict(handoff)] if handoff else []}
    return {"handoffs": [handoff_to_dict(h) for h in handoffs]}


@router.get("/jobs/{job_id}/crew-report")
def crew_report(
    job_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    job = load_job(db, job_id)
    require_job_viewer(db, user, job)
    return {
        "continuity": get_crew_continuity_report(job, load_progress(db, job.id), load_handoffs(db, job.id)),
        "consistency": check_crew_consistency(job),
    }


@router.get("/jobs/{job_id}/daily-summary")
def daily_summary(
    job_id: uuid.UUID,
    on: Optional[date] = Query(None, alias="date"),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """
    Start-of-day briefing for one job; summary is null on days outside its schedule.
    """
    job = load_job(db, job_id)
    require_job_viewer(db, user, job)
    day = on or today_in_timezone(job.scheduled_timezone)
    return {"summary": get_daily_summary(job, load_progress(db, job.id), load_handoffs(db, job.id), day)}


@router.get("/contractors/{contractor_id}/daily-start")
def daily_start(
    contractor_id: uuid.UUID,
    on: Optional[date] = Query(None, alias="date"),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    contractor = load_contractor(db, contractor_id)
    if not is_contractor_owner(user, contractor) and not technician_for_user(db, user, contractor.id):
        raise Forbidden("Not a member of this contractor")
    day = on or today_in_timezone(contractor.timezone)
    return {"date": day.isoformat(), "jobs": get_jobs_for_daily_start(db, contractor.id, day)}


@router.post("/jobs/{job_id}/pause")
def pause(
    job_id: uuid.UUID,
    payload: PauseCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    job = load_job(db, job_id)
    require_job_crew_or_contractor(db, user, job)
    contractor = load_contractor(db, job.contractor_id)
    entry = pause_job_for_day(
        db, job, payload.model_dump(), actor_id=user.id, actor_role=get_user_role(user, db, contractor)
    )
    return {"status": job.status, "pause": entry}


@router.post("/jobs/{job_id}/resume")
def resume(
    job_id: uuid.UUID,
    payload: ResumeCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    job = load_job(db, job_id)
    require_job_crew_or_contractor(db, user, job)
    contractor = load_contractor(db, job.contractor_id)
    entry = resume_job(
        db, job, payload.model_dump(), actor_id=user.id, actor_role=get_user_role(user, db, contractor)
    )
    return {"status": job.status, "resume": entry}
