"""
Job routes: creation, lookup and crew assignment.
"""
import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth.security import get_current_user
from ..db import get_db
from ..models.models import User
from ..schemas.scheduling import JobAssign, JobCreate
from ..services.jobs import assign_job, create_job, job_to_dict
from ..services.permissions import (
    get_user_role, load_job, require_contractor_owner, require_job_contractor, require_job_viewer,
)

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.post("", status_code=201)
def create_job_route(
    payload: JobCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """
    Create a job for a contractor.
    Jobs longer than one working day get per-day schedule blocks when a date is given.
    """
    contractor = require_contractor_owner(db, user, payload.contractor_id)
    job = create_job(
        db,
        contractor,
        payload.model_dump(),
        actor_id=user.id,
        actor_role=get_user_role(user, db, contractor),
    )
    return job_to_dict(job)


@router.get("/{job_id}")
def get_job(
    job_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    job = load_job(db, job_id)
    require_job_viewer(db, user, job)
    return job_to_dict(job)


@router.post("/{job_id}/assign")
def assign_job_route(
    job_id: uuid.UUID,
    payload: JobAssign,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """
    Assign a lead technician and crew.
    Rejects crews outside the job's size range, technicians on time off or
    fully booked, and technicians already on an overlapping job.
    """
    job = load_job(db, job_id)
    contractor = require_job_contractor(db, user, job)
    job = assign_job(
        db,
        job,
        contractor,
        payload.assigned_tech_id,
        payload.assigned_crew_ids,
        actor_id=user.id,
        actor_role=get_user_role(user, db, contractor),
    )
    return job_to_dict(job)
