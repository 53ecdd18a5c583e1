"""
Time-off and technician availability routes.
"""
import uuid
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth.security import get_current_user
from ..db import get_db
from ..errors import Forbidden, NotFound, PolicyViolation
from ..models.models import Job, Technician, User
from ..schemas.scheduling import TimeOffCreate, TimeOffUpdate
from ..services.availability import (
    get_blocked_dates, get_time_off_for_tech, get_time_off_in_range, get_upcoming_time_off, is_tech_schedulable,
)
from ..services.permissions import (
    get_user_role, is_contractor_owner, load_contractor, require_contractor_owner, technician_for_user,
)
from ..services.schedule_blocks import WorkWeek
from ..services.time_off import (
    add_time_off, entry_payload, list_time_off, remove_time_off, time_off_for_technician, update_time_off,
)
from ..services.time_rules import today_in_timezone

router = APIRouter(tags=["time-off"])

# Longest range the blocked-dates calendar will expand
MAX_BLOCKED_RANGE_DAYS = 366


@router.get("/contractors/{contractor_id}/time-off")
def list_contractor_time_off(
    contractor_id: uuid.UUID,
    tech_id: Optional[uuid.UUID] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    upcoming: bool = False,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """
    List time off. Filters: tech_id, a [start, end] range (both bounds
    required), or upcoming (next 90 days).
    """
    contractor = load_contractor(db, contractor_id)
    if not is_contractor_owner(user, contractor) and not technician_for_user(db, user, contractor.id):
        raise Forbidden("Not a member of this contractor")

    if (start is None) != (end is None):
        raise PolicyViolation("Range filter needs both start and end")
    if start is not None and end < start:
        raise PolicyViolation("end must be on or after start")

    entries = list_time_off(contractor)
    if tech_id is not None:
        entries = get_time_off_for_tech(entries, tech_id)
    if start is not None:
        entries = get_time_off_in_range(entries, start, end)
    if upcoming:
        entries = get_upcoming_time_off(entries, today_in_timezone(contractor.timezone))
    return {"time_off": entries}


@router.post("/contractors/{contractor_id}/time-off", status_code=201)
def create_time_off(
    contractor_id: uuid.UUID,
    payload: TimeOffCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    contractor = require_contractor_owner(db, user, contractor_id)
    entry = add_time_off(
        db,
        contractor,
        payload.tech_id,
        entry_payload(payload),
        actor_id=user.id,
        actor_role=get_user_role(user, db, contractor),
    )
    return entry


@router.put("/contractors/{contractor_id}/time-off/{entry_id}")
def edit_time_off(
    contractor_id: uuid.UUID,
    entry_id: str,
    payload: TimeOffUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    contractor = require_contractor_owner(db, user, contractor_id)
    return update_time_off(
        db,
        contractor,
        entry_id,
        entry_payload(payload),
        actor_id=user.id,
        actor_role=get_user_role(user, db, contractor),
    )


@router.delete("/contractors/{contractor_id}/time-off/{entry_id}")
def delete_time_off(
    contractor_id: uuid.UUID,
    entry_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    contractor = require_contractor_owner(db, user, contractor_id)
    remove_time_off(db, contractor, entry_id, actor_id=user.id, actor_role=get_user_role(user, db, contractor))
    return {"status": "ok"}


def _load_technician(db: Session, user: User, tech_id):
    tech = db.query(Technician).filter(Technician.id == tech_id).first()
    if not tech:
        raise NotFound("Technician not found")
    contractor = load_contractor(db, tech.contractor_id)
    if not is_contractor_owner(user, contractor) and tech.user_id != user.id:
        raise Forbidden("Only the contractor or the technician can view availability")
    return tech, contractor


@router.get("/technicians/{tech_id}/availability")
def technician_availability(
    tech_id: uuid.UUID,
    date: date = Query(...),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    tech, contractor = _load_technician(db, user, tech_id)
    work_week = WorkWeek.for_contractor(contractor)
    jobs = db.query(Job).filter(Job.contractor_id == contractor.id).all()
    view = {"id": tech.id, "time_off": time_off_for_technician(contractor, tech)}
    result = is_tech_schedulable(view, date, jobs, work_week)
    return {
        "tech_id": str(tech.id),
        "date": date.isoformat(),
        "working_day": work_week.is_working_day(date),
        **result,
    }


@router.get("/technicians/{tech_id}/blocked-dates")
def technician_blocked_dates(
    tech_id: uuid.UUID,
    start: date = Query(...),
    end: date = Query(...),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    if end < start:
        raise PolicyViolation("end must be on or after start")
    if (end - start).days > MAX_BLOCKED_RANGE_DAYS:
        raise PolicyViolation(f"Range cannot exceed {MAX_BLOCKED_RANGE_DAYS} days")
    tech, contractor = _load_technician(db, user, tech_id)
    blocked = get_blocked_dates(
        time_off_for_technician(contractor, tech), start, end, WorkWeek.for_contractor(contractor)
    )
    return {
        "tech_id": str(tech.id),
        "blocked": [{"date": d.isoformat(), "reason": reason} for d, reason in blocked],
    }
