"""
Slot offer routes.
Contractors offer time slots; customers accept one or ask for new times.
"""
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth.security import get_current_user, require_roles
from ..config import settings
from ..db import get_db
from ..models.models import User
from ..schemas.scheduling import CustomerPreferences, OfferCreate, SlotAccept
from ..services.jobs import job_to_dict
from ..services.permissions import get_user_role, load_job, require_job_contractor, require_job_homeowner
from ..services.slot_offers import (
    TIME_PRESETS, accept_slot, create_offer, expire_stale_offers, next_business_days,
    quick_fill_slots, record_customer_preferences, request_new_times, time_options,
)
from ..services.time_rules import today_in_timezone

router = APIRouter(prefix="/scheduling", tags=["scheduling"])


@router.get("/business-days")
def business_days(
    count: Optional[int] = Query(default=None, ge=1, le=60),
    timezone: Optional[str] = None,
    user: User = Depends(get_current_user),
):
    today = today_in_timezone(timezone or settings.tz_default)
    return {"days": [d.isoformat() for d in next_business_days(today, count)]}


@router.get("/time-options")
def get_time_options(
    step: Optional[int] = Query(default=None, ge=5, le=120),
    user: User = Depends(get_current_user),
):
    return {"options": time_options(step), "presets": TIME_PRESETS}


@router.get("/jobs/{job_id}/quick-fill")
def quick_fill(
    job_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    job = load_job(db, job_id)
    require_job_contractor(db, user, job)
    today = today_in_timezone(job.scheduled_timezone)
    return {"slots": quick_fill_slots(today)}


@router.post("/jobs/{job_id}/offers")
def offer_slots(
    job_id: uuid.UUID,
    payload: OfferCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    job = load_job(db, job_id)
    contractor = require_job_contractor(db, user, job)
    slots = [
        {"id": s.id, "date": s.date, "startTime": s.start_time, "endTime": s.end_time}
        for s in payload.slots
    ]
    create_offer(
        db,
        job,
        slots,
        message=payload.message,
        actor_id=user.id,
        actor_role=get_user_role(user, db, contractor),
    )
    return job_to_dict(job)


@router.post("/jobs/{job_id}/accept")
def accept(
    job_id: uuid.UUID,
    payload: SlotAccept,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    job = load_job(db, job_id)
    require_job_homeowner(user, job)
    accept_slot(db, job, payload.slot_id, actor_id=user.id, actor_role=get_user_role(user, db))
    return job_to_dict(job)


@router.post("/jobs/{job_id}/preferences")
def preferences(
    job_id: uuid.UUID,
    payload: CustomerPreferences,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    job = load_job(db, job_id)
    require_job_homeowner(user, job)
    record = record_customer_preferences(
        db, job, payload.model_dump(), actor_id=user.id, actor_role=get_user_role(user, db)
    )
    return {"request": record}


@router.post("/jobs/{job_id}/request-new-times")
def new_times(
    job_id: uuid.UUID,
    payload: CustomerPreferences,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    job = load_job(db, job_id)
    require_job_homeowner(user, job)
    request_new_times(db, job, payload.model_dump(), actor_id=user.id, actor_role=get_user_role(user, db))
    return job_to_dict(job)


@router.post("/offers/expire")
def expire_offers(
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("admin")),
):
    return {"expired": expire_stale_offers(db)}
