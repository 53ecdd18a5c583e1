"""
Permission checks for scheduling operations.
"""
from typing import Optional
from sqlalchemy.orm import Session

from ..errors import Forbidden, NotFound
from ..models.models import User, Contractor, Technician, Job


def _role_names(user: User) -> set:
    return {(r.name or "").lower() for r in (user.roles or [])}


def is_admin(user: User) -> bool:
    """Check if user has admin role."""
    return "admin" in _role_names(user)


def is_contractor_owner(user: User, contractor: Contractor) -> bool:
    return is_admin(user) or contractor.owner_user_id == user.id


def is_job_homeowner(user: User, job: Job) -> bool:
    return is_admin(user) or (job.homeowner_user_id is not None and job.homeowner_user_id == user.id)


def technician_for_user(db: Session, user: User, contractor_id) -> Optional[Technician]:
    """Return the active technician record linking this user to the contractor, if any."""
    return db.query(Technician).filter(
        Technician.user_id == user.id,
        Technician.contractor_id == contractor_id,
        Technician.is_active.is_(True),
    ).first()


def get_user_role(user: User, db: Session, contractor: Optional[Contractor] = None) -> str:
    """Primary role of the caller, recorded on audit entries."""
    if is_admin(user):
        return "admin"
    if contractor is not None:
        if contractor.owner_user_id == user.id:
            return "contractor"
        if technician_for_user(db, user, contractor.id):
            return "technician"
    roles = _role_names(user)
    for name in ("contractor", "technician", "homeowner"):
        if name in roles:
            return name
    return "user"


def load_contractor(db: Session, contractor_id) -> Contractor:
    contractor = db.query(Contractor).filter(Contractor.id == contractor_id).first()
    if not contractor:
        raise NotFound("Contractor not found")
    return contractor


def load_job(db: Session, job_id) -> Job:
    job = db.query(Job).filter(Job.id == job_id).first()
    if not job:
        raise NotFound("Job not found")
    return job


def require_contractor_owner(db: Session, user: User, contractor_id) -> Contractor:
    """
    Load the contractor and check the caller owns it.
    - Admin passes
    - Otherwise the caller must be the contractor's owner
    """
    contractor = load_contractor(db, contractor_id)
    if not is_contractor_owner(user, contractor):
        raise Forbidden("Only the contractor can perform this action")
    return contractor


def require_job_contractor(db: Session, user: User, job: Job) -> Contractor:
    return require_contractor_owner(db, user, job.contractor_id)


def require_job_homeowner(user: User, job: Job) -> None:
    if not is_job_homeowner(user, job):
        raise Forbidden("Only the job's customer can perform this action")


def require_job_viewer(db: Session, user: User, job: Job) -> None:
    """
    Any party to the job may read it:
    admin, the contractor owner, a technician of the contractor, or the homeowner.
    """
    if is_admin(user) or is_job_homeowner(user, job):
        return
    contractor = load_contractor(db, job.contractor_id)
    if contractor.owner_user_id == user.id:
        return
    if technician_for_user(db, user, contractor.id):
        return
    raise Forbidden("Not a party to this job")


def require_job_crew_or_contractor(db: Session, user: User, job: Job) -> Optional[Technician]:
    """
    Daily handoffs come from the contractor owner or from one of its technicians.

    Returns:
        The caller's Technician record when the caller is a technician, else None
    """
    contractor = load_contractor(db, job.contractor_id)
    if is_contractor_owner(user, contractor):
        return technician_for_user(db, user, contractor.id)
    tech = technician_for_user(db, user, contractor.id)
    if tech is None:
        raise Forbidden("Only the contractor or its technicians can record progress")
    return tech
