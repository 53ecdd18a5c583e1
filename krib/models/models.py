import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Column,
    String,
    DateTime,
    Date,
    Boolean,
    ForeignKey,
    Table,
    Integer,
    Float,
    JSON,
    UniqueConstraint,
    Text,
    Index,
    Uuid,
)
from sqlalchemy.orm import relationship, Mapped, mapped_column

from ..db import Base


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)


# Association table for many-to-many User<->Role
user_roles = Table(
    "user_roles",
    Base.metadata,
    Column("user_id", Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("role_id", Uuid(as_uuid=True), ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    UniqueConstraint("user_id", "role_id", name="uq_user_role"),
)


class Role(Base):
    __tablename__ = "roles"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)  # admin|contractor|technician|homeowner
    description: Mapped[Optional[str]] = mapped_column(String(255))

    users = relationship("User", secondary=user_roles, back_populates="roles")


class User(Base):
    """Account known to the identity provider; the JWT subject is its id."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = uuid_pk()
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    display_name: Mapped[Optional[str]] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    roles = relationship("Role", secondary=user_roles, back_populates="users", lazy="selectin")


class Contractor(Base):
    """Contractor business. `scheduling` holds the scheduling-preferences document."""
    __tablename__ = "contractors"

    id: Mapped[uuid.UUID] = uuid_pk()
    owner_user_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    business_name: Mapped[str] = mapped_column(String(255), nullable=False)
    timezone: Mapped[Optional[str]] = mapped_column(String(64))
    # {timeOff: [...], workWeek: {days, startTime, dailyCapacityMinutes}, updatedAt}
    scheduling: Mapped[Optional[dict]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    technicians = relationship("Technician", back_populates="contractor", lazy="selectin")


class Technician(Base):
    """Team member of a contractor who can be assigned to jobs."""
    __tablename__ = "technicians"

    id: Mapped[uuid.UUID] = uuid_pk()
    contractor_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("contractors.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    time_off: Mapped[Optional[list]] = mapped_column(JSON)  # Legacy per-tech location
    scheduling: Mapped[Optional[dict]] = mapped_column(JSON)  # May carry {timeOff: [...]}
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    contractor = relationship("Contractor", back_populates="technicians")


class Job(Base):
    """Service job. Soft lifecycle: status transitions only, never deleted."""
    __tablename__ = "jobs"

    id: Mapped[uuid.UUID] = uuid_pk()
    job_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    contractor_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("contractors.id", ondelete="CASCADE"), nullable=False, index=True)
    homeowner_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(50), default="pending", index=True)
    priority: Mapped[str] = mapped_column(String(20), default="normal")  # low|normal|high|urgent

    # Scheduling
    estimated_duration: Mapped[int] = mapped_column(Integer, default=60)  # minutes
    scheduled_date: Mapped[Optional[str]] = mapped_column(String(10))  # YYYY-MM-DD, local to scheduled_timezone
    scheduled_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))  # UTC start instant
    scheduled_end_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    scheduled_timezone: Mapped[Optional[str]] = mapped_column(String(64))
    is_multi_day: Mapped[bool] = mapped_column(Boolean, default=False)
    schedule_blocks: Mapped[Optional[list]] = mapped_column(JSON)  # [{date, dayNumber, startTime, endTime, durationMinutes}]
    crew_requirements: Mapped[Optional[dict]] = mapped_column(JSON)  # {required, minimum, maximum, ...}

    # Assignment (no exclusivity enforced)
    assigned_tech_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("technicians.id", ondelete="SET NULL"), index=True)
    assigned_crew_ids: Mapped[Optional[list]] = mapped_column(JSON, default=list)

    # Offer state: {offeredSlots, offeredAt, offeredMessage, requestedNewTimes, expiresAt, ...}
    scheduling: Mapped[Optional[dict]] = mapped_column(JSON, default=dict)
    proposed_times: Mapped[Optional[list]] = mapped_column(JSON, default=list)  # Legacy summary records
    scheduling_requests: Mapped[Optional[list]] = mapped_column(JSON, default=list)  # Customer preferences

    # Multi-day tracking
    overall_progress_percent: Mapped[int] = mapped_column(Integer, default=0)
    per_day_crew: Mapped[Optional[dict]] = mapped_column(JSON, default=dict)  # date -> {crewIds, leadTechId}
    current_pause: Mapped[Optional[dict]] = mapped_column(JSON)
    pause_history: Mapped[Optional[list]] = mapped_column(JSON, default=list)

    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_activity: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index('idx_jobs_contractor_status', 'contractor_id', 'status'),
    )


class JobDailyProgress(Base):
    """End-of-day progress for a multi-day job. Immutable once written."""
    __tablename__ = "job_daily_progress"

    id: Mapped[uuid.UUID] = uuid_pk()
    job_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    date: Mapped[Date] = mapped_column(Date, nullable=False)
    day_number: Mapped[int] = mapped_column(Integer, nullable=False)
    crew_ids: Mapped[Optional[list]] = mapped_column(JSON, default=list)
    lead_tech_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("technicians.id", ondelete="SET NULL"))
    hours_worked: Mapped[float] = mapped_column(Float, default=0)
    percent_complete: Mapped[int] = mapped_column(Integer, default=0)  # Cumulative, user-estimated
    work_completed: Mapped[Optional[list]] = mapped_column(JSON, default=list)
    issues_encountered: Mapped[Optional[list]] = mapped_column(JSON, default=list)
    materials_used: Mapped[Optional[list]] = mapped_column(JSON, default=list)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), default="completed")  # in_progress|completed|blocked
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    recorded_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))

    __table_args__ = (
        UniqueConstraint("job_id", "day_number", name="uq_progress_job_day"),
        UniqueConstraint("job_id", "date", name="uq_progress_job_date"),
    )


class JobHandoff(Base):
    """Note passed from one day's crew to the next. Immutable once written."""
    __tablename__ = "job_handoffs"

    id: Mapped[uuid.UUID] = uuid_pk()
    job_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    progress_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("job_daily_progress.id", ondelete="CASCADE"), nullable=False)
    type: Mapped[str] = mapped_column(String(30), default="end_of_day")
    date: Mapped[Date] = mapped_column(Date, nullable=False)
    day_number: Mapped[int] = mapped_column(Integer, nullable=False)
    from_crew_ids: Mapped[Optional[list]] = mapped_column(JSON, default=list)
    from_lead_tech_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("technicians.id", ondelete="SET NULL"))
    to_crew_ids: Mapped[Optional[list]] = mapped_column(JSON, default=list)
    to_lead_tech_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("technicians.id", ondelete="SET NULL"))
    work_completed: Mapped[Optional[list]] = mapped_column(JSON, default=list)
    work_remaining: Mapped[Optional[list]] = mapped_column(JSON, default=list)
    issues: Mapped[Optional[list]] = mapped_column(JSON, default=list)
    materials_needed: Mapped[Optional[list]] = mapped_column(JSON, default=list)
    access_notes: Mapped[Optional[str]] = mapped_column(Text)
    safety_notes: Mapped[Optional[str]] = mapped_column(Text)
    customer_notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))

    progress = relationship("JobDailyProgress")

    __table_args__ = (
        Index('idx_handoffs_job_date', 'job_id', 'date'),
    )


class AuditLog(Base):
    """Append-only audit log for scheduling actions"""
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = uuid_pk()
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)  # job|time_off|daily_progress
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)  # CREATE|UPDATE|DELETE|ASSIGN|OFFER|ACCEPT|EXPIRE|HANDOFF|PAUSE|RESUME|...
    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), index=True)
    actor_role: Mapped[Optional[str]] = mapped_column(String(50))  # admin|contractor|technician|homeowner|system
    source: Mapped[Optional[str]] = mapped_column(String(50))  # api|system|cron
    changes_json: Mapped[Optional[dict]] = mapped_column(JSON)  # Before/after diff
    timestamp_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False, index=True)
    context: Mapped[Optional[dict]] = mapped_column(JSON)
    integrity_hash: Mapped[Optional[str]] = mapped_column(String(64))  # SHA256 hash for integrity verification

    __table_args__ = (
        Index('idx_audit_entity', 'entity_type', 'entity_id'),
        Index('idx_audit_actor', 'actor_id', 'timestamp_utc'),
    )
