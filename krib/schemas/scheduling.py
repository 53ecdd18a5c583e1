import uuid
from datetime import date
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class JobPriority(str, Enum):
    low = "low"
    normal = "normal"
    high = "high"
    urgent = "urgent"


class TimeOffType(str, Enum):
    vacation = "vacation"
    sick = "sick"
    personal = "personal"
    holiday = "holiday"
    training = "training"
    other = "other"


class TimeOffStatus(str, Enum):
    approved = "approved"
    pending = "pending"
    denied = "denied"


class DailyStatus(str, Enum):
    in_progress = "in_progress"
    completed = "completed"
    blocked = "blocked"


_HHMM = r"^([01]\d|2[0-3]):[0-5]\d$"


# Jobs
class JobCreate(BaseModel):
    contractor_id: uuid.UUID
    title: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    priority: JobPriority = JobPriority.normal
    homeowner_user_id: Optional[uuid.UUID] = None
    estimated_duration: Optional[int] = Field(default=None, ge=1)  # minutes
    crew_size: Optional[int] = Field(default=None, ge=1)
    scheduled_date: Optional[date] = None
    scheduled_time: Optional[str] = Field(default=None, pattern=_HHMM)
    timezone: Optional[str] = None
    assigned_tech_id: Optional[uuid.UUID] = None
    assigned_crew_ids: List[uuid.UUID] = []


class JobAssign(BaseModel):
    assigned_tech_id: Optional[uuid.UUID] = None
    assigned_crew_ids: List[uuid.UUID] = []


# Time off
class TimeOffCreate(BaseModel):
    tech_id: uuid.UUID
    start_date: date
    end_date: Optional[date] = None
    type: TimeOffType = TimeOffType.other
    status: TimeOffStatus = TimeOffStatus.approved
    notes: Optional[str] = ""

    @model_validator(mode="after")
    def _check_range(self):
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("end_date must be on or after start_date")
        return self


class TimeOffUpdate(BaseModel):
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    type: Optional[TimeOffType] = None
    status: Optional[TimeOffStatus] = None
    notes: Optional[str] = None


# Slot offers
class SlotInput(BaseModel):
    id: Optional[str] = None
    date: date
    start_time: str = Field(pattern=_HHMM)
    end_time: str = Field(pattern=_HHMM)


class OfferCreate(BaseModel):
    # Upper bound is a policy rule checked by the negotiator before any write
    slots: List[SlotInput] = Field(min_length=1)
    message: Optional[str] = None


class SlotAccept(BaseModel):
    slot_id: str


class CustomerPreferences(BaseModel):
    time_of_day: List[str] = []  # e.g. ["Morning", "Afternoon"]
    day_preference: Optional[str] = None  # e.g. "Weekdays"
    specific_dates: Optional[str] = None
    additional_notes: Optional[str] = None


# Multi-day progress
class DailyHandoffCreate(BaseModel):
    date: date
    hours_worked: float = Field(default=0, ge=0, le=24)
    percent_complete: int = Field(ge=0, le=100)
    work_completed: List[str] = Field(min_length=1)
    issues: List[str] = []
    materials_used: List[str] = []
    notes: Optional[str] = ""
    status: DailyStatus = DailyStatus.completed
    crew_ids: Optional[List[uuid.UUID]] = None
    lead_tech_id: Optional[uuid.UUID] = None
    # Forward-looking notes for the next day's crew
    next_crew_ids: Optional[List[uuid.UUID]] = None
    next_lead_tech_id: Optional[uuid.UUID] = None
    work_remaining: List[str] = []
    materials_needed: List[str] = []
    access_notes: Optional[str] = ""
    safety_notes: Optional[str] = ""
    customer_notes: Optional[str] = ""

    @field_validator("work_completed", "issues", "materials_used", "work_remaining", "materials_needed")
    @classmethod
    def _strip_items(cls, items: List[str]) -> List[str]:
        return [i.strip() for i in items if i and i.strip()]

    @field_validator("work_completed")
    @classmethod
    def _require_work_item(cls, items: List[str]) -> List[str]:
        if not items:
            raise ValueError("at least one work completed item is required")
        return items


class PauseCreate(BaseModel):
    date: date
    notes: Optional[str] = ""
    work_completed: List[str] = []
    work_remaining: List[str] = []


class ResumeCreate(BaseModel):
    notes: Optional[str] = ""
