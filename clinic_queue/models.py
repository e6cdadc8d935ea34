"""Database models for the clinic token queue.

We use SQLModel to define the schema.  Tokens are the patients' numbered
places in a day's queue, sessions are the doctor's working shifts, leaves
close a date for booking, and the settings row holds clinic-level tuning
such as the per-patient service time and the daily token limit.
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


class TokenStatus(str, Enum):
    """Possible statuses for a token."""

    waiting = "waiting"
    called = "called"
    served = "served"
    skipped = "skipped"
    cancelled = "cancelled"


class Gender(str, Enum):
    male = "male"
    female = "female"
    other = "other"


class SessionStatus(str, Enum):
    scheduled = "scheduled"
    active = "active"
    paused = "paused"
    ended = "ended"
    cancelled = "cancelled"


class SessionType(str, Enum):
    morning = "morning"
    evening = "evening"
    full_day = "full-day"


class LeaveType(str, Enum):
    planned = "planned"
    emergency = "emergency"


class Token(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("booking_date", "token_number"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    token_number: int = Field(index=True)
    booking_date: date = Field(index=True)
    patient_name: str
    patient_phone: str = Field(index=True)
    patient_age: int
    patient_gender: Gender = Field(default=Gender.male)
    symptoms: str = Field(default="")
    status: TokenStatus = Field(default=TokenStatus.waiting, index=True)
    estimated_time: str = Field(default="")
    estimated_serve_at: Optional[datetime] = None
    notify_sms: bool = Field(default=False)
    notify_whatsapp: bool = Field(default=False)
    called_at: Optional[datetime] = None
    served_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    actual_wait_time: Optional[int] = None  # minutes, set once when served
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    @property
    def channels(self) -> list:
        out = []
        if self.notify_sms:
            out.append("sms")
        if self.notify_whatsapp:
            out.append("whatsapp")
        return out


class ClinicSession(SQLModel, table=True):
    """A doctor's working shift for one day."""

    __tablename__ = "clinic_session"
    __table_args__ = (UniqueConstraint("doctor_id", "session_date"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    doctor_id: str = Field(index=True)
    session_date: date = Field(index=True)
    type: SessionType = Field(default=SessionType.morning)
    status: SessionStatus = Field(default=SessionStatus.scheduled)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    paused_seconds: int = Field(default=0)
    delay_minutes: int = Field(default=0)
    last_delay_at: Optional[datetime] = None
    total_patients: int = Field(default=0)
    served_patients: int = Field(default=0)
    skipped_patients: int = Field(default=0)
    cancelled_patients: int = Field(default=0)
    avg_wait_time: float = Field(default=0.0)
    notes: str = Field(default="")
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)


class Leave(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    leave_date: date = Field(index=True)
    reason: str
    type: LeaveType = Field(default=LeaveType.planned)
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)


class ClinicSettings(SQLModel, table=True):
    __tablename__ = "clinic_settings"

    id: Optional[int] = Field(default=1, primary_key=True)
    clinic_name: str = Field(default="Clinic Queue")
    avg_service_minutes: float = Field(default=10.0)
    rolling_average: bool = Field(default=False)
    max_tokens_per_day: int = Field(default=30)
    working_days: str = Field(default="0,1,2,3,4")  # Python weekdays, Monday is 0
    upcoming_limit: int = Field(default=10)

    def working_weekdays(self) -> set:
        return {int(d) for d in self.working_days.split(",") if d.strip()}
