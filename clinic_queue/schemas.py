"""Pydantic schemas for requests.

Request bodies accept the camelCase field names the booking form and the
dashboard send.  Responses are returned as plain dicts from the service
layer.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import Gender, SessionType

PHONE_RE = re.compile(r"^\d{10}$")


class NotificationPrefs(BaseModel):
    sms: bool = False
    whatsapp: bool = False


class BookingRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    patient_name: str = Field(alias="patientName", min_length=1)
    patient_phone: str = Field(alias="patientPhone")
    patient_age: int = Field(alias="patientAge", gt=0, lt=150)
    patient_gender: Gender = Field(default=Gender.male, alias="patientGender")
    booking_date: date = Field(alias="bookingDate")
    symptoms: str = ""
    notifications: NotificationPrefs = Field(default_factory=NotificationPrefs)

    @field_validator("patient_phone")
    @classmethod
    def phone_is_ten_digits(cls, v: str) -> str:
        if not PHONE_RE.match(v):
            raise ValueError("Phone number must be 10 digits")
        return v

    @field_validator("booking_date", mode="before")
    @classmethod
    def drop_time_of_day(cls, v: Union[str, date, datetime]):
        # Time of day is ignored; only the calendar date groups tokens
        if isinstance(v, datetime):
            return v.date()
        if isinstance(v, str) and "T" in v:
            return datetime.fromisoformat(v.replace("Z", "+00:00")).date()
        return v


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class DelayRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    delay_minutes: int = Field(alias="delayMinutes")


class SessionStartRequest(BaseModel):
    type: SessionType = SessionType.morning


class LeaveRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    leave_date: date = Field(alias="date")
    reason: str = Field(min_length=1)
    notes: Optional[str] = None


class EmergencyLeaveRequest(BaseModel):
    reason: str = Field(min_length=1)


class NotifyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    reason: Optional[str] = None
    delay_minutes: Optional[int] = Field(default=None, alias="delayMinutes", gt=0)
