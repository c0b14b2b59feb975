"""Scheduling domain schemas - Pydantic models for validation"""

from datetime import date, datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ...shared.validators import validate_time_of_day

AppointmentStatus = Literal["scheduled", "confirmed", "completed", "cancelled", "rescheduled"]
AppointmentType = Literal["first_visit", "follow_up"]

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


class BusinessHours(BaseModel):
    """Opening window of a single day, HH:MM bounds, start < end"""

    model_config = ConfigDict(frozen=True)

    start: str
    end: str

    @field_validator("start", "end")
    @classmethod
    def validate_time(cls, v):
        return validate_time_of_day(v)

    @model_validator(mode="after")
    def check_order(self):
        if self.start >= self.end:
            raise ValueError("Business hours must end after they start")
        return self


class DayHours(BaseModel):
    """Operating hours of one weekday; open and close are both null on closed days"""

    open: Optional[str] = None
    close: Optional[str] = None

    @field_validator("open", "close")
    @classmethod
    def validate_time(cls, v):
        return validate_time_of_day(v)

    @model_validator(mode="after")
    def check_pair(self):
        if (self.open is None) != (self.close is None):
            raise ValueError("Opening and closing time must both be set or both be null")
        if self.open is not None and self.open >= self.close:
            raise ValueError("Closing time must be after opening time")
        return self

    @property
    def is_closed(self) -> bool:
        return self.open is None


class OperatingHours(BaseModel):
    """Weekly operating hours of a branch"""

    monday: DayHours = DayHours(open="09:00", close="18:00")
    tuesday: DayHours = DayHours(open="09:00", close="18:00")
    wednesday: DayHours = DayHours(open="09:00", close="18:00")
    thursday: DayHours = DayHours(open="09:00", close="18:00")
    friday: DayHours = DayHours(open="09:00", close="18:00")
    saturday: DayHours = DayHours(open="09:00", close="13:00")
    sunday: DayHours = DayHours()

    def for_date(self, day: date) -> Optional[BusinessHours]:
        """Opening window on the given date, or None when the branch is closed"""
        hours: DayHours = getattr(self, WEEKDAYS[day.weekday()])
        if hours.is_closed:
            return None
        return BusinessHours(start=hours.open, end=hours.close)


# ============================================================================
# REQUESTS
# ============================================================================


class AppointmentCreate(BaseModel):
    """Schema for booking a new appointment"""

    patientId: str = Field(min_length=1)
    doctorId: str = Field(min_length=1)
    branchId: str = Field(min_length=1)
    date: date
    startTime: str
    type: AppointmentType
    notes: Optional[str] = Field(None, max_length=2000)

    @field_validator("startTime")
    @classmethod
    def validate_start_time(cls, v):
        return validate_time_of_day(v)


class AppointmentReschedule(BaseModel):
    """Schema for moving an appointment to a new doctor, date or time"""

    doctorId: str = Field(min_length=1)
    date: date
    startTime: str

    @field_validator("startTime")
    @classmethod
    def validate_start_time(cls, v):
        return validate_time_of_day(v)


class AppointmentCancel(BaseModel):
    """Schema for cancelling an appointment"""

    reason: str = Field(min_length=1, max_length=1000)


# ============================================================================
# RESPONSES
# ============================================================================


class AppointmentResponse(BaseModel):
    """Schema for appointment response"""

    model_config = ConfigDict(from_attributes=True)

    id: str
    patient_id: str
    doctor_id: str
    branch_id: str
    date: date
    start_time: str
    end_time: str
    status: AppointmentStatus
    type: AppointmentType
    notes: Optional[str] = None
    cancellation_reason: Optional[str] = None
    version: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class DoctorSummary(BaseModel):
    """Doctor as listed in a branch availability view"""

    id: str
    name: str
    specialization: Optional[str] = None
    branch_id: Optional[str] = None


class BranchSummary(BaseModel):
    """Active branch a booking can be placed at"""

    id: str
    name: str
    operating_hours: Optional[OperatingHours] = None


class DoctorAvailability(BaseModel):
    doctorId: str
    date: date
    availableSlots: list[str]


class BranchDoctorAvailability(BaseModel):
    """Availability of one doctor within a branch view; None slots mean the lookup failed"""

    doctor: DoctorSummary
    availableSlots: Optional[list[str]] = None
    error: Optional[str] = None


class BranchAvailability(BaseModel):
    branchId: str
    date: date
    doctors: list[BranchDoctorAvailability]
