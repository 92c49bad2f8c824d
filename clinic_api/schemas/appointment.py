import datetime as dt
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from ..models.appointment import AppointmentStatus
from ..scheduling.calendar import TIME_PATTERN, format_time

def _coerce_time(value):
    if value is None or isinstance(value, dt.time):
        return value
    match = TIME_PATTERN.match(str(value).strip())
    if not match:
        raise ValueError(f"{value} is not a valid time format! Use HH:mm format.")
    return dt.time(int(match.group(1)), int(match.group(2)))

class SlotFields(BaseModel):
    @field_validator("start_time", "end_time", mode="before", check_fields=False)
    @classmethod
    def parse_wall_clock(cls, value):
        return _coerce_time(value)

    @field_validator("title", check_fields=False)
    @classmethod
    def title_not_blank(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        value = value.strip()
        if not value:
            raise ValueError("Title is required")
        return value

class AppointmentCreate(SlotFields):
    patient_id: int
    date: dt.date
    start_time: dt.time
    end_time: dt.time
    title: str = Field(..., min_length=1, max_length=255)

class AppointmentUpdate(SlotFields):
    date: Optional[dt.date] = None
    start_time: Optional[dt.time] = None
    end_time: Optional[dt.time] = None
    status: Optional[AppointmentStatus] = None
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    cancellation_reason: Optional[str] = Field(None, max_length=500)

    @property
    def touches_slot(self) -> bool:
        return any(v is not None for v in (self.date, self.start_time, self.end_time))

class AppointmentReschedule(SlotFields):
    date: dt.date
    start_time: dt.time
    end_time: dt.time
    title: Optional[str] = Field(None, min_length=1, max_length=255)

class AppointmentCancel(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)

class AppointmentFilters(BaseModel):
    """Supported list predicates; every field is optional and they combine with AND."""
    status: Optional[AppointmentStatus] = None
    date_from: Optional[dt.date] = None
    date_to: Optional[dt.date] = None
    patient_id: Optional[int] = None

class PatientSortOrder(str, Enum):
    DATE = "date"
    DATE_ASC = "dateAsc"
    STATUS = "status"

class PatientSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    first_name: str
    middle_name: Optional[str] = None
    last_name: str

class AppointmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    patient_id: int
    patient: Optional[PatientSummary] = None
    date: dt.date
    start_time: dt.time
    end_time: dt.time
    title: str
    status: AppointmentStatus
    cancellation_reason: Optional[str] = None
    created_at: Optional[dt.datetime] = None
    updated_at: Optional[dt.datetime] = None

    @field_serializer("start_time", "end_time")
    def serialize_wall_clock(self, value: dt.time) -> str:
        return format_time(value)

class SlotAvailabilityResponse(BaseModel):
    start_time: dt.time
    end_time: dt.time
    booked: int
    occupied: bool
    available: bool

    @field_serializer("start_time", "end_time")
    def serialize_wall_clock(self, value: dt.time) -> str:
        return format_time(value)

class SweepResponse(BaseModel):
    swept: int
    appointments: List[AppointmentResponse]
