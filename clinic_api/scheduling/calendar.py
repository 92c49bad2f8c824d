"""Slot calendar: overlap counting over a day's bookings."""
from dataclasses import dataclass
from datetime import time
from typing import Iterable, Optional
import re

from ..core.errors import ValidationError
from ..models.appointment import AppointmentStatus

TIME_PATTERN = re.compile(r"^([01]?[0-9]|2[0-3]):([0-5][0-9])$")

@dataclass(frozen=True)
class Booking:
    """The part of an appointment the calendar needs."""
    id: Optional[int]
    start: time
    end: time
    status: AppointmentStatus

    @classmethod
    def from_appointment(cls, appointment) -> "Booking":
        return cls(
            id=appointment.id,
            start=appointment.start_time,
            end=appointment.end_time,
            status=appointment.status,
        )

def parse_time(value: str) -> time:
    """Parse ``H:mm``/``HH:mm`` 24-hour wall-clock time."""
    if isinstance(value, time):
        return value.replace(second=0, microsecond=0)
    match = TIME_PATTERN.match(value.strip()) if isinstance(value, str) else None
    if not match:
        raise ValidationError(f"{value} is not a valid time format! Use HH:mm format.")
    return time(int(match.group(1)), int(match.group(2)))

def format_time(value: time) -> str:
    return value.strftime("%H:%M")

def to_minutes(value: time) -> int:
    return value.hour * 60 + value.minute

def from_minutes(minutes: int) -> time:
    return time(minutes // 60, minutes % 60)

def overlaps(start1: time, end1: time, start2: time, end2: time) -> bool:
    """Half-open interval test: [s1, e1) and [s2, e2) share an instant."""
    return start1 < end2 and start2 < end1

def count_overlapping(
    bookings: Iterable[Booking],
    start: time,
    end: time,
    exclude_id: Optional[int] = None,
) -> int:
    """Number of non-cancelled bookings overlapping ``[start, end)``.

    ``bookings`` must already be limited to a single date.
    """
    count = 0
    for booking in bookings:
        if booking.status == AppointmentStatus.CANCELLED:
            continue
        if exclude_id is not None and booking.id == exclude_id:
            continue
        if overlaps(start, end, booking.start, booking.end):
            count += 1
    return count

