from dataclasses import dataclass
from datetime import date, time
from typing import Callable, List, Optional
import logging

from .calendar import Booking, count_overlapping, from_minutes, parse_time, to_minutes

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class SchedulingPolicy:
    """Business hours, slot increment and concurrent-booking capacity."""
    opens_at: time = time(9, 0)
    closes_at: time = time(17, 0)
    slot_minutes: int = 30
    capacity: int = 2

    def __post_init__(self):
        if self.closes_at <= self.opens_at:
            raise ValueError("Business hours must close after they open")
        if self.slot_minutes <= 0:
            raise ValueError("Slot increment must be positive")
        if self.capacity < 1:
            raise ValueError("Capacity must be at least 1")

    @classmethod
    def from_settings(cls, settings) -> "SchedulingPolicy":
        return cls(
            opens_at=parse_time(settings.BUSINESS_HOURS_START),
            closes_at=parse_time(settings.BUSINESS_HOURS_END),
            slot_minutes=settings.SLOT_INTERVAL_MINUTES,
            capacity=settings.SLOT_CAPACITY,
        )

    def within_hours(self, start: time, end: time) -> bool:
        return self.opens_at <= start and end <= self.closes_at

@dataclass(frozen=True)
class SlotAvailability:
    start: time
    end: time
    booked: int
    available: bool

    @property
    def occupied(self) -> bool:
        return self.booked > 0

class AvailabilityChecker:
    """Admits or rejects a candidate slot for a date.

    ``load_bookings`` returns every booking on a date, cancelled ones
    included; the calendar filters them out.
    """

    def __init__(self, policy: SchedulingPolicy, load_bookings: Callable[[date], List[Booking]]):
        self.policy = policy
        self._load_bookings = load_bookings

    def is_available(
        self,
        day: date,
        start: time,
        end: time,
        exclude_id: Optional[int] = None,
    ) -> bool:
        if end <= start:
            return False
        if not self.policy.within_hours(start, end):
            return False

        booked = count_overlapping(self._load_bookings(day), start, end, exclude_id)
        admitted = booked < self.policy.capacity
        if not admitted:
            logger.debug(f"Slot {day} {start}-{end} rejected: {booked} overlapping bookings")
        return admitted

    def slots(self, day: date) -> List[SlotAvailability]:
        """Partition business hours into fixed increments and count bookings per increment."""
        bookings = self._load_bookings(day)
        opens = to_minutes(self.policy.opens_at)
        closes = to_minutes(self.policy.closes_at)

        result = []
        current = opens
        while current < closes:
            start = from_minutes(current)
            end = from_minutes(min(current + self.policy.slot_minutes, closes))
            booked = count_overlapping(bookings, start, end)
            result.append(SlotAvailability(
                start=start,
                end=end,
                booked=booked,
                available=booked < self.policy.capacity,
            ))
            current += self.policy.slot_minutes
        return result
