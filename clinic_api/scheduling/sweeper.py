from datetime import date, time
from typing import List
import logging

from sqlalchemy.orm import Session

from ..models.appointment import Appointment, AppointmentStatus
from ..services.collaborators import SYSTEM_ACTOR
from .clock import Clock
from .lifecycle import ACTIVE_STATUSES, EventKind

logger = logging.getLogger(__name__)

AUTO_CANCEL_REASON = "auto_cancelled_window_elapsed"

def is_missed(day: date, end: time, today: date, now: time) -> bool:
    """True once the appointment's window has fully elapsed."""
    return day < today or (day == today and end < now)

class MissedAppointmentSweeper:
    """Cancels active appointments whose window elapsed without completion.

    Every call path (list reads and the administrative trigger) goes through
    ``sweep`` so selection is identical. Each candidate is cancelled with a
    conditional update on its still-active status; a concurrent cancel or a
    second sweep therefore finds nothing left to do.
    """

    def __init__(self, db: Session, clock: Clock, events):
        self.db = db
        self.clock = clock
        self.events = events

    def find_missed(self) -> List[Appointment]:
        today, now = self.clock.now()
        candidates = self.db.query(Appointment).filter(
            Appointment.status.in_(ACTIVE_STATUSES),
            Appointment.date <= today,
        ).all()
        return [a for a in candidates if is_missed(a.date, a.end_time, today, now)]

    def sweep(self) -> List[Appointment]:
        swept = []
        for appointment in self.find_missed():
            previous = appointment.status
            claimed = self.db.query(Appointment).filter(
                Appointment.id == appointment.id,
                Appointment.status.in_(ACTIVE_STATUSES),
            ).update({Appointment.status: AppointmentStatus.CANCELLED}, synchronize_session=False)
            if claimed:
                swept.append((appointment, previous))

        if not swept:
            return []

        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"Missed-appointment sweep cancelled {len(swept)} appointment(s)")
        for appointment, previous in swept:
            self.db.refresh(appointment)
            self.events.publish(
                appointment,
                EventKind.MISSED,
                action="APPOINTMENT_CANCELLED",
                description=f"Appointment auto-cancelled after its window elapsed ({previous.value})",
                details={"previous_status": previous.value, "reason": AUTO_CANCEL_REASON},
                actor=SYSTEM_ACTOR,
            )
        return [appointment for appointment, _ in swept]
