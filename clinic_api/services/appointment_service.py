from contextlib import nullcontext
from datetime import date, time
from typing import List, Optional, Union
import logging

from sqlalchemy.orm import Session

from ..core.database import date_lock
from ..core.errors import ConflictError, InvalidTransitionError, NotFoundError, ValidationError
from ..models.appointment import Appointment, AppointmentStatus
from ..models.patient import Patient
from ..scheduling.availability import AvailabilityChecker, SchedulingPolicy, SlotAvailability
from ..scheduling.calendar import Booking, format_time, parse_time
from ..scheduling.clock import Clock
from ..scheduling.lifecycle import (
    EventKind, event_for, initial_status, is_terminal, resolve_update, status_after_slot_change,
)
from ..scheduling.sweeper import MissedAppointmentSweeper
from ..schemas.appointment import AppointmentFilters, AppointmentUpdate, PatientSortOrder
from .collaborators import PUBLIC_ACTOR
from .events import AppointmentEvents

logger = logging.getLogger(__name__)

DateLike = Union[date, str]
TimeLike = Union[time, str]

_SLOT_TAKEN = "Time slot is not available. Maximum {capacity} patients per time slot allowed."

class AppointmentService:
    """Booking, update, reschedule and cancellation of appointments.

    Every check-then-write runs under the booking lock of the target date;
    audit and notification side effects run after the commit and never
    fail the operation.
    """

    def __init__(
        self,
        db: Session,
        events: AppointmentEvents,
        clock: Clock,
        policy: SchedulingPolicy,
        archive_limit: int = 50,
    ):
        self.db = db
        self.events = events
        self.clock = clock
        self.policy = policy
        self.archive_limit = archive_limit
        self.checker = AvailabilityChecker(policy, self._bookings_on)
        self.sweeper = MissedAppointmentSweeper(db, clock, events)

    # Writes

    def create(
        self,
        patient_id: int,
        day: DateLike,
        start_time: TimeLike,
        end_time: TimeLike,
        title: str,
        is_public_request: bool = False,
    ) -> Appointment:
        """Book a new appointment.

        Admin bookings start Scheduled, public booking requests start Pending.
        """
        day, start, end = self._slot(day, start_time, end_time)
        title = self._title(title or "")

        patient = self._patient(patient_id)

        with date_lock(self.db, day):
            self._ensure_available(day, start, end)
            appointment = Appointment(
                patient_id=patient.id,
                date=day,
                start_time=start,
                end_time=end,
                title=title,
                status=initial_status(is_public_request),
            )
            self.db.add(appointment)
            self._commit()
        self.db.refresh(appointment)

        logger.info(
            f"Appointment {appointment.id} booked for patient {patient.id} on {day} "
            f"{format_time(start)}-{format_time(end)} ({appointment.status.value})"
        )
        self.events.publish(
            appointment,
            EventKind.CREATED,
            action="APPOINTMENT_REQUESTED" if is_public_request else "APPOINTMENT_CREATED",
            description=f"Appointment '{title}' booked for {day.isoformat()} {format_time(start)}",
            details={"status": appointment.status.value},
            actor=PUBLIC_ACTOR if is_public_request else None,
        )
        return appointment

    def update(self, appointment_id: int, patch: AppointmentUpdate) -> Appointment:
        """Apply a partial update.

        An explicit ``status`` wins over the implicit slot-change transition.
        Availability is only checked when the patch carries date or time
        fields and the appointment does not end up cancelled. If the status
        changed after it was read, by a concurrent cancel or sweep, nothing is
        written.
        """
        appointment = self.get(appointment_id)
        previous = appointment.status

        day, start, end = self._slot(
            patch.date or appointment.date,
            patch.start_time or appointment.start_time,
            patch.end_time or appointment.end_time,
        )
        slot_changed = (day, start, end) != (
            appointment.date, appointment.start_time, appointment.end_time
        )
        title = self._title(patch.title)
        title_changed = title is not None and title != appointment.title

        if is_terminal(previous) and title_changed:
            raise InvalidTransitionError("Cancelled appointments cannot be modified")
        new_status = resolve_update(previous, patch.status, slot_changed)

        changes, values = {}, {}
        if slot_changed:
            changes["slot"] = {
                "from": self._describe_slot(appointment),
                "to": f"{day.isoformat()} {format_time(start)}-{format_time(end)}",
            }
            values.update({Appointment.date: day, Appointment.start_time: start, Appointment.end_time: end})
        if title_changed:
            changes["title"] = {"from": appointment.title, "to": title}
            values[Appointment.title] = title
        if new_status != previous:
            changes["status"] = {"from": previous.value, "to": new_status.value}
            values[Appointment.status] = new_status
        if (
            new_status == AppointmentStatus.CANCELLED
            and patch.cancellation_reason
            and (previous != AppointmentStatus.CANCELLED or not appointment.cancellation_reason)
        ):
            changes["cancellation_reason"] = patch.cancellation_reason
            values[Appointment.cancellation_reason] = patch.cancellation_reason

        if not changes:
            return appointment

        check = patch.touches_slot and new_status != AppointmentStatus.CANCELLED
        with date_lock(self.db, day) if check else nullcontext():
            if check:
                self._ensure_available(day, start, end, exclude_id=appointment.id)
            self._claim(appointment, previous, values)
        self.db.refresh(appointment)

        event = event_for(previous, new_status, slot_changed)
        if is_terminal(previous):
            # only the cancellation reason was attached
            event = None
        self.events.publish(
            appointment,
            event,
            action=self._action_for(previous, new_status, slot_changed),
            description=f"Appointment '{appointment.title}' updated",
            details=changes,
        )
        return appointment

    def reschedule(
        self,
        appointment_id: int,
        day: DateLike,
        start_time: TimeLike,
        end_time: TimeLike,
        title: Optional[str] = None,
    ) -> Appointment:
        """Move an appointment to a new slot, all or nothing.

        The new slot is checked excluding the appointment itself; on conflict
        nothing is modified. A blank ``title`` is rejected, ``None`` keeps the
        current one.
        """
        appointment = self.get(appointment_id)
        day, start, end = self._slot(day, start_time, end_time)
        title = self._title(title)
        previous = appointment.status
        new_status = status_after_slot_change(previous)
        old_slot = self._describe_slot(appointment)

        values = {
            Appointment.date: day,
            Appointment.start_time: start,
            Appointment.end_time: end,
            Appointment.status: new_status,
        }
        if title is not None:
            values[Appointment.title] = title

        with date_lock(self.db, day):
            self._ensure_available(day, start, end, exclude_id=appointment.id)
            self._claim(appointment, previous, values)
        self.db.refresh(appointment)

        logger.info(f"Appointment {appointment.id} rescheduled from {old_slot} to {self._describe_slot(appointment)}")
        self.events.publish(
            appointment,
            event_for(previous, new_status, slot_changed=True),
            action="APPOINTMENT_RESCHEDULED",
            description=f"Appointment '{appointment.title}' rescheduled",
            details={
                "from": old_slot,
                "to": self._describe_slot(appointment),
                "previous_status": previous.value,
                "status": new_status.value,
            },
        )
        return appointment

    def cancel(self, appointment_id: int, reason: Optional[str] = None) -> Appointment:
        """Cancel an appointment; cancelling twice is a no-op."""
        appointment = self.get(appointment_id)
        reason = reason.strip() if reason and reason.strip() else None

        if is_terminal(appointment.status):
            if reason and not appointment.cancellation_reason:
                appointment.cancellation_reason = reason
                self._commit()
                self.db.refresh(appointment)
            return appointment

        previous = appointment.status
        claimed = self.db.query(Appointment).filter(
            Appointment.id == appointment.id,
            Appointment.status != AppointmentStatus.CANCELLED,
        ).update(
            {
                Appointment.status: AppointmentStatus.CANCELLED,
                Appointment.cancellation_reason: reason,
            },
            synchronize_session=False,
        )
        self._commit()
        self.db.refresh(appointment)
        if not claimed:
            # cancelled concurrently (sweep or another request); theirs wins
            return appointment

        logger.info(f"Appointment {appointment.id} cancelled")
        self.events.publish(
            appointment,
            EventKind.CANCELLED,
            action="APPOINTMENT_CANCELLED",
            description=f"Appointment '{appointment.title}' cancelled",
            details={"previous_status": previous.value, "reason": reason},
        )
        return appointment

    def sweep(self) -> List[Appointment]:
        """Cancel every active appointment whose window has elapsed."""
        return self.sweeper.sweep()

    # Reads

    def get(self, appointment_id: int) -> Appointment:
        appointment = self.db.query(Appointment).filter(Appointment.id == appointment_id).first()
        if not appointment:
            raise NotFoundError("Appointment", appointment_id)
        return appointment

    def list_active(self, filters: Optional[AppointmentFilters] = None) -> List[Appointment]:
        self.sweep()
        query = self._filtered(filters).filter(Appointment.status != AppointmentStatus.CANCELLED)
        return query.order_by(Appointment.date.asc(), Appointment.start_time.asc()).all()

    def list_archived(self, filters: Optional[AppointmentFilters] = None) -> List[Appointment]:
        query = self._filtered(filters).filter(Appointment.status == AppointmentStatus.CANCELLED)
        return query.order_by(
            Appointment.date.desc(), Appointment.start_time.asc()
        ).limit(self.archive_limit).all()

    def list_for_patient(
        self, patient_id: int, sort_by: PatientSortOrder = PatientSortOrder.DATE
    ) -> List[Appointment]:
        self._patient(patient_id)
        ordering = {
            PatientSortOrder.DATE: (Appointment.date.desc(), Appointment.start_time.desc()),
            PatientSortOrder.DATE_ASC: (Appointment.date.asc(), Appointment.start_time.asc()),
            PatientSortOrder.STATUS: (Appointment.status.asc(), Appointment.date.desc()),
        }[sort_by]
        return self.db.query(Appointment).filter(
            Appointment.patient_id == patient_id
        ).order_by(*ordering).all()

    def available_slots(self, day: DateLike) -> List[SlotAvailability]:
        return self.checker.slots(self._date(day))

    def is_available(
        self, day: DateLike, start_time: TimeLike, end_time: TimeLike, exclude_id: Optional[int] = None
    ) -> bool:
        day, start, end = self._date(day), parse_time(start_time), parse_time(end_time)
        return self.checker.is_available(day, start, end, exclude_id)

    # Helpers

    def _bookings_on(self, day: date) -> List[Booking]:
        rows = self.db.query(Appointment).filter(
            Appointment.date == day,
            Appointment.status != AppointmentStatus.CANCELLED,
        ).all()
        return [Booking.from_appointment(row) for row in rows]

    def _ensure_available(self, day: date, start: time, end: time, exclude_id: Optional[int] = None):
        if not self.policy.within_hours(start, end):
            raise ConflictError(
                f"Time slot must fall within business hours "
                f"({format_time(self.policy.opens_at)}-{format_time(self.policy.closes_at)})"
            )
        if not self.checker.is_available(day, start, end, exclude_id):
            raise ConflictError(_SLOT_TAKEN.format(capacity=self.policy.capacity))

    def _patient(self, patient_id: int) -> Patient:
        patient = self.events.patients.find_by_id(patient_id)
        if not patient:
            raise NotFoundError("Patient", patient_id)
        return patient

    def _filtered(self, filters: Optional[AppointmentFilters]):
        query = self.db.query(Appointment)
        if filters is None:
            return query
        if filters.status is not None:
            query = query.filter(Appointment.status == filters.status)
        if filters.date_from is not None:
            query = query.filter(Appointment.date >= filters.date_from)
        if filters.date_to is not None:
            query = query.filter(Appointment.date <= filters.date_to)
        if filters.patient_id is not None:
            query = query.filter(Appointment.patient_id == filters.patient_id)
        return query

    @staticmethod
    def _title(value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        if not value:
            raise ValidationError("Title is required")
        return value

    def _claim(self, appointment: Appointment, expected: AppointmentStatus, values: dict):
        """Write ``values`` only while the row still has status ``expected``.

        A cancel or sweep committed after the appointment was read keeps its
        result; nothing is written and InvalidTransitionError is raised.
        """
        claimed = self.db.query(Appointment).filter(
            Appointment.id == appointment.id,
            Appointment.status == expected,
        ).update(values, synchronize_session=False)
        if not claimed:
            self.db.rollback()
            raise InvalidTransitionError(
                f"Appointment {appointment.id} changed status while being updated; reload and retry"
            )
        self._commit()

    def _slot(self, day: DateLike, start_time: TimeLike, end_time: TimeLike):
        day, start, end = self._date(day), parse_time(start_time), parse_time(end_time)
        if end <= start:
            raise ValidationError("End time must be after start time")
        return day, start, end

    @staticmethod
    def _date(value: DateLike) -> date:
        if isinstance(value, date):
            return value
        try:
            return date.fromisoformat(str(value))
        except ValueError:
            raise ValidationError(f"{value} is not a valid date! Use YYYY-MM-DD format.")

    @staticmethod
    def _describe_slot(appointment: Appointment) -> str:
        return (
            f"{appointment.date.isoformat()} "
            f"{format_time(appointment.start_time)}-{format_time(appointment.end_time)}"
        )

    @staticmethod
    def _action_for(previous: AppointmentStatus, new: AppointmentStatus, slot_changed: bool) -> str:
        if new == AppointmentStatus.CANCELLED and previous != new:
            return "APPOINTMENT_CANCELLED"
        if new == AppointmentStatus.FINISHED and previous != new:
            return "APPOINTMENT_COMPLETED"
        if previous == AppointmentStatus.PENDING and new == AppointmentStatus.SCHEDULED:
            return "APPOINTMENT_APPROVED"
        if slot_changed:
            return "APPOINTMENT_RESCHEDULED"
        if new != previous:
            return "APPOINTMENT_STATUS_CHANGED"
        return "APPOINTMENT_UPDATED"

    def _commit(self):
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
