"""Appointment status state machine.

    (created by admin)   -> Scheduled
    (public request)     -> Pending
    Pending     --slot change--> Scheduled
    Scheduled   --slot change--> Rescheduled
    Rescheduled --slot change--> Rescheduled
    Finished    --slot change--> Rescheduled   (follow-up visit)
    any         --cancel/sweep-> Cancelled     (terminal)

An explicitly supplied status overrides the slot-change mapping.
"""
import enum
from typing import Optional

from ..core.errors import InvalidTransitionError
from ..models.appointment import AppointmentStatus

class EventKind(str, enum.Enum):
    CREATED = "Created"
    APPROVED = "Approved"
    RESCHEDULED = "Rescheduled"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    MISSED = "Missed"

# Statuses the missed-appointment sweep may cancel
ACTIVE_STATUSES = (
    AppointmentStatus.PENDING,
    AppointmentStatus.SCHEDULED,
    AppointmentStatus.RESCHEDULED,
)

_AFTER_SLOT_CHANGE = {
    AppointmentStatus.PENDING: AppointmentStatus.SCHEDULED,
    AppointmentStatus.SCHEDULED: AppointmentStatus.RESCHEDULED,
    AppointmentStatus.RESCHEDULED: AppointmentStatus.RESCHEDULED,
    AppointmentStatus.FINISHED: AppointmentStatus.RESCHEDULED,
}

def initial_status(is_public_request: bool) -> AppointmentStatus:
    if is_public_request:
        return AppointmentStatus.PENDING
    return AppointmentStatus.SCHEDULED

def is_terminal(status: AppointmentStatus) -> bool:
    return status == AppointmentStatus.CANCELLED

def status_after_slot_change(current: AppointmentStatus) -> AppointmentStatus:
    """Implicit transition applied when the date or time of an appointment moves."""
    if is_terminal(current):
        raise InvalidTransitionError("Cancelled appointments cannot be rescheduled")
    return _AFTER_SLOT_CHANGE[current]

def resolve_update(
    current: AppointmentStatus,
    explicit: Optional[AppointmentStatus],
    slot_changed: bool,
) -> AppointmentStatus:
    """Status an appointment ends up in after an update request.

    Raises:
        InvalidTransitionError: the appointment is cancelled and the request
            changes anything beyond the cancellation reason, or a finished
            appointment is marked Rescheduled without moving its slot.
    """
    if is_terminal(current):
        if slot_changed or (explicit is not None and explicit != current):
            raise InvalidTransitionError("Cancelled appointments cannot be modified")
        return current

    if explicit is not None:
        if (
            current == AppointmentStatus.FINISHED
            and explicit == AppointmentStatus.RESCHEDULED
            and not slot_changed
        ):
            raise InvalidTransitionError(
                "Finished appointments can only be rescheduled together with a new slot"
            )
        return explicit

    if slot_changed:
        return status_after_slot_change(current)
    return current

def event_for(
    previous: AppointmentStatus,
    new: AppointmentStatus,
    slot_changed: bool = False,
) -> Optional[EventKind]:
    """Notification event for a transition, or None when nothing notable happened."""
    if new == previous and not slot_changed:
        return None
    if new == AppointmentStatus.CANCELLED:
        return EventKind.CANCELLED
    if new == AppointmentStatus.FINISHED:
        return EventKind.COMPLETED
    if previous == AppointmentStatus.PENDING and new == AppointmentStatus.SCHEDULED:
        return EventKind.APPROVED
    if slot_changed or new == AppointmentStatus.RESCHEDULED:
        return EventKind.RESCHEDULED
    return None
