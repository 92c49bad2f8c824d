from typing import Any, Dict, Optional
import logging

from ..models.appointment import Appointment
from ..scheduling.calendar import format_time
from ..scheduling.lifecycle import EventKind
from .collaborators import Actor, AuditLog, PatientDirectory
from .notification_service import NotificationSender

logger = logging.getLogger(__name__)

class AppointmentEvents:
    """Best-effort audit and notification side effects of committed changes.

    Neither an audit failure nor a notification failure is ever raised to
    the caller; both are logged and the next side effect still runs.
    """

    def __init__(
        self,
        patients: PatientDirectory,
        notifier: NotificationSender,
        audit_log: AuditLog,
        actor: Actor,
    ):
        self.patients = patients
        self.notifier = notifier
        self.audit_log = audit_log
        self.actor = actor

    def publish(
        self,
        appointment: Appointment,
        event_kind: Optional[EventKind],
        action: str,
        description: str,
        details: Optional[Dict[str, Any]] = None,
        actor: Optional[Actor] = None,
    ) -> None:
        actor = actor or self.actor
        patient = self._patient(appointment)
        self._audit(appointment, patient, actor, action, description, details or {})
        if event_kind is not None and patient is not None:
            self._notify(patient, appointment, event_kind)

    def _patient(self, appointment: Appointment):
        try:
            return self.patients.find_by_id(appointment.patient_id)
        except Exception as exc:
            logger.error(f"Patient lookup failed for appointment {appointment.id}: {exc}")
            return None

    def _audit(self, appointment, patient, actor, action, description, details):
        entity_name = (
            f"{patient.full_name} - {appointment.date.isoformat()} "
            f"{format_time(appointment.start_time)}"
            if patient is not None else appointment.title
        )
        try:
            self.audit_log.record(
                actor_id=actor.id,
                actor_name=actor.name,
                action=action,
                entity_type="appointment",
                entity_id=str(appointment.id),
                entity_name=entity_name,
                description=description,
                details=details,
            )
        except Exception as exc:
            logger.error(f"Failed to record audit entry {action} for appointment {appointment.id}: {exc}")

    def _notify(self, patient, appointment, event_kind):
        try:
            delivered = self.notifier.send_appointment_event(patient, appointment, event_kind)
        except Exception as exc:
            logger.warning(
                f"Notification {event_kind.value} for appointment {appointment.id} raised: {exc}"
            )
            return
        if not delivered:
            logger.warning(f"Notification {event_kind.value} for appointment {appointment.id} was not delivered")
