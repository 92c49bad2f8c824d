from typing import Optional, Protocol
import logging

import httpx

from ..models.appointment import Appointment
from ..models.patient import Patient
from ..scheduling.calendar import format_time
from ..scheduling.lifecycle import EventKind

logger = logging.getLogger(__name__)

class NotificationSender(Protocol):
    def send_appointment_event(
        self, patient: Patient, appointment: Appointment, event_kind: EventKind
    ) -> bool:
        """Deliver an appointment event to the patient. Returns False on failure."""
        ...

def event_payload(patient: Patient, appointment: Appointment, event_kind: EventKind) -> dict:
    return {
        "event_kind": event_kind.value,
        "patient": {
            "id": patient.id,
            "name": patient.full_name,
            "email": patient.email,
        },
        "appointment": {
            "id": appointment.id,
            "date": appointment.date.isoformat(),
            "start_time": format_time(appointment.start_time),
            "end_time": format_time(appointment.end_time),
            "title": appointment.title,
            "status": appointment.status.value,
            "cancellation_reason": appointment.cancellation_reason,
        },
    }

class LoggingNotificationSender:
    """Default sender when no delivery endpoint is configured."""

    def send_appointment_event(
        self, patient: Patient, appointment: Appointment, event_kind: EventKind
    ) -> bool:
        logger.info(
            f"Appointment event {event_kind.value} for appointment {appointment.id} "
            f"(patient {patient.id})"
        )
        return True

class WebhookNotificationSender:
    """Posts appointment events as JSON to the mail delivery service."""

    def __init__(self, url: str, timeout: float = 5.0, client: Optional[httpx.Client] = None):
        self.url = url
        self._client = client or httpx.Client(timeout=timeout)

    def send_appointment_event(
        self, patient: Patient, appointment: Appointment, event_kind: EventKind
    ) -> bool:
        try:
            response = self._client.post(self.url, json=event_payload(patient, appointment, event_kind))
        except httpx.HTTPError as exc:
            logger.warning(f"Notification delivery failed for appointment {appointment.id}: {exc}")
            return False

        if response.status_code >= 400:
            logger.warning(
                f"Notification endpoint rejected {event_kind.value} for appointment "
                f"{appointment.id}: HTTP {response.status_code}"
            )
            return False
        return True

    def close(self) -> None:
        self._client.close()

def build_notification_sender(settings) -> NotificationSender:
    if settings.NOTIFICATION_WEBHOOK_URL:
        return WebhookNotificationSender(
            settings.NOTIFICATION_WEBHOOK_URL,
            timeout=settings.NOTIFICATION_TIMEOUT_SECONDS,
        )
    return LoggingNotificationSender()
