import datetime as dt

import pytest

from clinic_api.core.errors import ConflictError, InvalidTransitionError, NotFoundError, ValidationError
from clinic_api.models.appointment import Appointment, AppointmentStatus
from clinic_api.scheduling.lifecycle import EventKind
from clinic_api.schemas.appointment import AppointmentFilters, AppointmentUpdate, PatientSortOrder

BOOKING_DAY = dt.date(2024, 1, 10)

def book(service, patient, start="09:00", end="09:30", day=BOOKING_DAY, **kwargs):
    return service.create(patient.id, day, start, end, "Dental cleaning", **kwargs)

class TestCreate:

    def test_admin_booking_is_scheduled(self, service, patient, notifier, audit_entries):
        appointment = book(service, patient)

        assert appointment.id is not None
        assert appointment.status == AppointmentStatus.SCHEDULED
        assert appointment.start_time == dt.time(9, 0)
        assert appointment.cancellation_reason is None
        assert notifier.kinds() == [EventKind.CREATED]

        entries = audit_entries("APPOINTMENT_CREATED")
        assert len(entries) == 1
        assert entries[0].actor_name == "Dr. Admin"
        assert entries[0].entity_id == str(appointment.id)

    def test_public_request_is_pending(self, service, patient, audit_entries):
        appointment = book(service, patient, is_public_request=True)

        assert appointment.status == AppointmentStatus.PENDING
        entries = audit_entries("APPOINTMENT_REQUESTED")
        assert entries[0].actor_name == "Public User"
        assert entries[0].actor_id is None

    def test_unknown_patient(self, service, patient):
        with pytest.raises(NotFoundError):
            service.create(patient.id + 100, BOOKING_DAY, "09:00", "09:30", "Checkup")

    def test_validation_runs_before_availability(self, service, patient):
        with pytest.raises(ValidationError):
            book(service, patient, start="10:00", end="09:30")
        with pytest.raises(ValidationError):
            book(service, patient, start="9am")
        with pytest.raises(ValidationError):
            service.create(patient.id, BOOKING_DAY, "09:00", "09:30", "   ")
        with pytest.raises(ValidationError):
            service.create(patient.id, "10/01/2024", "09:00", "09:30", "Checkup")

    def test_outside_business_hours_is_a_conflict(self, service, patient):
        with pytest.raises(ConflictError, match="business hours"):
            book(service, patient, start="08:30", end="09:00")

    def test_capacity_scenario(self, service, patient, db):
        """Two bookings fill 09:00-09:30; an overlapping third is refused."""
        book(service, patient)
        book(service, patient)

        with pytest.raises(ConflictError):
            book(service, patient, start="09:15", end="09:45")

        adjacent = book(service, patient, start="09:30", end="10:00")
        assert adjacent.status == AppointmentStatus.SCHEDULED
        assert db.query(Appointment).count() == 3

    def test_cancelled_appointments_free_capacity(self, service, patient):
        first = book(service, patient)
        book(service, patient)
        service.cancel(first.id)

        assert book(service, patient).status == AppointmentStatus.SCHEDULED

    def test_notification_failure_does_not_fail_booking(self, service, patient, notifier, db):
        notifier.error = RuntimeError("smtp down")

        appointment = book(service, patient)

        assert db.get(Appointment, appointment.id) is not None

    def test_audit_failure_does_not_fail_booking(self, service, patient, notifier):
        class BrokenAuditLog:
            def record(self, **kwargs):
                raise RuntimeError("audit store unavailable")

        service.events.audit_log = BrokenAuditLog()

        appointment = book(service, patient)

        assert appointment.status == AppointmentStatus.SCHEDULED
        assert notifier.kinds() == [EventKind.CREATED]

class TestUpdate:

    def test_pending_with_new_slot_becomes_scheduled(self, service, patient, notifier):
        appointment = book(service, patient, is_public_request=True)

        updated = service.update(
            appointment.id, AppointmentUpdate(start_time="10:00", end_time="10:30")
        )

        assert updated.status == AppointmentStatus.SCHEDULED
        assert updated.start_time == dt.time(10, 0)
        assert notifier.kinds()[-1] == EventKind.APPROVED

    def test_scheduled_with_new_slot_becomes_rescheduled(self, service, patient, audit_entries):
        appointment = book(service, patient)

        updated = service.update(
            appointment.id,
            AppointmentUpdate(date=BOOKING_DAY + dt.timedelta(days=1), start_time="11:00", end_time="11:30"),
        )

        assert updated.status == AppointmentStatus.RESCHEDULED
        assert updated.date == BOOKING_DAY + dt.timedelta(days=1)
        assert len(audit_entries("APPOINTMENT_RESCHEDULED")) == 1

    def test_explicit_cancel_overrides_slot_change(self, service, patient):
        appointment = book(service, patient)

        updated = service.update(
            appointment.id,
            AppointmentUpdate(
                status=AppointmentStatus.CANCELLED,
                start_time="13:00",
                end_time="13:30",
                cancellation_reason="Patient called",
            ),
        )

        assert updated.status == AppointmentStatus.CANCELLED
        assert updated.cancellation_reason == "Patient called"

    def test_explicit_status_without_slot_skips_availability(self, service, patient):
        first = book(service, patient)
        book(service, patient)

        updated = service.update(first.id, AppointmentUpdate(status=AppointmentStatus.FINISHED))

        assert updated.status == AppointmentStatus.FINISHED

    def test_slot_conflict_leaves_appointment_unchanged(self, service, patient, db):
        book(service, patient, start="11:00", end="11:30")
        book(service, patient, start="11:00", end="11:30")
        appointment = book(service, patient)

        with pytest.raises(ConflictError):
            service.update(appointment.id, AppointmentUpdate(start_time="11:00", end_time="11:30"))

        db.expire_all()
        unchanged = db.get(Appointment, appointment.id)
        assert unchanged.start_time == dt.time(9, 0)
        assert unchanged.status == AppointmentStatus.SCHEDULED

    def test_title_only_update(self, service, patient, notifier):
        appointment = book(service, patient)

        updated = service.update(appointment.id, AppointmentUpdate(title="Root canal"))

        assert updated.title == "Root canal"
        assert updated.status == AppointmentStatus.SCHEDULED
        assert notifier.kinds() == [EventKind.CREATED]

    def test_blank_title_is_rejected(self, service, patient, db):
        appointment = book(service, patient)

        with pytest.raises(ValidationError):
            service.update(appointment.id, AppointmentUpdate.model_construct(title="   "))

        db.expire_all()
        assert db.get(Appointment, appointment.id).title == "Dental cleaning"

    def test_reason_ignored_unless_cancelling(self, service, patient):
        appointment = book(service, patient)

        updated = service.update(
            appointment.id, AppointmentUpdate(title="Checkup", cancellation_reason="n/a")
        )

        assert updated.cancellation_reason is None

    def test_cancelled_appointment_is_immutable(self, service, patient):
        appointment = book(service, patient)
        service.cancel(appointment.id)

        with pytest.raises(InvalidTransitionError):
            service.update(appointment.id, AppointmentUpdate(status=AppointmentStatus.SCHEDULED))
        with pytest.raises(InvalidTransitionError):
            service.update(appointment.id, AppointmentUpdate(start_time="10:00", end_time="10:30"))

    def test_reason_can_be_attached_to_cancelled(self, service, patient):
        appointment = book(service, patient)
        service.cancel(appointment.id)

        updated = service.update(appointment.id, AppointmentUpdate(cancellation_reason="No show"))

        assert updated.status == AppointmentStatus.CANCELLED
        assert updated.cancellation_reason == "No show"

    def test_finished_cannot_be_marked_rescheduled_in_place(self, service, patient):
        appointment = book(service, patient)
        service.update(appointment.id, AppointmentUpdate(status=AppointmentStatus.FINISHED))

        with pytest.raises(InvalidTransitionError):
            service.update(appointment.id, AppointmentUpdate(status=AppointmentStatus.RESCHEDULED))

    def test_unknown_appointment(self, service):
        with pytest.raises(NotFoundError):
            service.update(999, AppointmentUpdate(title="x"))

class TestReschedule:

    def test_excludes_own_record(self, service, patient):
        """A at 09:00-09:30 moves onto B's 09:15-09:45 window; only B counts."""
        a = book(service, patient)
        book(service, patient, start="09:15", end="09:45")

        moved = service.reschedule(a.id, BOOKING_DAY, "09:15", "09:45")

        assert moved.start_time == dt.time(9, 15)
        assert moved.status == AppointmentStatus.RESCHEDULED

    def test_conflict_is_all_or_nothing(self, service, patient, db):
        a = book(service, patient)
        book(service, patient, start="09:15", end="09:45")
        book(service, patient, start="09:30", end="10:00")

        with pytest.raises(ConflictError):
            service.reschedule(a.id, BOOKING_DAY, "09:15", "09:45", title="Moved")

        db.expire_all()
        unchanged = db.get(Appointment, a.id)
        assert unchanged.start_time == dt.time(9, 0)
        assert unchanged.title == "Dental cleaning"
        assert unchanged.status == AppointmentStatus.SCHEDULED

    def test_pending_becomes_scheduled(self, service, patient):
        appointment = book(service, patient, is_public_request=True)

        moved = service.reschedule(appointment.id, BOOKING_DAY, "14:00", "14:30")

        assert moved.status == AppointmentStatus.SCHEDULED

    def test_finished_follow_up(self, service, patient, notifier):
        appointment = book(service, patient)
        service.update(appointment.id, AppointmentUpdate(status=AppointmentStatus.FINISHED))

        follow_up = service.reschedule(
            appointment.id, BOOKING_DAY + dt.timedelta(days=7), "10:00", "10:30", title="Follow-up"
        )

        assert follow_up.status == AppointmentStatus.RESCHEDULED
        assert follow_up.title == "Follow-up"
        assert notifier.kinds()[-1] == EventKind.RESCHEDULED

    def test_blank_title_is_rejected(self, service, patient, db):
        appointment = book(service, patient)

        with pytest.raises(ValidationError):
            service.reschedule(appointment.id, BOOKING_DAY, "10:00", "10:30", title="  ")

        db.expire_all()
        unchanged = db.get(Appointment, appointment.id)
        assert unchanged.start_time == dt.time(9, 0)
        assert unchanged.title == "Dental cleaning"

    def test_cancelled_cannot_be_rescheduled(self, service, patient):
        appointment = book(service, patient)
        service.cancel(appointment.id)

        with pytest.raises(InvalidTransitionError):
            service.reschedule(appointment.id, BOOKING_DAY, "10:00", "10:30")

class TestCancel:

    def test_cancel_with_reason(self, service, patient, notifier, audit_entries):
        appointment = book(service, patient)

        cancelled = service.cancel(appointment.id, reason="Feeling better")

        assert cancelled.status == AppointmentStatus.CANCELLED
        assert cancelled.cancellation_reason == "Feeling better"
        assert notifier.kinds()[-1] == EventKind.CANCELLED
        assert len(audit_entries("APPOINTMENT_CANCELLED")) == 1

    def test_cancel_is_idempotent(self, service, patient, notifier, audit_entries):
        appointment = book(service, patient)
        service.cancel(appointment.id, reason="Travel")

        second = service.cancel(appointment.id)

        assert second.status == AppointmentStatus.CANCELLED
        assert second.cancellation_reason == "Travel"
        assert len(audit_entries("APPOINTMENT_CANCELLED")) == 1
        assert notifier.kinds().count(EventKind.CANCELLED) == 1

    def test_recancel_keeps_existing_reason(self, service, patient):
        appointment = book(service, patient)
        service.cancel(appointment.id, reason="Travel")

        assert service.cancel(appointment.id, reason="Other").cancellation_reason == "Travel"

    def test_unknown_appointment(self, service):
        with pytest.raises(NotFoundError):
            service.cancel(12345)

class TestQueries:

    def test_list_active_excludes_cancelled_and_sorts(self, service, patient):
        later = book(service, patient, start="11:00", end="11:30")
        earlier = book(service, patient, start="09:00", end="09:30")
        cancelled = book(service, patient, start="10:00", end="10:30")
        service.cancel(cancelled.id)

        assert [a.id for a in service.list_active()] == [earlier.id, later.id]

    def test_list_active_filters(self, service, patient, db):
        from clinic_api.models.patient import Patient

        other = Patient(first_name="Ana", last_name="Lopez")
        db.add(other)
        db.commit()

        mine = book(service, patient)
        service.create(other.id, BOOKING_DAY + dt.timedelta(days=1), "09:00", "09:30", "Checkup")
        pending = book(service, patient, start="10:00", end="10:30", is_public_request=True)

        by_patient = service.list_active(AppointmentFilters(patient_id=patient.id))
        by_status = service.list_active(AppointmentFilters(status=AppointmentStatus.PENDING))
        by_range = service.list_active(AppointmentFilters(date_from=BOOKING_DAY, date_to=BOOKING_DAY))

        assert {a.id for a in by_patient} == {mine.id, pending.id}
        assert [a.id for a in by_status] == [pending.id]
        assert {a.id for a in by_range} == {mine.id, pending.id}

    def test_list_archived(self, service, patient):
        older = book(service, patient)
        newer = book(service, patient, day=BOOKING_DAY + dt.timedelta(days=2))
        book(service, patient, start="12:00", end="12:30")
        service.cancel(older.id)
        service.cancel(newer.id)

        assert [a.id for a in service.list_archived()] == [newer.id, older.id]

    def test_list_archived_is_capped(self, service, patient):
        service.archive_limit = 2
        for start, end in [("09:00", "09:30"), ("10:00", "10:30"), ("11:00", "11:30")]:
            service.cancel(book(service, patient, start=start, end=end).id)

        assert len(service.list_archived()) == 2

    def test_list_for_patient_sort_orders(self, service, patient):
        first = book(service, patient)
        second = book(service, patient, day=BOOKING_DAY + dt.timedelta(days=1))
        service.cancel(first.id)

        newest_first = service.list_for_patient(patient.id)
        oldest_first = service.list_for_patient(patient.id, PatientSortOrder.DATE_ASC)
        by_status = service.list_for_patient(patient.id, PatientSortOrder.STATUS)

        assert [a.id for a in newest_first] == [second.id, first.id]
        assert [a.id for a in oldest_first] == [first.id, second.id]
        assert [a.status for a in by_status] == [AppointmentStatus.CANCELLED, AppointmentStatus.SCHEDULED]

    def test_list_for_unknown_patient(self, service):
        with pytest.raises(NotFoundError):
            service.list_for_patient(404)

    def test_available_slots(self, service, patient):
        book(service, patient)
        book(service, patient)
        book(service, patient, start="10:00", end="10:30")

        slots = {s.start: s for s in service.available_slots(BOOKING_DAY)}

        assert not slots[dt.time(9, 0)].available
        assert slots[dt.time(10, 0)].occupied
        assert slots[dt.time(10, 0)].available
        assert not slots[dt.time(9, 30)].occupied

    def test_is_available(self, service, patient):
        a = book(service, patient)
        book(service, patient)

        assert not service.is_available(BOOKING_DAY, "09:00", "09:30")
        assert service.is_available(BOOKING_DAY, "09:00", "09:30", exclude_id=a.id)
