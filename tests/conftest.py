import os
import datetime as dt

# Set testing environment before the application is imported
os.environ["TESTING"] = "1"
os.environ["TEST_DATABASE_URL"] = "sqlite:///./test.db"

import pytest
from fastapi.testclient import TestClient

from clinic_api.core.database import Base, SessionLocal, engine, init_db
from clinic_api.core.security import create_access_token
from clinic_api.models.audit_log import AuditLogEntry
from clinic_api.models.patient import Patient
from clinic_api.scheduling.availability import SchedulingPolicy
from clinic_api.scheduling.clock import FixedClock
from clinic_api.services.appointment_service import AppointmentService
from clinic_api.services.collaborators import Actor, SqlAuditLog, SqlPatientDirectory
from clinic_api.services.events import AppointmentEvents

# Day before the scenario date used throughout the tests
TODAY = dt.date(2024, 1, 9)
BOOKING_DAY = dt.date(2024, 1, 10)

class RecordingNotifier:
    """NotificationSender double that remembers what it was asked to send."""

    def __init__(self):
        self.sent = []
        self.error = None
        self.deliver = True

    def send_appointment_event(self, patient, appointment, event_kind):
        if self.error:
            raise self.error
        self.sent.append((patient.id, appointment.id, event_kind))
        return self.deliver

    def kinds(self):
        return [kind for _, _, kind in self.sent]

@pytest.fixture(scope="function")
def test_db():
    # Create tables
    init_db()
    yield
    Base.metadata.drop_all(bind=engine)

@pytest.fixture
def db(test_db):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()

@pytest.fixture
def clock():
    return FixedClock(TODAY, dt.time(8, 0))

@pytest.fixture
def policy():
    return SchedulingPolicy()

@pytest.fixture
def notifier():
    return RecordingNotifier()

@pytest.fixture
def audit_log():
    return SqlAuditLog(SessionLocal)

@pytest.fixture
def service(db, clock, policy, notifier, audit_log):
    events = AppointmentEvents(
        patients=SqlPatientDirectory(db),
        notifier=notifier,
        audit_log=audit_log,
        actor=Actor(id="1", name="Dr. Admin"),
    )
    return AppointmentService(db, events, clock, policy)

@pytest.fixture
def patient(db):
    patient = Patient(first_name="Maria", last_name="Santos", email="maria@example.com")
    db.add(patient)
    db.commit()
    db.refresh(patient)
    return patient

@pytest.fixture
def audit_entries(db):
    def _entries(action=None):
        db.expire_all()
        query = db.query(AuditLogEntry)
        if action:
            query = query.filter(AuditLogEntry.action == action)
        return query.order_by(AuditLogEntry.id).all()
    return _entries

@pytest.fixture
def client(test_db, clock, notifier):
    from clinic_api.api.deps import get_clock, get_notification_sender
    from clinic_api.core.database import kv_store
    from clinic_api.main import app

    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_notification_sender] = lambda: notifier
    kv_store._data.clear()
    with TestClient(app, base_url="http://testserver") as test_client:
        yield test_client
    app.dependency_overrides.clear()

@pytest.fixture
def admin_headers():
    token = create_access_token({"sub": "1", "name": "Dr. Admin", "role": "admin"})
    return {"Authorization": f"Bearer {token}"}
