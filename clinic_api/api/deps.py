from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy.orm import Session, sessionmaker
from typing import List, Optional

from ..core.config import settings
from ..core.database import get_db, get_kv_store, KeyValueStore
from ..core.errors import RateLimitError
from ..core.security import (
    security, verify_token, AuthenticationError,
    AuthorizationError, AdminRole, TokenPayload
)
from ..scheduling.availability import SchedulingPolicy
from ..scheduling.clock import Clock, SystemClock
from ..services.appointment_service import AppointmentService
from ..services.collaborators import Actor, AuditLog, PUBLIC_ACTOR, SqlAuditLog, SqlPatientDirectory
from ..services.events import AppointmentEvents
from ..services.notification_service import NotificationSender, build_notification_sender

_clock = SystemClock(settings.CLINIC_TIMEZONE)
_policy = SchedulingPolicy.from_settings(settings)
_notification_sender: Optional[NotificationSender] = None

async def get_current_admin(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> TokenPayload:
    """Extract and verify the admin's JWT from the Authorization header."""
    if credentials is None:
        raise AuthenticationError("Not authorized to access this route")

    token_payload = verify_token(credentials.credentials)
    if not token_payload:
        raise AuthenticationError("Invalid or expired token")

    # Check if token is access token
    if token_payload.token_type != "access":
        raise AuthenticationError("Invalid token type")

    if not token_payload.sub or token_payload.role is None:
        raise AuthenticationError("Invalid token payload")

    return token_payload

# Role-based access control dependencies
def require_role(allowed_roles: List[AdminRole]):
    """Create a dependency that requires specific admin roles."""
    async def role_checker(
        admin: TokenPayload = Depends(get_current_admin)
    ) -> TokenPayload:
        if admin.role not in allowed_roles:
            raise AuthorizationError(
                f"Access denied. Required roles: {[role.value for role in allowed_roles]}"
            )
        return admin

    return role_checker

get_staff_admin = require_role([AdminRole.ADMIN, AdminRole.SUPERADMIN])

# Collaborators
def get_clock() -> Clock:
    return _clock

def get_policy() -> SchedulingPolicy:
    return _policy

def get_notification_sender() -> NotificationSender:
    global _notification_sender
    if _notification_sender is None:
        _notification_sender = build_notification_sender(settings)
    return _notification_sender

def get_audit_log(db: Session = Depends(get_db)) -> AuditLog:
    """Audit writer on the same database as the request, in its own sessions."""
    return SqlAuditLog(sessionmaker(bind=db.get_bind(), autoflush=False))

def _build_service(db, clock, policy, notifier, audit_log, actor: Actor) -> AppointmentService:
    events = AppointmentEvents(
        patients=SqlPatientDirectory(db),
        notifier=notifier,
        audit_log=audit_log,
        actor=actor,
    )
    return AppointmentService(db, events, clock, policy, archive_limit=settings.ARCHIVE_LIMIT)

async def get_appointment_service(
    admin: TokenPayload = Depends(get_staff_admin),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    policy: SchedulingPolicy = Depends(get_policy),
    notifier: NotificationSender = Depends(get_notification_sender),
    audit_log: AuditLog = Depends(get_audit_log),
) -> AppointmentService:
    """Appointment service acting on behalf of the authenticated admin."""
    actor = Actor(id=admin.sub, name=admin.name or "Admin")
    return _build_service(db, clock, policy, notifier, audit_log, actor)

async def get_public_appointment_service(
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    policy: SchedulingPolicy = Depends(get_policy),
    notifier: NotificationSender = Depends(get_notification_sender),
    audit_log: AuditLog = Depends(get_audit_log),
) -> AppointmentService:
    return _build_service(db, clock, policy, notifier, audit_log, PUBLIC_ACTOR)

# Rate limiting dependency
async def booking_rate_limit(
    request: Request,
    kv_store: KeyValueStore = Depends(get_kv_store)
) -> None:
    """Fixed-window rate limit for public booking requests."""
    client_ip = request.client.host if request.client else "unknown"
    key = f"rate_limit:booking:{client_ip}"

    current_requests = kv_store.get(key)
    if current_requests is None:
        kv_store.set(key, "1", settings.BOOKING_RATE_LIMIT_WINDOW_SECONDS)
        return

    if int(current_requests) >= settings.BOOKING_RATE_LIMIT_MAX:
        raise RateLimitError("Too many booking requests. Please try again later.")
    kv_store.incr(key)
