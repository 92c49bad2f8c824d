from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol
import logging

from sqlalchemy.orm import Session

from ..models.audit_log import AuditLogEntry
from ..models.patient import Patient

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class Actor:
    """Who performed an action, for the audit trail."""
    id: Optional[str]
    name: str

PUBLIC_ACTOR = Actor(id=None, name="Public User")
SYSTEM_ACTOR = Actor(id=None, name="System")

class PatientDirectory(Protocol):
    def find_by_id(self, patient_id: int) -> Optional[Patient]: ...

class AuditLog(Protocol):
    def record(
        self,
        actor_id: Optional[str],
        actor_name: str,
        action: str,
        entity_type: str,
        entity_id: Optional[str],
        entity_name: Optional[str],
        description: str,
        details: Dict[str, Any],
    ) -> None: ...

class SqlPatientDirectory:
    def __init__(self, db: Session):
        self.db = db

    def find_by_id(self, patient_id: int) -> Optional[Patient]:
        return self.db.query(Patient).filter(Patient.id == patient_id).first()

class SqlAuditLog:
    """Writes audit entries in a session of their own.

    A failed audit write never touches the caller's transaction.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def record(
        self,
        actor_id: Optional[str],
        actor_name: str,
        action: str,
        entity_type: str,
        entity_id: Optional[str],
        entity_name: Optional[str],
        description: str,
        details: Dict[str, Any],
    ) -> None:
        db = self._session_factory()
        try:
            db.add(AuditLogEntry(
                actor_id=actor_id,
                actor_name=actor_name,
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                entity_name=entity_name,
                description=description[:500],
                details=details,
            ))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
