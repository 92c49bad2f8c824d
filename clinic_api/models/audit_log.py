from sqlalchemy import Column, Integer, String, DateTime, JSON
from sqlalchemy.sql import func

from ..core.database import Base

class AuditLogEntry(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)

    # Actor; None for public and system actions
    actor_id = Column(String(64), nullable=True)
    actor_name = Column(String(255), nullable=False, default="Public User")

    action = Column(String(64), nullable=False, index=True)
    entity_type = Column(String(32), nullable=False)
    entity_id = Column(String(64), nullable=True, index=True)
    entity_name = Column(String(255), nullable=True)
    description = Column(String(500), nullable=False)
    details = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime, server_default=func.now())

    def __repr__(self):
        return f"<AuditLogEntry(id={self.id}, action='{self.action}', entity_id='{self.entity_id}')>"
