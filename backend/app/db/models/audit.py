"""
Audit database model for receipt and catalog audit logging
"""
import uuid
from datetime import datetime

from sqlalchemy import Column, String, DateTime, JSON
from sqlalchemy.dialects.postgresql import UUID

from app.db.base import Base


class AuditLog(Base):
    """Audit trail of billing-relevant operations."""

    __tablename__ = "audit_logs"

    log_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    event_type = Column(String(100), nullable=False, index=True)

    # Resource being modified
    resource_type = Column(String(50), nullable=True)  # e.g. "receipt", "bonus_definition"
    resource_id = Column(String(100), nullable=True)

    # Actor
    facility_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    actor_id = Column(String(100), nullable=True)
    actor_type = Column(String(50), nullable=False)  # "user" or "system"

    action = Column(String(100), nullable=False)  # e.g. "create", "finalize", "reopen"
    details = Column(JSON, default=dict)

    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    def __repr__(self) -> str:
        return f"<AuditLog {self.event_type} at {self.timestamp}>"
