"""
Audit service for receipt lifecycle and bonus catalog changes.
"""

import uuid
from datetime import datetime
from typing import Any, Optional
from sqlalchemy.orm import Session

from app.db.models import AuditLog
from app.core.logging import get_logger

logger = get_logger(__name__)


class AuditService:
    """Service for creating and querying audit logs."""

    def __init__(self, db: Session):
        self.db = db

    def log(
        self,
        event_type: str,
        action: str,
        actor_type: str,
        actor_id: Optional[str],
        resource_type: str,
        resource_id: str,
        facility_id: Optional[uuid.UUID] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> AuditLog:
        """
        Create an audit log entry in the caller's transaction.

        Args:
            event_type: Type of event (e.g., "receipt.finalized")
            action: Short verb stored with the event (e.g., "finalize")
            actor_type: Who performed the action ("user" or "system")
            actor_id: ID of the actor
            resource_type: Type of resource affected
            resource_id: ID of the resource
            facility_id: Tenant the resource belongs to
            details: Additional event details
        """
        audit_log = AuditLog(
            event_type=event_type,
            action=action,
            actor_type=actor_type,
            actor_id=actor_id,
            resource_type=resource_type,
            resource_id=resource_id,
            facility_id=facility_id,
            details={
                **(details or {}),
                "_metadata": {"timestamp": datetime.utcnow().isoformat()},
            },
        )

        self.db.add(audit_log)
        self.db.flush()

        # Log to application logs as well for real-time monitoring
        logger.info(f"AUDIT: {event_type} | {actor_type}:{actor_id} | {resource_type}:{resource_id}")

        return audit_log

    def log_receipt_event(
        self,
        event_type: str,
        action: str,
        receipt_id: uuid.UUID,
        facility_id: Optional[uuid.UUID],
        user_id: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditLog:
        """Log a receipt lifecycle event."""
        return self.log(
            event_type=event_type,
            action=action,
            actor_type="user" if user_id else "system",
            actor_id=user_id,
            resource_type="receipt",
            resource_id=str(receipt_id),
            facility_id=facility_id,
            details=details,
        )

    def log_catalog_event(
        self,
        event_type: str,
        action: str,
        definition_id: uuid.UUID,
        user_id: str,
        facility_id: Optional[uuid.UUID],
        details: Optional[dict] = None,
    ) -> AuditLog:
        """Log a bonus catalog change."""
        return self.log(
            event_type=event_type,
            action=action,
            actor_type="user",
            actor_id=user_id,
            resource_type="bonus_definition",
            resource_id=str(definition_id),
            facility_id=facility_id,
            details=details,
        )

    def log_record_event(
        self,
        event_type: str,
        action: str,
        record_id: uuid.UUID,
        user_id: str,
        facility_id: uuid.UUID,
        details: Optional[dict] = None,
    ) -> AuditLog:
        """Log a nursing record change."""
        return self.log(
            event_type=event_type,
            action=action,
            actor_type="user",
            actor_id=user_id,
            resource_type="nursing_record",
            resource_id=str(record_id),
            facility_id=facility_id,
            details=details,
        )

    def get_resource_history(
        self,
        resource_type: str,
        resource_id: str,
        limit: int = 50,
    ) -> list[AuditLog]:
        """Get audit history for a specific resource."""
        return (
            self.db.query(AuditLog)
            .filter(
                AuditLog.resource_type == resource_type,
                AuditLog.resource_id == resource_id,
            )
            .order_by(AuditLog.timestamp.desc())
            .limit(limit)
            .all()
        )
