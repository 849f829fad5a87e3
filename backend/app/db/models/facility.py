"""
Facility (visiting nursing station) database model
"""
import uuid
from datetime import datetime

from sqlalchemy import Column, String, DateTime, Boolean, JSON
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from app.db.base import Base


class Facility(Base):
    """A nursing station; the tenant every record and receipt belongs to."""

    __tablename__ = "facilities"

    facility_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    slug = Column(String(100), unique=True, nullable=False, index=True)

    # Regulatory identifiers required by the receipt file format
    facility_code = Column(String(10), nullable=True)  # 7 digits
    prefecture_code = Column(String(2), nullable=True)

    # Service code (code string) billed as the basic fee on the first visit of a day
    default_service_code = Column(String(20), nullable=True)

    # Capability flags evaluated by facility-system bonuses
    has_24h_support_system = Column(Boolean, default=False, nullable=False)
    has_24h_support_system_enhanced = Column(Boolean, default=False, nullable=False)
    has_emergency_support_system = Column(Boolean, default=False, nullable=False)
    has_emergency_support_system_enhanced = Column(Boolean, default=False, nullable=False)
    burden_reduction_measures = Column(JSON, default=list)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    patients = relationship("Patient", back_populates="facility")

    def __repr__(self) -> str:
        return f"<Facility {self.slug}>"
