"""
Nursing record (visit record) database model
"""
import uuid
from datetime import datetime
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import Column, String, Date, DateTime, Boolean, ForeignKey, Integer, Text, JSON
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from app.db.base import Base, enum_column_type
from app.db.models.patient import InsuranceType


class RecordStatus(str, PyEnum):
    DRAFT = "draft"
    COMPLETED = "completed"
    REVIEWED = "reviewed"


# Statuses whose visits are billed on a monthly receipt
BILLABLE_STATUSES = (RecordStatus.COMPLETED, RecordStatus.REVIEWED)


class NursingRecord(Base):
    """
    A single home visit.

    ``calculated_points``, ``applied_bonuses``, ``resolved_service_code_id``,
    ``base_points``, ``daily_visit_count`` and ``insurance_type`` are a cached
    projection of the point calculation; they are rewritten together with the
    ``bonus_calculation_history`` rows on every create and update.
    """

    __tablename__ = "nursing_records"

    record_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    facility_id = Column(UUID(as_uuid=True), ForeignKey("facilities.facility_id"), nullable=False, index=True)
    patient_id = Column(UUID(as_uuid=True), ForeignKey("patients.patient_id"), nullable=False, index=True)
    nurse_id = Column(UUID(as_uuid=True), ForeignKey("users.user_id"), nullable=True)

    status = Column(enum_column_type(RecordStatus), default=RecordStatus.DRAFT, nullable=False)
    visit_date = Column(Date, nullable=False, index=True)
    actual_start_time = Column(DateTime, nullable=True)
    actual_end_time = Column(DateTime, nullable=True)

    # Explicitly chosen service code; NULL lets the calculator decide
    service_code_id = Column(UUID(as_uuid=True), ForeignKey("service_codes.service_code_id"), nullable=True)

    # Bonus inputs
    emergency_visit_reason = Column(Text, nullable=True)
    multiple_visit_reason = Column(Text, nullable=True)
    long_visit_reason = Column(Text, nullable=True)
    is_discharge_date = Column(Boolean, default=False, nullable=False)
    is_first_visit_of_plan = Column(Boolean, default=False, nullable=False)
    has_collaboration_record = Column(Boolean, default=False, nullable=False)
    is_terminal_care = Column(Boolean, default=False, nullable=False)
    specialist_care_type = Column(String(50), nullable=True)

    # Receipt file fields
    visit_location_code = Column(String(2), nullable=True)
    staff_qualification_code = Column(String(2), nullable=True)

    # Calculation projection
    resolved_service_code_id = Column(
        UUID(as_uuid=True), ForeignKey("service_codes.service_code_id"), nullable=True
    )
    is_default_service_code = Column(Boolean, default=False, nullable=False)
    base_points = Column(Integer, default=0, nullable=False)
    daily_visit_count = Column(Integer, default=1, nullable=False)
    # Insurance the visit was billed under; selects its monthly receipt
    insurance_type = Column(enum_column_type(InsuranceType), nullable=True, index=True)
    calculated_points = Column(Integer, default=0, nullable=False)
    applied_bonuses = Column(JSON, default=list)

    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    deleted_at = Column(DateTime, nullable=True)

    # Relationships
    patient = relationship("Patient")
    nurse = relationship("User")
    service_code = relationship("ServiceCode", foreign_keys=[service_code_id])
    resolved_service_code = relationship("ServiceCode", foreign_keys=[resolved_service_code_id])
    bonus_history = relationship(
        "BonusCalculationHistory",
        back_populates="nursing_record",
        cascade="all, delete-orphan",
    )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def duration_minutes(self) -> Optional[int]:
        if self.actual_start_time is None or self.actual_end_time is None:
            return None
        return int((self.actual_end_time - self.actual_start_time).total_seconds() // 60)

    def __repr__(self) -> str:
        return f"<NursingRecord {self.visit_date} ({self.status.value})>"
