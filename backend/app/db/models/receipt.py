"""
Monthly receipt (レセプト) database model
"""
import uuid
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import (
    Column, DateTime, Boolean, ForeignKey, Integer, JSON, UniqueConstraint, CheckConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from app.db.base import Base, enum_column_type
from app.db.models.patient import InsuranceType


class ReceiptState(str, PyEnum):
    """Lifecycle state; derived from is_confirmed / is_sent, never stored."""
    DRAFT = "draft"
    CONFIRMED = "confirmed"
    SENT = "sent"


class MonthlyReceipt(Base):
    """One patient's billable visits and bonuses for one month and insurance type."""

    __tablename__ = "monthly_receipts"
    __table_args__ = (
        UniqueConstraint(
            "facility_id", "patient_id", "target_year", "target_month", "insurance_type",
            name="uq_monthly_receipt_period",
        ),
        CheckConstraint("NOT is_sent OR is_confirmed", name="ck_monthly_receipt_sent_confirmed"),
    )

    receipt_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    facility_id = Column(UUID(as_uuid=True), ForeignKey("facilities.facility_id"), nullable=False, index=True)
    patient_id = Column(UUID(as_uuid=True), ForeignKey("patients.patient_id"), nullable=False, index=True)
    target_year = Column(Integer, nullable=False)
    target_month = Column(Integer, nullable=False)
    insurance_type = Column(enum_column_type(InsuranceType), nullable=False)

    # Totals
    visit_count = Column(Integer, default=0, nullable=False)
    total_visit_points = Column(Integer, default=0, nullable=False)
    bonus_breakdown = Column(JSON, default=list)  # [{bonus_code, bonus_name, count, points}]
    special_management_points = Column(Integer, default=0, nullable=False)
    total_points = Column(Integer, default=0, nullable=False)
    total_amount = Column(Integer, default=0, nullable=False)  # yen

    # Validation state
    has_errors = Column(Boolean, default=False, nullable=False)
    has_warnings = Column(Boolean, default=False, nullable=False)
    error_messages = Column(JSON, default=list)
    warning_messages = Column(JSON, default=list)
    can_export_csv = Column(Boolean, default=False, nullable=False)
    csv_export_errors = Column(JSON, default=list)
    csv_export_warnings = Column(JSON, default=list)
    last_validated_at = Column(DateTime, nullable=True)

    # Lifecycle
    is_confirmed = Column(Boolean, default=False, nullable=False)
    confirmed_by = Column(UUID(as_uuid=True), ForeignKey("users.user_id"), nullable=True)
    confirmed_at = Column(DateTime, nullable=True)
    is_sent = Column(Boolean, default=False, nullable=False)
    sent_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    patient = relationship("Patient")
    facility = relationship("Facility")

    @property
    def state(self) -> ReceiptState:
        if self.is_sent:
            return ReceiptState.SENT
        if self.is_confirmed:
            return ReceiptState.CONFIRMED
        return ReceiptState.DRAFT

    def __repr__(self) -> str:
        return (
            f"<MonthlyReceipt {self.target_year}-{self.target_month:02d} "
            f"{self.insurance_type.value} ({self.state.value})>"
        )
