"""
Bonus catalog and bonus calculation history database models
"""
import uuid
from datetime import date, datetime
from enum import Enum as PyEnum

from sqlalchemy import (
    Column, String, Date, DateTime, Boolean, ForeignKey, Integer, Text, JSON, UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from app.db.base import Base, enum_column_type
from app.db.models.patient import InsuranceType


class PointsType(str, PyEnum):
    FIXED = "fixed"
    CONDITIONAL = "conditional"


class BonusDefinition(Base):
    """
    A billable bonus (加算) definition.

    ``facility_id`` NULL means a global default; a facility-scoped definition
    replaces the global definition with the same ``bonus_code`` for visits
    inside its validity window. Definitions are never hard-deleted so that
    issued receipts stay reproducible.
    """

    __tablename__ = "bonus_definitions"

    definition_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    facility_id = Column(UUID(as_uuid=True), ForeignKey("facilities.facility_id"), nullable=True, index=True)
    bonus_code = Column(String(100), nullable=False, index=True)
    bonus_name = Column(String(255), nullable=False)
    bonus_category = Column(String(50), nullable=True)
    insurance_type = Column(enum_column_type(InsuranceType), nullable=False)

    points_type = Column(enum_column_type(PointsType), default=PointsType.FIXED, nullable=False)
    fixed_points = Column(Integer, nullable=True)
    conditional_pattern = Column(String(50), nullable=True)
    points_config = Column(JSON, nullable=True)
    predefined_conditions = Column(JSON, default=list)
    can_combine_with = Column(JSON, default=list)
    cannot_combine_with = Column(JSON, default=list)

    version = Column(String(20), nullable=False, default="1")
    valid_from = Column(Date, nullable=False)
    valid_to = Column(Date, nullable=True)  # NULL = open ended
    requirements_description = Column(Text, nullable=True)
    display_order = Column(Integer, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def is_global(self) -> bool:
        return self.facility_id is None

    def is_valid_on(self, on: date) -> bool:
        if self.valid_from > on:
            return False
        return self.valid_to is None or self.valid_to >= on

    def __repr__(self) -> str:
        scope = "global" if self.is_global else str(self.facility_id)
        return f"<BonusDefinition {self.bonus_code} [{scope}] {self.valid_from}..{self.valid_to}>"


class BonusCalculationHistory(Base):
    """
    Authoritative record of the bonuses applied to one visit.

    Exactly one row per (nursing record, bonus code); recalculation replaces
    the rows of a record instead of appending.
    """

    __tablename__ = "bonus_calculation_history"
    __table_args__ = (
        UniqueConstraint("nursing_record_id", "bonus_code", name="uq_bonus_history_record_code"),
    )

    history_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    nursing_record_id = Column(
        UUID(as_uuid=True), ForeignKey("nursing_records.record_id"), nullable=False, index=True
    )
    definition_id = Column(UUID(as_uuid=True), ForeignKey("bonus_definitions.definition_id"), nullable=False)
    bonus_code = Column(String(100), nullable=False, index=True)
    bonus_name = Column(String(255), nullable=False)
    calculated_points = Column(Integer, nullable=False)
    applied_version = Column(String(20), nullable=True)
    calculation_details = Column(JSON, default=dict)

    # Receipt line service code for the bonus; manual choices survive recalculation
    service_code_id = Column(UUID(as_uuid=True), ForeignKey("service_codes.service_code_id"), nullable=True)
    is_manually_adjusted = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Relationships
    nursing_record = relationship("NursingRecord", back_populates="bonus_history")
    definition = relationship("BonusDefinition")

    def __repr__(self) -> str:
        return f"<BonusCalculationHistory {self.bonus_code} {self.calculated_points}pt>"


class SpecialManagementDefinition(Base):
    """
    Maps a special management category (特別管理項目) to the tier it bills.

    ``insurance_type`` holds the tier marker: ``medical_5000`` / ``care_500``
    select special management I, anything else tier II.
    """

    __tablename__ = "special_management_definitions"

    smd_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    facility_id = Column(UUID(as_uuid=True), ForeignKey("facilities.facility_id"), nullable=True)
    category = Column(String(100), nullable=False, index=True)
    display_name = Column(String(255), nullable=False)
    insurance_type = Column(String(30), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<SpecialManagementDefinition {self.category} ({self.insurance_type})>"
