"""
Patient and insurance card database models
"""
import uuid
from datetime import date, datetime
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import Column, String, Date, DateTime, Boolean, ForeignKey, Integer, JSON
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from app.db.base import Base, enum_column_type


class InsuranceType(str, PyEnum):
    MEDICAL = "medical"  # 医療保険
    CARE = "care"  # 介護保険


class InsuranceCardType(str, PyEnum):
    MEDICAL = "medical"
    LONG_TERM_CARE = "long_term_care"


# Card type that entitles a patient to bill under each insurance type
CARD_TYPE_FOR_INSURANCE = {
    InsuranceType.MEDICAL: InsuranceCardType.MEDICAL,
    InsuranceType.CARE: InsuranceCardType.LONG_TERM_CARE,
}


class Patient(Base):
    """Patient receiving home-visit nursing."""

    __tablename__ = "patients"

    patient_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    facility_id = Column(UUID(as_uuid=True), ForeignKey("facilities.facility_id"), nullable=False, index=True)
    patient_number = Column(String(50), nullable=False)
    last_name = Column(String(100), nullable=False)
    first_name = Column(String(100), nullable=False)
    kana_name = Column(String(200), nullable=True)
    date_of_birth = Column(Date, nullable=False)
    insurance_number = Column(String(50), nullable=True)
    insurance_type = Column(enum_column_type(InsuranceType), nullable=True)
    care_level = Column(String(20), nullable=True)  # e.g. "care4"
    building_id = Column(String(100), nullable=True)  # same-building grouping

    special_management_types = Column(JSON, default=list)  # categories, e.g. ["tracheostomy"]
    last_discharge_date = Column(Date, nullable=True)
    last_plan_created_date = Column(Date, nullable=True)
    death_date = Column(Date, nullable=True)
    death_place_code = Column(String(2), nullable=True)  # '01' home, '16' nursing home

    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    facility = relationship("Facility", back_populates="patients")
    insurance_cards = relationship("InsuranceCard", back_populates="patient", cascade="all, delete-orphan")

    @property
    def full_name(self) -> str:
        return f"{self.last_name} {self.first_name}"

    def age_on(self, on: date) -> Optional[int]:
        """Age in whole years on the given date."""
        if self.date_of_birth is None:
            return None
        born = self.date_of_birth
        age = on.year - born.year
        if (on.month, on.day) < (born.month, born.day):
            age -= 1
        return age

    def __repr__(self) -> str:
        return f"<Patient {self.patient_number}>"


class InsuranceCard(Base):
    """Insurance card (保険証) with its validity window."""

    __tablename__ = "insurance_cards"

    card_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    facility_id = Column(UUID(as_uuid=True), ForeignKey("facilities.facility_id"), nullable=False)
    patient_id = Column(UUID(as_uuid=True), ForeignKey("patients.patient_id"), nullable=False, index=True)
    card_type = Column(enum_column_type(InsuranceCardType), nullable=False)
    insurer_number = Column(String(20), nullable=False)
    insured_number = Column(String(50), nullable=False)
    relationship_type = Column(String(30), nullable=True)  # self / family / ... (medical only)
    age_category = Column(String(30), nullable=True)
    certification_date = Column(Date, nullable=True)  # long-term care only
    valid_from = Column(Date, nullable=False)
    valid_until = Column(Date, nullable=True)  # NULL = no expiry
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Relationships
    patient = relationship("Patient", back_populates="insurance_cards")

    def covers(self, on: date) -> bool:
        if self.valid_from > on:
            return False
        return self.valid_until is None or self.valid_until >= on

    def __repr__(self) -> str:
        return f"<InsuranceCard {self.card_type.value} {self.valid_from}..{self.valid_until}>"


class PublicExpenseCard(Base):
    """Public expense (公費) card; optional, up to four per patient."""

    __tablename__ = "public_expense_cards"

    card_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    patient_id = Column(UUID(as_uuid=True), ForeignKey("patients.patient_id"), nullable=False, index=True)
    legal_category_number = Column(String(2), nullable=True)
    beneficiary_number = Column(String(20), nullable=True)
    recipient_number = Column(String(20), nullable=True)
    priority = Column(Integer, default=1, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<PublicExpenseCard {self.legal_category_number} p{self.priority}>"
