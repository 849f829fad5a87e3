"""
Doctor order (訪問看護指示書) and medical institution database models
"""
import uuid
from datetime import date, datetime

from sqlalchemy import Column, String, Date, DateTime, Boolean, ForeignKey
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from app.db.base import Base


class MedicalInstitution(Base):
    """Institution of the attending physician who issues doctor orders."""

    __tablename__ = "medical_institutions"

    institution_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    facility_id = Column(UUID(as_uuid=True), ForeignKey("facilities.facility_id"), nullable=False)
    name = Column(String(255), nullable=False)
    institution_code = Column(String(10), nullable=True)  # 7 digits
    prefecture_code = Column(String(2), nullable=True)
    doctor_name = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<MedicalInstitution {self.name}>"


class DoctorOrder(Base):
    """Physician's order authorising visits between start_date and end_date."""

    __tablename__ = "doctor_orders"

    order_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    facility_id = Column(UUID(as_uuid=True), ForeignKey("facilities.facility_id"), nullable=False)
    patient_id = Column(UUID(as_uuid=True), ForeignKey("patients.patient_id"), nullable=False, index=True)
    medical_institution_id = Column(
        UUID(as_uuid=True), ForeignKey("medical_institutions.institution_id"), nullable=True
    )
    order_date = Column(Date, nullable=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    diagnosis = Column(String(500), nullable=True)
    icd10_code = Column(String(10), nullable=True)
    insurance_type = Column(String(20), nullable=True)
    instruction_type = Column(String(30), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Relationships
    medical_institution = relationship("MedicalInstitution")

    def covers(self, on: date) -> bool:
        return self.start_date <= on <= self.end_date

    def __repr__(self) -> str:
        return f"<DoctorOrder {self.start_date}..{self.end_date}>"
