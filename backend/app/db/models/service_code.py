"""
Service code master (fee schedule) database model
"""
import uuid
from datetime import date, datetime

from sqlalchemy import Column, String, Date, DateTime, Boolean, Integer
from sqlalchemy.dialects.postgresql import UUID

from app.db.base import Base, enum_column_type
from app.db.models.patient import InsuranceType


class ServiceCode(Base):
    """
    A billable nursing service code and its point value.

    Codes are date-versioned: the same ``service_code`` may have several rows
    with non-overlapping validity windows as the fee schedule is revised.
    """

    __tablename__ = "service_codes"

    service_code_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    service_code = Column(String(20), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    insurance_type = Column(enum_column_type(InsuranceType), nullable=False)
    points = Column(Integer, nullable=False, default=0)
    valid_from = Column(Date, nullable=False, default=date(2000, 1, 1))
    valid_to = Column(Date, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def is_valid_on(self, on: date) -> bool:
        if not self.is_active or self.valid_from > on:
            return False
        return self.valid_to is None or self.valid_to >= on

    def __repr__(self) -> str:
        return f"<ServiceCode {self.service_code} ({self.points}pt)>"
