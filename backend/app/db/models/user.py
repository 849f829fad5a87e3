"""
User database model
"""
import uuid
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import Column, String, DateTime, ForeignKey, JSON, Boolean
from sqlalchemy.dialects.postgresql import UUID

from app.db.base import Base, enum_column_type


class UserRole(str, PyEnum):
    ADMIN = "admin"
    MANAGER = "manager"
    NURSE = "nurse"
    CLERK = "clerk"


class User(Base):
    """Staff account. Nurses carry specialist certifications used by specialist bonuses."""

    __tablename__ = "users"

    user_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    facility_id = Column(UUID(as_uuid=True), ForeignKey("facilities.facility_id"), nullable=False)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    full_name = Column(String(255), nullable=False)
    role = Column(enum_column_type(UserRole), default=UserRole.NURSE, nullable=False)
    # e.g. ["緩和ケア", "褥瘡ケア"]
    specialist_certifications = Column(JSON, default=list)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<User {self.email}>"
