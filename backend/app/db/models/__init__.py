"""
Database models package
"""
from app.db.models.facility import Facility
from app.db.models.user import User, UserRole
from app.db.models.patient import (
    Patient, InsuranceCard, PublicExpenseCard,
    InsuranceType, InsuranceCardType, CARD_TYPE_FOR_INSURANCE,
)
from app.db.models.service_code import ServiceCode
from app.db.models.doctor_order import DoctorOrder, MedicalInstitution
from app.db.models.nursing_record import NursingRecord, RecordStatus, BILLABLE_STATUSES
from app.db.models.bonus import (
    BonusDefinition, BonusCalculationHistory, SpecialManagementDefinition, PointsType,
)
from app.db.models.receipt import MonthlyReceipt, ReceiptState
from app.db.models.audit import AuditLog

__all__ = [
    # Facility / staff
    "Facility",
    "User",
    "UserRole",
    # Patient
    "Patient",
    "InsuranceCard",
    "PublicExpenseCard",
    "InsuranceType",
    "InsuranceCardType",
    "CARD_TYPE_FOR_INSURANCE",
    # Master data
    "ServiceCode",
    "DoctorOrder",
    "MedicalInstitution",
    # Visits
    "NursingRecord",
    "RecordStatus",
    "BILLABLE_STATUSES",
    # Bonus catalog
    "BonusDefinition",
    "BonusCalculationHistory",
    "SpecialManagementDefinition",
    "PointsType",
    # Receipts
    "MonthlyReceipt",
    "ReceiptState",
    # Audit
    "AuditLog",
]
