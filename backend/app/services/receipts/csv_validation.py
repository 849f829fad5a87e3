"""
CSV export readiness

Checks that the master data a receipt file needs is complete. Failing this
blocks export only; a receipt can be confirmed while export-blocked.
"""
import re
import uuid
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from app.core.logging import get_logger
from app.db.models import (
    CARD_TYPE_FOR_INSURANCE,
    DoctorOrder,
    Facility,
    InsuranceCard,
    InsuranceCardType,
    InsuranceType,
    MedicalInstitution,
    MonthlyReceipt,
    NursingRecord,
    Patient,
    PublicExpenseCard,
)
from app.services.bonus.conditions import month_bounds
from app.services.points import billed_insurance_type

logger = get_logger(__name__)

ICD10_PATTERN = re.compile(r"^[A-Z0-9]{1,7}$")
LEGAL_CATEGORY_PATTERN = re.compile(r"^\d{2}$")
MAX_PUBLIC_EXPENSE_PRIORITY = 4


@dataclass
class CsvValidationIssue:
    field: str
    message: str
    severity: str
    record_type: str
    record_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "field": self.field,
            "message": self.message,
            "severity": self.severity,
            "record_type": self.record_type,
            "record_id": self.record_id,
        }


@dataclass
class CsvValidationResult:
    can_export_csv: bool
    errors: list[CsvValidationIssue] = field(default_factory=list)
    warnings: list[CsvValidationIssue] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return self.can_export_csv


def _error(field_name: str, message: str, record_type: str, record_id=None) -> CsvValidationIssue:
    return CsvValidationIssue(field_name, message, "error", record_type, str(record_id) if record_id else None)


def _warning(field_name: str, message: str, record_type: str, record_id=None) -> CsvValidationIssue:
    return CsvValidationIssue(field_name, message, "warning", record_type, str(record_id) if record_id else None)


def check_facility(facility: Optional[Facility]) -> list[CsvValidationIssue]:
    if facility is None:
        return [_error("facility", "Facility not found", "facility")]
    issues = []
    if not facility.facility_code:
        issues.append(_error("facility_code", "Facility code is not set", "facility", facility.facility_id))
    elif len(facility.facility_code) != 7:
        issues.append(_error(
            "facility_code",
            f"Facility code must be 7 digits (got {len(facility.facility_code)})",
            "facility", facility.facility_id,
        ))
    if not facility.prefecture_code:
        issues.append(_error("prefecture_code", "Facility prefecture code is not set", "facility", facility.facility_id))
    return issues


def check_patient(patient: Optional[Patient]) -> list[CsvValidationIssue]:
    if patient is None:
        return [_error("patient", "Patient not found", "patient")]
    issues = []
    if not patient.kana_name:
        issues.append(_warning("kana_name", f"Patient {patient.patient_number} has no kana name", "patient", patient.patient_id))
    if not patient.insurance_number:
        issues.append(_error(
            "insurance_number", f"Patient {patient.patient_number} has no insurance number", "patient", patient.patient_id,
        ))
    if not patient.insurance_type:
        issues.append(_error(
            "insurance_type", f"Patient {patient.patient_number} has no insurance type", "patient", patient.patient_id,
        ))
    return issues


def check_insurance_cards(cards: list[InsuranceCard]) -> list[CsvValidationIssue]:
    if not cards:
        return [_error("insurance_card", "No active insurance card", "insurance_card")]
    # The newest active card is the one written to the file
    card = cards[0]
    issues = []
    if card.card_type == InsuranceCardType.MEDICAL and not card.relationship_type:
        issues.append(_error(
            "relationship_type", "Medical insurance card has no relationship type", "insurance_card", card.card_id,
        ))
    if not card.age_category:
        issues.append(_warning("age_category", "Insurance card has no age category", "insurance_card", card.card_id))
    return issues


def check_public_expense_cards(cards: Iterable[PublicExpenseCard]) -> list[CsvValidationIssue]:
    issues = []
    for card in cards:
        label = f"Public expense card (priority {card.priority})"
        if not card.legal_category_number:
            issues.append(_error("legal_category_number", f"{label} has no legal category number",
                                 "public_expense_card", card.card_id))
        elif not LEGAL_CATEGORY_PATTERN.match(card.legal_category_number):
            issues.append(_error("legal_category_number", f"{label} legal category number must be 2 digits",
                                 "public_expense_card", card.card_id))
        if not card.beneficiary_number:
            issues.append(_error("beneficiary_number", f"{label} has no beneficiary number",
                                 "public_expense_card", card.card_id))
        if not card.recipient_number:
            issues.append(_error("recipient_number", f"{label} has no recipient number",
                                 "public_expense_card", card.card_id))
        if card.priority is None or not 1 <= card.priority <= MAX_PUBLIC_EXPENSE_PRIORITY:
            issues.append(_error("priority", f"Public expense card priority must be 1-4 (got {card.priority})",
                                 "public_expense_card", card.card_id))
    return issues


def check_doctor_orders(orders: list[DoctorOrder], month_start: date) -> list[CsvValidationIssue]:
    valid = [o for o in orders if o.covers(month_start)]
    if not valid:
        return [_error("doctor_order", "No doctor order covers the target month", "doctor_order")]
    issues = []
    for order in valid:
        if not order.icd10_code:
            issues.append(_warning("icd10_code", "Doctor order has no ICD-10 code", "doctor_order", order.order_id))
        elif not ICD10_PATTERN.match(order.icd10_code):
            issues.append(_error(
                "icd10_code",
                f"ICD-10 code must be up to 7 uppercase letters or digits (got {order.icd10_code})",
                "doctor_order", order.order_id,
            ))
        if not order.insurance_type:
            issues.append(_error("insurance_type", "Doctor order has no insurance type", "doctor_order", order.order_id))
        if not order.instruction_type:
            issues.append(_error("instruction_type", "Doctor order has no instruction type", "doctor_order", order.order_id))
    return issues


def check_medical_institution(institution: Optional[MedicalInstitution]) -> list[CsvValidationIssue]:
    if institution is None:
        return [_error("medical_institution", "Medical institution not found", "medical_institution")]
    issues = []
    if not institution.institution_code:
        issues.append(_error("institution_code", f"{institution.name} has no institution code",
                             "medical_institution", institution.institution_id))
    elif len(institution.institution_code) != 7:
        issues.append(_error("institution_code", f"{institution.name} institution code must be 7 digits",
                             "medical_institution", institution.institution_id))
    if not institution.prefecture_code:
        issues.append(_error("prefecture_code", f"{institution.name} has no prefecture code",
                             "medical_institution", institution.institution_id))
    return issues


def check_nursing_records(records: list[NursingRecord]) -> list[CsvValidationIssue]:
    if not records:
        return [_warning("nursing_records", "No visits in the target month", "nursing_record")]
    issues = []
    for record in records:
        missing = []
        if not (record.service_code_id or record.resolved_service_code_id):
            missing.append("service code")
        if not record.visit_location_code:
            missing.append("visit location code")
        if not record.staff_qualification_code:
            missing.append("staff qualification code")
        if missing:
            issues.append(_warning(
                "nursing_record",
                f"Visit {record.visit_date} is missing: {', '.join(missing)}",
                "nursing_record", record.record_id,
            ))
    return issues


def validate_csv_export(
    db: Session,
    facility_id: uuid.UUID,
    patient_id: uuid.UUID,
    year: int,
    month: int,
    insurance_type: Optional[InsuranceType] = None,
) -> CsvValidationResult:
    """
    Check a patient's month for receipt-file readiness.

    With ``insurance_type`` only that insurance's card and visits are checked.
    """
    month_start, month_end = month_bounds(date(year, month, 1))

    facility = db.get(Facility, facility_id)
    patient = db.get(Patient, patient_id)
    card_query = db.query(InsuranceCard).filter(
        InsuranceCard.patient_id == patient_id, InsuranceCard.is_active.is_(True)
    )
    if insurance_type is not None:
        card_query = card_query.filter(InsuranceCard.card_type == CARD_TYPE_FOR_INSURANCE[insurance_type])
    cards = card_query.order_by(InsuranceCard.valid_from.desc()).all()
    public_cards = (
        db.query(PublicExpenseCard)
        .filter(PublicExpenseCard.patient_id == patient_id, PublicExpenseCard.is_active.is_(True))
        .order_by(PublicExpenseCard.priority)
        .all()
    )
    orders = (
        db.query(DoctorOrder)
        .filter(DoctorOrder.patient_id == patient_id, DoctorOrder.is_active.is_(True))
        .all()
    )
    records = (
        db.query(NursingRecord)
        .filter(
            NursingRecord.patient_id == patient_id,
            NursingRecord.facility_id == facility_id,
            NursingRecord.visit_date >= month_start,
            NursingRecord.visit_date <= month_end,
            NursingRecord.deleted_at.is_(None),
        )
        .order_by(NursingRecord.visit_date)
        .all()
    )
    if insurance_type is not None:
        records = [r for r in records if billed_insurance_type(db, r) == insurance_type]

    issues: list[CsvValidationIssue] = []
    issues += check_facility(facility)
    issues += check_patient(patient)
    issues += check_insurance_cards(cards)
    issues += check_public_expense_cards(public_cards)
    issues += check_doctor_orders(orders, month_start)
    issues += check_nursing_records(records)

    for order in orders:
        if order.medical_institution_id is None:
            issues.append(_error("medical_institution", "Doctor order has no medical institution",
                                 "doctor_order", order.order_id))
            continue
        issues += check_medical_institution(db.get(MedicalInstitution, order.medical_institution_id))

    errors = [i for i in issues if i.severity == "error"]
    warnings = [i for i in issues if i.severity == "warning"]
    return CsvValidationResult(can_export_csv=not errors, errors=errors, warnings=warnings)


def csv_validation_fields(result: CsvValidationResult) -> dict:
    return {
        "can_export_csv": result.can_export_csv,
        "csv_export_errors": [e.to_dict() for e in result.errors],
        "csv_export_warnings": [w.to_dict() for w in result.warnings],
    }


def apply_csv_validation(receipt: MonthlyReceipt, result: CsvValidationResult) -> None:
    for name, value in csv_validation_fields(result).items():
        setattr(receipt, name, value)


def validate_multiple_receipts(db: Session, receipt_ids: list[uuid.UUID]) -> dict[uuid.UUID, CsvValidationResult]:
    """CSV readiness for several receipts; missing receipts get a not-found error."""
    results: dict[uuid.UUID, CsvValidationResult] = {}
    for receipt_id in receipt_ids:
        receipt = db.get(MonthlyReceipt, receipt_id)
        if receipt is None:
            results[receipt_id] = CsvValidationResult(
                can_export_csv=False,
                errors=[_error("receipt", "Receipt not found", "receipt", receipt_id)],
            )
            continue
        results[receipt_id] = validate_csv_export(
            db,
            receipt.facility_id,
            receipt.patient_id,
            receipt.target_year,
            receipt.target_month,
            receipt.insurance_type,
        )
    return results
