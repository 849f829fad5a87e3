"""
Receipt export data contract and monthly summary CSV
"""
import csv
import io
import uuid
from datetime import date
from typing import Optional

from sqlalchemy.orm import Session

from app.core.logging import get_logger
from app.db.models import (
    BonusCalculationHistory,
    CARD_TYPE_FOR_INSURANCE,
    DoctorOrder,
    Facility,
    InsuranceCard,
    InsuranceType,
    MedicalInstitution,
    MonthlyReceipt,
    Patient,
    PublicExpenseCard,
    ServiceCode,
)
from app.services.audit import AuditService
from app.services.bonus.conditions import month_bounds
from app.services.receipts.aggregator import compute_receipt_totals
from app.services.receipts.lifecycle import TransitionResult
from app.services.receipts.validator import billable_records

logger = get_logger(__name__)

SUMMARY_COLUMNS = [
    "patient_number",
    "patient_name",
    "insurance_type",
    "visit_count",
    "total_visit_points",
    "bonus_points",
    "special_management_points",
    "total_points",
    "total_amount",
    "state",
]


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _service_code_payload(db: Session, service_code_id: Optional[uuid.UUID]) -> Optional[dict]:
    if service_code_id is None:
        return None
    code = db.get(ServiceCode, service_code_id)
    if code is None:
        return None
    return {"service_code": code.service_code, "name": code.name, "points": code.points}


def _visit_payload(db: Session, record, history: list[BonusCalculationHistory]) -> dict:
    return {
        "record_id": str(record.record_id),
        "visit_date": _iso(record.visit_date),
        "start_time": _iso(record.actual_start_time),
        "end_time": _iso(record.actual_end_time),
        "service_code": _service_code_payload(db, record.service_code_id or record.resolved_service_code_id),
        "base_points": record.base_points,
        "visit_location_code": record.visit_location_code,
        "staff_qualification_code": record.staff_qualification_code,
        "bonuses": [
            {
                "bonus_code": h.bonus_code,
                "bonus_name": h.bonus_name,
                "points": h.calculated_points,
                "service_code": _service_code_payload(db, h.service_code_id),
            }
            for h in sorted(history, key=lambda h: h.bonus_code)
        ],
    }


def prepare_receipt_export(db: Session, receipt_id: uuid.UUID, user_id: Optional[str] = None) -> TransitionResult:
    """
    Assemble everything a receipt file writer needs for one receipt.

    Refuses receipts that are not confirmed or not CSV-exportable. Totals
    are the confirmed snapshot; ``totals_match_visits`` is false when the
    visits have changed since confirmation.
    """
    receipt = db.get(MonthlyReceipt, receipt_id)
    if receipt is None:
        return TransitionResult.rejected("not_found", f"Receipt {receipt_id} not found")
    if not receipt.is_confirmed:
        logger.info(f"Export of receipt {receipt_id} refused: not confirmed")
        return TransitionResult.rejected("receipt_not_confirmed", "Only confirmed receipts can be exported")
    if not receipt.can_export_csv:
        logger.info(f"Export of receipt {receipt_id} refused: CSV errors outstanding")
        return TransitionResult.rejected(
            "csv_not_ready",
            "Receipt cannot be exported until its CSV errors are resolved",
            errors=list(receipt.csv_export_errors or []),
            receipt=receipt,
        )

    facility = db.get(Facility, receipt.facility_id)
    patient = db.get(Patient, receipt.patient_id)
    month_start, month_end = month_bounds(receipt_month_start(receipt))

    card = (
        db.query(InsuranceCard)
        .filter(
            InsuranceCard.patient_id == patient.patient_id,
            InsuranceCard.is_active.is_(True),
            InsuranceCard.card_type == CARD_TYPE_FOR_INSURANCE[receipt.insurance_type],
        )
        .order_by(InsuranceCard.valid_from.desc())
        .first()
    )
    public_cards = (
        db.query(PublicExpenseCard)
        .filter(PublicExpenseCard.patient_id == patient.patient_id, PublicExpenseCard.is_active.is_(True))
        .order_by(PublicExpenseCard.priority)
        .all()
    )
    orders = [
        o for o in db.query(DoctorOrder)
        .filter(DoctorOrder.patient_id == patient.patient_id, DoctorOrder.is_active.is_(True))
        .order_by(DoctorOrder.start_date)
        .all()
        if o.start_date <= month_end and o.end_date >= month_start
    ]

    records = billable_records(
        db,
        receipt.facility_id,
        receipt.patient_id,
        receipt.target_year,
        receipt.target_month,
        receipt.insurance_type,
    )
    history_by_record: dict[uuid.UUID, list[BonusCalculationHistory]] = {r.record_id: [] for r in records}
    if records:
        for row in db.query(BonusCalculationHistory).filter(
            BonusCalculationHistory.nursing_record_id.in_(list(history_by_record))
        ):
            history_by_record[row.nursing_record_id].append(row)

    live = compute_receipt_totals(db, records)
    totals_match = (live.visit_count, live.total_points) == (receipt.visit_count, receipt.total_points)
    if not totals_match:
        logger.warning(
            f"Receipt {receipt_id} totals differ from its visits: confirmed {receipt.visit_count} visits/"
            f"{receipt.total_points} points, now {live.visit_count} visits/{live.total_points} points"
        )

    payload = {
        "receipt_id": str(receipt.receipt_id),
        "target_year": receipt.target_year,
        "target_month": receipt.target_month,
        "insurance_type": receipt.insurance_type.value,
        "facility": {
            "name": facility.name,
            "facility_code": facility.facility_code,
            "prefecture_code": facility.prefecture_code,
        },
        "patient": {
            "patient_number": patient.patient_number,
            "name": patient.full_name,
            "kana_name": patient.kana_name,
            "date_of_birth": _iso(patient.date_of_birth),
            "insurance_number": patient.insurance_number,
        },
        "insurance_card": None if card is None else {
            "card_type": card.card_type.value,
            "insurer_number": card.insurer_number,
            "insured_number": card.insured_number,
            "relationship_type": card.relationship_type,
            "age_category": card.age_category,
            "certification_date": _iso(card.certification_date),
            "valid_from": _iso(card.valid_from),
            "valid_until": _iso(card.valid_until),
        },
        "public_expense_cards": [
            {
                "priority": c.priority,
                "legal_category_number": c.legal_category_number,
                "beneficiary_number": c.beneficiary_number,
                "recipient_number": c.recipient_number,
            }
            for c in public_cards
        ],
        "doctor_orders": [_order_payload(db, o) for o in orders],
        "visits": [_visit_payload(db, r, history_by_record[r.record_id]) for r in records],
        "totals": {
            "visit_count": receipt.visit_count,
            "total_visit_points": receipt.total_visit_points,
            "bonus_breakdown": list(receipt.bonus_breakdown or []),
            "special_management_points": receipt.special_management_points,
            "total_points": receipt.total_points,
            "total_amount": receipt.total_amount,
        },
        "totals_match_visits": totals_match,
    }

    AuditService(db).log_receipt_event("receipt.exported", "export", receipt_id, receipt.facility_id, user_id)
    db.commit()
    return TransitionResult.accepted(receipt, data=payload)


def _order_payload(db: Session, order: DoctorOrder) -> dict:
    institution = db.get(MedicalInstitution, order.medical_institution_id) if order.medical_institution_id else None
    return {
        "start_date": _iso(order.start_date),
        "end_date": _iso(order.end_date),
        "icd10_code": order.icd10_code,
        "diagnosis": order.diagnosis,
        "insurance_type": order.insurance_type,
        "instruction_type": order.instruction_type,
        "medical_institution": None if institution is None else {
            "name": institution.name,
            "institution_code": institution.institution_code,
            "prefecture_code": institution.prefecture_code,
            "doctor_name": institution.doctor_name,
        },
    }


def receipt_month_start(receipt: MonthlyReceipt) -> date:
    return date(receipt.target_year, receipt.target_month, 1)


def build_receipt_summary_csv(
    db: Session,
    facility_id: uuid.UUID,
    year: int,
    month: int,
    insurance_type: Optional[InsuranceType] = None,
) -> str:
    """One line per confirmed receipt of the month."""
    query = db.query(MonthlyReceipt).filter(
        MonthlyReceipt.facility_id == facility_id,
        MonthlyReceipt.target_year == year,
        MonthlyReceipt.target_month == month,
        MonthlyReceipt.is_confirmed.is_(True),
    )
    if insurance_type is not None:
        query = query.filter(MonthlyReceipt.insurance_type == insurance_type)

    rows = []
    for receipt in query.all():
        patient = db.get(Patient, receipt.patient_id)
        bonus_points = sum(e.get("points", 0) for e in receipt.bonus_breakdown or [])
        rows.append({
            "patient_number": patient.patient_number if patient else "",
            "patient_name": patient.full_name if patient else "",
            "insurance_type": receipt.insurance_type.value,
            "visit_count": receipt.visit_count,
            "total_visit_points": receipt.total_visit_points,
            "bonus_points": bonus_points,
            "special_management_points": receipt.special_management_points,
            "total_points": receipt.total_points,
            "total_amount": receipt.total_amount,
            "state": receipt.state.value,
        })
    rows.sort(key=lambda r: (r["patient_number"], r["insurance_type"]))

    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=SUMMARY_COLUMNS, lineterminator="\n")
    writer.writeheader()
    writer.writerows(rows)
    return buffer.getvalue()
