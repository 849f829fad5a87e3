"""
Monthly Receipt Aggregator

Sums a month of billable visits per patient into one MonthlyReceipt per
(facility, patient, year, month, insurance type) and stores the validation
outcome on it.
"""
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from typing import Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.logging import get_logger
from app.db.models import (
    BILLABLE_STATUSES,
    BonusCalculationHistory,
    InsuranceType,
    MonthlyReceipt,
    NursingRecord,
)
from app.services.audit import AuditService
from app.services.bonus.conditions import month_bounds
from app.services.db_utils import with_db_retry
from app.services.points import billed_insurance_type
from app.services.receipts.csv_validation import csv_validation_fields, validate_csv_export
from app.services.receipts.validator import load_validation_input, validate_receipt, validation_fields

logger = get_logger(__name__)


@dataclass
class ReceiptTotals:
    visit_count: int
    total_visit_points: int
    bonus_breakdown: list[dict]
    special_management_points: int
    total_points: int
    total_amount: int

    def as_fields(self) -> dict:
        return {
            "visit_count": self.visit_count,
            "total_visit_points": self.total_visit_points,
            "bonus_breakdown": self.bonus_breakdown,
            "special_management_points": self.special_management_points,
            "total_points": self.total_points,
            "total_amount": self.total_amount,
        }


@dataclass
class SkippedReceipt:
    patient_id: uuid.UUID
    receipt_id: uuid.UUID
    reason: str


@dataclass
class ReceiptGenerationSummary:
    receipts: list[MonthlyReceipt] = field(default_factory=list)
    skipped: list[SkippedReceipt] = field(default_factory=list)


def compute_receipt_totals(db: Session, records: list[NursingRecord]) -> ReceiptTotals:
    """
    Totals for one patient's month.

    Visit points are the resolved base points cached on each record; bonus
    points come from the history table, grouped by code.
    """
    record_ids = [r.record_id for r in records]
    history = []
    if record_ids:
        history = (
            db.query(BonusCalculationHistory)
            .filter(BonusCalculationHistory.nursing_record_id.in_(record_ids))
            .all()
        )

    grouped: dict[str, dict] = {}
    for row in history:
        entry = grouped.setdefault(
            row.bonus_code,
            {"bonus_code": row.bonus_code, "bonus_name": row.bonus_name, "count": 0, "points": 0},
        )
        entry["count"] += 1
        entry["points"] += row.calculated_points or 0
    breakdown = [grouped[code] for code in sorted(grouped)]

    total_visit_points = sum(r.base_points or 0 for r in records)
    special_management_points = sum(
        e["points"] for e in breakdown if e["bonus_code"].startswith(settings.SPECIAL_MANAGEMENT_PREFIX)
    )
    total_points = total_visit_points + sum(e["points"] for e in breakdown)

    return ReceiptTotals(
        visit_count=len(records),
        total_visit_points=total_visit_points,
        bonus_breakdown=breakdown,
        special_management_points=special_management_points,
        total_points=total_points,
        total_amount=total_points * settings.YEN_PER_POINT,
    )


def month_records(
    db: Session, facility_id: uuid.UUID, year: int, month: int, insurance_type: InsuranceType
) -> list[NursingRecord]:
    """Billable visits of the month that were billed under ``insurance_type``."""
    first, last = month_bounds(date(year, month, 1))
    records = (
        db.query(NursingRecord)
        .filter(
            NursingRecord.facility_id == facility_id,
            NursingRecord.visit_date >= first,
            NursingRecord.visit_date <= last,
            NursingRecord.status.in_(BILLABLE_STATUSES),
            NursingRecord.deleted_at.is_(None),
        )
        .order_by(NursingRecord.visit_date, NursingRecord.actual_start_time)
        .all()
    )
    return [r for r in records if billed_insurance_type(db, r) == insurance_type]


def receipt_fields(
    db: Session,
    facility_id: uuid.UUID,
    patient_id: uuid.UUID,
    year: int,
    month: int,
    insurance_type: InsuranceType,
    records: list[NursingRecord],
) -> dict:
    """Every computed column of a receipt: totals, validation and CSV readiness."""
    totals = compute_receipt_totals(db, records)
    validation = validate_receipt(
        load_validation_input(db, facility_id, patient_id, year, month, insurance_type, records)
    )
    csv_result = validate_csv_export(db, facility_id, patient_id, year, month, insurance_type)
    return {
        **totals.as_fields(),
        **validation_fields(validation),
        **csv_validation_fields(csv_result),
    }


def find_receipt(
    db: Session,
    facility_id: uuid.UUID,
    patient_id: uuid.UUID,
    year: int,
    month: int,
    insurance_type: InsuranceType,
) -> Optional[MonthlyReceipt]:
    return (
        db.query(MonthlyReceipt)
        .filter(
            MonthlyReceipt.facility_id == facility_id,
            MonthlyReceipt.patient_id == patient_id,
            MonthlyReceipt.target_year == year,
            MonthlyReceipt.target_month == month,
            MonthlyReceipt.insurance_type == insurance_type,
        )
        .first()
    )


def update_unconfirmed_receipt(db: Session, receipt_id: uuid.UUID, values: dict) -> bool:
    """Overwrite computed columns unless the receipt was confirmed meanwhile."""
    updated = (
        db.query(MonthlyReceipt)
        .filter(MonthlyReceipt.receipt_id == receipt_id, MonthlyReceipt.is_confirmed.is_(False))
        .update(values, synchronize_session=False)
    )
    return updated == 1


@with_db_retry(max_retries=3)
def generate_receipts_for_month(
    db: Session,
    facility_id: uuid.UUID,
    year: int,
    month: int,
    insurance_type: InsuranceType,
    user_id: Optional[str] = None,
) -> ReceiptGenerationSummary:
    """
    Create or refresh the month's receipts for one insurance type.

    Confirmed receipts are never touched and are reported as skipped.
    Commits on success; a concurrent insert of the same receipt is retried.
    """
    summary = ReceiptGenerationSummary()
    audit = AuditService(db)

    by_patient: dict[uuid.UUID, list[NursingRecord]] = defaultdict(list)
    for record in month_records(db, facility_id, year, month, insurance_type):
        by_patient[record.patient_id].append(record)

    for patient_id in sorted(by_patient, key=str):
        existing = find_receipt(db, facility_id, patient_id, year, month, insurance_type)
        if existing is not None and existing.is_confirmed:
            summary.skipped.append(SkippedReceipt(patient_id, existing.receipt_id, "receipt_confirmed"))
            continue

        values = receipt_fields(
            db, facility_id, patient_id, year, month, insurance_type, by_patient[patient_id]
        )

        if existing is None:
            receipt = MonthlyReceipt(
                facility_id=facility_id,
                patient_id=patient_id,
                target_year=year,
                target_month=month,
                insurance_type=insurance_type,
                **values,
            )
            db.add(receipt)
            db.flush()
        else:
            if not update_unconfirmed_receipt(db, existing.receipt_id, values):
                summary.skipped.append(SkippedReceipt(patient_id, existing.receipt_id, "receipt_confirmed"))
                continue
            db.expire(existing)
            receipt = existing

        audit.log_receipt_event(
            "receipt.generated",
            "generate",
            receipt.receipt_id,
            facility_id,
            user_id,
            {"total_points": values["total_points"], "visit_count": values["visit_count"]},
        )
        summary.receipts.append(receipt)

    db.commit()
    for receipt in summary.receipts:
        db.refresh(receipt)

    logger.info(
        f"Generated {len(summary.receipts)} receipts for facility {facility_id} "
        f"{year}-{month:02d} {insurance_type.value}; skipped {len(summary.skipped)}"
    )
    return summary
