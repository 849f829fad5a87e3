"""
Receipt Validator

Checks a monthly receipt against doctor orders, insurance cards and the
bonus rules that span visits. Errors block finalization; warnings never
block anything.

``validate_receipt`` is pure: it works on a ``ReceiptValidationInput``
snapshot. ``build_validation_input`` loads that snapshot for a receipt.
"""
import uuid
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.logging import get_logger
from app.db.models import (
    BILLABLE_STATUSES,
    BonusCalculationHistory,
    CARD_TYPE_FOR_INSURANCE,
    DoctorOrder,
    InsuranceCard,
    InsuranceCardType,
    InsuranceType,
    MonthlyReceipt,
    NursingRecord,
    Patient,
)
from app.services.bonus.conditions import month_bounds
from app.services.points import billed_insurance_type

logger = get_logger(__name__)

ERROR = "error"
WARNING = "warning"

MID_MONTH_DAY = 15

# (bonus code, monthly limit, severity, message code, message)
MONTHLY_LIMITS = (
    ("terminal_care", 1, ERROR, "TERMINAL_CARE_FREQUENCY_EXCEEDED",
     "Terminal care bonus can be billed once per month"),
    ("home_liaison_guidance", 1, ERROR, "HOME_LIAISON_FREQUENCY_EXCEEDED",
     "Home liaison guidance bonus can be billed once per month"),
    ("emergency_conference", 2, WARNING, "EMERGENCY_CONFERENCE_FREQUENCY_EXCEEDED",
     "Emergency conference bonus is limited to twice per month"),
)

MUTUALLY_EXCLUSIVE_PAIRS = (
    ("special_management_1", "special_management_2",
     "Special management I and II cannot be billed together"),
    ("nursing_care_strengthening_1", "nursing_care_strengthening_2",
     "Nursing care strengthening I and II cannot be billed together"),
    ("initial_bonus_1", "initial_bonus_2",
     "Initial bonus I and II cannot be billed together"),
)

CARE_LEVELS_SUGGESTING_SPECIAL_MANAGEMENT = ("care4", "care5")


@dataclass
class ValidationMessage:
    code: str
    message: str
    severity: str
    field: Optional[str] = None
    record_id: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"code": self.code, "message": self.message, "severity": self.severity}
        if self.field:
            data["field"] = self.field
        if self.record_id:
            data["record_id"] = self.record_id
        return data


@dataclass
class ValidationResult:
    """Result of validating one receipt."""
    is_valid: bool
    errors: list[ValidationMessage] = field(default_factory=list)
    warnings: list[ValidationMessage] = field(default_factory=list)


@dataclass
class VisitSnapshot:
    record_id: uuid.UUID
    visit_date: date
    actual_start_time: Optional[datetime] = None
    actual_end_time: Optional[datetime] = None
    emergency_visit_reason: Optional[str] = None
    multiple_visit_reason: Optional[str] = None
    daily_visit_count: int = 1

    @property
    def duration_minutes(self) -> Optional[int]:
        if self.actual_start_time is None or self.actual_end_time is None:
            return None
        return int((self.actual_end_time - self.actual_start_time).total_seconds() // 60)

    @property
    def is_second_visit(self) -> bool:
        return self.daily_visit_count >= 2


@dataclass
class PeriodWindow:
    """Validity window of a doctor order or insurance card; ``end`` None is open ended."""
    start: date
    end: Optional[date] = None
    kind: Optional[str] = None

    def covers(self, on: date) -> bool:
        return self.start <= on and (self.end is None or self.end >= on)


@dataclass
class BonusSnapshot:
    nursing_record_id: uuid.UUID
    bonus_code: str
    bonus_name: str
    calculated_points: int


@dataclass
class ReceiptValidationInput:
    patient_id: uuid.UUID
    target_year: int
    target_month: int
    insurance_type: InsuranceType
    visits: list[VisitSnapshot] = field(default_factory=list)
    building_id: Optional[str] = None
    care_level: Optional[str] = None
    doctor_orders: list[PeriodWindow] = field(default_factory=list)
    insurance_cards: list[PeriodWindow] = field(default_factory=list)
    bonuses: list[BonusSnapshot] = field(default_factory=list)


def _mid_month(year: int, month: int) -> date:
    return date(year, month, MID_MONTH_DAY)


def check_doctor_orders(data: ReceiptValidationInput) -> tuple[list, list]:
    errors, warnings = [], []
    if not data.doctor_orders:
        errors.append(ValidationMessage(
            "NO_DOCTOR_ORDER", "No doctor order is registered", ERROR, "doctor_order",
        ))
        return errors, warnings

    mid = _mid_month(data.target_year, data.target_month)
    if not any(order.covers(mid) for order in data.doctor_orders):
        errors.append(ValidationMessage(
            "EXPIRED_DOCTOR_ORDER",
            f"No doctor order is valid in {data.target_year}-{data.target_month:02d}",
            ERROR, "doctor_order",
        ))

    uncovered = sorted({
        v.visit_date for v in data.visits
        if not any(order.covers(v.visit_date) for order in data.doctor_orders)
    })
    if uncovered:
        errors.append(ValidationMessage(
            "VISIT_WITHOUT_VALID_ORDER",
            "No valid doctor order on visit dates: " + ", ".join(d.isoformat() for d in uncovered),
            ERROR, "doctor_order",
        ))

    horizon = mid + timedelta(days=settings.DOCTOR_ORDER_EXPIRY_WARNING_DAYS)
    if any(o.end is not None and mid <= o.end <= horizon for o in data.doctor_orders):
        warnings.append(ValidationMessage(
            "EXPIRING_DOCTOR_ORDER",
            f"A doctor order expires within {settings.DOCTOR_ORDER_EXPIRY_WARNING_DAYS} days",
            WARNING, "doctor_order",
        ))
    return errors, warnings


def check_insurance_cards(data: ReceiptValidationInput) -> tuple[list, list]:
    errors, warnings = [], []
    card_type = CARD_TYPE_FOR_INSURANCE[data.insurance_type].value
    cards = [c for c in data.insurance_cards if c.kind == card_type]
    if not cards:
        errors.append(ValidationMessage(
            "NO_INSURANCE_CARD",
            f"No {data.insurance_type.value} insurance card is registered",
            ERROR, "insurance_card",
        ))
        return errors, warnings

    mid = _mid_month(data.target_year, data.target_month)
    if not any(card.covers(mid) for card in cards):
        errors.append(ValidationMessage(
            "EXPIRED_INSURANCE_CARD",
            f"No insurance card is valid in {data.target_year}-{data.target_month:02d}",
            ERROR, "insurance_card",
        ))

    uncovered = sorted({
        v.visit_date for v in data.visits if not any(card.covers(v.visit_date) for card in cards)
    })
    if uncovered:
        errors.append(ValidationMessage(
            "VISIT_WITHOUT_VALID_CARD",
            "No valid insurance card on visit dates: " + ", ".join(d.isoformat() for d in uncovered),
            ERROR, "insurance_card",
        ))

    horizon = mid + timedelta(days=settings.INSURANCE_CARD_EXPIRY_WARNING_DAYS)
    if any(c.end is not None and mid <= c.end <= horizon for c in cards):
        warnings.append(ValidationMessage(
            "EXPIRING_INSURANCE_CARD",
            f"An insurance card expires within {settings.INSURANCE_CARD_EXPIRY_WARNING_DAYS} days",
            WARNING, "insurance_card",
        ))
    return errors, warnings


def check_bonus_frequency(data: ReceiptValidationInput) -> tuple[list, list]:
    errors, warnings = [], []
    counts = Counter(b.bonus_code for b in data.bonuses)

    for code, limit, severity, message_code, message in MONTHLY_LIMITS:
        if counts.get(code, 0) > limit:
            target = errors if severity == ERROR else warnings
            target.append(ValidationMessage(message_code, message, severity, "bonuses"))

    # Long visit bonus is limited to once per week
    visit_dates = {v.record_id: v.visit_date for v in data.visits}
    per_week: Counter = Counter()
    for bonus in data.bonuses:
        if "long_visit" in bonus.bonus_code and bonus.nursing_record_id in visit_dates:
            per_week[visit_dates[bonus.nursing_record_id].isocalendar()[:2]] += 1
    if any(n > 1 for n in per_week.values()):
        warnings.append(ValidationMessage(
            "LONG_VISIT_FREQUENCY_EXCEEDED",
            f"Long visit bonus billed more than once in a week ({sum(per_week.values())} in month)",
            WARNING, "bonuses",
        ))

    per_visit: dict[uuid.UUID, Counter] = defaultdict(Counter)
    for bonus in data.bonuses:
        per_visit[bonus.nursing_record_id][bonus.bonus_code] += 1
    for record_id, codes in per_visit.items():
        for code, n in codes.items():
            if n > 1:
                errors.append(ValidationMessage(
                    "DUPLICATE_BONUS_ON_VISIT",
                    f"Bonus {code} is recorded {n} times on one visit",
                    ERROR, "bonuses", str(record_id),
                ))
    return errors, warnings


def check_mutually_exclusive_bonuses(data: ReceiptValidationInput) -> list:
    codes = {b.bonus_code for b in data.bonuses}
    return [
        ValidationMessage("CONCURRENT_BONUS_VIOLATION", message, ERROR, "bonuses")
        for first, second, message in MUTUALLY_EXCLUSIVE_PAIRS
        if first in codes and second in codes
    ]


def check_building_classification(data: ReceiptValidationInput) -> list:
    has_reduction = any("same_building_reduction" in b.bonus_code for b in data.bonuses)
    if has_reduction and not data.building_id:
        return [ValidationMessage(
            "BUILDING_REDUCTION_WITHOUT_BUILDING",
            "Same-building reduction applied but the patient has no building",
            WARNING, "building",
        )]
    if not has_reduction and data.building_id:
        return [ValidationMessage(
            "BUILDING_WITHOUT_REDUCTION",
            "Patient has a building but no same-building reduction is applied",
            WARNING, "building",
        )]
    return []


def detect_missing_bonuses(data: ReceiptValidationInput) -> list[ValidationMessage]:
    """
    Visits that look eligible for a bonus they did not receive.

    Suggestions only; nothing is applied.
    """
    by_visit: dict[uuid.UUID, set[str]] = defaultdict(set)
    for bonus in data.bonuses:
        by_visit[bonus.nursing_record_id].add(bonus.bonus_code)

    def has(codes: set[str], fragment: str) -> bool:
        return any(fragment in code for code in codes)

    suggestions = []
    for visit in data.visits:
        codes = by_visit.get(visit.record_id, set())
        record_id = str(visit.record_id)
        duration = visit.duration_minutes
        if (
            duration is not None
            and duration >= settings.LONG_VISIT_THRESHOLD_MINUTES
            and not has(codes, "long_visit")
        ):
            suggestions.append(ValidationMessage(
                "MISSING_LONG_VISIT_BONUS",
                f"Visit {visit.visit_date}: {duration} minutes without a long visit bonus",
                WARNING, "bonuses", record_id,
            ))
        if (visit.emergency_visit_reason or "").strip() and not has(codes, "emergency_visit"):
            suggestions.append(ValidationMessage(
                "MISSING_EMERGENCY_VISIT_BONUS",
                f"Visit {visit.visit_date}: emergency reason recorded without an emergency visit bonus",
                WARNING, "bonuses", record_id,
            ))
        if (
            visit.is_second_visit
            and (visit.multiple_visit_reason or "").strip()
            and not has(codes, "multiple_visit")
        ):
            suggestions.append(ValidationMessage(
                "MISSING_MULTIPLE_VISIT_BONUS",
                f"Visit {visit.visit_date}: multiple same-day visits without a multiple visit bonus",
                WARNING, "bonuses", record_id,
            ))

    all_codes = {b.bonus_code for b in data.bonuses}
    if data.care_level in CARE_LEVELS_SUGGESTING_SPECIAL_MANAGEMENT and not any(
        code.startswith(settings.SPECIAL_MANAGEMENT_PREFIX) for code in all_codes
    ):
        suggestions.append(ValidationMessage(
            "MISSING_SPECIAL_MANAGEMENT_BONUS",
            f"Care level {data.care_level} patient without a special management bonus",
            WARNING, "bonuses",
        ))
    return suggestions


def validate_receipt(data: ReceiptValidationInput) -> ValidationResult:
    """Run every receipt check on a snapshot."""
    errors: list[ValidationMessage] = []
    warnings: list[ValidationMessage] = []

    for check in (check_doctor_orders, check_insurance_cards, check_bonus_frequency):
        found_errors, found_warnings = check(data)
        errors.extend(found_errors)
        warnings.extend(found_warnings)

    errors.extend(check_mutually_exclusive_bonuses(data))
    warnings.extend(check_building_classification(data))
    warnings.extend(detect_missing_bonuses(data))

    return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)


def billable_records(
    db: Session,
    facility_id: uuid.UUID,
    patient_id: uuid.UUID,
    year: int,
    month: int,
    insurance_type: Optional[InsuranceType] = None,
) -> list[NursingRecord]:
    """The patient's billable visits of the month, limited to one insurance when given."""
    first, last = month_bounds(date(year, month, 1))
    records = (
        db.query(NursingRecord)
        .filter(
            NursingRecord.facility_id == facility_id,
            NursingRecord.patient_id == patient_id,
            NursingRecord.visit_date >= first,
            NursingRecord.visit_date <= last,
            NursingRecord.status.in_(BILLABLE_STATUSES),
            NursingRecord.deleted_at.is_(None),
        )
        .order_by(NursingRecord.visit_date, NursingRecord.actual_start_time)
        .all()
    )
    if insurance_type is None:
        return records
    return [r for r in records if billed_insurance_type(db, r) == insurance_type]


def load_validation_input(
    db: Session,
    facility_id: uuid.UUID,
    patient_id: uuid.UUID,
    year: int,
    month: int,
    insurance_type: InsuranceType,
    records: Optional[list[NursingRecord]] = None,
) -> ReceiptValidationInput:
    """Load the snapshot the validator works on."""
    patient = db.get(Patient, patient_id)
    if records is None:
        records = billable_records(db, facility_id, patient_id, year, month, insurance_type)
    record_ids = [r.record_id for r in records]

    history = []
    if record_ids:
        history = (
            db.query(BonusCalculationHistory)
            .filter(BonusCalculationHistory.nursing_record_id.in_(record_ids))
            .all()
        )

    orders = (
        db.query(DoctorOrder)
        .filter(DoctorOrder.patient_id == patient_id, DoctorOrder.is_active.is_(True))
        .all()
    )
    cards = (
        db.query(InsuranceCard)
        .filter(InsuranceCard.patient_id == patient_id, InsuranceCard.is_active.is_(True))
        .all()
    )

    return ReceiptValidationInput(
        patient_id=patient_id,
        target_year=year,
        target_month=month,
        insurance_type=insurance_type,
        visits=[
            VisitSnapshot(
                record_id=r.record_id,
                visit_date=r.visit_date,
                actual_start_time=r.actual_start_time,
                actual_end_time=r.actual_end_time,
                emergency_visit_reason=r.emergency_visit_reason,
                multiple_visit_reason=r.multiple_visit_reason,
                daily_visit_count=r.daily_visit_count or 1,
            )
            for r in records
        ],
        building_id=patient.building_id if patient else None,
        care_level=patient.care_level if patient else None,
        doctor_orders=[PeriodWindow(o.start_date, o.end_date) for o in orders],
        insurance_cards=[
            PeriodWindow(c.valid_from, c.valid_until, InsuranceCardType(c.card_type).value) for c in cards
        ],
        bonuses=[
            BonusSnapshot(h.nursing_record_id, h.bonus_code, h.bonus_name, h.calculated_points or 0)
            for h in history
        ],
    )


def build_validation_input(db: Session, receipt: MonthlyReceipt) -> ReceiptValidationInput:
    return load_validation_input(
        db,
        receipt.facility_id,
        receipt.patient_id,
        receipt.target_year,
        receipt.target_month,
        receipt.insurance_type,
    )


def validation_fields(result: ValidationResult) -> dict:
    """Receipt column values for a validation result."""
    return {
        "has_errors": bool(result.errors),
        "has_warnings": bool(result.warnings),
        "error_messages": [e.to_dict() for e in result.errors],
        "warning_messages": [w.to_dict() for w in result.warnings],
        "last_validated_at": datetime.utcnow(),
    }


def apply_validation(receipt: MonthlyReceipt, result: ValidationResult) -> None:
    """Persist a validation result on the receipt row."""
    for name, value in validation_fields(result).items():
        setattr(receipt, name, value)


def validate_receipt_by_id(db: Session, receipt_id: uuid.UUID, persist: bool = True) -> Optional[ValidationResult]:
    """
    Validate a stored receipt.

    With ``persist`` the result is written to the row (flushed, not committed).
    Returns None if the receipt does not exist.
    """
    receipt = db.get(MonthlyReceipt, receipt_id)
    if receipt is None:
        return None
    result = validate_receipt(build_validation_input(db, receipt))
    if persist:
        apply_validation(receipt, result)
        db.flush()
    logger.debug(
        f"Validated receipt {receipt_id}: {len(result.errors)} errors, {len(result.warnings)} warnings"
    )
    return result
