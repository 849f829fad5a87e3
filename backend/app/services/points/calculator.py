"""
Visit Point Calculator

Resolves a visit's base service-code points, runs the bonus engine and
returns ``base + sum(bonus points)``. When tied to a saved record it also
rewrites the record's bonus history and cached point fields.
"""
import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from typing import Any, Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.logging import get_logger
from app.db.models import (
    BonusCalculationHistory,
    CARD_TYPE_FOR_INSURANCE,
    Facility,
    InsuranceCard,
    InsuranceType,
    NursingRecord,
    Patient,
    ServiceCode,
    User,
)
from app.services.bonus import AppliedBonus, AssignedNurse, BonusEvaluationContext, calculate_bonuses
from app.services.bonus.context import to_clinic_local
from app.services.bonus.service_codes import find_service_code, select_service_code_for_bonus
from app.services.db_utils import lock_patient_visit_day

logger = get_logger(__name__)

DEFAULT_SERVICE_CODES = {
    InsuranceType.MEDICAL: lambda: settings.DEFAULT_MEDICAL_SERVICE_CODE,
    InsuranceType.CARE: lambda: settings.DEFAULT_CARE_SERVICE_CODE,
}


@dataclass
class RecordDraft:
    """The calculation-relevant fields of a visit, saved or not."""
    patient_id: uuid.UUID
    visit_date: date
    nurse_id: Optional[uuid.UUID] = None
    actual_start_time: Optional[datetime] = None
    actual_end_time: Optional[datetime] = None
    service_code_id: Optional[uuid.UUID] = None
    emergency_visit_reason: Optional[str] = None
    multiple_visit_reason: Optional[str] = None
    long_visit_reason: Optional[str] = None
    is_discharge_date: bool = False
    is_first_visit_of_plan: bool = False
    has_collaboration_record: bool = False
    is_terminal_care: bool = False
    specialist_care_type: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: NursingRecord) -> "RecordDraft":
        return cls(
            patient_id=record.patient_id,
            visit_date=record.visit_date,
            nurse_id=record.nurse_id,
            actual_start_time=record.actual_start_time,
            actual_end_time=record.actual_end_time,
            service_code_id=record.service_code_id,
            emergency_visit_reason=record.emergency_visit_reason,
            multiple_visit_reason=record.multiple_visit_reason,
            long_visit_reason=record.long_visit_reason,
            is_discharge_date=bool(record.is_discharge_date),
            is_first_visit_of_plan=bool(record.is_first_visit_of_plan),
            has_collaboration_record=bool(record.has_collaboration_record),
            is_terminal_care=bool(record.is_terminal_care),
            specialist_care_type=record.specialist_care_type,
            created_at=record.created_at,
        )

    def normalized(self) -> "RecordDraft":
        """Copy with times stored the way records store them: naive clinic-local, naive UTC created_at."""
        return replace(
            self,
            actual_start_time=_naive_local(self.actual_start_time),
            actual_end_time=_naive_local(self.actual_end_time),
            created_at=_naive_utc(self.created_at),
        )


def _naive_local(moment: Optional[datetime]) -> Optional[datetime]:
    if moment is None:
        return None
    return to_clinic_local(moment).replace(tzinfo=None)


def _naive_utc(moment: Optional[datetime]) -> Optional[datetime]:
    if moment is None or moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


@dataclass
class BaseServiceCodeResolution:
    service_code: Optional[ServiceCode]
    points: int
    is_default: bool
    daily_visit_count: int

    @property
    def service_code_id(self) -> Optional[uuid.UUID]:
        return self.service_code.service_code_id if self.service_code else None


@dataclass
class PointCalculation:
    """Result of calculating one visit."""
    calculated_points: int
    base_points: int
    applied_bonuses: list[AppliedBonus]
    service_code_id: Optional[uuid.UUID]
    is_default_service_code: bool
    daily_visit_count: int
    insurance_type: InsuranceType
    breakdown: dict = field(default_factory=dict)

    @property
    def bonus_points(self) -> int:
        return sum(b.calculated_points for b in self.applied_bonuses)


def _visit_order_key(
    start: Optional[datetime],
    created_at: Optional[datetime],
    record_id: Optional[uuid.UUID],
) -> tuple:
    # Visits without a start time sort last; ties fall back to creation order
    return (
        start is None,
        start or datetime.min,
        created_at or datetime.max,
        str(record_id) if record_id else "",
    )


def same_day_records(
    db: Session,
    patient_id: uuid.UUID,
    facility_id: uuid.UUID,
    visit_date: date,
    excluding_record_id: Optional[uuid.UUID] = None,
) -> list[NursingRecord]:
    """Non-deleted visits of the patient on the date, in visit order."""
    query = db.query(NursingRecord).filter(
        NursingRecord.patient_id == patient_id,
        NursingRecord.facility_id == facility_id,
        NursingRecord.visit_date == visit_date,
        NursingRecord.deleted_at.is_(None),
    )
    if excluding_record_id is not None:
        query = query.filter(NursingRecord.record_id != excluding_record_id)
    records = query.all()
    records.sort(key=lambda r: _visit_order_key(r.actual_start_time, r.created_at, r.record_id))
    return records


def daily_visit_ordinal(
    db: Session,
    draft: RecordDraft,
    facility_id: uuid.UUID,
    excluding_record_id: Optional[uuid.UUID] = None,
) -> int:
    """1-based position of the draft among the patient's visits that day."""
    siblings = same_day_records(db, draft.patient_id, facility_id, draft.visit_date, excluding_record_id)
    own_key = _visit_order_key(
        draft.actual_start_time,
        draft.created_at or datetime.utcnow(),
        excluding_record_id,
    )
    earlier = [
        s for s in siblings
        if _visit_order_key(s.actual_start_time, s.created_at, s.record_id) < own_key
    ]
    return len(earlier) + 1


def resolve_insurance_type(db: Session, patient: Patient, on: date) -> InsuranceType:
    """
    Insurance the visit bills under.

    The patient's own type wins when a covering card backs it; otherwise the
    newest active card covering the date decides. Without any covering card
    the patient's type (or medical) is used.
    """
    cards = (
        db.query(InsuranceCard)
        .filter(InsuranceCard.patient_id == patient.patient_id, InsuranceCard.is_active.is_(True))
        .order_by(InsuranceCard.valid_from.desc())
        .all()
    )
    covering_types = [c.card_type for c in cards if c.covers(on)]
    insurance_for_card = {card: ins for ins, card in CARD_TYPE_FOR_INSURANCE.items()}

    if patient.insurance_type is not None:
        if CARD_TYPE_FOR_INSURANCE[patient.insurance_type] in covering_types or not covering_types:
            return patient.insurance_type
    if covering_types:
        return insurance_for_card[covering_types[0]]
    return InsuranceType.MEDICAL


def billed_insurance_type(db: Session, record: NursingRecord) -> InsuranceType:
    """Insurance a saved visit is billed under; records never calculated are resolved now."""
    if record.insurance_type is not None:
        return record.insurance_type
    return resolve_insurance_type(db, record.patient, record.visit_date)


def resolve_base_service_code(
    db: Session,
    draft: RecordDraft,
    facility: Facility,
    insurance_type: InsuranceType,
    excluding_record_id: Optional[uuid.UUID] = None,
) -> BaseServiceCodeResolution:
    """
    Base fee of a visit.

    1. An explicitly chosen service code bills its own points.
    2. Otherwise the first visit of the day bills the facility's default
       code (or the configured default for the insurance type).
    3. Any later visit without a chosen code bills zero base points.
    """
    ordinal = daily_visit_ordinal(db, draft, facility.facility_id, excluding_record_id)

    if draft.service_code_id is not None:
        chosen = db.get(ServiceCode, draft.service_code_id)
        if chosen is None:
            logger.warning(f"Service code {draft.service_code_id} not found; base points are 0")
            return BaseServiceCodeResolution(None, 0, False, ordinal)
        return BaseServiceCodeResolution(chosen, chosen.points or 0, False, ordinal)

    if ordinal != 1:
        return BaseServiceCodeResolution(None, 0, False, ordinal)

    default_code = facility.default_service_code or DEFAULT_SERVICE_CODES[insurance_type]()
    found = find_service_code(db, default_code, draft.visit_date)
    if found is None:
        logger.warning(
            f"Default service code {default_code} has no version valid on {draft.visit_date}; "
            f"facility {facility.facility_id}"
        )
        return BaseServiceCodeResolution(None, 0, False, ordinal)
    return BaseServiceCodeResolution(found, found.points or 0, True, ordinal)


def build_context(
    db: Session,
    draft: RecordDraft,
    facility: Facility,
    patient: Patient,
    insurance_type: InsuranceType,
    resolution: BaseServiceCodeResolution,
    record_id: Optional[uuid.UUID] = None,
) -> BonusEvaluationContext:
    nurse = db.get(User, draft.nurse_id) if draft.nurse_id else None
    assigned = None
    if nurse is not None:
        assigned = AssignedNurse(
            user_id=nurse.user_id,
            full_name=nurse.full_name,
            specialist_certifications=list(nurse.specialist_certifications or []),
        )

    return BonusEvaluationContext(
        nursing_record_id=record_id,
        patient_id=patient.patient_id,
        facility_id=facility.facility_id,
        visit_date=draft.visit_date,
        insurance_type=insurance_type,
        visit_start_time=draft.actual_start_time,
        visit_end_time=draft.actual_end_time,
        patient_age=patient.age_on(draft.visit_date),
        building_id=patient.building_id,
        care_level=patient.care_level,
        last_discharge_date=patient.last_discharge_date,
        last_plan_created_date=patient.last_plan_created_date,
        death_date=patient.death_date,
        death_place_code=patient.death_place_code,
        special_management_types=list(patient.special_management_types or []),
        daily_visit_count=resolution.daily_visit_count,
        base_points=resolution.points,
        has_24h_support_system=bool(facility.has_24h_support_system),
        has_24h_support_system_enhanced=bool(facility.has_24h_support_system_enhanced),
        has_emergency_support_system=bool(facility.has_emergency_support_system),
        has_emergency_support_system_enhanced=bool(facility.has_emergency_support_system_enhanced),
        burden_reduction_measures=list(facility.burden_reduction_measures or []),
        emergency_visit_reason=draft.emergency_visit_reason,
        multiple_visit_reason=draft.multiple_visit_reason,
        long_visit_reason=draft.long_visit_reason,
        is_discharge_date=draft.is_discharge_date,
        is_first_visit_of_plan=draft.is_first_visit_of_plan,
        has_collaboration_record=draft.has_collaboration_record,
        is_terminal_care=draft.is_terminal_care,
        specialist_care_type=draft.specialist_care_type,
        assigned_nurse=assigned,
    )


def save_bonus_calculation_history(
    db: Session,
    nursing_record_id: uuid.UUID,
    results: list[AppliedBonus],
    context: Optional[BonusEvaluationContext] = None,
) -> list[BonusCalculationHistory]:
    """
    Replace the bonus history of a record with ``results``.

    Service codes a clerk chose (or cleared) by hand survive the rewrite;
    the rest are re-selected from the visit when a context is given.
    """
    existing = (
        db.query(BonusCalculationHistory)
        .filter(BonusCalculationHistory.nursing_record_id == nursing_record_id)
        .all()
    )
    manual_codes: dict[str, Optional[uuid.UUID]] = {
        row.bonus_code: row.service_code_id for row in existing if row.is_manually_adjusted
    }

    for row in existing:
        db.delete(row)
    db.flush()

    saved: list[BonusCalculationHistory] = []
    seen: set[str] = set()
    for result in results:
        if result.bonus_code in seen:
            logger.warning(
                f"Duplicate bonus {result.bonus_code} for record {nursing_record_id}; keeping the first"
            )
            continue
        seen.add(result.bonus_code)

        if result.bonus_code in manual_codes:
            service_code_id = manual_codes[result.bonus_code]
            manually_adjusted = True
        else:
            service_code_id = select_service_code_for_bonus(db, result, context) if context else None
            manually_adjusted = False

        row = BonusCalculationHistory(
            nursing_record_id=nursing_record_id,
            definition_id=result.definition_id,
            bonus_code=result.bonus_code,
            bonus_name=result.bonus_name,
            calculated_points=result.calculated_points,
            applied_version=result.applied_version,
            calculation_details=result.calculation_details,
            service_code_id=service_code_id,
            is_manually_adjusted=manually_adjusted,
        )
        db.add(row)
        saved.append(row)

    db.flush()
    record = db.get(NursingRecord, nursing_record_id)
    if record is not None:
        db.expire(record, ["bonus_history"])
    return saved


def calculate_bonuses_and_points(
    db: Session,
    draft: RecordDraft,
    facility_id: uuid.UUID,
    existing_record_id: Optional[uuid.UUID] = None,
) -> PointCalculation:
    """
    Calculate a visit's total points.

    Without ``existing_record_id`` this is a dry-run. With it, the record's
    bonus history and cached fields (calculated_points, applied_bonuses,
    resolved service code, base points, daily ordinal, insurance type) are
    rewritten in the caller's transaction. Aware visit times are read in
    clinic time.

    Raises:
        ValueError: unknown facility or patient, or a patient of another facility
    """
    draft = draft.normalized()
    facility = db.get(Facility, facility_id)
    if facility is None:
        raise ValueError(f"Facility not found: {facility_id}")
    patient = db.get(Patient, draft.patient_id)
    if patient is None or patient.facility_id != facility_id:
        raise ValueError(f"Patient not found in facility: {draft.patient_id}")

    lock_patient_visit_day(db, patient.patient_id, draft.visit_date)

    insurance_type = resolve_insurance_type(db, patient, draft.visit_date)
    resolution = resolve_base_service_code(db, draft, facility, insurance_type, existing_record_id)
    context = build_context(db, draft, facility, patient, insurance_type, resolution, existing_record_id)
    bonuses = calculate_bonuses(db, context)

    calculation = PointCalculation(
        calculated_points=resolution.points + sum(b.calculated_points for b in bonuses),
        base_points=resolution.points,
        applied_bonuses=bonuses,
        service_code_id=resolution.service_code_id,
        is_default_service_code=resolution.is_default,
        daily_visit_count=resolution.daily_visit_count,
        insurance_type=insurance_type,
        breakdown={
            "base_points": resolution.points,
            "bonus_points": {b.bonus_code: b.calculated_points for b in bonuses},
            "daily_visit_count": resolution.daily_visit_count,
            "is_default_service_code": resolution.is_default,
        },
    )

    if existing_record_id is not None:
        record = db.get(NursingRecord, existing_record_id)
        if record is None:
            raise ValueError(f"Nursing record not found: {existing_record_id}")
        save_bonus_calculation_history(db, existing_record_id, bonuses, context)
        _write_cached_fields(record, calculation)
        db.flush()

    return calculation


def _write_cached_fields(record: NursingRecord, calculation: PointCalculation) -> None:
    record.calculated_points = calculation.calculated_points
    record.base_points = calculation.base_points
    record.resolved_service_code_id = calculation.service_code_id
    record.is_default_service_code = calculation.is_default_service_code
    record.daily_visit_count = calculation.daily_visit_count
    record.insurance_type = calculation.insurance_type
    record.applied_bonuses = [b.to_dict() for b in calculation.applied_bonuses]


def recalculate_record(db: Session, record: NursingRecord) -> PointCalculation:
    """Recalculate a saved record from its current fields."""
    return calculate_bonuses_and_points(
        db, RecordDraft.from_record(record), record.facility_id, existing_record_id=record.record_id
    )


def recalculate_same_day_records(
    db: Session,
    patient_id: uuid.UUID,
    facility_id: uuid.UUID,
    visit_date: date,
    excluding_record_id: Optional[uuid.UUID] = None,
) -> list[PointCalculation]:
    """
    Bring the patient's other visits of the day up to date after a save.

    Ordinals, the single default base fee and multiple-visit bonuses depend
    on siblings, so every sibling is recalculated in visit order.
    """
    results = []
    for sibling in same_day_records(db, patient_id, facility_id, visit_date, excluding_record_id):
        results.append(recalculate_record(db, sibling))
    return results


def calculation_summary(calculation: PointCalculation) -> dict[str, Any]:
    """JSON-ready view used by the preview endpoint."""
    return {
        "calculated_points": calculation.calculated_points,
        "base_points": calculation.base_points,
        "bonus_points": calculation.bonus_points,
        "service_code_id": str(calculation.service_code_id) if calculation.service_code_id else None,
        "is_default_service_code": calculation.is_default_service_code,
        "daily_visit_count": calculation.daily_visit_count,
        "insurance_type": calculation.insurance_type.value,
        "applied_bonuses": [b.to_dict() for b in calculation.applied_bonuses],
    }
