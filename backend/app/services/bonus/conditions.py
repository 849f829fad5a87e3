"""
Predefined condition patterns

Each catalog entry carries a list of conditions such as
``{"pattern": "visit_duration_gte", "value": 90}``. Every condition must pass
for the bonus to apply. Patterns that need other visits of the patient take a
database session; the rest are pure functions of the context.
"""
import re
from datetime import date, timedelta
from typing import Any, Callable, Iterable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.db.models import BonusCalculationHistory, NursingRecord, BILLABLE_STATUSES
from app.services.bonus.context import (
    BonusDefinitionError,
    BonusEvaluationContext,
    ConditionResult,
)

ConditionEvaluator = Callable[[dict, BonusEvaluationContext], ConditionResult]
DbConditionEvaluator = Callable[[Session, dict, BonusEvaluationContext, str], ConditionResult]

CONDITION_EVALUATORS: dict[str, ConditionEvaluator] = {}
DB_CONDITION_EVALUATORS: dict[str, DbConditionEvaluator] = {}

# Evaluated against the codes already applied to the same record
SAME_RECORD_GUIDANCE_CONDITION = "has_discharge_joint_guidance_in_same_record"
DISCHARGE_JOINT_GUIDANCE_CODE = "medical_discharge_joint_guidance"

# Certification name -> specialist care type recorded on the visit
SPECIALTY_CARE_TYPES = {
    "緩和ケア": "palliative_care",
    "褥瘡ケア": "pressure_ulcer",
    "人工肛門・人工膀胱ケア": "stoma_care",
    "特定行為研修": "specific_procedures",
}

TERMINAL_CARE_WINDOW_DAYS = 14
TERMINAL_CARE_REQUIRED_VISITS = 2
# Allowed death place codes per terminal care bonus
TERMINAL_CARE_DEATH_PLACES = {
    "terminal_care_1": ("01", "16"),
    "terminal_care_2": ("16",),
    "care_terminal_care": ("01",),
}

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def condition(pattern: str):
    def register(func: ConditionEvaluator) -> ConditionEvaluator:
        CONDITION_EVALUATORS[pattern] = func
        return func
    return register


def db_condition(pattern: str):
    def register(func: DbConditionEvaluator) -> DbConditionEvaluator:
        DB_CONDITION_EVALUATORS[pattern] = func
        return func
    return register


def known_condition_patterns() -> set[str]:
    return set(CONDITION_EVALUATORS) | set(DB_CONDITION_EVALUATORS) | {SAME_RECORD_GUIDANCE_CONDITION}


def _context_value(context: BonusEvaluationContext, field_name: Any) -> Any:
    if not isinstance(field_name, str) or not field_name:
        raise BonusDefinitionError("Condition is missing a field name")
    attribute = _CAMEL_BOUNDARY.sub("_", field_name).lower()
    if not hasattr(context, attribute):
        raise BonusDefinitionError(f"Unknown context field: {field_name}")
    return getattr(context, attribute)


def _threshold(spec: dict) -> int:
    value = spec.get("value")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise BonusDefinitionError(f"Condition {spec.get('pattern')} needs a numeric value")
    return int(value)


def _flag(passed: bool, yes: str, no: str) -> ConditionResult:
    return ConditionResult(passed=passed, reason=yes if passed else no)


# ---------- Record fields ----------

@condition("field_not_empty")
def field_not_empty(spec: dict, context: BonusEvaluationContext) -> ConditionResult:
    field_name = spec.get("field")
    value = _context_value(context, field_name)
    passed = value is not None and value != "" and value != []
    return _flag(passed, f"{field_name} is not empty", f"{field_name} is empty")


@condition("field_equals")
def field_equals(spec: dict, context: BonusEvaluationContext) -> ConditionResult:
    field_name = spec.get("field")
    expected = spec.get("value")
    value = _context_value(context, field_name)
    return _flag(
        value == expected,
        f"{field_name} equals {expected}",
        f"{field_name} ({value}) does not equal {expected}",
    )


@condition("visit_duration_gte")
def visit_duration_gte(spec: dict, context: BonusEvaluationContext) -> ConditionResult:
    minutes = _threshold(spec)
    duration = context.duration_minutes
    if duration is None:
        return ConditionResult(False, "Visit start/end time not recorded")
    passed = duration >= minutes
    return ConditionResult(
        passed,
        f"Visit duration {duration}min {'>=' if passed else '<'} {minutes}min",
        {"duration_minutes": duration},
    )


@condition("visit_duration_lt")
def visit_duration_lt(spec: dict, context: BonusEvaluationContext) -> ConditionResult:
    minutes = _threshold(spec)
    duration = context.duration_minutes
    if duration is None:
        return ConditionResult(False, "Visit start/end time not recorded")
    passed = duration < minutes
    return ConditionResult(
        passed,
        f"Visit duration {duration}min {'<' if passed else '>='} {minutes}min",
        {"duration_minutes": duration},
    )


@condition("care_visit_duration_90plus")
def care_visit_duration_90plus(spec: dict, context: BonusEvaluationContext) -> ConditionResult:
    return visit_duration_gte({"pattern": "visit_duration_gte", "value": 90}, context)


# ---------- Patient ----------

@condition("age_lt")
def age_lt(spec: dict, context: BonusEvaluationContext) -> ConditionResult:
    limit = _threshold(spec)
    if context.patient_age is None:
        return ConditionResult(False, "Patient age not available")
    passed = context.patient_age < limit
    return ConditionResult(passed, f"Patient age {context.patient_age} {'<' if passed else '>='} {limit}")


@condition("age_gte")
def age_gte(spec: dict, context: BonusEvaluationContext) -> ConditionResult:
    limit = _threshold(spec)
    if context.patient_age is None:
        return ConditionResult(False, "Patient age not available")
    passed = context.patient_age >= limit
    return ConditionResult(passed, f"Patient age {context.patient_age} {'>=' if passed else '<'} {limit}")


@condition("has_building")
def has_building(spec: dict, context: BonusEvaluationContext) -> ConditionResult:
    return _flag(bool(context.building_id), "Patient has building assignment", "Patient has no building assignment")


@condition("patient_has_special_management")
def patient_has_special_management(spec: dict, context: BonusEvaluationContext) -> ConditionResult:
    types = context.special_management_types or []
    if types:
        return ConditionResult(True, f"Special management: {', '.join(types)}")
    return ConditionResult(False, "No special management")


# ---------- Same-day visits ----------

@condition("daily_visit_count_gte")
def daily_visit_count_gte(spec: dict, context: BonusEvaluationContext) -> ConditionResult:
    minimum = _threshold(spec)
    count = context.daily_visit_count or 1
    passed = count >= minimum
    return ConditionResult(
        passed,
        f"Visit {count} of the day {'>=' if passed else '<'} {minimum}",
        {"visit_count": count, "min_count": minimum},
    )


@condition("is_second_visit")
def is_second_visit(spec: dict, context: BonusEvaluationContext) -> ConditionResult:
    return _flag(context.is_second_visit, "Is second visit of the day", "Is first visit of the day")


# ---------- Facility capability ----------

@condition("has_24h_support_system")
def has_24h_support_system(spec: dict, context: BonusEvaluationContext) -> ConditionResult:
    return _flag(context.has_24h_support_system, "24h support system", "No 24h support system")


@condition("has_24h_support_system_enhanced")
def has_24h_support_system_enhanced(spec: dict, context: BonusEvaluationContext) -> ConditionResult:
    measures = context.burden_reduction_measures or []
    if not context.has_24h_support_system_enhanced:
        return ConditionResult(False, "No enhanced 24h support system")
    if len(measures) < 2:
        return ConditionResult(
            False, f"Enhanced 24h support needs 2 burden reduction measures ({len(measures)} recorded)"
        )
    return ConditionResult(True, f"Enhanced 24h support system ({len(measures)} burden reduction measures)")


@condition("has_emergency_support_system")
def has_emergency_support_system(spec: dict, context: BonusEvaluationContext) -> ConditionResult:
    return _flag(context.has_emergency_support_system, "Emergency support system (I)", "No emergency support system (I)")


@condition("has_emergency_support_system_enhanced")
def has_emergency_support_system_enhanced(spec: dict, context: BonusEvaluationContext) -> ConditionResult:
    return _flag(
        context.has_emergency_support_system_enhanced,
        "Emergency support system (II)",
        "No emergency support system (II)",
    )


# ---------- Record flags ----------

@condition("is_discharge_date")
def is_discharge_date(spec: dict, context: BonusEvaluationContext) -> ConditionResult:
    return _flag(context.is_discharge_date, "Visit on discharge date", "Not a discharge date visit")


@condition("is_first_visit_of_plan")
def is_first_visit_of_plan(spec: dict, context: BonusEvaluationContext) -> ConditionResult:
    return _flag(context.is_first_visit_of_plan, "First visit of a new plan", "Not the first visit of a plan")


@condition("has_collaboration_record")
def has_collaboration_record(spec: dict, context: BonusEvaluationContext) -> ConditionResult:
    return _flag(context.has_collaboration_record, "Collaboration record present", "No collaboration record")


@condition("is_terminal_care")
def is_terminal_care(spec: dict, context: BonusEvaluationContext) -> ConditionResult:
    return _flag(context.is_terminal_care, "Terminal care provided", "No terminal care")


# ---------- Specialist nurses ----------

@condition("requires_specialized_nurse")
def requires_specialized_nurse(spec: dict, context: BonusEvaluationContext) -> ConditionResult:
    nurse = context.assigned_nurse
    if nurse is None:
        return ConditionResult(False, "No assigned nurse")
    if nurse.specialist_certifications:
        return ConditionResult(True, f"Specialist certifications: {', '.join(nurse.specialist_certifications)}")
    return ConditionResult(False, "Nurse has no specialist training")


@condition("specialties_match")
def specialties_match(spec: dict, context: BonusEvaluationContext) -> ConditionResult:
    specialties = spec.get("value")
    if not isinstance(specialties, list) or not specialties:
        raise BonusDefinitionError("specialties_match needs a list of specialties")
    if not context.specialist_care_type:
        return ConditionResult(False, "No specialist care recorded")
    nurse = context.assigned_nurse
    if nurse is None:
        return ConditionResult(False, "No assigned nurse")
    certifications = nurse.specialist_certifications or []
    if not certifications:
        return ConditionResult(False, "Nurse has no specialist certification")

    for specialty in specialties:
        if SPECIALTY_CARE_TYPES.get(specialty) == context.specialist_care_type and specialty in certifications:
            return ConditionResult(True, f"Specialty matches: {specialty}")
    return ConditionResult(
        False,
        f"Specialty mismatch (care: {context.specialist_care_type}, certifications: {', '.join(certifications)})",
    )


# ---------- Time bands (clinic local time) ----------

def is_early_morning(hour: int) -> bool:
    return 6 <= hour < 8


def is_night(hour: int) -> bool:
    return 18 <= hour < 22


def is_late_night(hour: int) -> bool:
    return hour >= 22 or hour < 6


def _band(context: BonusEvaluationContext, label: str, test: Callable[[int], bool]) -> ConditionResult:
    local = context.local_start_time
    if local is None:
        return ConditionResult(False, "Visit start time not recorded")
    passed = test(local.hour)
    stamp = local.strftime("%H:%M")
    return ConditionResult(passed, f"{'Within' if passed else 'Outside'} {label} (start {stamp})")


@condition("care_early_morning_time")
@condition("medical_early_morning_time")
def early_morning_time(spec: dict, context: BonusEvaluationContext) -> ConditionResult:
    return _band(context, "early morning 06:00-08:00", is_early_morning)


@condition("care_night_time")
@condition("medical_night_time")
def night_time(spec: dict, context: BonusEvaluationContext) -> ConditionResult:
    return _band(context, "night 18:00-22:00", is_night)


@condition("care_late_night_time")
@condition("medical_late_night_time")
def late_night_time(spec: dict, context: BonusEvaluationContext) -> ConditionResult:
    return _band(context, "late night 22:00-06:00", is_late_night)


@condition("time_based")
def time_based(spec: dict, context: BonusEvaluationContext) -> ConditionResult:
    # The band itself is priced by the time_based point pattern
    if context.visit_start_time is None:
        return ConditionResult(False, "Visit start time not recorded")
    return ConditionResult(True, "Time band priced by point pattern")


# ---------- Conditions that read other visits ----------

def month_bounds(on: date) -> tuple[date, date]:
    """First and last day of the month containing ``on``."""
    first = on.replace(day=1)
    next_month = (first + timedelta(days=32)).replace(day=1)
    return first, next_month - timedelta(days=1)


@db_condition("terminal_care_requirement")
def terminal_care_requirement(
    db: Session, spec: dict, context: BonusEvaluationContext, bonus_code: str
) -> ConditionResult:
    death_date = context.death_date
    if death_date is None:
        return ConditionResult(False, "Patient death date not recorded")
    if context.visit_date != death_date:
        return ConditionResult(False, "Terminal care bonus is billed on the visit of the death date only")

    allowed_places = TERMINAL_CARE_DEATH_PLACES.get(bonus_code)
    if allowed_places is not None and context.death_place_code not in allowed_places:
        return ConditionResult(
            False,
            f"Death place code {context.death_place_code!r} not in {', '.join(allowed_places)}",
        )

    window_start = death_date - timedelta(days=TERMINAL_CARE_WINDOW_DAYS)
    query = db.query(func.count(NursingRecord.record_id)).filter(
        NursingRecord.patient_id == context.patient_id,
        NursingRecord.is_terminal_care.is_(True),
        NursingRecord.deleted_at.is_(None),
        NursingRecord.visit_date >= window_start,
        NursingRecord.visit_date <= death_date,
    )
    if context.nursing_record_id is not None:
        query = query.filter(NursingRecord.record_id != context.nursing_record_id)
    visit_count = query.scalar() or 0
    if context.is_terminal_care:
        visit_count += 1

    if visit_count < TERMINAL_CARE_REQUIRED_VISITS:
        return ConditionResult(
            False,
            f"Terminal care visits in the {TERMINAL_CARE_WINDOW_DAYS} days before death: "
            f"{visit_count}/{TERMINAL_CARE_REQUIRED_VISITS}",
        )
    return ConditionResult(
        True,
        f"Terminal care requirement met ({visit_count} visits)",
        {
            "visit_count": visit_count,
            "required_visits": TERMINAL_CARE_REQUIRED_VISITS,
            "period": f"{window_start.isoformat()}..{death_date.isoformat()}",
        },
    )


@db_condition("monthly_visit_limit")
def monthly_visit_limit(
    db: Session, spec: dict, context: BonusEvaluationContext, bonus_code: str
) -> ConditionResult:
    limit = _threshold(spec)
    month_start, month_end = month_bounds(context.visit_date)
    query = (
        db.query(func.count(BonusCalculationHistory.history_id))
        .join(NursingRecord, BonusCalculationHistory.nursing_record_id == NursingRecord.record_id)
        .filter(
            NursingRecord.patient_id == context.patient_id,
            BonusCalculationHistory.bonus_code == bonus_code,
            NursingRecord.visit_date >= month_start,
            NursingRecord.visit_date <= month_end,
            NursingRecord.status.in_(BILLABLE_STATUSES),
            NursingRecord.deleted_at.is_(None),
        )
    )
    # The record's own previous history must not count against it
    if context.nursing_record_id is not None:
        query = query.filter(BonusCalculationHistory.nursing_record_id != context.nursing_record_id)
    current = query.scalar() or 0

    if current >= limit:
        return ConditionResult(False, f"Limit of {limit} per month reached ({current} billed)")
    return ConditionResult(True, f"Within monthly limit ({current}/{limit})")


def has_discharge_joint_guidance(applied_codes: Iterable[str]) -> ConditionResult:
    return _flag(
        DISCHARGE_JOINT_GUIDANCE_CODE in set(applied_codes),
        "Discharge joint guidance billed on this visit",
        "Discharge joint guidance not billed on this visit",
    )


def evaluate_condition(
    spec: Any,
    context: BonusEvaluationContext,
    *,
    db: Optional[Session] = None,
    bonus_code: str = "",
    applied_codes: Iterable[str] = (),
) -> ConditionResult:
    """
    Evaluate one predefined condition.

    ``{"operator": "equals", "value": false}`` asserts the outcome of a
    boolean pattern, so a condition can also require that a flag is NOT set.

    Raises:
        BonusDefinitionError: unknown pattern or unusable parameters
    """
    if not isinstance(spec, dict):
        raise BonusDefinitionError(f"Condition must be an object, got {type(spec).__name__}")
    pattern = spec.get("pattern") or spec.get("type")

    if pattern == SAME_RECORD_GUIDANCE_CONDITION:
        result = has_discharge_joint_guidance(applied_codes)
    elif pattern in DB_CONDITION_EVALUATORS:
        if db is None:
            raise BonusDefinitionError(f"Condition {pattern} needs a database session")
        result = DB_CONDITION_EVALUATORS[pattern](db, spec, context, bonus_code)
    elif pattern in CONDITION_EVALUATORS:
        result = CONDITION_EVALUATORS[pattern](spec, context)
    else:
        raise BonusDefinitionError(f"Unknown condition pattern: {pattern}")

    expected = spec.get("value")
    if (
        pattern not in ("field_equals", "specialties_match")
        and spec.get("operator") == "equals"
        and isinstance(expected, bool)
    ):
        if result.passed != expected:
            return ConditionResult(False, f"Expected {expected}, got {result.passed} ({result.reason})")
        return ConditionResult(True, f"{result.reason} (expected {expected})", result.metadata)

    return result
