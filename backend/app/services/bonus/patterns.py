"""
Point patterns

A ``fixed`` definition bills ``fixed_points``. A ``conditional`` definition
names one of the patterns below and prices the visit from its
``points_config``. Every pattern returns whole points.
"""
import re
from typing import Any, Callable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.logging import get_logger
from app.db.models import BonusDefinition, NursingRecord, Patient, PointsType
from app.services.bonus.conditions import is_early_morning, is_late_night, is_night, month_bounds
from app.services.bonus.context import (
    BonusDefinitionError,
    BonusEvaluationContext,
    PatternResult,
    round_points,
)

logger = get_logger(__name__)

PatternEvaluator = Callable[[dict, BonusEvaluationContext], PatternResult]
DbPatternEvaluator = Callable[[Session, dict, BonusEvaluationContext], PatternResult]

PATTERN_EVALUATORS: dict[str, PatternEvaluator] = {}
DB_PATTERN_EVALUATORS: dict[str, DbPatternEvaluator] = {}

EMERGENCY_VISIT_THRESHOLD = 14
LOW_OCCUPANCY_LIMIT = 2

_AGE_KEY = re.compile(r"^age_(\d+)(?:_(\d+))?$")
_DURATION_KEY = re.compile(r"^duration_(\d+)$")


def pattern(name: str):
    def register(func: PatternEvaluator) -> PatternEvaluator:
        PATTERN_EVALUATORS[name] = func
        return func
    return register


def db_pattern(name: str):
    def register(func: DbPatternEvaluator) -> DbPatternEvaluator:
        DB_PATTERN_EVALUATORS[name] = func
        return func
    return register


def known_point_patterns() -> set[str]:
    return set(PATTERN_EVALUATORS) | set(DB_PATTERN_EVALUATORS)


def _points(config: dict, key: str) -> int:
    value = config.get(key, 0)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise BonusDefinitionError(f"points_config[{key!r}] is not a number")
    try:
        return round_points(value)
    except ArithmeticError as e:
        raise BonusDefinitionError(f"points_config[{key!r}] is not a number") from e


@pattern("time_based")
def time_based(config: dict, context: BonusEvaluationContext) -> PatternResult:
    local = context.local_start_time
    if local is None:
        raise BonusDefinitionError("Visit start time required for time_based pattern")
    hour = local.hour
    if is_late_night(hour):
        band = "late_night"
    elif is_night(hour):
        band = "night"
    elif is_early_morning(hour):
        band = "early_morning"
    else:
        band = "daytime"
    return PatternResult(_points(config, band), band, {"hour": hour})


@pattern("duration_based")
def duration_based(config: dict, context: BonusEvaluationContext) -> PatternResult:
    """
    Threshold list (``conditions``) or legacy ``duration_NN`` keys.

    The longest threshold that matches wins.
    """
    duration = context.duration_minutes
    if duration is None:
        raise BonusDefinitionError("Visit start/end time required for duration_based pattern")

    thresholds = config.get("conditions")
    if thresholds is not None:
        if not isinstance(thresholds, list) or not all(isinstance(c, dict) for c in thresholds):
            raise BonusDefinitionError("points_config.conditions must be a list of objects")
        ordered = sorted(thresholds, key=lambda c: c.get("durationMinutes") or 0, reverse=True)
        for entry in ordered:
            threshold = entry.get("durationMinutes") or 0
            operator = entry.get("operator") or "greater_than_or_equal"
            if operator == "greater_than":
                matched = duration > threshold
            elif operator == "greater_than_or_equal":
                matched = duration >= threshold
            else:
                raise BonusDefinitionError(f"Unknown duration operator: {operator}")
            if matched:
                return PatternResult(
                    _points(entry, "points"),
                    entry.get("description") or f"duration_{threshold}",
                    {"duration_minutes": duration, "threshold": threshold, "operator": operator},
                )
        return PatternResult(_points(config, "defaultPoints"), "below_threshold", {"duration_minutes": duration})

    keyed = []
    for key in config:
        match = _DURATION_KEY.match(key)
        if match:
            keyed.append((int(match.group(1)), key))
    for minutes, key in sorted(keyed, reverse=True):
        if duration >= minutes:
            return PatternResult(_points(config, key), key, {"duration_minutes": duration})
    return PatternResult(0, "below_threshold", {"duration_minutes": duration})


@pattern("age_based")
def age_based(config: dict, context: BonusEvaluationContext) -> PatternResult:
    """``age_0_6`` covers ages 0-5; ``age_6`` covers 6 and over."""
    if context.patient_age is None:
        raise BonusDefinitionError("Patient age required for age_based pattern")
    age = context.patient_age

    ranges = []
    for key in config:
        match = _AGE_KEY.match(key)
        if match:
            upper = int(match.group(2)) if match.group(2) else None
            ranges.append((int(match.group(1)), upper, key))
    for lower, upper, key in sorted(ranges):
        if age >= lower and (upper is None or age < upper):
            return PatternResult(_points(config, key), key, {"patient_age": age})
    return PatternResult(0, "no_match", {"patient_age": age})


@pattern("visit_count")
def visit_count(config: dict, context: BonusEvaluationContext) -> PatternResult:
    count = context.daily_visit_count or 1
    if count == 1:
        key = "visit_1"
    elif count == 2:
        key = "visit_2"
    else:
        key = "visit_3_plus"
    return PatternResult(_points(config, key), key, {"visit_count": count})


@pattern("base_points_percentage")
def base_points_percentage(config: dict, context: BonusEvaluationContext) -> PatternResult:
    """``percent`` of the visit's base points plus a flat ``add``."""
    percent = config.get("percent")
    if isinstance(percent, bool) or not isinstance(percent, (int, float)):
        raise BonusDefinitionError("base_points_percentage needs a numeric percent")
    add = config.get("add", 0) or 0
    if isinstance(add, bool) or not isinstance(add, (int, float)):
        raise BonusDefinitionError("base_points_percentage add must be numeric")
    points = round_points(context.base_points * percent / 100) + round_points(add)
    return PatternResult(
        points,
        f"{percent}%_of_base",
        {"base_points": context.base_points, "percent": percent, "add": add},
    )


@db_pattern("monthly_14day_threshold")
def monthly_14day_threshold(db: Session, config: dict, context: BonusEvaluationContext) -> PatternResult:
    """Higher rate for the first 14 emergency visits of the month, lower afterwards."""
    month_start, month_end = month_bounds(context.visit_date)
    query = db.query(func.count(NursingRecord.record_id)).filter(
        NursingRecord.patient_id == context.patient_id,
        NursingRecord.visit_date >= month_start,
        NursingRecord.visit_date <= month_end,
        NursingRecord.deleted_at.is_(None),
        NursingRecord.emergency_visit_reason.isnot(None),
        NursingRecord.emergency_visit_reason != "",
    )
    if context.nursing_record_id is not None:
        query = query.filter(NursingRecord.record_id != context.nursing_record_id)
    emergency_visits = query.scalar() or 0
    if context.emergency_visit_reason:
        emergency_visits += 1

    up_to_14 = emergency_visits <= EMERGENCY_VISIT_THRESHOLD
    key = "up_to_14" if up_to_14 else "after_14"
    return PatternResult(
        _points(config, key),
        "up_to_14_days" if up_to_14 else "after_14_days",
        {
            "emergency_visit_count": emergency_visits,
            "month_start": month_start.isoformat(),
            "month_end": month_end.isoformat(),
        },
    )


def same_building_occupancy(db: Session, context: BonusEvaluationContext) -> Optional[int]:
    """Visits to the patient's building on the visit date, this visit included."""
    if not context.building_id:
        return None
    query = (
        db.query(func.count(NursingRecord.record_id))
        .join(Patient, NursingRecord.patient_id == Patient.patient_id)
        .filter(
            Patient.building_id == context.building_id,
            NursingRecord.facility_id == context.facility_id,
            NursingRecord.visit_date == context.visit_date,
            NursingRecord.deleted_at.is_(None),
        )
    )
    if context.nursing_record_id is not None:
        query = query.filter(NursingRecord.record_id != context.nursing_record_id)
    return (query.scalar() or 0) + 1


@db_pattern("building_occupancy")
def building_occupancy(db: Session, config: dict, context: BonusEvaluationContext) -> PatternResult:
    occupancy = same_building_occupancy(db, context)
    if occupancy is None:
        logger.debug(f"No building for patient {context.patient_id}, pricing as occupancy 1-2")
        return PatternResult(
            _points(config, "occupancy_1_2"),
            "occupancy_1_2",
            {"occupancy": 1, "building_id": None},
        )
    key = "occupancy_1_2" if occupancy <= LOW_OCCUPANCY_LIMIT else "occupancy_3_plus"
    return PatternResult(_points(config, key), key, {"occupancy": occupancy, "building_id": context.building_id})


def calculate_points(
    definition: BonusDefinition,
    context: BonusEvaluationContext,
    db: Optional[Session] = None,
) -> PatternResult:
    """
    Price one definition for a visit.

    Raises:
        BonusDefinitionError: unknown pattern, missing config or missing input
    """
    if definition.points_type == PointsType.FIXED:
        if definition.fixed_points is None:
            raise BonusDefinitionError("Fixed definition has no fixed_points")
        return PatternResult(round_points(definition.fixed_points), "fixed_points")

    name = definition.conditional_pattern
    config: Any = definition.points_config
    if not name:
        raise BonusDefinitionError("Conditional definition has no pattern")
    if not isinstance(config, dict):
        raise BonusDefinitionError(f"Pattern {name} needs a points_config object")

    if name in DB_PATTERN_EVALUATORS:
        if db is None:
            raise BonusDefinitionError(f"Pattern {name} needs a database session")
        return DB_PATTERN_EVALUATORS[name](db, config, context)
    if name in PATTERN_EVALUATORS:
        return PATTERN_EVALUATORS[name](config, context)
    raise BonusDefinitionError(f"Unknown conditional pattern: {name}")
