"""
Evaluation context and result types for the bonus engine
"""
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Optional
from zoneinfo import ZoneInfo

from app.core.config import settings
from app.db.models import InsuranceType


class BonusDefinitionError(ValueError):
    """A catalog entry cannot be evaluated (unknown pattern, bad config, missing input)."""


def round_points(value: Any) -> int:
    """Round to whole points, half up."""
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_clinic_local(moment: datetime) -> datetime:
    """Convert an aware datetime to the clinic timezone; naive values are already local."""
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(ZoneInfo(settings.CLINIC_TIMEZONE))


@dataclass
class AssignedNurse:
    user_id: uuid.UUID
    full_name: str
    specialist_certifications: list[str] = field(default_factory=list)


@dataclass
class BonusEvaluationContext:
    """
    Everything the engine needs to evaluate one visit.

    Rebuilt from current data on every calculation and never persisted.
    ``nursing_record_id`` is None for dry-runs of unsaved records.
    """
    patient_id: uuid.UUID
    facility_id: uuid.UUID
    visit_date: date
    insurance_type: InsuranceType
    nursing_record_id: Optional[uuid.UUID] = None
    visit_start_time: Optional[datetime] = None
    visit_end_time: Optional[datetime] = None

    # Patient
    patient_age: Optional[int] = None
    building_id: Optional[str] = None
    care_level: Optional[str] = None
    last_discharge_date: Optional[date] = None
    last_plan_created_date: Optional[date] = None
    death_date: Optional[date] = None
    death_place_code: Optional[str] = None
    special_management_types: list[str] = field(default_factory=list)

    # Same-day ordinal and resolved base fee
    daily_visit_count: int = 1
    base_points: int = 0

    # Facility capability flags
    has_24h_support_system: bool = False
    has_24h_support_system_enhanced: bool = False
    has_emergency_support_system: bool = False
    has_emergency_support_system_enhanced: bool = False
    burden_reduction_measures: list[str] = field(default_factory=list)

    # Record flags
    emergency_visit_reason: Optional[str] = None
    multiple_visit_reason: Optional[str] = None
    long_visit_reason: Optional[str] = None
    is_discharge_date: bool = False
    is_first_visit_of_plan: bool = False
    has_collaboration_record: bool = False
    is_terminal_care: bool = False
    specialist_care_type: Optional[str] = None

    assigned_nurse: Optional[AssignedNurse] = None

    @property
    def is_second_visit(self) -> bool:
        return self.daily_visit_count >= 2

    @property
    def duration_minutes(self) -> Optional[int]:
        if self.visit_start_time is None or self.visit_end_time is None:
            return None
        delta = to_clinic_local(self.visit_end_time) - to_clinic_local(self.visit_start_time)
        return int(delta.total_seconds() // 60)

    @property
    def local_start_time(self) -> Optional[datetime]:
        if self.visit_start_time is None:
            return None
        return to_clinic_local(self.visit_start_time)


@dataclass
class ConditionResult:
    passed: bool
    reason: str
    metadata: dict = field(default_factory=dict)


@dataclass
class PatternResult:
    points: int
    matched_condition: str
    metadata: dict = field(default_factory=dict)


@dataclass
class AppliedBonus:
    """A bonus that applied to a visit, with the reasons it matched."""
    bonus_code: str
    bonus_name: str
    definition_id: uuid.UUID
    calculated_points: int
    applied_version: Optional[str]
    conditions_passed: list[str]
    calculation_details: dict

    def to_dict(self) -> dict[str, Any]:
        return {
            "bonus_code": self.bonus_code,
            "bonus_name": self.bonus_name,
            "definition_id": str(self.definition_id),
            "calculated_points": self.calculated_points,
            "applied_version": self.applied_version,
            "conditions_passed": list(self.conditions_passed),
            "calculation_details": self.calculation_details,
        }
