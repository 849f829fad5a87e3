"""
Service code lookups for base fees and bonus receipt lines
"""
import uuid
from datetime import date
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.db.models import InsuranceType, ServiceCode
from app.services.bonus.context import AppliedBonus, BonusEvaluationContext
from app.services.bonus.patterns import LOW_OCCUPANCY_LIMIT, same_building_occupancy

# Bonus code -> receipt service code, where the code follows from the visit alone
FIXED_BONUS_SERVICE_CODES = {
    "medical_night_early_morning": "510003970",
    "medical_late_night": "510004070",
    "discharge_support_guidance_basic": "550001170",
    "discharge_support_guidance_long": "550001270",
    "24h_response_system_basic": "550000670",
    "24h_response_system_enhanced": "550002170",
}
EMERGENCY_VISIT_SERVICE_CODES = {"up_to_14": "510002470", "after_14": "510004570"}
# (low occupancy, three or more in the building)
MULTIPLE_VISIT_SERVICE_CODES = {
    "medical_multiple_visit_2times_1-2": ("510001970", "510002070"),
    "medical_multiple_visit_3times": ("510002170", "510002270"),
}
LONG_DISCHARGE_GUIDANCE_MINUTES = 90


def find_service_code(
    db: Session,
    code: str,
    on: date,
    insurance_type: Optional[InsuranceType] = None,
) -> Optional[ServiceCode]:
    """The version of ``code`` valid on ``on``; the newest wins if windows were entered overlapping."""
    query = db.query(ServiceCode).filter(
        ServiceCode.service_code == code,
        ServiceCode.is_active.is_(True),
        ServiceCode.valid_from <= on,
        or_(ServiceCode.valid_to.is_(None), ServiceCode.valid_to >= on),
    )
    if insurance_type is not None:
        query = query.filter(ServiceCode.insurance_type == insurance_type)
    return query.order_by(ServiceCode.valid_from.desc()).first()


def _emergency_code(bonus: AppliedBonus, context: BonusEvaluationContext) -> str:
    matched = (bonus.calculation_details or {}).get("matched_condition")
    if matched == "after_14_days":
        return EMERGENCY_VISIT_SERVICE_CODES["after_14"]
    if matched == "up_to_14_days":
        return EMERGENCY_VISIT_SERVICE_CODES["up_to_14"]
    key = "up_to_14" if context.visit_date.day <= 14 else "after_14"
    return EMERGENCY_VISIT_SERVICE_CODES[key]


def select_service_code_for_bonus(
    db: Session,
    bonus: AppliedBonus,
    context: BonusEvaluationContext,
) -> Optional[uuid.UUID]:
    """
    Choose the receipt service code for an applied bonus.

    Returns None when the code cannot be derived from the visit; the
    clerk then picks it by hand.
    """
    code = bonus.bonus_code
    if code == "medical_emergency_visit":
        service_code = _emergency_code(bonus, context)
    elif code in MULTIPLE_VISIT_SERVICE_CODES:
        occupancy = same_building_occupancy(db, context)
        low, high = MULTIPLE_VISIT_SERVICE_CODES[code]
        service_code = low if occupancy is None or occupancy <= LOW_OCCUPANCY_LIMIT else high
    elif code == "discharge_support_guidance_long":
        duration = context.duration_minutes
        if duration is None or duration <= LONG_DISCHARGE_GUIDANCE_MINUTES:
            return None
        service_code = FIXED_BONUS_SERVICE_CODES[code]
    elif code in FIXED_BONUS_SERVICE_CODES:
        service_code = FIXED_BONUS_SERVICE_CODES[code]
    else:
        return None

    found = find_service_code(db, service_code, context.visit_date, context.insurance_type)
    return found.service_code_id if found else None
