"""
Visit point calculation
"""
from app.services.points.calculator import (
    PointCalculation,
    RecordDraft,
    billed_insurance_type,
    calculate_bonuses_and_points,
    recalculate_record,
    recalculate_same_day_records,
    resolve_base_service_code,
    save_bonus_calculation_history,
)

__all__ = [
    "PointCalculation",
    "RecordDraft",
    "billed_insurance_type",
    "calculate_bonuses_and_points",
    "recalculate_record",
    "recalculate_same_day_records",
    "resolve_base_service_code",
    "save_bonus_calculation_history",
]
