"""
Services package
"""
from app.services.bonus import calculate_bonuses
from app.services.points import calculate_bonuses_and_points, save_bonus_calculation_history

__all__ = [
    "calculate_bonuses",
    "calculate_bonuses_and_points",
    "save_bonus_calculation_history",
]
