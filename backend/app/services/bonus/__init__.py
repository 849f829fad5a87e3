"""
Bonus Engine Module

Catalog resolution and deterministic bonus evaluation for visits.
"""
from app.services.bonus.context import (
    AppliedBonus,
    AssignedNurse,
    BonusDefinitionError,
    BonusEvaluationContext,
    round_points,
)
from app.services.bonus.catalog import (
    BonusDefinitionConflict,
    create_definition,
    deactivate_definition,
    get_applicable_definitions,
    resolve_definitions,
    update_definition,
)
from app.services.bonus.engine import BonusEngine, calculate_bonuses, get_bonus_engine

__all__ = [
    "AppliedBonus",
    "AssignedNurse",
    "BonusDefinitionError",
    "BonusEvaluationContext",
    "round_points",
    "BonusDefinitionConflict",
    "create_definition",
    "deactivate_definition",
    "get_applicable_definitions",
    "resolve_definitions",
    "update_definition",
    "BonusEngine",
    "calculate_bonuses",
    "get_bonus_engine",
]
