"""
Bonus Evaluation Engine

Evaluates every applicable catalog entry against one visit and returns the
bonuses that apply, with points and the reasons they matched.

- Candidates come from the two-tier catalog (facility entries shadow global)
- Evaluation follows display_order; different codes are additive
- Combination rules are checked against codes applied earlier in the pass
- Bonuses that depend on other bonuses of the same visit run in a second phase
- A malformed catalog entry is logged and skipped, never raised
"""
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy.orm import Session
from sqlalchemy import or_

from app.core.logging import get_logger
from app.db.models import BonusDefinition, InsuranceType, SpecialManagementDefinition
from app.services.bonus.catalog import get_applicable_definitions
from app.services.bonus.conditions import evaluate_condition
from app.services.bonus.context import (
    AppliedBonus,
    BonusDefinitionError,
    BonusEvaluationContext,
)
from app.services.bonus.patterns import calculate_points

logger = get_logger(__name__)

# Evaluated after every other bonus of the visit
PHASE_TWO_CODES = frozenset({"discharge_special_management_guidance"})

SPECIAL_MANAGEMENT_1 = "special_management_1"
SPECIAL_MANAGEMENT_2 = "special_management_2"
SPECIAL_MANAGEMENT_CODES = frozenset({SPECIAL_MANAGEMENT_1, SPECIAL_MANAGEMENT_2})

# Special management definition tier that selects special management I
TIER_ONE_MARKERS = {
    InsuranceType.MEDICAL: "medical_5000",
    InsuranceType.CARE: "care_500",
}

# Errors raised by a bad catalog entry; anything else is a real failure
DEFINITION_ERRORS = (BonusDefinitionError, KeyError, TypeError, ValueError)


def check_combination(definition: BonusDefinition, applied_codes: Iterable[str]) -> tuple[bool, str]:
    """Returns (allowed, reason)."""
    applied = list(applied_codes)
    allowed_with = definition.can_combine_with or []
    if allowed_with:
        blocking = [code for code in applied if code not in allowed_with]
        if blocking:
            return False, f"{definition.bonus_code} can only be combined with: {', '.join(allowed_with)}"

    forbidden = definition.cannot_combine_with or []
    if forbidden:
        conflicting = [code for code in applied if code in forbidden]
        if conflicting:
            return False, f"{definition.bonus_code} cannot be combined with: {', '.join(conflicting)}"

    return True, ""


def resolve_special_management_code(db: Session, context: BonusEvaluationContext) -> Optional[str]:
    """
    Which special management tier the patient bills, if any.

    Categories without a definition bill tier II.
    """
    categories = context.special_management_types or []
    if not categories:
        return None

    definitions = (
        db.query(SpecialManagementDefinition)
        .filter(
            SpecialManagementDefinition.category.in_(categories),
            SpecialManagementDefinition.is_active.is_(True),
            or_(
                SpecialManagementDefinition.facility_id == context.facility_id,
                SpecialManagementDefinition.facility_id.is_(None),
            ),
        )
        .all()
    )
    if not definitions:
        return SPECIAL_MANAGEMENT_2

    marker = TIER_ONE_MARKERS.get(context.insurance_type)
    if marker and any(d.insurance_type == marker for d in definitions):
        return SPECIAL_MANAGEMENT_1
    return SPECIAL_MANAGEMENT_2


class BonusEngine:
    """
    Deterministic bonus evaluation.

    Holds no catalog state; every call re-reads the catalog for the visit date.
    """

    RULE_VERSION = "v1.0"

    def evaluate(self, db: Session, context: BonusEvaluationContext) -> list[AppliedBonus]:
        """
        Evaluate one visit.

        Args:
            db: Database session (catalog and sibling-visit lookups)
            context: Visit context built by the point calculator

        Returns:
            Applied bonuses in evaluation order
        """
        self._check_context(context)

        definitions = get_applicable_definitions(
            db, context.facility_id, context.visit_date, context.insurance_type
        )
        special_management_code = resolve_special_management_code(db, context)

        phase_one = [d for d in definitions if d.bonus_code not in PHASE_TWO_CODES]
        phase_two = [d for d in definitions if d.bonus_code in PHASE_TWO_CODES]

        applied: list[AppliedBonus] = []
        applied_codes: list[str] = []

        for phase in (phase_one, phase_two):
            for definition in phase:
                if (
                    definition.bonus_code in SPECIAL_MANAGEMENT_CODES
                    and definition.bonus_code != special_management_code
                ):
                    continue

                allowed, reason = check_combination(definition, applied_codes)
                if not allowed:
                    logger.debug(f"Skipping {definition.bonus_code}: {reason}")
                    continue

                try:
                    result = self._evaluate_definition(db, definition, context, applied_codes)
                except DEFINITION_ERRORS as e:
                    logger.warning(
                        f"Skipping malformed bonus definition {definition.bonus_code} "
                        f"({definition.definition_id}) for record {context.nursing_record_id}: {e}"
                    )
                    continue

                if result is not None:
                    applied.append(result)
                    applied_codes.append(result.bonus_code)

        return applied

    def _evaluate_definition(
        self,
        db: Session,
        definition: BonusDefinition,
        context: BonusEvaluationContext,
        applied_codes: list[str],
    ) -> Optional[AppliedBonus]:
        conditions = definition.predefined_conditions or []
        if isinstance(conditions, dict):
            conditions = [conditions]
        if not isinstance(conditions, list):
            raise BonusDefinitionError("predefined_conditions must be a list")

        passed: list[str] = []
        for spec in conditions:
            outcome = evaluate_condition(
                spec,
                context,
                db=db,
                bonus_code=definition.bonus_code,
                applied_codes=applied_codes,
            )
            if not outcome.passed:
                return None
            passed.append(outcome.reason)

        priced = calculate_points(definition, context, db)
        if priced.points <= 0:
            return None

        points_type = definition.points_type.value if definition.points_type else None
        return AppliedBonus(
            bonus_code=definition.bonus_code,
            bonus_name=definition.bonus_name,
            definition_id=definition.definition_id,
            calculated_points=priced.points,
            applied_version=definition.version,
            conditions_passed=passed,
            calculation_details={
                "bonus_code": definition.bonus_code,
                "bonus_name": definition.bonus_name,
                "points_type": points_type,
                "conditional_pattern": definition.conditional_pattern,
                "matched_condition": priced.matched_condition,
                "points": priced.points,
                "conditions_passed": passed,
                "pattern_metadata": priced.metadata,
                "rule_version": self.RULE_VERSION,
                "evaluated_at": datetime.utcnow().isoformat(),
            },
        )

    @staticmethod
    def _check_context(context: BonusEvaluationContext) -> None:
        if context.facility_id is None:
            raise ValueError("Bonus evaluation needs a facility id")
        if context.insurance_type is None:
            raise ValueError("Bonus evaluation needs a resolved insurance type")
        if context.visit_date is None:
            raise ValueError("Bonus evaluation needs a visit date")


# Singleton instance
_bonus_engine: Optional[BonusEngine] = None


def get_bonus_engine() -> BonusEngine:
    """Get or create the bonus engine singleton."""
    global _bonus_engine
    if _bonus_engine is None:
        _bonus_engine = BonusEngine()
    return _bonus_engine


def calculate_bonuses(db: Session, context: BonusEvaluationContext) -> list[AppliedBonus]:
    """Evaluate the catalog for one visit."""
    return get_bonus_engine().evaluate(db, context)
