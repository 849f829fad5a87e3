"""
Bonus rule catalog

Definitions come in two tiers: global defaults (``facility_id`` NULL) and
facility-scoped entries. For a given visit date a facility entry replaces the
global entry with the same code, never adds to it.
"""
import uuid
from datetime import date
from typing import Any, Iterable, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.core.logging import get_logger
from app.db.models import BonusDefinition, InsuranceType

logger = get_logger(__name__)

DEFAULT_DISPLAY_ORDER = 999

# Fields a catalog maintainer may change on an existing definition
EDITABLE_FIELDS = (
    "bonus_name",
    "bonus_category",
    "insurance_type",
    "points_type",
    "fixed_points",
    "conditional_pattern",
    "points_config",
    "predefined_conditions",
    "can_combine_with",
    "cannot_combine_with",
    "version",
    "valid_from",
    "valid_to",
    "requirements_description",
    "display_order",
)


class BonusDefinitionConflict(Exception):
    """An active definition of the same code and scope already covers part of the window."""

    def __init__(self, message: str, conflicting_id: Optional[uuid.UUID] = None):
        self.message = message
        self.conflicting_id = conflicting_id
        super().__init__(message)


def _evaluation_order(definition: BonusDefinition) -> tuple[int, str]:
    order = definition.display_order if definition.display_order is not None else DEFAULT_DISPLAY_ORDER
    return order, definition.bonus_code


def resolve_definitions(
    definitions: Iterable[BonusDefinition],
    facility_id: uuid.UUID,
) -> list[BonusDefinition]:
    """
    Pick exactly one definition per bonus code.

    A definition scoped to ``facility_id`` wins over the global one; if a tier
    holds more than one candidate the latest ``valid_from`` wins. Definitions
    scoped to other facilities are ignored. Result is in evaluation order.
    """
    chosen: dict[str, BonusDefinition] = {}
    for definition in definitions:
        if definition.facility_id is not None and definition.facility_id != facility_id:
            continue
        current = chosen.get(definition.bonus_code)
        if current is None:
            chosen[definition.bonus_code] = definition
            continue
        current_is_facility = current.facility_id is not None
        candidate_is_facility = definition.facility_id is not None
        if candidate_is_facility and not current_is_facility:
            chosen[definition.bonus_code] = definition
        elif candidate_is_facility == current_is_facility and definition.valid_from > current.valid_from:
            chosen[definition.bonus_code] = definition
    return sorted(chosen.values(), key=_evaluation_order)


def get_applicable_definitions(
    db: Session,
    facility_id: uuid.UUID,
    visit_date: date,
    insurance_type: InsuranceType,
) -> list[BonusDefinition]:
    """Active definitions for the visit date and insurance type, resolved across both tiers."""
    candidates = (
        db.query(BonusDefinition)
        .filter(
            BonusDefinition.is_active.is_(True),
            BonusDefinition.insurance_type == insurance_type,
            BonusDefinition.valid_from <= visit_date,
            or_(BonusDefinition.valid_to.is_(None), BonusDefinition.valid_to >= visit_date),
            or_(BonusDefinition.facility_id == facility_id, BonusDefinition.facility_id.is_(None)),
        )
        .all()
    )
    return resolve_definitions(candidates, facility_id)


def windows_overlap(
    start_a: date, end_a: Optional[date], start_b: date, end_b: Optional[date]
) -> bool:
    """Closed intervals; a missing end is open-ended."""
    a_before_b = end_a is not None and end_a < start_b
    b_before_a = end_b is not None and end_b < start_a
    return not (a_before_b or b_before_a)


def find_overlapping_definition(
    db: Session,
    bonus_code: str,
    facility_id: Optional[uuid.UUID],
    valid_from: date,
    valid_to: Optional[date],
    exclude_id: Optional[uuid.UUID] = None,
) -> Optional[BonusDefinition]:
    """First active definition of the same code and scope whose window overlaps."""
    query = db.query(BonusDefinition).filter(
        BonusDefinition.bonus_code == bonus_code,
        BonusDefinition.is_active.is_(True),
    )
    if facility_id is None:
        query = query.filter(BonusDefinition.facility_id.is_(None))
    else:
        query = query.filter(BonusDefinition.facility_id == facility_id)
    if exclude_id is not None:
        query = query.filter(BonusDefinition.definition_id != exclude_id)

    for existing in query.order_by(BonusDefinition.valid_from).all():
        if windows_overlap(existing.valid_from, existing.valid_to, valid_from, valid_to):
            return existing
    return None


def _ensure_no_overlap(
    db: Session,
    bonus_code: str,
    facility_id: Optional[uuid.UUID],
    valid_from: date,
    valid_to: Optional[date],
    exclude_id: Optional[uuid.UUID] = None,
) -> None:
    if valid_to is not None and valid_to < valid_from:
        raise ValueError("valid_to must not be before valid_from")
    existing = find_overlapping_definition(db, bonus_code, facility_id, valid_from, valid_to, exclude_id)
    if existing is not None:
        until = existing.valid_to.isoformat() if existing.valid_to else "open-ended"
        raise BonusDefinitionConflict(
            f"Bonus '{bonus_code}' already has an active definition for "
            f"{existing.valid_from.isoformat()}..{until} in this scope",
            conflicting_id=existing.definition_id,
        )


def create_definition(
    db: Session,
    facility_id: Optional[uuid.UUID],
    values: dict[str, Any],
) -> BonusDefinition:
    """
    Insert a catalog entry.

    Raises:
        BonusDefinitionConflict: overlapping active window for the same code/scope
    """
    _ensure_no_overlap(
        db,
        values["bonus_code"],
        facility_id,
        values["valid_from"],
        values.get("valid_to"),
    )
    definition = BonusDefinition(facility_id=facility_id, **values)
    db.add(definition)
    db.flush()
    logger.info(
        f"Bonus definition created: {definition.bonus_code} "
        f"[{'global' if facility_id is None else facility_id}] {definition.definition_id}"
    )
    return definition


def update_definition(
    db: Session,
    definition: BonusDefinition,
    changes: dict[str, Any],
) -> BonusDefinition:
    """
    Apply edits to a catalog entry, re-checking the overlap invariant.

    Raises:
        BonusDefinitionConflict: the edited window overlaps another active entry
    """
    unknown = set(changes) - set(EDITABLE_FIELDS)
    if unknown:
        raise ValueError(f"Fields cannot be edited: {', '.join(sorted(unknown))}")

    valid_from = changes.get("valid_from", definition.valid_from)
    valid_to = changes["valid_to"] if "valid_to" in changes else definition.valid_to
    if definition.is_active:
        _ensure_no_overlap(
            db,
            definition.bonus_code,
            definition.facility_id,
            valid_from,
            valid_to,
            exclude_id=definition.definition_id,
        )

    for field_name, value in changes.items():
        setattr(definition, field_name, value)
    db.flush()
    return definition


def deactivate_definition(db: Session, definition: BonusDefinition) -> BonusDefinition:
    """Soft delete; issued receipts keep pointing at the row."""
    definition.is_active = False
    db.flush()
    logger.info(f"Bonus definition deactivated: {definition.bonus_code} {definition.definition_id}")
    return definition
