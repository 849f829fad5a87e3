"""
Bonus catalog API routes
"""
from datetime import date
from typing import List, Optional, Dict, Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, field_validator, model_validator
from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.db import get_db
from app.db.models import BonusDefinition, InsuranceType, PointsType
from app.core import require_role, get_current_facility_id, logger, MANAGEMENT_ROLES
from app.services.audit import AuditService
from app.services.bonus import (
    BonusDefinitionConflict,
    create_definition,
    deactivate_definition,
    update_definition,
)
from app.services.bonus.patterns import known_point_patterns

router = APIRouter()


def _check_insurance_type(v: Optional[str]) -> Optional[str]:
    if v is not None:
        valid = [t.value for t in InsuranceType]
        if v not in valid:
            raise ValueError(f"insurance_type must be one of: {', '.join(valid)}")
    return v


def _check_points_type(v: Optional[str]) -> Optional[str]:
    if v is not None:
        valid = [t.value for t in PointsType]
        if v not in valid:
            raise ValueError(f"points_type must be one of: {', '.join(valid)}")
    return v


# Request/Response schemas
class BonusDefinitionRequest(BaseModel):
    bonus_code: str
    bonus_name: str
    bonus_category: Optional[str] = None
    insurance_type: str
    points_type: str = PointsType.FIXED.value
    fixed_points: Optional[int] = None
    conditional_pattern: Optional[str] = None
    points_config: Optional[Dict[str, Any]] = None
    predefined_conditions: List[Dict[str, Any]] = []
    can_combine_with: List[str] = []
    cannot_combine_with: List[str] = []
    version: str = "1"
    valid_from: date
    valid_to: Optional[date] = None
    requirements_description: Optional[str] = None
    display_order: Optional[int] = None
    is_global: bool = False

    @field_validator("bonus_code")
    @classmethod
    def validate_bonus_code(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("bonus_code cannot be empty")
        return v

    @field_validator("insurance_type")
    @classmethod
    def validate_insurance_type(cls, v: str) -> str:
        return _check_insurance_type(v)

    @field_validator("points_type")
    @classmethod
    def validate_points_type(cls, v: str) -> str:
        return _check_points_type(v)

    @model_validator(mode="after")
    def validate_points(self) -> "BonusDefinitionRequest":
        if self.points_type == PointsType.FIXED.value and self.fixed_points is None:
            raise ValueError("fixed_points is required for fixed bonuses")
        if self.points_type == PointsType.CONDITIONAL.value:
            if self.conditional_pattern not in known_point_patterns():
                raise ValueError(
                    f"conditional_pattern must be one of: {', '.join(sorted(known_point_patterns()))}"
                )
            if not self.points_config:
                raise ValueError("points_config is required for conditional bonuses")
        if self.valid_to is not None and self.valid_to < self.valid_from:
            raise ValueError("valid_to must not be before valid_from")
        return self


class UpdateBonusDefinitionRequest(BaseModel):
    bonus_name: Optional[str] = None
    bonus_category: Optional[str] = None
    insurance_type: Optional[str] = None
    points_type: Optional[str] = None
    fixed_points: Optional[int] = None
    conditional_pattern: Optional[str] = None
    points_config: Optional[Dict[str, Any]] = None
    predefined_conditions: Optional[List[Dict[str, Any]]] = None
    can_combine_with: Optional[List[str]] = None
    cannot_combine_with: Optional[List[str]] = None
    version: Optional[str] = None
    valid_from: Optional[date] = None
    valid_to: Optional[date] = None
    requirements_description: Optional[str] = None
    display_order: Optional[int] = None

    @field_validator("insurance_type")
    @classmethod
    def validate_insurance_type(cls, v: Optional[str]) -> Optional[str]:
        return _check_insurance_type(v)

    @field_validator("points_type")
    @classmethod
    def validate_points_type(cls, v: Optional[str]) -> Optional[str]:
        return _check_points_type(v)

    @field_validator("conditional_pattern")
    @classmethod
    def validate_conditional_pattern(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in known_point_patterns():
            raise ValueError(f"Unknown conditional_pattern: {v}")
        return v


class BonusDefinitionResponse(BaseModel):
    definition_id: str
    facility_id: Optional[str]
    is_global: bool
    bonus_code: str
    bonus_name: str
    bonus_category: Optional[str]
    insurance_type: str
    points_type: str
    fixed_points: Optional[int]
    conditional_pattern: Optional[str]
    points_config: Optional[Dict[str, Any]]
    predefined_conditions: List[Dict[str, Any]]
    can_combine_with: List[str]
    cannot_combine_with: List[str]
    version: str
    valid_from: str
    valid_to: Optional[str]
    requirements_description: Optional[str]
    display_order: Optional[int]
    is_active: bool


def to_response(d: BonusDefinition) -> BonusDefinitionResponse:
    return BonusDefinitionResponse(
        definition_id=str(d.definition_id),
        facility_id=str(d.facility_id) if d.facility_id else None,
        is_global=d.is_global,
        bonus_code=d.bonus_code,
        bonus_name=d.bonus_name,
        bonus_category=d.bonus_category,
        insurance_type=d.insurance_type.value,
        points_type=d.points_type.value,
        fixed_points=d.fixed_points,
        conditional_pattern=d.conditional_pattern,
        points_config=d.points_config,
        predefined_conditions=d.predefined_conditions or [],
        can_combine_with=d.can_combine_with or [],
        cannot_combine_with=d.cannot_combine_with or [],
        version=d.version,
        valid_from=d.valid_from.isoformat(),
        valid_to=d.valid_to.isoformat() if d.valid_to else None,
        requirements_description=d.requirements_description,
        display_order=d.display_order,
        is_active=d.is_active,
    )


def _conflict(e: BonusDefinitionConflict) -> HTTPException:
    logger.info(f"Bonus definition rejected: {e.message}")
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail={
            "code": "definition_overlap",
            "reason": e.message,
            "conflicting_id": str(e.conflicting_id) if e.conflicting_id else None,
        },
    )


def _get_editable(db: Session, definition_id: UUID, facility_id: UUID, role: str) -> BonusDefinition:
    definition = db.get(BonusDefinition, definition_id)
    if definition is None or (definition.facility_id is not None and definition.facility_id != facility_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Bonus definition not found")
    if definition.is_global and role != "admin":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only admins can change global bonus definitions",
        )
    return definition


@router.get("/", response_model=List[BonusDefinitionResponse])
async def list_bonus_definitions(
    insurance_type: Optional[str] = None,
    include_inactive: bool = False,
    payload: dict = Depends(require_role(MANAGEMENT_ROLES)),
    facility_id: UUID = Depends(get_current_facility_id),
    db: Session = Depends(get_db),
):
    """Global and facility bonus definitions visible to the caller."""
    query = db.query(BonusDefinition).filter(
        or_(BonusDefinition.facility_id == facility_id, BonusDefinition.facility_id.is_(None))
    )
    if insurance_type:
        try:
            query = query.filter(BonusDefinition.insurance_type == InsuranceType(insurance_type))
        except ValueError:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid insurance_type")
    if not include_inactive:
        query = query.filter(BonusDefinition.is_active.is_(True))

    definitions = query.all()
    definitions.sort(key=lambda d: (
        d.display_order if d.display_order is not None else 999,
        d.bonus_code,
        d.facility_id is None,
        d.valid_from,
    ))
    return [to_response(d) for d in definitions]


@router.post("/", response_model=BonusDefinitionResponse, status_code=status.HTTP_201_CREATED)
async def create_bonus_definition(
    request: BonusDefinitionRequest,
    payload: dict = Depends(require_role(MANAGEMENT_ROLES)),
    facility_id: UUID = Depends(get_current_facility_id),
    db: Session = Depends(get_db),
):
    """Create a facility (or, for admins, global) bonus definition."""
    if request.is_global and payload.get("role") != "admin":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only admins can create global bonus definitions",
        )

    values = request.model_dump(exclude={"is_global"})
    values["insurance_type"] = InsuranceType(values["insurance_type"])
    values["points_type"] = PointsType(values["points_type"])
    scope = None if request.is_global else facility_id

    try:
        definition = create_definition(db, scope, values)
    except BonusDefinitionConflict as e:
        db.rollback()
        raise _conflict(e)

    AuditService(db).log_catalog_event(
        "bonus_definition.created", "create", definition.definition_id, payload.get("sub"), scope,
        {"bonus_code": definition.bonus_code, "valid_from": definition.valid_from.isoformat()},
    )
    db.commit()
    db.refresh(definition)
    return to_response(definition)


@router.put("/{definition_id}", response_model=BonusDefinitionResponse)
async def update_bonus_definition(
    definition_id: UUID,
    request: UpdateBonusDefinitionRequest,
    payload: dict = Depends(require_role(MANAGEMENT_ROLES)),
    facility_id: UUID = Depends(get_current_facility_id),
    db: Session = Depends(get_db),
):
    """Edit a bonus definition; the overlap rule is re-checked."""
    definition = _get_editable(db, definition_id, facility_id, payload.get("role"))

    changes = request.model_dump(exclude_unset=True)
    if "insurance_type" in changes and changes["insurance_type"] is not None:
        changes["insurance_type"] = InsuranceType(changes["insurance_type"])
    if "points_type" in changes and changes["points_type"] is not None:
        changes["points_type"] = PointsType(changes["points_type"])

    try:
        definition = update_definition(db, definition, changes)
    except BonusDefinitionConflict as e:
        db.rollback()
        raise _conflict(e)
    except ValueError as e:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    AuditService(db).log_catalog_event(
        "bonus_definition.updated", "update", definition.definition_id, payload.get("sub"),
        definition.facility_id, {"fields": sorted(changes)},
    )
    db.commit()
    db.refresh(definition)
    return to_response(definition)


@router.delete("/{definition_id}", response_model=BonusDefinitionResponse)
async def delete_bonus_definition(
    definition_id: UUID,
    payload: dict = Depends(require_role(MANAGEMENT_ROLES)),
    facility_id: UUID = Depends(get_current_facility_id),
    db: Session = Depends(get_db),
):
    """Soft delete a bonus definition."""
    definition = _get_editable(db, definition_id, facility_id, payload.get("role"))
    definition = deactivate_definition(db, definition)

    AuditService(db).log_catalog_event(
        "bonus_definition.deactivated", "deactivate", definition.definition_id, payload.get("sub"),
        definition.facility_id, {"bonus_code": definition.bonus_code},
    )
    db.commit()
    db.refresh(definition)
    return to_response(definition)
