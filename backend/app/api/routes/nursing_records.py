"""
Nursing record API routes

Every create, update and delete recalculates the visit and the patient's
other visits of the same day.
"""
from datetime import date, datetime
from typing import List, Optional, Dict, Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, field_validator, model_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.db import get_db
from app.db.models import (
    BonusCalculationHistory,
    NursingRecord,
    Patient,
    RecordStatus,
    ServiceCode,
)
from app.core import (
    require_role,
    get_current_facility_id,
    logger,
    RECORDING_ROLES,
    BILLING_ROLES,
)
from app.services.audit import AuditService
from app.services.bonus.context import to_clinic_local
from app.services.points import (
    RecordDraft,
    calculate_bonuses_and_points,
    recalculate_record,
    recalculate_same_day_records,
)
from app.services.points.calculator import calculation_summary

router = APIRouter()

RECORD_FIELDS = (
    "nurse_id",
    "status",
    "visit_date",
    "actual_start_time",
    "actual_end_time",
    "service_code_id",
    "emergency_visit_reason",
    "multiple_visit_reason",
    "long_visit_reason",
    "is_discharge_date",
    "is_first_visit_of_plan",
    "has_collaboration_record",
    "is_terminal_care",
    "specialist_care_type",
    "visit_location_code",
    "staff_qualification_code",
    "notes",
)


def _clinic_naive(v: Optional[datetime]) -> Optional[datetime]:
    if v is None or v.tzinfo is None:
        return v
    return to_clinic_local(v).replace(tzinfo=None)


def _check_status(v: Optional[str]) -> Optional[str]:
    if v is not None:
        valid = [s.value for s in RecordStatus]
        if v not in valid:
            raise ValueError(f"status must be one of: {', '.join(valid)}")
    return v


# Request/Response schemas
class NursingRecordRequest(BaseModel):
    patient_id: UUID
    nurse_id: Optional[UUID] = None
    status: str = RecordStatus.DRAFT.value
    visit_date: date
    actual_start_time: Optional[datetime] = None
    actual_end_time: Optional[datetime] = None
    service_code_id: Optional[UUID] = None
    emergency_visit_reason: Optional[str] = None
    multiple_visit_reason: Optional[str] = None
    long_visit_reason: Optional[str] = None
    is_discharge_date: bool = False
    is_first_visit_of_plan: bool = False
    has_collaboration_record: bool = False
    is_terminal_care: bool = False
    specialist_care_type: Optional[str] = None
    visit_location_code: Optional[str] = None
    staff_qualification_code: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        return _check_status(v)

    @field_validator("actual_start_time", "actual_end_time")
    @classmethod
    def to_clinic_time(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _clinic_naive(v)

    @model_validator(mode="after")
    def validate_times(self) -> "NursingRecordRequest":
        if self.actual_start_time and self.actual_end_time and self.actual_end_time <= self.actual_start_time:
            raise ValueError("actual_end_time must be after actual_start_time")
        return self


class UpdateNursingRecordRequest(BaseModel):
    nurse_id: Optional[UUID] = None
    status: Optional[str] = None
    visit_date: Optional[date] = None
    actual_start_time: Optional[datetime] = None
    actual_end_time: Optional[datetime] = None
    service_code_id: Optional[UUID] = None
    emergency_visit_reason: Optional[str] = None
    multiple_visit_reason: Optional[str] = None
    long_visit_reason: Optional[str] = None
    is_discharge_date: Optional[bool] = None
    is_first_visit_of_plan: Optional[bool] = None
    has_collaboration_record: Optional[bool] = None
    is_terminal_care: Optional[bool] = None
    specialist_care_type: Optional[str] = None
    visit_location_code: Optional[str] = None
    staff_qualification_code: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: Optional[str]) -> Optional[str]:
        return _check_status(v)

    @field_validator("actual_start_time", "actual_end_time")
    @classmethod
    def to_clinic_time(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _clinic_naive(v)


class BonusServiceCodeRequest(BaseModel):
    service_code_id: Optional[UUID] = None


class BonusHistoryResponse(BaseModel):
    bonus_code: str
    bonus_name: str
    calculated_points: int
    applied_version: Optional[str]
    service_code_id: Optional[str]
    is_manually_adjusted: bool
    calculation_details: Optional[Dict[str, Any]]


class NursingRecordResponse(BaseModel):
    record_id: str
    patient_id: str
    nurse_id: Optional[str]
    status: str
    visit_date: str
    actual_start_time: Optional[str]
    actual_end_time: Optional[str]
    service_code_id: Optional[str]
    resolved_service_code_id: Optional[str]
    is_default_service_code: bool
    base_points: int
    daily_visit_count: int
    insurance_type: Optional[str]
    calculated_points: int
    applied_bonuses: List[Dict[str, Any]]
    bonus_history: List[BonusHistoryResponse]


def to_response(db: Session, record: NursingRecord) -> NursingRecordResponse:
    history = (
        db.query(BonusCalculationHistory)
        .filter(BonusCalculationHistory.nursing_record_id == record.record_id)
        .order_by(BonusCalculationHistory.bonus_code)
        .all()
    )
    return NursingRecordResponse(
        record_id=str(record.record_id),
        patient_id=str(record.patient_id),
        nurse_id=str(record.nurse_id) if record.nurse_id else None,
        status=record.status.value,
        visit_date=record.visit_date.isoformat(),
        actual_start_time=record.actual_start_time.isoformat() if record.actual_start_time else None,
        actual_end_time=record.actual_end_time.isoformat() if record.actual_end_time else None,
        service_code_id=str(record.service_code_id) if record.service_code_id else None,
        resolved_service_code_id=(
            str(record.resolved_service_code_id) if record.resolved_service_code_id else None
        ),
        is_default_service_code=record.is_default_service_code,
        base_points=record.base_points,
        daily_visit_count=record.daily_visit_count,
        insurance_type=record.insurance_type.value if record.insurance_type else None,
        calculated_points=record.calculated_points,
        applied_bonuses=record.applied_bonuses or [],
        bonus_history=[
            BonusHistoryResponse(
                bonus_code=h.bonus_code,
                bonus_name=h.bonus_name,
                calculated_points=h.calculated_points,
                applied_version=h.applied_version,
                service_code_id=str(h.service_code_id) if h.service_code_id else None,
                is_manually_adjusted=h.is_manually_adjusted,
                calculation_details=h.calculation_details,
            )
            for h in history
        ],
    )


def _get_patient(db: Session, patient_id: UUID, facility_id: UUID) -> Patient:
    patient = db.get(Patient, patient_id)
    if patient is None or patient.facility_id != facility_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Patient not found")
    return patient


def _get_record(db: Session, record_id: UUID, facility_id: UUID) -> NursingRecord:
    record = db.get(NursingRecord, record_id)
    if record is None or record.facility_id != facility_id or record.is_deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Nursing record not found")
    return record


def _check_service_code(db: Session, service_code_id: Optional[UUID]) -> None:
    if service_code_id is not None and db.get(ServiceCode, service_code_id) is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unknown service_code_id")


def _recalculate_day(db: Session, record: NursingRecord, previous_date: Optional[date] = None) -> None:
    """Recalculate a saved record, then its same-day siblings (and the old day's, if it moved)."""
    db.flush()
    recalculate_record(db, record)
    recalculate_same_day_records(
        db, record.patient_id, record.facility_id, record.visit_date, excluding_record_id=record.record_id
    )
    if previous_date is not None and previous_date != record.visit_date:
        recalculate_same_day_records(db, record.patient_id, record.facility_id, previous_date)


def _server_error(action: str, record_id, e: Exception) -> HTTPException:
    logger.error(f"Nursing record {action} failed for {record_id}: {e}")
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal server error")


@router.post("/", response_model=NursingRecordResponse, status_code=status.HTTP_201_CREATED)
async def create_nursing_record(
    request: NursingRecordRequest,
    payload: dict = Depends(require_role(RECORDING_ROLES)),
    facility_id: UUID = Depends(get_current_facility_id),
    db: Session = Depends(get_db),
):
    """Record a visit and calculate its points."""
    _get_patient(db, request.patient_id, facility_id)
    _check_service_code(db, request.service_code_id)

    values = request.model_dump(exclude={"patient_id"})
    values["status"] = RecordStatus(values["status"])
    if values["nurse_id"] is None:
        values["nurse_id"] = UUID(payload.get("sub"))

    record = NursingRecord(facility_id=facility_id, patient_id=request.patient_id, **values)
    try:
        db.add(record)
        _recalculate_day(db, record)
        AuditService(db).log_record_event(
            "nursing_record.created", "create", record.record_id, payload.get("sub"), facility_id,
            {"visit_date": record.visit_date.isoformat(), "calculated_points": record.calculated_points},
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise _server_error("create", record.record_id, e)

    db.refresh(record)
    return to_response(db, record)


@router.post("/preview")
async def preview_points(
    request: NursingRecordRequest,
    record_id: Optional[UUID] = None,
    payload: dict = Depends(require_role(RECORDING_ROLES)),
    facility_id: UUID = Depends(get_current_facility_id),
    db: Session = Depends(get_db),
):
    """
    Dry-run the point calculation for an unsaved (or edited) visit.

    Pass ``record_id`` when previewing edits so the visit is not counted
    against itself. Nothing is written.
    """
    _get_patient(db, request.patient_id, facility_id)
    _check_service_code(db, request.service_code_id)

    draft = RecordDraft(
        patient_id=request.patient_id,
        visit_date=request.visit_date,
        nurse_id=request.nurse_id or UUID(payload.get("sub")),
        actual_start_time=request.actual_start_time,
        actual_end_time=request.actual_end_time,
        service_code_id=request.service_code_id,
        emergency_visit_reason=request.emergency_visit_reason,
        multiple_visit_reason=request.multiple_visit_reason,
        long_visit_reason=request.long_visit_reason,
        is_discharge_date=request.is_discharge_date,
        is_first_visit_of_plan=request.is_first_visit_of_plan,
        has_collaboration_record=request.has_collaboration_record,
        is_terminal_care=request.is_terminal_care,
        specialist_care_type=request.specialist_care_type,
    )
    if record_id is not None:
        existing = _get_record(db, record_id, facility_id)
        draft.created_at = existing.created_at

    calculation = calculate_bonuses_and_points(db, draft, facility_id, existing_record_id=record_id)
    # Edits are calculated in place; the rollback discards them and releases the advisory lock
    db.rollback()
    return calculation_summary(calculation)


@router.get("/{record_id}", response_model=NursingRecordResponse)
async def get_nursing_record(
    record_id: UUID,
    payload: dict = Depends(require_role(RECORDING_ROLES + BILLING_ROLES)),
    facility_id: UUID = Depends(get_current_facility_id),
    db: Session = Depends(get_db),
):
    """Get a visit with its applied bonuses."""
    return to_response(db, _get_record(db, record_id, facility_id))


@router.put("/{record_id}", response_model=NursingRecordResponse)
async def update_nursing_record(
    record_id: UUID,
    request: UpdateNursingRecordRequest,
    payload: dict = Depends(require_role(RECORDING_ROLES)),
    facility_id: UUID = Depends(get_current_facility_id),
    db: Session = Depends(get_db),
):
    """Update a visit and recalculate it and its same-day siblings."""
    record = _get_record(db, record_id, facility_id)
    changes = request.model_dump(exclude_unset=True)
    _check_service_code(db, changes.get("service_code_id"))

    if "status" in changes:
        if changes["status"] is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="status cannot be null")
        changes["status"] = RecordStatus(changes["status"])
    if "visit_date" in changes and changes["visit_date"] is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="visit_date cannot be null")

    start = changes.get("actual_start_time", record.actual_start_time)
    end = changes.get("actual_end_time", record.actual_end_time)
    if start and end and end <= start:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="actual_end_time must be after actual_start_time",
        )

    previous_date = record.visit_date
    for field_name, value in changes.items():
        if field_name in RECORD_FIELDS:
            setattr(record, field_name, value)

    try:
        _recalculate_day(db, record, previous_date)
        AuditService(db).log_record_event(
            "nursing_record.updated", "update", record.record_id, payload.get("sub"), facility_id,
            {"fields": sorted(changes), "calculated_points": record.calculated_points},
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise _server_error("update", record_id, e)

    db.refresh(record)
    return to_response(db, record)


@router.delete("/{record_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_nursing_record(
    record_id: UUID,
    payload: dict = Depends(require_role(RECORDING_ROLES)),
    facility_id: UUID = Depends(get_current_facility_id),
    db: Session = Depends(get_db),
):
    """Soft delete a visit; the rest of the day is recalculated without it."""
    record = _get_record(db, record_id, facility_id)
    record.deleted_at = datetime.utcnow()

    try:
        db.flush()
        recalculate_same_day_records(db, record.patient_id, facility_id, record.visit_date)
        AuditService(db).log_record_event(
            "nursing_record.deleted", "delete", record.record_id, payload.get("sub"), facility_id,
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise _server_error("delete", record_id, e)


@router.patch("/{record_id}/bonuses/{bonus_code}/service-code", response_model=BonusHistoryResponse)
async def set_bonus_service_code(
    record_id: UUID,
    bonus_code: str,
    request: BonusServiceCodeRequest,
    payload: dict = Depends(require_role(BILLING_ROLES)),
    facility_id: UUID = Depends(get_current_facility_id),
    db: Session = Depends(get_db),
):
    """Choose the receipt service code of an applied bonus by hand; kept across recalculations."""
    _get_record(db, record_id, facility_id)
    _check_service_code(db, request.service_code_id)

    row = (
        db.query(BonusCalculationHistory)
        .filter(
            BonusCalculationHistory.nursing_record_id == record_id,
            BonusCalculationHistory.bonus_code == bonus_code,
        )
        .first()
    )
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Bonus not applied to this record")

    row.service_code_id = request.service_code_id
    row.is_manually_adjusted = True
    AuditService(db).log_record_event(
        "nursing_record.updated", "set_bonus_service_code", record_id, payload.get("sub"), facility_id,
        {"bonus_code": bonus_code, "service_code_id": str(request.service_code_id) if request.service_code_id else None},
    )
    db.commit()
    db.refresh(row)

    return BonusHistoryResponse(
        bonus_code=row.bonus_code,
        bonus_name=row.bonus_name,
        calculated_points=row.calculated_points,
        applied_version=row.applied_version,
        service_code_id=str(row.service_code_id) if row.service_code_id else None,
        is_manually_adjusted=row.is_manually_adjusted,
        calculation_details=row.calculation_details,
    )
