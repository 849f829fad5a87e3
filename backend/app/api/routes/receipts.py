"""
Monthly receipt API routes
"""
from typing import List, Optional, Dict, Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.orm import Session

from app.db import get_db
from app.db.models import InsuranceType, MonthlyReceipt, ReceiptState
from app.core import (
    require_role,
    get_current_facility_id,
    logger,
    BILLING_ROLES,
    MANAGEMENT_ROLES,
)
from app.services.db_utils import DatabaseOperationError
from app.services.receipts import (
    TransitionResult,
    build_receipt_summary_csv,
    delete_receipt,
    finalize_receipt,
    generate_receipts_for_month,
    mark_receipt_sent,
    prepare_receipt_export,
    recalculate_receipt,
    reopen_receipt,
    validate_csv_export,
    validate_receipt_by_id,
)
from app.services.receipts.csv_validation import apply_csv_validation

router = APIRouter()


def _parse_insurance_type(value: Optional[str]) -> Optional[InsuranceType]:
    if value is None:
        return None
    try:
        return InsuranceType(value)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid insurance_type")


# Request/Response schemas
class GenerateReceiptsRequest(BaseModel):
    year: int = Field(ge=2000, le=2100)
    month: int = Field(ge=1, le=12)
    insurance_type: str

    @field_validator("insurance_type")
    @classmethod
    def validate_insurance_type(cls, v: str) -> str:
        valid = [t.value for t in InsuranceType]
        if v not in valid:
            raise ValueError(f"insurance_type must be one of: {', '.join(valid)}")
        return v


class ReceiptResponse(BaseModel):
    receipt_id: str
    patient_id: str
    target_year: int
    target_month: int
    insurance_type: str
    state: str
    visit_count: int
    total_visit_points: int
    bonus_breakdown: List[Dict[str, Any]]
    special_management_points: int
    total_points: int
    total_amount: int
    has_errors: bool
    has_warnings: bool
    error_messages: List[Dict[str, Any]]
    warning_messages: List[Dict[str, Any]]
    can_export_csv: bool
    csv_export_errors: List[Dict[str, Any]]
    csv_export_warnings: List[Dict[str, Any]]
    last_validated_at: Optional[str]
    confirmed_by: Optional[str]
    confirmed_at: Optional[str]
    sent_at: Optional[str]


class SkippedReceiptResponse(BaseModel):
    patient_id: str
    receipt_id: str
    reason: str


class GenerateReceiptsResponse(BaseModel):
    receipts: List[ReceiptResponse]
    skipped: List[SkippedReceiptResponse]


def to_response(r: MonthlyReceipt) -> ReceiptResponse:
    return ReceiptResponse(
        receipt_id=str(r.receipt_id),
        patient_id=str(r.patient_id),
        target_year=r.target_year,
        target_month=r.target_month,
        insurance_type=r.insurance_type.value,
        state=r.state.value,
        visit_count=r.visit_count,
        total_visit_points=r.total_visit_points,
        bonus_breakdown=r.bonus_breakdown or [],
        special_management_points=r.special_management_points,
        total_points=r.total_points,
        total_amount=r.total_amount,
        has_errors=r.has_errors,
        has_warnings=r.has_warnings,
        error_messages=r.error_messages or [],
        warning_messages=r.warning_messages or [],
        can_export_csv=r.can_export_csv,
        csv_export_errors=r.csv_export_errors or [],
        csv_export_warnings=r.csv_export_warnings or [],
        last_validated_at=r.last_validated_at.isoformat() if r.last_validated_at else None,
        confirmed_by=str(r.confirmed_by) if r.confirmed_by else None,
        confirmed_at=r.confirmed_at.isoformat() if r.confirmed_at else None,
        sent_at=r.sent_at.isoformat() if r.sent_at else None,
    )


def _get_owned(db: Session, receipt_id: UUID, facility_id: UUID) -> MonthlyReceipt:
    receipt = db.get(MonthlyReceipt, receipt_id)
    if receipt is None or receipt.facility_id != facility_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Receipt not found")
    return receipt


def _raise_for(result: TransitionResult) -> None:
    if result.ok:
        return
    detail = {"code": result.code, "reason": result.reason, "errors": result.errors}
    if result.is_not_found:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)
    raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)


@router.post("/generate", response_model=GenerateReceiptsResponse)
async def generate_receipts(
    request: GenerateReceiptsRequest,
    payload: dict = Depends(require_role(BILLING_ROLES)),
    facility_id: UUID = Depends(get_current_facility_id),
    db: Session = Depends(get_db),
):
    """Create or refresh the month's receipts; confirmed receipts are left alone."""
    try:
        summary = generate_receipts_for_month(
            db,
            facility_id,
            request.year,
            request.month,
            InsuranceType(request.insurance_type),
            user_id=payload.get("sub"),
        )
    except DatabaseOperationError as e:
        logger.error(f"Receipt generation failed for facility {facility_id}: {e.message}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Receipt generation failed, please retry",
        )

    return GenerateReceiptsResponse(
        receipts=[to_response(r) for r in summary.receipts],
        skipped=[
            SkippedReceiptResponse(patient_id=str(s.patient_id), receipt_id=str(s.receipt_id), reason=s.reason)
            for s in summary.skipped
        ],
    )


@router.get("/summary.csv")
async def receipt_summary_csv(
    year: int,
    month: int,
    insurance_type: Optional[str] = None,
    payload: dict = Depends(require_role(BILLING_ROLES)),
    facility_id: UUID = Depends(get_current_facility_id),
    db: Session = Depends(get_db),
):
    """Confirmed receipts of a month as CSV."""
    if not 1 <= month <= 12:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="month must be between 1 and 12")
    content = build_receipt_summary_csv(db, facility_id, year, month, _parse_insurance_type(insurance_type))
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="receipts-{year}-{month:02d}.csv"'},
    )


@router.get("/", response_model=List[ReceiptResponse])
async def list_receipts(
    year: Optional[int] = None,
    month: Optional[int] = None,
    insurance_type: Optional[str] = None,
    state: Optional[str] = None,
    payload: dict = Depends(require_role(BILLING_ROLES)),
    facility_id: UUID = Depends(get_current_facility_id),
    db: Session = Depends(get_db),
):
    """List the facility's receipts."""
    query = db.query(MonthlyReceipt).filter(MonthlyReceipt.facility_id == facility_id)
    if year is not None:
        query = query.filter(MonthlyReceipt.target_year == year)
    if month is not None:
        query = query.filter(MonthlyReceipt.target_month == month)
    parsed_type = _parse_insurance_type(insurance_type)
    if parsed_type is not None:
        query = query.filter(MonthlyReceipt.insurance_type == parsed_type)

    receipts = query.order_by(MonthlyReceipt.target_year.desc(), MonthlyReceipt.target_month.desc()).all()
    if state is not None:
        try:
            wanted = ReceiptState(state)
        except ValueError:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid state")
        receipts = [r for r in receipts if r.state == wanted]
    return [to_response(r) for r in receipts]


@router.get("/{receipt_id}", response_model=ReceiptResponse)
async def get_receipt(
    receipt_id: UUID,
    payload: dict = Depends(require_role(BILLING_ROLES)),
    facility_id: UUID = Depends(get_current_facility_id),
    db: Session = Depends(get_db),
):
    return to_response(_get_owned(db, receipt_id, facility_id))


@router.post("/{receipt_id}/recalculate", response_model=ReceiptResponse)
async def recalculate(
    receipt_id: UUID,
    payload: dict = Depends(require_role(BILLING_ROLES)),
    facility_id: UUID = Depends(get_current_facility_id),
    db: Session = Depends(get_db),
):
    """Recalculate every visit of a draft receipt and refresh its totals."""
    _get_owned(db, receipt_id, facility_id)
    result = recalculate_receipt(db, receipt_id, user_id=payload.get("sub"))
    _raise_for(result)
    return to_response(result.receipt)


@router.post("/{receipt_id}/validate")
async def validate(
    receipt_id: UUID,
    payload: dict = Depends(require_role(BILLING_ROLES)),
    facility_id: UUID = Depends(get_current_facility_id),
    db: Session = Depends(get_db),
):
    """Re-run receipt validation and store the outcome."""
    receipt = _get_owned(db, receipt_id, facility_id)
    if receipt.is_confirmed:
        result = validate_receipt_by_id(db, receipt_id, persist=False)
    else:
        result = validate_receipt_by_id(db, receipt_id)
        db.commit()

    return {
        "receipt_id": str(receipt_id),
        "is_valid": result.is_valid,
        "errors": [e.to_dict() for e in result.errors],
        "warnings": [w.to_dict() for w in result.warnings],
    }


@router.get("/{receipt_id}/csv-validation")
async def csv_validation(
    receipt_id: UUID,
    payload: dict = Depends(require_role(BILLING_ROLES)),
    facility_id: UUID = Depends(get_current_facility_id),
    db: Session = Depends(get_db),
):
    """Check whether the receipt has everything a receipt file needs."""
    receipt = _get_owned(db, receipt_id, facility_id)
    result = validate_csv_export(
        db,
        receipt.facility_id,
        receipt.patient_id,
        receipt.target_year,
        receipt.target_month,
        receipt.insurance_type,
    )
    if not receipt.is_sent:
        apply_csv_validation(receipt, result)
        db.commit()

    return {
        "receipt_id": str(receipt_id),
        "can_export_csv": result.can_export_csv,
        "errors": [e.to_dict() for e in result.errors],
        "warnings": [w.to_dict() for w in result.warnings],
    }


@router.get("/{receipt_id}/export")
async def export_receipt(
    receipt_id: UUID,
    payload: dict = Depends(require_role(BILLING_ROLES)),
    facility_id: UUID = Depends(get_current_facility_id),
    db: Session = Depends(get_db),
):
    """Everything a receipt file writer needs for a confirmed receipt."""
    _get_owned(db, receipt_id, facility_id)
    result = prepare_receipt_export(db, receipt_id, user_id=payload.get("sub"))
    _raise_for(result)
    return result.data


@router.post("/{receipt_id}/finalize", response_model=ReceiptResponse)
async def finalize(
    receipt_id: UUID,
    payload: dict = Depends(require_role(MANAGEMENT_ROLES)),
    facility_id: UUID = Depends(get_current_facility_id),
    db: Session = Depends(get_db),
):
    """Confirm a draft receipt; refused while validation errors remain."""
    _get_owned(db, receipt_id, facility_id)
    result = finalize_receipt(db, receipt_id, UUID(payload.get("sub")))
    _raise_for(result)
    return to_response(result.receipt)


@router.post("/{receipt_id}/reopen", response_model=ReceiptResponse)
async def reopen(
    receipt_id: UUID,
    payload: dict = Depends(require_role(MANAGEMENT_ROLES)),
    facility_id: UUID = Depends(get_current_facility_id),
    db: Session = Depends(get_db),
):
    """Return a confirmed, unsent receipt to draft."""
    _get_owned(db, receipt_id, facility_id)
    result = reopen_receipt(db, receipt_id, user_id=payload.get("sub"))
    _raise_for(result)
    return to_response(result.receipt)


@router.post("/{receipt_id}/mark-sent", response_model=ReceiptResponse)
async def mark_sent(
    receipt_id: UUID,
    payload: dict = Depends(require_role(MANAGEMENT_ROLES)),
    facility_id: UUID = Depends(get_current_facility_id),
    db: Session = Depends(get_db),
):
    """Mark a confirmed receipt as submitted. Sent receipts are frozen."""
    _get_owned(db, receipt_id, facility_id)
    result = mark_receipt_sent(db, receipt_id, user_id=payload.get("sub"))
    _raise_for(result)
    return to_response(result.receipt)


@router.delete("/{receipt_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_receipt(
    receipt_id: UUID,
    payload: dict = Depends(require_role(MANAGEMENT_ROLES)),
    facility_id: UUID = Depends(get_current_facility_id),
    db: Session = Depends(get_db),
):
    """Delete a draft receipt."""
    _get_owned(db, receipt_id, facility_id)
    result = delete_receipt(db, receipt_id, user_id=payload.get("sub"))
    _raise_for(result)
