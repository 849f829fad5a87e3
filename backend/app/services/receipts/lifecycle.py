"""
Receipt lifecycle: draft -> confirmed -> sent.

State is derived from ``is_confirmed`` and ``is_sent``. Every transition is a
single conditional UPDATE or DELETE; the affected row count decides whether
it happened. Rule violations come back as a rejected ``TransitionResult``
instead of an exception.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.orm import Session

from app.core.logging import get_logger
from app.db.models import MonthlyReceipt, ReceiptState
from app.services.audit import AuditService
from app.services.points import recalculate_record
from app.services.receipts.aggregator import receipt_fields
from app.services.receipts.csv_validation import csv_validation_fields, validate_csv_export
from app.services.receipts.validator import (
    billable_records,
    build_validation_input,
    validate_receipt,
    validation_fields,
)

logger = get_logger(__name__)


@dataclass
class TransitionResult:
    ok: bool
    code: Optional[str] = None
    reason: str = ""
    errors: list[dict] = field(default_factory=list)
    receipt: Optional[MonthlyReceipt] = None
    data: Any = None

    @classmethod
    def accepted(cls, receipt: Optional[MonthlyReceipt] = None, data: Any = None) -> "TransitionResult":
        return cls(ok=True, receipt=receipt, data=data)

    @classmethod
    def rejected(
        cls,
        code: str,
        reason: str,
        errors: Optional[list[dict]] = None,
        receipt: Optional[MonthlyReceipt] = None,
    ) -> "TransitionResult":
        return cls(ok=False, code=code, reason=reason, errors=errors or [], receipt=receipt)

    @property
    def is_not_found(self) -> bool:
        return self.code == "not_found"


def receipt_state(receipt: MonthlyReceipt) -> ReceiptState:
    return receipt.state


def _not_found(receipt_id: uuid.UUID) -> TransitionResult:
    return TransitionResult.rejected("not_found", f"Receipt {receipt_id} not found")


def _reject(action: str, receipt_id: uuid.UUID, result: TransitionResult) -> TransitionResult:
    logger.info(f"Receipt {receipt_id} {action} rejected: {result.code} ({result.reason})")
    return result


def _reload(db: Session, receipt_id: uuid.UUID) -> Optional[MonthlyReceipt]:
    return db.get(MonthlyReceipt, receipt_id, populate_existing=True)


def _state_rejection(receipt: Optional[MonthlyReceipt], receipt_id: uuid.UUID) -> TransitionResult:
    """Explain why a conditional statement matched no row."""
    if receipt is None:
        return _not_found(receipt_id)
    if receipt.is_sent:
        return TransitionResult.rejected(
            "receipt_sent", "Receipt has been sent and can no longer change", receipt=receipt
        )
    if receipt.is_confirmed:
        return TransitionResult.rejected(
            "receipt_confirmed", "Receipt is confirmed; reopen it first", receipt=receipt
        )
    return TransitionResult.rejected("receipt_not_confirmed", "Receipt is not confirmed", receipt=receipt)


def _conditional_update(db: Session, receipt_id: uuid.UUID, values: dict, **expected) -> bool:
    query = db.query(MonthlyReceipt).filter(MonthlyReceipt.receipt_id == receipt_id)
    for column, value in expected.items():
        query = query.filter(getattr(MonthlyReceipt, column).is_(value))
    return query.update(values, synchronize_session=False) == 1


def recalculate_receipt(db: Session, receipt_id: uuid.UUID, user_id: Optional[str] = None) -> TransitionResult:
    """
    Re-run the point calculation for every billable visit of a draft receipt
    and refresh its totals and validation.
    """
    receipt = db.get(MonthlyReceipt, receipt_id)
    if receipt is None:
        return _reject("recalculate", receipt_id, _not_found(receipt_id))
    if receipt.is_confirmed:
        return _reject("recalculate", receipt_id, _state_rejection(receipt, receipt_id))

    for record in billable_records(
        db, receipt.facility_id, receipt.patient_id, receipt.target_year, receipt.target_month
    ):
        recalculate_record(db, record)
    # Recalculation can move a visit to another insurance
    records = billable_records(
        db,
        receipt.facility_id,
        receipt.patient_id,
        receipt.target_year,
        receipt.target_month,
        receipt.insurance_type,
    )

    values = receipt_fields(
        db,
        receipt.facility_id,
        receipt.patient_id,
        receipt.target_year,
        receipt.target_month,
        receipt.insurance_type,
        records,
    )
    if not _conditional_update(db, receipt_id, values, is_confirmed=False):
        db.rollback()
        return _reject("recalculate", receipt_id, _state_rejection(_reload(db, receipt_id), receipt_id))

    AuditService(db).log_receipt_event(
        "receipt.recalculated", "recalculate", receipt_id, receipt.facility_id, user_id,
        {"total_points": values["total_points"]},
    )
    db.commit()
    return TransitionResult.accepted(_reload(db, receipt_id))


def finalize_receipt(db: Session, receipt_id: uuid.UUID, user_id: uuid.UUID) -> TransitionResult:
    """
    Confirm a draft receipt.

    Validation errors reject the transition and the error state is saved on
    the receipt. CSV readiness is recomputed but never blocks confirmation.
    """
    receipt = db.get(MonthlyReceipt, receipt_id)
    if receipt is None:
        return _reject("finalize", receipt_id, _not_found(receipt_id))
    if receipt.is_confirmed:
        return _reject("finalize", receipt_id, _state_rejection(receipt, receipt_id))

    result = validate_receipt(build_validation_input(db, receipt))
    if result.errors:
        _conditional_update(db, receipt_id, validation_fields(result), is_confirmed=False)
        db.commit()
        errors = [e.to_dict() for e in result.errors]
        return _reject(
            "finalize",
            receipt_id,
            TransitionResult.rejected(
                "validation_failed",
                f"Receipt has {len(errors)} validation errors",
                errors=errors,
                receipt=_reload(db, receipt_id),
            ),
        )

    csv_result = validate_csv_export(
        db,
        receipt.facility_id,
        receipt.patient_id,
        receipt.target_year,
        receipt.target_month,
        receipt.insurance_type,
    )
    now = datetime.utcnow()
    values = {
        **validation_fields(result),
        **csv_validation_fields(csv_result),
        "is_confirmed": True,
        "confirmed_by": user_id,
        "confirmed_at": now,
    }
    if not _conditional_update(db, receipt_id, values, is_confirmed=False):
        db.rollback()
        return _reject("finalize", receipt_id, _state_rejection(_reload(db, receipt_id), receipt_id))

    AuditService(db).log_receipt_event(
        "receipt.finalized", "finalize", receipt_id, receipt.facility_id, str(user_id),
        {"can_export_csv": csv_result.can_export_csv},
    )
    db.commit()
    return TransitionResult.accepted(_reload(db, receipt_id))


def reopen_receipt(db: Session, receipt_id: uuid.UUID, user_id: Optional[str] = None) -> TransitionResult:
    """Return a confirmed, unsent receipt to draft."""
    values = {"is_confirmed": False, "confirmed_by": None, "confirmed_at": None}
    if not _conditional_update(db, receipt_id, values, is_confirmed=True, is_sent=False):
        db.rollback()
        return _reject("reopen", receipt_id, _state_rejection(_reload(db, receipt_id), receipt_id))

    receipt = _reload(db, receipt_id)
    AuditService(db).log_receipt_event("receipt.reopened", "reopen", receipt_id, receipt.facility_id, user_id)
    db.commit()
    return TransitionResult.accepted(_reload(db, receipt_id))


def delete_receipt(db: Session, receipt_id: uuid.UUID, user_id: Optional[str] = None) -> TransitionResult:
    """Delete a draft receipt."""
    receipt = db.get(MonthlyReceipt, receipt_id)
    if receipt is None:
        return _reject("delete", receipt_id, _not_found(receipt_id))
    facility_id = receipt.facility_id

    deleted = (
        db.query(MonthlyReceipt)
        .filter(
            MonthlyReceipt.receipt_id == receipt_id,
            MonthlyReceipt.is_confirmed.is_(False),
            MonthlyReceipt.is_sent.is_(False),
        )
        .delete(synchronize_session=False)
    )
    if deleted != 1:
        db.rollback()
        return _reject("delete", receipt_id, _state_rejection(_reload(db, receipt_id), receipt_id))

    db.expunge(receipt)
    AuditService(db).log_receipt_event("receipt.deleted", "delete", receipt_id, facility_id, user_id)
    db.commit()
    return TransitionResult.accepted()


def mark_receipt_sent(db: Session, receipt_id: uuid.UUID, user_id: Optional[str] = None) -> TransitionResult:
    """Mark a confirmed, export-ready receipt as sent. Terminal."""
    values = {"is_sent": True, "sent_at": datetime.utcnow()}
    matched = (
        db.query(MonthlyReceipt)
        .filter(
            MonthlyReceipt.receipt_id == receipt_id,
            MonthlyReceipt.is_confirmed.is_(True),
            MonthlyReceipt.is_sent.is_(False),
            MonthlyReceipt.can_export_csv.is_(True),
        )
        .update(values, synchronize_session=False)
    )
    if matched != 1:
        db.rollback()
        receipt = _reload(db, receipt_id)
        if receipt is not None and receipt.is_confirmed and not receipt.is_sent:
            rejection = TransitionResult.rejected(
                "csv_not_ready",
                "Receipt cannot be exported until its CSV errors are resolved",
                errors=list(receipt.csv_export_errors or []),
                receipt=receipt,
            )
        else:
            rejection = _state_rejection(receipt, receipt_id)
        return _reject("mark_sent", receipt_id, rejection)

    receipt = _reload(db, receipt_id)
    AuditService(db).log_receipt_event("receipt.sent", "mark_sent", receipt_id, receipt.facility_id, user_id)
    db.commit()
    return TransitionResult.accepted(_reload(db, receipt_id))
