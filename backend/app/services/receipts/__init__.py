"""
Monthly receipts: aggregation, validation, lifecycle and export
"""
from app.services.receipts.aggregator import (
    ReceiptGenerationSummary,
    compute_receipt_totals,
    generate_receipts_for_month,
)
from app.services.receipts.csv_validation import (
    CsvValidationResult,
    validate_csv_export,
    validate_multiple_receipts,
)
from app.services.receipts.export import build_receipt_summary_csv, prepare_receipt_export
from app.services.receipts.lifecycle import (
    TransitionResult,
    delete_receipt,
    finalize_receipt,
    mark_receipt_sent,
    recalculate_receipt,
    receipt_state,
    reopen_receipt,
)
from app.services.receipts.validator import (
    ReceiptValidationInput,
    ValidationResult,
    detect_missing_bonuses,
    validate_receipt,
    validate_receipt_by_id,
)

__all__ = [
    "ReceiptGenerationSummary",
    "compute_receipt_totals",
    "generate_receipts_for_month",
    "CsvValidationResult",
    "validate_csv_export",
    "validate_multiple_receipts",
    "build_receipt_summary_csv",
    "prepare_receipt_export",
    "TransitionResult",
    "delete_receipt",
    "finalize_receipt",
    "mark_receipt_sent",
    "recalculate_receipt",
    "receipt_state",
    "reopen_receipt",
    "ReceiptValidationInput",
    "ValidationResult",
    "detect_missing_bonuses",
    "validate_receipt",
    "validate_receipt_by_id",
]
