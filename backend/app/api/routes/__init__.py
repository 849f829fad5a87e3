"""
API routes package
"""
from app.api.routes import auth, bonus_definitions, nursing_records, receipts

__all__ = [
    "auth",
    "bonus_definitions",
    "nursing_records",
    "receipts",
]
