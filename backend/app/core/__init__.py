"""
Core module exports
"""
from app.core.config import settings
from app.core.security import (
    hash_password,
    verify_password,
    create_access_token,
    decode_access_token,
    get_current_user_id,
    get_current_facility_id,
    require_role,
    MANAGEMENT_ROLES,
    RECORDING_ROLES,
    BILLING_ROLES,
)
from app.core.logging import logger, get_logger

__all__ = [
    "settings",
    "hash_password",
    "verify_password",
    "create_access_token",
    "decode_access_token",
    "get_current_user_id",
    "get_current_facility_id",
    "require_role",
    "MANAGEMENT_ROLES",
    "RECORDING_ROLES",
    "BILLING_ROLES",
    "logger",
    "get_logger",
]
