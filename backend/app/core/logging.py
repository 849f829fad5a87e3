"""
Logging configuration with field masking for patient data
"""
import logging
import re

from app.core.config import settings


LOGGER_NAME = "nursing_receipts"

# Patterns to mask in logs
MASK_PATTERNS = [
    (r'"password":\s*"[^"]*"', '"password": "***"'),
    (r'"insurance_number":\s*"[^"]*"', '"insurance_number": "***"'),
    (r'"insured_number":\s*"[^"]*"', '"insured_number": "***"'),
    (r'"recipient_number":\s*"[^"]*"', '"recipient_number": "***"'),
    (r'"kana_name":\s*"[^"]*"', '"kana_name": "***"'),
    (r"'insurance_number':\s*'[^']*'", "'insurance_number': '***'"),
    (r"'kana_name':\s*'[^']*'", "'kana_name': '***'"),
]


class MaskingFormatter(logging.Formatter):
    """Custom formatter that masks sensitive fields."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        for pattern, replacement in MASK_PATTERNS:
            message = re.sub(pattern, replacement, message, flags=re.IGNORECASE)
        return message


def setup_logging() -> logging.Logger:
    """Configure application logging."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG if settings.DEBUG else logging.INFO)

    if logger.handlers:
        return logger

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG if settings.DEBUG else logging.INFO)

    # Format with masking
    formatter = MaskingFormatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    console_handler.setFormatter(formatter)

    logger.addHandler(console_handler)

    return logger


# Global logger instance
logger = setup_logging()


def get_logger(name: str) -> logging.Logger:
    """Child logger that shares the application handler."""
    if name.startswith("app."):
        name = name[len("app."):]
    return logger.getChild(name)
