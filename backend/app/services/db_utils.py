"""
Database utility functions with retry logic.
"""
import time
import uuid
from datetime import date
from typing import TypeVar, Callable
from functools import wraps

from sqlalchemy import text
from sqlalchemy.orm import Session
from sqlalchemy.exc import OperationalError, IntegrityError, SQLAlchemyError

from app.core.logging import logger


T = TypeVar("T")


class DatabaseOperationError(Exception):
    """Exception raised when a database operation fails after all retries."""

    def __init__(self, message: str, original_error: Exception = None):
        self.message = message
        self.original_error = original_error
        super().__init__(message)


def _find_session(args: tuple, kwargs: dict) -> Session | None:
    db = kwargs.get("db")
    if db is None:
        for arg in args:
            if isinstance(arg, Session):
                return arg
    return db


def with_db_retry(
    max_retries: int = 3,
    retry_delay: float = 0.5,
    exponential_backoff: bool = True,
    rollback_on_error: bool = True,
):
    """
    Decorator for database operations with automatic retry logic.

    The wrapped function must be safe to re-run from the start: the session is
    rolled back before each retry.

    Args:
        max_retries: Maximum number of retry attempts
        retry_delay: Initial delay between retries in seconds
        exponential_backoff: Whether to use exponential backoff
        rollback_on_error: Whether to rollback the session on error
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            last_error = None
            delay = retry_delay

            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except (OperationalError, IntegrityError) as e:
                    last_error = e

                    if rollback_on_error:
                        db = _find_session(args, kwargs)
                        if db is not None:
                            try:
                                db.rollback()
                            except SQLAlchemyError as rollback_error:
                                logger.error(f"Rollback after failed operation also failed: {rollback_error}")

                    if attempt < max_retries:
                        logger.warning(
                            f"Database operation {func.__name__} failed "
                            f"(attempt {attempt + 1}/{max_retries + 1}): {e}. "
                            f"Retrying in {delay:.1f}s..."
                        )
                        time.sleep(delay)
                        if exponential_backoff:
                            delay *= 2
                    else:
                        logger.error(
                            f"Database operation {func.__name__} failed after {max_retries + 1} attempts: {e}"
                        )
                        raise DatabaseOperationError(
                            f"Database operation failed after {max_retries + 1} attempts",
                            original_error=e,
                        )

            raise DatabaseOperationError(
                "Database operation failed",
                original_error=last_error,
            )

        return wrapper
    return decorator


def lock_patient_visit_day(db: Session, patient_id: uuid.UUID, visit_date: date) -> bool:
    """
    Serialize same-day visit calculations for one patient.

    Takes a transaction-scoped advisory lock on PostgreSQL so the
    count-then-write of the daily visit ordinal cannot interleave with another
    save for the same patient and day. Other dialects have no advisory locks
    and run unserialized.

    Returns:
        True if a lock was taken
    """
    if db.get_bind().dialect.name != "postgresql":
        return False
    key = f"visit-day:{patient_id}:{visit_date.isoformat()}"
    db.execute(text("SELECT pg_advisory_xact_lock(hashtext(:key))"), {"key": key})
    return True
