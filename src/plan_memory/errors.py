"""Error taxonomy for store operations.

Retrying is left to callers: the repositories translate driver errors into
these classes once and never retry on their own.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from enum import Enum

from sqlalchemy.exc import (
    DBAPIError,
    DisconnectionError,
    IntegrityError,
    OperationalError,
)
from sqlalchemy.exc import (
    TimeoutError as PoolTimeoutError,
)


class StoreErrorClass(str, Enum):
    """Normalized error classes used by caller retry policy."""

    TRANSIENT = "transient"
    UNKNOWN_OUTCOME = "unknown_outcome"
    CONSTRAINT_VIOLATION = "constraint_violation"
    NON_RETRYABLE = "non_retryable"


class PlanMemoryError(Exception):
    """Base class for errors raised by plan memory repositories."""


class TransientStoreError(PlanMemoryError):
    """Connection refused, dropped or the pool is exhausted; safe to retry with backoff."""


class UnknownOutcomeError(TransientStoreError):
    """The call timed out; the write may have landed."""


class ConstraintViolationError(PlanMemoryError):
    """Input broke a schema or identity rule, which points at an upstream planning bug."""


_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "statement timeout",
    "canceling statement due to",
    "timed out",
    "timeout expired",
)


def classify_store_error(error: BaseException) -> StoreErrorClass:
    """Map a driver or SQLAlchemy exception onto the store error taxonomy."""

    if isinstance(error, ConstraintViolationError | IntegrityError):
        return StoreErrorClass.CONSTRAINT_VIOLATION
    if isinstance(error, UnknownOutcomeError | PoolTimeoutError):
        return StoreErrorClass.UNKNOWN_OUTCOME
    if isinstance(error, TransientStoreError | DisconnectionError):
        return StoreErrorClass.TRANSIENT
    if isinstance(error, DBAPIError) and error.connection_invalidated:
        return StoreErrorClass.TRANSIENT
    if isinstance(error, OperationalError):
        message = str(error).lower()
        if any(pattern in message for pattern in _TIMEOUT_PATTERNS):
            return StoreErrorClass.UNKNOWN_OUTCOME
        return StoreErrorClass.TRANSIENT
    return StoreErrorClass.NON_RETRYABLE


@contextmanager
def translate_store_errors(operation: str) -> Iterator[None]:
    """Re-raise SQLAlchemy errors from ``operation`` as taxonomy errors."""

    try:
        yield
    except PlanMemoryError:
        raise
    except (DBAPIError, DisconnectionError, PoolTimeoutError) as error:
        error_class = classify_store_error(error)
        if error_class is StoreErrorClass.CONSTRAINT_VIOLATION:
            raise ConstraintViolationError(f"{operation}: {_first_line(error)}") from error
        if error_class is StoreErrorClass.UNKNOWN_OUTCOME:
            raise UnknownOutcomeError(f"{operation}: {_first_line(error)}") from error
        if error_class is StoreErrorClass.TRANSIENT:
            raise TransientStoreError(f"{operation}: {_first_line(error)}") from error
        raise


def _first_line(error: BaseException) -> str:
    text = str(error).strip()
    return text.splitlines()[0] if text else type(error).__name__
