"""Domain enums used across SQLAlchemy models and Pydantic schemas.

All enums use str mixin for JSON serialization and plain VARCHAR columns.
"""

from __future__ import annotations

from enum import Enum


class BookingState(str, Enum):
    """Lifecycle states of a booking."""

    IDLE = "IDLE"
    SESSION_TYPE_SELECTED = "SESSION_TYPE_SELECTED"
    TIME_SELECTED = "TIME_SELECTED"
    PAYMENT_PENDING = "PAYMENT_PENDING"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    ERROR = "ERROR"  # recoverable via token


class BookingEventType(str, Enum):
    """Canonical events fed to the transition core."""

    # User-initiated
    SELECT_SESSION_TYPE = "select_session_type"
    SELECT_TIME = "select_time"
    INITIATE_PAYMENT = "initiate_payment"
    CANCEL = "cancel"

    # Provider callbacks
    SCHEDULE_CONFIRMED = "schedule_confirmed"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"

    # System
    EXPIRE = "expire"
    ERROR_OCCURRED = "error_occurred"
    MARK_COMPLETED = "mark_completed"
    RECOVER = "recover"


class PaymentStatus(str, Enum):
    """Payment sub-state, tracked in parallel with the booking state."""

    UNPAID = "unpaid"
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class ErrorKind(str, Enum):
    """Error taxonomy surfaced by the entry points."""

    VALIDATION_ERROR = "validation_error"
    NOT_FOUND = "not_found"
    ILLEGAL_TRANSITION = "illegal_transition"
    INVALID_SIGNATURE = "invalid_signature"
    CONCURRENCY_CONFLICT = "concurrency_conflict"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_ALREADY_USED = "token_already_used"
    FORBIDDEN = "forbidden"
    UNEXPECTED_ERROR = "unexpected_error"


class BookingAction(str, Enum):
    """Actions checked by the authorization capability."""

    CREATE = "create"
    VIEW = "view"
    UPDATE = "update"
    CANCEL = "cancel"
    COMPLETE = "complete"
