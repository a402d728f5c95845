"""Error taxonomy for the booking core.

Expected domain conditions (illegal transition, duplicate event) are returned
as typed results by the transition core. The exceptions below are raised by
the orchestration layer and the stores; anything else is converted to
``unexpected_error`` at the entry-point boundary via ``classify_error``.
"""

from __future__ import annotations

import asyncio

from bookingflow.models.enums import ErrorKind

# Generic message handed to external callers for failures they cannot act on.
PUBLIC_FAILURE_MESSAGE = "could not process booking request"


class BookingError(Exception):
    """Base class for all booking-core errors."""

    kind: ErrorKind = ErrorKind.UNEXPECTED_ERROR
    retryable: bool = False

    def __init__(self, message: str, *, booking_id: str | None = None, retryable: bool | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.booking_id = booking_id
        if retryable is not None:
            self.retryable = retryable

    def to_dict(self) -> dict[str, str | None]:
        """Serialize for API responses and structured logs."""
        return {"kind": self.kind.value, "message": self.message, "booking_id": self.booking_id}


class ValidationError(BookingError):
    kind = ErrorKind.VALIDATION_ERROR


class NotFoundError(BookingError):
    kind = ErrorKind.NOT_FOUND


class IllegalTransitionError(BookingError):
    kind = ErrorKind.ILLEGAL_TRANSITION


class ReferenceConflictError(IllegalTransitionError):
    """An external reference is already owned by another booking."""


class DuplicateBookingError(BookingError):
    """A booking with the requested ID already exists (store-level)."""

    kind = ErrorKind.VALIDATION_ERROR


class InvalidSignatureError(BookingError):
    kind = ErrorKind.INVALID_SIGNATURE


class ConcurrencyConflictError(BookingError):
    kind = ErrorKind.CONCURRENCY_CONFLICT
    retryable = True


class TokenExpiredError(BookingError):
    kind = ErrorKind.TOKEN_EXPIRED


class TokenAlreadyUsedError(BookingError):
    kind = ErrorKind.TOKEN_ALREADY_USED


class ForbiddenError(BookingError):
    kind = ErrorKind.FORBIDDEN


class UnexpectedError(BookingError):
    kind = ErrorKind.UNEXPECTED_ERROR


_ERRORS_BY_KIND: dict[ErrorKind, type[BookingError]] = {
    ErrorKind.VALIDATION_ERROR: ValidationError,
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.ILLEGAL_TRANSITION: IllegalTransitionError,
    ErrorKind.INVALID_SIGNATURE: InvalidSignatureError,
    ErrorKind.CONCURRENCY_CONFLICT: ConcurrencyConflictError,
    ErrorKind.TOKEN_EXPIRED: TokenExpiredError,
    ErrorKind.TOKEN_ALREADY_USED: TokenAlreadyUsedError,
    ErrorKind.FORBIDDEN: ForbiddenError,
    ErrorKind.UNEXPECTED_ERROR: UnexpectedError,
}

# Exception types that usually indicate a transient infrastructure failure.
_TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)


def error_for_kind(kind: ErrorKind, message: str, *, booking_id: str | None = None) -> BookingError:
    """Build the BookingError subclass matching ``kind``."""
    return _ERRORS_BY_KIND[kind](message, booking_id=booking_id)


def classify_error(exc: BaseException, *, booking_id: str | None = None) -> BookingError:
    """Map any exception onto the error taxonomy.

    BookingErrors pass through unchanged. Everything else becomes an
    ``unexpected_error`` whose message never carries the original text;
    connection and timeout failures are flagged retryable.
    """
    if isinstance(exc, BookingError):
        return exc
    return UnexpectedError(
        PUBLIC_FAILURE_MESSAGE,
        booking_id=booking_id,
        retryable=isinstance(exc, _TRANSIENT_ERRORS),
    )
