"""Booking domain schemas — the records the state machine reads and writes.

Booking and RecoveryToken are immutable; every change produces a new copy
via ``model_copy(update=...)`` so a loaded record can never be mutated
behind the transition core's back.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from bookingflow.models.enums import BookingEventType, BookingState, ErrorKind, PaymentStatus

BOOKING_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class BookingErrorInfo(BaseModel):
    """Last failure recorded on a booking in ERROR."""

    code: str
    message: str = ""
    source: str = "state-machine"
    external_ref: str | None = None
    occurred_at: datetime

    model_config = {"frozen": True}


class Booking(BaseModel):
    """A client's attempt to reserve a session with a builder."""

    booking_id: str
    builder_id: str
    client_id: str | None = None
    session_type_id: str

    state: BookingState = BookingState.IDLE
    payment_status: PaymentStatus = PaymentStatus.UNPAID

    # Scheduling
    client_timezone: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None

    # External correlation keys
    external_session_ref: str | None = Field(default=None, description="Payment checkout-session ID")
    external_event_ref: str | None = Field(default=None, description="Scheduling-provider event ID")
    payment_intent_ref: str | None = None
    superseded_session_refs: tuple[str, ...] = ()

    # Failure / cancellation details
    last_error: BookingErrorInfo | None = None
    cancel_reason: str | None = None

    payment_exempt: bool = False
    version: int = 1
    created_at: datetime
    updated_at: datetime

    model_config = {"frozen": True}

    @property
    def has_slot(self) -> bool:
        """True once both ends of the time slot are known."""
        return self.start_time is not None and self.end_time is not None


class EventPayload(BaseModel):
    """Data carried by a canonical event. Every field is optional."""

    session_type_id: str | None = None
    client_id: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    client_timezone: str | None = None
    external_session_ref: str | None = None
    external_event_ref: str | None = None
    payment_intent_ref: str | None = None
    reason: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    target_state: BookingState | None = None

    model_config = {"frozen": True}


class BookingEvent(BaseModel):
    """Canonical ``{type, booking_id | external_ref, payload}`` event."""

    type: BookingEventType
    booking_id: str | None = None
    external_ref: str | None = None
    payload: EventPayload = Field(default_factory=EventPayload)
    source: str = "user"

    model_config = {"frozen": True}


class TransitionLogEntry(BaseModel):
    """Audit row written atomically with every persisted transition."""

    booking_id: str
    from_state: BookingState | None
    to_state: BookingState
    event_type: str
    occurred_at: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}


class RecoveryToken(BaseModel):
    """Stored side of a recovery token. The raw token is never persisted."""

    token_hash: str
    booking_id: str
    issued_at: datetime
    expires_at: datetime
    target_state: BookingState | None = None
    used_at: datetime | None = None

    model_config = {"frozen": True}

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


# ── Entry-point results ──────────────────────────────────────────────


class CreateBookingRequest(BaseModel):
    """Input to ``create_booking``."""

    builder_id: str
    session_type_id: str
    client_id: str | None = None
    booking_id: str | None = None

    @field_validator("builder_id", "session_type_id")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            msg = "must not be blank"
            raise ValueError(msg)
        return v.strip()

    @field_validator("booking_id")
    @classmethod
    def _valid_booking_id(cls, v: str | None) -> str | None:
        if v is not None and not BOOKING_ID_PATTERN.match(v):
            msg = "malformed booking id"
            raise ValueError(msg)
        return v


class CreateBookingResult(BaseModel):
    booking_id: str
    state: BookingState
    created: bool = True


class TransitionOutcome(BaseModel):
    """Result of applying one event to a stored booking."""

    booking_id: str
    previous_state: BookingState
    current_state: BookingState
    payment_status: PaymentStatus
    duplicate: bool = False


class WebhookResult(BaseModel):
    """Result of ``handle_webhook`` for a resolved booking."""

    booking_id: str
    previous_state: BookingState
    current_state: BookingState
    applied: bool = True
    duplicate: bool = False
    error: ErrorKind | None = None


class RecoveryResult(BaseModel):
    """Result of a recovery-token redemption.

    ``error`` is for internal callers and logs; external callers only see
    ``message``.
    """

    success: bool
    booking_id: str | None = None
    state: BookingState | None = None
    error: ErrorKind | None = None
    message: str | None = None


class BookingFailureResult(BaseModel):
    """Result of recording a flow failure on a booking."""

    booking_id: str
    state: BookingState
    error: ErrorKind
    retryable: bool
    recovery_url: str | None = None
