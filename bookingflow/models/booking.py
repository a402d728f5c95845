"""BookingRecord model — the persisted booking row.

``version`` drives optimistic concurrency: every write is an
``UPDATE ... WHERE version = :expected``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, DateTime, Integer, String, Text
from sqlalchemy.dialects.postgresql import ARRAY, JSONB
from sqlalchemy.orm import Mapped, mapped_column

from bookingflow.models.base import Base, TimestampMixin
from bookingflow.models.enums import BookingState, PaymentStatus


class BookingRecord(TimestampMixin, Base):
    """A client's booking of a builder session."""

    __tablename__ = "bookings"

    booking_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    builder_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    client_id: Mapped[str | None] = mapped_column(String(100), index=True)
    session_type_id: Mapped[str] = mapped_column(String(100), nullable=False)

    # Lifecycle
    state: Mapped[str] = mapped_column(String(30), default=BookingState.IDLE.value, nullable=False, index=True)
    payment_status: Mapped[str] = mapped_column(
        String(20), default=PaymentStatus.UNPAID.value, nullable=False
    )
    payment_exempt: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    # Scheduling
    client_timezone: Mapped[str | None] = mapped_column(String(64))
    start_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # External correlation keys
    external_session_ref: Mapped[str | None] = mapped_column(
        String(255), unique=True, comment="Payment checkout-session ID"
    )
    external_event_ref: Mapped[str | None] = mapped_column(
        String(255), unique=True, comment="Scheduling-provider event ID"
    )
    payment_intent_ref_encrypted: Mapped[str | None] = mapped_column(Text, comment="AES-256-GCM encrypted")
    superseded_session_refs: Mapped[list[str]] = mapped_column(
        ARRAY(String(255)), default=list, nullable=False, comment="Checkout sessions retired by recovery"
    )

    # Failure / cancellation details
    last_error: Mapped[dict[str, Any] | None] = mapped_column(JSONB)
    cancel_reason: Mapped[str | None] = mapped_column(String(500))

    def __repr__(self) -> str:
        return f"<BookingRecord id={self.booking_id} state={self.state} v={self.version}>"
