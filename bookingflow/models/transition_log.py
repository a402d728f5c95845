"""BookingTransitionLog model — append-only record of every persisted transition.

Written in the same transaction as the booking update it describes.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, ForeignKey, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from bookingflow.models.base import Base, UUIDPrimaryKeyMixin


class BookingTransitionLog(UUIDPrimaryKeyMixin, Base):
    """One state transition of one booking."""

    __tablename__ = "booking_transition_log"

    booking_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("bookings.booking_id"), nullable=False, index=True
    )
    from_state: Mapped[str | None] = mapped_column(String(30), comment="NULL for the creation row")
    to_state: Mapped[str] = mapped_column(String(30), nullable=False)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Masked context: event source, external refs, error code
    data: Mapped[dict[str, Any] | None] = mapped_column(JSONB)

    def __repr__(self) -> str:
        return f"<BookingTransitionLog booking={self.booking_id} {self.from_state}->{self.to_state}>"
