"""SQLAlchemy ORM models for bookingflow.

Import all models here so Alembic and Base.metadata.create_all() discover them.
"""

from __future__ import annotations

from bookingflow.models.base import Base
from bookingflow.models.booking import BookingRecord
from bookingflow.models.enums import (
    BookingAction,
    BookingEventType,
    BookingState,
    ErrorKind,
    PaymentStatus,
)
from bookingflow.models.transition_log import BookingTransitionLog

__all__ = [
    "Base",
    "BookingAction",
    "BookingEventType",
    "BookingRecord",
    "BookingState",
    "BookingTransitionLog",
    "ErrorKind",
    "PaymentStatus",
]
