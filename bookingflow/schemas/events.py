"""SystemEvent schema — the side-effect event that flows out of the booking core.

Every committed transition emits one or more SystemEvents. Subscribers
(notification log, analytics, email dispatch) consume them asynchronously.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """All event types emitted by the booking core."""

    # Booking lifecycle
    BOOKING_CREATED = "booking.created"
    BOOKING_CLAIMED = "booking.claimed"
    BOOKING_STATE_CHANGED = "booking.state_changed"
    BOOKING_CONFIRMED = "booking.confirmed"
    BOOKING_COMPLETED = "booking.completed"
    BOOKING_CANCELLED = "booking.cancelled"
    BOOKING_EXPIRED = "booking.expired"
    BOOKING_FAILED = "booking.failed"
    BOOKING_RECOVERED = "booking.recovered"

    # Payment
    PAYMENT_STATUS_CHANGED = "booking.payment_status_changed"
    PAYMENT_ORPHANED = "payment.orphaned"

    # Recovery tokens
    RECOVERY_TOKEN_ISSUED = "recovery.token_issued"
    RECOVERY_TOKEN_REDEEMED = "recovery.token_redeemed"
    RECOVERY_TOKEN_REJECTED = "recovery.token_rejected"

    # Webhooks
    WEBHOOK_IGNORED = "webhook.ignored"
    WEBHOOK_REJECTED = "webhook.rejected"


class SystemEvent(BaseModel):
    """Side-effect event published after a booking change has been committed.

    Immutable once created. Consumed by:
    - notification log subscriber → structured log line
    - any analytics / email dispatcher registered by the host application
    """

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    event_type: EventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    # Context (optional, webhook events may not resolve to a booking)
    booking_id: str | None = None
    actor_id: str | None = None

    # Flexible payload
    data: dict[str, Any] = Field(default_factory=dict)

    # Metadata
    source_module: str | None = Field(default=None, description="Module that emitted this event")

    model_config = {"frozen": True}
