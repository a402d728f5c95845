"""Notification log subscriber — one structured log line per SystemEvent.

Registered as a global subscriber at startup. Downstream email and analytics
dispatchers hang off the same event stream; this one is the always-on record.

Never raises — failures are logged but never propagate to the event system.
"""

from __future__ import annotations

import logging

import structlog

from bookingflow.schemas.events import EventType, SystemEvent

logger = logging.getLogger(__name__)
event_log = structlog.get_logger("bookingflow.notifications")

# Events worth a warning in the log stream.
_WARNING_EVENTS: frozenset[EventType] = frozenset({
    EventType.BOOKING_FAILED,
    EventType.PAYMENT_ORPHANED,
    EventType.RECOVERY_TOKEN_REJECTED,
    EventType.WEBHOOK_REJECTED,
})


async def log_on_event(event: SystemEvent) -> None:
    """Write a SystemEvent as a structured log entry."""
    try:
        log = event_log.warning if event.event_type in _WARNING_EVENTS else event_log.info
        log(
            event.event_type.value,
            event_id=str(event.id),
            booking_id=event.booking_id,
            actor_id=event.actor_id,
            source=event.source_module,
            data=event.data,
        )
    except Exception:
        logger.exception("Failed to log event %s (booking=%s)", event.event_type.value, event.booking_id)
