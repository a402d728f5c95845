"""Log sanitization for booking records.

External references (checkout sessions, payment intents, scheduling events)
are masked before they reach logs or the transition log metadata.
"""

from __future__ import annotations

from typing import Any

from bookingflow.schemas.booking import Booking


def mask_reference(value: str | None) -> str | None:
    """Mask all but the first and last 4 characters of a reference."""
    if value is None:
        return None
    if len(value) <= 8:
        return "[MASKED]"
    return f"{value[:4]}****{value[-4:]}"


def sanitize_booking(booking: Booking) -> dict[str, Any]:
    """Return a log-safe dict view of a booking."""
    return {
        "booking_id": booking.booking_id,
        "builder_id": booking.builder_id,
        "client_id": booking.client_id,
        "session_type_id": booking.session_type_id,
        "state": booking.state.value,
        "payment_status": booking.payment_status.value,
        "start_time": booking.start_time.isoformat() if booking.start_time else None,
        "end_time": booking.end_time.isoformat() if booking.end_time else None,
        "external_session_ref": mask_reference(booking.external_session_ref),
        "external_event_ref": mask_reference(booking.external_event_ref),
        "payment_intent_ref": mask_reference(booking.payment_intent_ref),
        "version": booking.version,
    }
