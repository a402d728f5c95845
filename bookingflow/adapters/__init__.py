"""Provider adapters — verify webhook signatures and translate payloads into BookingEvents."""

from bookingflow.adapters.payments import parse_payment_webhook, translate_payment_event
from bookingflow.adapters.scheduling import parse_scheduling_webhook, translate_scheduling_event
from bookingflow.adapters.signatures import verify_signature

__all__ = [
    "parse_payment_webhook",
    "parse_scheduling_webhook",
    "translate_payment_event",
    "translate_scheduling_event",
    "verify_signature",
]
