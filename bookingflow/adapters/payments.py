"""Payment-provider (Stripe) webhook adapter.

Verifies the signature, decodes the event and translates it into a
canonical ``BookingEvent``. Never touches the store: the orchestrator
resolves the booking from ``external_ref`` (the checkout session id) or the
booking-id hint the checkout was created with.
"""

from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Any

from bookingflow.adapters.signatures import verify_signature
from bookingflow.config import settings
from bookingflow.errors import ValidationError
from bookingflow.models.enums import BookingEventType
from bookingflow.schemas.booking import BookingEvent, EventPayload

logger = logging.getLogger(__name__)

SOURCE = "payment_provider"


class PaymentWebhookType(str, Enum):
    """Payment-provider event types the booking core reacts to."""

    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    CHECKOUT_SESSION_ASYNC_PAYMENT_SUCCEEDED = "checkout.session.async_payment_succeeded"
    CHECKOUT_SESSION_ASYNC_PAYMENT_FAILED = "checkout.session.async_payment_failed"
    CHECKOUT_SESSION_EXPIRED = "checkout.session.expired"
    PAYMENT_INTENT_PAYMENT_FAILED = "payment_intent.payment_failed"

    @classmethod
    def parse(cls, value: str | PaymentWebhookType) -> PaymentWebhookType | None:
        """Accept the provider's dotted name or the enum-style name."""
        if isinstance(value, cls):
            return value
        for member in cls:
            if value in (member.value, member.name.lower()):
                return member
        return None


_EVENT_MAP: dict[PaymentWebhookType, BookingEventType] = {
    PaymentWebhookType.CHECKOUT_SESSION_COMPLETED: BookingEventType.PAYMENT_SUCCEEDED,
    PaymentWebhookType.CHECKOUT_SESSION_ASYNC_PAYMENT_SUCCEEDED: BookingEventType.PAYMENT_SUCCEEDED,
    PaymentWebhookType.CHECKOUT_SESSION_ASYNC_PAYMENT_FAILED: BookingEventType.PAYMENT_FAILED,
    PaymentWebhookType.CHECKOUT_SESSION_EXPIRED: BookingEventType.PAYMENT_FAILED,
    PaymentWebhookType.PAYMENT_INTENT_PAYMENT_FAILED: BookingEventType.PAYMENT_FAILED,
}


def parse_payment_webhook(
    body: bytes,
    signature_header: str | None,
    *,
    secrets: list[str] | None = None,
    now: float | None = None,
) -> tuple[str, dict[str, Any]]:
    """Verify and decode a payment webhook body.

    Returns:
        (event_type, raw_event)

    Raises:
        InvalidSignatureError: Signature fails under every trusted secret.
        ValidationError: Body is not a JSON object with a ``type``.
    """
    verify_signature(
        body,
        signature_header,
        settings.payments.webhook_secrets if secrets is None else secrets,
        now=now,
        tolerance=settings.payments.signature_tolerance_seconds,
    )
    raw = _decode(body)
    event_type = raw.get("type")
    if not isinstance(event_type, str):
        raise ValidationError("payment webhook has no event type")
    return event_type, raw


def translate_payment_event(event_type: str | PaymentWebhookType, raw: dict[str, Any]) -> BookingEvent | None:
    """Translate a decoded payment webhook into a canonical event.

    Returns None for event types the booking core does not handle, and for
    completed checkouts whose funds have not settled yet (the async
    success/failure event follows).
    """
    webhook_type = PaymentWebhookType.parse(event_type)
    if webhook_type is None:
        logger.info("Ignoring unhandled payment webhook type: %s", event_type)
        return None

    obj = _data_object(raw)
    metadata = _mapping(obj.get("metadata"))

    if webhook_type == PaymentWebhookType.PAYMENT_INTENT_PAYMENT_FAILED:
        session_ref = metadata.get("checkout_session_id")
        last_error = _mapping(obj.get("last_payment_error"))
        payload = EventPayload(
            external_session_ref=session_ref,
            payment_intent_ref=obj.get("id"),
            error_code=last_error.get("code") or "payment_failed",
            error_message=last_error.get("message"),
        )
        return BookingEvent(
            type=_EVENT_MAP[webhook_type],
            booking_id=metadata.get("booking_id"),
            external_ref=session_ref,
            payload=payload,
            source=SOURCE,
        )

    session_ref = obj.get("id")
    if (
        webhook_type == PaymentWebhookType.CHECKOUT_SESSION_COMPLETED
        and obj.get("payment_status") == "unpaid"
    ):
        logger.info("Checkout %s completed but unpaid — waiting for async payment result", session_ref)
        return None

    error_code = None
    if webhook_type == PaymentWebhookType.CHECKOUT_SESSION_EXPIRED:
        error_code = "checkout_expired"
    elif webhook_type == PaymentWebhookType.CHECKOUT_SESSION_ASYNC_PAYMENT_FAILED:
        error_code = "async_payment_failed"

    return BookingEvent(
        type=_EVENT_MAP[webhook_type],
        booking_id=obj.get("client_reference_id") or metadata.get("booking_id"),
        external_ref=session_ref,
        payload=EventPayload(
            external_session_ref=session_ref,
            payment_intent_ref=_payment_intent_id(obj.get("payment_intent")),
            error_code=error_code,
        ),
        source=SOURCE,
    )


# ── Helpers ──────────────────────────────────────────────────────────


def _decode(body: bytes) -> dict[str, Any]:
    try:
        raw = json.loads(body)
    except ValueError:
        raise ValidationError("webhook body is not valid JSON") from None
    if not isinstance(raw, dict):
        raise ValidationError("webhook body must be a JSON object")
    return raw


def _mapping(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _data_object(raw: dict[str, Any]) -> dict[str, Any]:
    """Return ``data.object``, or the raw dict when it is already the object."""
    data = raw.get("data")
    if isinstance(data, dict) and isinstance(data.get("object"), dict):
        return data["object"]
    return raw


def _payment_intent_id(value: Any) -> str | None:
    """The intent is either an ID string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value if isinstance(value, str) else None
