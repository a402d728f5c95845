"""Scheduling-provider (Calendly) webhook adapter.

Maps invitee callbacks to canonical events:
- ``invitee.created``  → ``schedule_confirmed`` (event ref + slot)
- ``invitee.canceled`` → ``cancel``

The provider echoes the booking id only when the scheduling link carried it
in ``utm_content``; otherwise the orchestrator resolves the booking through
the stored ``external_event_ref``.
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

SOURCE = "scheduling_provider"


class SchedulingWebhookType(str, Enum):
    """Scheduling-provider callbacks the booking core reacts to."""

    INVITEE_CREATED = "invitee.created"
    INVITEE_CANCELED = "invitee.canceled"

    @classmethod
    def parse(cls, value: str | SchedulingWebhookType) -> SchedulingWebhookType | None:
        """Accept the provider's dotted name or the enum-style name."""
        if isinstance(value, cls):
            return value
        for member in cls:
            if value in (member.value, member.name.lower()):
                return member
        return None


def parse_scheduling_webhook(
    body: bytes,
    signature_header: str | None,
    *,
    secrets: list[str] | None = None,
    now: float | None = None,
) -> tuple[str, dict[str, Any]]:
    """Verify and decode a scheduling webhook body.

    Returns:
        (event_type, raw_event)
    """
    verify_signature(
        body,
        signature_header,
        settings.scheduling.webhook_secrets if secrets is None else secrets,
        now=now,
        tolerance=settings.scheduling.signature_tolerance_seconds,
    )
    try:
        raw = json.loads(body)
    except ValueError:
        raise ValidationError("webhook body is not valid JSON") from None
    if not isinstance(raw, dict) or not isinstance(raw.get("event"), str):
        raise ValidationError("scheduling webhook has no event type")
    return raw["event"], raw


def translate_scheduling_event(
    event_type: str | SchedulingWebhookType, raw: dict[str, Any]
) -> BookingEvent | None:
    """Translate a decoded scheduling webhook into a canonical event."""
    webhook_type = SchedulingWebhookType.parse(event_type)
    if webhook_type is None:
        logger.info("Ignoring unhandled scheduling webhook type: %s", event_type)
        return None

    body = raw.get("payload") if isinstance(raw.get("payload"), dict) else raw
    scheduled = _scheduled_event(body)
    event_ref = _event_ref(scheduled)
    tracking = _mapping(body.get("tracking"))
    booking_hint = tracking.get("utm_content") or None

    if webhook_type == SchedulingWebhookType.INVITEE_CREATED:
        return BookingEvent(
            type=BookingEventType.SCHEDULE_CONFIRMED,
            booking_id=booking_hint,
            external_ref=event_ref,
            payload=EventPayload(
                external_event_ref=event_ref,
                start_time=scheduled.get("start_time"),
                end_time=scheduled.get("end_time"),
                client_timezone=body.get("timezone"),
            ),
            source=SOURCE,
        )

    if body.get("rescheduled"):
        # Rescheduling is delivered as canceled + created; the slot change is
        # not a cancellation of the booking.
        logger.info("Ignoring cancellation for rescheduled event %s", event_ref)
        return None

    cancellation = _mapping(body.get("cancellation"))
    return BookingEvent(
        type=BookingEventType.CANCEL,
        booking_id=booking_hint,
        external_ref=event_ref,
        payload=EventPayload(
            external_event_ref=event_ref,
            reason=cancellation.get("reason") or "canceled via scheduling provider",
        ),
        source=SOURCE,
    )


# ── Helpers ──────────────────────────────────────────────────────────


def _mapping(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _scheduled_event(body: dict[str, Any]) -> dict[str, Any]:
    """Current payloads nest the slot under ``scheduled_event``; older ones under ``event``."""
    for key in ("scheduled_event", "event"):
        value = body.get(key)
        if isinstance(value, dict):
            return value
    return {}


def _event_ref(scheduled: dict[str, Any]) -> str | None:
    """Prefer the explicit uuid, else the last path segment of the event URI."""
    if scheduled.get("uuid"):
        return str(scheduled["uuid"])
    uri = scheduled.get("uri")
    if isinstance(uri, str) and uri.rstrip("/"):
        return uri.rstrip("/").rsplit("/", 1)[-1]
    return None
