"""Capability check for user-initiated booking actions.

The identity layer (session auth on the host application) supplies an
``Actor``; the booking core only asks ``authorize(actor, action, booking)``
and never compares role strings itself.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

from bookingflow.models.enums import BookingAction
from bookingflow.schemas.booking import Booking

logger = logging.getLogger(__name__)

ADMIN_ROLE = "admin"
BUILDER_ROLE = "builder"
CLIENT_ROLE = "client"


@dataclass(frozen=True)
class Actor:
    """Authenticated caller as supplied by the identity layer."""

    user_id: str
    roles: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_admin(self) -> bool:
        return ADMIN_ROLE in self.roles


class Authorizer(Protocol):
    """Capability-check interface injected into the orchestrator."""

    def authorize(self, actor: Actor | None, action: BookingAction, booking: Booking | None) -> bool: ...


class AllowAllAuthorizer:
    """Authorizer for trusted internal callers (jobs, webhooks, tests)."""

    def authorize(self, actor: Actor | None, action: BookingAction, booking: Booking | None) -> bool:
        return True


class RoleAuthorizer:
    """Default ownership rules.

    - admins may do anything
    - the booking's builder may view, cancel and complete it
    - a client may act on an anonymous booking or one they own
    - anonymous callers may only create bookings and act on anonymous ones
    """

    _BUILDER_ACTIONS: frozenset[BookingAction] = frozenset({
        BookingAction.VIEW,
        BookingAction.CANCEL,
        BookingAction.COMPLETE,
    })

    def authorize(self, actor: Actor | None, action: BookingAction, booking: Booking | None) -> bool:
        if action == BookingAction.CREATE:
            return True
        if actor is not None and actor.is_admin:
            return True
        if booking is None:
            return False

        if actor is not None and actor.user_id == booking.builder_id:
            return action in self._BUILDER_ACTIONS
        if action == BookingAction.COMPLETE:
            return False

        if booking.client_id is None:
            return True
        allowed = actor is not None and actor.user_id == booking.client_id
        if not allowed:
            logger.info(
                "Denied %s on booking %s for actor %s",
                action.value,
                booking.booking_id,
                actor.user_id if actor else None,
            )
        return allowed
