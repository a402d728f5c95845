"""Pure transition function for the booking lifecycle.

``transition(booking, event, context)`` maps the loaded booking and one
canonical event to either a ``Transition`` (new booking copy + side effects)
or a ``TransitionError``. No I/O, no clock reads: ``context.now`` is the only
time source, so the same inputs always give the same result.

Expected domain conditions (illegal transition, malformed event, duplicate
delivery) are returned, never raised.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from bookingflow.machine.transitions import RECOVERY_TARGETS, nominal_target
from bookingflow.models.enums import BookingEventType, BookingState, ErrorKind, PaymentStatus
from bookingflow.schemas.booking import Booking, BookingErrorInfo, BookingEvent
from bookingflow.schemas.events import EventType

E = BookingEventType
S = BookingState


@dataclass(frozen=True)
class TransitionContext:
    """Inputs the core needs besides the booking and the event."""

    now: datetime
    free_session_types: frozenset[str] = frozenset()


@dataclass(frozen=True)
class SideEffect:
    """A SystemEvent to publish once the transition has been committed."""

    event_type: EventType
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Transition:
    """Accepted transition.

    ``duplicate`` marks an idempotent re-delivery: the state is unchanged and
    there are no effects. ``changed`` tells the caller whether ``booking``
    differs from the loaded record and must be persisted.
    """

    previous_state: BookingState
    next_state: BookingState
    booking: Booking
    effects: tuple[SideEffect, ...] = ()
    duplicate: bool = False
    changed: bool = True


@dataclass(frozen=True)
class TransitionError:
    """Rejected transition. The booking must not be persisted."""

    kind: ErrorKind
    message: str
    state: BookingState
    event_type: BookingEventType


TransitionResult = Transition | TransitionError

_PAYMENT_ORDER: dict[PaymentStatus, int] = {
    PaymentStatus.UNPAID: 0,
    PaymentStatus.PENDING: 1,
    PaymentStatus.PAID: 2,
}

_STATE_EFFECTS: dict[BookingState, EventType] = {
    S.CONFIRMED: EventType.BOOKING_CONFIRMED,
    S.COMPLETED: EventType.BOOKING_COMPLETED,
    S.CANCELLED: EventType.BOOKING_CANCELLED,
    S.EXPIRED: EventType.BOOKING_EXPIRED,
    S.ERROR: EventType.BOOKING_FAILED,
}

_STALE_PAYMENT_EVENTS: frozenset[BookingEventType] = frozenset({
    E.INITIATE_PAYMENT,
    E.PAYMENT_FAILED,
})


# ── Public API ───────────────────────────────────────────────────────


def transition(booking: Booking, event: BookingEvent, context: TransitionContext) -> TransitionResult:
    """Compute the outcome of applying ``event`` to ``booking``."""
    if not event.booking_id:
        return _reject(booking, event, ErrorKind.VALIDATION_ERROR, "event carries no booking id")
    if event.booking_id != booking.booking_id:
        return _reject(
            booking,
            event,
            ErrorKind.VALIDATION_ERROR,
            f"event booking id {event.booking_id} does not match booking {booking.booking_id}",
        )

    if is_orphaned_payment(booking, event):
        return _reject(
            booking,
            event,
            ErrorKind.ILLEGAL_TRANSITION,
            "payment captured on a superseded checkout session",
        )

    if is_duplicate(booking, event):
        return Transition(
            previous_state=booking.state,
            next_state=booking.state,
            booking=booking,
            duplicate=True,
            changed=False,
        )

    target = nominal_target(booking.state, event.type)
    if target is None:
        absorbed = _absorb_late_schedule(booking, event, context)
        if absorbed is not None:
            return absorbed
        return _reject(
            booking,
            event,
            ErrorKind.ILLEGAL_TRANSITION,
            f"{event.type.value} is not allowed from {booking.state.value}",
        )

    handler = _HANDLERS[event.type]
    result = handler(booking, event, context, target)
    if isinstance(result, TransitionError):
        return result

    updated = result.model_copy(update={"updated_at": context.now})
    return Transition(
        previous_state=booking.state,
        next_state=updated.state,
        booking=updated,
        effects=_effects(booking, updated, event),
    )


def is_duplicate(booking: Booking, event: BookingEvent) -> bool:
    """Check whether ``event`` repeats something already applied to ``booking``.

    Webhook delivery is at-least-once, so these must be no-ops rather than errors.
    Failed or initiated payments on a superseded ref are stale and count as
    duplicates. A success on one is not: see ``is_orphaned_payment``.
    """
    p = event.payload
    session_ref = p.external_session_ref

    if event.type in _STALE_PAYMENT_EVENTS and session_ref and session_ref in booking.superseded_session_refs:
        return True

    if event.type == E.PAYMENT_SUCCEEDED:
        return booking.payment_status == PaymentStatus.PAID and (
            session_ref is None or session_ref == booking.external_session_ref
        )
    if event.type == E.PAYMENT_FAILED:
        return (
            booking.state == S.ERROR
            and session_ref is not None
            and session_ref == booking.external_session_ref
        )
    if event.type == E.SCHEDULE_CONFIRMED:
        return p.external_event_ref is not None and p.external_event_ref == booking.external_event_ref
    if event.type == E.INITIATE_PAYMENT:
        return booking.state == S.PAYMENT_PENDING and session_ref == booking.external_session_ref
    if event.type == E.SELECT_SESSION_TYPE:
        return booking.state == S.SESSION_TYPE_SELECTED and p.session_type_id in (None, booking.session_type_id)

    repeated_terminal = {
        E.CANCEL: S.CANCELLED,
        E.EXPIRE: S.EXPIRED,
        E.MARK_COMPLETED: S.COMPLETED,
        E.ERROR_OCCURRED: S.ERROR,
    }
    return repeated_terminal.get(event.type) == booking.state


def is_orphaned_payment(booking: Booking, event: BookingEvent) -> bool:
    """A payment succeeded for a checkout session the booking has already abandoned.

    The money was captured, so this is never a silent no-op.
    """
    ref = event.payload.external_session_ref
    return event.type == E.PAYMENT_SUCCEEDED and ref is not None and ref in booking.superseded_session_refs


def ready_to_confirm(booking: Booking) -> bool:
    """A booking may be CONFIRMED once it has a slot and is paid or payment-exempt."""
    return booking.has_slot and (booking.payment_status == PaymentStatus.PAID or booking.payment_exempt)


def advance_payment(current: PaymentStatus, target: PaymentStatus) -> PaymentStatus:
    """Move the payment sub-state forward only.

    ``failed`` is reachable from ``pending`` alone; nothing else regresses.
    """
    if target == PaymentStatus.FAILED:
        return PaymentStatus.FAILED if current == PaymentStatus.PENDING else current
    if current == PaymentStatus.FAILED:
        return current
    return target if _PAYMENT_ORDER[target] > _PAYMENT_ORDER[current] else current


# ── Event handlers ───────────────────────────────────────────────────
# Each handler gets the nominal target from the transition map and returns
# the updated booking (state included) or a TransitionError.

Handler = Callable[[Booking, BookingEvent, TransitionContext, BookingState], "Booking | TransitionError"]


def _select_session_type(b: Booking, e: BookingEvent, ctx: TransitionContext, target: BookingState) -> Booking:
    session_type_id = e.payload.session_type_id or b.session_type_id
    return b.model_copy(update={
        "state": target,
        "session_type_id": session_type_id,
        "payment_exempt": session_type_id in ctx.free_session_types,
    })


def _select_time(
    b: Booking, e: BookingEvent, ctx: TransitionContext, target: BookingState
) -> Booking | TransitionError:
    p = e.payload
    if p.start_time is None or p.end_time is None:
        return _reject(b, e, ErrorKind.VALIDATION_ERROR, "start_time and end_time are required")
    if p.end_time <= p.start_time:
        return _reject(b, e, ErrorKind.VALIDATION_ERROR, "end_time must be after start_time")
    if b.external_event_ref and (p.start_time, p.end_time) != (b.start_time, b.end_time):
        return _reject(b, e, ErrorKind.ILLEGAL_TRANSITION, "slot already confirmed by the scheduling provider")
    return b.model_copy(update={
        "state": target,
        "start_time": p.start_time,
        "end_time": p.end_time,
        "client_timezone": p.client_timezone or b.client_timezone,
    })


def _schedule_confirmed(
    b: Booking, e: BookingEvent, ctx: TransitionContext, target: BookingState
) -> Booking | TransitionError:
    p = e.payload
    if not p.external_event_ref:
        return _reject(b, e, ErrorKind.VALIDATION_ERROR, "scheduling event reference is required")
    if b.external_event_ref and b.external_event_ref != p.external_event_ref:
        return _reject(b, e, ErrorKind.ILLEGAL_TRANSITION, "booking already owns another scheduling event")

    start = p.start_time or b.start_time
    end = p.end_time or b.end_time
    if start is None or end is None or end <= start:
        return _reject(b, e, ErrorKind.VALIDATION_ERROR, "scheduling event carries no valid time slot")

    updated = b.model_copy(update={
        "external_event_ref": p.external_event_ref,
        "start_time": start,
        "end_time": end,
        "client_timezone": p.client_timezone or b.client_timezone,
        "state": target,
    })
    # Payment may already have landed: merge instead of waiting for a sequence.
    if ready_to_confirm(updated):
        updated = updated.model_copy(update={"state": S.CONFIRMED})
    return updated


def _initiate_payment(
    b: Booking, e: BookingEvent, ctx: TransitionContext, target: BookingState
) -> Booking | TransitionError:
    ref = e.payload.external_session_ref
    if not ref:
        return _reject(b, e, ErrorKind.VALIDATION_ERROR, "checkout session reference is required")
    if b.payment_exempt:
        return _reject(b, e, ErrorKind.VALIDATION_ERROR, "session type does not require payment")
    if b.external_session_ref and b.external_session_ref != ref:
        return _reject(b, e, ErrorKind.ILLEGAL_TRANSITION, "booking already owns another checkout session")
    return b.model_copy(update={
        "state": target,
        "external_session_ref": ref,
        "payment_status": advance_payment(b.payment_status, PaymentStatus.PENDING),
    })


def _payment_succeeded(
    b: Booking, e: BookingEvent, ctx: TransitionContext, target: BookingState
) -> Booking | TransitionError:
    p = e.payload
    ref = p.external_session_ref
    if b.external_session_ref and ref and b.external_session_ref != ref:
        return _reject(b, e, ErrorKind.ILLEGAL_TRANSITION, "payment belongs to another checkout session")
    updated = b.model_copy(update={
        "state": target,
        "external_session_ref": b.external_session_ref or ref,
        "payment_intent_ref": b.payment_intent_ref or p.payment_intent_ref,
        "payment_status": advance_payment(b.payment_status, PaymentStatus.PAID),
    })
    if not ready_to_confirm(updated):
        return _reject(b, e, ErrorKind.VALIDATION_ERROR, "cannot confirm a booking without a time slot")
    return updated


def _payment_failed(
    b: Booking, e: BookingEvent, ctx: TransitionContext, target: BookingState
) -> Booking | TransitionError:
    p = e.payload
    ref = p.external_session_ref
    if b.external_session_ref and ref and b.external_session_ref != ref:
        return _reject(b, e, ErrorKind.ILLEGAL_TRANSITION, "failure belongs to another checkout session")
    # Slot and session data are kept so recovery can resume instead of restarting.
    return b.model_copy(update={
        "state": target,
        "external_session_ref": b.external_session_ref or ref,
        "payment_intent_ref": b.payment_intent_ref or p.payment_intent_ref,
        "payment_status": advance_payment(b.payment_status, PaymentStatus.FAILED),
        "last_error": BookingErrorInfo(
            code=p.error_code or "payment_failed",
            message=p.error_message or "",
            source=e.source,
            external_ref=ref,
            occurred_at=ctx.now,
        ),
    })


def _cancel(b: Booking, e: BookingEvent, ctx: TransitionContext, target: BookingState) -> Booking:
    return b.model_copy(update={"state": target, "cancel_reason": e.payload.reason or b.cancel_reason})


def _expire(b: Booking, e: BookingEvent, ctx: TransitionContext, target: BookingState) -> Booking:
    return b.model_copy(update={"state": target})


def _error_occurred(b: Booking, e: BookingEvent, ctx: TransitionContext, target: BookingState) -> Booking:
    p = e.payload
    return b.model_copy(update={
        "state": target,
        "last_error": BookingErrorInfo(
            code=p.error_code or "error_occurred",
            message=p.error_message or "",
            source=e.source,
            occurred_at=ctx.now,
        ),
    })


def _mark_completed(b: Booking, e: BookingEvent, ctx: TransitionContext, target: BookingState) -> Booking:
    return b.model_copy(update={"state": target})


def _recover(
    b: Booking, e: BookingEvent, ctx: TransitionContext, target: BookingState
) -> Booking | TransitionError:
    requested = e.payload.target_state or target
    if requested not in RECOVERY_TARGETS:
        return _reject(b, e, ErrorKind.VALIDATION_ERROR, f"cannot recover into {requested.value}")
    if requested == S.TIME_SELECTED and not b.has_slot:
        return _reject(b, e, ErrorKind.VALIDATION_ERROR, "no time slot to resume from")

    superseded = b.superseded_session_refs
    if b.external_session_ref:
        superseded = (*superseded, b.external_session_ref)

    # Administrative reset: the abandoned checkout ref is retired so the next
    # payment attempt gets its own reference; slot and scheduling data stay.
    return b.model_copy(update={
        "state": requested,
        "payment_status": PaymentStatus.UNPAID,
        "external_session_ref": None,
        "superseded_session_refs": superseded,
        "last_error": None,
    })


_HANDLERS: dict[BookingEventType, Handler] = {
    E.SELECT_SESSION_TYPE: _select_session_type,
    E.SELECT_TIME: _select_time,
    E.SCHEDULE_CONFIRMED: _schedule_confirmed,
    E.INITIATE_PAYMENT: _initiate_payment,
    E.PAYMENT_SUCCEEDED: _payment_succeeded,
    E.PAYMENT_FAILED: _payment_failed,
    E.CANCEL: _cancel,
    E.EXPIRE: _expire,
    E.ERROR_OCCURRED: _error_occurred,
    E.MARK_COMPLETED: _mark_completed,
    E.RECOVER: _recover,
}


# ── Helpers ──────────────────────────────────────────────────────────


def _absorb_late_schedule(b: Booking, e: BookingEvent, ctx: TransitionContext) -> Transition | None:
    """Record a scheduling confirmation that lost the race to the payment.

    The booking is already CONFIRMED with the same slot; the event ref is
    stored and nothing else happens.
    """
    p = e.payload
    if e.type != E.SCHEDULE_CONFIRMED or b.state != S.CONFIRMED:
        return None
    if b.external_event_ref is not None or not p.external_event_ref:
        return None
    if p.start_time is not None and p.start_time != b.start_time:
        return None
    if p.end_time is not None and p.end_time != b.end_time:
        return None

    updated = b.model_copy(update={"external_event_ref": p.external_event_ref, "updated_at": ctx.now})
    return Transition(
        previous_state=b.state,
        next_state=b.state,
        booking=updated,
        duplicate=True,
        changed=True,
    )


def _effects(old: Booking, new: Booking, event: BookingEvent) -> tuple[SideEffect, ...]:
    effects: list[SideEffect] = []
    if new.state != old.state:
        effects.append(SideEffect(EventType.BOOKING_STATE_CHANGED, {
            "from_state": old.state.value,
            "to_state": new.state.value,
            "event": event.type.value,
        }))
        specific = _STATE_EFFECTS.get(new.state)
        if specific is not None:
            data: dict[str, Any] = {"event": event.type.value}
            if new.state == S.ERROR and new.last_error is not None:
                data["error_code"] = new.last_error.code
            if new.state == S.CANCELLED and new.cancel_reason:
                data["reason"] = new.cancel_reason
            effects.append(SideEffect(specific, data))
    if new.payment_status != old.payment_status:
        effects.append(SideEffect(EventType.PAYMENT_STATUS_CHANGED, {
            "from_status": old.payment_status.value,
            "to_status": new.payment_status.value,
        }))
    if event.type == E.RECOVER:
        effects.append(SideEffect(EventType.BOOKING_RECOVERED, {
            "from_state": old.state.value,
            "to_state": new.state.value,
        }))
    return tuple(effects)


def _reject(b: Booking, e: BookingEvent, kind: ErrorKind, message: str) -> TransitionError:
    return TransitionError(kind=kind, message=message, state=b.state, event_type=e.type)
