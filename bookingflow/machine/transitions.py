"""Booking lifecycle transition map.

The map lists the nominal target of every accepted (state, event) pair.
Guards, idempotent duplicates and the payment/scheduling merge rule live in
``bookingflow.machine.core``; this module only says what is legal.
"""

from __future__ import annotations

from bookingflow.models.enums import BookingEventType, BookingState

E = BookingEventType
S = BookingState

# Transition map: {current_state: {event: nominal_next_state}}
TRANSITIONS: dict[BookingState, dict[BookingEventType, BookingState]] = {
    S.IDLE: {
        E.SELECT_SESSION_TYPE: S.SESSION_TYPE_SELECTED,
    },
    S.SESSION_TYPE_SELECTED: {
        E.SELECT_SESSION_TYPE: S.SESSION_TYPE_SELECTED,
        E.SELECT_TIME: S.TIME_SELECTED,
        E.SCHEDULE_CONFIRMED: S.TIME_SELECTED,
    },
    S.TIME_SELECTED: {
        E.SELECT_TIME: S.TIME_SELECTED,
        E.SCHEDULE_CONFIRMED: S.TIME_SELECTED,
        E.INITIATE_PAYMENT: S.PAYMENT_PENDING,
        E.PAYMENT_SUCCEEDED: S.CONFIRMED,
        E.PAYMENT_FAILED: S.ERROR,
    },
    S.PAYMENT_PENDING: {
        E.SCHEDULE_CONFIRMED: S.PAYMENT_PENDING,
        E.PAYMENT_SUCCEEDED: S.CONFIRMED,
        E.PAYMENT_FAILED: S.ERROR,
        E.RECOVER: S.IDLE,
    },
    S.CONFIRMED: {
        E.MARK_COMPLETED: S.COMPLETED,
    },
    S.ERROR: {
        E.RECOVER: S.IDLE,  # default target, overridable by the event
    },
    S.COMPLETED: {},
    S.CANCELLED: {},
    S.EXPIRED: {},
}

# Accepted from every non-terminal state.
UNIVERSAL_TRANSITIONS: dict[BookingEventType, BookingState] = {
    E.CANCEL: S.CANCELLED,
    E.EXPIRE: S.EXPIRED,
    E.ERROR_OCCURRED: S.ERROR,
}

TERMINAL_STATES: frozenset[BookingState] = frozenset({
    S.CONFIRMED,
    S.COMPLETED,
    S.CANCELLED,
    S.EXPIRED,
})

# States a recovery token may be issued for.
RECOVERABLE_STATES: frozenset[BookingState] = frozenset({S.ERROR, S.PAYMENT_PENDING})

# States a recovery may force the booking into.
RECOVERY_TARGETS: frozenset[BookingState] = frozenset({
    S.IDLE,
    S.SESSION_TYPE_SELECTED,
    S.TIME_SELECTED,
})

# States the expiry sweep considers abandoned once inactive long enough.
EXPIRABLE_STATES: frozenset[BookingState] = frozenset({
    S.IDLE,
    S.SESSION_TYPE_SELECTED,
    S.TIME_SELECTED,
    S.PAYMENT_PENDING,
})


def is_terminal(state: BookingState) -> bool:
    """Check if a state accepts no further flow events."""
    return state in TERMINAL_STATES


def allowed_events(state: BookingState) -> list[BookingEventType]:
    """Return every event type accepted from ``state``."""
    events = list(TRANSITIONS.get(state, {}).keys())
    if not is_terminal(state):
        events.extend(e for e in UNIVERSAL_TRANSITIONS if e not in events)
    return events


def nominal_target(state: BookingState, event: BookingEventType) -> BookingState | None:
    """Look up the nominal next state, or None if the pair is not in the map."""
    target = TRANSITIONS.get(state, {}).get(event)
    if target is not None:
        return target
    if not is_terminal(state):
        return UNIVERSAL_TRANSITIONS.get(event)
    return None
