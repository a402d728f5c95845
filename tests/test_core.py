"""Tests for the pure booking transition function.

Covers:
- Happy path IDLE → CONFIRMED, free sessions
- Event validation (booking id mismatch, missing slot)
- Idempotent re-delivery of terminal and provider events
- No resurrection out of terminal states
- Payment/scheduling race convergence
- Payment failure and token-driven recovery
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from bookingflow.machine.core import (
    Transition,
    TransitionContext,
    TransitionError,
    advance_payment,
    ready_to_confirm,
    transition,
)
from bookingflow.machine.transitions import allowed_events, is_terminal
from bookingflow.models.enums import BookingEventType, BookingState, ErrorKind, PaymentStatus
from bookingflow.schemas.booking import Booking, BookingEvent, EventPayload
from bookingflow.schemas.events import EventType

E = BookingEventType
S = BookingState

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
START = datetime(2026, 3, 10, 14, 0, tzinfo=timezone.utc)
END = START + timedelta(hours=1)
CTX = TransitionContext(now=NOW + timedelta(minutes=5))


# ── Helpers ──────────────────────────────────────────────────────────


def _booking(**overrides) -> Booking:
    data = {
        "booking_id": "bk1",
        "builder_id": "b1",
        "session_type_id": "s1",
        "created_at": NOW,
        "updated_at": NOW,
    }
    data.update(overrides)
    return Booking(**data)


def _event(event_type: BookingEventType, booking_id: str | None = "bk1", **payload) -> BookingEvent:
    return BookingEvent(type=event_type, booking_id=booking_id, payload=EventPayload(**payload))


def _time_selected(**overrides) -> Booking:
    data = {"state": S.TIME_SELECTED, "start_time": START, "end_time": END}
    data.update(overrides)
    return _booking(**data)


def _payment_pending(**overrides) -> Booking:
    data = {
        "state": S.PAYMENT_PENDING,
        "payment_status": PaymentStatus.PENDING,
        "external_session_ref": "cs_test_1",
    }
    data.update(overrides)
    return _time_selected(**data)


def _effect_types(result: Transition) -> list[EventType]:
    return [effect.event_type for effect in result.effects]


# ── Happy path ───────────────────────────────────────────────────────


class TestHappyPath:
    def test_select_session_type(self):
        result = transition(_booking(), _event(E.SELECT_SESSION_TYPE, session_type_id="s2"), CTX)
        assert isinstance(result, Transition)
        assert result.next_state == S.SESSION_TYPE_SELECTED
        assert result.booking.session_type_id == "s2"
        assert result.booking.updated_at == CTX.now
        assert EventType.BOOKING_STATE_CHANGED in _effect_types(result)

    def test_select_time_records_slot(self):
        booking = _booking(state=S.SESSION_TYPE_SELECTED)
        result = transition(
            booking,
            _event(E.SELECT_TIME, start_time=START, end_time=END, client_timezone="Europe/Rome"),
            CTX,
        )
        assert isinstance(result, Transition)
        assert result.next_state == S.TIME_SELECTED
        assert result.booking.start_time == START
        assert result.booking.client_timezone == "Europe/Rome"

    def test_initiate_payment(self):
        result = transition(_time_selected(), _event(E.INITIATE_PAYMENT, external_session_ref="cs_test_1"), CTX)
        assert isinstance(result, Transition)
        assert result.next_state == S.PAYMENT_PENDING
        assert result.booking.payment_status == PaymentStatus.PENDING
        assert result.booking.external_session_ref == "cs_test_1"

    def test_payment_succeeded_confirms(self):
        result = transition(
            _payment_pending(),
            _event(E.PAYMENT_SUCCEEDED, external_session_ref="cs_test_1", payment_intent_ref="pi_1"),
            CTX,
        )
        assert isinstance(result, Transition)
        assert result.next_state == S.CONFIRMED
        assert result.booking.payment_status == PaymentStatus.PAID
        assert result.booking.payment_intent_ref == "pi_1"
        types = _effect_types(result)
        assert EventType.BOOKING_CONFIRMED in types
        assert EventType.PAYMENT_STATUS_CHANGED in types

    def test_mark_completed(self):
        booking = _time_selected(state=S.CONFIRMED, payment_status=PaymentStatus.PAID)
        result = transition(booking, _event(E.MARK_COMPLETED), CTX)
        assert isinstance(result, Transition)
        assert result.next_state == S.COMPLETED

    def test_free_session_confirms_on_schedule(self):
        ctx = TransitionContext(now=CTX.now, free_session_types=frozenset({"intro"}))
        selected = transition(_booking(session_type_id="intro"), _event(E.SELECT_SESSION_TYPE), ctx)
        assert isinstance(selected, Transition)
        assert selected.booking.payment_exempt is True

        confirmed = transition(
            selected.booking,
            _event(E.SCHEDULE_CONFIRMED, external_event_ref="ev_1", start_time=START, end_time=END),
            ctx,
        )
        assert isinstance(confirmed, Transition)
        assert confirmed.next_state == S.CONFIRMED
        assert confirmed.booking.payment_status == PaymentStatus.UNPAID

    def test_free_session_rejects_payment(self):
        result = transition(
            _time_selected(payment_exempt=True),
            _event(E.INITIATE_PAYMENT, external_session_ref="cs_test_1"),
            CTX,
        )
        assert isinstance(result, TransitionError)
        assert result.kind == ErrorKind.VALIDATION_ERROR


# ── Validation ───────────────────────────────────────────────────────


class TestValidation:
    def test_booking_id_mismatch_rejected(self):
        result = transition(_booking(), _event(E.SELECT_SESSION_TYPE, booking_id="bk2"), CTX)
        assert isinstance(result, TransitionError)
        assert result.kind == ErrorKind.VALIDATION_ERROR

    def test_missing_booking_id_rejected(self):
        result = transition(_booking(), _event(E.SELECT_SESSION_TYPE, booking_id=None), CTX)
        assert isinstance(result, TransitionError)
        assert result.kind == ErrorKind.VALIDATION_ERROR

    def test_select_time_requires_ordered_slot(self):
        booking = _booking(state=S.SESSION_TYPE_SELECTED)
        result = transition(booking, _event(E.SELECT_TIME, start_time=END, end_time=START), CTX)
        assert isinstance(result, TransitionError)
        assert result.kind == ErrorKind.VALIDATION_ERROR

    def test_initiate_payment_requires_ref(self):
        result = transition(_time_selected(), _event(E.INITIATE_PAYMENT), CTX)
        assert isinstance(result, TransitionError)
        assert result.kind == ErrorKind.VALIDATION_ERROR

    def test_payment_for_other_session_is_illegal(self):
        result = transition(_payment_pending(), _event(E.PAYMENT_SUCCEEDED, external_session_ref="cs_other"), CTX)
        assert isinstance(result, TransitionError)
        assert result.kind == ErrorKind.ILLEGAL_TRANSITION

    def test_skipping_ahead_is_illegal(self):
        result = transition(_booking(), _event(E.INITIATE_PAYMENT, external_session_ref="cs_1"), CTX)
        assert isinstance(result, TransitionError)
        assert result.kind == ErrorKind.ILLEGAL_TRANSITION
        assert result.state == S.IDLE


# ── Idempotence ──────────────────────────────────────────────────────


class TestIdempotence:
    def test_payment_succeeded_twice(self):
        event = _event(E.PAYMENT_SUCCEEDED, external_session_ref="cs_test_1")
        first = transition(_payment_pending(), event, CTX)
        assert isinstance(first, Transition)

        second = transition(first.booking, event, CTX)
        assert isinstance(second, Transition)
        assert second.duplicate is True
        assert second.changed is False
        assert second.effects == ()
        assert second.next_state == S.CONFIRMED

    def test_cancel_twice(self):
        first = transition(_time_selected(), _event(E.CANCEL, reason="changed mind"), CTX)
        assert isinstance(first, Transition)
        second = transition(first.booking, _event(E.CANCEL), CTX)
        assert isinstance(second, Transition)
        assert second.duplicate is True
        assert second.booking.cancel_reason == "changed mind"

    def test_schedule_confirmed_twice(self):
        event = _event(E.SCHEDULE_CONFIRMED, external_event_ref="ev_1", start_time=START, end_time=END)
        first = transition(_booking(state=S.SESSION_TYPE_SELECTED), event, CTX)
        assert isinstance(first, Transition)
        second = transition(first.booking, event, CTX)
        assert isinstance(second, Transition)
        assert second.duplicate is True
        assert second.effects == ()

    def test_initiate_payment_repeated(self):
        result = transition(_payment_pending(), _event(E.INITIATE_PAYMENT, external_session_ref="cs_test_1"), CTX)
        assert isinstance(result, Transition)
        assert result.duplicate is True

    def test_payment_failed_repeated_in_error(self):
        booking = _payment_pending(state=S.ERROR, payment_status=PaymentStatus.FAILED)
        result = transition(booking, _event(E.PAYMENT_FAILED, external_session_ref="cs_test_1"), CTX)
        assert isinstance(result, Transition)
        assert result.duplicate is True


# ── No resurrection ──────────────────────────────────────────────────


def _terminal(state: BookingState) -> Booking:
    return _time_selected(
        state=state,
        payment_status=PaymentStatus.PAID,
        external_session_ref="cs_test_1",
        external_event_ref="ev_1",
    )


class TestNoResurrection:
    @pytest.mark.parametrize(
        ("state", "event"),
        [
            (S.CONFIRMED, _event(E.CANCEL)),
            (S.CONFIRMED, _event(E.EXPIRE)),
            (S.CONFIRMED, _event(E.SELECT_TIME, start_time=START, end_time=END)),
            (S.CONFIRMED, _event(E.PAYMENT_FAILED, external_session_ref="cs_other")),
            (S.CONFIRMED, _event(E.RECOVER)),
            (S.CANCELLED, _event(E.SELECT_SESSION_TYPE, session_type_id="s2")),
            (S.CANCELLED, _event(E.MARK_COMPLETED)),
            (S.CANCELLED, _event(E.RECOVER)),
            (S.COMPLETED, _event(E.CANCEL)),
            (S.COMPLETED, _event(E.PAYMENT_FAILED, external_session_ref="cs_test_1")),
            (S.EXPIRED, _event(E.SELECT_TIME, start_time=START, end_time=END)),
        ],
    )
    def test_terminal_rejects_new_events(self, state, event):
        result = transition(_terminal(state), event, CTX)
        assert isinstance(result, TransitionError)
        assert result.kind == ErrorKind.ILLEGAL_TRANSITION
        assert result.state == state

    def test_payment_after_cancel_is_rejected(self):
        cancelled = _payment_pending(state=S.CANCELLED)
        result = transition(cancelled, _event(E.PAYMENT_SUCCEEDED, external_session_ref="cs_test_1"), CTX)
        assert isinstance(result, TransitionError)
        assert result.kind == ErrorKind.ILLEGAL_TRANSITION

    def test_terminal_helpers(self):
        assert is_terminal(S.CONFIRMED)
        assert not is_terminal(S.ERROR)
        assert allowed_events(S.CONFIRMED) == [E.MARK_COMPLETED]
        assert allowed_events(S.COMPLETED) == []
        assert E.RECOVER in allowed_events(S.ERROR)
        assert E.CANCEL in allowed_events(S.ERROR)


# ── Race convergence ─────────────────────────────────────────────────


class TestRaceConvergence:
    def _schedule(self, **payload) -> BookingEvent:
        data = {"external_event_ref": "ev_1", "start_time": START, "end_time": END}
        data.update(payload)
        return _event(E.SCHEDULE_CONFIRMED, **data)

    def test_payment_then_schedule(self):
        paid = transition(_time_selected(), _event(E.PAYMENT_SUCCEEDED, external_session_ref="cs_1"), CTX)
        assert isinstance(paid, Transition)
        assert paid.next_state == S.CONFIRMED

        late = transition(paid.booking, self._schedule(), CTX)
        assert isinstance(late, Transition)
        assert late.next_state == S.CONFIRMED
        assert late.duplicate is True
        assert late.changed is True
        assert late.effects == ()
        assert late.booking.external_event_ref == "ev_1"

    def test_schedule_then_payment(self):
        scheduled = transition(_time_selected(), self._schedule(), CTX)
        assert isinstance(scheduled, Transition)
        assert scheduled.next_state == S.TIME_SELECTED

        paid = transition(scheduled.booking, _event(E.PAYMENT_SUCCEEDED, external_session_ref="cs_1"), CTX)
        assert isinstance(paid, Transition)
        assert paid.next_state == S.CONFIRMED
        assert _effect_types(paid).count(EventType.BOOKING_CONFIRMED) == 1

    def test_schedule_while_payment_pending_then_paid(self):
        scheduled = transition(_payment_pending(), self._schedule(), CTX)
        assert isinstance(scheduled, Transition)
        assert scheduled.next_state == S.PAYMENT_PENDING

        paid = transition(scheduled.booking, _event(E.PAYMENT_SUCCEEDED, external_session_ref="cs_test_1"), CTX)
        assert isinstance(paid, Transition)
        assert paid.next_state == S.CONFIRMED

    def test_late_schedule_with_other_slot_rejected(self):
        confirmed = _time_selected(state=S.CONFIRMED, payment_status=PaymentStatus.PAID)
        other_slot = self._schedule(start_time=START + timedelta(days=1), end_time=END + timedelta(days=1))
        result = transition(confirmed, other_slot, CTX)
        assert isinstance(result, TransitionError)
        assert result.kind == ErrorKind.ILLEGAL_TRANSITION

    def test_payment_without_slot_rejected(self):
        booking = _booking(state=S.TIME_SELECTED)
        result = transition(booking, _event(E.PAYMENT_SUCCEEDED, external_session_ref="cs_1"), CTX)
        assert isinstance(result, TransitionError)
        assert result.kind == ErrorKind.VALIDATION_ERROR


# ── Payment failure ──────────────────────────────────────────────────


class TestPaymentFailure:
    def test_failure_moves_to_error_and_keeps_slot(self):
        result = transition(
            _payment_pending(),
            _event(E.PAYMENT_FAILED, external_session_ref="cs_test_1", error_code="card_declined"),
            CTX,
        )
        assert isinstance(result, Transition)
        assert result.next_state == S.ERROR
        assert result.booking.payment_status == PaymentStatus.FAILED
        assert result.booking.start_time == START
        assert result.booking.last_error is not None
        assert result.booking.last_error.code == "card_declined"
        assert EventType.BOOKING_FAILED in _effect_types(result)

    def test_payment_status_only_moves_forward(self):
        assert advance_payment(PaymentStatus.UNPAID, PaymentStatus.FAILED) == PaymentStatus.UNPAID
        assert advance_payment(PaymentStatus.PAID, PaymentStatus.PENDING) == PaymentStatus.PAID
        assert advance_payment(PaymentStatus.PENDING, PaymentStatus.FAILED) == PaymentStatus.FAILED
        assert advance_payment(PaymentStatus.FAILED, PaymentStatus.PAID) == PaymentStatus.FAILED

    def test_ready_to_confirm(self):
        assert ready_to_confirm(_time_selected(payment_status=PaymentStatus.PAID))
        assert ready_to_confirm(_time_selected(payment_exempt=True))
        assert not ready_to_confirm(_time_selected())
        assert not ready_to_confirm(_booking(payment_status=PaymentStatus.PAID))


# ── Recovery ─────────────────────────────────────────────────────────


class TestRecover:
    def _errored(self) -> Booking:
        failed = transition(
            _payment_pending(),
            _event(E.PAYMENT_FAILED, external_session_ref="cs_test_1"),
            CTX,
        )
        assert isinstance(failed, Transition)
        return failed.booking

    def test_recover_defaults_to_idle(self):
        result = transition(self._errored(), _event(E.RECOVER), CTX)
        assert isinstance(result, Transition)
        assert result.next_state == S.IDLE
        assert result.booking.payment_status == PaymentStatus.UNPAID
        assert result.booking.external_session_ref is None
        assert result.booking.superseded_session_refs == ("cs_test_1",)
        assert result.booking.last_error is None
        assert result.booking.start_time == START
        assert EventType.BOOKING_RECOVERED in _effect_types(result)

    def test_recover_to_time_selected(self):
        result = transition(self._errored(), _event(E.RECOVER, target_state=S.TIME_SELECTED), CTX)
        assert isinstance(result, Transition)
        assert result.next_state == S.TIME_SELECTED

    def test_recover_into_confirmed_rejected(self):
        result = transition(self._errored(), _event(E.RECOVER, target_state=S.CONFIRMED), CTX)
        assert isinstance(result, TransitionError)
        assert result.kind == ErrorKind.VALIDATION_ERROR

    def test_recover_to_time_selected_needs_slot(self):
        booking = _booking(state=S.ERROR)
        result = transition(booking, _event(E.RECOVER, target_state=S.TIME_SELECTED), CTX)
        assert isinstance(result, TransitionError)
        assert result.kind == ErrorKind.VALIDATION_ERROR

    def test_failure_for_superseded_session_is_noop(self):
        recovered = transition(self._errored(), _event(E.RECOVER, target_state=S.TIME_SELECTED), CTX)
        assert isinstance(recovered, Transition)

        stale = transition(
            recovered.booking,
            _event(E.PAYMENT_FAILED, external_session_ref="cs_test_1", error_code="checkout_expired"),
            CTX,
        )
        assert isinstance(stale, Transition)
        assert stale.duplicate is True
        assert stale.next_state == S.TIME_SELECTED

    def test_success_for_superseded_session_is_rejected(self):
        recovered = transition(self._errored(), _event(E.RECOVER, target_state=S.TIME_SELECTED), CTX)
        assert isinstance(recovered, Transition)

        orphaned = transition(
            recovered.booking,
            _event(E.PAYMENT_SUCCEEDED, external_session_ref="cs_test_1"),
            CTX,
        )
        assert isinstance(orphaned, TransitionError)
        assert orphaned.kind == ErrorKind.ILLEGAL_TRANSITION
        assert orphaned.state == S.TIME_SELECTED

    def test_new_checkout_after_recovery(self):
        recovered = transition(self._errored(), _event(E.RECOVER, target_state=S.TIME_SELECTED), CTX)
        assert isinstance(recovered, Transition)
        result = transition(recovered.booking, _event(E.INITIATE_PAYMENT, external_session_ref="cs_test_2"), CTX)
        assert isinstance(result, Transition)
        assert result.next_state == S.PAYMENT_PENDING
        assert result.booking.external_session_ref == "cs_test_2"
