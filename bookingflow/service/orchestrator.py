"""Booking orchestrator — the entry points that drive the state machine.

Every write follows the same cycle:

    load booking → transition() → store.compare_and_swap(new, expected_version)

A ``ConcurrencyConflictError`` from the store restarts the whole cycle
against the fresh record, up to ``settings.booking.max_write_attempts``.
Side effects are published only after the commit and can never fail the
call that produced them.

Usage:
    from bookingflow.service.orchestrator import BookingOrchestrator

    orchestrator = BookingOrchestrator(store, token_store)
    created = await orchestrator.create_booking("builder_1", "intro_call")
    result = await orchestrator.receive_payment_webhook(body, signature_header)
"""

from __future__ import annotations

import dataclasses
import functools
import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any, TypeVar

from pydantic import ValidationError as PydanticValidationError

from bookingflow import events
from bookingflow.adapters.payments import PaymentWebhookType, parse_payment_webhook, translate_payment_event
from bookingflow.adapters.scheduling import (
    SchedulingWebhookType,
    parse_scheduling_webhook,
    translate_scheduling_event,
)
from bookingflow.config import Settings
from bookingflow.config import settings as default_settings
from bookingflow.errors import (
    BookingError,
    ConcurrencyConflictError,
    DuplicateBookingError,
    ForbiddenError,
    InvalidSignatureError,
    NotFoundError,
    ValidationError,
    classify_error,
    error_for_kind,
)
from bookingflow.machine.core import (
    SideEffect,
    Transition,
    TransitionContext,
    TransitionError,
    TransitionResult,
    transition,
)
from bookingflow.machine.transitions import EXPIRABLE_STATES, allowed_events, is_terminal
from bookingflow.models.enums import BookingAction, BookingEventType, BookingState, ErrorKind
from bookingflow.schemas.booking import (
    BOOKING_ID_PATTERN,
    Booking,
    BookingFailureResult,
    BookingEvent,
    CreateBookingRequest,
    CreateBookingResult,
    EventPayload,
    RecoveryResult,
    TransitionLogEntry,
    TransitionOutcome,
    WebhookResult,
)
from bookingflow.schemas.events import EventType, SystemEvent
from bookingflow.security.authorization import Actor, AllowAllAuthorizer, Authorizer
from bookingflow.security.masking import mask_reference, sanitize_booking
from bookingflow.security.rate_limiter import RateLimiter
from bookingflow.service.recovery import RECOVERY_FAILURE_MESSAGE, RecoveryService, build_recovery_url
from bookingflow.storage.base import BookingStore, RecoveryTokenStore

logger = logging.getLogger(__name__)

EmitFn = Callable[[SystemEvent], Awaitable[None]]
Step = Callable[[Booking], TransitionResult]
T = TypeVar("T")

_SOURCE_MODULE = "bookingflow.service.orchestrator"

# Events a caller may send directly. Payment and scheduling outcomes arrive
# only as signed webhooks, recovery only with a token, expiry and errors
# only from the system itself.
USER_EVENTS: frozenset[BookingEventType] = frozenset({
    BookingEventType.SELECT_SESSION_TYPE,
    BookingEventType.SELECT_TIME,
    BookingEventType.INITIATE_PAYMENT,
    BookingEventType.CANCEL,
    BookingEventType.MARK_COMPLETED,
})

_ACTIONS: dict[BookingEventType, BookingAction] = {
    BookingEventType.CANCEL: BookingAction.CANCEL,
    BookingEventType.MARK_COMPLETED: BookingAction.COMPLETE,
}

# Kinds that mean "try again later" rather than "this event is wrong".
_RETRY_KINDS: frozenset[ErrorKind] = frozenset({
    ErrorKind.CONCURRENCY_CONFLICT,
    ErrorKind.UNEXPECTED_ERROR,
})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_booking_id() -> str:
    return f"bk_{uuid.uuid4().hex[:24]}"


def _translate(event_type: str, raw_event: dict[str, Any]) -> BookingEvent | None:
    if PaymentWebhookType.parse(event_type) is not None:
        return translate_payment_event(event_type, raw_event)
    if SchedulingWebhookType.parse(event_type) is not None:
        return translate_scheduling_event(event_type, raw_event)
    return None


def _entry_point(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    """Let BookingErrors through; convert anything else to ``unexpected_error``."""

    @functools.wraps(func)
    async def wrapper(self: BookingOrchestrator, *args: Any, **kwargs: Any) -> T:
        try:
            return await func(self, *args, **kwargs)
        except BookingError:
            raise
        except Exception as exc:
            logger.exception("Unexpected error in %s", func.__name__)
            raise classify_error(exc) from exc

    return wrapper


class BookingOrchestrator:
    """Entry points for user actions, provider webhooks and recovery tokens."""

    def __init__(
        self,
        store: BookingStore,
        token_store: RecoveryTokenStore,
        *,
        emit: EmitFn = events.emit,
        authorizer: Authorizer | None = None,
        attempt_limiter: RateLimiter | None = None,
        clock: Callable[[], datetime] = utcnow,
        settings: Settings = default_settings,
    ) -> None:
        self._store = store
        self._emit = emit
        self._authorizer = authorizer or AllowAllAuthorizer()
        self._clock = clock
        self._settings = settings
        self._recovery = RecoveryService(
            token_store,
            ttl_minutes=settings.recovery.recovery_token_ttl_minutes,
            attempt_limiter=attempt_limiter,
            max_attempts=settings.recovery.recovery_max_attempts,
            attempt_window_seconds=settings.recovery.recovery_attempt_window_seconds,
        )

    # ── Creation ─────────────────────────────────────────────────────

    @_entry_point
    async def create_booking(
        self,
        builder_id: str,
        session_type_id: str,
        client_id: str | None = None,
        booking_id: str | None = None,
        actor: Actor | None = None,
    ) -> CreateBookingResult:
        """Create a booking in IDLE.

        Re-sending a creation with an existing ``booking_id`` returns the
        stored booking instead of creating a second one.
        """
        try:
            request = CreateBookingRequest(
                builder_id=builder_id,
                session_type_id=session_type_id,
                client_id=client_id,
                booking_id=booking_id,
            )
        except PydanticValidationError as exc:
            fields = ", ".join(str(err["loc"][0]) for err in exc.errors() if err.get("loc"))
            msg = f"invalid booking request: {fields}"
            raise ValidationError(msg, booking_id=booking_id) from None

        if not self._authorizer.authorize(actor, BookingAction.CREATE, None):
            raise ForbiddenError("not allowed to create bookings")

        if request.booking_id is not None:
            existing = await self._store.get(request.booking_id)
            if existing is not None:
                return self._existing_result(existing, request)

        now = self._clock()
        booking = Booking(
            booking_id=request.booking_id or new_booking_id(),
            builder_id=request.builder_id,
            client_id=request.client_id,
            session_type_id=request.session_type_id,
            payment_exempt=request.session_type_id in self._settings.booking.free_session_types,
            created_at=now,
            updated_at=now,
        )
        entry = TransitionLogEntry(
            booking_id=booking.booking_id,
            from_state=None,
            to_state=BookingState.IDLE,
            event_type="create",
            occurred_at=now,
            metadata={"source": "user"},
        )
        try:
            stored = await self._store.create(booking, entry)
        except DuplicateBookingError:
            # Concurrent retry of the same creation won the insert.
            existing = await self._store.get(booking.booking_id)
            if existing is None:
                raise
            return self._existing_result(existing, request)

        logger.info("Created booking %s for builder %s", stored.booking_id, stored.builder_id)
        await self._notify(
            EventType.BOOKING_CREATED,
            stored.booking_id,
            {"builder_id": stored.builder_id, "session_type_id": stored.session_type_id},
            actor,
        )
        return CreateBookingResult(booking_id=stored.booking_id, state=stored.state)

    @staticmethod
    def _existing_result(existing: Booking, request: CreateBookingRequest) -> CreateBookingResult:
        if (existing.builder_id, existing.session_type_id) != (request.builder_id, request.session_type_id):
            msg = "booking id is already used by a different booking"
            raise ValidationError(msg, booking_id=existing.booking_id)
        logger.info("Idempotent re-creation of booking %s", existing.booking_id)
        return CreateBookingResult(booking_id=existing.booking_id, state=existing.state, created=False)

    # ── User actions ─────────────────────────────────────────────────

    @_entry_point
    async def apply_event(self, event: BookingEvent, actor: Actor | None = None) -> TransitionOutcome:
        """Apply a user-initiated event.

        Raises:
            ValidationError / IllegalTransitionError: Rejected by the state machine.
            ForbiddenError: Not a user event, or the actor may not perform this action.
            NotFoundError: Unknown booking.
            ConcurrencyConflictError: Write attempts exhausted.
        """
        if not event.booking_id:
            raise ValidationError("event carries no booking id")
        if event.type not in USER_EVENTS:
            msg = f"{event.type.value} cannot be sent by a user"
            raise ForbiddenError(msg, booking_id=event.booking_id)
        action = _ACTIONS.get(event.type, BookingAction.UPDATE)

        def step(booking: Booking) -> TransitionResult:
            if not self._authorizer.authorize(actor, action, booking):
                msg = f"not allowed to {action.value} this booking"
                raise ForbiddenError(msg, booking_id=booking.booking_id)
            return transition(booking, event, self._context())

        _, result = await self._write(event.booking_id, step, label=event.type.value, event=event, actor=actor)
        if isinstance(result, TransitionError):
            raise error_for_kind(result.kind, result.message, booking_id=event.booking_id)
        return TransitionOutcome(
            booking_id=event.booking_id,
            previous_state=result.previous_state,
            current_state=result.next_state,
            payment_status=result.booking.payment_status,
            duplicate=result.duplicate,
        )

    @_entry_point
    async def claim_booking(self, booking_id: str, actor: Actor) -> TransitionOutcome:
        """Attach ``actor`` as the client of an anonymous booking."""

        def step(booking: Booking) -> TransitionResult:
            if booking.client_id == actor.user_id:
                return Transition(booking.state, booking.state, booking, duplicate=True, changed=False)
            if booking.client_id is not None:
                raise ForbiddenError("booking already belongs to another client", booking_id=booking_id)
            if is_terminal(booking.state):
                msg = f"booking in {booking.state.value} can no longer be claimed"
                raise ValidationError(msg, booking_id=booking_id)
            updated = booking.model_copy(update={"client_id": actor.user_id, "updated_at": self._clock()})
            effect = SideEffect(EventType.BOOKING_CLAIMED, {"client_id": actor.user_id})
            return Transition(booking.state, booking.state, updated, effects=(effect,))

        _, result = await self._write(booking_id, step, label="claim", actor=actor)
        if isinstance(result, TransitionError):
            raise error_for_kind(result.kind, result.message, booking_id=booking_id)
        return TransitionOutcome(
            booking_id=booking_id,
            previous_state=result.previous_state,
            current_state=result.next_state,
            payment_status=result.booking.payment_status,
            duplicate=result.duplicate,
        )

    # ── Webhooks ─────────────────────────────────────────────────────

    @_entry_point
    async def receive_payment_webhook(self, body: bytes, signature_header: str | None) -> WebhookResult | None:
        """Verify a raw payment webhook and process it."""
        try:
            event_type, raw = parse_payment_webhook(
                body, signature_header, secrets=self._settings.payments.webhook_secrets
            )
        except InvalidSignatureError as exc:
            await self._notify(EventType.WEBHOOK_REJECTED, None, {"provider": "payment", "reason": exc.message})
            raise
        return await self.handle_webhook(event_type, raw)

    @_entry_point
    async def receive_scheduling_webhook(self, body: bytes, signature_header: str | None) -> WebhookResult | None:
        """Verify a raw scheduling webhook and process it."""
        try:
            event_type, raw = parse_scheduling_webhook(
                body, signature_header, secrets=self._settings.scheduling.webhook_secrets
            )
        except InvalidSignatureError as exc:
            await self._notify(EventType.WEBHOOK_REJECTED, None, {"provider": "scheduling", "reason": exc.message})
            raise
        return await self.handle_webhook(event_type, raw)

    @_entry_point
    async def handle_webhook(self, event_type: str, raw_event: dict[str, Any]) -> WebhookResult | None:
        """Translate, resolve and apply an already-verified provider event.

        Returns None when the event type is not handled or no booking matches.
        A transition the state machine rejects is logged and reported as
        ``applied=False``: the webhook counts as handled so the provider does
        not retry it. Concurrency exhaustion and unexpected failures raise so
        the provider does retry.
        """
        try:
            event = _translate(event_type, raw_event)
        except PydanticValidationError as exc:
            # Redelivery cannot fix a malformed payload: drop it.
            logger.warning("Malformed %s webhook payload (%d invalid field(s))", event_type, exc.error_count())
            await self._notify(
                EventType.WEBHOOK_IGNORED, None, {"event_type": event_type, "reason": "malformed_payload"}
            )
            return None

        if event is None:
            await self._notify(EventType.WEBHOOK_IGNORED, None, {"event_type": event_type, "reason": "unmapped"})
            return None

        booking = await self._resolve(event)
        if booking is None:
            logger.warning(
                "No booking for %s webhook (ref=%s, hint=%s)",
                event_type,
                mask_reference(event.external_ref),
                event.booking_id,
            )
            await self._notify(EventType.WEBHOOK_IGNORED, None, {"event_type": event_type, "reason": "unknown_booking"})
            return None

        # A hint that disagrees with the ref owner is rejected by the state machine.
        event = event.model_copy(update={"booking_id": event.booking_id or booking.booking_id})

        def step(current: Booking) -> TransitionResult:
            return transition(current, event, self._context())

        try:
            loaded, result = await self._write(booking.booking_id, step, label=event.type.value, event=event)
        except NotFoundError:
            return None
        except BookingError as exc:
            if exc.kind in _RETRY_KINDS:
                raise
            return await self._rejected_webhook(booking, event, event_type, exc.kind, exc.message)

        if isinstance(result, TransitionError):
            return await self._rejected_webhook(loaded, event, event_type, result.kind, result.message)

        if result.duplicate:
            logger.info("Duplicate %s webhook for booking %s — no-op", event_type, booking.booking_id)
        return WebhookResult(
            booking_id=booking.booking_id,
            previous_state=result.previous_state,
            current_state=result.next_state,
            duplicate=result.duplicate,
        )

    async def _rejected_webhook(
        self, booking: Booking, event: BookingEvent, event_type: str, kind: ErrorKind, message: str
    ) -> WebhookResult:
        logger.warning(
            "Rejected %s webhook: %s (%s) %s",
            event_type,
            message,
            kind.value,
            sanitize_booking(booking),
        )
        if event.type == BookingEventType.PAYMENT_SUCCEEDED:
            # Funds were captured but no booking takes them: needs a refund.
            await self._notify(
                EventType.PAYMENT_ORPHANED,
                booking.booking_id,
                {
                    "external_session_ref": mask_reference(event.payload.external_session_ref),
                    "payment_intent_ref": mask_reference(event.payload.payment_intent_ref),
                    "state": booking.state.value,
                    "reason": message,
                },
            )
        await self._notify(
            EventType.WEBHOOK_REJECTED,
            booking.booking_id,
            {"event_type": event_type, "reason": kind.value, "state": booking.state.value},
        )
        return WebhookResult(
            booking_id=booking.booking_id,
            previous_state=booking.state,
            current_state=booking.state,
            applied=False,
            error=kind,
        )

    async def _resolve(self, event: BookingEvent) -> Booking | None:
        """External ref first, then the booking-id hint the provider echoed."""
        if event.external_ref:
            booking = await self._store.find_by_external_ref(event.external_ref)
            if booking is not None:
                return booking
        if event.booking_id and BOOKING_ID_PATTERN.match(event.booking_id):
            return await self._store.get(event.booking_id)
        return None

    # ── Failures ─────────────────────────────────────────────────────

    @_entry_point
    async def handle_booking_error(
        self, booking_id: str, exc: BaseException, actor: Actor | None = None
    ) -> BookingFailureResult:
        """Record a failure of the surrounding flow on the booking.

        For example a checkout session or calendar call that failed. Moves the
        booking to ERROR; when the failure is retryable a recovery link is
        issued so the client can pick up where they left off. A booking that
        is already terminal stays as it is.

        Usage:
            try:
                session = await create_checkout(booking)
            except Exception as exc:
                failure = await orchestrator.handle_booking_error(booking.booking_id, exc)
        """
        error = classify_error(exc, booking_id=booking_id)
        logger.error(
            "Booking %s failed: %s (%s, retryable=%s)",
            booking_id,
            error.message,
            error.kind.value,
            error.retryable,
        )
        event = BookingEvent(
            type=BookingEventType.ERROR_OCCURRED,
            booking_id=booking_id,
            payload=EventPayload(error_code=error.kind.value, error_message=error.message),
            source="error_handler",
        )

        def step(booking: Booking) -> TransitionResult:
            return transition(booking, event, self._context())

        loaded, result = await self._write(booking_id, step, label=event.type.value, event=event, actor=actor)
        if isinstance(result, TransitionError):
            logger.warning("Booking %s left in %s: %s", booking_id, loaded.state.value, result.message)
            return BookingFailureResult(
                booking_id=booking_id, state=loaded.state, error=error.kind, retryable=error.retryable
            )

        recovery_url = None
        if error.retryable and result.next_state == BookingState.ERROR:
            recovery_url = self.recovery_url(await self.issue_recovery_token(booking_id))
        return BookingFailureResult(
            booking_id=booking_id,
            state=result.next_state,
            error=error.kind,
            retryable=error.retryable,
            recovery_url=recovery_url,
        )

    # ── Recovery ─────────────────────────────────────────────────────

    @_entry_point
    async def issue_recovery_token(self, booking_id: str, target_state: BookingState | None = None) -> str:
        """Issue a recovery token for a booking in ERROR or PAYMENT_PENDING."""
        booking = await self._store.get(booking_id)
        if booking is None:
            msg = f"booking {booking_id} not found"
            raise NotFoundError(msg, booking_id=booking_id)
        token = await self._recovery.issue(booking, self._clock(), target_state)
        await self._notify(
            EventType.RECOVERY_TOKEN_ISSUED,
            booking_id,
            {"state": booking.state.value, "target_state": target_state.value if target_state else None},
        )
        return token

    def recovery_url(self, token: str) -> str:
        return build_recovery_url(self._settings.recovery.recovery_base_url, token)

    async def recover_booking_with_token(
        self, token: str, target_state: BookingState | None = None
    ) -> RecoveryResult:
        """Redeem a recovery token.

        Fails closed: any problem yields ``success=False`` with a generic
        message and nothing is written. A token whose transition fails is
        released so the client can try again.
        """
        try:
            claimed = await self._recovery.claim(token, self._clock())
        except BookingError as exc:
            return await self._recovery_failed(exc.kind, exc.booking_id, exc.message)
        except Exception:
            logger.exception("Unexpected error claiming recovery token")
            return await self._recovery_failed(ErrorKind.UNEXPECTED_ERROR, None, "claim failed")

        booking_id = claimed.booking_id
        target = target_state or claimed.target_state or BookingState.IDLE
        event = BookingEvent(
            type=BookingEventType.RECOVER,
            booking_id=booking_id,
            payload=EventPayload(target_state=target),
            source="recovery_token",
        )

        def step(booking: Booking) -> TransitionResult:
            return transition(booking, event, self._context())

        try:
            _, result = await self._write(booking_id, step, label=event.type.value, event=event)
        except BookingError as exc:
            await self._recovery.release(claimed.token_hash)
            return await self._recovery_failed(exc.kind, booking_id, exc.message)
        except Exception:
            logger.exception("Unexpected error recovering booking %s", booking_id)
            await self._recovery.release(claimed.token_hash)
            return await self._recovery_failed(ErrorKind.UNEXPECTED_ERROR, booking_id, "transition failed")

        if isinstance(result, TransitionError):
            await self._recovery.release(claimed.token_hash)
            return await self._recovery_failed(result.kind, booking_id, result.message)

        logger.info("Recovered booking %s into %s", booking_id, result.next_state.value)
        await self._notify(EventType.RECOVERY_TOKEN_REDEEMED, booking_id, {"target_state": target.value})
        return RecoveryResult(success=True, booking_id=booking_id, state=result.next_state)

    async def _recovery_failed(self, kind: ErrorKind, booking_id: str | None, detail: str) -> RecoveryResult:
        logger.warning("Recovery failed for booking %s: %s (%s)", booking_id, detail, kind.value)
        await self._notify(EventType.RECOVERY_TOKEN_REJECTED, booking_id, {"reason": kind.value})
        return RecoveryResult(success=False, booking_id=booking_id, error=kind, message=RECOVERY_FAILURE_MESSAGE)

    # ── Maintenance ──────────────────────────────────────────────────

    @_entry_point
    async def expire_stale_bookings(self, older_than: timedelta | None = None, limit: int = 100) -> list[str]:
        """Expire unfinished bookings nobody has touched since the cutoff.

        Returns the IDs that were expired. A booking that moved on in the
        meantime is skipped.
        """
        window = older_than or timedelta(minutes=self._settings.booking.stale_booking_minutes)
        cutoff = self._clock() - window
        stale = await self._store.list_stale(EXPIRABLE_STATES, cutoff, limit)

        expired: list[str] = []
        for booking in stale:
            event = BookingEvent(
                type=BookingEventType.EXPIRE,
                booking_id=booking.booking_id,
                payload=EventPayload(reason="inactive"),
                source="expiry_sweep",
            )

            def step(current: Booking, event: BookingEvent = event) -> TransitionResult:
                if current.updated_at >= cutoff:
                    return Transition(current.state, current.state, current, duplicate=True, changed=False)
                return transition(current, event, self._context())

            try:
                _, result = await self._write(booking.booking_id, step, label=event.type.value, event=event)
            except BookingError as exc:
                logger.warning("Could not expire booking %s: %s", booking.booking_id, exc.message)
                continue
            if isinstance(result, Transition) and result.next_state == BookingState.EXPIRED and result.changed:
                expired.append(booking.booking_id)

        if expired:
            logger.info("Expired %d stale booking(s)", len(expired))
        return expired

    # ── Queries ──────────────────────────────────────────────────────

    @_entry_point
    async def get_booking(self, booking_id: str, actor: Actor | None = None) -> Booking:
        booking = await self._store.get(booking_id)
        if booking is None:
            msg = f"booking {booking_id} not found"
            raise NotFoundError(msg, booking_id=booking_id)
        if not self._authorizer.authorize(actor, BookingAction.VIEW, booking):
            raise ForbiddenError("not allowed to view this booking", booking_id=booking_id)
        return booking

    async def get_allowed_events(self, booking_id: str, actor: Actor | None = None) -> list[BookingEventType]:
        booking = await self.get_booking(booking_id, actor)
        return allowed_events(booking.state)

    async def get_transition_history(
        self, booking_id: str, actor: Actor | None = None
    ) -> list[TransitionLogEntry]:
        await self.get_booking(booking_id, actor)
        return await self._store.history(booking_id)

    # ── Write cycle ──────────────────────────────────────────────────

    async def _write(
        self,
        booking_id: str,
        step: Step,
        *,
        label: str,
        event: BookingEvent | None = None,
        actor: Actor | None = None,
    ) -> tuple[Booking, TransitionResult]:
        """Run load → step → compare-and-swap until it sticks.

        Returns the loaded booking and the step's result; rejected and
        unchanged results are returned without writing.
        """
        attempts = max(self._settings.booking.max_write_attempts, 1)
        for attempt in range(1, attempts + 1):
            current = await self._store.get(booking_id)
            if current is None:
                msg = f"booking {booking_id} not found"
                raise NotFoundError(msg, booking_id=booking_id)

            result = step(current)
            if isinstance(result, TransitionError) or not result.changed:
                return current, result

            entry = TransitionLogEntry(
                booking_id=booking_id,
                from_state=current.state,
                to_state=result.next_state,
                event_type=label,
                occurred_at=result.booking.updated_at,
                metadata=self._log_metadata(event, actor, result),
            )
            try:
                stored = await self._store.compare_and_swap(result.booking, current.version, entry)
            except ConcurrencyConflictError:
                logger.info(
                    "Version conflict on booking %s (attempt %d/%d), retrying",
                    booking_id,
                    attempt,
                    attempts,
                )
                continue

            committed = dataclasses.replace(result, booking=stored)
            if committed.previous_state != committed.next_state:
                logger.info(
                    "Booking %s: %s -> %s (%s)",
                    booking_id,
                    committed.previous_state.value,
                    committed.next_state.value,
                    label,
                )
            for effect in committed.effects:
                await self._notify(effect.event_type, booking_id, effect.data, actor)
            return current, committed

        msg = f"booking {booking_id} kept changing; gave up after {attempts} attempts"
        raise ConcurrencyConflictError(msg, booking_id=booking_id)

    def _context(self) -> TransitionContext:
        return TransitionContext(now=self._clock(), free_session_types=self._settings.booking.free_session_types)

    @staticmethod
    def _log_metadata(event: BookingEvent | None, actor: Actor | None, result: Transition) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if event is not None:
            data["source"] = event.source
            if event.external_ref:
                data["external_ref"] = mask_reference(event.external_ref)
        if actor is not None:
            data["actor_id"] = actor.user_id
        if result.duplicate:
            data["late_delivery"] = True
        if result.booking.last_error is not None and result.next_state == BookingState.ERROR:
            data["error_code"] = result.booking.last_error.code
        return data

    async def _notify(
        self,
        event_type: EventType,
        booking_id: str | None,
        data: dict[str, Any],
        actor: Actor | None = None,
    ) -> None:
        """Publish a SystemEvent; failures are logged and swallowed."""
        try:
            await self._emit(SystemEvent(
                event_type=event_type,
                booking_id=booking_id,
                actor_id=actor.user_id if actor else None,
                data=data,
                source_module=_SOURCE_MODULE,
            ))
        except Exception:
            logger.exception("Failed to emit %s for booking %s", event_type.value, booking_id)
