"""HTTP surface — FastAPI routers over BookingOrchestrator.

Routes stay thin: parse the request, call one orchestrator entry point,
shape the response. The orchestrator instance lives on ``app.state`` and is
wired in ``main.lifespan``.

Identity comes from the host's auth proxy via ``X-User-Id`` and
``X-User-Roles`` headers.
"""
# ruff: noqa: B008

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Header, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from bookingflow.errors import PUBLIC_FAILURE_MESSAGE, BookingError
from bookingflow.models.enums import BookingEventType, BookingState, ErrorKind
from bookingflow.schemas.booking import Booking, BookingEvent, EventPayload
from bookingflow.security.authorization import Actor
from bookingflow.service.orchestrator import BookingOrchestrator

logger = logging.getLogger(__name__)

booking_router = APIRouter(prefix="/bookings", tags=["bookings"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])

STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION_ERROR: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.ILLEGAL_TRANSITION: status.HTTP_409_CONFLICT,
    ErrorKind.INVALID_SIGNATURE: status.HTTP_400_BAD_REQUEST,
    ErrorKind.CONCURRENCY_CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.TOKEN_EXPIRED: status.HTTP_410_GONE,
    ErrorKind.TOKEN_ALREADY_USED: status.HTTP_410_GONE,
    ErrorKind.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ErrorKind.UNEXPECTED_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


# ── Request bodies ───────────────────────────────────────────────────


class CreateBookingBody(BaseModel):
    builder_id: str
    session_type_id: str
    client_id: str | None = None
    booking_id: str | None = None


class EventBody(BaseModel):
    type: BookingEventType
    payload: EventPayload = Field(default_factory=EventPayload)


class IssueTokenBody(BaseModel):
    target_state: BookingState | None = None


class RecoverBody(BaseModel):
    token: str
    target_state: BookingState | None = None


# ── Dependencies ─────────────────────────────────────────────────────


def get_orchestrator(request: Request) -> BookingOrchestrator:
    return request.app.state.orchestrator


def get_actor(
    x_user_id: str | None = Header(default=None),
    x_user_roles: str | None = Header(default=None),
) -> Actor | None:
    """Build the caller identity from the auth proxy headers."""
    if not x_user_id:
        return None
    roles = frozenset(r.strip() for r in (x_user_roles or "").split(",") if r.strip())
    return Actor(user_id=x_user_id, roles=roles)


async def booking_error_handler(request: Request, exc: BookingError) -> JSONResponse:
    """Map the error taxonomy onto HTTP status codes.

    Unexpected errors never expose their message.
    """
    code = STATUS_BY_KIND.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
    body = exc.to_dict()
    if exc.kind == ErrorKind.UNEXPECTED_ERROR:
        body["message"] = PUBLIC_FAILURE_MESSAGE
    return JSONResponse(status_code=code, content={"error": body})


def _public_view(booking: Booking) -> dict[str, Any]:
    return booking.model_dump(mode="json", exclude={"payment_intent_ref", "superseded_session_refs", "last_error"})


# ── Booking routes ───────────────────────────────────────────────────


@booking_router.post("", status_code=status.HTTP_201_CREATED)
async def create_booking(
    body: CreateBookingBody,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
    actor: Actor | None = Depends(get_actor),
) -> dict[str, Any]:
    result = await orchestrator.create_booking(
        body.builder_id,
        body.session_type_id,
        client_id=body.client_id,
        booking_id=body.booking_id,
        actor=actor,
    )
    return result.model_dump(mode="json")


@booking_router.post("/recover")
async def recover_booking(
    body: RecoverBody,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Redeem a recovery token. Failures only ever return the generic message."""
    result = await orchestrator.recover_booking_with_token(body.token, body.target_state)
    code = status.HTTP_200_OK if result.success else status.HTTP_400_BAD_REQUEST
    return JSONResponse(status_code=code, content=result.model_dump(mode="json", exclude={"error"}))


@booking_router.get("/{booking_id}")
async def get_booking(
    booking_id: str,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
    actor: Actor | None = Depends(get_actor),
) -> dict[str, Any]:
    booking = await orchestrator.get_booking(booking_id, actor)
    return _public_view(booking)


@booking_router.get("/{booking_id}/allowed-events")
async def get_allowed_events(
    booking_id: str,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
    actor: Actor | None = Depends(get_actor),
) -> dict[str, Any]:
    allowed = await orchestrator.get_allowed_events(booking_id, actor)
    return {"booking_id": booking_id, "allowed_events": [e.value for e in allowed]}


@booking_router.get("/{booking_id}/history")
async def get_history(
    booking_id: str,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
    actor: Actor | None = Depends(get_actor),
) -> dict[str, Any]:
    history = await orchestrator.get_transition_history(booking_id, actor)
    return {"booking_id": booking_id, "transitions": [entry.model_dump(mode="json") for entry in history]}


@booking_router.post("/{booking_id}/events")
async def apply_event(
    booking_id: str,
    body: EventBody,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
    actor: Actor | None = Depends(get_actor),
) -> dict[str, Any]:
    event = BookingEvent(type=body.type, booking_id=booking_id, payload=body.payload, source="user")
    outcome = await orchestrator.apply_event(event, actor)
    return outcome.model_dump(mode="json")


@booking_router.post("/{booking_id}/claim", response_model=None)
async def claim_booking(
    booking_id: str,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
    actor: Actor | None = Depends(get_actor),
) -> JSONResponse | dict[str, Any]:
    if actor is None:
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"error": {"kind": ErrorKind.FORBIDDEN.value, "message": "sign in to claim a booking"}},
        )
    outcome = await orchestrator.claim_booking(booking_id, actor)
    return outcome.model_dump(mode="json")


@booking_router.post("/{booking_id}/recovery-token", status_code=status.HTTP_201_CREATED)
async def issue_recovery_token(
    booking_id: str,
    body: IssueTokenBody,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
    actor: Actor | None = Depends(get_actor),
) -> dict[str, Any]:
    """Issue a recovery link. Only the booking's client or an admin may ask."""
    await orchestrator.get_booking(booking_id, actor)
    token = await orchestrator.issue_recovery_token(booking_id, body.target_state)
    return {"booking_id": booking_id, "recovery_url": orchestrator.recovery_url(token)}


# ── Webhooks ─────────────────────────────────────────────────────────
# Providers retry on non-2xx: answer 200 once the event is handled (even when
# it was a no-op or rejected by the state machine), 400 for bad signatures
# or bodies, 500 when processing should be retried.


@webhook_router.post("/payments")
async def payment_webhook(
    request: Request,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    body = await request.body()
    signature = request.headers.get("Stripe-Signature")
    try:
        result = await orchestrator.receive_payment_webhook(body, signature)
    except BookingError as exc:
        return _webhook_error(exc)
    return _webhook_ok(result)


@webhook_router.post("/scheduling")
async def scheduling_webhook(
    request: Request,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    body = await request.body()
    signature = request.headers.get("Calendly-Webhook-Signature")
    try:
        result = await orchestrator.receive_scheduling_webhook(body, signature)
    except BookingError as exc:
        return _webhook_error(exc)
    return _webhook_ok(result)


def _webhook_ok(result: Any) -> JSONResponse:
    if result is None:
        outcome = "ignored"
    elif not result.applied:
        outcome = "rejected"
    elif result.duplicate:
        outcome = "duplicate"
    else:
        outcome = "handled"
    return JSONResponse(status_code=status.HTTP_200_OK, content={"status": outcome})


def _webhook_error(exc: BookingError) -> JSONResponse:
    if exc.kind in (ErrorKind.INVALID_SIGNATURE, ErrorKind.VALIDATION_ERROR):
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"status": exc.kind.value})
    logger.error("Webhook processing failed (%s), provider will retry", exc.kind.value)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"status": "error"})
