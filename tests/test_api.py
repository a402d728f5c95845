"""Tests for the HTTP routes.

Covers:
- Booking creation, events, queries and error status mapping
- Signed payment and scheduling webhooks (handled, duplicate, ignored, bad signature)
- Claiming, recovery-token issuance and redemption
"""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from bookingflow.adapters.signatures import sign_payload
from bookingflow.api.routes import booking_error_handler, booking_router, webhook_router
from bookingflow.config import PaymentSettings, RecoverySettings, SchedulingSettings, Settings
from bookingflow.errors import PUBLIC_FAILURE_MESSAGE, BookingError
from bookingflow.security.authorization import RoleAuthorizer
from bookingflow.service.orchestrator import BookingOrchestrator
from bookingflow.storage.memory import InMemoryBookingStore, InMemoryRecoveryTokenStore

PAY_SECRET = "whsec_pay"
SCHED_SECRET = "sched_key"


# ── Fixtures ─────────────────────────────────────────────────────────


@pytest.fixture()
def store() -> InMemoryBookingStore:
    return InMemoryBookingStore()


@pytest.fixture()
def client(store) -> TestClient:
    """FastAPI test client with the booking and webhook routers."""
    settings = Settings(
        payments=PaymentSettings(stripe_webhook_secret=PAY_SECRET),
        scheduling=SchedulingSettings(calendly_webhook_signing_key=SCHED_SECRET),
        recovery=RecoverySettings(recovery_base_url="https://app.example.com"),
    )
    app = FastAPI()
    app.include_router(booking_router)
    app.include_router(webhook_router)
    app.add_exception_handler(BookingError, booking_error_handler)
    app.state.orchestrator = BookingOrchestrator(
        store,
        InMemoryRecoveryTokenStore(),
        emit=AsyncMock(),
        authorizer=RoleAuthorizer(),
        settings=settings,
    )
    return TestClient(app)


def _post_payment(client: TestClient, payload: dict, secret: str = PAY_SECRET):
    body = json.dumps(payload).encode()
    return client.post(
        "/webhooks/payments",
        content=body,
        headers={"Stripe-Signature": sign_payload(secret, body), "Content-Type": "application/json"},
    )


def _post_scheduling(client: TestClient, payload: dict):
    body = json.dumps(payload).encode()
    return client.post(
        "/webhooks/scheduling",
        content=body,
        headers={"Calendly-Webhook-Signature": sign_payload(SCHED_SECRET, body), "Content-Type": "application/json"},
    )


def _checkout(event_type: str, session_id: str = "cs_test_1", **obj) -> dict:
    data = {"id": session_id, "payment_status": "paid"}
    data.update(obj)
    return {"id": "evt_1", "type": event_type, "data": {"object": data}}


def _to_payment_pending(client: TestClient) -> None:
    created = client.post("/bookings", json={"builder_id": "b1", "session_type_id": "s1", "booking_id": "bk1"})
    assert created.status_code == 201
    client.post("/bookings/bk1/events", json={"type": "select_session_type"})
    client.post(
        "/bookings/bk1/events",
        json={
            "type": "select_time",
            "payload": {"start_time": "2026-03-10T14:00:00Z", "end_time": "2026-03-10T15:00:00Z"},
        },
    )
    resp = client.post(
        "/bookings/bk1/events",
        json={"type": "initiate_payment", "payload": {"external_session_ref": "cs_test_1"}},
    )
    assert resp.json()["current_state"] == "PAYMENT_PENDING"


# ── Booking routes ───────────────────────────────────────────────────


class TestBookingRoutes:
    def test_create(self, client):
        resp = client.post("/bookings", json={"builder_id": "b1", "session_type_id": "s1"})
        assert resp.status_code == 201
        data = resp.json()
        assert data["state"] == "IDLE"
        assert data["created"] is True
        assert data["booking_id"].startswith("bk_")

    def test_create_blank_builder_is_422(self, client):
        resp = client.post("/bookings", json={"builder_id": " ", "session_type_id": "s1"})
        assert resp.status_code == 422
        assert resp.json()["error"]["kind"] == "validation_error"

    def test_unknown_booking_is_404(self, client):
        resp = client.get("/bookings/bk_missing")
        assert resp.status_code == 404
        assert resp.json()["error"]["kind"] == "not_found"

    def test_illegal_event_is_409(self, client):
        client.post("/bookings", json={"builder_id": "b1", "session_type_id": "s1", "booking_id": "bk1"})
        resp = client.post(
            "/bookings/bk1/events",
            json={"type": "initiate_payment", "payload": {"external_session_ref": "cs_test_1"}},
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["kind"] == "illegal_transition"

    def test_provider_event_from_user_is_403(self, client):
        _to_payment_pending(client)
        resp = client.post(
            "/bookings/bk1/events",
            json={"type": "payment_succeeded", "payload": {"external_session_ref": "cs_test_1"}},
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["kind"] == "forbidden"
        assert client.get("/bookings/bk1").json()["state"] == "PAYMENT_PENDING"

    def test_get_hides_payment_intent(self, client):
        _to_payment_pending(client)
        data = client.get("/bookings/bk1").json()
        assert data["state"] == "PAYMENT_PENDING"
        assert "payment_intent_ref" not in data

    def test_allowed_events_and_history(self, client):
        client.post("/bookings", json={"builder_id": "b1", "session_type_id": "s1", "booking_id": "bk1"})
        client.post("/bookings/bk1/events", json={"type": "select_session_type"})

        allowed = client.get("/bookings/bk1/allowed-events").json()["allowed_events"]
        assert "select_time" in allowed

        transitions = client.get("/bookings/bk1/history").json()["transitions"]
        assert [t["to_state"] for t in transitions] == ["IDLE", "SESSION_TYPE_SELECTED"]

    def test_unexpected_error_is_generic_500(self, client, store):
        client.post("/bookings", json={"builder_id": "b1", "session_type_id": "s1", "booking_id": "bk1"})
        with patch.object(store, "get", AsyncMock(side_effect=RuntimeError("dsn=postgres://u:pw@db"))):
            resp = client.post("/bookings/bk1/events", json={"type": "cancel"})
        assert resp.status_code == 500
        assert resp.json()["error"]["message"] == PUBLIC_FAILURE_MESSAGE
        assert "pw@db" not in resp.text


class TestClaim:
    def test_requires_identity(self, client):
        client.post("/bookings", json={"builder_id": "b1", "session_type_id": "s1", "booking_id": "bk1"})
        assert client.post("/bookings/bk1/claim").status_code == 401

    def test_claim_then_other_user_forbidden(self, client):
        client.post("/bookings", json={"builder_id": "b1", "session_type_id": "s1", "booking_id": "bk1"})

        assert client.post("/bookings/bk1/claim", headers={"X-User-Id": "c1"}).status_code == 200
        assert client.post("/bookings/bk1/claim", headers={"X-User-Id": "c2"}).status_code == 403
        assert client.get("/bookings/bk1", headers={"X-User-Id": "c2"}).status_code == 403
        assert client.get("/bookings/bk1", headers={"X-User-Id": "c1"}).json()["client_id"] == "c1"

    def test_admin_header_roles(self, client):
        client.post(
            "/bookings",
            json={"builder_id": "b1", "session_type_id": "s1", "client_id": "c1", "booking_id": "bk1"},
        )
        resp = client.get("/bookings/bk1", headers={"X-User-Id": "ops", "X-User-Roles": "support, admin"})
        assert resp.status_code == 200


# ── Webhooks ─────────────────────────────────────────────────────────


class TestWebhooks:
    def test_payment_confirms_booking(self, client):
        _to_payment_pending(client)

        resp = _post_payment(client, _checkout("checkout.session.completed", payment_intent="pi_1"))

        assert resp.status_code == 200
        assert resp.json() == {"status": "handled"}
        assert client.get("/bookings/bk1").json()["state"] == "CONFIRMED"

    def test_redelivery_is_duplicate(self, client):
        _to_payment_pending(client)
        payload = _checkout("checkout.session.completed")
        _post_payment(client, payload)

        resp = _post_payment(client, payload)

        assert resp.status_code == 200
        assert resp.json() == {"status": "duplicate"}

    def test_unknown_booking_is_ignored(self, client):
        resp = _post_payment(client, _checkout("checkout.session.completed", session_id="cs_nobody"))
        assert resp.status_code == 200
        assert resp.json() == {"status": "ignored"}

    def test_rejected_transition_still_200(self, client):
        _to_payment_pending(client)
        client.post("/bookings/bk1/events", json={"type": "cancel"})

        resp = _post_payment(client, _checkout("checkout.session.completed"))

        assert resp.status_code == 200
        assert resp.json() == {"status": "rejected"}
        assert client.get("/bookings/bk1").json()["state"] == "CANCELLED"

    def test_bad_signature_is_400(self, client):
        _to_payment_pending(client)
        resp = _post_payment(client, _checkout("checkout.session.completed"), secret="whsec_attacker")
        assert resp.status_code == 400
        assert resp.json() == {"status": "invalid_signature"}
        assert client.get("/bookings/bk1").json()["state"] == "PAYMENT_PENDING"

    def test_missing_signature_is_400(self, client):
        resp = client.post("/webhooks/payments", content=b"{}")
        assert resp.status_code == 400

    def test_malformed_signed_payload_is_200_ignored(self, client):
        resp = _post_scheduling(
            client,
            {"event": "invitee.created", "payload": {"scheduled_event": {"uuid": "ev_x", "start_time": "not-a-date"}}},
        )
        assert resp.status_code == 200
        assert resp.json() == {"status": "ignored"}

    def test_scheduling_webhook(self, client):
        client.post("/bookings", json={"builder_id": "b1", "session_type_id": "s1", "booking_id": "bk1"})
        client.post("/bookings/bk1/events", json={"type": "select_session_type"})

        resp = _post_scheduling(
            client,
            {
                "event": "invitee.created",
                "payload": {
                    "scheduled_event": {
                        "uri": "https://api.calendly.com/scheduled_events/ev_1",
                        "start_time": "2026-03-10T14:00:00Z",
                        "end_time": "2026-03-10T15:00:00Z",
                    },
                    "tracking": {"utm_content": "bk1"},
                },
            },
        )

        assert resp.json() == {"status": "handled"}
        data = client.get("/bookings/bk1").json()
        assert data["state"] == "TIME_SELECTED"
        assert data["external_event_ref"] == "ev_1"


# ── Recovery ─────────────────────────────────────────────────────────


class TestRecoveryRoutes:
    def _issue(self, client: TestClient) -> str:
        _to_payment_pending(client)
        _post_payment(client, _checkout("checkout.session.expired", payment_status="unpaid"))
        resp = client.post("/bookings/bk1/recovery-token", json={})
        assert resp.status_code == 201
        url = resp.json()["recovery_url"]
        assert url.startswith("https://app.example.com/booking/recover?token=")
        return parse_qs(urlparse(url).query)["token"][0]

    def test_redeem_once(self, client):
        token = self._issue(client)

        ok = client.post("/bookings/recover", json={"token": token, "target_state": "TIME_SELECTED"})
        assert ok.status_code == 200
        assert ok.json()["success"] is True
        assert ok.json()["state"] == "TIME_SELECTED"

        again = client.post("/bookings/recover", json={"token": token})
        assert again.status_code == 400
        assert again.json()["message"] == "could not recover booking"
        assert "error" not in again.json()

    def test_token_for_idle_booking_is_409(self, client):
        client.post("/bookings", json={"builder_id": "b1", "session_type_id": "s1", "booking_id": "bk1"})
        resp = client.post("/bookings/bk1/recovery-token", json={})
        assert resp.status_code == 409
