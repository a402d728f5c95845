"""Recovery-token issuance and redemption.

A recovery token lets a client push a stalled (PAYMENT_PENDING) or failed
(ERROR) booking back to a resumable state without starting over. Tokens are
random, short-lived and single-use; only their SHA-256 hash is stored.

Redemption is split in two so the orchestrator can run the ``recover``
transition in between:

    claimed = await recovery.claim(raw_token, now)   # consumes the token
    ... apply the recover event ...
    await recovery.release(claimed.token_hash)       # only if that failed

Usage:
    from bookingflow.service.recovery import RecoveryService

    recovery = RecoveryService(token_store, ttl_minutes=15)
    token = await recovery.issue(booking, now)
    link = build_recovery_url(settings.recovery.recovery_base_url, token)
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from datetime import datetime, timedelta
from urllib.parse import quote

from bookingflow.errors import (
    ForbiddenError,
    IllegalTransitionError,
    NotFoundError,
    TokenAlreadyUsedError,
    TokenExpiredError,
    ValidationError,
)
from bookingflow.machine.transitions import RECOVERABLE_STATES, RECOVERY_TARGETS
from bookingflow.models.enums import BookingState
from bookingflow.schemas.booking import Booking, RecoveryToken
from bookingflow.security.rate_limiter import RateLimiter
from bookingflow.storage.base import RecoveryTokenStore

logger = logging.getLogger(__name__)

# Public message for every failed redemption; the real reason is only logged.
RECOVERY_FAILURE_MESSAGE = "could not recover booking"

_TOKEN_BYTES = 32


def generate_token() -> str:
    """Random URL-safe token (256 bits of entropy)."""
    return secrets.token_urlsafe(_TOKEN_BYTES)


def hash_token(token: str) -> str:
    """SHA-256 hex digest used as the token's storage key."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def build_recovery_url(base_url: str, token: str) -> str:
    """Link a client follows to redeem ``token``."""
    return f"{base_url.rstrip('/')}/booking/recover?token={quote(token, safe='')}"


class RecoveryService:
    """Issues and claims recovery tokens against a RecoveryTokenStore."""

    def __init__(
        self,
        token_store: RecoveryTokenStore,
        *,
        ttl_minutes: int = 15,
        attempt_limiter: RateLimiter | None = None,
        max_attempts: int = 5,
        attempt_window_seconds: int = 60,
    ) -> None:
        self._store = token_store
        self._ttl = timedelta(minutes=ttl_minutes)
        self._limiter = attempt_limiter
        self._max_attempts = max_attempts
        self._attempt_window = attempt_window_seconds

    async def issue(
        self,
        booking: Booking,
        now: datetime,
        target_state: BookingState | None = None,
    ) -> str:
        """Issue a token for ``booking`` and return the raw token.

        Raises:
            IllegalTransitionError: Booking is not in a recoverable state.
            ValidationError: ``target_state`` is not a resumable state.
        """
        if booking.state not in RECOVERABLE_STATES:
            msg = f"booking in {booking.state.value} cannot be recovered"
            raise IllegalTransitionError(msg, booking_id=booking.booking_id)
        if target_state is not None and target_state not in RECOVERY_TARGETS:
            msg = f"cannot recover into {target_state.value}"
            raise ValidationError(msg, booking_id=booking.booking_id)

        raw = generate_token()
        token = RecoveryToken(
            token_hash=hash_token(raw),
            booking_id=booking.booking_id,
            issued_at=now,
            expires_at=now + self._ttl,
            target_state=target_state,
        )
        await self._store.save(token)
        logger.info(
            "Issued recovery token for booking %s (expires %s)",
            booking.booking_id,
            token.expires_at.isoformat(),
        )
        return raw

    async def claim(self, raw_token: str, now: datetime) -> RecoveryToken:
        """Validate and atomically consume a token.

        Raises:
            ForbiddenError: Too many redemption attempts for this token.
            NotFoundError: Unknown token.
            TokenExpiredError: Token is past ``expires_at``.
            TokenAlreadyUsedError: Token was already redeemed.
        """
        if not raw_token:
            raise NotFoundError("recovery token missing")
        token_hash = hash_token(raw_token)

        if self._limiter is not None:
            allowed, retry_after = await self._limiter.check(
                f"rate:recovery:{token_hash}", self._max_attempts, self._attempt_window
            )
            if not allowed:
                logger.warning("Recovery token %s… rate limited (retry in %ds)", token_hash[:8], retry_after)
                raise ForbiddenError("too many recovery attempts")

        token = await self._store.get(token_hash)
        if token is None:
            raise NotFoundError("recovery token not found")
        if token.used_at is not None:
            raise TokenAlreadyUsedError("recovery token already used", booking_id=token.booking_id)
        if token.is_expired(now):
            raise TokenExpiredError("recovery token expired", booking_id=token.booking_id)

        if not await self._store.consume(token_hash, now):
            # Lost the race against a concurrent redemption.
            raise TokenAlreadyUsedError("recovery token already used", booking_id=token.booking_id)
        return token.model_copy(update={"used_at": now})

    async def release(self, token_hash: str) -> None:
        """Make a claimed token redeemable again."""
        await self._store.release(token_hash)
