"""Timestamped HMAC-SHA256 webhook signature verification with key rotation.

Both providers sign ``f"{t}.{body}"`` and send ``t=<unix>,v1=<hex>[,v1=<hex>]``.
Trusted secrets are an ordered list (primary, then secondary) so a new secret
can be rolled out before the old one is retired; any secret matching any
``v1`` signature is accepted.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from collections.abc import Sequence

from bookingflow.errors import InvalidSignatureError

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_SECONDS = 300


def compute_signature(secret: str, timestamp: int, body: bytes) -> str:
    """HMAC-SHA256 hex digest of ``"{timestamp}.{body}"``."""
    signed = str(timestamp).encode("ascii") + b"." + body
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def sign_payload(secret: str, body: bytes, timestamp: int | None = None) -> str:
    """Build a signature header for ``body`` (used by tooling and tests)."""
    ts = int(time.time()) if timestamp is None else timestamp
    return f"t={ts},v1={compute_signature(secret, ts, body)}"


def parse_signature_header(header: str) -> tuple[int, list[str]]:
    """Split a ``t=...,v1=...`` header into its timestamp and signatures.

    Raises:
        InvalidSignatureError: If the header is malformed.
    """
    timestamp: int | None = None
    signatures: list[str] = []
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise InvalidSignatureError("malformed signature timestamp") from None
        elif key == "v1" and value:
            signatures.append(value)

    if timestamp is None or not signatures:
        msg = "signature header missing timestamp or v1 signature"
        raise InvalidSignatureError(msg)
    return timestamp, signatures


def verify_signature(
    body: bytes,
    header: str | None,
    secrets: Sequence[str],
    *,
    now: float | None = None,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
) -> int:
    """Verify a webhook signature against every trusted secret in order.

    Returns:
        Index of the secret that matched (0 = primary).

    Raises:
        InvalidSignatureError: Missing/malformed header, stale timestamp,
            no configured secret, or no secret matched.
    """
    if not header:
        raise InvalidSignatureError("missing webhook signature")
    if not secrets:
        logger.error("No webhook signing secret configured — rejecting webhook")
        raise InvalidSignatureError("webhook signing secret not configured")

    timestamp, signatures = parse_signature_header(header)

    current = time.time() if now is None else now
    if abs(current - timestamp) > tolerance:
        logger.warning("Webhook signature timestamp outside tolerance: age=%ds", int(current - timestamp))
        raise InvalidSignatureError("webhook signature timestamp outside tolerance")

    for index, secret in enumerate(secrets):
        expected = compute_signature(secret, timestamp, body)
        if any(hmac.compare_digest(expected, candidate) for candidate in signatures):
            if index > 0:
                logger.info("Webhook verified with secondary secret #%d — rotation in progress", index)
            return index

    logger.warning("Webhook signature did not match any of %d trusted secrets", len(secrets))
    raise InvalidSignatureError("webhook signature mismatch")
