"""Tests for webhook signature verification.

Covers:
- Header parsing (timestamp, multiple v1 signatures, malformed input)
- Primary and secondary secret acceptance during rotation
- Replay window, missing header, unconfigured secrets
"""

from __future__ import annotations

import hashlib
import hmac

import pytest

from bookingflow.adapters.signatures import (
    compute_signature,
    parse_signature_header,
    sign_payload,
    verify_signature,
)
from bookingflow.errors import InvalidSignatureError

BODY = b'{"type":"checkout.session.completed"}'
TS = 1_772_000_000


# ── Header parsing ───────────────────────────────────────────────────


class TestParseHeader:
    def test_timestamp_and_signatures(self):
        ts, sigs = parse_signature_header(f"t={TS},v1=aaa,v1=bbb")
        assert ts == TS
        assert sigs == ["aaa", "bbb"]

    def test_ignores_unknown_parts(self):
        ts, sigs = parse_signature_header(f"t={TS}, v0=old, v1=abc, junk")
        assert (ts, sigs) == (TS, ["abc"])

    def test_missing_signature(self):
        with pytest.raises(InvalidSignatureError):
            parse_signature_header(f"t={TS}")

    def test_bad_timestamp(self):
        with pytest.raises(InvalidSignatureError, match="timestamp"):
            parse_signature_header("t=yesterday,v1=abc")


# ── Verification ─────────────────────────────────────────────────────


class TestVerify:
    def test_signature_matches_hmac_of_timestamped_body(self):
        expected = hmac.new(b"whsec_a", f"{TS}.".encode() + BODY, hashlib.sha256).hexdigest()
        assert compute_signature("whsec_a", TS, BODY) == expected

    def test_primary_secret(self):
        header = sign_payload("whsec_a", BODY, TS)
        assert verify_signature(BODY, header, ["whsec_a", "whsec_b"], now=TS) == 0

    def test_secondary_secret_during_rotation(self):
        header = sign_payload("whsec_b", BODY, TS)
        assert verify_signature(BODY, header, ["whsec_a", "whsec_b"], now=TS) == 1

    def test_any_v1_signature_may_match(self):
        good = compute_signature("whsec_a", TS, BODY)
        header = f"t={TS},v1={'0' * 64},v1={good}"
        assert verify_signature(BODY, header, ["whsec_a"], now=TS) == 0

    def test_unknown_secret_rejected(self):
        header = sign_payload("whsec_other", BODY, TS)
        with pytest.raises(InvalidSignatureError, match="mismatch"):
            verify_signature(BODY, header, ["whsec_a", "whsec_b"], now=TS)

    def test_tampered_body_rejected(self):
        header = sign_payload("whsec_a", BODY, TS)
        with pytest.raises(InvalidSignatureError):
            verify_signature(BODY + b" ", header, ["whsec_a"], now=TS)

    def test_stale_timestamp_rejected(self):
        header = sign_payload("whsec_a", BODY, TS)
        with pytest.raises(InvalidSignatureError, match="tolerance"):
            verify_signature(BODY, header, ["whsec_a"], now=TS + 301)

    def test_within_tolerance_accepted(self):
        header = sign_payload("whsec_a", BODY, TS)
        assert verify_signature(BODY, header, ["whsec_a"], now=TS + 299) == 0

    def test_missing_header_rejected(self):
        with pytest.raises(InvalidSignatureError, match="missing"):
            verify_signature(BODY, None, ["whsec_a"], now=TS)

    def test_no_configured_secret_fails_closed(self):
        header = sign_payload("whsec_a", BODY, TS)
        with pytest.raises(InvalidSignatureError, match="not configured"):
            verify_signature(BODY, header, [], now=TS)
