"""Tests for Stripe webhook signature verification.

Tests:
- v1 HMAC-SHA256 over '<t>.<body>' (constant-time compare)
- Timestamp tolerance window (past and future)
- Header parsing edge cases and fail-closed secret handling
- verify_event decodes authenticated bodies without raising
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time

import pytest
from freezegun import freeze_time
from hypothesis import given, settings
from hypothesis import strategies as st

from storefront.webhooks.events import EventType
from storefront.webhooks.verification import (
    VerificationError,
    compute_signature,
    verify_event,
    verify_signature,
)

SECRET = "whsec_test_secret"


def _header(body: bytes, timestamp: int, secret: str = SECRET) -> str:
    return f"t={timestamp},v1={compute_signature(secret, timestamp, body)}"


class TestVerifySignature:
    """Stripe v1 signature scheme."""

    def test_valid_signature(self, make_signature):
        body = b'{"type": "checkout.session.completed"}'
        verify_signature(body, make_signature(body), SECRET)

    def test_compute_signature_matches_hmac(self):
        body = b"{}"
        expected = hmac.new(SECRET.encode(), b"1700000000.{}", hashlib.sha256).hexdigest()
        assert compute_signature(SECRET, 1700000000, body) == expected

    def test_invalid_signature(self):
        with pytest.raises(VerificationError) as exc:
            verify_signature(b"{}", f"t={int(time.time())},v1=deadbeef", SECRET)
        assert exc.value.reason == "signature mismatch"

    def test_tampered_body(self, make_signature):
        header = make_signature(b'{"amount_total": 100}')
        with pytest.raises(VerificationError):
            verify_signature(b'{"amount_total": 1}', header, SECRET)

    def test_wrong_secret(self, make_signature):
        body = b"{}"
        with pytest.raises(VerificationError):
            verify_signature(body, make_signature(body, secret="whsec_other"), SECRET)

    @pytest.mark.parametrize("header", [None, ""])
    def test_missing_header(self, header):
        with pytest.raises(VerificationError) as exc:
            verify_signature(b"{}", header, SECRET)
        assert exc.value.reason == "missing signature header"

    def test_missing_timestamp(self):
        with pytest.raises(VerificationError) as exc:
            verify_signature(b"{}", "v1=abc", SECRET)
        assert exc.value.reason == "missing timestamp"

    def test_malformed_timestamp(self):
        with pytest.raises(VerificationError) as exc:
            verify_signature(b"{}", "t=yesterday,v1=abc", SECRET)
        assert exc.value.reason == "malformed timestamp"

    def test_missing_v1(self):
        with pytest.raises(VerificationError) as exc:
            verify_signature(b"{}", f"t={int(time.time())},v0=abc", SECRET)
        assert exc.value.reason == "no v1 signature"

    def test_missing_secret_rejects(self, make_signature):
        """No secret configured -> always reject (fail-closed)."""
        body = b"{}"
        with pytest.raises(VerificationError):
            verify_signature(body, make_signature(body, secret=""), "")

    def test_multiple_v1_signatures(self):
        """Stripe sends several v1 signatures while a secret is rotated."""
        body = b'{"type": "test"}'
        ts = int(time.time())
        header = f"t={ts},v1=invalid_first,v1={compute_signature(SECRET, ts, body)}"
        verify_signature(body, header, SECRET)

    def test_garbage_segments_ignored(self):
        body = b"{}"
        ts = int(time.time())
        header = f"junk,t={ts}, v1={compute_signature(SECRET, ts, body)},="
        verify_signature(body, header, SECRET)


class TestTimestampTolerance:
    """Replay protection: 300s either side of now."""

    @freeze_time("2026-03-01 12:00:00")
    def test_within_tolerance(self):
        body = b"{}"
        verify_signature(body, _header(body, int(time.time()) - 299), SECRET)

    @freeze_time("2026-03-01 12:00:00")
    def test_expired_timestamp_rejects(self):
        body = b"{}"
        with pytest.raises(VerificationError) as exc:
            verify_signature(body, _header(body, int(time.time()) - 301), SECRET)
        assert exc.value.reason == "timestamp outside tolerance"

    @freeze_time("2026-03-01 12:00:00")
    def test_future_timestamp_rejects(self):
        body = b"{}"
        with pytest.raises(VerificationError):
            verify_signature(body, _header(body, int(time.time()) + 600), SECRET)

    def test_explicit_now_and_tolerance(self):
        body = b"{}"
        header = _header(body, 1_000)
        verify_signature(body, header, SECRET, tolerance=10, now=1_009)
        with pytest.raises(VerificationError):
            verify_signature(body, header, SECRET, tolerance=10, now=1_011)


class TestVerifyEvent:
    """Authenticate + decode."""

    def test_returns_typed_event(self, make_payload, make_signature):
        body = json.dumps(make_payload("ord_9")).encode()
        event = verify_event(body, make_signature(body), SECRET)
        assert event.event_type is EventType.SESSION_COMPLETED
        assert event.order_id == "ord_9"

    def test_bad_signature_raises(self, make_payload):
        body = json.dumps(make_payload()).encode()
        with pytest.raises(VerificationError):
            verify_event(body, "t=1,v1=nope", SECRET)

    @pytest.mark.parametrize("body", [b"not json", b"[1, 2, 3]", b"\xff\xfe", b"null"])
    def test_authenticated_garbage_is_unrecognized(self, body, make_signature):
        event = verify_event(body, make_signature(body), SECRET)
        assert event.event_type is EventType.UNRECOGNIZED


@settings(max_examples=50)
@given(body=st.binary(max_size=512), forged=st.text(alphabet="0123456789abcdef", min_size=64, max_size=64))
def test_forged_signatures_always_rejected(body, forged):
    """Any v1 value other than HMAC(secret, t.body) is rejected."""
    ts = int(time.time())
    if forged == compute_signature(SECRET, ts, body):
        return
    with pytest.raises(VerificationError):
        verify_signature(body, f"t={ts},v1={forged}", SECRET)
