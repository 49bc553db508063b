"""Stripe webhook signature verification (constant-time HMAC).

Security contract:
- All comparisons use hmac.compare_digest() (constant-time, no timing attacks)
- The signature covers the exact raw bytes received; never re-serialize
- Verification failure -> VerificationError, no payload processing
- Empty secret -> verification always fails (fail-closed)
- Timestamp tolerance: 300s (5 min) either side to limit replay
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time

from storefront.webhooks.events import PaymentEvent, decode_event

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_SECONDS = 300

SIGNATURE_HEADER = "stripe-signature"


class VerificationError(Exception):
    """Raised when a webhook cannot be authenticated."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Webhook verification failed: {reason}")


def _parse_signature_header(signature_header: str) -> tuple[str | None, list[str]]:
    """Split 't=<timestamp>,v1=<sig>[,v1=<sig>][,v0=<deprecated>]'."""
    timestamp = None
    v1_sigs: list[str] = []
    for item in signature_header.split(","):
        kv = item.strip().split("=", 1)
        if len(kv) != 2:
            continue
        key, value = kv
        if key == "t":
            timestamp = value
        elif key == "v1":
            # Multiple v1 signatures during secret rotation
            v1_sigs.append(value)
    return timestamp, v1_sigs


def compute_signature(secret: str, timestamp: int, body: bytes) -> str:
    """HMAC-SHA256 hex digest over '<timestamp>.<body>'."""
    signed_payload = f"{timestamp}.".encode("utf-8") + body
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


def verify_signature(
    body: bytes,
    signature_header: str | None,
    secret: str,
    *,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
    now: float | None = None,
) -> None:
    """Authenticate a Stripe webhook body.

    Args:
        body: Raw request body bytes
        signature_header: Value of the Stripe-Signature header
        secret: Endpoint signing secret (whsec_...)
        tolerance: Max allowed clock skew in seconds
        now: Current unix time (defaults to time.time())

    Raises:
        VerificationError: header missing/malformed, stale timestamp, or mismatch
    """
    if not secret:
        logger.warning("Stripe webhook secret not set; rejecting webhook")
        raise VerificationError("secret not configured")
    if not signature_header:
        raise VerificationError("missing signature header")

    timestamp_str, v1_sigs = _parse_signature_header(signature_header)
    if not timestamp_str:
        raise VerificationError("missing timestamp")

    try:
        timestamp = int(timestamp_str)
    except ValueError:
        raise VerificationError("malformed timestamp") from None

    current = time.time() if now is None else now
    if abs(current - timestamp) > tolerance:
        logger.warning("Stripe webhook timestamp outside tolerance: %s", timestamp)
        raise VerificationError("timestamp outside tolerance")

    if not v1_sigs:
        raise VerificationError("no v1 signature")

    expected = compute_signature(secret, timestamp, body)
    if not any(hmac.compare_digest(expected, sig) for sig in v1_sigs):
        raise VerificationError("signature mismatch")


def verify_event(
    body: bytes,
    signature_header: str | None,
    secret: str,
    *,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
    now: float | None = None,
) -> PaymentEvent:
    """Authenticate a webhook and decode it into a PaymentEvent.

    Only the signature check can fail. An authenticated body that is not
    a JSON object decodes as an UNRECOGNIZED event.
    """
    verify_signature(body, signature_header, secret, tolerance=tolerance, now=now)

    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning("Authenticated webhook body is not valid JSON; ignoring")
        payload = None

    return decode_event(payload)
