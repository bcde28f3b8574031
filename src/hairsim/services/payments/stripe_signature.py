"""HMAC signature validation for Stripe webhooks.

Stripe signs each webhook delivery with the endpoint secret. The
Stripe-Signature header carries a timestamp and one or more v1 signatures:

    Stripe-Signature: t=1492774577,v1=5257a869e7ecebeda32affa62cdca3fa51cad7e77a0e56ff536d0ce8e108d8bd

The signed payload is "{t}.{raw_body}". Deliveries older than the tolerance
window are rejected to limit replay.

Security Note:
    validate_stripe_signature MUST be called before processing any webhook
    payload. Return 401 Unauthorized immediately if validation fails.
"""

import hashlib
import hmac
import time
from typing import Optional


def parse_signature_header(header: str) -> tuple[Optional[int], list[str]]:
    """Split a Stripe-Signature header into its timestamp and v1 signatures."""
    timestamp: Optional[int] = None
    signatures: list[str] = []
    for item in header.split(","):
        key, _, value = item.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return None, []
        elif key == "v1" and value:
            signatures.append(value)
    return timestamp, signatures


def compute_signature(raw_body: bytes, timestamp: int, signing_secret: str) -> str:
    signed_payload = f"{timestamp}.".encode("utf-8") + raw_body
    return hmac.new(
        key=signing_secret.encode("utf-8"), msg=signed_payload, digestmod=hashlib.sha256
    ).hexdigest()


def validate_stripe_signature(
    raw_body: bytes,
    signature_header: str,
    signing_secret: str,
    tolerance_seconds: int = 300,
    now: Optional[float] = None,
) -> bool:
    """Validate a Stripe webhook signature using HMAC-SHA256.

    Args:
        raw_body: Raw request body bytes (NOT parsed JSON)
        signature_header: Value of the Stripe-Signature header
        signing_secret: Webhook endpoint signing secret (whsec_...)
        tolerance_seconds: Maximum accepted age of the delivery
        now: Current UNIX time, injectable for tests

    Returns:
        True if one of the v1 signatures matches and the timestamp is fresh

    Security:
        - Uses hmac.compare_digest() for constant-time comparison
        - An empty signing secret never validates
    """
    if not signing_secret or not signature_header:
        return False

    timestamp, signatures = parse_signature_header(signature_header)
    if timestamp is None or not signatures:
        return False

    current = time.time() if now is None else now
    if tolerance_seconds > 0 and abs(current - timestamp) > tolerance_seconds:
        return False

    expected = compute_signature(raw_body, timestamp, signing_secret)
    return any(hmac.compare_digest(expected, candidate.lower()) for candidate in signatures)
