"""Stripe webhook signature verification (``v1`` scheme).

The provider signs ``"{timestamp}.{raw_body}"`` with HMAC-SHA256 using the
endpoint's shared secret and sends the result in the ``Stripe-Signature``
header::

    Stripe-Signature: t=1700000000,v1=5257a869...,v1=...

More than one ``v1`` entry may be present while a secret is being rolled.
"""

from __future__ import annotations

import hashlib
import hmac
import time

from billing_engine.errors import SignatureInvalidError

SIGNATURE_SCHEME = "v1"


def parse_signature_header(header: str) -> tuple[int | None, list[str]]:
    """Split a ``Stripe-Signature`` header into its timestamp and signatures.

    A header consisting of a single bare hex digest is accepted as one
    signature with no timestamp.
    """
    timestamp: int | None = None
    signatures: list[str] = []
    header = header.strip()
    if not header:
        return None, []

    if "=" not in header:
        return None, [header]

    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                timestamp = None
        elif key == SIGNATURE_SCHEME and value:
            signatures.append(value)
    return timestamp, signatures


def compute_signature(payload: bytes, timestamp: int, secret: str) -> str:
    """Return the hex HMAC-SHA256 of ``"{timestamp}.{payload}"``."""
    signed = f"{timestamp}.".encode() + payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def build_signature_header(payload: bytes, secret: str, timestamp: int | None = None) -> str:
    """Produce a ``Stripe-Signature`` header value for *payload*."""
    ts = int(time.time()) if timestamp is None else timestamp
    return f"t={ts},{SIGNATURE_SCHEME}={compute_signature(payload, ts, secret)}"


def verify_signature(
    payload: bytes,
    signatures: list[str],
    timestamp: int | None,
    secret: str,
    tolerance_seconds: int,
    *,
    now: float | None = None,
) -> None:
    """Verify authenticity and freshness of a webhook delivery.

    Parameters
    ----------
    payload:
        The raw request body, exactly as received.
    signatures:
        Candidate hex digests; any one matching is sufficient.
    timestamp:
        Unix timestamp the provider signed alongside the body.
    secret:
        The endpoint's shared signing secret.
    tolerance_seconds:
        Maximum allowed distance between *timestamp* and now.

    Raises
    ------
    SignatureInvalidError
        If the secret is not configured, no signature matches, or the
        timestamp is missing or outside the tolerance window.
    """
    if not secret:
        raise SignatureInvalidError("Webhook secret is not configured")
    if timestamp is None:
        raise SignatureInvalidError("Signature timestamp is missing")
    if not signatures:
        raise SignatureInvalidError(f"No {SIGNATURE_SCHEME} signatures found")

    current = time.time() if now is None else now
    if abs(current - timestamp) > tolerance_seconds:
        raise SignatureInvalidError("Signature timestamp outside the tolerance window")

    expected = compute_signature(payload, timestamp, secret)
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise SignatureInvalidError("No signature matches the expected digest")
