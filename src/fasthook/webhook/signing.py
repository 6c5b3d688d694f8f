"""HMAC-SHA256 signing of webhook payloads."""

import hashlib
import hmac

from fasthook import __version__

SIGNATURE_PREFIX = "sha256="

HEADER_SIGNATURE = "X-Webhook-Signature"
HEADER_EVENT = "X-Webhook-Event"
HEADER_DELIVERY_ID = "X-Webhook-ID"


def compute_signature(secret: str, payload: bytes) -> str:
    """Return the hex HMAC-SHA256 of the raw payload keyed by the endpoint secret."""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def signature_header(secret: str, payload: bytes) -> str:
    """Return the value sent in the X-Webhook-Signature header."""
    return SIGNATURE_PREFIX + compute_signature(secret, payload)


def verify_signature(payload: bytes, signature: str, secret: str) -> bool:
    """Check a signature the way receivers are expected to.

    Accepts the bare hex digest or the ``sha256=`` prefixed header value.
    The comparison is constant-time.
    """
    if signature.startswith(SIGNATURE_PREFIX):
        signature = signature[len(SIGNATURE_PREFIX) :]
    expected = compute_signature(secret, payload)
    return hmac.compare_digest(expected.encode(), signature.lower().encode())


def build_delivery_headers(
    delivery_id: int,
    event_type: str,
    secret: str,
    payload: bytes,
) -> dict[str, str]:
    """Build the headers sent with every delivery attempt."""
    return {
        "Content-Type": "application/json",
        "User-Agent": f"FastHook/{__version__}",
        HEADER_SIGNATURE: signature_header(secret, payload),
        HEADER_EVENT: event_type,
        HEADER_DELIVERY_ID: str(delivery_id),
    }
