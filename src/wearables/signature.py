"""Webhook signature verification.

Whoop signs ``timestamp + raw body`` with HMAC-SHA256 keyed by the OAuth
client secret and sends the base64 digest in ``X-WHOOP-Signature`` and the
timestamp in ``X-WHOOP-Signature-Timestamp``.

Terra sends a single ``terra-signature: t=<timestamp>,v1=<hex digest>``
header; the digest covers the same ``timestamp + raw body`` string.

Both verifiers run over the exact bytes received, before any JSON parsing,
and compare in constant time.  When no secret is configured verification
is skipped with a warning so a misconfigured deployment is visible in logs.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging

logger = logging.getLogger("pulsebridge.wearables.signature")


def _hmac_sha256(secret: str, timestamp: str, raw_body: bytes) -> bytes:
    return hmac.new(secret.encode(), timestamp.encode() + raw_body, hashlib.sha256).digest()


def verify(
    raw_body: bytes,
    signature: str | None,
    timestamp: str | None,
    secret: str | None,
) -> bool:
    """Verify a Whoop-style base64 HMAC-SHA256 signature.

    Args:
        raw_body:  Request body exactly as received.
        signature: Value of the signature header.
        timestamp: Value of the signature-timestamp header.
        secret:    Signing secret; empty or None disables verification.

    Returns:
        True if the signature matches, or if no secret is configured.
    """
    if not secret:
        logger.warning(
            "Webhook signing secret is not configured — accepting unsigned payload"
        )
        return True
    if not signature or not timestamp:
        return False

    expected = base64.b64encode(_hmac_sha256(secret, timestamp, raw_body))
    return hmac.compare_digest(expected, signature.strip().encode())


def parse_terra_header(header: str) -> tuple[str | None, str | None]:
    """Split ``t=<ts>,v1=<sig>`` into (timestamp, signature)."""
    parts: dict[str, str] = {}
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if sep:
            parts[key] = value
    return parts.get("t"), parts.get("v1")


def verify_terra(raw_body: bytes, header: str | None, secret: str | None) -> bool:
    """Verify a Terra ``terra-signature`` header (hex HMAC-SHA256)."""
    if not secret:
        logger.warning(
            "Terra signing secret is not configured — accepting unsigned payload"
        )
        return True
    if not header:
        return False

    timestamp, signature = parse_terra_header(header)
    if not timestamp or not signature:
        logger.warning("Malformed terra-signature header")
        return False

    expected = _hmac_sha256(secret, timestamp, raw_body).hex()
    return hmac.compare_digest(expected.encode(), signature.strip().lower().encode())
