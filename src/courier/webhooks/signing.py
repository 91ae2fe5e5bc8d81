"""HMAC-SHA256 request signing.

The signed message is ``"<timestamp>.<raw body>"`` where the body is the
exact byte sequence transmitted. Receivers recompute the HMAC with their
copy of the webhook secret and reject requests whose timestamp falls
outside their tolerance window.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
import time

SIGNATURE_PREFIX = "sha256="
SECRET_PREFIX = "whsec_"
DEFAULT_TOLERANCE_SECONDS = 300


def _message(timestamp: int | str, raw_body: bytes | str) -> bytes:
    body = raw_body.encode("utf-8") if isinstance(raw_body, str) else raw_body
    return str(timestamp).encode("ascii") + b"." + body


def sign(secret: str, timestamp: int | str, raw_body: bytes | str) -> str:
    """Compute the signature header value for a request.

    Args:
        secret: Shared webhook secret.
        timestamp: Unix timestamp sent in the timestamp header.
        raw_body: Request body exactly as transmitted.

    Returns:
        Signature in format "sha256=<hex_digest>".

    Raises:
        ValueError: If the secret is empty.
    """
    if not secret:
        raise ValueError("Webhook secret must not be empty")
    digest = hmac.new(
        key=secret.encode("utf-8"),
        msg=_message(timestamp, raw_body),
        digestmod=hashlib.sha256,
    ).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify(
    secret: str,
    timestamp: int | str,
    raw_body: bytes | str,
    signature: str,
    *,
    tolerance_seconds: int | None = DEFAULT_TOLERANCE_SECONDS,
    now: float | None = None,
) -> bool:
    """Verify a received signature.

    Args:
        secret: Shared webhook secret.
        timestamp: Value of the timestamp header.
        raw_body: Request body exactly as received.
        signature: Value of the signature header.
        tolerance_seconds: Maximum accepted clock difference; None disables
            the replay check.
        now: Current unix time (defaults to time.time()).

    Returns:
        True if the signature matches and the timestamp is fresh.
    """
    if not secret or not signature:
        return False
    try:
        sent_at = int(timestamp)
    except (TypeError, ValueError):
        return False

    if tolerance_seconds is not None:
        current = time.time() if now is None else now
        if abs(current - sent_at) > tolerance_seconds:
            return False

    expected = sign(secret, sent_at, raw_body)
    return hmac.compare_digest(expected, signature)


def generate_secret() -> str:
    """Generate a new webhook secret ("whsec_" + 64 hex characters)."""
    return f"{SECRET_PREFIX}{secrets.token_hex(32)}"


__all__ = [
    "DEFAULT_TOLERANCE_SECONDS",
    "SECRET_PREFIX",
    "SIGNATURE_PREFIX",
    "generate_secret",
    "sign",
    "verify",
]
