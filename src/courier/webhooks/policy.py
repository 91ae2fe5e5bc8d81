"""Backoff calculation and response classification.

Pure functions of a DeliveryPolicy; the dispatcher supplies the random
source so tests can pin jitter.
"""

from __future__ import annotations

import random
from enum import Enum

from courier.config import DeliveryPolicy

# 4xx responses that still warrant a retry
RETRYABLE_CLIENT_ERRORS = frozenset({408, 429})


class Outcome(str, Enum):
    """Classification of a single delivery attempt."""

    SUCCESS = "success"
    RETRYABLE = "retryable"
    PERMANENT = "permanent"


def classify_status(status_code: int) -> Outcome:
    """Classify an HTTP response status.

    2xx succeeds; 4xx other than 408 and 429 is a permanent rejection;
    everything else (5xx, 408, 429, unexpected 1xx/3xx) is retried.
    """
    if 200 <= status_code < 300:
        return Outcome.SUCCESS
    if 400 <= status_code < 500 and status_code not in RETRYABLE_CLIENT_ERRORS:
        return Outcome.PERMANENT
    return Outcome.RETRYABLE


def backoff_seconds(
    attempt: int,
    policy: DeliveryPolicy,
    rng: random.Random | None = None,
) -> float:
    """Delay before the attempt following attempt number ``attempt``.

    ``min(base * 2 ** (attempt - 1), cap) * (1 + uniform(0, jitter_ratio))``

    The cap is applied before jitter, so capped delays still spread out.

    Args:
        attempt: Number of the attempt that just failed (1-based).
        policy: Delivery policy supplying base, cap and jitter ratio.
        rng: Random source (defaults to the module-level generator).
    """
    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    # Avoid float overflow for very large attempt numbers
    exponent = min(attempt - 1, 62)
    delay = min(policy.backoff_base_seconds * (2**exponent), policy.backoff_max_seconds)
    if policy.jitter_ratio <= 0:
        return delay
    source = rng or random
    return delay * (1 + source.uniform(0, policy.jitter_ratio))


def truncate(text: str | None, max_length: int) -> str | None:
    """Bound text stored on a delivery row."""
    if text is None:
        return None
    if len(text) <= max_length:
        return text
    if max_length <= 3:
        return text[:max_length]
    return text[: max_length - 3] + "..."


__all__ = [
    "RETRYABLE_CLIENT_ERRORS",
    "Outcome",
    "backoff_seconds",
    "classify_status",
    "truncate",
]
