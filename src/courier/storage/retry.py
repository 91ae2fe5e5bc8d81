"""Retry utilities for storage operations.

Exponential backoff for transient connection errors when talking to
PostgreSQL. Only read paths are decorated: re-running a write whose
acknowledgement was lost could double-apply it.
"""

from __future__ import annotations

import logging

from asyncpg.exceptions import (
    CannotConnectNowError,
    PostgresConnectionError,
    TooManyConnectionsError,
)
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)


def _log_retry(retry_state: RetryCallState) -> None:
    """Log retry attempts with context."""
    if retry_state.attempt_number > 1:
        logger.warning(
            "Retrying database read",
            extra={
                "attempt": retry_state.attempt_number,
                "fn_name": retry_state.fn.__name__ if retry_state.fn else "unknown",
                "exception": str(retry_state.outcome.exception()) if retry_state.outcome else None,
            },
        )


db_read_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
    retry=retry_if_exception_type(
        (
            PostgresConnectionError,
            CannotConnectNowError,
            TooManyConnectionsError,
            ConnectionError,
            TimeoutError,
        )
    ),
    before_sleep=_log_retry,
    reraise=True,
)
