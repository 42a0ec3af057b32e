"""Bounded exponential backoff for external HTTP calls.

Every call made to GitHub or Telegram on behalf of a pipeline decision goes
through ``call_with_retry``. Only transient failures are retried: transport
errors (connection refused, DNS, timeouts), HTTP 429 and HTTP 5xx. Anything
else (4xx, JSON errors) is raised immediately.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

import httpx

from .config import DEFAULT_HTTP_BACKOFF_SECONDS, DEFAULT_HTTP_MAX_ATTEMPTS, HttpConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({429, 500, 502, 503, 504})


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and backoff schedule."""

    max_attempts: int = DEFAULT_HTTP_MAX_ATTEMPTS
    initial_delay_seconds: float = DEFAULT_HTTP_BACKOFF_SECONDS
    multiplier: float = 2.0

    @classmethod
    def from_http_config(cls, http: HttpConfig) -> RetryPolicy:
        return cls(max_attempts=http.max_attempts, initial_delay_seconds=http.backoff_seconds)

    def delay_for(self, attempt: int) -> float:
        """Delay after failed attempt number ``attempt`` (1-based)."""
        return self.initial_delay_seconds * (self.multiplier ** (attempt - 1))


def is_transient(error: Exception) -> bool:
    """Check whether an HTTP failure is worth retrying."""
    if isinstance(error, httpx.TransportError):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in RETRYABLE_STATUS_CODES
    return False


def call_with_retry(
    operation: Callable[[], T],
    *,
    policy: RetryPolicy | None = None,
    description: str = "HTTP call",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation`` until it succeeds or the attempt budget is spent.

    Args:
        operation: Zero-argument callable performing one attempt.
        policy: Retry policy. Defaults to 4 attempts starting at 2s, doubling.
        description: Operation name for log records.
        sleep: Sleep function, replaceable in tests.

    Returns:
        The operation's result.

    Raises:
        The last error once attempts are exhausted, or the first
        non-transient error.
    """
    policy = policy or RetryPolicy()
    last_error: Exception | None = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return operation()
        except (httpx.TransportError, httpx.HTTPStatusError) as e:
            if not is_transient(e):
                raise
            last_error = e

            if attempt < policy.max_attempts:
                wait_time = policy.delay_for(attempt)
                logger.warning(
                    f"{description} failed, retrying",
                    extra={
                        "attempt": attempt,
                        "max_attempts": policy.max_attempts,
                        "wait_seconds": wait_time,
                        "error": str(e),
                    },
                )
                sleep(wait_time)

    # Loop runs at least once (max_attempts >= 1), so last_error is set here
    assert last_error is not None, "Retry loop completed without setting last_error"
    logger.error(
        f"{description} failed after {policy.max_attempts} attempts",
        extra={"error": str(last_error)},
    )
    raise last_error
