from __future__ import annotations

from dataclasses import dataclass

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

RETRYABLE_CONNECT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout)


@dataclass(slots=True)
class RetryPolicy:
    max_attempts: int = 3
    base_backoff_seconds: float = 0.5
    max_backoff_seconds: float = 8.0


@dataclass(slots=True)
class ReconnectPolicy:
    max_attempts: int = 5
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000

    def delay_ms(self, attempt: int) -> int:
        """Delay before reconnect number ``attempt`` (1-based)."""
        return min(self.base_delay_ms * (2**attempt), self.max_delay_ms)


def connect_retrying(policy: RetryPolicy) -> AsyncRetrying:
    """Retry only failures to establish a connection; anything that got a response is final."""
    return AsyncRetrying(
        stop=stop_after_attempt(max(1, policy.max_attempts)),
        wait=wait_exponential(multiplier=policy.base_backoff_seconds, max=policy.max_backoff_seconds),
        retry=retry_if_exception_type(RETRYABLE_CONNECT_ERRORS),
        reraise=True,
    )
