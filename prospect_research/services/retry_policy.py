"""Retry envelope for research backend calls.

Each attempt runs under a hard wall-clock timeout. Only transient failures
(rate limits, gateway errors, timeouts, dropped connections) are retried,
with exponential backoff plus jitter; everything else fails immediately.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_STATUS_CODES = frozenset({429, 502, 503, 504})


class BackendError(Exception):
    """Base class for research backend failures."""

    def __init__(self, message: str, *, backend: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.backend = backend
        self.status_code = status_code


class TransientBackendError(BackendError):
    """Retryable: rate limit, 5xx gateway, timeout, connection reset."""

    def __init__(
        self,
        message: str,
        *,
        backend: Optional[str] = None,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, backend=backend, status_code=status_code)
        self.retry_after = retry_after


class PermanentBackendError(BackendError):
    """Not retryable: bad request, auth failure, unparseable response."""


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 1.5
    max_delay: float = 30.0
    jitter: float = 0.25
    attempt_timeout: Optional[float] = 45.0

    def backoff_delay(self, attempt: int, retry_after: Optional[float] = None, rng: Callable[[], float] = random.random) -> float:
        """Delay before retry number attempt+1 (attempt is 0-based)."""
        delay = self.base_delay * (2 ** attempt)
        delay += delay * self.jitter * rng()
        if retry_after is not None:
            delay = max(delay, retry_after)
        return min(delay, self.max_delay)

    def max_elapsed_seconds(self) -> Optional[float]:
        """Upper bound on run(): every attempt times out and every wait hits max_delay.

        None when attempts have no timeout.
        """
        if self.attempt_timeout is None:
            return None
        return (self.max_retries + 1) * self.attempt_timeout + self.max_retries * self.max_delay

    async def run(
        self,
        call: Callable[[], Awaitable[T]],
        *,
        name: str = "backend",
        sleeper: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> T:
        """Run call with per-attempt timeout; retry transient errors up to max_retries times."""
        attempt = 0
        while True:
            try:
                if self.attempt_timeout is not None:
                    return await asyncio.wait_for(call(), timeout=self.attempt_timeout)
                return await call()
            except asyncio.TimeoutError as exc:
                error: TransientBackendError = TransientBackendError(
                    f"{name} timed out after {self.attempt_timeout}s", backend=name
                )
                timed_out: Optional[BaseException] = exc
            except TransientBackendError as exc:
                error = exc
                timed_out = None

            if attempt >= self.max_retries:
                if timed_out is not None:
                    raise error from timed_out
                raise error

            delay = self.backoff_delay(attempt, error.retry_after)
            logger.warning(
                "%s transient failure (attempt %s/%s): %s; retrying in %.2fs",
                name,
                attempt + 1,
                self.max_retries + 1,
                error,
                delay,
            )
            await sleeper(delay)
            attempt += 1
