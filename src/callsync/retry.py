"""Bounded retry with exponential backoff and jitter for remote calls.

Every source fetch, directory read and destination write goes through
:func:`execute_with_retry`:

- Exponential backoff capped at ``max_delay_seconds``
- Additive random jitter (a fraction of the computed delay) so concurrent
  callers do not retry in lockstep
- Auth/bad-request failures fail fast unless the policy opts back in
- The last underlying error is re-raised unchanged once attempts run out
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import httpx

from .errors import PERMANENT_STATUS_CODES, RemoteRequestError

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class RetryPolicy:
    """Retry policy configuration."""

    max_attempts: int = 5
    """Maximum number of attempts (including the initial attempt)."""

    base_delay_seconds: float = 1.0
    """Delay after the first failed attempt, before jitter."""

    max_delay_seconds: float = 30.0
    """Upper bound for the exponential component."""

    backoff_factor: float = 2.0
    """Multiplier applied per additional failed attempt."""

    jitter_factor: float = 0.1
    """Jitter upper bound as a fraction of the computed delay."""

    retry_permanent_errors: bool = False
    """Retry 400/401/403/404/422 responses like transient failures."""

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ValueError("retry delays must be non-negative")
        if not 0.0 <= self.jitter_factor <= 1.0:
            raise ValueError("jitter_factor must be between 0.0 and 1.0")

    def base_delay(self, attempt_number: int) -> float:
        """Backoff before jitter after failed attempt *attempt_number* (1-indexed)."""
        exponent = max(0, attempt_number - 1)
        return min(self.base_delay_seconds * (self.backoff_factor**exponent), self.max_delay_seconds)

    def calculate_backoff(self, attempt_number: int) -> float:
        """Backoff with jitter applied after failed attempt *attempt_number*."""
        delay = self.base_delay(attempt_number)
        return delay + random.random() * delay * self.jitter_factor

    def is_retryable(self, exc: BaseException) -> bool:
        """Classify a failure as worth another attempt."""
        if self.retry_permanent_errors:
            return True
        if isinstance(exc, RemoteRequestError):
            return not exc.permanent
        if isinstance(exc, httpx.HTTPStatusError):
            return exc.response.status_code not in PERMANENT_STATUS_CODES
        return True


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    label: str,
    policy: RetryPolicy,
    sleep: SleepFn = asyncio.sleep,
) -> T:
    """Run *operation* until it succeeds or the policy gives up.

    Parameters
    ----------
    operation:
        Zero-argument coroutine function performing one attempt.
    label:
        Human-readable operation name used in log records.
    policy:
        Retry policy to apply.
    sleep:
        Awaitable sleep function; injectable for tests.

    Returns
    -------
    T
        Result of the first successful attempt.

    Raises
    ------
    Exception
        The last attempt's error, unchanged, once attempts are exhausted or
        the error is classified as non-retryable.
    """
    attempt_number = 0
    while True:
        attempt_number += 1
        try:
            return await operation()
        except Exception as exc:
            remaining = policy.max_attempts - attempt_number
            retryable = policy.is_retryable(exc)
            if remaining <= 0 or not retryable:
                logger.error(
                    "%s failed after %d attempt(s)%s: %s",
                    label,
                    attempt_number,
                    "" if retryable else " (non-retryable)",
                    exc,
                )
                raise

            delay = policy.calculate_backoff(attempt_number)
            logger.warning(
                "%s failed, retrying in %.2fs",
                label,
                delay,
                extra={
                    "operation": label,
                    "attempt_number": attempt_number,
                    "retries_left": remaining,
                    "error": str(exc),
                },
            )
            await sleep(delay)
