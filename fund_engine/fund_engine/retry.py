"""Bounded retry with exponential backoff for idempotent async calls.

Only side-effect-free work (ledger reads, database round-trips) goes through
this helper.  Transaction submission has its own single-retry policy in
:mod:`fund_engine.executor.transaction`.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryConfig(BaseModel):
    """Tuneable parameters for retry behaviour."""

    max_retries: int = Field(
        default=3,
        ge=0,
        description="Maximum number of retry attempts before re-raising.",
    )
    base_delay: float = Field(
        default=0.5,
        gt=0.0,
        description="Base delay in seconds for exponential backoff.",
    )
    max_delay: float = Field(
        default=5.0,
        gt=0.0,
        description="Upper bound on delay in seconds.",
    )
    jitter: bool = Field(
        default=False,
        description="When enabled, randomise the delay within [0.5x, 1.5x].",
    )


def compute_delay(attempt: int, config: RetryConfig) -> float:
    """Return the backoff delay for *attempt* (zero-based) given *config*."""
    delay: float = min(config.base_delay * (2**attempt), config.max_delay)
    if config.jitter:
        delay *= random.uniform(0.5, 1.5)  # noqa: S311
    return delay


async def async_retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    config: RetryConfig,
    retryable_exceptions: tuple[type[Exception], ...] = (Exception,),
    *,
    label: str = "operation",
) -> T:
    """Await ``fn()`` and retry on *retryable_exceptions* with backoff.

    Parameters
    ----------
    fn:
        Zero-argument coroutine factory.  A fresh coroutine is created on
        every attempt, so the work it wraps must be safe to repeat.
    config:
        Retry parameters (see :class:`RetryConfig`).
    retryable_exceptions:
        Exception types that trigger another attempt.  Anything else
        propagates immediately.
    label:
        Name used in the retry log lines.

    Returns
    -------
    T
        The result of the first successful attempt.

    Raises
    ------
    Exception
        The last retryable exception once all attempts are exhausted.
    """
    last_exception: Exception | None = None

    for attempt in range(config.max_retries + 1):
        try:
            return await fn()
        except retryable_exceptions as exc:
            last_exception = exc
            if attempt >= config.max_retries:
                break
            delay = compute_delay(attempt, config)
            logger.warning(
                "%s failed, retry %d/%d after %.2fs: %s",
                label,
                attempt + 1,
                config.max_retries,
                delay,
                exc,
            )
            await asyncio.sleep(delay)

    assert last_exception is not None  # noqa: S101
    raise last_exception
