"""Bounded retries for units of work that may lose an optimistic-lock race.

A subscription row is guarded by its ``version`` column.  When two
notifications for the same user are applied concurrently, the loser's flush
raises ``StaleDataError``; the whole unit of work is then re-run from a fresh
session with a short exponential backoff.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from pydantic import BaseModel, Field

from billing_core.errors import ConcurrencyError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryConfig(BaseModel):
    """Tuneable parameters for retry behaviour."""

    max_retries: int = Field(
        default=3,
        ge=0,
        description="Maximum number of retry attempts before giving up.",
    )
    base_delay: float = Field(
        default=0.05,
        gt=0.0,
        description="Base delay in seconds for exponential backoff.",
    )
    max_delay: float = Field(
        default=2.0,
        gt=0.0,
        description="Upper bound on delay in seconds.",
    )
    jitter: bool = Field(
        default=True,
        description="When enabled, randomise the delay within [0.5x, 1.5x].",
    )


def _compute_delay(attempt: int, config: RetryConfig) -> float:
    """Return the backoff delay for *attempt* given *config*."""
    delay: float = min(config.base_delay * (2**attempt), config.max_delay)
    if config.jitter:
        delay *= random.uniform(0.5, 1.5)  # noqa: S311
    return delay


async def async_retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    config: RetryConfig,
    retryable_exceptions: tuple[type[Exception], ...],
    *,
    operation: str = "operation",
) -> T:
    """Await *fn* until it succeeds or the retry budget is spent.

    Parameters
    ----------
    fn:
        Zero-argument coroutine function.  Each attempt calls it afresh, so
        it must open its own session.
    config:
        Retry parameters (see :class:`RetryConfig`).
    retryable_exceptions:
        Exception types that trigger a retry.  Anything else propagates
        immediately.
    operation:
        Label used in log lines and in the exhaustion error.

    Raises
    ------
    ConcurrencyError
        When every attempt raised one of *retryable_exceptions*.
    """
    for attempt in range(config.max_retries + 1):
        try:
            return await fn()
        except retryable_exceptions as exc:
            if attempt >= config.max_retries:
                logger.error("%s gave up after %d attempts: %s", operation, attempt + 1, exc)
                raise ConcurrencyError(f"{operation} lost {attempt + 1} concurrent update races") from exc
            delay = _compute_delay(attempt, config)
            logger.warning(
                "Retry %d/%d of %s after %.2fs: %s",
                attempt + 1,
                config.max_retries,
                operation,
                delay,
                exc,
            )
            await asyncio.sleep(delay)
    raise AssertionError("unreachable")  # pragma: no cover
