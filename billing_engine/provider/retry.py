"""Exponential backoff for outbound provider calls.

Only the payment-provider client retries.  Storage faults are never retried
here; the webhook path hands them back to the provider as a 503 and lets
its redelivery schedule do the waiting.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from pydantic import BaseModel, Field

from billing_engine.config import BillingSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryConfig(BaseModel):
    """Backoff budget for one provider call."""

    max_retries: int = Field(default=3, ge=0, description="Retries after the first attempt.")
    base_delay: float = Field(default=1.0, gt=0.0, description="Delay before the first retry, in seconds.")
    max_delay: float = Field(default=30.0, gt=0.0, description="Ceiling on any single delay, in seconds.")
    jitter: bool = Field(default=True, description="Scale each delay by a random factor in [0.5, 1.5].")

    @classmethod
    def from_settings(cls, settings: BillingSettings) -> RetryConfig:
        return cls(
            max_retries=settings.max_retries,
            base_delay=settings.retry_backoff_base,
            max_delay=settings.retry_max_delay,
        )


def compute_delay(attempt: int, config: RetryConfig) -> float:
    """Delay before retry number ``attempt + 1`` (``attempt`` is zero-based)."""
    delay = min(config.base_delay * (2**attempt), config.max_delay)
    if config.jitter:
        delay *= random.uniform(0.5, 1.5)  # noqa: S311
    return delay


async def async_retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    config: RetryConfig,
    retryable_exceptions: tuple[type[Exception], ...] = (Exception,),
    *,
    operation: str = "provider call",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await ``fn()`` until it succeeds or the retry budget is spent.

    Parameters
    ----------
    fn:
        Zero-argument factory for the awaitable; called afresh per attempt.
    config:
        Backoff budget.
    retryable_exceptions:
        Exception types worth another attempt.  Anything else propagates
        from the first attempt that raises it.
    operation:
        Label used in retry log lines.
    sleep:
        Injected for tests.

    Raises
    ------
    Exception
        Whatever the final attempt raised.
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except retryable_exceptions as exc:
            if attempt >= config.max_retries:
                raise
            delay = compute_delay(attempt, config)
            attempt += 1
            logger.warning(
                "%s failed (attempt %d of %d), retrying in %.2fs: %s",
                operation,
                attempt,
                config.max_retries + 1,
                delay,
                exc,
            )
            await sleep(delay)
