"""Bounded retries with capped exponential backoff and jitter."""

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

from catalog_crawler import metrics
from catalog_crawler.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


def compute_backoff_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    jitter_factor: float,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Delay to wait before ``attempt`` (1-based).

    The first attempt never waits. Attempt k >= 2 waits
    ``min(base_delay * 2 ** (k - 2), max_delay)`` shifted by a uniform offset
    in ``[-jitter_factor * d, +jitter_factor * d]``, floored at zero.
    """
    if attempt <= 1:
        return 0.0

    delay = min(base_delay * (2 ** (attempt - 2)), max_delay)
    spread = delay * jitter_factor
    offset = (rng or random).uniform(-spread, spread) if spread > 0 else 0.0
    return max(0.0, delay + offset)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: Optional[int] = None,
    base_delay: Optional[float] = None,
    *,
    max_delay: Optional[float] = None,
    jitter_factor: Optional[float] = None,
    description: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rng: Optional[random.Random] = None,
) -> T:
    """
    Run ``operation`` until it succeeds or ``max_attempts`` attempts have failed.

    Callers must treat the operation as idempotent: a failed attempt may have
    partially executed before raising.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        max_attempts: Total attempts (defaults to settings.max_retries)
        base_delay: Delay before the second attempt in seconds
        max_delay: Cap on the un-jittered delay
        jitter_factor: Relative jitter applied to each delay
        description: Label used in log messages
        sleep: Coroutine used for backoff waits
        rng: Random source for jitter

    Returns:
        The operation's result

    Raises:
        The last attempt's exception once all attempts are exhausted
    """
    max_attempts = settings.max_retries if max_attempts is None else max_attempts
    base_delay = settings.retry_base_delay_seconds if base_delay is None else base_delay
    max_delay = settings.retry_max_delay_seconds if max_delay is None else max_delay
    jitter_factor = settings.retry_jitter_factor if jitter_factor is None else jitter_factor

    if max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")

    last_error: Optional[BaseException] = None
    for attempt in range(1, max_attempts + 1):
        if attempt > 1:
            delay = compute_backoff_delay(attempt, base_delay, max_delay, jitter_factor, rng)
            metrics.page_retries_total.inc()
            logger.info(
                f"Retry {attempt - 1}/{max_attempts - 1} for {description} "
                f"after {delay:.2f}s ({last_error})"
            )
            await sleep(delay)

        try:
            return await operation()
        except Exception as e:
            last_error = e
            logger.debug(f"{description} attempt {attempt}/{max_attempts} failed: {e}")

    raise last_error
