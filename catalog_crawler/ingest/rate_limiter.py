"""Token bucket rate limiter with randomized post-acquire delay."""

import asyncio
import logging
import random
import time
from typing import Awaitable, Callable, Optional

from catalog_crawler import metrics
from catalog_crawler.config import settings

logger = logging.getLogger(__name__)


class TokenBucketRateLimiter:
    """
    Process-wide token bucket sized from a requests-per-minute ceiling.

    The bucket starts full. Refill is computed lazily on every call from
    elapsed monotonic time. The refill/wait/consume sequence runs under a
    single lock so concurrent crawlers cannot spend the same token.
    """

    def __init__(
        self,
        requests_per_minute: Optional[int] = None,
        min_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        """
        Initialize the limiter.

        Args:
            requests_per_minute: Ceiling; 0 disables the bucket (delay still applies)
            min_delay: Lower bound of the post-acquire random delay in seconds
            max_delay: Upper bound of the post-acquire random delay in seconds
            clock: Monotonic clock in seconds
            sleep: Coroutine used for every suspension
            rng: Random source for the post-acquire delay
        """
        if requests_per_minute is None:
            requests_per_minute = settings.requests_per_minute
        self.requests_per_minute = max(0, requests_per_minute)
        self.min_delay = settings.rate_limit_min_delay_seconds if min_delay is None else min_delay
        self.max_delay = settings.rate_limit_max_delay_seconds if max_delay is None else max_delay
        if self.max_delay < self.min_delay:
            self.max_delay = self.min_delay

        self.capacity = float(self.requests_per_minute)
        self.refill_rate = self.requests_per_minute / 60.0  # tokens per second

        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._lock = asyncio.Lock()

        self.tokens = self.capacity
        self.last_refill = clock()

    @property
    def enabled(self) -> bool:
        return self.requests_per_minute > 0

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self) -> float:
        """
        Take one token, waiting for it if the bucket is empty.

        Returns:
            Seconds spent waiting for the token
        """
        if not self.enabled:
            return 0.0

        async with self._lock:
            self._refill()

            waited = 0.0
            if self.tokens < 1.0:
                waited = (1.0 - self.tokens) / self.refill_rate
                logger.debug(f"Rate limit reached, waiting {waited:.2f}s for a token")
                await self._sleep(waited)
                self._refill()

            self.tokens = max(0.0, self.tokens - 1.0)

        metrics.rate_limit_wait_seconds.observe(waited)
        return waited

    def random_delay(self) -> float:
        """Pick a post-acquire delay inside the configured window."""
        if self.max_delay <= 0:
            return 0.0
        return self._rng.uniform(self.min_delay, self.max_delay)

    async def throttle(self) -> None:
        """Acquire a token, then sleep a randomized delay to decorrelate requests."""
        await self.acquire()
        delay = self.random_delay()
        if delay > 0:
            await self._sleep(delay)
