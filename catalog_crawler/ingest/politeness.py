"""Politeness gate: robots.txt admission plus token-bucket throttling."""

import logging
from typing import Optional

from catalog_crawler import metrics
from catalog_crawler.ingest.rate_limiter import TokenBucketRateLimiter
from catalog_crawler.ingest.robots import RobotsTxtChecker

logger = logging.getLogger(__name__)


class PolitenessGate:
    """
    Shared admission point for every outbound page load against the target site.

    Construct one per process and pass it to every crawler. Neither method
    raises: robots failures allow, the rate limiter waits instead of rejecting.
    """

    def __init__(
        self,
        robots: Optional[RobotsTxtChecker] = None,
        rate_limiter: Optional[TokenBucketRateLimiter] = None,
    ):
        self.robots = robots or RobotsTxtChecker()
        self.rate_limiter = rate_limiter or TokenBucketRateLimiter()

    async def allowed(self, url: str) -> bool:
        allowed = await self.robots.is_allowed(url)
        if not allowed:
            metrics.robots_blocked_total.inc()
            logger.info(f"robots.txt disallows {url}")
        return allowed

    async def throttle(self) -> None:
        await self.rate_limiter.throttle()

    async def close(self):
        await self.robots.close()
