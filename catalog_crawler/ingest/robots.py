"""robots.txt fetching, parsing and path matching with a per-origin cache."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional
from urllib.parse import urlparse

import httpx

from catalog_crawler.config import settings

logger = logging.getLogger(__name__)


@dataclass
class RobotsRules:
    """Allow/Disallow patterns that apply to this crawler."""

    allow: List[str] = field(default_factory=list)
    disallow: List[str] = field(default_factory=list)

    def is_allowed(self, path: str) -> bool:
        """
        Check a URL path against the rules.

        The longest matching Disallow wins unless an Allow pattern with an
        equal or longer literal prefix also matches.
        """
        path = path or "/"
        blocking = [p for p in self.disallow if matches_pattern(path, p)]
        if not blocking:
            return True

        longest_block = max(_literal_length(p) for p in blocking)
        for pattern in self.allow:
            if matches_pattern(path, pattern) and _literal_length(pattern) >= longest_block:
                return True
        return False


def _literal_length(pattern: str) -> int:
    return len(pattern[:-1]) if pattern.endswith("*") else len(pattern)


def matches_pattern(path: str, pattern: str) -> bool:
    """Match a path against a robots pattern ("/", trailing "*", or literal prefix)."""
    if pattern == "/":
        return True
    if pattern.endswith("*"):
        return path.startswith(pattern[:-1])
    return path.startswith(pattern)


def parse_robots_txt(text: str) -> RobotsRules:
    """
    Parse robots.txt content.

    Only groups addressed to ``*`` or to a user-agent containing "bot" are
    collected. Consecutive User-agent lines form one group.
    """
    rules = RobotsRules()
    group_agents: List[str] = []
    in_group_header = False
    applies = False

    for raw_line in text.splitlines():
        line = raw_line.split("#", 1)[0].strip()
        if not line or ":" not in line:
            continue

        directive, value = line.split(":", 1)
        directive = directive.strip().lower()
        value = value.strip()

        if directive == "user-agent":
            if not in_group_header:
                group_agents = []
                in_group_header = True
            agent = value.lower()
            group_agents.append(agent)
            applies = any(a == "*" or "bot" in a for a in group_agents)
            continue

        in_group_header = False
        if not applies or not value:
            continue
        if directive == "disallow":
            rules.disallow.append(value)
        elif directive == "allow":
            rules.allow.append(value)

    return rules


@dataclass
class _CachedRules:
    rules: RobotsRules
    fetched_at: float


class RobotsTxtChecker:
    """
    Caches robots.txt rules per origin and answers access checks.

    Any fetch or parse failure results in an allow-all rule set (fail-open).
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        cache_ttl: Optional[float] = None,
        enabled: Optional[bool] = None,
        user_agent: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._client = client
        self._owns_client = client is None
        self.cache_ttl = settings.robots_cache_ttl_seconds if cache_ttl is None else cache_ttl
        self.enabled = settings.respect_robots_txt if enabled is None else enabled
        self.user_agent = user_agent or settings.user_agent
        self._clock = clock
        self._cache: Dict[str, _CachedRules] = {}
        self._lock = asyncio.Lock()

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=settings.robots_fetch_timeout,
                headers={"User-Agent": self.user_agent},
                follow_redirects=True,
            )
        return self._client

    async def close(self):
        """Close the HTTP client if this checker created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def _origin(url: str) -> str:
        parsed = urlparse(url)
        scheme = parsed.scheme or "https"
        return f"{scheme}://{parsed.netloc}"

    async def is_allowed(self, url: str) -> bool:
        """Return whether ``url`` may be fetched. Never raises."""
        if not self.enabled:
            return True

        try:
            parsed = urlparse(url)
            rules = await self._get_rules(self._origin(url))
            return rules.is_allowed(parsed.path or "/")
        except Exception as e:
            logger.warning(f"robots.txt check failed for {url}, allowing: {e}")
            return True

    async def _get_rules(self, origin: str) -> RobotsRules:
        async with self._lock:
            cached = self._cache.get(origin)
            if cached and self._clock() - cached.fetched_at < self.cache_ttl:
                return cached.rules

            rules = await self._fetch_rules(origin)
            self._cache[origin] = _CachedRules(rules=rules, fetched_at=self._clock())
            return rules

    async def _fetch_rules(self, origin: str) -> RobotsRules:
        robots_url = f"{origin}/robots.txt"
        try:
            client = await self._get_client()
            response = await client.get(robots_url)
        except httpx.HTTPError as e:
            logger.warning(f"Could not fetch {robots_url}, allowing all: {e}")
            return RobotsRules()

        if response.status_code != 200:
            logger.info(f"{robots_url} returned HTTP {response.status_code}, allowing all")
            return RobotsRules()

        try:
            rules = parse_robots_txt(response.text)
        except Exception as e:
            logger.warning(f"Could not parse {robots_url}, allowing all: {e}")
            return RobotsRules()

        logger.info(
            f"Loaded robots.txt for {origin}: "
            f"{len(rules.disallow)} disallow, {len(rules.allow)} allow rules"
        )
        return rules
