"""Top-level scrape actions: navigation, category, product detail, search."""

import asyncio
import logging
import random
from functools import partial
from typing import Awaitable, Callable, List, Optional
from urllib.parse import urlencode

from catalog_crawler.config import Settings, settings as default_settings
from catalog_crawler.db.job_tracker import JobTracker
from catalog_crawler.db.models import ScrapeTargetType
from catalog_crawler.ingest.base import (
    BrowserSession,
    ScrapedNavigation,
    ScrapedProduct,
    ScrapedProductDetail,
    ScrapeResult,
    SelectorNotFoundError,
)
from catalog_crawler.ingest.category_crawler import BatchCallback, CategoryCrawler, page_url
from catalog_crawler.ingest.extractor import PageExtractor
from catalog_crawler.ingest.politeness import PolitenessGate
from catalog_crawler.ingest.retry import with_retry
from catalog_crawler.ingest.selectors import wait_for_any

logger = logging.getLogger(__name__)


class RobotsDisallowedError(Exception):
    """A top-level scrape target is disallowed by robots.txt."""

    def __init__(self, url: str):
        self.url = url
        super().__init__(f"Disallowed by robots.txt: {url}")


class ScraperService:
    """
    Entry points for every scrape the worker and CLI trigger.

    Each public method is one tracked job: a ScrapeJob record is written
    around it. Pages inside a multi-page crawl are not tracked separately.
    """

    def __init__(
        self,
        browser: BrowserSession,
        gate: PolitenessGate,
        tracker: JobTracker,
        config: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.config = config or default_settings
        self.browser = browser
        self.gate = gate
        self.tracker = tracker
        self.extractor = PageExtractor(self.config)
        self._sleep = sleep
        self._rng = rng or random.Random()

    def crawler(self) -> CategoryCrawler:
        """A crawler sharing this service's browser and gate."""
        return CategoryCrawler(
            self.browser,
            self.gate,
            extractor=self.extractor,
            config=self.config,
            sleep=self._sleep,
            rng=self._rng,
        )

    def search_url(self, query: str) -> str:
        return f"{self.config.search_url}?{urlencode({'q': query})}"

    async def _retry(self, operation, description: str):
        return await with_retry(
            operation,
            max_attempts=self.config.max_retries,
            base_delay=self.config.retry_base_delay_seconds,
            max_delay=self.config.retry_max_delay_seconds,
            jitter_factor=self.config.retry_jitter_factor,
            description=description,
            sleep=self._sleep,
            rng=self._rng,
        )

    async def _require_allowed(self, url: str) -> None:
        if not await self.gate.allowed(url):
            raise RobotsDisallowedError(url)

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    async def _load_navigation(self, url: str) -> List[ScrapedNavigation]:
        await self.gate.throttle()
        menu_selectors = self.config.selector_list("menu")
        async with self.browser.open_page() as page:
            await page.block_resource_types(self.config.blocked_resource_types)
            await page.goto(url, int(self.config.navigation_timeout_seconds * 1000))
            if await wait_for_any(page, menu_selectors, self.config.menu_wait_timeout_ms) is None:
                raise SelectorNotFoundError(menu_selectors, url)
            return await self.extractor.extract_navigation(page)

    async def scrape_navigation(self) -> List[ScrapedNavigation]:
        """Scrape the site menu into navigation sections with their categories."""
        url = self.config.navigation_url
        logger.info("Starting navigation scrape...")

        async def action() -> List[ScrapedNavigation]:
            await self._require_allowed(url)
            navigations = await self._retry(partial(self._load_navigation, url), "navigation scrape")
            categories = sum(len(n.categories) for n in navigations)
            logger.info(f"Navigation scrape found {len(navigations)} sections, {categories} categories")
            return navigations

        return await self.tracker.track(ScrapeTargetType.NAVIGATION, url, action)

    # ------------------------------------------------------------------
    # Category listings
    # ------------------------------------------------------------------

    async def scrape_category(self, url: str, page_number: int = 1) -> List[ScrapedProduct]:
        """Scrape a single listing page of a category."""
        target_url = page_url(url, page_number)
        crawler = self.crawler()

        async def action() -> List[ScrapedProduct]:
            await self._require_allowed(target_url)
            products = await self._retry(partial(crawler.scrape_page, target_url), f"page {page_number}")
            logger.info(f"Scraped {len(products)} products from {target_url}")
            return products

        return await self.tracker.track(ScrapeTargetType.CATEGORY, target_url, action)

    async def scrape_category_all_pages(
        self,
        base_url: str,
        on_batch: Optional[BatchCallback] = None,
        max_pages: Optional[int] = None,
    ) -> ScrapeResult[List[ScrapedProduct]]:
        """
        Scrape every page of a category, reporting each page as it lands.

        Args:
            base_url: Category URL
            on_batch: Incremental batch callback
            max_pages: Page cap override (None = configured default, 0 = unlimited)

        Returns:
            Aggregated products, pages completed and page-level errors
        """
        crawler = self.crawler()
        return await self.tracker.track(
            ScrapeTargetType.CATEGORY,
            base_url,
            partial(crawler.crawl, base_url, on_batch=on_batch, max_pages=max_pages),
        )

    # ------------------------------------------------------------------
    # Product detail
    # ------------------------------------------------------------------

    async def _load_detail(self, url: str) -> ScrapedProductDetail:
        await self.gate.throttle()
        async with self.browser.open_page() as page:
            await page.block_resource_types(self.config.blocked_resource_types)
            await page.goto(url, int(self.config.product_timeout_seconds * 1000))
            # Detail sections are optional; extraction proceeds even if the marker never shows
            await wait_for_any(page, self.config.selector_list("detail_ready"), self.config.selector_wait_timeout_ms)
            return await self.extractor.extract_detail(page)

    async def scrape_product_detail(self, url: str) -> ScrapedProductDetail:
        """Scrape description, specs, image, reviews and related titles of a product."""

        async def action() -> ScrapedProductDetail:
            await self._require_allowed(url)
            detail = await self._retry(partial(self._load_detail, url), "product detail")
            logger.info(
                f"Product detail {url}: {len(detail.specs)} specs, "
                f"{len(detail.reviews)} reviews, {len(detail.recommendations)} related"
            )
            return detail

        return await self.tracker.track(ScrapeTargetType.PRODUCT, url, action)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search_products(self, query: str) -> List[ScrapedProduct]:
        """First page of search results for ``query``."""
        return await self.scrape_category(self.search_url(query))

    async def search_products_all_pages(self, query: str) -> ScrapeResult[List[ScrapedProduct]]:
        """Every search results page for ``query``, capped like a category."""
        return await self.scrape_category_all_pages(self.search_url(query))
