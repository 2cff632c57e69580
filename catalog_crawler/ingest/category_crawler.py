"""Sequential multi-page category crawl with incremental batches."""

import asyncio
import logging
import random
import time
from enum import Enum
from functools import partial
from typing import Awaitable, Callable, List, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from catalog_crawler import metrics
from catalog_crawler.config import Settings, settings as default_settings
from catalog_crawler.ingest.base import (
    BatchPersistenceError,
    BrowserSession,
    PageLoadError,
    PageProgress,
    ScrapedProduct,
    ScrapeResult,
    SelectorNotFoundError,
)
from catalog_crawler.ingest.extractor import PageExtractor
from catalog_crawler.ingest.pagination import PaginationEstimator
from catalog_crawler.ingest.politeness import PolitenessGate
from catalog_crawler.ingest.retry import with_retry
from catalog_crawler.ingest.selectors import wait_for_any

logger = logging.getLogger(__name__)

BatchCallback = Callable[[List[ScrapedProduct], PageProgress], Awaitable[None]]


class CrawlPhase(str, Enum):
    DETECTING_PAGES = "detecting_pages"
    SCRAPING = "scraping"
    DONE = "done"


def page_url(base_url: str, page_number: int) -> str:
    """URL of a listing page; page 1 is the base URL itself."""
    if page_number <= 1:
        return base_url
    parsed = urlparse(base_url)
    query = [(k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True) if k != "page"]
    query.append(("page", str(page_number)))
    return urlunparse(parsed._replace(query=urlencode(query)))


class CategoryCrawler:
    """
    Crawls every page of a category listing, one page at a time.

    Page count is detected on the first load, capped by ``max_pages``.
    A page that keeps failing after retries is recorded in the result's
    error list and the crawl moves on.
    """

    def __init__(
        self,
        browser: BrowserSession,
        gate: PolitenessGate,
        extractor: Optional[PageExtractor] = None,
        estimator: Optional[PaginationEstimator] = None,
        config: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.config = config or default_settings
        self.browser = browser
        self.gate = gate
        self.extractor = extractor or PageExtractor(self.config)
        self.estimator = estimator or PaginationEstimator(self.config)
        self._sleep = sleep
        self._rng = rng or random.Random()
        self.phase = CrawlPhase.DONE

    @property
    def timeout_ms(self) -> int:
        return int(self.config.category_timeout_seconds * 1000)

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

    async def scrape_page(self, url: str) -> List[ScrapedProduct]:
        """
        Single attempt at loading one listing page and extracting its products.

        Raises:
            PageLoadError: Navigation failed
            SelectorNotFoundError: No product card selector appeared
        """
        await self.gate.throttle()
        card_selectors = self.config.selector_list("product_card")

        async with self.browser.open_page() as page:
            await page.block_resource_types(self.config.blocked_resource_types)
            await page.goto(url, self.timeout_ms)

            if await wait_for_any(page, card_selectors, self.config.selector_wait_timeout_ms) is None:
                preview = (await page.body_text())[:500]
                logger.debug(f"No product cards on {url}. Body preview: {preview}")
                raise SelectorNotFoundError(card_selectors, url)

            return await self.extractor.extract_listing(page)

    async def _detect_once(self, url: str) -> int:
        await self.gate.throttle()
        async with self.browser.open_page() as page:
            await page.block_resource_types(self.config.blocked_resource_types)
            await page.goto(url, self.timeout_ms)

            card_selectors = self.config.selector_list("product_card")
            if await wait_for_any(page, card_selectors, self.config.selector_wait_timeout_ms) is None:
                logger.warning(f"No product cards found on {url}, estimating pages anyway")

            return await self.estimator.estimate(page)

    async def detect_total_pages(self, base_url: str) -> int:
        """Load the first page and estimate how many pages the category has."""
        self.phase = CrawlPhase.DETECTING_PAGES
        if not await self.gate.allowed(base_url):
            return 1

        try:
            return await self._retry(partial(self._detect_once, base_url), f"page detection for {base_url}")
        except (PageLoadError, SelectorNotFoundError) as e:
            logger.warning(f"Page detection failed for {base_url}, assuming single page: {e}")
            return 1

    def pages_to_scrape(self, total_pages: int, max_pages: Optional[int]) -> int:
        limit = self.config.max_pages_per_category if max_pages is None else max_pages
        if limit and limit > 0:
            return min(total_pages, limit)
        return total_pages

    async def crawl(
        self,
        base_url: str,
        on_batch: Optional[BatchCallback] = None,
        max_pages: Optional[int] = None,
    ) -> ScrapeResult[List[ScrapedProduct]]:
        """
        Scrape pages 1..N of a category.

        Args:
            base_url: Category listing URL (page 1)
            on_batch: Awaited with each page's products and progress; its errors are
                logged and the crawl continues, except BatchPersistenceError
            max_pages: Page cap for this crawl (None = configured default, 0 = unlimited)

        Returns:
            ScrapeResult with all products, pages completed and page error strings
        """
        logger.info(f"Starting full category scrape: {base_url}")
        started = time.monotonic()

        all_products: List[ScrapedProduct] = []
        errors: List[str] = []
        pages_scraped = 0

        total_pages = await self.detect_total_pages(base_url)
        pages_to_scrape = self.pages_to_scrape(total_pages, max_pages)
        logger.info(
            f"Will scrape {pages_to_scrape} of {total_pages} pages "
            f"(max: {max_pages if max_pages is not None else self.config.max_pages_per_category or 'unlimited'})"
        )

        self.phase = CrawlPhase.SCRAPING
        for page_number in range(1, pages_to_scrape + 1):
            url = page_url(base_url, page_number)

            if not await self.gate.allowed(url):
                errors.append(f"Page {page_number} skipped: disallowed by robots.txt")
                metrics.record_page("blocked")
                continue

            try:
                products = await self._retry(partial(self.scrape_page, url), f"page {page_number}")
            except Exception as e:
                msg = f"Page {page_number} failed after {self.config.max_retries} retries: {e}"
                logger.error(msg)
                errors.append(msg)
                metrics.record_page("failed")
                continue

            all_products.extend(products)
            pages_scraped += 1
            metrics.record_page("success")
            metrics.page_products_found.observe(len(products))
            logger.info(
                f"Page {page_number}/{pages_to_scrape}: {len(products)} products "
                f"(total: {len(all_products)})"
            )

            if on_batch and products:
                try:
                    await on_batch(products, PageProgress(current=page_number, total=pages_to_scrape))
                except BatchPersistenceError:
                    raise
                except Exception as e:
                    logger.error(f"Batch callback failed for page {page_number}: {e}", exc_info=True)

            if page_number < pages_to_scrape:
                await self._sleep(
                    self._rng.uniform(self.config.min_page_delay_seconds, self.config.max_page_delay_seconds)
                )

        self.phase = CrawlPhase.DONE
        duration = time.monotonic() - started
        logger.info(
            f"Category scrape complete: {len(all_products)} products from "
            f"{pages_scraped} pages in {duration:.1f}s"
        )
        if errors:
            logger.warning(f"Completed with {len(errors)} page errors")

        return ScrapeResult(
            data=all_products,
            pages_scraped=pages_scraped,
            total_items=len(all_products),
            errors=errors,
        )
