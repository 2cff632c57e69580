"""Total page count estimation for a category listing."""

import logging
import math
import re
from typing import Iterable, List, Optional

from catalog_crawler.config import Settings, settings as default_settings
from catalog_crawler.ingest.base import BrowserPage
from catalog_crawler.ingest.selectors import normalize_text

logger = logging.getLogger(__name__)

PRODUCT_COUNT_PATTERN = re.compile(r"(\d[\d,]*)\s*products?", re.IGNORECASE)
OUT_OF_PATTERN = re.compile(r"out of (\d[\d,]*)", re.IGNORECASE)
PAGE_PARAM_PATTERN = re.compile(r"[?&]page=(\d+)")


def pages_from_text(text: str, products_per_page: int) -> Optional[int]:
    """Derive a page count from "N products" or "out of N" in page text."""
    for pattern in (PRODUCT_COUNT_PATTERN, OUT_OF_PATTERN):
        match = pattern.search(text or "")
        if not match:
            continue
        total = int(match.group(1).replace(",", ""))
        if total > 0:
            return math.ceil(total / products_per_page)
    return None


def max_page_from_links(hrefs: Iterable[Optional[str]]) -> Optional[int]:
    pages = []
    for href in hrefs:
        match = PAGE_PARAM_PATTERN.search(href or "")
        if match and int(match.group(1)) > 0:
            pages.append(int(match.group(1)))
    return max(pages) if pages else None


def max_page_from_labels(labels: Iterable[Optional[str]]) -> Optional[int]:
    pages = []
    for label in labels:
        label = normalize_text(label)
        if label.isdigit() and int(label) > 0:
            pages.append(int(label))
    return max(pages) if pages else None


class PaginationEstimator:
    """
    Three-tier page count detection, first success wins:

    1. "N products" / "out of N" in the body text divided by page size
    2. Highest ``page=`` value among pagination links
    3. Highest numeric label among pagination controls

    Falls back to a single page.
    """

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or default_settings
        self.products_per_page = self.config.products_per_page

    async def estimate(self, page: BrowserPage) -> int:
        for name, tier in (
            ("product count text", self._from_text),
            ("page links", self._from_links),
            ("page labels", self._from_labels),
        ):
            try:
                total = await tier(page)
            except Exception as e:
                logger.debug(f"Page detection via {name} failed: {e}")
                continue
            if total:
                logger.info(f"Detected {total} pages via {name}")
                return total

        logger.warning("Could not detect pagination, assuming single page")
        return 1

    async def _from_text(self, page: BrowserPage) -> Optional[int]:
        return pages_from_text(await page.body_text(), self.products_per_page)

    async def _from_links(self, page: BrowserPage) -> Optional[int]:
        hrefs: List[Optional[str]] = []
        for selector in self.config.selector_list("pagination_link"):
            for link in await page.query_all(selector):
                hrefs.append(await link.get_attribute("href"))
        return max_page_from_links(hrefs)

    async def _from_labels(self, page: BrowserPage) -> Optional[int]:
        labels: List[str] = []
        for selector in self.config.selector_list("page_number"):
            for item in await page.query_all(selector):
                labels.append(await item.text())
        return max_page_from_labels(labels)
