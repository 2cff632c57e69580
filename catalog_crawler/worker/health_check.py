"""Daily canary scrape that catches selector drift before real jobs do."""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from catalog_crawler import metrics
from catalog_crawler.config import Settings, settings as default_settings
from catalog_crawler.ingest.base import ScrapedProduct, SelectorNotFoundError
from catalog_crawler.ingest.scraper_service import ScraperService

logger = logging.getLogger(__name__)


class SelectorHealth(str, Enum):
    PASSED = "passed"
    WARNING = "warning"
    FAILED = "failed"
    ERROR = "error"


@dataclass
class SelectorHealthReport:
    status: SelectorHealth
    url: str
    products_found: int = 0
    message: str = ""


def grade_products(url: str, products: List[ScrapedProduct]) -> SelectorHealthReport:
    if not products:
        logger.error(f"Health check FAILED: no products on {url}, selectors might be broken")
        return SelectorHealthReport(SelectorHealth.FAILED, url, message="No products found")

    first = products[0]
    if not first.title or not first.price:
        logger.warning(f"Health check WARNING: {len(products)} products but missing title/price")
        return SelectorHealthReport(
            SelectorHealth.WARNING,
            url,
            products_found=len(products),
            message="First product is missing its title or price",
        )

    logger.info(f"Health check PASSED: found {len(products)} products per page")
    return SelectorHealthReport(SelectorHealth.PASSED, url, products_found=len(products))


async def check_selectors(
    scraper: ScraperService,
    config: Optional[Settings] = None,
) -> SelectorHealthReport:
    """
    Scrape page 1 of the canary category and grade the result.

    Nothing is persisted beyond the job record. A listing that never renders
    product cards grades as FAILED; other scrape errors grade as ERROR. Neither
    is raised, so the scheduler keeps running.
    """
    config = config or default_settings
    url = config.selector_health_url
    logger.info("Running daily health check for selectors...")

    try:
        report = grade_products(url, await scraper.scrape_category(url, 1))
    except SelectorNotFoundError as e:
        logger.debug(f"Canary listing never rendered product cards: {e}")
        report = grade_products(url, [])
    except Exception as e:
        logger.error(f"Health check ERROR: scrape of {url} raised: {e}")
        report = SelectorHealthReport(SelectorHealth.ERROR, url, message=str(e))

    metrics.selector_health_checks_total.labels(status=report.status.value).inc()
    return report
