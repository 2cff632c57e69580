"""APScheduler jobs: stale category refresh and the daily selector health check."""

import logging
from datetime import datetime, timedelta
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from catalog_crawler.config import Settings, settings as default_settings
from catalog_crawler.db.catalog_repository import CatalogRepository
from catalog_crawler.ingest.scraper_service import ScraperService
from catalog_crawler.worker.health_check import check_selectors
from catalog_crawler.worker.queue import ScrapeQueue, ScrapeTaskPayload

logger = logging.getLogger(__name__)


async def enqueue_stale_categories(
    queue: ScrapeQueue,
    session_factory: async_sessionmaker[AsyncSession],
    config: Optional[Settings] = None,
) -> int:
    """
    Enqueue a scrape for categories never scraped, outside the staleness window,
    or still empty after the shorter empty-category retry window.

    Claimed categories get ``last_scraped_at`` stamped in the same transaction,
    so the next tick does not enqueue them again.

    Returns:
        Number of jobs enqueued
    """
    config = config or default_settings
    now = datetime.utcnow()
    stale_before = now - timedelta(minutes=config.category_stale_minutes)
    empty_before = now - timedelta(minutes=config.empty_category_retry_minutes)

    async with session_factory() as db:
        async with db.begin():
            categories = await CatalogRepository(db).claim_stale_categories(
                stale_before, config.refresh_batch_size, empty_before=empty_before
            )
            payloads = [
                ScrapeTaskPayload(url=c.url, category_id=c.id, slug=c.slug)
                for c in categories
                if c.url
            ]

    for payload in payloads:
        await queue.enqueue(payload)

    if payloads:
        logger.info(f"Enqueued refresh for {len(payloads)} stale categories")
    return len(payloads)


def setup_scheduler(
    queue: ScrapeQueue,
    session_factory: async_sessionmaker[AsyncSession],
    config: Optional[Settings] = None,
    scraper: Optional[ScraperService] = None,
) -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    Args:
        queue: Queue that receives refresh jobs
        session_factory: Session factory for the catalog store
        config: Settings override
        scraper: Scraper for the daily selector health check (skipped when None)

    Returns:
        Configured scheduler instance
    """
    config = config or default_settings
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        enqueue_stale_categories,
        IntervalTrigger(minutes=max(1, config.refresh_interval_minutes)),
        args=[queue, session_factory, config],
        id="refresh_stale_categories",
        name="Enqueue scrapes for stale categories",
        max_instances=1,  # Prevent overlapping runs
        coalesce=True,
        misfire_grace_time=600,
        replace_existing=True,
    )

    if scraper is not None and config.selector_health_enabled:
        scheduler.add_job(
            check_selectors,
            CronTrigger(hour=config.selector_health_hour, minute=0),
            args=[scraper, config],
            id="selector_health_check",
            name="Canary scrape for selector drift",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )

    logger.info(f"Scheduler configured: stale category refresh every {config.refresh_interval_minutes} min")
    return scheduler
