"""Main application entry point.

Usage:
    python -m catalog_crawler.main worker [--concurrency N] [--no-scheduler]
    python -m catalog_crawler.main enqueue --slug fiction [--max-pages 5]
    python -m catalog_crawler.main navigation
    python -m catalog_crawler.main product URL
    python -m catalog_crawler.main progress SLUG
    python -m catalog_crawler.main health
"""

import argparse
import asyncio
import dataclasses
import json
import logging
import signal
import sys
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from catalog_crawler import metrics
from catalog_crawler.config import settings
from catalog_crawler.db.catalog_repository import CatalogRepository
from catalog_crawler.db.job_tracker import JobTracker
from catalog_crawler.db.session import AsyncSessionLocal, engine, init_db
from catalog_crawler.ingest.fetchers.headless import PlaywrightBrowser
from catalog_crawler.ingest.politeness import PolitenessGate
from catalog_crawler.ingest.rate_limiter import TokenBucketRateLimiter
from catalog_crawler.ingest.robots import RobotsTxtChecker
from catalog_crawler.ingest.scraper_service import ScraperService
from catalog_crawler.logging_config import setup_logging
from catalog_crawler.worker.cache import CacheService
from catalog_crawler.worker.health_check import SelectorHealth, check_selectors
from catalog_crawler.worker.navigation_bootstrap import NavigationBootstrap
from catalog_crawler.worker.progress import get_category_progress
from catalog_crawler.worker.queue import ScrapeQueue, ScrapeTaskPayload
from catalog_crawler.worker.scheduler import setup_scheduler
from catalog_crawler.worker.tasks import ScrapeWorker, TaskRunner

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class Services:
    gate: PolitenessGate
    browser: PlaywrightBrowser
    scraper: ScraperService
    cache: CacheService
    queue: ScrapeQueue


@asynccontextmanager
async def services() -> AsyncIterator[Services]:
    """Build the process-wide gate, browser and clients; close them on exit."""
    await init_db()

    gate = PolitenessGate(
        robots=RobotsTxtChecker(),
        rate_limiter=TokenBucketRateLimiter(),
    )
    browser = PlaywrightBrowser(settings)
    scraper = ScraperService(browser, gate, JobTracker(AsyncSessionLocal), settings)
    cache = CacheService()
    queue = ScrapeQueue()

    try:
        yield Services(gate=gate, browser=browser, scraper=scraper, cache=cache, queue=queue)
    finally:
        await browser.close()
        await gate.close()
        await cache.close()
        await queue.close()
        await engine.dispose()


async def run_worker(concurrency: int, with_scheduler: bool) -> None:
    logger.info(f"Starting catalog crawler worker ({concurrency} concurrent jobs)...")
    metrics.start_metrics_server(settings.metrics_port)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops do not support signal handlers
            pass

    async with services() as svc:
        await svc.queue.requeue_stale()

        scheduler = None
        if with_scheduler and settings.scheduler_enabled:
            scheduler = setup_scheduler(svc.queue, AsyncSessionLocal, settings, scraper=svc.scraper)
            scheduler.start()
            logger.info("Scheduler started")

        runner = TaskRunner(svc.scraper, svc.cache, AsyncSessionLocal, settings)
        workers = [
            ScrapeWorker(svc.queue, runner, settings, name=f"worker-{i + 1}")
            for i in range(max(1, concurrency))
        ]
        try:
            await asyncio.gather(*(w.run(stop) for w in workers))
        finally:
            if scheduler:
                scheduler.shutdown(wait=False)
            logger.info("Shutdown complete")


async def enqueue(slug: Optional[str], url: Optional[str], category_id: Optional[int], max_pages: Optional[int]) -> None:
    await init_db()
    if slug and (url is None or category_id is None):
        async with AsyncSessionLocal() as db:
            category = await CatalogRepository(db).get_category_by_slug(slug)
        if category is None:
            raise SystemExit(f"Unknown category slug: {slug}")
        url = url or category.url
        category_id = category_id if category_id is not None else category.id

    if not url or category_id is None:
        raise SystemExit("enqueue needs --slug, or both --url and --category-id")

    queue = ScrapeQueue()
    try:
        payload = ScrapeTaskPayload(url=url, category_id=category_id, slug=slug or "", max_pages=max_pages)
        await queue.enqueue(payload)
        print(json.dumps(payload.model_dump(by_alias=True, exclude_none=True)))
    finally:
        await queue.close()
        await engine.dispose()


async def scrape_navigation() -> None:
    async with services() as svc:
        bootstrap = NavigationBootstrap(svc.scraper, AsyncSessionLocal, svc.cache)
        bootstrap.start()
        saved = await bootstrap.wait()
        print(f"Saved {saved} navigation sections")


async def scrape_product(url: str) -> None:
    async with services() as svc:
        detail = await svc.scraper.scrape_product_detail(url)
        print(json.dumps(dataclasses.asdict(detail), indent=2))


async def run_health_check() -> int:
    async with services() as svc:
        report = await check_selectors(svc.scraper, settings)
        print(json.dumps({**dataclasses.asdict(report), "status": report.status.value}))
        return 0 if report.status == SelectorHealth.PASSED else 1


async def show_progress(slug: str) -> None:
    await init_db()
    cache = CacheService()
    try:
        progress = await get_category_progress(slug, cache, AsyncSessionLocal)
        print(json.dumps(progress.to_dict()))
    finally:
        await cache.close()
        await engine.dispose()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="World of Books catalog crawler")
    sub = parser.add_subparsers(dest="command", required=True)

    worker = sub.add_parser("worker", help="Consume category scrape jobs")
    worker.add_argument("--concurrency", type=int, default=settings.worker_concurrency)
    worker.add_argument("--no-scheduler", action="store_true", help="Do not schedule stale category refreshes")

    enq = sub.add_parser("enqueue", help="Queue a category scrape")
    enq.add_argument("--slug")
    enq.add_argument("--url")
    enq.add_argument("--category-id", type=int)
    enq.add_argument("--max-pages", type=int, help="Page cap for this job (0 = unlimited)")

    sub.add_parser("navigation", help="Scrape and persist the navigation menu")

    product = sub.add_parser("product", help="Scrape a product detail page")
    product.add_argument("url")

    sub.add_parser("health", help="Run the selector health check once")

    progress = sub.add_parser("progress", help="Show scrape progress for a category")
    progress.add_argument("slug")

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging()

    if args.command == "worker":
        asyncio.run(run_worker(args.concurrency, not args.no_scheduler))
    elif args.command == "enqueue":
        asyncio.run(enqueue(args.slug, args.url, args.category_id, args.max_pages))
    elif args.command == "navigation":
        asyncio.run(scrape_navigation())
    elif args.command == "product":
        asyncio.run(scrape_product(args.url))
    elif args.command == "progress":
        asyncio.run(show_progress(args.slug))
    elif args.command == "health":
        return asyncio.run(run_health_check())
    return 0


if __name__ == "__main__":
    sys.exit(main())
