"""First-run navigation load running in the background."""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from catalog_crawler.config import settings
from catalog_crawler.db.catalog_repository import CatalogRepository
from catalog_crawler.db.models import Navigation
from catalog_crawler.ingest.scraper_service import ScraperService
from catalog_crawler.worker.cache import NAVIGATION_CACHE_KEY, CacheService

logger = logging.getLogger(__name__)

LOADING_PLACEHOLDER: List[Dict[str, Any]] = [{"id": 1, "title": "Loading Library...", "categories": []}]


def _serialize(nav: Navigation) -> Dict[str, Any]:
    return {
        "id": nav.id,
        "title": nav.title,
        "slug": nav.slug,
        "categories": [
            {
                "id": cat.id,
                "title": cat.title,
                "slug": cat.slug,
                "url": cat.url,
                "product_count": cat.product_count,
                "last_scraped_at": cat.last_scraped_at.isoformat() if cat.last_scraped_at else None,
            }
            for cat in nav.categories
        ],
    }


class NavigationBootstrap:
    """
    Serves persisted navigation, scraping it in the background when the store is empty.

    The trigger returns a placeholder immediately. The background task's
    outcome is reported through ``last_error`` and the log; callers see
    completion by polling the persisted navigation count.
    """

    def __init__(
        self,
        scraper: ScraperService,
        session_factory: async_sessionmaker[AsyncSession],
        cache: Optional[CacheService] = None,
    ):
        self.scraper = scraper
        self.session_factory = session_factory
        self.cache = cache
        self.last_error: Optional[BaseException] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def get_navigations(self) -> List[Dict[str, Any]]:
        """Navigation sections with their categories, or the loading placeholder."""
        if self.cache:
            cached = await self.cache.get(NAVIGATION_CACHE_KEY)
            if cached:
                return cached

        async with self.session_factory() as db:
            result = await db.execute(
                select(Navigation).options(selectinload(Navigation.categories)).order_by(Navigation.id)
            )
            navigations = [_serialize(nav) for nav in result.scalars().all()]

        if not navigations:
            self.start()
            return LOADING_PLACEHOLDER

        if self.cache:
            await self.cache.set(NAVIGATION_CACHE_KEY, navigations, settings.cache_ttl_navigation)
        return navigations

    async def navigation_count(self) -> int:
        async with self.session_factory() as db:
            return await CatalogRepository(db).count_navigations()

    def start(self) -> asyncio.Task:
        """Spawn the background scrape unless one is already running."""
        if self.running:
            return self._task

        logger.info("No navigation persisted, starting background navigation scrape")
        self.last_error = None
        self._task = asyncio.create_task(self._run(), name="navigation-bootstrap")
        self._task.add_done_callback(self._on_done)
        return self._task

    async def wait(self) -> Optional[int]:
        """Await the current background scrape; returns sections saved."""
        if self._task is None:
            return None
        return await self._task

    async def _run(self) -> int:
        navigations = await self.scraper.scrape_navigation()
        async with self.session_factory() as db:
            async with db.begin():
                saved = await CatalogRepository(db).save_navigation(navigations)

        if self.cache:
            await self.cache.delete(NAVIGATION_CACHE_KEY)
        return saved

    def _on_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            logger.warning("Navigation bootstrap cancelled")
            return
        error = task.exception()
        if error is not None:
            self.last_error = error
            logger.error(f"Navigation bootstrap failed: {error}", exc_info=error)
            return
        logger.info(f"Navigation bootstrap saved {task.result()} sections")
