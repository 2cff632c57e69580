"""Incremental persistence of crawled pages."""

import logging
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from catalog_crawler import metrics
from catalog_crawler.config import settings
from catalog_crawler.db.catalog_repository import CatalogRepository
from catalog_crawler.ingest.base import BatchPersistenceError, PageProgress, ScrapedProduct
from catalog_crawler.worker.cache import CacheService

logger = logging.getLogger(__name__)

FAILURE_POLICIES = ("log", "raise")


class BatchPersistenceCoordinator:
    """
    Batch callback that writes each page of products as it is scraped.

    Upserts and the category count refresh share one transaction. The progress
    snapshot is written to the cache only after that transaction commits.

    Failure policy:
        log: failed batches are logged and the crawl continues; the category
             count may lag until the next successful batch
        raise: failed batches raise BatchPersistenceError, aborting the crawl
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: CacheService,
        category_id: int,
        progress_key: str,
        failure_policy: Optional[str] = None,
    ):
        policy = failure_policy or settings.batch_failure_policy
        if policy not in FAILURE_POLICIES:
            raise ValueError(f"Unknown batch failure policy {policy!r}, expected one of {FAILURE_POLICIES}")

        self.session_factory = session_factory
        self.cache = cache
        self.category_id = category_id
        self.progress_key = progress_key
        self.failure_policy = policy

        self.batches_written = 0
        self.batches_failed = 0
        self.last_product_count: Optional[int] = None

    async def __call__(self, products: List[ScrapedProduct], progress: PageProgress) -> None:
        if not products:
            return

        logger.info(
            f"Saving batch of {len(products)} products "
            f"(page {progress.current}/{progress.total}) for category {self.category_id}"
        )

        try:
            async with self.session_factory() as db:
                async with db.begin():
                    repo = CatalogRepository(db)
                    await repo.upsert_products(products, self.category_id)
                    count = await repo.refresh_category_count(self.category_id)
        except Exception as e:
            self.batches_failed += 1
            metrics.record_batch("failed")
            if self.failure_policy == "raise":
                raise BatchPersistenceError(self.category_id, progress.current, str(e)) from e
            logger.error(f"Failed to save batch for category {self.category_id} page {progress.current}: {e}")
            return

        self.batches_written += 1
        self.last_product_count = count
        metrics.record_batch("success", len(products))
        logger.debug(f"Category {self.category_id} now has {count} products")

        await self.cache.set_scrape_progress(self.progress_key, progress.current, progress.total)

    async def finish(self) -> None:
        """Drop the progress snapshot once the job is over, successful or not."""
        await self.cache.clear_scrape_progress(self.progress_key)
