"""Queue consumer: runs category scrape jobs with incremental persistence."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional

from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from catalog_crawler.config import Settings, settings as default_settings
from catalog_crawler.ingest.scraper_service import ScraperService
from catalog_crawler.logging_config import get_logger
from catalog_crawler.worker.batch_writer import BatchPersistenceCoordinator
from catalog_crawler.worker.cache import CacheService
from catalog_crawler.worker.queue import QueuedJob, ScrapeQueue, ScrapeTaskPayload

logger = logging.getLogger(__name__)


@dataclass
class ScrapeTaskOutcome:
    """Summary returned by a completed category job."""

    products_found: int
    pages_scraped: int
    duration_ms: int
    errors: List[str] = field(default_factory=list)
    batches_failed: int = 0


class TaskRunner:
    """Executes ``scrape-category`` jobs."""

    def __init__(
        self,
        scraper: ScraperService,
        cache: CacheService,
        session_factory: async_sessionmaker[AsyncSession],
        config: Optional[Settings] = None,
    ):
        self.scraper = scraper
        self.cache = cache
        self.session_factory = session_factory
        self.config = config or default_settings

    async def handle_scrape_category(self, payload: ScrapeTaskPayload) -> ScrapeTaskOutcome:
        """
        Scrape a category end to end, persisting every page as it arrives.

        The progress snapshot is cleared whether the job succeeds or fails.
        Job-level errors propagate so the queue layer can redeliver.
        """
        job_log = get_logger(__name__, category=payload.progress_key)
        job_log.info(
            f"Starting job: {payload.progress_key} "
            f"(maxPages: {payload.max_pages if payload.max_pages is not None else 'config default'})"
        )
        started = time.monotonic()

        coordinator = BatchPersistenceCoordinator(
            self.session_factory,
            self.cache,
            category_id=payload.category_id,
            progress_key=payload.progress_key,
            failure_policy=self.config.batch_failure_policy,
        )

        try:
            result = await self.scraper.scrape_category_all_pages(
                payload.url,
                on_batch=coordinator,
                max_pages=payload.max_pages,
            )
        finally:
            await coordinator.finish()

        outcome = ScrapeTaskOutcome(
            products_found=len(result.data),
            pages_scraped=result.pages_scraped,
            duration_ms=int((time.monotonic() - started) * 1000),
            errors=list(result.errors),
            batches_failed=coordinator.batches_failed,
        )
        job_log.info(
            f"Job complete. Total {outcome.products_found} books from "
            f"{outcome.pages_scraped} pages in {outcome.duration_ms}ms"
        )
        return outcome


class ScrapeWorker:
    """
    Pulls one job at a time from the queue.

    A failed job is put back with its attempt counter incremented until
    ``job_max_attempts`` is reached, then dropped.
    """

    def __init__(
        self,
        queue: ScrapeQueue,
        runner: TaskRunner,
        config: Optional[Settings] = None,
        name: str = "worker",
    ):
        self.queue = queue
        self.runner = runner
        self.config = config or default_settings
        self.name = name
        self.jobs_processed = 0

    async def _settle(self, job: QueuedJob, requeue: bool = False) -> None:
        try:
            if requeue:
                await self.queue.retry(job)
            else:
                await self.queue.ack(job)
        except RedisError as e:
            # Entry stays in the processing list until requeue_stale runs
            logger.error(f"[{self.name}] Could not settle job {job.payload.progress_key}: {e}")

    async def process(self, job: QueuedJob) -> Optional[ScrapeTaskOutcome]:
        payload = job.payload
        try:
            outcome = await self.runner.handle_scrape_category(payload)
        except Exception as e:
            attempts = job.attempts + 1
            if attempts < self.config.job_max_attempts:
                logger.warning(
                    f"[{self.name}] Job {payload.progress_key} failed "
                    f"(attempt {attempts}/{self.config.job_max_attempts}), requeueing: {e}"
                )
                await self._settle(job, requeue=True)
            else:
                logger.error(
                    f"[{self.name}] Job {payload.progress_key} failed after {attempts} attempts: {e}",
                    exc_info=True,
                )
                await self._settle(job)
            return None

        self.jobs_processed += 1
        await self._settle(job)
        return outcome

    async def run(self, stop: asyncio.Event) -> None:
        """Consume jobs until ``stop`` is set."""
        logger.info(f"[{self.name}] Listening on {self.queue.name}")
        while not stop.is_set():
            try:
                job = await self.queue.dequeue(self.config.queue_block_timeout_seconds)
            except RedisError as e:
                logger.error(f"[{self.name}] Queue unavailable: {e}")
                await asyncio.sleep(self.config.queue_block_timeout_seconds)
                continue
            if job is None:
                continue
            await self.process(job)
        logger.info(f"[{self.name}] Stopped after {self.jobs_processed} jobs")
