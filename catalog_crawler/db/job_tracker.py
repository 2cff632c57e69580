"""Persisted lifecycle records around top-level scrape actions."""

import logging
import time
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from catalog_crawler import metrics
from catalog_crawler.db.models import ScrapeJob, ScrapeJobStatus, ScrapeTargetType
from catalog_crawler.ingest.base import ScrapeResult

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ERROR_LOG_LENGTH = 2000


def count_items(result) -> int:
    """items_found for a job result: collection length, else 1."""
    if isinstance(result, ScrapeResult):
        return result.total_items
    if isinstance(result, (list, tuple, set, dict)):
        return len(result)
    return 1


def _error_text(exc: BaseException) -> str:
    text = str(exc) or exc.__class__.__name__
    return text[:MAX_ERROR_LOG_LENGTH]


class JobTracker:
    """
    Wraps a scrape action in a ScrapeJob record.

    The record is created PENDING before the action runs and receives exactly
    one terminal update (COMPLETED or FAILED). Failures are re-raised.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def _open(self, target_type: ScrapeTargetType, url: str) -> ScrapeJob:
        async with self.session_factory() as db:
            job = ScrapeJob(
                target_url=url,
                target_type=target_type.value,
                status=ScrapeJobStatus.PENDING.value,
                started_at=datetime.utcnow(),
            )
            db.add(job)
            await db.commit()
            await db.refresh(job)
            return job

    async def _close(
        self,
        job: ScrapeJob,
        status: ScrapeJobStatus,
        elapsed: float,
        items_found: int = 0,
        error: Optional[str] = None,
    ) -> None:
        duration_ms = int(elapsed * 1000)
        finished_at = job.started_at + timedelta(milliseconds=duration_ms)

        async with self.session_factory() as db:
            record = await db.get(ScrapeJob, job.id)
            if record is None:
                logger.error(f"Scrape job {job.id} disappeared before completion")
                return
            if ScrapeJobStatus(record.status).is_terminal:
                logger.warning(f"Scrape job {job.id} already {record.status}, not updating")
                return

            record.status = status.value
            record.finished_at = finished_at
            record.duration_ms = duration_ms
            record.items_found = items_found
            record.error_log = error
            await db.commit()

        metrics.record_job(job.target_type, status.value, elapsed)

    async def track(
        self,
        target_type: ScrapeTargetType,
        url: str,
        action: Callable[[], Awaitable[T]],
    ) -> T:
        """
        Run ``action`` under a job record.

        Args:
            target_type: NAVIGATION, CATEGORY or PRODUCT
            url: Target URL stored on the record
            action: Zero-argument coroutine factory performing the scrape

        Returns:
            The action's result
        """
        job = await self._open(target_type, url)
        started = time.monotonic()
        logger.debug(f"Opened scrape job {job.id} ({target_type.value} {url})")

        try:
            result = await action()
        except Exception as e:
            await self._close(
                job, ScrapeJobStatus.FAILED, time.monotonic() - started, error=_error_text(e)
            )
            logger.error(f"Scrape job {job.id} failed: {e}")
            raise

        items = count_items(result)
        await self._close(job, ScrapeJobStatus.COMPLETED, time.monotonic() - started, items_found=items)
        logger.info(f"Scrape job {job.id} completed with {items} items")
        return result
