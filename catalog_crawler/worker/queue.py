"""Redis list-backed reliable job queue for category scrapes.

Jobs move from the pending list to a processing list on dequeue and are
removed from processing on ack, so a worker crash leaves its job recoverable
by ``requeue_stale`` at the next start-up.
"""

import json
import logging
from dataclasses import dataclass
from typing import Optional

import redis.asyncio as redis
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from redis.exceptions import RedisError

from catalog_crawler.config import settings

logger = logging.getLogger(__name__)


class ScrapeTaskPayload(BaseModel):
    """Queue message for a full category scrape."""

    model_config = ConfigDict(populate_by_name=True)

    url: str
    category_id: int = Field(alias="categoryId")
    slug: str = ""
    max_pages: Optional[int] = Field(default=None, alias="maxPages", ge=0)

    @property
    def progress_key(self) -> str:
        """Slug used for progress snapshots, falling back to the URL's last segment."""
        if self.slug:
            return self.slug
        return self.url.rstrip("/").split("/")[-1] or "unknown"


@dataclass
class QueuedJob:
    """A dequeued job and the exact raw entry sitting in the processing list."""

    raw: str
    payload: ScrapeTaskPayload
    attempts: int = 0


class ScrapeQueue:
    """Reliable FIFO queue over two Redis lists."""

    def __init__(
        self,
        name: Optional[str] = None,
        redis_url: Optional[str] = None,
        client: Optional[redis.Redis] = None,
    ):
        self.name = name or settings.queue_name
        self.redis_url = redis_url or settings.redis_url
        self._redis: Optional[redis.Redis] = client

    @property
    def pending_key(self) -> str:
        return f"{self.name}:pending"

    @property
    def processing_key(self) -> str:
        return f"{self.name}:processing"

    async def _get_redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def close(self):
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    @staticmethod
    def _encode(payload: ScrapeTaskPayload, attempts: int) -> str:
        return json.dumps(
            {
                "payload": payload.model_dump(by_alias=True, exclude_none=True),
                "attempts": attempts,
            }
        )

    async def enqueue(self, payload: ScrapeTaskPayload, attempts: int = 0) -> None:
        client = await self._get_redis()
        await client.lpush(self.pending_key, self._encode(payload, attempts))
        logger.debug(f"Enqueued {payload.slug or payload.url} (attempt {attempts + 1})")

    async def dequeue(self, timeout: Optional[int] = None) -> Optional[QueuedJob]:
        """
        Block up to ``timeout`` seconds for the next job.

        Malformed entries are logged and dropped.

        Returns:
            The job, or None when the wait timed out
        """
        client = await self._get_redis()
        raw = await client.blmove(
            self.pending_key,
            self.processing_key,
            timeout if timeout is not None else settings.queue_block_timeout_seconds,
            "RIGHT",
            "LEFT",
        )
        if raw is None:
            return None

        try:
            envelope = json.loads(raw)
            payload = ScrapeTaskPayload.model_validate(envelope["payload"])
            attempts = int(envelope.get("attempts", 0))
        except (ValueError, KeyError, TypeError, ValidationError) as e:
            logger.error(f"Dropping malformed queue entry {raw[:200]!r}: {e}")
            await client.lrem(self.processing_key, 1, raw)
            return None

        return QueuedJob(raw=raw, payload=payload, attempts=attempts)

    async def ack(self, job: QueuedJob) -> None:
        client = await self._get_redis()
        await client.lrem(self.processing_key, 1, job.raw)

    async def retry(self, job: QueuedJob) -> None:
        """Put a failed job back on the pending list with one more attempt counted."""
        await self.enqueue(job.payload, attempts=job.attempts + 1)
        await self.ack(job)

    async def requeue_stale(self) -> int:
        """Move jobs abandoned in the processing list back to pending."""
        client = await self._get_redis()
        moved = 0
        try:
            while await client.lmove(self.processing_key, self.pending_key, "LEFT", "RIGHT") is not None:
                moved += 1
        except RedisError as e:
            logger.error(f"Failed to requeue stale jobs: {e}")
        if moved:
            logger.warning(f"Requeued {moved} jobs abandoned by a previous worker")
        return moved

    async def length(self) -> int:
        client = await self._get_redis()
        return int(await client.llen(self.pending_key))
