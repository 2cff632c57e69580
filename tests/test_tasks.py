"""End-to-end worker tests: queue message to persisted products and job records."""

import asyncio
import random

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import func, select

from catalog_crawler.db.job_tracker import JobTracker
from catalog_crawler.db.models import Category, Product, ScrapeJob, ScrapeJobStatus
from catalog_crawler.ingest.base import PageLoadError
from catalog_crawler.ingest.category_crawler import page_url
from catalog_crawler.ingest.fetchers.snapshot import SnapshotBrowser
from catalog_crawler.ingest.scraper_service import ScraperService
from catalog_crawler.worker.queue import ScrapeQueue, ScrapeTaskPayload
from catalog_crawler.worker.tasks import ScrapeWorker, TaskRunner

from conftest import CATEGORY_URL


def category_site(make_listing, pages: int = 3):
    return SnapshotBrowser(
        {page_url(CATEGORY_URL, n): make_listing(n, cards=2, total_products=pages * 40) for n in range(1, pages + 1)}
    )


@pytest.fixture
def build_runner(gate, session_factory, cache, test_settings, sleeps):
    def build(browser):
        scraper = ScraperService(
            browser, gate, JobTracker(session_factory), test_settings, sleep=sleeps, rng=random.Random(5)
        )
        return TaskRunner(scraper, cache, session_factory, test_settings)

    return build


async def scalar(session_factory, stmt):
    async with session_factory() as db:
        return (await db.execute(stmt)).scalar_one()


@pytest.mark.asyncio
async def test_category_job_persists_every_page(make_listing, build_runner, session_factory, cache, category):
    runner = build_runner(category_site(make_listing, pages=3))
    payload = ScrapeTaskPayload(url=CATEGORY_URL, category_id=category.id, slug=category.slug, max_pages=0)

    outcome = await runner.handle_scrape_category(payload)

    assert outcome.pages_scraped == 3
    assert outcome.products_found == 6
    assert outcome.errors == []
    assert await scalar(session_factory, select(func.count()).select_from(Product)) == 6
    assert await scalar(session_factory, select(Category.product_count).where(Category.id == category.id)) == 6

    job = await scalar(session_factory, select(ScrapeJob))
    assert job.status == ScrapeJobStatus.COMPLETED.value
    assert job.target_type == "CATEGORY"
    assert job.items_found == 6

    # Progress is cleared once the job ends
    assert await cache.get_scrape_progress(category.slug) is None


@pytest.mark.asyncio
async def test_partial_failure_keeps_earlier_batches(make_listing, build_runner, session_factory, category):
    browser = category_site(make_listing, pages=3)
    browser.pages[page_url(CATEGORY_URL, 3)] = PageLoadError(page_url(CATEGORY_URL, 3), "timeout")
    runner = build_runner(browser)

    outcome = await runner.handle_scrape_category(
        ScrapeTaskPayload(url=CATEGORY_URL, category_id=category.id, slug=category.slug, max_pages=3)
    )

    assert outcome.pages_scraped == 2
    assert len(outcome.errors) == 1
    assert await scalar(session_factory, select(func.count()).select_from(Product)) == 4


@pytest.mark.asyncio
async def test_job_error_clears_progress_and_marks_job_failed(
    build_runner, session_factory, cache, category
):
    runner = build_runner(SnapshotBrowser({CATEGORY_URL: RuntimeError("browser crashed")}))
    await cache.set_scrape_progress(category.slug, 1, 2)
    payload = ScrapeTaskPayload(url=CATEGORY_URL, category_id=category.id, slug=category.slug, max_pages=2)

    with pytest.raises(RuntimeError):
        await runner.handle_scrape_category(payload)

    job = await scalar(session_factory, select(ScrapeJob))
    assert job.status == ScrapeJobStatus.FAILED.value
    assert job.error_log == "browser crashed"
    assert await cache.get_scrape_progress(category.slug) is None


@pytest.mark.asyncio
async def test_worker_requeues_then_gives_up(build_runner, redis_client, category, test_settings):
    runner = build_runner(SnapshotBrowser({}))

    async def always_fails(payload):
        raise RuntimeError("boom")

    runner.handle_scrape_category = always_fails
    queue = ScrapeQueue(name="test-worker", client=redis_client)
    worker = ScrapeWorker(queue, runner, test_settings)

    await queue.enqueue(ScrapeTaskPayload(url=CATEGORY_URL, category_id=category.id, slug=category.slug))

    first = await queue.dequeue(timeout=1)
    assert await worker.process(first) is None
    assert await queue.length() == 1

    second = await queue.dequeue(timeout=1)
    assert second.attempts == 1
    assert await worker.process(second) is None

    # job_max_attempts = 2: dropped after the second failure
    assert await queue.length() == 0
    assert await redis_client.llen(queue.processing_key) == 0


@pytest.mark.asyncio
async def test_worker_acks_successful_jobs(make_listing, build_runner, redis_client, category, test_settings):
    runner = build_runner(category_site(make_listing, pages=1))
    queue = ScrapeQueue(name="test-worker-ok", client=redis_client)
    worker = ScrapeWorker(queue, runner, test_settings)

    await queue.enqueue(ScrapeTaskPayload(url=CATEGORY_URL, category_id=category.id, slug=category.slug))
    job = await queue.dequeue(timeout=1)
    outcome = await worker.process(job)

    assert outcome.products_found == 2
    assert worker.jobs_processed == 1
    assert await redis_client.llen(queue.processing_key) == 0


@pytest.mark.asyncio
async def test_worker_survives_queue_errors_while_acking(build_runner, redis_client, category, test_settings):
    runner = build_runner(SnapshotBrowser({}))
    queue = ScrapeQueue(name="test-worker-ack", client=redis_client)
    worker = ScrapeWorker(queue, runner, test_settings)
    stop = asyncio.Event()
    handled = []

    async def succeed(payload):
        handled.append(payload.slug)
        if len(handled) == 2:
            stop.set()
        return None

    runner.handle_scrape_category = succeed

    real_ack = queue.ack
    ack_calls = []

    async def flaky_ack(job):
        ack_calls.append(job.payload.slug)
        if len(ack_calls) == 1:
            raise RedisConnectionError("Connection reset by peer")
        await real_ack(job)

    queue.ack = flaky_ack

    for slug in ("first", "second"):
        await queue.enqueue(ScrapeTaskPayload(url=CATEGORY_URL, category_id=category.id, slug=slug))

    await asyncio.wait_for(worker.run(stop), timeout=5)

    assert handled == ["first", "second"]
    assert worker.jobs_processed == 2
    assert await queue.length() == 0

    # The unacknowledged entry is recovered on the next start-up
    assert await redis_client.llen(queue.processing_key) == 1
    assert await queue.requeue_stale() == 1
    assert (await queue.dequeue(timeout=1)).payload.slug == "first"
