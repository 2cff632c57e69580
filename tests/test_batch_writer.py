"""Tests for incremental batch persistence and progress snapshots."""

import pytest
from sqlalchemy import func, select

from catalog_crawler.db.models import Category, Product
from catalog_crawler.ingest.base import BatchPersistenceError, PageProgress, ScrapedProduct
from catalog_crawler.worker.batch_writer import BatchPersistenceCoordinator
from catalog_crawler.worker.cache import progress_key


def books(prefix: str, count: int, price: float = 4.99):
    return [
        ScrapedProduct(
            source_id=f"{prefix}-{i}",
            title=f"{prefix.title()} {i}",
            source_url=f"https://www.worldofbooks.com/en-gb/products/{prefix}-{i}",
            price=price,
            author="Someone",
            isbn="9780141439518" if i == 0 else None,
            condition="Very Good",
        )
        for i in range(count)
    ]


async def product_count(session_factory) -> int:
    async with session_factory() as db:
        return (await db.execute(select(func.count()).select_from(Product))).scalar_one()


@pytest.fixture
def coordinator(session_factory, cache, category):
    return BatchPersistenceCoordinator(
        session_factory, cache, category_id=category.id, progress_key=category.slug, failure_policy="log"
    )


@pytest.mark.asyncio
async def test_replaying_a_batch_is_idempotent(coordinator, session_factory):
    batch = books("sea", 3)

    await coordinator(batch, PageProgress(1, 2))
    await coordinator(batch, PageProgress(1, 2))

    assert await product_count(session_factory) == 3
    assert coordinator.batches_written == 2


@pytest.mark.asyncio
async def test_conflict_updates_price_and_keeps_identity(coordinator, session_factory):
    await coordinator(books("sea", 1, price=4.99), PageProgress(1, 1))
    await coordinator(books("sea", 1, price=2.50), PageProgress(1, 1))

    async with session_factory() as db:
        product = (await db.execute(select(Product))).scalar_one()
    assert float(product.price) == 2.50
    assert product.specs["isbn"] == "9780141439518"
    assert product.specs["condition"] == "Very Good"


@pytest.mark.asyncio
async def test_category_count_comes_from_store(coordinator, session_factory, category):
    await coordinator(books("sea", 2), PageProgress(1, 2))
    await coordinator(books("sky", 3), PageProgress(2, 2))

    async with session_factory() as db:
        refreshed = await db.get(Category, category.id)
    assert refreshed.product_count == 5
    assert refreshed.last_scraped_at is not None
    assert coordinator.last_product_count == 5


@pytest.mark.asyncio
async def test_progress_written_then_cleared(coordinator, cache, redis_client, category):
    await coordinator(books("sea", 1), PageProgress(2, 4))

    assert await cache.get_scrape_progress(category.slug) == {"currentPage": 2, "totalPages": 4}
    ttl = await redis_client.ttl(progress_key(category.slug))
    assert 0 < ttl <= 60

    await coordinator.finish()
    assert await cache.get_scrape_progress(category.slug) is None


@pytest.mark.asyncio
async def test_empty_batch_is_skipped(coordinator, cache, category):
    await coordinator([], PageProgress(1, 1))

    assert coordinator.batches_written == 0
    assert await cache.get_scrape_progress(category.slug) is None


@pytest.mark.asyncio
async def test_failure_is_logged_and_swallowed(session_factory, cache, category):
    coordinator = BatchPersistenceCoordinator(
        session_factory, cache, category_id=category.id, progress_key=category.slug, failure_policy="log"
    )
    broken = [ScrapedProduct(source_id="x", title=None, source_url="https://x")]

    await coordinator(broken, PageProgress(1, 3))

    assert coordinator.batches_failed == 1
    assert await product_count(session_factory) == 0
    assert await cache.get_scrape_progress(category.slug) is None


@pytest.mark.asyncio
async def test_failed_batch_rolls_back_whole_transaction(session_factory, cache, category):
    coordinator = BatchPersistenceCoordinator(
        session_factory, cache, category_id=category.id, progress_key=category.slug, failure_policy="log"
    )
    batch = books("sea", 2) + [ScrapedProduct(source_id="x", title=None, source_url="https://x")]

    await coordinator(batch, PageProgress(1, 1))

    assert await product_count(session_factory) == 0


@pytest.mark.asyncio
async def test_raise_policy_raises(session_factory, cache, category):
    coordinator = BatchPersistenceCoordinator(
        session_factory, cache, category_id=category.id, progress_key=category.slug, failure_policy="raise"
    )
    broken = [ScrapedProduct(source_id="x", title=None, source_url="https://x")]

    with pytest.raises(BatchPersistenceError) as exc_info:
        await coordinator(broken, PageProgress(3, 5))
    assert exc_info.value.page == 3


def test_unknown_policy_rejected():
    with pytest.raises(ValueError):
        BatchPersistenceCoordinator(None, None, 1, "fiction", failure_policy="ignore")
