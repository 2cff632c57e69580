"""Shared fixtures: SQLite store, fake Redis, fast settings and snapshot pages."""

from typing import Callable, List, Optional

import fakeredis
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from catalog_crawler.config import Settings
from catalog_crawler.db.models import Category, Navigation
from catalog_crawler.db.session import init_db
from catalog_crawler.ingest.politeness import PolitenessGate
from catalog_crawler.ingest.rate_limiter import TokenBucketRateLimiter
from catalog_crawler.ingest.robots import RobotsTxtChecker
from catalog_crawler.worker.cache import CacheService

CATEGORY_URL = "https://www.worldofbooks.com/en-gb/collections/fiction"


class SleepRecorder:
    """Stand-in for asyncio.sleep that returns immediately and records delays."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        base_url="https://www.worldofbooks.com",
        max_pages_per_category=3,
        min_page_delay_seconds=0.5,
        max_page_delay_seconds=1.0,
        requests_per_minute=0,
        rate_limit_min_delay_seconds=0,
        rate_limit_max_delay_seconds=0,
        max_retries=2,
        retry_base_delay_seconds=0.1,
        retry_max_delay_seconds=1.0,
        retry_jitter_factor=0.0,
        respect_robots_txt=False,
        selector_wait_timeout_ms=10,
        batch_failure_policy="log",
        job_max_attempts=2,
    )


@pytest.fixture
def gate(sleeps) -> PolitenessGate:
    return PolitenessGate(
        robots=RobotsTxtChecker(enabled=False),
        rate_limiter=TokenBucketRateLimiter(0, 0, 0, sleep=sleeps),
    )


@pytest.fixture
async def engine(tmp_path):
    test_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'catalog.db'}", echo=False)
    await init_db(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def category(session_factory) -> Category:
    """A persisted 'fiction' category under a 'Books' navigation section."""
    async with session_factory() as db:
        nav = Navigation(title="Books", slug="books")
        db.add(nav)
        await db.flush()
        cat = Category(navigation_id=nav.id, title="Fiction", slug="fiction", url=CATEGORY_URL)
        db.add(cat)
        await db.commit()
        await db.refresh(cat)
        return cat


@pytest.fixture
async def redis_client():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def cache(redis_client) -> CacheService:
    return CacheService(client=redis_client)


def product_card(page: int, index: int, with_title: bool = True) -> str:
    isbn = f"97800000{page:02d}{index:03d}"
    heading = (
        f'<h3 class="card__heading"><a href="/en-gb/products/book-{page}-{index}-{isbn}">'
        f"Book {page}-{index}</a></h3>"
        if with_title
        else '<h3 class="card__heading"></h3>'
    )
    return (
        '<li class="main-product-card">'
        f"{heading}"
        f'<p class="author">by Author {index}</p>'
        f'<div class="price"><span class="price-item">£{index}.99</span></div>'
        f'<div class="card__inner"><img data-src="//cdn.worldofbooks.com/{page}-{index}.jpg"></div>'
        "</li>"
    )


def listing_page(
    page: int,
    cards: int = 2,
    total_products: Optional[int] = None,
    extra_cards: str = "",
) -> str:
    header = f"<p>Showing {total_products} products</p>" if total_products else ""
    items = "".join(product_card(page, i) for i in range(1, cards + 1))
    return f"<html><body><main>{header}<ul>{items}{extra_cards}</ul></main></body></html>"


@pytest.fixture
def make_listing() -> Callable[..., str]:
    return listing_page


@pytest.fixture
def make_card() -> Callable[..., str]:
    return product_card
