"""Tests for top-level scrape actions, navigation bootstrap and scheduled refresh."""

import random
from datetime import datetime, timedelta

import pytest
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import func, select

from catalog_crawler.db.job_tracker import JobTracker
from catalog_crawler.db.models import Category, Product, ScrapeJob, ScrapeJobStatus
from catalog_crawler.ingest.base import PageLoadError, SelectorNotFoundError
from catalog_crawler.ingest.fetchers.snapshot import SnapshotBrowser
from catalog_crawler.ingest.scraper_service import RobotsDisallowedError, ScraperService
from catalog_crawler.worker.cache import NAVIGATION_CACHE_KEY
from catalog_crawler.worker.health_check import SelectorHealth, check_selectors
from catalog_crawler.worker.navigation_bootstrap import LOADING_PLACEHOLDER, NavigationBootstrap
from catalog_crawler.worker.queue import ScrapeQueue
from catalog_crawler.worker.scheduler import enqueue_stale_categories, setup_scheduler

HOME = "https://www.worldofbooks.com/en-gb"

NAV_HTML = """
<html><body><nav class="header__inline-menu">
  <a data-menu_category="Fiction" data-menu_subcategory="Crime" href="/en-gb/collections/crime">Crime</a>
  <a data-menu_category="Fiction" data-menu_subcategory="Fantasy" href="/en-gb/collections/fantasy">Fantasy</a>
  <a data-menu_category="Children's Books" data-menu_subcategory="Picture Books" href="/en-gb/collections/picture-books">Picture</a>
</nav></body></html>
"""


@pytest.fixture
def build_service(gate, session_factory, test_settings, sleeps):
    def build(pages):
        return ScraperService(
            SnapshotBrowser(pages), gate, JobTracker(session_factory), test_settings, sleep=sleeps, rng=random.Random(9)
        )

    return build


async def all_jobs(session_factory):
    async with session_factory() as db:
        return list((await db.execute(select(ScrapeJob).order_by(ScrapeJob.id))).scalars().all())


@pytest.mark.asyncio
async def test_scrape_navigation_is_tracked(build_service, session_factory):
    service = build_service({HOME: NAV_HTML})

    navigations = await service.scrape_navigation()

    assert [n.slug for n in navigations] == ["fiction", "children-s-books"]
    [job] = await all_jobs(session_factory)
    assert job.target_type == "NAVIGATION"
    assert job.items_found == 2


@pytest.mark.asyncio
async def test_navigation_without_menu_fails_job(build_service, session_factory):
    service = build_service({HOME: "<html><body><p>Maintenance</p></body></html>"})

    with pytest.raises(SelectorNotFoundError):
        await service.scrape_navigation()

    [job] = await all_jobs(session_factory)
    assert job.status == ScrapeJobStatus.FAILED.value
    assert "selectors found" in job.error_log


@pytest.mark.asyncio
async def test_single_page_and_search(build_service, session_factory, make_listing):
    category_url = f"{HOME}/collections/fiction"
    search_page_2 = f"{HOME}/search?q=the+sea&page=2"
    service = build_service(
        {
            f"{category_url}?page=2": make_listing(2, cards=3),
            f"{HOME}/search?q=the+sea": make_listing(1, cards=1, total_products=80),
            search_page_2: make_listing(2, cards=1),
        }
    )

    products = await service.scrape_category(category_url, page_number=2)
    assert len(products) == 3

    assert len(await service.search_products("the sea")) == 1

    result = await service.search_products_all_pages("the sea")
    assert result.pages_scraped == 2
    assert search_page_2 in service.browser.visited

    jobs = await all_jobs(session_factory)
    assert [j.target_type for j in jobs] == ["CATEGORY"] * 3
    assert jobs[0].target_url == f"{category_url}?page=2"


@pytest.mark.asyncio
async def test_product_detail_is_tracked(build_service, session_factory):
    url = f"{HOME}/products/sea-book"
    service = build_service(
        {url: '<html><body><main><div class="product__description">A book.<ul><li>Format: Paperback</li></ul></div></main></body></html>'}
    )

    detail = await service.scrape_product_detail(url)

    assert detail.specs == {"Format": "Paperback"}
    [job] = await all_jobs(session_factory)
    assert job.target_type == "PRODUCT"
    assert job.items_found == 1


@pytest.mark.asyncio
async def test_disallowed_product_fails_without_loading(build_service, session_factory, monkeypatch):
    url = f"{HOME}/products/private"
    service = build_service({url: "<html><body><main></main></body></html>"})

    async def disallow(target):
        return False

    monkeypatch.setattr(service.gate.robots, "is_allowed", disallow)

    with pytest.raises(RobotsDisallowedError):
        await service.scrape_product_detail(url)

    assert service.browser.visited == []
    [job] = await all_jobs(session_factory)
    assert job.status == ScrapeJobStatus.FAILED.value


@pytest.mark.asyncio
async def test_bootstrap_returns_placeholder_then_persists(build_service, session_factory, cache):
    bootstrap = NavigationBootstrap(build_service({HOME: NAV_HTML}), session_factory, cache)

    first = await bootstrap.get_navigations()
    assert first == LOADING_PLACEHOLDER
    assert bootstrap.running

    assert await bootstrap.wait() == 2
    assert await bootstrap.navigation_count() == 2
    assert bootstrap.last_error is None

    navigations = await bootstrap.get_navigations()
    assert [n["slug"] for n in navigations] == ["fiction", "children-s-books"]
    assert [c["slug"] for c in navigations[0]["categories"]] == ["crime", "fantasy"]
    assert await cache.get(NAVIGATION_CACHE_KEY) == navigations


@pytest.mark.asyncio
async def test_bootstrap_failure_is_recorded(build_service, session_factory):
    bootstrap = NavigationBootstrap(build_service({}), session_factory)

    assert await bootstrap.get_navigations() == LOADING_PLACEHOLDER
    with pytest.raises(PageLoadError):
        await bootstrap.wait()

    assert bootstrap.last_error is not None
    assert await bootstrap.navigation_count() == 0


@pytest.mark.asyncio
async def test_stale_categories_are_enqueued_once(session_factory, redis_client, test_settings):
    now = datetime.utcnow()
    async with session_factory() as db:
        db.add_all(
            [
                Category(title="Never", slug="never", url=f"{HOME}/collections/never"),
                Category(title="Old", slug="old", url=f"{HOME}/collections/old", last_scraped_at=now - timedelta(days=1)),
                Category(title="Fresh", slug="fresh", url=f"{HOME}/collections/fresh", last_scraped_at=now),
            ]
        )
        await db.commit()

    queue = ScrapeQueue(name="test-refresh", client=redis_client)

    assert await enqueue_stale_categories(queue, session_factory, test_settings) == 2
    assert await enqueue_stale_categories(queue, session_factory, test_settings) == 0

    assert await queue.length() == 2
    jobs = [await queue.dequeue(timeout=1) for _ in range(2)]
    assert {job.payload.slug for job in jobs} == {"never", "old"}


@pytest.mark.asyncio
async def test_empty_categories_are_retried_before_going_stale(session_factory, redis_client, test_settings):
    half_hour_ago = datetime.utcnow() - timedelta(minutes=30)
    async with session_factory() as db:
        db.add_all(
            [
                Category(title="Empty", slug="empty", url=f"{HOME}/collections/empty", last_scraped_at=half_hour_ago),
                Category(
                    title="Stocked",
                    slug="stocked",
                    url=f"{HOME}/collections/stocked",
                    last_scraped_at=half_hour_ago,
                    product_count=12,
                ),
            ]
        )
        await db.commit()

    queue = ScrapeQueue(name="test-refresh-empty", client=redis_client)

    assert await enqueue_stale_categories(queue, session_factory, test_settings) == 1
    assert (await queue.dequeue(timeout=1)).payload.slug == "empty"
    # Claiming stamps the category, so the next tick inside the retry window skips it
    assert await enqueue_stale_categories(queue, session_factory, test_settings) == 0


def test_scheduler_registers_refresh_job(test_settings):
    scheduler = setup_scheduler(ScrapeQueue(name="unused"), None, test_settings)
    job = scheduler.get_job("refresh_stale_categories")
    assert job is not None
    assert job.max_instances == 1
    assert scheduler.get_job("selector_health_check") is None


@pytest.mark.asyncio
async def test_scheduler_registers_health_check_with_scraper(build_service, test_settings):
    scheduler = setup_scheduler(ScrapeQueue(name="unused"), None, test_settings, scraper=build_service({}))
    job = scheduler.get_job("selector_health_check")
    assert job is not None
    assert isinstance(job.trigger, CronTrigger)


@pytest.mark.asyncio
async def test_health_check_passes_on_healthy_listing(build_service, session_factory, test_settings, make_listing):
    url = test_settings.selector_health_url
    report = await check_selectors(build_service({url: make_listing(1, cards=3)}), test_settings)

    assert report.status == SelectorHealth.PASSED
    assert report.products_found == 3
    # Only the job record is written
    [job] = await all_jobs(session_factory)
    assert job.target_url == url
    async with session_factory() as db:
        assert (await db.execute(select(func.count()).select_from(Product))).scalar_one() == 0


@pytest.mark.asyncio
async def test_health_check_warns_on_missing_price(build_service, test_settings, make_listing, make_card):
    url = test_settings.selector_health_url
    priceless = make_card(1, 1).replace("£1.99", "")
    page = make_listing(1, cards=0, extra_cards=priceless + make_card(1, 2))

    report = await check_selectors(build_service({url: page}), test_settings)

    assert report.status == SelectorHealth.WARNING
    assert report.products_found == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("with_cards", [True, False])
async def test_health_check_fails_without_products(build_service, test_settings, make_listing, make_card, with_cards):
    url = test_settings.selector_health_url
    extra = make_card(1, 1, with_title=False) if with_cards else ""
    page = make_listing(1, cards=0, extra_cards=extra)

    report = await check_selectors(build_service({url: page}), test_settings)

    assert report.status == SelectorHealth.FAILED
    assert report.products_found == 0


@pytest.mark.asyncio
async def test_health_check_reports_scrape_errors(build_service, test_settings):
    report = await check_selectors(build_service({}), test_settings)

    assert report.status == SelectorHealth.ERROR
    assert "no snapshot" in report.message
