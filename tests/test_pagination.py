"""Tests for page count detection."""

import pytest

from catalog_crawler.config import Settings
from catalog_crawler.ingest.fetchers.snapshot import SnapshotBrowser
from catalog_crawler.ingest.pagination import (
    PaginationEstimator,
    max_page_from_labels,
    max_page_from_links,
    pages_from_text,
)

URL = "https://www.worldofbooks.com/en-gb/collections/fiction"


async def estimate(html: str) -> int:
    browser = SnapshotBrowser({URL: html})
    async with browser.open_page() as page:
        await page.goto(URL, 1000)
        return await PaginationEstimator(Settings()).estimate(page)


def test_product_count_text():
    assert pages_from_text("1,234 products", 40) == 31
    assert pages_from_text("Showing 40 products", 40) == 1
    assert pages_from_text("1 - 40 out of 81", 40) == 3
    assert pages_from_text("nothing here", 40) is None


def test_link_and_label_helpers():
    assert max_page_from_links(["/c?page=2", "/c?sort=x&page=12", None, "/c"]) == 12
    assert max_page_from_links(["/c"]) is None
    assert max_page_from_labels(["1", "2", "…", "Next", " 9 "]) == 9
    assert max_page_from_labels(["Next"]) is None


@pytest.mark.asyncio
async def test_text_tier():
    assert await estimate("<html><body><p>1,234 products</p></body></html>") == 31


@pytest.mark.asyncio
async def test_text_tier_takes_precedence_over_links():
    html = """
    <html><body>
      <p>80 products</p>
      <nav><a href="/en-gb/collections/fiction?page=9">9</a></nav>
    </body></html>
    """
    assert await estimate(html) == 2


@pytest.mark.asyncio
async def test_links_tier():
    html = """
    <html><body>
      <nav class="pagination">
        <a href="/en-gb/collections/fiction?page=2">2</a>
        <a href="/en-gb/collections/fiction?page=7">7</a>
      </nav>
    </body></html>
    """
    assert await estimate(html) == 7


@pytest.mark.asyncio
async def test_labels_tier():
    html = """
    <html><body>
      <ul><li class="pagination__item">1</li><li class="pagination__item">4</li>
      <li class="pagination__item">Next</li></ul>
    </body></html>
    """
    assert await estimate(html) == 4


@pytest.mark.asyncio
async def test_no_signal_defaults_to_one():
    assert await estimate("<html><body><p>Welcome</p></body></html>") == 1
