"""Read side of category scrape progress."""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from catalog_crawler.db.catalog_repository import CatalogRepository
from catalog_crawler.worker.cache import CacheService


@dataclass
class CategoryProgress:
    """Live crawl state of a category as seen by pollers."""

    active: bool
    products_count: int
    current_page: Optional[int] = None
    total_pages: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"active": self.active, "productsCount": self.products_count}
        if self.current_page is not None:
            data["currentPage"] = self.current_page
        if self.total_pages is not None:
            data["totalPages"] = self.total_pages
        return data


async def get_category_progress(
    slug: str,
    cache: CacheService,
    session_factory: async_sessionmaker[AsyncSession],
) -> CategoryProgress:
    """
    Combine the cached progress snapshot with the persisted product count.

    ``active`` is true only while an unexpired snapshot exists.
    """
    snapshot = await cache.get_scrape_progress(slug)
    async with session_factory() as db:
        products_count = await CatalogRepository(db).count_products_by_slug(slug)

    if snapshot is None:
        return CategoryProgress(active=False, products_count=products_count)

    return CategoryProgress(
        active=True,
        products_count=products_count,
        current_page=snapshot.get("currentPage"),
        total_pages=snapshot.get("totalPages"),
    )
