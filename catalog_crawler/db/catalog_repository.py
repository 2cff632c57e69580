"""Upsert / count / update operations on catalog entities."""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_crawler.db.models import Category, Navigation, Product
from catalog_crawler.ingest.base import ScrapedNavigation, ScrapedProduct

logger = logging.getLogger(__name__)


def _insert_for(session: AsyncSession, table):
    """Dialect-specific INSERT supporting ON CONFLICT."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(table)
    if dialect == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"Upsert not supported for dialect {dialect}")


class CatalogRepository:
    """Catalog writes issued inside a caller-managed session/transaction."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def upsert_product(self, product: ScrapedProduct, category_id: Optional[int]) -> None:
        """
        Insert a product or refresh price, availability and specs by source_id.
        """
        now = datetime.utcnow()
        price = Decimal(str(round(product.price or 0.0, 2)))
        specs = product.spec_fields() or None

        stmt = _insert_for(self.session, Product).values(
            source_id=product.source_id,
            title=product.title,
            author=product.author,
            price=price,
            image_url=product.image_url,
            source_url=product.source_url,
            is_in_stock=True,
            specs=specs,
            category_id=category_id,
            created_at=now,
            updated_at=now,
        )
        changes = {
            "price": stmt.excluded.price,
            "is_in_stock": True,
            "updated_at": now,
        }
        if specs:
            changes["specs"] = stmt.excluded.specs

        await self.session.execute(
            stmt.on_conflict_do_update(index_elements=[Product.source_id], set_=changes)
        )

    async def upsert_products(self, products: Iterable[ScrapedProduct], category_id: Optional[int]) -> int:
        count = 0
        for product in products:
            await self.upsert_product(product, category_id)
            count += 1
        return count

    async def count_products(self, category_id: int) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(Product).where(Product.category_id == category_id)
        )
        return int(result.scalar_one())

    async def count_products_by_slug(self, slug: str) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(Product)
            .join(Category, Product.category_id == Category.id)
            .where(Category.slug == slug)
        )
        return int(result.scalar_one())

    async def refresh_category_count(self, category_id: int) -> int:
        """Write the authoritative product count and refresh timestamp."""
        count = await self.count_products(category_id)
        await self.session.execute(
            update(Category)
            .where(Category.id == category_id)
            .values(product_count=count, last_scraped_at=datetime.utcnow())
        )
        return count

    async def get_category_by_slug(self, slug: str) -> Optional[Category]:
        result = await self.session.execute(select(Category).where(Category.slug == slug))
        return result.scalar_one_or_none()

    async def count_navigations(self) -> int:
        result = await self.session.execute(select(func.count()).select_from(Navigation))
        return int(result.scalar_one())

    async def save_navigation(self, navigations: List[ScrapedNavigation]) -> int:
        """Upsert navigation sections and their categories by slug."""
        now = datetime.utcnow()
        saved = 0
        for nav in navigations:
            nav_stmt = _insert_for(self.session, Navigation).values(
                title=nav.title, slug=nav.slug, last_scraped_at=now, created_at=now
            )
            await self.session.execute(
                nav_stmt.on_conflict_do_update(
                    index_elements=[Navigation.slug],
                    set_={"title": nav_stmt.excluded.title, "last_scraped_at": now},
                )
            )
            nav_id = (
                await self.session.execute(select(Navigation.id).where(Navigation.slug == nav.slug))
            ).scalar_one()

            for category in nav.categories:
                cat_stmt = _insert_for(self.session, Category).values(
                    navigation_id=nav_id,
                    title=category.title,
                    slug=category.slug,
                    url=category.url,
                    product_count=0,
                    created_at=now,
                )
                await self.session.execute(
                    cat_stmt.on_conflict_do_update(
                        index_elements=[Category.slug],
                        set_={
                            "navigation_id": nav_id,
                            "title": cat_stmt.excluded.title,
                            "url": cat_stmt.excluded.url,
                        },
                    )
                )
            saved += 1
        return saved

    async def claim_stale_categories(
        self,
        stale_before: datetime,
        limit: int,
        empty_before: Optional[datetime] = None,
    ) -> List[Category]:
        """
        Return categories due for a refresh, stamping them so the next
        scheduler tick skips them.

        A category is due when it was never scraped, was last scraped before
        ``stale_before``, or still has no products and was last claimed before
        ``empty_before`` (so a failed first scrape is retried sooner).
        """
        due = [
            Category.last_scraped_at.is_(None),
            Category.last_scraped_at < stale_before,
        ]
        if empty_before is not None:
            due.append(and_(Category.product_count == 0, Category.last_scraped_at < empty_before))

        result = await self.session.execute(
            select(Category)
            .where(or_(*due))
            .order_by(Category.last_scraped_at.asc().nulls_first(), Category.id)
            .limit(limit)
        )
        categories = list(result.scalars().all())
        now = datetime.utcnow()
        for category in categories:
            category.last_scraped_at = now
        return categories
