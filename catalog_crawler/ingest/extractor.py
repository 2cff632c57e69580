"""Typed record extraction from loaded listing, detail and home pages."""

import logging
import re
from typing import Dict, List, Optional
from urllib.parse import urljoin, urlparse

from catalog_crawler.config import Settings, settings as default_settings
from catalog_crawler.ingest.base import (
    BrowserPage,
    PageElement,
    ScrapedCategory,
    ScrapedNavigation,
    ScrapedProduct,
    ScrapedProductDetail,
    ScrapedReview,
)
from catalog_crawler.ingest.selectors import (
    first_attribute,
    first_text,
    normalize_text,
    resolve_all,
)

logger = logging.getLogger(__name__)

MAX_SPEC_KEY_LENGTH = 50
MAX_REVIEWS = 5
MAX_RECOMMENDATIONS = 4
REVIEW_SNIPPET_LENGTH = 100
DESCRIPTION_FALLBACK = "Description unavailable."

ISBN_PATTERN = re.compile(r"(97[89]\d{10})$")


def parse_price(text: Optional[str]) -> float:
    """Strip everything but digits and dots, parse as float, 0.0 on failure."""
    raw = re.sub(r"[^\d.]", "", text or "")
    try:
        return float(raw) if raw else 0.0
    except ValueError:
        return 0.0


def source_id_from_url(url: str) -> str:
    """Last non-empty path segment of a product URL."""
    path = urlparse(url).path if url else ""
    segments = [s for s in path.split("/") if s]
    return segments[-1] if segments else ""


def isbn_from_source_id(source_id: str) -> Optional[str]:
    match = ISBN_PATTERN.search(source_id or "")
    return match.group(1) if match else None


def slugify(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")


class PageExtractor:
    """Turns a loaded page into records using ordered selector fallbacks."""

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or default_settings
        self.base_url = self.config.base_url.rstrip("/")

    def _selectors(self, name: str) -> List[str]:
        return self.config.selector_list(name)

    def absolute_url(self, href: str) -> str:
        if not href:
            return ""
        return urljoin(self.base_url + "/", href)

    # ------------------------------------------------------------------
    # Category listing
    # ------------------------------------------------------------------

    async def extract_listing(self, page: BrowserPage) -> List[ScrapedProduct]:
        """
        Extract product summaries from a category or search listing page.

        Cards without a title or product link are dropped.
        """
        card_selector, cards = await resolve_all(page, self._selectors("product_card"))
        if not cards:
            return []

        products: List[ScrapedProduct] = []
        dropped = 0
        for card in cards:
            try:
                product = await self._extract_card(card)
            except Exception as e:
                logger.debug(f"Skipping unreadable card ({card_selector}): {e}")
                product = None

            if product is None or not product.is_valid:
                dropped += 1
                continue
            products.append(product)

        if dropped:
            logger.debug(f"Dropped {dropped}/{len(cards)} cards without title or URL")
        return products

    async def _extract_card(self, card: PageElement) -> Optional[ScrapedProduct]:
        title = await first_text(card, self._selectors("product_title"))
        href = await first_attribute(card, self._selectors("product_title"), "href")
        if not title or not href:
            return None

        source_url = self.absolute_url(href)
        source_id = source_id_from_url(source_url)
        if not source_id:
            return None

        author = await first_text(card, self._selectors("product_author"))
        author = re.sub(r"^\s*(by|author:)\s*", "", author, flags=re.IGNORECASE).strip()

        price_text = await first_text(card, self._selectors("product_price"))
        original_text = await first_text(card, self._selectors("product_original_price"))
        original_price = parse_price(original_text) if original_text else None

        image_selectors = self._selectors("product_image")
        image_url = (
            await first_attribute(card, image_selectors, "src")
            or await first_attribute(card, image_selectors, "data-src")
        )

        condition = await first_text(card, self._selectors("product_condition"))

        return ScrapedProduct(
            source_id=source_id,
            title=title,
            source_url=source_url,
            price=parse_price(price_text),
            author=author or None,
            original_price=original_price or None,
            image_url=self.absolute_url(image_url) or None,
            isbn=isbn_from_source_id(source_id),
            condition=condition or None,
        )

    # ------------------------------------------------------------------
    # Product detail
    # ------------------------------------------------------------------

    async def extract_detail(self, page: BrowserPage) -> ScrapedProductDetail:
        """Extract a product detail page; every section is optional."""
        description = await first_text(page, self._selectors("description"))
        specs = await self._extract_specs(page)
        image_url = await first_attribute(page, self._selectors("detail_image"), "src")
        reviews = await self._extract_reviews(page)
        recommendations = await self._extract_recommendations(page)

        return ScrapedProductDetail(
            description=description or DESCRIPTION_FALLBACK,
            specs=specs,
            image_url=self.absolute_url(image_url) or None,
            reviews=reviews,
            recommendations=recommendations,
        )

    async def _extract_specs(self, page: BrowserPage) -> Dict[str, str]:
        specs: Dict[str, str] = {}
        _, rows = await resolve_all(page, self._selectors("spec_item"))
        for row in rows:
            try:
                text = normalize_text(await row.text())
            except Exception:
                continue
            if ":" not in text:
                continue
            key, value = (part.strip() for part in text.split(":", 1))
            if key and value and len(key) <= MAX_SPEC_KEY_LENGTH:
                specs[key] = value
        return specs

    async def _extract_reviews(self, page: BrowserPage) -> List[ScrapedReview]:
        reviews: List[ScrapedReview] = []
        _, items = await resolve_all(page, self._selectors("review_item"))
        for item in items[:MAX_REVIEWS]:
            try:
                body = await first_text(item, self._selectors("review_body"))
                text = body or normalize_text(await item.text())
                if not text:
                    continue
                author = await first_text(item, self._selectors("review_author"))
                rating = await item.get_attribute("data-score")
            except Exception as e:
                logger.debug(f"Skipping unreadable review: {e}")
                continue
            reviews.append(
                ScrapedReview(
                    author=author or "Verified Buyer",
                    text=text[:REVIEW_SNIPPET_LENGTH],
                    rating=int(rating) if rating and rating.isdigit() else None,
                )
            )
        return reviews

    async def _extract_recommendations(self, page: BrowserPage) -> List[ScrapedProduct]:
        recommendations: List[ScrapedProduct] = []
        _, items = await resolve_all(page, self._selectors("related_product"))
        for item in items[:MAX_RECOMMENDATIONS]:
            title = await first_text(item, self._selectors("related_title"))
            if not title:
                continue
            href = await first_attribute(item, self._selectors("related_link"), "href")
            source_url = self.absolute_url(href)
            recommendations.append(
                ScrapedProduct(
                    source_id=source_id_from_url(source_url),
                    title=title,
                    source_url=source_url,
                )
            )
        return recommendations

    # ------------------------------------------------------------------
    # Navigation menu
    # ------------------------------------------------------------------

    async def extract_navigation(self, page: BrowserPage) -> List[ScrapedNavigation]:
        """Group menu collection links by their parent section."""
        _, links = await resolve_all(page, self._selectors("nav_link"))

        grouped: Dict[str, List[ScrapedCategory]] = {}
        seen_slugs = set()
        for link in links:
            try:
                title = await link.get_attribute("data-menu_subcategory")
                parent = await link.get_attribute("data-menu_category")
                href = await link.get_attribute("href")
            except Exception:
                continue
            if not (title and parent and href) or "/collections/" not in href:
                continue

            slug = source_id_from_url(href)
            if not slug or slug in seen_slugs:
                continue
            seen_slugs.add(slug)

            grouped.setdefault(parent.strip(), []).append(
                ScrapedCategory(title=title.strip(), slug=slug, url=self.absolute_url(href))
            )

        return [
            ScrapedNavigation(title=parent, slug=slugify(parent), categories=categories)
            for parent, categories in grouped.items()
        ]
