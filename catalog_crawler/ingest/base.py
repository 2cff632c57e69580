"""Core value objects and the browser capability interface used by the crawler."""

from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from typing import Generic, List, Optional, Protocol, TypeVar

T = TypeVar("T")


@dataclass
class ScrapedCategory:
    """A category link from the navigation menu."""

    title: str
    slug: str
    url: str


@dataclass
class ScrapedNavigation:
    """A navigation section containing categories."""

    title: str
    slug: str
    categories: List[ScrapedCategory] = field(default_factory=list)


@dataclass
class ScrapedProduct:
    """A book from a category listing."""

    source_id: str
    title: str
    source_url: str
    price: float = 0.0
    author: Optional[str] = None
    original_price: Optional[float] = None
    image_url: Optional[str] = None
    isbn: Optional[str] = None
    condition: Optional[str] = None
    publisher: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return bool(self.source_id and self.title and self.source_url)

    def spec_fields(self) -> dict:
        """Optional attributes stored in the product's specs column."""
        specs = {}
        if self.isbn:
            specs["isbn"] = self.isbn
        if self.condition:
            specs["condition"] = self.condition
        if self.publisher:
            specs["publisher"] = self.publisher
        if self.original_price is not None:
            specs["original_price"] = self.original_price
        return specs


@dataclass
class ScrapedReview:
    """A customer review snippet."""

    author: str
    text: str
    rating: Optional[int] = None
    date: Optional[str] = None


@dataclass
class ScrapedProductDetail:
    """Full product details from the product detail page."""

    description: str
    specs: dict[str, str] = field(default_factory=dict)
    image_url: Optional[str] = None
    reviews: List[ScrapedReview] = field(default_factory=list)
    recommendations: List[ScrapedProduct] = field(default_factory=list)


@dataclass
class ScrapeResult(Generic[T]):
    """Scrape payload with pagination info and accumulated page errors."""

    data: T
    pages_scraped: int = 0
    total_items: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class PageProgress:
    """Position of the crawl within a category."""

    current: int
    total: int


class PageLoadError(Exception):
    """Page failed to load properly."""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Failed to load {url}: {reason}")


class SelectorNotFoundError(Exception):
    """None of the candidate selectors appeared on the page."""

    def __init__(self, selectors: List[str], url: str):
        self.selectors = selectors
        self.url = url
        super().__init__(
            f"None of {len(selectors)} selectors found on {url} "
            f"(tried: {', '.join(selectors)})"
        )


class BatchPersistenceError(Exception):
    """An incremental batch could not be written to the store."""

    def __init__(self, category_id: int, page: int, reason: str):
        self.category_id = category_id
        self.page = page
        self.reason = reason
        super().__init__(f"Batch for category {category_id} page {page} failed: {reason}")


class PageElement(Protocol):
    """Element handle returned by ``query_all``."""

    async def text(self) -> str: ...

    async def get_attribute(self, name: str) -> Optional[str]: ...

    async def query_all(self, selector: str) -> List["PageElement"]: ...


class BrowserPage(Protocol):
    """Minimal page automation capability the extractors depend on."""

    url: str

    async def goto(self, url: str, timeout_ms: int) -> None: ...

    async def wait_for_selector(self, selector: str, timeout_ms: int) -> bool: ...

    async def query_all(self, selector: str) -> List[PageElement]: ...

    async def evaluate(self, script: str): ...

    async def body_text(self) -> str: ...

    async def block_resource_types(self, resource_types: List[str]) -> None: ...


class BrowserSession(Protocol):
    """Factory for isolated pages; one page per load."""

    def open_page(self) -> AbstractAsyncContextManager[BrowserPage]: ...
