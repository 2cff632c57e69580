"""Playwright-backed implementation of the browser capability interface."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

from playwright.async_api import (
    Browser,
    BrowserContext,
    ElementHandle,
    Error as PlaywrightError,
    Page,
    Playwright,
    Route,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from catalog_crawler.config import Settings, settings as default_settings
from catalog_crawler.ingest.base import PageLoadError

logger = logging.getLogger(__name__)

BODY_TEXT_SCRIPT = "() => document.body ? document.body.innerText : ''"


class PlaywrightElement:
    """Adapter over a Playwright element handle."""

    def __init__(self, handle: ElementHandle):
        self._handle = handle

    async def text(self) -> str:
        return (await self._handle.text_content()) or ""

    async def get_attribute(self, name: str) -> Optional[str]:
        return await self._handle.get_attribute(name)

    async def query_all(self, selector: str) -> List["PlaywrightElement"]:
        return [PlaywrightElement(h) for h in await self._handle.query_selector_all(selector)]


class PlaywrightPage:
    """Adapter over a Playwright page."""

    def __init__(self, page: Page, network_idle_timeout_ms: int):
        self._page = page
        self._network_idle_timeout_ms = network_idle_timeout_ms
        self.url = ""

    async def goto(self, url: str, timeout_ms: int) -> None:
        """
        Navigate and wait for the network to settle.

        Raises:
            PageLoadError: Navigation failed, timed out or returned HTTP >= 400
        """
        try:
            response = await self._page.goto(url, timeout=timeout_ms, wait_until="domcontentloaded")
        except PlaywrightTimeoutError:
            raise PageLoadError(url, f"navigation timed out after {timeout_ms}ms")
        except PlaywrightError as e:
            raise PageLoadError(url, str(e))

        if response is not None and response.status >= 400:
            raise PageLoadError(url, f"HTTP {response.status}")
        self.url = url

        # Listings are filled in by XHR after the document loads
        try:
            await self._page.wait_for_load_state("networkidle", timeout=self._network_idle_timeout_ms)
        except PlaywrightTimeoutError:
            logger.debug(f"Network idle timeout on {url} - continuing anyway")

    async def wait_for_selector(self, selector: str, timeout_ms: int) -> bool:
        try:
            await self._page.wait_for_selector(selector, timeout=timeout_ms)
            return True
        except PlaywrightTimeoutError:
            return False

    async def query_all(self, selector: str) -> List[PlaywrightElement]:
        return [PlaywrightElement(h) for h in await self._page.query_selector_all(selector)]

    async def evaluate(self, script: str):
        return await self._page.evaluate(script)

    async def body_text(self) -> str:
        return (await self.evaluate(BODY_TEXT_SCRIPT)) or ""

    async def block_resource_types(self, resource_types: List[str]) -> None:
        """Abort requests for the given resource types (turbo mode)."""
        blocked = set(resource_types)
        if not blocked:
            return

        async def handle(route: Route):
            if route.request.resource_type in blocked:
                await route.abort()
            else:
                await route.continue_()

        await self._page.route("**/*", handle)

    async def close(self) -> None:
        await self._page.close()


class PlaywrightBrowser:
    """
    Lazily launched headless Chromium shared by all crawlers in the process.

    Every ``open_page`` call gets a fresh page in a shared context carrying
    the configured user agent and viewport.
    """

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or default_settings
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._init_lock = asyncio.Lock()

    async def _ensure_context(self) -> BrowserContext:
        async with self._init_lock:
            if self._playwright is None:
                self._playwright = await async_playwright().start()

            if self._browser is None:
                self._browser = await self._playwright.chromium.launch(
                    headless=self.config.headless,
                    args=[
                        "--disable-dev-shm-usage",
                        "--no-sandbox",
                        "--disable-setuid-sandbox",
                    ],
                )
                logger.info("Launched headless Chromium")

            if self._context is None:
                self._context = await self._browser.new_context(
                    user_agent=self.config.user_agent,
                    viewport={
                        "width": self.config.viewport_width,
                        "height": self.config.viewport_height,
                    },
                )
            return self._context

    @asynccontextmanager
    async def open_page(self) -> AsyncIterator[PlaywrightPage]:
        context = await self._ensure_context()
        page = PlaywrightPage(await context.new_page(), self.config.network_idle_timeout_ms)
        try:
            yield page
        finally:
            try:
                await page.close()
            except PlaywrightError as e:
                logger.debug(f"Error closing page: {e}")

    async def close(self):
        """Close browser and cleanup."""
        if self._context:
            await self._context.close()
            self._context = None

        if self._browser:
            await self._browser.close()
            self._browser = None

        if self._playwright:
            await self._playwright.stop()
            self._playwright = None

    async def __aenter__(self) -> "PlaywrightBrowser":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
