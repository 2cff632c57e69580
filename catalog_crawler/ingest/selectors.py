"""Ordered selector fallback resolution against a page or element scope."""

import logging
from typing import List, Optional, Tuple, Union

from catalog_crawler.ingest.base import BrowserPage, PageElement

logger = logging.getLogger(__name__)

Scope = Union[BrowserPage, PageElement]


async def resolve_all(scope: Scope, selectors: List[str]) -> Tuple[Optional[str], List[PageElement]]:
    """
    Return the first selector whose match set is non-empty, with its matches.

    Selectors that raise (invalid syntax, detached element) count as no match.

    Returns:
        Tuple of (matched_selector, elements) or (None, [])
    """
    for i, selector in enumerate(selectors):
        try:
            elements = await scope.query_all(selector)
        except Exception as e:
            logger.debug(f"Selector {i + 1}/{len(selectors)} error: {selector} - {e}")
            continue

        if elements:
            logger.debug(f"Selector matched: {selector} ({len(elements)} elements)")
            return selector, list(elements)

    return None, []


async def resolve_first(scope: Scope, selectors: List[str]) -> Optional[PageElement]:
    """Return the first element matched by the first matching selector."""
    _, elements = await resolve_all(scope, selectors)
    return elements[0] if elements else None


async def wait_for_any(page: BrowserPage, selectors: List[str], timeout_ms: int) -> Optional[str]:
    """
    Wait for each selector in turn and return the first one that appears.

    Each selector gets its own ``timeout_ms`` budget.
    """
    for selector in selectors:
        try:
            if await page.wait_for_selector(selector, timeout_ms):
                return selector
        except Exception as e:
            logger.debug(f"Waiting for {selector} failed: {e}")
    return None


async def first_text(scope: Scope, selectors: List[str]) -> str:
    """Whitespace-normalized text of the first selector yielding non-empty text."""
    for selector in selectors:
        try:
            elements = await scope.query_all(selector)
            if not elements:
                continue
            text = normalize_text(await elements[0].text())
        except Exception as e:
            logger.debug(f"Text lookup failed for {selector}: {e}")
            continue
        if text:
            return text
    return ""


async def first_attribute(scope: Scope, selectors: List[str], name: str) -> str:
    """Value of attribute ``name`` on the first selector match that carries it."""
    for selector in selectors:
        try:
            elements = await scope.query_all(selector)
            if not elements:
                continue
            value = await elements[0].get_attribute(name)
        except Exception as e:
            logger.debug(f"Attribute lookup failed for {selector}[{name}]: {e}")
            continue
        if value and value.strip():
            return value.strip()
    return ""


def normalize_text(text: Optional[str]) -> str:
    return " ".join((text or "").split())
