"""Offline browser session over saved HTML snapshots.

Serves pages from an in-memory ``{url: html}`` map or a directory of ``.html``
files, parsed with selectolax. Used to replay captured pages when checking
selector drift and to drive the crawler without a network.
"""

import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional, Union

from selectolax.parser import HTMLParser, Node

from catalog_crawler.ingest.base import PageLoadError

logger = logging.getLogger(__name__)

BODY_TEXT_SCRIPT = "() => document.body ? document.body.innerText : ''"


class SnapshotElement:
    """Adapter over a selectolax node."""

    def __init__(self, node: Node):
        self._node = node

    async def text(self) -> str:
        return self._node.text(deep=True, separator=" ") or ""

    async def get_attribute(self, name: str) -> Optional[str]:
        return self._node.attributes.get(name)

    async def query_all(self, selector: str) -> List["SnapshotElement"]:
        return [SnapshotElement(n) for n in self._node.css(selector)]


class SnapshotPage:
    """A parsed HTML document behaving like a loaded browser page."""

    def __init__(self, session: "SnapshotBrowser"):
        self._session = session
        self._tree: Optional[HTMLParser] = None
        self.url = ""

    def _require_tree(self) -> HTMLParser:
        if self._tree is None:
            raise PageLoadError(self.url or "about:blank", "no document loaded")
        return self._tree

    async def goto(self, url: str, timeout_ms: int) -> None:
        self._session.visited.append(url)
        html = self._session.lookup(url)
        if html is None:
            raise PageLoadError(url, "no snapshot for URL")
        self._tree = HTMLParser(html)
        self.url = url

    async def wait_for_selector(self, selector: str, timeout_ms: int) -> bool:
        return bool(self._require_tree().css(selector))

    async def query_all(self, selector: str) -> List[SnapshotElement]:
        return [SnapshotElement(n) for n in self._require_tree().css(selector)]

    async def evaluate(self, script: str):
        if script.strip() == BODY_TEXT_SCRIPT:
            return await self.body_text()
        raise NotImplementedError("snapshot pages cannot run scripts")

    async def body_text(self) -> str:
        body = self._require_tree().body
        return body.text(deep=True, separator="\n") if body is not None else ""

    async def block_resource_types(self, resource_types: List[str]) -> None:
        # Snapshots never load subresources
        return None


class SnapshotBrowser:
    """Browser session answering page loads from stored HTML."""

    def __init__(self, pages: Optional[Dict[str, Union[str, Exception]]] = None):
        """
        Args:
            pages: Mapping of URL to HTML. An Exception value is raised on load,
                   which lets callers script failing pages.
        """
        self.pages: Dict[str, Union[str, Exception]] = dict(pages or {})
        self.visited: List[str] = []

    @classmethod
    def from_directory(cls, directory: Union[str, Path]) -> "SnapshotBrowser":
        """
        Load snapshots saved as ``<name>.html`` plus an ``index.json``
        mapping URLs to file names.
        """
        directory = Path(directory)
        index = json.loads((directory / "index.json").read_text(encoding="utf-8"))
        pages = {
            url: (directory / filename).read_text(encoding="utf-8")
            for url, filename in index.items()
        }
        logger.info(f"Loaded {len(pages)} page snapshots from {directory}")
        return cls(pages)

    def lookup(self, url: str) -> Optional[str]:
        html = self.pages.get(url)
        if isinstance(html, Exception):
            raise html
        return html

    @asynccontextmanager
    async def open_page(self) -> AsyncIterator[SnapshotPage]:
        yield SnapshotPage(self)

    async def close(self):
        return None
