"""Sitemap discovery and recursive URL collection."""

from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import List, Optional, Sequence
from urllib.parse import urljoin, urlparse

import httpx

from sitesnap.errors import SitemapNotFoundError, SitemapParseError

LOGGER = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "ScreenshotService/1.0 (Sitemap Crawler)"
MAX_SITEMAP_DEPTH = 3

_ACCEPT = "application/xml, text/xml, text/plain, */*"
_ROBOTS_SITEMAP = re.compile(r"^\s*sitemap:\s*(\S+)\s*$", re.IGNORECASE | re.MULTILINE)


@dataclass(slots=True)
class SitemapUrlEntry:
    """One ``<url>`` element from a leaf sitemap."""

    loc: str
    lastmod: Optional[str] = None
    priority: Optional[float] = None


@dataclass(slots=True)
class SitemapResult:
    """Collected entries plus the soft errors hit along the way."""

    urls: List[SitemapUrlEntry] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


@dataclass(slots=True)
class _ParsedSitemap:
    is_index: bool
    children: List[str]
    entries: List[SitemapUrlEntry]


class SitemapResolver:
    """Finds a site's sitemap and flattens nested indexes into a page list."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        timeout_s: float = 30.0,
        user_agent: str = DEFAULT_USER_AGENT,
        max_depth: int = MAX_SITEMAP_DEPTH,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_s, follow_redirects=True)
        self._timeout_s = timeout_s
        self._headers = {"User-Agent": user_agent, "Accept": _ACCEPT}
        self.max_depth = max_depth

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def fetch(self, url: str) -> str:
        response = await self._client.get(url, headers=self._headers, timeout=self._timeout_s)
        response.raise_for_status()
        return response.text

    async def discover(self, base_url: str, hint_url: str | None = None) -> str:
        """Return the first sitemap candidate that answers with a 2xx.

        Candidates, in order: the caller's hint, ``/sitemap.xml``,
        ``/sitemap_index.xml``, then the first ``Sitemap:`` line of
        ``robots.txt``.
        """

        tried: list[str] = []
        candidates: list[str] = []
        if hint_url:
            candidates.append(hint_url)
        candidates.append(urljoin(base_url, "/sitemap.xml"))
        candidates.append(urljoin(base_url, "/sitemap_index.xml"))

        for candidate in candidates:
            if await self._probe(candidate):
                LOGGER.info("Found sitemap", extra={"sitemap_url": candidate})
                return candidate
            tried.append(candidate)

        from_robots = await self._sitemap_from_robots(base_url)
        if from_robots:
            if await self._probe(from_robots):
                LOGGER.info("Found sitemap from robots.txt", extra={"sitemap_url": from_robots})
                return from_robots
            tried.append(from_robots)

        raise SitemapNotFoundError(tried)

    async def collect(self, sitemap_url: str, max_pages: int, depth: int = 0) -> SitemapResult:
        """Flatten ``sitemap_url`` into at most ``max_pages`` entries.

        Indexes are walked depth-first in document order. Fetch and parse
        failures are recorded in ``errors`` and never stop sibling sitemaps.
        """

        result = SitemapResult()
        if max_pages <= 0:
            return result
        if depth >= self.max_depth:
            result.errors.append(f"Max sitemap depth ({self.max_depth}) reached at {sitemap_url}")
            return result

        try:
            LOGGER.info("Fetching sitemap", extra={"sitemap_url": sitemap_url, "depth": depth})
            parsed = parse_sitemap(await self.fetch(sitemap_url))
        except (httpx.HTTPError, SitemapParseError) as exc:
            message = f"Failed to fetch {sitemap_url}: {exc}"
            LOGGER.error("Failed to fetch sitemap", extra={"sitemap_url": sitemap_url, "error": str(exc)})
            result.errors.append(message)
            return result

        if parsed.is_index:
            LOGGER.info("Found sitemap index", extra={"sitemap_url": sitemap_url, "nested": len(parsed.children)})
            for child in parsed.children:
                remaining = max_pages - len(result.urls)
                if remaining <= 0:
                    break
                nested = await self.collect(child, remaining, depth + 1)
                result.urls.extend(nested.urls)
                result.errors.extend(nested.errors)
        else:
            LOGGER.info("Parsed sitemap URLs", extra={"sitemap_url": sitemap_url, "count": len(parsed.entries)})
            result.urls.extend(parsed.entries[:max_pages])
        return result

    async def _probe(self, url: str) -> bool:
        try:
            await self.fetch(url)
        except httpx.HTTPError as exc:
            LOGGER.debug("Sitemap candidate failed: %s (%s)", url, exc)
            return False
        return True

    async def _sitemap_from_robots(self, base_url: str) -> Optional[str]:
        robots_url = urljoin(base_url, "/robots.txt")
        try:
            content = await self.fetch(robots_url)
        except httpx.HTTPError as exc:
            LOGGER.debug("Failed to fetch robots.txt for %s: %s", base_url, exc)
            return None
        match = _ROBOTS_SITEMAP.search(content)
        return match.group(1) if match else None


def parse_sitemap(xml: str) -> _ParsedSitemap:
    """Parse a sitemap or sitemap index, ignoring XML namespaces."""

    try:
        root = ET.fromstring(xml.strip().encode("utf-8"))
    except ET.ParseError as exc:
        raise SitemapParseError(f"Malformed sitemap XML: {exc}") from exc

    if _local(root.tag) == "sitemapindex":
        children = []
        for node in root:
            if _local(node.tag) != "sitemap":
                continue
            loc = _child_text(node, "loc")
            if loc:
                children.append(loc)
        return _ParsedSitemap(is_index=True, children=children, entries=[])

    if _local(root.tag) != "urlset":
        raise SitemapParseError(f"Unexpected sitemap root element <{_local(root.tag)}>")

    entries = []
    for node in root:
        if _local(node.tag) != "url":
            continue
        loc = _child_text(node, "loc")
        if not loc:
            continue
        priority_text = _child_text(node, "priority")
        try:
            priority = float(priority_text) if priority_text else None
        except ValueError:
            priority = None
        entries.append(SitemapUrlEntry(loc=loc, lastmod=_child_text(node, "lastmod"), priority=priority))
    return _ParsedSitemap(is_index=False, children=[], entries=entries)


def sort_by_path(entries: Sequence[SitemapUrlEntry]) -> list[SitemapUrlEntry]:
    """Stable sort on the URL path so each job enumerates pages deterministically."""

    return sorted(entries, key=lambda entry: urlparse(entry.loc).path or "/")


def extract_path(url: str, base_url: str) -> str:
    """Path for same-origin URLs; anything else keeps its full URL."""

    parsed = urlparse(url)
    base = urlparse(base_url)
    if not parsed.scheme or not parsed.netloc:
        return url
    if (parsed.scheme, parsed.netloc) == (base.scheme, base.netloc):
        return parsed.path or "/"
    return url


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1] if "}" in tag else tag


def _child_text(node: ET.Element, name: str) -> Optional[str]:
    for child in node:
        if _local(child.tag) == name:
            text = (child.text or "").strip()
            return text or None
    return None


__all__ = [
    "MAX_SITEMAP_DEPTH",
    "SitemapResolver",
    "SitemapResult",
    "SitemapUrlEntry",
    "extract_path",
    "parse_sitemap",
    "sort_by_path",
]
