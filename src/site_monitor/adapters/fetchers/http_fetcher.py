"""Direct HTTP fetcher with bounded same-origin crawling."""

import asyncio
import logging
from typing import Optional
from urllib.parse import urljoin, urlparse

import httpx
from bs4 import BeautifulSoup

from site_monitor.core import (
    ContentFetcher,
    FetchError,
    FetchOptions,
    FetchResult,
    MonitorType,
    PageCapture,
    canonical_url,
)

logger = logging.getLogger(__name__)

# Extensions to skip when crawling (binary or non-page resources)
NON_HTML_EXTENSIONS = frozenset((
    ".pdf", ".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg", ".ico",
    ".zip", ".tar", ".gz", ".css", ".js", ".json", ".xml", ".mp4", ".mp3",
))


def _meta_content(soup: BeautifulSoup, **attrs: str) -> Optional[str]:
    tag = soup.find("meta", attrs=attrs)
    if tag and tag.get("content"):
        return tag["content"].strip()
    return None


def parse_page(url: str, html: str, status_code: Optional[int] = None) -> PageCapture:
    """Extract readable text and page metadata from HTML."""
    soup = BeautifulSoup(html, "html.parser")

    title = soup.title.get_text(strip=True) if soup.title else None
    description = _meta_content(soup, name="description") or _meta_content(soup, property="og:description")
    og_image = _meta_content(soup, property="og:image")

    for tag in soup(["script", "style", "noscript", "template", "svg"]):
        tag.decompose()

    body = soup.body or soup
    text = body.get_text(separator="\n", strip=True)

    return PageCapture(
        url=canonical_url(url),
        markdown=text,
        title=title or None,
        description=description,
        og_image=og_image,
        status_code=status_code,
    )


def extract_links(base_url: str, html: str) -> list[str]:
    """Same-origin page links, canonicalized and deduplicated in document order."""
    soup = BeautifulSoup(html, "html.parser")
    base_host = (urlparse(base_url).hostname or "").lower().strip(".")
    links: list[str] = []
    seen: set[str] = set()

    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if not href or href.startswith(("#", "mailto:", "javascript:", "tel:")):
            continue

        parsed = urlparse(urljoin(base_url, href))
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            continue
        if parsed.hostname.lower().strip(".") != base_host:
            continue
        if any(parsed.path.lower().endswith(ext) for ext in NON_HTML_EXTENSIONS):
            continue

        link = canonical_url(parsed.geturl())
        if link not in seen:
            seen.add(link)
            links.append(link)

    return links


class HttpPageFetcher(ContentFetcher):
    """Fetch pages with httpx and crawl breadth-first by depth level."""

    def __init__(
        self,
        timeout: float = 30.0,
        max_concurrency: int = 4,
        user_agent: str = "site-monitor",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.timeout = timeout
        self.max_concurrency = max(1, max_concurrency)
        self.headers = {
            "User-Agent": user_agent,
            "Accept": "text/html,application/xhtml+xml;q=0.9,text/plain;q=0.8,*/*;q=0.5",
        }
        self.transport = transport

    async def fetch(self, url: str, options: FetchOptions) -> FetchResult:
        """Fetch one page or crawl a site from ``url``."""
        async with httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=True,
            headers=self.headers,
            transport=self.transport,
        ) as client:
            if options.mode == MonitorType.SINGLE_PAGE:
                capture, _ = await self._fetch_page(client, url)
                if not capture.ok:
                    raise FetchError(url, capture.error or "unknown error", capture.status_code)
                return FetchResult(captures=[capture])

            if options.mode == MonitorType.FULL_SITE:
                return await self._crawl(client, url, options)

            raise ValueError(f"Unknown monitor type: {options.mode}")

    async def _crawl(
        self, client: httpx.AsyncClient, url: str, options: FetchOptions
    ) -> FetchResult:
        """Breadth-first crawl bounded by depth (hops) and page limit."""
        start = canonical_url(url)
        seen = {start}
        frontier = [start]
        captures: list[PageCapture] = []
        truncated = False
        depth = 0
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def bounded(page_url: str) -> tuple[PageCapture, list[str]]:
            async with semaphore:
                return await self._fetch_page(client, page_url)

        while frontier:
            remaining = options.limit - len(captures)
            if remaining <= 0:
                truncated = True
                break
            if len(frontier) > remaining:
                truncated = True

            results = await asyncio.gather(*(bounded(u) for u in frontier[:remaining]))

            if depth == 0 and not results[0][0].ok:
                origin = results[0][0]
                raise FetchError(url, origin.error or "origin unreachable", origin.status_code)

            next_frontier: list[str] = []
            for capture, links in results:
                captures.append(capture)
                if depth >= options.depth:
                    continue
                for link in links:
                    if link not in seen:
                        seen.add(link)
                        next_frontier.append(link)

            if truncated:
                break
            frontier = next_frontier
            depth += 1

        logger.debug(
            "Crawled %s: %d pages, depth %d, truncated=%s", url, len(captures), depth, truncated
        )
        return FetchResult(captures=captures, truncated=truncated)

    async def _fetch_page(
        self, client: httpx.AsyncClient, url: str
    ) -> tuple[PageCapture, list[str]]:
        """Fetch one page; failures come back as captures with ``error`` set."""
        try:
            response = await client.get(url)
        except httpx.HTTPError as e:
            return PageCapture(url=canonical_url(url), error=str(e) or e.__class__.__name__), []

        if response.status_code >= 400:
            return PageCapture(
                url=canonical_url(url),
                status_code=response.status_code,
                error=f"HTTP {response.status_code}",
            ), []

        content_type = (response.headers.get("content-type") or "").lower()
        if "html" in content_type:
            capture = parse_page(url, response.text, response.status_code)
            return capture, extract_links(str(response.url), response.text)

        if content_type.startswith("text/"):
            return PageCapture(
                url=canonical_url(url),
                markdown=response.text,
                status_code=response.status_code,
            ), []

        return PageCapture(
            url=canonical_url(url),
            status_code=response.status_code,
            error=f"Unsupported content type: {content_type or 'unknown'}",
        ), []
