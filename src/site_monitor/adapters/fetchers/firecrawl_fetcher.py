"""Firecrawl API fetcher for single pages and site crawls."""

import asyncio
import logging
from typing import Any, Optional

import httpx

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


def _first(value: Any) -> Optional[str]:
    """Firecrawl metadata values may be strings or lists of strings."""
    if isinstance(value, list):
        value = value[0] if value else None
    return str(value) if value else None


class FirecrawlFetcher(ContentFetcher):
    """Scrape via ``/scrape``, crawl via async ``/crawl`` jobs with polling."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.firecrawl.dev/v1",
        timeout: float = 60.0,
        poll_interval: float = 2.0,
        max_poll_seconds: float = 600.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.max_poll_seconds = max_poll_seconds
        self.transport = transport

    async def fetch(self, url: str, options: FetchOptions) -> FetchResult:
        """Fetch a page or crawl a site through Firecrawl."""
        if not self.api_key:
            raise FetchError(url, "FIRECRAWL_API_KEY is missing")

        async with httpx.AsyncClient(
            timeout=self.timeout,
            headers={"Authorization": f"Bearer {self.api_key}"},
            transport=self.transport,
        ) as client:
            if options.mode == MonitorType.SINGLE_PAGE:
                return FetchResult(captures=[await self._scrape(client, url)])

            if options.mode == MonitorType.FULL_SITE:
                return await self._crawl(client, url, options)

            raise ValueError(f"Unknown monitor type: {options.mode}")

    async def _scrape(self, client: httpx.AsyncClient, url: str) -> PageCapture:
        body = await self._request(
            client,
            "POST",
            f"{self.base_url}/scrape",
            url,
            json={"url": url, "formats": ["markdown"], "onlyMainContent": True},
        )
        capture = self._to_capture(body.get("data") or {}, fallback_url=url)
        if not capture.ok:
            raise FetchError(url, capture.error or "scrape failed", capture.status_code)
        return capture

    async def _crawl(
        self, client: httpx.AsyncClient, url: str, options: FetchOptions
    ) -> FetchResult:
        body = await self._request(
            client,
            "POST",
            f"{self.base_url}/crawl",
            url,
            json={
                "url": url,
                "limit": options.limit,
                "maxDepth": options.depth,
                "scrapeOptions": {"formats": ["markdown"], "onlyMainContent": True},
            },
        )
        job_id = body.get("id")
        if not job_id:
            raise FetchError(url, "crawl job was not created")

        logger.info("Firecrawl crawl job %s started for %s", job_id, url)

        status_body = await self._wait_for_job(client, url, job_id)
        pages = await self._collect_pages(client, url, status_body)

        captures = [self._to_capture(page, fallback_url=url) for page in pages][: options.limit]
        if not any(c.ok for c in captures):
            raise FetchError(url, f"crawl job {job_id} returned no pages")

        return FetchResult(
            captures=captures,
            job_id=job_id,
            truncated=len(pages) >= options.limit,
        )

    async def _wait_for_job(
        self, client: httpx.AsyncClient, url: str, job_id: str
    ) -> dict[str, Any]:
        """Poll the crawl job until it completes."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.max_poll_seconds

        while True:
            body = await self._request(client, "GET", f"{self.base_url}/crawl/{job_id}", url)
            status = body.get("status")

            if status == "completed":
                return body
            if status in ("failed", "cancelled"):
                raise FetchError(url, f"crawl job {job_id} {status}: {body.get('error', '')}".strip())
            if loop.time() >= deadline:
                raise FetchError(url, f"crawl job {job_id} did not finish in {self.max_poll_seconds:.0f}s")

            logger.debug(
                "Crawl job %s: %s (%s/%s pages)",
                job_id, status, body.get("completed", "?"), body.get("total", "?"),
            )
            await asyncio.sleep(self.poll_interval)

    async def _collect_pages(
        self, client: httpx.AsyncClient, url: str, body: dict[str, Any]
    ) -> list[dict[str, Any]]:
        """Follow ``next`` links of a completed crawl."""
        pages = list(body.get("data") or [])
        next_url = body.get("next")

        while next_url:
            page_body = await self._request(client, "GET", next_url, url)
            pages.extend(page_body.get("data") or [])
            next_url = page_body.get("next")

        return pages

    async def _request(
        self,
        client: httpx.AsyncClient,
        method: str,
        endpoint: str,
        target_url: str,
        json: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Call Firecrawl and decode the JSON body, mapping failures to FetchError."""
        try:
            response = await client.request(method, endpoint, json=json)
        except httpx.HTTPError as e:
            raise FetchError(target_url, f"Firecrawl request failed: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400:
            detail = body.get("error") if isinstance(body, dict) else None
            raise FetchError(target_url, detail or "Firecrawl API error", response.status_code)

        if not isinstance(body, dict) or body.get("success") is False:
            detail = body.get("error") if isinstance(body, dict) else "invalid response"
            raise FetchError(target_url, detail or "Firecrawl reported failure")

        return body

    def _to_capture(self, data: dict[str, Any], fallback_url: str) -> PageCapture:
        metadata = data.get("metadata") or {}
        page_url = _first(metadata.get("sourceURL")) or _first(metadata.get("url")) or fallback_url
        status_code = metadata.get("statusCode")
        error = _first(metadata.get("error"))
        if not error and isinstance(status_code, int) and status_code >= 400:
            error = f"HTTP {status_code}"

        return PageCapture(
            url=canonical_url(page_url),
            markdown=data.get("markdown") or "",
            title=_first(metadata.get("title")),
            description=_first(metadata.get("description")),
            og_image=_first(metadata.get("ogImage")) or _first(metadata.get("og:image")),
            status_code=status_code if isinstance(status_code, int) else None,
            metadata=metadata,
            error=error,
        )
