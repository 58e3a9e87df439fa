"""Content fetcher adapters."""

from site_monitor.adapters.fetchers.firecrawl_fetcher import FirecrawlFetcher
from site_monitor.adapters.fetchers.http_fetcher import HttpPageFetcher

__all__ = ["FirecrawlFetcher", "HttpPageFetcher"]
