"""Shared fixtures for pipeline tests."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from unittest.mock import AsyncMock

import pytest

from site_monitor.adapters.storage import InMemoryRepository, PlaintextKeyCipher
from site_monitor.config import AIConfig, CrawlConfig
from site_monitor.core import (
    ContentFetcher,
    DiffEngine,
    FetchOptions,
    FetchResult,
    PageCapture,
    Website,
)
from site_monitor.use_cases import ChangeScorer, CrawlOrchestrator, NotificationDispatcher

START = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable replacement for utcnow."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class StubFetcher(ContentFetcher):
    """Returns configured pages; records every call."""

    def __init__(self) -> None:
        self.pages: dict[str, str] = {}
        self.failed: dict[str, str] = {}
        self.error: Optional[Exception] = None
        self.truncated = False
        self.delay = 0.0
        self.calls: list[tuple[str, FetchOptions]] = []

    async def fetch(self, url: str, options: FetchOptions) -> FetchResult:
        self.calls.append((url, options))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error

        captures = [
            PageCapture(url=page_url, markdown=markdown, title=f"Title of {page_url}")
            for page_url, markdown in self.pages.items()
        ]
        captures += [PageCapture(url=page_url, error=error) for page_url, error in self.failed.items()]
        return FetchResult(captures=captures, job_id="job-1", truncated=self.truncated)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def fetcher() -> StubFetcher:
    return StubFetcher()


@pytest.fixture
def oracle() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def email_transport() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def webhook_transport() -> AsyncMock:
    transport = AsyncMock()
    transport.post_webhook.return_value = 200
    return transport


@pytest.fixture
def scorer(oracle: AsyncMock) -> ChangeScorer:
    return ChangeScorer(
        oracle=oracle,
        cipher=PlaintextKeyCipher(),
        config=AIConfig(timeout_seconds=1.0),
        fallback_api_key="sk-process",
    )


@pytest.fixture
def dispatcher(
    repository: InMemoryRepository, email_transport: AsyncMock, webhook_transport: AsyncMock
) -> NotificationDispatcher:
    return NotificationDispatcher(repository, email_transport, webhook_transport)


@pytest.fixture
def orchestrator(
    repository: InMemoryRepository,
    fetcher: StubFetcher,
    scorer: ChangeScorer,
    dispatcher: NotificationDispatcher,
    clock: FakeClock,
) -> CrawlOrchestrator:
    return CrawlOrchestrator(
        repository=repository,
        fetcher=fetcher,
        diff_engine=DiffEngine(),
        scorer=scorer,
        dispatcher=dispatcher,
        crawl_config=CrawlConfig(default_crawl_limit=10, default_crawl_depth=2),
        check_timeout=5.0,
        clock=clock,
    )


@pytest.fixture
def add_website(repository: InMemoryRepository, clock: FakeClock) -> Callable[..., Website]:
    """Store a website owned by ``alice`` with overridable fields."""

    def factory(**overrides) -> Website:
        values = {
            "url": "https://example.com",
            "name": "Example",
            "user_id": "alice",
            "created_at": clock.now - timedelta(days=1),
        }
        values.update(overrides)
        return repository.add_website(Website(**values))

    return factory
