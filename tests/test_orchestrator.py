"""Tests for the crawl orchestrator."""

import asyncio
import logging
from unittest.mock import AsyncMock

import pytest

from site_monitor.adapters.storage import InMemoryRepository
from site_monitor.core import (
    ChangeStatus,
    CheckInProgressError,
    ContentFetcher,
    CrawlStatus,
    DiffEngine,
    FetchError,
    MonitorType,
    NotificationPreference,
    OracleError,
    OracleVerdict,
    PersistenceError,
    ScrapeResult,
    UserSettings,
    Visibility,
    Website,
)
from site_monitor.use_cases import ChangeScorer, CrawlOrchestrator, NotificationDispatcher


class FailingResultsRepository(InMemoryRepository):
    """Store whose scrape result table is unavailable."""

    def add_scrape_result(self, result: ScrapeResult) -> ScrapeResult:
        raise PersistenceError("disk full")


@pytest.mark.asyncio
async def test_single_page_new_same_changed(
    orchestrator: CrawlOrchestrator,
    repository: InMemoryRepository,
    fetcher: ContentFetcher,
    clock,
    add_website,
) -> None:
    """Test classification across three checks of one page."""
    website = add_website()
    fetcher.pages = {"https://example.com/": "Price: 10 EUR"}

    first = await orchestrator.check_website(website)
    clock.advance(minutes=61)
    second = await orchestrator.check_website(website)
    fetcher.pages = {"https://example.com/": "Price: 12 EUR"}
    clock.advance(minutes=61)
    third = await orchestrator.check_website(website)

    results = repository.list_results_by_website(website.id)
    assert [r.change_status for r in results] == [ChangeStatus.NEW, ChangeStatus.SAME, ChangeStatus.CHANGED]
    assert [r.visibility for r in results] == [Visibility.VISIBLE, Visibility.HIDDEN, Visibility.VISIBLE]
    assert results[1].diff is None
    assert "+Price: 12 EUR" in results[2].diff.text
    assert results[2].previous_scrape_at == results[1].scraped_at
    assert results[2].crawl_session_id == third.id

    assert first.pages_added == 1
    assert second.pages_changed == 0
    assert third.status == CrawlStatus.COMPLETED
    assert third.pages_changed == 1
    assert third.job_id == "job-1"

    stored = repository.get_website(website.id)
    assert stored.last_checked == clock.now
    assert stored.total_pages == 1
    assert stored.last_crawl_at is None

    options = fetcher.calls[0][1]
    assert options.mode == MonitorType.SINGLE_PAGE
    assert options.limit == 1


@pytest.mark.asyncio
async def test_full_site_marks_missing_pages_removed(
    orchestrator: CrawlOrchestrator,
    repository: InMemoryRepository,
    fetcher: ContentFetcher,
    add_website,
) -> None:
    website = add_website(monitor_type=MonitorType.FULL_SITE, crawl_limit=20, crawl_depth=3)
    fetcher.pages = {
        "https://example.com/": "Home",
        "https://example.com/about": "About",
        "https://example.com/old": "Old page",
    }
    await orchestrator.check_website(website)

    fetcher.pages = {
        "https://example.com/": "Home",
        "https://example.com/about/": "About us",
    }
    session = await orchestrator.check_website(website)

    latest = {
        url: repository.latest_result_for_url(website.id, url)
        for url in ("https://example.com/", "https://example.com/about", "https://example.com/old")
    }
    assert latest["https://example.com/"].change_status == ChangeStatus.SAME
    assert latest["https://example.com/about"].change_status == ChangeStatus.CHANGED
    assert latest["https://example.com/old"].change_status == ChangeStatus.REMOVED
    assert latest["https://example.com/old"].markdown == ""

    assert session.pages_found == 2
    assert session.pages_changed == 1
    assert session.pages_removed == 1
    assert repository.tracked_urls(website.id) == {"https://example.com/", "https://example.com/about"}

    options = fetcher.calls[0][1]
    assert (options.mode, options.depth, options.limit) == (MonitorType.FULL_SITE, 3, 20)
    assert repository.get_website(website.id).last_crawl_at is not None


@pytest.mark.asyncio
async def test_removed_page_reappearing_is_new(
    orchestrator: CrawlOrchestrator,
    repository: InMemoryRepository,
    fetcher: ContentFetcher,
    add_website,
) -> None:
    website = add_website(monitor_type=MonitorType.FULL_SITE)
    fetcher.pages = {"https://example.com/": "Home", "https://example.com/sale": "Sale"}
    await orchestrator.check_website(website)
    fetcher.pages = {"https://example.com/": "Home"}
    await orchestrator.check_website(website)
    fetcher.pages = {"https://example.com/": "Home", "https://example.com/sale": "Sale"}
    session = await orchestrator.check_website(website)

    assert repository.latest_result_for_url(website.id, "https://example.com/sale").change_status == ChangeStatus.NEW
    assert session.pages_added == 1


@pytest.mark.asyncio
async def test_per_page_failures_are_counted(
    orchestrator: CrawlOrchestrator,
    repository: InMemoryRepository,
    fetcher: ContentFetcher,
    add_website,
) -> None:
    """Test that failed pages neither abort the crawl nor count as removed."""
    website = add_website(monitor_type=MonitorType.FULL_SITE)
    fetcher.pages = {"https://example.com/": "Home", "https://example.com/blog": "Blog"}
    await orchestrator.check_website(website)

    fetcher.pages = {"https://example.com/": "Home v2"}
    fetcher.failed = {"https://example.com/blog": "HTTP 503"}
    session = await orchestrator.check_website(website)

    assert session.status == CrawlStatus.COMPLETED
    assert session.pages_found == 2
    assert session.pages_failed == 1
    assert session.pages_changed == 1
    assert session.pages_removed == 0
    assert repository.latest_result_for_url(website.id, "https://example.com/blog").change_status == ChangeStatus.NEW


@pytest.mark.asyncio
async def test_crawl_limit_reports_capped_count(
    orchestrator: CrawlOrchestrator,
    repository: InMemoryRepository,
    fetcher: ContentFetcher,
    add_website,
) -> None:
    """Test that a truncated crawl completes and skips removal detection."""
    website = add_website(monitor_type=MonitorType.FULL_SITE, crawl_limit=2)
    fetcher.pages = {"https://example.com/": "Home", "https://example.com/a": "A"}
    await orchestrator.check_website(website)

    fetcher.pages = {"https://example.com/": "Home", "https://example.com/b": "B"}
    fetcher.truncated = True
    session = await orchestrator.check_website(website)

    assert session.status == CrawlStatus.COMPLETED
    assert session.error is None
    assert session.pages_found == 2
    assert session.pages_removed == 0
    assert repository.latest_result_for_url(website.id, "https://example.com/a").change_status == ChangeStatus.NEW


@pytest.mark.asyncio
async def test_fetch_error_fails_session(
    orchestrator: CrawlOrchestrator,
    repository: InMemoryRepository,
    fetcher: ContentFetcher,
    clock,
    add_website,
) -> None:
    website = add_website()
    fetcher.error = FetchError("https://example.com", "Connection refused")

    session = await orchestrator.check_website(website)

    assert session.status == CrawlStatus.FAILED
    assert "Connection refused" in session.error
    assert repository.get_session(session.id).status == CrawlStatus.FAILED
    assert repository.running_session(website.id) is None
    assert repository.list_results_by_website(website.id) == []
    assert repository.get_website(website.id).last_checked == clock.now


@pytest.mark.asyncio
async def test_deadline_fails_session_and_keeps_partial_results(
    repository: InMemoryRepository,
    fetcher: ContentFetcher,
    scorer: ChangeScorer,
    dispatcher: NotificationDispatcher,
    oracle: AsyncMock,
    clock,
    add_website,
) -> None:
    calls = []

    async def score(diff, options):
        calls.append(diff)
        if len(calls) > 1:
            await asyncio.sleep(0.5)
        return OracleVerdict(score=90, reasoning="r", model="m")

    oracle.score.side_effect = score
    orchestrator = CrawlOrchestrator(
        repository, fetcher, DiffEngine(), scorer, dispatcher,
        check_timeout=0.05, clock=clock,
    )
    website = add_website(monitor_type=MonitorType.FULL_SITE)
    fetcher.pages = {"https://example.com/": "Home", "https://example.com/a": "A"}
    await orchestrator.check_website(website)
    repository.save_user_settings(UserSettings(user_id="alice", ai_analysis_enabled=True))
    fetcher.pages = {"https://example.com/": "Home v2", "https://example.com/a": "A v2"}

    session = await orchestrator.check_website(website)

    assert session.status == CrawlStatus.FAILED
    assert "timed out" in session.error
    changed = [r for r in repository.list_results_by_website(website.id) if r.crawl_session_id == session.id]
    assert [r.change_status for r in changed] == [ChangeStatus.CHANGED]
    assert repository.running_session(website.id) is None


@pytest.mark.asyncio
async def test_slow_delivery_does_not_fail_check(
    repository: InMemoryRepository,
    fetcher: ContentFetcher,
    scorer: ChangeScorer,
    dispatcher: NotificationDispatcher,
    webhook_transport: AsyncMock,
    clock,
    add_website,
) -> None:
    """Test that webhooks slower than the check deadline still go out after it."""
    website = add_website(
        monitor_type=MonitorType.FULL_SITE,
        notification_preference=NotificationPreference.WEBHOOK,
        webhook_url="https://hooks.example.com/x",
    )
    statuses_at_delivery = []

    async def slow_post(*args, **kwargs):
        await asyncio.sleep(0.2)
        statuses_at_delivery.append(repository.list_sessions_by_website(website.id)[-1].status)
        return 200

    webhook_transport.post_webhook.side_effect = slow_post
    orchestrator = CrawlOrchestrator(
        repository, fetcher, DiffEngine(), scorer, dispatcher,
        check_timeout=0.05, clock=clock,
    )
    fetcher.pages = {"https://example.com/": "Home", "https://example.com/a": "A"}

    session = await orchestrator.check_website(website)

    assert session.status == CrawlStatus.COMPLETED
    assert repository.get_session(session.id).status == CrawlStatus.COMPLETED
    assert session.pages_added == 2
    assert len(repository.list_alerts_by_website(website.id)) == 2
    assert webhook_transport.post_webhook.call_count == 2
    assert statuses_at_delivery == [CrawlStatus.COMPLETED, CrawlStatus.COMPLETED]


@pytest.mark.asyncio
async def test_scoring_only_for_changed_with_ai_enabled(
    orchestrator: CrawlOrchestrator,
    repository: InMemoryRepository,
    fetcher: ContentFetcher,
    oracle: AsyncMock,
    add_website,
) -> None:
    oracle.score.return_value = OracleVerdict(score=85, reasoning="Price changed", model="gpt-4o-mini")
    website = add_website()

    fetcher.pages = {"https://example.com/": "Price: 10"}
    await orchestrator.check_website(website)  # new, AI disabled
    fetcher.pages = {"https://example.com/": "Price: 11"}
    await orchestrator.check_website(website)  # changed, AI disabled
    assert oracle.score.call_count == 0

    repository.save_user_settings(UserSettings(user_id="alice", ai_analysis_enabled=True))
    await orchestrator.check_website(website)  # same
    assert oracle.score.call_count == 0

    fetcher.pages = {"https://example.com/": "Price: 12"}
    await orchestrator.check_website(website)  # changed, AI enabled

    assert oracle.score.call_count == 1
    latest = repository.latest_result(website.id)
    assert latest.ai_analysis.meaningful_change_score == 85
    assert latest.ai_analysis.is_meaningful_change is True


@pytest.mark.asyncio
async def test_scorer_failure_still_persists_result(
    orchestrator: CrawlOrchestrator,
    repository: InMemoryRepository,
    fetcher: ContentFetcher,
    oracle: AsyncMock,
    add_website,
) -> None:
    oracle.score.side_effect = OracleError("401 Unauthorized")
    repository.save_user_settings(UserSettings(user_id="alice", ai_analysis_enabled=True))
    website = add_website()
    fetcher.pages = {"https://example.com/": "v1"}
    await orchestrator.check_website(website)
    fetcher.pages = {"https://example.com/": "v2"}

    session = await orchestrator.check_website(website)

    latest = repository.latest_result(website.id)
    assert session.status == CrawlStatus.COMPLETED
    assert latest.change_status == ChangeStatus.CHANGED
    assert latest.ai_analysis is None


@pytest.mark.asyncio
async def test_manual_check_refused_while_running(
    orchestrator: CrawlOrchestrator,
    fetcher: ContentFetcher,
    add_website,
) -> None:
    website = add_website()
    orchestrator.start_session(website)

    with pytest.raises(CheckInProgressError):
        await orchestrator.check_website(website)

    assert fetcher.calls == []


@pytest.mark.asyncio
async def test_persistence_failure_fails_session_without_raising(
    fetcher: ContentFetcher,
    scorer: ChangeScorer,
    clock,
    caplog: pytest.LogCaptureFixture,
) -> None:
    repository = FailingResultsRepository()
    website = repository.add_website(Website(url="https://example.com", name="Example", user_id="alice"))
    orchestrator = CrawlOrchestrator(
        repository, fetcher, DiffEngine(), scorer, NotificationDispatcher(repository), clock=clock,
    )
    fetcher.pages = {"https://example.com/": "Home"}

    with caplog.at_level(logging.CRITICAL, logger="site_monitor"):
        session = await orchestrator.check_website(website)

    assert session.status == CrawlStatus.FAILED
    assert "disk full" in session.error
    assert repository.get_session(session.id).status == CrawlStatus.FAILED
    assert "Store unavailable" in caplog.text


@pytest.mark.asyncio
async def test_rerun_after_completion_creates_new_session(
    orchestrator: CrawlOrchestrator,
    repository: InMemoryRepository,
    fetcher: ContentFetcher,
    add_website,
) -> None:
    website = add_website()
    fetcher.pages = {"https://example.com/": "Home"}

    first = await orchestrator.check_website(website)
    second = await orchestrator.check_website(website)

    assert first.id != second.id
    assert [s.status for s in repository.list_sessions_by_website(website.id)] == [
        CrawlStatus.COMPLETED,
        CrawlStatus.COMPLETED,
    ]
