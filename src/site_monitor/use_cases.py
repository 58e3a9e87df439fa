"""Business logic use cases."""

import asyncio
import logging
import secrets
from dataclasses import dataclass, fields
from datetime import datetime, timedelta
from typing import Any, Callable, Optional
from urllib.parse import urlparse

import httpx

from site_monitor.adapters.notifications.formatter import ChangeMessageFormatter
from site_monitor.config import AIConfig, CrawlConfig
from site_monitor.core import (
    AIAnalysis,
    ChangeAlert,
    ChangeStatus,
    Channel,
    CheckInProgressError,
    ConfigurationError,
    ContentDiff,
    ContentFetcher,
    CrawlSession,
    DeliveryError,
    DiffEngine,
    EmailConfig,
    EmailTransport,
    FetchError,
    FetchOptions,
    KeyCipher,
    MonitorType,
    NotificationPreference,
    OracleError,
    OracleOptions,
    PageCapture,
    PersistenceError,
    Repository,
    ScoringOracle,
    ScrapeResult,
    UserSettings,
    Visibility,
    WebhookTransport,
    Website,
    canonical_url,
    utcnow,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# Statuses that may produce a notification
DISPATCHABLE_STATUSES = frozenset({ChangeStatus.NEW, ChangeStatus.CHANGED, ChangeStatus.REMOVED})

EMAIL_VERIFICATION_TTL = timedelta(hours=24)


@dataclass
class Delivery:
    """A recorded alert and the channels it still has to go out on."""

    website: Website
    result: ScrapeResult
    settings: UserSettings
    alert: ChangeAlert
    channels: list[Channel]


def settings_for(repository: Repository, user_id: str) -> UserSettings:
    """Stored settings of a user, or defaults when the user never saved any."""
    return repository.get_user_settings(user_id) or UserSettings(user_id=user_id)


def due_websites(repository: Repository, now: datetime) -> list[Website]:
    """Websites due at ``now``: never-checked first, then most overdue first."""
    due = [w for w in repository.list_active_websites() if w.is_due(now)]
    due.sort(key=lambda w: (w.last_checked is not None, -w.overdue_by(now).total_seconds()))
    return due


class ChangeScorer:
    """Score changed content for meaningfulness through the scoring oracle."""

    def __init__(
        self,
        oracle: ScoringOracle,
        cipher: KeyCipher,
        config: Optional[AIConfig] = None,
        fallback_api_key: str = "",
    ) -> None:
        self.oracle = oracle
        self.cipher = cipher
        self.config = config or AIConfig()
        self.fallback_api_key = fallback_api_key

    def applies(self, status: ChangeStatus, settings: UserSettings) -> bool:
        """Scoring runs only for changed content of users with AI enabled."""
        return settings.ai_analysis_enabled and status == ChangeStatus.CHANGED

    def threshold_for(self, settings: UserSettings) -> float:
        if settings.ai_meaningful_change_threshold is None:
            return self.config.default_threshold
        return settings.ai_meaningful_change_threshold

    def options_for(self, settings: UserSettings) -> OracleOptions:
        """Per-user oracle configuration with process-wide defaults."""
        api_key = self.fallback_api_key
        if settings.ai_api_key:
            api_key = self.cipher.decrypt(settings.ai_api_key)

        return OracleOptions(
            model=settings.ai_model or self.config.default_model,
            base_url=settings.ai_base_url or self.config.default_base_url,
            api_key=api_key,
            system_prompt=settings.ai_system_prompt or self.config.system_prompt,
        )

    async def analyze(self, diff: ContentDiff, settings: UserSettings) -> Optional[AIAnalysis]:
        """Return an analysis, or None when the oracle is unavailable.

        Oracle errors, timeouts and transport failures never propagate: the
        caller persists the result without analysis.
        """
        try:
            options = self.options_for(settings)
            verdict = await asyncio.wait_for(
                self.oracle.score(diff, options),
                timeout=self.config.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("Scoring timed out after %.0fs", self.config.timeout_seconds)
            return None
        except (OracleError, httpx.HTTPError, ValueError) as e:
            logger.warning("Scoring failed, keeping result without analysis: %s", e)
            return None

        score = min(max(float(verdict.score), 0.0), 100.0)
        return AIAnalysis(
            meaningful_change_score=score,
            is_meaningful_change=score > self.threshold_for(settings),
            reasoning=verdict.reasoning,
            model=verdict.model or options.model,
        )


class NotificationDispatcher:
    """Decide, record and deliver notifications for persisted results."""

    def __init__(
        self,
        repository: Repository,
        email_transport: Optional[EmailTransport] = None,
        webhook_transport: Optional[WebhookTransport] = None,
        formatter: Optional[ChangeMessageFormatter] = None,
    ) -> None:
        self.repository = repository
        self.email_transport = email_transport
        self.webhook_transport = webhook_transport
        self.formatter = formatter or ChangeMessageFormatter()

    @staticmethod
    def channels_for(preference: NotificationPreference, settings: UserSettings) -> list[Channel]:
        """Channels selected by the website preference and user email switch."""
        if preference == NotificationPreference.NONE:
            channels = []
        elif preference == NotificationPreference.EMAIL:
            channels = [Channel.EMAIL]
        elif preference == NotificationPreference.WEBHOOK:
            channels = [Channel.WEBHOOK]
        elif preference == NotificationPreference.BOTH:
            channels = [Channel.EMAIL, Channel.WEBHOOK]
        else:
            raise ValueError(f"Unknown notification preference: {preference}")

        if not settings.email_notifications_enabled:
            channels = [c for c in channels if c != Channel.EMAIL]
        return channels

    @staticmethod
    def should_dispatch(
        channel: Channel, settings: UserSettings, analysis: Optional[AIAnalysis]
    ) -> bool:
        """Only-if-meaningful filter; without an analysis it cannot suppress."""
        if not settings.only_if_meaningful(channel):
            return True
        if analysis is None:
            return True
        return analysis.is_meaningful_change

    def plan(self, website: Website, result: ScrapeResult, settings: UserSettings) -> list[Channel]:
        """Channels the result will be delivered on (empty means no alert)."""
        if result.change_status not in DISPATCHABLE_STATUSES:
            return []
        return [
            channel
            for channel in self.channels_for(website.notification_preference, settings)
            if self.should_dispatch(channel, settings, result.ai_analysis)
        ]

    def record(
        self, website: Website, result: ScrapeResult, settings: UserSettings
    ) -> Optional[Delivery]:
        """Record one alert for the result and return what is left to send.

        Returns None when no channel qualifies or the result already has an
        alert, which is never delivered twice.
        """
        channels = self.plan(website, result, settings)
        if not channels:
            logger.debug("No dispatch for %s result %s", result.change_status.value, result.id)
            return None

        existing = self.repository.alert_for_result(result.id)
        if existing is not None:
            logger.info("Alert %s already recorded for result %s", existing.id, result.id)
            return None

        alert = self.repository.add_alert(ChangeAlert(
            website_id=website.id,
            user_id=website.user_id,
            scrape_result_id=result.id,
            change_type=result.change_status.value,
            summary=self.formatter.summary(website, result),
        ))
        return Delivery(website, result, settings, alert, channels)

    async def deliver(self, delivery: Delivery) -> None:
        """Send a recorded alert; failures are logged and leave the alert in place."""
        for channel in delivery.channels:
            try:
                if channel == Channel.EMAIL:
                    await self._send_email(delivery.website, delivery.result, delivery.settings)
                else:
                    await self._post_webhook(
                        delivery.website, delivery.result, delivery.settings, delivery.alert
                    )
            except DeliveryError as e:
                logger.error("Alert %s not delivered: %s", delivery.alert.id, e)

    async def dispatch(
        self, website: Website, result: ScrapeResult, settings: UserSettings
    ) -> Optional[ChangeAlert]:
        """Record one alert for the result, then deliver it.

        Returns None when no channel qualifies.
        """
        delivery = self.record(website, result, settings)
        if delivery is None:
            return self.repository.alert_for_result(result.id)
        await self.deliver(delivery)
        return delivery.alert

    async def _send_email(
        self, website: Website, result: ScrapeResult, settings: UserSettings
    ) -> None:
        if self.email_transport is None:
            raise DeliveryError("email", "no email transport configured")

        config = self.repository.get_email_config(website.user_id)
        if config is None or not config.is_verified:
            raise DeliveryError("email", f"no verified address for user {website.user_id}")

        await self.email_transport.send_email(
            config.email,
            self.formatter.subject(website, result),
            self.formatter.render_email(website, result, settings.email_template),
        )

    async def _post_webhook(
        self,
        website: Website,
        result: ScrapeResult,
        settings: UserSettings,
        alert: ChangeAlert,
    ) -> None:
        if self.webhook_transport is None:
            raise DeliveryError("webhook", "no webhook transport configured")

        url = website.webhook_url or settings.default_webhook_url
        if not url:
            raise DeliveryError("webhook", f"no webhook URL for website {website.id}")

        await self.webhook_transport.post_webhook(
            url, self.formatter.webhook_payload(website, result, alert)
        )


@dataclass
class _CrawlCounts:
    found: int = 0
    changed: int = 0
    added: int = 0
    removed: int = 0
    failed: int = 0

    def record(self, status: ChangeStatus) -> None:
        if status == ChangeStatus.CHANGED:
            self.changed += 1
        elif status == ChangeStatus.NEW:
            self.added += 1
        elif status == ChangeStatus.REMOVED:
            self.removed += 1


class CrawlOrchestrator:
    """Run one check of a website: fetch, classify, score, persist, notify."""

    def __init__(
        self,
        repository: Repository,
        fetcher: ContentFetcher,
        diff_engine: DiffEngine,
        scorer: ChangeScorer,
        dispatcher: NotificationDispatcher,
        crawl_config: Optional[CrawlConfig] = None,
        check_timeout: float = 300.0,
        clock: Clock = utcnow,
    ) -> None:
        self.repository = repository
        self.fetcher = fetcher
        self.diff_engine = diff_engine
        self.scorer = scorer
        self.dispatcher = dispatcher
        self.crawl_config = crawl_config or CrawlConfig()
        self.check_timeout = check_timeout
        self.clock = clock

    def fetch_options(self, website: Website) -> FetchOptions:
        if website.monitor_type == MonitorType.SINGLE_PAGE:
            return FetchOptions(mode=MonitorType.SINGLE_PAGE, depth=0, limit=1)
        if website.monitor_type == MonitorType.FULL_SITE:
            return FetchOptions(
                mode=MonitorType.FULL_SITE,
                depth=website.crawl_depth if website.crawl_depth is not None else self.crawl_config.default_crawl_depth,
                limit=website.crawl_limit or self.crawl_config.default_crawl_limit,
            )
        raise ValueError(f"Unknown monitor type: {website.monitor_type}")

    def start_session(self, website: Website) -> CrawlSession:
        """Persist the running session that marks the check as in flight."""
        session = CrawlSession(
            website_id=website.id,
            user_id=website.user_id,
            started_at=self.clock(),
        )
        return self.repository.add_session(session)

    async def check_website(self, website: Website) -> CrawlSession:
        """Manual check. Refuses while another check of the website runs."""
        if self.repository.running_session(website.id) is not None:
            raise CheckInProgressError(website.id)
        session = self.start_session(website)
        return await self.execute(website, session)

    async def execute(self, website: Website, session: CrawlSession) -> CrawlSession:
        """Run the check under the deadline and finalize the session.

        Never raises for fetch, timeout or store failures: they end up as a
        failed session. Alerts are recorded inside the deadline but sent by
        separate tasks, which are awaited only after the session is final.
        """
        logger.info("Checking %s (%s)", website.url, website.monitor_type.value)
        counts = _CrawlCounts()
        deliveries: list[asyncio.Task] = []

        try:
            await asyncio.wait_for(
                self._run(website, session, counts, deliveries),
                timeout=self.check_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Check of %s timed out after %.0fs (%d pages recorded)",
                website.url, self.check_timeout, counts.found,
            )
            self._fail(website, session, f"Check timed out after {self.check_timeout:.0f}s")
        except FetchError as e:
            logger.warning("Check of %s failed: %s", website.url, e)
            self._fail(website, session, str(e))
        except PersistenceError as e:
            logger.critical("Store unavailable while checking %s: %s", website.url, e)
            self._fail(website, session, f"Persistence failure: {e}", touch_website=False)
        except Exception as e:
            logger.exception("Unexpected error while checking %s", website.url)
            self._fail(website, session, f"Unexpected error: {e}")

        await self._finish_deliveries(website, deliveries)
        return session

    def _hand_off(self, delivery: Optional[Delivery], deliveries: list[asyncio.Task]) -> None:
        if delivery is None:
            return
        deliveries.append(asyncio.create_task(
            self.dispatcher.deliver(delivery), name=f"deliver-{delivery.alert.id}"
        ))

    async def _finish_deliveries(self, website: Website, deliveries: list[asyncio.Task]) -> None:
        if not deliveries:
            return
        outcomes = await asyncio.gather(*deliveries, return_exceptions=True)
        for task, outcome in zip(deliveries, outcomes):
            if isinstance(outcome, Exception):
                logger.error(
                    "Delivery %s for %s crashed", task.get_name(), website.url, exc_info=outcome
                )

    async def _run(
        self,
        website: Website,
        session: CrawlSession,
        counts: _CrawlCounts,
        deliveries: list[asyncio.Task],
    ) -> None:
        settings = settings_for(self.repository, website.user_id)
        fetched = await self.fetcher.fetch(website.url, self.fetch_options(website))
        session.job_id = fetched.job_id

        crawled: set[str] = set()
        for capture in fetched.captures:
            url = canonical_url(capture.url)
            if url in crawled:
                continue
            crawled.add(url)
            counts.found += 1

            if not capture.ok:
                counts.failed += 1
                logger.warning("Page %s failed: %s", capture.url, capture.error)
                continue

            try:
                status = await self._record_page(website, session, settings, url, capture, deliveries)
            except PersistenceError:
                raise
            except Exception:
                counts.failed += 1
                logger.exception("Could not record page %s", capture.url)
                continue
            counts.record(status)

        if website.monitor_type == MonitorType.FULL_SITE and not fetched.truncated:
            tracked = self.repository.tracked_urls(website.id)
            for url in sorted(self.diff_engine.removed_urls(tracked, crawled)):
                await self._record_removed(website, session, settings, url, deliveries)
                counts.record(ChangeStatus.REMOVED)
        elif fetched.truncated:
            logger.info("Crawl of %s stopped at the page limit, skipping removal check", website.url)

        now = self.clock()
        session.complete(
            now,
            pages_found=counts.found,
            pages_changed=counts.changed,
            pages_added=counts.added,
            pages_removed=counts.removed,
            pages_failed=counts.failed,
        )
        self.repository.update_session(session)
        self._touch_website(website, now, total_pages=counts.found)

        logger.info(
            "Checked %s: %d pages, %d changed, %d new, %d removed, %d failed",
            website.url, counts.found, counts.changed, counts.added, counts.removed, counts.failed,
        )

    async def _record_page(
        self,
        website: Website,
        session: CrawlSession,
        settings: UserSettings,
        url: str,
        capture: PageCapture,
        deliveries: list[asyncio.Task],
    ) -> ChangeStatus:
        prior = self.repository.latest_result_for_url(website.id, url)
        comparison = self.diff_engine.compare(capture.markdown, prior)

        analysis = None
        if comparison.diff is not None and self.scorer.applies(comparison.status, settings):
            analysis = await self.scorer.analyze(comparison.diff, settings)

        result = self.repository.add_scrape_result(ScrapeResult(
            website_id=website.id,
            user_id=website.user_id,
            url=url,
            markdown=capture.markdown,
            change_status=comparison.status,
            scraped_at=self.clock(),
            visibility=Visibility.HIDDEN if comparison.status == ChangeStatus.SAME else Visibility.VISIBLE,
            previous_scrape_at=prior.scraped_at if prior else None,
            title=capture.title,
            description=capture.description,
            og_image=capture.og_image,
            metadata=dict(capture.metadata),
            diff=comparison.diff,
            ai_analysis=analysis,
            crawl_session_id=session.id,
        ))

        self._hand_off(self.dispatcher.record(website, result, settings), deliveries)
        return comparison.status

    async def _record_removed(
        self,
        website: Website,
        session: CrawlSession,
        settings: UserSettings,
        url: str,
        deliveries: list[asyncio.Task],
    ) -> None:
        prior = self.repository.latest_result_for_url(website.id, url)
        result = self.repository.add_scrape_result(ScrapeResult(
            website_id=website.id,
            user_id=website.user_id,
            url=url,
            markdown="",
            change_status=ChangeStatus.REMOVED,
            scraped_at=self.clock(),
            previous_scrape_at=prior.scraped_at if prior else None,
            title=prior.title if prior else None,
            crawl_session_id=session.id,
        ))
        logger.info("Page %s no longer found on %s", url, website.url)
        self._hand_off(self.dispatcher.record(website, result, settings), deliveries)

    def _touch_website(
        self, website: Website, now: datetime, total_pages: Optional[int] = None
    ) -> None:
        """Record the check time on the stored website, keeping concurrent edits."""
        current = self.repository.get_website(website.id)
        if current is None:
            logger.warning("Website %s disappeared during its check", website.id)
            return

        current.last_checked = now
        current.updated_at = now
        if total_pages is not None:
            current.total_pages = total_pages
            if current.monitor_type == MonitorType.FULL_SITE:
                current.last_crawl_at = now
        self.repository.update_website(current)

        website.last_checked = current.last_checked
        website.total_pages = current.total_pages
        website.last_crawl_at = current.last_crawl_at

    def _fail(
        self,
        website: Website,
        session: CrawlSession,
        error: str,
        touch_website: bool = True,
    ) -> None:
        """Mark the session failed; store errors here are logged, not raised."""
        now = self.clock()
        if session.is_running:
            session.fail(now, error)
        try:
            self.repository.update_session(session)
            if touch_website:
                self._touch_website(website, now)
        except PersistenceError as e:
            logger.critical("Could not record failure of session %s: %s", session.id, e)


@dataclass
class WebsiteStatus:
    """Latest state of a website as shown to its owner."""

    website: Website
    status: Optional[ChangeStatus]
    latest_result: Optional[ScrapeResult] = None
    session: Optional[CrawlSession] = None


class MonitorService:
    """Operations exposed to users and the CLI."""

    def __init__(
        self,
        repository: Repository,
        orchestrator: CrawlOrchestrator,
        cipher: KeyCipher,
        clock: Clock = utcnow,
    ) -> None:
        self.repository = repository
        self.orchestrator = orchestrator
        self.cipher = cipher
        self.clock = clock

    def add_website(
        self,
        user_id: str,
        url: str,
        name: str = "",
        check_interval: int = 60,
        monitor_type: MonitorType = MonitorType.SINGLE_PAGE,
        notification_preference: NotificationPreference = NotificationPreference.NONE,
        webhook_url: Optional[str] = None,
        crawl_limit: Optional[int] = None,
        crawl_depth: Optional[int] = None,
    ) -> Website:
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigurationError(f"Website URL must be http(s): {url!r}")
        if crawl_limit is not None and crawl_limit < 1:
            raise ConfigurationError("Crawl limit must be at least 1")
        if crawl_depth is not None and crawl_depth < 0:
            raise ConfigurationError("Crawl depth cannot be negative")

        now = self.clock()
        website = Website(
            url=url,
            name=name,
            user_id=user_id,
            check_interval=check_interval,
            monitor_type=monitor_type,
            notification_preference=notification_preference,
            webhook_url=webhook_url,
            crawl_limit=crawl_limit,
            crawl_depth=crawl_depth,
            created_at=now,
            updated_at=now,
        )
        logger.info("Added website %s (%s) for user %s", website.id, url, user_id)
        return self.repository.add_website(website)

    def get_website(self, website_id: str) -> Website:
        website = self.repository.get_website(website_id)
        if website is None:
            raise KeyError(f"Website not found: {website_id}")
        return website

    def _set_paused(self, website_id: str, paused: bool) -> Website:
        website = self.get_website(website_id)
        website.is_paused = paused
        website.updated_at = self.clock()
        return self.repository.update_website(website)

    def pause(self, website_id: str) -> Website:
        return self._set_paused(website_id, True)

    def resume(self, website_id: str) -> Website:
        return self._set_paused(website_id, False)

    def list_due_websites(self, now: Optional[datetime] = None) -> list[tuple[Website, timedelta]]:
        """Due websites with how long each is overdue."""
        now = now or self.clock()
        return [(w, w.overdue_by(now)) for w in due_websites(self.repository, now)]

    def latest_result(self, website_id: str) -> Optional[ScrapeResult]:
        return self.repository.latest_result(website_id)

    def status(self, website_id: str) -> WebsiteStatus:
        """Latest result of a website; ``checking`` while a session runs."""
        website = self.get_website(website_id)
        latest = self.repository.latest_result(website_id)
        running = self.repository.running_session(website_id)

        if running is not None:
            return WebsiteStatus(website, ChangeStatus.CHECKING, latest, running)

        sessions = self.repository.list_sessions_by_website(website_id)
        return WebsiteStatus(
            website,
            latest.change_status if latest else None,
            latest,
            sessions[-1] if sessions else None,
        )

    def unread_alerts(self, user_id: str) -> list[ChangeAlert]:
        return self.repository.list_unread_alerts(user_id)

    def mark_alert_read(self, alert_id: str) -> ChangeAlert:
        return self.repository.mark_alert_read(alert_id)

    async def trigger_check(self, website_id: str) -> CrawlSession:
        """Check a website now. Raises CheckInProgressError if one is running."""
        return await self.orchestrator.check_website(self.get_website(website_id))

    def update_settings(self, user_id: str, **changes: Any) -> UserSettings:
        """Apply changes and validate before storing.

        ``ai_api_key`` is given in plain text and stored encrypted.
        """
        settings = settings_for(self.repository, user_id)
        known = {f.name for f in fields(UserSettings)} - {"user_id", "created_at", "updated_at"}

        for key, value in changes.items():
            if key not in known:
                raise ConfigurationError(f"Unknown setting: {key}")
            if key == "ai_api_key" and value:
                value = self.cipher.encrypt(value)
            setattr(settings, key, value)

        settings.updated_at = self.clock()
        return self.repository.save_user_settings(settings)

    def validate_notification_email(self, user_id: str, email: str) -> str:
        """Return the cleaned address, or raise if ``user_id`` cannot use it."""
        email = email.strip()
        if "@" not in email:
            raise ConfigurationError(f"Invalid email address: {email!r}")

        owner = self.repository.find_email_config_by_email(email)
        if owner is not None and owner.user_id != user_id:
            raise ConfigurationError(f"Email {email} is used by another user")
        return email

    def set_notification_email(self, user_id: str, email: str, verified: bool = False) -> EmailConfig:
        """Set the address alerts are emailed to.

        Unverified addresses get a verification token; mail goes out only
        after ``verify_email``.
        """
        email = self.validate_notification_email(user_id, email)

        now = self.clock()
        existing = self.repository.get_email_config(user_id)
        config = EmailConfig(
            user_id=user_id,
            email=email,
            is_verified=verified,
            verification_token=None if verified else secrets.token_urlsafe(24),
            verification_expiry=None if verified else now + EMAIL_VERIFICATION_TTL,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        return self.repository.save_email_config(config)

    def verify_email(self, token: str) -> EmailConfig:
        config = self.repository.find_email_config_by_token(token)
        if config is None:
            raise ConfigurationError("Unknown verification token")

        now = self.clock()
        if config.verification_expiry is not None and now > config.verification_expiry:
            raise ConfigurationError("Verification token expired")

        config.is_verified = True
        config.verification_token = None
        config.verification_expiry = None
        config.updated_at = now
        return self.repository.save_email_config(config)
