"""Core interfaces for adapters."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from site_monitor.core.entities import (
    ChangeAlert,
    ContentDiff,
    CrawlSession,
    EmailConfig,
    FetchResult,
    MonitorType,
    ScrapeResult,
    UserSettings,
    Website,
)


@dataclass
class FetchOptions:
    """Crawl parameters passed to a content fetcher."""

    mode: MonitorType = MonitorType.SINGLE_PAGE
    depth: int = 1
    limit: int = 1


@dataclass
class OracleOptions:
    """Per-user model configuration for the scoring oracle."""

    model: str
    base_url: str
    api_key: str
    system_prompt: str


@dataclass
class OracleVerdict:
    """Raw answer of the scoring oracle."""

    score: float
    reasoning: str
    model: str


class ContentFetcher(ABC):
    """Interface for fetching page captures."""

    @abstractmethod
    async def fetch(self, url: str, options: FetchOptions) -> FetchResult:
        """Fetch one page or crawl a site.

        Raises FetchError when the crawl cannot proceed at all. Failures of
        individual pages are reported as captures with ``error`` set.
        """
        pass


class ScoringOracle(ABC):
    """Interface for scoring how meaningful a change is."""

    @abstractmethod
    async def score(self, diff: ContentDiff, options: OracleOptions) -> OracleVerdict:
        """Score a diff from 0 to 100. Raises OracleError on failure."""
        pass


class EmailTransport(ABC):
    """Interface for sending notification emails."""

    @abstractmethod
    async def send_email(self, address: str, subject: str, html: str) -> None:
        """Send an email. Raises DeliveryError on failure."""
        pass


class WebhookTransport(ABC):
    """Interface for posting webhook notifications."""

    @abstractmethod
    async def post_webhook(self, url: str, payload: dict[str, Any]) -> int:
        """POST payload as JSON, return HTTP status. Raises DeliveryError on failure."""
        pass


class KeyCipher(ABC):
    """Symmetric encryption boundary for stored API keys."""

    @abstractmethod
    def encrypt(self, plaintext: str) -> str:
        pass

    @abstractmethod
    def decrypt(self, ciphertext: str) -> str:
        pass


class Repository(ABC):
    """Persistent store for all monitoring entities.

    Scrape results are append-only: there is no update or delete for them.
    Implementations raise PersistenceError when the store is unavailable.
    """

    # Websites

    @abstractmethod
    def add_website(self, website: Website) -> Website:
        pass

    @abstractmethod
    def get_website(self, website_id: str) -> Optional[Website]:
        pass

    @abstractmethod
    def update_website(self, website: Website) -> Website:
        pass

    @abstractmethod
    def list_websites_by_user(self, user_id: str) -> list[Website]:
        pass

    @abstractmethod
    def list_active_websites(self) -> list[Website]:
        pass

    # Scrape results

    @abstractmethod
    def add_scrape_result(self, result: ScrapeResult) -> ScrapeResult:
        pass

    @abstractmethod
    def get_scrape_result(self, result_id: str) -> Optional[ScrapeResult]:
        pass

    @abstractmethod
    def latest_result_for_url(self, website_id: str, url: str) -> Optional[ScrapeResult]:
        """Most recent result for a canonical URL under a website."""
        pass

    @abstractmethod
    def latest_result(self, website_id: str) -> Optional[ScrapeResult]:
        pass

    @abstractmethod
    def list_results_by_website(
        self, website_id: str, since: Optional[datetime] = None
    ) -> list[ScrapeResult]:
        """Results of a website ordered by capture time."""
        pass

    @abstractmethod
    def list_results_by_user(self, user_id: str, limit: int = 50) -> list[ScrapeResult]:
        """Most recent results of a user, newest first."""
        pass

    @abstractmethod
    def tracked_urls(self, website_id: str) -> set[str]:
        """URLs whose latest result is not ``removed``."""
        pass

    # Crawl sessions

    @abstractmethod
    def add_session(self, session: CrawlSession) -> CrawlSession:
        pass

    @abstractmethod
    def update_session(self, session: CrawlSession) -> CrawlSession:
        pass

    @abstractmethod
    def get_session(self, session_id: str) -> Optional[CrawlSession]:
        pass

    @abstractmethod
    def running_session(self, website_id: str) -> Optional[CrawlSession]:
        pass

    @abstractmethod
    def list_running_sessions(self) -> list[CrawlSession]:
        pass

    @abstractmethod
    def list_sessions_by_website(self, website_id: str) -> list[CrawlSession]:
        pass

    @abstractmethod
    def list_sessions_by_user(self, user_id: str, limit: int = 50) -> list[CrawlSession]:
        pass

    # Change alerts

    @abstractmethod
    def add_alert(self, alert: ChangeAlert) -> ChangeAlert:
        """Store alert; returns the existing one if the result already has an alert."""
        pass

    @abstractmethod
    def get_alert(self, alert_id: str) -> Optional[ChangeAlert]:
        pass

    @abstractmethod
    def alert_for_result(self, scrape_result_id: str) -> Optional[ChangeAlert]:
        pass

    @abstractmethod
    def list_alerts_by_user(self, user_id: str) -> list[ChangeAlert]:
        pass

    @abstractmethod
    def list_alerts_by_website(self, website_id: str) -> list[ChangeAlert]:
        pass

    @abstractmethod
    def list_unread_alerts(self, user_id: str) -> list[ChangeAlert]:
        pass

    @abstractmethod
    def mark_alert_read(self, alert_id: str) -> ChangeAlert:
        pass

    # User settings and email

    @abstractmethod
    def get_user_settings(self, user_id: str) -> Optional[UserSettings]:
        pass

    @abstractmethod
    def save_user_settings(self, settings: UserSettings) -> UserSettings:
        """Validate and store settings. Raises ConfigurationError."""
        pass

    @abstractmethod
    def get_email_config(self, user_id: str) -> Optional[EmailConfig]:
        pass

    @abstractmethod
    def find_email_config_by_email(self, email: str) -> Optional[EmailConfig]:
        pass

    @abstractmethod
    def find_email_config_by_token(self, token: str) -> Optional[EmailConfig]:
        pass

    @abstractmethod
    def save_email_config(self, config: EmailConfig) -> EmailConfig:
        pass
