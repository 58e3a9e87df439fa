"""Core domain entities."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional
from urllib.parse import urlparse

from site_monitor.core.errors import ConfigurationError


def utcnow() -> datetime:
    """Current time as timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class MonitorType(str, Enum):
    """How much of a website is checked."""

    SINGLE_PAGE = "single_page"
    FULL_SITE = "full_site"


class NotificationPreference(str, Enum):
    """Channels a website owner wants to be notified on."""

    NONE = "none"
    EMAIL = "email"
    WEBHOOK = "webhook"
    BOTH = "both"


class Channel(str, Enum):
    """Delivery channel for a notification."""

    EMAIL = "email"
    WEBHOOK = "webhook"


class ChangeStatus(str, Enum):
    """Classification of a scrape result against its predecessor."""

    NEW = "new"
    SAME = "same"
    CHANGED = "changed"
    REMOVED = "removed"
    CHECKING = "checking"


class Visibility(str, Enum):
    VISIBLE = "visible"
    HIDDEN = "hidden"


class CrawlStatus(str, Enum):
    """Lifecycle state of a crawl session."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Website:
    """Monitored target owned by a user."""

    url: str
    name: str
    user_id: str
    check_interval: int = 60  # minutes
    is_active: bool = True
    is_paused: bool = False
    notification_preference: NotificationPreference = NotificationPreference.NONE
    webhook_url: Optional[str] = None
    monitor_type: MonitorType = MonitorType.SINGLE_PAGE
    crawl_limit: Optional[int] = None
    crawl_depth: Optional[int] = None
    last_checked: Optional[datetime] = None
    last_crawl_at: Optional[datetime] = None
    total_pages: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)

    def __post_init__(self) -> None:
        if not self.url:
            raise ValueError("URL cannot be empty")
        if not self.user_id:
            raise ValueError("Owner cannot be empty")
        if self.check_interval <= 0:
            raise ValueError("Check interval must be positive")
        if not self.name:
            self.name = self.url

    @property
    def is_schedulable(self) -> bool:
        """Active and not manually paused."""
        return self.is_active and not self.is_paused

    def next_check_at(self) -> Optional[datetime]:
        """When the website becomes due, None if it was never checked."""
        if self.last_checked is None:
            return None
        return self.last_checked + timedelta(minutes=self.check_interval)

    def is_due(self, now: datetime) -> bool:
        """Check if the website should be checked at ``now``."""
        if not self.is_schedulable:
            return False
        next_check = self.next_check_at()
        return next_check is None or now >= next_check

    def overdue_by(self, now: datetime) -> timedelta:
        """How long past its due time the website is (zero if not due)."""
        next_check = self.next_check_at()
        if next_check is None:
            return now - self.created_at
        return max(now - next_check, timedelta(0))


@dataclass
class PageCapture:
    """One page returned by a content fetcher."""

    url: str
    markdown: str = ""
    title: Optional[str] = None
    description: Optional[str] = None
    og_image: Optional[str] = None
    status_code: Optional[int] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class FetchResult:
    """Outcome of one fetch call: captures plus crawl bookkeeping."""

    captures: list[PageCapture]
    job_id: Optional[str] = None
    truncated: bool = False  # crawl stopped at the page limit


@dataclass
class ContentDiff:
    """Textual and structured diff between two captures."""

    text: str
    json: dict[str, Any]

    @property
    def lines_added(self) -> int:
        return int(self.json.get("added", 0))

    @property
    def lines_removed(self) -> int:
        return int(self.json.get("removed", 0))


@dataclass
class AIAnalysis:
    """Meaningfulness verdict produced by the scoring oracle."""

    meaningful_change_score: float
    is_meaningful_change: bool
    reasoning: str
    model: str
    analyzed_at: datetime = field(default_factory=utcnow)


@dataclass
class ScrapeResult:
    """Snapshot of one URL of a website at one point in time."""

    website_id: str
    user_id: str
    url: str
    markdown: str
    change_status: ChangeStatus
    scraped_at: datetime
    visibility: Visibility = Visibility.VISIBLE
    previous_scrape_at: Optional[datetime] = None
    title: Optional[str] = None
    description: Optional[str] = None
    og_image: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    diff: Optional[ContentDiff] = None
    ai_analysis: Optional[AIAnalysis] = None
    crawl_session_id: Optional[str] = None
    id: str = field(default_factory=new_id)


@dataclass
class CrawlSession:
    """One execution of checking a website."""

    website_id: str
    user_id: str
    started_at: datetime = field(default_factory=utcnow)
    status: CrawlStatus = CrawlStatus.RUNNING
    pages_found: int = 0
    pages_changed: Optional[int] = None
    pages_added: Optional[int] = None
    pages_removed: Optional[int] = None
    pages_failed: Optional[int] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    job_id: Optional[str] = None
    id: str = field(default_factory=new_id)

    @property
    def is_running(self) -> bool:
        return self.status == CrawlStatus.RUNNING

    def _finish(self, status: CrawlStatus, now: datetime) -> None:
        if not self.is_running:
            raise ValueError(f"Crawl session {self.id} already {self.status.value}")
        self.status = status
        self.completed_at = now

    def complete(
        self,
        now: datetime,
        pages_found: int,
        pages_changed: int = 0,
        pages_added: int = 0,
        pages_removed: int = 0,
        pages_failed: int = 0,
    ) -> None:
        """Mark session completed with aggregate counts."""
        self._finish(CrawlStatus.COMPLETED, now)
        self.pages_found = pages_found
        self.pages_changed = pages_changed
        self.pages_added = pages_added
        self.pages_removed = pages_removed
        self.pages_failed = pages_failed

    def fail(self, now: datetime, error: str) -> None:
        """Mark session failed with an error message."""
        self._finish(CrawlStatus.FAILED, now)
        self.error = error or "unknown error"


@dataclass
class ChangeAlert:
    """User-visible record of a dispatched change."""

    website_id: str
    user_id: str
    scrape_result_id: str
    change_type: str
    summary: str
    is_read: bool = False
    created_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)


def _is_http_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


@dataclass
class UserSettings:
    """Per-user defaults for scoring and notifications."""

    user_id: str
    default_webhook_url: Optional[str] = None
    email_notifications_enabled: bool = True
    email_template: Optional[str] = None

    # AI analysis
    ai_analysis_enabled: bool = False
    ai_model: Optional[str] = None
    ai_base_url: Optional[str] = None
    ai_system_prompt: Optional[str] = None
    ai_meaningful_change_threshold: Optional[float] = None
    ai_api_key: Optional[str] = None  # encrypted

    # AI-based notification filtering
    email_only_if_meaningful: bool = False
    webhook_only_if_meaningful: bool = False

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def validate(self) -> None:
        """Reject malformed settings before they reach the pipeline."""
        threshold = self.ai_meaningful_change_threshold
        if threshold is not None and not 0 <= threshold <= 100:
            raise ConfigurationError(
                f"AI threshold must be between 0 and 100, got {threshold}"
            )
        if self.ai_model is not None and not self.ai_model.strip():
            raise ConfigurationError("AI model cannot be blank")
        for name in ("default_webhook_url", "ai_base_url"):
            value = getattr(self, name)
            if value is not None and not _is_http_url(value):
                raise ConfigurationError(f"{name} must be an http(s) URL: {value!r}")

    def only_if_meaningful(self, channel: Channel) -> bool:
        """Whether ``channel`` is restricted to meaningful changes."""
        if channel == Channel.EMAIL:
            return self.email_only_if_meaningful
        if channel == Channel.WEBHOOK:
            return self.webhook_only_if_meaningful
        raise ValueError(f"Unknown channel: {channel}")


@dataclass
class EmailConfig:
    """Notification email address of a user."""

    user_id: str
    email: str
    is_verified: bool = False
    verification_token: Optional[str] = None
    verification_expiry: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if "@" not in self.email:
            raise ValueError(f"Invalid email address: {self.email!r}")
