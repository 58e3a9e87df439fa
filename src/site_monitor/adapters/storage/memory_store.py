"""In-memory repository with explicit secondary indexes."""

import copy
import itertools
from bisect import insort
from collections import defaultdict
from datetime import datetime
from typing import Any, Optional, TypeVar

from site_monitor.core import (
    ChangeAlert,
    ChangeStatus,
    CrawlSession,
    EmailConfig,
    Repository,
    ScrapeResult,
    UserSettings,
    Website,
    canonical_url,
)

T = TypeVar("T")

# (timestamp, insertion sequence, record id); the sequence breaks timestamp ties
TimeKey = tuple[datetime, int, str]


def _copy(record: T) -> T:
    return copy.deepcopy(record)


class InMemoryRepository(Repository):
    """Records plus hash and sorted indexes keyed by the lookup paths.

    Records are copied on the way in and out so callers never share
    mutable state with the store.
    """

    # table -> (records attribute, primary key field)
    TABLES = {
        "websites": ("_websites", "id"),
        "scrape_results": ("_results", "id"),
        "crawl_sessions": ("_sessions", "id"),
        "change_alerts": ("_alerts", "id"),
        "user_settings": ("_settings", "user_id"),
        "email_configs": ("_email_configs", "user_id"),
    }

    def __init__(self) -> None:
        self._seq = itertools.count()

        self._websites: dict[str, Website] = {}
        self._websites_by_user: dict[str, list[str]] = defaultdict(list)
        self._websites_by_active: dict[bool, set[str]] = defaultdict(set)

        self._results: dict[str, ScrapeResult] = {}
        self._results_by_website_time: dict[str, list[TimeKey]] = defaultdict(list)
        self._results_by_user_time: dict[str, list[TimeKey]] = defaultdict(list)
        self._results_by_website_url: dict[tuple[str, str], list[TimeKey]] = defaultdict(list)
        self._urls_by_website: dict[str, set[str]] = defaultdict(set)

        self._sessions: dict[str, CrawlSession] = {}
        self._sessions_by_website: dict[str, list[TimeKey]] = defaultdict(list)
        self._sessions_by_user_time: dict[str, list[TimeKey]] = defaultdict(list)
        self._running_by_website: dict[str, str] = {}

        self._alerts: dict[str, ChangeAlert] = {}
        self._alerts_by_user: dict[str, list[TimeKey]] = defaultdict(list)
        self._alerts_by_website: dict[str, list[TimeKey]] = defaultdict(list)
        self._alerts_by_read_status: dict[tuple[str, bool], set[str]] = defaultdict(set)
        self._alert_by_result: dict[str, str] = {}

        self._settings: dict[str, UserSettings] = {}

        self._email_configs: dict[str, EmailConfig] = {}
        self._email_by_address: dict[str, str] = {}
        self._email_by_token: dict[str, str] = {}

    def _persist(self, table: str, record: Any) -> None:
        """Called with each record before it is committed to ``table``.

        Durable stores write it here. Indexes are only touched after this
        returns, so a failed write leaves the store as it was.
        """
        pass

    def _time_key(self, when: datetime, record_id: str) -> TimeKey:
        return (when, next(self._seq), record_id)

    # Websites

    def _put_website(self, website: Website) -> None:
        existing = self._websites.get(website.id)
        if existing is None:
            self._websites_by_user[website.user_id].append(website.id)
        else:
            self._websites_by_active[existing.is_active].discard(website.id)
        self._websites[website.id] = website
        self._websites_by_active[website.is_active].add(website.id)

    def add_website(self, website: Website) -> Website:
        if website.id in self._websites:
            raise ValueError(f"Website already exists: {website.id}")
        stored = _copy(website)
        self._persist("websites", stored)
        self._put_website(stored)
        return _copy(website)

    def get_website(self, website_id: str) -> Optional[Website]:
        website = self._websites.get(website_id)
        return _copy(website) if website else None

    def update_website(self, website: Website) -> Website:
        if website.id not in self._websites:
            raise KeyError(f"Website not found: {website.id}")
        stored = _copy(website)
        self._persist("websites", stored)
        self._put_website(stored)
        return _copy(website)

    def list_websites_by_user(self, user_id: str) -> list[Website]:
        return [_copy(self._websites[i]) for i in self._websites_by_user.get(user_id, [])]

    def list_active_websites(self) -> list[Website]:
        ids = sorted(self._websites_by_active.get(True, set()))
        return [_copy(self._websites[i]) for i in ids]

    # Scrape results

    def _put_result(self, result: ScrapeResult) -> None:
        url = canonical_url(result.url)
        self._results[result.id] = result
        insort(self._results_by_website_time[result.website_id], self._time_key(result.scraped_at, result.id))
        insort(self._results_by_user_time[result.user_id], self._time_key(result.scraped_at, result.id))
        insort(self._results_by_website_url[(result.website_id, url)], self._time_key(result.scraped_at, result.id))
        self._urls_by_website[result.website_id].add(url)

    def add_scrape_result(self, result: ScrapeResult) -> ScrapeResult:
        if result.change_status == ChangeStatus.CHECKING:
            raise ValueError("Results in 'checking' state are never persisted")
        if result.id in self._results:
            raise ValueError(f"Scrape results are append-only: {result.id} exists")
        stored = _copy(result)
        self._persist("scrape_results", stored)
        self._put_result(stored)
        return _copy(result)

    def get_scrape_result(self, result_id: str) -> Optional[ScrapeResult]:
        result = self._results.get(result_id)
        return _copy(result) if result else None

    def latest_result_for_url(self, website_id: str, url: str) -> Optional[ScrapeResult]:
        keys = self._results_by_website_url.get((website_id, canonical_url(url)))
        if not keys:
            return None
        return _copy(self._results[keys[-1][2]])

    def latest_result(self, website_id: str) -> Optional[ScrapeResult]:
        keys = self._results_by_website_time.get(website_id)
        if not keys:
            return None
        return _copy(self._results[keys[-1][2]])

    def list_results_by_website(
        self, website_id: str, since: Optional[datetime] = None
    ) -> list[ScrapeResult]:
        keys = self._results_by_website_time.get(website_id, [])
        return [
            _copy(self._results[key[2]])
            for key in keys
            if since is None or key[0] >= since
        ]

    def list_results_by_user(self, user_id: str, limit: int = 50) -> list[ScrapeResult]:
        keys = self._results_by_user_time.get(user_id, [])
        return [_copy(self._results[key[2]]) for key in reversed(keys[-limit:])]

    def tracked_urls(self, website_id: str) -> set[str]:
        tracked = set()
        for url in self._urls_by_website.get(website_id, set()):
            latest = self._results_by_website_url[(website_id, url)][-1]
            if self._results[latest[2]].change_status != ChangeStatus.REMOVED:
                tracked.add(url)
        return tracked

    # Crawl sessions

    def _put_session(self, session: CrawlSession) -> None:
        if session.id not in self._sessions:
            insort(self._sessions_by_website[session.website_id], self._time_key(session.started_at, session.id))
            insort(self._sessions_by_user_time[session.user_id], self._time_key(session.started_at, session.id))
        self._sessions[session.id] = session
        if session.is_running:
            self._running_by_website[session.website_id] = session.id
        elif self._running_by_website.get(session.website_id) == session.id:
            del self._running_by_website[session.website_id]

    def add_session(self, session: CrawlSession) -> CrawlSession:
        if session.id in self._sessions:
            raise ValueError(f"Crawl session already exists: {session.id}")
        stored = _copy(session)
        self._persist("crawl_sessions", stored)
        self._put_session(stored)
        return _copy(session)

    def update_session(self, session: CrawlSession) -> CrawlSession:
        if session.id not in self._sessions:
            raise KeyError(f"Crawl session not found: {session.id}")
        stored = _copy(session)
        self._persist("crawl_sessions", stored)
        self._put_session(stored)
        return _copy(session)

    def get_session(self, session_id: str) -> Optional[CrawlSession]:
        session = self._sessions.get(session_id)
        return _copy(session) if session else None

    def running_session(self, website_id: str) -> Optional[CrawlSession]:
        session_id = self._running_by_website.get(website_id)
        return _copy(self._sessions[session_id]) if session_id else None

    def list_running_sessions(self) -> list[CrawlSession]:
        return [_copy(self._sessions[i]) for i in self._running_by_website.values()]

    def list_sessions_by_website(self, website_id: str) -> list[CrawlSession]:
        keys = self._sessions_by_website.get(website_id, [])
        return [_copy(self._sessions[key[2]]) for key in keys]

    def list_sessions_by_user(self, user_id: str, limit: int = 50) -> list[CrawlSession]:
        keys = self._sessions_by_user_time.get(user_id, [])
        return [_copy(self._sessions[key[2]]) for key in reversed(keys[-limit:])]

    # Change alerts

    def _put_alert(self, alert: ChangeAlert) -> None:
        existing = self._alerts.get(alert.id)
        if existing is None:
            insort(self._alerts_by_user[alert.user_id], self._time_key(alert.created_at, alert.id))
            insort(self._alerts_by_website[alert.website_id], self._time_key(alert.created_at, alert.id))
            self._alert_by_result[alert.scrape_result_id] = alert.id
        else:
            self._alerts_by_read_status[(existing.user_id, existing.is_read)].discard(alert.id)
        self._alerts[alert.id] = alert
        self._alerts_by_read_status[(alert.user_id, alert.is_read)].add(alert.id)

    def add_alert(self, alert: ChangeAlert) -> ChangeAlert:
        existing_id = self._alert_by_result.get(alert.scrape_result_id)
        if existing_id is not None:
            return _copy(self._alerts[existing_id])
        stored = _copy(alert)
        self._persist("change_alerts", stored)
        self._put_alert(stored)
        return _copy(alert)

    def get_alert(self, alert_id: str) -> Optional[ChangeAlert]:
        alert = self._alerts.get(alert_id)
        return _copy(alert) if alert else None

    def alert_for_result(self, scrape_result_id: str) -> Optional[ChangeAlert]:
        alert_id = self._alert_by_result.get(scrape_result_id)
        return _copy(self._alerts[alert_id]) if alert_id else None

    def list_alerts_by_user(self, user_id: str) -> list[ChangeAlert]:
        keys = self._alerts_by_user.get(user_id, [])
        return [_copy(self._alerts[key[2]]) for key in reversed(keys)]

    def list_alerts_by_website(self, website_id: str) -> list[ChangeAlert]:
        keys = self._alerts_by_website.get(website_id, [])
        return [_copy(self._alerts[key[2]]) for key in reversed(keys)]

    def list_unread_alerts(self, user_id: str) -> list[ChangeAlert]:
        unread = [self._alerts[i] for i in self._alerts_by_read_status.get((user_id, False), set())]
        unread.sort(key=lambda a: a.created_at, reverse=True)
        return [_copy(a) for a in unread]

    def mark_alert_read(self, alert_id: str) -> ChangeAlert:
        alert = self._alerts.get(alert_id)
        if alert is None:
            raise KeyError(f"Alert not found: {alert_id}")
        updated = _copy(alert)
        updated.is_read = True
        self._persist("change_alerts", updated)
        self._put_alert(updated)
        return _copy(updated)

    # User settings and email

    def _put_settings(self, settings: UserSettings) -> None:
        self._settings[settings.user_id] = settings

    def get_user_settings(self, user_id: str) -> Optional[UserSettings]:
        settings = self._settings.get(user_id)
        return _copy(settings) if settings else None

    def save_user_settings(self, settings: UserSettings) -> UserSettings:
        settings.validate()
        stored = _copy(settings)
        self._persist("user_settings", stored)
        self._put_settings(stored)
        return _copy(settings)

    def _put_email_config(self, config: EmailConfig) -> None:
        existing = self._email_configs.get(config.user_id)
        if existing is not None:
            self._email_by_address.pop(existing.email.lower(), None)
            if existing.verification_token:
                self._email_by_token.pop(existing.verification_token, None)
        self._email_configs[config.user_id] = config
        self._email_by_address[config.email.lower()] = config.user_id
        if config.verification_token:
            self._email_by_token[config.verification_token] = config.user_id

    def get_email_config(self, user_id: str) -> Optional[EmailConfig]:
        config = self._email_configs.get(user_id)
        return _copy(config) if config else None

    def find_email_config_by_email(self, email: str) -> Optional[EmailConfig]:
        user_id = self._email_by_address.get(email.lower())
        return self.get_email_config(user_id) if user_id else None

    def find_email_config_by_token(self, token: str) -> Optional[EmailConfig]:
        user_id = self._email_by_token.get(token)
        return self.get_email_config(user_id) if user_id else None

    def save_email_config(self, config: EmailConfig) -> EmailConfig:
        stored = _copy(config)
        self._persist("email_configs", stored)
        self._put_email_config(stored)
        return _copy(config)
