"""Core domain layer."""

from site_monitor.core.diff_engine import (
    Comparison,
    DiffEngine,
    NormalizationPolicy,
    canonical_url,
    classify,
    compute_diff,
)
from site_monitor.core.entities import (
    AIAnalysis,
    ChangeAlert,
    ChangeStatus,
    Channel,
    ContentDiff,
    CrawlSession,
    CrawlStatus,
    EmailConfig,
    FetchResult,
    MonitorType,
    NotificationPreference,
    PageCapture,
    ScrapeResult,
    UserSettings,
    Visibility,
    Website,
    utcnow,
)
from site_monitor.core.errors import (
    CheckInProgressError,
    ConfigurationError,
    DeliveryError,
    FetchError,
    MonitorError,
    OracleError,
    PersistenceError,
)
from site_monitor.core.interfaces import (
    ContentFetcher,
    EmailTransport,
    FetchOptions,
    KeyCipher,
    OracleOptions,
    OracleVerdict,
    Repository,
    ScoringOracle,
    WebhookTransport,
)

__all__ = [
    "AIAnalysis",
    "ChangeAlert",
    "ChangeStatus",
    "Channel",
    "CheckInProgressError",
    "Comparison",
    "ConfigurationError",
    "ContentDiff",
    "ContentFetcher",
    "CrawlSession",
    "CrawlStatus",
    "DeliveryError",
    "DiffEngine",
    "EmailConfig",
    "EmailTransport",
    "FetchError",
    "FetchOptions",
    "FetchResult",
    "KeyCipher",
    "MonitorError",
    "MonitorType",
    "NormalizationPolicy",
    "NotificationPreference",
    "OracleError",
    "OracleOptions",
    "OracleVerdict",
    "PageCapture",
    "PersistenceError",
    "Repository",
    "ScoringOracle",
    "ScrapeResult",
    "UserSettings",
    "Visibility",
    "WebhookTransport",
    "Website",
    "canonical_url",
    "classify",
    "compute_diff",
    "utcnow",
]
