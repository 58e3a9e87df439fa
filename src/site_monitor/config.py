"""Configuration management."""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

import yaml

from site_monitor.core.diff_engine import DEFAULT_IGNORE_PATTERNS, NormalizationPolicy
from site_monitor.core.errors import ConfigurationError

DEFAULT_SYSTEM_PROMPT = """You review changes detected on monitored web pages.
Decide whether the change is meaningful to a person watching the page
(new content, changed prices, product or policy updates, new articles) or
just noise (rotating ads, timestamps, counters, session tokens, layout tweaks).

Reply with JSON only:
{"score": <0-100, how meaningful the change is>, "isMeaningful": <true|false>, "reasoning": "<one or two sentences>"}"""


@dataclass
class SchedulerConfig:
    """Scheduler settings."""
    tick_seconds: float = 30.0
    max_concurrent_checks: int = 5
    check_timeout_seconds: float = 300.0
    stale_session_grace_seconds: float = 600.0


@dataclass
class CrawlConfig:
    """Content fetching settings."""
    fetcher: str = "auto"  # auto | firecrawl | http
    default_crawl_limit: int = 10
    default_crawl_depth: int = 2
    request_timeout: float = 30.0
    max_concurrent_requests: int = 4
    firecrawl_base_url: str = "https://api.firecrawl.dev/v1"
    poll_interval: float = 2.0
    user_agent: str = "site-monitor/0.1 (+https://github.com/site-monitor)"


@dataclass
class DiffConfig:
    """Content normalization settings."""
    ignore_patterns: list[str] = field(default_factory=lambda: list(DEFAULT_IGNORE_PATTERNS))
    ignore_case: bool = False
    collapse_whitespace: bool = True
    ignore_blank_lines: bool = True
    context_lines: int = 3

    def to_policy(self) -> NormalizationPolicy:
        return NormalizationPolicy(
            ignore_patterns=list(self.ignore_patterns),
            ignore_case=self.ignore_case,
            collapse_whitespace=self.collapse_whitespace,
            ignore_blank_lines=self.ignore_blank_lines,
            context_lines=self.context_lines,
        )


@dataclass
class AIConfig:
    """Scoring oracle defaults, overridable per user."""
    default_model: str = "gpt-4o-mini"
    default_base_url: str = "https://api.openai.com/v1"
    default_threshold: float = 70.0
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    timeout_seconds: float = 60.0
    max_retries: int = 3
    initial_retry_delay: float = 2.0
    max_diff_chars: int = 8000


@dataclass
class NotificationConfig:
    """Delivery settings."""
    from_email: str = "Site Monitor <alerts@site-monitor.dev>"
    resend_api_url: str = "https://api.resend.com/emails"
    timeout_seconds: float = 30.0
    max_retries: int = 3
    retry_delay: float = 2.0


@dataclass
class PathsConfig:
    """Path settings."""
    data_dir: Path = Path("data")
    log_file: Optional[Path] = None


@dataclass
class LoggingConfig:
    level: str = "INFO"


@dataclass
class Settings:
    """Application settings."""

    # API Keys (from environment only)
    firecrawl_api_key: Optional[str] = None
    openai_api_key: str = ""
    resend_api_key: str = ""

    # Config sections
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    crawl: CrawlConfig = field(default_factory=CrawlConfig)
    diff: DiffConfig = field(default_factory=DiffConfig)
    ai: AIConfig = field(default_factory=AIConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def max_concurrent_checks(self) -> int:
        return self.scheduler.max_concurrent_checks

    @property
    def check_timeout(self) -> float:
        return self.scheduler.check_timeout_seconds

    @property
    def data_dir(self) -> Path:
        return self.paths.data_dir

    @property
    def default_threshold(self) -> float:
        return self.ai.default_threshold

    @property
    def use_firecrawl(self) -> bool:
        """Firecrawl when forced, or in auto mode when a key is present."""
        if self.crawl.fetcher == "firecrawl":
            return True
        if self.crawl.fetcher == "http":
            return False
        return bool(self.firecrawl_api_key)


def load_config(config_path: Path = Path("config.yaml")) -> dict:
    """Load configuration from YAML file."""
    if not config_path.exists():
        return {}

    with open(config_path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _section_items(config: dict, name: str, section: object) -> list[tuple[str, object]]:
    """Items of one config section, refusing keys the section does not have."""
    items = config.get(name) or {}
    if not isinstance(items, dict):
        raise ConfigurationError(f"Config section '{name}' must be a mapping")

    known = {f.name for f in fields(section)}
    for key in items:
        if key not in known:
            raise ConfigurationError(f"Unknown config key: {name}.{key}")
    return list(items.items())


def get_settings(config_path: Path = Path("config.yaml")) -> Settings:
    """Get application settings from YAML config and environment."""
    config = load_config(config_path)

    settings = Settings(
        firecrawl_api_key=os.getenv("FIRECRAWL_API_KEY") or None,
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        resend_api_key=os.getenv("RESEND_API_KEY", ""),
    )

    sections = {
        "scheduler": settings.scheduler,
        "crawl": settings.crawl,
        "diff": settings.diff,
        "ai": settings.ai,
        "notifications": settings.notifications,
        "logging": settings.logging,
    }
    unknown = set(config) - set(sections) - {"paths"}
    if unknown:
        raise ConfigurationError(f"Unknown config section(s) in {config_path}: {', '.join(sorted(unknown))}")

    for name, section in sections.items():
        for key, value in _section_items(config, name, section):
            setattr(section, key, value)

    for key, value in _section_items(config, "paths", settings.paths):
        setattr(settings.paths, key, Path(value) if value is not None else None)

    return settings
