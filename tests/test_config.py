"""Tests for configuration loading."""

from pathlib import Path

import pytest

from site_monitor.config import Settings, get_settings, load_config
from site_monitor.core import ConfigurationError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("FIRECRAWL_API_KEY", "OPENAI_API_KEY", "RESEND_API_KEY"):
        monkeypatch.delenv(name, raising=False)


def test_missing_file_gives_defaults(tmp_path: Path) -> None:
    settings = get_settings(tmp_path / "absent.yaml")

    assert load_config(tmp_path / "absent.yaml") == {}
    assert settings.max_concurrent_checks == 5
    assert settings.check_timeout == 300
    assert settings.default_threshold == 70
    assert settings.ai.default_model == "gpt-4o-mini"
    assert settings.data_dir == Path("data")


def test_yaml_sections_override_defaults(tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
scheduler:
  max_concurrent_checks: 2
crawl:
  fetcher: http
  default_crawl_limit: 25
diff:
  ignore_case: true
ai:
  default_threshold: 80
paths:
  data_dir: /var/lib/monitor
  log_file: logs/monitor.log
logging:
  level: DEBUG
""",
        encoding="utf-8",
    )

    settings = get_settings(config_path)

    assert settings.max_concurrent_checks == 2
    assert settings.crawl.default_crawl_limit == 25
    assert settings.crawl.default_crawl_depth == 2
    assert settings.diff.to_policy().ignore_case is True
    assert settings.default_threshold == 80
    assert settings.data_dir == Path("/var/lib/monitor")
    assert settings.paths.log_file == Path("logs/monitor.log")
    assert settings.logging.level == "DEBUG"


def test_secrets_from_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FIRECRAWL_API_KEY", "fc-env")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")

    settings = get_settings(tmp_path / "absent.yaml")

    assert settings.firecrawl_api_key == "fc-env"
    assert settings.openai_api_key == "sk-env"
    assert settings.resend_api_key == ""


@pytest.mark.parametrize("fetcher,key,expected", [
    ("auto", "fc-key", True),
    ("auto", None, False),
    ("http", "fc-key", False),
    ("firecrawl", None, True),
])
def test_fetcher_selection(fetcher: str, key, expected: bool) -> None:
    settings = Settings(firecrawl_api_key=key)
    settings.crawl.fetcher = fetcher

    assert settings.use_firecrawl is expected


@pytest.mark.parametrize("content,message", [
    ("scheduler:\n  max_concurent_checks: 2\n", "scheduler.max_concurent_checks"),
    ("paths:\n  data: /tmp/monitor\n", "paths.data"),
    ("ai:\n  default_threshold: 80\nnotification:\n  from_email: a@example.com\n", "notification"),
    ("crawl: 10\n", "must be a mapping"),
])
def test_unknown_keys_rejected(tmp_path: Path, content: str, message: str) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text(content, encoding="utf-8")

    with pytest.raises(ConfigurationError, match=message):
        get_settings(config_path)
