"""Tests for normalization, diffing and classification."""

from datetime import datetime, timezone

import pytest

from site_monitor.core import (
    ChangeStatus,
    ConfigurationError,
    DiffEngine,
    NormalizationPolicy,
    ScrapeResult,
    canonical_url,
    classify,
    compute_diff,
)
from site_monitor.core.diff_engine import removed_urls

NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


def make_result(markdown: str, status: ChangeStatus = ChangeStatus.NEW) -> ScrapeResult:
    return ScrapeResult(
        website_id="w1",
        user_id="alice",
        url="https://example.com/",
        markdown=markdown,
        change_status=status,
        scraped_at=NOW,
    )


@pytest.mark.parametrize("url,expected", [
    ("https://Example.COM/Pricing/", "https://example.com/Pricing"),
    ("https://example.com", "https://example.com/"),
    ("https://example.com/#top", "https://example.com/"),
    ("HTTP://example.com/a?b=1#frag", "http://example.com/a?b=1"),
])
def test_canonical_url(url: str, expected: str) -> None:
    assert canonical_url(url) == expected


def test_first_capture_is_new() -> None:
    comparison = classify(None, "Hello", NormalizationPolicy())

    assert comparison.status == ChangeStatus.NEW
    assert comparison.diff is None


def test_identical_content_is_same() -> None:
    comparison = classify("Hello\nWorld", "Hello\nWorld", NormalizationPolicy())

    assert comparison.status == ChangeStatus.SAME
    assert comparison.diff is None


def test_noise_is_ignored() -> None:
    """Test that timestamps, spacing and blank lines do not count as change."""
    old = "Price: 10 EUR\n\nUpdated 2025-01-14T08:00:00Z\nServer time 10:20:30"
    new = "Price:   10 EUR\nUpdated 2025-01-15T09:30:00Z\n\n\nServer time 11:45:01  "

    assert classify(old, new, NormalizationPolicy()).status == ChangeStatus.SAME


def test_cache_busters_are_ignored() -> None:
    old = "![logo](https://cdn.example.com/logo.png?v=123)"
    new = "![logo](https://cdn.example.com/logo.png?v=456)"

    assert classify(old, new, NormalizationPolicy()).status == ChangeStatus.SAME


def test_changed_content_has_diff() -> None:
    comparison = classify("Price: 10 EUR\nIn stock", "Price: 12 EUR\nIn stock", NormalizationPolicy())

    assert comparison.status == ChangeStatus.CHANGED
    assert comparison.diff is not None
    assert comparison.diff.text
    assert "-Price: 10 EUR" in comparison.diff.text
    assert "+Price: 12 EUR" in comparison.diff.text
    assert comparison.diff.lines_added == 1
    assert comparison.diff.lines_removed == 1


def test_empty_content_is_valid_state() -> None:
    """Test that whitespace-only content compares like empty content."""
    policy = NormalizationPolicy()

    assert classify("", "   \n\n", policy).status == ChangeStatus.SAME
    assert classify(None, "", policy).status == ChangeStatus.NEW

    comparison = classify("Something", "   ", policy)
    assert comparison.status == ChangeStatus.CHANGED
    assert comparison.diff.lines_removed == 1
    assert comparison.diff.lines_added == 0


def test_structured_diff_hunks() -> None:
    old = "\n".join(f"line {i}" for i in range(1, 21))
    new = old.replace("line 3", "line three").replace("line 18\n", "")

    diff = compute_diff(old, new, NormalizationPolicy(context_lines=1))

    assert diff.json["added"] == 1
    assert diff.json["removed"] == 2
    assert len(diff.json["hunks"]) == 2

    first = diff.json["hunks"][0]
    assert first["old_start"] == 2
    assert {"type": "removed", "line": "line 3"} in first["changes"]
    assert {"type": "added", "line": "line three"} in first["changes"]

    second = diff.json["hunks"][1]
    assert second["changes"] == [{"type": "removed", "line": "line 18"}]


def test_ignore_case_policy() -> None:
    policy = NormalizationPolicy(ignore_case=True)

    assert classify("HELLO", "hello", policy).status == ChangeStatus.SAME
    assert classify("HELLO", "hello", NormalizationPolicy()).status == ChangeStatus.CHANGED


def test_custom_ignore_pattern() -> None:
    policy = NormalizationPolicy(ignore_patterns=[r"Visitors: \d+"])

    assert classify("Visitors: 10\nText", "Visitors: 99\nText", policy).status == ChangeStatus.SAME


def test_invalid_pattern_rejected() -> None:
    with pytest.raises(ConfigurationError, match="Invalid ignore pattern"):
        NormalizationPolicy(ignore_patterns=["(unclosed"])


def test_compare_against_prior_result() -> None:
    engine = DiffEngine()

    assert engine.compare("Hello", None).status == ChangeStatus.NEW
    assert engine.compare("Hello", make_result("Hello")).status == ChangeStatus.SAME
    assert engine.compare("Bye", make_result("Hello")).status == ChangeStatus.CHANGED


def test_reappearing_removed_page_is_new() -> None:
    engine = DiffEngine()
    removed = make_result("", status=ChangeStatus.REMOVED)

    assert engine.compare("Back again", removed).status == ChangeStatus.NEW


def test_removed_urls() -> None:
    tracked = {"https://example.com/", "https://example.com/about", "https://example.com/old"}
    crawled = ["https://example.com", "https://example.com/about/"]

    assert removed_urls(tracked, crawled) == {"https://example.com/old"}
    assert DiffEngine().removed_urls(tracked, crawled) == {"https://example.com/old"}
