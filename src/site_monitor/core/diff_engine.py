"""Content normalization, diffing and change classification.

Comparison runs on normalized lines: configured noise patterns are removed,
whitespace is collapsed and blank lines dropped, then ``difflib`` produces a
unified text diff and ``SequenceMatcher`` grouped opcodes give the structured
hunks.
"""

import difflib
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional
from urllib.parse import urlsplit, urlunsplit

from site_monitor.core.entities import ChangeStatus, ContentDiff, ScrapeResult
from site_monitor.core.errors import ConfigurationError

DEFAULT_IGNORE_PATTERNS = [
    # ISO-8601 timestamps: 2024-01-15T10:20:30Z, 2024-01-15 10:20
    r"\b\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?(?:Z|[+-]\d{2}:?\d{2})?",
    # Clock times: 10:20, 10:20:30, 9:05 pm
    r"\b\d{1,2}:\d{2}(?::\d{2})?(?:\s?[AaPp][Mm])?\b",
    # Cache-buster query values: ?v=123, &_=1700000000
    r"(?<=[?&])(?:v|ver|_|t|ts|cb|cachebust)=[\w.-]+",
]


@dataclass
class NormalizationPolicy:
    """Which differences count as noise."""

    ignore_patterns: list[str] = field(default_factory=lambda: list(DEFAULT_IGNORE_PATTERNS))
    ignore_case: bool = False
    collapse_whitespace: bool = True
    ignore_blank_lines: bool = True
    context_lines: int = 3

    def __post_init__(self) -> None:
        try:
            self._compiled = [re.compile(p) for p in self.ignore_patterns]
        except re.error as e:
            raise ConfigurationError(f"Invalid ignore pattern: {e}") from e

    def normalize_lines(self, text: str) -> list[str]:
        """Split content into comparable lines."""
        for pattern in self._compiled:
            text = pattern.sub("", text)
        if self.ignore_case:
            text = text.lower()

        lines = []
        for line in text.splitlines():
            if self.collapse_whitespace:
                line = re.sub(r"\s+", " ", line).strip()
            else:
                line = line.rstrip()
            if self.ignore_blank_lines and not line:
                continue
            lines.append(line)
        return lines

    def normalize(self, text: str) -> str:
        return "\n".join(self.normalize_lines(text))


@dataclass
class Comparison:
    """Classification of a capture against its predecessor."""

    status: ChangeStatus
    diff: Optional[ContentDiff] = None


def canonical_url(url: str) -> str:
    """Identity of a logical page: no fragment, no trailing slash, lowercase host."""
    parts = urlsplit(url.strip())
    path = parts.path
    if path.endswith("/") and path != "/":
        path = path.rstrip("/")
    if not path:
        path = "/"
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, parts.query, ""))


def compute_diff(old: str, new: str, policy: NormalizationPolicy) -> ContentDiff:
    """Build unified and structured diff of normalized content."""
    old_lines = policy.normalize_lines(old)
    new_lines = policy.normalize_lines(new)
    context = policy.context_lines

    text = "\n".join(
        difflib.unified_diff(
            old_lines,
            new_lines,
            fromfile="previous",
            tofile="current",
            lineterm="",
            n=context,
        )
    )

    matcher = difflib.SequenceMatcher(a=old_lines, b=new_lines, autojunk=False)
    hunks: list[dict[str, Any]] = []
    added = 0
    removed = 0

    for group in matcher.get_grouped_opcodes(context):
        changes = []
        for tag, i1, i2, j1, j2 in group:
            if tag in ("replace", "delete"):
                for line in old_lines[i1:i2]:
                    changes.append({"type": "removed", "line": line})
                    removed += 1
            if tag in ("replace", "insert"):
                for line in new_lines[j1:j2]:
                    changes.append({"type": "added", "line": line})
                    added += 1

        first, last = group[0], group[-1]
        hunks.append({
            "old_start": first[1] + 1,
            "old_lines": last[2] - first[1],
            "new_start": first[3] + 1,
            "new_lines": last[4] - first[3],
            "changes": changes,
        })

    return ContentDiff(text=text, json={"added": added, "removed": removed, "hunks": hunks})


def classify(
    prior_content: Optional[str], new_content: str, policy: NormalizationPolicy
) -> Comparison:
    """Classify new content against prior content (None when never captured)."""
    if prior_content is None:
        return Comparison(status=ChangeStatus.NEW)

    if policy.normalize(prior_content) == policy.normalize(new_content):
        return Comparison(status=ChangeStatus.SAME)

    return Comparison(
        status=ChangeStatus.CHANGED,
        diff=compute_diff(prior_content, new_content, policy),
    )


def removed_urls(tracked: Iterable[str], crawled: Iterable[str]) -> set[str]:
    """Previously tracked URLs missing from a complete crawl."""
    crawled_set = {canonical_url(u) for u in crawled}
    return {canonical_url(u) for u in tracked} - crawled_set


class DiffEngine:
    """Compare captures against stored history."""

    def __init__(self, policy: Optional[NormalizationPolicy] = None) -> None:
        self.policy = policy or NormalizationPolicy()

    def compare(self, new_content: str, prior: Optional[ScrapeResult]) -> Comparison:
        """Classify a capture against the latest stored result for its URL.

        A page that was marked removed and shows up again counts as new.
        """
        if prior is None or prior.change_status == ChangeStatus.REMOVED:
            return classify(None, new_content, self.policy)
        return classify(prior.markdown, new_content, self.policy)

    def removed_urls(self, tracked: Iterable[str], crawled: Iterable[str]) -> set[str]:
        return removed_urls(tracked, crawled)
