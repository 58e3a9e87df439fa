"""Message formatting for change notifications."""

import html
import re
from typing import Any, Optional

from site_monitor.core import ChangeAlert, ChangeStatus, ScrapeResult, Website

DEFAULT_EMAIL_TEMPLATE = """<h2>{{changeHeadline}}: {{websiteName}}</h2>
<p><a href="{{pageUrl}}">{{pageTitle}}</a></p>
<p><strong>Detected:</strong> {{changeDate}}</p>
{{aiSection}}
<p>{{summary}}</p>
<pre style="background:#f6f8fa;padding:12px;font-size:12px">{{diffText}}</pre>
<p style="color:#888">Website: <a href="{{websiteUrl}}">{{websiteUrl}}</a></p>"""

PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")

HEADLINES = {
    ChangeStatus.NEW: "New page tracked",
    ChangeStatus.CHANGED: "Change detected",
    ChangeStatus.REMOVED: "Page removed",
    ChangeStatus.SAME: "No change",
    ChangeStatus.CHECKING: "Checking",
}

MAX_DIFF_CHARS = 5000


class ChangeMessageFormatter:
    """Build alert summaries, emails and webhook payloads for a scrape result."""

    def summary(self, website: Website, result: ScrapeResult) -> str:
        """One-line human summary stored on the change alert."""
        page = result.title or result.url
        status = result.change_status

        if status == ChangeStatus.NEW:
            text = f"Started tracking {page}"
        elif status == ChangeStatus.REMOVED:
            text = f"{page} is no longer part of {website.name}"
        elif status == ChangeStatus.CHANGED:
            text = f"Content changed on {page}"
            if result.diff:
                text += f" (+{result.diff.lines_added}/-{result.diff.lines_removed} lines)"
        elif status in (ChangeStatus.SAME, ChangeStatus.CHECKING):
            text = f"No change on {page}"
        else:
            raise ValueError(f"Unknown change status: {status}")

        if result.ai_analysis:
            text += f". AI: {result.ai_analysis.reasoning}"
        return text

    def subject(self, website: Website, result: ScrapeResult) -> str:
        return f"{HEADLINES[result.change_status]}: {website.name}"

    def variables(self, website: Website, result: ScrapeResult) -> dict[str, str]:
        """Template variables, HTML-escaped."""
        ai = result.ai_analysis
        diff_text = result.diff.text if result.diff else ""
        if len(diff_text) > MAX_DIFF_CHARS:
            diff_text = diff_text[:MAX_DIFF_CHARS] + "\n..."

        ai_section = ""
        if ai:
            ai_section = (
                f"<p><strong>AI score:</strong> {ai.meaningful_change_score:.0f}/100 "
                f"({'meaningful' if ai.is_meaningful_change else 'not meaningful'})<br>"
                f"{html.escape(ai.reasoning)}</p>"
            )

        values = {
            "websiteName": website.name,
            "websiteUrl": website.url,
            "pageUrl": result.url,
            "pageTitle": result.title or result.url,
            "changeType": result.change_status.value,
            "changeHeadline": HEADLINES[result.change_status],
            "changeDate": result.scraped_at.strftime("%Y-%m-%d %H:%M UTC"),
            "summary": self.summary(website, result),
            "diffText": diff_text,
            "aiScore": f"{ai.meaningful_change_score:.0f}" if ai else "",
            "aiMeaningful": ("yes" if ai.is_meaningful_change else "no") if ai else "",
            "aiReasoning": ai.reasoning if ai else "",
            "aiModel": ai.model if ai else "",
        }
        escaped = {key: html.escape(value) for key, value in values.items()}
        escaped["aiSection"] = ai_section
        return escaped

    def render_email(
        self, website: Website, result: ScrapeResult, template: Optional[str] = None
    ) -> str:
        """Render the user's template, or the default one.

        ``{{name}}`` placeholders are replaced; unknown ones become empty.
        """
        variables = self.variables(website, result)
        return PLACEHOLDER.sub(
            lambda m: variables.get(m.group(1), ""),
            template or DEFAULT_EMAIL_TEMPLATE,
        )

    def webhook_payload(
        self, website: Website, result: ScrapeResult, alert: ChangeAlert
    ) -> dict[str, Any]:
        """JSON body posted to webhooks."""
        payload: dict[str, Any] = {
            "event": "website_changed",
            "website": {
                "id": website.id,
                "name": website.name,
                "url": website.url,
                "monitorType": website.monitor_type.value,
            },
            "change": {
                "alertId": alert.id,
                "scrapeResultId": result.id,
                "changeType": result.change_status.value,
                "detectedAt": result.scraped_at.isoformat(),
                "summary": alert.summary,
                "url": result.url,
                "title": result.title,
                "description": result.description,
                "diff": {"text": result.diff.text, "json": result.diff.json} if result.diff else None,
            },
        }

        if result.ai_analysis:
            ai = result.ai_analysis
            payload["change"]["aiAnalysis"] = {
                "meaningfulChangeScore": ai.meaningful_change_score,
                "isMeaningfulChange": ai.is_meaningful_change,
                "reasoning": ai.reasoning,
                "model": ai.model,
                "analyzedAt": ai.analyzed_at.isoformat(),
            }

        return payload
