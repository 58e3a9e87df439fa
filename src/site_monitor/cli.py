"""CLI entry point for site monitor."""

import asyncio
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import typer

from site_monitor.adapters.fetchers import FirecrawlFetcher, HttpPageFetcher
from site_monitor.adapters.llm import OpenAICompatibleOracle
from site_monitor.adapters.notifications import (
    ChangeMessageFormatter,
    ResendEmailNotifier,
    WebhookNotifier,
)
from site_monitor.adapters.storage import PlaintextKeyCipher, YamlRepository
from site_monitor.config import Settings, get_settings
from site_monitor.core import (
    CheckInProgressError,
    ConfigurationError,
    ContentFetcher,
    DiffEngine,
    MonitorType,
    NotificationPreference,
    Repository,
)
from site_monitor.logging_setup import setup_logging
from site_monitor.scheduler import Scheduler
from site_monitor.use_cases import (
    ChangeScorer,
    CrawlOrchestrator,
    MonitorService,
    NotificationDispatcher,
)

app = typer.Typer(help="Monitor websites for meaningful content changes.", no_args_is_help=True)

STATUS_EMOJI = {
    "new": "🆕",
    "same": "⚪",
    "changed": "🔄",
    "removed": "🗑️",
    "checking": "⏳",
}


@dataclass
class Services:
    """Wired application components."""

    settings: Settings
    repository: Repository
    orchestrator: CrawlOrchestrator
    scheduler: Scheduler
    monitor: MonitorService


def build_fetcher(settings: Settings) -> ContentFetcher:
    if settings.use_firecrawl:
        return FirecrawlFetcher(
            api_key=settings.firecrawl_api_key or "",
            base_url=settings.crawl.firecrawl_base_url,
            timeout=settings.crawl.request_timeout,
            poll_interval=settings.crawl.poll_interval,
            max_poll_seconds=settings.check_timeout,
        )
    return HttpPageFetcher(
        timeout=settings.crawl.request_timeout,
        max_concurrency=settings.crawl.max_concurrent_requests,
        user_agent=settings.crawl.user_agent,
    )


def build_services(settings: Settings) -> Services:
    """Wire adapters and use cases from settings."""
    repository = YamlRepository(settings.data_dir)
    cipher = PlaintextKeyCipher()
    notifications = settings.notifications

    dispatcher = NotificationDispatcher(
        repository=repository,
        email_transport=ResendEmailNotifier(
            api_key=settings.resend_api_key,
            from_email=notifications.from_email,
            api_url=notifications.resend_api_url,
            timeout=notifications.timeout_seconds,
            max_retries=notifications.max_retries,
            retry_delay=notifications.retry_delay,
        ),
        webhook_transport=WebhookNotifier(
            timeout=notifications.timeout_seconds,
            max_retries=notifications.max_retries,
            retry_delay=notifications.retry_delay,
            user_agent=settings.crawl.user_agent,
        ),
        formatter=ChangeMessageFormatter(),
    )

    scorer = ChangeScorer(
        oracle=OpenAICompatibleOracle(settings.ai),
        cipher=cipher,
        config=settings.ai,
        fallback_api_key=settings.openai_api_key,
    )

    orchestrator = CrawlOrchestrator(
        repository=repository,
        fetcher=build_fetcher(settings),
        diff_engine=DiffEngine(settings.diff.to_policy()),
        scorer=scorer,
        dispatcher=dispatcher,
        crawl_config=settings.crawl,
        check_timeout=settings.check_timeout,
    )

    scheduler = Scheduler(
        repository=repository,
        orchestrator=orchestrator,
        max_concurrent_checks=settings.max_concurrent_checks,
        tick_seconds=settings.scheduler.tick_seconds,
        check_timeout=settings.check_timeout,
        stale_grace=settings.scheduler.stale_session_grace_seconds,
    )

    monitor = MonitorService(repository=repository, orchestrator=orchestrator, cipher=cipher)
    return Services(settings, repository, orchestrator, scheduler, monitor)


def _services(ctx: typer.Context) -> Services:
    return build_services(ctx.obj)


def _fail(message: str) -> None:
    print(f"❌ {message}")
    raise typer.Exit(code=1)


@app.callback()
def main(
    ctx: typer.Context,
    config: Path = typer.Option(Path("config.yaml"), "--config", "-c", help="Path to config.yaml"),
) -> None:
    """Monitor websites for meaningful content changes."""
    try:
        settings = get_settings(config)
    except ConfigurationError as e:
        _fail(str(e))
    setup_logging(settings.logging.level, settings.paths.log_file)
    ctx.obj = settings


@app.command()
def run(
    ctx: typer.Context,
    once: bool = typer.Option(False, "--once", help="Run a single tick and wait for its checks"),
) -> None:
    """Run the scheduler loop."""
    services = _services(ctx)
    settings = services.settings

    print("\n" + "=" * 70)
    print("🛰️  SITE MONITOR")
    print("=" * 70)

    print("\n🔑 Credentials:")
    if settings.use_firecrawl:
        print("  ✓ FIRECRAWL_API_KEY - pages fetched through Firecrawl")
    else:
        print("  ⚠️  FIRECRAWL_API_KEY - not used (direct HTTP fetching)")
    if settings.openai_api_key:
        print("  ✓ OPENAI_API_KEY - default key for AI change scoring")
    else:
        print("  ⚠️  OPENAI_API_KEY - not found (only users with their own key get AI scoring)")
    if settings.resend_api_key:
        print("  ✓ RESEND_API_KEY - email notifications")
    else:
        print("  ⚠️  RESEND_API_KEY - not found (email delivery will fail)")

    print("\n⚙️  Settings:")
    print(f"  • Tick: {settings.scheduler.tick_seconds:.0f}s")
    print(f"  • Max concurrent checks: {settings.max_concurrent_checks}")
    print(f"  • Check timeout: {settings.check_timeout:.0f}s")
    print(f"  • Data: {settings.data_dir}")

    asyncio.run(_run_scheduler(services.scheduler, once))


async def _run_scheduler(scheduler: Scheduler, once: bool) -> None:
    if once:
        admitted = scheduler.tick()
        print(f"\n📥 Admitted {len(admitted)} checks")
        await scheduler.drain()
        print("✅ Done")
        return

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C still interrupts
            pass

    print("\n▶️  Running, press Ctrl+C to stop")
    await scheduler.run_forever(stop)
    print("⏹️  Stopped")


@app.command()
def add(
    ctx: typer.Context,
    url: str,
    user: str = typer.Option(..., "--user", "-u", help="Owner id"),
    name: str = typer.Option("", "--name", help="Display name"),
    interval: int = typer.Option(60, "--interval", help="Check interval in minutes"),
    full_site: bool = typer.Option(False, "--full-site", help="Crawl the whole site"),
    limit: Optional[int] = typer.Option(None, "--limit", help="Max pages per crawl"),
    depth: Optional[int] = typer.Option(None, "--depth", help="Max link hops per crawl"),
    notify: NotificationPreference = typer.Option(NotificationPreference.NONE, "--notify"),
    webhook: Optional[str] = typer.Option(None, "--webhook", help="Webhook URL for this website"),
) -> None:
    """Start monitoring a website."""
    services = _services(ctx)
    try:
        website = services.monitor.add_website(
            user_id=user,
            url=url,
            name=name,
            check_interval=interval,
            monitor_type=MonitorType.FULL_SITE if full_site else MonitorType.SINGLE_PAGE,
            notification_preference=notify,
            webhook_url=webhook,
            crawl_limit=limit,
            crawl_depth=depth,
        )
    except (ConfigurationError, ValueError) as e:
        _fail(str(e))

    print(f"✓ Added {website.name} [{website.id}]")
    print(f"  └─ {website.monitor_type.value}, every {website.check_interval} min, notify: {website.notification_preference.value}")


@app.command()
def check(ctx: typer.Context, website_id: str) -> None:
    """Check a website now."""
    services = _services(ctx)
    try:
        session = asyncio.run(services.monitor.trigger_check(website_id))
    except (KeyError, CheckInProgressError) as e:
        _fail(str(e))

    if session.error:
        print(f"❌ Check failed: {session.error}")
        raise typer.Exit(code=1)

    print(f"✓ Check completed: {session.pages_found} pages")
    print(f"  • Changed: {session.pages_changed}")
    print(f"  • New: {session.pages_added}")
    print(f"  • Removed: {session.pages_removed}")
    if session.pages_failed:
        print(f"  ⚠️  Failed: {session.pages_failed}")


@app.command()
def due(ctx: typer.Context) -> None:
    """List websites due for a check."""
    services = _services(ctx)
    due_list = services.monitor.list_due_websites()

    if not due_list:
        print("✓ Nothing is due")
        return

    print(f"⏰ {len(due_list)} websites due:")
    for website, overdue in due_list:
        minutes = int(overdue.total_seconds() // 60)
        label = "never checked" if website.last_checked is None else f"overdue {minutes} min"
        print(f"  • {website.name} [{website.id}] - {label}")


@app.command()
def status(ctx: typer.Context, website_id: str) -> None:
    """Show the latest result of a website."""
    services = _services(ctx)
    try:
        state = services.monitor.status(website_id)
    except KeyError as e:
        _fail(str(e))

    website = state.website
    paused = " (paused)" if website.is_paused else ""
    print(f"🌐 {website.name}{paused}: {website.url}")

    if state.status is None:
        print("  └─ Not checked yet")
    else:
        print(f"  • Status: {STATUS_EMOJI.get(state.status.value, '•')} {state.status.value}")

    latest = state.latest_result
    if latest:
        print(f"  • Last result: {latest.url} at {latest.scraped_at:%Y-%m-%d %H:%M} UTC")
        if latest.ai_analysis:
            ai = latest.ai_analysis
            verdict = "meaningful" if ai.is_meaningful_change else "not meaningful"
            print(f"  • AI: {ai.meaningful_change_score:.0f}/100 ({verdict}) - {ai.reasoning}")

    session = state.session
    if session and session.error:
        print(f"  ⚠️  Last check failed: {session.error}")


@app.command()
def alerts(
    ctx: typer.Context,
    user: str = typer.Option(..., "--user", "-u", help="Owner id"),
) -> None:
    """List unread change alerts."""
    services = _services(ctx)
    unread = services.monitor.unread_alerts(user)

    if not unread:
        print("✓ No unread alerts")
        return

    print(f"🔔 {len(unread)} unread alerts:")
    for alert in unread:
        emoji = STATUS_EMOJI.get(alert.change_type, "•")
        print(f"  {emoji} [{alert.id}] {alert.created_at:%Y-%m-%d %H:%M} {alert.summary}")


@app.command("mark-read")
def mark_read(ctx: typer.Context, alert_id: str) -> None:
    """Mark an alert as read."""
    services = _services(ctx)
    try:
        services.monitor.mark_alert_read(alert_id)
    except KeyError as e:
        _fail(str(e))
    print(f"✓ Alert {alert_id} marked as read")


@app.command()
def pause(ctx: typer.Context, website_id: str) -> None:
    """Stop scheduling checks for a website."""
    services = _services(ctx)
    try:
        website = services.monitor.pause(website_id)
    except KeyError as e:
        _fail(str(e))
    print(f"⏸️  Paused {website.name}")


@app.command()
def resume(ctx: typer.Context, website_id: str) -> None:
    """Resume scheduled checks for a website."""
    services = _services(ctx)
    try:
        website = services.monitor.resume(website_id)
    except KeyError as e:
        _fail(str(e))
    print(f"▶️  Resumed {website.name}")


@app.command()
def settings(
    ctx: typer.Context,
    user: str = typer.Option(..., "--user", "-u", help="Owner id"),
    ai: Optional[bool] = typer.Option(None, "--ai/--no-ai", help="Enable AI change scoring"),
    model: Optional[str] = typer.Option(None, "--model"),
    base_url: Optional[str] = typer.Option(None, "--base-url", help="OpenAI-compatible endpoint"),
    threshold: Optional[float] = typer.Option(None, "--threshold", help="Meaningful change threshold (0-100)"),
    api_key: Optional[str] = typer.Option(None, "--api-key", help="Your own AI API key"),
    prompt: Optional[str] = typer.Option(None, "--prompt", help="Custom system prompt"),
    webhook: Optional[str] = typer.Option(None, "--webhook", help="Default webhook URL"),
    email_enabled: Optional[bool] = typer.Option(None, "--email-notifications/--no-email-notifications"),
    email_only_meaningful: Optional[bool] = typer.Option(None, "--email-only-meaningful/--email-always"),
    webhook_only_meaningful: Optional[bool] = typer.Option(None, "--webhook-only-meaningful/--webhook-always"),
    email: Optional[str] = typer.Option(None, "--email", help="Notification email address"),
    verified: bool = typer.Option(False, "--verified", help="Treat --email as already verified"),
) -> None:
    """Update notification and AI settings of a user."""
    services = _services(ctx)
    requested = {
        "ai_analysis_enabled": ai,
        "ai_model": model,
        "ai_base_url": base_url,
        "ai_meaningful_change_threshold": threshold,
        "ai_api_key": api_key,
        "ai_system_prompt": prompt,
        "default_webhook_url": webhook,
        "email_notifications_enabled": email_enabled,
        "email_only_if_meaningful": email_only_meaningful,
        "webhook_only_if_meaningful": webhook_only_meaningful,
    }
    changes = {key: value for key, value in requested.items() if value is not None}

    try:
        if email:
            services.monitor.validate_notification_email(user, email)
        saved = services.monitor.update_settings(user, **changes)
        config = services.monitor.set_notification_email(user, email, verified) if email else None
    except (ConfigurationError, ValueError) as e:
        _fail(str(e))

    print(f"✓ Settings saved for {user}")
    print(f"  • AI scoring: {'on' if saved.ai_analysis_enabled else 'off'}")
    if saved.ai_meaningful_change_threshold is not None:
        print(f"  • Threshold: {saved.ai_meaningful_change_threshold:.0f}")
    print(f"  • Email: {'on' if saved.email_notifications_enabled else 'off'}"
          f"{' (meaningful only)' if saved.email_only_if_meaningful else ''}")
    print(f"  • Webhook: {saved.default_webhook_url or '-'}"
          f"{' (meaningful only)' if saved.webhook_only_if_meaningful else ''}")

    if config and not config.is_verified:
        print(f"  ⚠️  {config.email} is not verified yet, token: {config.verification_token}")


@app.command("verify-email")
def verify_email(ctx: typer.Context, token: str) -> None:
    """Confirm a notification email address."""
    services = _services(ctx)
    try:
        config = services.monitor.verify_email(token)
    except ConfigurationError as e:
        _fail(str(e))
    print(f"✓ {config.email} verified")


if __name__ == "__main__":
    app()
