"""Notification adapters."""

from site_monitor.adapters.notifications.email_notifier import ResendEmailNotifier
from site_monitor.adapters.notifications.formatter import ChangeMessageFormatter
from site_monitor.adapters.notifications.webhook_notifier import WebhookNotifier

__all__ = ["ChangeMessageFormatter", "ResendEmailNotifier", "WebhookNotifier"]
