"""Webhook notification adapter."""

import asyncio
import logging
from typing import Any

import httpx

from site_monitor.core import DeliveryError, WebhookTransport

logger = logging.getLogger(__name__)


class WebhookNotifier(WebhookTransport):
    """POST change notifications as JSON to user webhooks."""

    def __init__(
        self,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_delay: float = 2.0,
        user_agent: str = "site-monitor",
    ) -> None:
        """Initialize webhook notifier.

        Args:
            timeout: Request timeout in seconds
            max_retries: Attempts for 5xx responses and network errors
            retry_delay: Base delay for exponential backoff
            user_agent: User-Agent header sent with each request
        """
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.user_agent = user_agent

    async def post_webhook(self, url: str, payload: dict[str, Any]) -> int:
        """Send payload, retrying transient failures.

        Returns:
            HTTP status code of the accepted request

        Raises:
            DeliveryError: when the endpoint rejects the payload or all retries fail
        """
        last_error = ""

        for attempt in range(self.max_retries):
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(
                        url,
                        json=payload,
                        headers={"User-Agent": self.user_agent},
                    )
            except httpx.HTTPError as e:
                last_error = str(e) or e.__class__.__name__
            else:
                if response.status_code < 400:
                    logger.info("Webhook delivered to %s (HTTP %d)", url, response.status_code)
                    return response.status_code
                last_error = f"HTTP {response.status_code}"
                # Client errors will not succeed on retry
                if response.status_code < 500 and response.status_code != 429:
                    break

            if attempt < self.max_retries - 1:
                delay = self.retry_delay * (2 ** attempt)
                logger.warning("Webhook to %s failed (%s), retrying after %.1fs", url, last_error, delay)
                await asyncio.sleep(delay)

        raise DeliveryError("webhook", f"{url}: {last_error}")
