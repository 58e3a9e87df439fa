"""Email notification adapter using the Resend HTTP API."""

import asyncio
import logging

import httpx

from site_monitor.core import DeliveryError, EmailTransport

logger = logging.getLogger(__name__)


class ResendEmailNotifier(EmailTransport):
    """Send transactional email via Resend (no SMTP)."""

    def __init__(
        self,
        api_key: str,
        from_email: str,
        api_url: str = "https://api.resend.com/emails",
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_delay: float = 2.0,
    ) -> None:
        self.api_key = api_key
        self.from_email = from_email
        self.api_url = api_url
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay

    async def send_email(self, address: str, subject: str, html: str) -> None:
        """Send one email, retrying rate limits and server errors."""
        if not self.api_key:
            raise DeliveryError("email", "RESEND_API_KEY is missing")

        address = (address or "").strip()
        if not address:
            raise DeliveryError("email", "recipient address is empty")

        payload = {
            "from": self.from_email,
            "to": [address],
            "subject": subject,
            "html": html,
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

        last_error = ""
        for attempt in range(self.max_retries):
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.api_url, json=payload, headers=headers)
            except httpx.HTTPError as e:
                last_error = f"Resend request failed: {e}"
            else:
                if 200 <= response.status_code < 300:
                    logger.info("Email sent to %s", address)
                    return
                last_error = f"Resend API error {response.status_code}: {response.text[:300]}"
                if response.status_code < 500 and response.status_code != 429:
                    break

            if attempt < self.max_retries - 1:
                delay = self.retry_delay * (2 ** attempt)
                logger.warning("%s, retrying after %.1fs", last_error, delay)
                await asyncio.sleep(delay)

        raise DeliveryError("email", last_error)
