"""Exception hierarchy for the monitoring pipeline."""

from typing import Optional


class MonitorError(Exception):
    """Base exception for site monitor"""

    pass


class FetchError(MonitorError):
    """Target site could not be fetched"""

    def __init__(self, url: str, detail: str, status_code: Optional[int] = None):
        self.url = url
        self.detail = detail
        self.status_code = status_code
        msg = f"Failed to fetch {url}: {detail}"
        if status_code:
            msg += f" (HTTP {status_code})"
        super().__init__(msg)


class OracleError(MonitorError):
    """Scoring oracle unavailable or returned an unusable answer"""

    pass


class PersistenceError(MonitorError):
    """Persistent store unavailable"""

    pass


class ConfigurationError(MonitorError):
    """Malformed user settings or application config"""

    pass


class DeliveryError(MonitorError):
    """Notification could not be delivered"""

    def __init__(self, channel: str, detail: str):
        self.channel = channel
        self.detail = detail
        super().__init__(f"{channel} delivery failed: {detail}")


class CheckInProgressError(MonitorError):
    """A check for the website is already running"""

    def __init__(self, website_id: str):
        self.website_id = website_id
        super().__init__(f"Check already running for website: {website_id}")
