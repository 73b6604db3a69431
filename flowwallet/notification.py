"""Delivery of job status notifications."""

import logging
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Optional

log = logging.getLogger(__name__)


@dataclass
class NotificationConfig:
    """Where job status notifications go; no URL means none are sent."""

    job_status_webhook_url: Optional[str] = None
    job_status_webhook_timeout: float = 0.0

    def should_send_job_status(self) -> bool:
        return self.job_status_webhook_url is not None

    def send_job_status(self, content: str) -> None:
        """Send the content through every configured channel."""
        self.send_job_status_webhook(content)

    def send_job_status_webhook(self, content: str) -> None:
        """POST the content as JSON to the webhook; raise RuntimeError on failure."""
        if self.job_status_webhook_url is None:
            return

        try:
            request = urllib.request.Request(
                self.job_status_webhook_url,
                data=content.encode("utf-8"),
                method="POST",
                headers={"Content-Type": "application/json"},
            )
        except ValueError as err:
            raise RuntimeError(f"error while creating webhook request: {err}") from err

        timeout = self.job_status_webhook_timeout or None
        try:
            with urllib.request.urlopen(request, timeout=timeout) as response:
                status = response.status
        except urllib.error.HTTPError as err:
            status = err.code
        except (OSError, ValueError) as err:
            raise RuntimeError(f"error while sending webhook request: {err}") from err

        if status != 200:
            raise RuntimeError(
                f"webhook endpoint responded with an unexpected status code: {status}"
            )
        log.debug("Job status webhook delivered")