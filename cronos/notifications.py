"""
Run-completion notifications.

The engine reports each finished run to a notifier. Delivering it to the
desktop is outside the engine; the notifiers here log it or POST it to a
webhook.
"""

import logging
from dataclasses import dataclass, asdict
from typing import Optional, Protocol

import requests

logger = logging.getLogger(__name__)

PREVIEW_LINES = 3
PREVIEW_MAX_LENGTH = 100


def output_preview(
    output: Optional[str],
    max_lines: int = PREVIEW_LINES,
    max_length: int = PREVIEW_MAX_LENGTH,
) -> str:
    """
    Last few lines of output, trimmed and bounded in length.

    Longer previews keep their tail (the most recent output) behind a
    leading ellipsis.
    """
    if not output:
        return ""
    lines = output.strip().splitlines()
    preview = "\n".join(lines[-max_lines:])
    if len(preview) <= max_length:
        return preview
    return "…" + preview[-(max_length - 1):]


@dataclass(frozen=True)
class Notification:
    job_id: str
    job_name: str
    success: bool
    output_preview: str

    @property
    def title(self) -> str:
        return "Job Succeeded" if self.success else "Job Failed"

    @property
    def body(self) -> str:
        if not self.success:
            headline = f"Job '{self.job_name}' failed"
        elif self.output_preview:
            headline = f"Job '{self.job_name}'"
        else:
            headline = f"Job '{self.job_name}' completed successfully"
        if self.output_preview:
            return f"{headline}\n{self.output_preview}"
        return headline


class Notifier(Protocol):
    def notify(self, notification: Notification) -> None:
        ...


class LoggingNotifier:
    """Writes notifications to the log."""

    def notify(self, notification: Notification):
        level = logging.INFO if notification.success else logging.WARNING
        logger.log(level, f"{notification.title}: {notification.body}")


class WebhookNotifier:
    """POSTs notifications as JSON to a URL. Delivery failures are only logged."""

    def __init__(self, url: str, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def notify(self, notification: Notification):
        payload = asdict(notification)
        payload['title'] = notification.title
        payload['body'] = notification.body
        try:
            response = self.session.post(self.url, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.warning(f"Failed to deliver notification for '{notification.job_name}': {e}")
