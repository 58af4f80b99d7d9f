"""Push alerts to operators via ntfy."""

import requests
import logging
from typing import Optional, List

from .models import SEVERITIES, Alert

logger = logging.getLogger(__name__)

SEVERITY_PRIORITY = {
    "low": "low",
    "medium": "default",
    "high": "high",
    "critical": "urgent",
}


def send_ntfy(
    title: str,
    message: str,
    base_url: str,
    topic: str,
    tags: Optional[List[str]] = None,
    priority: str = "default",
    headers: Optional[dict] = None,
) -> bool:
    """
    Send a notification via ntfy.

    Args:
        title: Notification title
        message: Notification message/body
        base_url: ntfy server base URL (e.g., "https://ntfy.sh")
        topic: ntfy topic name
        tags: Optional list of tags
        priority: Priority level (min, low, default, high, urgent)
        headers: Optional additional headers (e.g., for auth)

    Returns:
        True if successful, False otherwise
    """
    notify_url = f"{base_url.rstrip('/')}/{topic}"

    notify_headers = {"X-Title": title}
    if headers:
        notify_headers.update(headers)
    if priority:
        notify_headers["X-Priority"] = priority
    if tags:
        notify_headers["X-Tags"] = ",".join(tags)

    try:
        response = requests.post(
            notify_url, headers=notify_headers, data=message.encode("utf-8"), timeout=10
        )
        response.raise_for_status()
        logger.info(f"Sent notification: {title[:50]}...")
        return True
    except requests.exceptions.RequestException as e:
        logger.error(f"Failed to send notification: {e}")
        return False


class AlertNotifier:
    """Sends alerts at or above a minimum severity to one ntfy topic."""

    def __init__(self, topic: str, base_url: str = "https://ntfy.sh",
                 min_severity: str = "high", headers: Optional[dict] = None,
                 dry_run: bool = False):
        if min_severity not in SEVERITIES:
            raise ValueError(f"Invalid min_severity: {min_severity}")
        self.topic = topic
        self.base_url = base_url
        self.min_severity = min_severity
        self.headers = headers
        self.dry_run = dry_run

    @classmethod
    def from_config(cls, settings: Optional[dict], dry_run: bool = False) -> Optional["AlertNotifier"]:
        """None when no topic is configured."""
        settings = settings or {}
        topic = settings.get("topic")
        if not topic:
            logger.warning("No ntfy topic configured, alerts will not be pushed")
            return None
        return cls(
            topic=topic,
            base_url=settings.get("base_url", "https://ntfy.sh"),
            min_severity=settings.get("min_severity", "high"),
            headers=settings.get("headers"),
            dry_run=dry_run,
        )

    def __call__(self, alert: Alert) -> bool:
        if SEVERITIES.index(alert.severity) < SEVERITIES.index(self.min_severity):
            return False
        title = f"[{alert.severity.upper()}] {alert.title}"
        lines = [alert.description]
        if alert.geo_unit:
            lines.append(f"Parish: {alert.geo_unit}")
        if alert.recommendations:
            lines.append("Recommended: " + "; ".join(alert.recommendations))
        message = "\n\n".join(lines)
        if self.dry_run:
            logger.info(f"[DRY RUN] Would send: {title} ({alert.description[:60]}...)")
            return True
        return send_ntfy(
            title=title,
            message=message,
            base_url=self.base_url,
            topic=self.topic,
            tags=[alert.type],
            priority=SEVERITY_PRIORITY[alert.severity],
            headers=self.headers,
        )
