# -*- coding: utf-8 -*-
"""
HTTP utilities: chat webhook notifications.
Delivery is best-effort: failures are logged and never raised.
"""

import json
import logging
import urllib.error
import urllib.request

logger = logging.getLogger(__name__)

URLOpener = urllib.request.build_opener()
URLOpener.addheaders = [
    ("User-Agent", "taskmail-notifier/1.0"),
]


def post_json(url, payload, timeout=10):
    """
    POST a JSON document.

    Args:
        url: Target URL
        payload: JSON-serializable object
        timeout: Connection timeout in seconds

    Returns:
        HTTP status code

    Raises:
        urllib.error.URLError: On network errors and HTTP error statuses
    """
    request = urllib.request.Request(
        url,
        data=json.dumps(payload).encode("utf-8"),
        headers={"Content-Type": "application/json; charset=UTF-8"},
        method="POST",
    )
    with URLOpener.open(request, timeout=timeout) as response:
        return response.status


def notify(message, webhook_url, timeout=10):
    """
    Send a status line to the chat webhook.

    Args:
        message: Human-readable text
        webhook_url: Webhook endpoint; None disables notifications
        timeout: Connection timeout in seconds

    Returns:
        True when the webhook accepted the message
    """
    if not webhook_url:
        logger.warning("Notification skipped, no webhook URL configured: %s", message)
        return False

    try:
        post_json(webhook_url, {"text": message}, timeout=timeout)
    except urllib.error.HTTPError as e:
        logger.error("Notification failed: HTTP %s %s", e.code, e.reason)
        return False
    except (urllib.error.URLError, OSError, ValueError) as e:
        logger.error("Notification failed: %s", getattr(e, "reason", e))
        return False

    return True


class Notifier:
    """Binds webhook settings from config so callers only pass the message."""

    def __init__(self, config):
        self.webhook_url = config.notify_webhook_url
        self.prefix = config.notify_prefix
        self.timeout = config.notify_timeout

    def __call__(self, message):
        text = f"{self.prefix} {message}" if self.prefix else message
        return notify(text, self.webhook_url, timeout=self.timeout)
