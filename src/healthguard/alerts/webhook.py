"""Generic webhook alert sink."""

import logging

import httpx

from healthguard.models import AlertEvent

logger = logging.getLogger(__name__)


def build_payload(event: AlertEvent) -> dict:
    """JSON body posted to the webhook."""
    return {
        "timestamp": event.timestamp.isoformat(),
        "level": event.level.value,
        "message": event.message,
        "details": event.context,
        "system": event.system,
    }


class WebhookSink:
    """POSTs each alert as JSON to ALERT_WEBHOOK; a no-op when the URL is unset."""

    name = "webhook"

    def __init__(self, url: str = "", timeout_seconds: float = 10.0, headers: dict | None = None) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.headers = headers or {}

    def send(self, event: AlertEvent) -> bool:
        if not self.url:
            return False
        try:
            r = httpx.post(
                self.url,
                json=build_payload(event),
                headers={"Content-Type": "application/json", **self.headers},
                timeout=self.timeout_seconds,
            )
            r.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Webhook alert failed: %s", e, extra={"alert_level": event.level.value})
            return False
        return True
