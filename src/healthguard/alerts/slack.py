"""Slack alert sink using slack_sdk WebClient and Block Kit."""

import logging

from healthguard.models import AlertEvent, AlertLevel

logger = logging.getLogger(__name__)

_LEVEL_EMOJI = {
    AlertLevel.INFO: ":information_source:",
    AlertLevel.WARNING: ":warning:",
    AlertLevel.CRITICAL: ":rotating_light:",
}


def _build_alert_text(event: AlertEvent) -> str:
    """Plain-text fallback for notifications and accessibility."""
    lines = [
        f"{_LEVEL_EMOJI[event.level]} *{event.level.value.upper()}* [{event.system}] {event.message}",
    ]
    for key, value in event.context.items():
        lines.append(f"  • {key}: {value}")
    return "\n".join(lines)


def _build_alert_blocks(event: AlertEvent) -> list[dict]:
    """Block Kit layout for one alert."""
    blocks: list[dict] = [
        {
            "type": "header",
            "text": {
                "type": "plain_text",
                "text": f"{event.level.value.upper()}: {event.system}",
                "emoji": True,
            },
        },
        {"type": "section", "text": {"type": "mrkdwn", "text": f"{_LEVEL_EMOJI[event.level]} {event.message}"}},
        {
            "type": "section",
            "fields": [
                {"type": "mrkdwn", "text": f"*Level:*\n{event.level.value}"},
                {"type": "mrkdwn", "text": f"*Time:*\n{event.timestamp.isoformat(timespec='seconds')}"},
            ],
        },
    ]
    if event.context:
        details = "\n".join(f"• *{k}:* {v}" for k, v in event.context.items())
        blocks.append({"type": "section", "text": {"type": "mrkdwn", "text": f"*Details:*\n{details}"}})
    return blocks


class SlackSink:
    """Posts alerts at or above min_level to a Slack channel; skipped when token/channel are missing."""

    name = "slack"

    def __init__(
        self,
        bot_token: str = "",
        channel_id: str = "",
        min_level: AlertLevel = AlertLevel.WARNING,
    ) -> None:
        self.bot_token = bot_token
        self.channel_id = channel_id
        self.min_level = min_level

    def _wanted(self, level: AlertLevel) -> bool:
        order = list(AlertLevel)
        return order.index(level) >= order.index(self.min_level)

    def send(self, event: AlertEvent) -> bool:
        if not self.bot_token or not self.channel_id:
            logger.debug("Slack alert skipped: no token or channel")
            return False
        if not self._wanted(event.level):
            return False
        try:
            from slack_sdk import WebClient

            client = WebClient(token=self.bot_token)
            client.chat_postMessage(
                channel=self.channel_id,
                text=_build_alert_text(event),
                blocks=_build_alert_blocks(event),
            )
            logger.info("Slack alert published", extra={"alert_level": event.level.value})
            return True
        except Exception as e:
            logger.warning("Slack publish failed: %s", e, exc_info=True)
            return False
