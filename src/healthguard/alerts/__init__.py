"""Alert dispatch: durable JSONL alert log plus webhook and Slack sinks."""

from healthguard.alerts.dispatcher import AlertDispatcher, AlertSink
from healthguard.alerts.slack import SlackSink
from healthguard.alerts.webhook import WebhookSink

__all__ = ["AlertDispatcher", "AlertSink", "SlackSink", "WebhookSink"]
