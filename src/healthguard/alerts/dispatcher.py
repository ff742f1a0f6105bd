"""Alert dispatcher: append to the alert log, then fan out to sinks."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Protocol

from healthguard.models import AlertEvent, AlertLevel

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    AlertLevel.INFO: logging.INFO,
    AlertLevel.WARNING: logging.WARNING,
    AlertLevel.CRITICAL: logging.CRITICAL,
}


class AlertSink(Protocol):
    """Anything that can deliver an AlertEvent. Returns False if not delivered."""

    name: str

    def send(self, event: AlertEvent) -> bool: ...


class AlertDispatcher:
    """
    Builds AlertEvents, appends each one to the alert log (one JSON object
    per line), then sends it to every sink. The log write happens first so
    an alert is recorded even when every sink is down; sink failures are
    logged and never raised to the caller.
    """

    def __init__(
        self,
        log_path: str | Path | None = None,
        sinks: list[AlertSink] | None = None,
        system: str = "saas-platform",
    ) -> None:
        self.log_path = Path(log_path) if log_path else None
        self.sinks = list(sinks or [])
        self.system = system
        self._write_lock = threading.Lock()

    def dispatch(
        self,
        level: AlertLevel | str,
        message: str,
        context: dict[str, Any] | None = None,
    ) -> AlertEvent:
        event = AlertEvent(
            level=AlertLevel(level),
            message=message,
            context=context or {},
            system=self.system,
        )
        logger.log(_LOG_LEVELS[event.level], "ALERT [%s] %s", event.level.value.upper(), message)
        self._append(event)
        for sink in self.sinks:
            try:
                sink.send(event)
            except Exception as e:  # noqa: BLE001
                logger.warning(
                    "Alert sink %s failed: %s",
                    getattr(sink, "name", type(sink).__name__),
                    e,
                    exc_info=True,
                )
        return event

    def info(self, message: str, **context: Any) -> AlertEvent:
        return self.dispatch(AlertLevel.INFO, message, context)

    def warning(self, message: str, **context: Any) -> AlertEvent:
        return self.dispatch(AlertLevel.WARNING, message, context)

    def critical(self, message: str, **context: Any) -> AlertEvent:
        return self.dispatch(AlertLevel.CRITICAL, message, context)

    def recent(self, limit: int = 50) -> list[AlertEvent]:
        """Newest-last list of up to limit alerts from the log."""
        if self.log_path is None or not self.log_path.is_file():
            return []
        events: list[AlertEvent] = []
        with open(self.log_path, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    events.append(AlertEvent.model_validate_json(line))
                except ValueError:
                    logger.debug("Skipping unreadable alert log line")
        return events[-limit:] if limit > 0 else events

    def _append(self, event: AlertEvent) -> None:
        if self.log_path is None:
            return
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            line = json.dumps(event.model_dump(mode="json"), ensure_ascii=False)
            with self._write_lock, open(self.log_path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as e:
            logger.error("Failed to append alert to %s: %s", self.log_path, e, exc_info=True)
