"""Tiered rollback state machine: incident, level selection, remediation, verification, escalation."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path

from healthguard.alerts.dispatcher import AlertDispatcher
from healthguard.controller.base import ServiceController
from healthguard.errors import ConcurrencyConflict, ExhaustedEscalation
from healthguard.incidents.reporter import IncidentReporter
from healthguard.locking import LeaseLock
from healthguard.models import (
    AUTO_LEVEL,
    RollbackAttempt,
    RollbackLevel,
    RollbackOutcome,
    RollbackTrigger,
    levels_from,
    parse_level,
)
from healthguard.rollback.remediation import LevelHandler

logger = logging.getLogger(__name__)


def _level_name(level: RollbackLevel | str) -> str:
    return level.value if isinstance(level, RollbackLevel) else str(level)


class RollbackOrchestrator:
    """
    Runs one rollback attempt at a time, system-wide.

    execute() takes the rollback lease without waiting (a held lease raises
    ConcurrencyConflict before anything else happens), captures an incident
    before any destructive step, then walks the handlers from the start
    level upwards. A level that raises, or whose verification is not
    Healthy, escalates to the next one. When the last level fails the
    attempt is exhausted and a Critical alert goes out; nothing is retried.
    """

    def __init__(
        self,
        controller: ServiceController,
        aggregator,
        handlers: list[LevelHandler],
        reporter: IncidentReporter | None = None,
        alerts: AlertDispatcher | None = None,
        lock: LeaseLock | None = None,
        history_path: str | Path | None = None,
    ) -> None:
        self.controller = controller
        self.aggregator = aggregator
        self.handlers = {h.level: h for h in handlers}
        self.reporter = reporter
        self.alerts = alerts or AlertDispatcher()
        self.lock = lock or LeaseLock(Path("logs") / "rollback.lock", ttl_seconds=7200)
        self.history_path = Path(history_path) if history_path else None
        self._history_lock = threading.Lock()

    @property
    def in_progress(self) -> bool:
        return self.lock.held or self.lock.holder() is not None

    def detect_level(self) -> RollbackLevel:
        """Pick the least destructive level likely to help, from what is running."""
        try:
            if not self.controller.config_valid():
                return RollbackLevel.CONFIG
            if not self.controller.services():
                return RollbackLevel.FULL_SYSTEM
            if self.controller.running_services():
                return RollbackLevel.IMAGES
            return RollbackLevel.CODE
        except Exception as e:  # noqa: BLE001
            logger.warning("Could not determine rollback level, using full: %s", e)
            return RollbackLevel.FULL_SYSTEM

    def execute(
        self,
        trigger: RollbackTrigger | str,
        requested_level: RollbackLevel | str = AUTO_LEVEL,
        target_revision: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> RollbackAttempt:
        trigger = RollbackTrigger(trigger)
        requested = parse_level(requested_level)
        if not self.lock.acquire():
            holder = self.lock.holder() or {}
            raise ConcurrencyConflict(
                f"Rollback already in progress (held by {holder.get('owner', 'unknown')})",
                holder=holder,
            )
        attempt = RollbackAttempt(trigger=trigger, requested_level=requested, target_revision=target_revision)
        try:
            logger.info(
                "Rollback %s started",
                attempt.id,
                extra={"trigger": trigger.value, "requested_level": _level_name(requested)},
            )
            attempt.incident_id = self._capture_incident(attempt)
            attempt.start_level = self.detect_level() if requested == AUTO_LEVEL else requested
            self._escalate(attempt, cancel_event)
        except BaseException:
            if not attempt.terminal:
                attempt.note("aborted by unexpected error")
                attempt.finish(RollbackOutcome.FAILURE)
            raise
        finally:
            self._record(attempt)
            self.lock.release()
        return attempt

    def _capture_incident(self, attempt: RollbackAttempt) -> str | None:
        if self.reporter is None:
            return None
        try:
            incident = self.reporter.capture(
                f"rollback-{attempt.trigger.value}",
                context={"attempt_id": attempt.id, "requested_level": _level_name(attempt.requested_level)},
            )
            return incident.id
        except Exception as e:  # noqa: BLE001
            logger.error("Incident capture failed for %s: %s", attempt.id, e, exc_info=True)
            return None

    def _escalate(self, attempt: RollbackAttempt, cancel_event: threading.Event | None) -> None:
        levels = levels_from(attempt.start_level)
        for i, level in enumerate(levels):
            if cancel_event is not None and cancel_event.is_set():
                logger.warning("Rollback %s cancelled before %s", attempt.id, level.value)
                attempt.finish(RollbackOutcome.FAILURE, cancelled=True)
                return
            attempt.record_level(level)
            if self._run_level(attempt, level, cancel_event):
                attempt.finish(RollbackOutcome.SUCCESS)
                logger.info("Rollback %s succeeded at %s", attempt.id, level.value)
                self.alerts.info(
                    f"Rollback succeeded at {level.value} level",
                    attempt_id=attempt.id,
                    incident_id=attempt.incident_id,
                    executed_levels=[lv.value for lv in attempt.executed_levels],
                )
                return
            if i + 1 < len(levels):
                self.alerts.warning(
                    f"Rollback level {level.value} failed, escalating to {levels[i + 1].value}",
                    attempt_id=attempt.id,
                    incident_id=attempt.incident_id,
                )
                self.lock.refresh()

        attempt.finish(RollbackOutcome.FAILURE, exhausted=True)
        logger.critical("Rollback %s exhausted all levels", attempt.id)
        self.alerts.critical(
            "All rollback levels failed - manual intervention required",
            attempt_id=attempt.id,
            incident_id=attempt.incident_id,
            executed_levels=[lv.value for lv in attempt.executed_levels],
        )

    def _run_level(
        self,
        attempt: RollbackAttempt,
        level: RollbackLevel,
        cancel_event: threading.Event | None,
    ) -> bool:
        handler = self.handlers.get(level)
        if handler is None:
            attempt.note(f"{level.value}: no handler configured")
            logger.warning("No handler for rollback level %s", level.value)
            return False
        logger.info("Executing %s rollback", level.value, extra={"attempt_id": attempt.id})
        try:
            handler.remediate(attempt, cancel_event)
        except Exception as e:  # noqa: BLE001
            attempt.note(f"{level.value}: remediation failed: {e}")
            logger.warning("%s rollback failed: %s", level.value, e, exc_info=True)
            return False

        status = self.aggregator.check()
        if status.is_healthy:
            try:
                handler.on_verified(attempt)
            except Exception as e:  # noqa: BLE001
                logger.warning("Post-verification step for %s failed: %s", level.value, e, exc_info=True)
            return True

        attempt.note(f"{level.value}: verification {status.overall.value}")
        logger.warning(
            "%s rollback did not restore health",
            level.value,
            extra={"overall": status.overall.value, "violations": status.violations},
        )
        try:
            handler.on_verification_failed(attempt)
        except Exception as e:  # noqa: BLE001
            logger.warning("Cleanup after failed %s rollback failed: %s", level.value, e, exc_info=True)
        return False

    def _record(self, attempt: RollbackAttempt) -> None:
        logger.info(
            "Rollback %s finished: %s",
            attempt.id,
            attempt.outcome.value if attempt.outcome else "unknown",
            extra={
                "executed_levels": [lv.value for lv in attempt.executed_levels],
                "exhausted": attempt.exhausted,
                "cancelled": attempt.cancelled,
            },
        )
        if self.history_path is None:
            return
        try:
            self.history_path.parent.mkdir(parents=True, exist_ok=True)
            with self._history_lock, open(self.history_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(attempt.model_dump(mode="json")) + "\n")
        except OSError as e:
            logger.error("Failed to append rollback history: %s", e, exc_info=True)

    def history(self, limit: int = 50) -> list[RollbackAttempt]:
        """Recorded attempts, oldest first."""
        if self.history_path is None or not self.history_path.is_file():
            return []
        attempts = []
        with open(self.history_path, encoding="utf-8") as f:
            for line in f:
                if not line.strip():
                    continue
                try:
                    attempts.append(RollbackAttempt.model_validate_json(line))
                except ValueError:
                    logger.debug("Skipping unreadable rollback history line")
        return attempts[-limit:] if limit > 0 else attempts


def require_success(attempt: RollbackAttempt) -> RollbackAttempt:
    """Raise ExhaustedEscalation if the attempt ran out of levels."""
    if attempt.exhausted:
        raise ExhaustedEscalation(
            f"Rollback {attempt.id} failed at every level; manual intervention required",
            attempt_id=attempt.id,
            incident_id=attempt.incident_id,
        )
    return attempt
