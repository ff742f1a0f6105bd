"""Continuous health monitor: the control loop that decides when to roll back."""

from __future__ import annotations

import logging
import threading

from healthguard.alerts.dispatcher import AlertDispatcher
from healthguard.errors import ConcurrencyConflict, ExhaustedEscalation
from healthguard.models import AUTO_LEVEL, HealthStatus, OverallHealth, RollbackTrigger
from healthguard.monitor.performance import PerformanceEvaluator
from healthguard.rollback.orchestrator import require_success

logger = logging.getLogger(__name__)


class ContinuousMonitor:
    """
    Polls the aggregator every check_interval seconds.

    Consecutive non-healthy ticks are counted; reaching failure_threshold
    invokes an automatic rollback and resets the counter whatever the
    outcome. An exhausted rollback switches auto-rollback off for the rest
    of the process lifetime. Performance violations keep their own counter.
    """

    def __init__(
        self,
        aggregator,
        orchestrator,
        alerts: AlertDispatcher | None = None,
        failure_threshold: int = 3,
        check_interval: float = 30.0,
        rollback_enabled: bool = True,
        performance: PerformanceEvaluator | None = None,
    ) -> None:
        self.aggregator = aggregator
        self.orchestrator = orchestrator
        self.alerts = alerts or AlertDispatcher()
        self.failure_threshold = max(1, failure_threshold)
        self.check_interval = check_interval
        self.rollback_enabled = rollback_enabled
        self.performance = performance
        self.consecutive_failures = 0
        self.performance_failures = 0
        self.ticks = 0
        self.last_status: HealthStatus | None = None

    def tick(self, cancel_event: threading.Event | None = None) -> HealthStatus:
        """One poll cycle."""
        self.ticks += 1
        status = self.aggregator.check()
        rolled_back = False

        if status.is_healthy:
            if self.consecutive_failures > 0:
                self.alerts.info("System recovered", previous_failures=self.consecutive_failures)
            self.consecutive_failures = 0
            reached = 0
        else:
            self.consecutive_failures += 1
            reached = self.consecutive_failures
            message = "System unhealthy" if status.overall == OverallHealth.UNHEALTHY else "System degraded"
            self.alerts.warning(
                message,
                consecutive_failures=reached,
                threshold=self.failure_threshold,
                violations=status.violations,
            )
            if reached >= self.failure_threshold:
                rolled_back = self._rollback(RollbackTrigger.HEALTH_FAILURE, status, cancel_event)
                self.consecutive_failures = 0

        if self.performance is not None:
            rolled_back = self._check_performance(status, rolled_back, cancel_event) or rolled_back

        status = status.model_copy(update={"consecutive_failures": reached})
        self.aggregator.publish(status)
        self.last_status = status
        return status

    def _check_performance(
        self,
        status: HealthStatus,
        rolled_back: bool,
        cancel_event: threading.Event | None,
    ) -> bool:
        if rolled_back:
            self.performance_failures = 0
            return False
        history = [s for s in self.aggregator.history if s.timestamp != status.timestamp]
        violations = self.performance.evaluate(status, history)
        if not violations:
            self.performance_failures = 0
            return False
        self.performance_failures += 1
        logger.warning("Performance issues detected", extra={"violations": violations})
        self.alerts.warning(
            "Performance degradation detected",
            consecutive_failures=self.performance_failures,
            violations=violations,
        )
        if self.performance_failures < self.failure_threshold:
            return False
        self.performance_failures = 0
        return self._rollback(RollbackTrigger.PERFORMANCE_REGRESSION, status, cancel_event)

    def _rollback(
        self,
        trigger: RollbackTrigger,
        status: HealthStatus,
        cancel_event: threading.Event | None,
    ) -> bool:
        """Invoke the orchestrator if allowed. Returns True if a rollback ran."""
        if not self.rollback_enabled:
            self.alerts.critical(
                f"System {status.overall.value} - rollback disabled",
                trigger=trigger.value,
                violations=status.violations,
            )
            return False
        logger.error("Failure threshold reached, triggering automatic rollback", extra={"trigger": trigger.value})
        try:
            attempt = self.orchestrator.execute(trigger, AUTO_LEVEL, cancel_event=cancel_event)
        except ConcurrencyConflict as e:
            logger.warning("Automatic rollback skipped: %s", e)
            return False
        except Exception as e:  # noqa: BLE001
            logger.error("Automatic rollback raised: %s", e, exc_info=True)
            return True
        if attempt.succeeded:
            self.alerts.info(
                "System recovered after automatic rollback",
                attempt_id=attempt.id,
                level=attempt.executed_levels[-1].value,
                incident_id=attempt.incident_id,
            )
            return True
        try:
            require_success(attempt)
        except ExhaustedEscalation as e:
            self.rollback_enabled = False
            logger.critical(
                "%s; auto-rollback disabled",
                e,
                extra={"attempt_id": e.attempt_id, "incident_id": e.incident_id},
            )
            return True
        logger.warning("Automatic rollback %s did not complete", attempt.id, extra={"cancelled": attempt.cancelled})
        return True

    def run(self, stop_event: threading.Event) -> None:
        """Tick until stop_event is set. Errors inside a tick never end the loop."""
        logger.info(
            "Health monitor started",
            extra={"check_interval": self.check_interval, "failure_threshold": self.failure_threshold},
        )
        self.alerts.info(
            "Health monitor started",
            check_interval=self.check_interval,
            failure_threshold=self.failure_threshold,
            rollback_enabled=self.rollback_enabled,
        )
        while not stop_event.is_set():
            try:
                self.tick(cancel_event=stop_event)
            except Exception as e:  # noqa: BLE001
                logger.error("Monitor tick failed: %s", e, exc_info=True)
            stop_event.wait(self.check_interval)
        logger.info("Health monitor stopped", extra={"ticks": self.ticks})
        self.alerts.info("Health monitor stopped", ticks=self.ticks)
