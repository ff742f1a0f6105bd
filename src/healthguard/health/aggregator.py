"""Aggregates per-service probes and resource usage into one HealthStatus."""

from __future__ import annotations

import logging
import math
import os
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from pydantic import BaseModel

from healthguard.health.probe import HealthProbe
from healthguard.health.resources import ResourceSampler
from healthguard.models import (
    HealthStatus,
    OverallHealth,
    ResourceUsage,
    ServiceHealth,
    ServiceSpec,
)

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_SIZE = 20


class HealthThresholds(BaseModel):
    """Limits beyond which a reachable system is Degraded."""

    cpu_percent: float = 80.0
    memory_percent: float = 90.0
    disk_percent: float = 90.0
    max_p95_latency_ms: float = 1000.0
    max_error_rate: float = 0.25


def p95(values: list[float]) -> float | None:
    """Nearest-rank 95th percentile."""
    if not values:
        return None
    ordered = sorted(values)
    return ordered[max(0, math.ceil(0.95 * len(ordered)) - 1)]


def evaluate_health(
    services: list[ServiceSpec],
    results: dict[str, ServiceHealth],
    resources: ResourceUsage | None,
    thresholds: HealthThresholds,
) -> HealthStatus:
    """Pure verdict: Unhealthy if a required service is down, Degraded on any threshold breach."""
    violations: list[str] = []
    unhealthy = False
    for spec in services:
        health = results.get(spec.name)
        if health is None or health.reachable:
            continue
        error = health.last_error or "unreachable"
        if spec.required:
            unhealthy = True
            violations.append(f"{spec.name} unreachable: {error}")
        else:
            violations.append(f"Optional service {spec.name} unreachable: {error}")

    latencies = [h.latency_ms for h in results.values() if h.reachable and h.latency_ms is not None]
    p95_latency = p95(latencies)
    # Final per-service outcomes; retries the probe recovered from are not errors
    failed = sum(1 for h in results.values() if not h.reachable)
    error_rate = failed / len(results) if results else 0.0

    if resources is not None:
        if resources.cpu_percent is not None and resources.cpu_percent > thresholds.cpu_percent:
            hot = [n for n, c in resources.containers.items() if c.cpu_percent > thresholds.cpu_percent]
            violations.append(
                f"High CPU usage: {resources.cpu_percent:.1f}% > {thresholds.cpu_percent:.0f}%"
                + (f" ({', '.join(hot)})" if hot else "")
            )
        if resources.memory_percent is not None and resources.memory_percent > thresholds.memory_percent:
            hot = [n for n, c in resources.containers.items() if c.memory_percent > thresholds.memory_percent]
            violations.append(
                f"High memory usage: {resources.memory_percent:.1f}% > {thresholds.memory_percent:.0f}%"
                + (f" ({', '.join(hot)})" if hot else "")
            )
        if resources.disk_percent is not None and resources.disk_percent > thresholds.disk_percent:
            violations.append(
                f"Low disk space: {resources.disk_percent:.1f}% used > {thresholds.disk_percent:.0f}%"
            )
    if p95_latency is not None and p95_latency > thresholds.max_p95_latency_ms:
        violations.append(
            f"p95 latency {p95_latency:.0f}ms > {thresholds.max_p95_latency_ms:.0f}ms"
        )
    if error_rate > thresholds.max_error_rate:
        violations.append(f"Error rate {error_rate:.2f} > {thresholds.max_error_rate:.2f}")

    if unhealthy:
        overall = OverallHealth.UNHEALTHY
    elif violations:
        overall = OverallHealth.DEGRADED
    else:
        overall = OverallHealth.HEALTHY
    return HealthStatus(
        overall=overall,
        per_service=results,
        violations=violations,
        resources=resources,
        p95_latency_ms=p95_latency,
        error_rate=round(error_rate, 4),
    )


class HealthAggregator:
    """
    Probes every configured service and produces the system-wide HealthStatus.

    Probes run concurrently, one worker per service; results are keyed by
    service name in configured order (storage service first). The latest
    snapshot and a bounded history ring are kept for other components; the
    latest snapshot is also written to status_path when set.
    """

    def __init__(
        self,
        services: list[ServiceSpec],
        probe: HealthProbe | None = None,
        sampler: ResourceSampler | None = None,
        thresholds: HealthThresholds | None = None,
        history_size: int = DEFAULT_HISTORY_SIZE,
        status_path: str | Path | None = None,
    ) -> None:
        self.services = list(services)
        self.probe = probe or HealthProbe()
        self.sampler = sampler
        self.thresholds = thresholds or HealthThresholds()
        self.status_path = Path(status_path) if status_path else None
        self._history: deque[HealthStatus] = deque(maxlen=max(1, history_size))
        self._latest: HealthStatus | None = None
        self._lock = threading.Lock()

    @property
    def latest(self) -> HealthStatus | None:
        return self._latest

    @property
    def history(self) -> list[HealthStatus]:
        with self._lock:
            return list(self._history)

    def check(self) -> HealthStatus:
        """Run one probe cycle. Read-only towards the services."""
        results = self._probe_all()
        resources = self._sample()
        status = evaluate_health(self.services, results, resources, self.thresholds)
        logger.info(
            "Health check: %s",
            status.overall.value,
            extra={"violations": status.violations, "p95_latency_ms": status.p95_latency_ms},
        )
        with self._lock:
            self._history.append(status)
            self._latest = status
        self._persist(status)
        return status

    def publish(self, status: HealthStatus) -> None:
        """Replace the latest snapshot (e.g. stamped with the monitor's failure count)."""
        with self._lock:
            if self._history and self._history[-1].timestamp == status.timestamp:
                self._history[-1] = status
            self._latest = status
        self._persist(status)

    def _probe_all(self) -> dict[str, ServiceHealth]:
        if not self.services:
            return {}
        with ThreadPoolExecutor(max_workers=len(self.services), thread_name_prefix="probe") as pool:
            futures = {spec.name: pool.submit(self.probe.check, spec) for spec in self.services}
            results: dict[str, ServiceHealth] = {}
            for spec in self.services:
                try:
                    results[spec.name] = futures[spec.name].result()
                except Exception as e:  # noqa: BLE001
                    logger.warning("Probe for %s raised: %s", spec.name, e, exc_info=True)
                    results[spec.name] = ServiceHealth(
                        name=spec.name, reachable=False, last_error=str(e), attempts=1
                    )
        return results

    def _sample(self) -> ResourceUsage | None:
        if self.sampler is None:
            return None
        try:
            return self.sampler.sample()
        except Exception as e:  # noqa: BLE001
            logger.debug("Resource sampling failed: %s", e)
            return None

    def _persist(self, status: HealthStatus) -> None:
        if self.status_path is None:
            return
        try:
            self.status_path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.status_path.with_suffix(self.status_path.suffix + ".tmp")
            tmp.write_text(status.model_dump_json(indent=2), encoding="utf-8")
            os.replace(tmp, self.status_path)
        except OSError as e:
            logger.warning("Failed to write health status %s: %s", self.status_path, e)
