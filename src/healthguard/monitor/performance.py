"""Secondary performance signals: resource saturation and response-time regression."""

import statistics

from healthguard.health.aggregator import HealthThresholds
from healthguard.models import HealthStatus

MIN_BASELINE_SAMPLES = 3


class PerformanceEvaluator:
    """
    Flags a status whose resources are saturated, or whose p95 latency has
    regressed to more than regression_factor times the median p95 of recent
    history. Needs MIN_BASELINE_SAMPLES earlier samples before judging
    regression.
    """

    def __init__(self, thresholds: HealthThresholds | None = None, regression_factor: float = 2.0) -> None:
        self.thresholds = thresholds or HealthThresholds()
        self.regression_factor = regression_factor

    def evaluate(self, status: HealthStatus, history: list[HealthStatus]) -> list[str]:
        violations = []
        resources = status.resources
        if resources is not None:
            if resources.cpu_percent is not None and resources.cpu_percent > self.thresholds.cpu_percent:
                violations.append(f"CPU saturated at {resources.cpu_percent:.1f}%")
            if resources.memory_percent is not None and resources.memory_percent > self.thresholds.memory_percent:
                violations.append(f"Memory saturated at {resources.memory_percent:.1f}%")
        if status.p95_latency_ms is not None:
            baseline = [s.p95_latency_ms for s in history if s.p95_latency_ms is not None]
            if len(baseline) >= MIN_BASELINE_SAMPLES:
                median = statistics.median(baseline)
                if median > 0 and status.p95_latency_ms > median * self.regression_factor:
                    violations.append(
                        f"Response time regression: p95 {status.p95_latency_ms:.0f}ms vs baseline {median:.0f}ms"
                    )
        return violations
