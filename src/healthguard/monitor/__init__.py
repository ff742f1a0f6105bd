"""Continuous monitoring loop and performance signals."""

from healthguard.monitor.loop import ContinuousMonitor
from healthguard.monitor.performance import PerformanceEvaluator

__all__ = ["ContinuousMonitor", "PerformanceEvaluator"]
