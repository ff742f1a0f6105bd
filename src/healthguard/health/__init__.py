"""
Health checking.

HealthProbe checks one service endpoint; HealthAggregator probes the whole
service set and produces one HealthStatus (healthy / degraded / unhealthy).
"""

from healthguard.health.aggregator import HealthAggregator, HealthThresholds
from healthguard.health.probe import HealthProbe
from healthguard.health.resources import ResourceSampler

__all__ = ["HealthAggregator", "HealthProbe", "HealthThresholds", "ResourceSampler"]
