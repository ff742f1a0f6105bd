"""
healthguard: deployment health monitor and tiered rollback orchestrator.

Continuously probes running services and, on sustained failure, escalates
through configuration, image, code and full-system rollbacks with backups,
incident capture and alerting at every step.
"""

__version__ = "0.1.0"
