"""Incident capture: immutable diagnostic snapshots taken before remediation."""

from healthguard.incidents.reporter import IncidentReporter, new_incident_id

__all__ = ["IncidentReporter", "new_incident_id"]
