"""Incident reporter: collects diagnostics into a write-once incident directory."""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, Callable
from uuid import uuid4

from healthguard.controller.base import ServiceController, SourceRepository
from healthguard.models import Incident, IncidentDiagnostics, utcnow

logger = logging.getLogger(__name__)

INCIDENT_FILE = "incident.json"


def new_incident_id() -> str:
    """INC-YYYYmmdd_HHMMSS-xxxxxx; the random suffix keeps same-second incidents apart."""
    return f"INC-{utcnow().strftime('%Y%m%d_%H%M%S')}-{uuid4().hex[:6]}"


class IncidentReporter:
    """
    Captures a diagnostic snapshot for a rollback trigger.

    Each category (container status, resource usage, recent logs, git
    state, latest health, config copies) is collected on its own; a failing
    category is recorded in diagnostics.errors and the rest still run. The
    incident is assembled in a temporary directory and renamed into place,
    so a reader never sees a half-written incident and a written incident
    is never modified.
    """

    def __init__(
        self,
        incidents_dir: str | Path,
        controller: ServiceController | None = None,
        source: SourceRepository | None = None,
        aggregator=None,
        project_dir: str | Path = ".",
        config_files: list[str] | None = None,
        log_tail: int = 100,
    ) -> None:
        self.incidents_dir = Path(incidents_dir)
        self.controller = controller
        self.source = source
        self.aggregator = aggregator
        self.project_dir = Path(project_dir)
        self.config_files = list(config_files or [])
        self.log_tail = log_tail

    def capture(self, trigger: str, context: dict[str, Any] | None = None) -> Incident:
        incident = Incident(id=new_incident_id(), trigger=trigger, context=context or {})
        self.incidents_dir.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=f".{incident.id}.", dir=self.incidents_dir))
        try:
            diag = incident.diagnostics
            self._collect(diag, "container_status", staging / "container-status.txt", self._container_status)
            self._collect(diag, "resource_usage", staging / "resource-usage.json", self._resource_usage)
            self._collect(diag, "recent_logs", staging / "service-logs.txt", self._recent_logs)
            self._collect(diag, "git_state", staging / "git-state.json", self._git_state)
            self._collect(diag, "health", staging / "health-status.json", self._health)
            try:
                self._copy_config(staging / "config")
            except Exception as e:  # noqa: BLE001
                diag.errors["config"] = str(e)
                logger.warning("Incident config copy failed: %s", e, exc_info=True)

            (staging / INCIDENT_FILE).write_text(incident.model_dump_json(indent=2), encoding="utf-8")
            os.rename(staging, self.incidents_dir / incident.id)
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise
        logger.info(
            "Incident %s captured",
            incident.id,
            extra={"trigger": trigger, "partial": incident.partial, "errors": list(diag.errors)},
        )
        return incident

    def get(self, incident_id: str) -> Incident | None:
        path = self.incidents_dir / incident_id / INCIDENT_FILE
        if incident_id.startswith(".") or not path.is_file():
            return None
        return Incident.model_validate_json(path.read_text(encoding="utf-8"))

    def list(self, limit: int = 0) -> list[Incident]:
        """Incidents, newest first."""
        if not self.incidents_dir.is_dir():
            return []
        incidents = []
        for entry in sorted(self.incidents_dir.iterdir(), reverse=True):
            if entry.name.startswith(".") or not entry.is_dir():
                continue
            try:
                incident = self.get(entry.name)
            except ValueError as e:
                logger.warning("Unreadable incident %s: %s", entry.name, e)
                continue
            if incident is not None:
                incidents.append(incident)
        incidents.sort(key=lambda i: i.created_at, reverse=True)
        return incidents[:limit] if limit > 0 else incidents

    def _collect(
        self,
        diag: IncidentDiagnostics,
        category: str,
        path: Path,
        fn: Callable[[], Any],
    ) -> None:
        try:
            value = fn()
        except Exception as e:  # noqa: BLE001
            diag.errors[category] = f"{type(e).__name__}: {e}"
            logger.warning("Incident capture of %s failed: %s", category, e, exc_info=True)
            return
        if value is None:
            diag.errors[category] = "unavailable"
            return
        setattr(diag, category, value)
        if isinstance(value, str):
            path.write_text(value, encoding="utf-8")
        elif hasattr(value, "model_dump_json"):
            path.write_text(value.model_dump_json(indent=2), encoding="utf-8")
        else:
            path.write_text(json.dumps(value, indent=2, default=str), encoding="utf-8")

    def _container_status(self) -> str | None:
        return self.controller.container_status() if self.controller else None

    def _resource_usage(self) -> dict | None:
        if self.controller is None:
            return None
        return {name: u.model_dump() for name, u in self.controller.resource_usage().items()}

    def _recent_logs(self) -> str | None:
        return self.controller.recent_logs(tail=self.log_tail) if self.controller else None

    def _git_state(self) -> dict | None:
        return self.source.state() if self.source else None

    def _health(self):
        if self.aggregator is None:
            return None
        return self.aggregator.latest

    def _copy_config(self, dest: Path) -> None:
        dest.mkdir(parents=True, exist_ok=True)
        for name in self.config_files:
            src = self.project_dir / name
            if src.is_dir():
                shutil.copytree(src, dest / name, dirs_exist_ok=True)
            elif src.is_file():
                shutil.copy2(src, dest / name)
