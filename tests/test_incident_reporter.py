"""Tests for incident capture."""

import json
import re
from unittest.mock import MagicMock

from healthguard.incidents.reporter import IncidentReporter, new_incident_id
from healthguard.models import OverallHealth

from conftest import ScriptedAggregator


def test_incident_id_format_is_unique():
    ids = {new_incident_id() for _ in range(50)}
    assert len(ids) == 50
    assert all(re.fullmatch(r"INC-\d{8}_\d{6}-[0-9a-f]{6}", i) for i in ids)


def test_capture_writes_all_categories(tmp_path, controller, source):
    project = tmp_path / "project"
    project.mkdir()
    (project / ".env").write_text("API_URL=http://x\n")
    aggregator = ScriptedAggregator(OverallHealth.UNHEALTHY)
    aggregator.check()
    reporter = IncidentReporter(
        tmp_path / "incidents",
        controller=controller,
        source=source,
        aggregator=aggregator,
        project_dir=project,
        config_files=[".env", "missing.yml"],
    )

    incident = reporter.capture("rollback-health", context={"attempt_id": "rb-1"})

    path = tmp_path / "incidents" / incident.id
    assert incident.partial is False
    assert (path / "container-status.txt").read_text().startswith("couchdb running")
    assert "website" in json.loads((path / "resource-usage.json").read_text())
    assert "500" in (path / "service-logs.txt").read_text()
    assert json.loads((path / "git-state.json").read_text())["commit"] == source.head
    assert json.loads((path / "health-status.json").read_text())["overall"] == "unhealthy"
    assert (path / "config" / ".env").is_file()
    stored = reporter.get(incident.id)
    assert stored.context == {"attempt_id": "rb-1"}
    assert stored.diagnostics.git_state["branch"] == "main"


def test_failed_category_is_recorded_and_capture_continues(tmp_path, controller):
    controller.recent_logs = MagicMock(side_effect=RuntimeError("logs unavailable"))
    reporter = IncidentReporter(tmp_path / "incidents", controller=controller)

    incident = reporter.capture("rollback-manual")

    assert incident.partial is True
    assert "logs unavailable" in incident.diagnostics.errors["recent_logs"]
    assert incident.diagnostics.container_status is not None
    # No source or aggregator configured
    assert incident.diagnostics.errors["git_state"] == "unavailable"
    assert reporter.get(incident.id).partial is True


def test_list_is_newest_first_and_ignores_staging(tmp_path, controller):
    reporter = IncidentReporter(tmp_path / "incidents", controller=controller)
    first = reporter.capture("a")
    second = reporter.capture("b")
    (tmp_path / "incidents" / ".INC-staging").mkdir()

    assert [i.id for i in reporter.list()] == [second.id, first.id]
    assert reporter.get("INC-nope") is None
    assert reporter.get(".INC-staging") is None
