"""Tests for the status API."""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from conftest import make_status
from dashboard.app import app, reset_components, set_components
from healthguard.config import Settings
from healthguard.errors import ConcurrencyConflict
from healthguard.models import (
    Backup,
    BackupManifest,
    BackupType,
    Incident,
    OverallHealth,
    RollbackAttempt,
    RollbackLevel,
    RollbackOutcome,
    RollbackTrigger,
)
from healthguard.workflow import Components


@pytest.fixture
def components(alerts):
    orchestrator = MagicMock()
    orchestrator.in_progress = False
    comps = Components(
        settings=Settings(_env_file=None),
        controller=MagicMock(),
        source=None,
        aggregator=MagicMock(),
        alerts=alerts,
        backups=MagicMock(),
        incidents=MagicMock(),
        orchestrator=orchestrator,
        monitor=MagicMock(),
    )
    set_components(comps)
    yield comps
    reset_components()


@pytest.fixture
def client(components):
    return TestClient(app)


def test_health_returns_latest_without_probing(client, components):
    components.aggregator.latest = make_status(OverallHealth.DEGRADED, violations=["High CPU usage"])

    r = client.get("/api/health")

    assert r.status_code == 200
    assert r.json()["overall"] == "degraded"
    assert r.json()["violations"] == ["High CPU usage"]
    components.aggregator.check.assert_not_called()


def test_health_live_runs_a_check(client, components):
    components.aggregator.latest = make_status(OverallHealth.DEGRADED)
    components.aggregator.check.return_value = make_status(OverallHealth.HEALTHY)

    r = client.get("/api/health", params={"live": "true"})

    assert r.json()["overall"] == "healthy"
    components.aggregator.check.assert_called_once()


def test_backups_mark_last_known_good(client, components):
    created = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    good = Backup(
        id="pre-deployment_20260102_030405",
        type=BackupType.PRE_DEPLOYMENT,
        manifest=BackupManifest(
            backup_id="pre-deployment_20260102_030405",
            type=BackupType.PRE_DEPLOYMENT,
            created_at=created,
            sizes={"code": 10, "database": 5},
        ),
        verified=True,
    )
    components.backups.list.return_value = [good]
    components.backups.last_known_good.return_value = good

    data = client.get("/api/backups").json()

    assert data["last_known_good"] == good.id
    assert data["backups"][0]["total_size"] == 15
    assert data["backups"][0]["type"] == "pre-deployment"


def test_incidents_list_and_missing_detail(client, components):
    incident = Incident(id="INC-20260102_030405-abc123", trigger="health")
    components.incidents.list.return_value = [incident]
    components.incidents.get.return_value = None

    r = client.get("/api/incidents", params={"limit": 5})
    assert r.json()["incidents"][0]["id"] == incident.id
    components.incidents.list.assert_called_once_with(limit=5)

    r = client.get("/api/incidents/INC-missing")
    assert r.status_code == 404


def test_rollbacks_newest_first(client, components):
    older = RollbackAttempt(id="rb-old", trigger=RollbackTrigger.MANUAL)
    newer = RollbackAttempt(id="rb-new", trigger=RollbackTrigger.HEALTH_FAILURE)
    newer.record_level(RollbackLevel.IMAGES)
    newer.finish(RollbackOutcome.SUCCESS)
    components.orchestrator.history.return_value = [older, newer]

    data = client.get("/api/rollbacks").json()

    assert [a["id"] for a in data["rollbacks"]] == ["rb-new", "rb-old"]
    assert data["rollbacks"][0]["executed_levels"] == ["images"]


def test_alerts_newest_first(client, components):
    components.alerts.info("first")
    components.alerts.warning("second", service="website")

    data = client.get("/api/alerts").json()

    assert [a["message"] for a in data["alerts"]] == ["second", "first"]
    assert data["alerts"][0]["context"] == {"service": "website"}


def test_manual_rollback_is_accepted_and_runs(client, components):
    r = client.post("/api/rollback", json={"level": "2", "target": None})

    assert r.status_code == 202
    assert r.json()["level"] == "images"
    # TestClient runs background tasks before returning
    components.orchestrator.execute.assert_called_once()
    args, kwargs = components.orchestrator.execute.call_args
    assert args == (RollbackTrigger.MANUAL, RollbackLevel.IMAGES)
    assert kwargs["target_revision"] is None


def test_manual_rollback_conflict_returns_409(client, components):
    components.orchestrator.in_progress = True
    components.orchestrator.lock.holder.return_value = {"owner": "ops-host:4242"}

    r = client.post("/api/rollback", json={"level": "auto"})

    assert r.status_code == 409
    assert "ops-host:4242" in r.json()["detail"]
    components.orchestrator.execute.assert_not_called()


def test_manual_rollback_invalid_level_returns_422(client, components):
    r = client.post("/api/rollback", json={"level": "everything"})
    assert r.status_code == 422
    components.orchestrator.execute.assert_not_called()


def test_background_rollback_conflict_is_logged_not_raised(client, components):
    components.orchestrator.execute.side_effect = ConcurrencyConflict("held elsewhere")

    r = client.post("/api/rollback", json={})

    assert r.status_code == 202
    assert r.json()["level"] == "auto"
