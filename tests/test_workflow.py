"""Tests for component wiring and the scheduled backup loop."""

import threading
from pathlib import Path
from unittest.mock import MagicMock

from conftest import FakeController, FakeSource
from healthguard.alerts import SlackSink, WebhookSink
from healthguard.config import Settings
from healthguard.models import BackupType, RollbackLevel
from healthguard.workflow import build_components, resolve_path, run_scheduled_backups


def _settings(tmp_path, **overrides):
    return Settings(_env_file=None, project_dir=str(tmp_path), **overrides)


def test_build_components_wires_all_levels(tmp_path):
    settings = _settings(
        tmp_path,
        failure_threshold=5,
        alert_webhook="https://hooks.example/alerts",
        slack_bot_token="xoxb-test",
        slack_channel_id="C123",
    )
    comps = build_components(settings, controller=FakeController(), source=FakeSource())

    assert list(comps.orchestrator.handlers) == [
        RollbackLevel.CONFIG,
        RollbackLevel.IMAGES,
        RollbackLevel.CODE,
        RollbackLevel.FULL_SYSTEM,
    ]
    assert [type(s) for s in comps.alerts.sinks] == [WebhookSink, SlackSink]
    assert comps.monitor.failure_threshold == 5
    assert comps.monitor.performance is not None
    assert comps.aggregator.services[0].name == "couchdb"
    assert comps.backups.backups_dir == tmp_path / "backups"


def test_build_components_without_git_skips_code_level(tmp_path):
    settings = _settings(tmp_path, performance_check_enabled=False)
    comps = build_components(settings, controller=FakeController())

    assert comps.source is None
    assert RollbackLevel.CODE not in comps.orchestrator.handlers
    assert comps.alerts.sinks == []
    assert comps.monitor.performance is None


def test_resolve_path_keeps_absolute_paths(tmp_path):
    settings = _settings(tmp_path)
    assert resolve_path(settings, "logs") == tmp_path / "logs"
    assert resolve_path(settings, "/var/backups") == Path("/var/backups")


def test_scheduled_backups_until_stopped(tmp_path):
    stop = threading.Event()
    comps = MagicMock()
    made = []

    def create(backup_type):
        made.append(backup_type)
        if len(made) == 2:
            stop.set()
        return MagicMock(id=f"scheduled_{len(made)}")

    comps.backups.create.side_effect = create

    assert run_scheduled_backups(comps, stop, interval=0) == 2
    assert made == [BackupType.SCHEDULED, BackupType.SCHEDULED]


def test_scheduled_backup_failure_alerts_and_continues(tmp_path):
    stop = threading.Event()
    comps = MagicMock()
    calls = []

    def create(backup_type):
        calls.append(backup_type)
        if len(calls) == 1:
            raise OSError("disk full")
        stop.set()
        return MagicMock(id="scheduled_2")

    comps.backups.create.side_effect = create

    assert run_scheduled_backups(comps, stop, interval=0) == 1
    comps.alerts.warning.assert_called_once_with("Scheduled backup failed", error="disk full")
