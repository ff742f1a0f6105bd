"""Tests for the healthguard command line."""

import json
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from conftest import make_status
from healthguard import cli
from healthguard.errors import BackupIntegrityFailure, ConcurrencyConflict
from healthguard.models import (
    Backup,
    BackupManifest,
    BackupType,
    OverallHealth,
    RollbackAttempt,
    RollbackLevel,
    RollbackOutcome,
    RollbackTrigger,
)


@pytest.fixture
def components():
    comps = MagicMock()
    with (
        patch("healthguard.cli.get_settings"),
        patch("healthguard.cli.configure_logging"),
        patch("healthguard.cli.build_components", return_value=comps),
    ):
        yield comps


def _attempt(outcome):
    attempt = RollbackAttempt(trigger=RollbackTrigger.MANUAL, requested_level=RollbackLevel.IMAGES)
    attempt.record_level(RollbackLevel.IMAGES)
    attempt.finish(outcome, exhausted=outcome == RollbackOutcome.FAILURE)
    return attempt


def test_rollback_success_exit_code(components, capsys):
    components.orchestrator.execute.return_value = _attempt(RollbackOutcome.SUCCESS)

    assert cli.main(["rollback", "manual", "images", "--target", "abc123"]) == 0

    args, kwargs = components.orchestrator.execute.call_args
    assert args == ("manual", RollbackLevel.IMAGES)
    assert kwargs["target_revision"] == "abc123"
    assert json.loads(capsys.readouterr().out)["outcome"] == "success"


def test_exhausted_rollback_exit_code(components, capsys):
    components.orchestrator.execute.return_value = _attempt(RollbackOutcome.FAILURE)
    assert cli.main(["rollback"]) == 1
    assert "manual intervention required" in capsys.readouterr().err


def test_rollback_conflict_exit_code(components, capsys):
    components.orchestrator.execute.side_effect = ConcurrencyConflict("Rollback already in progress")
    assert cli.main(["rollback", "health", "auto"]) == 1
    assert "already in progress" in capsys.readouterr().err


def test_rollback_invalid_level_is_usage_error(components):
    with pytest.raises(SystemExit) as exc:
        cli.main(["rollback", "manual", "everything"])
    assert exc.value.code == 2
    components.orchestrator.execute.assert_not_called()


def test_health_exit_code_and_output_file(components, tmp_path):
    components.aggregator.check.return_value = make_status(OverallHealth.HEALTHY)
    out = tmp_path / "status.json"
    assert cli.main(["health", "--output", str(out)]) == 0
    assert json.loads(out.read_text())["overall"] == "healthy"

    components.aggregator.check.return_value = make_status(OverallHealth.UNHEALTHY)
    assert cli.main(["health"]) == 1


def test_backup_create_prints_id(components, capsys):
    components.backups.create.return_value = MagicMock(id="pre-deployment_20260102_030405")

    assert cli.main(["backup", "create", "pre-deployment"]) == 0

    components.backups.create.assert_called_once_with("pre-deployment")
    assert capsys.readouterr().out.strip() == "pre-deployment_20260102_030405"


def test_backup_list_flags_last_known_good(components, capsys):
    def backup(backup_id, created):
        manifest = BackupManifest(backup_id=backup_id, type=BackupType.SUCCESS, created_at=created, sizes={"code": 3})
        return Backup(id=backup_id, type=BackupType.SUCCESS, manifest=manifest)

    newer = backup("success_2", datetime(2026, 1, 2, tzinfo=timezone.utc))
    older = backup("success_1", datetime(2026, 1, 1, tzinfo=timezone.utc))
    components.backups.list.return_value = [newer, older]
    components.backups.last_known_good.return_value = older

    assert cli.main(["backup", "list"]) == 0

    rows = json.loads(capsys.readouterr().out)
    assert [(r["id"], r["last_known_good"]) for r in rows] == [("success_2", False), ("success_1", True)]


def test_restore_integrity_failure(components, capsys):
    components.backups.restore.side_effect = BackupIntegrityFailure("database.json is missing")
    assert cli.main(["restore", "last-known-good"]) == 1
    assert "database.json is missing" in capsys.readouterr().err


def test_incident_not_found(components):
    components.incidents.get.return_value = None
    assert cli.main(["incidents", "INC-missing"]) == 1
