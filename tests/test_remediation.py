"""Tests for the per-level remediation handlers."""

from unittest.mock import MagicMock, patch

import pytest

from healthguard.errors import BackupIntegrityFailure, ControllerError, RemediationFailure
from healthguard.models import RollbackAttempt, RollbackTrigger
from healthguard.rollback.remediation import (
    CodeRollback,
    ConfigRollback,
    FullSystemRollback,
    ImageRollback,
)


@pytest.fixture
def attempt():
    return RollbackAttempt(trigger=RollbackTrigger.MANUAL)


def test_config_rollback_applies_last_known_good_and_restarts(controller, attempt, tmp_path):
    backups = MagicMock()
    backups.snapshot_config.return_value = "20260101_000000"
    backups.last_known_good_config.return_value = tmp_path

    with patch("healthguard.rollback.remediation.time.sleep") as mock_sleep:
        ConfigRollback(controller, backups, grace_seconds=30).remediate(attempt)

    backups.snapshot_config.assert_called_once()
    backups.apply_config.assert_called_once_with(tmp_path)
    assert controller.names() == ["stop", "start"]
    mock_sleep.assert_called_once_with(30)


def test_config_rollback_without_known_good_fails(controller, attempt):
    backups = MagicMock()
    backups.last_known_good_config.return_value = None

    with pytest.raises(RemediationFailure):
        ConfigRollback(controller, backups, grace_seconds=0).remediate(attempt)
    assert controller.calls == []


def test_image_rollback_uses_previous_tag(controller, source, attempt):
    controller.images.add(("website", "previous"))

    handler = ImageRollback(controller, source, ["website"], grace_seconds=0)
    handler.remediate(attempt)

    tags = [c for c in controller.calls if c[0] == "tag"]
    assert tags[0][1:3] == ("website", "latest")
    assert tags[0][3].startswith("backup-")
    assert ("tag", "website", "previous", "latest") in controller.calls
    assert source.checkouts == []
    assert ("stop", ("website",), False) in controller.calls

    handler.on_verified(attempt)
    assert controller.calls[-1] == ("tag", "website", "latest", "previous")


def test_image_rollback_rebuilds_from_previous_revision_when_no_previous_image(controller, source, attempt):
    ImageRollback(controller, source, ["website", "cms"], grace_seconds=0).remediate(attempt)

    assert source.checkouts == [source.previous]
    assert ("rebuild", ("website", "cms"), False) in controller.calls


def test_image_rollback_rebuilds_only_services_without_previous_image(controller, source, attempt):
    controller.images.add(("website", "previous"))

    ImageRollback(controller, source, ["website", "cms"], grace_seconds=0).remediate(attempt)

    assert ("tag", "website", "previous", "latest") in controller.calls
    assert ("rebuild", ("cms",), False) in controller.calls
    assert attempt.notes[0] == "images: website restored from previous"


def test_image_rollback_without_source_or_previous_image_fails(controller, attempt):
    with pytest.raises(RemediationFailure):
        ImageRollback(controller, None, ["website"], grace_seconds=0).remediate(attempt)


def test_code_rollback_prefers_explicit_target_then_known_good_then_head_parent(controller, source):
    handler = CodeRollback(controller, source, ["website"], grace_seconds=0)

    explicit = RollbackAttempt(trigger=RollbackTrigger.MANUAL, target_revision="abc123")
    assert handler.target_revision(explicit) == "abc123"

    plain = RollbackAttempt(trigger=RollbackTrigger.MANUAL)
    assert handler.target_revision(plain) == source.previous
    source.known_good = "feed" * 10
    assert handler.target_revision(plain) == source.known_good


def test_code_rollback_flow_and_success_tag(controller, source, attempt):
    source.dirty = 2
    handler = CodeRollback(controller, source, ["website"], grace_seconds=0)

    handler.remediate(attempt)

    assert source.branches[0].startswith("backup-")
    assert source.resets == [source.previous]
    assert ("rebuild", ("website",), True) in controller.calls
    assert controller.names()[-1] == "start"
    assert any("stashed" in n for n in attempt.notes)

    handler.on_verified(attempt)
    assert source.tags[0].startswith("rollback-success-")


def test_code_rollback_build_failure_restores_backup_branch(controller, source, attempt):
    controller.fail_rebuild = True
    handler = CodeRollback(controller, source, ["website"], grace_seconds=0)

    with pytest.raises(RemediationFailure):
        handler.remediate(attempt)

    assert source.resets == [source.previous, source.branches[0]]
    assert "start" not in controller.names()


@pytest.mark.parametrize("step", ["stop", "start"])
def test_code_rollback_restart_failure_restores_backup_branch(controller, source, attempt, step):
    handler = CodeRollback(controller, source, ["website"], grace_seconds=0)

    with patch.object(controller, step, side_effect=ControllerError(f"{step} failed")):
        with pytest.raises(RemediationFailure, match=f"{step} failed"):
            handler.remediate(attempt)

    assert source.resets == [source.previous, source.branches[0]]


def test_code_rollback_verification_failure_restores_backup_branch(controller, source, attempt):
    handler = CodeRollback(controller, source, ["website"], grace_seconds=0)
    handler.remediate(attempt)

    handler.on_verification_failed(attempt)

    assert source.resets[-1] == source.branches[0]


def test_full_rollback_restores_last_known_good(controller, attempt):
    backups = MagicMock()
    backups.last_known_good.return_value.id = "20260101_000000"

    FullSystemRollback(controller, backups, grace_seconds=0).remediate(attempt)

    backups.verify.assert_called_once_with("20260101_000000")
    backups.restore.assert_called_once_with("20260101_000000")
    assert controller.calls[0] == ("stop", (), True)
    assert ("prune",) in controller.calls


def test_full_rollback_integrity_failure_happens_before_teardown(controller, attempt):
    backups = MagicMock()
    backups.verify.side_effect = BackupIntegrityFailure("corrupt")

    with pytest.raises(BackupIntegrityFailure):
        FullSystemRollback(controller, backups, grace_seconds=0).remediate(attempt)
    assert controller.calls == []


def test_full_rollback_without_backup_fails(controller, attempt):
    backups = MagicMock()
    backups.last_known_good.return_value = None

    with pytest.raises(RemediationFailure):
        FullSystemRollback(controller, backups, grace_seconds=0).remediate(attempt)


def test_grace_wait_is_cut_short_by_cancel_event(controller, attempt):
    cancel = MagicMock()
    backups = MagicMock()
    backups.last_known_good.return_value.id = "x"

    FullSystemRollback(controller, backups, grace_seconds=120).remediate(attempt, cancel_event=cancel)

    cancel.wait.assert_called_once_with(120)
