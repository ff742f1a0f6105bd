"""Per-level remediation handlers, least to most destructive."""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod

from healthguard.backup.manager import BackupManager
from healthguard.controller.base import ServiceController, SourceRepository
from healthguard.errors import ControllerError, RemediationFailure
from healthguard.models import RollbackAttempt, RollbackLevel, utcnow

logger = logging.getLogger(__name__)

PREVIOUS_TAG = "previous"
LATEST_TAG = "latest"


class LevelHandler(ABC):
    """
    One rollback level. remediate() applies the change and waits out the
    grace period; the orchestrator then verifies and calls on_verified()
    or on_verification_failed(). A raised exception means the level failed
    before verification.
    """

    level: RollbackLevel

    def __init__(
        self,
        controller: ServiceController,
        grace_seconds: float,
        services: list[str] | None = None,
    ) -> None:
        self.controller = controller
        self.grace_seconds = grace_seconds
        self.services = list(services or [])

    @abstractmethod
    def remediate(self, attempt: RollbackAttempt, cancel_event: threading.Event | None = None) -> None: ...

    def on_verified(self, attempt: RollbackAttempt) -> None:
        pass

    def on_verification_failed(self, attempt: RollbackAttempt) -> None:
        pass

    def wait(self, cancel_event: threading.Event | None) -> None:
        """Let services settle; a set cancel_event cuts the wait short."""
        if self.grace_seconds <= 0:
            return
        logger.info("Waiting %ss for %s rollback to settle", self.grace_seconds, self.level.value)
        if cancel_event is not None:
            cancel_event.wait(self.grace_seconds)
        else:
            time.sleep(self.grace_seconds)


class ConfigRollback(LevelHandler):
    """Restore the last-known-good configuration and restart."""

    level = RollbackLevel.CONFIG

    def __init__(self, controller: ServiceController, backups: BackupManager, grace_seconds: float = 30.0) -> None:
        super().__init__(controller, grace_seconds)
        self.backups = backups

    def remediate(self, attempt: RollbackAttempt, cancel_event: threading.Event | None = None) -> None:
        snapshot = self.backups.snapshot_config()
        attempt.note(f"config: current configuration saved as {snapshot}")
        known_good = self.backups.last_known_good_config()
        if known_good is None:
            raise RemediationFailure("No last-known-good configuration available", level=self.level.value)
        restored = self.backups.apply_config(known_good)
        logger.info("Configuration restored from %s", known_good.name, extra={"files": restored})
        self.controller.stop()
        self.controller.start()
        self.wait(cancel_event)


class ImageRollback(LevelHandler):
    """Swap service images back to the previous tag, rebuilding from the previous revision if missing."""

    level = RollbackLevel.IMAGES

    def __init__(
        self,
        controller: ServiceController,
        source: SourceRepository | None,
        services: list[str],
        grace_seconds: float = 60.0,
    ) -> None:
        super().__init__(controller, grace_seconds, services)
        self.source = source

    def remediate(self, attempt: RollbackAttempt, cancel_event: threading.Event | None = None) -> None:
        backup_tag = f"backup-{utcnow().strftime('%Y%m%d')}"
        to_rebuild = []
        for service in self.services:
            self.controller.tag_image(service, LATEST_TAG, backup_tag)
            if not self.controller.image_exists(service, PREVIOUS_TAG):
                to_rebuild.append(service)
                continue
            self.controller.tag_image(service, PREVIOUS_TAG, LATEST_TAG)
            attempt.note(f"images: {service} restored from {PREVIOUS_TAG}")
        if to_rebuild:
            if self.source is None:
                raise RemediationFailure(
                    f"No previous image for {', '.join(to_rebuild)} and no source to rebuild from",
                    level=self.level.value,
                )
            revision = self.source.previous_revision()
            logger.info("Rebuilding %s from %s", to_rebuild, revision)
            with self.source.checkout(revision):
                self.controller.rebuild(to_rebuild)
            attempt.note(f"images: rebuilt {', '.join(to_rebuild)} from {revision[:12]}")
        self.controller.stop(self.services)
        self.controller.start(self.services)
        self.wait(cancel_event)

    def on_verified(self, attempt: RollbackAttempt) -> None:
        for service in self.services:
            try:
                self.controller.tag_image(service, LATEST_TAG, PREVIOUS_TAG)
            except ControllerError as e:
                logger.warning("Could not tag %s as %s: %s", service, PREVIOUS_TAG, e)


class CodeRollback(LevelHandler):
    """Reset the source tree to a known-good revision and rebuild without cache."""

    level = RollbackLevel.CODE

    def __init__(
        self,
        controller: ServiceController,
        source: SourceRepository,
        services: list[str],
        grace_seconds: float = 90.0,
    ) -> None:
        super().__init__(controller, grace_seconds, services)
        self.source = source
        self._backup_branch: str | None = None
        self._stamp: str | None = None

    def target_revision(self, attempt: RollbackAttempt) -> str:
        if attempt.target_revision:
            return attempt.target_revision
        return self.source.known_good_revision() or self.source.previous_revision()

    def remediate(self, attempt: RollbackAttempt, cancel_event: threading.Event | None = None) -> None:
        self._stamp = utcnow().strftime("%Y%m%d_%H%M%S")
        self._backup_branch = self.source.create_backup_branch(f"backup-{self._stamp}")
        if self.source.stash(f"healthguard: pre-rollback {self._stamp}"):
            attempt.note("code: uncommitted changes stashed")
        target = self.target_revision(attempt)
        self.source.reset_hard(target)
        attempt.note(f"code: reset to {target[:12]}, previous state on {self._backup_branch}")

        try:
            self.controller.stop(self.services)
            self.controller.rebuild(self.services, no_cache=True)
            self.controller.start(self.services)
        except ControllerError as e:
            logger.error("Code rollback failed, restoring %s: %s", self._backup_branch, e)
            self.source.reset_hard(self._backup_branch)
            raise RemediationFailure(f"Restart after code rollback failed: {e}", level=self.level.value) from e
        self.wait(cancel_event)

    def on_verified(self, attempt: RollbackAttempt) -> None:
        name = f"rollback-success-{self._stamp}"
        try:
            self.source.tag(name, f"Successful code rollback {attempt.id}")
        except ControllerError as e:
            logger.warning("Could not create tag %s: %s", name, e)

    def on_verification_failed(self, attempt: RollbackAttempt) -> None:
        if self._backup_branch:
            logger.info("Restoring source tree from %s", self._backup_branch)
            self.source.reset_hard(self._backup_branch)


class FullSystemRollback(LevelHandler):
    """Tear everything down, volumes included, and restore the last-known-good backup."""

    level = RollbackLevel.FULL_SYSTEM

    def __init__(self, controller: ServiceController, backups: BackupManager, grace_seconds: float = 120.0) -> None:
        super().__init__(controller, grace_seconds)
        self.backups = backups

    def remediate(self, attempt: RollbackAttempt, cancel_event: threading.Event | None = None) -> None:
        backup = self.backups.last_known_good()
        if backup is None:
            raise RemediationFailure("No last-known-good backup for full system restore", level=self.level.value)
        # Fail before tearing anything down if the archive is unusable
        self.backups.verify(backup.id)
        self.controller.stop(remove_volumes=True)
        self.controller.prune()
        self.backups.restore(backup.id)
        attempt.note(f"full: restored backup {backup.id}")
        self.wait(cancel_event)
