"""
System and configuration backups.

A system backup is a directory under backups/system/<id>/ holding a code
archive, config copies, a database dump, a media archive and manifest.json.
Backups are assembled in <id>.partial and renamed into place only after
verification, so a listed backup is always complete. last-known-good is a
pointer file rewritten with os.replace, never a copied directory.
"""

from __future__ import annotations

import json
import logging
import os
import platform
import shutil
import tarfile
import tempfile
import time
from pathlib import Path

import psutil

from healthguard.backup.database import CouchDatabase
from healthguard.controller.base import ServiceController, SourceRepository
from healthguard.errors import BackupIntegrityFailure, ControllerError
from healthguard.locking import LeaseLock
from healthguard.models import (
    CONFIG_LAST_KNOWN_GOOD_TYPES,
    LAST_KNOWN_GOOD_TYPES,
    Backup,
    BackupArtifacts,
    BackupManifest,
    BackupType,
    utcnow,
)

logger = logging.getLogger(__name__)

LAST_KNOWN_GOOD = "last-known-good"
POINTER_FILE = "last-known-good.json"
MANIFEST_FILE = "manifest.json"
PARTIAL_SUFFIX = ".partial"
ID_FORMAT = "%Y%m%d_%H%M%S"
# Never archived: the revision is restored through the source repository
ALWAYS_EXCLUDED = frozenset({".git"})

DEFAULT_CODE_EXCLUDES = [
    "node_modules", ".next", "dist", ".turbo", "coverage", "playwright-report",
    "test-results", ".swc", "tmp", "logs", "incidents", "backups",
]


def _read_pointer(directory: Path) -> str | None:
    try:
        data = json.loads((directory / POINTER_FILE).read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Unreadable last-known-good pointer in %s: %s", directory, e)
        return None
    return data.get("backup_id") if isinstance(data, dict) else None


def _write_pointer(directory: Path, backup_id: str) -> None:
    """Atomically re-point last-known-good."""
    pointer = directory / POINTER_FILE
    tmp = pointer.with_suffix(".json.tmp")
    tmp.write_text(
        json.dumps({"backup_id": backup_id, "updated_at": utcnow().isoformat()}),
        encoding="utf-8",
    )
    os.replace(tmp, pointer)


def _new_id(directory: Path) -> str:
    base = utcnow().strftime(ID_FORMAT)
    candidate, n = base, 0
    while (directory / candidate).exists() or (directory / f"{candidate}{PARTIAL_SUFFIX}").exists():
        n += 1
        candidate = f"{base}_{n}"
    return candidate


def _copy_entries(names: list[str], src_root: Path, dest_root: Path) -> list[str]:
    """Copy named files/dirs from src_root into dest_root; returns the names copied."""
    copied = []
    dest_root.mkdir(parents=True, exist_ok=True)
    for name in names:
        src = src_root / name
        if src.is_dir():
            shutil.copytree(src, dest_root / name, dirs_exist_ok=True)
        elif src.is_file():
            shutil.copy2(src, dest_root / name)
        else:
            continue
        copied.append(name)
    return copied


def _install_tree(src_root: Path, dest_root: Path) -> int:
    """Copy src_root over dest_root, replacing files rather than writing into them."""
    installed = 0
    for dirpath, _dirnames, filenames in os.walk(src_root):
        target_dir = dest_root / Path(dirpath).relative_to(src_root)
        target_dir.mkdir(parents=True, exist_ok=True)
        for name in filenames:
            target = target_dir / name
            # Read-only targets cannot be opened for writing, but can be unlinked
            if target.is_symlink() or target.is_file():
                target.unlink()
            shutil.copy2(Path(dirpath) / name, target, follow_symlinks=False)
            installed += 1
    return installed


def _size(path: Path) -> int:
    if path.is_file():
        return path.stat().st_size
    if path.is_dir():
        return sum(p.stat().st_size for p in path.rglob("*") if p.is_file())
    return 0


def _system_info() -> dict[str, str]:
    return {
        "hostname": platform.node(),
        "platform": platform.platform(),
        "python": platform.python_version(),
        "cpu_count": str(psutil.cpu_count() or 0),
        "memory_total": str(psutil.virtual_memory().total),
    }


class BackupManager:
    """Create, verify, list, restore and prune backups; maintains last-known-good pointers."""

    def __init__(
        self,
        backups_dir: str | Path,
        project_dir: str | Path = ".",
        controller: ServiceController | None = None,
        source: SourceRepository | None = None,
        database: CouchDatabase | None = None,
        aggregator=None,
        config_files: list[str] | None = None,
        code_excludes: list[str] | None = None,
        max_backups: int = 10,
        max_config_backups: int = 20,
        lock: LeaseLock | None = None,
        lock_timeout: float = 600.0,
        database_service: str = "couchdb",
        database_start_grace: float = 15.0,
        media_service: str = "media",
        media_start_grace: float = 10.0,
    ) -> None:
        self.backups_dir = Path(backups_dir)
        self.system_dir = self.backups_dir / "system"
        self.config_dir = self.backups_dir / "config"
        self.project_dir = Path(project_dir)
        self.controller = controller
        self.source = source
        self.database = database
        self.aggregator = aggregator
        self.config_files = list(config_files if config_files is not None else [".env", "docker-compose.yml"])
        self.code_excludes = set(code_excludes if code_excludes is not None else DEFAULT_CODE_EXCLUDES)
        self.max_backups = max(1, max_backups)
        self.max_config_backups = max(1, max_config_backups)
        self.lock = lock or LeaseLock(self.backups_dir / ".lock", ttl_seconds=max(lock_timeout, 3600.0))
        self.lock_timeout = lock_timeout
        self.database_service = database_service
        self.database_start_grace = database_start_grace
        self.media_service = media_service
        self.media_start_grace = media_start_grace

    # -- create ---------------------------------------------------------

    def create(self, backup_type: BackupType | str = BackupType.MANUAL) -> Backup:
        """Build, verify and publish a backup. Raises BackupIntegrityFailure on a bad result."""
        backup_type = BackupType(backup_type)
        with self.lock.hold(timeout=self.lock_timeout, what="Backup"):
            backup = self._create_locked(backup_type)
            self._promote(backup)
            self._cleanup_locked()
        return backup

    def _create_locked(self, backup_type: BackupType) -> Backup:
        self.system_dir.mkdir(parents=True, exist_ok=True)
        backup_id = _new_id(self.system_dir)
        partial = self.system_dir / f"{backup_id}{PARTIAL_SUFFIX}"
        final = self.system_dir / backup_id
        artifacts = BackupArtifacts()
        logger.info("Creating %s backup %s", backup_type.value, backup_id)
        partial.mkdir(parents=True)
        try:
            self._archive_code(partial / artifacts.code)
            _copy_entries(self.config_files, self.project_dir, partial / artifacts.config)
            database_dumped = self._dump_database(partial / artifacts.database)
            media_archived = self._archive_media(partial / artifacts.media)

            manifest = BackupManifest(
                backup_id=backup_id,
                type=backup_type,
                database_dumped=database_dumped,
                media_archived=media_archived,
                system_info=_system_info(),
                sizes={
                    name: _size(partial / getattr(artifacts, name))
                    for name in ("code", "database", "media", "config")
                },
            )
            if self.source is not None:
                state = self.source.state()
                manifest.git_commit = str(state.get("commit", "unknown"))
                manifest.git_branch = str(state.get("branch", "unknown"))
                dirty = state.get("dirty_files")
                manifest.git_dirty_files = dirty if isinstance(dirty, int) else 0
            if self.controller is not None:
                try:
                    manifest.service_image_tags = self.controller.image_tags()
                except Exception as e:  # noqa: BLE001
                    logger.warning("Could not record image tags: %s", e)
            (partial / MANIFEST_FILE).write_text(manifest.model_dump_json(indent=2), encoding="utf-8")

            self._verify_dir(partial, backup_id)
            os.rename(partial, final)
        except BaseException:
            shutil.rmtree(partial, ignore_errors=True)
            raise
        logger.info(
            "Backup %s created",
            backup_id,
            extra={"backup_type": backup_type.value, "total_size": sum(manifest.sizes.values())},
        )
        return Backup(
            id=backup_id,
            type=backup_type,
            manifest=manifest,
            artifacts=artifacts,
            verified=True,
            path=str(final),
        )

    def _archive_code(self, dest: Path) -> None:
        excludes = self.code_excludes | ALWAYS_EXCLUDED | {self.backups_dir.name}

        def _filter(info: tarfile.TarInfo) -> tarfile.TarInfo | None:
            parts = Path(info.name).parts
            if any(part in excludes for part in parts):
                return None
            return info

        with tarfile.open(dest, "w:gz") as tar:
            tar.add(self.project_dir, arcname=".", filter=_filter)

    def _dump_database(self, dest: Path) -> bool:
        if self.database is not None:
            try:
                self.database.dump_to(dest)
                return True
            except Exception as e:  # noqa: BLE001
                logger.warning("Database backup failed, writing placeholder: %s", e)
        dest.write_text(json.dumps({"format": 1, "databases": {}}), encoding="utf-8")
        return False

    def _archive_media(self, dest: Path) -> bool:
        if self.controller is not None:
            try:
                if self.controller.export_media(dest):
                    return True
            except Exception as e:  # noqa: BLE001
                logger.warning("Media backup failed: %s", e)
        dest.write_bytes(b"")
        return False

    def _promote(self, backup: Backup) -> None:
        """Re-point last-known-good for verified backups taken while the system is healthy."""
        if not backup.verified:
            return
        if backup.type not in LAST_KNOWN_GOOD_TYPES and backup.type not in CONFIG_LAST_KNOWN_GOOD_TYPES:
            return
        if not self._healthy():
            logger.warning("System not healthy, %s not marked last-known-good", backup.id)
            return
        if backup.type in LAST_KNOWN_GOOD_TYPES:
            _write_pointer(self.system_dir, backup.id)
            logger.info("Backup %s is now last-known-good", backup.id)
        if backup.type in CONFIG_LAST_KNOWN_GOOD_TYPES:
            self._snapshot_config_unlocked(mark_known_good=True)

    def _healthy(self) -> bool:
        if self.aggregator is None:
            return False
        try:
            return self.aggregator.check().is_healthy
        except Exception as e:  # noqa: BLE001
            logger.warning("Health check during backup failed: %s", e, exc_info=True)
            return False

    # -- inspect --------------------------------------------------------

    def resolve(self, backup_id: str) -> str:
        """Map the last-known-good alias to a concrete backup id."""
        if backup_id == LAST_KNOWN_GOOD:
            target = _read_pointer(self.system_dir)
            if target is None:
                raise BackupIntegrityFailure("No last-known-good backup", backup_id=backup_id)
            return target
        return backup_id

    def last_known_good(self) -> Backup | None:
        target = _read_pointer(self.system_dir)
        return self.get(target) if target else None

    def get(self, backup_id: str) -> Backup | None:
        try:
            backup_id = self.resolve(backup_id)
        except BackupIntegrityFailure:
            return None
        path = self.system_dir / backup_id
        if backup_id.endswith(PARTIAL_SUFFIX) or not (path / MANIFEST_FILE).is_file():
            return None
        try:
            manifest = BackupManifest.model_validate_json((path / MANIFEST_FILE).read_text(encoding="utf-8"))
        except ValueError as e:
            logger.warning("Unreadable manifest for %s: %s", backup_id, e)
            return None
        artifacts = BackupArtifacts()
        complete = all(
            (path / getattr(artifacts, name)).exists() for name in ("code", "database", "media", "config")
        )
        return Backup(
            id=backup_id,
            type=manifest.type,
            manifest=manifest,
            artifacts=artifacts,
            verified=complete,
            path=str(path),
        )

    def list(self) -> list[Backup]:
        """System backups, newest first."""
        if not self.system_dir.is_dir():
            return []
        backups = []
        for entry in self.system_dir.iterdir():
            if not entry.is_dir() or entry.name.endswith(PARTIAL_SUFFIX):
                continue
            backup = self.get(entry.name)
            if backup is not None:
                backups.append(backup)
        backups.sort(key=lambda b: (b.manifest.created_at, b.id), reverse=True)
        return backups

    def verify(self, backup_id: str) -> Backup:
        """Full integrity check; raises BackupIntegrityFailure."""
        backup_id = self.resolve(backup_id)
        self._verify_dir(self.system_dir / backup_id, backup_id)
        backup = self.get(backup_id)
        if backup is None:
            raise BackupIntegrityFailure(f"Backup {backup_id} not found", backup_id=backup_id)
        backup.verified = True
        return backup

    def _verify_dir(self, path: Path, backup_id: str) -> None:
        if not path.is_dir():
            raise BackupIntegrityFailure(f"Backup {backup_id} not found", backup_id=backup_id)
        manifest_path = path / MANIFEST_FILE
        if not manifest_path.is_file():
            raise BackupIntegrityFailure(f"Backup {backup_id} has no manifest", backup_id=backup_id)
        try:
            BackupManifest.model_validate_json(manifest_path.read_text(encoding="utf-8"))
        except ValueError as e:
            raise BackupIntegrityFailure(f"Backup {backup_id} manifest is corrupt: {e}", backup_id=backup_id) from e
        artifacts = BackupArtifacts()
        for name in ("code", "database", "media"):
            if not (path / getattr(artifacts, name)).is_file():
                raise BackupIntegrityFailure(
                    f"Backup {backup_id} is missing {getattr(artifacts, name)}", backup_id=backup_id
                )
        if not (path / artifacts.config).is_dir():
            raise BackupIntegrityFailure(f"Backup {backup_id} is missing config/", backup_id=backup_id)
        try:
            with tarfile.open(path / artifacts.code, "r:gz") as tar:
                tar.getmembers()
        except (tarfile.TarError, OSError, EOFError) as e:
            raise BackupIntegrityFailure(
                f"Backup {backup_id} code archive is corrupt: {e}", backup_id=backup_id
            ) from e
        try:
            json.loads((path / artifacts.database).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise BackupIntegrityFailure(
                f"Backup {backup_id} database dump is corrupt: {e}", backup_id=backup_id
            ) from e

    # -- restore --------------------------------------------------------

    def restore(self, backup_id: str) -> Backup:
        """
        Restore a system backup. Integrity is checked before anything is
        stopped or overwritten; running it twice leaves the same state.
        """
        with self.lock.hold(timeout=self.lock_timeout, what="Restore"):
            backup = self.verify(backup_id)
            self.backups_dir.mkdir(parents=True, exist_ok=True)
            staging = Path(tempfile.mkdtemp(prefix=f".restore-{backup.id}.", dir=self.backups_dir))
            try:
                self._stage_code(backup, staging)
                self._restore_staged(backup, staging)
            finally:
                shutil.rmtree(staging, ignore_errors=True)
        logger.info("Backup %s restored", backup.id)
        return backup

    def _stage_code(self, backup: Backup, staging: Path) -> None:
        """Unpack the code archive before anything is stopped, so a bad archive fails early."""
        try:
            with tarfile.open(Path(backup.path) / backup.artifacts.code, "r:gz") as tar:
                tar.extractall(staging, filter="data")
        except (tarfile.TarError, OSError) as e:
            raise BackupIntegrityFailure(
                f"Backup {backup.id} code archive cannot be unpacked: {e}", backup_id=backup.id
            ) from e

    def _restore_staged(self, backup: Backup, staging: Path) -> None:
        path = Path(backup.path)
        logger.info("Restoring backup %s", backup.id, extra={"backup_type": backup.type.value})
        if self.controller is not None:
            self.controller.stop()

        restored = _copy_entries(
            [p.name for p in (path / backup.artifacts.config).iterdir()],
            path / backup.artifacts.config,
            self.project_dir,
        )
        logger.info("Configuration restored", extra={"files": restored})

        if backup.manifest.database_dumped and self.database is not None:
            if self.controller is not None:
                self.controller.start([self.database_service])
                time.sleep(self.database_start_grace)
            self.database.restore_from(path / backup.artifacts.database)
        else:
            logger.info("No database dump in %s, skipping database restore", backup.id)

        if backup.manifest.media_archived and self.controller is not None:
            self.controller.start([self.media_service])
            time.sleep(self.media_start_grace)
            self.controller.import_media(path / backup.artifacts.media)

        commit = backup.manifest.git_commit
        if self.source is not None and commit != "unknown":
            try:
                self.source.reset_hard(commit)
            except ControllerError as e:
                logger.warning("Could not reset source to %s, restoring archived files only: %s", commit, e)
        installed = _install_tree(staging, self.project_dir)
        logger.info("Code restored from %s", backup.id, extra={"files": installed})

        if self.controller is not None:
            self.controller.rebuild(no_cache=True)
            self.controller.start()

    # -- retention ------------------------------------------------------

    def cleanup(self) -> list[str]:
        """Apply retention; returns removed backup ids."""
        with self.lock.hold(timeout=self.lock_timeout, what="Backup cleanup"):
            return self._cleanup_locked()

    def _cleanup_locked(self) -> list[str]:
        removed: list[str] = []
        if self.system_dir.is_dir():
            for entry in self.system_dir.iterdir():
                if entry.is_dir() and entry.name.endswith(PARTIAL_SUFFIX):
                    shutil.rmtree(entry, ignore_errors=True)
            keep = _read_pointer(self.system_dir)
            for backup in self.list()[self.max_backups:]:
                if backup.id == keep:
                    continue
                shutil.rmtree(backup.path, ignore_errors=True)
                removed.append(backup.id)
        removed.extend(self._prune_config_snapshots())
        if removed:
            logger.info("Removed old backups", extra={"removed": removed})
        return removed

    def _prune_config_snapshots(self) -> list[str]:
        if not self.config_dir.is_dir():
            return []
        keep = _read_pointer(self.config_dir)
        snapshots = sorted((p for p in self.config_dir.iterdir() if p.is_dir()), key=lambda p: p.name, reverse=True)
        removed = []
        for path in snapshots[self.max_config_backups:]:
            if path.name == keep:
                continue
            shutil.rmtree(path, ignore_errors=True)
            removed.append(f"config/{path.name}")
        return removed

    # -- configuration snapshots ----------------------------------------

    def snapshot_config(self, mark_known_good: bool = False) -> str:
        """Copy the live configuration files into backups/config/<id>/."""
        with self.lock.hold(timeout=self.lock_timeout, what="Config snapshot"):
            snapshot_id = self._snapshot_config_unlocked(mark_known_good)
            self._prune_config_snapshots()
        return snapshot_id

    def _snapshot_config_unlocked(self, mark_known_good: bool) -> str:
        self.config_dir.mkdir(parents=True, exist_ok=True)
        snapshot_id = _new_id(self.config_dir)
        copied = _copy_entries(self.config_files, self.project_dir, self.config_dir / snapshot_id)
        if mark_known_good:
            _write_pointer(self.config_dir, snapshot_id)
        logger.info(
            "Configuration snapshot %s",
            snapshot_id,
            extra={"files": copied, "last_known_good": mark_known_good},
        )
        return snapshot_id

    def last_known_good_config(self) -> Path | None:
        target = _read_pointer(self.config_dir)
        if target is None:
            return None
        path = self.config_dir / target
        return path if path.is_dir() else None

    def apply_config(self, snapshot: Path) -> list[str]:
        """Copy a config snapshot over the live configuration."""
        names = [p.name for p in snapshot.iterdir()]
        return _copy_entries(names, snapshot, self.project_dir)
