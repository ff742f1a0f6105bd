"""CLI entry point for healthguard."""

import argparse
import json
import logging
import signal
import sys
import threading
from pathlib import Path

from healthguard import __version__
from healthguard.config import Settings, get_settings
from healthguard.errors import BackupIntegrityFailure, ConcurrencyConflict, ExhaustedEscalation
from healthguard.models import AUTO_LEVEL, BackupType, RollbackTrigger, parse_level
from healthguard.rollback import require_success
from healthguard.workflow import (
    build_components,
    resolve_path,
    run_backup,
    run_health,
    run_monitor,
    run_rollback,
    run_scheduled_backups,
)

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    log_dir = resolve_path(settings, settings.logs_dir)
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_dir / "healthguard.log", encoding="utf-8"))
    except OSError as e:
        print(f"warning: file logging disabled: {e}", file=sys.stderr)
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
        force=True,
    )


def _stop_on_signals(stop_event: threading.Event) -> None:
    def _handler(signum, frame):
        logger.info("Received signal %s, shutting down", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="healthguard",
        description="Deployment health monitor with tiered automatic rollback",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("monitor", help="Run the continuous health monitor until interrupted")

    rollback = sub.add_parser("rollback", help="Run a tiered rollback")
    rollback.add_argument(
        "trigger",
        nargs="?",
        default=RollbackTrigger.MANUAL.value,
        choices=[t.value for t in RollbackTrigger],
    )
    rollback.add_argument("level", nargs="?", default=AUTO_LEVEL, help="config|images|code|full|auto or 1-4")
    rollback.add_argument("--target", default=None, help="Revision for the code level")

    health = sub.add_parser("health", help="Run one health check and print the status")
    health.add_argument("--output", default=None, help="Also write the status JSON to FILE")

    backup = sub.add_parser("backup", help="Manage system backups")
    backup_sub = backup.add_subparsers(dest="backup_command", required=True)
    create = backup_sub.add_parser("create", help="Create a backup")
    create.add_argument("type", nargs="?", default=BackupType.MANUAL.value, choices=[t.value for t in BackupType])
    backup_sub.add_parser("list", help="List backups")
    backup_sub.add_parser("cleanup", help="Apply backup retention")
    schedule = backup_sub.add_parser("schedule", help="Create scheduled backups until interrupted")
    schedule.add_argument("--interval", type=float, default=None, help="Seconds between backups")

    restore = sub.add_parser("restore", help="Restore a system backup")
    restore.add_argument("backup_id", help="Backup id or last-known-good")

    incidents = sub.add_parser("incidents", help="List incidents or show one")
    incidents.add_argument("incident_id", nargs="?", default=None)
    incidents.add_argument("--limit", type=int, default=20)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.command == "rollback":
        try:
            args.level = parse_level(args.level)
        except ValueError as e:
            parser.error(str(e))

    settings = get_settings()
    configure_logging(settings)
    components = build_components(settings)

    if args.command == "monitor":
        stop_event = threading.Event()
        _stop_on_signals(stop_event)
        run_monitor(components, stop_event)
        return 0

    if args.command == "rollback":
        try:
            attempt = run_rollback(components, args.trigger, args.level, target_revision=args.target)
        except ConcurrencyConflict as e:
            print(f"error: {e}", file=sys.stderr)
            return 1
        print(attempt.model_dump_json(indent=2))
        try:
            require_success(attempt)
        except ExhaustedEscalation as e:
            print(f"error: {e}", file=sys.stderr)
            return 1
        return 0 if attempt.succeeded else 1

    if args.command == "health":
        status = run_health(components)
        payload = status.model_dump_json(indent=2)
        if args.output:
            Path(args.output).write_text(payload, encoding="utf-8")
        print(payload)
        return 0 if status.is_healthy else 1

    if args.command == "backup":
        return _backup_command(components, args)

    if args.command == "restore":
        try:
            backup = components.backups.restore(args.backup_id)
        except (BackupIntegrityFailure, ConcurrencyConflict) as e:
            print(f"error: {e}", file=sys.stderr)
            return 1
        print(f"Restored backup {backup.id}")
        return 0

    if args.command == "incidents":
        if args.incident_id:
            incident = components.incidents.get(args.incident_id)
            if incident is None:
                print(f"error: incident {args.incident_id} not found", file=sys.stderr)
                return 1
            print(incident.model_dump_json(indent=2))
            return 0
        for incident in components.incidents.list(limit=args.limit):
            flag = " (partial)" if incident.partial else ""
            print(f"{incident.id}  {incident.trigger}  {incident.created_at.isoformat(timespec='seconds')}{flag}")
        return 0

    parser.error(f"unknown command {args.command}")
    return 2


def _backup_command(components, args) -> int:
    backups = components.backups
    if args.backup_command == "create":
        try:
            backup = run_backup(components, args.type)
        except (BackupIntegrityFailure, ConcurrencyConflict) as e:
            print(f"error: {e}", file=sys.stderr)
            return 1
        print(backup.id)
        return 0
    if args.backup_command == "list":
        known_good = backups.last_known_good()
        rows = [
            {
                "id": b.id,
                "type": b.type.value,
                "created_at": b.manifest.created_at.isoformat(),
                "total_size": b.total_size,
                "last_known_good": known_good is not None and b.id == known_good.id,
            }
            for b in backups.list()
        ]
        print(json.dumps(rows, indent=2))
        return 0
    if args.backup_command == "cleanup":
        removed = backups.cleanup()
        print(f"Removed {len(removed)} backup(s)")
        return 0
    if args.backup_command == "schedule":
        stop_event = threading.Event()
        _stop_on_signals(stop_event)
        run_scheduled_backups(components, stop_event, interval=args.interval)
        return 0
    return 2


if __name__ == "__main__":
    sys.exit(main())
