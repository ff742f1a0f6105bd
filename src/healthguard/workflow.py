"""
Wiring for the health/rollback loop.

  ContinuousMonitor → HealthAggregator → (threshold) RollbackOrchestrator
    → remediation handlers + BackupManager → verification → incident + alerts

build_components() turns Settings into the object graph; the run_* helpers
are what the CLI and the status API call.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path

from healthguard.alerts import AlertDispatcher, SlackSink, WebhookSink
from healthguard.backup import BackupManager, CouchDatabase
from healthguard.config import Settings, get_settings
from healthguard.controller import ComposeController, GitSourceRepository, ServiceController, SourceRepository
from healthguard.errors import ControllerError
from healthguard.health import HealthAggregator, HealthProbe, HealthThresholds, ResourceSampler
from healthguard.incidents import IncidentReporter
from healthguard.locking import LeaseLock
from healthguard.models import AUTO_LEVEL, Backup, BackupType, HealthStatus, RollbackAttempt, RollbackTrigger
from healthguard.monitor import ContinuousMonitor, PerformanceEvaluator
from healthguard.rollback import (
    CodeRollback,
    ConfigRollback,
    FullSystemRollback,
    ImageRollback,
    RollbackOrchestrator,
)

logger = logging.getLogger(__name__)


@dataclass
class Components:
    settings: Settings
    controller: ServiceController
    source: SourceRepository | None
    aggregator: HealthAggregator
    alerts: AlertDispatcher
    backups: BackupManager
    incidents: IncidentReporter
    orchestrator: RollbackOrchestrator
    monitor: ContinuousMonitor


def resolve_path(settings: Settings, value: str) -> Path:
    """Relative paths in settings are relative to the managed project."""
    path = Path(value)
    return path if path.is_absolute() else Path(settings.project_dir) / path


def build_thresholds(settings: Settings) -> HealthThresholds:
    return HealthThresholds(
        cpu_percent=settings.cpu_threshold_percent,
        memory_percent=settings.memory_threshold_percent,
        disk_percent=settings.disk_threshold_percent,
        max_p95_latency_ms=settings.max_p95_latency_ms,
        max_error_rate=settings.max_error_rate,
    )


def build_components(
    settings: Settings | None = None,
    controller: ServiceController | None = None,
    source: SourceRepository | None = None,
) -> Components:
    settings = settings or get_settings()
    logs_dir = resolve_path(settings, settings.logs_dir)

    if controller is None:
        controller = ComposeController(
            project_dir=settings.project_dir,
            compose_file=settings.compose_file,
            project_name=settings.compose_project_name,
            command_timeout=settings.command_timeout_seconds,
            build_timeout=settings.build_timeout_seconds,
            stop_timeout=settings.stop_timeout_seconds,
            media_service=settings.media_service,
            media_path=settings.media_path,
            image_name_template=settings.image_name_template,
        )
    if source is None:
        try:
            source = GitSourceRepository(settings.project_dir)
        except ControllerError as e:
            logger.warning("Source rollback unavailable: %s", e)

    sinks = []
    if settings.alert_webhook:
        sinks.append(WebhookSink(settings.alert_webhook, timeout_seconds=settings.alert_webhook_timeout_seconds))
    if settings.slack_bot_token and settings.slack_channel_id:
        sinks.append(SlackSink(bot_token=settings.slack_bot_token, channel_id=settings.slack_channel_id))
    alerts = AlertDispatcher(logs_dir / "alerts.jsonl", sinks=sinks, system=settings.system_name)

    thresholds = build_thresholds(settings)
    aggregator = HealthAggregator(
        services=settings.service_specs(),
        probe=HealthProbe(
            timeout_seconds=settings.probe_timeout_seconds,
            max_retries=settings.probe_max_retries,
            retry_delay_seconds=settings.probe_retry_delay_seconds,
        ),
        sampler=ResourceSampler(controller=controller, disk_path=settings.project_dir),
        thresholds=thresholds,
        history_size=settings.health_history_size,
        status_path=logs_dir / "health-status.json",
    )

    backups_dir = resolve_path(settings, settings.backups_dir)
    backups = BackupManager(
        backups_dir=backups_dir,
        project_dir=settings.project_dir,
        controller=controller,
        source=source,
        database=CouchDatabase(
            url=settings.couchdb_url,
            user=settings.couchdb_user,
            password=settings.couchdb_password,
            timeout=settings.command_timeout_seconds,
        ),
        aggregator=aggregator,
        config_files=settings.config_file_names(),
        code_excludes=settings.code_exclude_names(),
        max_backups=settings.max_backups,
        max_config_backups=settings.max_config_backups,
        lock_timeout=settings.backup_lock_timeout_seconds,
        database_service=settings.database_service,
        database_start_grace=settings.database_start_grace_seconds,
        media_service=settings.media_service,
        media_start_grace=settings.media_start_grace_seconds,
    )
    incidents = IncidentReporter(
        incidents_dir=resolve_path(settings, settings.incidents_dir),
        controller=controller,
        source=source,
        aggregator=aggregator,
        project_dir=settings.project_dir,
        config_files=settings.config_file_names(),
        log_tail=settings.incident_log_tail,
    )

    services = settings.rollback_service_names()
    handlers = [
        ConfigRollback(controller, backups, grace_seconds=settings.config_grace_seconds),
        ImageRollback(controller, source, services, grace_seconds=settings.images_grace_seconds),
    ]
    if source is not None:
        handlers.append(CodeRollback(controller, source, services, grace_seconds=settings.code_grace_seconds))
    handlers.append(FullSystemRollback(controller, backups, grace_seconds=settings.full_grace_seconds))

    orchestrator = RollbackOrchestrator(
        controller=controller,
        aggregator=aggregator,
        handlers=handlers,
        reporter=incidents,
        alerts=alerts,
        lock=LeaseLock(logs_dir / "rollback.lock", ttl_seconds=settings.rollback_lock_ttl_seconds),
        history_path=logs_dir / "rollback-history.jsonl",
    )
    monitor = ContinuousMonitor(
        aggregator=aggregator,
        orchestrator=orchestrator,
        alerts=alerts,
        failure_threshold=settings.failure_threshold,
        check_interval=settings.check_interval,
        rollback_enabled=settings.rollback_enabled,
        performance=(
            PerformanceEvaluator(thresholds, regression_factor=settings.latency_regression_factor)
            if settings.performance_check_enabled
            else None
        ),
    )
    return Components(
        settings=settings,
        controller=controller,
        source=source,
        aggregator=aggregator,
        alerts=alerts,
        backups=backups,
        incidents=incidents,
        orchestrator=orchestrator,
        monitor=monitor,
    )


def run_health(components: Components) -> HealthStatus:
    return components.aggregator.check()


def run_rollback(
    components: Components,
    trigger: RollbackTrigger | str = RollbackTrigger.MANUAL,
    level: str = AUTO_LEVEL,
    target_revision: str | None = None,
    cancel_event: threading.Event | None = None,
) -> RollbackAttempt:
    """Raises ConcurrencyConflict if another rollback holds the lease."""
    return components.orchestrator.execute(
        trigger,
        level,
        target_revision=target_revision,
        cancel_event=cancel_event,
    )


def run_backup(components: Components, backup_type: BackupType | str = BackupType.MANUAL) -> Backup:
    return components.backups.create(backup_type)


def run_scheduled_backups(components: Components, stop_event: threading.Event, interval: float | None = None) -> int:
    """Create a scheduled backup every interval seconds until stop_event is set. Returns backups made."""
    interval = interval if interval is not None else components.settings.backup_schedule_interval
    made = 0
    while not stop_event.is_set():
        try:
            backup = components.backups.create(BackupType.SCHEDULED)
            made += 1
            logger.info("Scheduled backup %s created", backup.id)
        except Exception as e:  # noqa: BLE001
            logger.error("Scheduled backup failed: %s", e, exc_info=True)
            components.alerts.warning("Scheduled backup failed", error=str(e))
        stop_event.wait(interval)
    return made


def run_monitor(components: Components, stop_event: threading.Event) -> None:
    components.monitor.run(stop_event)
