"""Application configuration loaded from environment."""

from pydantic_settings import BaseSettings, SettingsConfigDict

from healthguard.models import ServiceSpec


def _split(value: str) -> list[str]:
    return [part.strip() for part in (value or "").split(",") if part.strip()]


class Settings(BaseSettings):
    """healthguard settings from env vars (CHECK_INTERVAL, FAILURE_THRESHOLD, ...)."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Monitor loop
    check_interval: float = 30.0
    failure_threshold: int = 3
    rollback_enabled: bool = True
    performance_check_enabled: bool = True

    # Alerts
    alert_webhook: str = ""
    alert_webhook_timeout_seconds: float = 10.0
    slack_bot_token: str = ""
    slack_channel_id: str = ""
    system_name: str = "saas-platform"

    # Deployment under management
    project_dir: str = "."
    compose_file: str = "docker-compose.yml"
    compose_project_name: str = "saas-platform"
    command_timeout_seconds: float = 120.0
    build_timeout_seconds: float = 1800.0
    stop_timeout_seconds: int = 30

    # Health probing; storage service first, "name?=url" marks a service optional
    health_services: str = (
        "couchdb=http://localhost:5984/_up,"
        "api-gateway=http://localhost:8080/health,"
        "website=http://localhost:3000/api/health,"
        "cms=http://localhost:3001/api/health"
    )
    probe_timeout_seconds: float = 10.0
    probe_max_retries: int = 3
    probe_retry_delay_seconds: float = 5.0

    # Degraded thresholds
    cpu_threshold_percent: float = 80.0
    memory_threshold_percent: float = 90.0
    disk_threshold_percent: float = 90.0
    max_p95_latency_ms: float = 1000.0
    max_error_rate: float = 0.25
    health_history_size: int = 20
    latency_regression_factor: float = 2.0

    # Rollback
    rollback_services: str = "website,cms,api-gateway"
    rollback_lock_ttl_seconds: float = 7200.0
    config_grace_seconds: float = 30.0
    images_grace_seconds: float = 60.0
    code_grace_seconds: float = 90.0
    full_grace_seconds: float = 120.0

    # Backups
    config_files: str = ".env,docker-compose.yml,.kiro"
    code_excludes: str = (
        "node_modules,.next,dist,.turbo,coverage,playwright-report,test-results,"
        ".swc,tmp,logs,incidents,backups"
    )
    backups_dir: str = "backups"
    max_backups: int = 10
    max_config_backups: int = 20
    backup_lock_timeout_seconds: float = 600.0
    backup_schedule_interval: float = 3600.0
    database_service: str = "couchdb"
    database_start_grace_seconds: float = 15.0
    couchdb_url: str = "http://localhost:5984"
    couchdb_user: str = "admin"
    couchdb_password: str = ""
    media_service: str = "media"
    media_path: str = "/data/media"
    media_start_grace_seconds: float = 10.0
    image_name_template: str = "{project}_{service}"

    # Incidents and logs
    incidents_dir: str = "incidents"
    incident_log_tail: int = 100
    logs_dir: str = "logs"
    log_level: str = "INFO"

    # Status API (dashboard/app.py)
    status_api_host: str = "0.0.0.0"
    status_api_port: int = 8090

    def service_specs(self) -> list[ServiceSpec]:
        """Parse HEALTH_SERVICES into probe targets, preserving configured order."""
        specs = []
        for entry in _split(self.health_services):
            name, sep, url = entry.partition("=")
            if not sep or not url.strip():
                raise ValueError(f"Invalid HEALTH_SERVICES entry: {entry!r} (expected name=url)")
            name = name.strip()
            required = not name.endswith("?")
            specs.append(ServiceSpec(name=name.rstrip("?"), url=url.strip(), required=required))
        return specs

    def rollback_service_names(self) -> list[str]:
        return _split(self.rollback_services)

    def config_file_names(self) -> list[str]:
        return _split(self.config_files)

    def code_exclude_names(self) -> list[str]:
        return _split(self.code_excludes)


def get_settings() -> Settings:
    """Return loaded settings from environment (and .env if present)."""
    return Settings()
