"""Shared data models for health, rollback, backup, incident and alert records."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OverallHealth(str, Enum):
    """System-wide health verdict for one poll cycle."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class ServiceSpec(BaseModel):
    """A service to probe: name, health endpoint, and whether it is required."""

    name: str
    url: str
    required: bool = True


class ServiceHealth(BaseModel):
    """Result of probing one service."""

    name: str
    reachable: bool
    latency_ms: float | None = None
    last_error: str | None = None
    attempts: int = 0
    status_code: int | None = None


class ContainerUsage(BaseModel):
    cpu_percent: float = 0.0
    memory_percent: float = 0.0


class ResourceUsage(BaseModel):
    """Resource saturation sampled alongside the probes."""

    cpu_percent: float | None = None
    memory_percent: float | None = None
    disk_percent: float | None = None
    containers: dict[str, ContainerUsage] = Field(default_factory=dict)


class HealthStatus(BaseModel):
    """One aggregated health snapshot."""

    timestamp: datetime = Field(default_factory=utcnow)
    overall: OverallHealth
    per_service: dict[str, ServiceHealth] = Field(default_factory=dict)
    consecutive_failures: int = 0
    violations: list[str] = Field(default_factory=list)
    resources: ResourceUsage | None = None
    p95_latency_ms: float | None = None
    error_rate: float = 0.0

    @property
    def is_healthy(self) -> bool:
        return self.overall == OverallHealth.HEALTHY

    def unreachable_services(self) -> list[str]:
        return [name for name, s in self.per_service.items() if not s.reachable]


class RollbackLevel(str, Enum):
    """Remediation levels, least to most destructive."""

    CONFIG = "config"
    IMAGES = "images"
    CODE = "code"
    FULL_SYSTEM = "full"

    @property
    def rank(self) -> int:
        return ESCALATION_ORDER.index(self)


ESCALATION_ORDER: list[RollbackLevel] = [
    RollbackLevel.CONFIG,
    RollbackLevel.IMAGES,
    RollbackLevel.CODE,
    RollbackLevel.FULL_SYSTEM,
]

AUTO_LEVEL = "auto"

LEVEL_ALIASES: dict[str, RollbackLevel] = {
    "1": RollbackLevel.CONFIG,
    "2": RollbackLevel.IMAGES,
    "3": RollbackLevel.CODE,
    "4": RollbackLevel.FULL_SYSTEM,
    "configuration": RollbackLevel.CONFIG,
    "image": RollbackLevel.IMAGES,
    "full-system": RollbackLevel.FULL_SYSTEM,
}


def parse_level(value: str | RollbackLevel) -> RollbackLevel | Literal["auto"]:
    """Parse a CLI/API level: config|images|code|full|auto or numeric alias 1..4."""
    if isinstance(value, RollbackLevel):
        return value
    key = (value or AUTO_LEVEL).strip().lower()
    if key == AUTO_LEVEL:
        return AUTO_LEVEL
    if key in LEVEL_ALIASES:
        return LEVEL_ALIASES[key]
    try:
        return RollbackLevel(key)
    except ValueError:
        raise ValueError(
            f"Invalid rollback level: {value!r} (expected config|images|code|full|auto or 1-4)"
        ) from None


def levels_from(start: RollbackLevel) -> list[RollbackLevel]:
    """Levels to attempt, in escalation order, beginning at start."""
    return ESCALATION_ORDER[start.rank:]


class RollbackTrigger(str, Enum):
    """What initiated a rollback."""

    MANUAL = "manual"
    AUTO = "auto"
    BUILD = "build"
    HEALTH_FAILURE = "health"
    PERFORMANCE_REGRESSION = "performance"


class RollbackOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class RollbackAttempt(BaseModel):
    """
    State of one orchestrator execution.

    Levels are recorded in strictly increasing escalation order; once
    finish() has been called the attempt is terminal and rejects mutation.
    """

    id: str = Field(default_factory=lambda: f"rb-{uuid4().hex[:8]}")
    trigger: RollbackTrigger
    requested_level: RollbackLevel | Literal["auto"] = AUTO_LEVEL
    start_level: RollbackLevel | None = None
    executed_levels: list[RollbackLevel] = Field(default_factory=list)
    outcome: RollbackOutcome | None = None
    exhausted: bool = False
    cancelled: bool = False
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: datetime | None = None
    incident_id: str | None = None
    target_revision: str | None = None
    notes: list[str] = Field(default_factory=list)

    @property
    def terminal(self) -> bool:
        return self.outcome is not None

    @property
    def succeeded(self) -> bool:
        return self.outcome == RollbackOutcome.SUCCESS

    def _ensure_open(self) -> None:
        if self.terminal:
            raise ValueError(f"Rollback attempt {self.id} is already {self.outcome.value}")

    def record_level(self, level: RollbackLevel) -> None:
        """Mark level as attempted; escalation never revisits or skips backwards."""
        self._ensure_open()
        if self.executed_levels and level.rank <= self.executed_levels[-1].rank:
            raise ValueError(
                f"Escalation must be monotonic: {level.value} after {self.executed_levels[-1].value}"
            )
        self.executed_levels.append(level)

    def note(self, message: str) -> None:
        self._ensure_open()
        self.notes.append(message)

    def finish(
        self,
        outcome: RollbackOutcome,
        exhausted: bool = False,
        cancelled: bool = False,
    ) -> None:
        self._ensure_open()
        self.outcome = outcome
        self.exhausted = exhausted
        self.cancelled = cancelled
        self.finished_at = utcnow()


class BackupType(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    PRE_DEPLOYMENT = "pre-deployment"
    CRITICAL = "critical"
    CONFIG = "config"
    SUCCESS = "success"


# Backups of these types may become the system last-known-good after a healthy check
LAST_KNOWN_GOOD_TYPES = frozenset({BackupType.PRE_DEPLOYMENT, BackupType.SUCCESS})
# Backups of these types refresh the config last-known-good after a healthy check
CONFIG_LAST_KNOWN_GOOD_TYPES = frozenset(
    {BackupType.CONFIG, BackupType.PRE_DEPLOYMENT, BackupType.SUCCESS}
)


class BackupArtifacts(BaseModel):
    """Artifact names, relative to the backup directory."""

    code: str = "code.tar.gz"
    database: str = "database.json"
    media: str = "media.tar.gz"
    config: str = "config"


class BackupManifest(BaseModel):
    """Integrity manifest written alongside every backup."""

    backup_id: str
    type: BackupType
    created_at: datetime = Field(default_factory=utcnow)
    git_commit: str = "unknown"
    git_branch: str = "unknown"
    git_dirty_files: int = 0
    service_image_tags: dict[str, str] = Field(default_factory=dict)
    sizes: dict[str, int] = Field(default_factory=dict)
    database_dumped: bool = False
    media_archived: bool = False
    system_info: dict[str, str] = Field(default_factory=dict)


class Backup(BaseModel):
    id: str
    type: BackupType
    manifest: BackupManifest
    artifacts: BackupArtifacts = Field(default_factory=BackupArtifacts)
    verified: bool = False
    path: str = ""

    @property
    def total_size(self) -> int:
        return sum(self.manifest.sizes.values())


class IncidentDiagnostics(BaseModel):
    """Pre-remediation diagnostics; any category may be missing (see errors)."""

    container_status: str | None = None
    resource_usage: dict[str, Any] | None = None
    recent_logs: str | None = None
    git_state: dict[str, Any] | None = None
    health: HealthStatus | None = None
    errors: dict[str, str] = Field(default_factory=dict)


class Incident(BaseModel):
    id: str
    trigger: str
    created_at: datetime = Field(default_factory=utcnow)
    context: dict[str, Any] = Field(default_factory=dict)
    diagnostics: IncidentDiagnostics = Field(default_factory=IncidentDiagnostics)

    @property
    def partial(self) -> bool:
        return bool(self.diagnostics.errors)


class AlertLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertEvent(BaseModel):
    """Structured alert; appended to the alert log and sent to sinks."""

    timestamp: datetime = Field(default_factory=utcnow)
    level: AlertLevel
    message: str
    context: dict[str, Any] = Field(default_factory=dict)
    system: str = "saas-platform"
