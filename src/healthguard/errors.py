"""Error taxonomy for probing, remediation, backups and rollback exclusion."""


class HealthguardError(Exception):
    """Base class for all healthguard errors."""


class ProbeFailure(HealthguardError):
    """A single health probe attempt failed (network error, timeout or non-2xx)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RemediationFailure(HealthguardError):
    """A rollback level could not carry out its remediation."""

    def __init__(self, message: str, level: str | None = None) -> None:
        super().__init__(message)
        self.level = level


class BackupIntegrityFailure(HealthguardError):
    """A backup is missing artifacts, has no manifest, or has a corrupt archive."""

    def __init__(self, message: str, backup_id: str | None = None) -> None:
        super().__init__(message)
        self.backup_id = backup_id


class ConcurrencyConflict(HealthguardError):
    """An exclusive operation (rollback, backup, restore) is already in progress."""

    def __init__(self, message: str, holder: dict | None = None) -> None:
        super().__init__(message)
        self.holder = holder or {}


class ExhaustedEscalation(HealthguardError):
    """Every rollback level failed verification; manual intervention is required."""

    def __init__(self, message: str, attempt_id: str | None = None, incident_id: str | None = None) -> None:
        super().__init__(message)
        self.attempt_id = attempt_id
        self.incident_id = incident_id


class ControllerError(HealthguardError):
    """The container engine or source repository rejected or timed out a command."""
