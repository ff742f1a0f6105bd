"""Tiered rollback: config, images, code, full system."""

from healthguard.rollback.orchestrator import RollbackOrchestrator, require_success
from healthguard.rollback.remediation import (
    CodeRollback,
    ConfigRollback,
    FullSystemRollback,
    ImageRollback,
    LevelHandler,
)

__all__ = [
    "CodeRollback",
    "ConfigRollback",
    "FullSystemRollback",
    "ImageRollback",
    "LevelHandler",
    "RollbackOrchestrator",
    "require_success",
]
