"""
Capabilities the orchestrator needs from the outside world.

ServiceController starts, stops and rebuilds named services; SourceRepository
inspects and resets the deployed source tree. Docker Compose and GitPython
implementations are provided; tests use in-memory fakes.
"""

from healthguard.controller.base import ServiceController, SourceRepository
from healthguard.controller.compose import ComposeController
from healthguard.controller.source import GitSourceRepository

__all__ = ["ComposeController", "GitSourceRepository", "ServiceController", "SourceRepository"]
