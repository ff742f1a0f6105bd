"""Resource saturation sampling: per-container CPU/memory and disk usage."""

from __future__ import annotations

import logging
from pathlib import Path

import psutil

from healthguard.controller.base import ServiceController
from healthguard.models import ResourceUsage

logger = logging.getLogger(__name__)


class ResourceSampler:
    """
    Samples resources for the Degraded thresholds.

    With a controller, CPU and memory are the highest per-container values;
    without one (or if the engine is unreachable) host values from psutil are
    used. Disk usage is always taken for the filesystem holding disk_path.
    """

    def __init__(self, controller: ServiceController | None = None, disk_path: str | Path = "/") -> None:
        self._controller = controller
        self._disk_path = str(disk_path)

    def sample(self) -> ResourceUsage:
        containers = {}
        if self._controller is not None:
            try:
                containers = self._controller.resource_usage()
            except Exception as e:  # noqa: BLE001
                logger.debug("Container stats unavailable: %s", e)
        if containers:
            cpu = max(c.cpu_percent for c in containers.values())
            memory = max(c.memory_percent for c in containers.values())
        else:
            cpu = psutil.cpu_percent(interval=None)
            memory = psutil.virtual_memory().percent
        disk = None
        try:
            disk = psutil.disk_usage(self._disk_path).percent
        except OSError as e:
            logger.debug("Disk usage unavailable for %s: %s", self._disk_path, e)
        return ResourceUsage(
            cpu_percent=cpu,
            memory_percent=memory,
            disk_percent=disk,
            containers=containers,
        )
