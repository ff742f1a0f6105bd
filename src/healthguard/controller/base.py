"""Abstract capability interfaces for the container engine and the source tree."""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from pathlib import Path

from healthguard.models import ContainerUsage


class ServiceController(ABC):
    """Start/stop/rebuild named services and report their state."""

    @abstractmethod
    def services(self) -> list[str]:
        """All services defined in the deployment."""

    @abstractmethod
    def running_services(self) -> list[str]:
        """Services with a running container."""

    @abstractmethod
    def config_valid(self) -> bool:
        """True if the deployment configuration parses."""

    @abstractmethod
    def start(self, services: list[str] | None = None) -> None: ...

    @abstractmethod
    def stop(
        self,
        services: list[str] | None = None,
        remove_volumes: bool = False,
        timeout: int | None = None,
    ) -> None: ...

    @abstractmethod
    def rebuild(self, services: list[str] | None = None, no_cache: bool = False) -> None: ...

    @abstractmethod
    def image_exists(self, service: str, tag: str) -> bool: ...

    @abstractmethod
    def tag_image(self, service: str, source_tag: str, target_tag: str) -> bool:
        """Tag service image source_tag as target_tag. Returns False if source is missing."""

    @abstractmethod
    def image_tags(self) -> dict[str, str]:
        """Current image reference per service, for backup manifests."""

    @abstractmethod
    def container_status(self) -> str: ...

    @abstractmethod
    def resource_usage(self) -> dict[str, ContainerUsage]: ...

    @abstractmethod
    def recent_logs(self, tail: int = 100) -> str: ...

    @abstractmethod
    def export_media(self, dest: Path) -> bool:
        """Write a tar.gz of the media store to dest. Returns False if nothing was archived."""

    @abstractmethod
    def import_media(self, src: Path) -> bool: ...

    def prune(self) -> None:
        """Remove stopped containers and dangling networks (optional)."""


class SourceRepository(ABC):
    """Version-control operations on the deployed source tree."""

    @abstractmethod
    def head_commit(self) -> str: ...

    @abstractmethod
    def current_branch(self) -> str: ...

    @abstractmethod
    def dirty_files(self) -> int: ...

    @abstractmethod
    def previous_revision(self) -> str: ...

    @abstractmethod
    def known_good_revision(self) -> str | None:
        """Newest revision marked as a good deployment, or None."""

    @abstractmethod
    def create_backup_branch(self, name: str) -> str: ...

    @abstractmethod
    def stash(self, message: str) -> bool: ...

    @abstractmethod
    def reset_hard(self, revision: str) -> None: ...

    @abstractmethod
    def checkout(self, revision: str) -> AbstractContextManager[str]:
        """Temporarily check out revision; restores the previous head on exit."""

    @abstractmethod
    def tag(self, name: str, message: str) -> None: ...

    def state(self) -> dict:
        """Commit, branch and dirty-file count; fields default to 'unknown'."""
        state: dict = {}
        for key, fn in (
            ("commit", self.head_commit),
            ("branch", self.current_branch),
            ("dirty_files", self.dirty_files),
        ):
            try:
                state[key] = fn()
            except Exception:  # noqa: BLE001
                state[key] = "unknown"
        return state
