"""Docker Compose service controller: compose CLI for lifecycle, Docker SDK for images and stats."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

import docker
from docker.errors import DockerException, ImageNotFound, NotFound

from healthguard.controller.base import ServiceController
from healthguard.errors import ControllerError
from healthguard.models import ContainerUsage

logger = logging.getLogger(__name__)


def _cpu_percent(stats: dict) -> float:
    """CPU percentage from a single Docker stats snapshot."""
    try:
        cpu_stats = stats.get("cpu_stats", {})
        precpu_stats = stats.get("precpu_stats", {})
        cpu_usage = cpu_stats.get("cpu_usage", {})
        cpu_delta = cpu_usage.get("total_usage", 0) - precpu_stats.get("cpu_usage", {}).get(
            "total_usage", 0
        )
        system_delta = cpu_stats.get("system_cpu_usage", 0) - precpu_stats.get("system_cpu_usage", 0)
        online_cpus = cpu_stats.get("online_cpus") or len(cpu_usage.get("percpu_usage") or [1])
        if system_delta > 0 and cpu_delta > 0:
            return (cpu_delta / system_delta) * online_cpus * 100.0
    except (KeyError, TypeError, ZeroDivisionError) as e:
        logger.debug("Error parsing CPU stats: %s", e)
    return 0.0


def _memory_percent(stats: dict) -> float:
    try:
        memory_stats = stats.get("memory_stats", {})
        usage = memory_stats.get("usage", 0)
        limit = memory_stats.get("limit", 0)
        cache = memory_stats.get("stats", {}).get("cache", 0)
        actual = usage - cache if usage > cache else usage
        if limit > 0:
            return actual / limit * 100.0
    except (KeyError, TypeError, ZeroDivisionError) as e:
        logger.debug("Error parsing memory stats: %s", e)
    return 0.0


class ComposeController(ServiceController):
    """
    Controls a Docker Compose deployment.

    Lifecycle commands (up, down, build, logs, exec) go through the
    `docker compose` CLI with an explicit timeout each; image tagging and
    container stats use the Docker SDK.
    """

    def __init__(
        self,
        project_dir: str | Path = ".",
        compose_file: str = "docker-compose.yml",
        project_name: str = "saas-platform",
        command_timeout: float = 120.0,
        build_timeout: float = 1800.0,
        stop_timeout: int = 30,
        media_service: str = "media",
        media_path: str = "/data/media",
        image_name_template: str = "{project}_{service}",
        docker_client: docker.DockerClient | None = None,
    ) -> None:
        self.project_dir = Path(project_dir)
        self.compose_file = compose_file
        self.project_name = project_name
        self.command_timeout = command_timeout
        self.build_timeout = build_timeout
        self.stop_timeout = stop_timeout
        self.media_service = media_service
        self.media_path = media_path
        self.image_name_template = image_name_template
        self._docker = docker_client

    @property
    def docker(self) -> docker.DockerClient:
        if self._docker is None:
            try:
                self._docker = docker.from_env()
            except DockerException as e:
                raise ControllerError(f"Failed to connect to Docker daemon: {e}") from e
        return self._docker

    def _compose(
        self,
        *args: str,
        timeout: float | None = None,
        check: bool = True,
        stdin=None,
        stdout=None,
    ) -> subprocess.CompletedProcess:
        cmd = ["docker", "compose", "-f", self.compose_file, "-p", self.project_name, *args]
        try:
            result = subprocess.run(
                cmd,
                cwd=self.project_dir,
                stdin=stdin,
                stdout=stdout if stdout is not None else subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=timeout or self.command_timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise ControllerError(f"docker compose {args[0]} timed out after {e.timeout}s") from e
        except OSError as e:
            raise ControllerError(f"docker compose unavailable: {e}") from e
        if check and result.returncode != 0:
            stderr = (result.stderr or b"").decode("utf-8", errors="replace").strip()
            raise ControllerError(f"docker compose {args[0]} failed ({result.returncode}): {stderr}")
        return result

    def _lines(self, *args: str) -> list[str]:
        out = self._compose(*args).stdout or b""
        return [line.strip() for line in out.decode("utf-8", errors="replace").splitlines() if line.strip()]

    def image_name(self, service: str) -> str:
        return self.image_name_template.format(project=self.project_name, service=service)

    def services(self) -> list[str]:
        return self._lines("config", "--services")

    def running_services(self) -> list[str]:
        return self._lines("ps", "--services", "--filter", "status=running")

    def config_valid(self) -> bool:
        try:
            return self._compose("config", "-q", check=False).returncode == 0
        except ControllerError as e:
            logger.warning("Compose config check failed: %s", e)
            return False

    def start(self, services: list[str] | None = None) -> None:
        logger.info("Starting services", extra={"services": services or "all"})
        self._compose("up", "-d", *(services or []))

    def stop(
        self,
        services: list[str] | None = None,
        remove_volumes: bool = False,
        timeout: int | None = None,
    ) -> None:
        grace = str(timeout if timeout is not None else self.stop_timeout)
        # Compose waits up to grace for containers; allow that on top of the command timeout
        limit = self.command_timeout + float(grace)
        if services:
            logger.info("Stopping services", extra={"services": services})
            self._compose("stop", "--timeout", grace, *services, timeout=limit)
            return
        args = ["down", "--timeout", grace]
        if remove_volumes:
            args.append("-v")
        logger.info("Stopping all services", extra={"remove_volumes": remove_volumes})
        self._compose(*args, timeout=limit)

    def rebuild(self, services: list[str] | None = None, no_cache: bool = False) -> None:
        args = ["build"]
        if no_cache:
            args.append("--no-cache")
        logger.info("Rebuilding services", extra={"services": services or "all", "no_cache": no_cache})
        self._compose(*args, *(services or []), timeout=self.build_timeout)

    def image_exists(self, service: str, tag: str) -> bool:
        try:
            self.docker.images.get(f"{self.image_name(service)}:{tag}")
            return True
        except ImageNotFound:
            return False
        except DockerException as e:
            raise ControllerError(f"Image lookup failed for {service}: {e}") from e

    def tag_image(self, service: str, source_tag: str, target_tag: str) -> bool:
        name = self.image_name(service)
        try:
            image = self.docker.images.get(f"{name}:{source_tag}")
        except ImageNotFound:
            return False
        except DockerException as e:
            raise ControllerError(f"Image lookup failed for {service}: {e}") from e
        try:
            image.tag(name, tag=target_tag)
        except DockerException as e:
            raise ControllerError(f"Tagging {name}:{source_tag} as {target_tag} failed: {e}") from e
        logger.info("Tagged image %s:%s as %s", name, source_tag, target_tag)
        return True

    def image_tags(self) -> dict[str, str]:
        tags: dict[str, str] = {}
        for service in self.services():
            name = self.image_name(service)
            try:
                image = self.docker.images.get(f"{name}:latest")
            except ImageNotFound:
                continue
            except DockerException as e:
                logger.debug("Image lookup failed for %s: %s", service, e)
                continue
            tags[service] = image.tags[0] if image.tags else image.short_id
        return tags

    def container_status(self) -> str:
        out = self._compose("ps", "--all").stdout or b""
        return out.decode("utf-8", errors="replace")

    def resource_usage(self) -> dict[str, ContainerUsage]:
        usage: dict[str, ContainerUsage] = {}
        try:
            containers = self.docker.containers.list(
                filters={"label": f"com.docker.compose.project={self.project_name}"}
            )
        except DockerException as e:
            raise ControllerError(f"Failed to list containers: {e}") from e
        for container in containers:
            try:
                stats = container.stats(stream=False)
            except (NotFound, DockerException) as e:
                logger.debug("Stats unavailable for %s: %s", container.name, e)
                continue
            usage[container.name] = ContainerUsage(
                cpu_percent=round(_cpu_percent(stats), 2),
                memory_percent=round(_memory_percent(stats), 2),
            )
        return usage

    def recent_logs(self, tail: int = 100) -> str:
        out = self._compose("logs", f"--tail={tail}", "--no-color").stdout or b""
        return out.decode("utf-8", errors="replace")

    def export_media(self, dest: Path) -> bool:
        if self.media_service not in self.running_services():
            logger.warning("Media service not running, skipping media archive")
            return False
        with open(dest, "wb") as f:
            result = self._compose(
                "exec", "-T", self.media_service, "tar", "-czf", "-", self.media_path,
                stdout=f, check=False,
            )
        if result.returncode != 0:
            logger.warning("Media archive failed", extra={"returncode": result.returncode})
            return False
        return True

    def import_media(self, src: Path) -> bool:
        if not src.is_file() or src.stat().st_size == 0:
            logger.info("No media archive to restore")
            return False
        with open(src, "rb") as f:
            # Archive members are stored relative to "/" (tar strips the leading slash)
            result = self._compose(
                "exec", "-T", self.media_service, "tar", "-xzf", "-", "-C", "/",
                stdin=f, check=False,
            )
        if result.returncode != 0:
            logger.warning("Media restore had issues", extra={"returncode": result.returncode})
            return False
        return True

    def prune(self) -> None:
        try:
            self.docker.containers.prune()
            self.docker.networks.prune()
        except DockerException as e:
            logger.warning("Docker prune failed: %s", e)
