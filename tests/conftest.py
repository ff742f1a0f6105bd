"""Shared fakes: in-memory service controller, source repository and scripted aggregator."""

from contextlib import contextmanager
from pathlib import Path

import pytest

from healthguard.alerts import AlertDispatcher
from healthguard.controller.base import ServiceController, SourceRepository
from healthguard.errors import ControllerError
from healthguard.models import ContainerUsage, HealthStatus, OverallHealth, ServiceHealth


def make_status(overall: OverallHealth = OverallHealth.HEALTHY, **kwargs) -> HealthStatus:
    per_service = kwargs.pop("per_service", None)
    if per_service is None:
        reachable = overall != OverallHealth.UNHEALTHY
        per_service = {
            "website": ServiceHealth(
                name="website",
                reachable=reachable,
                latency_ms=12.0 if reachable else None,
                last_error=None if reachable else "ConnectError: refused",
                attempts=1 if reachable else 3,
            )
        }
    return HealthStatus(overall=overall, per_service=per_service, **kwargs)


class FakeController(ServiceController):
    """Records every call; images are a set of (service, tag) pairs."""

    def __init__(self, services=None, running=None):
        self.all_services = list(services if services is not None else ["couchdb", "website", "cms", "api-gateway"])
        self.running = list(running if running is not None else self.all_services)
        self.valid = True
        self.images: set[tuple[str, str]] = {(s, "latest") for s in self.all_services}
        self.calls: list[tuple] = []
        self.fail_rebuild = False
        self.media = b""
        self.imported_media: list[bytes] = []

    def services(self):
        return list(self.all_services)

    def running_services(self):
        return list(self.running)

    def config_valid(self):
        return self.valid

    def start(self, services=None):
        self.calls.append(("start", tuple(services or ())))
        for s in services or self.all_services:
            if s not in self.running:
                self.running.append(s)

    def stop(self, services=None, remove_volumes=False, timeout=None):
        self.calls.append(("stop", tuple(services or ()), remove_volumes))
        self.running = [s for s in self.running if services and s not in services]

    def rebuild(self, services=None, no_cache=False):
        self.calls.append(("rebuild", tuple(services or ()), no_cache))
        if self.fail_rebuild:
            raise ControllerError("build failed")

    def image_exists(self, service, tag):
        return (service, tag) in self.images

    def tag_image(self, service, source_tag, target_tag):
        if (service, source_tag) not in self.images:
            return False
        self.images.add((service, target_tag))
        self.calls.append(("tag", service, source_tag, target_tag))
        return True

    def image_tags(self):
        return {s: f"saas-platform_{s}:latest" for s in self.all_services}

    def container_status(self):
        return "\n".join(f"{s} running" for s in self.running)

    def resource_usage(self):
        return {s: ContainerUsage(cpu_percent=5.0, memory_percent=20.0) for s in self.running}

    def recent_logs(self, tail=100):
        return "website | GET /api/health 500"

    def export_media(self, dest: Path):
        if not self.media:
            return False
        dest.write_bytes(self.media)
        return True

    def import_media(self, src: Path):
        self.imported_media.append(src.read_bytes())
        return True

    def prune(self):
        self.calls.append(("prune",))

    def names(self):
        return [c[0] for c in self.calls]


class FakeSource(SourceRepository):
    def __init__(self):
        self.head = "c3" * 20
        self.previous = "c2" * 20
        self.known_good = None
        self.branches: list[str] = []
        self.tags: list[str] = []
        self.resets: list[str] = []
        self.checkouts: list[str] = []
        self.dirty = 0

    def head_commit(self):
        return self.head

    def current_branch(self):
        return "main"

    def dirty_files(self):
        return self.dirty

    def previous_revision(self):
        return self.previous

    def known_good_revision(self):
        return self.known_good

    def create_backup_branch(self, name):
        self.branches.append(name)
        return name

    def stash(self, message):
        return self.dirty > 0

    def reset_hard(self, revision):
        self.resets.append(revision)

    @contextmanager
    def checkout(self, revision):
        self.checkouts.append(revision)
        yield revision

    def tag(self, name, message):
        self.tags.append(name)


class ScriptedAggregator:
    """Returns the scripted verdicts in order, repeating the last one."""

    def __init__(self, *verdicts: OverallHealth):
        self.verdicts = list(verdicts) or [OverallHealth.HEALTHY]
        self.checks = 0
        self.latest = None
        self.history: list[HealthStatus] = []
        self.published: list[HealthStatus] = []

    def check(self) -> HealthStatus:
        index = min(self.checks, len(self.verdicts) - 1)
        self.checks += 1
        status = make_status(self.verdicts[index])
        self.latest = status
        self.history.append(status)
        return status

    def publish(self, status: HealthStatus) -> None:
        self.latest = status
        self.published.append(status)


@pytest.fixture
def controller():
    return FakeController()


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def alerts(tmp_path):
    return AlertDispatcher(tmp_path / "logs" / "alerts.jsonl", system="test-platform")
