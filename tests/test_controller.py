"""Tests for the Docker Compose controller and the GitPython source repository."""

import subprocess
from unittest.mock import MagicMock, patch

import git
import pytest
from docker.errors import ImageNotFound

from healthguard.controller.compose import ComposeController, _cpu_percent, _memory_percent
from healthguard.controller.source import GitSourceRepository
from healthguard.errors import ControllerError


def _completed(returncode=0, stdout=b"", stderr=b""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


@patch("healthguard.controller.compose.subprocess.run")
def test_compose_commands_carry_project_and_timeout(mock_run, tmp_path):
    mock_run.return_value = _completed(stdout=b"website\ncms\n")
    controller = ComposeController(tmp_path, project_name="saas", command_timeout=42, docker_client=MagicMock())

    assert controller.running_services() == ["website", "cms"]
    cmd = mock_run.call_args[0][0]
    assert cmd[:6] == ["docker", "compose", "-f", "docker-compose.yml", "-p", "saas"]
    assert "status=running" in cmd
    assert mock_run.call_args[1]["timeout"] == 42


@patch("healthguard.controller.compose.subprocess.run")
def test_compose_failure_and_timeout_raise_controller_error(mock_run, tmp_path):
    controller = ComposeController(tmp_path, docker_client=MagicMock())

    mock_run.return_value = _completed(returncode=1, stderr=b"no such service")
    with pytest.raises(ControllerError, match="no such service"):
        controller.start(["website"])

    mock_run.side_effect = subprocess.TimeoutExpired(cmd="docker", timeout=120)
    with pytest.raises(ControllerError, match="timed out"):
        controller.rebuild(no_cache=True)


@patch("healthguard.controller.compose.subprocess.run")
def test_stop_all_with_volumes_uses_down(mock_run, tmp_path):
    mock_run.return_value = _completed()
    ComposeController(tmp_path, docker_client=MagicMock()).stop(remove_volumes=True)
    cmd = mock_run.call_args[0][0]
    assert "down" in cmd and "-v" in cmd


@patch("healthguard.controller.compose.subprocess.run")
def test_config_valid_reflects_exit_code(mock_run, tmp_path):
    controller = ComposeController(tmp_path, docker_client=MagicMock())
    mock_run.return_value = _completed(returncode=0)
    assert controller.config_valid() is True
    mock_run.return_value = _completed(returncode=15)
    assert controller.config_valid() is False


def test_tag_image_uses_project_image_name(tmp_path):
    client = MagicMock()
    image = MagicMock()
    client.images.get.return_value = image
    controller = ComposeController(tmp_path, project_name="saas", docker_client=client)

    assert controller.tag_image("website", "previous", "latest") is True
    client.images.get.assert_called_with("saas_website:previous")
    image.tag.assert_called_once_with("saas_website", tag="latest")

    client.images.get.side_effect = ImageNotFound("missing")
    assert controller.tag_image("website", "previous", "latest") is False
    assert controller.image_exists("website", "previous") is False


def test_stats_parsing():
    stats = {
        "cpu_stats": {"cpu_usage": {"total_usage": 400}, "system_cpu_usage": 2000, "online_cpus": 2},
        "precpu_stats": {"cpu_usage": {"total_usage": 200}, "system_cpu_usage": 1000},
        "memory_stats": {"usage": 600, "limit": 1000, "stats": {"cache": 100}},
    }
    assert _cpu_percent(stats) == 40.0
    assert _memory_percent(stats) == 50.0
    assert _cpu_percent({}) == 0.0
    assert _memory_percent({}) == 0.0


@pytest.fixture
def repo(tmp_path):
    repo = git.Repo.init(tmp_path / "site")
    with repo.config_writer() as cw:
        cw.set_value("user", "name", "Deploy Bot")
        cw.set_value("user", "email", "deploy@example.com")
    for i, message in enumerate(["initial", "deploy ✅ release 1", "broken change"]):
        (tmp_path / "site" / "app.txt").write_text(f"v{i}\n")
        repo.index.add(["app.txt"])
        repo.index.commit(message)
    return repo


def test_git_source_revisions(repo):
    source = GitSourceRepository(repo.working_tree_dir)
    commits = list(repo.iter_commits())

    assert source.head_commit() == commits[0].hexsha
    assert source.previous_revision() == commits[1].hexsha
    # Success-marked commit message
    assert source.known_good_revision() == commits[1].hexsha
    assert source.state()["dirty_files"] == 0


def test_git_source_prefers_known_good_tags(repo):
    source = GitSourceRepository(repo.working_tree_dir)
    first = list(repo.iter_commits())[-1]
    repo.create_tag("deploy-success-1", ref=first)
    assert source.known_good_revision() == first.hexsha


def test_git_source_reset_branch_stash_and_tag(repo, tmp_path):
    source = GitSourceRepository(repo.working_tree_dir)
    head = source.head_commit()
    (tmp_path / "site" / "app.txt").write_text("local edit\n")

    source.create_backup_branch("backup-20260101_000000")
    assert source.stash("pre-rollback") is True
    source.reset_hard(source.previous_revision())
    assert (tmp_path / "site" / "app.txt").read_text() == "v1\n"

    source.reset_hard("backup-20260101_000000")
    assert source.head_commit() == head
    source.tag("rollback-success-1", "ok")
    assert "rollback-success-1" in [t.name for t in repo.tags]


def test_git_source_checkout_restores_branch(repo):
    source = GitSourceRepository(repo.working_tree_dir)
    head = source.head_commit()
    with source.checkout(source.previous_revision()) as rev:
        assert source.head_commit() == rev
    assert source.head_commit() == head
    assert source.current_branch() in ("master", "main")


def test_not_a_repository(tmp_path):
    with pytest.raises(ControllerError):
        GitSourceRepository(tmp_path)
