"""Source tree operations over GitPython."""

from __future__ import annotations

import logging
import re
from contextlib import contextmanager
from pathlib import Path

import git

from healthguard.controller.base import SourceRepository
from healthguard.errors import ControllerError

logger = logging.getLogger(__name__)

KNOWN_GOOD_TAG_PREFIXES = ("deploy-success-", "rollback-success-")
# Commit messages marking a deployment that was verified good
SUCCESS_MARKER = re.compile(r"✅|\bsuccess\b", re.IGNORECASE)
COMMIT_SEARCH_DEPTH = 200


class GitSourceRepository(SourceRepository):
    """Reads and resets the deployed source tree; every failure surfaces as ControllerError."""

    def __init__(self, path: str | Path = ".") -> None:
        self.path = Path(path)
        try:
            self.repo = git.Repo(self.path)
        except (git.exc.InvalidGitRepositoryError, git.exc.NoSuchPathError) as e:
            raise ControllerError(f"Not a git repository: {self.path}") from e

    def head_commit(self) -> str:
        return self.repo.head.commit.hexsha

    def current_branch(self) -> str:
        if self.repo.head.is_detached:
            return "HEAD"
        return self.repo.active_branch.name

    def dirty_files(self) -> int:
        output = self.repo.git.status("--porcelain")
        return len([line for line in output.splitlines() if line.strip()])

    def previous_revision(self) -> str:
        try:
            return self.repo.commit("HEAD~1").hexsha
        except (git.exc.BadName, ValueError) as e:
            raise ControllerError("No previous revision to roll back to") from e

    def known_good_revision(self) -> str | None:
        """Newest known-good tag; else the newest commit with a success marker."""
        head = self.head_commit()
        tagged = [
            t
            for t in self.repo.tags
            if t.name.startswith(KNOWN_GOOD_TAG_PREFIXES) and t.commit.hexsha != head
        ]
        if tagged:
            newest = max(tagged, key=lambda t: t.commit.committed_date)
            return newest.commit.hexsha
        for commit in self.repo.iter_commits(max_count=COMMIT_SEARCH_DEPTH):
            if commit.hexsha == head:
                continue
            if SUCCESS_MARKER.search(commit.message or ""):
                return commit.hexsha
        return None

    def create_backup_branch(self, name: str) -> str:
        try:
            self.repo.create_head(name)
        except git.exc.GitCommandError as e:
            raise ControllerError(f"Failed to create backup branch {name}: {e}") from e
        logger.info("Created backup branch %s at %s", name, self.head_commit())
        return name

    def stash(self, message: str) -> bool:
        if not self.repo.is_dirty(untracked_files=True):
            return False
        try:
            self.repo.git.stash("push", "--include-untracked", "-m", message)
        except git.exc.GitCommandError as e:
            raise ControllerError(f"git stash failed: {e}") from e
        return True

    def reset_hard(self, revision: str) -> None:
        try:
            self.repo.git.reset("--hard", revision)
        except git.exc.GitCommandError as e:
            raise ControllerError(f"git reset --hard {revision} failed: {e}") from e
        logger.info("Source reset to %s", revision)

    @contextmanager
    def checkout(self, revision: str):
        original = self.head_commit() if self.repo.head.is_detached else self.current_branch()
        stashed = self.stash(f"healthguard: temporary checkout of {revision}")
        try:
            self.repo.git.checkout(revision)
        except git.exc.GitCommandError as e:
            if stashed:
                self.repo.git.stash("pop")
            raise ControllerError(f"Failed to check out {revision}: {e}") from e
        try:
            yield revision
        finally:
            try:
                self.repo.git.checkout(original)
                if stashed:
                    self.repo.git.stash("pop")
            except git.exc.GitCommandError as e:
                logger.error("Failed to return to %s after checkout: %s", original, e, exc_info=True)

    def tag(self, name: str, message: str) -> None:
        try:
            self.repo.create_tag(name, message=message)
        except git.exc.GitCommandError as e:
            raise ControllerError(f"Failed to create tag {name}: {e}") from e
