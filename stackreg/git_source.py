"""Service definitions fetched from a remote Git repository."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .cache import Cache
from .constants import DEFAULT_BRANCH, REPOSITORY_FILENAME, SERVICE_FILENAME, SOURCE_TYPE_GIT, expand_home
from .errors import GitCancelledError, GitError, ServiceNotFoundError
from .loader import (
    discover_services,
    find_service_file,
    load_service_definition,
    load_services_from_dir,
    load_source_repository,
)
from .models import ServiceDefinition, Source, SourceRepository
from .source import SourceInfo, SourceProvider

logger = logging.getLogger(__name__)

GIT_BINARY = "git"
POLL_INTERVAL = 0.1
TERMINATE_GRACE = 5.0


class GitSource(SourceProvider):
    """A shallow single-branch clone kept in the cache directory.

    The clone is made on first use and pulled again only once the cache TTL
    has elapsed. When ``ssh_key`` is set, git runs with
    ``StrictHostKeyChecking=no`` so that private catalogs on unknown hosts
    can be reached.
    """

    def __init__(self, source: Source, cache: Cache):
        self.info = SourceInfo(
            name=source.name,
            type=SOURCE_TYPE_GIT,
            priority=source.priority,
            enabled=source.enabled,
        )
        self.url = source.url
        self.branch = source.branch or DEFAULT_BRANCH
        self.ssh_key = source.ssh_key
        self.sub_path = source.path
        self.verified = source.verified
        self.cache = cache
        self.commit = ""

    # ── paths ───────────────────────────────────────────────────────

    @property
    def repo_path(self) -> Path:
        return self.cache.get_repo_path(self.name)

    @property
    def services_path(self) -> Path:
        if self.sub_path:
            return self.repo_path / self.sub_path
        return self.repo_path

    def is_cloned(self) -> bool:
        return (self.repo_path / ".git").exists()

    # ── provider contract ───────────────────────────────────────────

    def load(self, cancel: Optional[threading.Event] = None) -> List[ServiceDefinition]:
        self.ensure_cloned(cancel)
        return load_services_from_dir(self.services_path)

    def load_service(self, name: str, cancel: Optional[threading.Event] = None) -> ServiceDefinition:
        self.ensure_cloned(cancel)
        path = find_service_file(self.services_path, name)
        if path is None:
            raise ServiceNotFoundError(f"service {name} not found in source {self.name}")
        return load_service_definition(path)

    def list_services(self, cancel: Optional[threading.Event] = None) -> List[str]:
        self.ensure_cloned(cancel)
        return discover_services(self.services_path)

    def get_service_path(self, name: str) -> str:
        path = find_service_file(self.services_path, name)
        if path is None:
            return str(self.services_path / name / SERVICE_FILENAME)
        return str(path)

    def update(self, cancel: Optional[threading.Event] = None) -> None:
        """Pull the branch from origin, cloning first when nothing is cached."""
        if not self.is_cloned():
            self.clone(cancel)
            return
        logger.info("Pulling %s (%s)", self.name, self.branch)
        self._run_git(["pull", "origin", self.branch], cwd=self.repo_path, cancel=cancel, action="git pull")
        self.cache.mark_updated(self.name)
        self._update_commit_hash(cancel)

    def get_commit(self) -> str:
        """Checked-out revision; before any git call in this process, the cached one."""
        return self.commit or self.cache.get_commit(self.name)

    # ── git operations ──────────────────────────────────────────────

    def ensure_cloned(self, cancel: Optional[threading.Event] = None) -> None:
        if not self.is_cloned():
            self.clone(cancel)
            return
        if self.cache.needs_update(self.name):
            self.update(cancel)
            return
        self._update_commit_hash(cancel)

    def clone(self, cancel: Optional[threading.Event] = None) -> None:
        target = self.repo_path
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise GitError(f"failed to create cache directory: {exc}") from exc
        if target.exists():
            shutil.rmtree(target)

        logger.info("Cloning %s from %s (%s)", self.name, self.url, self.branch)
        self._run_git(
            ["clone", "--branch", self.branch, "--single-branch", "--depth", "1", self.url, str(target)],
            cancel=cancel,
            action="git clone",
        )
        self.cache.mark_updated(self.name)
        self.cache.set_source_info(self.name, url=self.url, branch=self.branch)
        self._update_commit_hash(cancel)

    def fetch(self, cancel: Optional[threading.Event] = None) -> None:
        """Fetch the remote branch without touching the working tree."""
        if not self.is_cloned():
            self.clone(cancel)
            return
        self._run_git(["fetch", "origin", self.branch], cwd=self.repo_path, cancel=cancel, action="git fetch")

    def pending_commits(self, cancel: Optional[threading.Event] = None) -> int:
        """Fetch, then count commits on origin not yet checked out."""
        if not self.is_cloned():
            self.clone(cancel)
            return 0
        self.fetch(cancel)
        output = self._run_git(
            ["rev-list", "--count", "HEAD..FETCH_HEAD"], cwd=self.repo_path, cancel=cancel, action="git rev-list"
        )
        try:
            return int(output.strip() or 0)
        except ValueError as exc:
            raise GitError("unexpected rev-list output", output) from exc

    def _update_commit_hash(self, cancel: Optional[threading.Event] = None) -> None:
        try:
            output = self._run_git(["rev-parse", "HEAD"], cwd=self.repo_path, cancel=cancel, action="rev-parse")
        except GitCancelledError:
            raise
        except GitError as exc:
            raise GitError(f"failed to get commit hash: {exc}") from exc
        self.commit = output.strip()
        self.cache.set_commit(self.name, self.commit)

    def _environment(self) -> Optional[Dict[str, str]]:
        if not self.ssh_key:
            return None
        key = expand_home(self.ssh_key)
        env = dict(os.environ)
        env["GIT_SSH_COMMAND"] = f"ssh -i {key} -o StrictHostKeyChecking=no"
        return env

    def _run_git(
        self,
        args: Sequence[str],
        cwd: Optional[Path] = None,
        cancel: Optional[threading.Event] = None,
        action: str = "git",
    ) -> str:
        """Run git and return its combined output.

        While the command runs, *cancel* is polled; once it is set the process
        is terminated, then killed if it does not exit within the grace period.
        """
        if cancel is not None and cancel.is_set():
            raise GitCancelledError(f"{action} cancelled")

        try:
            proc = subprocess.Popen(
                [GIT_BINARY, *args],
                cwd=str(cwd) if cwd is not None else None,
                env=self._environment(),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
            )
        except OSError as exc:
            raise GitError(f"{action} failed: {exc}") from exc

        try:
            while True:
                try:
                    output, _ = proc.communicate(timeout=POLL_INTERVAL)
                    break
                except subprocess.TimeoutExpired:
                    if cancel is not None and cancel.is_set():
                        self._stop(proc)
                        raise GitCancelledError(f"{action} cancelled")
        finally:
            if proc.poll() is None:
                self._stop(proc)

        if proc.returncode != 0:
            raise GitError(f"{action} failed", output or "")
        return output or ""

    @staticmethod
    def _stop(proc: subprocess.Popen) -> None:
        proc.terminate()
        try:
            proc.wait(timeout=TERMINATE_GRACE)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()

    # ── extras ──────────────────────────────────────────────────────

    def get_repo_metadata(self) -> Optional[SourceRepository]:
        """The repository's own ``sources.yaml`` if it ships one."""
        path = self.repo_path / REPOSITORY_FILENAME
        if not path.is_file():
            return None
        return load_source_repository(path)

    def get_url(self) -> str:
        return self.url

    def get_branch(self) -> str:
        return self.branch

    def is_verified(self) -> bool:
        return self.verified

    def get_last_updated(self) -> Optional[datetime]:
        return self.cache.get_last_updated(self.name)

    def has_service(self, name: str) -> bool:
        return find_service_file(self.services_path, name) is not None
