"""Helpers for building service trees and registries in temporary directories."""
from __future__ import annotations

import shutil
import subprocess
from pathlib import Path
from typing import Iterable, Optional, Sequence

from stackreg.embedded import EmbeddedSource
from stackreg.models import CacheConfig, Source, SourceConfig
from stackreg.registry import Registry


def service_yaml(
    name: str,
    version: str = "1.0.0",
    category: str = "media",
    addon: bool = False,
    always: bool = False,
    required: Sequence[str] = (),
    conditional: Sequence[tuple] = (),
    repository: Optional[str] = None,
    tag: str = "latest",
    require_config: str = "",
    require_feature: str = "",
    tags: Sequence[str] = (),
) -> str:
    lines = [
        "apiVersion: stackreg.io/v1",
        "kind: Service",
        "metadata:",
        f"  name: {name}",
        f'  version: "{version}"',
        f"  category: {category}",
        f"  description: {name} test service",
        f"  tags: [{', '.join(tags)}]",
        "spec:",
        "  image:",
        f"    repository: {repository or 'example/' + name}",
        f'    tag: "{tag}"',
        "  container:",
        '    name_template: "stackreg-{{ .Name }}"',
    ]
    if required or conditional:
        lines.append("  dependencies:")
        if required:
            lines.append(f"    required: [{', '.join(required)}]")
        if conditional:
            lines.append("    conditional:")
            for dep, when in conditional:
                lines.append(f"      - name: {dep}")
                lines.append(f"        when: '{when}'")
    lines.append("conditions:")
    lines.append(f"  always: {'true' if always else 'false'}")
    lines.append(f"  requireAddon: {'true' if addon else 'false'}")
    if require_config:
        lines.append(f"  requireConfig: {require_config}")
    if require_feature:
        lines.append(f"  requireFeature: {require_feature}")
    return "\n".join(lines) + "\n"


def write_service(root: Path, name: str, subdir: str = "", **kwargs) -> Path:
    directory = Path(root) / subdir / name if subdir else Path(root) / name
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / "service.yaml"
    path.write_text(service_yaml(name, **kwargs), encoding="utf-8")
    return path


def write_override(directory: Path, name: str, body: str) -> Path:
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / "override.yaml"
    text = "apiVersion: stackreg.io/v1\nkind: ServiceOverride\nmetadata:\n" f"  name: {name}\n" + body
    path.write_text(text, encoding="utf-8")
    return path


def local_source(name: str, path: Path, priority: int, enabled: bool = True) -> Source:
    return Source(name=name, type="local", path=str(path), priority=priority, enabled=enabled)


def git_source(name: str = "community", priority: int = 0, path: str = "") -> Source:
    return Source(
        name=name,
        type="git",
        url=f"https://git.example.com/{name}.git",
        branch="main",
        path=path,
        priority=priority,
    )


def make_registry(
    tmp: Path,
    sources: Iterable[Source],
    embedded_root: Optional[Path] = None,
    ttl: str = "24h",
) -> Registry:
    if embedded_root is None:
        embedded_root = Path(tmp) / "empty-bundle"
        embedded_root.mkdir(parents=True, exist_ok=True)
    config = SourceConfig(
        sources=list(sources),
        cache=CacheConfig(directory=str(Path(tmp) / "cache"), ttl=ttl),
    )
    return Registry(config, embedded=EmbeddedSource(root=embedded_root))


class FakeGit:
    """Stands in for ``GitSource._run_git``; clones copy *template* into the target."""

    def __init__(self, template: Path, commit: str = "abc123def4567890", pending: int = 0):
        self.template = Path(template)
        self.commit = commit
        self.pending = pending
        self.calls = []

    def __call__(self, source, args, cwd=None, cancel=None, action="git"):
        self.calls.append(list(args))
        if args[0] == "clone":
            target = Path(args[-1])
            services_root = target / source.sub_path if source.sub_path else target
            shutil.copytree(self.template, services_root, dirs_exist_ok=True)
            (target / ".git").mkdir(parents=True, exist_ok=True)
            return ""
        if args[0] == "rev-parse":
            return self.commit + "\n"
        if args[0] == "rev-list":
            return f"{self.pending}\n"
        return ""


class FakeProcess:
    """Minimal ``subprocess.Popen`` double."""

    def __init__(self, output: str = "", returncode: int = 0, hang: bool = False, on_wait=None):
        self.output = output
        self.returncode = None
        self._final_code = returncode
        self.hang = hang
        self.on_wait = on_wait
        self.terminated = False
        self.killed = False

    def communicate(self, timeout=None):
        if self.hang and not self.terminated:
            if self.on_wait is not None:
                self.on_wait()
            raise subprocess.TimeoutExpired(cmd="git", timeout=timeout)
        self.returncode = self._final_code
        return self.output, None

    def poll(self):
        return self.returncode

    def terminate(self):
        self.terminated = True
        self.returncode = -15

    def kill(self):
        self.killed = True
        self.returncode = -9

    def wait(self, timeout=None):
        return self.returncode
