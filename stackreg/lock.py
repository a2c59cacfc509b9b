"""Lock files: reproducible snapshots of a resolution and drift checks against them."""

from __future__ import annotations

import hashlib
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .config import ProjectConfig
from .constants import API_VERSION, KIND_LOCK_FILE, LOCK_FILENAME
from .errors import GitCancelledError, RegistryError
from .git_source import GitSource
from .loader import load_lock_file, save_lock_file
from .models import LockedImage, LockedService, LockedSource, LockFile, LockFileMetadata
from .registry import Registry

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_CHANGED = "changed"
STATUS_MISSING = "missing"

CHANGE_ADDED = "added"
CHANGE_REMOVED = "removed"
CHANGE_MODIFIED = "modified"


@dataclass
class LockVerificationResult:
    """One drift finding; ``type`` is config, source or service."""
    type: str
    status: str
    message: str
    name: str = ""
    expected: str = ""
    actual: str = ""


@dataclass
class DiffEntry:
    type: str  # added | removed | modified
    old: str = ""
    new: str = ""


@dataclass
class LockDiff:
    sources: Dict[str, DiffEntry] = field(default_factory=dict)
    services: Dict[str, DiffEntry] = field(default_factory=dict)

    def has_changes(self) -> bool:
        return bool(self.sources or self.services)

    def is_empty(self) -> bool:
        return not self.has_changes()

    def summary(self) -> str:
        lines = []
        for label, entries in (("Source", self.sources), ("Service", self.services)):
            for name in sorted(entries):
                entry = entries[name]
                if entry.type == CHANGE_ADDED:
                    lines.append(f"+ {label} {name}: {entry.new}")
                elif entry.type == CHANGE_REMOVED:
                    lines.append(f"- {label} {name}: {entry.old}")
                else:
                    lines.append(f"~ {label} {name}: {_short(entry.old)} -> {_short(entry.new)}")
        return "\n".join(lines) if lines else "No changes"


def _short(value: str) -> str:
    return value[:12] if len(value) > 12 else value


def calculate_config_hash(config: ProjectConfig) -> str:
    digest = hashlib.sha256(config.serialize().encode("utf-8")).digest()
    return "sha256:" + digest[:16].hex()


def get_lock_file_path(project_dir: Path | str) -> Path:
    return Path(project_dir) / LOCK_FILENAME


def lock_file_exists(project_dir: Path | str) -> bool:
    return get_lock_file_path(project_dir).exists()


def _diff_entries(old: Dict[str, str], new: Dict[str, str]) -> Dict[str, DiffEntry]:
    entries: Dict[str, DiffEntry] = {}
    for name in sorted(old):
        if name not in new:
            entries[name] = DiffEntry(type=CHANGE_REMOVED, old=old[name])
        elif old[name] != new[name]:
            entries[name] = DiffEntry(type=CHANGE_MODIFIED, old=old[name], new=new[name])
    for name in sorted(new):
        if name not in old:
            entries[name] = DiffEntry(type=CHANGE_ADDED, new=new[name])
    return entries


def diff_lock_files(old: LockFile, new: LockFile) -> LockDiff:
    """Compare source commits and service definition versions of two lock files."""
    return LockDiff(
        sources=_diff_entries(
            {name: src.commit for name, src in old.sources.items()},
            {name: src.commit for name, src in new.sources.items()},
        ),
        services=_diff_entries(
            {name: svc.definition_version for name, svc in old.services.items()},
            {name: svc.definition_version for name, svc in new.services.items()},
        ),
    )


def merge_lock_files(existing: LockFile, current: LockFile, services: Iterable[str]) -> LockFile:
    """Take only *services* from *current*; everything else stays as in *existing*.

    Services named in *services* that no longer resolve are dropped. Services
    that are new in *current* are added.
    """
    wanted = set(services)
    merged: Dict[str, LockedService] = {}
    for name, locked in existing.services.items():
        if name not in wanted:
            merged[name] = locked.model_copy(deep=True)
        elif name in current.services:
            merged[name] = current.services[name].model_copy(deep=True)
    for name, locked in current.services.items():
        if name not in existing.services:
            merged[name] = locked.model_copy(deep=True)

    return LockFile(
        api_version=existing.api_version,
        kind=existing.kind,
        metadata=current.metadata.model_copy(deep=True),
        sources={name: src.model_copy(deep=True) for name, src in existing.sources.items()},
        services=merged,
        install_order=list(current.install_order),
        generated_files=dict(existing.generated_files),
    )


class LockManager:
    """Generates, verifies, diffs and updates lock files for one registry."""

    def __init__(self, registry: Registry, cli_version: str = ""):
        self.registry = registry
        self.cli_version = cli_version

    def generate_lock_file(
        self,
        config: ProjectConfig,
        output_path: Optional[Path | str] = None,
        cancel: Optional[threading.Event] = None,
    ) -> LockFile:
        graph = self.registry.resolve(config, cancel=cancel)
        for error in graph.errors:
            logger.warning("Resolution error: %s", error)

        lock = LockFile(
            api_version=API_VERSION,
            kind=KIND_LOCK_FILE,
            metadata=LockFileMetadata(
                version=1,
                generated_at=datetime.now(timezone.utc),
                cli_version=self.cli_version,
                config_hash=calculate_config_hash(config),
            ),
            install_order=list(graph.order),
        )

        for provider in self.registry.sources():
            if isinstance(provider, GitSource):
                lock.sources[provider.name] = LockedSource(
                    url=provider.get_url(),
                    commit=provider.get_commit(),
                    branch=provider.get_branch(),
                    fetched_at=provider.get_last_updated(),
                )

        for name in sorted(graph.services):
            resolved = graph.services[name]
            if not resolved.enabled:
                continue
            final = resolved.final_definition or resolved.definition
            lock.services[name] = LockedService(
                source=resolved.source,
                definition_version=final.metadata.version,
                image=LockedImage(repository=final.spec.image.repository, tag=final.spec.image.tag),
                resolved_from=resolved.source_path,
                enabled=resolved.enabled,
            )

        if output_path:
            save_lock_file(output_path, lock)
            logger.info("Wrote lock file %s (%d services)", output_path, len(lock.services))
        return lock

    def load_lock_file(self, path: Path | str) -> LockFile:
        return load_lock_file(path)

    def verify(
        self, config: ProjectConfig, lock: LockFile, cancel: Optional[threading.Event] = None
    ) -> List[LockVerificationResult]:
        """Report every way the current state departs from *lock*; empty means in sync."""
        results: List[LockVerificationResult] = []

        current_hash = calculate_config_hash(config)
        if current_hash != lock.metadata.config_hash:
            results.append(
                LockVerificationResult(
                    type="config",
                    status=STATUS_CHANGED,
                    message="Configuration has changed since lock file was generated",
                    expected=lock.metadata.config_hash,
                    actual=current_hash,
                )
            )

        for name in sorted(lock.sources):
            locked = lock.sources[name]
            provider = self.registry.get_source(name)
            if provider is None:
                results.append(
                    LockVerificationResult(type="source", name=name, status=STATUS_MISSING, message="Source not found")
                )
                continue
            if isinstance(provider, GitSource):
                self._refresh_commit(provider, cancel)
            commit = provider.get_commit()
            if commit != locked.commit:
                results.append(
                    LockVerificationResult(
                        type="source",
                        name=name,
                        status=STATUS_CHANGED,
                        message="Source commit has changed",
                        expected=locked.commit,
                        actual=commit,
                    )
                )

        for name in sorted(lock.services):
            locked = lock.services[name]
            if not locked.enabled:
                continue
            try:
                resolved = self.registry.resolver.resolve_service(config, name, cancel=cancel)
            except GitCancelledError:
                raise
            except (RegistryError, OSError) as exc:
                logger.debug("Locked service %s no longer resolves: %s", name, exc)
                results.append(
                    LockVerificationResult(type="service", name=name, status=STATUS_MISSING, message="Service not found")
                )
                continue

            final = resolved.final_definition or resolved.definition
            checks = (
                ("Service source changed", locked.source, resolved.source),
                ("Service definition version changed", locked.definition_version, final.metadata.version),
                ("Image repository changed", locked.image.repository, final.spec.image.repository),
                ("Image tag changed", locked.image.tag, final.spec.image.tag),
            )
            for message, expected, actual in checks:
                if expected != actual:
                    results.append(
                        LockVerificationResult(
                            type="service",
                            name=name,
                            status=STATUS_CHANGED,
                            message=message,
                            expected=expected,
                            actual=actual,
                        )
                    )
        return results

    @staticmethod
    def _refresh_commit(provider: GitSource, cancel: Optional[threading.Event]) -> None:
        try:
            provider.ensure_cloned(cancel)
        except GitCancelledError:
            raise
        except (RegistryError, OSError) as exc:
            logger.warning("Could not refresh source %s, using cached commit: %s", provider.name, exc)

    def diff(self, config: ProjectConfig, lock: LockFile, cancel: Optional[threading.Event] = None) -> LockDiff:
        current = self.generate_lock_file(config, cancel=cancel)
        return diff_lock_files(lock, current)

    def update(
        self,
        config: ProjectConfig,
        lock: Optional[LockFile] = None,
        services: Optional[Iterable[str]] = None,
        output_path: Optional[Path | str] = None,
        cancel: Optional[threading.Event] = None,
    ) -> LockFile:
        """Refresh sources, then regenerate; with *services*, only those entries change."""
        self.registry.update(cancel=cancel)
        current = self.generate_lock_file(config, cancel=cancel)

        selected = list(services or [])
        result = current
        if selected and lock is not None:
            result = merge_lock_files(lock, current, selected)

        if output_path:
            save_lock_file(output_path, result)
            logger.info("Wrote lock file %s", output_path)
        return result
