"""Source provider contract and the local filesystem provider."""

from __future__ import annotations

import logging
import shutil
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .constants import (
    ADDONS_DIR,
    CORE_DIR,
    SERVICE_FILENAME,
    SOURCE_TYPE_LOCAL,
    default_services_dir,
    expand_home,
)
from .errors import ServiceNotFoundError, SourceError
from .loader import (
    discover_services,
    find_service_file,
    load_service_definition,
    load_services_from_dir,
    save_service_definition,
)
from .models import ServiceDefinition, Source

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceInfo:
    """Identity shared by every provider: name, type, priority, enabled."""
    name: str
    type: str
    priority: int
    enabled: bool = True


class SourceProvider(ABC):
    """A prioritized supplier of service definitions.

    Operations that may touch the network accept ``cancel``; once that event
    is set, running subprocesses are terminated.
    """

    info: SourceInfo

    @property
    def name(self) -> str:
        return self.info.name

    @property
    def type(self) -> str:
        return self.info.type

    @property
    def priority(self) -> int:
        return self.info.priority

    @property
    def is_enabled(self) -> bool:
        return self.info.enabled

    @abstractmethod
    def load(self, cancel: Optional[threading.Event] = None) -> List[ServiceDefinition]:
        """Load every definition this source provides."""

    @abstractmethod
    def load_service(self, name: str, cancel: Optional[threading.Event] = None) -> ServiceDefinition:
        """Load one definition or raise ``ServiceNotFoundError``."""

    @abstractmethod
    def list_services(self, cancel: Optional[threading.Event] = None) -> List[str]:
        """Names of the services this source provides."""

    @abstractmethod
    def get_service_path(self, name: str) -> str:
        """Where the definition lives (or would live) for *name*."""

    @abstractmethod
    def update(self, cancel: Optional[threading.Event] = None) -> None:
        """Refresh from origin; a no-op for sources without one."""

    @abstractmethod
    def get_commit(self) -> str:
        """Current revision identifier, empty when not applicable."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, priority={self.priority})"


class LocalSource(SourceProvider):
    """Definitions kept in a directory on this machine.

    A missing root directory means an empty source, not an error.
    """

    def __init__(self, source: Source):
        self.info = SourceInfo(
            name=source.name,
            type=SOURCE_TYPE_LOCAL,
            priority=source.priority,
            enabled=source.enabled,
        )
        self.path = expand_home(source.path) if source.path else default_services_dir()

    def _exists(self) -> bool:
        return self.path.is_dir()

    def load(self, cancel: Optional[threading.Event] = None) -> List[ServiceDefinition]:
        if not self._exists():
            return []
        return load_services_from_dir(self.path)

    def load_service(self, name: str, cancel: Optional[threading.Event] = None) -> ServiceDefinition:
        if not self._exists():
            raise SourceError(f"source directory does not exist: {self.path}")
        path = find_service_file(self.path, name)
        if path is None:
            raise ServiceNotFoundError(f"service {name} not found in source {self.name}")
        return load_service_definition(path)

    def list_services(self, cancel: Optional[threading.Event] = None) -> List[str]:
        if not self._exists():
            return []
        return discover_services(self.path)

    def get_service_path(self, name: str) -> str:
        path = find_service_file(self.path, name)
        if path is None:
            return str(self.path / name / SERVICE_FILENAME)
        return str(path)

    def update(self, cancel: Optional[threading.Event] = None) -> None:
        return None

    def get_commit(self) -> str:
        return ""

    def has_service(self, name: str) -> bool:
        return find_service_file(self.path, name) is not None

    def create_service_dir(self, name: str, is_addon: bool) -> Path:
        target = self.path / (ADDONS_DIR if is_addon else CORE_DIR) / name
        try:
            target.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise SourceError(f"failed to create service directory {target}: {exc}") from exc
        return target

    def save_service(self, definition: ServiceDefinition) -> Path:
        """Write *definition* under ``addons/`` or ``core/`` and return the file path."""
        directory = self.create_service_dir(definition.metadata.name, definition.is_addon)
        path = directory / SERVICE_FILENAME
        save_service_definition(path, definition)
        logger.info("Saved service %s to %s", definition.metadata.name, path)
        return path

    def delete_service(self, name: str) -> None:
        for candidate in (self.path / name, self.path / CORE_DIR / name, self.path / ADDONS_DIR / name):
            if candidate.exists():
                shutil.rmtree(candidate)
                logger.info("Deleted service %s from %s", name, candidate)
                return
        raise ServiceNotFoundError(f"service {name} not found")
