"""The definitions bundled with the package; always-available fallback source."""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Dict, List, Optional

from .constants import (
    ADDONS_DIR,
    CORE_DIR,
    EMBEDDED_COMMIT,
    EMBEDDED_PRIORITY,
    EMBEDDED_SOURCE_NAME,
    EMBEDDED_URL_PREFIX,
    SERVICE_FILENAME,
    SOURCE_TYPE_EMBEDDED,
)
from .errors import SchemaError, ServiceNotFoundError, SourceError
from .loader import parse_service_definition
from .models import ServiceDefinition
from .source import SourceInfo, SourceProvider

logger = logging.getLogger(__name__)

BUNDLE_PATH = Path(__file__).with_name("services")


class EmbeddedSource(SourceProvider):
    """Read-only services shipped inside the package.

    The bundle is walked once, on first use. Paths are reported as
    ``embedded://services/...`` because they are not meant to be edited.
    """

    def __init__(self, root: Optional[Path | str] = None):
        self.info = SourceInfo(
            name=EMBEDDED_SOURCE_NAME,
            type=SOURCE_TYPE_EMBEDDED,
            priority=EMBEDDED_PRIORITY,
            enabled=True,
        )
        self.root = Path(root) if root is not None else BUNDLE_PATH
        self._services: Dict[str, ServiceDefinition] = {}
        self._paths: Dict[str, str] = {}
        self._loaded = False
        self._load_lock = threading.Lock()

    def _ensure_loaded(self) -> None:
        with self._load_lock:
            if self._loaded:
                return
            services: Dict[str, ServiceDefinition] = {}
            paths: Dict[str, str] = {}
            if self.root.is_dir():
                for current, dirs, files in os.walk(self.root):
                    dirs.sort()
                    if SERVICE_FILENAME not in files:
                        continue
                    path = Path(current) / SERVICE_FILENAME
                    try:
                        definition = parse_service_definition(path.read_bytes())
                    except (OSError, SchemaError) as exc:
                        raise SourceError(f"failed to load embedded services: {path}: {exc}") from exc
                    services[definition.metadata.name] = definition
                    relative = path.relative_to(self.root).as_posix()
                    paths[definition.metadata.name] = f"{EMBEDDED_URL_PREFIX}services/{relative}"
            else:
                logger.warning("Embedded service bundle missing at %s", self.root)
            self._services = services
            self._paths = paths
            self._loaded = True
            logger.debug("Loaded %d embedded services", len(services))

    def load(self, cancel: Optional[threading.Event] = None) -> List[ServiceDefinition]:
        self._ensure_loaded()
        return list(self._services.values())

    def load_service(self, name: str, cancel: Optional[threading.Event] = None) -> ServiceDefinition:
        self._ensure_loaded()
        definition = self._services.get(name)
        if definition is None:
            raise ServiceNotFoundError(f"service {name} not found in embedded source")
        return definition

    def list_services(self, cancel: Optional[threading.Event] = None) -> List[str]:
        self._ensure_loaded()
        return list(self._services)

    def get_service_path(self, name: str) -> str:
        self._ensure_loaded()
        if name in self._paths:
            return self._paths[name]
        if (self.root / CORE_DIR / name / SERVICE_FILENAME).is_file():
            return f"{EMBEDDED_URL_PREFIX}services/{CORE_DIR}/{name}/{SERVICE_FILENAME}"
        return f"{EMBEDDED_URL_PREFIX}services/{ADDONS_DIR}/{name}/{SERVICE_FILENAME}"

    def update(self, cancel: Optional[threading.Event] = None) -> None:
        return None

    def get_commit(self) -> str:
        return EMBEDDED_COMMIT

    def has_service(self, name: str) -> bool:
        self._ensure_loaded()
        return name in self._services

    def get_categories(self) -> List[str]:
        self._ensure_loaded()
        return sorted({d.metadata.category for d in self._services.values()})

    def get_core_services(self) -> List[ServiceDefinition]:
        self._ensure_loaded()
        return [d for d in self._services.values() if not d.is_addon]

    def get_addon_services(self) -> List[ServiceDefinition]:
        self._ensure_loaded()
        return [d for d in self._services.values() if d.is_addon]

    def get_services_by_category(self, category: str) -> List[ServiceDefinition]:
        self._ensure_loaded()
        return [d for d in self._services.values() if d.metadata.category == category]
