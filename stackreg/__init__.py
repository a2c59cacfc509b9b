"""Service registry: prioritized definition sources, resolution and lock files."""

__version__ = "0.3.0"

from .config import ProjectConfig
from .errors import RegistryError, SchemaError, ServiceNotFoundError
from .lock import LockManager
from .models import ResolutionGraph, ServiceDefinition, ServiceOverride, Source, SourceConfig
from .registry import Registry

__all__ = [
    "LockManager",
    "ProjectConfig",
    "Registry",
    "RegistryError",
    "ResolutionGraph",
    "SchemaError",
    "ServiceDefinition",
    "ServiceNotFoundError",
    "ServiceOverride",
    "Source",
    "SourceConfig",
]
