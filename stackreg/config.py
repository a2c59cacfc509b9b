"""Configuration: the project settings consumed by resolution, and source defaults."""
from __future__ import annotations

import logging
import re
from datetime import timedelta
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_BRANCH,
    DEFAULT_CACHE_TTL,
    EXPOSE_MODE_CLOUDFLARED,
    OFFICIAL_SOURCE_NAME,
    ROUTING_STRATEGY_SUBDOMAIN,
    SOURCE_TYPE_GIT,
    SOURCE_TYPE_LOCAL,
    default_cache_dir,
    default_services_dir,
    default_sources_file,
)
from .loader import load_source_config
from .models import CacheConfig, SecurityConfig, Source, SourceConfig

logger = logging.getLogger(__name__)

OFFICIAL_SOURCE_URL = "https://github.com/stackreg/stackreg-services.git"

_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {
    "h": timedelta(hours=1),
    "m": timedelta(minutes=1),
    "s": timedelta(seconds=1),
    "ms": timedelta(milliseconds=1),
}


class ExposeConfig(BaseModel):
    mode: str = EXPOSE_MODE_CLOUDFLARED


class ProjectRoutingConfig(BaseModel):
    strategy: str = ROUTING_STRATEGY_SUBDOMAIN
    base_domain: str = ""


class ProjectConfig(BaseModel):
    """The subset of a project's deployment settings that drives resolution."""

    domain: str = ""
    vpn_enabled: bool = False
    vpn_provider: str = ""
    expose: ExposeConfig = Field(default_factory=ExposeConfig)
    routing: ProjectRoutingConfig = Field(default_factory=ProjectRoutingConfig)
    addons: List[str] = Field(default_factory=list)
    features: List[str] = Field(default_factory=list)

    def is_addon_enabled(self, name: str) -> bool:
        return name in self.addons

    def is_feature_enabled(self, name: str) -> bool:
        return name in self.features

    def serialize(self) -> str:
        """Stable YAML rendering used for config hashing."""
        return yaml.safe_dump(self.model_dump(mode="json"), sort_keys=True)


def load_project_config(path: Optional[Path | str]) -> ProjectConfig:
    """Load project settings from YAML; a missing file yields defaults."""
    if path is None:
        return ProjectConfig()
    target = Path(path)
    if not target.exists():
        logger.info("Project config %s not found, using defaults", target)
        return ProjectConfig()
    with target.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Project config must be a YAML mapping, got {type(data).__name__}")
    return ProjectConfig.model_validate(data)


def parse_duration(text: str) -> timedelta:
    """Parse Go-style durations such as ``24h``, ``1h30m``, ``90s`` or ``0``."""
    value = (text or "").strip()
    if value in ("", "0"):
        return timedelta(0)
    total = timedelta(0)
    pos = 0
    for match in _DURATION_PART_RE.finditer(value):
        if match.start() != pos:
            break
        total += _DURATION_UNITS[match.group(2)] * float(match.group(1))
        pos = match.end()
    if pos != len(value):
        raise ValueError(f"invalid duration: {text!r}")
    return total


def default_source_config() -> SourceConfig:
    return SourceConfig(
        sources=[
            Source(
                name="local",
                type=SOURCE_TYPE_LOCAL,
                path=str(default_services_dir()),
                priority=100,
                enabled=True,
            ),
            Source(
                name=OFFICIAL_SOURCE_NAME,
                type=SOURCE_TYPE_GIT,
                url=OFFICIAL_SOURCE_URL,
                branch=DEFAULT_BRANCH,
                path="services",
                priority=0,
                enabled=True,
                verified=True,
            ),
        ],
        cache=CacheConfig(directory=str(default_cache_dir()), ttl=DEFAULT_CACHE_TTL),
        security=SecurityConfig(allow_unverified=True),
    )


def load_source_config_or_default(path: Optional[Path | str] = None) -> SourceConfig:
    target = Path(path) if path is not None else default_sources_file()
    if not target.exists():
        logger.debug("No source config at %s, using defaults", target)
        return default_source_config()
    return load_source_config(target)
