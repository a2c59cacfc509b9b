"""Shared constants and small path helpers for the service registry."""

from __future__ import annotations

import os
from pathlib import Path

API_VERSION = "stackreg.io/v1"

KIND_SERVICE = "Service"
KIND_SERVICE_OVERRIDE = "ServiceOverride"
KIND_SOURCE_CONFIG = "SourceConfig"
KIND_SOURCE_REPOSITORY = "SourceRepository"
KIND_LOCK_FILE = "LockFile"

SERVICE_FILENAME = "service.yaml"
OVERRIDE_FILENAME = "override.yaml"
REPOSITORY_FILENAME = "sources.yaml"
LOCK_FILENAME = ".stackreg.lock"
CACHE_METADATA_FILENAME = "cache.json"

CORE_DIR = "core"
ADDONS_DIR = "addons"

CATEGORY_MEDIA = "media"
CATEGORY_DOWNLOADS = "downloads"
CATEGORY_MANAGEMENT = "management"
CATEGORY_UTILITY = "utility"
CATEGORY_NETWORKING = "networking"
CATEGORY_AUTH = "auth"
VALID_CATEGORIES = (
    CATEGORY_MEDIA,
    CATEGORY_DOWNLOADS,
    CATEGORY_MANAGEMENT,
    CATEGORY_UTILITY,
    CATEGORY_NETWORKING,
    CATEGORY_AUTH,
)

SOURCE_TYPE_LOCAL = "local"
SOURCE_TYPE_GIT = "git"
SOURCE_TYPE_EMBEDDED = "embedded"

EMBEDDED_SOURCE_NAME = "embedded"
OFFICIAL_SOURCE_NAME = "official"
EMBEDDED_PRIORITY = -1
EMBEDDED_COMMIT = "embedded"
EMBEDDED_URL_PREFIX = "embedded://"

DEFAULT_REGISTRY = "docker.io"
DEFAULT_TAG = "latest"
DEFAULT_RESTART = "unless-stopped"
DEFAULT_NAME_TEMPLATE = "stackreg-{{ .Name }}"
DEFAULT_NETWORK_MODE = "bridge"
DEFAULT_PATH_STRATEGY = "stripPrefix"
DEFAULT_BRANCH = "main"
DEFAULT_CACHE_TTL = "24h"

ALLOWED_REGISTRIES = frozenset(
    {"docker.io", "ghcr.io", "lscr.io", "quay.io", "gcr.io", "registry.k8s.io"}
)
DANGEROUS_CAPABILITIES = frozenset(
    {"SYS_ADMIN", "SYS_PTRACE", "SYS_MODULE", "SYS_RAWIO", "SYS_TIME", "DAC_READ_SEARCH"}
)
PATH_STRATEGIES = frozenset({"stripPrefix", "urlBase", "none", ""})

SEVERITY_ERROR = "error"
SEVERITY_WARNING = "warning"

EXPOSE_MODE_CLOUDFLARED = "cloudflared"
EXPOSE_MODE_DIRECT = "direct"
EXPOSE_MODE_LAN = "lan"
ROUTING_STRATEGY_SUBDOMAIN = "subdomain"
ROUTING_STRATEGY_PATH = "path"

HOME_ENV_VAR = "STACKREG_HOME"


def expand_home(path: str | Path) -> Path:
    """Expand a leading ``~`` the way a shell would."""
    return Path(path).expanduser()


def config_root() -> Path:
    """Return the per-user config root (``~/.config/stackreg`` by default)."""
    override = os.environ.get(HOME_ENV_VAR, "").strip()
    if override:
        return expand_home(override)
    return Path.home() / ".config" / "stackreg"


def default_services_dir() -> Path:
    return config_root() / "services"


def default_sources_file() -> Path:
    return config_root() / "sources.yaml"


def default_cache_dir() -> Path:
    override = os.environ.get(HOME_ENV_VAR, "").strip()
    if override:
        return expand_home(override) / "cache" / "sources"
    return Path.home() / ".cache" / "stackreg" / "sources"
