"""YAML loading, serialization, defaults and override merging."""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, TypeVar

import yaml
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .constants import (
    ADDONS_DIR,
    API_VERSION,
    CORE_DIR,
    DEFAULT_BRANCH,
    DEFAULT_NAME_TEMPLATE,
    DEFAULT_NETWORK_MODE,
    DEFAULT_PATH_STRATEGY,
    DEFAULT_REGISTRY,
    DEFAULT_RESTART,
    DEFAULT_TAG,
    KIND_LOCK_FILE,
    KIND_SERVICE,
    KIND_SERVICE_OVERRIDE,
    KIND_SOURCE_CONFIG,
    KIND_SOURCE_REPOSITORY,
    SERVICE_FILENAME,
    SOURCE_TYPE_GIT,
)
from .errors import SchemaError, UnexpectedKindError, UnsupportedVersionError
from .models import (
    LockFile,
    ServiceDefinition,
    ServiceOverride,
    SourceConfig,
    SourceRepository,
    ToggleIntegration,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class _RegistryYamlDumper(yaml.SafeDumper):
    def increase_indent(self, flow: bool = False, indentless: bool = False) -> None:  # type: ignore[override]
        # Indent sequences under mappings so nested lists read like hand-written files.
        return super().increase_indent(flow, False)


def dump_yaml(data: Any) -> str:
    """Serialize plain data into YAML with stable key order."""
    return yaml.dump(
        data,
        Dumper=_RegistryYamlDumper,
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
        width=4096,
    )


def to_document(model: BaseModel) -> Dict[str, Any]:
    """Return the wire-format mapping for a schema model."""
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


def serialize(model: BaseModel) -> str:
    return dump_yaml(to_document(model))


def _parse_mapping(text: str | bytes, kind: str) -> Dict[str, Any]:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise SchemaError(f"failed to parse YAML: {exc}") from exc
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise SchemaError(f"failed to parse YAML: {kind} document must be a mapping, got {type(data).__name__}")
    return data


def _check_header(data: Dict[str, Any], kind: str) -> None:
    api_version = str(data.get("apiVersion") or "")
    if api_version != API_VERSION:
        raise UnsupportedVersionError(api_version, API_VERSION)
    got_kind = str(data.get("kind") or "")
    if got_kind != kind:
        raise UnexpectedKindError(got_kind, kind)


def _build(model_cls: Type[ModelT], data: Dict[str, Any], kind: str) -> ModelT:
    try:
        return model_cls.model_validate(data)
    except PydanticValidationError as exc:
        raise SchemaError(f"invalid {kind} document: {exc}") from exc


def _read(path: Path | str) -> str:
    target = Path(path)
    if not target.exists():
        raise FileNotFoundError(f"File not found: {target}")
    return target.read_text(encoding="utf-8")


# ── Service definitions ──────────────────────────────────────────────


def parse_service_definition(text: str | bytes) -> ServiceDefinition:
    data = _parse_mapping(text, KIND_SERVICE)
    _check_header(data, KIND_SERVICE)
    definition = _build(ServiceDefinition, data, KIND_SERVICE)
    apply_defaults(definition)
    return definition


def load_service_definition(path: Path | str) -> ServiceDefinition:
    logger.debug("Loading service definition: %s", path)
    try:
        return parse_service_definition(_read(path))
    except SchemaError as exc:
        raise SchemaError(f"{path}: {exc}") from exc


def serialize_definition(definition: ServiceDefinition) -> str:
    return serialize(definition)


def save_service_definition(path: Path | str, definition: ServiceDefinition) -> None:
    _save_yaml(path, definition)


# ── Overrides ────────────────────────────────────────────────────────


def parse_service_override(text: str | bytes) -> ServiceOverride:
    data = _parse_mapping(text, KIND_SERVICE_OVERRIDE)
    _check_header(data, KIND_SERVICE_OVERRIDE)
    return _build(ServiceOverride, data, KIND_SERVICE_OVERRIDE)


def load_service_override(path: Path | str) -> ServiceOverride:
    return parse_service_override(_read(path))


# ── Source configuration ─────────────────────────────────────────────


def parse_source_config(text: str | bytes) -> SourceConfig:
    data = _parse_mapping(text, KIND_SOURCE_CONFIG)
    _check_header(data, KIND_SOURCE_CONFIG)
    config = _build(SourceConfig, data, KIND_SOURCE_CONFIG)
    for source in config.sources:
        if source.type == SOURCE_TYPE_GIT and not source.branch:
            source.branch = DEFAULT_BRANCH
    return config


def load_source_config(path: Path | str) -> SourceConfig:
    return parse_source_config(_read(path))


def save_source_config(path: Path | str, config: SourceConfig) -> None:
    _save_yaml(path, config)


def parse_source_repository(text: str | bytes) -> SourceRepository:
    """Parse a repository's ``sources.yaml``; its header is informational only."""
    data = _parse_mapping(text, KIND_SOURCE_REPOSITORY)
    return _build(SourceRepository, data, KIND_SOURCE_REPOSITORY)


def load_source_repository(path: Path | str) -> SourceRepository:
    return parse_source_repository(_read(path))


# ── Lock files ───────────────────────────────────────────────────────


def parse_lock_file(text: str | bytes) -> LockFile:
    data = _parse_mapping(text, KIND_LOCK_FILE)
    _check_header(data, KIND_LOCK_FILE)
    return _build(LockFile, data, KIND_LOCK_FILE)


def load_lock_file(path: Path | str) -> LockFile:
    return parse_lock_file(_read(path))


def save_lock_file(path: Path | str, lock: LockFile) -> None:
    _save_yaml(path, lock)


def _save_yaml(path: Path | str, model: BaseModel) -> None:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    with target.open("w", encoding="utf-8") as handle:
        handle.write(serialize(model))
    logger.debug("Wrote %s", target)


# ── Defaults and merging ─────────────────────────────────────────────


def apply_defaults(definition: ServiceDefinition) -> ServiceDefinition:
    """Fill the fields every definition is expected to carry. Mutates in place."""
    container = definition.spec.container
    if not container.restart:
        container.restart = DEFAULT_RESTART
    if not container.name_template:
        container.name_template = DEFAULT_NAME_TEMPLATE

    image = definition.spec.image
    if not image.registry:
        image.registry = DEFAULT_REGISTRY
    if not image.tag:
        image.tag = DEFAULT_TAG

    networking = definition.spec.networking
    if not networking.mode and not networking.mode_template:
        networking.mode = DEFAULT_NETWORK_MODE

    routing = definition.routing
    if routing.enabled:
        if not routing.subdomain:
            routing.subdomain = definition.metadata.name
        if not routing.path:
            routing.path = "/" + definition.metadata.name
        if not routing.path_routing.strategy:
            routing.path_routing.strategy = DEFAULT_PATH_STRATEGY

    if definition.integrations.watchtower is None:
        definition.integrations.watchtower = ToggleIntegration(enabled=True)
    return definition


def merge_override(base: ServiceDefinition, override: ServiceOverride) -> ServiceDefinition:
    """Return a new definition with *override* applied on top of *base*.

    Image fields are replaced when the override sets them, environment
    variables and volumes are appended, routing subdomain/path are replaced.
    Nothing is ever removed. *base* is left untouched.
    """
    merged = base.model_copy(deep=True)

    spec = override.spec
    if spec is not None:
        if spec.image is not None:
            if spec.image.repository:
                merged.spec.image.repository = spec.image.repository
            if spec.image.tag:
                merged.spec.image.tag = spec.image.tag
            if spec.image.registry:
                merged.spec.image.registry = spec.image.registry
        if spec.environment is not None and spec.environment.additional:
            merged.spec.environment.static.extend(
                env.model_copy(deep=True) for env in spec.environment.additional
            )
        if spec.volumes is not None and spec.volumes.additional:
            merged.spec.volumes.extend(vol.model_copy(deep=True) for vol in spec.volumes.additional)

    if override.routing is not None:
        if override.routing.subdomain is not None:
            merged.routing.subdomain = override.routing.subdomain
        if override.routing.path is not None:
            merged.routing.path = override.routing.path

    return merged


# ── Discovery ────────────────────────────────────────────────────────


def discover_services(root: Path | str) -> List[str]:
    """Return the directory name of every definition file under *root*.

    Dot-directories are skipped. Names come back in discovery order.
    """
    services: List[str] = []

    def _raise(exc: OSError) -> None:
        raise exc

    try:
        for current, dirs, files in os.walk(root, onerror=_raise):
            dirs[:] = sorted(d for d in dirs if not d.startswith("."))
            if SERVICE_FILENAME in files:
                services.append(Path(current).name)
    except OSError as exc:
        raise OSError(f"failed to discover services in {root}: {exc}") from exc
    return services


def service_file_candidates(root: Path | str, name: str) -> List[Path]:
    base = Path(root)
    return [
        base / name / SERVICE_FILENAME,
        base / CORE_DIR / name / SERVICE_FILENAME,
        base / ADDONS_DIR / name / SERVICE_FILENAME,
    ]


def find_service_file(root: Path | str, name: str) -> Optional[Path]:
    """Locate ``<name>/``, then ``core/<name>/``, then ``addons/<name>/``."""
    for candidate in service_file_candidates(root, name):
        if candidate.is_file():
            return candidate
    return None


def load_services_from_dir(root: Path | str) -> List[ServiceDefinition]:
    definitions: List[ServiceDefinition] = []
    for name in discover_services(root):
        path = find_service_file(root, name)
        if path is None:
            # Nested deeper than the three supported locations.
            logger.debug("Skipping %s: not in a supported location under %s", name, root)
            continue
        definitions.append(load_service_definition(path))
    return definitions
