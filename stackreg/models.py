"""Pydantic schemas for registry documents plus the runtime result types.

Python attributes are snake_case; the YAML wire format uses camelCase keys,
except for the few keys the format has always spelled with underscores
(``name_template``, ``start_period``, ``ssh_key``).
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .constants import API_VERSION, KIND_LOCK_FILE, KIND_SERVICE, KIND_SERVICE_OVERRIDE, KIND_SOURCE_CONFIG


class Schema(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Service definition ───────────────────────────────────────────────


class ServiceMetadata(Schema):
    name: str = ""
    version: str = ""
    category: str = ""
    description: str = ""
    homepage: str = ""
    documentation: str = ""
    maintainer: str = ""
    tags: List[str] = Field(default_factory=list)


class ImageSpec(Schema):
    repository: str = ""
    tag: str = ""
    registry: str = ""


class CapabilitiesSpec(Schema):
    add: List[str] = Field(default_factory=list)
    drop: List[str] = Field(default_factory=list)


class ContainerSpec(Schema):
    name_template: str = Field(default="", alias="name_template")
    restart: str = ""
    privileged: bool = False
    capabilities: CapabilitiesSpec = Field(default_factory=CapabilitiesSpec)
    devices: List[str] = Field(default_factory=list)


class ValueSource(Schema):
    secret_ref: str = ""
    config_ref: str = ""


class EnvVar(Schema):
    name: str = ""
    value: str = ""
    value_from: Optional[ValueSource] = None


class ConditionalEnvVar(EnvVar):
    when: str = ""


class EnvironmentSpec(Schema):
    static: List[EnvVar] = Field(default_factory=list)
    conditional: List[ConditionalEnvVar] = Field(default_factory=list)
    env_file: List[str] = Field(default_factory=list)


class VolumeMount(Schema):
    name: str = ""
    host_path: str = ""
    container_path: str = ""
    read_only: bool = False


class ConditionalPort(Schema):
    port: str = ""
    when: str = ""


class PortSpec(Schema):
    static: List[str] = Field(default_factory=list)
    conditional: List[ConditionalPort] = Field(default_factory=list)


class NetworkRef(Schema):
    name: str = ""
    when: str = ""


class NetworkSpec(Schema):
    networks: List[NetworkRef] = Field(default_factory=list)
    mode: str = ""
    mode_template: str = ""


class HealthCheck(Schema):
    test: List[str] = Field(default_factory=list)
    interval: str = ""
    timeout: str = ""
    retries: int = 0
    start_period: str = Field(default="", alias="start_period")


class ConditionalDependency(Schema):
    name: str = ""
    condition: str = ""
    when: str = ""


class DependencySpec(Schema):
    required: List[str] = Field(default_factory=list)
    optional: List[str] = Field(default_factory=list)
    conditional: List[ConditionalDependency] = Field(default_factory=list)


class ServiceSpec(Schema):
    image: ImageSpec = Field(default_factory=ImageSpec)
    container: ContainerSpec = Field(default_factory=ContainerSpec)
    environment: EnvironmentSpec = Field(default_factory=EnvironmentSpec)
    volumes: List[VolumeMount] = Field(default_factory=list)
    ports: PortSpec = Field(default_factory=PortSpec)
    networking: NetworkSpec = Field(default_factory=NetworkSpec)
    healthcheck: Optional[HealthCheck] = None
    dependencies: DependencySpec = Field(default_factory=DependencySpec)


class PathRoutingConfig(Schema):
    strategy: str = ""
    url_base_env_var: str = ""


class AuthConfig(Schema):
    required: bool = False
    bypass: bool = False


class TraefikConfig(Schema):
    priority: Optional[int] = None
    middlewares: List[str] = Field(default_factory=list)
    custom_labels: Dict[str, str] = Field(default_factory=dict)


class RoutingConfig(Schema):
    enabled: bool = False
    port: int = 0
    subdomain: str = ""
    path: str = ""
    path_routing: PathRoutingConfig = Field(default_factory=PathRoutingConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    force_subdomain: bool = False
    traefik: TraefikConfig = Field(default_factory=TraefikConfig)


class SecretDef(Schema):
    name: str = ""
    type: str = ""
    length: int = 0
    description: str = ""


class HomepageWidget(Schema):
    type: str = ""
    widget_fields: Dict[str, str] = Field(default_factory=dict, alias="fields")


class HomepageIntegration(Schema):
    enabled: bool = False
    group: str = ""
    icon: str = ""
    description: str = ""
    widget: Optional[HomepageWidget] = None


class ToggleIntegration(Schema):
    enabled: bool = False


class UnpackerrIntegration(Schema):
    enabled: bool = False
    url_env_var: str = ""
    api_key_env_var: str = ""
    internal_url: str = ""


class Integrations(Schema):
    homepage: Optional[HomepageIntegration] = None
    cloudflared: Optional[ToggleIntegration] = None
    watchtower: Optional[ToggleIntegration] = None
    unpackerr: Optional[UnpackerrIntegration] = None


class Conditions(Schema):
    always: bool = False
    require_addon: bool = False
    require_config: str = ""
    require_feature: str = ""


class ServiceDefinition(Schema):
    api_version: str = API_VERSION
    kind: str = KIND_SERVICE
    metadata: ServiceMetadata = Field(default_factory=ServiceMetadata)
    spec: ServiceSpec = Field(default_factory=ServiceSpec)
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    secrets: List[SecretDef] = Field(default_factory=list)
    integrations: Integrations = Field(default_factory=Integrations)
    conditions: Conditions = Field(default_factory=Conditions)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def is_addon(self) -> bool:
        return self.conditions.require_addon


# ── Overrides ────────────────────────────────────────────────────────


class OverrideMetadata(Schema):
    name: str = ""


class EnvironmentOverride(Schema):
    additional: List[EnvVar] = Field(default_factory=list)


class VolumeOverride(Schema):
    additional: List[VolumeMount] = Field(default_factory=list)


class ServiceSpecOverride(Schema):
    image: Optional[ImageSpec] = None
    environment: Optional[EnvironmentOverride] = None
    volumes: Optional[VolumeOverride] = None


class RoutingConfigOverride(Schema):
    subdomain: Optional[str] = None
    path: Optional[str] = None


class ServiceOverride(Schema):
    api_version: str = API_VERSION
    kind: str = KIND_SERVICE_OVERRIDE
    metadata: OverrideMetadata = Field(default_factory=OverrideMetadata)
    spec: Optional[ServiceSpecOverride] = None
    routing: Optional[RoutingConfigOverride] = None


# ── Sources ──────────────────────────────────────────────────────────


class Source(Schema):
    name: str
    type: str
    url: str = ""
    path: str = ""
    branch: str = ""
    ssh_key: str = Field(default="", alias="ssh_key")
    priority: int = 0
    enabled: bool = True
    verified: bool = False


class CacheConfig(Schema):
    directory: str = ""
    ttl: str = ""


class TrustLevel(Schema):
    allow_privileged: bool = False
    allow_host_network: bool = False
    allow_capabilities: List[str] = Field(default_factory=list)
    allowed_registries: List[str] = Field(default_factory=list)


class SecurityConfig(Schema):
    allow_unverified: bool = False
    require_signatures: bool = False
    trust_levels: Dict[str, TrustLevel] = Field(default_factory=dict)


class SourceConfigMetadata(Schema):
    version: int = 1


class SourceConfig(Schema):
    api_version: str = API_VERSION
    kind: str = KIND_SOURCE_CONFIG
    metadata: SourceConfigMetadata = Field(default_factory=SourceConfigMetadata)
    sources: List[Source] = Field(default_factory=list)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)


class Maintainer(Schema):
    name: str = ""
    email: str = ""


class SourceRepositoryMeta(Schema):
    name: str = ""
    version: str = ""
    description: str = ""
    maintainers: List[Maintainer] = Field(default_factory=list)
    license: str = ""


class SourceRepository(Schema):
    api_version: str = API_VERSION
    kind: str = ""
    metadata: SourceRepositoryMeta = Field(default_factory=SourceRepositoryMeta)
    schema_version: str = ""
    min_cli_version: str = ""
    categories: List[str] = Field(default_factory=list)


class CacheMetadata(Schema):
    """Per-source fetch bookkeeping persisted in ``cache.json``."""

    name: str = ""
    url: str = ""
    branch: str = ""
    commit: str = ""
    last_updated: Optional[datetime] = None


# ── Lock file ────────────────────────────────────────────────────────


class LockFileMetadata(Schema):
    version: int = 1
    generated_at: Optional[datetime] = None
    cli_version: str = ""
    config_hash: str = ""


class LockedSource(Schema):
    url: str = ""
    commit: str = ""
    branch: str = ""
    fetched_at: Optional[datetime] = None


class LockedImage(Schema):
    repository: str = ""
    tag: str = ""
    digest: str = ""


class LockedService(Schema):
    source: str = ""
    definition_version: str = ""
    image: LockedImage = Field(default_factory=LockedImage)
    resolved_from: str = ""
    enabled: bool = False


class LockFile(Schema):
    api_version: str = API_VERSION
    kind: str = KIND_LOCK_FILE
    metadata: LockFileMetadata = Field(default_factory=LockFileMetadata)
    sources: Dict[str, LockedSource] = Field(default_factory=dict)
    services: Dict[str, LockedService] = Field(default_factory=dict)
    install_order: List[str] = Field(default_factory=list)
    generated_files: Dict[str, str] = Field(default_factory=dict)


# ── Runtime results ──────────────────────────────────────────────────


@dataclass
class ValidationError:
    """One validation finding; only ``error`` severity blocks use."""
    field: str
    message: str
    severity: str

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


@dataclass
class ResolutionError:
    service: str
    message: str
    cause: Optional[BaseException] = None

    def __str__(self) -> str:
        text = f"{self.service}: {self.message}" if self.service else self.message
        if self.cause is not None:
            return f"{text}: {self.cause}"
        return text


@dataclass
class ResolvedService:
    name: str
    source: str
    source_path: str
    definition: ServiceDefinition
    definition_hash: str
    overrides: List[ServiceOverride] = field(default_factory=list)
    final_definition: Optional[ServiceDefinition] = None
    dependencies: List[str] = field(default_factory=list)
    enabled: bool = True


@dataclass
class ResolutionGraph:
    services: Dict[str, ResolvedService] = field(default_factory=dict)
    order: List[str] = field(default_factory=list)
    errors: List[ResolutionError] = field(default_factory=list)


@dataclass
class ServiceInfo:
    """Summary row used by listings and search."""
    name: str
    description: str
    category: str
    version: str
    source: str
    is_addon: bool = False
    has_web_ui: bool = False
    tags: List[str] = field(default_factory=list)
