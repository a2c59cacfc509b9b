"""Decides which services a project gets, merges overrides and orders installs."""

from __future__ import annotations

import hashlib
import logging
import threading
from collections import deque
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional

from .config import ProjectConfig
from .constants import (
    EMBEDDED_URL_PREFIX,
    EXPOSE_MODE_CLOUDFLARED,
    OVERRIDE_FILENAME,
    ROUTING_STRATEGY_PATH,
)
from .errors import CircularDependencyError, GitCancelledError, RegistryError, ServiceNotFoundError
from .loader import load_service_override, merge_override, serialize_definition
from .models import (
    Conditions,
    ResolutionError,
    ResolutionGraph,
    ResolvedService,
    ServiceDefinition,
    ServiceOverride,
)

if TYPE_CHECKING:
    from .registry import Registry

logger = logging.getLogger(__name__)

# requireConfig flags understood by the resolver.
REQUIRE_CONFIG_VPN = "vpn_enabled"
REQUIRE_CONFIG_CLOUDFLARED = "cloudflared"

# `when` strings are matched literally; anything else evaluates to false.
WHEN_VPN_ENABLED = "{{ .Config.VPNEnabled }}"
WHEN_VPN_DISABLED = "{{ not .Config.VPNEnabled }}"
WHEN_EXPOSE_CLOUDFLARED = '{{ eq .Config.Expose.Mode "cloudflared" }}'
WHEN_ROUTING_PATH = '{{ eq .Config.Routing.Strategy "path" }}'


def definition_hash(definition: ServiceDefinition) -> str:
    digest = hashlib.sha256(serialize_definition(definition).encode("utf-8")).digest()
    return "sha256:" + digest[:8].hex()


def evaluate_require_config(flag: str, config: ProjectConfig) -> bool:
    if flag == REQUIRE_CONFIG_VPN:
        return config.vpn_enabled
    if flag == REQUIRE_CONFIG_CLOUDFLARED:
        return config.expose.mode == EXPOSE_MODE_CLOUDFLARED
    logger.warning("Unknown requireConfig '%s', defaulting to false", flag)
    return False


def evaluate_when(condition: str, config: ProjectConfig) -> bool:
    """Evaluate a conditional ``when`` string against the project config."""
    if not condition:
        return True
    if condition == WHEN_VPN_ENABLED:
        return config.vpn_enabled
    if condition == WHEN_VPN_DISABLED:
        return not config.vpn_enabled
    if condition == WHEN_EXPOSE_CLOUDFLARED:
        return config.expose.mode == EXPOSE_MODE_CLOUDFLARED
    if condition == WHEN_ROUTING_PATH:
        return config.routing.strategy == ROUTING_STRATEGY_PATH
    logger.warning("Unknown condition '%s', defaulting to false", condition)
    return False


def evaluate_conditions(conditions: Conditions, config: ProjectConfig) -> bool:
    """Whether a definition's inclusion conditions hold.

    ``requireAddon`` is not checked here; it only gates candidacy.
    """
    if conditions.always:
        return True
    if conditions.require_config and not evaluate_require_config(conditions.require_config, config):
        return False
    if conditions.require_feature and not config.is_feature_enabled(conditions.require_feature):
        return False
    return True


def collect_dependencies(definition: ServiceDefinition, config: ProjectConfig) -> List[str]:
    """Required dependencies, then conditional ones whose ``when`` holds; no duplicates."""
    deps: List[str] = []
    for name in definition.spec.dependencies.required:
        if name not in deps:
            deps.append(name)
    for dep in definition.spec.dependencies.conditional:
        if dep.name and dep.name not in deps and evaluate_when(dep.when, config):
            deps.append(dep.name)
    return deps


def topological_sort(services: Dict[str, ResolvedService]) -> List[str]:
    """Kahn's algorithm over edges between services present in *services*.

    Ties are broken by name so the same graph always yields the same order.
    """
    in_degree: Dict[str, int] = {name: 0 for name in services}
    dependents: Dict[str, List[str]] = {name: [] for name in services}
    for name in sorted(services):
        for dep in services[name].dependencies:
            if dep not in services:
                continue
            dependents[dep].append(name)
            in_degree[name] += 1

    queue = deque(sorted(name for name, degree in in_degree.items() if degree == 0))
    order: List[str] = []
    while queue:
        node = queue.popleft()
        order.append(node)
        for dependent in dependents[node]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                queue.append(dependent)

    if len(order) != len(services):
        raise CircularDependencyError(sorted(name for name, degree in in_degree.items() if degree > 0))
    return order


def get_enabled_services(graph: ResolutionGraph) -> Dict[str, ResolvedService]:
    return {name: svc for name, svc in graph.services.items() if svc.enabled}


class Resolver:
    """Builds a ``ResolutionGraph`` from the registry's sources.

    Not safe for concurrent use: the graph is built up without locking.
    """

    def __init__(self, registry: "Registry"):
        self.registry = registry

    def resolve(self, config: ProjectConfig, cancel: Optional[threading.Event] = None) -> ResolutionGraph:
        graph = ResolutionGraph()
        for name in self.determine_enabled_services(config, cancel):
            try:
                self._resolve_into(graph, config, name, cancel)
            except GitCancelledError:
                raise
            except (RegistryError, OSError) as exc:
                graph.errors.append(ResolutionError(service=name, message="failed to resolve", cause=exc))

        try:
            graph.order = topological_sort(graph.services)
        except CircularDependencyError as exc:
            logger.error("%s", exc)
            graph.errors.append(ResolutionError(service="", message="circular dependency detected", cause=exc))
            graph.order = []

        logger.debug("Resolved %d services with %d errors", len(graph.services), len(graph.errors))
        return graph

    def resolve_service(
        self, config: ProjectConfig, name: str, cancel: Optional[threading.Event] = None
    ) -> ResolvedService:
        """Resolve a single service (and its dependencies) in a fresh graph."""
        graph = ResolutionGraph()
        self._resolve_into(graph, config, name, cancel)
        resolved = graph.services.get(name)
        if resolved is None:
            raise ServiceNotFoundError(f"service {name} not found after resolution")
        return resolved

    def determine_enabled_services(
        self, config: ProjectConfig, cancel: Optional[threading.Event] = None
    ) -> List[str]:
        """Core services are always candidates; add-ons only when listed in config."""
        candidates = []
        for info in self.registry.list_services(cancel=cancel):
            if not info.is_addon or config.is_addon_enabled(info.name):
                candidates.append(info.name)
        return sorted(candidates)

    def _resolve_into(
        self,
        graph: ResolutionGraph,
        config: ProjectConfig,
        name: str,
        cancel: Optional[threading.Event],
    ) -> None:
        if name in graph.services:
            return

        definition, source_name = self.registry.get_service(name, cancel=cancel)
        if not evaluate_conditions(definition.conditions, config):
            logger.debug("Skipping %s: conditions not met", name)
            return

        overrides = self.load_overrides(name)
        final = definition
        for override in overrides:
            final = merge_override(final, override)

        source = self.registry.get_source(source_name)
        resolved = ResolvedService(
            name=name,
            source=source_name,
            source_path=source.get_service_path(name) if source is not None else "",
            definition=definition,
            definition_hash=definition_hash(definition),
            overrides=overrides,
            final_definition=final,
            dependencies=collect_dependencies(final, config),
            enabled=True,
        )
        graph.services[name] = resolved

        for dep in resolved.dependencies:
            try:
                self._resolve_into(graph, config, dep, cancel)
            except GitCancelledError:
                raise
            except (RegistryError, OSError) as exc:
                graph.errors.append(ResolutionError(service=name, message=f"dependency {dep} failed", cause=exc))

    def load_overrides(self, name: str) -> List[ServiceOverride]:
        """Overrides for *name* from every source, lowest priority first."""
        overrides: List[ServiceOverride] = []
        for source in sorted(self.registry.sources(), key=lambda s: s.priority):
            if not source.is_enabled:
                continue
            service_path = source.get_service_path(name)
            if not service_path or service_path.startswith(EMBEDDED_URL_PREFIX):
                continue
            override_path = Path(service_path).parent / OVERRIDE_FILENAME
            if not override_path.is_file():
                continue
            try:
                override = load_service_override(override_path)
            except (RegistryError, OSError) as exc:
                logger.warning("Ignoring override %s: %s", override_path, exc)
                continue
            if override.metadata.name != name:
                logger.debug("Ignoring override %s: targets %s", override_path, override.metadata.name)
                continue
            overrides.append(override)
        return overrides
