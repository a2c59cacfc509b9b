"""Structural and security checks for service definitions."""

from __future__ import annotations

import logging
import re
from typing import Iterable, List

from .constants import (
    ALLOWED_REGISTRIES,
    DANGEROUS_CAPABILITIES,
    DEFAULT_REGISTRY,
    PATH_STRATEGIES,
    SEVERITY_ERROR,
    SEVERITY_WARNING,
    VALID_CATEGORIES,
)
from .models import ServiceDefinition, TrustLevel, ValidationError

logger = logging.getLogger(__name__)

_NAME_RE = re.compile(r"^[a-z][a-z0-9-]*[a-z0-9]$|^[a-z]$")
_DANGEROUS_DEVICES = ("/dev/mem", "/dev/kmem")
_WILDCARD = "*"


def is_valid_service_name(name: str) -> bool:
    return bool(_NAME_RE.match(name or ""))


def is_valid_subdomain(subdomain: str) -> bool:
    return bool(_NAME_RE.match(subdomain or ""))


def is_valid_category(category: str) -> bool:
    return category in VALID_CATEGORIES


def has_errors(issues: Iterable[ValidationError]) -> bool:
    return any(issue.severity == SEVERITY_ERROR for issue in issues)


def filter_by_severity(issues: Iterable[ValidationError], severity: str) -> List[ValidationError]:
    return [issue for issue in issues if issue.severity == severity]


def _error(field: str, message: str) -> ValidationError:
    return ValidationError(field=field, message=message, severity=SEVERITY_ERROR)


def _warning(field: str, message: str) -> ValidationError:
    return ValidationError(field=field, message=message, severity=SEVERITY_WARNING)


class Validator:
    """Runs metadata, spec, routing and security checks on a definition."""

    def __init__(
        self,
        allowed_registries: Iterable[str] = ALLOWED_REGISTRIES,
        dangerous_capabilities: Iterable[str] = DANGEROUS_CAPABILITIES,
    ):
        self.allowed_registries = frozenset(allowed_registries)
        self.dangerous_capabilities = frozenset(dangerous_capabilities)

    def validate(self, definition: ServiceDefinition) -> List[ValidationError]:
        issues: List[ValidationError] = []
        issues.extend(self._validate_metadata(definition))
        issues.extend(self._validate_spec(definition))
        issues.extend(self._validate_routing(definition))
        issues.extend(self._validate_security(definition))
        return issues

    def validate_with_trust_level(self, definition: ServiceDefinition, trust: TrustLevel) -> List[ValidationError]:
        """Base validation plus the extra errors *trust* imposes.

        The trust level only ever adds findings; it never removes a base one.
        """
        issues = self.validate(definition)
        container = definition.spec.container

        if container.privileged and not trust.allow_privileged:
            issues.append(_error("spec.container.privileged", "privileged mode not allowed by trust level"))

        if definition.spec.networking.mode == "host" and not trust.allow_host_network:
            issues.append(_error("spec.networking.mode", "host network not allowed by trust level"))

        allowed_caps = set(trust.allow_capabilities)
        if _WILDCARD not in allowed_caps:
            for cap in container.capabilities.add:
                if cap not in allowed_caps:
                    issues.append(
                        _error("spec.container.capabilities.add", f"capability {cap} not allowed by trust level")
                    )

        allowed_registries = set(trust.allowed_registries)
        if _WILDCARD not in allowed_registries:
            registry = definition.spec.image.registry or DEFAULT_REGISTRY
            if registry not in allowed_registries:
                issues.append(_error("spec.image.registry", f"registry {registry} not allowed by trust level"))

        return issues

    # ── individual checks ───────────────────────────────────────────

    def _validate_metadata(self, definition: ServiceDefinition) -> List[ValidationError]:
        issues: List[ValidationError] = []
        meta = definition.metadata

        if not meta.name:
            issues.append(_error("metadata.name", "name is required"))
        elif not is_valid_service_name(meta.name):
            issues.append(_error("metadata.name", "name must be lowercase alphanumeric with hyphens"))

        if not meta.version:
            issues.append(_error("metadata.version", "version is required"))

        if not meta.category:
            issues.append(_error("metadata.category", "category is required"))
        elif not is_valid_category(meta.category):
            issues.append(_error("metadata.category", f"invalid category: {meta.category}"))

        if not meta.description:
            issues.append(_warning("metadata.description", "description is recommended"))

        return issues

    def _validate_spec(self, definition: ServiceDefinition) -> List[ValidationError]:
        issues: List[ValidationError] = []
        spec = definition.spec

        if not spec.image.repository:
            issues.append(_error("spec.image.repository", "image repository is required"))

        template = spec.container.name_template
        if not template:
            issues.append(_error("spec.container.name_template", "container name template is required"))
        elif "{{" not in template:
            issues.append(
                _warning("spec.container.name_template", "container name template should use a {{ }} placeholder")
            )

        for i, vol in enumerate(spec.volumes):
            if not vol.host_path:
                issues.append(_error(f"spec.volumes[{i}].hostPath", "hostPath is required"))
            if not vol.container_path:
                issues.append(_error(f"spec.volumes[{i}].containerPath", "containerPath is required"))

        for i, env in enumerate(spec.environment.static):
            if not env.name:
                issues.append(_error(f"spec.environment.static[{i}].name", "environment variable name is required"))
            if not env.value and env.value_from is None:
                issues.append(
                    _error(f"spec.environment.static[{i}]", "environment variable must have value or valueFrom")
                )

        for i, env in enumerate(spec.environment.conditional):
            if not env.name:
                issues.append(
                    _error(f"spec.environment.conditional[{i}].name", "environment variable name is required")
                )
            if not env.when:
                issues.append(
                    _error(
                        f"spec.environment.conditional[{i}].when",
                        "conditional environment variable must have 'when' condition",
                    )
                )

        if spec.healthcheck is not None and not spec.healthcheck.test:
            issues.append(_error("spec.healthcheck.test", "health check test command is required"))

        for i, dep in enumerate(spec.dependencies.conditional):
            if not dep.name:
                issues.append(_error(f"spec.dependencies.conditional[{i}].name", "dependency name is required"))

        return issues

    def _validate_routing(self, definition: ServiceDefinition) -> List[ValidationError]:
        routing = definition.routing
        if not routing.enabled:
            return []

        issues: List[ValidationError] = []
        if routing.port <= 0 or routing.port > 65535:
            issues.append(_error("routing.port", "port must be between 1 and 65535"))

        if routing.subdomain and not is_valid_subdomain(routing.subdomain):
            issues.append(_error("routing.subdomain", "subdomain must be lowercase alphanumeric with hyphens"))

        if routing.path and not routing.path.startswith("/"):
            issues.append(_error("routing.path", "path must start with /"))

        strategy = routing.path_routing.strategy
        if strategy not in PATH_STRATEGIES:
            issues.append(_error("routing.pathRouting.strategy", f"invalid strategy: {strategy}"))

        return issues

    def _validate_security(self, definition: ServiceDefinition) -> List[ValidationError]:
        issues: List[ValidationError] = []
        container = definition.spec.container

        if container.privileged:
            issues.append(_error("spec.container.privileged", "privileged mode is a security risk"))

        for cap in container.capabilities.add:
            if cap in self.dangerous_capabilities:
                issues.append(
                    _warning("spec.container.capabilities.add", f"dangerous capability {cap} requires explicit approval")
                )

        if definition.spec.networking.mode == "host":
            issues.append(_warning("spec.networking.mode", "host network mode bypasses network isolation"))

        registry = definition.spec.image.registry or DEFAULT_REGISTRY
        if registry not in self.allowed_registries:
            issues.append(_warning("spec.image.registry", f"registry {registry} is not in allowed list"))

        for device in container.devices:
            if any(bad in device for bad in _DANGEROUS_DEVICES):
                issues.append(_error("spec.container.devices", f"dangerous device mapping: {device}"))

        if issues:
            logger.debug("Security findings for %s: %d", definition.metadata.name, len(issues))
        return issues
