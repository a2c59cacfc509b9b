"""The registry: prioritized sources, lookup, search, update and resolution."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .cache import Cache
from .config import ProjectConfig, default_source_config, load_source_config_or_default, parse_duration
from .constants import (
    DEFAULT_CACHE_TTL,
    SOURCE_TYPE_EMBEDDED,
    SOURCE_TYPE_GIT,
    SOURCE_TYPE_LOCAL,
    default_cache_dir,
    default_sources_file,
    expand_home,
)
from .embedded import EmbeddedSource
from .errors import (
    GitCancelledError,
    RegistryError,
    ServiceNotFoundError,
    SourceUpdateError,
    UnknownSourceTypeError,
    UnknownTrustLevelError,
)
from .git_source import GitSource
from .loader import save_source_config
from .models import ResolutionGraph, ServiceDefinition, ServiceInfo, Source, SourceConfig, ValidationError
from .resolver import Resolver
from .source import LocalSource, SourceProvider
from .validator import Validator

logger = logging.getLogger(__name__)


def create_source_provider(source: Source, cache: Cache) -> SourceProvider:
    if source.type == SOURCE_TYPE_LOCAL:
        return LocalSource(source)
    if source.type == SOURCE_TYPE_GIT:
        return GitSource(source, cache)
    if source.type == SOURCE_TYPE_EMBEDDED:
        return EmbeddedSource()
    raise UnknownSourceTypeError(source.type)


def matches_query(info: ServiceInfo, query: str) -> bool:
    if not query:
        return True
    needle = query.lower()
    return needle in info.name.lower() or needle in info.description.lower() or needle in info.category.lower()


def _service_info(definition: ServiceDefinition, source_name: str) -> ServiceInfo:
    return ServiceInfo(
        name=definition.metadata.name,
        description=definition.metadata.description,
        category=definition.metadata.category,
        version=definition.metadata.version,
        source=source_name,
        is_addon=definition.conditions.require_addon,
        has_web_ui=definition.routing.enabled,
        tags=list(definition.metadata.tags),
    )


class Registry:
    """Service lookup across sources, highest priority first.

    The embedded bundle is always present as the lowest-priority fallback.
    """

    def __init__(
        self,
        source_config: Optional[SourceConfig] = None,
        embedded: Optional[EmbeddedSource] = None,
        config_path: Optional[Path | str] = None,
    ):
        self.config = source_config if source_config is not None else default_source_config()
        self.config_path = Path(config_path) if config_path is not None else None
        cache_dir = expand_home(self.config.cache.directory) if self.config.cache.directory else default_cache_dir()
        ttl = parse_duration(self.config.cache.ttl or DEFAULT_CACHE_TTL)
        self._cache = Cache(cache_dir, ttl=ttl)
        self._lock = threading.RLock()
        self.validator = Validator()

        providers: List[SourceProvider] = []
        for source in self.config.sources:
            try:
                if source.type == SOURCE_TYPE_EMBEDDED and embedded is not None:
                    providers.append(embedded)
                    continue
                providers.append(create_source_provider(source, self._cache))
            except UnknownSourceTypeError as exc:
                raise RegistryError(f"failed to create source {source.name}: {exc}") from exc

        if not any(p.type == SOURCE_TYPE_EMBEDDED for p in providers):
            providers.append(embedded if embedded is not None else EmbeddedSource())

        self._sources = sorted(providers, key=lambda p: p.priority, reverse=True)
        self.resolver = Resolver(self)
        logger.debug("Registry sources: %s", ", ".join(f"{p.name}({p.priority})" for p in self._sources))

    @property
    def cache(self) -> Cache:
        return self._cache

    # ── sources ─────────────────────────────────────────────────────

    def sources(self) -> List[SourceProvider]:
        with self._lock:
            return list(self._sources)

    def get_source(self, name: str) -> Optional[SourceProvider]:
        with self._lock:
            for provider in self._sources:
                if provider.name == name:
                    return provider
        return None

    def add_source(self, source: Source) -> SourceProvider:
        with self._lock:
            if any(p.name == source.name for p in self._sources):
                raise RegistryError(f"source {source.name} already exists")
            provider = create_source_provider(source, self._cache)
            self._sources.append(provider)
            self.config.sources.append(source)
            self._sources.sort(key=lambda p: p.priority, reverse=True)
        logger.info("Added source %s (priority %d)", source.name, source.priority)
        return provider

    def remove_source(self, name: str) -> None:
        with self._lock:
            for index, provider in enumerate(self._sources):
                if provider.name == name:
                    del self._sources[index]
                    self.config.sources = [s for s in self.config.sources if s.name != name]
                    logger.info("Removed source %s", name)
                    return
        raise RegistryError(f"source {name} not found")

    def save_config(self, path: Optional[Path | str] = None) -> Path:
        """Write the source configuration, including added or removed sources."""
        target = Path(path) if path is not None else self.config_path or default_sources_file()
        save_source_config(target, self.config)
        logger.info("Saved source config to %s", target)
        return target

    # ── lookup ──────────────────────────────────────────────────────

    def get_service(
        self, name: str, cancel: Optional[threading.Event] = None
    ) -> Tuple[ServiceDefinition, str]:
        """Return ``(definition, source_name)`` from the first enabled source that has *name*."""
        for provider in self.sources():
            if not provider.is_enabled:
                continue
            try:
                return provider.load_service(name, cancel=cancel), provider.name
            except ServiceNotFoundError:
                continue
            except GitCancelledError:
                raise
            except (RegistryError, OSError) as exc:
                logger.warning("Source %s failed to load %s: %s", provider.name, name, exc)
                continue
        raise ServiceNotFoundError(f"service {name} not found in any source")

    def list_services(self, cancel: Optional[threading.Event] = None) -> List[ServiceInfo]:
        """Every service across sources, first occurrence by priority wins, sorted by name."""
        seen = set()
        services: List[ServiceInfo] = []
        for provider in self.sources():
            if not provider.is_enabled:
                continue
            try:
                names = provider.list_services(cancel=cancel)
            except GitCancelledError:
                raise
            except (RegistryError, OSError) as exc:
                logger.warning("Skipping source %s: %s", provider.name, exc)
                continue
            for name in names:
                if name in seen:
                    continue
                seen.add(name)
                try:
                    definition = provider.load_service(name, cancel=cancel)
                except GitCancelledError:
                    raise
                except (RegistryError, OSError) as exc:
                    logger.warning("Skipping %s from %s: %s", name, provider.name, exc)
                    continue
                services.append(_service_info(definition, provider.name))
        services.sort(key=lambda info: info.name)
        return services

    def search_services(
        self,
        query: str = "",
        category: str = "",
        tag: str = "",
        cancel: Optional[threading.Event] = None,
    ) -> List[ServiceInfo]:
        wanted_tag = tag.lower()
        return [
            info
            for info in self.list_services(cancel=cancel)
            if (not category or info.category == category)
            and (not wanted_tag or wanted_tag in (t.lower() for t in info.tags))
            and matches_query(info, query)
        ]

    # ── operations ──────────────────────────────────────────────────

    def update(self, cancel: Optional[threading.Event] = None) -> None:
        """Refresh every source; failures are collected, not fatal to the others."""
        failures = []
        for provider in self.sources():
            try:
                provider.update(cancel=cancel)
            except GitCancelledError:
                raise
            except (RegistryError, OSError) as exc:
                logger.error("Failed to update source %s: %s", provider.name, exc)
                failures.append((provider.name, exc))
        if failures:
            raise SourceUpdateError(failures)

    def update_source(self, name: str, cancel: Optional[threading.Event] = None) -> None:
        provider = self.get_source(name)
        if provider is None:
            raise RegistryError(f"source {name} not found")
        provider.update(cancel=cancel)
        logger.info("Updated source %s", name)

    def check_updates(self, cancel: Optional[threading.Event] = None) -> Dict[str, int]:
        """Commits waiting upstream per enabled git source, without pulling them."""
        pending: Dict[str, int] = {}
        for provider in self.sources():
            if isinstance(provider, GitSource) and provider.is_enabled:
                pending[provider.name] = provider.pending_commits(cancel=cancel)
        return pending

    def resolve(self, config: ProjectConfig, cancel: Optional[threading.Event] = None) -> ResolutionGraph:
        return self.resolver.resolve(config, cancel=cancel)

    def validate(self, definition: ServiceDefinition, trust_level: Optional[str] = None) -> List[ValidationError]:
        if not trust_level:
            return self.validator.validate(definition)
        trust = self.config.security.trust_levels.get(trust_level)
        if trust is None:
            raise UnknownTrustLevelError(trust_level)
        return self.validator.validate_with_trust_level(definition, trust)

    def source_details(self) -> List[Dict[str, object]]:
        """Display rows for ``sources`` listings."""
        return [_detail_row(provider) for provider in self.sources()]

    def source_info(self, name: str, cancel: Optional[threading.Event] = None) -> Dict[str, object]:
        """One source's detail row plus its services and repository metadata."""
        provider = self.get_source(name)
        if provider is None:
            raise RegistryError(f"source {name} not found")
        row = _detail_row(provider)
        row["services"] = provider.list_services(cancel=cancel)
        if isinstance(provider, GitSource):
            repo = provider.get_repo_metadata()
            if repo is not None:
                row["repository"] = repo.metadata.model_dump(mode="json", by_alias=True)
                row["min_cli_version"] = repo.min_cli_version
                row["categories"] = list(repo.categories)
        return row


def _detail_row(provider: SourceProvider) -> Dict[str, object]:
    row: Dict[str, object] = {
        "name": provider.name,
        "type": provider.type,
        "priority": provider.priority,
        "enabled": provider.is_enabled,
        "commit": provider.get_commit(),
    }
    if isinstance(provider, GitSource):
        row["url"] = provider.url
        row["branch"] = provider.branch
        row["verified"] = provider.is_verified()
        last = provider.get_last_updated()
        row["last_updated"] = last.isoformat() if last else None
    elif isinstance(provider, LocalSource):
        row["path"] = str(provider.path)
    return row


def load_registry(sources_file: Optional[Path | str] = None) -> Registry:
    path = Path(sources_file) if sources_file is not None else default_sources_file()
    return Registry(load_source_config_or_default(path), config_path=path)
