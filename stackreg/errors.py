"""Exception types raised by the registry."""

from __future__ import annotations

from typing import List, Tuple


class RegistryError(Exception):
    """Base class for every registry failure."""


class SchemaError(RegistryError, ValueError):
    """A YAML document could not be accepted for its schema."""


class UnsupportedVersionError(SchemaError):
    def __init__(self, got: str, expected: str):
        super().__init__(f"unsupported API version: {got or '<empty>'} (expected {expected})")
        self.got = got
        self.expected = expected


class UnexpectedKindError(SchemaError):
    def __init__(self, got: str, expected: str):
        super().__init__(f"unexpected kind: {got or '<empty>'} (expected {expected})")
        self.got = got
        self.expected = expected


class SourceError(RegistryError):
    """A source could not be read or refreshed."""


class GitError(SourceError):
    def __init__(self, message: str, output: str = ""):
        text = f"{message}: {output.strip()}" if output.strip() else message
        super().__init__(text)
        self.output = output


class GitCancelledError(GitError):
    """The caller cancelled a running git command."""


class ServiceNotFoundError(RegistryError, LookupError):
    pass


class UnknownSourceTypeError(RegistryError, ValueError):
    def __init__(self, source_type: str):
        super().__init__(f"unknown source type: {source_type}")
        self.source_type = source_type


class UnknownTrustLevelError(RegistryError, KeyError):
    def __str__(self) -> str:
        return f"unknown trust level: {self.args[0]}"


class SourceUpdateError(RegistryError):
    """One or more sources failed to update."""

    def __init__(self, failures: List[Tuple[str, Exception]]):
        self.failures = failures
        details = "; ".join(f"{name}: {exc}" for name, exc in failures)
        super().__init__(f"update errors: {details}")


class CircularDependencyError(RegistryError):
    def __init__(self, services: List[str]):
        super().__init__(f"circular dependency detected among: {', '.join(services)}")
        self.services = services
