"""Abstract resource provider capability and its error taxonomy."""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from ..resources.models import ResourceKind


class ProviderError(RuntimeError):
    """Base class for provider failures."""


class RetryableProviderError(ProviderError):
    """Transient failure: rate limiting, network blips, eventual consistency."""

    def __init__(self, message: str, *, reason: str = "transient") -> None:
        """Record the retry *reason* (``throttled``, ``network``, ``not-found-yet``)."""
        super().__init__(message)
        self.reason = reason


class FatalProviderError(ProviderError):
    """Permanent failure; retrying will not help."""


class ResourceNotFound(ProviderError):
    """Raised when the provider has no object for an identifier."""

    def __init__(self, kind: ResourceKind, identifier: str) -> None:
        """Record the missing object."""
        super().__init__(f"{kind.value} '{identifier}' not found.")
        self.kind = kind
        self.identifier = identifier


@dataclass(slots=True, frozen=True)
class ProviderResult:
    """Outcome of a successful create call."""

    identifier: str
    observed: Mapping[str, Any] = field(default_factory=dict)


@runtime_checkable
class ResourceProvider(Protocol):
    """Create, destroy and describe cloud objects."""

    name: str

    def create(self, kind: ResourceKind, attributes: Mapping[str, Any]) -> ProviderResult:
        """Create an object and return its identifier and observed attributes."""

    def destroy(self, kind: ResourceKind, identifier: str) -> None:
        """Delete the object; raises :class:`ResourceNotFound` if it is gone."""

    def describe(self, kind: ResourceKind, identifier: str) -> Mapping[str, Any]:
        """Return observed attributes; raises :class:`ResourceNotFound`."""


__all__ = [
    "FatalProviderError",
    "ProviderError",
    "ProviderResult",
    "ResourceNotFound",
    "ResourceProvider",
    "RetryableProviderError",
]
