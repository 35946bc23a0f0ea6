"""Provider interfaces for cihostctl."""
from __future__ import annotations

from ..config import ConfigError
from ..state.registry import StateRegistry
from .base import (
    FatalProviderError,
    ProviderError,
    ProviderResult,
    ResourceNotFound,
    ResourceProvider,
    RetryableProviderError,
)
from .simulated import SimulatedProvider


def build_provider(name: str, registry: StateRegistry) -> ResourceProvider:
    """Return the provider configured under *name*."""
    if name == "simulated":
        return SimulatedProvider(registry)
    raise ConfigError(f"Unknown provider '{name}'. Available: simulated.")


__all__ = [
    "FatalProviderError",
    "ProviderError",
    "ProviderResult",
    "ResourceNotFound",
    "ResourceProvider",
    "RetryableProviderError",
    "SimulatedProvider",
    "build_provider",
]
