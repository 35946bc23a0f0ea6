"""State persistence helpers for cihostctl."""
from __future__ import annotations

from .registry import StateRegistry, StateRegistryError
from .store import StateStore

__all__ = ["StateRegistry", "StateRegistryError", "StateStore"]
