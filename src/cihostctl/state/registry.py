"""Helpers for interacting with the cihostctl state registry.

The registry directory (``~/.local/state/cihostctl/registry`` by default)
stores YAML artifacts such as ``<manifest>/resources.yml``. This module
provides lightweight helpers to read and write those files using atomic
operations: a reader either sees the previous complete file or the new one,
never a partial write.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to manage cihostctl state. Install with `pip install cihostctl`."
    ) from exc


class StateRegistryError(RuntimeError):
    """Raised when state registry operations fail."""


@dataclass(frozen=True)
class StateRegistry:
    """High-level interface to the YAML registry."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", Path(self.root).expanduser())

    def ensure_root(self) -> None:
        """Create the registry directory if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named registry file."""
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a registry file, returning *default* when missing."""
        path = self.path_for(name)
        if not path.exists():
            return deepcopy(default)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise StateRegistryError(f"Failed to parse registry file {path}: {exc}") from exc
        return data if data is not None else deepcopy(default)

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Atomically write *payload* to the given registry file."""
        path = self.path_for(name)
        path.parent.mkdir(parents=True, exist_ok=True)

        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(payload, handle, sort_keys=False)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, path)
            os.chmod(path, 0o640)
        finally:
            tmp_path.unlink(missing_ok=True)

    def delete(self, name: str) -> bool:
        """Remove a registry file, returning ``True`` when it existed."""
        path = self.path_for(name)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    def read_mapping(self, name: str, key: str) -> dict[str, object]:
        """Return the ``key`` mapping stored in *name* (empty when missing)."""
        value = self.read(name, default={key: {}})
        if not isinstance(value, Mapping):
            raise StateRegistryError(f"Registry file {self.path_for(name)} must hold a mapping.")
        section = value.get(key) or {}
        if not isinstance(section, Mapping):
            raise StateRegistryError(
                f"Registry file {self.path_for(name)} key '{key}' must be a mapping."
            )
        return dict(section)


__all__ = ["StateRegistry", "StateRegistryError"]
