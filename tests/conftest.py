"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from cihostctl.locking import LockManager
from cihostctl.state import StateRegistry


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep every test away from the user's real config and state directories."""
    for key in list(os.environ):
        if key.startswith("CIHOSTCTL_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))


@pytest.fixture
def registry(tmp_path: Path) -> StateRegistry:
    """Return an empty state registry rooted in the test directory."""
    return StateRegistry(tmp_path / "registry")


@pytest.fixture
def locks(tmp_path: Path) -> LockManager:
    """Return a lock manager with a short timeout."""
    return LockManager(tmp_path / "run", default_timeout=1.0)
