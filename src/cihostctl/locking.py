"""Exclusive locks guarding per-manifest state during an apply.

Locks are OS-level file locks (``filelock.FileLock``) on
``<runtime_dir>/<manifest>.lock``. The operating system drops the lock when
the holding process exits, so a crashed apply never leaves a manifest locked.
Holder metadata (pid, acquisition time and lease expiry) is written next to
the lock file for diagnostics.
"""
from __future__ import annotations

import json
import os
import re
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

from filelock import FileLock, Timeout

_SAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired before the timeout elapses."""


@dataclass(slots=True, frozen=True)
class LockHandle:
    """Information about an acquired lock."""

    name: str
    path: Path
    wait_ms: int


@dataclass(slots=True, frozen=True)
class LockInfo:
    """Holder metadata read back from disk."""

    pid: int | None
    acquired_at: str | None
    expires_at: str | None

    def expired(self, now: datetime | None = None) -> bool:
        """Return ``True`` when the recorded lease has lapsed."""
        if self.expires_at is None:
            return True
        current = now or datetime.now(UTC)
        try:
            expiry = datetime.fromisoformat(self.expires_at)
        except ValueError:
            return True
        return current >= expiry


class LockManager:
    """Hand out exclusive per-manifest locks."""

    def __init__(
        self,
        runtime_dir: Path,
        default_timeout: float = 30.0,
        ttl: float = 3600.0,
    ) -> None:
        """Store lock directory and timing defaults."""
        self.runtime_dir = Path(runtime_dir).expanduser()
        self.default_timeout = default_timeout
        self.ttl = ttl

    def lock_path(self, name: str) -> Path:
        """Return the lock file path for manifest *name*."""
        safe = _SAFE_NAME.sub("-", name).strip("-") or "default"
        return self.runtime_dir / f"{safe}.lock"

    def metadata_path(self, name: str) -> Path:
        """Return the holder metadata path for manifest *name*."""
        lock_path = self.lock_path(name)
        return lock_path.with_name(lock_path.name + ".json")

    @contextmanager
    def manifest_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the exclusive lock for *name* for the duration of the block."""
        self.runtime_dir.mkdir(parents=True, exist_ok=True)
        path = self.lock_path(name)
        effective_timeout = self.default_timeout if timeout is None else timeout
        lock = FileLock(str(path))
        start = time.perf_counter()
        try:
            lock.acquire(timeout=effective_timeout)
        except Timeout as exc:
            holder = self.read_info(name)
            detail = f" (held by pid {holder.pid})" if holder and holder.pid else ""
            raise LockTimeoutError(
                f"Timed out after {effective_timeout:.1f}s waiting for lock {path}{detail}."
            ) from exc
        wait_ms = int((time.perf_counter() - start) * 1000)
        try:
            self._write_metadata(name, path)
            yield LockHandle(name=name, path=path, wait_ms=wait_ms)
        finally:
            self.metadata_path(name).unlink(missing_ok=True)
            lock.release()

    def read_info(self, name: str) -> LockInfo | None:
        """Return holder metadata for *name*, if any is recorded."""
        path = self.metadata_path(name)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        if not isinstance(data, dict):
            return None
        pid = data.get("pid")
        return LockInfo(
            pid=pid if isinstance(pid, int) else None,
            acquired_at=data.get("acquired_at"),
            expires_at=data.get("expires_at"),
        )

    def _write_metadata(self, name: str, path: Path) -> None:
        now = datetime.now(UTC)
        payload = {
            "pid": os.getpid(),
            "path": str(path),
            "acquired_at": now.isoformat(),
            "expires_at": (now + timedelta(seconds=self.ttl)).isoformat(),
        }
        self.metadata_path(name).write_text(json.dumps(payload) + "\n", encoding="utf-8")


__all__ = ["LockHandle", "LockInfo", "LockManager", "LockTimeoutError"]
