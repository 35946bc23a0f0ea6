"""Structured operation logging for cihostctl.

Every CLI operation appends a single JSON record to ``operations.jsonl`` in
the configured log directory. Records capture the operation name, arguments,
target, the individual steps performed (one per resource or bootstrap
command), lock wait time and the final result.

Logging never breaks the operation being logged: when the log directory
cannot be created or a write fails, the logger disables itself and further
records are dropped.
"""
from __future__ import annotations

import json
import os
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

OPERATIONS_LOG = "operations.jsonl"


def _sanitise(value: object) -> Any:
    """Return a JSON-safe version of *value*."""
    if isinstance(value, Enum):
        return _sanitise(value.value)
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitise(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitise(item) for item in value]
    return str(value)


class OperationScope:
    """Mutable record of a single operation, finalised on scope exit."""

    def __init__(
        self,
        name: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Initialise the scope for operation *name*."""
        self.name = name
        self.op_id = uuid.uuid4().hex[:12]
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.steps: list[dict[str, Any]] = []
        self.lock_wait_ms: int | None = None
        self.result: dict[str, Any] | None = None
        self._started = time.perf_counter()
        self._started_at = datetime.now(UTC).isoformat()

    def add_step(self, name: str, *, status: str, detail: object | None = None) -> None:
        """Record a step performed as part of the operation."""
        step: dict[str, Any] = {"step": name, "status": status}
        if detail is not None:
            step["detail"] = _sanitise(detail)
        self.steps.append(step)

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the operation waited for its lock."""
        self.lock_wait_ms = int(wait_ms)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            warnings=warnings,
            errors=None,
            rc=0,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            warnings=warnings,
            errors=errors,
            rc=0,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int = 1,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            changed=changed,
            warnings=None,
            errors=list(errors) if errors else [message],
            rc=rc,
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int,
        warnings: Sequence[str] | None,
        errors: Sequence[str] | None,
        rc: int,
        context: Mapping[str, object] | None,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": list(warnings or []),
            "errors": list(errors or []),
            "rc": rc,
            "context": _sanitise(dict(context or {})),
        }

    def to_record(self) -> dict[str, Any]:
        """Return the JSON record for this operation."""
        return {
            "ts": self._started_at,
            "op_id": self.op_id,
            "op": self.name,
            "pid": os.getpid(),
            "args": _sanitise(self.args),
            "target": _sanitise(self.target),
            "steps": self.steps,
            "lock_wait_ms": self.lock_wait_ms,
            "duration_ms": int((time.perf_counter() - self._started) * 1000),
            "result": self.result,
        }


class StructuredLogger:
    """Append-only JSONL writer for operation records."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare the log directory, disabling logging when it is unavailable."""
        self._logs_dir = Path(logs_dir).expanduser()
        self._operations_log_path = self._logs_dir / OPERATIONS_LOG
        self._enabled = True
        try:
            self._logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False

    @property
    def operations_log(self) -> Path:
        """Return the path of the operations log."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        name: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit."""
        scope = OperationScope(name, args=args, target=target)
        try:
            yield scope
        except Exception as exc:
            if scope.result is None:
                scope.error(f"{name} failed: {exc}", errors=[repr(exc)], rc=1)
            raise
        finally:
            if scope.result is None:
                scope.success(f"{name} completed.")
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, Any]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
        except OSError:
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
