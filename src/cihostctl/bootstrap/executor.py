"""Remote bootstrap executor.

Drives a freshly created host through::

    CREATED -> POLLING -> CONNECTED -> EXECUTING -> DONE

with the terminal error states ``CONNECT_FAILED``, ``COMMAND_FAILED`` and
``CANCELLED``. Polling absorbs boot latency by retrying the SSH handshake on a
fixed interval until an overall deadline; commands then run strictly in order
over one session and the first non-zero exit code stops the sequence.
"""
from __future__ import annotations

import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from ..config import BootstrapConfig
from ..resources.models import BootstrapStep
from .shell import ConnectError, Credentials, RemoteShell, Session, SessionDropped

if TYPE_CHECKING:
    from ..logging import OperationScope


class BootstrapState(str, Enum):
    """Lifecycle states of a bootstrap run."""

    CREATED = "created"
    POLLING = "polling"
    CONNECTED = "connected"
    EXECUTING = "executing"
    DONE = "done"
    CONNECT_FAILED = "connect_failed"
    COMMAND_FAILED = "command_failed"
    CANCELLED = "cancelled"


class ConnectFailed(RuntimeError):
    """The host never accepted a remote shell session within the deadline."""

    def __init__(self, address: str, attempts: int, cause: BaseException | None) -> None:
        """Record the address, number of attempts and last error."""
        super().__init__(
            f"Could not connect to {address} after {attempts} attempt(s): {cause or 'timed out'}"
        )
        self.address = address
        self.attempts = attempts
        self.cause = cause


class CommandFailed(RuntimeError):
    """A bootstrap step exited non-zero or could not be run."""

    def __init__(self, step: BootstrapStep, exit_code: int | None, detail: str = "") -> None:
        """Record the failing step and its exit code (``None`` when it never ran)."""
        code = "no exit code" if exit_code is None else f"exit code {exit_code}"
        message = f"Bootstrap {step.label} `{step.command}` failed with {code}"
        super().__init__(f"{message}: {detail}" if detail else message)
        self.step = step
        self.exit_code = exit_code
        self.detail = detail


@dataclass(slots=True, frozen=True)
class StepTranscript:
    """Captured output of one executed bootstrap step."""

    index: int
    command: str
    exit_code: int | None
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "index": self.index,
            "command": self.command,
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "duration_ms": self.duration_ms,
        }


@dataclass(slots=True)
class BootstrapResult:
    """Terminal state of a bootstrap run plus the full transcript."""

    state: BootstrapState
    address: str
    transcript: list[StepTranscript] = field(default_factory=list)
    history: list[BootstrapState] = field(default_factory=list)
    connect_attempts: int = 0
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        """Return ``True`` when every step succeeded."""
        return self.state is BootstrapState.DONE

    @property
    def failed_step(self) -> BootstrapStep | None:
        """Return the step that failed, if any."""
        if isinstance(self.error, CommandFailed):
            return self.error.step
        return None

    @property
    def exit_code(self) -> int | None:
        """Return the failing step's exit code, if any."""
        if isinstance(self.error, CommandFailed):
            return self.error.exit_code
        return None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        failed = self.failed_step
        return {
            "state": self.state.value,
            "address": self.address,
            "connect_attempts": self.connect_attempts,
            "failed_step": failed.index if failed is not None else None,
            "exit_code": self.exit_code,
            "error": str(self.error) if self.error else None,
            "history": [state.value for state in self.history],
            "transcript": [entry.to_dict() for entry in self.transcript],
        }


class BootstrapExecutor:
    """Poll a host until it accepts SSH, then run the bootstrap steps."""

    def __init__(
        self,
        shell: RemoteShell,
        settings: BootstrapConfig | None = None,
        *,
        max_attempts: int | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Store the shell capability and timing policy."""
        self.shell = shell
        self.settings = settings or BootstrapConfig()
        self.max_attempts = max_attempts
        self._sleep = sleep
        self._clock = clock

    def run(
        self,
        address: str,
        credentials: Credentials,
        steps: Sequence[BootstrapStep],
        *,
        cancel: threading.Event | None = None,
        op: OperationScope | None = None,
    ) -> BootstrapResult:
        """Bootstrap the host at *address* and return the terminal result."""
        result = BootstrapResult(state=BootstrapState.CREATED, address=address)
        result.history.append(BootstrapState.CREATED)

        self._transition(result, BootstrapState.POLLING)
        try:
            session = self._poll(address, credentials, result, cancel)
        except ConnectFailed as exc:
            result.error = exc
            self._transition(result, BootstrapState.CONNECT_FAILED)
            if op is not None:
                op.add_step("bootstrap.connect", status="failed", detail=str(exc))
            return result
        if session is None:
            self._transition(result, BootstrapState.CANCELLED)
            return result

        self._transition(result, BootstrapState.CONNECTED)
        if op is not None:
            op.add_step(
                "bootstrap.connect",
                status="success",
                detail={"address": address, "attempts": result.connect_attempts},
            )

        try:
            session = self._execute(session, address, credentials, steps, result, cancel, op)
        finally:
            if session is not None:
                session.close()
        return result

    # ------------------------------------------------------------------
    def _poll(
        self,
        address: str,
        credentials: Credentials,
        result: BootstrapResult,
        cancel: threading.Event | None,
    ) -> Session | None:
        deadline = self._clock() + self.settings.connect_timeout
        last_error: ConnectError | None = None
        while True:
            if cancel is not None and cancel.is_set():
                return None
            result.connect_attempts += 1
            try:
                return self.shell.connect(address, credentials)
            except ConnectError as exc:
                last_error = exc
            exhausted = self.max_attempts is not None and result.connect_attempts >= self.max_attempts
            if exhausted or self._clock() + self.settings.poll_interval > deadline:
                raise ConnectFailed(address, result.connect_attempts, last_error)
            self._sleep(self.settings.poll_interval)

    def _execute(
        self,
        session: Session,
        address: str,
        credentials: Credentials,
        steps: Sequence[BootstrapStep],
        result: BootstrapResult,
        cancel: threading.Event | None,
        op: OperationScope | None,
    ) -> Session | None:
        self._transition(result, BootstrapState.EXECUTING)
        for step in steps:
            if cancel is not None and cancel.is_set():
                self._transition(result, BootstrapState.CANCELLED)
                return session
            reconnects_left = self.settings.reconnect_attempts
            while True:
                started = time.perf_counter()
                try:
                    outcome = session.run(step.command, timeout=self.settings.command_timeout)
                except SessionDropped as exc:
                    session.close()
                    if reconnects_left <= 0:
                        return self._fail(result, step, None, f"connection lost: {exc}", op)
                    reconnects_left -= 1
                    try:
                        session = self.shell.connect(address, credentials)
                    except ConnectError as reconnect_error:
                        return self._fail(
                            result, step, None, f"reconnect failed: {reconnect_error}", op
                        )
                    continue
                break

            entry = StepTranscript(
                index=step.index,
                command=step.command,
                exit_code=outcome.exit_code,
                stdout=outcome.stdout,
                stderr=outcome.stderr,
                duration_ms=int((time.perf_counter() - started) * 1000),
            )
            result.transcript.append(entry)
            if outcome.exit_code != 0:
                detail = outcome.stderr.strip().splitlines()[-1] if outcome.stderr.strip() else ""
                self._fail(result, step, outcome.exit_code, detail, op)
                return session
            if op is not None:
                op.add_step(f"bootstrap.{step.label}", status="success", detail=step.command)

        self._transition(result, BootstrapState.DONE)
        return session

    def _fail(
        self,
        result: BootstrapResult,
        step: BootstrapStep,
        exit_code: int | None,
        detail: str,
        op: OperationScope | None,
    ) -> None:
        result.error = CommandFailed(step, exit_code, detail)
        self._transition(result, BootstrapState.COMMAND_FAILED)
        if op is not None:
            op.add_step(f"bootstrap.{step.label}", status="failed", detail=str(result.error))
        return None

    @staticmethod
    def _transition(result: BootstrapResult, state: BootstrapState) -> None:
        result.state = state
        result.history.append(state)


__all__ = [
    "BootstrapExecutor",
    "BootstrapResult",
    "BootstrapState",
    "CommandFailed",
    "ConnectFailed",
    "StepTranscript",
]
