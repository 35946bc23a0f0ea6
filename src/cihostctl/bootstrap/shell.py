"""Remote shell capability used by the bootstrap executor."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol


class ConnectError(RuntimeError):
    """Raised when a remote shell session cannot be established."""


class SessionDropped(RuntimeError):
    """Raised by :meth:`Session.run` when the connection was lost before dispatch.

    Implementations must only raise this when the command is known not to
    have started on the remote host, so retrying it on a new session is safe.
    """


@dataclass(slots=True, frozen=True)
class Credentials:
    """Login details for the remote host."""

    user: str
    port: int = 22
    key_file: Path | None = None
    connect_timeout: float = 10.0


@dataclass(slots=True, frozen=True)
class CommandResult:
    """Exit code and captured output of one remote command."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""


class Session(Protocol):
    """An open remote shell session."""

    def run(self, command: str, *, timeout: float | None = None) -> CommandResult:
        """Run *command* to completion and return its result."""

    def close(self) -> None:
        """Close the session."""


class RemoteShell(Protocol):
    """Factory for remote shell sessions."""

    def connect(self, address: str, credentials: Credentials) -> Session:
        """Open a session to *address*; raises :class:`ConnectError`."""


__all__ = [
    "CommandResult",
    "ConnectError",
    "Credentials",
    "RemoteShell",
    "Session",
    "SessionDropped",
]
