"""Remote bootstrap of freshly provisioned hosts."""
from __future__ import annotations

from .executor import (
    BootstrapExecutor,
    BootstrapResult,
    BootstrapState,
    CommandFailed,
    ConnectFailed,
    StepTranscript,
)
from .shell import (
    CommandResult,
    ConnectError,
    Credentials,
    RemoteShell,
    Session,
    SessionDropped,
)

__all__ = [
    "BootstrapExecutor",
    "BootstrapResult",
    "BootstrapState",
    "CommandFailed",
    "CommandResult",
    "ConnectError",
    "ConnectFailed",
    "Credentials",
    "RemoteShell",
    "Session",
    "SessionDropped",
    "StepTranscript",
]
