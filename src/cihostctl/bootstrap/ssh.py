"""Paramiko-backed implementation of the remote shell capability."""
from __future__ import annotations

import socket
import time
from collections.abc import Callable

import paramiko

from .shell import CommandResult, ConnectError, Credentials, SessionDropped

TIMEOUT_EXIT_CODE = 124
LOST_EXIT_CODE = -1

_CHUNK_SIZE = 32768
_POLL_INTERVAL = 0.05


class ParamikoSession:
    """One SSH connection; every command runs on a fresh exec channel."""

    def __init__(
        self,
        client: paramiko.SSHClient,
        address: str,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Wrap a connected client."""
        self._client = client
        self.address = address
        self._sleep = sleep
        self._clock = clock

    def run(self, command: str, *, timeout: float | None = None) -> CommandResult:
        """Run *command* and wait for it to exit."""
        transport = self._client.get_transport()
        if transport is None or not transport.is_active():
            raise SessionDropped(f"SSH transport to {self.address} is closed.")
        try:
            stdin, stdout, _stderr = self._client.exec_command(command, timeout=timeout)
        except (paramiko.SSHException, EOFError, OSError) as exc:
            # The channel never opened, so the command did not start.
            raise SessionDropped(f"Could not open a channel on {self.address}: {exc}") from exc

        stdin.close()
        channel = stdout.channel
        try:
            out, err = self._drain(channel, timeout)
            exit_code = channel.recv_exit_status()
        except socket.timeout:
            channel.close()
            return CommandResult(
                exit_code=TIMEOUT_EXIT_CODE,
                stderr=f"command timed out after {timeout}s",
            )
        except (paramiko.SSHException, EOFError, OSError) as exc:
            return CommandResult(exit_code=LOST_EXIT_CODE, stderr=f"connection lost: {exc}")
        if exit_code == LOST_EXIT_CODE:
            # paramiko reports -1 when the channel closed without an exit status.
            return CommandResult(
                exit_code=LOST_EXIT_CODE,
                stdout=out,
                stderr=err + "connection lost before the command reported an exit status",
            )
        return CommandResult(exit_code=exit_code, stdout=out, stderr=err)

    def _drain(self, channel: paramiko.Channel, timeout: float | None) -> tuple[str, str]:
        """Read stdout and stderr together until the command exits.

        Both streams share the channel window, so neither may be left unread
        while waiting on the other.
        """
        deadline = None if timeout is None else self._clock() + timeout
        out = bytearray()
        err = bytearray()
        while True:
            progressed = False
            if channel.recv_ready():
                out += channel.recv(_CHUNK_SIZE)
                progressed = True
            if channel.recv_stderr_ready():
                err += channel.recv_stderr(_CHUNK_SIZE)
                progressed = True
            if progressed:
                continue
            if channel.exit_status_ready():
                break
            if deadline is not None and self._clock() >= deadline:
                raise socket.timeout(f"no exit status after {timeout}s")
            self._sleep(_POLL_INTERVAL)
        return (
            out.decode("utf-8", errors="replace"),
            err.decode("utf-8", errors="replace"),
        )

    def close(self) -> None:
        """Close the underlying SSH client."""
        self._client.close()


class ParamikoShell:
    """Open SSH sessions with paramiko.

    Unknown host keys are accepted and remembered by default, since a freshly
    provisioned host is never in ``known_hosts``. With ``strict_host_keys``
    only keys already known to the system are trusted.
    """

    def __init__(self, *, strict_host_keys: bool = False) -> None:
        """Configure host key handling."""
        self.strict_host_keys = strict_host_keys

    def connect(self, address: str, credentials: Credentials) -> ParamikoSession:
        """Open an SSH session to *address*; raises :class:`ConnectError`."""
        client = paramiko.SSHClient()
        client.load_system_host_keys()
        if self.strict_host_keys:
            client.set_missing_host_key_policy(paramiko.RejectPolicy())
        else:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                address,
                port=credentials.port,
                username=credentials.user,
                key_filename=str(credentials.key_file) if credentials.key_file else None,
                look_for_keys=credentials.key_file is None,
                timeout=credentials.connect_timeout,
                banner_timeout=credentials.connect_timeout,
                auth_timeout=credentials.connect_timeout,
            )
        except (paramiko.SSHException, EOFError, OSError) as exc:
            client.close()
            raise ConnectError(
                f"SSH to {credentials.user}@{address}:{credentials.port} failed: {exc}"
            ) from exc
        return ParamikoSession(client, address)


__all__ = ["LOST_EXIT_CODE", "ParamikoSession", "ParamikoShell", "TIMEOUT_EXIT_CODE"]
