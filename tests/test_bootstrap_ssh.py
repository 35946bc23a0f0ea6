"""Paramiko remote shell adapter tests (no network)."""
from __future__ import annotations

from pathlib import Path

import paramiko
import pytest
from fakes import FakeClock

from cihostctl.bootstrap import ConnectError, Credentials, SessionDropped
from cihostctl.bootstrap.ssh import (
    LOST_EXIT_CODE,
    TIMEOUT_EXIT_CODE,
    ParamikoSession,
    ParamikoShell,
)


class _Channel:
    """Exec channel whose stdout only flows once pending stderr is consumed.

    This mirrors the shared SSH window: a remote process blocked writing
    stderr produces no more stdout and never exits.
    """

    def __init__(
        self,
        *,
        stdout: bytes = b"",
        stderr: bytes = b"",
        exit_code: int | Exception = 0,
        finishes: bool = True,
    ) -> None:
        self._stdout = bytearray(stdout)
        self._stderr = bytearray(stderr)
        self._exit_code = exit_code
        self._finishes = finishes
        self.closed = False

    def recv_ready(self) -> bool:
        return bool(self._stdout) and not self._stderr

    def recv(self, size: int) -> bytes:
        chunk = bytes(self._stdout[:size])
        del self._stdout[:size]
        return chunk

    def recv_stderr_ready(self) -> bool:
        return bool(self._stderr)

    def recv_stderr(self, size: int) -> bytes:
        chunk = bytes(self._stderr[:size])
        del self._stderr[:size]
        return chunk

    def exit_status_ready(self) -> bool:
        return self._finishes and not self._stdout and not self._stderr

    def recv_exit_status(self) -> int:
        if isinstance(self._exit_code, Exception):
            raise self._exit_code
        return self._exit_code

    def close(self) -> None:
        self.closed = True


class _Stream:
    def __init__(self, channel: _Channel) -> None:
        self.channel = channel

    def close(self) -> None:
        pass


class _Transport:
    def __init__(self, active: bool = True) -> None:
        self.active = active

    def is_active(self) -> bool:
        return self.active


class _Client:
    def __init__(self, channel: _Channel | None = None, *, active: bool = True) -> None:
        self.transport = _Transport(active)
        self.channel = channel or _Channel()
        self.exec_error: Exception | None = None
        self.commands: list[tuple[str, float | None]] = []
        self.closed = False

    def get_transport(self) -> _Transport:
        return self.transport

    def exec_command(self, command: str, timeout: float | None = None) -> tuple[_Stream, _Stream, _Stream]:
        if self.exec_error is not None:
            raise self.exec_error
        self.commands.append((command, timeout))
        return _Stream(self.channel), _Stream(self.channel), _Stream(self.channel)

    def close(self) -> None:
        self.closed = True


def _session(client: _Client, clock: FakeClock | None = None) -> ParamikoSession:
    clock = clock or FakeClock()
    return ParamikoSession(client, "203.0.113.5", sleep=clock.sleep, clock=clock)  # type: ignore[arg-type]


def test_run_returns_exit_code_and_output() -> None:
    """Output is decoded and the exit status collected."""
    client = _Client(_Channel(stdout=b"installed\n", stderr=b"warning\n"))

    result = _session(client).run("sudo yum install jenkins -y", timeout=30.0)

    assert result.exit_code == 0
    assert result.stdout == "installed\n"
    assert result.stderr == "warning\n"
    assert client.commands == [("sudo yum install jenkins -y", 30.0)]


def test_large_stderr_is_drained_alongside_stdout() -> None:
    """Noisy stderr never stalls the command or turns into a timeout."""
    noise = b"#" * 3_000_000
    channel = _Channel(stdout=b"done\n", stderr=noise, exit_code=0)
    clock = FakeClock()

    result = _session(_Client(channel), clock).run("sudo wget -O /tmp/x https://example.org", timeout=5.0)

    assert result.exit_code == 0
    assert result.stdout == "done\n"
    assert len(result.stderr) == len(noise)
    assert clock.sleeps == []


def test_run_on_inactive_transport_is_a_drop() -> None:
    """A closed transport means the command was never dispatched."""
    with pytest.raises(SessionDropped):
        _session(_Client(active=False)).run("true")


def test_channel_open_failure_is_a_drop() -> None:
    """Failing to open a channel is reported as SessionDropped."""
    client = _Client()
    client.exec_error = paramiko.SSHException("channel open failed")

    with pytest.raises(SessionDropped, match="channel open failed"):
        _session(client).run("true")


def test_timeout_after_dispatch_returns_timeout_exit_code() -> None:
    """A command that outlives its timeout fails with a distinct exit code."""
    channel = _Channel(finishes=False)
    clock = FakeClock()

    result = _session(_Client(channel), clock).run("sleep 1000", timeout=1.0)

    assert result.exit_code == TIMEOUT_EXIT_CODE
    assert "timed out" in result.stderr
    assert channel.closed
    assert clock.now >= 1.0


def test_connection_lost_after_dispatch_is_not_retried() -> None:
    """Losing the link mid-command is a failed step, not a drop."""
    result = _session(_Client(_Channel(exit_code=EOFError()))).run("sudo yum update -y")

    assert result.exit_code == LOST_EXIT_CODE
    assert "connection lost" in result.stderr


def test_channel_closed_without_exit_status() -> None:
    """paramiko's -1 status is reported as a lost connection."""
    result = _session(_Client(_Channel(stdout=b"partial\n", exit_code=-1))).run("sudo yum update -y")

    assert result.exit_code == LOST_EXIT_CODE
    assert result.stdout == "partial\n"
    assert "connection lost" in result.stderr


def _recording_client(monkeypatch: pytest.MonkeyPatch, created: list[object]) -> None:
    class FailingClient:
        def __init__(self) -> None:
            self.closed = False
            self.kwargs: dict[str, object] = {}
            created.append(self)

        def load_system_host_keys(self) -> None:
            pass

        def set_missing_host_key_policy(self, policy: object) -> None:
            self.policy = policy

        def connect(self, hostname: str, **kwargs: object) -> None:
            self.kwargs = {"hostname": hostname, **kwargs}
            raise paramiko.ssh_exception.NoValidConnectionsError({(hostname, 22): OSError("refused")})

        def close(self) -> None:
            self.closed = True

    monkeypatch.setattr(paramiko, "SSHClient", FailingClient)


def test_shell_connect_wraps_errors(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Handshake failures become ConnectError and the client is closed."""
    created: list[object] = []
    _recording_client(monkeypatch, created)
    key_file = tmp_path / "id_ed25519"

    with pytest.raises(ConnectError, match="ec2-user@203.0.113.5:22"):
        ParamikoShell().connect(
            "203.0.113.5", Credentials(user="ec2-user", key_file=key_file, connect_timeout=3.0)
        )

    (client,) = created
    assert client.closed  # type: ignore[attr-defined]
    assert client.kwargs["key_filename"] == str(key_file)  # type: ignore[attr-defined]
    assert client.kwargs["look_for_keys"] is False  # type: ignore[attr-defined]
    assert client.kwargs["timeout"] == 3.0  # type: ignore[attr-defined]
    assert isinstance(client.policy, paramiko.AutoAddPolicy)  # type: ignore[attr-defined]


def test_strict_host_keys_rejects_unknown_hosts(monkeypatch: pytest.MonkeyPatch) -> None:
    """With strict host keys only already-known keys are accepted."""
    created: list[object] = []
    _recording_client(monkeypatch, created)

    with pytest.raises(ConnectError):
        ParamikoShell(strict_host_keys=True).connect("203.0.113.5", Credentials(user="ec2-user"))

    (client,) = created
    assert isinstance(client.policy, paramiko.RejectPolicy)  # type: ignore[attr-defined]
