"""In-memory collaborators shared by the test suite."""
from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from cihostctl.bootstrap.shell import CommandResult, ConnectError, Credentials
from cihostctl.providers.base import FatalProviderError, ProviderResult, ResourceNotFound
from cihostctl.resources.models import ResourceKind


class FakeProvider:
    """Record every call; echo attributes back as observed values."""

    name = "fake"

    def __init__(self) -> None:
        self.calls: list[tuple[str, ResourceKind, Any]] = []
        self.objects: dict[str, tuple[ResourceKind, dict[str, Any]]] = {}
        self.errors: list[Exception] = []
        self.crash_after: int | None = None
        self.successful_creates = 0
        self._counter = 0

    def create(self, kind: ResourceKind, attributes: Mapping[str, Any]) -> ProviderResult:
        self.calls.append(("create", kind, dict(attributes)))
        if self.errors:
            raise self.errors.pop(0)
        if self.crash_after is not None and self.successful_creates >= self.crash_after:
            raise FatalProviderError("provider crashed")
        self._counter += 1
        self.successful_creates += 1
        identifier = f"{kind.value}-{self._counter}"
        observed = dict(attributes)
        if kind is ResourceKind.INSTANCE:
            observed["public_ip"] = f"203.0.113.{self._counter}"
        self.objects[identifier] = (kind, dict(attributes))
        return ProviderResult(identifier=identifier, observed=observed)

    def destroy(self, kind: ResourceKind, identifier: str) -> None:
        self.calls.append(("destroy", kind, identifier))
        if identifier not in self.objects:
            raise ResourceNotFound(kind, identifier)
        del self.objects[identifier]

    def describe(self, kind: ResourceKind, identifier: str) -> Mapping[str, Any]:
        self.calls.append(("describe", kind, identifier))
        if identifier not in self.objects:
            raise ResourceNotFound(kind, identifier)
        return dict(self.objects[identifier][1])

    def count(self, action: str) -> int:
        return sum(1 for call in self.calls if call[0] == action)


class FakeSession:
    """Session whose command results are scripted on the owning shell."""

    def __init__(self, shell: FakeShell) -> None:
        self.shell = shell
        self.closed = False

    def run(self, command: str, *, timeout: float | None = None) -> CommandResult:
        self.shell.commands.append(command)
        scripted = self.shell.results.get(command)
        if isinstance(scripted, list):
            outcome = scripted.pop(0) if scripted else CommandResult(exit_code=0)
        elif scripted is None:
            outcome = CommandResult(exit_code=0, stdout=f"ran: {command}\n")
        else:
            outcome = scripted
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def close(self) -> None:
        self.closed = True


class FakeShell:
    """Refuse the first *connect_failures* connections, then hand out sessions."""

    def __init__(
        self,
        *,
        connect_failures: int = 0,
        results: Mapping[str, Any] | None = None,
    ) -> None:
        self.connect_failures = connect_failures
        self.results: dict[str, Any] = dict(results or {})
        self.connect_attempts = 0
        self.addresses: list[str] = []
        self.credentials: list[Credentials] = []
        self.commands: list[str] = []
        self.sessions: list[FakeSession] = []

    def connect(self, address: str, credentials: Credentials) -> FakeSession:
        self.connect_attempts += 1
        self.addresses.append(address)
        self.credentials.append(credentials)
        if self.connect_attempts <= self.connect_failures:
            raise ConnectError(f"connection to {address} refused")
        session = FakeSession(self)
        self.sessions.append(session)
        return session


class FakeClock:
    """Monotonic clock advanced only by the injected ``sleep``."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
