"""Top-level driver: plan, lock, apply and bootstrap a manifest."""
from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from .bootstrap.executor import (
    BootstrapExecutor,
    BootstrapResult,
    BootstrapState,
    ConnectFailed,
)
from .bootstrap.shell import Credentials, RemoteShell
from .config import AppConfig, BootstrapConfig, RetryConfig
from .engine import ApplyEngine, ApplyReport, ResourceOutcome
from .exit_codes import ExitCode
from .locking import LockManager
from .providers.base import ProviderError, ResourceProvider
from .resources.manifest import Manifest
from .resources.models import ApplyPlan, ManifestError
from .state.registry import StateRegistry
from .state.store import StateStore

if TYPE_CHECKING:
    from .logging import OperationScope


class NotProvisioned(RuntimeError):
    """Raised when bootstrap is requested for a host that does not exist yet."""


class Stage(str, Enum):
    """Furthest point a run reached."""

    PLAN = "plan"
    PROVISION = "provision"
    BOOTSTRAP = "bootstrap"
    DONE = "done"


@dataclass(slots=True)
class RunReport:
    """Aggregated outcome of an apply, bootstrap or destroy run."""

    manifest: str
    stage: Stage = Stage.PLAN
    plan: tuple[str, ...] = ()
    resources: ApplyReport | None = None
    bootstrap: BootstrapResult | None = None
    error: Exception | None = None
    lock_wait_ms: int | None = None
    cancelled: bool = False
    notes: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        """Return ``True`` when the run completed every stage."""
        return self.stage is Stage.DONE and self.error is None and not self.cancelled

    @property
    def exit_code(self) -> ExitCode:
        """Map the run outcome onto the CLI exit code taxonomy."""
        if self.ok:
            return ExitCode.OK
        if self.cancelled:
            return ExitCode.CANCELLED
        if self.bootstrap is not None and not self.bootstrap.ok:
            return ExitCode.BOOTSTRAP
        return ExitCode.PROVIDER

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "manifest": self.manifest,
            "ok": self.ok,
            "stage": self.stage.value,
            "plan": list(self.plan),
            "resources": self.resources.to_dict() if self.resources else None,
            "bootstrap": self.bootstrap.to_dict() if self.bootstrap else None,
            "error": str(self.error) if self.error else None,
            "lock_wait_ms": self.lock_wait_ms,
            "cancelled": self.cancelled,
            "notes": list(self.notes),
        }


class Orchestrator:
    """Run the provisioning pipeline for one manifest at a time.

    Configuration errors surface as exceptions before any provider call or
    lock acquisition. Provisioning and bootstrap failures are captured in the
    returned :class:`RunReport`, which records the furthest stage reached.
    Resources are never rolled back: a failed bootstrap leaves the host in
    place so it can be bootstrapped again on its own.
    """

    def __init__(
        self,
        provider: ResourceProvider,
        registry: StateRegistry,
        locks: LockManager,
        *,
        shell: RemoteShell | None = None,
        credentials: Credentials | None = None,
        retry: RetryConfig | None = None,
        bootstrap: BootstrapConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Store collaborators and policies."""
        self.provider = provider
        self.registry = registry
        self.locks = locks
        self.shell = shell
        self.credentials = credentials or Credentials(user="ec2-user")
        self.retry = retry or RetryConfig()
        self.bootstrap_settings = bootstrap or BootstrapConfig()
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        provider: ResourceProvider,
        registry: StateRegistry,
        locks: LockManager,
        *,
        shell: RemoteShell | None = None,
    ) -> Orchestrator:
        """Build an orchestrator using the resolved application config."""
        return cls(
            provider,
            registry,
            locks,
            shell=shell,
            credentials=Credentials(
                user=config.ssh.user,
                port=config.ssh.port,
                key_file=config.ssh.key_file,
                connect_timeout=config.ssh.connect_timeout,
            ),
            retry=config.retry,
            bootstrap=config.bootstrap,
        )

    def store(self, manifest: Manifest) -> StateStore:
        """Return the state store for *manifest*."""
        return StateStore(self.registry, manifest.name)

    def engine(self, manifest: Manifest) -> ApplyEngine:
        """Return an apply engine bound to *manifest*'s state."""
        return ApplyEngine(self.provider, self.store(manifest), self.retry, sleep=self._sleep)

    # ------------------------------------------------------------------
    def plan(self, manifest: Manifest) -> tuple[ApplyPlan, list[ResourceOutcome]]:
        """Return the apply order and the predicted action for each resource."""
        plan = manifest.planner().plan()
        return plan, self.engine(manifest).preview(plan)

    def apply(
        self,
        manifest: Manifest,
        *,
        bootstrap: bool = True,
        refresh: bool = False,
        cancel: threading.Event | None = None,
        op: OperationScope | None = None,
    ) -> RunReport:
        """Provision every resource, then bootstrap the target host."""
        plan = manifest.planner().plan()
        report = RunReport(manifest=manifest.name, plan=plan.names)
        with self.locks.manifest_lock(manifest.name) as handle:
            report.lock_wait_ms = handle.wait_ms
            if op is not None:
                op.set_lock_wait_ms(handle.wait_ms)

            report.stage = Stage.PROVISION
            report.resources = self.engine(manifest).apply(
                plan, cancel=cancel, refresh=refresh, op=op
            )
            if report.resources.cancelled:
                report.cancelled = True
                return report
            if report.resources.failure is not None:
                report.error = report.resources.failure
                return report

            if bootstrap and manifest.bootstrap.enabled:
                report.stage = Stage.BOOTSTRAP
                self._run_bootstrap(manifest, report, cancel, op)
                if not report.bootstrap or not report.bootstrap.ok:
                    return report
            elif bootstrap and not manifest.bootstrap.enabled:
                report.notes.append("Manifest declares no bootstrap steps.")
            report.stage = Stage.DONE
        return report

    def bootstrap(
        self,
        manifest: Manifest,
        *,
        cancel: threading.Event | None = None,
        op: OperationScope | None = None,
    ) -> RunReport:
        """Re-run the bootstrap alone against an already provisioned host."""
        plan = manifest.planner().plan()
        if not manifest.bootstrap.enabled:
            raise ManifestError(f"Manifest '{manifest.name}' declares no bootstrap steps.")
        report = RunReport(manifest=manifest.name, plan=plan.names)
        with self.locks.manifest_lock(manifest.name) as handle:
            report.lock_wait_ms = handle.wait_ms
            if op is not None:
                op.set_lock_wait_ms(handle.wait_ms)
            target = manifest.bootstrap.target
            if target is None or self.store(manifest).get(target) is None:
                raise NotProvisioned(
                    f"Resource '{target}' has not been provisioned; run apply first."
                )
            report.stage = Stage.BOOTSTRAP
            self._run_bootstrap(manifest, report, cancel, op)
            if report.bootstrap is not None and report.bootstrap.ok:
                report.stage = Stage.DONE
        return report

    def destroy(
        self,
        manifest: Manifest,
        *,
        cancel: threading.Event | None = None,
        op: OperationScope | None = None,
    ) -> RunReport:
        """Destroy every recorded resource, dependents first."""
        planner = manifest.planner()
        report = RunReport(manifest=manifest.name)
        with self.locks.manifest_lock(manifest.name) as handle:
            report.lock_wait_ms = handle.wait_ms
            if op is not None:
                op.set_lock_wait_ms(handle.wait_ms)
            store = self.store(manifest)
            recorded = set(store.records())
            declared = {spec.name for spec in manifest.resources}
            orphans = sorted(recorded - declared)
            if orphans:
                report.notes.append(f"Destroying resources no longer declared: {', '.join(orphans)}.")
            order = [*orphans, *planner.destroy_order(recorded & declared)]
            report.plan = tuple(order)
            report.stage = Stage.PROVISION
            report.resources = self.engine(manifest).destroy(order, cancel=cancel, op=op)
            if report.resources.cancelled:
                report.cancelled = True
                return report
            if report.resources.failure is not None:
                report.error = report.resources.failure
                return report
            report.stage = Stage.DONE
        return report

    # ------------------------------------------------------------------
    def _run_bootstrap(
        self,
        manifest: Manifest,
        report: RunReport,
        cancel: threading.Event | None,
        op: OperationScope | None,
    ) -> None:
        target = manifest.bootstrap.target
        assert target is not None
        attribute = manifest.bootstrap.address_attribute
        address = self._target_address(manifest, target, attribute)
        if address is None:
            error = ConnectFailed(
                target, 0, RuntimeError(f"instance exposes no '{attribute}' attribute")
            )
            report.bootstrap = BootstrapResult(
                state=BootstrapState.CONNECT_FAILED,
                address="",
                history=[BootstrapState.CREATED, BootstrapState.CONNECT_FAILED],
                error=error,
            )
            report.error = error
            return
        if self.shell is None:
            raise RuntimeError("No remote shell configured for bootstrap.")

        executor = BootstrapExecutor(
            self.shell,
            self.bootstrap_settings,
            sleep=self._sleep,
            clock=self._clock,
        )
        result = executor.run(
            address,
            self.credentials,
            manifest.bootstrap.steps,
            cancel=cancel,
            op=op,
        )
        report.bootstrap = result
        if result.state is BootstrapState.CANCELLED:
            report.cancelled = True
        elif not result.ok:
            report.error = result.error

    def _target_address(self, manifest: Manifest, target: str, attribute: str) -> str | None:
        record = self.store(manifest).get(target)
        if record is None:
            return None
        value = record.observed.get(attribute)
        if value:
            return str(value)
        try:
            described = self.provider.describe(record.kind, record.identifier)
        except ProviderError:
            return None
        value = described.get(attribute)
        return str(value) if value else None


__all__ = ["NotProvisioned", "Orchestrator", "RunReport", "Stage"]
