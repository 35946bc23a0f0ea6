"""Typer-powered command line interface for ``cihostctl``.

Every command resolves configuration once, runs inside a structured
operation scope and maps failures onto the documented exit codes.
"""
from __future__ import annotations

import json
import signal
import textwrap
import threading
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .bootstrap.executor import BootstrapResult
from .bootstrap.shell import RemoteShell
from .config import AppConfig, ConfigError, SSHConfig, load_config
from .engine import ApplyReport, OutcomeAction, ResourceOutcome
from .exit_codes import ExitCode
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .orchestrator import NotProvisioned, Orchestrator, RunReport
from .providers import ResourceProvider, build_provider
from .resources.manifest import Manifest, builtin_manifest, load_manifest
from .resources.models import ResourceKind, thaw
from .state import StateRegistry, StateRegistryError, StateStore

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to cihostctl's YAML config file.",
)

MANIFEST_ARGUMENT = typer.Argument(
    None,
    dir_okay=False,
    help="Manifest to operate on (defaults to the builtin Jenkins manifest).",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit the result as JSON instead of tables.",
)

_ACTION_STYLES = {
    OutcomeAction.CREATED: "green",
    OutcomeAction.REPLACED: "yellow",
    OutcomeAction.UNCHANGED: "dim",
    OutcomeAction.DESTROYED: "magenta",
    OutcomeAction.FAILED: "red",
    OutcomeAction.SKIPPED: "dim",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Provision a single CI server host and bootstrap it over SSH.

        Resources are declared in a manifest, created in dependency order,
        recorded in local state so re-runs are idempotent, and the host is
        then configured by running the manifest's bootstrap commands.
        """
    ).strip(),
)
state_app = typer.Typer(help="Inspect recorded resource state.")
config_app = typer.Typer(help="Inspect the effective configuration.")
app.add_typer(state_app, name="state")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    registry: StateRegistry
    locks: LockManager
    logger: StructuredLogger
    provider: ResourceProvider
    shell: RemoteShell | None = None

    def orchestrator(self) -> Orchestrator:
        """Return an orchestrator wired to this runtime."""
        return Orchestrator.from_config(
            self.config,
            self.provider,
            self.registry,
            self.locks,
            shell=self.shell or _default_shell(self.config.ssh),
        )


def _default_shell(ssh: SSHConfig) -> RemoteShell:
    from .bootstrap.ssh import ParamikoShell

    return ParamikoShell(strict_host_keys=ssh.strict_host_keys)


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
        registry = StateRegistry(config.registry_dir)
        registry.ensure_root()
        provider = build_provider(config.provider, registry)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc
    except (OSError, StateRegistryError) as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.ENVIRONMENT) from exc

    runtime = RuntimeContext(
        config=config,
        registry=registry,
        locks=LockManager(config.runtime_dir, config.lock_timeout, config.lock_ttl),
        logger=StructuredLogger(config.logs_dir),
        provider=provider,
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the cihostctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"cihostctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _load(op: OperationScope, path: Path | None) -> Manifest:
    try:
        manifest = builtin_manifest() if path is None else load_manifest(path)
    except ConfigError as exc:
        _command_error(op, str(exc), rc=ExitCode.VALIDATION)
    op.target["manifest"] = manifest.name
    return manifest


@contextmanager
def _cancel_on_interrupt() -> Iterator[threading.Event]:
    """Turn the first Ctrl-C into a cooperative cancellation request."""
    cancel = threading.Event()
    if threading.current_thread() is not threading.main_thread():
        yield cancel
        return

    def _handler(signum: int, frame: object) -> None:
        if cancel.is_set():
            raise KeyboardInterrupt
        console.print("[yellow]Cancelling after the current step...[/yellow]")
        cancel.set()

    previous = signal.signal(signal.SIGINT, _handler)
    try:
        yield cancel
    finally:
        signal.signal(signal.SIGINT, previous)


def _run_guarded(op: OperationScope, action: str, call: Callable[[], RunReport]) -> RunReport:
    """Invoke *call* mapping known failures onto exit codes."""
    try:
        return call()
    except ConfigError as exc:
        _command_error(op, str(exc), rc=ExitCode.VALIDATION)
    except LockTimeoutError as exc:
        _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
    except (StateRegistryError, NotProvisioned) as exc:
        _command_error(op, f"{action} failed: {exc}", rc=ExitCode.ENVIRONMENT)


def _finish(op: OperationScope, report: RunReport, action: str, *, json_output: bool) -> None:
    changed = report.resources.changed if report.resources else 0
    if json_output:
        console.print_json(data=report.to_dict())
    else:
        if report.resources is not None:
            _render_outcomes(report.resources)
        if report.bootstrap is not None:
            _render_bootstrap(report.bootstrap)
        for note in report.notes:
            console.print(f"[yellow]{note}[/yellow]")

    if report.ok:
        if not json_output:
            console.print(f"[green]{action} of '{report.manifest}' complete.[/green]")
        op.success(
            f"{action} of '{report.manifest}' complete.",
            changed=changed,
            warnings=report.notes,
            context={"stage": report.stage.value},
        )
        return

    if report.cancelled:
        message = f"{action} of '{report.manifest}' cancelled at stage {report.stage.value}."
    else:
        message = (
            f"{action} of '{report.manifest}' failed at stage {report.stage.value}: "
            f"{report.error}"
        )
    if not json_output:
        console.print(f"[red]{message}[/red]")
    op.error(message, rc=int(report.exit_code), changed=changed, context={"stage": report.stage.value})
    raise typer.Exit(code=int(report.exit_code))


def _render_outcomes(report: ApplyReport | Sequence[ResourceOutcome]) -> None:
    outcomes = report.outcomes if isinstance(report, ApplyReport) else report
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("#", justify="right")
    table.add_column("Resource", style="bold")
    table.add_column("Kind")
    table.add_column("Action")
    table.add_column("Identifier")
    table.add_column("Detail")
    if not outcomes:
        table.add_row("", "(none)", "", "", "", "")
    for index, outcome in enumerate(outcomes, start=1):
        style = _ACTION_STYLES.get(outcome.action, "")
        table.add_row(
            str(index),
            outcome.name,
            outcome.kind.value,
            f"[{style}]{outcome.action.value}[/{style}]" if style else outcome.action.value,
            outcome.identifier or "",
            outcome.detail or "",
        )
    console.print(table)


def _render_bootstrap(result: BootstrapResult) -> None:
    console.print(
        f"Bootstrap of {result.address or '(no address)'}: "
        f"[bold]{result.state.value}[/bold] after {result.connect_attempts} connect attempt(s)"
    )
    for entry in result.transcript:
        status = "[green]ok[/green]" if entry.exit_code == 0 else f"[red]exit {entry.exit_code}[/red]"
        console.print(f"  step {entry.index + 1}: {status}  {entry.command}")
    if result.error is not None:
        console.print(f"  [red]{result.error}[/red]")


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------
@app.command()
def plan(
    ctx: typer.Context,
    manifest_path: Path | None = MANIFEST_ARGUMENT,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the apply order and what each resource would do."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "plan",
        args={"manifest": manifest_path, "json": json_output},
        target={"kind": "manifest"},
    ) as op:
        manifest = _load(op, manifest_path)
        try:
            apply_plan, preview = runtime.orchestrator().plan(manifest)
        except ConfigError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        except StateRegistryError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)

        pending = sum(1 for item in preview if item.action is not OutcomeAction.UNCHANGED)
        if json_output:
            console.print_json(
                data={
                    "manifest": manifest.name,
                    "order": list(apply_plan.names),
                    "resources": [item.to_dict() for item in preview],
                    "bootstrap": {
                        "target": manifest.bootstrap.target,
                        "steps": [step.command for step in manifest.bootstrap.steps],
                    },
                }
            )
        else:
            _render_outcomes(preview)
            if manifest.bootstrap.enabled:
                console.print(
                    f"Bootstrap: {len(manifest.bootstrap.steps)} step(s) on "
                    f"'{manifest.bootstrap.target}'."
                )
            console.print(f"{pending} of {len(apply_plan)} resource(s) would change.")
        op.success("Planned manifest.", changed=0, context={"pending": pending})


@app.command()
def apply(
    ctx: typer.Context,
    manifest_path: Path | None = MANIFEST_ARGUMENT,
    no_bootstrap: bool = typer.Option(
        False,
        "--no-bootstrap",
        help="Provision resources without running the bootstrap steps.",
    ),
    refresh: bool = typer.Option(
        False,
        "--refresh",
        help="Verify recorded resources still exist before reusing them.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Provision every resource, then bootstrap the CI host."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "apply",
        args={
            "manifest": manifest_path,
            "no_bootstrap": no_bootstrap,
            "refresh": refresh,
            "json": json_output,
        },
        target={"kind": "manifest"},
    ) as op:
        manifest = _load(op, manifest_path)
        orchestrator = runtime.orchestrator()
        with _cancel_on_interrupt() as cancel:
            report = _run_guarded(
                op,
                "Apply",
                lambda: orchestrator.apply(
                    manifest,
                    bootstrap=not no_bootstrap,
                    refresh=refresh,
                    cancel=cancel,
                    op=op,
                ),
            )
        _finish(op, report, "Apply", json_output=json_output)


@app.command()
def bootstrap(
    ctx: typer.Context,
    manifest_path: Path | None = MANIFEST_ARGUMENT,
    json_output: bool = JSON_OPTION,
) -> None:
    """Re-run the bootstrap steps against the provisioned host."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "bootstrap",
        args={"manifest": manifest_path, "json": json_output},
        target={"kind": "manifest"},
    ) as op:
        manifest = _load(op, manifest_path)
        orchestrator = runtime.orchestrator()
        with _cancel_on_interrupt() as cancel:
            report = _run_guarded(
                op,
                "Bootstrap",
                lambda: orchestrator.bootstrap(manifest, cancel=cancel, op=op),
            )
        _finish(op, report, "Bootstrap", json_output=json_output)


@app.command()
def destroy(
    ctx: typer.Context,
    manifest_path: Path | None = MANIFEST_ARGUMENT,
    yes: bool = typer.Option(
        False,
        "--yes",
        help="Confirm destruction of every recorded resource.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Destroy every recorded resource, dependents first."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "destroy",
        args={"manifest": manifest_path, "yes": yes, "json": json_output},
        target={"kind": "manifest"},
    ) as op:
        manifest = _load(op, manifest_path)
        if not yes:
            _command_error(
                op,
                f"Refusing to destroy '{manifest.name}' without --yes.",
                rc=ExitCode.VALIDATION,
            )
        orchestrator = runtime.orchestrator()
        with _cancel_on_interrupt() as cancel:
            report = _run_guarded(
                op,
                "Destroy",
                lambda: orchestrator.destroy(manifest, cancel=cancel, op=op),
            )
        _finish(op, report, "Destroy", json_output=json_output)


@app.command()
def rules(
    ctx: typer.Context,
    manifest_path: Path | None = MANIFEST_ARGUMENT,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the compiled firewall rules of each security group."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "rules",
        args={"manifest": manifest_path, "json": json_output},
        target={"kind": "manifest"},
    ) as op:
        manifest = _load(op, manifest_path)
        groups = {
            spec.name: {
                "ingress": thaw(spec.attributes.get("ingress", ())),
                "egress": thaw(spec.attributes.get("egress", ())),
            }
            for spec in manifest.resources
            if spec.kind is ResourceKind.SECURITY_GROUP
        }
        if json_output:
            console.print_json(data={"manifest": manifest.name, "security_groups": groups})
            op.success("Reported compiled rules as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Group", style="bold")
        table.add_column("Direction")
        table.add_column("Protocol")
        table.add_column("Ports")
        table.add_column("CIDRs")
        table.add_column("Description")
        if not groups:
            table.add_row("(none)", "", "", "", "", "")
        for name, directions in groups.items():
            for direction, entries in directions.items():
                for entry in entries:
                    ports = (
                        str(entry["from_port"])
                        if entry["from_port"] == entry["to_port"]
                        else f"{entry['from_port']}-{entry['to_port']}"
                    )
                    table.add_row(
                        name,
                        direction,
                        entry["protocol"],
                        ports,
                        ", ".join(entry["cidrs"]),
                        entry.get("description", ""),
                    )
        console.print(table)
        op.success("Reported compiled rules.", changed=0)


@state_app.command("list")
def state_list(
    ctx: typer.Context,
    manifest_path: Path | None = MANIFEST_ARGUMENT,
    json_output: bool = JSON_OPTION,
) -> None:
    """List the resources recorded for a manifest."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "state list",
        args={"manifest": manifest_path, "json": json_output},
        target={"kind": "state"},
    ) as op:
        manifest = _load(op, manifest_path)
        try:
            records = StateStore(runtime.registry, manifest.name).records()
        except StateRegistryError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)

        if json_output:
            console.print_json(
                data={
                    "manifest": manifest.name,
                    "resources": [record.to_dict() for record in records.values()],
                }
            )
            op.success("Reported recorded resources as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Resource", style="bold")
        table.add_column("Kind")
        table.add_column("Identifier")
        table.add_column("Created")
        if not records:
            table.add_row("(none)", "", "", "")
        for record in records.values():
            table.add_row(record.name, record.kind.value, record.identifier, record.created_at)
        console.print(table)
        op.success("Reported recorded resources.", changed=0)


@state_app.command("show")
def state_show(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Logical resource name."),
    manifest_path: Path | None = typer.Option(
        None,
        "--manifest",
        dir_okay=False,
        help="Manifest the resource belongs to (defaults to the builtin one).",
    ),
) -> None:
    """Show one recorded resource as JSON."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "state show",
        args={"name": name, "manifest": manifest_path},
        target={"kind": "state", "name": name},
    ) as op:
        manifest = _load(op, manifest_path)
        try:
            record = StateStore(runtime.registry, manifest.name).get(name)
        except StateRegistryError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        if record is None:
            _command_error(
                op,
                f"Resource '{name}' is not recorded for manifest '{manifest.name}'.",
                rc=ExitCode.VALIDATION,
            )
        console.print_json(data=record.to_dict())
        op.success(f"Reported resource '{name}'.", changed=0)


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


__all__ = ["RuntimeContext", "app"]
