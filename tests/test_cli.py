"""CLI smoke tests for cihostctl."""
from __future__ import annotations

import json
from pathlib import Path

import pytest
from fakes import FakeShell
from typer.testing import CliRunner

from cihostctl import __version__, cli
from cihostctl.bootstrap import CommandResult
from cihostctl.bootstrap.ssh import ParamikoShell
from cihostctl.cli import app
from cihostctl.config import SSHConfig

runner = CliRunner()


def _env(tmp_path: Path) -> dict[str, str]:
    state_dir = tmp_path / "state"
    return {
        "CIHOSTCTL_CONFIG_FILE": str(tmp_path / "missing-config.yml"),
        "CIHOSTCTL_STATE_DIR": str(state_dir),
        "CIHOSTCTL_LOGS_DIR": str(state_dir / "logs"),
        "CIHOSTCTL_RUNTIME_DIR": str(state_dir / "run"),
        "CIHOSTCTL_LOCK_TIMEOUT": "1",
    }


@pytest.fixture
def shell(monkeypatch: pytest.MonkeyPatch) -> FakeShell:
    """Route bootstrap connections to an in-memory shell."""
    fake = FakeShell()
    monkeypatch.setattr(cli, "_default_shell", lambda ssh: fake)
    return fake


def _cyclic_manifest(tmp_path: Path) -> Path:
    path = tmp_path / "cyclic.yml"
    path.write_text(
        "name: cyclic\n"
        "resources:\n"
        "  - kind: bucket\n"
        "    name: a\n"
        "    attributes: {bucket: '${b.bucket}'}\n"
        "  - kind: bucket\n"
        "    name: b\n"
        "    attributes: {bucket: '${a.bucket}'}\n",
        encoding="utf-8",
    )
    return path


def test_version_flag(tmp_path: Path) -> None:
    """--version prints the package version."""
    result = runner.invoke(app, ["--version"], env=_env(tmp_path))

    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_no_subcommand_shows_help(tmp_path: Path) -> None:
    """Running without a command prints the available commands."""
    result = runner.invoke(app, [], env=_env(tmp_path))

    assert result.exit_code == 0
    assert "apply" in result.stdout
    assert "destroy" in result.stdout


def test_config_show_json_reflects_environment(tmp_path: Path) -> None:
    """config show reports merged values and environment overrides."""
    env = _env(tmp_path)
    env["CIHOSTCTL_RETRY__ATTEMPTS"] = "7"

    table = runner.invoke(app, ["config", "show"], env=env)
    json_result = runner.invoke(app, ["config", "show", "--json"], env=env)

    assert table.exit_code == 0
    assert "provider" in table.stdout
    assert json_result.exit_code == 0
    data = json.loads(json_result.stdout)
    assert data["provider"] == "simulated"
    assert data["retry"]["attempts"] == 7
    assert data["registry_dir"] == str(tmp_path / "state" / "registry")


def test_invalid_config_is_a_validation_error(tmp_path: Path) -> None:
    """Bad configuration exits with code 2."""
    env = _env(tmp_path)
    env["CIHOSTCTL_RETRY__ATTEMPTS"] = "0"

    result = runner.invoke(app, ["config", "show"], env=env)

    assert result.exit_code == 2


def test_plan_json_lists_builtin_resources(tmp_path: Path) -> None:
    """plan previews every builtin resource as a create."""
    result = runner.invoke(app, ["plan", "--json"], env=_env(tmp_path))

    assert result.exit_code == 0
    data = json.loads(result.stdout)
    assert data["manifest"] == "jenkins"
    assert len(data["resources"]) == 6
    assert {item["action"] for item in data["resources"]} == {"created"}
    assert data["order"].index("jenkins_key") < data["order"].index("jenkins_host")
    assert data["bootstrap"]["target"] == "jenkins_host"
    assert len(data["bootstrap"]["steps"]) == 8


def test_apply_provisions_and_records_state(tmp_path: Path, shell: FakeShell) -> None:
    """apply succeeds and leaves every resource recorded."""
    env = _env(tmp_path)

    result = runner.invoke(app, ["apply"], env=env)

    assert result.exit_code == 0, result.stdout
    assert "complete" in result.stdout
    assert shell.commands[-1] == "sudo systemctl start jenkins"

    listing = runner.invoke(app, ["state", "list", "--json"], env=env)
    assert listing.exit_code == 0
    names = {record["name"] for record in json.loads(listing.stdout)["resources"]}
    assert names == {
        "jenkins_key",
        "jenkins_sg",
        "jenkins_host",
        "jenkins_artifacts",
        "jenkins_artifacts_ownership",
        "jenkins_artifacts_acl",
    }

    shown = runner.invoke(app, ["state", "show", "jenkins_host"], env=env)
    assert shown.exit_code == 0
    assert json.loads(shown.stdout)["kind"] == "instance"


def test_second_apply_changes_nothing(tmp_path: Path, shell: FakeShell) -> None:
    """Re-running apply reuses every recorded resource."""
    env = _env(tmp_path)
    runner.invoke(app, ["apply"], env=env)

    result = runner.invoke(app, ["apply", "--json"], env=env)

    assert result.exit_code == 0
    data = json.loads(result.stdout)
    assert data["ok"] is True
    assert {item["action"] for item in data["resources"]["outcomes"]} == {"unchanged"}


def test_apply_without_bootstrap(tmp_path: Path, shell: FakeShell) -> None:
    """--no-bootstrap provisions only."""
    result = runner.invoke(app, ["apply", "--no-bootstrap", "--json"], env=_env(tmp_path))

    assert result.exit_code == 0
    data = json.loads(result.stdout)
    assert data["bootstrap"] is None
    assert shell.connect_attempts == 0


def test_bootstrap_failure_exit_code(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """A failing bootstrap step exits with the bootstrap code."""
    failing = FakeShell(results={"sudo yum install jenkins -y": CommandResult(exit_code=1)})
    monkeypatch.setattr(cli, "_default_shell", lambda ssh: failing)

    result = runner.invoke(app, ["apply"], env=_env(tmp_path))

    assert result.exit_code == 5
    assert "sudo systemctl enable jenkins" not in failing.commands


def test_bootstrap_before_apply_is_environment_error(tmp_path: Path, shell: FakeShell) -> None:
    """bootstrap needs a provisioned host."""
    result = runner.invoke(app, ["bootstrap"], env=_env(tmp_path))

    assert result.exit_code == 3
    assert shell.connect_attempts == 0


def test_bootstrap_after_apply(tmp_path: Path, shell: FakeShell) -> None:
    """bootstrap re-runs every step on the recorded host."""
    env = _env(tmp_path)
    runner.invoke(app, ["apply", "--no-bootstrap"], env=env)

    result = runner.invoke(app, ["bootstrap"], env=env)

    assert result.exit_code == 0
    assert len(shell.commands) == 8


def test_cyclic_manifest_is_rejected(tmp_path: Path, shell: FakeShell) -> None:
    """Dependency cycles fail validation before anything is created."""
    env = _env(tmp_path)
    manifest = _cyclic_manifest(tmp_path)

    result = runner.invoke(app, ["apply", str(manifest)], env=env)

    assert result.exit_code == 2
    listing = runner.invoke(app, ["state", "list", str(manifest), "--json"], env=env)
    assert json.loads(listing.stdout)["resources"] == []


def test_missing_manifest_file(tmp_path: Path) -> None:
    """A manifest path that does not exist is a validation error."""
    result = runner.invoke(app, ["plan", str(tmp_path / "nope.yml")], env=_env(tmp_path))

    assert result.exit_code == 2


def test_destroy_requires_confirmation(tmp_path: Path, shell: FakeShell) -> None:
    """destroy refuses to run without --yes and then removes everything."""
    env = _env(tmp_path)
    runner.invoke(app, ["apply", "--no-bootstrap"], env=env)

    refused = runner.invoke(app, ["destroy"], env=env)
    confirmed = runner.invoke(app, ["destroy", "--yes"], env=env)

    assert refused.exit_code == 2
    assert "Refusing to destroy" in refused.stdout
    assert confirmed.exit_code == 0
    listing = runner.invoke(app, ["state", "list", "--json"], env=env)
    assert json.loads(listing.stdout)["resources"] == []


def test_state_show_unknown_resource(tmp_path: Path) -> None:
    """Unknown resources are reported as validation errors."""
    result = runner.invoke(app, ["state", "show", "ghost"], env=_env(tmp_path))

    assert result.exit_code == 2


def test_rules_json_reports_compiled_ports(tmp_path: Path) -> None:
    """rules shows the compiled ingress and egress of each group."""
    result = runner.invoke(app, ["rules", "--json"], env=_env(tmp_path))

    assert result.exit_code == 0
    groups = json.loads(result.stdout)["security_groups"]
    ingress = groups["jenkins_sg"]["ingress"]
    assert sorted(rule["from_port"] for rule in ingress) == [22, 80, 8080]
    assert groups["jenkins_sg"]["egress"][0]["protocol"] == "all"


def test_operations_are_logged(tmp_path: Path, shell: FakeShell) -> None:
    """Each command appends a structured record to operations.jsonl."""
    env = _env(tmp_path)
    runner.invoke(app, ["apply", "--no-bootstrap"], env=env)

    log_path = tmp_path / "state" / "logs" / "operations.jsonl"
    records = [json.loads(line) for line in log_path.read_text(encoding="utf-8").splitlines()]

    assert records[-1]["op"] == "apply"
    assert records[-1]["result"]["status"] == "success"
    assert records[-1]["target"]["manifest"] == "jenkins"
    assert len(records[-1]["steps"]) == 6


def test_default_shell_follows_host_key_setting() -> None:
    """The SSH shell is built from the ssh config section."""
    strict = cli._default_shell(SSHConfig(strict_host_keys=True))
    relaxed = cli._default_shell(SSHConfig())

    assert isinstance(strict, ParamikoShell) and strict.strict_host_keys is True
    assert isinstance(relaxed, ParamikoShell) and relaxed.strict_host_keys is False
