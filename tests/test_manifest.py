"""Manifest loading tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from cihostctl.planner import UnresolvedReference
from cihostctl.resources.manifest import builtin_manifest, load_manifest, parse_manifest
from cihostctl.resources.models import ManifestError, ResourceKind, ResourceRef, thaw
from cihostctl.security import InvalidSecurityRule


def _minimal(**overrides: object) -> dict[str, object]:
    data: dict[str, object] = {
        "name": "demo",
        "resources": [
            {"kind": "security_group", "name": "sg", "rules": [{"protocol": "tcp", "port": 22}]},
            {
                "kind": "instance",
                "name": "host",
                "attributes": {"instance_type": "t2.micro", "vpc_security_group_ids": ["${sg}"]},
            },
        ],
        "bootstrap": {"target": "host", "steps": ["echo one", "echo two"]},
    }
    data.update(overrides)
    return data


def test_builtin_manifest_describes_jenkins_host() -> None:
    """The packaged manifest provisions and bootstraps a Jenkins server."""
    manifest = builtin_manifest()

    assert manifest.name == "jenkins"
    host = manifest.resource("jenkins_host")
    assert host is not None
    assert host.kind is ResourceKind.INSTANCE
    assert host.attributes["key_name"] == ResourceRef("jenkins_key", "key_name")
    group = manifest.resource("jenkins_sg")
    assert group is not None
    ports = sorted(rule["from_port"] for rule in thaw(group.attributes["ingress"]))
    assert ports == [22, 80, 8080]

    steps = [step.command for step in manifest.bootstrap.steps]
    assert manifest.bootstrap.target == "jenkins_host"
    assert len(steps) == 8
    assert steps[-2:] == ["sudo systemctl enable jenkins", "sudo systemctl start jenkins"]
    assert [step.index for step in manifest.bootstrap.steps] == list(range(8))


def test_load_manifest_from_file(tmp_path: Path) -> None:
    """Manifests load from YAML files on disk."""
    path = tmp_path / "demo.yml"
    path.write_text(
        "name: demo\n"
        "resources:\n"
        "  - kind: bucket\n"
        "    name: artifacts\n"
        "    attributes:\n"
        "      bucket: demo-artifacts\n"
    )

    manifest = load_manifest(path)

    assert manifest.source == path
    assert manifest.bootstrap.enabled is False
    assert [spec.name for spec in manifest.resources] == ["artifacts"]


def test_missing_manifest_file(tmp_path: Path) -> None:
    """Unreadable manifests raise ManifestError."""
    with pytest.raises(ManifestError, match="Cannot read manifest"):
        load_manifest(tmp_path / "nope.yml")


def test_each_bootstrap_step_must_be_a_string() -> None:
    """Steps are separate strings; a nested list is rejected instead of merged."""
    with pytest.raises(ManifestError, match=r"bootstrap.steps\[1\]"):
        parse_manifest(_minimal(bootstrap={"target": "host", "steps": ["echo one", ["a", "b"]]}))


def test_bootstrap_target_must_exist_and_be_instance() -> None:
    """The bootstrap target is validated against declared resources."""
    with pytest.raises(UnresolvedReference):
        parse_manifest(_minimal(bootstrap={"target": "ghost", "steps": ["true"]}))
    with pytest.raises(ManifestError, match="must be an instance"):
        parse_manifest(_minimal(bootstrap={"target": "sg", "steps": ["true"]}))


def test_rules_only_on_security_groups() -> None:
    """Only security groups accept firewall rules."""
    data = _minimal()
    data["resources"] = [{"kind": "bucket", "name": "b", "rules": []}]

    with pytest.raises(ManifestError, match="only security_group"):
        parse_manifest(data)


def test_invalid_rule_surfaces_from_manifest() -> None:
    """Rule compiler errors propagate while loading the manifest."""
    data = _minimal()
    data["resources"] = [
        {"kind": "security_group", "name": "sg", "rules": [{"protocol": "tcp", "from_port": 100, "to_port": 50}]}
    ]

    with pytest.raises(InvalidSecurityRule):
        parse_manifest(data)


@pytest.mark.parametrize(
    ("data", "message"),
    [
        ([], "mapping at the top level"),
        ({"name": "bad name", "resources": []}, "Manifest name"),
        ({"name": "demo", "extra": 1}, "Unknown manifest keys"),
        ({"name": "demo", "resources": [{"kind": "bucket", "name": "b", "colour": "red"}]}, "unknown keys"),
        ({"name": "demo", "resources": [{"kind": "vpc", "name": "b"}]}, "Unknown resource kind"),
    ],
)
def test_structural_errors(data: object, message: str) -> None:
    """Structural problems are reported as ManifestError."""
    with pytest.raises(ManifestError, match=message):
        parse_manifest(data)
