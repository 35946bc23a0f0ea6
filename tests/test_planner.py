"""Dependency planner tests."""
from __future__ import annotations

import pytest

from cihostctl.planner import CyclicDependency, DependencyPlanner, UnresolvedReference, plan_resources
from cihostctl.resources.manifest import builtin_manifest
from cihostctl.resources.models import DuplicateResource, ResourceKind, ResourceSpec


def _spec(name: str, *deps: str, kind: ResourceKind = ResourceKind.BUCKET) -> ResourceSpec:
    return ResourceSpec(kind=kind, name=name, depends_on=frozenset(deps))


def test_dependencies_precede_dependents() -> None:
    """Every resource appears after everything it depends on."""
    key = ResourceSpec(kind=ResourceKind.KEY_PAIR, name="key", attributes={"key_name": "k"})
    group = ResourceSpec(kind=ResourceKind.SECURITY_GROUP, name="group")
    instance = ResourceSpec(
        kind=ResourceKind.INSTANCE,
        name="instance",
        attributes={"key_name": "${key.key_name}", "vpc_security_group_ids": ["${group}"]},
    )

    order = plan_resources([instance, group, key]).names

    assert order.index("key") < order.index("instance")
    assert order.index("group") < order.index("instance")


def test_order_is_deterministic_for_independent_resources() -> None:
    """Ties are broken by name so the plan never depends on declaration order."""
    first = plan_resources([_spec("zeta"), _spec("alpha"), _spec("mid")]).names
    second = plan_resources([_spec("mid"), _spec("zeta"), _spec("alpha")]).names

    assert first == second == ("alpha", "mid", "zeta")


def test_builtin_manifest_plan() -> None:
    """The Jenkins manifest orders ACL after ownership controls after the bucket."""
    order = builtin_manifest().planner().plan().names

    assert set(order) == {
        "jenkins_key",
        "jenkins_sg",
        "jenkins_host",
        "jenkins_artifacts",
        "jenkins_artifacts_ownership",
        "jenkins_artifacts_acl",
    }
    assert order.index("jenkins_key") < order.index("jenkins_host")
    assert order.index("jenkins_sg") < order.index("jenkins_host")
    assert order.index("jenkins_artifacts") < order.index("jenkins_artifacts_ownership")
    assert order.index("jenkins_artifacts_ownership") < order.index("jenkins_artifacts_acl")


def test_cycle_is_reported() -> None:
    """A dependency cycle names the resources involved."""
    planner = DependencyPlanner([_spec("a", "c"), _spec("b", "a"), _spec("c", "b")])

    with pytest.raises(CyclicDependency) as excinfo:
        planner.plan()

    assert set(excinfo.value.cycle) == {"a", "b", "c"}
    assert "->" in str(excinfo.value)


def test_self_reference_is_a_cycle() -> None:
    """A resource referencing itself cannot be ordered."""
    spec = ResourceSpec(kind=ResourceKind.BUCKET, name="loop", attributes={"bucket": "${loop.bucket}"})

    with pytest.raises(CyclicDependency):
        plan_resources([spec])


def test_unresolved_reference() -> None:
    """Depending on an undeclared name is an error naming both ends."""
    with pytest.raises(UnresolvedReference) as excinfo:
        plan_resources([_spec("acl", "ownership")])

    assert excinfo.value.source == "acl"
    assert excinfo.value.target == "ownership"


def test_duplicate_names_are_rejected() -> None:
    """Logical names must be unique."""
    with pytest.raises(DuplicateResource):
        DependencyPlanner([_spec("bucket"), _spec("bucket")])


def test_destroy_order_reverses_dependencies() -> None:
    """Dependents are removed before what they depend on."""
    planner = DependencyPlanner([_spec("bucket"), _spec("ownership", "bucket"), _spec("acl", "ownership")])

    assert planner.destroy_order() == ["acl", "ownership", "bucket"]
    assert planner.destroy_order({"bucket", "acl"}) == ["acl", "bucket"]
    assert planner.dependents("bucket") == {"ownership", "acl"}
