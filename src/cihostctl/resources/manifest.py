"""Load manifests (resources, firewall rules, bootstrap steps) from YAML."""
from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from importlib import resources as importlib_resources
from pathlib import Path

import yaml

from ..planner import DependencyPlanner, UnresolvedReference
from ..security import compile_rules
from .models import BootstrapStep, ManifestError, ResourceKind, ResourceSpec

BUILTIN_MANIFEST = "jenkins.yml"
_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
_RESOURCE_KEYS = {"kind", "name", "attributes", "depends_on", "rules"}


@dataclass(frozen=True)
class BootstrapSpec:
    """Which resource to bootstrap and the ordered commands to run on it."""

    target: str | None = None
    steps: tuple[BootstrapStep, ...] = ()
    address_attribute: str = "public_ip"

    @property
    def enabled(self) -> bool:
        """Return ``True`` when there is something to run."""
        return self.target is not None and bool(self.steps)


@dataclass(frozen=True)
class Manifest:
    """Declared resources plus the bootstrap sequence for one environment."""

    name: str
    resources: tuple[ResourceSpec, ...]
    bootstrap: BootstrapSpec = field(default_factory=BootstrapSpec)
    source: Path | None = None

    def resource(self, name: str) -> ResourceSpec | None:
        """Return the resource named *name*."""
        for spec in self.resources:
            if spec.name == name:
                return spec
        return None

    def planner(self) -> DependencyPlanner:
        """Return a dependency planner over this manifest's resources."""
        return DependencyPlanner(self.resources)


def load_manifest(path: str | Path) -> Manifest:
    """Read and validate the manifest at *path*."""
    manifest_path = Path(path).expanduser()
    try:
        text = manifest_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ManifestError(f"Cannot read manifest {manifest_path}: {exc}") from exc
    return parse_manifest(_load_yaml(text, str(manifest_path)), source=manifest_path)


def builtin_manifest() -> Manifest:
    """Return the packaged Jenkins CI-server manifest."""
    resource = importlib_resources.files("cihostctl.manifests").joinpath(BUILTIN_MANIFEST)
    return parse_manifest(_load_yaml(resource.read_text(encoding="utf-8"), BUILTIN_MANIFEST))


def parse_manifest(data: object, *, source: Path | None = None) -> Manifest:
    """Build a :class:`Manifest` from decoded YAML data."""
    if not isinstance(data, Mapping):
        raise ManifestError("Manifest must contain a mapping at the top level.")
    unknown = set(data.keys()) - {"name", "resources", "bootstrap"}
    if unknown:
        joined = ", ".join(sorted(str(key) for key in unknown))
        raise ManifestError(f"Unknown manifest keys: {joined}.")

    name = str(data.get("name") or "").strip()
    if not _NAME_PATTERN.match(name):
        raise ManifestError(f"Manifest name {name!r} must use letters, digits, '_' or '-'.")

    raw_resources = data.get("resources") or []
    if not isinstance(raw_resources, Sequence) or isinstance(raw_resources, (str, bytes)):
        raise ManifestError("Manifest 'resources' must be a list.")
    resources = tuple(
        _parse_resource(entry, f"resources[{index}]") for index, entry in enumerate(raw_resources)
    )

    manifest = Manifest(
        name=name,
        resources=resources,
        bootstrap=_parse_bootstrap(data.get("bootstrap")),
        source=source,
    )
    _validate_bootstrap_target(manifest)
    return manifest


def _parse_resource(entry: object, label: str) -> ResourceSpec:
    if not isinstance(entry, Mapping):
        raise ManifestError(f"{label} must be a mapping.")
    unknown = set(entry.keys()) - _RESOURCE_KEYS
    if unknown:
        joined = ", ".join(sorted(str(key) for key in unknown))
        raise ManifestError(f"{label} has unknown keys: {joined}.")

    kind = ResourceKind.parse(entry.get("kind"))
    name = str(entry.get("name") or "").strip()

    attributes = entry.get("attributes") or {}
    if not isinstance(attributes, Mapping):
        raise ManifestError(f"{label}.attributes must be a mapping.")
    attributes = dict(attributes)

    depends_on = entry.get("depends_on") or []
    if isinstance(depends_on, str):
        depends_on = [depends_on]
    if not isinstance(depends_on, Sequence) or not all(
        isinstance(item, str) for item in depends_on
    ):
        raise ManifestError(f"{label}.depends_on must be a list of resource names.")

    rules = entry.get("rules")
    if rules is not None:
        if kind is not ResourceKind.SECURITY_GROUP:
            raise ManifestError(f"{label}: only security_group resources accept 'rules'.")
        if "ingress" in attributes or "egress" in attributes:
            raise ManifestError(
                f"{label}: declare firewall rules under 'rules', not ingress/egress attributes."
            )
        if not isinstance(rules, Sequence) or isinstance(rules, (str, bytes)):
            raise ManifestError(f"{label}.rules must be a list.")
        attributes.update(compile_rules(rules).to_attributes())

    return ResourceSpec(
        kind=kind,
        name=name,
        attributes=attributes,
        depends_on=frozenset(item.strip() for item in depends_on),
    )


def _parse_bootstrap(raw: object) -> BootstrapSpec:
    if raw is None:
        return BootstrapSpec()
    if not isinstance(raw, Mapping):
        raise ManifestError("Manifest 'bootstrap' must be a mapping.")
    unknown = set(raw.keys()) - {"target", "steps", "address_attribute"}
    if unknown:
        joined = ", ".join(sorted(str(key) for key in unknown))
        raise ManifestError(f"Unknown bootstrap keys: {joined}.")

    target = raw.get("target")
    if target is not None and (not isinstance(target, str) or not target.strip()):
        raise ManifestError("bootstrap.target must be a resource name.")

    raw_steps = raw.get("steps") or []
    if not isinstance(raw_steps, Sequence) or isinstance(raw_steps, (str, bytes)):
        raise ManifestError("bootstrap.steps must be a list of shell commands.")
    steps: list[BootstrapStep] = []
    for index, command in enumerate(raw_steps):
        if not isinstance(command, str) or not command.strip():
            raise ManifestError(
                f"bootstrap.steps[{index}] must be a non-empty shell command string."
            )
        steps.append(BootstrapStep(index=index, command=command.strip()))

    address_attribute = str(raw.get("address_attribute") or "public_ip")
    return BootstrapSpec(
        target=target.strip() if isinstance(target, str) else None,
        steps=tuple(steps),
        address_attribute=address_attribute,
    )


def _validate_bootstrap_target(manifest: Manifest) -> None:
    target = manifest.bootstrap.target
    if target is None:
        return
    spec = manifest.resource(target)
    if spec is None:
        raise UnresolvedReference("bootstrap", target)
    if spec.kind is not ResourceKind.INSTANCE:
        raise ManifestError(
            f"bootstrap.target '{target}' must be an instance, not {spec.kind.value}."
        )


def _load_yaml(text: str, label: str) -> object:
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ManifestError(f"Failed to parse manifest {label}: {exc}") from exc


__all__ = ["BootstrapSpec", "Manifest", "builtin_manifest", "load_manifest", "parse_manifest"]
