"""Typed description of provisionable resources and their persisted records."""
from __future__ import annotations

import hashlib
import json
import re
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from types import MappingProxyType
from typing import Any

from ..config import ConfigError


class ManifestError(ConfigError):
    """Raised when a manifest is structurally invalid."""


class DuplicateResource(ManifestError):
    """Raised when two resources share a logical name."""

    def __init__(self, name: str) -> None:
        """Record the duplicated logical name."""
        super().__init__(f"Resource '{name}' is declared more than once.")
        self.name = name


class ResourceKind(str, Enum):
    """Kinds of provisionable units understood by the orchestrator."""

    KEY_PAIR = "key_pair"
    SECURITY_GROUP = "security_group"
    INSTANCE = "instance"
    BUCKET = "bucket"
    BUCKET_OWNERSHIP_CONTROLS = "bucket_ownership_controls"
    BUCKET_PUBLIC_ACCESS_BLOCK = "bucket_public_access_block"
    BUCKET_ACL = "bucket_acl"

    @classmethod
    def parse(cls, value: object) -> ResourceKind:
        """Return the kind named by *value*."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            allowed = ", ".join(kind.value for kind in cls)
            raise ManifestError(f"Unknown resource kind {value!r}. Allowed: {allowed}.") from exc


_REF_PATTERN = re.compile(r"^\$\{([A-Za-z0-9_-]+)(?:\.([A-Za-z0-9_]+))?\}$")


@dataclass(slots=True, frozen=True)
class ResourceRef:
    """Reference to another resource's identifier or observed attribute."""

    name: str
    attribute: str = "id"

    @classmethod
    def parse(cls, value: str) -> ResourceRef | None:
        """Return a reference for ``${name}`` / ``${name.attr}`` strings, else ``None``."""
        match = _REF_PATTERN.match(value.strip())
        if match is None:
            return None
        return cls(name=match.group(1), attribute=match.group(2) or "id")

    def __str__(self) -> str:
        """Render the reference in manifest syntax."""
        if self.attribute == "id":
            return f"${{{self.name}}}"
        return f"${{{self.name}.{self.attribute}}}"


def _freeze(value: object) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({str(key): _freeze(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(item) for item in value)
    if isinstance(value, str):
        ref = ResourceRef.parse(value)
        return ref if ref is not None else value
    return value


def iter_references(value: object) -> Iterator[ResourceRef]:
    """Yield every :class:`ResourceRef` nested anywhere in *value*."""
    if isinstance(value, ResourceRef):
        yield value
    elif isinstance(value, Mapping):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_references(item)


def thaw(value: object) -> Any:
    """Return plain ``dict`` / ``list`` copies of frozen attribute values."""
    if isinstance(value, Mapping):
        return {key: thaw(item) for key, item in value.items()}
    if isinstance(value, tuple):
        return [thaw(item) for item in value]
    if isinstance(value, ResourceRef):
        return str(value)
    return value


@dataclass(frozen=True)
class ResourceSpec:
    """Declared resource: identity, attributes and dependencies."""

    kind: ResourceKind
    name: str
    attributes: Mapping[str, Any] = field(default_factory=dict)
    depends_on: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        """Validate the name and freeze nested attribute values."""
        if not self.name or not re.fullmatch(r"[A-Za-z0-9_-]+", self.name):
            raise ManifestError(
                f"Resource name {self.name!r} must use letters, digits, '_' or '-'."
            )
        object.__setattr__(self, "kind", ResourceKind.parse(self.kind))
        object.__setattr__(self, "attributes", _freeze(self.attributes))
        object.__setattr__(self, "depends_on", frozenset(self.depends_on))

    @property
    def key(self) -> tuple[str, str]:
        """Return the ``(kind, name)`` identity of the spec."""
        return (self.kind.value, self.name)

    def references(self) -> tuple[ResourceRef, ...]:
        """Return attribute references in declaration order."""
        return tuple(iter_references(self.attributes))

    def dependencies(self) -> frozenset[str]:
        """Return explicit and reference-inferred dependency names."""
        return self.depends_on | {ref.name for ref in self.references()}


def attribute_hash(attributes: Mapping[str, Any]) -> str:
    """Return a stable SHA-256 digest of *attributes*."""
    canonical = json.dumps(thaw(attributes), sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(slots=True, frozen=True)
class ResourceRecord:
    """Persisted pairing of a logical name to a provider identifier."""

    name: str
    kind: ResourceKind
    identifier: str
    attribute_hash: str
    observed: Mapping[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    def to_dict(self) -> dict[str, Any]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "kind": self.kind.value,
            "identifier": self.identifier,
            "attribute_hash": self.attribute_hash,
            "observed": thaw(self.observed),
            "created_at": self.created_at,
        }

    @classmethod
    def from_mapping(cls, entry: Mapping[str, Any]) -> ResourceRecord:
        """Build a record from its serialised form."""
        observed = entry.get("observed") or {}
        if not isinstance(observed, Mapping):
            raise ValueError("Record 'observed' must be a mapping.")
        return cls(
            name=str(entry["name"]),
            kind=ResourceKind.parse(entry["kind"]),
            identifier=str(entry["identifier"]),
            attribute_hash=str(entry["attribute_hash"]),
            observed=dict(observed),
            created_at=str(entry.get("created_at") or ""),
        )

    def lookup(self, attribute: str) -> Any:
        """Return the identifier (``id``) or an observed attribute."""
        if attribute == "id":
            return self.identifier
        if attribute not in self.observed:
            raise KeyError(attribute)
        return self.observed[attribute]


@dataclass(slots=True, frozen=True)
class SecurityRule:
    """Single firewall rule owned by a security group."""

    direction: str
    protocol: str
    from_port: int
    to_port: int
    cidrs: frozenset[str]
    description: str = ""

    @property
    def identity(self) -> tuple[str, str, int, int, tuple[str, ...]]:
        """Return the fields that make two rules duplicates."""
        return (
            self.direction,
            self.protocol,
            self.from_port,
            self.to_port,
            tuple(sorted(self.cidrs)),
        )

    def to_dict(self) -> dict[str, Any]:
        """Return a serialisable representation."""
        return {
            "protocol": self.protocol,
            "from_port": self.from_port,
            "to_port": self.to_port,
            "cidrs": sorted(self.cidrs),
            "description": self.description,
        }


@dataclass(slots=True, frozen=True)
class BootstrapStep:
    """One shell command of the bootstrap sequence."""

    index: int
    command: str

    @property
    def label(self) -> str:
        """Return a human label such as ``step 2``."""
        return f"step {self.index + 1}"


@dataclass(slots=True, frozen=True)
class ApplyPlan:
    """Topologically ordered resources for one run."""

    steps: tuple[ResourceSpec, ...]

    def __iter__(self) -> Iterator[ResourceSpec]:
        """Iterate over specs in apply order."""
        return iter(self.steps)

    def __len__(self) -> int:
        """Return the number of planned resources."""
        return len(self.steps)

    @property
    def names(self) -> tuple[str, ...]:
        """Return logical names in apply order."""
        return tuple(spec.name for spec in self.steps)

    def get(self, name: str) -> ResourceSpec | None:
        """Return the planned spec named *name*."""
        for spec in self.steps:
            if spec.name == name:
                return spec
        return None


__all__ = [
    "ApplyPlan",
    "BootstrapStep",
    "DuplicateResource",
    "ManifestError",
    "ResourceKind",
    "ResourceRecord",
    "ResourceRef",
    "ResourceSpec",
    "SecurityRule",
    "attribute_hash",
    "iter_references",
    "thaw",
]
