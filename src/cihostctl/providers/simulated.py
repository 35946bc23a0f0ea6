"""File-backed provider that mimics a cloud API for local runs."""
from __future__ import annotations

import hashlib
import ipaddress
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from ..resources.models import ResourceKind, thaw
from ..state.registry import StateRegistry
from .base import FatalProviderError, ProviderResult, ResourceNotFound

OBJECTS_FILE = "simulated/objects.yml"

ID_PREFIXES: Mapping[ResourceKind, str] = {
    ResourceKind.KEY_PAIR: "key-",
    ResourceKind.SECURITY_GROUP: "sg-",
    ResourceKind.INSTANCE: "i-",
    ResourceKind.BUCKET: "bucket-",
    ResourceKind.BUCKET_OWNERSHIP_CONTROLS: "boc-",
    ResourceKind.BUCKET_PUBLIC_ACCESS_BLOCK: "bpab-",
    ResourceKind.BUCKET_ACL: "acl-",
}

REQUIRED_ATTRIBUTES: Mapping[ResourceKind, tuple[str, ...]] = {
    ResourceKind.KEY_PAIR: ("key_name",),
    ResourceKind.INSTANCE: ("instance_type",),
    ResourceKind.BUCKET: ("bucket",),
    ResourceKind.BUCKET_OWNERSHIP_CONTROLS: ("bucket",),
    ResourceKind.BUCKET_PUBLIC_ACCESS_BLOCK: ("bucket",),
    ResourceKind.BUCKET_ACL: ("bucket",),
}

_ADDRESS_POOL = ipaddress.ip_network("198.51.100.0/24")


@dataclass(frozen=True)
class SimulatedProvider:
    """Persist "cloud" objects in the state registry.

    Identifiers are derived from a counter so they never repeat, which lets
    tests and dry runs observe replacements the same way a real cloud would.
    Instances are assigned a documentation-range public address.
    """

    registry: StateRegistry
    name: str = "simulated"

    def create(self, kind: ResourceKind, attributes: Mapping[str, Any]) -> ProviderResult:
        """Store a new object and return its identifier."""
        missing = [key for key in REQUIRED_ATTRIBUTES.get(kind, ()) if key not in attributes]
        if missing:
            joined = ", ".join(missing)
            raise FatalProviderError(f"{kind.value} requires attributes: {joined}.")

        state = self._load()
        counter = int(state.get("counter", 0)) + 1
        digest = hashlib.sha1(f"{kind.value}:{counter}".encode()).hexdigest()[:12]
        identifier = f"{ID_PREFIXES[kind]}{digest}"
        observed = self._observe(kind, attributes, counter, identifier)
        objects = dict(state.get("objects") or {})
        objects[identifier] = {
            "kind": kind.value,
            "attributes": thaw(attributes),
            "observed": observed,
            "created_at": datetime.now(UTC).isoformat(),
        }
        self.registry.write(OBJECTS_FILE, {"counter": counter, "objects": objects})
        return ProviderResult(identifier=identifier, observed=observed)

    def destroy(self, kind: ResourceKind, identifier: str) -> None:
        """Delete the stored object."""
        state = self._load()
        objects = dict(state.get("objects") or {})
        entry = objects.get(identifier)
        if not isinstance(entry, Mapping) or entry.get("kind") != kind.value:
            raise ResourceNotFound(kind, identifier)
        del objects[identifier]
        self.registry.write(
            OBJECTS_FILE, {"counter": int(state.get("counter", 0)), "objects": objects}
        )

    def describe(self, kind: ResourceKind, identifier: str) -> Mapping[str, Any]:
        """Return the stored attributes merged with observed values."""
        entry = (self._load().get("objects") or {}).get(identifier)
        if not isinstance(entry, Mapping) or entry.get("kind") != kind.value:
            raise ResourceNotFound(kind, identifier)
        return {**dict(entry.get("attributes") or {}), **dict(entry.get("observed") or {})}

    def _load(self) -> dict[str, Any]:
        data = self.registry.read(OBJECTS_FILE, default={"counter": 0, "objects": {}})
        return dict(data) if isinstance(data, Mapping) else {"counter": 0, "objects": {}}

    def _observe(
        self,
        kind: ResourceKind,
        attributes: Mapping[str, Any],
        counter: int,
        identifier: str,
    ) -> dict[str, Any]:
        observed: dict[str, Any] = {"arn": f"arn:sim:{kind.value}:{identifier}"}
        if kind is ResourceKind.INSTANCE:
            host = _ADDRESS_POOL.network_address + 1 + (counter % 253)
            observed["public_ip"] = str(host)
            observed["state"] = "running"
        elif kind is ResourceKind.KEY_PAIR:
            observed["key_name"] = str(attributes["key_name"])
            observed["fingerprint"] = hashlib.md5(
                str(attributes.get("public_key", "")).encode(), usedforsecurity=False
            ).hexdigest()
        elif kind is ResourceKind.BUCKET:
            observed["bucket"] = str(attributes["bucket"])
            observed["domain_name"] = f"{attributes['bucket']}.s3.amazonaws.com"
        elif kind is ResourceKind.SECURITY_GROUP:
            observed["group_name"] = str(attributes.get("name", identifier))
        return observed


__all__ = ["SimulatedProvider"]
