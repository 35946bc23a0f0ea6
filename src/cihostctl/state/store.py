"""Durable record of created resources, keyed by logical name."""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from ..resources.models import ResourceRecord
from .registry import StateRegistry, StateRegistryError

RESOURCES_FILE = "resources.yml"


@dataclass(frozen=True)
class StateStore:
    """Per-manifest view of the registry holding :class:`ResourceRecord` entries.

    Every mutation rewrites ``<manifest>/resources.yml`` atomically before
    returning, so the file always reflects exactly the resources that exist.
    """

    registry: StateRegistry
    manifest: str

    @property
    def filename(self) -> str:
        """Return the registry-relative file holding this manifest's records."""
        return f"{self.manifest}/{RESOURCES_FILE}"

    def records(self) -> dict[str, ResourceRecord]:
        """Return all records keyed by logical name."""
        raw = self.registry.read_mapping(self.filename, "resources")
        records: dict[str, ResourceRecord] = {}
        for name, entry in raw.items():
            if not isinstance(entry, Mapping):
                raise StateRegistryError(f"State entry for '{name}' must be a mapping.")
            try:
                records[name] = ResourceRecord.from_mapping({"name": name, **entry})
            except (KeyError, ValueError) as exc:
                raise StateRegistryError(f"State entry for '{name}' is invalid: {exc}") from exc
        return records

    def get(self, name: str) -> ResourceRecord | None:
        """Return the record for *name*, if one exists."""
        return self.records().get(name)

    def put(self, record: ResourceRecord) -> None:
        """Persist *record*, replacing any previous record with the same name."""
        records = self.records()
        records[record.name] = record
        self._write(records)

    def remove(self, name: str) -> bool:
        """Forget the record for *name*; returns ``True`` when it existed."""
        records = self.records()
        if records.pop(name, None) is None:
            return False
        self._write(records)
        return True

    def _write(self, records: Mapping[str, ResourceRecord]) -> None:
        payload: dict[str, object] = {}
        for name, record in records.items():
            entry = record.to_dict()
            entry.pop("name")
            payload[name] = entry
        self.registry.write(
            self.filename,
            {"manifest": self.manifest, "resources": payload},
        )


__all__ = ["StateStore"]
