"""Resource model: specs, references, records and plans.

Manifest parsing lives in :mod:`cihostctl.resources.manifest`; it is not
re-exported here because it depends on the planner and rule compiler, which
themselves import this package.
"""
from __future__ import annotations

from .models import (
    ApplyPlan,
    BootstrapStep,
    DuplicateResource,
    ManifestError,
    ResourceKind,
    ResourceRecord,
    ResourceRef,
    ResourceSpec,
    SecurityRule,
    attribute_hash,
)

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
]
