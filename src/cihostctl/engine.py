"""Apply engine: realise planned resources against a provider, idempotently."""
from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

from .config import RetryConfig
from .providers.base import (
    ProviderError,
    ResourceNotFound,
    ResourceProvider,
    RetryableProviderError,
)
from .resources.models import (
    ApplyPlan,
    ResourceKind,
    ResourceRecord,
    ResourceRef,
    ResourceSpec,
    attribute_hash,
)
from .state.store import StateStore

if TYPE_CHECKING:
    from .logging import OperationScope

T = TypeVar("T")


class ProvisionFailed(RuntimeError):
    """Raised when the provider rejects a resource after retries."""

    def __init__(self, resource: str, cause: BaseException | str, *, attempts: int = 1) -> None:
        """Record the failing resource, the underlying cause and attempt count."""
        super().__init__(f"Provisioning '{resource}' failed after {attempts} attempt(s): {cause}")
        self.resource = resource
        self.cause = cause
        self.attempts = attempts


class OutcomeAction(str, Enum):
    """What happened to a resource during a run."""

    CREATED = "created"
    REPLACED = "replaced"
    UNCHANGED = "unchanged"
    DESTROYED = "destroyed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(slots=True, frozen=True)
class ResourceOutcome:
    """Per-resource line of an apply report."""

    name: str
    kind: ResourceKind
    action: OutcomeAction
    identifier: str | None = None
    attempts: int = 0
    detail: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "kind": self.kind.value,
            "action": self.action.value,
            "identifier": self.identifier,
            "attempts": self.attempts,
            "detail": self.detail,
        }


@dataclass(slots=True)
class ApplyReport:
    """Ordered outcomes of an apply (or destroy) run."""

    outcomes: list[ResourceOutcome] = field(default_factory=list)
    failure: ProvisionFailed | None = None
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        """Return ``True`` when every resource was realised."""
        return self.failure is None and not self.cancelled

    @property
    def changed(self) -> int:
        """Return the number of resources that triggered provider calls."""
        return sum(
            1
            for outcome in self.outcomes
            if outcome.action
            in (OutcomeAction.CREATED, OutcomeAction.REPLACED, OutcomeAction.DESTROYED)
        )

    def outcome(self, name: str) -> ResourceOutcome | None:
        """Return the outcome recorded for *name*."""
        for outcome in self.outcomes:
            if outcome.name == name:
                return outcome
        return None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "ok": self.ok,
            "cancelled": self.cancelled,
            "failure": str(self.failure) if self.failure else None,
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
        }


@dataclass(slots=True)
class Backoff:
    """Exponential backoff capped at ``max_delay``."""

    base_delay: float = 1.0
    factor: float = 2.0
    max_delay: float = 16.0

    def delay(self, attempt: int) -> float:
        """Return the wait before retry number *attempt* (1-based)."""
        return min(self.base_delay * self.factor ** (attempt - 1), self.max_delay)


class ApplyEngine:
    """Create or reuse each planned resource, strictly in plan order."""

    def __init__(
        self,
        provider: ResourceProvider,
        store: StateStore,
        retry: RetryConfig | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Wire the provider, state store and retry policy."""
        self.provider = provider
        self.store = store
        self.retry = retry or RetryConfig()
        self.backoff = Backoff(self.retry.base_delay, self.retry.factor, self.retry.max_delay)
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------
    def apply(
        self,
        plan: ApplyPlan,
        *,
        cancel: threading.Event | None = None,
        refresh: bool = False,
        op: OperationScope | None = None,
    ) -> ApplyReport:
        """Realise *plan*, persisting each record before moving on."""
        report = ApplyReport()
        realised: dict[str, ResourceRecord] = {}
        # Resources given a new object in this run; referencing dependents follow.
        renewed: set[str] = set()
        pending = list(plan)
        while pending:
            spec = pending.pop(0)
            if cancel is not None and cancel.is_set():
                report.cancelled = True
                self._skip(report, [spec, *pending], "cancelled", op)
                break
            try:
                outcome, record = self._realise(
                    spec,
                    realised,
                    refresh=refresh,
                    upstream=_renewed_references(spec, renewed),
                )
            except ProvisionFailed as exc:
                report.failure = exc
                report.outcomes.append(
                    ResourceOutcome(
                        name=spec.name,
                        kind=spec.kind,
                        action=OutcomeAction.FAILED,
                        attempts=exc.attempts,
                        detail=str(exc.cause),
                    )
                )
                if op is not None:
                    op.add_step(f"resource.{spec.name}", status="failed", detail=str(exc))
                self._skip(report, pending, f"not reached: '{spec.name}' failed", op)
                break
            realised[spec.name] = record
            if outcome.action is not OutcomeAction.UNCHANGED:
                renewed.add(spec.name)
            report.outcomes.append(outcome)
            if op is not None:
                op.add_step(
                    f"resource.{spec.name}",
                    status=outcome.action.value,
                    detail={"identifier": outcome.identifier, "attempts": outcome.attempts},
                )
        return report

    def preview(self, plan: ApplyPlan) -> list[ResourceOutcome]:
        """Predict each resource's action without calling the provider."""
        records = self.store.records()
        changing: set[str] = set()
        outcomes: list[ResourceOutcome] = []
        for spec in plan:
            record = records.get(spec.name)
            action = OutcomeAction.CREATED if record is None else OutcomeAction.UNCHANGED
            detail = None
            if record is not None:
                upstream = _renewed_references(spec, changing)
                if upstream:
                    action = OutcomeAction.REPLACED
                    detail = f"dependency changes: {', '.join(upstream)}"
                else:
                    try:
                        resolved = resolve_attributes(spec.attributes, records)
                    except KeyError as exc:
                        action = OutcomeAction.REPLACED
                        detail = f"unresolved reference {exc}"
                    else:
                        if (
                            record.kind is not spec.kind
                            or record.attribute_hash != attribute_hash(resolved)
                        ):
                            action = OutcomeAction.REPLACED
                            detail = "attributes changed"
            if action is not OutcomeAction.UNCHANGED:
                changing.add(spec.name)
            outcomes.append(
                ResourceOutcome(
                    name=spec.name,
                    kind=spec.kind,
                    action=action,
                    identifier=record.identifier if record else None,
                    detail=detail,
                )
            )
        return outcomes

    # ------------------------------------------------------------------
    # Destroy
    # ------------------------------------------------------------------
    def destroy(
        self,
        order: Iterable[str],
        *,
        cancel: threading.Event | None = None,
        op: OperationScope | None = None,
    ) -> ApplyReport:
        """Destroy recorded resources in *order*, forgetting each afterwards."""
        report = ApplyReport()
        records = self.store.records()
        for name in order:
            record = records.get(name)
            if record is None:
                continue
            if cancel is not None and cancel.is_set():
                report.cancelled = True
                break
            try:
                attempts = self._destroy_object(name, record)
            except ProvisionFailed as exc:
                report.failure = exc
                report.outcomes.append(
                    ResourceOutcome(
                        name=name,
                        kind=record.kind,
                        action=OutcomeAction.FAILED,
                        identifier=record.identifier,
                        attempts=exc.attempts,
                        detail=str(exc.cause),
                    )
                )
                if op is not None:
                    op.add_step(f"resource.{name}", status="failed", detail=str(exc))
                break
            self.store.remove(name)
            report.outcomes.append(
                ResourceOutcome(
                    name=name,
                    kind=record.kind,
                    action=OutcomeAction.DESTROYED,
                    identifier=record.identifier,
                    attempts=attempts,
                )
            )
            if op is not None:
                op.add_step(f"resource.{name}", status="destroyed", detail=record.identifier)
        return report

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _realise(
        self,
        spec: ResourceSpec,
        realised: Mapping[str, ResourceRecord],
        *,
        refresh: bool,
        upstream: list[str] | None = None,
    ) -> tuple[ResourceOutcome, ResourceRecord]:
        try:
            resolved = resolve_attributes(spec.attributes, realised)
        except KeyError as exc:
            raise ProvisionFailed(spec.name, f"cannot resolve reference {exc}") from exc
        digest = attribute_hash(resolved)
        existing = self.store.get(spec.name)
        action = OutcomeAction.CREATED
        detail: str | None = None
        reusable = (
            existing is not None
            and not upstream
            and existing.kind is spec.kind
            and existing.attribute_hash == digest
        )

        if existing is not None and reusable:
            if not refresh or self._still_exists(spec, existing):
                outcome = ResourceOutcome(
                    name=spec.name,
                    kind=spec.kind,
                    action=OutcomeAction.UNCHANGED,
                    identifier=existing.identifier,
                )
                return outcome, existing
            self.store.remove(spec.name)
            detail = f"previous object {existing.identifier} no longer exists"
        elif existing is not None:
            self._destroy_object(spec.name, existing)
            self.store.remove(spec.name)
            action = OutcomeAction.REPLACED
            detail = f"replaced {existing.identifier}"
            if upstream:
                detail += f" (dependency changes: {', '.join(upstream)})"

        result, attempts = self._with_retry(
            spec.name, lambda: self.provider.create(spec.kind, resolved)
        )
        record = ResourceRecord(
            name=spec.name,
            kind=spec.kind,
            identifier=result.identifier,
            attribute_hash=digest,
            observed=dict(result.observed),
        )
        self.store.put(record)
        outcome = ResourceOutcome(
            name=spec.name,
            kind=spec.kind,
            action=action,
            identifier=record.identifier,
            attempts=attempts,
            detail=detail,
        )
        return outcome, record

    def _still_exists(self, spec: ResourceSpec, record: ResourceRecord) -> bool:
        try:
            self._with_retry(spec.name, lambda: self.provider.describe(spec.kind, record.identifier))
        except ProvisionFailed as exc:
            if isinstance(exc.cause, ResourceNotFound):
                return False
            raise
        return True

    def _destroy_object(self, name: str, record: ResourceRecord) -> int:
        try:
            _result, attempts = self._with_retry(
                name, lambda: self.provider.destroy(record.kind, record.identifier)
            )
        except ProvisionFailed as exc:
            if isinstance(exc.cause, ResourceNotFound):
                return exc.attempts
            raise
        return attempts

    def _with_retry(self, name: str, call: Callable[[], T]) -> tuple[T, int]:
        attempts = max(1, self.retry.attempts)
        attempt = 0
        while True:
            attempt += 1
            try:
                return call(), attempt
            except RetryableProviderError as exc:
                if attempt >= attempts:
                    raise ProvisionFailed(name, exc, attempts=attempt) from exc
                self._sleep(self.backoff.delay(attempt))
            except ProviderError as exc:
                raise ProvisionFailed(name, exc, attempts=attempt) from exc

    def _skip(
        self,
        report: ApplyReport,
        specs: Iterable[ResourceSpec],
        reason: str,
        op: OperationScope | None,
    ) -> None:
        for spec in specs:
            report.outcomes.append(
                ResourceOutcome(
                    name=spec.name,
                    kind=spec.kind,
                    action=OutcomeAction.SKIPPED,
                    detail=reason,
                )
            )
            if op is not None:
                op.add_step(f"resource.{spec.name}", status="skipped", detail=reason)


def _renewed_references(spec: ResourceSpec, renewed: set[str]) -> list[str]:
    return sorted({ref.name for ref in spec.references()} & renewed)


def resolve_attributes(value: Any, records: Mapping[str, ResourceRecord]) -> Any:
    """Replace every :class:`ResourceRef` in *value* with its realised value.

    Raises ``KeyError`` naming the reference when it cannot be resolved.
    """
    if isinstance(value, ResourceRef):
        record = records.get(value.name)
        if record is None:
            raise KeyError(str(value))
        try:
            return record.lookup(value.attribute)
        except KeyError:
            raise KeyError(str(value)) from None
    if isinstance(value, Mapping):
        return {key: resolve_attributes(item, records) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve_attributes(item, records) for item in value]
    return value


__all__ = [
    "ApplyEngine",
    "ApplyReport",
    "Backoff",
    "OutcomeAction",
    "ProvisionFailed",
    "ResourceOutcome",
    "resolve_attributes",
]
