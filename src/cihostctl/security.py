"""Validate and normalise declarative firewall rules for a security group."""
from __future__ import annotations

import ipaddress
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass

from .resources.models import ManifestError, SecurityRule

DIRECTIONS = ("ingress", "egress")
PROTOCOLS = ("tcp", "udp", "icmp", "all")
PROTOCOL_ALIASES = {"-1": "all", "any": "all", "6": "tcp", "17": "udp", "1": "icmp"}
MIN_PORT = 0
MAX_PORT = 65535


class InvalidSecurityRule(ManifestError):
    """Raised when a firewall rule is malformed or conflicts with another."""


@dataclass(slots=True, frozen=True)
class CompiledRules:
    """Canonical, deduplicated rule sets for one security group."""

    ingress: tuple[SecurityRule, ...]
    egress: tuple[SecurityRule, ...]

    def to_attributes(self) -> dict[str, object]:
        """Return the rules as security-group resource attributes."""
        return {
            "ingress": [rule.to_dict() for rule in self.ingress],
            "egress": [rule.to_dict() for rule in self.egress],
        }

    def __len__(self) -> int:
        """Return the total number of rules."""
        return len(self.ingress) + len(self.egress)


def parse_rule(entry: Mapping[str, object], *, label: str = "rule") -> SecurityRule:
    """Build a :class:`SecurityRule` from a manifest mapping."""
    if not isinstance(entry, Mapping):
        raise InvalidSecurityRule(f"{label} must be a mapping.")
    unknown = set(entry.keys()) - {
        "direction",
        "protocol",
        "from_port",
        "to_port",
        "port",
        "cidrs",
        "description",
    }
    if unknown:
        joined = ", ".join(sorted(str(key) for key in unknown))
        raise InvalidSecurityRule(f"{label} has unknown keys: {joined}.")

    direction = str(entry.get("direction", "ingress")).strip().lower()
    if direction not in DIRECTIONS:
        raise InvalidSecurityRule(
            f"{label} direction must be 'ingress' or 'egress', got {direction!r}."
        )

    raw_protocol = str(entry.get("protocol", "tcp")).strip().lower()
    protocol = PROTOCOL_ALIASES.get(raw_protocol, raw_protocol)
    if protocol not in PROTOCOLS:
        allowed = ", ".join(PROTOCOLS)
        raise InvalidSecurityRule(f"{label} protocol {raw_protocol!r} unsupported. Allowed: {allowed}.")

    explicit_ports = any(key in entry for key in ("port", "from_port", "to_port"))
    if protocol == "all" and not explicit_ports:
        from_port, to_port = MIN_PORT, MAX_PORT
    else:
        port = entry.get("port")
        from_port = _expect_port(entry.get("from_port", port), f"{label}.from_port")
        to_port = _expect_port(entry.get("to_port", port if port is not None else from_port),
                               f"{label}.to_port")
        if from_port > to_port:
            raise InvalidSecurityRule(
                f"{label} from_port {from_port} is greater than to_port {to_port}."
            )
        if protocol == "all":
            # Provider-style 0/0 and the full range both mean "every port".
            if (from_port, to_port) not in ((MIN_PORT, MIN_PORT), (MIN_PORT, MAX_PORT)):
                raise InvalidSecurityRule(
                    f"{label} protocol 'all' covers every port; "
                    f"got ports {from_port}-{to_port}."
                )
            from_port, to_port = MIN_PORT, MAX_PORT

    cidrs = _normalise_cidrs(entry.get("cidrs", ("0.0.0.0/0",)), f"{label}.cidrs")
    description = str(entry.get("description") or "").strip()
    return SecurityRule(
        direction=direction,
        protocol=protocol,
        from_port=from_port,
        to_port=to_port,
        cidrs=cidrs,
        description=description,
    )


def compile_rules(rules: Iterable[SecurityRule | Mapping[str, object]]) -> CompiledRules:
    """Validate, deduplicate and canonically order *rules*."""
    unique: dict[tuple[str, str, int, int, tuple[str, ...]], SecurityRule] = {}
    for index, item in enumerate(rules):
        rule = item if isinstance(item, SecurityRule) else parse_rule(item, label=f"rules[{index}]")
        if rule.from_port > rule.to_port:
            raise InvalidSecurityRule(
                f"rules[{index}] from_port {rule.from_port} is greater than to_port {rule.to_port}."
            )
        current = unique.get(rule.identity)
        if current is None or _description_key(rule) < _description_key(current):
            unique[rule.identity] = rule

    ordered = sorted(unique.values(), key=lambda rule: rule.identity)
    _reject_overlaps(ordered)
    return CompiledRules(
        ingress=tuple(rule for rule in ordered if rule.direction == "ingress"),
        egress=tuple(rule for rule in ordered if rule.direction == "egress"),
    )


def _description_key(rule: SecurityRule) -> tuple[bool, str]:
    # Duplicates keep the smallest non-empty description, whatever the input order.
    return (not rule.description, rule.description)


def _reject_overlaps(rules: Sequence[SecurityRule]) -> None:
    for position, first in enumerate(rules):
        for second in rules[position + 1 :]:
            if first.direction != second.direction or first.cidrs != second.cidrs:
                continue
            if not _protocols_overlap(first.protocol, second.protocol):
                continue
            if first.from_port <= second.to_port and second.from_port <= first.to_port:
                raise InvalidSecurityRule(
                    f"{first.direction} rule {_describe(first)} overlaps {_describe(second)} "
                    f"for {', '.join(sorted(first.cidrs))}."
                )


def _protocols_overlap(first: str, second: str) -> bool:
    return first == second or "all" in (first, second)


def _describe(rule: SecurityRule) -> str:
    if rule.protocol == "all":
        return "all/*"
    if rule.from_port == rule.to_port:
        return f"{rule.protocol}/{rule.from_port}"
    return f"{rule.protocol}/{rule.from_port}-{rule.to_port}"


def _expect_port(value: object, label: str) -> int:
    if value is None:
        raise InvalidSecurityRule(f"{label} is required.")
    if isinstance(value, bool):
        raise InvalidSecurityRule(f"{label} must be an integer. Got boolean {value!r}.")
    try:
        port = int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError) as exc:
        raise InvalidSecurityRule(f"{label} must be an integer. Got {value!r}.") from exc
    if port < MIN_PORT or port > MAX_PORT:
        raise InvalidSecurityRule(f"{label} must be between {MIN_PORT} and {MAX_PORT}.")
    return port


def _normalise_cidrs(value: object, label: str) -> frozenset[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple, set, frozenset)) or not value:
        raise InvalidSecurityRule(f"{label} must be a non-empty list of CIDR blocks.")
    normalised: set[str] = set()
    for item in value:
        try:
            normalised.add(str(ipaddress.ip_network(str(item).strip(), strict=False)))
        except ValueError as exc:
            raise InvalidSecurityRule(f"{label} has invalid CIDR {item!r}: {exc}") from exc
    return frozenset(normalised)


__all__ = ["CompiledRules", "InvalidSecurityRule", "compile_rules", "parse_rule"]
