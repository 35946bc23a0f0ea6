"""Dependency planning: turn declared resources into a safe apply order."""
from __future__ import annotations

from collections.abc import Iterable, Sequence

import networkx as nx

from .resources.models import ApplyPlan, DuplicateResource, ManifestError, ResourceSpec


class UnresolvedReference(ManifestError):
    """Raised when a resource depends on a name that is not declared."""

    def __init__(self, source: str, target: str) -> None:
        """Record both ends of the dangling edge."""
        super().__init__(f"Resource '{source}' depends on undeclared resource '{target}'.")
        self.source = source
        self.target = target


class CyclicDependency(ManifestError):
    """Raised when the dependency relation contains a cycle."""

    def __init__(self, cycle: Sequence[str]) -> None:
        """Record the resources forming the cycle, in dependency order."""
        path = " -> ".join([*cycle, cycle[0]]) if cycle else "?"
        super().__init__(f"Dependency cycle detected: {path}.")
        self.cycle = list(cycle)


class DependencyPlanner:
    """Build the dependency graph and compute deterministic apply orders.

    Explicit ``depends_on`` entries and attribute references are merged into
    a single edge set, so both forms of dependency behave identically. An
    edge ``B -> A`` means "B must exist before A".
    """

    def __init__(self, specs: Iterable[ResourceSpec]) -> None:
        """Index *specs* by logical name, rejecting duplicates."""
        self._specs: dict[str, ResourceSpec] = {}
        for spec in specs:
            if spec.name in self._specs:
                raise DuplicateResource(spec.name)
            self._specs[spec.name] = spec
        self._graph: nx.DiGraph | None = None

    @property
    def graph(self) -> nx.DiGraph:
        """Return the validated dependency graph."""
        if self._graph is None:
            self._graph = self._build_graph()
        return self._graph

    def plan(self) -> ApplyPlan:
        """Return resources ordered so dependencies precede dependents."""
        order = nx.lexicographical_topological_sort(self.graph)
        return ApplyPlan(steps=tuple(self._specs[name] for name in order))

    def destroy_order(self, names: Iterable[str] | None = None) -> list[str]:
        """Return *names* (default: all) ordered so dependents are removed first."""
        wanted = set(self._specs) if names is None else set(names)
        ordered = list(nx.lexicographical_topological_sort(self.graph))
        return [name for name in reversed(ordered) if name in wanted]

    def dependents(self, name: str) -> set[str]:
        """Return every resource that transitively depends on *name*."""
        return set(nx.descendants(self.graph, name))

    def _build_graph(self) -> nx.DiGraph:
        graph = nx.DiGraph()
        graph.add_nodes_from(sorted(self._specs))
        for name in sorted(self._specs):
            for dependency in sorted(self._specs[name].dependencies()):
                if dependency not in self._specs:
                    raise UnresolvedReference(name, dependency)
                graph.add_edge(dependency, name)
        try:
            cycle_edges = nx.find_cycle(graph)
        except nx.NetworkXNoCycle:
            return graph
        raise CyclicDependency([source for source, _target in cycle_edges])


def plan_resources(specs: Iterable[ResourceSpec]) -> ApplyPlan:
    """Convenience wrapper returning the apply plan for *specs*."""
    return DependencyPlanner(specs).plan()


__all__ = ["CyclicDependency", "DependencyPlanner", "UnresolvedReference", "plan_resources"]
