"""
Capability graph and module resolver
Orders modules so every module runs after the modules providing what it requires
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional

from .errors import ConfigurationError, CyclicDependencyError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModuleDescriptor:
    """Name and capability declaration of a graph-aware module"""

    name: str
    provides: FrozenSet[str] = frozenset()
    requires: FrozenSet[str] = frozenset()

    @classmethod
    def of(cls, name: str, provides: Iterable[str] = (), requires: Iterable[str] = ()) -> "ModuleDescriptor":
        if not name:
            raise ConfigurationError("Module name must be a non-empty string")
        return cls(name=name, provides=frozenset(provides), requires=frozenset(requires))


@dataclass
class Resolution:
    """Result of resolving a set of module descriptors"""

    order: List[str]
    edges: Dict[str, List[str]]
    unresolved: Dict[str, List[str]] = field(default_factory=dict)

    def upstream(self, name: str) -> List[str]:
        return list(self.edges.get(name, []))

    def position(self, name: str) -> int:
        return self.order.index(name)


class CapabilityGraph:
    """
    Per-module record of provided and required capabilities.

    Edges are derived: a module depends on every module that provides one of
    its required capabilities. A capability with no provider is recorded as
    unresolved and produces no edge.
    """

    def __init__(self, descriptors: Iterable[ModuleDescriptor]):
        self.descriptors: Dict[str, ModuleDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.name in self.descriptors:
                raise ConfigurationError(f"Duplicate module name '{descriptor.name}'")
            self.descriptors[descriptor.name] = descriptor

        self.providers: Dict[str, List[str]] = {}
        for descriptor in self.descriptors.values():
            for capability in sorted(descriptor.provides):
                self.providers.setdefault(capability, []).append(descriptor.name)

        self.edges: Dict[str, List[str]] = {}
        self.unresolved: Dict[str, List[str]] = {}
        for descriptor in self.descriptors.values():
            upstream: List[str] = []
            for capability in sorted(descriptor.requires):
                providers = self.providers.get(capability)
                if not providers:
                    self.unresolved.setdefault(descriptor.name, []).append(capability)
                    continue
                for provider in providers:
                    if provider != descriptor.name and provider not in upstream:
                        upstream.append(provider)
            self.edges[descriptor.name] = upstream

    def find_cycle(self) -> Optional[List[str]]:
        """Return a cycle path such as ['a', 'b', 'a'], or None"""
        visiting: List[str] = []
        visited = set()

        def visit(node: str) -> Optional[List[str]]:
            if node in visiting:
                return visiting[visiting.index(node):] + [node]
            if node in visited:
                return None
            visiting.append(node)
            for dep in self.edges.get(node, []):
                cycle = visit(dep)
                if cycle:
                    return cycle
            visiting.pop()
            visited.add(node)
            return None

        for name in self.descriptors:
            cycle = visit(name)
            if cycle:
                return cycle
        return None

    def topological_order(self) -> List[str]:
        """Kahn's algorithm; ties keep declaration order"""
        declared = list(self.descriptors)
        remaining = {name: len(self.edges[name]) for name in declared}
        dependents: Dict[str, List[str]] = {name: [] for name in declared}
        for name in declared:
            for dep in self.edges[name]:
                dependents[dep].append(name)

        ready = deque(name for name in declared if remaining[name] == 0)
        order: List[str] = []
        while ready:
            name = ready.popleft()
            order.append(name)
            for dependent in dependents[name]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    ready.append(dependent)

        if len(order) != len(declared):
            cycle = self.find_cycle() or [n for n in declared if n not in order]
            raise CyclicDependencyError(cycle)
        return order

    def format(self) -> str:
        lines = ["Dependency Graph:"]
        for name, deps in self.edges.items():
            if deps:
                lines.append(f"  {name} -> {', '.join(deps)}")
            else:
                lines.append(f"  {name} (no dependencies)")
        if self.providers:
            lines.append("")
            lines.append("Capabilities:")
            for capability, providers in sorted(self.providers.items()):
                lines.append(f"  {capability} <- {', '.join(providers)}")
        return "\n".join(lines)


def resolve(descriptors: Iterable[ModuleDescriptor], strict: bool = False,
            debug: bool = False) -> Resolution:
    """
    Compute execution order and dependency edges for a set of modules

    Args:
        descriptors: Module descriptors active in the environment
        strict: Treat a requirement with no provider as a configuration error
        debug: Log the rendered graph

    Returns:
        Resolution with order, edges and unresolved requirements

    Raises:
        CyclicDependencyError: If the requirements form a cycle
        ConfigurationError: On duplicate names, or unresolved requirements in strict mode
    """
    graph = CapabilityGraph(descriptors)
    order = graph.topological_order()

    for name, capabilities in graph.unresolved.items():
        message = (f"[Resolver] Module '{name}' requires {', '.join(capabilities)} "
                   f"but no module provides it")
        if strict:
            raise ConfigurationError(message)
        logger.warning(message)

    if debug:
        logger.debug(graph.format())

    return Resolution(
        order=order,
        edges={name: list(graph.edges[name]) for name in order},
        unresolved={name: list(caps) for name, caps in graph.unresolved.items()},
    )
