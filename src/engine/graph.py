"""Dependency graph for resolved resource instances.

Builds a DAG with one node per ResourceInstance and one edge per bound
reference (or depends_on entry), rejects cycles, and computes traversal
orderings for create (dependencies first) and destroy (dependents first).
"""

import heapq
import logging
from dataclasses import dataclass, field
from typing import Iterator

from engine.errors import ConfigurationError, CyclicDependencyError
from engine.resolver import InstanceKey, ResourceInstance

logger = logging.getLogger(__name__)

# DFS marking for cycle detection
_UNVISITED, _IN_PROGRESS, _DONE = 0, 1, 2


@dataclass
class GraphNode:
    """A node in the dependency graph.

    Wraps a ResourceInstance and adds edges in both directions.

    Attributes:
        instance: The underlying ResourceInstance
        dependencies: Nodes this node requires (edge targets)
        dependents: Nodes that require this node
        depth: Longest distance from a node without dependencies
    """
    instance: ResourceInstance
    dependencies: list['GraphNode'] = field(default_factory=list)
    dependents: list['GraphNode'] = field(default_factory=list)
    depth: int = 0

    @property
    def key(self) -> InstanceKey:
        return self.instance.key

    @property
    def type(self) -> str:
        return self.instance.type

    def order_key(self) -> tuple:
        """Declaration order, then index."""
        return (self.instance.ordinal, self.key.sort_key())

    def __lt__(self, other: 'GraphNode') -> bool:
        return self.order_key() < other.order_key()

    def __repr__(self) -> str:
        return f"GraphNode({self.key}, type={self.type}, depth={self.depth})"


class DependencyGraph:
    """Directed acyclic graph of resource instances.

    Provides ordered traversal for lifecycle operations:
    - create_order(): dependencies before dependents
    - destroy_order(): dependents before dependencies
    """

    def __init__(self, instances: list[ResourceInstance]):
        """Build the graph and validate it.

        Raises:
            CyclicDependencyError: If the references form a cycle
            ConfigurationError: If an edge names an instance not in the set
        """
        self._nodes: dict[InstanceKey, GraphNode] = {}
        self._build_graph(instances)
        self._check_cycles()
        self._order = self._topological_order()

    def _build_graph(self, instances: list[ResourceInstance]) -> None:
        for instance in instances:
            if instance.key in self._nodes:
                raise ConfigurationError(f"Duplicate instance: {instance.key}")
            self._nodes[instance.key] = GraphNode(instance=instance)

        # Wire edges in both directions; sorted for stable traversal
        for node in self._nodes.values():
            for dep_key in sorted(node.instance.dependencies, key=InstanceKey.sort_key):
                dep = self._nodes.get(dep_key)
                if dep is None:
                    raise ConfigurationError(f"{node.key} depends on unknown instance {dep_key}")
                node.dependencies.append(dep)
                dep.dependents.append(node)

    def _check_cycles(self) -> None:
        """Three-color depth-first traversal; a back-edge is a cycle."""
        color = {key: _UNVISITED for key in self._nodes}

        for start in sorted(self._nodes.values()):
            if color[start.key] != _UNVISITED:
                continue
            path: list[GraphNode] = [start]
            stack: list[Iterator[GraphNode]] = [iter(start.dependencies)]
            color[start.key] = _IN_PROGRESS

            while stack:
                advanced = False
                for dep in stack[-1]:
                    if color[dep.key] == _IN_PROGRESS:
                        begin = next(i for i, n in enumerate(path) if n.key == dep.key)
                        cycle = [str(n.key) for n in path[begin:]] + [str(dep.key)]
                        raise CyclicDependencyError(cycle)
                    if color[dep.key] == _UNVISITED:
                        color[dep.key] = _IN_PROGRESS
                        path.append(dep)
                        stack.append(iter(dep.dependencies))
                        advanced = True
                        break
                if not advanced:
                    stack.pop()
                    done = path.pop()
                    color[done.key] = _DONE

    def _topological_order(self) -> list[GraphNode]:
        """Kahn's algorithm; ties broken by declaration order."""
        in_degree = {key: len(node.dependencies) for key, node in self._nodes.items()}
        ready = [node for node in self._nodes.values() if in_degree[node.key] == 0]
        heapq.heapify(ready)

        ordered: list[GraphNode] = []
        while ready:
            node = heapq.heappop(ready)
            ordered.append(node)
            for dependent in node.dependents:
                dependent.depth = max(dependent.depth, node.depth + 1)
                in_degree[dependent.key] -= 1
                if in_degree[dependent.key] == 0:
                    heapq.heappush(ready, dependent)

        if len(ordered) != len(self._nodes):
            # Unreachable after _check_cycles; kept as a guard
            remaining = sorted(str(k) for k, d in in_degree.items() if d > 0)
            raise CyclicDependencyError(remaining)
        return ordered

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, key: object) -> bool:
        return key in self._nodes

    def dependencies_of(self, key: InstanceKey) -> set[InstanceKey]:
        return {n.key for n in self._nodes[key].dependencies}

    def dependents_of(self, key: InstanceKey) -> set[InstanceKey]:
        return {n.key for n in self._nodes[key].dependents}

    def create_order(self) -> list[GraphNode]:
        """Return nodes in creation order (dependencies before dependents)."""
        return list(self._order)

    def destroy_order(self) -> list[GraphNode]:
        """Return nodes in destruction order (dependents before dependencies).

        Reverse of create_order.
        """
        return list(reversed(self._order))
