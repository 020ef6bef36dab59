"""Resource dependency graph construction and ordering.

This module implements dependency management for one run:
1. Edge derivation from cross-resource reference expressions
2. Cycle detection (DFS) before any execution
3. Deterministic topological order (declaration order breaks ties)
4. Deferred fan-out expansion once an upstream collection is known

EXAMPLE:
```yaml
- type: distribution
  name: site
  attributes:
    origin: ${bucket.site.website_endpoint}         # distribution -> bucket
    certificate: ${certificate_validation.site.arn}  # distribution -> validated cert
```

Fan-out nodes (``forEach``) are inserted as placeholders. Their concrete
children are generated by ``expand()`` after the upstream node is Ready;
dependents of the placeholder wait for every child.
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .resources import (
    ErrorKind,
    ResourceNode,
    UnresolvedReferenceError,
    render_each,
    walk_path,
)

logger = logging.getLogger(__name__)

# Maximum children a single fan-out may produce
MAX_FAN_OUT_CHILDREN = 100


class DependencyError(Exception):
    """Raised when dependency validation fails."""

    pass


class CyclicDependencyError(DependencyError):
    """Raised when a dependency cycle is detected."""

    kind = ErrorKind.CYCLIC_DEPENDENCY

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__(f"Circular dependency detected involving: {' -> '.join(cycle)}")


class DuplicateNodeError(DependencyError):
    """Raised when two declarations share a node id."""

    pass


class ExpansionError(DependencyError):
    """Raised when a fan-out placeholder cannot be expanded."""

    kind = ErrorKind.UNRESOLVED_REFERENCE


@dataclass
class DependencyGraph:
    """Directed acyclic graph of resource nodes.

    Edges point from a consuming node to the node whose output it reads.
    """

    nodes: dict[str, ResourceNode] = field(default_factory=dict)
    _predecessors: dict[str, list[str]] = field(default_factory=dict)
    _dependents: dict[str, list[str]] = field(default_factory=dict)
    _children: dict[str, list[str]] = field(default_factory=dict)
    _order: dict[str, tuple[int, int]] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        nodes: Iterable[ResourceNode],
        known_outputs: Callable[[str], frozenset[str] | None] | None = None,
    ) -> DependencyGraph:
        """Build and validate a graph from desired nodes.

        Args:
            nodes: Desired nodes in declaration order.
            known_outputs: Optional lookup of the documented outputs of a
                resource type; None means "not documented".

        Raises:
            DuplicateNodeError: If two nodes share an id.
            UnresolvedReferenceError: If a reference names an unknown node/output.
            CyclicDependencyError: If the references form a cycle.
        """
        graph = cls()
        for node in nodes:
            graph.add_node(node)
        for node_id in list(graph.nodes):
            graph.link(node_id, known_outputs)
        graph.validate()
        logger.debug(
            "Dependency graph built",
            extra={"node_count": len(graph.nodes), "edge_count": graph.edge_count},
        )
        return graph

    @property
    def edge_count(self) -> int:
        return sum(len(preds) for preds in self._predecessors.values())

    def add_node(self, node: ResourceNode, order: tuple[int, int] | None = None) -> None:
        """Add a node without edges.

        Args:
            node: The node to add.
            order: Tie-break position; defaults to declaration order.
        """
        node_id = node.node_id
        if node_id in self.nodes:
            raise DuplicateNodeError(f"Duplicate resource declaration: {node_id}")
        self.nodes[node_id] = node
        self._predecessors[node_id] = []
        self._dependents[node_id] = []
        self._order[node_id] = order if order is not None else (len(self._order), 0)

    def add_edge(self, consumer: str, producer: str) -> None:
        """Record that ``consumer`` depends on ``producer``."""
        if producer not in self._predecessors[consumer]:
            self._predecessors[consumer].append(producer)
            self._dependents[producer].append(consumer)

    def link(
        self,
        node_id: str,
        known_outputs: Callable[[str], frozenset[str] | None] | None = None,
    ) -> None:
        """Derive edges for a node from its reference expressions.

        Raises:
            UnresolvedReferenceError: If a referenced node or output is unknown.
        """
        node = self.nodes[node_id]
        for ref in node.references():
            producer = self.nodes.get(ref.node_id)
            if producer is None:
                raise UnresolvedReferenceError(
                    f"'{node_id}' references unknown resource '{ref.node_id}' "
                    f"(${{{ref.expression}}})"
                )
            if known_outputs is not None:
                documented = known_outputs(producer.resource_type)
                if documented is not None and ref.output not in documented:
                    raise UnresolvedReferenceError(
                        f"'{node_id}' references output '{ref.output}' which "
                        f"'{producer.resource_type}' does not produce "
                        f"(${{{ref.expression}}})"
                    )
            self.add_edge(node_id, ref.node_id)

    def validate(self) -> None:
        """Validate the graph for cycles using depth-first search.

        Raises:
            CyclicDependencyError: Naming every node on the first cycle found.
        """
        white, grey, black = 0, 1, 2
        color = dict.fromkeys(self.nodes, white)

        for root in self._ordered(self.nodes):
            if color[root] != white:
                continue
            path: list[str] = [root]
            color[root] = grey
            stack: list[Any] = [iter(self._predecessors[root])]
            while stack:
                advanced = False
                for pred in stack[-1]:
                    if color[pred] == grey:
                        cycle = path[path.index(pred):]
                        raise CyclicDependencyError([*cycle, pred])
                    if color[pred] == white:
                        color[pred] = grey
                        path.append(pred)
                        stack.append(iter(self._predecessors[pred]))
                        advanced = True
                        break
                if not advanced:
                    color[path.pop()] = black
                    stack.pop()

    def topological_order(self) -> list[str]:
        """Return node ids in dependency order (producers first).

        Among nodes whose predecessors are all placed, declaration order wins,
        so identical input always yields the same order.

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        self.validate()

        in_degree = {node_id: len(preds) for node_id, preds in self._predecessors.items()}
        heap = [(self._order[n], n) for n, degree in in_degree.items() if degree == 0]
        heapq.heapify(heap)

        result: list[str] = []
        while heap:
            _, current = heapq.heappop(heap)
            result.append(current)
            for dependent in self._dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(heap, (self._order[dependent], dependent))

        return result

    def predecessors(self, node_id: str) -> list[str]:
        """Nodes this node depends on (including expanded fan-out children)."""
        return list(self._predecessors[node_id])

    def upstream(self, node_id: str) -> list[str]:
        """Predecessors excluding the node's own fan-out children."""
        children = set(self._children.get(node_id, ()))
        return [p for p in self._predecessors[node_id] if p not in children]

    def dependents(self, node_id: str) -> list[str]:
        """Nodes that directly depend on this node."""
        return list(self._dependents[node_id])

    def transitive_dependents(self, node_id: str) -> list[str]:
        """All nodes that depend on this node, directly or indirectly."""
        seen: set[str] = set()
        frontier = [node_id]
        while frontier:
            current = frontier.pop()
            for dependent in self._dependents[current]:
                if dependent not in seen:
                    seen.add(dependent)
                    frontier.append(dependent)
        return self._ordered(seen)

    def children(self, placeholder_id: str) -> list[str]:
        """Expanded children of a fan-out placeholder."""
        return list(self._children.get(placeholder_id, ()))

    def is_expanded(self, placeholder_id: str) -> bool:
        return placeholder_id in self._children

    def expand(self, placeholder_id: str, collection: Any) -> list[ResourceNode]:
        """Insert the concrete children of a fan-out placeholder.

        Args:
            placeholder_id: Id of the placeholder node.
            collection: The resolved ``forEach`` value: a list (keyed by index,
                or by ``forEachKey``) or a mapping (keyed by its keys).

        Returns:
            The inserted children, in key order of the collection.

        Raises:
            ExpansionError: If the collection is not expandable or keys collide.
            UnresolvedReferenceError: If a rendered child references an unknown node.
            CyclicDependencyError: If the re-linked graph has a cycle.
        """
        placeholder = self.nodes[placeholder_id]
        if not placeholder.is_placeholder:
            raise ExpansionError(f"'{placeholder_id}' is not a fan-out placeholder")
        if self.is_expanded(placeholder_id):
            raise ExpansionError(f"'{placeholder_id}' has already been expanded")

        items = self._keyed_items(placeholder, collection)
        if len(items) > MAX_FAN_OUT_CHILDREN:
            raise ExpansionError(
                f"'{placeholder_id}' would expand into {len(items)} children, "
                f"exceeding limit of {MAX_FAN_OUT_CHILDREN}"
            )

        upstream = self.upstream(placeholder_id)
        base_order = self._order[placeholder_id][0]
        children: list[ResourceNode] = []
        self._children[placeholder_id] = []

        for position, (key, item) in enumerate(items, start=1):
            child = ResourceNode(
                resource_type=placeholder.resource_type,
                name=placeholder.name,
                attributes=render_each(placeholder.attributes, key, item),
                lifecycle=placeholder.lifecycle,
                readiness_timeout_seconds=placeholder.readiness_timeout_seconds,
                key=key,
                parent=placeholder_id,
            )
            self.add_node(child, order=(base_order, position))
            self.link(child.node_id)
            for producer in upstream:
                self.add_edge(child.node_id, producer)
            self.add_edge(placeholder_id, child.node_id)
            self._children[placeholder_id].append(child.node_id)
            children.append(child)

        self.validate()
        logger.info(
            "Fan-out expanded",
            extra={"placeholder": placeholder_id, "children": [c.node_id for c in children]},
        )
        return children

    def _keyed_items(self, placeholder: ResourceNode, collection: Any) -> list[tuple[str, Any]]:
        if isinstance(collection, Mapping):
            items = [(str(k), v) for k, v in collection.items()]
        elif isinstance(collection, (list, tuple)):
            if placeholder.for_each_key:
                path = tuple(placeholder.for_each_key.split("."))
                items = [
                    (str(walk_path(item, path, placeholder.for_each_key)), item)
                    for item in collection
                ]
            else:
                items = [(str(index), item) for index, item in enumerate(collection)]
        else:
            raise ExpansionError(
                f"forEach of '{placeholder.node_id}' must evaluate to a list or mapping, "
                f"got {type(collection).__name__}"
            )

        seen: set[str] = set()
        for key, _ in items:
            if key in seen:
                raise ExpansionError(f"Duplicate fan-out key '{key}' in '{placeholder.node_id}'")
            seen.add(key)
        return items

    def _ordered(self, node_ids: Iterable[str]) -> list[str]:
        return sorted(node_ids, key=lambda n: self._order[n])
