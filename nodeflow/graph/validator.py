"""Static structural checks for workflow graphs.

Validation never raises and never touches execution state: problems are
returned as data and the caller decides whether to run anyway. Errors make
a graph invalid; warnings are advisory only.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field

from nodeflow.graph.edge import GraphSpec
from nodeflow.graph.node import NodeTypeRegistry

logger = logging.getLogger(__name__)

START_NODE_TYPE = "start"
END_NODE_TYPE = "end"


@dataclass
class ValidationResult:
    """Result of validating a graph."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    @property
    def error(self) -> str:
        """Get combined error message."""
        return "; ".join(self.errors) if self.errors else ""

    def to_dict(self) -> dict:
        return {"valid": self.valid, "errors": list(self.errors), "warnings": list(self.warnings)}


class GraphValidator:
    """
    Checks a GraphSpec for problems that would stop or confuse a run.

    Errors: no start node, a cycle, duplicate node ids, node types unknown
    to the registry (when one is given).
    Warnings: several start nodes, no end node, orphan nodes, connections
    that reference missing nodes.
    """

    def __init__(self, node_registry: NodeTypeRegistry | None = None):
        self.node_registry = node_registry

    def validate(self, graph: GraphSpec) -> ValidationResult:
        result = ValidationResult()

        start_nodes = graph.get_nodes_by_type(START_NODE_TYPE)
        if not start_nodes:
            result.errors.append("Workflow has no start node")
        elif len(start_nodes) > 1:
            ids = ", ".join(n.id for n in start_nodes)
            result.warnings.append(f"Workflow has multiple start nodes: {ids}")

        if not graph.get_nodes_by_type(END_NODE_TYPE):
            result.warnings.append("Workflow has no end node")

        duplicates = [nid for nid, count in Counter(n.id for n in graph.nodes).items() if count > 1]
        for node_id in duplicates:
            result.errors.append(f"Duplicate node id '{node_id}'")

        if self.node_registry is not None:
            for node in graph.nodes:
                if not self.node_registry.has(node.type):
                    result.errors.append(f"Node '{node.id}' has unknown type '{node.type}'")

        node_ids = graph.node_ids()
        connected: set[str] = set()
        for conn in graph.connections:
            connected.add(conn.source_node_id)
            connected.add(conn.target_node_id)
            if conn.source_node_id not in node_ids:
                result.warnings.append(
                    f"Connection {conn.describe()} references missing source "
                    f"'{conn.source_node_id}'"
                )
            if conn.target_node_id not in node_ids:
                result.warnings.append(
                    f"Connection {conn.describe()} references missing target "
                    f"'{conn.target_node_id}'"
                )

        for node in graph.nodes:
            if node.type in (START_NODE_TYPE, END_NODE_TYPE):
                continue
            if node.id not in connected:
                result.warnings.append(f"Node '{node.id}' is not connected")

        cycle = self.find_cycle(graph)
        if cycle:
            result.errors.append(f"Cycle detected: {' -> '.join(cycle)}")

        if not result.valid:
            logger.debug(f"Graph '{graph.id}' failed validation: {result.error}")
        return result

    def find_cycle(self, graph: GraphSpec) -> list[str]:
        """
        Depth-first search from every unvisited node, tracking the current
        path. Reaching a node already on the path closes a cycle.

        Returns:
            The cycle as a node path whose last element repeats the first,
            or an empty list for an acyclic graph.
        """
        adjacency: dict[str, list[str]] = {node.id: [] for node in graph.nodes}
        for conn in graph.connections:
            if conn.source_node_id in adjacency:
                adjacency[conn.source_node_id].append(conn.target_node_id)

        visited: set[str] = set()
        for root in adjacency:
            if root in visited:
                continue
            # Explicit stack so deep graphs don't hit the recursion limit
            path: list[str] = [root]
            on_path: set[str] = {root}
            visited.add(root)
            stack = [iter(adjacency[root])]
            while stack:
                neighbor = next(stack[-1], None)
                if neighbor is None:
                    stack.pop()
                    on_path.discard(path.pop())
                    continue
                if neighbor in on_path:
                    return path[path.index(neighbor) :] + [neighbor]
                if neighbor in visited:
                    continue
                visited.add(neighbor)
                path.append(neighbor)
                on_path.add(neighbor)
                stack.append(iter(adjacency.get(neighbor, [])))
        return []
