"""
Node Protocol - What a node is and how node types plug into the engine.

A NodeSpec is one step in a workflow graph: an id, a type key and an opaque
property bag. The type key is resolved against a NodeTypeRegistry to a
NodeTypeSpec, whose execute callable does the actual work:

    execute(inputs, properties, ctx) -> {port_name: value, ...}

The engine never interprets properties; it only merges the type's declared
defaults under the instance values before the call.
"""

import copy
import inspect
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field

from nodeflow.graph.context import CancellationToken

logger = logging.getLogger(__name__)

# Output port of an "end" node that carries the run's final result
FINAL_OUTPUT_PORT = "_final"


class NodeSpec(BaseModel):
    """
    A single step in a workflow graph.

    Example:
        NodeSpec(
            id="summarize",
            type="template",
            properties={"template": "Summary of {{topic}}"},
        )
    """

    id: str = Field(description="Unique within the graph")
    type: str = Field(description="Key resolved against the NodeTypeRegistry")
    name: str = ""
    properties: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "allow"}


@dataclass
class RunContext:
    """What a node implementation may see of the run executing it."""

    run_id: str
    workflow_id: str
    node_id: str
    variables: dict[str, Any]
    cancel_token: CancellationToken

    @property
    def is_cancelled(self) -> bool:
        return self.cancel_token.is_cancelled


NodeExecuteFn = Callable[[dict[str, Any], dict[str, Any], RunContext], Awaitable[Any] | Any]


@dataclass
class NodeTypeSpec:
    """
    A node type: display metadata, port/property declarations and the
    execute callable.

    branching=True marks conditional types: only the outgoing connections
    whose source port appears in the produced output are followed.
    """

    type: str
    name: str
    execute: NodeExecuteFn
    category: str = "process"
    description: str = ""
    inputs: dict[str, dict[str, Any]] = field(default_factory=dict)
    outputs: dict[str, dict[str, Any]] = field(default_factory=dict)
    properties: dict[str, dict[str, Any]] = field(default_factory=dict)
    branching: bool = False

    def default_properties(self) -> dict[str, Any]:
        """Declared property defaults, deep-copied so instances never share them."""
        return {
            key: copy.deepcopy(decl["default"])
            for key, decl in self.properties.items()
            if isinstance(decl, dict) and "default" in decl
        }

    async def run(
        self,
        inputs: dict[str, Any],
        properties: dict[str, Any],
        ctx: RunContext,
    ) -> Any:
        """Call execute, awaiting the result when the callable is async."""
        result = self.execute(inputs, properties, ctx)
        if inspect.isawaitable(result):
            result = await result
        return result


class NodeTypeRegistry:
    """
    Lookup from type key to NodeTypeSpec.

    Each engine is handed its own registry; nothing here is process-global.

    Example:
        registry = NodeTypeRegistry.with_builtins()

        async def double(inputs, properties, ctx):
            return {"output": inputs["input"]["x"] * 2}

        registry.register_function("double", double)
    """

    CATEGORIES: dict[str, dict[str, Any]] = {
        "control": {"name": "Control", "order": 1},
        "ai": {"name": "AI", "order": 2},
        "process": {"name": "Processing", "order": 3},
        "data": {"name": "Data", "order": 4},
    }

    def __init__(self) -> None:
        self._node_types: dict[str, NodeTypeSpec] = {}

    @classmethod
    def with_builtins(cls) -> "NodeTypeRegistry":
        """Registry preloaded with the start/end/condition/template types."""
        from nodeflow.graph.builtin_nodes import register_builtin_nodes

        registry = cls()
        register_builtin_nodes(registry)
        return registry

    def register(self, spec: NodeTypeSpec) -> None:
        """Register a node type, replacing any existing type with the same key."""
        if not spec.type or not spec.name:
            raise ValueError("Node types require both 'type' and 'name'")
        if spec.type in self._node_types:
            logger.debug(f"Replacing node type '{spec.type}'")
        self._node_types[spec.type] = spec

    def register_function(
        self,
        type_key: str,
        func: NodeExecuteFn,
        *,
        name: str | None = None,
        category: str = "process",
        branching: bool = False,
        properties: dict[str, dict[str, Any]] | None = None,
    ) -> NodeTypeSpec:
        """Register a plain (sync or async) function as a node type."""
        spec = NodeTypeSpec(
            type=type_key,
            name=name or type_key,
            execute=func,
            category=category,
            branching=branching,
            properties=properties or {},
            description=inspect.getdoc(func) or "",
        )
        self.register(spec)
        return spec

    def get(self, type_key: str) -> NodeTypeSpec | None:
        return self._node_types.get(type_key)

    def has(self, type_key: str) -> bool:
        return type_key in self._node_types

    def all(self) -> list[NodeTypeSpec]:
        return list(self._node_types.values())

    def categories(self) -> dict[str, dict[str, Any]]:
        return copy.deepcopy(self.CATEGORIES)

    def by_category(self) -> dict[str, dict[str, Any]]:
        """Group registered types under their category, in category order."""
        grouped = {
            cat_id: {**info, "nodes": []}
            for cat_id, info in sorted(self.CATEGORIES.items(), key=lambda kv: kv[1]["order"])
        }
        for spec in self._node_types.values():
            if spec.category in grouped:
                grouped[spec.category]["nodes"].append(spec)
        return grouped

    def create_node(self, type_key: str, node_id: str | None = None) -> NodeSpec:
        """Create a node instance of the given type with default properties."""
        spec = self.get(type_key)
        if spec is None:
            raise KeyError(f"Unknown node type: {type_key}")
        return NodeSpec(
            id=node_id or f"{type_key}_{uuid.uuid4().hex[:9]}",
            type=type_key,
            name=spec.name,
            properties=spec.default_properties(),
        )

    def __contains__(self, type_key: object) -> bool:
        return type_key in self._node_types

    def __len__(self) -> int:
        return len(self._node_types)
