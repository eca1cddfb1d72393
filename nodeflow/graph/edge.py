"""
Connection Protocol - How nodes connect in a workflow graph.

A connection runs from one node's named output port to another node's
named input port. Several connections may target one node (multiple
inputs) or leave one node (fan-out). For branching node types only the
connections leaving the port the node actually produced are followed.
"""

from typing import Any

from pydantic import BaseModel, Field

from nodeflow.graph.node import NodeSpec


class ConnectionSpec(BaseModel):
    """
    Directed edge between two node ports.

    Examples:
        # Plain data flow
        ConnectionSpec(source_node_id="start", target_node_id="summarize")

        # Branch taken only when the condition node produces "true"
        ConnectionSpec(
            source_node_id="is_long",
            source_port="true",
            target_node_id="shorten",
        )
    """

    id: str | None = None
    source_node_id: str = Field(description="Source node ID")
    source_port: str = Field(default="output", description="Output port on the source")
    target_node_id: str = Field(description="Target node ID")
    target_port: str = Field(default="input", description="Input port on the target")

    model_config = {"extra": "allow"}

    def describe(self) -> str:
        return (
            f"{self.source_node_id}.{self.source_port} -> "
            f"{self.target_node_id}.{self.target_port}"
        )


class GraphSpec(BaseModel):
    """
    Complete definition of a workflow graph.

    Supplied by the caller and reused across runs; the engine reads it and
    never mutates it.

        GraphSpec(
            id="qa-flow",
            name="Question answering",
            nodes=[
                NodeSpec(id="start", type="start"),
                NodeSpec(id="answer", type="llm"),
                NodeSpec(id="end", type="end"),
            ],
            connections=[
                ConnectionSpec(source_node_id="start", target_node_id="answer"),
                ConnectionSpec(source_node_id="answer", target_node_id="end"),
            ],
        )
    """

    id: str
    name: str = ""
    description: str = ""

    nodes: list[NodeSpec] = Field(default_factory=list, description="All nodes")
    connections: list[ConnectionSpec] = Field(
        default_factory=list, description="All connections"
    )

    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "allow"}

    def get_node(self, node_id: str) -> NodeSpec | None:
        """Get a node by ID."""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def get_nodes_by_type(self, type_key: str) -> list[NodeSpec]:
        """All nodes of one type, in declaration order."""
        return [node for node in self.nodes if node.type == type_key]

    def node_ids(self) -> set[str]:
        return {node.id for node in self.nodes}
