"""Incoming/outgoing connection lookups for one graph definition."""

from dataclasses import dataclass, field

from nodeflow.graph.edge import ConnectionSpec, GraphSpec


@dataclass
class ConnectionIndex:
    """
    node id -> incoming connections and node id -> outgoing connections.

    Built once per run from the flat connection list. Connections whose
    source or target is not a node of the graph are kept apart in
    ``dangling`` and take no part in scheduling.
    """

    incoming: dict[str, list[ConnectionSpec]] = field(default_factory=dict)
    outgoing: dict[str, list[ConnectionSpec]] = field(default_factory=dict)
    dangling: list[ConnectionSpec] = field(default_factory=list)

    @classmethod
    def build(cls, graph: GraphSpec) -> "ConnectionIndex":
        node_ids = graph.node_ids()
        index = cls()
        for conn in graph.connections:
            if conn.source_node_id not in node_ids or conn.target_node_id not in node_ids:
                index.dangling.append(conn)
                continue
            index.incoming.setdefault(conn.target_node_id, []).append(conn)
            index.outgoing.setdefault(conn.source_node_id, []).append(conn)
        return index

    def incoming_for(self, node_id: str) -> list[ConnectionSpec]:
        return self.incoming.get(node_id, [])

    def outgoing_for(self, node_id: str) -> list[ConnectionSpec]:
        """Outgoing connections in declaration order."""
        return self.outgoing.get(node_id, [])
