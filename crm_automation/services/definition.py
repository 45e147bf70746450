"""Workflow Definition - immutable node/edge graph loaded once per execution.

Accepts the editor's JSON shape:

    {"nodes": [{"id": "n1", "type": "trigger", "data": {...}}],
     "edges": [{"id": "e1", "source": "n1", "target": "n2",
                "sourceHandle": "a", "label": "True"}]}
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from crm_automation.constants import TRIGGER_NODE_TYPE
from crm_automation.services.exceptions import WorkflowDefinitionError


@dataclass(frozen=True)
class Node:
    id: str
    type: str
    config: Mapping[str, Any] = field(default_factory=dict)

    @property
    def label(self) -> str:
        return str(self.config.get('label') or self.type)


@dataclass(frozen=True)
class Edge:
    id: str
    source: str
    target: str
    source_handle: Optional[str] = None
    label: Optional[str] = None


class WorkflowDefinition:
    """Validated, read-only workflow graph.

    Construction fails with WorkflowDefinitionError when the graph does not
    have exactly one trigger node, repeats a node id, or contains an edge
    whose source or target is not a node of the graph.
    """

    def __init__(self, nodes: List[Node], edges: List[Edge]):
        self._nodes: Dict[str, Node] = {}
        for node in nodes:
            if not node.id:
                raise WorkflowDefinitionError("Node without id")
            if node.id in self._nodes:
                raise WorkflowDefinitionError(f"Duplicate node id '{node.id}'")
            self._nodes[node.id] = node

        triggers = [n for n in nodes if n.type == TRIGGER_NODE_TYPE]
        if not triggers:
            raise WorkflowDefinitionError("No trigger node found in workflow")
        if len(triggers) > 1:
            raise WorkflowDefinitionError(
                f"Workflow has {len(triggers)} trigger nodes, expected exactly one"
            )
        self._trigger = triggers[0]

        self._out_edges: Dict[str, List[Edge]] = {node_id: [] for node_id in self._nodes}
        for edge in edges:
            for endpoint in (edge.source, edge.target):
                if endpoint not in self._nodes:
                    raise WorkflowDefinitionError(
                        f"Edge '{edge.id}' references unknown node '{endpoint}'"
                    )
            self._out_edges[edge.source].append(edge)

        self._edges: Tuple[Edge, ...] = tuple(edges)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "WorkflowDefinition":
        if not isinstance(data, dict):
            raise WorkflowDefinitionError("Workflow definition must be an object")

        nodes = []
        for raw in data.get('nodes') or []:
            if not isinstance(raw, dict):
                raise WorkflowDefinitionError("Node entries must be objects")
            config = raw.get('data') or {}
            nodes.append(Node(
                id=str(raw.get('id') or ''),
                type=str(raw.get('type') or ''),
                config=MappingProxyType(dict(config)),
            ))

        edges = []
        for index, raw in enumerate(data.get('edges') or []):
            if not isinstance(raw, dict):
                raise WorkflowDefinitionError("Edge entries must be objects")
            source = str(raw.get('source') or '')
            target = str(raw.get('target') or '')
            edges.append(Edge(
                id=str(raw.get('id') or f"{source}->{target}#{index}"),
                source=source,
                target=target,
                source_handle=raw.get('sourceHandle'),
                label=raw.get('label'),
            ))

        return cls(nodes, edges)

    @property
    def trigger(self) -> Node:
        return self._trigger

    @property
    def nodes(self) -> List[Node]:
        return list(self._nodes.values())

    @property
    def edges(self) -> Tuple[Edge, ...]:
        return self._edges

    def get_node(self, node_id: str) -> Optional[Node]:
        return self._nodes.get(node_id)

    def out_edges(self, node_id: str) -> List[Edge]:
        """Outgoing edges of a node in enumeration order."""
        return list(self._out_edges.get(node_id, ()))

    def __len__(self) -> int:
        return len(self._nodes)
