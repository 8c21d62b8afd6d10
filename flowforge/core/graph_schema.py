"""Workflow graph schema definitions using Pydantic models.

Workflows are directed graphs of scriptable nodes connected by edges. Edges
leaving a CONDITION node carry a ``source_handle`` ("true"/"false") that
selects the branch they belong to.

The models accept the persisted document layout written by the editor, where
label, script and kind live under a ``data`` object (``data.label``,
``data.code``, ``data.nodeType``), as well as a flat layout.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

import networkx as nx
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator


class StructuralError(Exception):
    """Graph cannot be executed (no start node, dangling edge)."""

    pass


class NodeKind(str, Enum):
    """Node variants. Only CONDITION and LOOP change scheduling behavior."""

    BASIC = "basic"
    HTTP = "http"
    CONDITION = "condition"
    LOOP = "loop"
    WEBHOOK = "webhook"
    STORAGE = "storage"
    DATABASE = "database"
    TABLE = "table"
    IMPORTED = "imported"


class NodeStatus(str, Enum):
    """Execution status for nodes"""

    READY = "ready"
    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"


class WorkflowNode(BaseModel):
    """A scriptable node on the canvas."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    kind: NodeKind = Field(
        default=NodeKind.BASIC, validation_alias=AliasChoices("kind", "nodeType", "type")
    )
    label: str = ""
    script: str = Field(default="", validation_alias=AliasChoices("script", "code"))
    position: dict[str, float] | None = None

    status: NodeStatus = NodeStatus.READY
    last_executed_at: datetime | None = None
    last_result: Any = None

    @model_validator(mode="before")
    @classmethod
    def lift_canvas_data(cls, data: Any) -> Any:
        """Flatten the editor's ``data`` object onto the node."""
        if isinstance(data, dict) and isinstance(data.get("data"), dict):
            merged = {k: v for k, v in data.items() if k != "data"}
            for key, value in data["data"].items():
                merged.setdefault(key, value)
            # The canvas ``type`` is the renderer name ("custom"), not the kind
            if "nodeType" in data["data"]:
                merged.pop("type", None)
            return merged
        return data

    @field_validator("kind", mode="before")
    @classmethod
    def normalize_kind(cls, v):
        if isinstance(v, str):
            value = v.strip().lower()
            if value in {k.value for k in NodeKind}:
                return value
            # Canvas renderer names ("custom", "functionNode") mean a plain node
            return NodeKind.BASIC.value
        return v

    @model_validator(mode="after")
    def default_label(self) -> WorkflowNode:
        if not self.label:
            self.label = self.id
        return self


class WorkflowEdge(BaseModel):
    """Directed edge between nodes with an optional branch handle."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = ""
    source: str = Field(validation_alias=AliasChoices("source", "sourceNodeId"))
    target: str = Field(validation_alias=AliasChoices("target", "targetNodeId"))
    source_handle: str | None = Field(
        default=None, validation_alias=AliasChoices("source_handle", "sourceHandle", "handle")
    )
    last_payload: Any = None

    @model_validator(mode="after")
    def default_id(self) -> WorkflowEdge:
        if not self.id:
            suffix = f"-{self.source_handle}" if self.source_handle else ""
            self.id = f"e-{self.source}-{self.target}{suffix}"
        return self

    @property
    def adjacency_key(self) -> str:
        """Key under which this edge is indexed by its source."""
        if self.source_handle:
            return f"{self.source}:{self.source_handle}"
        return self.source


class WorkflowMetadata(BaseModel):
    version: str = "4.0.0"
    created: datetime | None = None


class WorkflowDocument(BaseModel):
    """Persisted workflow document (``nodes``, ``edges``, ``metadata``)."""

    nodes: list[WorkflowNode] = Field(default_factory=list)
    edges: list[WorkflowEdge] = Field(default_factory=list)
    metadata: WorkflowMetadata = Field(default_factory=WorkflowMetadata)

    @classmethod
    def load(cls, path: Path | str) -> WorkflowDocument:
        with open(path, encoding="utf-8") as f:
            return cls.model_validate(json.load(f))

    def save(self, path: Path | str) -> None:
        """Write the document in the editor's layout."""
        payload = {
            "nodes": [
                {
                    "id": n.id,
                    "position": n.position or {"x": 0, "y": 0},
                    "data": {"label": n.label, "code": n.script, "nodeType": n.kind.value.upper()},
                }
                for n in self.nodes
            ],
            "edges": [
                {
                    "id": e.id,
                    "source": e.source,
                    "target": e.target,
                    "sourceHandle": e.source_handle,
                }
                for e in self.edges
            ],
            "metadata": {
                "version": self.metadata.version,
                "created": (self.metadata.created or datetime.now()).isoformat(),
            },
        }
        Path(path).write_text(json.dumps(payload, indent=2), encoding="utf-8")

    def validate_graph(self) -> list[str]:
        """
        Validate graph structure using NetworkX.
        Returns list of validation errors.
        """
        errors = []

        seen_node_ids = set()
        for node in self.nodes:
            if node.id in seen_node_ids:
                errors.append(f"Duplicate node ID: '{node.id}'")
            seen_node_ids.add(node.id)
        node_ids = seen_node_ids
        kinds = {n.id: n.kind for n in self.nodes}

        seen_edge_ids = set()
        for edge in self.edges:
            if edge.id in seen_edge_ids:
                errors.append(f"Duplicate edge ID: '{edge.id}'")
            seen_edge_ids.add(edge.id)

        for edge in self.edges:
            if edge.source not in node_ids:
                errors.append(f"Edge {edge.id}: source '{edge.source}' not found")
            if edge.target not in node_ids:
                errors.append(f"Edge {edge.id}: target '{edge.target}' not found")
            if edge.source_handle and kinds.get(edge.source) not in (None, NodeKind.CONDITION):
                errors.append(
                    f"Edge {edge.id}: handle '{edge.source_handle}' on non-condition "
                    f"node '{edge.source}' is never followed"
                )

        if not self.nodes:
            errors.append("Workflow has no nodes")
            return errors

        G = self._to_networkx()
        if not any(G.in_degree(n) == 0 for n in node_ids):
            errors.append("No starting nodes found (circular dependency?)")

        try:
            cycle = nx.find_cycle(G)
            errors.append(f"Cycle detected: {' -> '.join(edge[0] for edge in cycle)}")
        except nx.NetworkXNoCycle:
            pass

        return errors

    def _to_networkx(self) -> nx.DiGraph:
        """Convert to NetworkX DiGraph for analysis"""
        G = nx.DiGraph()
        for node in self.nodes:
            G.add_node(node.id)
        for edge in self.edges:
            G.add_edge(edge.source, edge.target)
        return G

    def topological_levels(self) -> list[list[str]]:
        """Nodes grouped by topological level (empty when the graph has cycles)."""
        G = self._to_networkx()
        try:
            return [sorted(level) for level in nx.topological_generations(G)]
        except nx.NetworkXError:
            return []


@dataclass
class GraphIndex:
    """Lookup structures built once per run.

    ``adjacency`` is keyed by plain node id for handle-less edges and by
    ``"<node_id>:<handle>"`` for branch edges.
    """

    nodes: dict[str, WorkflowNode]
    adjacency: dict[str, list[str]] = field(default_factory=dict)
    in_degree: dict[str, int] = field(default_factory=dict)
    incoming: dict[str, list[WorkflowEdge]] = field(default_factory=dict)
    outgoing: dict[str, list[WorkflowEdge]] = field(default_factory=dict)

    @classmethod
    def build(cls, nodes: list[WorkflowNode], edges: list[WorkflowEdge]) -> GraphIndex:
        """Index the graph, raising StructuralError when it cannot start."""
        index = cls(nodes={n.id: n for n in nodes})
        index.in_degree = {n.id: 0 for n in nodes}

        for edge in edges:
            missing = [e for e in (edge.source, edge.target) if e not in index.nodes]
            if missing:
                raise StructuralError(
                    f"Edge {edge.id} references missing node(s): {', '.join(missing)}"
                )
            index.adjacency.setdefault(edge.adjacency_key, []).append(edge.target)
            index.in_degree[edge.target] += 1
            index.incoming.setdefault(edge.target, []).append(edge)
            index.outgoing.setdefault(edge.source, []).append(edge)

        if not index.start_nodes():
            raise StructuralError("No starting nodes found (circular dependency?)")
        return index

    def start_nodes(self) -> list[str]:
        return [node_id for node_id, degree in self.in_degree.items() if degree == 0]

    def children(self, key: str) -> list[str]:
        return self.adjacency.get(key, [])

    def parents(self, node_id: str) -> list[str]:
        return [e.source for e in self.incoming.get(node_id, [])]
