"""Tests for workflow graph models and indexing.

Tests cover:
- Parsing the editor's canvas layout and the flat layout
- Kind normalization and edge defaults
- Structural validation (validate_graph)
- GraphIndex construction and structural errors
"""

from __future__ import annotations

import json

import pytest

from conftest import edge, node
from flowforge.core.graph_schema import (
    GraphIndex,
    NodeKind,
    NodeStatus,
    StructuralError,
    WorkflowDocument,
    WorkflowEdge,
    WorkflowNode,
)

CANVAS_DOCUMENT = {
    "nodes": [
        {
            "id": "fetch",
            "type": "custom",
            "position": {"x": 10, "y": 20},
            "data": {"label": "Fetch", "code": "return 1", "nodeType": "HTTP"},
        },
        {
            "id": "check",
            "type": "custom",
            "position": {"x": 10, "y": 120},
            "data": {"label": "Check", "code": "return input > 0", "nodeType": "CONDITION"},
        },
    ],
    "edges": [{"id": "e1", "source": "fetch", "target": "check", "sourceHandle": None}],
    "metadata": {"version": "4.0.0", "created": "2024-05-01T10:00:00"},
}


# =============================================================================
# Node and Edge Models
# =============================================================================


class TestWorkflowNode:
    """Tests for node parsing."""

    def test_canvas_layout_is_flattened(self):
        """Label, script and kind are lifted from ``data``."""
        parsed = WorkflowNode.model_validate(CANVAS_DOCUMENT["nodes"][0])

        assert parsed.id == "fetch"
        assert parsed.label == "Fetch"
        assert parsed.script == "return 1"
        assert parsed.kind == NodeKind.HTTP
        assert parsed.position == {"x": 10, "y": 20}

    def test_flat_layout(self):
        parsed = WorkflowNode.model_validate({"id": "a", "kind": "loop", "script": "return 1"})
        assert parsed.kind == NodeKind.LOOP
        assert parsed.script == "return 1"

    def test_unknown_kind_is_basic(self):
        parsed = WorkflowNode.model_validate({"id": "a", "type": "functionNode"})
        assert parsed.kind == NodeKind.BASIC

    def test_label_defaults_to_id(self):
        assert WorkflowNode(id="a").label == "a"

    def test_fresh_node_is_ready(self):
        parsed = WorkflowNode(id="a")
        assert parsed.status == NodeStatus.READY
        assert parsed.last_result is None


class TestWorkflowEdge:
    """Tests for edge parsing."""

    def test_default_id(self):
        assert edge("a", "b").id == "e-a-b"
        assert edge("c", "t", "true").id == "e-c-t-true"

    def test_adjacency_key(self):
        assert edge("a", "b").adjacency_key == "a"
        assert edge("c", "t", "false").adjacency_key == "c:false"

    def test_accepts_editor_aliases(self):
        parsed = WorkflowEdge.model_validate(
            {"sourceNodeId": "a", "targetNodeId": "b", "sourceHandle": "true"}
        )
        assert (parsed.source, parsed.target, parsed.source_handle) == ("a", "b", "true")


# =============================================================================
# Documents
# =============================================================================


class TestWorkflowDocument:
    """Tests for document loading, saving and validation."""

    def test_load_canvas_document(self, tmp_path):
        path = tmp_path / "workflow.json"
        path.write_text(json.dumps(CANVAS_DOCUMENT))

        doc = WorkflowDocument.load(path)

        assert [n.id for n in doc.nodes] == ["fetch", "check"]
        assert doc.nodes[1].kind == NodeKind.CONDITION
        assert doc.edges[0].source_handle is None
        assert doc.metadata.version == "4.0.0"

    def test_save_writes_editor_layout(self, tmp_path):
        doc = WorkflowDocument(nodes=[node("a", "return 1", "loop")], edges=[])
        path = tmp_path / "out.json"

        doc.save(path)

        saved = json.loads(path.read_text())
        assert saved["nodes"][0]["data"] == {"label": "a", "code": "return 1", "nodeType": "LOOP"}
        assert WorkflowDocument.load(path).nodes[0].kind == NodeKind.LOOP

    def test_valid_graph_has_no_errors(self):
        doc = WorkflowDocument.model_validate(CANVAS_DOCUMENT)
        assert doc.validate_graph() == []

    def test_reports_dangling_edge(self):
        doc = WorkflowDocument(nodes=[node("a", "")], edges=[edge("a", "ghost")])
        errors = doc.validate_graph()
        assert any("target 'ghost' not found" in e for e in errors)

    def test_reports_duplicate_node(self):
        doc = WorkflowDocument(nodes=[node("a", ""), node("a", "")])
        assert any("Duplicate node ID" in e for e in doc.validate_graph())

    def test_reports_handle_on_plain_node(self):
        doc = WorkflowDocument(
            nodes=[node("a", ""), node("b", "")], edges=[edge("a", "b", "true")]
        )
        assert any("never followed" in e for e in doc.validate_graph())

    def test_reports_cycle_without_start(self):
        doc = WorkflowDocument(
            nodes=[node("a", ""), node("b", "")], edges=[edge("a", "b"), edge("b", "a")]
        )
        errors = doc.validate_graph()
        assert any("No starting nodes" in e for e in errors)
        assert any("Cycle detected" in e for e in errors)

    def test_reports_empty_workflow(self):
        assert WorkflowDocument().validate_graph() == ["Workflow has no nodes"]

    def test_topological_levels(self):
        doc = WorkflowDocument(
            nodes=[node("a", ""), node("b", ""), node("c", "")],
            edges=[edge("a", "c"), edge("b", "c")],
        )
        assert doc.topological_levels() == [["a", "b"], ["c"]]


# =============================================================================
# Graph Index
# =============================================================================


class TestGraphIndex:
    """Tests for the per-run lookup structures."""

    def test_build_indexes_plain_and_branch_edges(self):
        index = GraphIndex.build(
            [node("s", ""), node("c", "", "condition"), node("t", ""), node("f", "")],
            [edge("s", "c"), edge("c", "t", "true"), edge("c", "f", "false")],
        )

        assert index.start_nodes() == ["s"]
        assert index.children("s") == ["c"]
        assert index.children("c:true") == ["t"]
        assert index.children("c:false") == ["f"]
        assert index.children("c") == []
        assert index.in_degree == {"s": 0, "c": 1, "t": 1, "f": 1}

    def test_parents_follow_declaration_order(self):
        index = GraphIndex.build(
            [node("a", ""), node("b", ""), node("j", "")],
            [edge("b", "j"), edge("a", "j")],
        )
        assert index.parents("j") == ["b", "a"]

    def test_missing_endpoint_raises(self):
        with pytest.raises(StructuralError, match="missing node"):
            GraphIndex.build([node("a", "")], [edge("a", "ghost")])

    def test_no_start_nodes_raises(self):
        with pytest.raises(StructuralError, match="No starting nodes"):
            GraphIndex.build([node("a", ""), node("b", "")], [edge("a", "b"), edge("b", "a")])
