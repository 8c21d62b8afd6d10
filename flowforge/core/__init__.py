"""Core modules for the Flowforge engine."""

from flowforge.core.graph_schema import (
    NodeKind,
    NodeStatus,
    StructuralError,
    WorkflowDocument,
    WorkflowEdge,
    WorkflowNode,
)
from flowforge.core.state import ExecutionHistory, LogEntry, RunLog, StatusBoard

__all__ = [
    "ExecutionHistory",
    "LogEntry",
    "NodeKind",
    "NodeStatus",
    "RunLog",
    "StatusBoard",
    "StructuralError",
    "WorkflowDocument",
    "WorkflowEdge",
    "WorkflowNode",
]
