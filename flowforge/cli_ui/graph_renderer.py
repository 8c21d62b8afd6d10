"""Terminal graph rendering for workflow visualization.

Provides level-based and tree-based views of workflow graphs using Rich.
"""

from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from flowforge.core.graph_schema import (
    NodeKind,
    NodeStatus,
    WorkflowDocument,
    WorkflowEdge,
    WorkflowNode,
)


def _normalize_status(status: NodeStatus | str | None) -> str:
    if isinstance(status, NodeStatus):
        return status.value
    return str(status) if status else NodeStatus.READY.value


class TerminalGraphRenderer:
    """
    Renders workflow graphs in the terminal.

    render_graph() prints topological levels only; render_as_tree() follows
    the actual edges (with branch handles) from every start node.
    """

    NODE_STYLES = {
        NodeKind.BASIC: ("[ ]", "cyan"),
        NodeKind.HTTP: ("[H]", "blue"),
        NodeKind.CONDITION: ("[?]", "magenta"),
        NodeKind.LOOP: ("[L]", "green"),
        NodeKind.WEBHOOK: ("[W]", "yellow"),
        NodeKind.STORAGE: ("[S]", "white"),
        NodeKind.DATABASE: ("[D]", "red"),
        NodeKind.TABLE: ("[T]", "white"),
        NodeKind.IMPORTED: ("[I]", "cyan"),
    }

    STATUS_COLORS = {
        "ready": "dim",
        "running": "blue bold",
        "complete": "green",
        "error": "red bold",
    }

    STATUS_MARKS = {"complete": " ✓", "error": " ✗", "running": " ⟳"}

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def _node_text(self, node: WorkflowNode, statuses: dict[str, Any] | None) -> str:
        # Labels are user text; escape to keep Rich markup out
        symbol, color = self.NODE_STYLES.get(node.kind, ("[ ]", "white"))
        safe_label = escape(node.label or node.id)
        status = _normalize_status(statuses.get(node.id)) if statuses else "ready"
        if status != "ready":
            status_color = self.STATUS_COLORS.get(status, "white")
            mark = self.STATUS_MARKS.get(status, "")
            return f"[{status_color}]{symbol} {safe_label}{mark}[/]"
        return f"[{color}]{symbol} {safe_label}[/]"

    def render_graph(
        self,
        workflow: WorkflowDocument,
        statuses: dict[str, NodeStatus | str] | None = None,
    ) -> str:
        """Render the workflow as rows of topological levels."""
        node_map = {n.id: n for n in workflow.nodes}
        levels = workflow.topological_levels() or [[n.id for n in workflow.nodes]]

        lines = []
        for level_idx, level in enumerate(levels):
            level_nodes = [
                self._node_text(node_map[node_id], statuses)
                for node_id in level
                if node_id in node_map
            ]
            lines.append("  |  ".join(level_nodes))
            if level_idx < len(levels) - 1:
                lines.append("  " + "  |  " * len(level_nodes))
                lines.append("  " + "  v  " * len(level_nodes))

        return "\n".join(lines)

    def render_as_tree(
        self,
        workflow: WorkflowDocument,
        statuses: dict[str, NodeStatus | str] | None = None,
        max_depth: int = 50,
    ) -> Tree:
        """Render the workflow as a Rich Tree rooted at its start nodes."""
        tree = Tree(f"[bold]Workflow[/] (v{escape(workflow.metadata.version)})")

        node_map = {n.id: n for n in workflow.nodes}
        edge_map: dict[str, list[WorkflowEdge]] = {n.id: [] for n in workflow.nodes}
        targets = set()
        for edge in workflow.edges:
            if edge.source in edge_map:
                edge_map[edge.source].append(edge)
            targets.add(edge.target)

        starts = [n for n in workflow.nodes if n.id not in targets]
        if not starts:
            tree.add("[red]Error: No starting nodes found[/]")
            return tree

        for node in starts:
            self._add_node_to_tree(tree, node, statuses, node_map, edge_map, set(), 0, max_depth)
        return tree

    def _add_node_to_tree(
        self,
        parent: Tree,
        node: WorkflowNode,
        statuses: dict[str, Any] | None,
        node_map: dict[str, WorkflowNode],
        edge_map: dict[str, list[WorkflowEdge]],
        visited: set,
        depth: int,
        max_depth: int,
    ):
        if depth >= max_depth:
            parent.add("[dim]... (max depth reached)[/]")
            return
        if node.id in visited:
            parent.add(f"[dim]↩ {escape(node.id)} (cycle)[/]")
            return
        visited.add(node.id)

        branch = parent.add(self._node_text(node, statuses))
        for edge in edge_map.get(node.id, []):
            child = node_map.get(edge.target)
            if child is None:
                continue
            target = branch
            if edge.source_handle:
                target = branch.add(f"[dim]({escape(edge.source_handle)})[/]")
            self._add_node_to_tree(
                target, child, statuses, node_map, edge_map, visited.copy(), depth + 1, max_depth
            )


class StatusTableRenderer:
    """Renders a run's node status as a Rich table."""

    STATUS_TEXT = {
        "complete": "[green]✓ Complete[/]",
        "error": "[red]✗ Error[/]",
        "running": "[blue]⟳ Running[/]",
        "ready": "[dim]○ Ready[/]",
    }

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def render_status_table(
        self,
        workflow: WorkflowDocument,
        run_id: str,
        statuses: dict[str, NodeStatus | str],
        outputs: dict[str, Any] | None = None,
        errors: dict[str, str] | None = None,
    ) -> Table:
        table = Table(title=f"Run: {escape(run_id[:8])}...")

        table.add_column("Node", style="cyan")
        table.add_column("Kind", style="magenta")
        table.add_column("Status", justify="center")
        table.add_column("Result", max_width=40)

        for node in workflow.nodes:
            status = _normalize_status(statuses.get(node.id))
            if errors and node.id in errors:
                output = errors[node.id]
            else:
                val = outputs.get(node.id) if outputs else None
                output = val if val is not None else ""

            output_str = escape(str(output))
            if len(output_str) > 40:
                output_str = output_str[:37] + "..."

            table.add_row(
                escape(node.label or node.id),
                node.kind.value,
                self.STATUS_TEXT.get(status, status),
                output_str,
            )

        return table
