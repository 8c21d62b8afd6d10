"""CLI UI components for terminal-based workflow visualization.

This package provides rich terminal output for:
- Rendering workflow graphs as trees or topological levels
- Per-run node status tables
"""

from flowforge.cli_ui.graph_renderer import StatusTableRenderer, TerminalGraphRenderer

__all__ = [
    "TerminalGraphRenderer",
    "StatusTableRenderer",
]
