"""CLI UI components for terminal-based workflow visualization.

This package provides rich terminal UI capabilities for:
- Rendering workflow graphs as trees
- Node status tables
- Run history tables
"""

from flowforge.cli_ui.graph_renderer import StatusTableRenderer, TerminalGraphRenderer

__all__ = [
    "TerminalGraphRenderer",
    "StatusTableRenderer",
]
