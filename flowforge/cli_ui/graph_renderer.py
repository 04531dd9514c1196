"""Terminal rendering for workflows, node statuses and run history.

SECURITY: All user-controlled strings (labels, outputs, error messages) are
escaped to prevent Rich markup injection.
"""

import json

from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from flowforge.core.graph_schema import (
    MEMORY_TYPES,
    MODEL_CALL_TYPES,
    TRIGGER_TYPES,
    Edge,
    Node,
    NodeStatus,
    NodeType,
    Workflow,
)
from flowforge.core.models import RunRecord, RunStatus

STATUS_STYLES = {
    NodeStatus.IDLE: "[dim]○ Idle[/]",
    NodeStatus.WAITING: "[yellow]⏸ Waiting[/]",
    NodeStatus.EXECUTING: "[blue]⟳ Executing[/]",
    NodeStatus.SUCCESS: "[green]✓ Success[/]",
    NodeStatus.ERROR: "[red]✗ Error[/]",
}


def _node_style(node_type: NodeType) -> tuple[str, str]:
    if node_type in TRIGGER_TYPES:
        return "[T]", "green"
    if node_type in MODEL_CALL_TYPES:
        return "[AI]", "magenta"
    if node_type in MEMORY_TYPES:
        return "[Mem]", "blue"
    if node_type in (NodeType.FILTER, NodeType.SWITCH):
        return "[?]", "yellow"
    if node_type in (NodeType.HTTP_REQUEST, NodeType.SSH):
        return "[IO]", "cyan"
    return "[ ]", "white"


def _truncate(text: str, width: int = 40) -> str:
    return text if len(text) <= width else text[: width - 3] + "..."


class TerminalGraphRenderer:
    """Renders a workflow as a Rich Tree rooted at its entry nodes."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def render_as_tree(self, workflow: Workflow, max_depth: int = 50) -> Tree:
        tree = Tree(f"[bold]{escape(workflow.name)}[/] [dim]({escape(workflow.id)})[/]")
        node_map = {n.id: n for n in workflow.nodes}
        edge_map: dict[str, list[Edge]] = {n.id: [] for n in workflow.nodes}
        for edge in workflow.edges:
            if edge.source in edge_map:
                edge_map[edge.source].append(edge)

        entries = workflow.entry_nodes()
        if not entries:
            tree.add("[red]Error: no entry node found[/]")
            return tree
        for entry in entries:
            self._add_node(tree, entry, node_map, edge_map, set(), 0, max_depth)
        return tree

    def _add_node(
        self,
        parent: Tree,
        node: Node,
        node_map: dict[str, Node],
        edge_map: dict[str, list[Edge]],
        visited: set[str],
        depth: int,
        max_depth: int,
    ) -> None:
        if depth >= max_depth:
            parent.add("[dim]... (max depth reached)[/]")
            return
        if node.id in visited:
            parent.add(f"[dim]↩ {escape(node.id)} (cycle)[/]")
            return
        visited = visited | {node.id}

        symbol, color = _node_style(node.type)
        label = escape(node.label or node.id)
        branch = parent.add(f"[{color}]{escape(symbol)} {label}[/] [dim]{node.type.value}[/]")

        for edge in edge_map.get(node.id, []):
            child = node_map.get(edge.target)
            if child is None:
                continue
            target = branch
            if edge.source_handle:
                target = branch.add(f"[dim]({escape(edge.source_handle)})[/]")
            self._add_node(target, child, node_map, edge_map, visited, depth + 1, max_depth)


class StatusTableRenderer:
    """Renders node statuses and last results of a workflow as a Rich table."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def render_status_table(self, workflow: Workflow, title: str | None = None) -> Table:
        table = Table(title=escape(title or workflow.name))
        table.add_column("Node", style="cyan")
        table.add_column("Type", style="magenta")
        table.add_column("Status", justify="center")
        table.add_column("Output", max_width=40)

        for node in workflow.nodes:
            if node.status == NodeStatus.ERROR and node.last_error:
                output = node.last_error.message
            elif node.last_result:
                output = json.dumps([i.as_dict() for i in node.last_result[-1]], default=str)
            else:
                output = ""
            table.add_row(
                escape(node.label or node.id),
                node.type.value,
                STATUS_STYLES.get(node.status, escape(str(node.status))),
                escape(_truncate(output)),
            )
        return table

    def render_history(self, records: list[RunRecord]) -> Table:
        table = Table(title="Executions")
        table.add_column("Run", style="cyan")
        table.add_column("Workflow")
        table.add_column("Status", justify="center")
        table.add_column("Started")
        table.add_column("Duration", justify="right")
        table.add_column("Error", max_width=40)

        for record in records:
            status = (
                "[green]success[/]"
                if record.status == RunStatus.SUCCESS
                else "[red]error[/]"
                if record.status == RunStatus.ERROR
                else "[blue]running[/]"
            )
            duration = f"{record.duration:.2f}s" if record.duration is not None else "-"
            table.add_row(
                escape(record.id),
                escape(record.workflow_name),
                status,
                record.started_at.strftime("%Y-%m-%d %H:%M:%S"),
                duration,
                escape(_truncate(record.error or "")),
            )
        return table
