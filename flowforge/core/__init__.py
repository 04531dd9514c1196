"""Core modules for the FlowForge execution engine."""

from flowforge.core.graph_schema import Edge, Node, NodeStatus, NodeType, Workflow
from flowforge.core.models import ExecutionItem, RunRecord, RunStatus
from flowforge.core.state import Database

__all__ = [
    "Database",
    "Edge",
    "ExecutionItem",
    "Node",
    "NodeStatus",
    "NodeType",
    "RunRecord",
    "RunStatus",
    "Workflow",
]
