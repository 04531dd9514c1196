"""Graph executor.

Walks a workflow from its entry nodes, running each node through the
dispatcher and fanning out concurrently along the outgoing edges whose
``source_handle`` matches the branch the node selected.

All state changes happen on the event loop between awaits, so node status
updates need no locking. The run's ``RunContext`` is the cancellation token:
it is checked before dispatch and after every suspension point (debug pause,
dispatch itself), so a failed or aborted run stops descending while
siblings already running finish their current node.
"""

from __future__ import annotations

import asyncio
import logging

from flowforge.core.dispatcher import NodeDispatcher, NodeOutput
from flowforge.core.graph_schema import Node, NodeErrorInfo, NodeStatus
from flowforge.core.models import ExecutionItem
from flowforge.core.run_control import EngineEvent, RunContext, RunController

logger = logging.getLogger(__name__)

MANUAL_TRIGGER = {"trigger": "manual"}
ISOLATION_TRIGGER = {"trigger": "isolation"}
RETRY_TRIGGER = {"retry": True}


class GraphExecutor:
    """Executes workflow graphs with concurrent fan-out."""

    def __init__(self, dispatcher: NodeDispatcher, controller: RunController):
        self.dispatcher = dispatcher
        self.controller = controller

    async def run_workflow(self, ctx: RunContext) -> None:
        """Run every entry node of ctx.workflow to completion."""
        workflow = ctx.workflow
        for node in workflow.nodes:
            node.reset_runtime()

        entries = workflow.entry_nodes()
        logger.info(
            f"Run {ctx.run_id}: starting workflow '{workflow.id}' from "
            f"{[n.id for n in entries]}"
        )
        await asyncio.gather(
            *(self._step(ctx, node.id, [ExecutionItem(json=dict(MANUAL_TRIGGER))]) for node in entries)
        )

    async def run_node_instance(self, ctx: RunContext, node_id: str) -> NodeOutput | None:
        """Run one node in isolation. Does not descend."""
        return await self._step(
            ctx, node_id, [ExecutionItem(json=dict(ISOLATION_TRIGGER))], descend=False
        )

    async def retry_node(self, ctx: RunContext, node_id: str) -> NodeOutput | None:
        """Re-run one node with the batch it last received. Does not descend."""
        node = ctx.workflow.get_node(node_id)
        items = node.last_input or [ExecutionItem(json=dict(RETRY_TRIGGER))]
        return await self._step(ctx, node_id, [i.model_copy(deep=True) for i in items], descend=False)

    def _set_status(self, ctx: RunContext, node: Node, status: NodeStatus) -> None:
        node.status = status
        self.controller.publish(
            EngineEvent(
                type="node_status",
                run_id=ctx.run_id,
                workflow_id=ctx.workflow.id,
                node_id=node.id,
                status=status.value,
                message=node.last_error.message if status == NodeStatus.ERROR and node.last_error else None,
            )
        )

    async def _step(
        self,
        ctx: RunContext,
        node_id: str,
        items: list[ExecutionItem],
        descend: bool = True,
    ) -> NodeOutput | None:
        """Execute node_id on items, then fan out to matching successors."""
        if ctx.cancelled:
            return None
        node = ctx.workflow.get_node(node_id)

        await self.controller.wait_for_step(ctx, node)
        if ctx.cancelled:
            return None

        node.last_input = items
        node.last_error = None
        self._set_status(ctx, node, NodeStatus.EXECUTING)

        try:
            output = await self.dispatcher.execute(node, items, ctx)
        except asyncio.CancelledError:
            node.status = NodeStatus.IDLE
            raise
        except Exception as e:
            logger.error(f"Node {node_id} failed: {e}")
            node.last_error = NodeErrorInfo(message=str(e))
            self._set_status(ctx, node, NodeStatus.ERROR)
            ctx.fail(f"Node '{node.label or node_id}' failed: {e}")
            return None

        node.last_result = [output.items]
        ctx.record_result(node_id, output.items)
        self._set_status(ctx, node, NodeStatus.SUCCESS)

        if not descend or ctx.cancelled:
            return output

        targets = [edge.target for edge in ctx.workflow.outgoing(node_id, output.branch)]
        if targets:
            await asyncio.gather(
                *(
                    self._step(ctx, target, [i.model_copy(deep=True) for i in output.items])
                    for target in targets
                )
            )
        return output
