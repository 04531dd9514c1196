"""Run admission, debug stepping and the execution log.

At most one run is in flight. ``RunController.admit`` hands out a
``RunContext`` (cancellation token, debug channel, result accumulator); a
second request while one is active raises ``ConcurrencyError``.

Debug pausing is a rendezvous: a node about to execute parks a future in the
pause queue and the UI side releases it with ``step()`` (oldest first) or
``resume()`` (all, and no further pauses for this run).
"""

import asyncio
import logging
import uuid
from collections import deque
from collections.abc import Callable
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from flowforge.core.errors import ConcurrencyError
from flowforge.core.graph_schema import Node, NodeStatus, Workflow
from flowforge.core.models import ExecutionItem, RunRecord, utc_now

logger = logging.getLogger(__name__)

RunMode = Literal["manual", "isolation", "retry"]


class EngineEvent(BaseModel):
    """Notification published to subscribers (UI, CLI, websocket)."""

    type: str  # run_started, run_finished, node_status, node_paused, run_aborted
    run_id: str | None = None
    workflow_id: str | None = None
    node_id: str | None = None
    status: str | None = None
    message: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)


EventCallback = Callable[[EngineEvent], Any]


class RunContext:
    """Per-run state: cancellation token, debug channel, result snapshot."""

    def __init__(self, workflow: Workflow, mode: RunMode = "manual"):
        self.run_id = f"exec_{uuid.uuid4().hex[:9]}"
        self.workflow = workflow
        self.mode = mode
        self.started_at = utc_now()
        self.cancelled = False
        self.error: str | None = None
        self.snapshot: dict[str, list[list[ExecutionItem]]] = {}

    @property
    def execution_meta(self) -> dict[str, Any]:
        """Metadata exposed to expressions as ``$execution``."""
        return {
            "id": self.run_id,
            "mode": self.mode,
            "workflow_id": self.workflow.id,
            "started_at": self.started_at.isoformat(),
        }

    def cancel(self) -> None:
        self.cancelled = True

    def fail(self, message: str) -> None:
        """Record the first failure and clear the run latch (fail-fast)."""
        if self.error is None:
            self.error = message
        self.cancelled = True

    def record_result(self, node_id: str, items: list[ExecutionItem]) -> None:
        self.snapshot.setdefault(node_id, []).append(items)


class RunController:
    """Owns the run latch, debug rendezvous, run records and subscribers."""

    def __init__(self, max_run_records: int = 100, debug_mode: bool = False):
        self.debug_mode = debug_mode
        self.active: RunContext | None = None
        self.records: deque[RunRecord] = deque(maxlen=max_run_records)
        self._paused: deque[tuple[str, asyncio.Future]] = deque()
        self._subscribers: list[EventCallback] = []

    # --- Admission ---

    @property
    def is_running(self) -> bool:
        return self.active is not None

    def admit(self, workflow: Workflow, mode: RunMode = "manual") -> RunContext:
        if self.active is not None:
            raise ConcurrencyError(
                f"Run {self.active.run_id} is still in flight; request rejected"
            )
        ctx = RunContext(workflow, mode)
        self.active = ctx
        logger.info(f"Admitted {mode} run {ctx.run_id} for workflow '{workflow.id}'")
        self.publish(EngineEvent(type="run_started", run_id=ctx.run_id, workflow_id=workflow.id))
        return ctx

    def release(self, ctx: RunContext) -> None:
        if self.active is ctx:
            self.active = None
        self._release_paused()
        self.publish(
            EngineEvent(
                type="run_finished",
                run_id=ctx.run_id,
                workflow_id=ctx.workflow.id,
                status="error" if ctx.error or ctx.cancelled else "success",
                message=ctx.error,
            )
        )

    # --- Debug stepping ---

    def toggle_debug_mode(self) -> bool:
        self.debug_mode = not self.debug_mode
        logger.info(f"Debug mode {'enabled' if self.debug_mode else 'disabled'}")
        return self.debug_mode

    @property
    def paused_node_ids(self) -> list[str]:
        return [node_id for node_id, _ in self._paused]

    @property
    def paused_node_id(self) -> str | None:
        return self._paused[0][0] if self._paused else None

    @property
    def is_paused(self) -> bool:
        return bool(self._paused)

    async def wait_for_step(self, ctx: RunContext, node: Node) -> None:
        """Park node until released by step(), resume() or abort()."""
        if not self.debug_mode or ctx.cancelled:
            return

        future = asyncio.get_running_loop().create_future()
        entry = (node.id, future)
        self._paused.append(entry)
        node.status = NodeStatus.WAITING
        self.publish(
            EngineEvent(
                type="node_paused",
                run_id=ctx.run_id,
                workflow_id=ctx.workflow.id,
                node_id=node.id,
                status=NodeStatus.WAITING.value,
            )
        )
        try:
            await future
        finally:
            if entry in self._paused:
                self._paused.remove(entry)

    def step(self) -> str | None:
        """Release the oldest paused node. Returns its id, or None."""
        while self._paused:
            node_id, future = self._paused.popleft()
            if not future.done():
                future.set_result(None)
                return node_id
        return None

    def resume(self) -> int:
        """Release every paused node. Later nodes still pause while debug mode is on."""
        return self._release_paused()

    def _release_paused(self) -> int:
        released = 0
        while self._paused:
            _, future = self._paused.popleft()
            if not future.done():
                future.set_result(None)
                released += 1
        return released

    def abort(self) -> bool:
        """Cancel the active run, wake paused nodes and reset node statuses."""
        ctx = self.active
        if ctx is None:
            return False
        ctx.cancel()
        if ctx.error is None:
            ctx.error = "Execution aborted"
        self._release_paused()
        for node in ctx.workflow.nodes:
            node.status = NodeStatus.IDLE
        logger.warning(f"Run {ctx.run_id} aborted")
        self.publish(EngineEvent(type="run_aborted", run_id=ctx.run_id, workflow_id=ctx.workflow.id))
        return True

    # --- Run records ---

    def append_record(self, record: RunRecord) -> None:
        self.records.append(record)

    def clear_records(self) -> None:
        self.records.clear()

    # --- Events ---

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Register callback for engine events. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: EngineEvent) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                # A broken subscriber must not break the run
                logger.warning(f"Event subscriber failed on {event.type}: {e}")
