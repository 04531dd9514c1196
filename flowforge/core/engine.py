"""Engine facade: the operation surface consumed by UIs, the CLI and the
HTTP server.

``WorkflowEngine`` wires the store, dispatcher, executor and run controller
together. Editing operations delegate to the store; execution operations go
through the run controller so that at most one run is in flight.
"""

from __future__ import annotations

import logging
from typing import Any

from flowforge.config import EngineSettings
from flowforge.core.dispatcher import NodeDispatcher, NodeOutput, Services
from flowforge.core.errors import ConcurrencyError, WorkflowValidationError
from flowforge.core.graph_engine import GraphExecutor
from flowforge.core.graph_schema import Edge, Node, NodeTemplate, NodeType, Workflow
from flowforge.core.memory import MemoryStore
from flowforge.core.models import Credential, RunRecord, RunStatus
from flowforge.core.run_control import EventCallback, RunContext, RunController, RunMode
from flowforge.core.state import Database
from flowforge.core.store import WorkflowStore
from flowforge.integrations.model_provider import ModelProvider, OpenAICompatibleProvider
from flowforge.integrations.remote_shell import RemoteShell, SshClientShell
from flowforge.sandbox.executor import SandboxConfig, ScriptSandbox

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """Runs workflows held in a WorkflowStore."""

    def __init__(
        self,
        settings: EngineSettings | None = None,
        db: Database | None = None,
        store: WorkflowStore | None = None,
        services: Services | None = None,
        model_provider: ModelProvider | None = None,
        remote_shell: RemoteShell | None = None,
    ):
        self.settings = settings or EngineSettings()
        self.db = db
        self.store = store or WorkflowStore(db, state_key=self.settings.state_key)

        if services is None:
            services = Services(
                sandbox=ScriptSandbox(SandboxConfig(timeout=self.settings.sandbox_timeout)),
                memory=MemoryStore(db, default_window=self.settings.memory_window_size),
                model_provider=model_provider
                or OpenAICompatibleProvider(
                    base_url=self.settings.model_base_url,
                    default_model=self.settings.model_name,
                    api_key=self.settings.model_api_key,
                    timeout=self.settings.model_timeout,
                ),
                remote_shell=remote_shell or SshClientShell(timeout=self.settings.ssh_timeout),
                http_timeout=self.settings.http_timeout,
            )
        if services.store is None:
            services.store = self.store
        self.services = services

        self.controller = RunController(
            max_run_records=self.settings.max_run_records,
            debug_mode=self.settings.debug_mode,
        )
        self.dispatcher = NodeDispatcher(services)
        self.executor = GraphExecutor(self.dispatcher, self.controller)

    # ========== Workflow and node editing ==========

    def create_workflow(self, name: str, description: str = "") -> Workflow:
        return self.store.create_workflow(name, description)

    def import_workflow(self, workflow: Workflow) -> Workflow:
        return self.store.import_workflow(workflow)

    def duplicate_workflow(self, workflow_id: str) -> Workflow:
        return self.store.duplicate_workflow(workflow_id)

    def delete_workflow(self, workflow_id: str) -> None:
        self.store.delete_workflow(workflow_id)

    def toggle_workflow_active(self, workflow_id: str) -> bool:
        return self.store.toggle_workflow_active(workflow_id)

    def load_workflow(self, workflow_id: str) -> Workflow:
        return self.store.load_workflow(workflow_id)

    def get_workflow(self, workflow_id: str) -> Workflow:
        return self.store.get_workflow(workflow_id)

    def list_workflows(self) -> list[Workflow]:
        return self.store.list_workflows()

    def add_node(
        self,
        workflow_id: str,
        node_type: NodeType | str,
        label: str | None = None,
        params: dict[str, Any] | None = None,
        position: dict[str, float] | None = None,
    ) -> Node:
        return self.store.add_node(workflow_id, node_type, label, params, position)

    def clone_node(self, workflow_id: str, node_id: str) -> Node:
        return self.store.clone_node(workflow_id, node_id)

    def delete_node(self, workflow_id: str, node_id: str) -> None:
        self.store.delete_node(workflow_id, node_id)

    def connect(
        self, workflow_id: str, source: str, target: str, source_handle: str | None = None
    ) -> Edge:
        return self.store.connect(workflow_id, source, target, source_handle)

    def disconnect(self, workflow_id: str, edge_id: str) -> None:
        self.store.disconnect(workflow_id, edge_id)

    def update_node_parameters(
        self, workflow_id: str, node_id: str, params: dict[str, Any]
    ) -> Node:
        return self.store.update_node_parameters(workflow_id, node_id, params)

    def add_credential(
        self, name: str, type: str, secrets: dict[str, Any] | None = None
    ) -> Credential:
        return self.store.add_credential(name, type, secrets)

    def delete_credential(self, credential_id: str) -> None:
        self.store.delete_credential(credential_id)

    def save_node_template(
        self, workflow_id: str, node_id: str, label: str | None = None
    ) -> NodeTemplate:
        return self.store.save_node_template(workflow_id, node_id, label)

    def add_node_from_template(
        self, workflow_id: str, template_id: str, position: dict[str, float] | None = None
    ) -> Node:
        return self.store.add_node_from_template(workflow_id, template_id, position)

    # ========== Execution ==========

    def _admit(self, workflow: Workflow, mode: RunMode) -> RunContext | None:
        try:
            return self.controller.admit(workflow, mode)
        except ConcurrencyError as e:
            logger.warning(f"Run of workflow '{workflow.id}' rejected: {e}")
            return None

    async def run_workflow(self, workflow_id: str) -> RunRecord | None:
        """Run a workflow to completion and append its run record.

        Returns None when another run is already in flight.

        Raises:
            NotFoundError: If the workflow does not exist
            WorkflowValidationError: If the graph is structurally invalid
        """
        workflow = self.store.get_workflow(workflow_id)
        errors = workflow.validate_graph()
        if errors:
            raise WorkflowValidationError(errors)

        ctx = self._admit(workflow, "manual")
        if ctx is None:
            return None

        record = RunRecord(
            id=ctx.run_id,
            workflow_id=workflow.id,
            workflow_name=workflow.name,
            started_at=ctx.started_at,
        )
        try:
            await self.executor.run_workflow(ctx)
        except Exception as e:
            logger.error(f"Run {ctx.run_id} crashed: {e}")
            ctx.fail(str(e))
            raise
        finally:
            failed = ctx.error is not None or ctx.cancelled
            record.data_snapshot = ctx.snapshot
            record.finish(RunStatus.ERROR if failed else RunStatus.SUCCESS, ctx.error)
            self.controller.append_record(record)
            self._save_records()
            self.controller.release(ctx)
            logger.info(f"Run {ctx.run_id} finished: {record.status.value}")
        return record

    async def run_node_instance(self, workflow_id: str, node_id: str) -> NodeOutput | None:
        """Execute a single node in isolation (no descent, no run record)."""
        workflow = self.store.get_workflow(workflow_id)
        workflow.get_node(node_id)
        ctx = self._admit(workflow, "isolation")
        if ctx is None:
            return None
        try:
            return await self.executor.run_node_instance(ctx, node_id)
        finally:
            self.controller.release(ctx)

    async def retry_node(self, workflow_id: str, node_id: str) -> NodeOutput | None:
        """Re-run a single node with its last input (no descent, no run record)."""
        workflow = self.store.get_workflow(workflow_id)
        workflow.get_node(node_id)
        ctx = self._admit(workflow, "retry")
        if ctx is None:
            return None
        try:
            return await self.executor.retry_node(ctx, node_id)
        finally:
            self.controller.release(ctx)

    # ========== Debug control ==========

    @property
    def is_executing(self) -> bool:
        return self.controller.is_running

    @property
    def debug_mode(self) -> bool:
        return self.controller.debug_mode

    @property
    def paused_node_id(self) -> str | None:
        return self.controller.paused_node_id

    def toggle_debug_mode(self) -> bool:
        return self.controller.toggle_debug_mode()

    def step(self) -> str | None:
        return self.controller.step()

    def resume(self) -> int:
        return self.controller.resume()

    def abort_execution(self) -> bool:
        return self.controller.abort()

    # ========== Execution log and events ==========

    @property
    def executions(self) -> list[RunRecord]:
        """Run records, newest first."""
        return list(reversed(self.controller.records))

    def clear_executions(self) -> None:
        self.controller.clear_records()
        self._save_records()

    @property
    def _records_key(self) -> str:
        return f"{self.settings.state_key}:runs"

    def _save_records(self) -> None:
        if self.db is not None:
            records = [r.model_dump(mode="json", by_alias=True) for r in self.controller.records]
            self.db.put_blob(self._records_key, records)

    def load_records(self) -> None:
        """Restore the execution log persisted by earlier processes."""
        if self.db is None:
            return
        for data in self.db.get_blob(self._records_key) or []:
            self.controller.append_record(RunRecord.model_validate(data))

    def subscribe(self, callback: EventCallback):
        return self.controller.subscribe(callback)


def create_engine(settings: EngineSettings, **kwargs: Any) -> WorkflowEngine:
    """Build an engine backed by the sqlite database named in settings."""
    db = Database(settings.db_path)
    engine = WorkflowEngine(settings, db=db, **kwargs)
    engine.store.load()
    engine.load_records()
    return engine
