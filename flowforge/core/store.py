"""Workflow, node, credential and template store.

Holds the editable state the engine runs against and persists it as one
JSON blob (``workflows``, ``templates``, ``credentials``) under a single key
in the sqlite key/value table. The blob is restored verbatim; there is no
migration step.
"""

import logging
import uuid
from typing import Any

from pydantic import TypeAdapter

from flowforge.core.errors import NotFoundError, WorkflowValidationError
from flowforge.core.graph_schema import (
    Edge,
    Node,
    NodeParams,
    NodeTemplate,
    NodeType,
    Workflow,
)
from flowforge.core.models import Credential, utc_now
from flowforge.core.state import Database

logger = logging.getLogger(__name__)

_PARAMS_ADAPTER: TypeAdapter = TypeAdapter(NodeParams)

CLONE_OFFSET = 40.0


def build_params(node_type: NodeType | str, params: dict[str, Any] | None = None):
    """Validate a raw parameter dict into the typed model for node_type."""
    data = dict(params or {})
    data["type"] = NodeType(node_type).value
    return _PARAMS_ADAPTER.validate_python(data)


class WorkflowStore:
    """In-memory workflow state with optional sqlite persistence."""

    def __init__(self, db: Database | None = None, state_key: str = "flowforge-state"):
        self.db = db
        self.state_key = state_key
        self.workflows: dict[str, Workflow] = {}
        self.credentials: dict[str, Credential] = {}
        self.templates: list[NodeTemplate] = []
        self.current_workflow_id: str | None = None

    # --- Persistence ---

    def load(self) -> bool:
        """Restore state from the database. Returns False if nothing was stored."""
        if self.db is None:
            return False
        blob = self.db.get_blob(self.state_key)
        if not blob:
            return False
        self.workflows = {
            wf.id: wf for wf in (Workflow.model_validate(w) for w in blob.get("workflows", []))
        }
        self.credentials = {
            c.id: c for c in (Credential.model_validate(c) for c in blob.get("credentials", []))
        }
        self.templates = [NodeTemplate.model_validate(t) for t in blob.get("templates", [])]
        logger.info(
            f"Restored {len(self.workflows)} workflows, {len(self.credentials)} credentials"
        )
        return True

    def save(self) -> None:
        if self.db is None:
            return
        self.db.put_blob(
            self.state_key,
            {
                "workflows": [wf.model_dump(mode="json") for wf in self.workflows.values()],
                "templates": [t.model_dump(mode="json") for t in self.templates],
                "credentials": [c.model_dump(mode="json") for c in self.credentials.values()],
            },
        )

    # --- Workflows ---

    def get_workflow(self, workflow_id: str) -> Workflow:
        try:
            return self.workflows[workflow_id]
        except KeyError:
            raise NotFoundError(f"Workflow '{workflow_id}' not found") from None

    def list_workflows(self) -> list[Workflow]:
        return list(self.workflows.values())

    @property
    def current_workflow(self) -> Workflow | None:
        if self.current_workflow_id is None:
            return None
        return self.workflows.get(self.current_workflow_id)

    def create_workflow(self, name: str, description: str = "") -> Workflow:
        workflow = Workflow(name=name, description=description)
        self.workflows[workflow.id] = workflow
        self.save()
        logger.info(f"Created workflow '{workflow.id}' ({name})")
        return workflow

    def import_workflow(self, workflow: Workflow) -> Workflow:
        """Add or replace a fully defined workflow (e.g. loaded from a file)."""
        self.workflows[workflow.id] = workflow
        self.save()
        return workflow

    def duplicate_workflow(self, workflow_id: str) -> Workflow:
        """Deep copy with fresh ids; the copy starts inactive."""
        source = self.get_workflow(workflow_id)
        copy = source.model_copy(deep=True)
        copy.id = f"wf_{uuid.uuid4().hex[:9]}"
        copy.name = f"{source.name} (Copy)"
        copy.active = False
        copy.updated_at = utc_now()
        for node in copy.nodes:
            node.reset_runtime()
            node.last_input = None
        self.workflows[copy.id] = copy
        self.save()
        return copy

    def delete_workflow(self, workflow_id: str) -> None:
        self.get_workflow(workflow_id)
        del self.workflows[workflow_id]
        if self.current_workflow_id == workflow_id:
            self.current_workflow_id = None
        self.save()

    def toggle_workflow_active(self, workflow_id: str) -> bool:
        workflow = self.get_workflow(workflow_id)
        workflow.active = not workflow.active
        workflow.touch()
        self.save()
        return workflow.active

    def load_workflow(self, workflow_id: str) -> Workflow:
        """Select workflow_id as the current workflow."""
        workflow = self.get_workflow(workflow_id)
        self.current_workflow_id = workflow_id
        return workflow

    # --- Nodes and edges ---

    def add_node(
        self,
        workflow_id: str,
        node_type: NodeType | str,
        label: str | None = None,
        params: dict[str, Any] | None = None,
        position: dict[str, float] | None = None,
    ) -> Node:
        workflow = self.get_workflow(workflow_id)
        node_type = NodeType(node_type)
        node = Node(
            label=label or node_type.value.replace("-", " ").title(),
            params=build_params(node_type, params),
            position=position or {"x": 0.0, "y": 0.0},
        )
        workflow.nodes.append(node)
        workflow.touch()
        self.save()
        return node

    def clone_node(self, workflow_id: str, node_id: str) -> Node:
        workflow = self.get_workflow(workflow_id)
        source = workflow.get_node(node_id)
        clone = source.model_copy(deep=True)
        clone.id = f"node_{uuid.uuid4().hex[:9]}"
        clone.reset_runtime()
        clone.last_input = None
        if source.position is not None:
            clone.position = {
                "x": source.position.get("x", 0.0) + CLONE_OFFSET,
                "y": source.position.get("y", 0.0) + CLONE_OFFSET,
            }
        workflow.nodes.append(clone)
        workflow.touch()
        self.save()
        return clone

    def delete_node(self, workflow_id: str, node_id: str) -> None:
        """Remove a node and every edge touching it."""
        workflow = self.get_workflow(workflow_id)
        workflow.get_node(node_id)
        workflow.nodes = [n for n in workflow.nodes if n.id != node_id]
        workflow.edges = [
            e for e in workflow.edges if e.source != node_id and e.target != node_id
        ]
        workflow.touch()
        self.save()

    def connect(
        self,
        workflow_id: str,
        source: str,
        target: str,
        source_handle: str | None = None,
    ) -> Edge:
        workflow = self.get_workflow(workflow_id)
        source_node = workflow.get_node(source)
        workflow.get_node(target)
        if source_handle is not None and source_handle not in source_node.outputs:
            raise WorkflowValidationError(
                [f"Node '{source}' has no output '{source_handle}'"]
            )

        for edge in workflow.edges:
            if (edge.source, edge.target, edge.source_handle) == (source, target, source_handle):
                return edge

        edge = Edge(source=source, target=target, source_handle=source_handle)
        workflow.edges.append(edge)
        workflow.touch()
        self.save()
        return edge

    def disconnect(self, workflow_id: str, edge_id: str) -> None:
        workflow = self.get_workflow(workflow_id)
        if not any(e.id == edge_id for e in workflow.edges):
            raise NotFoundError(f"Edge '{edge_id}' not found in workflow '{workflow_id}'")
        workflow.edges = [e for e in workflow.edges if e.id != edge_id]
        workflow.touch()
        self.save()

    def update_node_parameters(
        self, workflow_id: str, node_id: str, params: dict[str, Any]
    ) -> Node:
        """Merge params into the node's parameters and re-validate them.

        Raises:
            pydantic.ValidationError: If the merged parameters are invalid
        """
        workflow = self.get_workflow(workflow_id)
        node = workflow.get_node(node_id)
        merged = node.params.model_dump()
        merged.update({k: v for k, v in params.items() if k != "type"})
        node.params = build_params(node.type, merged)
        workflow.touch()
        self.save()
        return node

    # --- Credentials ---

    def add_credential(
        self,
        name: str,
        type: str,
        secrets: dict[str, Any] | None = None,
        credential_id: str | None = None,
    ) -> Credential:
        credential = Credential(
            id=credential_id or f"cred_{uuid.uuid4().hex[:9]}",
            name=name,
            type=type,
            secrets=secrets or {},
        )
        self.credentials[credential.id] = credential
        self.save()
        return credential

    def get_credential(self, credential_id: str) -> Credential:
        try:
            return self.credentials[credential_id]
        except KeyError:
            raise NotFoundError(f"Credential '{credential_id}' not found") from None

    def delete_credential(self, credential_id: str) -> None:
        self.get_credential(credential_id)
        del self.credentials[credential_id]
        self.save()

    # --- Node library ---

    def save_node_template(
        self, workflow_id: str, node_id: str, label: str | None = None
    ) -> NodeTemplate:
        node = self.get_workflow(workflow_id).get_node(node_id)
        template = NodeTemplate(
            label=label or node.label or node.type.value,
            params=node.params.model_copy(deep=True),
        )
        self.templates.append(template)
        self.save()
        return template

    def add_node_from_template(
        self,
        workflow_id: str,
        template_id: str,
        position: dict[str, float] | None = None,
    ) -> Node:
        for template in self.templates:
            if template.id == template_id:
                return self.add_node(
                    workflow_id,
                    template.params.type,
                    label=template.label,
                    params=template.params.model_dump(),
                    position=position,
                )
        raise NotFoundError(f"Template '{template_id}' not found")
