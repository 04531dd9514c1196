"""FastAPI backend for FlowForge Studio.

This module provides:
- REST API for the engine's operation surface (workflow/node editing,
  credentials, runs, debug stepping, execution log)
- WebSocket streaming engine events (node status changes, pauses, run
  start/finish) to connected UI clients

Architecture Notes:
- One engine per server process. Runs started here broadcast their events
  to every connected WebSocket; runs started by other processes (e.g. the
  CLI) are not visible in real time.
- ``POST /api/workflows/{id}/run`` starts the run in the background by
  default so that debug stepping can be driven from other requests. Pass
  ``?wait=true`` to block until the run record is available.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import pydantic
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from flowforge import __version__
from flowforge.config import load_settings
from flowforge.core.engine import WorkflowEngine, create_engine
from flowforge.core.errors import ConcurrencyError, NotFoundError, WorkflowValidationError
from flowforge.core.graph_schema import NodeType, Workflow
from flowforge.core.run_control import EngineEvent

logger = logging.getLogger(__name__)

app = FastAPI(
    title="FlowForge Studio API",
    description="Operation surface of the FlowForge workflow engine",
    version=__version__,
)

_engine: WorkflowEngine | None = None
_background: set[asyncio.Task] = set()


def get_engine() -> WorkflowEngine:
    """Get or create the engine instance."""
    global _engine
    if _engine is None:
        set_engine(create_engine(load_settings()))
    return _engine  # type: ignore[return-value]


def set_engine(engine: WorkflowEngine) -> None:
    """Install engine as the server's engine and forward its events."""
    global _engine
    _engine = engine
    engine.subscribe(_forward_event)


# ========== Error mapping ==========


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(WorkflowValidationError)
async def invalid_workflow_handler(request: Request, exc: WorkflowValidationError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": str(exc), "errors": exc.errors})


@app.exception_handler(pydantic.ValidationError)
async def invalid_params_handler(request: Request, exc: pydantic.ValidationError) -> JSONResponse:
    errors = [
        {"loc": ".".join(str(x) for x in err["loc"]), "msg": err["msg"]} for err in exc.errors()
    ]
    return JSONResponse(status_code=422, content={"detail": "Invalid parameters", "errors": errors})


@app.exception_handler(ConcurrencyError)
async def busy_handler(request: Request, exc: ConcurrencyError) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc)})


def _busy() -> HTTPException:
    return HTTPException(status_code=409, detail="Another run is still in flight")


# ========== API Models ==========


class WorkflowCreateRequest(BaseModel):
    name: str
    description: str = ""


class NodeCreateRequest(BaseModel):
    type: NodeType
    label: str | None = None
    params: dict[str, Any] = Field(default_factory=dict)
    position: dict[str, float] | None = None


class NodeParamsRequest(BaseModel):
    params: dict[str, Any]


class TemplateRequest(BaseModel):
    label: str | None = None


class TemplateNodeRequest(BaseModel):
    position: dict[str, float] | None = None


class EdgeCreateRequest(BaseModel):
    source: str
    target: str
    source_handle: str | None = None


class CredentialCreateRequest(BaseModel):
    name: str
    type: str
    secrets: dict[str, Any] = Field(default_factory=dict)


def _node_state(workflow: Workflow) -> list[dict[str, Any]]:
    return [
        {
            "node_id": node.id,
            "status": node.status.value,
            "last_error": node.last_error.model_dump(mode="json") if node.last_error else None,
            "last_result": (
                [[item.as_dict() for item in batch] for batch in node.last_result]
                if node.last_result
                else None
            ),
        }
        for node in workflow.nodes
    ]


# ========== Workflow Endpoints ==========


@app.get("/api/workflows")
async def list_workflows() -> list[dict[str, Any]]:
    return [wf.model_dump(mode="json") for wf in get_engine().list_workflows()]


@app.post("/api/workflows", status_code=201)
async def create_workflow(request: WorkflowCreateRequest) -> dict[str, Any]:
    return get_engine().create_workflow(request.name, request.description).model_dump(mode="json")


@app.post("/api/workflows/import", status_code=201)
async def import_workflow(workflow: Workflow) -> dict[str, Any]:
    errors = workflow.validate_graph()
    if errors:
        raise WorkflowValidationError(errors)
    return get_engine().import_workflow(workflow).model_dump(mode="json")


@app.get("/api/workflows/{workflow_id}")
async def get_workflow(workflow_id: str) -> dict[str, Any]:
    return get_engine().load_workflow(workflow_id).model_dump(mode="json")


@app.delete("/api/workflows/{workflow_id}")
async def delete_workflow(workflow_id: str) -> dict[str, str]:
    get_engine().delete_workflow(workflow_id)
    return {"status": "deleted", "id": workflow_id}


@app.post("/api/workflows/{workflow_id}/duplicate", status_code=201)
async def duplicate_workflow(workflow_id: str) -> dict[str, Any]:
    return get_engine().duplicate_workflow(workflow_id).model_dump(mode="json")


@app.post("/api/workflows/{workflow_id}/toggle-active")
async def toggle_workflow_active(workflow_id: str) -> dict[str, bool]:
    return {"active": get_engine().toggle_workflow_active(workflow_id)}


@app.get("/api/workflows/{workflow_id}/status")
async def get_workflow_status(workflow_id: str) -> list[dict[str, Any]]:
    return _node_state(get_engine().get_workflow(workflow_id))


# ========== Node and Edge Endpoints ==========


@app.post("/api/workflows/{workflow_id}/nodes", status_code=201)
async def add_node(workflow_id: str, request: NodeCreateRequest) -> dict[str, Any]:
    node = get_engine().add_node(
        workflow_id, request.type, request.label, request.params, request.position
    )
    return node.model_dump(mode="json")


@app.post("/api/workflows/{workflow_id}/nodes/{node_id}/clone", status_code=201)
async def clone_node(workflow_id: str, node_id: str) -> dict[str, Any]:
    return get_engine().clone_node(workflow_id, node_id).model_dump(mode="json")


@app.delete("/api/workflows/{workflow_id}/nodes/{node_id}")
async def delete_node(workflow_id: str, node_id: str) -> dict[str, str]:
    get_engine().delete_node(workflow_id, node_id)
    return {"status": "deleted", "id": node_id}


@app.patch("/api/workflows/{workflow_id}/nodes/{node_id}/params")
async def update_node_parameters(
    workflow_id: str, node_id: str, request: NodeParamsRequest
) -> dict[str, Any]:
    node = get_engine().update_node_parameters(workflow_id, node_id, request.params)
    return node.model_dump(mode="json")


@app.post("/api/workflows/{workflow_id}/nodes/{node_id}/template", status_code=201)
async def save_node_template(
    workflow_id: str, node_id: str, request: TemplateRequest
) -> dict[str, Any]:
    return get_engine().save_node_template(workflow_id, node_id, request.label).model_dump(
        mode="json"
    )


@app.post("/api/workflows/{workflow_id}/nodes/from-template/{template_id}", status_code=201)
async def add_node_from_template(
    workflow_id: str, template_id: str, request: TemplateNodeRequest | None = None
) -> dict[str, Any]:
    position = request.position if request is not None else None
    node = get_engine().add_node_from_template(workflow_id, template_id, position)
    return node.model_dump(mode="json")


@app.post("/api/workflows/{workflow_id}/edges", status_code=201)
async def connect(workflow_id: str, request: EdgeCreateRequest) -> dict[str, Any]:
    edge = get_engine().connect(workflow_id, request.source, request.target, request.source_handle)
    return edge.model_dump(mode="json")


@app.delete("/api/workflows/{workflow_id}/edges/{edge_id}")
async def disconnect(workflow_id: str, edge_id: str) -> dict[str, str]:
    get_engine().disconnect(workflow_id, edge_id)
    return {"status": "deleted", "id": edge_id}


# ========== Credential Endpoints ==========


@app.get("/api/credentials")
async def list_credentials() -> list[dict[str, Any]]:
    """List credentials without their secrets."""
    return [
        c.model_dump(mode="json", exclude={"secrets"})
        for c in get_engine().store.credentials.values()
    ]


@app.post("/api/credentials", status_code=201)
async def add_credential(request: CredentialCreateRequest) -> dict[str, Any]:
    credential = get_engine().add_credential(request.name, request.type, request.secrets)
    return credential.model_dump(mode="json", exclude={"secrets"})


@app.delete("/api/credentials/{credential_id}")
async def delete_credential(credential_id: str) -> dict[str, str]:
    get_engine().delete_credential(credential_id)
    return {"status": "deleted", "id": credential_id}


# ========== Execution Endpoints ==========


@app.post("/api/workflows/{workflow_id}/run")
async def run_workflow(workflow_id: str, wait: bool = False) -> dict[str, Any]:
    engine = get_engine()
    workflow = engine.get_workflow(workflow_id)
    errors = workflow.validate_graph()
    if errors:
        raise WorkflowValidationError(errors)
    if engine.is_executing:
        raise _busy()

    if wait:
        record = await engine.run_workflow(workflow_id)
        if record is None:
            raise _busy()
        return record.model_dump(mode="json", by_alias=True)

    task = asyncio.create_task(engine.run_workflow(workflow_id))
    _background.add(task)
    task.add_done_callback(_finish_background_run)
    return {"status": "started", "workflow_id": workflow_id}


def _finish_background_run(task: asyncio.Task) -> None:
    _background.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"Background run failed: {exc}", exc_info=exc)


@app.post("/api/workflows/{workflow_id}/nodes/{node_id}/run")
async def run_node_instance(workflow_id: str, node_id: str) -> dict[str, Any]:
    engine = get_engine()
    if engine.is_executing:
        raise _busy()
    output = await engine.run_node_instance(workflow_id, node_id)
    return _node_run_response(workflow_id, node_id, output)


@app.post("/api/workflows/{workflow_id}/nodes/{node_id}/retry")
async def retry_node(workflow_id: str, node_id: str) -> dict[str, Any]:
    engine = get_engine()
    if engine.is_executing:
        raise _busy()
    output = await engine.retry_node(workflow_id, node_id)
    return _node_run_response(workflow_id, node_id, output)


def _node_run_response(workflow_id: str, node_id: str, output) -> dict[str, Any]:
    # Admission is checked before the call: no output means failed or aborted
    node = get_engine().get_workflow(workflow_id).get_node(node_id)
    return {
        "node_id": node_id,
        "status": node.status.value,
        "aborted": output is None and node.status.value != "error",
        "branch": output.branch if output else None,
        "items": [item.as_dict() for item in output.items] if output else [],
        "error": node.last_error.message if node.last_error else None,
    }


@app.get("/api/executions")
async def list_executions() -> list[dict[str, Any]]:
    return [record.model_dump(mode="json", by_alias=True) for record in get_engine().executions]


@app.delete("/api/executions")
async def clear_executions() -> dict[str, str]:
    get_engine().clear_executions()
    return {"status": "cleared"}


@app.post("/api/executions/abort")
async def abort_execution() -> dict[str, bool]:
    return {"aborted": get_engine().abort_execution()}


# ========== Debug Endpoints ==========


@app.get("/api/debug")
async def debug_state() -> dict[str, Any]:
    engine = get_engine()
    return {
        "debug_mode": engine.debug_mode,
        "executing": engine.is_executing,
        "paused_node_id": engine.paused_node_id,
    }


@app.post("/api/debug/toggle")
async def toggle_debug_mode() -> dict[str, bool]:
    return {"debug_mode": get_engine().toggle_debug_mode()}


@app.post("/api/debug/step")
async def step() -> dict[str, str | None]:
    return {"released": get_engine().step()}


@app.post("/api/debug/resume")
async def resume() -> dict[str, int]:
    return {"released": get_engine().resume()}


# ========== WebSocket Event Stream ==========


class ConnectionManager:
    """Tracks connected WebSockets and broadcasts engine events to them."""

    def __init__(self):
        self.active_connections: list[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)

    def disconnect(self, websocket: WebSocket):
        try:
            self.active_connections.remove(websocket)
        except ValueError:
            pass

    async def broadcast(self, message: dict):
        connections = self.active_connections[:]

        async def safe_send(conn: WebSocket):
            try:
                await conn.send_json(message)
            except Exception:
                self.disconnect(conn)

        await asyncio.gather(*[safe_send(c) for c in connections], return_exceptions=True)


manager = ConnectionManager()


def _forward_event(event: EngineEvent) -> None:
    """Engine subscriber: schedule a broadcast on the running loop."""
    if not manager.active_connections:
        return
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return
    task = loop.create_task(manager.broadcast(event.model_dump(mode="json")))
    _background.add(task)
    task.add_done_callback(_background.discard)


@app.websocket("/ws/events")
async def events_websocket(websocket: WebSocket):
    """
    WebSocket for live engine events.

    Protocol:
    1. On connect: send the current debug/run state
    2. During runs: receive broadcast EngineEvent messages
    3. Client can send "ping"; server responds with "pong"
    """
    engine = get_engine()
    await manager.connect(websocket)
    try:
        await websocket.send_json(
            {
                "type": "initial_state",
                "debug_mode": engine.debug_mode,
                "executing": engine.is_executing,
                "paused_node_id": engine.paused_node_id,
            }
        )
        while True:
            try:
                msg = await asyncio.wait_for(websocket.receive_text(), timeout=30.0)
                if msg == "ping":
                    await websocket.send_json({"type": "pong"})
            except TimeoutError:
                try:
                    await websocket.send_json({"type": "heartbeat"})
                except Exception:
                    break
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
    finally:
        manager.disconnect(websocket)
