# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the FlowForge test suite.

This module provides foundational fixtures used across all test modules:
- Settings and a temporary sqlite database
- Engine and store instances wired to fake integrations
- Fake model provider and remote shell that record their calls
- Helpers for building workflows and running coroutines

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest

from flowforge.config import EngineSettings
from flowforge.core.dispatcher import NodeDispatcher, Services
from flowforge.core.engine import WorkflowEngine
from flowforge.core.graph_schema import Edge, Node, Workflow
from flowforge.core.memory import MemoryStore
from flowforge.core.run_control import RunContext
from flowforge.core.state import Database
from flowforge.core.store import WorkflowStore, build_params
from flowforge.integrations.model_provider import ModelProvider, ModelRequest, ModelResponse
from flowforge.integrations.remote_shell import RemoteShell, ShellResult
from flowforge.sandbox.executor import SandboxConfig, ScriptSandbox


# =============================================================================
# Fakes for external services
# =============================================================================


class FakeModelProvider(ModelProvider):
    """Echoes the prompt back and records every request."""

    def __init__(self, reply: str | None = None):
        self.reply = reply
        self.requests: list[ModelRequest] = []

    async def generate(self, request: ModelRequest) -> ModelResponse:
        self.requests.append(request)
        text = self.reply if self.reply is not None else f"echo: {request.prompt}"
        return ModelResponse(text=text, model=request.model or "fake-model")


class FakeRemoteShell(RemoteShell):
    """Returns a canned result and records every call."""

    def __init__(self, stdout: str = "ok\n", stderr: str = "", exit_code: int = 0):
        self.result = ShellResult(stdout=stdout, stderr=stderr, exit_code=exit_code)
        self.calls: list[dict[str, Any]] = []

    async def run(self, host, command, port=22, username=None, private_key=None):
        self.calls.append(
            {
                "host": host,
                "command": command,
                "port": port,
                "username": username,
                "private_key": private_key,
            }
        )
        return self.result


# =============================================================================
# Builders
# =============================================================================


def make_node(node_id: str, node_type: str, label: str | None = None, **params: Any) -> Node:
    """Build a node with validated parameters."""
    return Node(id=node_id, label=label or node_id, params=build_params(node_type, params))


def make_workflow(
    nodes: list[Node], edges: list[tuple] | None = None, workflow_id: str = "wf_test"
) -> Workflow:
    """Build a workflow; edges are (source, target) or (source, target, handle)."""
    edge_models = []
    for index, edge in enumerate(edges or []):
        source, target, *rest = edge
        edge_models.append(
            Edge(
                id=f"e{index}",
                source=source,
                target=target,
                source_handle=rest[0] if rest else None,
            )
        )
    return Workflow(id=workflow_id, name="Test Workflow", nodes=nodes, edges=edge_models)


def run(coro):
    """Run a coroutine to completion on a fresh event loop."""
    return asyncio.run(coro)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def settings(tmp_path: Path) -> EngineSettings:
    """Engine settings with a temporary database and a short sandbox budget."""
    return EngineSettings(
        db_path=str(tmp_path / "state.db"),
        sandbox_timeout=5.0,
        max_run_records=5,
    )


@pytest.fixture
def test_db(tmp_path: Path) -> Database:
    """Create a temporary test database."""
    return Database(tmp_path / "test.db")


@pytest.fixture
def model_provider() -> FakeModelProvider:
    return FakeModelProvider()


@pytest.fixture
def remote_shell() -> FakeRemoteShell:
    return FakeRemoteShell()


@pytest.fixture
def store(test_db: Database) -> WorkflowStore:
    return WorkflowStore(test_db)


@pytest.fixture
def services(
    test_db: Database, store: WorkflowStore, model_provider, remote_shell
) -> Services:
    return Services(
        sandbox=ScriptSandbox(SandboxConfig(timeout=5.0)),
        memory=MemoryStore(test_db),
        store=store,
        model_provider=model_provider,
        remote_shell=remote_shell,
    )


@pytest.fixture
def dispatcher(services: Services) -> NodeDispatcher:
    return NodeDispatcher(services)


@pytest.fixture
def run_context() -> RunContext:
    """A manual run context over an empty workflow."""
    return RunContext(make_workflow([]), "manual")


@pytest.fixture
def engine(settings: EngineSettings, test_db: Database, model_provider, remote_shell):
    """Engine backed by the temporary database and fake integrations."""
    return WorkflowEngine(
        settings, db=test_db, model_provider=model_provider, remote_shell=remote_shell
    )
