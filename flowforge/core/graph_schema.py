"""Workflow graph schema definitions using Pydantic models.

Workflows are directed graphs of typed nodes connected by edges that may be
conditioned on a branch label. Each node kind carries its own parameter model;
``Node.params`` is a tagged union discriminated by ``type``, so the set of
node kinds is closed and every handler receives a typed parameter struct.

Parameter fields accept either literal values or template strings
(``"{{ $json.field }}"``) which are resolved per item at execution time.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

import networkx as nx
from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from flowforge.core.errors import NotFoundError
from flowforge.core.models import ExecutionItem, utc_now


class NodeType(str, Enum):
    """Supported node kinds"""

    # Triggers
    WEBHOOK = "webhook"
    CRON = "cron"
    # Transform
    SET = "set"
    CODE = "code"
    JSON_PARSER = "json-parser"
    # Control flow
    FILTER = "filter"
    SWITCH = "switch"
    MERGE = "merge"
    WAIT = "wait"
    LIMIT = "limit"
    SORT = "sort"
    SPLIT_BATCHES = "split-batches"
    # Integrations
    HTTP_REQUEST = "http-request"
    SSH = "ssh"
    LLM_CHAT = "llm-chat"
    LLM_VISION = "llm-vision"
    SUMMARIZATION_CHAIN = "summarization-chain"
    QA_CHAIN = "qa-chain"
    # Memory
    WINDOW_BUFFER_MEMORY = "window-buffer-memory"
    DURABLE_MEMORY = "durable-memory"


TRIGGER_TYPES = frozenset({NodeType.WEBHOOK, NodeType.CRON})
MODEL_CALL_TYPES = frozenset(
    {NodeType.LLM_CHAT, NodeType.LLM_VISION, NodeType.SUMMARIZATION_CHAIN, NodeType.QA_CHAIN}
)
MEMORY_TYPES = frozenset({NodeType.WINDOW_BUFFER_MEMORY, NodeType.DURABLE_MEMORY})


class NodeStatus(str, Enum):
    """Runtime status of a node, owned by the engine"""

    IDLE = "idle"
    EXECUTING = "executing"
    SUCCESS = "success"
    ERROR = "error"
    WAITING = "waiting"  # Paused at a debug step


# ========== Parameter models (one per node kind) ==========


class _Params(BaseModel):
    model_config = ConfigDict(extra="forbid")


class WebhookParams(_Params):
    type: Literal["webhook"] = "webhook"
    path: str = "/webhook"
    method: str = "POST"


class CronParams(_Params):
    type: Literal["cron"] = "cron"
    schedule: str = "0 * * * *"


class SetParams(_Params):
    """Replace the payload (``payload``) or assign one field (``key``/``value``)."""

    type: Literal["set"] = "set"
    payload: dict[str, Any] | list[Any] | str | None = None
    key: str | None = None
    value: Any = None
    output_schema: dict[str, Any] | str | None = None


class CodeParams(_Params):
    type: Literal["code"] = "code"
    script: str = ""


class JsonParserParams(_Params):
    type: Literal["json-parser"] = "json-parser"
    json_string: str = ""
    output_schema: dict[str, Any] | str | None = None


class FilterParams(_Params):
    type: Literal["filter"] = "filter"
    property: str = ""
    operator: Literal[
        "equal", "notEqual", "contains", "exists", "notExists", "greaterThan", "lessThan"
    ] = "equal"
    compare_value: Any = None


class SwitchParams(_Params):
    """Rules are compared against ``value`` in order; the first match wins."""

    type: Literal["switch"] = "switch"
    value: Any = None
    rules: list[Any] = Field(default_factory=list)


class MergeParams(_Params):
    type: Literal["merge"] = "merge"


class WaitParams(_Params):
    type: Literal["wait"] = "wait"
    amount: float | str = 1
    unit: Literal["milliseconds", "seconds", "minutes"] = "seconds"


class LimitParams(_Params):
    type: Literal["limit"] = "limit"
    max_items: int | str = 1
    keep: Literal["first", "last"] = "first"
    field: str | None = None  # Payload path of a list to transform instead of the batch


class SortParams(_Params):
    type: Literal["sort"] = "sort"
    key: str = ""
    order: Literal["asc", "desc"] = "asc"
    field: str | None = None


class SplitBatchesParams(_Params):
    type: Literal["split-batches"] = "split-batches"
    batch_size: int | str = 10
    batch_index: int | str = 0
    field: str | None = None


class HttpRequestParams(_Params):
    type: Literal["http-request"] = "http-request"
    url: str = ""
    method: str = "GET"
    headers: dict[str, Any] = Field(default_factory=dict)
    query: dict[str, Any] = Field(default_factory=dict)
    body: Any = None
    credential_id: str | None = None


class SshParams(_Params):
    type: Literal["ssh"] = "ssh"
    host: str = ""
    command: str = ""
    port: int | str = 22
    username: str | None = None
    credential_id: str | None = None
    fail_on_error: bool = False


class _ModelCallParams(_Params):
    model: str | None = None
    credential_id: str | None = None
    system_prompt: str | None = None
    temperature: float = 0.7
    session_id: str | None = None
    use_memory: bool = False


class LlmChatParams(_ModelCallParams):
    type: Literal["llm-chat"] = "llm-chat"
    prompt: str = ""


class LlmVisionParams(_ModelCallParams):
    type: Literal["llm-vision"] = "llm-vision"
    prompt: str = "Describe this image."
    image_property: str = "data"  # Binary attachment name on the input item
    image_url: str | None = None


class SummarizationParams(_ModelCallParams):
    type: Literal["summarization-chain"] = "summarization-chain"
    text: str = ""
    max_words: int | None = None


class QaChainParams(_ModelCallParams):
    type: Literal["qa-chain"] = "qa-chain"
    query: str = ""
    context: Any = ""


class _MemoryParams(_Params):
    session_id: str = "default"
    text: str | None = None  # Defaults to the item payload as JSON
    role: Literal["user", "assistant", "system"] = "user"
    window_size: int | None = None  # Falls back to the configured window


class WindowBufferMemoryParams(_MemoryParams):
    type: Literal["window-buffer-memory"] = "window-buffer-memory"


class DurableMemoryParams(_MemoryParams):
    type: Literal["durable-memory"] = "durable-memory"


NodeParams = Annotated[
    Union[
        WebhookParams,
        CronParams,
        SetParams,
        CodeParams,
        JsonParserParams,
        FilterParams,
        SwitchParams,
        MergeParams,
        WaitParams,
        LimitParams,
        SortParams,
        SplitBatchesParams,
        HttpRequestParams,
        SshParams,
        LlmChatParams,
        LlmVisionParams,
        SummarizationParams,
        QaChainParams,
        WindowBufferMemoryParams,
        DurableMemoryParams,
    ],
    Field(discriminator="type"),
]


def default_outputs(params: BaseModel) -> list[str]:
    """Branch labels a node of this kind can emit."""
    if isinstance(params, FilterParams):
        return ["true", "false"]
    if isinstance(params, SwitchParams):
        return [f"case_{i}" for i in range(1, len(params.rules) + 1)] + ["default"]
    return ["default"]


# ========== Graph elements ==========


class NodeErrorInfo(BaseModel):
    message: str
    timestamp: datetime = Field(default_factory=utc_now)


class Node(BaseModel):
    """Graph node with type-specific parameters and transient runtime fields"""

    id: str = Field(default_factory=lambda: f"node_{uuid.uuid4().hex[:9]}")
    label: str | None = None
    params: NodeParams
    position: dict[str, float] | None = None  # UI metadata, opaque to the engine

    # Runtime fields: owned by the engine, overwritten on every execution, never persisted
    status: NodeStatus = Field(default=NodeStatus.IDLE, exclude=True)
    last_result: list[list[ExecutionItem]] | None = Field(default=None, exclude=True)
    last_error: NodeErrorInfo | None = Field(default=None, exclude=True)
    last_input: list[ExecutionItem] | None = Field(default=None, exclude=True)

    @field_validator("id")
    @classmethod
    def validate_node_id(cls, v):
        if not v or not v.strip():
            raise ValueError("Node ID must not be empty")
        return v

    @property
    def type(self) -> NodeType:
        return NodeType(self.params.type)

    @computed_field
    @property
    def outputs(self) -> list[str]:
        return default_outputs(self.params)

    def reset_runtime(self) -> None:
        self.status = NodeStatus.IDLE
        self.last_result = None
        self.last_error = None


class Edge(BaseModel):
    """Directed edge, optionally conditioned on the source's branch label"""

    id: str = Field(default_factory=lambda: f"e_{uuid.uuid4().hex[:6]}")
    source: str
    target: str
    source_handle: str | None = None  # None matches any branch

    def matches(self, branch: str) -> bool:
        return self.source_handle is None or self.source_handle == branch


class TriggerConfig(BaseModel):
    mode: Literal["manual", "schedule", "webhook"] = "manual"
    schedule: str | None = None  # cron expression for schedule mode
    webhook_path: str | None = None


class NodeTemplate(BaseModel):
    """Saved node in the node library"""

    id: str = Field(default_factory=lambda: f"tpl_{uuid.uuid4().hex[:9]}")
    label: str
    params: NodeParams


class Workflow(BaseModel):
    """Complete workflow definition"""

    id: str = Field(default_factory=lambda: f"wf_{uuid.uuid4().hex[:9]}")
    name: str
    description: str = ""
    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)
    active: bool = False
    trigger: TriggerConfig = Field(default_factory=TriggerConfig)
    environment: str = "development"
    priority: Literal["low", "normal", "high"] = "normal"
    updated_at: datetime = Field(default_factory=utc_now)

    def touch(self) -> None:
        self.updated_at = utc_now()

    def get_node(self, node_id: str) -> Node:
        for node in self.nodes:
            if node.id == node_id:
                return node
        raise NotFoundError(f"Node '{node_id}' not found in workflow '{self.id}'")

    def outgoing(self, node_id: str, branch: str | None = None) -> list[Edge]:
        """Edges leaving node_id, filtered to those matching branch when given."""
        return [
            e
            for e in self.edges
            if e.source == node_id and (branch is None or e.matches(branch))
        ]

    def entry_nodes(self) -> list[Node]:
        """Declared trigger nodes if any, else nodes with no incoming edge."""
        triggers = [n for n in self.nodes if n.type in TRIGGER_TYPES]
        if triggers:
            return triggers
        targets = {e.target for e in self.edges}
        return [n for n in self.nodes if n.id not in targets]

    def validate_graph(self) -> list[str]:
        """
        Validate graph structure using NetworkX.
        Returns list of validation errors.
        """
        errors = []

        seen_node_ids = set()
        for node in self.nodes:
            if node.id in seen_node_ids:
                errors.append(f"Duplicate node ID: '{node.id}'")
            seen_node_ids.add(node.id)
        node_ids = seen_node_ids
        outputs = {n.id: n.outputs for n in self.nodes}

        seen_edge_ids = set()
        for edge in self.edges:
            if edge.id in seen_edge_ids:
                errors.append(f"Duplicate edge ID: '{edge.id}'")
            seen_edge_ids.add(edge.id)

            if edge.source not in node_ids:
                errors.append(f"Edge {edge.id}: source '{edge.source}' not found")
            elif edge.source_handle is not None and edge.source_handle not in outputs[edge.source]:
                errors.append(
                    f"Edge {edge.id}: source '{edge.source}' has no output '{edge.source_handle}'"
                )
            if edge.target not in node_ids:
                errors.append(f"Edge {edge.id}: target '{edge.target}' not found")

        if self.nodes and not self.entry_nodes():
            errors.append("No entry node found (every node has an incoming edge)")

        # Traversal recurses along edges, so any cycle would never terminate
        G = self._to_networkx()
        try:
            cycle = nx.find_cycle(G)
            cycle_path = " -> ".join([edge[0] for edge in cycle] + [cycle[-1][1]])
            errors.append(f"Cycle detected: {cycle_path}")
        except nx.NetworkXNoCycle:
            pass

        return errors

    def _to_networkx(self) -> nx.DiGraph:
        """Convert to NetworkX DiGraph for analysis"""
        G = nx.DiGraph()
        for node in self.nodes:
            G.add_node(node.id)
        for edge in self.edges:
            G.add_edge(edge.source, edge.target)
        return G
