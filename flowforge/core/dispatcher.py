"""Node dispatcher: one handler per node kind.

``NodeDispatcher.execute`` takes a node and its input batch and returns the
output batch together with the branch label the node chose. Handlers raise
``NodeError`` (or a subclass) on failure; turning that into node status is
the graph executor's job.

Parameters are resolved against the item being processed. Control-flow
handlers that decide for the whole batch (filter, switch, wait, limit,
sort, split-batches, http-request) resolve against the first item.
"""

from __future__ import annotations

import asyncio
import base64
import copy
import json
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

import httpx

from flowforge.core import expressions
from flowforge.core.errors import IntegrationError, NodeError, SandboxError
from flowforge.core.graph_schema import Node, NodeType
from flowforge.core.memory import MemoryStore
from flowforge.core.models import BinaryData, ExecutionItem, utc_now, wrap_items
from flowforge.core.schema_validator import ensure_valid
from flowforge.integrations.model_provider import ChatMessage, ModelProvider, ModelRequest
from flowforge.integrations.remote_shell import RemoteShell
from flowforge.sandbox.executor import ScriptSandbox

if TYPE_CHECKING:
    from flowforge.core.run_control import RunContext
    from flowforge.core.store import WorkflowStore

logger = logging.getLogger(__name__)

DEFAULT_BRANCH = "default"

_WAIT_UNITS = {"milliseconds": 0.001, "seconds": 1.0, "minutes": 60.0}

# Every NodeType must map to a handler method; checked at import time below
_HANDLER_NAMES: dict[NodeType, str] = {
    NodeType.WEBHOOK: "_execute_trigger",
    NodeType.CRON: "_execute_trigger",
    NodeType.SET: "_execute_set",
    NodeType.CODE: "_execute_code",
    NodeType.JSON_PARSER: "_execute_json_parser",
    NodeType.FILTER: "_execute_filter",
    NodeType.SWITCH: "_execute_switch",
    NodeType.MERGE: "_execute_passthrough",
    NodeType.WAIT: "_execute_wait",
    NodeType.LIMIT: "_execute_limit",
    NodeType.SORT: "_execute_sort",
    NodeType.SPLIT_BATCHES: "_execute_split_batches",
    NodeType.HTTP_REQUEST: "_execute_http_request",
    NodeType.SSH: "_execute_ssh",
    NodeType.LLM_CHAT: "_execute_model_call",
    NodeType.LLM_VISION: "_execute_model_call",
    NodeType.SUMMARIZATION_CHAIN: "_execute_model_call",
    NodeType.QA_CHAIN: "_execute_model_call",
    NodeType.WINDOW_BUFFER_MEMORY: "_execute_memory",
    NodeType.DURABLE_MEMORY: "_execute_memory",
}


@dataclass
class NodeOutput:
    """Output batch of one node execution and the branch it selected."""

    items: list[ExecutionItem]
    branch: str = DEFAULT_BRANCH


@dataclass
class Services:
    """External collaborators injected into the dispatcher."""

    sandbox: ScriptSandbox = field(default_factory=ScriptSandbox)
    memory: MemoryStore = field(default_factory=MemoryStore)
    store: WorkflowStore | None = None
    http_client: httpx.AsyncClient | None = None  # created per request when None
    model_provider: ModelProvider | None = None
    remote_shell: RemoteShell | None = None
    http_timeout: float = 30.0


# ========== Helpers ==========


def _to_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _to_int(value: Any, default: int) -> int:
    number = _to_number(value)
    if number is None:
        return default
    return int(number)


def loose_equal(a: Any, b: Any) -> bool:
    """Equality where numeric strings compare equal to numbers."""
    if a == b:
        return True
    if isinstance(a, str) != isinstance(b, str):
        left, right = _to_number(a), _to_number(b)
        return left is not None and right is not None and left == right
    return False


def strict_equal(a: Any, b: Any) -> bool:
    """Equality without type coercion (1 == 1.0, but 1 != "1" and 1 != True)."""
    numeric = (int, float)
    if (
        isinstance(a, numeric)
        and isinstance(b, numeric)
        and not isinstance(a, bool)
        and not isinstance(b, bool)
    ):
        return a == b
    return type(a) is type(b) and a == b


def _sort_key(value: Any) -> tuple[int, Any]:
    if isinstance(value, bool):
        return (0, int(value))
    if isinstance(value, (int, float)):
        return (0, value)
    if isinstance(value, str):
        return (1, value)
    return (2, json.dumps(value, sort_keys=True, default=str))


def _set_path(data: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current: Any = data
    for part in parts[:-1]:
        current = current[int(part)] if isinstance(current, list) else current[part]
    last = parts[-1]
    if isinstance(current, list):
        current[int(last)] = value
    else:
        current[last] = value


def _items_from_value(value: Any, paired_item: int | None) -> list[ExecutionItem]:
    """Dict -> one item, list -> one item per element, scalar -> {"value": x}."""
    if isinstance(value, dict):
        return [ExecutionItem(json=value, paired_item=paired_item)]
    if isinstance(value, list):
        items = wrap_items(value)
        for item in items:
            item.paired_item = paired_item
        return items
    return [ExecutionItem(json={"value": value}, paired_item=paired_item)]


def _paired(item: ExecutionItem, index: int) -> int:
    return item.paired_item if item.paired_item is not None else index


class NodeDispatcher:
    """Executes nodes through an exhaustive handler table keyed by NodeType."""

    def __init__(self, services: Services | None = None):
        self.services = services or Services()
        self._handlers = {
            node_type: getattr(self, name) for node_type, name in _HANDLER_NAMES.items()
        }

    async def execute(
        self, node: Node, items: list[ExecutionItem], run: RunContext
    ) -> NodeOutput:
        handler = self._handlers[node.type]
        started = time.monotonic()
        output = await handler(node, items, run)
        logger.debug(
            f"Node {node.id} ({node.type.value}) produced {len(output.items)} items "
            f"on '{output.branch}' in {time.monotonic() - started:.3f}s"
        )
        return output

    def _context(self, run: RunContext, item: ExecutionItem | None) -> dict[str, Any]:
        return expressions.build_context(item, run.execution_meta)

    def _first_context(self, run: RunContext, items: list[ExecutionItem]) -> dict[str, Any]:
        return self._context(run, items[0] if items else None)

    def _credential(self, credential_id: str | None, node: Node):
        if not credential_id:
            return None
        if self.services.store is None:
            raise NodeError("No credential store configured", node.id)
        return self.services.store.get_credential(credential_id)

    # ========== Triggers ==========

    async def _execute_trigger(
        self, node: Node, items: list[ExecutionItem], run: RunContext
    ) -> NodeOutput:
        params = node.params
        if node.type == NodeType.WEBHOOK:
            meta = {"path": params.path, "method": params.method}
        else:
            meta = {"schedule": params.schedule, "timestamp": utc_now().isoformat()}

        output = []
        for item in items or [ExecutionItem(json={"trigger": run.mode})]:
            payload = dict(item.payload)
            payload.setdefault(node.type.value, meta)
            output.append(item.model_copy(update={"payload": payload}))
        return NodeOutput(output)

    async def _execute_passthrough(
        self, node: Node, items: list[ExecutionItem], run: RunContext
    ) -> NodeOutput:
        return NodeOutput(list(items))

    # ========== Transform ==========

    async def _execute_set(
        self, node: Node, items: list[ExecutionItem], run: RunContext
    ) -> NodeOutput:
        params = node.params
        output: list[ExecutionItem] = []
        for index, item in enumerate(items):
            ctx = self._context(run, item)
            if params.payload is not None:
                value = expressions.resolve_params(params.payload, ctx)
                if isinstance(value, str):
                    try:
                        value = json.loads(value) if value.strip() else {}
                    except json.JSONDecodeError as e:
                        raise NodeError(f"Invalid JSON payload: {e.msg}", node.id) from e
                new_items = _items_from_value(value, _paired(item, index))
            else:
                payload = copy.deepcopy(item.payload)
                key = expressions.resolve(params.key, ctx)
                if key:
                    payload[str(key)] = expressions.resolve_params(params.value, ctx)
                new_items = [ExecutionItem(json=payload, binary=item.binary, paired_item=item.paired_item)]

            for new_item in new_items:
                ensure_valid(new_item.payload, params.output_schema, node.id)
            output.extend(new_items)
        return NodeOutput(output)

    async def _execute_json_parser(
        self, node: Node, items: list[ExecutionItem], run: RunContext
    ) -> NodeOutput:
        params = node.params
        output: list[ExecutionItem] = []
        for index, item in enumerate(items):
            raw = expressions.resolve(params.json_string, self._context(run, item))
            if isinstance(raw, (dict, list)):
                parsed = raw
            else:
                text = "" if raw is None else str(raw)
                try:
                    parsed = json.loads(text) if text.strip() else {}
                except json.JSONDecodeError as e:
                    raise NodeError(f"JSON Parse Error: {e}", node.id) from e
            ensure_valid(parsed, params.output_schema, node.id)
            output.extend(_items_from_value(parsed, _paired(item, index)))
        return NodeOutput(output)

    async def _execute_code(
        self, node: Node, items: list[ExecutionItem], run: RunContext
    ) -> NodeOutput:
        script = node.params.script
        output: list[ExecutionItem] = []
        for index, item in enumerate(items):
            result = await self.services.sandbox.run(script, item.payload)
            if not result.ok:
                raise SandboxError(
                    result.error or "Script failed", node.id, timed_out=result.timed_out
                )
            if result.logs:
                logger.info(f"Node {node.id} script output:\n{result.logs.rstrip()}")
            output.extend(_items_from_value(result.output, _paired(item, index)))
        return NodeOutput(output)

    # ========== Control flow ==========

    async def _execute_filter(
        self, node: Node, items: list[ExecutionItem], run: RunContext
    ) -> NodeOutput:
        params = node.params
        ctx = self._first_context(run, items)
        prop = expressions.resolve(params.property, ctx)
        compare = expressions.resolve(params.compare_value, ctx)

        payload = items[0].payload if items else {}
        found, actual = expressions.lookup_path(payload, str(prop)) if prop else (False, None)

        op = params.operator
        if op == "equal":
            passed = loose_equal(actual, compare)
        elif op == "notEqual":
            passed = not loose_equal(actual, compare)
        elif op == "contains":
            if isinstance(actual, list):
                passed = any(loose_equal(v, compare) for v in actual)
            elif actual is None or compare is None:
                passed = False
            else:
                passed = str(compare) in str(actual)
        elif op == "exists":
            passed = found
        elif op == "notExists":
            passed = not found
        else:
            left, right = _to_number(actual), _to_number(compare)
            if left is None or right is None:
                passed = False
            elif op == "greaterThan":
                passed = left > right
            else:
                passed = left < right

        return NodeOutput(list(items), "true" if passed else "false")

    async def _execute_switch(
        self, node: Node, items: list[ExecutionItem], run: RunContext
    ) -> NodeOutput:
        ctx = self._first_context(run, items)
        value = expressions.resolve(node.params.value, ctx)
        for index, rule in enumerate(node.params.rules, start=1):
            if strict_equal(value, expressions.resolve(rule, ctx)):
                return NodeOutput(list(items), f"case_{index}")
        return NodeOutput(list(items), DEFAULT_BRANCH)

    async def _execute_wait(
        self, node: Node, items: list[ExecutionItem], run: RunContext
    ) -> NodeOutput:
        amount = _to_number(expressions.resolve(node.params.amount, self._first_context(run, items)))
        if not amount or amount < 0:
            amount = 1.0
        seconds = amount * _WAIT_UNITS[node.params.unit]
        await asyncio.sleep(seconds)
        if run.cancelled:
            logger.info(f"Node {node.id} woke after run {run.run_id} was cancelled")
        return NodeOutput(list(items))

    def _transform(
        self, items: list[ExecutionItem], field_path: str | None, fn
    ) -> list[ExecutionItem]:
        """Apply fn to the batch, or to the list at field_path of every item."""
        if not field_path:
            return fn(list(items))
        output = []
        for item in items:
            found, value = expressions.lookup_path(item.payload, field_path)
            if not found or not isinstance(value, list):
                output.append(item)
                continue
            payload = copy.deepcopy(item.payload)
            _set_path(payload, field_path, fn(list(value)))
            output.append(item.model_copy(update={"payload": payload}))
        return output

    async def _execute_limit(
        self, node: Node, items: list[ExecutionItem], run: RunContext
    ) -> NodeOutput:
        params = node.params
        max_items = _to_int(expressions.resolve(params.max_items, self._first_context(run, items)), 1)
        max_items = max(max_items, 0)

        def limit(values: list) -> list:
            if params.keep == "last":
                return values[-max_items:] if max_items else []
            return values[:max_items]

        return NodeOutput(self._transform(items, params.field, limit))

    async def _execute_sort(
        self, node: Node, items: list[ExecutionItem], run: RunContext
    ) -> NodeOutput:
        params = node.params
        key = expressions.resolve(params.key, self._first_context(run, items))
        key = str(key) if key else ""

        def lookup(value: Any) -> tuple[bool, Any]:
            data = value.payload if isinstance(value, ExecutionItem) else value
            if not key:
                return True, data
            return expressions.lookup_path(data, key)

        def sort(values: list) -> list:
            present, missing = [], []
            for value in values:
                found, sort_value = lookup(value)
                if found and sort_value is not None:
                    present.append((sort_value, value))
                else:
                    missing.append(value)
            present.sort(key=lambda pair: _sort_key(pair[0]), reverse=params.order == "desc")
            return [value for _, value in present] + missing

        return NodeOutput(self._transform(items, params.field, sort))

    async def _execute_split_batches(
        self, node: Node, items: list[ExecutionItem], run: RunContext
    ) -> NodeOutput:
        params = node.params
        ctx = self._first_context(run, items)
        size = max(_to_int(expressions.resolve(params.batch_size, ctx), 10), 1)
        index = max(_to_int(expressions.resolve(params.batch_index, ctx), 0), 0)

        def split(values: list) -> list:
            return values[index * size : (index + 1) * size]

        return NodeOutput(self._transform(items, params.field, split))

    # ========== Integrations ==========

    async def _execute_http_request(
        self, node: Node, items: list[ExecutionItem], run: RunContext
    ) -> NodeOutput:
        params = node.params
        ctx = self._first_context(run, items)
        url = expressions.resolve(params.url, ctx)
        if not url:
            raise NodeError("URL is required", node.id)
        url = str(url)
        method = str(expressions.resolve(params.method, ctx) or "GET").upper()
        headers = {
            str(k): str(v) for k, v in expressions.resolve_params(params.headers, ctx).items()
        }
        query = expressions.resolve_params(params.query, ctx)
        body = expressions.resolve_params(params.body, ctx)

        credential = self._credential(params.credential_id, node)
        if credential is not None:
            token = credential.bearer_token()
            if token and not any(k.lower() == "authorization" for k in headers):
                headers["Authorization"] = f"Bearer {token}"

        request_kwargs: dict[str, Any] = {"headers": headers, "params": query or None}
        if isinstance(body, (dict, list)):
            request_kwargs["json"] = body
        elif body is not None:
            request_kwargs["content"] = str(body)

        try:
            if self.services.http_client is not None:
                response = await self.services.http_client.request(method, url, **request_kwargs)
            else:
                async with httpx.AsyncClient(timeout=self.services.http_timeout) as client:
                    response = await client.request(method, url, **request_kwargs)
        except httpx.TimeoutException as e:
            raise IntegrationError(f"HTTP request to {url} timed out", node.id) from e
        except httpx.HTTPError as e:
            raise IntegrationError(f"HTTP request to {url} failed: {e}", node.id) from e

        if not response.is_success:
            raise NodeError(
                f"HTTP {response.status_code} from {url}: {response.text[:200]}", node.id
            )
        return NodeOutput(self._wrap_response(response, url))

    def _wrap_response(self, response: httpx.Response, url: str) -> list[ExecutionItem]:
        content_type = response.headers.get("content-type", "").split(";")[0].strip().lower()
        if "json" in content_type or (not content_type and response.content[:1] in (b"{", b"[")):
            try:
                return wrap_items(response.json())
            except ValueError:
                pass
        if (
            not content_type
            or content_type.startswith("text/")
            or "json" in content_type
            or "xml" in content_type
            or "javascript" in content_type
        ):
            return [ExecutionItem(json={"status_code": response.status_code, "body": response.text})]

        file_name = urlparse(url).path.rsplit("/", 1)[-1] or None
        binary = BinaryData(
            data=base64.b64encode(response.content).decode("ascii"),
            mime_type=content_type,
            file_name=file_name,
        )
        return [
            ExecutionItem(
                json={
                    "status_code": response.status_code,
                    "mime_type": content_type,
                    "size": len(response.content),
                },
                binary={"data": binary},
            )
        ]

    async def _execute_ssh(
        self, node: Node, items: list[ExecutionItem], run: RunContext
    ) -> NodeOutput:
        params = node.params
        if self.services.remote_shell is None:
            raise NodeError("No remote shell configured", node.id)

        credential = self._credential(params.credential_id, node)
        secrets = credential.secrets if credential is not None else {}

        output: list[ExecutionItem] = []
        for index, item in enumerate(items):
            ctx = self._context(run, item)
            host = expressions.resolve(params.host, ctx)
            command = expressions.resolve(params.command, ctx)
            if not host or not command:
                raise NodeError("SSH host and command are required", node.id)
            port = _to_int(expressions.resolve(params.port, ctx), 22)
            username = expressions.resolve(params.username, ctx) or secrets.get("username")

            result = await self.services.remote_shell.run(
                str(host),
                str(command),
                port=port,
                username=username,
                private_key=secrets.get("private_key"),
            )
            if result.exit_code != 0 and params.fail_on_error:
                raise IntegrationError(
                    f"Command exited with code {result.exit_code}: {result.stderr.strip()[:200]}",
                    node.id,
                )
            output.append(
                ExecutionItem(
                    json={
                        "host": host,
                        "command": command,
                        "stdout": result.stdout,
                        "stderr": result.stderr,
                        "exit_code": result.exit_code,
                    },
                    paired_item=_paired(item, index),
                )
            )
        return NodeOutput(output)

    def _build_prompt(self, node: Node, item: ExecutionItem, ctx: dict[str, Any]) -> str:
        params = node.params
        if node.type == NodeType.SUMMARIZATION_CHAIN:
            text = expressions.resolve(params.text, ctx) if params.text else None
            if text is None or text == "":
                text = json.dumps(item.payload, default=str)
            limit = f" in at most {params.max_words} words" if params.max_words else ""
            return f"Summarize the following text{limit}:\n\n{text}"

        if node.type == NodeType.QA_CHAIN:
            query = expressions.resolve(params.query, ctx)
            if not query:
                raise NodeError("Query is required", node.id)
            context = expressions.resolve_params(params.context, ctx)
            if not isinstance(context, str):
                context = json.dumps(context, default=str)
            return (
                "Answer the question using only the context below.\n\n"
                f"Context:\n{context}\n\nQuestion: {query}"
            )

        prompt = expressions.resolve(params.prompt, ctx)
        if not prompt:
            raise NodeError("Prompt is required", node.id)
        return str(prompt)

    def _image_uri(self, node: Node, item: ExecutionItem, ctx: dict[str, Any]) -> str:
        params = node.params
        if params.image_url:
            url = expressions.resolve(params.image_url, ctx)
            if url:
                return str(url)
        binary = (item.binary or {}).get(params.image_property)
        if binary is None:
            raise NodeError(f"No image found in binary property '{params.image_property}'", node.id)
        return f"data:{binary.mime_type};base64,{binary.data}"

    async def _execute_model_call(
        self, node: Node, items: list[ExecutionItem], run: RunContext
    ) -> NodeOutput:
        params = node.params
        provider = self.services.model_provider
        if provider is None:
            raise NodeError("No model provider configured", node.id)

        credential = self._credential(params.credential_id, node)
        api_key = credential.bearer_token() if credential is not None else None

        output: list[ExecutionItem] = []
        for index, item in enumerate(items):
            ctx = self._context(run, item)
            session_id = expressions.resolve(params.session_id, ctx) if params.session_id else None
            history = []
            if session_id and params.use_memory:
                history = [
                    ChatMessage(role=m.role, content=m.content)
                    for m in self.services.memory.get(str(session_id))
                ]

            request = ModelRequest(
                prompt=self._build_prompt(node, item, ctx),
                model=params.model,
                system_prompt=expressions.resolve(params.system_prompt, ctx),
                history=history,
                temperature=params.temperature,
                image_data_uri=(
                    self._image_uri(node, item, ctx) if node.type == NodeType.LLM_VISION else None
                ),
                api_key=api_key,
            )
            response = await provider.generate(request)

            payload: dict[str, Any] = {"text": response.text, "model": response.model}
            if session_id:
                payload["session_id"] = session_id
            output.append(ExecutionItem(json=payload, paired_item=_paired(item, index)))
        return NodeOutput(output)

    async def _execute_memory(
        self, node: Node, items: list[ExecutionItem], run: RunContext
    ) -> NodeOutput:
        params = node.params
        durable = node.type == NodeType.DURABLE_MEMORY
        output: list[ExecutionItem] = []
        for index, item in enumerate(items):
            ctx = self._context(run, item)
            session_id = str(expressions.resolve(params.session_id, ctx) or "default")
            text = expressions.resolve(params.text, ctx) if params.text is not None else None
            if text is None:
                text = json.dumps(item.payload, default=str)
            elif not isinstance(text, str):
                text = json.dumps(text, default=str)

            buffer = self.services.memory.append(
                session_id,
                params.role,
                text,
                window_size=params.window_size,
                durable=durable,
            )
            output.append(
                ExecutionItem(
                    json={"session_id": session_id, "size": len(buffer), "stored": True},
                    paired_item=_paired(item, index),
                )
            )
        return NodeOutput(output)


_unhandled = set(NodeType) - set(_HANDLER_NAMES)
if _unhandled:
    raise RuntimeError(f"No dispatcher handler for node types: {sorted(t.value for t in _unhandled)}")
