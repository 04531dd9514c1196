"""Tests for NodeDispatcher - one handler per node kind.

Tests cover:
- Triggers and pass-through nodes
- Transform nodes (set, json-parser, code) including output schemas
- Control flow (filter, switch, wait, limit, sort, split-batches)
- Integrations (http-request over httpx.MockTransport, ssh and model calls
  over fakes) and memory nodes
"""

from __future__ import annotations

import json

import httpx
import pytest

from conftest import make_node, run
from flowforge.core.dispatcher import NodeDispatcher, loose_equal, strict_equal
from flowforge.core.errors import IntegrationError, NodeError, SandboxError, ValidationError
from flowforge.core.memory import MemoryStore
from flowforge.core.models import BinaryData, ExecutionItem


def items_of(*payloads):
    return [ExecutionItem(json=p) for p in payloads]


def payloads(output):
    return [item.payload for item in output.items]


def execute(dispatcher, node, items, ctx):
    return run(dispatcher.execute(node, items, ctx))


def execute_http(dispatcher, node, items, ctx, handler):
    """Execute node with an httpx client whose transport is handler."""

    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            dispatcher.services.http_client = client
            return await dispatcher.execute(node, items, ctx)

    return run(scenario())


class TestEquality:
    def test_loose_equal_coerces_numeric_strings(self):
        assert loose_equal("5", 5)
        assert loose_equal(5.0, "5")
        assert not loose_equal("abc", 5)

    def test_strict_equal(self):
        assert strict_equal(1, 1.0)
        assert not strict_equal(1, "1")
        assert not strict_equal(1, True)


class TestTriggers:
    def test_webhook_stamps_metadata(self, dispatcher, run_context):
        node = make_node("hook", "webhook", path="/orders", method="POST")
        output = execute(dispatcher, node, [], run_context)
        assert payloads(output) == [
            {"trigger": "manual", "webhook": {"path": "/orders", "method": "POST"}}
        ]

    def test_cron_keeps_incoming_payload(self, dispatcher, run_context):
        node = make_node("tick", "cron", schedule="*/5 * * * *")
        output = execute(dispatcher, node, items_of({"trigger": "manual"}), run_context)
        payload = payloads(output)[0]
        assert payload["trigger"] == "manual"
        assert payload["cron"]["schedule"] == "*/5 * * * *"
        assert "timestamp" in payload["cron"]

    def test_merge_passes_items_through(self, dispatcher, run_context):
        output = execute(dispatcher, make_node("m", "merge"), items_of({"a": 1}), run_context)
        assert payloads(output) == [{"a": 1}]
        assert output.branch == "default"


class TestSetNode:
    def test_payload_replacement(self, dispatcher, run_context):
        node = make_node("set", "set", payload={"status": "ok"})
        output = execute(dispatcher, node, items_of({"trigger": "manual"}), run_context)
        assert [i.as_dict() for i in output.items] == [{"json": {"status": "ok"}, "paired_item": 0}]

    def test_key_value_assignment_with_template(self, dispatcher, run_context):
        node = make_node("set", "set", key="greeting", value="Hello {{ $json.name }}")
        original = items_of({"name": "Ada"})
        output = execute(dispatcher, node, original, run_context)
        assert payloads(output) == [{"name": "Ada", "greeting": "Hello Ada"}]
        assert original[0].payload == {"name": "Ada"}

    def test_payload_given_as_json_template(self, dispatcher, run_context):
        node = make_node("set", "set", payload='{"a": {{ $json.n }}}')
        output = execute(dispatcher, node, items_of({"n": 1}), run_context)
        assert payloads(output) == [{"a": 1}]

    def test_payload_list_produces_multiple_items(self, dispatcher, run_context):
        node = make_node("set", "set", payload=[{"i": 1}, {"i": 2}])
        output = execute(dispatcher, node, items_of({}), run_context)
        assert payloads(output) == [{"i": 1}, {"i": 2}]

    def test_invalid_json_payload(self, dispatcher, run_context):
        node = make_node("set", "set", payload="{broken")
        with pytest.raises(NodeError, match="Invalid JSON payload"):
            execute(dispatcher, node, items_of({}), run_context)

    def test_output_schema_violation_names_field(self, dispatcher, run_context):
        node = make_node(
            "set", "set", payload={"name": "x"}, output_schema={"type": "object", "required": ["id"]}
        )
        with pytest.raises(ValidationError) as exc_info:
            execute(dispatcher, node, items_of({}), run_context)
        assert "'id'" in str(exc_info.value)
        assert exc_info.value.node_id == "set"


class TestJsonParser:
    def test_parses_string_from_payload(self, dispatcher, run_context):
        node = make_node("p", "json-parser", json_string="{{ $json.raw }}")
        output = execute(dispatcher, node, items_of({"raw": '{"x": [1, 2]}'}), run_context)
        assert payloads(output) == [{"x": [1, 2]}]

    def test_array_becomes_items(self, dispatcher, run_context):
        node = make_node("p", "json-parser", json_string="[1, 2]")
        output = execute(dispatcher, node, items_of({}), run_context)
        assert payloads(output) == [{"value": 1}, {"value": 2}]

    def test_parse_error(self, dispatcher, run_context):
        node = make_node("p", "json-parser", json_string="{nope")
        with pytest.raises(NodeError, match="JSON Parse Error"):
            execute(dispatcher, node, items_of({}), run_context)

    def test_schema_checked(self, dispatcher, run_context):
        node = make_node(
            "p",
            "json-parser",
            json_string='{"id": "7"}',
            output_schema={"properties": {"id": {"type": "integer"}}},
        )
        with pytest.raises(ValidationError, match="Path 'id' expected integer, got string"):
            execute(dispatcher, node, items_of({}), run_context)


class TestCodeNode:
    def test_runs_script_per_item(self, dispatcher, run_context):
        node = make_node("code", "code", script='result = {"n": $json.n + 1}')
        output = execute(dispatcher, node, items_of({"n": 1}, {"n": 10}), run_context)
        assert payloads(output) == [{"n": 2}, {"n": 11}]

    def test_script_error_raises_sandbox_error(self, dispatcher, run_context):
        node = make_node("code", "code", script="result = 1 / 0")
        with pytest.raises(SandboxError, match="ZeroDivisionError") as exc_info:
            execute(dispatcher, node, items_of({}), run_context)
        assert not exc_info.value.timed_out


class TestFilter:
    @pytest.mark.parametrize(
        "operator,compare,expected",
        [
            ("equal", "5", "true"),
            ("notEqual", "5", "false"),
            ("greaterThan", 3, "true"),
            ("lessThan", 3, "false"),
            ("exists", None, "true"),
            ("notExists", None, "false"),
        ],
    )
    def test_operators(self, dispatcher, run_context, operator, compare, expected):
        node = make_node(
            "f", "filter", property="order.total", operator=operator, compare_value=compare
        )
        output = execute(dispatcher, node, items_of({"order": {"total": 5}}), run_context)
        assert output.branch == expected
        assert payloads(output) == [{"order": {"total": 5}}]

    def test_contains(self, dispatcher, run_context):
        node = make_node("f", "filter", property="tags", operator="contains", compare_value="vip")
        assert execute(dispatcher, node, items_of({"tags": ["new", "vip"]}), run_context).branch == "true"
        node = make_node("f", "filter", property="name", operator="contains", compare_value="da")
        assert execute(dispatcher, node, items_of({"name": "Ada"}), run_context).branch == "true"

    def test_non_numeric_comparison_is_false(self, dispatcher, run_context):
        node = make_node("f", "filter", property="a", operator="greaterThan", compare_value=1)
        assert execute(dispatcher, node, items_of({"a": "abc"}), run_context).branch == "false"


class TestSwitch:
    def test_first_matching_rule(self, dispatcher, run_context):
        node = make_node("s", "switch", value="{{ $json.kind }}", rules=["a", "b", "b"])
        output = execute(dispatcher, node, items_of({"kind": "b"}), run_context)
        assert output.branch == "case_2"

    def test_no_match_goes_to_default(self, dispatcher, run_context):
        node = make_node("s", "switch", value="{{ $json.n }}", rules=["1"])
        assert execute(dispatcher, node, items_of({"n": 1}), run_context).branch == "default"


class TestBatchTransforms:
    def test_wait_passes_through(self, dispatcher, run_context):
        node = make_node("w", "wait", amount=1, unit="milliseconds")
        assert payloads(execute(dispatcher, node, items_of({"a": 1}), run_context)) == [{"a": 1}]

    def test_limit_keeps_last(self, dispatcher, run_context):
        node = make_node("l", "limit", max_items=2, keep="last")
        output = execute(dispatcher, node, items_of({"i": 1}, {"i": 2}, {"i": 3}), run_context)
        assert payloads(output) == [{"i": 2}, {"i": 3}]

    def test_limit_on_field(self, dispatcher, run_context):
        node = make_node("l", "limit", max_items=1, field="rows")
        output = execute(dispatcher, node, items_of({"rows": [1, 2, 3]}), run_context)
        assert payloads(output) == [{"rows": [1]}]

    def test_sort_descending_with_missing_keys_last(self, dispatcher, run_context):
        node = make_node("s", "sort", key="n", order="desc")
        output = execute(
            dispatcher, node, items_of({"n": 1}, {"x": 0}, {"n": 3}, {"n": 2}), run_context
        )
        assert payloads(output) == [{"n": 3}, {"n": 2}, {"n": 1}, {"x": 0}]

    def test_sort_is_stable(self, dispatcher, run_context):
        node = make_node("s", "sort", key="n")
        output = execute(
            dispatcher, node, items_of({"n": 1, "id": "a"}, {"n": 0}, {"n": 1, "id": "b"}), run_context
        )
        assert [p.get("id") for p in payloads(output)] == [None, "a", "b"]

    def test_sort_on_field(self, dispatcher, run_context):
        node = make_node("s", "sort", key="", field="values")
        output = execute(dispatcher, node, items_of({"values": [3, 1, 2]}), run_context)
        assert payloads(output) == [{"values": [1, 2, 3]}]

    def test_split_batches(self, dispatcher, run_context):
        node = make_node("b", "split-batches", batch_size=2, batch_index=1)
        output = execute(dispatcher, node, items_of(*({"i": i} for i in range(5))), run_context)
        assert payloads(output) == [{"i": 2}, {"i": 3}]


class TestHttpRequest:
    def test_json_response_becomes_items(self, dispatcher, run_context, store):
        credential = store.add_credential("api", "api-key", {"api_key": "secret"})
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers.get("authorization")
            seen["q"] = request.url.params.get("q")
            seen["method"] = request.method
            return httpx.Response(200, json=[{"id": 1}, {"id": 2}])

        node = make_node(
            "http",
            "http-request",
            url="https://api.example.com/search",
            query={"q": "{{ $json.term }}"},
            credential_id=credential.id,
        )
        output = execute_http(dispatcher, node, items_of({"term": "ada"}), run_context, handler)
        assert payloads(output) == [{"id": 1}, {"id": 2}]
        assert seen == {"auth": "Bearer secret", "q": "ada", "method": "GET"}

    def test_post_sends_json_body(self, dispatcher, run_context):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"created": True})

        node = make_node(
            "http",
            "http-request",
            url="https://api.example.com/items",
            method="post",
            body={"name": "{{ $json.name }}"},
        )
        output = execute_http(dispatcher, node, items_of({"name": "Ada"}), run_context, handler)
        assert seen["body"] == {"name": "Ada"}
        assert payloads(output) == [{"created": True}]

    def test_text_response(self, dispatcher, run_context):
        node = make_node("http", "http-request", url="https://example.com/")
        output = execute_http(
            dispatcher, node, items_of({}), run_context, lambda r: httpx.Response(200, text="hello")
        )
        assert payloads(output) == [{"status_code": 200, "body": "hello"}]

    def test_binary_response(self, dispatcher, run_context):
        node = make_node("http", "http-request", url="https://example.com/logo.png")
        output = execute_http(
            dispatcher,
            node,
            items_of({}),
            run_context,
            lambda r: httpx.Response(200, content=b"\x89PNG", headers={"content-type": "image/png"}),
        )
        item = output.items[0]
        assert item.payload["mime_type"] == "image/png"
        assert item.binary["data"].file_name == "logo.png"

    def test_error_status_fails_node(self, dispatcher, run_context):
        node = make_node("http", "http-request", url="https://example.com/missing")
        with pytest.raises(NodeError, match="HTTP 404"):
            execute_http(
                dispatcher, node, items_of({}), run_context, lambda r: httpx.Response(404, text="nope")
            )

    def test_transport_error_is_integration_error(self, dispatcher, run_context):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        node = make_node("http", "http-request", url="https://example.com/")
        with pytest.raises(IntegrationError, match="failed"):
            execute_http(dispatcher, node, items_of({}), run_context, handler)

    def test_url_required(self, dispatcher, run_context):
        node = make_node("http", "http-request", url="{{ $json.missing }}")
        with pytest.raises(NodeError, match="URL is required"):
            execute(dispatcher, node, items_of({}), run_context)


class TestSsh:
    def test_runs_command_with_credential(self, dispatcher, run_context, store, remote_shell):
        credential = store.add_credential(
            "box", "ssh", {"username": "deploy", "private_key": "KEY"}
        )
        node = make_node(
            "ssh", "ssh", host="{{ $json.host }}", command="uptime", credential_id=credential.id
        )
        output = execute(dispatcher, node, items_of({"host": "10.0.0.1"}), run_context)
        assert payloads(output)[0]["stdout"] == "ok\n"
        assert payloads(output)[0]["exit_code"] == 0
        assert remote_shell.calls == [
            {
                "host": "10.0.0.1",
                "command": "uptime",
                "port": 22,
                "username": "deploy",
                "private_key": "KEY",
            }
        ]

    def test_fail_on_error(self, dispatcher, run_context, remote_shell):
        remote_shell.result = remote_shell.result.model_copy(update={"exit_code": 2, "stderr": "denied"})
        node = make_node("ssh", "ssh", host="h", command="ls", fail_on_error=True)
        with pytest.raises(IntegrationError, match="exited with code 2"):
            execute(dispatcher, node, items_of({}), run_context)

    def test_host_required(self, dispatcher, run_context):
        node = make_node("ssh", "ssh", host="", command="ls")
        with pytest.raises(NodeError, match="required"):
            execute(dispatcher, node, items_of({}), run_context)


class TestModelCalls:
    def test_chat_prompt_is_resolved(self, dispatcher, run_context, model_provider):
        node = make_node(
            "chat", "llm-chat", prompt="Hi {{ $json.name }}", system_prompt="Be brief", model="m1"
        )
        output = execute(dispatcher, node, items_of({"name": "Ada"}), run_context)
        assert payloads(output) == [{"text": "echo: Hi Ada", "model": "m1"}]
        request = model_provider.requests[0]
        assert request.system_prompt == "Be brief"
        assert request.image_data_uri is None

    def test_chat_uses_memory_history(self, dispatcher, run_context, model_provider, services):
        services.memory.append("s1", "user", "earlier question")
        node = make_node("chat", "llm-chat", prompt="next", session_id="s1", use_memory=True)
        output = execute(dispatcher, node, items_of({}), run_context)
        assert payloads(output)[0]["session_id"] == "s1"
        assert [m.content for m in model_provider.requests[0].history] == ["earlier question"]

    def test_prompt_required(self, dispatcher, run_context):
        node = make_node("chat", "llm-chat", prompt="")
        with pytest.raises(NodeError, match="Prompt is required"):
            execute(dispatcher, node, items_of({}), run_context)

    def test_vision_reads_binary_image(self, dispatcher, run_context, model_provider):
        node = make_node("see", "llm-vision")
        item = ExecutionItem(json={}, binary={"data": BinaryData(data="aGk=", mime_type="image/png")})
        execute(dispatcher, node, [item], run_context)
        assert model_provider.requests[0].image_data_uri == "data:image/png;base64,aGk="

    def test_vision_without_image(self, dispatcher, run_context):
        node = make_node("see", "llm-vision")
        with pytest.raises(NodeError, match="No image found"):
            execute(dispatcher, node, items_of({}), run_context)

    def test_summarization_prompt(self, dispatcher, run_context, model_provider):
        node = make_node("sum", "summarization-chain", text="{{ $json.article }}", max_words=20)
        execute(dispatcher, node, items_of({"article": "Long text"}), run_context)
        prompt = model_provider.requests[0].prompt
        assert prompt.startswith("Summarize the following text in at most 20 words")
        assert prompt.endswith("Long text")

    def test_qa_chain_requires_query(self, dispatcher, run_context):
        node = make_node("qa", "qa-chain", query="")
        with pytest.raises(NodeError, match="Query is required"):
            execute(dispatcher, node, items_of({}), run_context)

    def test_qa_chain_prompt_includes_context(self, dispatcher, run_context, model_provider):
        node = make_node("qa", "qa-chain", query="Who?", context="{{ $json.doc }}")
        execute(dispatcher, node, items_of({"doc": "Ada wrote it"}), run_context)
        prompt = model_provider.requests[0].prompt
        assert "Context:\nAda wrote it" in prompt
        assert prompt.endswith("Question: Who?")


class TestMemoryNodes:
    def test_window_is_trimmed(self, dispatcher, run_context):
        node = make_node("mem", "window-buffer-memory", session_id="s", text="{{ $json.msg }}", window_size=2)
        for msg in ("one", "two", "three"):
            output = execute(dispatcher, node, items_of({"msg": msg}), run_context)
        assert payloads(output) == [{"session_id": "s", "size": 2, "stored": True}]
        assert [m.content for m in dispatcher.services.memory.get("s")] == ["two", "three"]

    def test_durable_memory_is_persisted(self, dispatcher, run_context, test_db):
        node = make_node("mem", "durable-memory", session_id="chat-1")
        execute(dispatcher, node, items_of({"q": "hello"}), run_context)
        restored = MemoryStore(test_db).get("chat-1")
        assert [json.loads(m.content) for m in restored] == [{"q": "hello"}]


def test_every_node_type_has_a_handler(services):
    from flowforge.core.graph_schema import NodeType

    dispatcher = NodeDispatcher(services)
    assert set(dispatcher._handlers) == set(NodeType)
