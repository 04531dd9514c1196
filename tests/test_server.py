"""Tests for the Studio HTTP/WebSocket surface using FastAPI's TestClient."""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor

import pytest
from fastapi.testclient import TestClient

from flowforge.studio.server import app, set_engine

IMPORTED = {
    "id": "wf_api",
    "name": "API Demo",
    "nodes": [
        {"id": "t", "params": {"type": "webhook"}},
        {"id": "set", "params": {"type": "set", "payload": {"status": "ok"}}},
    ],
    "edges": [{"source": "t", "target": "set"}],
}


@pytest.fixture
def client(engine):
    set_engine(engine)
    with TestClient(app) as test_client:
        yield test_client


def poll(client, path, predicate, attempts: int = 200):
    for _ in range(attempts):
        body = client.get(path).json()
        if predicate(body):
            return body
        time.sleep(0.02)
    raise AssertionError(f"{path} never satisfied the condition")


class TestWorkflowEditing:
    def test_build_and_run_workflow(self, client):
        wf = client.post("/api/workflows", json={"name": "Demo"}).json()
        trigger = client.post(f"/api/workflows/{wf['id']}/nodes", json={"type": "webhook"}).json()
        setter = client.post(
            f"/api/workflows/{wf['id']}/nodes",
            json={"type": "set", "label": "Set", "params": {"payload": {"a": 1}}},
        ).json()
        edge = client.post(
            f"/api/workflows/{wf['id']}/edges",
            json={"source": trigger["id"], "target": setter["id"]},
        )
        assert edge.status_code == 201

        response = client.patch(
            f"/api/workflows/{wf['id']}/nodes/{setter['id']}/params",
            json={"params": {"payload": {"a": 2}}},
        )
        assert response.json()["params"]["payload"] == {"a": 2}

        loaded = client.get(f"/api/workflows/{wf['id']}").json()
        assert len(loaded["nodes"]) == 2
        assert len(loaded["edges"]) == 1

        record = client.post(f"/api/workflows/{wf['id']}/run", params={"wait": True}).json()
        assert record["status"] == "success"
        assert record["data_snapshot"][setter["id"]][0][0]["json"] == {"a": 2}

        status = client.get(f"/api/workflows/{wf['id']}/status").json()
        assert {s["status"] for s in status} == {"success"}

        executions = client.get("/api/executions").json()
        assert [r["id"] for r in executions] == [record["id"]]

    def test_import_duplicate_toggle_delete(self, client):
        assert client.post("/api/workflows/import", json=IMPORTED).status_code == 201
        copy = client.post("/api/workflows/wf_api/duplicate").json()
        assert copy["name"] == "API Demo (Copy)"
        assert client.post("/api/workflows/wf_api/toggle-active").json() == {"active": True}
        assert len(client.get("/api/workflows").json()) == 2
        assert client.delete(f"/api/workflows/{copy['id']}").status_code == 200
        assert client.get(f"/api/workflows/{copy['id']}").status_code == 404

    def test_import_rejects_cycles(self, client):
        cyclic = dict(IMPORTED, edges=IMPORTED["edges"] + [{"source": "set", "target": "set"}])
        response = client.post("/api/workflows/import", json=cyclic)
        assert response.status_code == 422
        assert any("Cycle detected" in e for e in response.json()["errors"])

    def test_clone_template_and_delete_node(self, client):
        client.post("/api/workflows/import", json=IMPORTED)
        clone = client.post("/api/workflows/wf_api/nodes/set/clone")
        assert clone.status_code == 201
        template = client.post("/api/workflows/wf_api/nodes/set/template", json={"label": "Ok"})
        assert template.json()["label"] == "Ok"
        assert client.delete("/api/workflows/wf_api/nodes/set").status_code == 200
        wf = client.get("/api/workflows/wf_api").json()
        assert [n["id"] for n in wf["nodes"]] == ["t", clone.json()["id"]]
        assert wf["edges"] == []

    def test_add_node_from_template(self, client):
        client.post("/api/workflows/import", json=IMPORTED)
        template = client.post(
            "/api/workflows/wf_api/nodes/set/template", json={"label": "Ok"}
        ).json()
        response = client.post(
            f"/api/workflows/wf_api/nodes/from-template/{template['id']}",
            json={"position": {"x": 10, "y": 20}},
        )
        assert response.status_code == 201
        node = response.json()
        assert node["label"] == "Ok"
        assert node["params"]["payload"] == {"status": "ok"}
        assert node["position"] == {"x": 10, "y": 20}
        assert len(client.get("/api/workflows/wf_api").json()["nodes"]) == 3

        missing = client.post("/api/workflows/wf_api/nodes/from-template/tpl_missing")
        assert missing.status_code == 404

    def test_disconnect(self, client):
        client.post("/api/workflows/import", json=IMPORTED)
        edge_id = client.get("/api/workflows/wf_api").json()["edges"][0]["id"]
        assert client.delete(f"/api/workflows/wf_api/edges/{edge_id}").status_code == 200
        assert client.delete(f"/api/workflows/wf_api/edges/{edge_id}").status_code == 404


class TestErrorMapping:
    def test_unknown_workflow_is_404(self, client):
        response = client.get("/api/workflows/wf_nope")
        assert response.status_code == 404
        assert "wf_nope" in response.json()["detail"]

    def test_invalid_params_are_422(self, client):
        wf = client.post("/api/workflows", json={"name": "Demo"}).json()
        response = client.post(
            f"/api/workflows/{wf['id']}/nodes",
            json={"type": "filter", "params": {"operator": "between"}},
        )
        assert response.status_code == 422

    def test_bad_edge_handle_is_422(self, client):
        client.post("/api/workflows/import", json=IMPORTED)
        response = client.post(
            "/api/workflows/wf_api/edges",
            json={"source": "t", "target": "set", "source_handle": "true"},
        )
        assert response.status_code == 422

    def test_invalid_graph_run_is_422(self, client):
        wf = client.post("/api/workflows", json={"name": "Empty loop"}).json()
        a = client.post(f"/api/workflows/{wf['id']}/nodes", json={"type": "merge"}).json()
        client.post(f"/api/workflows/{wf['id']}/edges", json={"source": a["id"], "target": a["id"]})
        response = client.post(f"/api/workflows/{wf['id']}/run")
        assert response.status_code == 422


class TestCredentials:
    def test_secrets_are_never_returned(self, client):
        created = client.post(
            "/api/credentials", json={"name": "api", "type": "api-key", "secrets": {"api_key": "s"}}
        ).json()
        assert "secrets" not in created
        listed = client.get("/api/credentials").json()
        assert listed == [created]
        assert client.delete(f"/api/credentials/{created['id']}").status_code == 200
        assert client.get("/api/credentials").json() == []


class TestExecutionControl:
    def test_single_node_run(self, client):
        client.post("/api/workflows/import", json=IMPORTED)
        body = client.post("/api/workflows/wf_api/nodes/set/run").json()
        assert body["status"] == "success"
        assert body["items"] == [{"json": {"status": "ok"}, "paired_item": 0}]
        assert client.get("/api/executions").json() == []

    def test_aborted_single_node_run_is_not_a_conflict(self, client):
        client.post("/api/workflows/import", json=IMPORTED)
        client.post("/api/debug/toggle")
        with ThreadPoolExecutor(max_workers=1) as pool:
            pending = pool.submit(client.post, "/api/workflows/wf_api/nodes/set/run")
            poll(client, "/api/debug", lambda s: s["paused_node_id"] == "set")
            assert client.post("/api/workflows/wf_api/nodes/t/run").status_code == 409
            assert client.post("/api/executions/abort").json() == {"aborted": True}
            response = pending.result(timeout=5)

        assert response.status_code == 200
        body = response.json()
        assert body["aborted"] is True
        assert body["status"] == "idle"
        assert body["items"] == []

    def test_background_run_failure_is_logged(self, client, engine, mocker, caplog):
        client.post("/api/workflows/import", json=IMPORTED)
        mocker.patch.object(engine, "run_workflow", side_effect=RuntimeError("disk full"))

        with caplog.at_level(logging.ERROR, logger="flowforge.studio.server"):
            assert client.post("/api/workflows/wf_api/run").json()["status"] == "started"
            for _ in range(200):
                if any("disk full" in r.getMessage() for r in caplog.records):
                    break
                time.sleep(0.02)
        assert any("Background run failed: disk full" in r.getMessage() for r in caplog.records)

    def test_background_run_with_debug_stepping(self, client):
        client.post("/api/workflows/import", json=IMPORTED)
        assert client.post("/api/debug/toggle").json() == {"debug_mode": True}

        started = client.post("/api/workflows/wf_api/run").json()
        assert started["status"] == "started"

        poll(client, "/api/debug", lambda s: s["paused_node_id"] == "t")
        assert client.post("/api/workflows/wf_api/run", params={"wait": True}).status_code == 409
        assert client.post("/api/debug/step").json() == {"released": "t"}
        poll(client, "/api/debug", lambda s: s["paused_node_id"] == "set")
        assert client.post("/api/debug/resume").json() == {"released": 1}

        executions = poll(client, "/api/executions", lambda r: len(r) == 1)
        assert executions[0]["status"] == "success"

    def test_abort_and_clear(self, client):
        client.post("/api/workflows/import", json=IMPORTED)
        client.post("/api/debug/toggle")
        client.post("/api/workflows/wf_api/run")
        poll(client, "/api/debug", lambda s: s["paused_node_id"] is not None)

        assert client.post("/api/executions/abort").json() == {"aborted": True}
        executions = poll(client, "/api/executions", lambda r: len(r) == 1)
        assert executions[0]["status"] == "error"
        assert executions[0]["error"] == "Execution aborted"

        assert client.delete("/api/executions").json() == {"status": "cleared"}
        assert client.get("/api/executions").json() == []


class TestEventStream:
    def test_initial_state_and_ping(self, client):
        with client.websocket_connect("/ws/events") as websocket:
            initial = websocket.receive_json()
            assert initial["type"] == "initial_state"
            assert initial["executing"] is False
            websocket.send_text("ping")
            assert websocket.receive_json() == {"type": "pong"}
