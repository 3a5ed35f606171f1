"""Tests for the HTTP API."""

import json
import time

from nexaflow.models.core import AgentDecision, ToolCall

WAIT = 10


def sse_events(response):
    return [
        json.loads(line[len("data: "):])
        for line in response.text.splitlines()
        if line.startswith("data: ")
    ]


def workflow_body(nodes=None, name="API workflow"):
    return {
        "name": name,
        "nodes": nodes or [
            {"id": "shape", "kind": "transform", "config": {"source": "trigger"}},
            {"id": "log", "kind": "custom", "depends_on": ["shape"], "config": {"inputs": {"k": "v"}}},
        ],
    }


def wait_for_status(client, execution_id, headers):
    deadline = time.monotonic() + WAIT
    while True:
        response = client.get(f"/api/workflows/executions/{execution_id}", headers=headers)
        assert response.status_code == 200
        body = response.json()
        if body["status"] in ("succeeded", "failed", "cancelled"):
            return body
        assert time.monotonic() < deadline, "execution did not finish"
        time.sleep(0.02)


class TestHealthEndpoints:
    """Service health endpoints."""

    def test_root_and_health(self, client):
        assert client.get("/").json()["message"] == "Nexaflow is running"
        assert client.get("/health").json()["status"] == "healthy"

    def test_detailed_health(self, client):
        response = client.get("/health/detailed")
        assert response.status_code == 200
        checks = response.json()["checks"]
        assert set(checks) == {"database", "graph_runner", "tool_registry"}


class TestAgentEndpoint:
    """Server-sent event stream from POST /api/agent."""

    def test_missing_message_is_rejected(self, client):
        response = client.post("/api/agent", json={"projectId": "p1"})
        assert response.status_code == 400

    def test_blank_message_is_rejected(self, client):
        response = client.post("/api/agent", json={"message": "   "})
        assert response.status_code == 400

    def test_streams_final_answer(self, client):
        response = client.post("/api/agent", json={"message": "Hi there", "projectId": "p1"})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        events = sse_events(response)
        assert [e["type"] for e in events] == ["final", "done"]
        assert events[0]["content"] == "All done"
        assert events[-1]["success"] is True

    def test_streams_tool_steps(self, client, scripted_decisions, test_config):
        scripted_decisions.extend([
            AgentDecision(
                thought="Writing the README",
                tool_calls=[ToolCall(name="write_file", arguments={"path": "README.md", "content": "# Demo\n"})],
            ),
            AgentDecision(response="README written"),
        ])
        response = client.post("/api/agent", json={
            "message": "Add a README",
            "projectId": "demo",
            "conversationHistory": [
                {"role": "user", "content": "Earlier question"},
                {"role": "assistant", "content": "Earlier answer"},
            ],
        })

        events = sse_events(response)
        assert [e["type"] for e in events] == ["thought", "tool_call", "tool_result", "final", "done"]
        assert events[1]["tool_name"] == "write_file"
        assert events[3]["content"] == "README written"

        from pathlib import Path
        assert (Path(test_config.workspace_root) / "demo" / "README.md").read_text() == "# Demo\n"

    def test_invalid_history_role(self, client):
        response = client.post("/api/agent", json={
            "message": "Hi",
            "conversationHistory": [{"role": "system", "content": "x"}],
        })
        assert response.status_code == 400


class TestWorkflowEndpoints:
    """Workflow CRUD and manual execution."""

    def test_execute_requires_auth(self, client):
        response = client.post("/api/workflows/execute", json={"workflowId": "anything"})
        assert response.status_code == 401

    def test_execute_rejects_bad_token(self, client):
        response = client.post(
            "/api/workflows/execute",
            json={"workflowId": "anything"},
            headers={"Authorization": "Bearer not-a-token"},
        )
        assert response.status_code == 401

    def test_execute_requires_workflow_id(self, client, auth_headers):
        response = client.post("/api/workflows/execute", json={"triggerData": {}}, headers=auth_headers)
        assert response.status_code == 400

    def test_execute_unknown_workflow(self, client, auth_headers):
        response = client.post("/api/workflows/execute", json={"workflowId": "missing"}, headers=auth_headers)
        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "NotFoundError"

    def test_create_execute_and_inspect(self, client, auth_headers):
        created = client.post("/api/workflows", json=workflow_body(), headers=auth_headers)
        assert created.status_code == 201
        workflow_id = created.json()["workflow"]["id"]

        response = client.post(
            "/api/workflows/execute",
            json={"workflowId": workflow_id, "triggerData": {"customer": "acme"}},
            headers=auth_headers,
        )
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["message"] == "Workflow execution started"

        execution = wait_for_status(client, body["executionId"], auth_headers)
        assert execution["status"] == "succeeded"
        assert execution["node_statuses"]["shape"]["output"] == {"customer": "acme"}

        logs = client.get(f"/api/workflows/executions/{body['executionId']}/logs", headers=auth_headers)
        assert logs.status_code == 200
        event_types = [entry["event_type"] for entry in logs.json()]
        assert event_types[0] == "workflow_start"
        assert event_types[-1] == "workflow_complete"

    def test_other_users_cannot_execute_or_read(self, client, auth_headers):
        from nexaflow.core.identity import IdentityResolver

        workflow_id = client.post("/api/workflows", json=workflow_body(), headers=auth_headers).json()["workflow"]["id"]
        other = {"Authorization": f"Bearer {IdentityResolver().create_session('user-2')}"}

        assert client.post("/api/workflows/execute", json={"workflowId": workflow_id}, headers=other).status_code == 403
        assert client.get(f"/api/workflows/{workflow_id}", headers=other).status_code == 403
        assert client.get(f"/api/workflows/{workflow_id}", headers=auth_headers).status_code == 200

    def test_cyclic_workflow_rejected(self, client, auth_headers):
        nodes = [
            {"id": "a", "kind": "custom", "depends_on": ["b"]},
            {"id": "b", "kind": "custom", "depends_on": ["a"]},
        ]
        response = client.post("/api/workflows", json=workflow_body(nodes), headers=auth_headers)
        assert response.status_code == 400

    def test_unknown_node_kind_rejected(self, client, auth_headers):
        nodes = [{"id": "a", "kind": "quantum"}]
        response = client.post("/api/workflows", json=workflow_body(nodes), headers=auth_headers)
        assert response.status_code == 400
        assert "unknown kind" in response.json()["detail"]["message"]

    def test_list_workflows(self, client, auth_headers):
        client.post("/api/workflows", json=workflow_body(name="first"), headers=auth_headers)
        client.post("/api/workflows", json=workflow_body(name="second"), headers=auth_headers)

        names = [w["name"] for w in client.get("/api/workflows", headers=auth_headers).json()]
        assert names == ["first", "second"]

    def test_cancel_finished_execution_conflicts(self, client, auth_headers):
        workflow_id = client.post("/api/workflows", json=workflow_body(), headers=auth_headers).json()["workflow"]["id"]
        execution_id = client.post(
            "/api/workflows/execute", json={"workflowId": workflow_id}, headers=auth_headers
        ).json()["executionId"]
        wait_for_status(client, execution_id, auth_headers)

        response = client.post(f"/api/workflows/executions/{execution_id}/cancel", headers=auth_headers)
        assert response.status_code == 409

    def test_unknown_execution(self, client, auth_headers):
        assert client.get("/api/workflows/executions/missing", headers=auth_headers).status_code == 404


class TestWebhookEndpoints:
    """Public webhook trigger route."""

    def _register(self, client, auth_headers, endpoint="orders", auth=None):
        workflow_id = client.post("/api/workflows", json=workflow_body(), headers=auth_headers).json()["workflow"]["id"]
        body = {"endpoint": endpoint}
        if auth:
            body["auth"] = auth
        response = client.post(f"/api/workflows/{workflow_id}/webhooks", json=body, headers=auth_headers)
        assert response.status_code == 201
        assert response.json()["url"] == f"/api/webhooks/{endpoint}"
        return workflow_id

    def test_unknown_endpoint(self, client):
        response = client.post("/api/webhooks/nowhere", json={"a": 1})
        assert response.status_code == 400
        assert response.json() == {"success": False, "error": "unknown endpoint"}

    def test_trigger_runs_workflow(self, client, auth_headers):
        self._register(client, auth_headers)

        response = client.post("/api/webhooks/orders?source=shop", json={"order": 1})
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["message"] == "Workflow triggered successfully"

        execution = wait_for_status(client, body["executionId"], auth_headers)
        assert execution["triggered_by"] == "webhook"
        assert execution["trigger_data"]["body"] == {"order": 1}
        assert execution["trigger_data"]["query"] == {"source": "shop"}

    def test_any_method_triggers(self, client, auth_headers):
        self._register(client, auth_headers, endpoint="ping")
        for method in ("GET", "PUT", "PATCH", "DELETE"):
            assert client.request(method, "/api/webhooks/ping").status_code == 200

    def test_webhook_auth(self, client, auth_headers):
        self._register(client, auth_headers, endpoint="secure", auth={"type": "bearer", "secret": "hook-token"})

        denied = client.post("/api/webhooks/secure", json={})
        allowed = client.post("/api/webhooks/secure", json={}, headers={"Authorization": "Bearer hook-token"})

        assert denied.status_code == 400
        assert denied.json()["error"] == "webhook authentication failed"
        assert allowed.status_code == 200

    def test_invalid_endpoint_name(self, client, auth_headers):
        workflow_id = client.post("/api/workflows", json=workflow_body(), headers=auth_headers).json()["workflow"]["id"]
        response = client.post(
            f"/api/workflows/{workflow_id}/webhooks", json={"endpoint": "bad name!"}, headers=auth_headers
        )
        assert response.status_code == 400
