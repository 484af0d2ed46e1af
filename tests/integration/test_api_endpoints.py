"""
Integration tests for the HTTP API.
"""

import pytest
from fastapi.testclient import TestClient

from subagent_orchestrator.api.main import create_app

API = "/api/subagents"


@pytest.fixture
def client(orchestrator):
    app = create_app(orchestrator, run_dispatch_loop=False)
    with TestClient(app) as test_client:
        yield test_client


def _register(client, agent_id, capabilities=("python",), max_tasks=1, **kwargs):
    body = {
        "id": agent_id,
        "name": agent_id,
        "capabilities": list(capabilities),
        "max_concurrent_tasks": max_tasks
    }
    body.update(kwargs)
    response = client.post(f"{API}/agents", json=body)
    assert response.status_code == 201
    return response.json()


def _submit(client, **kwargs):
    body = {"title": "Task", "required_capabilities": ["python"]}
    body.update(kwargs)
    response = client.post(f"{API}/tasks", json=body)
    assert response.status_code == 201
    return response.json()["task_id"]


class TestHealth:

    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["health"] == f"{API}/health"
        assert "X-Process-Time" in response.headers

    def test_health(self, client):
        _register(client, "a1")
        _submit(client, required_capabilities=["go"])

        data = client.get(f"{API}/health").json()
        assert data["status"] == "healthy"
        assert data["agents"] == 1
        assert data["pending_tasks"] == 1
        assert data["dispatch_loop_running"] is False

    def test_lifespan_runs_dispatch_loop(self, orchestrator):
        app = create_app(orchestrator)
        with TestClient(app) as client:
            assert client.get(f"{API}/health").json()["dispatch_loop_running"] is True
        assert not orchestrator.is_running


class TestAgentEndpoints:

    def test_register_and_get(self, client):
        agent = _register(client, "a1", capabilities=["Python", "sql"])

        assert agent["status"] == "idle"
        assert sorted(agent["capabilities"]) == ["python", "sql"]

        response = client.get(f"{API}/agents/a1")
        assert response.status_code == 200
        assert response.json()["id"] == "a1"

    def test_register_invalid_role(self, client):
        response = client.post(f"{API}/agents", json={"name": "x", "role": "manager"})

        assert response.status_code == 422
        body = response.json()
        assert body["success"] is False
        assert body["error"]["category"] == "validation"

    def test_register_zero_capacity(self, client):
        response = client.post(f"{API}/agents", json={"name": "x", "max_concurrent_tasks": 0})
        assert response.status_code == 422

    def test_register_duplicate(self, client):
        _register(client, "a1")
        response = client.post(f"{API}/agents", json={"id": "a1", "name": "again"})

        assert response.status_code == 409
        assert response.json()["error"]["category"] == "conflict"

    def test_unknown_agent(self, client):
        response = client.get(f"{API}/agents/ghost")

        assert response.status_code == 404
        assert response.json()["error"]["error_type"] == "NotFoundError"

    def test_list_with_filters(self, client):
        _register(client, "a1", capabilities=["python"])
        _register(client, "a2", capabilities=["go"])

        assert len(client.get(f"{API}/agents").json()) == 2
        agents = client.get(f"{API}/agents", params={"capability": "go"}).json()
        assert [a["id"] for a in agents] == ["a2"]

    def test_templates(self, client):
        templates = client.get(f"{API}/templates").json()
        assert "test_engineer" in templates

        response = client.post(f"{API}/agents/from-template/test_engineer", json={"id": "tester"})
        assert response.status_code == 201
        assert response.json()["name"] == "Test Engineer"

        assert client.post(f"{API}/agents/from-template/chef").status_code == 404

    def test_lifecycle_endpoints(self, client):
        _register(client, "a1")

        assert client.post(f"{API}/agents/a1/stop").json()["status"] == "offline"
        assert client.post(f"{API}/agents/a1/start").json()["status"] == "idle"
        assert client.post(f"{API}/agents/a1/reset").status_code == 409
        assert client.post(f"{API}/agents/a1/waiting").status_code == 409

    def test_deregister_busy_agent_conflicts(self, client):
        _register(client, "a1")
        task_id = _submit(client)

        assert client.delete(f"{API}/agents/a1").status_code == 409

        client.post(f"{API}/tasks/{task_id}/complete", json={"agent_id": "a1"})
        assert client.delete(f"{API}/agents/a1").status_code == 200
        assert client.get(f"{API}/agents/a1").status_code == 404

    def test_update_capabilities(self, client):
        _register(client, "a1")
        response = client.put(f"{API}/agents/a1/capabilities", json={"capabilities": ["rust"]})

        assert response.status_code == 200
        assert response.json()["capabilities"] == ["rust"]

    def test_metrics_and_performance(self, client):
        _register(client, "a1")

        response = client.post(f"{API}/agents/a1/metrics", json={"cpu_usage": 25.0})
        assert response.status_code == 200
        assert response.json()["cpu_usage"] == 25.0

        assert client.post(f"{API}/agents/a1/metrics", json={"cpu_usage": -1}).status_code == 422
        assert client.get(f"{API}/agents/a1/performance").json()["cpu_usage"] == 25.0


class TestTaskEndpoints:

    def test_submit_dispatches(self, client):
        _register(client, "a1")
        task_id = _submit(client)

        task = client.get(f"{API}/tasks/{task_id}").json()
        assert task["status"] == "running"
        assert task["assigned_agent_id"] == "a1"

    def test_task_flow(self, client):
        _register(client, "a1")
        task_id = _submit(client)

        response = client.post(f"{API}/tasks/{task_id}/progress", json={"agent_id": "a1", "progress": 50})
        assert response.json()["progress"] == 50

        response = client.post(f"{API}/tasks/{task_id}/complete", json={"agent_id": "a1", "result": {"n": 1}})
        assert response.json()["status"] == "completed"

        response = client.post(f"{API}/tasks/{task_id}/complete", json={"agent_id": "a1"})
        assert response.status_code == 409
        assert response.json()["error"]["category"] == "invalid_state"

    def test_fail_and_cancel(self, client):
        _register(client, "a1", max_tasks=2)
        first = _submit(client)
        second = _submit(client)

        response = client.post(f"{API}/tasks/{first}/fail", json={"agent_id": "a1", "error": "boom"})
        assert response.json()["status"] == "failed"

        response = client.post(f"{API}/tasks/{second}/cancel")
        assert response.json()["status"] == "cancelled"

    def test_submit_invalid(self, client):
        assert client.post(f"{API}/tasks", json={"title": "x", "priority": "urgent"}).status_code == 422
        assert client.post(f"{API}/tasks", json={"title": "  "}).status_code == 422
        assert client.post(f"{API}/tasks", json={"title": "x", "target_agent_id": "ghost"}).status_code == 404

    def test_delegate(self, client):
        _register(client, "a1")
        _register(client, "a2")

        response = client.post(f"{API}/delegate", json={"agent_id": "a2", "task": {"title": "pinned"}})

        assert response.status_code == 201
        assert response.json()["task"]["assigned_agent_id"] == "a2"

    def test_list_and_tick(self, client):
        _submit(client)
        _submit(client, required_capabilities=["go"])

        assert len(client.get(f"{API}/tasks", params={"status": "pending"}).json()) == 2

        _register(client, "a1", max_tasks=2)
        assert client.post(f"{API}/tick").json() == {"delegated": []}
        assert len(client.get(f"{API}/tasks", params={"agent_id": "a1"}).json()) == 1

    def test_unknown_task(self, client):
        assert client.get(f"{API}/tasks/missing").status_code == 404
        assert client.post(f"{API}/tasks/missing/cancel").status_code == 404

    def test_classify(self, client):
        response = client.post(f"{API}/classify", json={"description": "show a basic list"})

        assert response.status_code == 200
        assert response.json()["category"] == "simple"
        assert response.json()["suggested_priority"] == "low"


class TestWorkflowEndpoints:

    def test_create_and_follow(self, client):
        _register(client, "a1", max_tasks=2)
        response = client.post(f"{API}/workflows", json={
            "name": "pipeline",
            "steps": [
                {"key": "a", "required_capabilities": ["python"]},
                {"key": "b", "required_capabilities": ["python"], "depends_on": ["a"]},
            ]
        })
        assert response.status_code == 201
        workflow_id = response.json()["workflow_id"]

        workflow = client.get(f"{API}/workflows/{workflow_id}").json()
        assert workflow["status"] == "running"
        step_a = next(step for step in workflow["steps"] if step["key"] == "a")

        client.post(f"{API}/tasks/{step_a['task_id']}/complete", json={"agent_id": "a1", "result": 1})
        workflow = client.get(f"{API}/workflows/{workflow_id}").json()
        step_b = next(step for step in workflow["steps"] if step["key"] == "b")
        client.post(f"{API}/tasks/{step_b['task_id']}/complete", json={"agent_id": "a1", "result": 2})

        workflow = client.get(f"{API}/workflows/{workflow_id}").json()
        assert workflow["status"] == "completed"
        assert len(client.get(f"{API}/workflows", params={"status": "completed"}).json()) == 1

    def test_cyclic_workflow_rejected(self, client):
        response = client.post(f"{API}/workflows", json={
            "name": "loop",
            "steps": [{"key": "a", "depends_on": ["b"]}, {"key": "b", "depends_on": ["a"]}]
        })
        assert response.status_code == 422

    def test_cancel_workflow(self, client):
        response = client.post(f"{API}/workflows", json={"name": "wf", "steps": [{"key": "a"}]})
        workflow_id = response.json()["workflow_id"]

        assert client.post(f"{API}/workflows/{workflow_id}/cancel").json()["status"] == "cancelled"
        assert client.post(f"{API}/workflows/{workflow_id}/cancel").status_code == 409
        assert client.get(f"{API}/workflows/missing").status_code == 404


class TestCommunicationEndpoints:

    def test_direct_and_mailbox(self, client):
        _register(client, "a1")
        _register(client, "a2")

        response = client.post(f"{API}/communicate", json={
            "from_agent_id": "a1", "to_agent_id": "a2", "payload": {"hi": 1}
        })
        assert response.status_code == 201
        assert response.json()["total"] == 1

        mailbox = client.get(f"{API}/agents/a2/messages").json()
        assert [m["payload"] for m in mailbox["messages"]] == [{"hi": 1}]
        assert client.get(f"{API}/agents/a2/messages").json()["total"] == 0
        assert client.get(f"{API}/agents/a2/messages", params={"since_offset": 0}).json()["total"] == 1
        assert client.get(f"{API}/agents/a2/messages", params={"since_offset": -1}).status_code == 422

    def test_broadcast(self, client):
        for agent_id in ("a1", "a2", "a3"):
            _register(client, agent_id)

        response = client.post(f"{API}/communicate", json={"from_agent_id": "a1", "payload": "all"})

        assert response.json()["total"] == 2
        assert client.get(f"{API}/communications", params={"agent_id": "a3"}).json()["total"] == 1

    def test_unknown_recipient(self, client):
        _register(client, "a1")
        response = client.post(f"{API}/communicate", json={"from_agent_id": "a1", "to_agent_id": "ghost"})
        assert response.status_code == 404


class TestPerformanceAndEvents:

    def test_performance_snapshot(self, client):
        _register(client, "a1")
        task_id = _submit(client)
        client.post(f"{API}/tasks/{task_id}/complete", json={"agent_id": "a1"})

        snapshot = client.get(f"{API}/performance").json()
        assert snapshot["total_agents"] == 1
        assert snapshot["completed_tasks"] == 1
        assert snapshot["efficiency"] == 1.0

    def test_events_polling(self, client):
        _register(client, "a1")
        first = client.get(f"{API}/events").json()
        assert first["events"][0]["kind"] == "agent.registered"

        _submit(client)
        later = client.get(f"{API}/events", params={"since": first["last_sequence"]}).json()
        assert later["events"][0]["kind"] == "task.submitted"
        assert later["last_sequence"] > first["last_sequence"]
