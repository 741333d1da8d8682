import json
from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

import server
from conftest import FakeSessions, ScriptedExecutor
from orchestrator import TestRunOrchestrator
from retry import RetryPolicy
from run_store import LocalRunStore

AUTH = {"Authorization": "Bearer user-token"}
PROJECT = {"id": "p1", "settings": {"staging_url": "https://staging.example.com"}}


def parse_events(body: str) -> list[dict]:
    frames = [f for f in body.split("\n\n") if f.strip()]
    assert all(f.startswith("data: ") for f in frames)
    return [json.loads(f[len("data: "):]) for f in frames]


@pytest.fixture
def store(login_case):
    return LocalRunStore(projects={"p1": PROJECT}, test_cases=[login_case])


@pytest.fixture
def client(settings, store):
    def orchestrator():
        return TestRunOrchestrator(
            session_manager=FakeSessions(),
            store=store,
            executor=ScriptedExecutor(),
            case_delay=0,
            case_policy=RetryPolicy(max_attempts=2, backoff=lambda attempt: 0),
        )

    server.app.dependency_overrides[server.get_settings] = lambda: settings
    server.app.dependency_overrides[server.get_store] = lambda: store
    server.app.dependency_overrides[server.get_orchestrator] = orchestrator
    yield TestClient(server.app)
    server.app.dependency_overrides.clear()


class TestExecute:
    def test_streams_run_events(self, client, store):
        response = client.post("/execute", json={"projectId": "p1", "testCaseIds": ["case-1"]}, headers=AUTH)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["cache-control"] == "no-cache"
        events = parse_events(response.text)
        assert events[0]["success"] is True
        assert events[0]["environmentUrl"] == "https://staging.example.com"
        assert events[0]["browserType"] == "chrome"
        assert [e["type"] for e in events[1:]] == ["progress", "test_complete", "complete"]
        assert events[-1]["passed"] == 1
        assert store.results[0]["status"] == "pass"

    def test_requires_bearer_token(self, client, store):
        response = client.post("/execute", json={"projectId": "p1", "testCaseIds": ["case-1"]})
        assert response.status_code == 401
        assert "error" in response.json()
        assert store.runs == {}

    def test_missing_fields(self, client):
        response = client.post("/execute", json={"projectId": "p1"}, headers=AUTH)
        assert response.status_code == 400
        assert response.json() == {"error": "Missing required fields: projectId, testCaseIds"}

    def test_not_json(self, client):
        response = client.post("/execute", content="nope", headers=AUTH)
        assert response.status_code == 400

    def test_body_not_utf8(self, client, store):
        response = client.post(
            "/execute",
            content=b'{"projectId": "\xff"}',
            headers={**AUTH, "Content-Type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json() == {"error": "Request body must be JSON"}
        assert store.runs == {}

    def test_unsupported_browser_type(self, client, store):
        body = {"projectId": "p1", "testCaseIds": ["case-1"], "browserType": "opera"}
        response = client.post("/execute", json=body, headers=AUTH)
        assert response.status_code == 400
        assert response.json()["error"].startswith("Unsupported browserType: opera")
        assert store.runs == {}

    def test_unsupported_environment(self, client, store):
        body = {"projectId": "p1", "testCaseIds": ["case-1"], "environment": "qa"}
        response = client.post("/execute", json=body, headers=AUTH)
        assert response.status_code == 400
        assert store.runs == {}

    def test_project_not_found(self, client):
        response = client.post("/execute", json={"projectId": "p2", "testCaseIds": ["case-1"]}, headers=AUTH)
        assert response.status_code == 404
        assert response.json() == {"error": "Project not found"}

    def test_environment_without_url(self, client, store):
        body = {"projectId": "p1", "testCaseIds": ["case-1"], "environment": "production"}
        response = client.post("/execute", json=body, headers=AUTH)
        assert response.status_code == 400
        assert response.json() == {"error": "No URL configured for production environment"}
        assert store.runs == {}

    def test_configuration_error(self, client, settings):
        server.app.dependency_overrides[server.get_settings] = lambda: replace(settings, supabase_url="")
        response = client.post("/execute", json={"projectId": "p1", "testCaseIds": ["case-1"]}, headers=AUTH)
        assert response.status_code == 500
        assert response.json() == {"error": "Server configuration error"}


def test_status(client):
    assert client.get("/status").json() == {"status": "ok"}


def test_cors_preflight(client):
    response = client.options(
        "/execute",
        headers={"Origin": "https://dashboard.example.com", "Access-Control-Request-Method": "POST"},
    )
    assert response.status_code == 200
    assert "access-control-allow-origin" in response.headers
