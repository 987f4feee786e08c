"""HTTP surface tests with the orchestrator dependency overridden."""
import pytest
from fastapi.testclient import TestClient

from deep_research.agents.refinement import RefinementAgent
from deep_research.api.deps import get_orchestrator, get_refinement_agent
from deep_research.main import app


@pytest.fixture
def client(orchestrator):
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_refinement_agent] = lambda: RefinementAgent(orchestrator)
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "deep-research"}


def test_create_session_runs_refinement(client):
    response = client.post("/api/sessions", json={"email": "api@example.com", "topic": "  Coral reef recovery "})

    assert response.status_code == 200
    body = response.json()
    assert body["session"]["topic"] == "Coral reef recovery"
    assert body["session"]["state"] == "refining"
    assert body["questions"] == []


def test_empty_topic_is_rejected(client):
    response = client.post("/api/sessions", json={"email": "api@example.com", "topic": ""})
    assert response.status_code == 422


def test_unknown_session_is_404(client):
    assert client.get("/api/sessions/missing").status_code == 404


def test_approve_runs_research_in_background(client, email_sender):
    created = client.post("/api/sessions", json={"email": "api@example.com", "topic": "Coral reef recovery"}).json()
    session_id = created["session"]["id"]

    response = client.post(f"/api/sessions/{session_id}/approve", json={})
    assert response.status_code == 202

    status = client.get(f"/api/sessions/{session_id}").json()
    assert status["session"]["state"] == "completed"
    assert {p["provider"]: p["status"] for p in status["providers"]} == {"gemini": "completed", "openai": "completed"}
    assert status["report"]["email_status"] == "sent"
    assert len(email_sender.sent) == 1

    again = client.post(f"/api/sessions/{session_id}/approve", json={})
    assert again.status_code == 409


def test_regenerate_requires_finished_session(client):
    created = client.post("/api/sessions", json={"email": "api@example.com", "topic": "Coral reef recovery"}).json()
    response = client.post(f"/api/sessions/{created['session']['id']}/report/regenerate")
    assert response.status_code == 409


def test_regenerate_reports_sent_status(client, email_sender):
    created = client.post("/api/sessions", json={"email": "api@example.com", "topic": "Coral reef recovery"}).json()
    session_id = created["session"]["id"]
    client.post(f"/api/sessions/{session_id}/approve", json={})

    response = client.post(f"/api/sessions/{session_id}/report/regenerate")

    assert response.status_code == 200
    assert response.json()["email_status"] == "sent"
    assert len(email_sender.sent) == 2
