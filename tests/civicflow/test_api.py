"""Tests for the HTTP API running over in-memory stores."""

import time

import pytest
from fastapi.testclient import TestClient

from src.civicflow.main import app


FINISHED = {"processed", "pending_review", "pending_intervention", "needs_more_detail", "failed"}


@pytest.fixture
def client(monkeypatch):
    monkeypatch.delenv("CIVICFLOW_DATABASE_URL", raising=False)
    monkeypatch.setenv("CIVICFLOW_USE_LLM_AGENTS", "false")
    monkeypatch.setenv("CIVICFLOW_BACKOFF_BASE_DELAY", "0")
    monkeypatch.setenv("CIVICFLOW_BACKOFF_MAX_DELAY", "0")
    with TestClient(app) as test_client:
        yield test_client


def _submit(client, text, **extra):
    body = {
        "city_id": "pune",
        "text": text,
        "location": {"latitude": 18.5204, "longitude": 73.8567, "area": "Shivajinagar"},
        **extra,
    }
    response = client.post("/issues", json=body)
    assert response.status_code == 202
    return response.json()


def _wait_until_processed(client, issue_id):
    for _ in range(100):
        issue = client.get(f"/issues/{issue_id}").json()
        if issue["status"] in FINISHED:
            return issue
        time.sleep(0.02)
    pytest.fail(f"Issue {issue_id} was not processed in time")


# ---------------------------------------------------------------------------
# Probes
# ---------------------------------------------------------------------------


def test_health_and_ready(client):
    assert client.get("/health").json() == {"status": "healthy"}
    ready = client.get("/ready")
    assert ready.status_code == 200
    assert ready.json()["dependencies"] == {"database": "healthy", "dispatcher": "running"}


def test_metrics_exposed(client):
    receipt = _submit(client, "Streetlight broken on MG Road for 2 weeks")
    _wait_until_processed(client, receipt["tracking_id"])

    response = client.get("/metrics")

    assert response.status_code == 200
    assert "civicflow_agent_steps_total" in response.text


# ---------------------------------------------------------------------------
# Issues
# ---------------------------------------------------------------------------


def test_submitted_issue_processed_in_background(client):
    receipt = _submit(client, "Streetlight broken on MG Road for 2 weeks")
    assert receipt["status"] == "received"

    issue = _wait_until_processed(client, receipt["tracking_id"])
    workflow = client.get(f"/workflows/{receipt['workflow_id']}").json()
    trail = client.get(f"/issues/{receipt['tracking_id']}/audit-trail").json()
    explanation = client.get(f"/issues/{receipt['tracking_id']}/explanation").json()

    assert issue["status"] == "processed"
    assert issue["classification"]["domain"] == "Electricity/Street Lighting"
    assert workflow["status"] == "completed"
    assert trail[0]["kind"] == "intake"
    assert explanation[0]["decision_type"] == "classification"


def test_thin_submission_gets_prompts(client):
    receipt = _submit(client, "", location=None)
    assert receipt["status"] == "needs_more_detail"
    assert len(receipt["prompts"]) == 2


def test_unknown_ids_return_404(client):
    assert client.get("/issues/missing").status_code == 404
    response = client.get("/workflows/missing")
    assert response.status_code == 404
    assert response.json()["error"] == "NotFoundError"
    assert client.post("/escalations/missing/acknowledge").status_code == 404


def test_override_and_status_update(client):
    receipt = _submit(client, "Deep pothole on Station Road damaging vehicles")
    _wait_until_processed(client, receipt["tracking_id"])
    issue_id = receipt["tracking_id"]

    overridden = client.post(
        f"/issues/{issue_id}/overrides",
        json={
            "actor": "admin@pune",
            "field": "classification",
            "new_value": "Sewage & Drainage",
            "justification": "Caused by a collapsed drain",
        },
    )
    resolved = client.put(
        f"/issues/{issue_id}/status", json={"status": "resolved", "actor": "crew-7"}
    )
    bad_field = client.post(
        f"/issues/{issue_id}/overrides",
        json={"actor": "a", "field": "text", "new_value": "x", "justification": "y"},
    )
    bad_domain = client.post(
        f"/issues/{issue_id}/overrides",
        json={"actor": "a", "field": "classification", "new_value": "Mars", "justification": "y"},
    )

    assert overridden.status_code == 200
    assert overridden.json()["classification"]["domain"] == "Sewage & Drainage"
    assert resolved.json()["status"] == "resolved"
    assert resolved.json()["resolved_at"] is not None
    assert bad_field.status_code == 422
    assert bad_domain.status_code == 422


def test_retry_of_completed_workflow_conflicts(client):
    receipt = _submit(client, "Garbage dumping beside the lake")
    _wait_until_processed(client, receipt["tracking_id"])

    response = client.post(f"/workflows/{receipt['workflow_id']}/retry/classifier")

    assert response.status_code == 409
    assert response.json()["category"] == "caller_error"


# ---------------------------------------------------------------------------
# Cities
# ---------------------------------------------------------------------------


def test_invalid_workflow_config_rejected_with_problems(client):
    response = client.put("/cities/pune/workflow-config", json={"sequence_order": []})
    assert response.status_code == 422
    assert response.json()["problems"]


def test_workflow_config_installed(client):
    response = client.put(
        "/cities/nashik/workflow-config",
        json={
            "enabled_agents": ["classifier", "priority_scorer"],
            "sequence_order": ["classifier", "priority_scorer"],
        },
    )
    assert response.status_code == 200
    assert response.json()["sequence_order"] == ["classifier", "priority_scorer"]


def test_similarity_threshold_updates_city_config(client):
    response = client.put("/cities/thane/similarity-threshold", json={"threshold": 0.85})
    assert response.status_code == 200
    assert response.json()["similarity_threshold"] == 0.85

    rejected = client.put("/cities/thane/similarity-threshold", json={"threshold": 1.5})
    assert rejected.status_code == 422


def test_high_priority_issue_escalated_and_acknowledged(client):
    receipt = _submit(client, "Live wire sparking near the school gate")
    _wait_until_processed(client, receipt["tracking_id"])

    tickets = client.get("/cities/pune/escalations").json()
    ticket = next(t for t in tickets if t["issue_id"] == receipt["tracking_id"])
    acknowledged = client.post(f"/escalations/{ticket['ticket_id']}/acknowledge")

    assert ticket["reason"] == "high_priority"
    assert acknowledged.json() == {"ticket_id": ticket["ticket_id"], "acknowledged": True}


def test_insight_endpoints(client):
    receipt = _submit(client, "Garbage dumping beside the lake")
    _wait_until_processed(client, receipt["tracking_id"])

    emerging = client.get("/cities/pune/insights/emerging")
    report = client.get(
        "/cities/pune/insights/weekly-report", params={"week_start": "2024-03-01T00:00:00"}
    )
    resolution = client.get("/cities/pune/insights/resolution")
    areas = client.get(
        "/cities/pune/insights/areas", params=[("area", "Shivajinagar"), ("area", "Kothrud")]
    )

    assert emerging.status_code == 200
    assert report.json()["total_issues"] == 0
    assert resolution.json()["total_issues"] >= 1
    assert [a["area"] for a in areas.json()] == ["Shivajinagar", "Kothrud"]
