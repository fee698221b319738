"""API endpoint tests.

The app is built around a runtime wired to stubs, so workflows really run
in the background of the test client. Tests poll the read API until the
incident settles, the same way a dashboard would.
"""

import hashlib
import hmac
import json
import time

import pytest
from fastapi.testclient import TestClient

from config import Settings
from main import create_app
from schemas.incident import ERROR_SOURCE_PRODUCTION
from stubs import make_candidate, register_stub_steps

SETTLED = {"RESOLVED", "FAILED", "AWAITING_APPROVAL"}


@pytest.fixture
def settings(tmp_path):
    return Settings(
        db_path=str(tmp_path / "unused.db"),
        ingest_token="push-token",
        project_repos={"shop": "acme/shop-api"},
        log_file=str(tmp_path / "guardian.log"),
    )


@pytest.fixture
def client(runtime, settings):
    register_stub_steps(runtime)
    with TestClient(create_app(runtime=runtime, settings=settings)) as test_client:
        yield test_client


def settle(client: TestClient, incident_id: str, timeout: float = 5.0) -> dict:
    """Poll the incident until it reaches a status no workflow task is working on."""
    deadline = time.monotonic() + timeout
    while True:
        detail = client.get(f"/api/incidents/{incident_id}").json()
        if detail["incident"]["status"] in SETTLED or time.monotonic() > deadline:
            return detail
        time.sleep(0.02)


def candidate_body(**kwargs) -> dict:
    return make_candidate(**kwargs).model_dump(mode="json")


# ── Health and manual reports ─────────────────────────────────────────────────

def test_health(client):
    res = client.get("/health")
    assert res.json()["status"] == "ok"


def test_submit_runs_the_workflow(client):
    res = client.post("/api/incidents", json=candidate_body())
    assert res.status_code == 202
    assert res.json()["duplicate"] is False

    detail = settle(client, res.json()["incident_id"])
    assert detail["incident"]["status"] == "RESOLVED"
    assert detail["incident"]["metadata"]["pr_url"].startswith("https://github.com/acme/shop-api/pull/")
    assert [r["agent_name"] for r in detail["runs"]] == ["RCA", "Patch", "Verify", "PR"]


def test_duplicate_returns_200(client):
    body = candidate_body(error_source=ERROR_SOURCE_PRODUCTION)
    first = client.post("/api/incidents", json=body).json()
    settle(client, first["incident_id"])

    res = client.post("/api/incidents", json=body)

    assert res.status_code == 200
    assert res.json() == {"incident_id": first["incident_id"], "duplicate": True, "occurrence_count": 2}


def test_submit_bad_payload(client):
    res = client.post("/api/incidents", json={"bad": "data"})
    assert res.status_code == 422


# ── Log ingestion ─────────────────────────────────────────────────────────────

def test_log_push_requires_token(client):
    logs = [{"message": "Unhandled exception"}]
    assert client.post("/api/logs/shop", json=logs).status_code == 401
    assert client.post("/api/logs/shop", json=logs, headers={"x-guardian-token": "nope"}).status_code == 403


def test_log_push_without_errors(client):
    res = client.post(
        "/api/logs/shop",
        json=[{"message": "GET /health 200"}, {"message": "user logged in"}],
        headers={"x-guardian-token": "push-token"},
    )
    assert res.status_code == 200
    assert res.json() == {"message": "No errors detected.", "records_processed": 2}


def test_log_push_creates_linked_incident(client):
    res = client.post(
        "/api/logs/shop",
        json={"message": "TypeError: Cannot read properties of undefined", "service": "api"},
        headers={"Authorization": "Bearer push-token"},
    )
    assert res.status_code == 202
    assert res.json()["records_processed"] == 1

    detail = settle(client, res.json()["incident_id"])
    incident = detail["incident"]
    assert incident["status"] == "AWAITING_APPROVAL"
    assert incident["source"] == "LOG_INGESTION"
    assert incident["metadata"]["owner"] == "acme"
    assert incident["metadata"]["repo"] == "shop-api"


def test_log_push_bad_json(client):
    res = client.post(
        "/api/logs/shop",
        content=b"not json",
        headers={"x-guardian-token": "push-token", "content-type": "application/json"},
    )
    assert res.status_code == 400


# ── CI webhooks ───────────────────────────────────────────────────────────────

def _workflow_run(conclusion: str = "failure") -> dict:
    return {
        "action": "completed",
        "workflow_run": {"id": 1, "name": "CI", "head_branch": "main", "head_sha": "abc", "conclusion": conclusion},
        "repository": {"name": "shop-api", "owner": {"login": "acme"}},
    }


def test_github_non_failure_is_ignored(client):
    res = client.post("/webhooks/github", json=_workflow_run("success"), headers={"x-github-event": "workflow_run"})
    assert res.json() == {"status": "ignored", "event": "workflow_run"}


def test_github_failure_is_fixed_autonomously(client):
    res = client.post("/webhooks/github", json=_workflow_run(), headers={"x-github-event": "workflow_run"})
    assert res.status_code == 202

    incident = settle(client, res.json()["incident_id"])["incident"]
    assert incident["status"] == "RESOLVED"
    assert incident["metadata"]["project_id"] == "shop"
    assert incident["metadata"]["error_source"] == "ci-cd"


def test_github_signature_is_checked(runtime, settings):
    register_stub_steps(runtime)
    settings.github_webhook_secret = "hook-secret"
    body = json.dumps(_workflow_run("success")).encode()
    signature = "sha256=" + hmac.new(b"hook-secret", body, hashlib.sha256).hexdigest()

    with TestClient(create_app(runtime=runtime, settings=settings)) as client:
        headers = {"x-github-event": "workflow_run", "content-type": "application/json"}
        bad = client.post("/webhooks/github", content=body, headers={**headers, "x-hub-signature-256": "sha256=0"})
        good = client.post("/webhooks/github", content=body, headers={**headers, "x-hub-signature-256": signature})

    assert bad.status_code == 401
    assert good.json()["status"] == "ignored"


def test_jenkins_webhook(client):
    ignored = client.post("/webhooks/jenkins", json={"build_status": "SUCCESS"})
    assert ignored.json() == {"status": "ignored"}

    malformed = client.post("/webhooks/jenkins", json={"build_status": "FAILURE"})
    assert malformed.status_code == 400

    res = client.post("/webhooks/jenkins", json={
        "build_status": "FAILURE",
        "job_name": "shop-api-build",
        "build_number": 7,
        "git_repo": "acme/shop-api",
        "console_log": "npm ERR! Test failed",
    })
    assert res.status_code == 202
    incident = settle(client, res.json()["incident_id"])["incident"]
    assert incident["source"] == "JENKINS"
    assert incident["status"] == "RESOLVED"


# ── Decisions ─────────────────────────────────────────────────────────────────

def _awaiting(client) -> str:
    res = client.post("/api/incidents", json=candidate_body(error_source=ERROR_SOURCE_PRODUCTION))
    incident_id = res.json()["incident_id"]
    assert settle(client, incident_id)["incident"]["status"] == "AWAITING_APPROVAL"
    return incident_id


def test_approve_resumes_the_workflow(client):
    incident_id = _awaiting(client)

    res = client.post(f"/api/incidents/{incident_id}/approve", json={"actor": "alice"})
    assert res.status_code == 200
    assert res.json()["applied"] is True

    incident = settle(client, incident_id)["incident"]
    assert incident["status"] == "RESOLVED"
    assert incident["metadata"]["approved_by"] == "alice"

    again = client.post(f"/api/incidents/{incident_id}/approve")
    assert again.json() == {"applied": False, "status": "RESOLVED"}


def test_reject_closes_the_incident(client):
    incident_id = _awaiting(client)

    res = client.post(f"/api/incidents/{incident_id}/reject", json={"actor": "bob", "reason": "Not now"})

    assert res.json() == {"applied": True, "status": "RESOLVED"}
    detail = client.get(f"/api/incidents/{incident_id}").json()
    assert detail["incident"]["metadata"]["rejection_reason"] == "Not now"
    assert detail["incident"]["metadata"]["pr_url"] is None


def test_decision_on_unknown_incident(client):
    assert client.post("/api/incidents/missing/approve").status_code == 404
    assert client.post("/api/incidents/missing/reject").status_code == 404


def test_slack_button_approves(client):
    incident_id = _awaiting(client)
    payload = {"user": {"username": "carol"}, "actions": [{"action_id": "approve_fix", "value": incident_id}]}

    res = client.post("/webhooks/slack/interactions", data={"payload": json.dumps(payload)})

    assert res.json() == {"text": "Approved. Deploying fix..."}
    incident = settle(client, incident_id)["incident"]
    assert incident["status"] == "RESOLVED"
    assert incident["metadata"]["approved_by"] == "carol"


def test_slack_button_for_unknown_incident(client):
    payload = {"actions": [{"action_id": "reject_fix", "value": "missing"}]}
    res = client.post("/webhooks/slack/interactions", data={"payload": json.dumps(payload)})
    assert res.json() == {"text": "Incident not found."}


# ── Read API ──────────────────────────────────────────────────────────────────

def test_get_unknown_incident(client):
    assert client.get("/api/incidents/missing").status_code == 404


def test_list_incidents_filters(client):
    awaiting_id = _awaiting(client)
    fixed = client.post("/api/incidents", json=candidate_body(message="Build failed: lint", project_id="other"))
    settle(client, fixed.json()["incident_id"])

    all_ids = [i["id"] for i in client.get("/api/incidents").json()]
    assert set(all_ids) == {awaiting_id, fixed.json()["incident_id"]}

    awaiting = client.get("/api/incidents", params={"status": "AWAITING_APPROVAL"}).json()
    assert [i["id"] for i in awaiting] == [awaiting_id]

    other = client.get("/api/incidents", params={"project_id": "other"}).json()
    assert [i["id"] for i in other] == [fixed.json()["incident_id"]]
