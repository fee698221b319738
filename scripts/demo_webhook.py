"""Send a local Jenkins failure webhook and poll until the incident settles."""

import json
import sys
import time
import urllib.error
import urllib.request


BASE_URL = "http://127.0.0.1:8000"
TIMEOUT_SECONDS = 300
POLL_INTERVAL_SECONDS = 2.0

TERMINAL = {"RESOLVED", "FAILED"}


def _request(method: str, path: str, payload: dict | None = None) -> dict:
    url = f"{BASE_URL}{path}"
    data = None
    headers = {"Content-Type": "application/json"}

    if payload is not None:
        data = json.dumps(payload).encode("utf-8")

    req = urllib.request.Request(url=url, method=method, data=data, headers=headers)
    with urllib.request.urlopen(req, timeout=10) as resp:
        body = resp.read().decode("utf-8")
        return json.loads(body) if body else {}


def main() -> int:
    payload = {
        "build_status": "FAILURE",
        "job_name": "shop-api-build",
        "build_number": 42,
        "build_url": "http://jenkins.local/job/shop-api-build/42/",
        "git_repo": "acme/shop-api",
        "git_branch": "main",
        "git_commit": "abc123",
        "console_log": "npm ERR! Test failed: handlers.test.js expected 'anonymous', got undefined",
    }

    try:
        print("Posting demo failure to /webhooks/jenkins ...")
        created = _request("POST", "/webhooks/jenkins", payload)
    except urllib.error.URLError as exc:
        print(f"Failed to reach API at {BASE_URL}: {exc}", file=sys.stderr)
        print("Start it first with: uv run uvicorn main:app", file=sys.stderr)
        return 1

    incident_id = created.get("incident_id")
    if not incident_id:
        print(f"Unexpected webhook response: {created}", file=sys.stderr)
        return 1

    print(f"Incident: {incident_id} (duplicate={created.get('duplicate')})")
    print("Polling for a terminal state ...")

    deadline = time.time() + TIMEOUT_SECONDS
    last = None
    while time.time() < deadline:
        detail = _request("GET", f"/api/incidents/{incident_id}")
        incident = detail["incident"]
        current = (incident["status"], incident.get("status_message"))
        if current != last:
            print(f"  {current[0]:<24} {current[1] or ''}")
            last = current

        if incident["status"] in TERMINAL:
            print("\nAgent runs:")
            for run in detail["runs"]:
                print(f"  {run['agent_name']:<8} attempt {run['attempt']}  {run['status']}")
            return 0 if incident["status"] == "RESOLVED" else 2

        time.sleep(POLL_INTERVAL_SECONDS)

    print(f"Timed out after {TIMEOUT_SECONDS}s waiting for the incident.", file=sys.stderr)
    return 3


if __name__ == "__main__":
    raise SystemExit(main())
