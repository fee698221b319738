"""Collaborator adapter tests.

GitHub, Slack and the sandbox runner are exercised against
httpx.MockTransport handlers, so the real request building and response
handling run without any network access.
"""

import hashlib
import hmac
import json

import httpx
import pytest

from core.errors import IntegrationError
from schemas.incident import Incident, IncidentMetadata, IncidentSource, Severity
from schemas.result import FileUpdate, PatchResult, RootCauseResult
from sre.integrations.github import GitHubClient
from sre.integrations.sandbox import SandboxRunnerVerifier
from sre.integrations.secrets import EnvSecretStore
from sre.integrations.slack import (
    ACTION_APPROVE,
    ACTION_REJECT,
    SlackNotifier,
    notifier_for_project,
    verify_slack_signature,
)


def _incident() -> Incident:
    return Incident(
        title="Production Error: TypeError in GET /api/users",
        source=IncidentSource.LOG_INGESTION,
        severity=Severity.CRITICAL,
        fingerprint="0" * 32,
        metadata=IncidentMetadata(
            project_id="proj-1",
            rca=RootCauseResult(analysis="The user lookup can return None."),
            patch=PatchResult(
                file_updates=[FileUpdate(path="app/users.py", content="...")],
                explanation="Return 404 when the user is missing.",
            ),
        ),
    )


class Recorder:
    """MockTransport handler that records requests and answers from a route table."""

    def __init__(self, routes: dict) -> None:
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for (method, path), response in self.routes.items():
            if request.method == method and request.url.path == path:
                return response() if callable(response) else response
        return httpx.Response(404, json={"message": "Not Found"})

    def bodies(self, method: str) -> list[dict]:
        return [json.loads(r.content) for r in self.requests if r.method == method]


# ── GitHub ────────────────────────────────────────────────────────────────────

class TestGitHubClient:
    def _client(self, recorder: Recorder) -> GitHubClient:
        return GitHubClient("ghp_test", transport=httpx.MockTransport(recorder))

    async def test_create_branch_from_base_head(self):
        recorder = Recorder({
            ("GET", "/repos/acme/api/git/ref/heads/main"): httpx.Response(200, json={"object": {"sha": "abc"}}),
            ("POST", "/repos/acme/api/git/refs"): httpx.Response(201, json={}),
        })

        await self._client(recorder).create_branch("acme", "api", "main", "guardian/fix-1")

        assert recorder.bodies("POST") == [{"ref": "refs/heads/guardian/fix-1", "sha": "abc"}]
        assert recorder.requests[0].headers["Authorization"] == "Bearer ghp_test"

    async def test_existing_branch_is_not_an_error(self):
        recorder = Recorder({
            ("GET", "/repos/acme/api/git/ref/heads/main"): httpx.Response(200, json={"object": {"sha": "abc"}}),
            ("POST", "/repos/acme/api/git/refs"): httpx.Response(422, json={"message": "Reference already exists"}),
        })

        await self._client(recorder).create_branch("acme", "api", "main", "guardian/fix-1")

    async def test_missing_base_branch_raises(self):
        with pytest.raises(IntegrationError, match="github"):
            await self._client(Recorder({})).create_branch("acme", "api", "main", "guardian/fix-1")

    async def test_commit_updates_existing_and_creates_new_files(self):
        recorder = Recorder({
            ("GET", "/repos/acme/api/contents/app/old.py"): httpx.Response(200, json={"sha": "s1"}),
            ("PUT", "/repos/acme/api/contents/app/old.py"): httpx.Response(200, json={}),
            ("PUT", "/repos/acme/api/contents/app/new.py"): httpx.Response(201, json={}),
        })
        files = [FileUpdate(path="app/old.py", content="a = 1\n"), FileUpdate(path="app/new.py", content="b\n")]

        await self._client(recorder).commit_files("acme", "api", "guardian/fix-1", files, "fix: thing")

        old, new = recorder.bodies("PUT")
        assert old["sha"] == "s1"
        assert "sha" not in new
        assert old["branch"] == "guardian/fix-1"
        assert old["content"] == "YSA9IDEK"

    async def test_create_pull_request_returns_url(self):
        recorder = Recorder({
            ("POST", "/repos/acme/api/pulls"): httpx.Response(
                201, json={"html_url": "https://github.com/acme/api/pull/7"}
            ),
        })

        url = await self._client(recorder).create_pull_request(
            "acme", "api", title="fix: x", body="...", head="guardian/fix-1", base="main"
        )

        assert url == "https://github.com/acme/api/pull/7"
        assert recorder.bodies("POST")[0]["head"] == "guardian/fix-1"

    async def test_pull_request_error_raises(self):
        recorder = Recorder({("POST", "/repos/acme/api/pulls"): httpx.Response(422, json={})})
        with pytest.raises(IntegrationError):
            await self._client(recorder).create_pull_request("acme", "api", "t", "b", "h", "main")


# ── Slack ─────────────────────────────────────────────────────────────────────

class TestSlackNotifier:
    def _notifier(self, recorder: Recorder) -> SlackNotifier:
        return SlackNotifier("xoxb-test", "C123", transport=httpx.MockTransport(recorder))

    async def test_decision_request_has_both_buttons(self):
        recorder = Recorder({
            ("POST", "/api/chat.postMessage"): httpx.Response(200, json={"ok": True, "channel": "C123", "ts": "1700.01"}),
        })
        incident = _incident()

        ref = await self._notifier(recorder).send_decision_request(incident)

        assert ref == "C123:1700.01"
        [body] = recorder.bodies("POST")
        buttons = body["blocks"][-1]["elements"]
        assert [b["action_id"] for b in buttons] == [ACTION_APPROVE, ACTION_REJECT]
        assert all(b["value"] == incident.id for b in buttons)
        assert "user lookup can return None" in json.dumps(body["blocks"])

    async def test_reply_goes_to_the_thread(self):
        recorder = Recorder({("POST", "/api/chat.postMessage"): httpx.Response(200, json={"ok": True, "ts": "2"})})

        await self._notifier(recorder).reply_in_thread("C999:1700.01", "Approved.")

        assert recorder.bodies("POST") == [{"channel": "C999", "thread_ts": "1700.01", "text": "Approved."}]

    async def test_ok_false_raises(self):
        recorder = Recorder({
            ("POST", "/api/chat.postMessage"): httpx.Response(200, json={"ok": False, "error": "channel_not_found"}),
        })
        with pytest.raises(IntegrationError, match="channel_not_found"):
            await self._notifier(recorder).post("hello")

    async def test_non_json_body_raises(self):
        recorder = Recorder({
            ("POST", "/api/chat.postMessage"): lambda: httpx.Response(200, text="<html>proxy</html>"),
        })
        with pytest.raises(IntegrationError, match="non-JSON"):
            await self._notifier(recorder).post("hello")

    async def test_decision_request_without_ts_raises(self):
        recorder = Recorder({("POST", "/api/chat.postMessage"): lambda: httpx.Response(200, json={"ok": True})})
        with pytest.raises(IntegrationError, match="no message ts"):
            await self._notifier(recorder).send_decision_request(_incident())

    def test_notifier_needs_token_and_channel(self):
        assert notifier_for_project(EnvSecretStore({"SLACK_BOT_TOKEN": "xoxb"}), "proj-1") is None
        notifier = notifier_for_project(
            EnvSecretStore({"SLACK_BOT_TOKEN": "xoxb", "SLACK_CHANNEL_ID": "C1"}), "proj-1"
        )
        assert notifier.channel_id == "C1"

    def test_signature_verification(self):
        body = b"payload=%7B%7D"
        timestamp = "1700000000"
        base = f"v0:{timestamp}:".encode() + body
        signature = "v0=" + hmac.new(b"signing", base, hashlib.sha256).hexdigest()

        assert verify_slack_signature(body, timestamp, signature, "signing", now=1700000010) is True
        assert verify_slack_signature(body, timestamp, signature, "wrong", now=1700000010) is False
        # Stale request
        assert verify_slack_signature(body, timestamp, signature, "signing", now=1700001000) is False
        assert verify_slack_signature(body, "not-a-number", signature, "signing") is False


# ── Sandbox runner ────────────────────────────────────────────────────────────

class TestSandboxRunnerVerifier:
    def _verifier(self, handler) -> SandboxRunnerVerifier:
        return SandboxRunnerVerifier("http://sandbox", transport=httpx.MockTransport(handler))

    async def test_streams_logs_and_reads_verdict(self):
        stream = b'{"log": "Cloning..."}\n\n{"log": "[test] 12 passed"}\nplain text line\n{"success": true}\n'
        seen = []
        requests = []

        def handler(request):
            requests.append(json.loads(request.content))
            return httpx.Response(200, content=stream)

        result = await self._verifier(handler).verify(
            "https://github.com/acme/api", {"NODE_ENV": "test"}, "ghp", "guardian/fix-1", seen.append
        )

        assert result.success is True
        assert result.logs == ["Cloning...", "[test] 12 passed", "plain text line"]
        assert seen == result.logs
        assert requests[0]["branch"] == "guardian/fix-1"
        assert requests[0]["env"] == {"NODE_ENV": "test"}

    async def test_missing_verdict_is_a_failure(self):
        result = await self._verifier(lambda r: httpx.Response(200, content=b'{"log": "killed"}\n')).verify(
            "repo", {}, None, "b"
        )
        assert result.success is False
        assert result.logs == ["killed"]

    async def test_runner_error_raises(self):
        with pytest.raises(IntegrationError, match="sandbox"):
            await self._verifier(lambda r: httpx.Response(500)).verify("repo", {}, None, "b")


# ── Secrets ───────────────────────────────────────────────────────────────────

class TestEnvSecretStore:
    def test_project_scoped_secret_wins(self):
        secrets = EnvSecretStore({
            "GUARDIAN_SECRET_PROJ_1_GITHUB_TOKEN": "scoped",
            "GITHUB_TOKEN": "global",
        })
        assert secrets.get("proj-1", "github_token") == "scoped"
        assert secrets.get("proj-2", "github_token") == "global"
        assert secrets.get(None, "github_token") == "global"

    def test_missing_secret_is_none(self):
        assert EnvSecretStore({}).get("proj-1", "slack_bot_token") is None
