"""Slack chat notifier.

Posts approval requests for production fixes with Approve / Reject buttons
and follows up in the same thread. Button clicks come back through Slack's
interactivity webhook (main.py) and call runtime.approve / runtime.reject.

A notifier only exists for projects with both a bot token and a channel
configured; notifier_for_project() returns None otherwise, and the approval
gate then simply leaves the incident visible in the dashboard.

Slack API reference: https://api.slack.com/methods/chat.postMessage
"""

import hashlib
import hmac
import logging
import time

import httpx

from core.errors import IntegrationError
from schemas.incident import Incident
from sre.integrations.base import SECRET_CHAT_CHANNEL, SECRET_CHAT_TOKEN, SecretStore

logger = logging.getLogger(__name__)

SLACK_API_BASE = "https://slack.com/api"
DEFAULT_TIMEOUT_SECONDS = 10

ACTION_APPROVE = "approve_fix"
ACTION_REJECT = "reject_fix"

# Slack rejects signed requests older than five minutes.
MAX_SIGNATURE_AGE_SECONDS = 300


class SlackNotifier:
    """ChatNotifier implementation posting to one Slack channel.

    Message references are "<channel>:<ts>" so a reply can be threaded
    without remembering which channel the request went to.
    """

    def __init__(
        self,
        bot_token: str,
        channel_id: str,
        base_url: str = SLACK_API_BASE,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.channel_id = channel_id
        self.base_url = base_url
        self.timeout = timeout
        self._headers = {"Authorization": f"Bearer {bot_token}"}
        self._transport = transport

    async def send_decision_request(self, incident: Incident) -> str:
        meta = incident.metadata
        rca_text = meta.rca.analysis[:500] if meta.rca and meta.rca.analysis else "RCA analysis unavailable"
        patch_text = meta.patch.summary() if meta.patch else "Patch generated"

        blocks = [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": f"Fix ready for review: {incident.title[:120]}"},
            },
            {"type": "section", "text": {"type": "mrkdwn", "text": f"*Root cause*\n{rca_text}"}},
            {"type": "section", "text": {"type": "mrkdwn", "text": f"*Proposed patch*\n{patch_text}"}},
            {
                "type": "actions",
                "elements": [
                    {
                        "type": "button",
                        "style": "primary",
                        "text": {"type": "plain_text", "text": "Approve"},
                        "action_id": ACTION_APPROVE,
                        "value": incident.id,
                    },
                    {
                        "type": "button",
                        "style": "danger",
                        "text": {"type": "plain_text", "text": "Reject"},
                        "action_id": ACTION_REJECT,
                        "value": incident.id,
                    },
                ],
            },
        ]

        data = await self._post("chat.postMessage", {
            "channel": self.channel_id,
            "text": f"Fix ready for review: {incident.title}",
            "blocks": blocks,
        })
        ts = data.get("ts")
        if not ts:
            raise IntegrationError("slack", "chat.postMessage returned no message ts")
        return f"{data.get('channel', self.channel_id)}:{ts}"

    async def reply_in_thread(self, message_ref: str, text: str) -> None:
        channel, _, ts = message_ref.partition(":")
        await self._post("chat.postMessage", {"channel": channel, "thread_ts": ts, "text": text})

    async def post(self, text: str) -> None:
        """Post a top-level message, used for resolution notices without a thread."""
        await self._post("chat.postMessage", {"channel": self.channel_id, "text": text})

    async def _post(self, method: str, payload: dict) -> dict:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                resp = await client.post(f"/{method}", json=payload)
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPError as exc:
            raise IntegrationError("slack", f"{method} failed: {exc}") from exc
        except ValueError as exc:
            raise IntegrationError("slack", f"{method} returned a non-JSON body: {exc}") from exc

        if not isinstance(data, dict):
            raise IntegrationError("slack", f"{method} returned an unexpected body")
        # Slack reports most failures as HTTP 200 with ok=false.
        if not data.get("ok"):
            raise IntegrationError("slack", f"{method} returned error: {data.get('error', 'unknown')}")
        return data


def notifier_for_project(secrets: SecretStore, project_id: str | None) -> SlackNotifier | None:
    """Build a notifier for a project, or None when Slack is not configured."""
    token = secrets.get(project_id, SECRET_CHAT_TOKEN)
    channel = secrets.get(project_id, SECRET_CHAT_CHANNEL)
    if not token or not channel:
        return None
    return SlackNotifier(bot_token=token, channel_id=channel)


def verify_slack_signature(
    body: bytes,
    timestamp: str,
    header_signature: str,
    signing_secret: str,
    now: float | None = None,
) -> bool:
    """Verify the v0 signature Slack attaches to interactivity requests.

    Args:
        body: Raw request body bytes.
        timestamp: Value of the X-Slack-Request-Timestamp header.
        header_signature: Value of the X-Slack-Signature header ("v0=...").
        signing_secret: The app's signing secret.
        now: Current unix time, injectable for tests.

    Returns:
        True if the signature matches and the request is fresh.
    """
    try:
        age = abs((now if now is not None else time.time()) - int(timestamp))
    except ValueError:
        return False
    if age > MAX_SIGNATURE_AGE_SECONDS:
        return False

    base = f"v0:{timestamp}:".encode("utf-8") + body
    expected = "v0=" + hmac.new(signing_secret.encode("utf-8"), base, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, header_signature)
