"""Sandbox runner verifier.

Delegates build-and-test verification to a sandbox runner service. The
runner clones the repository at the given branch, detects the stack,
installs dependencies, runs the test suite, and streams its progress back
as NDJSON:

    {"log": "Cloning repository..."}
    {"log": "[test] 42 passed"}
    {"success": true}

The last object carries the verdict. Each log line is forwarded to the
on_log callback as it arrives so the dashboard can show the build live.
"""

import json
import logging

import httpx

from core.errors import IntegrationError
from schemas.result import VerificationResult
from sre.integrations.base import LogCallback

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 600


class SandboxRunnerVerifier:
    """Verifier implementation backed by an HTTP sandbox runner.

    Attributes:
        base_url: Runner service root, e.g. "http://sandbox-runner:8080".
        timeout: Read timeout for the whole streamed verification.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url
        self.timeout = timeout
        self._transport = transport

    async def verify(
        self,
        repository: str,
        env: dict[str, str],
        credentials: str | None,
        branch: str,
        on_log: LogCallback | None = None,
    ) -> VerificationResult:
        """Run verification and collect the streamed logs.

        A stream that ends without a verdict counts as a failed verification
        rather than an error, so the self-healing loop can retry it.

        Raises:
            IntegrationError: If the runner is unreachable or returns a
                non-2xx status.
        """
        logs: list[str] = []
        success = False
        payload = {"repository": repository, "branch": branch, "env": env, "token": credentials}

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                async with client.stream("POST", "/verify", json=payload) as resp:
                    resp.raise_for_status()
                    async for line in resp.aiter_lines():
                        if not line.strip():
                            continue
                        try:
                            message = json.loads(line)
                        except json.JSONDecodeError:
                            message = {"log": line}

                        if "log" in message:
                            logs.append(str(message["log"]))
                            if on_log is not None:
                                on_log(str(message["log"]))
                        if "success" in message:
                            success = bool(message["success"])
        except httpx.HTTPError as exc:
            raise IntegrationError("sandbox", f"verification of {repository}@{branch} failed: {exc}") from exc

        logger.info("Sandbox verification of %s@%s: %s.", repository, branch, "passed" if success else "failed")
        return VerificationResult(success=success, logs=logs)
