"""Guardian — HTTP entry point for the incident orchestration engine.

This file handles three concerns:

1. Intake — log pushes, CI webhooks (GitHub Actions, Jenkins) and manual
   reports become incident candidates and are submitted to the runtime.
   Every intake endpoint returns as soon as the incident is persisted; the
   workflow runs in the background.

2. Decisions — approve/reject for incidents suspended at the approval gate,
   from the API or from Slack's interactive buttons.

3. Read API — active incidents, a single incident with its agent-run
   timeline, and a live NDJSON event stream for dashboards.

Flow after an error arrives:
    POST /api/logs/{project_id}
        → check ingest token
        → detect errors, build candidate
        → runtime.submit_incident()  (dedup + persist)
        → return 202 + incident_id (or 200 for a duplicate)

    background workflow task:
        → RCA → Patch → (CI: verify/retry → PR) or (prod: await approval)

    observers:
        GET /api/events            live NDJSON stream
        GET /api/incidents/{id}    incident + timeline

Run locally:
    uv run uvicorn main:app --reload
    python main.py
"""

import json
import logging
import logging.handlers
from contextlib import asynccontextmanager
from urllib.parse import parse_qs

import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from config import Settings
from core.broadcaster import EventBroadcaster
from core.cache import ActiveIncidentCache
from core.errors import IncidentNotFoundError
from core.executor import StepRunner
from core.runtime import IncidentRuntime
from core.store import IncidentStore
from llm.openrouter import OpenRouterClient
from schemas.agent_run import AgentRun
from schemas.incident import Incident, IncidentCandidate, IncidentStatus, SubmitResult
from signals.ci_webhooks import (
    build_ci_candidate,
    parse_github_workflow_run,
    parse_jenkins_build,
    verify_github_signature,
)
from signals.log_analyzer import build_candidate, extract_records
from sre.agents import PatchAgent, PullRequestAgent, RootCauseAgent, VerifyAgent
from sre.integrations.github import GitHubClient
from sre.integrations.reasoning import LLMReasoningProvider
from sre.integrations.sandbox import SandboxRunnerVerifier
from sre.integrations.secrets import EnvSecretStore
from sre.integrations.slack import (
    ACTION_APPROVE,
    ACTION_REJECT,
    notifier_for_project,
    verify_slack_signature,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s  %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(log_file: str) -> None:
    """Attach a rotating file handler to the root logger once."""
    root = logging.getLogger()
    root.setLevel(logging.INFO)
    for handler in root.handlers:
        if isinstance(handler, logging.handlers.RotatingFileHandler):
            return

    file_handler = logging.handlers.RotatingFileHandler(
        log_file, maxBytes=1_000_000, backupCount=3, encoding="utf-8",
    )
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    root.addHandler(file_handler)


# ---------------------------------------------------------------------------
# Runtime setup
# ---------------------------------------------------------------------------

def create_runtime(settings: Settings) -> IncidentRuntime:
    """Wire the runtime with the production adapters.

    Raises:
        KeyError: If OPENROUTER_API_KEY is not set.
    """
    secrets = EnvSecretStore()

    def code_host(token: str) -> GitHubClient:
        return GitHubClient(token, base_url=settings.github_api_url)

    runtime = IncidentRuntime(
        store=IncidentStore(settings.db_path),
        broadcaster=EventBroadcaster(),
        cache=ActiveIncidentCache(max_size=settings.cache_size),
        runner=StepRunner(timeout_seconds=settings.step_timeout_seconds),
        notifiers=lambda project_id: notifier_for_project(secrets, project_id),
        max_verify_attempts=settings.max_verify_attempts,
        hydrate_limit=settings.hydrate_limit,
    )

    reasoning = LLMReasoningProvider(OpenRouterClient(settings.reasoning_model))
    runtime.register(RootCauseAgent(reasoning))
    runtime.register(PatchAgent(reasoning))
    runtime.register(VerifyAgent(SandboxRunnerVerifier(settings.sandbox_url), code_host, secrets))
    runtime.register(PullRequestAgent(code_host, secrets))
    return runtime


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------

class IncidentDetail(BaseModel):
    """One incident with its agent runs in recorded order."""
    incident: Incident
    runs: list[AgentRun]


class DecisionRequest(BaseModel):
    actor: str | None = None
    reason: str | None = None


class DecisionResponse(BaseModel):
    """applied is False when the incident was not awaiting a decision."""
    applied: bool
    status: IncidentStatus


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(runtime: IncidentRuntime | None = None, settings: Settings | None = None) -> FastAPI:
    """Build the FastAPI app.

    Args:
        runtime: A prepared runtime (tests, embedding). When None, one is
            built from ``settings`` at startup and shut down on exit.
        settings: Defaults to Settings.from_env().
    """
    settings = settings or Settings.from_env()
    owns_runtime = runtime is None
    if owns_runtime:
        configure_logging(settings.log_file)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.runtime is None:
            app.state.runtime = create_runtime(settings)
        await app.state.runtime.recover()
        logger.info("Guardian started.")
        yield
        if owns_runtime:
            await app.state.runtime.shutdown()

    app = FastAPI(title="Guardian", lifespan=lifespan)
    app.state.runtime = runtime
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    _register_routes(app)
    return app


def get_runtime(request: Request) -> IncidentRuntime:
    runtime = request.app.state.runtime
    if runtime is None:
        raise HTTPException(status_code=503, detail="Runtime not started.")
    return runtime


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def _submitted(result: SubmitResult, **extra) -> JSONResponse:
    """202 for a new incident, 200 for a duplicate occurrence."""
    return JSONResponse(
        status_code=200 if result.duplicate else 202,
        content={**result.model_dump(), **extra},
    )


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

def _register_routes(app: FastAPI) -> None:

    @app.get("/health")
    def health():
        return {"status": "ok"}

    # ── Intake ────────────────────────────────────────────────────────────────

    @app.post("/api/incidents")
    async def submit_incident(
        candidate: IncidentCandidate,
        runtime: IncidentRuntime = Depends(get_runtime),
    ):
        """Report an incident directly (dashboard "report incident", scripts)."""
        result = await runtime.submit_incident(candidate)
        return _submitted(result)

    @app.post("/api/logs/{project_id}")
    async def ingest_logs(
        project_id: str,
        request: Request,
        runtime: IncidentRuntime = Depends(get_runtime),
        settings: Settings = Depends(get_settings),
        x_guardian_token: str | None = Header(default=None),
        authorization: str | None = Header(default=None),
    ):
        """Receive pushed logs, detect errors, submit the first one.

        When GUARDIAN_INGEST_TOKEN is set the push must carry it, either as
        x-guardian-token or as a Bearer authorization header.
        """
        if settings.ingest_token:
            token = x_guardian_token or (authorization or "").removeprefix("Bearer ").strip()
            if not token:
                raise HTTPException(status_code=401, detail="Missing ingest token.")
            if token != settings.ingest_token:
                logger.warning("Rejected log push for %s: invalid token.", project_id)
                raise HTTPException(status_code=403, detail="Invalid ingest token.")

        try:
            payload = await request.json()
        except ValueError:
            raise HTTPException(status_code=400, detail="Body must be JSON.")

        records = extract_records(payload)
        candidate = build_candidate(project_id, payload, settings.repo_for_project(project_id))
        if candidate is None:
            logger.info("No errors in %d log records for %s.", len(records), project_id)
            return {"message": "No errors detected.", "records_processed": len(records)}

        result = await runtime.submit_incident(candidate)
        return _submitted(result, records_processed=len(records))

    @app.post("/webhooks/github")
    async def github_webhook(
        request: Request,
        runtime: IncidentRuntime = Depends(get_runtime),
        settings: Settings = Depends(get_settings),
        x_github_event: str | None = Header(default=None),
        x_hub_signature_256: str | None = Header(default=None),
    ):
        """Receive a GitHub workflow_run webhook; failed runs become CI incidents."""
        body = await request.body()

        if settings.github_webhook_secret:
            if not verify_github_signature(body, x_hub_signature_256, settings.github_webhook_secret):
                logger.warning("Rejected GitHub webhook: invalid signature.")
                raise HTTPException(status_code=401, detail="Invalid signature.")
        else:
            logger.warning("GITHUB_WEBHOOK_SECRET not set — skipping signature check.")

        try:
            failure = parse_github_workflow_run(x_github_event, json.loads(body))
        except (KeyError, TypeError, ValueError) as exc:
            logger.error("Failed to parse GitHub webhook payload: %s", exc)
            raise HTTPException(status_code=400, detail=f"Malformed payload: {exc}")

        if failure is None:
            return {"status": "ignored", "event": x_github_event}

        candidate = build_ci_candidate(failure, settings.project_for_repo(failure.full_name))
        return _submitted(await runtime.submit_incident(candidate))

    @app.post("/webhooks/jenkins")
    async def jenkins_webhook(
        request: Request,
        runtime: IncidentRuntime = Depends(get_runtime),
        settings: Settings = Depends(get_settings),
    ):
        """Receive a Jenkins build notification; failures become CI incidents."""
        try:
            failure = parse_jenkins_build(await request.json())
        except (KeyError, TypeError, ValueError) as exc:
            logger.error("Failed to parse Jenkins payload: %s", exc)
            raise HTTPException(status_code=400, detail=f"Malformed payload: {exc}")

        if failure is None:
            return {"status": "ignored"}

        candidate = build_ci_candidate(failure, settings.project_for_repo(failure.full_name))
        return _submitted(await runtime.submit_incident(candidate))

    # ── Decisions ─────────────────────────────────────────────────────────────

    @app.post("/api/incidents/{incident_id}/approve", response_model=DecisionResponse)
    async def approve_incident(
        incident_id: str,
        decision: DecisionRequest | None = None,
        runtime: IncidentRuntime = Depends(get_runtime),
    ):
        decision = decision or DecisionRequest()
        try:
            applied = await runtime.approve(incident_id, approved_by=decision.actor)
            incident = await runtime.get_incident(incident_id)
        except IncidentNotFoundError:
            raise HTTPException(status_code=404, detail=f"Incident '{incident_id}' not found.")
        return DecisionResponse(applied=applied, status=incident.status)

    @app.post("/api/incidents/{incident_id}/reject", response_model=DecisionResponse)
    async def reject_incident(
        incident_id: str,
        decision: DecisionRequest | None = None,
        runtime: IncidentRuntime = Depends(get_runtime),
    ):
        decision = decision or DecisionRequest()
        try:
            applied = await runtime.reject(
                incident_id, rejected_by=decision.actor, reason=decision.reason
            )
            incident = await runtime.get_incident(incident_id)
        except IncidentNotFoundError:
            raise HTTPException(status_code=404, detail=f"Incident '{incident_id}' not found.")
        return DecisionResponse(applied=applied, status=incident.status)

    @app.post("/webhooks/slack/interactions")
    async def slack_interaction(
        request: Request,
        runtime: IncidentRuntime = Depends(get_runtime),
        settings: Settings = Depends(get_settings),
        x_slack_request_timestamp: str | None = Header(default=None),
        x_slack_signature: str | None = Header(default=None),
    ):
        """Handle the approve/reject buttons of a decision request.

        Slack posts form-encoded bodies with a single ``payload`` field
        holding the interaction JSON.
        """
        body = await request.body()
        if settings.slack_signing_secret:
            if not verify_slack_signature(
                body, x_slack_request_timestamp or "", x_slack_signature or "", settings.slack_signing_secret
            ):
                logger.warning("Rejected Slack interaction: invalid signature.")
                raise HTTPException(status_code=401, detail="Invalid signature.")
        else:
            logger.warning("SLACK_SIGNING_SECRET not set — skipping signature check.")

        try:
            interaction = json.loads(parse_qs(body.decode("utf-8"))["payload"][0])
            action = interaction["actions"][0]
        except (KeyError, IndexError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=f"Malformed interaction: {exc}")

        user = interaction.get("user") or {}
        actor = user.get("username") or user.get("name") or user.get("id")
        incident_id = action.get("value", "")

        try:
            if action.get("action_id") == ACTION_APPROVE:
                applied = await runtime.approve(incident_id, approved_by=actor)
                text = "Approved. Deploying fix..." if applied else "This incident is no longer awaiting a decision."
            elif action.get("action_id") == ACTION_REJECT:
                applied = await runtime.reject(incident_id, rejected_by=actor)
                text = "Rejected. Incident closed." if applied else "This incident is no longer awaiting a decision."
            else:
                return {"text": "Unknown action."}
        except IncidentNotFoundError:
            return {"text": "Incident not found."}
        return {"text": text}

    # ── Read API ──────────────────────────────────────────────────────────────

    @app.get("/api/incidents", response_model=list[Incident])
    def list_incidents(
        project_id: str | None = None,
        status: IncidentStatus | None = None,
        runtime: IncidentRuntime = Depends(get_runtime),
    ):
        """Return cached incidents, newest first."""
        return runtime.list_active_incidents(project_id=project_id, status=status)

    @app.get("/api/incidents/{incident_id}", response_model=IncidentDetail)
    async def get_incident(incident_id: str, runtime: IncidentRuntime = Depends(get_runtime)):
        try:
            incident, runs = await runtime.get_timeline(incident_id)
        except IncidentNotFoundError:
            raise HTTPException(status_code=404, detail=f"Incident '{incident_id}' not found.")
        return IncidentDetail(incident=incident, runs=runs)

    @app.get("/api/events")
    async def stream_events(
        project_id: str | None = None,
        limit: int | None = None,
        runtime: IncidentRuntime = Depends(get_runtime),
    ):
        """Stream live events as NDJSON, one JSON object per line.

        Args:
            project_id: Only events for this project (plus unscoped log
                lines) are sent.
            limit: Close the stream after this many events.
        """
        subscription = runtime.broadcaster.subscribe(project_id)

        async def stream():
            sent = 0
            try:
                async for event in subscription:
                    yield event.model_dump_json() + "\n"
                    sent += 1
                    if limit is not None and sent >= limit:
                        break
            finally:
                subscription.close()

        return StreamingResponse(stream(), media_type="application/x-ndjson")


app = create_app()


if __name__ == "__main__":
    uvicorn.run("main:app", host="127.0.0.1", port=8000, reload=True)
