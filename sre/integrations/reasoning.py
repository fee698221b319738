"""LLM-backed reasoning provider.

Turns an incident into a root-cause narrative and a code patch using any
LLMClient. Prompts live in prompts/ so they can be tuned without touching
code. Both operations accept partial context: an incident with no RCA still
gets a patch attempt, and a model that ignores the JSON format still yields
a usable RCA (the raw text becomes the analysis).
"""

import json
import logging
import pathlib

from pydantic import AliasChoices, BaseModel, Field

from llm.base import LLMClient
from schemas.incident import Incident
from schemas.result import FileUpdate, PatchResult, RootCauseResult
from utils.parse import LLMParseError, parse_llm_json

logger = logging.getLogger(__name__)

_PROMPT_DIR = pathlib.Path(__file__).parent.parent.parent / "prompts"

# Keeps prompts inside the model's context window.
_MAX_DESCRIPTION_CHARS = 4000
_MAX_FAILURE_LOG_LINES = 60


class _PatchSchema(BaseModel):
    file_updates: list[FileUpdate] = Field(
        default_factory=list,
        validation_alias=AliasChoices("file_updates", "fileUpdates"),
    )
    explanation: str = ""


class LLMReasoningProvider:
    """ReasoningProvider implementation backed by an LLMClient.

    Example:
        provider = LLMReasoningProvider(OpenRouterClient("anthropic/claude-sonnet-4-6"))
        rca = await provider.analyze(incident)
        patch = await provider.generate_patch(incident, rca)
    """

    def __init__(self, llm: LLMClient) -> None:
        self.llm = llm
        self._rca_prompt = (_PROMPT_DIR / "rca.txt").read_text()
        self._patch_prompt = (_PROMPT_DIR / "patch.txt").read_text()

    async def analyze(self, incident: Incident) -> RootCauseResult:
        raw = await self.llm.complete(system=self._rca_prompt, user=_incident_context(incident))
        try:
            return parse_llm_json(raw, RootCauseResult)
        except LLMParseError as exc:
            logger.warning("RCA response was not JSON, keeping raw text: %s", exc)
            return RootCauseResult(analysis=raw.strip())

    async def generate_patch(
        self,
        incident: Incident,
        rca: RootCauseResult,
        prior_failure_logs: list[str] | None = None,
    ) -> PatchResult:
        sections = [_incident_context(incident), "## Root Cause Analysis"]
        sections.append(rca.analysis or "No root-cause analysis is available. Infer the cause from the incident.")
        if rca.hints:
            sections.append(f"Hints: {json.dumps(rca.hints)}")

        if prior_failure_logs:
            tail = prior_failure_logs[-_MAX_FAILURE_LOG_LINES:]
            sections.append(
                "## PREVIOUS ATTEMPT FAILED\n"
                "The previous fix failed verification with the following output. "
                "You must address these errors.\n" + "\n".join(tail)
            )

        raw = await self.llm.complete(system=self._patch_prompt, user="\n\n".join(sections))
        try:
            parsed = parse_llm_json(raw, _PatchSchema)
        except LLMParseError as exc:
            logger.error("Patch response could not be parsed: %s\nRaw: %s", exc, exc.raw[:500])
            return PatchResult(file_updates=[], explanation=raw.strip()[:1000])

        return PatchResult(file_updates=parsed.file_updates, explanation=parsed.explanation)


def _incident_context(incident: Incident) -> str:
    meta = incident.metadata
    lines = [
        "## Incident",
        f"Title: {incident.title}",
        f"Source: {incident.source.value}",
        f"Severity: {incident.severity.value}",
        f"Occurrences: {incident.occurrence_count}",
        f"Description:\n{incident.description[:_MAX_DESCRIPTION_CHARS]}",
    ]
    if meta.owner and meta.repo:
        lines.append(f"Repository: {meta.owner}/{meta.repo} (branch {meta.branch})")
    if meta.service:
        lines.append(f"Service: {meta.service}")
    return "\n".join(lines)
