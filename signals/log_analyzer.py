"""Log analyzer — deterministic error detection over pushed log records.

Turns a log push (Datadog, CloudWatch or a plain JSON body) into at most one
IncidentCandidate:
- extract_records() normalises the payload shape to a list of records
- detect_errors() keeps the records whose text matches an error pattern
- build_candidate() picks the first error, classifies where it came from
  and fills the incident metadata

No LLM involved. Same input always produces the same candidate, which is
what makes fingerprint deduplication of repeated pushes work.
"""

import json
import re

from schemas.incident import (
    ERROR_SOURCE_PRODUCTION,
    IncidentCandidate,
    IncidentMetadata,
    IncidentSource,
    Severity,
)

ERROR_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"error",
        r"exception",
        r"critical",
        r"fatal",
        r"status.?(500|502|503|504)",
        r"timeout",
        r"failed",
        r"crash",
        r"segfault",
        r"out of memory",
        r"econnrefused",
        r"eaddrinuse",
    )
]

TITLE_LENGTH = 100
DESCRIPTION_LENGTH = 2000


def extract_records(payload) -> list:
    """Return the log records carried by a push payload.

    Accepts a bare list, an object with a ``logs`` list (Datadog), or a
    single log object.
    """
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict) and isinstance(payload.get("logs"), list):
        return payload["logs"]
    return [payload]


def record_message(record) -> str:
    """Return the text of one record, used for matching and fingerprinting."""
    if isinstance(record, str):
        return record
    if isinstance(record, dict) and record.get("message"):
        return str(record["message"])
    return json.dumps(record, sort_keys=True, default=str)


def detect_errors(records: list) -> list:
    """Return the records whose text matches any error pattern, in order."""
    return [r for r in records if any(p.search(record_message(r)) for p in ERROR_PATTERNS)]


def extract_metadata(
    payload,
    error_record,
    project_id: str,
    repo_full_name: str | None = None,
) -> IncidentMetadata:
    """Classify the log source and build incident metadata.

    error_source comes from the payload when the provider carries it
    (``ddsource`` for Datadog, ``environment`` on a generic record) and
    defaults to "production", which routes the incident to the approval
    gate.

    Args:
        payload: The raw push body.
        error_record: The first detected error record.
        project_id: Owning project.
        repo_full_name: "owner/repo" linked to the project, if known.
    """
    owner, repo = _split_repo(repo_full_name)
    body = payload if isinstance(payload, dict) else {}
    record = error_record if isinstance(error_record, dict) else {}
    tags: list[str] = []

    # ── AWS CloudWatch (via Firehose) ─────────────────────────────────────────
    if body.get("logGroup") or body.get("logStream"):
        log_source = "aws-cloudwatch"
        log_group = body.get("logGroup") or ""
        service = log_group.rstrip("/").split("/")[-1] or "aws-service"
        error_source = ERROR_SOURCE_PRODUCTION
        if body.get("logStream"):
            tags.append(f"stream:{body['logStream']}")

    # ── Datadog ───────────────────────────────────────────────────────────────
    elif body.get("ddsource") or (body.get("service") and "logs" in body):
        log_source = "datadog"
        service = body.get("service") or record.get("service") or "datadog-service"
        error_source = body.get("ddsource") or ERROR_SOURCE_PRODUCTION
        if body.get("hostname"):
            tags.append(f"host:{body['hostname']}")
        if body.get("tags"):
            tags.extend(t.strip() for t in str(body["tags"]).split(",") if t.strip())

    # ── Generic webhook ───────────────────────────────────────────────────────
    else:
        log_source = "webhook"
        service = record.get("service") or record.get("component") or "backend-api"
        error_source = record.get("environment") or ERROR_SOURCE_PRODUCTION

    return IncidentMetadata(
        project_id=project_id,
        owner=owner,
        repo=repo,
        error_source=error_source,
        service=service,
        log_source=log_source,
        tags=tags,
        raw_log=error_record,
    )


def build_candidate(
    project_id: str,
    payload,
    repo_full_name: str | None = None,
) -> IncidentCandidate | None:
    """Build a candidate from a log push, or return None if it holds no errors."""
    records = extract_records(payload)
    errors = detect_errors(records)
    if not errors:
        return None

    first = errors[0]
    message = record_message(first)
    return IncidentCandidate(
        title=f"Production Error: {message[:TITLE_LENGTH]}",
        message=message,
        description="\n".join(record_message(e) for e in errors)[:DESCRIPTION_LENGTH],
        project_id=project_id,
        source=IncidentSource.LOG_INGESTION,
        severity=Severity.CRITICAL,
        metadata=extract_metadata(payload, first, project_id, repo_full_name),
    )


def _split_repo(full_name: str | None) -> tuple[str | None, str | None]:
    if not full_name or "/" not in full_name:
        return None, None
    owner, _, repo = full_name.partition("/")
    return owner, repo
