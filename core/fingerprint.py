"""Fingerprinting for incident deduplication.

Repeated occurrences of the same fault differ mostly in timestamps and
request/trace UUIDs. Normalization strips those, truncates the message so
long stack-trace tails do not dominate, and hashes the result together with
the project id. Two messages that normalize identically for the same project
share a fingerprint and merge into one open incident.

The decision itself (duplicate or new) is made atomically by the incident
store; this module only computes the key.
"""

import hashlib
import re

FINGERPRINT_PREFIX_LENGTH = 300

_STRIP_PATTERNS = [
    # ISO-8601 timestamps: 2026-02-04t10:15:30.123z (message is lower-cased first)
    re.compile(r"\d{4}-\d{2}-\d{2}t\d{2}:\d{2}:\d{2}(?:\.\d+)?z?"),
    # Bare clock times: 12:30:45
    re.compile(r"\d{2}:\d{2}:\d{2}"),
    # UUIDs
    re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}"),
]


def normalize_message(message: str) -> str:
    """Lower-case, strip volatile substrings, and truncate a fault message.

    Args:
        message: Raw fault text as received from the detector.

    Returns:
        The normalized prefix, at most FINGERPRINT_PREFIX_LENGTH characters.
    """
    normalized = message.lower().strip()
    for pattern in _STRIP_PATTERNS:
        normalized = pattern.sub("", normalized)
    return normalized[:FINGERPRINT_PREFIX_LENGTH]


def compute_fingerprint(message: str, project_id: str) -> str:
    """Return the stable 32-char hex fingerprint for a fault in a project."""
    normalized = normalize_message(message)
    return hashlib.md5((normalized + project_id).encode("utf-8")).hexdigest()
