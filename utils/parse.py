"""Turn free-form LLM replies into validated Pydantic models.

Models asked for JSON still answer with a markdown fence around it, a
sentence of preamble, or a confidence of 1.2. Patch replies carry whole
source files as JSON strings, and those files can contain their own
markdown fences, so only the outer fence is removed; text inside the
object is never rewritten.
"""

import json
import re

from pydantic import BaseModel, ValidationError

from core.errors import GuardianError

# Opening fence on its own line, closing fence at the end of the reply.
_OUTER_FENCE = re.compile(r"```[A-Za-z]*[ \t]*\n(?P<body>.*)\n[ \t]*```", re.DOTALL)


class LLMParseError(GuardianError):
    """Reply could not be read as the requested schema.

    .raw keeps the reply so the caller can log it or fall back to it.
    """

    def __init__(self, message: str, raw: str):
        super().__init__(message)
        self.raw = raw


def parse_llm_json(response: str, schema: type[BaseModel]) -> BaseModel:
    """Parse an LLM reply into an instance of schema.

    Candidates are tried in order: the whole reply, the body of an outer
    markdown fence, then the span from the first "{" to the last "}".
    A top-level "confidence" is clamped to [0.0, 1.0] (0.0 when it is not a
    number) before validation.

    Raises:
        LLMParseError: No candidate decodes to a JSON object, or the object
            does not validate against schema.
    """
    data = None
    for candidate in _candidates(response):
        data = _load_object(candidate)
        if data is not None:
            break

    if data is None:
        raise LLMParseError(f"No JSON object in reply for {schema.__name__}", raw=response)

    if "confidence" in data:
        data["confidence"] = _clamp(data["confidence"])

    try:
        return schema.model_validate(data)
    except ValidationError as exc:
        raise LLMParseError(f"Reply does not match {schema.__name__}: {exc}", raw=response) from exc


def _candidates(response: str):
    text = response.strip()
    yield text

    fenced = _OUTER_FENCE.search(text)
    if fenced:
        yield fenced.group("body").strip()

    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        yield text[start:end + 1]


def _load_object(text: str) -> dict | None:
    try:
        value = json.loads(text)
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


def _clamp(value) -> float:
    try:
        return max(0.0, min(1.0, float(value)))
    except (TypeError, ValueError):
        return 0.0
