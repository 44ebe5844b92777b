"""Tolerant parsing of JSON embedded in model output.

Models are asked to wrap JSON in ``<json>...</json>`` tags but frequently add
prose, markdown fences or drop the tags altogether. Parsing is two-staged:
the tagged block first, then the outermost ``{...}`` (or ``[...]``) span.
Every helper returns ``None`` instead of raising.
"""

import json
import logging
from typing import Any, Dict, List

logger = logging.getLogger(__name__)

JSON_START_TAG = "<json>"
JSON_END_TAG = "</json>"


def extract_between(text: str, start_tag: str, end_tag: str) -> str | None:
    """Return the trimmed text between the first start_tag and the last end_tag."""
    start = text.find(start_tag)
    end = text.rfind(end_tag)
    if start == -1 or end == -1 or end <= start:
        return None
    return text[start + len(start_tag):end].strip()


def extract_span(text: str, opener: str = "{", closer: str = "}") -> str | None:
    """Return the outermost opener...closer span of text."""
    start = text.find(opener)
    end = text.rfind(closer)
    if start == -1 or end == -1 or end <= start:
        return None
    return text[start:end + 1]


def safe_json_loads(text: str | None) -> Any | None:
    if not text:
        return None
    try:
        return json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None


def _strip_code_fence(text: str) -> str:
    stripped = text.strip()
    if stripped.startswith("```"):
        stripped = stripped.split("\n", 1)[1] if "\n" in stripped else ""
        if stripped.rstrip().endswith("```"):
            stripped = stripped.rstrip()[:-3]
    return stripped.strip()


def parse_json_object(text: str) -> Dict[str, Any] | None:
    """Parse a JSON object from model output: tagged block first, then brace span."""
    tagged = extract_between(text, JSON_START_TAG, JSON_END_TAG)
    if tagged is not None:
        tagged = _strip_code_fence(tagged)
        parsed = safe_json_loads(tagged)
        if not isinstance(parsed, dict):
            parsed = safe_json_loads(extract_span(tagged))
        if isinstance(parsed, dict):
            return parsed

    parsed = safe_json_loads(extract_span(text))
    if isinstance(parsed, dict):
        return parsed
    logger.debug("No JSON object found in model output (%d chars)", len(text))
    return None


def parse_json_list(text: str, key: str) -> List[Any] | None:
    """Parse a list from model output, given either as ``{key: [...]}`` or as a bare array."""
    body = _strip_code_fence(extract_between(text, JSON_START_TAG, JSON_END_TAG) or text)
    bracket, brace = body.find("["), body.find("{")
    if bracket != -1 and (brace == -1 or bracket < brace):
        parsed = safe_json_loads(extract_span(body, "[", "]"))
        if isinstance(parsed, list):
            return parsed

    obj = parse_json_object(text)
    if obj is not None and isinstance(obj.get(key), list):
        return obj[key]
    return None
