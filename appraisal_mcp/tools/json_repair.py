"""Defensive JSON extraction for free-form model replies.

Model output is never trusted to be clean JSON. Every structured reply goes
through :func:`extract_json_payload`, which tries progressively more
forgiving strategies and returns ``None`` rather than raising.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f]")
_LISTING_OBJECT_RE = re.compile(r"\{[^{}]*\"url\"[^{}]*\}|\{[^{}]*\"price\"[^{}]*\}")

_OPENERS = {"{": "}", "[": "]"}


def strip_code_fence(text: str) -> str:
    match = _FENCE_RE.search(text)
    return match.group(1).strip() if match else text.strip()


def outermost_span(text: str, opener: str) -> str | None:
    """Return text from the first *opener* to the last matching closer."""
    closer = _OPENERS[opener]
    start = text.find(opener)
    if start < 0:
        return None
    end = text.rfind(closer)
    if end <= start:
        # Truncated reply: keep everything after the opener for bracket repair.
        return text[start:]
    return text[start:end + 1]


def clean_json_text(text: str) -> str:
    cleaned = _CONTROL_CHARS_RE.sub(" ", text)
    return _TRAILING_COMMA_RE.sub(r"\1", cleaned)


def close_brackets(text: str) -> str:
    """Append missing closers for a truncated document (string-aware)."""
    stack: list[str] = []
    in_string = False
    escaped = False
    for char in text:
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in _OPENERS:
            stack.append(_OPENERS[char])
        elif char in ("}", "]") and stack and stack[-1] == char:
            stack.pop()
    fixed = text
    if in_string:
        fixed += '"'
    fixed = re.sub(r",\s*$", "", fixed.rstrip())
    return fixed + "".join(reversed(stack))


def _try_load(text: str) -> Any | None:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None


def extract_json_payload(text: str | None, *, expect: str = "object") -> Any | None:
    """Parse the JSON document in *text*, repairing common damage.

    ``expect`` is ``"object"`` or ``"array"`` and decides which outermost
    span is located when the reply is not fenced.
    """
    if not text or not text.strip():
        return None
    opener = "[" if expect == "array" else "{"
    wanted = list if expect == "array" else dict

    candidate = strip_code_fence(text)
    parsed = _try_load(candidate)
    if isinstance(parsed, wanted):
        return parsed

    span = outermost_span(candidate, opener)
    if span is None:
        return None
    for attempt in (span, clean_json_text(span), close_brackets(clean_json_text(span))):
        parsed = _try_load(attempt)
        if isinstance(parsed, wanted):
            return parsed

    logger.warning("JSON repair failed (%d chars)", len(text))
    return None


def extract_listing_objects(text: str | None) -> list[dict[str, Any]]:
    """Last resort: pull flat listing objects out of an unparseable reply."""
    if not text:
        return []
    found: list[dict[str, Any]] = []
    for match in _LISTING_OBJECT_RE.finditer(text):
        parsed = _try_load(clean_json_text(match.group(0)))
        if isinstance(parsed, dict):
            found.append(parsed)
    return found
