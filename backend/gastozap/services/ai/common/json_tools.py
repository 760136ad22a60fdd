"""Tolerant JSON extraction from model output."""

from __future__ import annotations

import json
import re

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)
_PAIRS = {"{": "}", "[": "]"}


def _loads(candidate: str) -> dict | list | None:
    try:
        value = json.loads(candidate)
    except ValueError:
        return None
    return value if isinstance(value, (dict, list)) else None


def _balanced_from(text: str, start: int) -> dict | list | None:
    """Parse the bracket-balanced span opening at *start*, ignoring brackets in strings."""
    closer = _PAIRS[text[start]]
    opener = text[start]
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == opener:
            depth += 1
        elif ch == closer:
            depth -= 1
            if depth == 0:
                return _loads(text[start : i + 1])
    return None


def extract_json(text: str | None) -> dict | list | None:
    """First JSON object/array found in *text*, or ``None``.

    Handles bare JSON, markdown code fences and JSON surrounded by prose.
    """
    if not text or not text.strip():
        return None

    stripped = text.strip()
    parsed = _loads(stripped)
    if parsed is not None:
        return parsed

    for block in _FENCE_RE.findall(stripped):
        parsed = _loads(block.strip())
        if parsed is not None:
            return parsed

    for i, ch in enumerate(stripped):
        if ch in _PAIRS:
            parsed = _balanced_from(stripped, i)
            if parsed is not None:
                return parsed
    return None


def extract_json_object(text: str | None) -> dict | None:
    """Like ``extract_json`` but only accepts an object (first element of a list counts)."""
    parsed = extract_json(text)
    if isinstance(parsed, list):
        parsed = next((item for item in parsed if isinstance(item, dict)), None)
    return parsed if isinstance(parsed, dict) else None
