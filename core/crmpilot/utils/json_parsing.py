"""Helpers for pulling JSON objects out of model output."""

import json
import re
from typing import Optional

_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def strip_code_fences(text: str) -> str:
    """Return the body of the first fenced block, or the text unchanged."""
    match = _FENCE.search(text)
    if match:
        return match.group(1).strip()
    return text.strip()


def _balanced_object_end(text: str, start: int) -> Optional[int]:
    """Index of the brace closing the object opened at start, if any."""
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
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
    return None


def extract_json_object(text: Optional[str]) -> Optional[dict]:
    """
    Parse a JSON object from model output.

    Tries the whole (fence-stripped) text first, then every balanced
    {...} span from left to right.

    Returns:
        The first object that parses, or None
    """
    if not text or not isinstance(text, str):
        return None

    body = strip_code_fences(text)
    try:
        parsed = json.loads(body)
        if isinstance(parsed, dict):
            return parsed
    except (json.JSONDecodeError, ValueError):
        pass

    start = body.find("{")
    while start != -1:
        end = _balanced_object_end(body, start)
        if end is None:
            break
        try:
            parsed = json.loads(body[start:end + 1])
            if isinstance(parsed, dict):
                return parsed
        except (json.JSONDecodeError, ValueError):
            pass
        start = body.find("{", start + 1)
    return None


def extract_json_array(text: Optional[str]) -> Optional[list]:
    """Parse a JSON array, or the "entities" list of an object, from model output."""
    if not text or not isinstance(text, str):
        return None

    body = strip_code_fences(text)
    try:
        parsed = json.loads(body)
        if isinstance(parsed, list):
            return parsed
    except (json.JSONDecodeError, ValueError):
        pass

    obj = extract_json_object(body)
    if obj is not None and isinstance(obj.get("entities"), list):
        return obj["entities"]

    match = re.search(r"\[.*\]", body, re.DOTALL)
    if match:
        try:
            parsed = json.loads(match.group(0))
            if isinstance(parsed, list):
                return parsed
        except (json.JSONDecodeError, ValueError):
            return None
    return None
