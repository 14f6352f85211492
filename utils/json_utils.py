"""
Helpers for pulling a JSON object out of free-form model output
"""

import json
from typing import Any, Optional


def extract_json_object(raw: str) -> Optional[str]:
    """Return the first balanced top-level {...} substring, or None.

    Braces inside string literals (including escaped quotes) do not count.
    """
    in_string = False
    escaped = False
    depth = 0
    start = -1

    for i, ch in enumerate(raw):
        if escaped:
            escaped = False
            continue
        if ch == "\\":
            escaped = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch == "{":
            if depth == 0:
                start = i
            depth += 1
        elif ch == "}":
            if depth == 0:
                continue
            depth -= 1
            if depth == 0 and start >= 0:
                return raw[start:i + 1]

    return None


def normalize_message_content(content: Any) -> Optional[str]:
    """Flatten a chat message content (string or list of text parts)"""
    if isinstance(content, str):
        stripped = content.strip()
        return stripped or None

    if isinstance(content, list):
        texts = []
        for item in content:
            if not isinstance(item, dict):
                continue
            text = item.get("text")
            if isinstance(text, str) and text.strip():
                texts.append(text)
        joined = "".join(texts).strip()
        return joined or None

    return None


def try_parse_json(raw: Optional[str]) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None
