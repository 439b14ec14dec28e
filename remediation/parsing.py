"""Defensive handling of inference text: fence stripping and JSON parsing."""

from __future__ import annotations

import json
import re
from typing import Any

from shared.errors import MalformedResponseError

_FENCE_OPEN = re.compile(r"^\s*```[A-Za-z0-9_-]*\s*\n?")
_FENCE_CLOSE = re.compile(r"\n?\s*```\s*$")


def strip_code_fences(text: str) -> str:
    """Remove a surrounding markdown code fence (```json … ```), if any."""
    if text is None:
        return ""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = _FENCE_OPEN.sub("", cleaned, count=1)
        cleaned = _FENCE_CLOSE.sub("", cleaned, count=1)
    return cleaned.strip()


def parse_json(text: str) -> Any:
    """Strip fences and decode JSON, raising MalformedResponseError on failure."""
    cleaned = strip_code_fences(text)
    if not cleaned:
        raise MalformedResponseError("Empty response")
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise MalformedResponseError(f"Response is not valid JSON: {exc.msg}") from exc


def normalize_token(text: str) -> str:
    """Upper-case, trim and drop surrounding quotes/punctuation of a one-word reply."""
    cleaned = strip_code_fences(text).strip().strip("\"'`*.!:;").strip()
    return re.sub(r"[\s-]+", "_", cleaned.upper())
