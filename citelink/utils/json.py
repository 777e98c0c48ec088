"""JSON parsing helpers for stored documents."""

import json
from typing import Any


def parse_json_field(raw: str | dict | None) -> dict[str, Any] | None:
    """Parse a JSON string or dict, returning None on failure or empty.

    Returns None for: None, empty string, empty dict, invalid JSON, non-dict JSON.
    """
    if raw is None:
        return None
    if isinstance(raw, dict):
        return raw if raw else None
    if isinstance(raw, str):
        if not raw:
            return None
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, dict) and parsed:
                return parsed
        except (ValueError, TypeError):
            pass
    return None


def parse_json_int(raw: str | int | None, default: int = 0) -> int:
    """Parse a stored integer document (e.g. the node counter).

    Booleans and anything that isn't an integer fall back to ``default``.
    """
    if raw is None:
        return default
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except (ValueError, TypeError):
            return default
    if isinstance(raw, bool) or not isinstance(raw, int):
        return default
    return raw
