from __future__ import annotations

import json

_FENCE = "```"
_CLOSERS = {"{": "}", "[": "]"}


def extract_json(text: str | None) -> str | None:
    """Best-effort slice of the JSON payload embedded in model output.

    Returns the candidate text when it parses, otherwise ``None``. Only the first
    candidate window is considered.
    """
    if not text or not text.strip():
        return None
    window = text.strip()
    start = _first_opener(window)
    fence = window.find(_FENCE)
    if fence != -1 and (start == -1 or fence < start):
        window = window[fence + len(_FENCE) :]
        start = _first_opener(window)
    if start == -1:
        return None
    end = window.rfind(_CLOSERS[window[start]])
    if end <= start:
        return None
    candidate = window[start : end + 1]
    try:
        json.loads(candidate)
    except json.JSONDecodeError:
        return None
    return candidate


def _first_opener(text: str) -> int:
    brace = text.find("{")
    bracket = text.find("[")
    if brace == -1:
        return bracket
    if bracket == -1:
        return brace
    return min(brace, bracket)
