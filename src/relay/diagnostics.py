"""
Classification of Twilio-side `error` reports.

Errors are recorded for diagnostics only; they never change session state.
"""

from __future__ import annotations

import re

# Codes seen in production; everything else is classified by description.
_KNOWN_CODES = {
    "64101": "invalid_parameter",
}

_DESCRIPTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = tuple(
    (re.compile(p, re.IGNORECASE), category)
    for p, category in (
        (r"\binvalid\s+(parameter|attribute|voice|language)\b", "invalid_parameter"),
        (r"\b(tts|text[- ]to[- ]speech|synthes\w*|voice)\b", "tts_provider"),
        (r"\b(stt|transcri\w*|speech[- ]to[- ]text|recogni\w*)\b", "stt_provider"),
        (r"\b(websocket|socket|connection|handshake)\b", "websocket"),
        (r"\b(json|message|payload|malformed)\b", "invalid_message"),
        (r"\b(timeout|timed out)\b", "timeout"),
    )
)


def classify_error(code: str, description: str) -> str:
    """
    Map a Twilio error report to a coarse category for dashboards.

    The numeric code wins when it is known; otherwise the description is
    matched against keyword rules. Falls back to "unknown".
    """
    code = (code or "").strip()
    if code in _KNOWN_CODES:
        return _KNOWN_CODES[code]

    text = description or ""
    for pattern, category in _DESCRIPTION_RULES:
        if pattern.search(text):
            return category
    return "unknown"
