"""
Spoken fallbacks for turns without a generated reply.

Lithuanian unless the language tag starts with "en".
"""

from __future__ import annotations

from typing import Dict, Literal

PhraseKind = Literal["silence", "no_output", "apology"]

_PHRASES: Dict[str, Dict[PhraseKind, str]] = {
    "lt": {
        "silence": "Girdžiu tylą. Ar mane girdite?",
        "no_output": "Supratau. Pakartokite, prašau.",
        "apology": "Atsiprašau, įvyko klaida. Pakartokite, prašau.",
    },
    "en": {
        "silence": "I can't hear anything. Can you hear me?",
        "no_output": "I understood. Could you please repeat that?",
        "apology": "I'm sorry, something went wrong. Could you please repeat that?",
    },
}


def fallback_phrase(kind: PhraseKind, language: str | None) -> str:
    """Spoken fallback used when there is no generated reply to send."""
    lang = (language or "").strip().lower()
    table = _PHRASES["en"] if lang.startswith("en") else _PHRASES["lt"]
    return table[kind]
