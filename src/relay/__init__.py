"""
Paule relay: streaming AI replies over Twilio ConversationRelay.

`Config`/`get_config` are resolved lazily so pure-text modules
(`src.relay.normalizer`, `src.relay.segmenter`) import without loading .env.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from src.relay.config import Config, get_config

__all__ = ["Config", "get_config"]


def __getattr__(name: str) -> Any:
    if name not in __all__:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    from src.relay import config

    return getattr(config, name)
